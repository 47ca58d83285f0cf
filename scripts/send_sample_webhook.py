#!/usr/bin/env python3
"""Post sample WhatsApp Cloud API webhooks to a running chat service."""

from __future__ import annotations

import argparse
import json
import time
import urllib.error
import urllib.request

# ---------------------------------------------------------------------------
# Config
# ---------------------------------------------------------------------------
BASE_URL_DEFAULT = "http://localhost:8000/api/chat"
SENDER_DEFAULT = "15550001"
SENDER_NAME_DEFAULT = "Sample Customer"
DISPLAY_PHONE_NUMBER = "15559999"
PHONE_NUMBER_ID = "PNID-LOCAL"


def post_json(url: str, data: dict) -> dict:
    """POST JSON to a URL and return parsed response."""
    body = json.dumps(data).encode("utf-8")
    req = urllib.request.Request(
        url,
        data=body,
        headers={"Content-Type": "application/json"},
        method="POST",
    )
    try:
        with urllib.request.urlopen(req, timeout=30) as resp:
            return json.loads(resp.read().decode("utf-8"))
    except urllib.error.HTTPError as exc:
        detail = exc.read().decode("utf-8", errors="replace")
        raise SystemExit(f"HTTP {exc.code} from {url}: {detail}") from exc


def _envelope(value: dict) -> dict:
    return {
        "object": "whatsapp_business_account",
        "entry": [
            {
                "id": "WABA-LOCAL",
                "changes": [
                    {
                        "field": "messages",
                        "value": {
                            "messaging_product": "whatsapp",
                            "metadata": {
                                "display_phone_number": DISPLAY_PHONE_NUMBER,
                                "phone_number_id": PHONE_NUMBER_ID,
                            },
                            **value,
                        },
                    }
                ],
            }
        ],
    }


def build_text_message(*, sender: str, sender_name: str, message_id: str, body: str) -> dict:
    return _envelope(
        {
            "contacts": [{"profile": {"name": sender_name}, "wa_id": sender}],
            "messages": [
                {
                    "from": sender,
                    "id": message_id,
                    "timestamp": str(int(time.time())),
                    "type": "text",
                    "text": {"body": body},
                }
            ],
        }
    )


def build_status(*, message_id: str, status: str, recipient: str) -> dict:
    return _envelope(
        {
            "statuses": [
                {
                    "id": message_id,
                    "status": status,
                    "timestamp": str(int(time.time())),
                    "recipient_id": recipient,
                }
            ]
        }
    )


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Send sample WhatsApp webhooks to the chat service.")
    parser.add_argument("--base-url", default=BASE_URL_DEFAULT, help="Chat service API base URL")
    parser.add_argument("--sender", default=SENDER_DEFAULT)
    parser.add_argument("--sender-name", default=SENDER_NAME_DEFAULT)
    parser.add_argument("--body", default="hello", help="Text body of the inbound message")
    parser.add_argument(
        "--status",
        choices=["delivered", "read", "failed"],
        help="Also post this delivery status for a reply sent through /send",
    )
    return parser.parse_args()


def main() -> None:
    args = parse_args()
    base_url = args.base_url.rstrip("/")
    message_id = f"wamid.sample-{int(time.time() * 1000)}"

    print(f"[1/2] Posting inbound text {message_id} from {args.sender}...")
    ack = post_json(
        f"{base_url}/webhooks/whatsapp",
        build_text_message(sender=args.sender, sender_name=args.sender_name, message_id=message_id, body=args.body),
    )
    print(f"  Ack: {ack}")

    if not args.status:
        return

    print(f"[2/2] Sending a reply and posting status '{args.status}'...")
    sent = post_json(f"{base_url}/send", {"to": args.sender, "type": "text", "content": "Thanks, we got it."})
    print(f"  Send: {sent}")
    if not sent.get("success"):
        raise SystemExit("send failed; not posting a status")
    ack = post_json(
        f"{base_url}/webhooks/whatsapp",
        build_status(message_id=sent["messageId"], status=args.status, recipient=args.sender),
    )
    print(f"  Ack: {ack}")


if __name__ == "__main__":
    main()
