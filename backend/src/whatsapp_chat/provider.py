from __future__ import annotations

import itertools
import json
import logging
import socket
import urllib.error
import urllib.request
from dataclasses import dataclass
from datetime import datetime, timezone
from threading import Lock
from typing import Any, Protocol

from .errors import ProviderDispatchFailure
from .models import SendableMessageType

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class OutboundMessage:
    to: str
    type: SendableMessageType
    content: str
    template_name: str | None = None
    template_language: str | None = None
    template_components: tuple[dict[str, Any], ...] = ()
    context_message_id: str | None = None


@dataclass(frozen=True)
class ProviderDispatchResult:
    success: bool
    attempted_at: datetime
    external_message_id: str | None = None
    error_code: str | None = None
    error_message: str | None = None


class ProviderClient(Protocol):
    def dispatch(self, message: OutboundMessage) -> ProviderDispatchResult: ...


class StubProviderClient:
    """Local sender: never leaves the process, hands out sequential wamid.stub-* ids."""

    def __init__(self, *, enabled: bool = True) -> None:
        self._enabled = enabled
        self._counter = itertools.count(1)
        self._lock = Lock()
        self.dispatched: list[OutboundMessage] = []

    def dispatch(self, message: OutboundMessage) -> ProviderDispatchResult:
        attempted_at = datetime.now(timezone.utc)

        if not self._enabled:
            return ProviderDispatchResult(
                success=False,
                attempted_at=attempted_at,
                error_code="provider_disabled",
                error_message="WhatsApp delivery is disabled",
            )

        if "fail" in message.to.lower():
            return ProviderDispatchResult(
                success=False,
                attempted_at=attempted_at,
                error_code="stub_delivery_failed",
                error_message="Stub provider forced failure for recipient",
            )

        with self._lock:
            sequence = next(self._counter)
            self.dispatched.append(message)
        return ProviderDispatchResult(
            success=True,
            attempted_at=attempted_at,
            external_message_id=f"wamid.stub-{sequence:06d}",
        )


class WhatsAppCloudClient:
    """Sends messages through the WhatsApp Business Cloud API."""

    def __init__(
        self,
        *,
        api_url: str,
        access_token: str,
        phone_number_id: str,
        timeout_seconds: int = 30,
        default_template_language: str = "en_US",
    ) -> None:
        stripped_url = api_url.strip().rstrip("/")
        stripped_token = access_token.strip()
        stripped_phone_id = phone_number_id.strip()
        if not stripped_url:
            raise ValueError("api_url must not be empty")
        if not stripped_token:
            raise ValueError("access_token must not be empty")
        if not stripped_phone_id:
            raise ValueError("phone_number_id must not be empty")
        self._api_url = stripped_url
        self._access_token = stripped_token
        self._phone_number_id = stripped_phone_id
        self._timeout_seconds = timeout_seconds
        self._default_template_language = default_template_language

    def dispatch(self, message: OutboundMessage) -> ProviderDispatchResult:
        attempted_at = datetime.now(timezone.utc)
        try:
            response_data = self._post(self.build_payload(message))
        except ProviderDispatchFailure as exc:
            return ProviderDispatchResult(
                success=False,
                attempted_at=attempted_at,
                error_code=exc.error_code,
                error_message=f"{exc} (recipient: {mask_contact_target(message.to)})",
            )

        messages = response_data.get("messages") if isinstance(response_data, dict) else None
        message_id = None
        if isinstance(messages, list) and messages and isinstance(messages[0], dict):
            message_id = messages[0].get("id")
        if not isinstance(message_id, str) or not message_id.strip():
            return ProviderDispatchResult(
                success=False,
                attempted_at=attempted_at,
                error_code="missing_message_id",
                error_message="Cloud API response did not include messages[0].id",
            )
        return ProviderDispatchResult(success=True, attempted_at=attempted_at, external_message_id=message_id)

    def build_payload(self, message: OutboundMessage) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "messaging_product": "whatsapp",
            "recipient_type": "individual",
            "to": message.to,
            "type": message.type,
        }
        if message.type == "template":
            template: dict[str, Any] = {
                "name": message.template_name,
                "language": {"code": message.template_language or self._default_template_language},
            }
            if message.template_components:
                template["components"] = list(message.template_components)
            payload["template"] = template
        else:
            payload["text"] = {"preview_url": False, "body": message.content}
        if message.context_message_id:
            payload["context"] = {"message_id": message.context_message_id}
        return payload

    def _post(self, body: dict[str, Any]) -> dict[str, Any]:
        url = f"{self._api_url}/{self._phone_number_id}/messages"
        data = json.dumps(body).encode("utf-8")
        request = urllib.request.Request(
            url,
            data=data,
            headers={
                "Authorization": f"Bearer {self._access_token}",
                "Content-Type": "application/json",
            },
            method="POST",
        )
        try:
            with urllib.request.urlopen(request, timeout=self._timeout_seconds) as response:
                return json.loads(response.read().decode("utf-8"))  # type: ignore[no-any-return]
        except urllib.error.HTTPError as exc:
            raise ProviderDispatchFailure(f"HTTP {exc.code}: {exc.reason}", error_code=f"http_{exc.code}") from exc
        except urllib.error.URLError as exc:
            if isinstance(exc.reason, (socket.timeout, TimeoutError)):
                raise ProviderDispatchFailure(f"Request timed out: {exc.reason}", error_code="timeout") from exc
            raise ProviderDispatchFailure(f"Connection error: {exc.reason}", error_code="connection_error") from exc
        except (socket.timeout, TimeoutError) as exc:
            raise ProviderDispatchFailure(f"Request timed out: {exc}", error_code="timeout") from exc
        except ValueError as exc:
            raise ProviderDispatchFailure(f"Invalid JSON response: {exc}", error_code="invalid_response") from exc


def create_provider_client(
    *,
    client_type: str,
    enabled: bool,
    api_url: str,
    access_token: str,
    phone_number_id: str,
    timeout_seconds: int,
    default_template_language: str,
) -> ProviderClient:
    if client_type == "http":
        missing = [
            name
            for name, value in (
                ("WHATSAPP_API_URL", api_url),
                ("WHATSAPP_ACCESS_TOKEN", access_token),
                ("WHATSAPP_PHONE_NUMBER_ID", phone_number_id),
            )
            if not value.strip()
        ]
        if missing:
            logger.warning(
                "WhatsApp Cloud API client not configured (missing %s); sends are disabled", ", ".join(missing)
            )
            return StubProviderClient(enabled=False)
        return WhatsAppCloudClient(
            api_url=api_url,
            access_token=access_token,
            phone_number_id=phone_number_id,
            timeout_seconds=timeout_seconds,
            default_template_language=default_template_language,
        )
    return StubProviderClient(enabled=enabled)


def mask_contact_target(contact_target: str) -> str:
    normalized = contact_target.strip()
    if not normalized:
        return "***"

    digits = "".join(ch for ch in normalized if ch.isdigit())
    if len(digits) >= 4:
        return f"***{digits[-4:]}"

    if len(normalized) <= 4:
        return "*" * len(normalized)

    return f"{normalized[:2]}***{normalized[-2:]}"
