"""WhatsApp webhook normalization.

Converts the two inbound payload shapes into canonical ingest events:

- the raw Meta Cloud API webhook (``entry[].changes[].value``), and
- the gateway forward envelope ``{type, data, metadata}`` where ``data`` is a
  single Meta message or status object.

Pure conversion: nothing here touches the store or the broadcaster.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Iterable

from pydantic import ValidationError as PydanticValidationError

from .models import (
    MESSAGE_STATUSES,
    MESSAGE_TYPES,
    InboundMessageEvent,
    MessageStatusEvent,
    WebhookMetadata,
    WebhookProcessRequest,
)

logger = logging.getLogger(__name__)

ChatEventValue = InboundMessageEvent | MessageStatusEvent

# Meta message types folded into the closest stored type.
_TYPE_ALIASES = {
    "button": "interactive",
    "sticker": "image",
    "voice": "audio",
}

_PLACEHOLDERS = {
    "image": "Image message",
    "document": "Document message",
    "interactive": "Interactive message",
}

_MEDIA_TYPES = {"image", "document", "audio", "video", "sticker", "voice"}


class IngestionError(ValueError):
    """Payload is not a WhatsApp webhook this service understands."""


def parse_timestamp(raw: Any) -> datetime:
    if raw is None or raw == "":
        return datetime.now(timezone.utc)
    if isinstance(raw, datetime):
        return raw if raw.tzinfo else raw.replace(tzinfo=timezone.utc)
    try:
        return datetime.fromtimestamp(int(str(raw).strip()), tz=timezone.utc)
    except (TypeError, ValueError, OverflowError, OSError) as exc:
        raise IngestionError(f"invalid timestamp: {raw!r}") from exc


def _content_for(message_type: str, data: dict[str, Any]) -> str:
    if message_type == "text":
        text = data.get("text")
        return str(text.get("body", "")) if isinstance(text, dict) else ""
    placeholder = _PLACEHOLDERS.get(message_type)
    if placeholder is not None:
        return placeholder
    return f"{message_type.capitalize()} message"


def _media_id(raw_type: str, data: dict[str, Any]) -> str | None:
    if raw_type not in _MEDIA_TYPES:
        return None
    media = data.get(raw_type)
    if isinstance(media, dict) and media.get("id"):
        return str(media["id"])
    return None


def parse_message(
    data: dict[str, Any],
    *,
    metadata: WebhookMetadata | None = None,
    profile_names: dict[str, str] | None = None,
) -> InboundMessageEvent | None:
    """Return the canonical event, or ``None`` for message types that are not stored."""

    if not isinstance(data, dict):
        raise IngestionError("message must be an object")
    sender = str(data.get("from") or "").strip()
    message_id = str(data.get("id") or "").strip()
    if not sender or not message_id:
        raise IngestionError("message requires 'from' and 'id'")

    raw_type = str(data.get("type") or "").strip().lower()
    message_type = _TYPE_ALIASES.get(raw_type, raw_type)
    if message_type not in MESSAGE_TYPES:
        logger.warning("skipping unsupported WhatsApp message type %r (id=%s)", raw_type, message_id)
        return None

    context = data.get("context")
    metadata = metadata or WebhookMetadata()
    try:
        return InboundMessageEvent(
            from_=sender,
            message_id=message_id,
            type=message_type,
            content=_content_for(message_type, data),
            timestamp=parse_timestamp(data.get("timestamp")),
            context=context if isinstance(context, dict) and context.get("id") else None,
            media_id=_media_id(raw_type, data),
            participant_name=(profile_names or {}).get(sender),
            to=metadata.display_phone_number or None,
            phone_number_id=metadata.phone_number_id or None,
        )
    except PydanticValidationError as exc:
        raise IngestionError(f"invalid message {message_id}: {exc.errors()[0]['msg']}") from exc


def parse_status(data: dict[str, Any]) -> MessageStatusEvent | None:
    """Return the canonical status event, or ``None`` for statuses outside the lattice."""

    if not isinstance(data, dict):
        raise IngestionError("status must be an object")
    message_id = str(data.get("id") or "").strip()
    if not message_id:
        raise IngestionError("status requires 'id'")
    status = str(data.get("status") or "").strip().lower()
    if status not in MESSAGE_STATUSES:
        logger.warning("skipping unsupported WhatsApp status %r for message %s", status, message_id)
        return None
    errors = data.get("errors")
    return MessageStatusEvent(
        message_id=message_id,
        status=status,
        timestamp=parse_timestamp(data.get("timestamp")),
        recipient_id=str(data.get("recipient_id") or ""),
        errors=[item for item in errors if isinstance(item, dict)] if isinstance(errors, list) else [],
    )


def parse_forwarded(request: WebhookProcessRequest) -> list[ChatEventValue]:
    if request.type == "message":
        event = parse_message(request.data, metadata=request.metadata)
    elif request.type == "status":
        event = parse_status(request.data)
    else:
        raise IngestionError(f"unsupported webhook type: {request.type}")
    return [event] if event is not None else []


def _profile_names(contacts: Iterable[Any]) -> dict[str, str]:
    names: dict[str, str] = {}
    for contact in contacts:
        if not isinstance(contact, dict):
            continue
        wa_id = contact.get("wa_id")
        profile = contact.get("profile")
        if wa_id and isinstance(profile, dict) and profile.get("name"):
            names[str(wa_id)] = str(profile["name"])
    return names


def parse_meta_payload(payload: dict[str, Any]) -> list[ChatEventValue]:
    """Flatten a Meta webhook into events, in payload order.

    Individual malformed items are logged and skipped so one bad item does not
    drop the rest of the batch.
    """

    if not isinstance(payload, dict):
        raise IngestionError("webhook payload must be an object")
    entries = payload.get("entry")
    if not isinstance(entries, list):
        raise IngestionError("webhook payload has no 'entry' list")

    events: list[ChatEventValue] = []
    for entry in entries:
        changes = entry.get("changes") if isinstance(entry, dict) else None
        if not isinstance(changes, list):
            continue
        for change in changes:
            if not isinstance(change, dict):
                continue
            field = change.get("field", "messages")
            value = change.get("value")
            if field != "messages" or not isinstance(value, dict):
                logger.debug("ignoring webhook change field=%s", field)
                continue

            raw_metadata = value.get("metadata")
            metadata = WebhookMetadata.model_validate(raw_metadata) if isinstance(raw_metadata, dict) else None
            names = _profile_names(value.get("contacts") or [])

            for item in value.get("messages") or []:
                try:
                    event = parse_message(item, metadata=metadata, profile_names=names)
                except IngestionError as exc:
                    logger.warning("skipping malformed WhatsApp message: %s", exc)
                    continue
                if event is not None:
                    events.append(event)

            for item in value.get("statuses") or []:
                try:
                    status_event = parse_status(item)
                except IngestionError as exc:
                    logger.warning("skipping malformed WhatsApp status: %s", exc)
                    continue
                if status_event is not None:
                    events.append(status_event)
    return events
