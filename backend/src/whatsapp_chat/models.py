from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

MessageType = Literal[
    "text",
    "image",
    "document",
    "audio",
    "video",
    "location",
    "contacts",
    "interactive",
    "template",
]
MessageStatus = Literal["sent", "delivered", "read", "failed"]
MessageDirection = Literal["incoming", "outgoing"]
ConversationStatus = Literal["active", "paused", "closed"]
SendableMessageType = Literal["text", "template"]

MESSAGE_TYPES: frozenset[str] = frozenset(MessageType.__args__)  # type: ignore[attr-defined]
MESSAGE_STATUSES: frozenset[str] = frozenset(MessageStatus.__args__)  # type: ignore[attr-defined]
SENDABLE_MESSAGE_TYPES: frozenset[str] = frozenset(SendableMessageType.__args__)  # type: ignore[attr-defined]


def _coerce_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class WireModel(BaseModel):
    """camelCase on the wire, snake_case in Python; both accepted on input."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ---------------------------------------------------------------------------
# Canonical ingest events
# ---------------------------------------------------------------------------


class MessageContext(WireModel):
    from_: str | None = Field(default=None, alias="from")
    id: str


class InboundMessageEvent(WireModel):
    kind: Literal["message"] = "message"
    from_: str = Field(alias="from", min_length=1)
    message_id: str = Field(min_length=1)
    type: MessageType
    content: str = ""
    timestamp: datetime
    context: MessageContext | None = None
    media_id: str | None = None
    participant_name: str | None = None
    # Business number the message was addressed to, when the webhook reports one.
    to: str | None = None
    phone_number_id: str | None = None

    @field_validator("timestamp")
    @classmethod
    def _normalize_timestamp(cls, value: datetime) -> datetime:
        return _coerce_utc(value)


class MessageStatusEvent(WireModel):
    kind: Literal["status"] = "status"
    message_id: str = Field(min_length=1)
    status: MessageStatus
    timestamp: datetime
    recipient_id: str = ""
    errors: list[dict[str, Any]] = Field(default_factory=list)

    @field_validator("timestamp")
    @classmethod
    def _normalize_timestamp(cls, value: datetime) -> datetime:
        return _coerce_utc(value)




# ---------------------------------------------------------------------------
# Send API
# ---------------------------------------------------------------------------


class SendContext(WireModel):
    message_id: str = Field(min_length=1)


class SendMessageRequest(WireModel):
    # Left permissive on purpose: the engine owns validation and reports it as a typed result.
    to: str = ""
    type: str = ""
    content: str = ""
    template_name: str | None = None
    template_language: str | None = None
    template_components: list[dict[str, Any]] | None = None
    context: SendContext | None = None

    @field_validator("to", "type", "content")
    @classmethod
    def _strip(cls, value: str) -> str:
        return value.strip()


class SendMessageResponse(WireModel):
    success: bool
    message_id: str | None = None
    conversation_id: str | None = None
    error: str | None = None


# ---------------------------------------------------------------------------
# Query API
# ---------------------------------------------------------------------------


class ConversationItem(WireModel):
    id: str
    participant_id: str
    participant_name: str | None = None
    status: ConversationStatus
    last_message_at: datetime
    message_count: int
    display_phone_number: str | None = None
    phone_number_id: str | None = None
    created_at: datetime
    updated_at: datetime


class MessageItem(WireModel):
    id: str
    conversation_id: str
    from_: str = Field(alias="from")
    to: str
    type: MessageType
    content: str
    timestamp: datetime
    status: MessageStatus
    direction: MessageDirection
    provider_message_id: str | None = None
    media_id: str | None = None
    context_message_id: str | None = None
    template_name: str | None = None
    template_language: str | None = None
    template_components: list[dict[str, Any]] | None = None


class ConversationListResponse(WireModel):
    success: bool = True
    conversations: list[ConversationItem]


class ConversationResponse(WireModel):
    success: bool = True
    conversation: ConversationItem


class MessageListResponse(WireModel):
    success: bool = True
    messages: list[MessageItem]


class ChatStats(WireModel):
    total_messages: int
    total_conversations: int
    active_conversations: int


class StatsResponse(WireModel):
    success: bool = True
    stats: ChatStats


class ConversationStatusUpdateRequest(WireModel):
    status: ConversationStatus


class ErrorResponse(WireModel):
    success: bool = False
    error: str


# ---------------------------------------------------------------------------
# Webhooks
# ---------------------------------------------------------------------------


class WebhookMetadata(WireModel):
    phone_number_id: str | None = None
    display_phone_number: str | None = None


class WebhookProcessRequest(WireModel):
    """Envelope forwarded by the gateway: one raw WhatsApp message or status object."""

    type: str
    data: dict[str, Any]
    metadata: WebhookMetadata = Field(default_factory=WebhookMetadata)


class WebhookAckResponse(WireModel):
    success: bool = True
    received: int = 0


# ---------------------------------------------------------------------------
# Realtime socket frames
# ---------------------------------------------------------------------------


class RealtimeClientFrame(BaseModel):
    """Client -> server: join-conversation | leave-conversation."""

    type: str
    data: dict[str, Any] = Field(default_factory=dict)


class RealtimeServerFrame(BaseModel):
    """Server -> client: new-message | message-sent | message-status-updated | conversation-updated."""

    type: str
    data: dict[str, Any] = Field(default_factory=dict)
