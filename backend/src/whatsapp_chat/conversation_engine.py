"""Folds inbound provider events and outbound sends into conversation state.

The engine is the only writer of the message store and the only source of
realtime change events. Writes for one participant are serialized by a keyed
lock; the lock covers the store mutation and the publish that follows it, so
viewers observe events in commit order. Provider round trips run outside the
lock.
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from threading import Lock
from typing import Any, Callable, Iterator, Literal
from uuid import uuid4

from .autoreply import AutoReplyDecision
from .broadcaster import (
    EVENT_CONVERSATION_UPDATED,
    EVENT_MESSAGE_SENT,
    EVENT_MESSAGE_STATUS_UPDATED,
    EVENT_NEW_MESSAGE,
    ChangeEvent,
    RealtimeBroadcaster,
)
from .chat_store import (
    ChatStoreStats,
    ConversationRecord,
    DuplicateMessageError,
    MessageRecord,
    MessageStore,
    normalize_participant_id,
)
from .errors import (
    ChatServiceError,
    ConversationNotFoundError,
    ErrorKind,
    InternalError,
    ProviderDispatchFailure,
    ValidationError,
)
from .message_status import initial_status, is_transition, merge_status
from .models import (
    ConversationItem,
    ConversationStatus,
    InboundMessageEvent,
    MessageItem,
    MessageStatusEvent,
    SENDABLE_MESSAGE_TYPES,
    SendContext,
    SendMessageRequest,
)
from .provider import OutboundMessage, ProviderClient, ProviderDispatchResult, mask_contact_target

logger = logging.getLogger(__name__)

IngestOutcome = Literal[
    "message_created",
    "duplicate",
    "status_updated",
    "status_unchanged",
    "message_not_found",
    "failed",
]

AutoReplyPolicy = Callable[..., AutoReplyDecision]

_CONVERSATION_STATUSES = {"active", "paused", "closed"}


@dataclass(frozen=True)
class SendResult:
    success: bool
    message_id: str | None = None
    conversation_id: str | None = None
    error: str | None = None
    error_kind: ErrorKind | None = None


@dataclass(frozen=True)
class IngestResult:
    outcome: IngestOutcome
    message_id: str | None = None
    conversation_id: str | None = None
    status: str | None = None
    error: str | None = None
    pending_reply: SendMessageRequest | None = None


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def conversation_to_item(record: ConversationRecord) -> ConversationItem:
    return ConversationItem(
        id=record.conversation_id,
        participant_id=record.participant_id,
        participant_name=record.participant_name,
        status=record.status,
        last_message_at=record.last_message_at,
        message_count=record.message_count,
        display_phone_number=record.display_phone_number,
        phone_number_id=record.phone_number_id,
        created_at=record.created_at,
        updated_at=record.updated_at,
    )


def message_to_item(record: MessageRecord) -> MessageItem:
    return MessageItem(
        id=record.message_id,
        conversation_id=record.conversation_id,
        from_=record.from_id,
        to=record.to_id,
        type=record.type,
        content=record.content,
        timestamp=record.timestamp,
        status=record.status,
        direction=record.direction,
        provider_message_id=record.provider_message_id,
        media_id=record.media_id,
        context_message_id=record.context_message_id,
        template_name=record.template_name,
        template_language=record.template_language,
        template_components=list(record.template_components) or None,
    )


def _wire(item: ConversationItem | MessageItem) -> dict[str, Any]:
    return item.model_dump(mode="json", by_alias=True)


class _KeyedLocks:
    """One lock per key, created on demand and discarded when nobody holds or waits on it."""

    def __init__(self) -> None:
        self._guard = Lock()
        self._entries: dict[str, list[Any]] = {}

    @contextmanager
    def hold(self, key: str) -> Iterator[None]:
        with self._guard:
            entry = self._entries.get(key)
            if entry is None:
                entry = [Lock(), 0]
                self._entries[key] = entry
            entry[1] += 1
        try:
            with entry[0]:
                yield
        finally:
            with self._guard:
                entry[1] -= 1
                if entry[1] == 0:
                    self._entries.pop(key, None)


class ConversationEngine:
    def __init__(
        self,
        *,
        store: MessageStore,
        provider: ProviderClient,
        broadcaster: RealtimeBroadcaster,
        business_number: str,
        autoreply: AutoReplyPolicy | None = None,
        default_template_language: str = "en_US",
    ) -> None:
        self._store = store
        self._provider = provider
        self._broadcaster = broadcaster
        self._business_number = business_number
        self._autoreply = autoreply
        self._default_template_language = default_template_language
        self._locks = _KeyedLocks()

    def reset(self) -> None:
        self._store.reset()

    # ------------------------------------------------------------------
    # Ingest
    # ------------------------------------------------------------------

    def ingest(self, event: InboundMessageEvent | MessageStatusEvent) -> IngestResult:
        try:
            if isinstance(event, InboundMessageEvent):
                return self._ingest_message(event)
            return self._ingest_status(event)
        except Exception as exc:
            logger.exception("failed to ingest %s event %s", event.kind, event.message_id)
            return IngestResult(outcome="failed", message_id=event.message_id, error=str(exc) or type(exc).__name__)

    def _ingest_message(self, event: InboundMessageEvent) -> IngestResult:
        participant_key = normalize_participant_id(event.from_)
        with self._locks.hold(participant_key):
            existing = self._store.find_message_by_provider_message_id(event.message_id)
            if existing is not None:
                logger.info("ignoring redelivered inbound message %s", event.message_id)
                return IngestResult(
                    outcome="duplicate",
                    message_id=existing.message_id,
                    conversation_id=existing.conversation_id,
                )

            conversation, created = self._store.create_or_get_conversation(
                participant_id=event.from_,
                started_at=event.timestamp,
                participant_name=event.participant_name,
                display_phone_number=event.to,
                phone_number_id=event.phone_number_id,
            )
            if created:
                logger.info(
                    "created conversation %s for participant %s",
                    conversation.conversation_id,
                    mask_contact_target(event.from_),
                )

            message = MessageRecord(
                message_id=str(uuid4()),
                conversation_id=conversation.conversation_id,
                from_id=event.from_,
                to_id=event.to or self._business_number,
                type=event.type,
                content=event.content,
                timestamp=event.timestamp,
                status=initial_status("incoming"),
                direction="incoming",
                provider_message_id=event.message_id,
                media_id=event.media_id,
                context_message_id=event.context.id if event.context else None,
            )
            try:
                conversation = self._store.put_message(message)
            except DuplicateMessageError:
                self._discard_if_created(conversation, created)
                logger.info("ignoring redelivered inbound message %s", event.message_id)
                stored = self._store.find_message_by_provider_message_id(event.message_id)
                return IngestResult(
                    outcome="duplicate",
                    message_id=stored.message_id if stored else None,
                    conversation_id=stored.conversation_id if stored else None,
                )
            except Exception:
                self._discard_if_created(conversation, created)
                raise

            conversation_payload = _wire(conversation_to_item(conversation))
            self._publish(
                ChangeEvent(
                    name=EVENT_NEW_MESSAGE,
                    payload={"message": _wire(message_to_item(message)), "conversation": conversation_payload},
                    room=conversation.conversation_id,
                )
            )
            self._publish(ChangeEvent(name=EVENT_CONVERSATION_UPDATED, payload={"conversation": conversation_payload}))

        pending_reply = self._auto_reply_request(event, conversation)
        return IngestResult(
            outcome="message_created",
            message_id=message.message_id,
            conversation_id=conversation.conversation_id,
            status=message.status,
            pending_reply=pending_reply,
        )

    def _ingest_status(self, event: MessageStatusEvent) -> IngestResult:
        located = self._find_message(event.message_id)
        if located is None:
            logger.info("message-not-found: status %s for unknown message %s", event.status, event.message_id)
            return IngestResult(outcome="message_not_found", message_id=event.message_id, status=event.status)

        conversation = self._store.get_conversation(located.conversation_id)
        if conversation is None:
            raise InternalError(f"message {located.message_id} references missing conversation {located.conversation_id}")

        with self._locks.hold(conversation.participant_id):
            current = self._store.get_message(located.message_id)
            if current is None:
                raise InternalError(f"message {located.message_id} disappeared from the store")
            if not is_transition(current.status, event.status):
                logger.debug(
                    "ignoring status %s for message %s already at %s", event.status, current.message_id, current.status
                )
                return IngestResult(
                    outcome="status_unchanged",
                    message_id=current.message_id,
                    conversation_id=current.conversation_id,
                    status=current.status,
                )
            merged = merge_status(current.status, event.status)
            if not self._store.update_status(current.message_id, merged):
                raise InternalError(f"message {current.message_id} disappeared from the store")
            self._publish(
                ChangeEvent(
                    name=EVENT_MESSAGE_STATUS_UPDATED,
                    payload={
                        "messageId": current.message_id,
                        "conversationId": current.conversation_id,
                        "status": merged,
                        "recipientId": event.recipient_id,
                        "timestamp": event.timestamp.isoformat(),
                    },
                )
            )
        return IngestResult(
            outcome="status_updated",
            message_id=current.message_id,
            conversation_id=current.conversation_id,
            status=merged,
        )

    def _find_message(self, message_id: str) -> MessageRecord | None:
        found = self._store.get_message(message_id)
        if found is not None:
            return found
        return self._store.find_message_by_provider_message_id(message_id)

    def _discard_if_created(self, conversation: ConversationRecord, created: bool) -> None:
        # Only a conversation this call created and never filled is removed.
        if created and self._store.discard_empty_conversation(conversation.conversation_id):
            logger.info("discarded empty conversation %s", conversation.conversation_id)

    def _auto_reply_request(
        self, event: InboundMessageEvent, conversation: ConversationRecord
    ) -> SendMessageRequest | None:
        if self._autoreply is None:
            return None
        decision = self._autoreply(
            conversation_status=conversation.status,
            message_type=event.type,
            inbound_text=event.content,
        )
        if decision.action != "reply" or not decision.reply_text:
            return None
        return SendMessageRequest(
            to=event.from_,
            type="text",
            content=decision.reply_text,
            context=SendContext(message_id=event.message_id),
        )

    def send_auto_reply(self, request: SendMessageRequest) -> SendResult:
        """Send a reply returned as ``IngestResult.pending_reply``.

        Kept apart from ``ingest`` so webhook handlers can acknowledge the
        provider before the reply's own provider round trip.
        """
        result = self.send(request)
        if not result.success:
            logger.warning(
                "auto-reply to %s failed (%s): %s", mask_contact_target(request.to), result.error_kind, result.error
            )
        return result

    # ------------------------------------------------------------------
    # Send
    # ------------------------------------------------------------------

    def send(self, request: SendMessageRequest) -> SendResult:
        try:
            outbound = self._validate(request)
        except ValidationError as exc:
            return SendResult(success=False, error=str(exc), error_kind="validation")

        try:
            dispatch = self._provider.dispatch(outbound)
        except ProviderDispatchFailure as exc:
            dispatch = ProviderDispatchResult(
                success=False,
                attempted_at=_now_utc(),
                error_code=exc.error_code or "provider_failure",
                error_message=str(exc) or type(exc).__name__,
            )
        except Exception as exc:
            logger.exception("provider dispatch raised for %s", mask_contact_target(outbound.to))
            dispatch = ProviderDispatchResult(
                success=False,
                attempted_at=_now_utc(),
                error_code="provider_exception",
                error_message=str(exc) or type(exc).__name__,
            )

        external_id = (dispatch.external_message_id or "").strip()
        if not dispatch.success or not external_id:
            error = dispatch.error_message or "provider did not return a message id"
            logger.warning(
                "send to %s failed: %s (%s)",
                mask_contact_target(outbound.to),
                error,
                dispatch.error_code or "no_error_code",
            )
            return SendResult(success=False, error=error, error_kind="provider_dispatch")

        try:
            with self._locks.hold(normalize_participant_id(outbound.to)):
                conversation, created = self._store.create_or_get_conversation(
                    participant_id=outbound.to, started_at=_now_utc()
                )
                message = MessageRecord(
                    message_id=external_id,
                    conversation_id=conversation.conversation_id,
                    from_id=self._business_number,
                    to_id=outbound.to,
                    type=outbound.type,
                    content=outbound.content,
                    timestamp=_now_utc(),
                    status=initial_status("outgoing"),
                    direction="outgoing",
                    provider_message_id=external_id,
                    context_message_id=outbound.context_message_id,
                    template_name=outbound.template_name,
                    template_language=outbound.template_language,
                    template_components=outbound.template_components,
                )
                try:
                    conversation = self._store.put_message(message)
                except Exception:
                    self._discard_if_created(conversation, created)
                    raise
                conversation_payload = _wire(conversation_to_item(conversation))
                self._publish(
                    ChangeEvent(
                        name=EVENT_MESSAGE_SENT,
                        payload={
                            "messageId": message.message_id,
                            "message": _wire(message_to_item(message)),
                            "conversation": conversation_payload,
                        },
                        room=conversation.conversation_id,
                    )
                )
                self._publish(
                    ChangeEvent(name=EVENT_CONVERSATION_UPDATED, payload={"conversation": conversation_payload})
                )
        except Exception as exc:
            logger.exception("provider accepted %s but recording it failed", external_id)
            return SendResult(
                success=False,
                message_id=external_id,
                error=str(exc) or type(exc).__name__,
                error_kind="internal",
            )

        logger.info("sent %s message %s to %s", outbound.type, external_id, mask_contact_target(outbound.to))
        return SendResult(success=True, message_id=external_id, conversation_id=conversation.conversation_id)

    def _validate(self, request: SendMessageRequest) -> OutboundMessage:
        missing = [name for name in ("to", "type", "content") if not getattr(request, name).strip()]
        if missing:
            raise ValidationError(f"Missing required fields: {', '.join(missing)}")
        if request.type not in SENDABLE_MESSAGE_TYPES:
            raise ValidationError(f"Unsupported message type: {request.type}")
        template_name = (request.template_name or "").strip() or None
        template_language = None
        if request.type == "template":
            if template_name is None:
                raise ValidationError("templateName is required for template messages")
            template_language = (request.template_language or "").strip() or self._default_template_language
        return OutboundMessage(
            to=request.to.strip(),
            type=request.type,  # type: ignore[arg-type]
            content=request.content,
            template_name=template_name if request.type == "template" else None,
            template_language=template_language,
            template_components=tuple(request.template_components or ()) if request.type == "template" else (),
            context_message_id=request.context.message_id if request.context else None,
        )

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_conversation(self, conversation_id: str) -> ConversationRecord:
        with self._store_guard():
            conversation = self._store.get_conversation(conversation_id)
        if conversation is None:
            raise ConversationNotFoundError(conversation_id)
        return conversation

    def get_conversation_by_participant(self, participant_id: str) -> ConversationRecord | None:
        with self._store_guard():
            return self._store.get_conversation_by_participant(participant_id)

    def get_conversation_messages(self, conversation_id: str, *, limit: int | None = None) -> list[MessageRecord]:
        self.get_conversation(conversation_id)
        with self._store_guard():
            return self._store.list_by_conversation(conversation_id, limit=limit)

    def get_active_conversations(self, *, limit: int) -> list[ConversationRecord]:
        with self._store_guard():
            return self._store.list_active_conversations(limit=limit)

    def get_stats(self) -> ChatStoreStats:
        with self._store_guard():
            return self._store.stats()

    def set_conversation_status(self, conversation_id: str, status: ConversationStatus) -> ConversationRecord:
        if status not in _CONVERSATION_STATUSES:
            raise ValidationError(f"Unsupported conversation status: {status}")
        conversation = self.get_conversation(conversation_id)
        with self._locks.hold(conversation.participant_id):
            with self._store_guard():
                current = self._store.get_conversation(conversation_id)
                if current is None:
                    raise ConversationNotFoundError(conversation_id)
                if current.status == status:
                    return current
                updated = self._store.put_conversation(
                    ConversationRecord(
                        conversation_id=current.conversation_id,
                        participant_id=current.participant_id,
                        participant_name=current.participant_name,
                        status=status,
                        last_message_at=current.last_message_at,
                        message_count=current.message_count,
                        display_phone_number=current.display_phone_number,
                        phone_number_id=current.phone_number_id,
                        created_at=current.created_at,
                        updated_at=_now_utc(),
                    )
                )
            self._publish(
                ChangeEvent(name=EVENT_CONVERSATION_UPDATED, payload={"conversation": _wire(conversation_to_item(updated))})
            )
        logger.info("conversation %s moved from %s to %s", conversation_id, current.status, status)
        return updated

    @contextmanager
    def _store_guard(self) -> Iterator[None]:
        try:
            yield
        except ChatServiceError:
            raise
        except Exception as exc:
            logger.exception("message store operation failed")
            raise InternalError("message store unavailable") from exc

    def _publish(self, event: ChangeEvent) -> None:
        self._broadcaster.publish(event)
