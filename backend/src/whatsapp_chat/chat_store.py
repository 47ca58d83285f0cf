from __future__ import annotations

import json
import re
from collections import defaultdict
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from threading import Lock
from typing import Any, Protocol
from uuid import uuid4

from sqlalchemy import DateTime, ForeignKey, Integer, String, Text, create_engine, func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, sessionmaker

from .errors import ConversationNotFoundError
from .models import ConversationStatus, MessageDirection, MessageStatus, MessageType


@dataclass(frozen=True)
class ConversationRecord:
    conversation_id: str
    participant_id: str
    participant_name: str | None
    status: ConversationStatus
    last_message_at: datetime
    message_count: int
    display_phone_number: str | None
    phone_number_id: str | None
    created_at: datetime
    updated_at: datetime


@dataclass(frozen=True)
class MessageRecord:
    message_id: str
    conversation_id: str
    from_id: str
    to_id: str
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
    template_components: tuple[dict[str, Any], ...] = ()


@dataclass(frozen=True)
class ChatStoreStats:
    total_messages: int
    total_conversations: int
    active_conversations: int


class DuplicateMessageError(ValueError):
    """Raised when a message id (or provider message id) is already stored."""


class MessageStore(Protocol):
    def reset(self) -> None: ...

    def create_or_get_conversation(
        self,
        *,
        participant_id: str,
        started_at: datetime,
        participant_name: str | None = None,
        display_phone_number: str | None = None,
        phone_number_id: str | None = None,
    ) -> tuple[ConversationRecord, bool]: ...

    def put_conversation(self, conversation: ConversationRecord) -> ConversationRecord: ...

    def discard_empty_conversation(self, conversation_id: str) -> bool: ...

    def get_conversation(self, conversation_id: str) -> ConversationRecord | None: ...

    def get_conversation_by_participant(self, participant_id: str) -> ConversationRecord | None: ...

    def list_active_conversations(self, *, limit: int) -> list[ConversationRecord]: ...

    def put_message(self, message: MessageRecord) -> ConversationRecord: ...

    def get_message(self, message_id: str) -> MessageRecord | None: ...

    def find_message_by_provider_message_id(self, provider_message_id: str) -> MessageRecord | None: ...

    def list_by_conversation(self, conversation_id: str, *, limit: int | None = None) -> list[MessageRecord]: ...

    def update_status(self, message_id: str, status: MessageStatus) -> bool: ...

    def stats(self) -> ChatStoreStats: ...


_PHONE_LIKE = re.compile(r"^\+?[\d\s\-().]+$")


def normalize_participant_id(value: str) -> str:
    normalized = value.strip()
    if _PHONE_LIKE.match(normalized):
        digits = "".join(ch for ch in normalized if ch.isdigit())
        return digits or normalized
    return normalized


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def _coerce_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _next_last_message_at(conversation: ConversationRecord, timestamp: datetime) -> datetime:
    if conversation.message_count == 0:
        return timestamp
    return max(conversation.last_message_at, timestamp)


def _dump_components(components: tuple[dict[str, Any], ...]) -> str | None:
    if not components:
        return None
    return json.dumps(list(components), sort_keys=True)


def _load_components(raw: str | None) -> tuple[dict[str, Any], ...]:
    if not raw:
        return ()
    return tuple(json.loads(raw))


class InMemoryMessageStore:
    """Process-local store. Every operation runs under one lock, so each is atomic."""

    def __init__(self) -> None:
        self._lock = Lock()
        self._conversations: dict[str, ConversationRecord] = {}
        self._conversation_by_participant: dict[str, str] = {}
        self._messages: dict[str, MessageRecord] = {}
        self._message_ids_by_conversation: dict[str, list[str]] = defaultdict(list)
        self._message_id_by_provider_id: dict[str, str] = {}

    def reset(self) -> None:
        with self._lock:
            self._conversations.clear()
            self._conversation_by_participant.clear()
            self._messages.clear()
            self._message_ids_by_conversation.clear()
            self._message_id_by_provider_id.clear()

    def create_or_get_conversation(
        self,
        *,
        participant_id: str,
        started_at: datetime,
        participant_name: str | None = None,
        display_phone_number: str | None = None,
        phone_number_id: str | None = None,
    ) -> tuple[ConversationRecord, bool]:
        key = normalize_participant_id(participant_id)
        with self._lock:
            existing_id = self._conversation_by_participant.get(key)
            if existing_id is not None:
                existing = self._conversations[existing_id]
                if participant_name and not existing.participant_name:
                    existing = replace(existing, participant_name=participant_name, updated_at=_now_utc())
                    self._conversations[existing_id] = existing
                return existing, False

            now = _now_utc()
            created = ConversationRecord(
                conversation_id=str(uuid4()),
                participant_id=key,
                participant_name=participant_name,
                status="active",
                last_message_at=_coerce_utc(started_at),
                message_count=0,
                display_phone_number=display_phone_number,
                phone_number_id=phone_number_id,
                created_at=now,
                updated_at=now,
            )
            self._conversations[created.conversation_id] = created
            self._conversation_by_participant[key] = created.conversation_id
            return created, True

    def put_conversation(self, conversation: ConversationRecord) -> ConversationRecord:
        key = normalize_participant_id(conversation.participant_id)
        with self._lock:
            owner = self._conversation_by_participant.get(key)
            if owner is not None and owner != conversation.conversation_id:
                raise ValueError(f"participant {key} already owns conversation {owner}")
            previous = self._conversations.get(conversation.conversation_id)
            if previous is not None and previous.participant_id != key:
                self._conversation_by_participant.pop(previous.participant_id, None)
            stored = replace(conversation, participant_id=key)
            self._conversations[stored.conversation_id] = stored
            self._conversation_by_participant[key] = stored.conversation_id
            return stored

    def discard_empty_conversation(self, conversation_id: str) -> bool:
        with self._lock:
            conversation = self._conversations.get(conversation_id)
            if conversation is None or conversation.message_count > 0:
                return False
            del self._conversations[conversation_id]
            self._conversation_by_participant.pop(conversation.participant_id, None)
            self._message_ids_by_conversation.pop(conversation_id, None)
            return True

    def get_conversation(self, conversation_id: str) -> ConversationRecord | None:
        with self._lock:
            return self._conversations.get(conversation_id)

    def get_conversation_by_participant(self, participant_id: str) -> ConversationRecord | None:
        key = normalize_participant_id(participant_id)
        with self._lock:
            conversation_id = self._conversation_by_participant.get(key)
            if conversation_id is None:
                return None
            return self._conversations.get(conversation_id)

    def list_active_conversations(self, *, limit: int) -> list[ConversationRecord]:
        with self._lock:
            active = [value for value in self._conversations.values() if value.status == "active"]
        ordered = sorted(active, key=lambda value: value.last_message_at, reverse=True)
        return ordered[:limit]

    def put_message(self, message: MessageRecord) -> ConversationRecord:
        with self._lock:
            conversation = self._conversations.get(message.conversation_id)
            if conversation is None:
                raise ConversationNotFoundError(message.conversation_id)
            if message.message_id in self._messages:
                raise DuplicateMessageError(message.message_id)
            if message.provider_message_id and message.provider_message_id in self._message_id_by_provider_id:
                raise DuplicateMessageError(message.provider_message_id)

            self._messages[message.message_id] = message
            self._message_ids_by_conversation[message.conversation_id].append(message.message_id)
            if message.provider_message_id:
                self._message_id_by_provider_id[message.provider_message_id] = message.message_id

            updated = replace(
                conversation,
                last_message_at=_next_last_message_at(conversation, message.timestamp),
                message_count=conversation.message_count + 1,
                updated_at=_now_utc(),
            )
            self._conversations[conversation.conversation_id] = updated
            return updated

    def get_message(self, message_id: str) -> MessageRecord | None:
        with self._lock:
            return self._messages.get(message_id)

    def find_message_by_provider_message_id(self, provider_message_id: str) -> MessageRecord | None:
        with self._lock:
            message_id = self._message_id_by_provider_id.get(provider_message_id)
            if message_id is None:
                return None
            return self._messages.get(message_id)

    def list_by_conversation(self, conversation_id: str, *, limit: int | None = None) -> list[MessageRecord]:
        with self._lock:
            ids = list(self._message_ids_by_conversation.get(conversation_id, []))
            messages = [self._messages[message_id] for message_id in ids]
        # sorted() is stable, so equal timestamps keep arrival order.
        ordered = sorted(messages, key=lambda value: value.timestamp)
        if limit is None:
            return ordered
        return ordered[-limit:] if limit > 0 else []

    def update_status(self, message_id: str, status: MessageStatus) -> bool:
        with self._lock:
            message = self._messages.get(message_id)
            if message is None:
                return False
            self._messages[message_id] = replace(message, status=status)
            return True

    def stats(self) -> ChatStoreStats:
        with self._lock:
            active = sum(1 for value in self._conversations.values() if value.status == "active")
            return ChatStoreStats(
                total_messages=len(self._messages),
                total_conversations=len(self._conversations),
                active_conversations=active,
            )


class ChatStoreBase(DeclarativeBase):
    pass


class _ConversationRow(ChatStoreBase):
    __tablename__ = "chat_conversations"

    conversation_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    participant_id: Mapped[str] = mapped_column(String(128), nullable=False, unique=True)
    participant_name: Mapped[str | None] = mapped_column(String(256), nullable=True)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="active", index=True)
    last_message_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)
    message_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    display_phone_number: Mapped[str | None] = mapped_column(String(64), nullable=True)
    phone_number_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class _MessageRow(ChatStoreBase):
    __tablename__ = "chat_messages"

    message_id: Mapped[str] = mapped_column(String(256), primary_key=True)
    conversation_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("chat_conversations.conversation_id"), nullable=False, index=True
    )
    from_id: Mapped[str] = mapped_column(String(128), nullable=False)
    to_id: Mapped[str] = mapped_column(String(128), nullable=False)
    type: Mapped[str] = mapped_column(String(16), nullable=False)
    content: Mapped[str] = mapped_column(Text, nullable=False)
    timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)
    status: Mapped[str] = mapped_column(String(16), nullable=False)
    direction: Mapped[str] = mapped_column(String(16), nullable=False)
    provider_message_id: Mapped[str | None] = mapped_column(String(256), nullable=True, unique=True)
    media_id: Mapped[str | None] = mapped_column(String(256), nullable=True)
    context_message_id: Mapped[str | None] = mapped_column(String(256), nullable=True)
    template_name: Mapped[str | None] = mapped_column(String(256), nullable=True)
    template_language: Mapped[str | None] = mapped_column(String(32), nullable=True)
    template_components_json: Mapped[str | None] = mapped_column(Text, nullable=True)
    stored_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class SqlAlchemyMessageStore:
    def __init__(self, database_url: str) -> None:
        if not database_url:
            raise RuntimeError("DATABASE_URL is required for CHAT_STORE_BACKEND=postgres")
        self._engine = create_engine(database_url, future=True, pool_pre_ping=True)
        self._session_factory = sessionmaker(self._engine, expire_on_commit=False, future=True)
        if database_url.startswith("sqlite"):
            ChatStoreBase.metadata.create_all(self._engine)

    def _session(self):
        return self._session_factory()

    def reset(self) -> None:
        with self._session() as session:
            with session.begin():
                session.query(_MessageRow).delete()
                session.query(_ConversationRow).delete()

    def create_or_get_conversation(
        self,
        *,
        participant_id: str,
        started_at: datetime,
        participant_name: str | None = None,
        display_phone_number: str | None = None,
        phone_number_id: str | None = None,
    ) -> tuple[ConversationRecord, bool]:
        key = normalize_participant_id(participant_id)
        try:
            with self._session() as session:
                with session.begin():
                    row = session.scalar(select(_ConversationRow).where(_ConversationRow.participant_id == key))
                    created = row is None
                    if row is None:
                        now = _now_utc()
                        row = _ConversationRow(
                            conversation_id=str(uuid4()),
                            participant_id=key,
                            participant_name=participant_name,
                            status="active",
                            last_message_at=_coerce_utc(started_at),
                            message_count=0,
                            display_phone_number=display_phone_number,
                            phone_number_id=phone_number_id,
                            created_at=now,
                            updated_at=now,
                        )
                        session.add(row)
                    elif participant_name and not row.participant_name:
                        row.participant_name = participant_name
                        row.updated_at = _now_utc()
                    session.flush()
                    return self._conversation_record(row), created
        except IntegrityError:
            # Another writer inserted the participant first; the unique index keeps one row.
            existing = self.get_conversation_by_participant(key)
            if existing is None:
                raise
            return existing, False

    def put_conversation(self, conversation: ConversationRecord) -> ConversationRecord:
        key = normalize_participant_id(conversation.participant_id)
        with self._session() as session:
            with session.begin():
                row = session.get(_ConversationRow, conversation.conversation_id)
                if row is None:
                    row = _ConversationRow(conversation_id=conversation.conversation_id)
                    session.add(row)
                row.participant_id = key
                row.participant_name = conversation.participant_name
                row.status = conversation.status
                row.last_message_at = conversation.last_message_at
                row.message_count = conversation.message_count
                row.display_phone_number = conversation.display_phone_number
                row.phone_number_id = conversation.phone_number_id
                row.created_at = conversation.created_at
                row.updated_at = conversation.updated_at
                session.flush()
                return self._conversation_record(row)

    def discard_empty_conversation(self, conversation_id: str) -> bool:
        with self._session() as session:
            with session.begin():
                row = session.get(_ConversationRow, conversation_id, with_for_update=True)
                if row is None or row.message_count > 0:
                    return False
                session.delete(row)
                return True

    def get_conversation(self, conversation_id: str) -> ConversationRecord | None:
        with self._session() as session:
            row = session.get(_ConversationRow, conversation_id)
            return self._conversation_record(row) if row is not None else None

    def get_conversation_by_participant(self, participant_id: str) -> ConversationRecord | None:
        key = normalize_participant_id(participant_id)
        with self._session() as session:
            row = session.scalar(select(_ConversationRow).where(_ConversationRow.participant_id == key))
            return self._conversation_record(row) if row is not None else None

    def list_active_conversations(self, *, limit: int) -> list[ConversationRecord]:
        with self._session() as session:
            rows = session.scalars(
                select(_ConversationRow)
                .where(_ConversationRow.status == "active")
                .order_by(_ConversationRow.last_message_at.desc())
                .limit(limit)
            ).all()
            return [self._conversation_record(row) for row in rows]

    def put_message(self, message: MessageRecord) -> ConversationRecord:
        try:
            with self._session() as session:
                with session.begin():
                    conversation = session.get(_ConversationRow, message.conversation_id, with_for_update=True)
                    if conversation is None:
                        raise ConversationNotFoundError(message.conversation_id)
                    if session.get(_MessageRow, message.message_id) is not None:
                        raise DuplicateMessageError(message.message_id)
                    now = _now_utc()
                    session.add(
                        _MessageRow(
                            message_id=message.message_id,
                            conversation_id=message.conversation_id,
                            from_id=message.from_id,
                            to_id=message.to_id,
                            type=message.type,
                            content=message.content,
                            timestamp=message.timestamp,
                            status=message.status,
                            direction=message.direction,
                            provider_message_id=message.provider_message_id,
                            media_id=message.media_id,
                            context_message_id=message.context_message_id,
                            template_name=message.template_name,
                            template_language=message.template_language,
                            template_components_json=_dump_components(message.template_components),
                            stored_at=now,
                        )
                    )
                    if conversation.message_count == 0:
                        conversation.last_message_at = message.timestamp
                    else:
                        conversation.last_message_at = max(
                            _coerce_utc(conversation.last_message_at), _coerce_utc(message.timestamp)
                        )
                    conversation.message_count += 1
                    conversation.updated_at = now
                    session.flush()
                    return self._conversation_record(conversation)
        except IntegrityError as exc:
            raise DuplicateMessageError(message.provider_message_id or message.message_id) from exc

    def get_message(self, message_id: str) -> MessageRecord | None:
        with self._session() as session:
            row = session.get(_MessageRow, message_id)
            return self._message_record(row) if row is not None else None

    def find_message_by_provider_message_id(self, provider_message_id: str) -> MessageRecord | None:
        with self._session() as session:
            row = session.scalar(select(_MessageRow).where(_MessageRow.provider_message_id == provider_message_id))
            return self._message_record(row) if row is not None else None

    def list_by_conversation(self, conversation_id: str, *, limit: int | None = None) -> list[MessageRecord]:
        if limit is not None and limit <= 0:
            return []
        with self._session() as session:
            query = (
                select(_MessageRow)
                .where(_MessageRow.conversation_id == conversation_id)
                .order_by(_MessageRow.timestamp.desc(), _MessageRow.stored_at.desc(), _MessageRow.message_id.desc())
            )
            if limit is not None:
                query = query.limit(limit)
            rows = session.scalars(query).all()
            return [self._message_record(row) for row in reversed(rows)]

    def update_status(self, message_id: str, status: MessageStatus) -> bool:
        with self._session() as session:
            with session.begin():
                row = session.get(_MessageRow, message_id, with_for_update=True)
                if row is None:
                    return False
                row.status = status
                return True

    def stats(self) -> ChatStoreStats:
        with self._session() as session:
            total_messages = session.scalar(select(func.count()).select_from(_MessageRow)) or 0
            total_conversations = session.scalar(select(func.count()).select_from(_ConversationRow)) or 0
            active_conversations = (
                session.scalar(
                    select(func.count()).select_from(_ConversationRow).where(_ConversationRow.status == "active")
                )
                or 0
            )
            return ChatStoreStats(
                total_messages=int(total_messages),
                total_conversations=int(total_conversations),
                active_conversations=int(active_conversations),
            )

    @staticmethod
    def _conversation_record(row: _ConversationRow) -> ConversationRecord:
        return ConversationRecord(
            conversation_id=row.conversation_id,
            participant_id=row.participant_id,
            participant_name=row.participant_name,
            status=row.status,  # type: ignore[arg-type]
            last_message_at=_coerce_utc(row.last_message_at),
            message_count=row.message_count,
            display_phone_number=row.display_phone_number,
            phone_number_id=row.phone_number_id,
            created_at=_coerce_utc(row.created_at),
            updated_at=_coerce_utc(row.updated_at),
        )

    @staticmethod
    def _message_record(row: _MessageRow) -> MessageRecord:
        return MessageRecord(
            message_id=row.message_id,
            conversation_id=row.conversation_id,
            from_id=row.from_id,
            to_id=row.to_id,
            type=row.type,  # type: ignore[arg-type]
            content=row.content,
            timestamp=_coerce_utc(row.timestamp),
            status=row.status,  # type: ignore[arg-type]
            direction=row.direction,  # type: ignore[arg-type]
            provider_message_id=row.provider_message_id,
            media_id=row.media_id,
            context_message_id=row.context_message_id,
            template_name=row.template_name,
            template_language=row.template_language,
            template_components=_load_components(row.template_components_json),
        )


def create_message_store(*, backend: str, database_url: str) -> MessageStore:
    normalized = backend.strip().lower()
    if normalized == "postgres":
        return SqlAlchemyMessageStore(database_url)
    if normalized == "inmemory":
        return InMemoryMessageStore()
    raise RuntimeError(f"unsupported CHAT_STORE_BACKEND: {backend}")
