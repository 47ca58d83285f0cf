from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass, field
from threading import RLock
from typing import Any, Protocol
from uuid import uuid4

logger = logging.getLogger(__name__)

EVENT_NEW_MESSAGE = "new-message"
EVENT_MESSAGE_SENT = "message-sent"
EVENT_MESSAGE_STATUS_UPDATED = "message-status-updated"
EVENT_CONVERSATION_UPDATED = "conversation-updated"


@dataclass(frozen=True)
class ChangeEvent:
    """A state change fanned out to viewers. ``room=None`` means every connected subscriber."""

    name: str
    payload: dict[str, Any]
    room: str | None = None


class Subscriber(Protocol):
    subscriber_id: str

    def deliver(self, event: ChangeEvent) -> None: ...


@dataclass
class QueueSubscriber:
    """Collects delivered events in memory. Used by in-process consumers and tests."""

    subscriber_id: str = field(default_factory=lambda: uuid4().hex)
    events: list[ChangeEvent] = field(default_factory=list)

    def deliver(self, event: ChangeEvent) -> None:
        self.events.append(event)

    def names(self) -> list[str]:
        return [event.name for event in self.events]


class RealtimeBroadcaster:
    """Room-scoped and global fan-out.

    Deliveries happen while the broadcaster lock is held, so every subscriber
    sees events in exactly the order ``publish`` was called. ``deliver`` must
    therefore only enqueue; a subscriber that raises is dropped.
    """

    def __init__(self) -> None:
        self._lock = RLock()
        self._subscribers: dict[str, Subscriber] = {}
        self._rooms: dict[str, set[str]] = defaultdict(set)
        self._memberships: dict[str, set[str]] = defaultdict(set)

    def connect(self, subscriber: Subscriber) -> None:
        with self._lock:
            self._subscribers[subscriber.subscriber_id] = subscriber

    def disconnect(self, subscriber: Subscriber) -> None:
        with self._lock:
            self._drop(subscriber.subscriber_id)

    def join(self, subscriber: Subscriber, room: str) -> None:
        with self._lock:
            if subscriber.subscriber_id not in self._subscribers:
                raise KeyError(f"subscriber {subscriber.subscriber_id} is not connected")
            self._rooms[room].add(subscriber.subscriber_id)
            self._memberships[subscriber.subscriber_id].add(room)

    def leave(self, subscriber: Subscriber, room: str) -> None:
        with self._lock:
            members = self._rooms.get(room)
            if members is not None:
                members.discard(subscriber.subscriber_id)
                if not members:
                    del self._rooms[room]
            rooms = self._memberships.get(subscriber.subscriber_id)
            if rooms is not None:
                rooms.discard(room)

    def rooms_of(self, subscriber: Subscriber) -> frozenset[str]:
        with self._lock:
            return frozenset(self._memberships.get(subscriber.subscriber_id, ()))

    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscribers)

    def publish(self, event: ChangeEvent) -> int:
        delivered = 0
        with self._lock:
            if event.room is None:
                targets = list(self._subscribers.values())
            else:
                targets = [
                    self._subscribers[subscriber_id]
                    for subscriber_id in sorted(self._rooms.get(event.room, ()))
                    if subscriber_id in self._subscribers
                ]
            for subscriber in targets:
                try:
                    subscriber.deliver(event)
                except Exception:
                    logger.warning(
                        "dropping realtime subscriber %s after failed delivery of %s",
                        subscriber.subscriber_id,
                        event.name,
                        exc_info=True,
                    )
                    self._drop(subscriber.subscriber_id)
                    continue
                delivered += 1
        return delivered

    def _drop(self, subscriber_id: str) -> None:
        self._subscribers.pop(subscriber_id, None)
        for room in self._memberships.pop(subscriber_id, set()):
            members = self._rooms.get(room)
            if members is None:
                continue
            members.discard(subscriber_id)
            if not members:
                del self._rooms[room]
