"""Monotonic merge rule for message delivery status.

Provider status webhooks can arrive out of order across network hops, so a
stored status only ever moves forward along ``sent < delivered < read``.
``failed`` is terminal and can only replace ``sent``.
"""

from __future__ import annotations

from .models import MessageDirection, MessageStatus

_RANK: dict[str, int] = {"sent": 0, "delivered": 1, "read": 2}


def initial_status(direction: MessageDirection) -> MessageStatus:
    # Inbound messages already reached this system, so they start as delivered.
    return "delivered" if direction == "incoming" else "sent"


def merge_status(current: MessageStatus, incoming: MessageStatus) -> MessageStatus:
    if current == "failed":
        return current
    if incoming == "failed":
        return "failed" if current == "sent" else current
    if _RANK[incoming] > _RANK[current]:
        return incoming
    return current


def is_transition(current: MessageStatus, incoming: MessageStatus) -> bool:
    return merge_status(current, incoming) != current
