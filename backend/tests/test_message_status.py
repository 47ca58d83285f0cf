from __future__ import annotations

from itertools import permutations

import pytest

from whatsapp_chat.message_status import initial_status, is_transition, merge_status


def _fold(start: str, updates: tuple[str, ...]) -> str:
    current = start
    for value in updates:
        current = merge_status(current, value)  # type: ignore[arg-type]
    return current


def test_initial_status_depends_on_direction() -> None:
    assert initial_status("outgoing") == "sent"
    assert initial_status("incoming") == "delivered"


@pytest.mark.parametrize(
    ("current", "incoming", "expected"),
    [
        ("sent", "delivered", "delivered"),
        ("sent", "read", "read"),
        ("delivered", "read", "read"),
        ("sent", "failed", "failed"),
        ("delivered", "sent", "delivered"),
        ("read", "delivered", "read"),
        ("read", "sent", "read"),
        ("delivered", "failed", "delivered"),
        ("read", "failed", "read"),
        ("failed", "delivered", "failed"),
        ("failed", "read", "failed"),
        ("read", "read", "read"),
    ],
)
def test_merge_status_is_monotonic(current: str, incoming: str, expected: str) -> None:
    assert merge_status(current, incoming) == expected  # type: ignore[arg-type]


@pytest.mark.parametrize("order", list(permutations(("delivered", "read"))))
def test_delivered_and_read_in_any_order_end_at_read(order: tuple[str, ...]) -> None:
    assert _fold("sent", order) == "read"


def test_every_arrival_order_of_sent_delivered_read_ends_at_read() -> None:
    for order in permutations(("sent", "delivered", "read")):
        assert _fold("sent", order) == "read"


def test_failed_after_delivered_is_ignored() -> None:
    assert _fold("sent", ("delivered", "failed")) == "delivered"


def test_failed_then_late_delivery_stays_failed() -> None:
    assert _fold("sent", ("failed", "delivered", "read")) == "failed"


def test_is_transition_only_reports_forward_moves() -> None:
    assert is_transition("sent", "delivered") is True
    assert is_transition("delivered", "delivered") is False
    assert is_transition("read", "sent") is False
