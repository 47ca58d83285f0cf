from __future__ import annotations

from dataclasses import dataclass
from typing import Literal

from .models import ConversationStatus, MessageType

AutoReplyAction = Literal["reply", "no_reply"]

GREETING_REPLY = "Hello! How can I help you today?"

_GREETING_KEYWORDS = ("hello", "hi")


@dataclass(frozen=True)
class AutoReplyDecision:
    action: AutoReplyAction
    reason: str
    reply_text: str | None = None


def _is_greeting(body_text: str) -> bool:
    words = "".join(ch if ch.isalnum() else " " for ch in body_text.lower()).split()
    return any(keyword in words for keyword in _GREETING_KEYWORDS)


def evaluate_autoreply(
    *,
    conversation_status: ConversationStatus,
    message_type: MessageType,
    inbound_text: str,
) -> AutoReplyDecision:
    if conversation_status != "active":
        return AutoReplyDecision(action="no_reply", reason="conversation_not_active")

    if message_type != "text":
        return AutoReplyDecision(action="no_reply", reason="not_text")

    if not _is_greeting(inbound_text):
        return AutoReplyDecision(action="no_reply", reason="no_keyword")

    return AutoReplyDecision(action="reply", reason="greeting", reply_text=GREETING_REPLY)


class GreetingAutoReply:
    """Callable policy handed to the engine when CHAT_AUTOREPLY_ENABLED is on."""

    def __call__(
        self,
        *,
        conversation_status: ConversationStatus,
        message_type: MessageType,
        inbound_text: str,
    ) -> AutoReplyDecision:
        return evaluate_autoreply(
            conversation_status=conversation_status,
            message_type=message_type,
            inbound_text=inbound_text,
        )
