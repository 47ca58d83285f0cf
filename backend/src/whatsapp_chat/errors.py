from __future__ import annotations

from typing import Literal

ErrorKind = Literal["validation", "provider_dispatch", "not_found", "internal"]


class ChatServiceError(Exception):
    """Base class for errors surfaced by the conversation engine."""

    kind: ErrorKind = "internal"


class ValidationError(ChatServiceError, ValueError):
    """Raised when a send request is malformed. Nothing is mutated."""

    kind: ErrorKind = "validation"


class ProviderDispatchFailure(ChatServiceError):
    """Raised when the provider rejects a send, fails, or times out."""

    kind: ErrorKind = "provider_dispatch"

    def __init__(self, message: str, *, error_code: str | None = None) -> None:
        super().__init__(message)
        self.error_code = error_code


class ConversationNotFoundError(ChatServiceError, KeyError):
    """Raised when an operation references a conversation id that does not exist."""

    kind: ErrorKind = "not_found"


class InternalError(ChatServiceError, RuntimeError):
    """Raised when the store or broadcaster is unavailable."""

    kind: ErrorKind = "internal"
