"""
Error taxonomy shared by the storage, manager and orchestration layers.

Domain errors carry a short message that is safe to show to the end user.
InfrastructureError keeps the technical detail for the operator log and
exposes only a generic message.
"""

from typing import Optional


class BotError(Exception):
    """Base class for all expected errors."""

    kind: str = "error"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    @property
    def user_message(self) -> str:
        return self.message


class ValidationError(BotError):
    """Bad input shape, length or range. Never retried."""

    kind = "validation"


class NotFound(BotError):
    """A referenced user, chat or feedback context does not exist."""

    kind = "not_found"


class LimitExceeded(BotError):
    """The per-user chat capacity has been reached."""

    kind = "limit_exceeded"

    def __init__(self, limit: int, message: Optional[str] = None):
        super().__init__(
            message or f"Chat limit reached ({limit}). Delete old chats first."
        )
        self.limit = limit


class InfrastructureError(BotError):
    """Storage or network fault."""

    kind = "infrastructure"

    GENERIC_MESSAGE = "Something went wrong on our side. Please try again later."

    def __init__(self, detail: str):
        super().__init__(detail)
        self.detail = detail

    @property
    def user_message(self) -> str:
        return self.GENERIC_MESSAGE
