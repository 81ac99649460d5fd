"""
Uniform result envelope for public core operations.

Expected failures never escape as exceptions: every storage, manager and
aggregator operation returns ``Result.ok(data)`` or ``Result.fail(error)``.
"""

import logging
from dataclasses import dataclass, field
from functools import wraps
from typing import Generic, Optional, TypeVar

from .errors import BotError, InfrastructureError

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class Result(Generic[T]):
    """Either ``success=True`` with ``data`` or ``success=False`` with ``error``."""
    success: bool
    data: Optional[T] = None
    error: Optional[str] = None
    error_kind: Optional[str] = None
    exception: Optional[BotError] = field(default=None, repr=False, compare=False)

    @classmethod
    def ok(cls, data: T = None) -> "Result[T]":
        return cls(success=True, data=data)

    @classmethod
    def fail(cls, error: BotError) -> "Result[T]":
        return cls(
            success=False,
            error=error.user_message,
            error_kind=error.kind,
            exception=error,
        )

    def unwrap(self) -> T:
        """Return ``data`` or raise the stored error."""
        if self.success:
            return self.data
        raise self.exception or InfrastructureError(self.error or "unknown failure")


def result_boundary(operation: str):
    """
    Decorator for async public operations.

    The wrapped coroutine returns plain data and raises BotError subclasses for
    domain failures. Anything else is logged with its traceback and reported
    as an InfrastructureError result.
    """
    def decorator(func):
        @wraps(func)
        async def wrapper(*args, **kwargs):
            try:
                data = await func(*args, **kwargs)
            except BotError as e:
                return Result.fail(e)
            except Exception as e:
                logger.error(
                    f"{operation} failed: {e}",
                    exc_info=True,
                    extra={"extra_fields": {"operation": operation, "error": str(e)}},
                )
                return Result.fail(InfrastructureError(f"{operation}: {e}"))
            return Result.ok(data)
        return wrapper
    return decorator
