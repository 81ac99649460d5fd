"""
Persistence Backend - Abstract contract shared by the relational and flat-file stores.

Every public operation returns a Result. Implementations must give identical
logical results for identical call sequences; callers never branch on which
backend is in use.
"""

from abc import ABC, abstractmethod
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional
from pydantic import BaseModel

from ..core.errors import ValidationError
from ..core.result import Result
from ..models.chat import Chat, ChatLimits
from ..models.feedback import (
    FeedbackKind,
    FeedbackRecord,
    FeedbackStats,
    GenerationSnapshot,
    GlobalFeedbackStats,
    PurgeCounts,
)
from ..models.user import User, UserProfile
from ..utils.clock import Clock, utc_now


class StorageStats(BaseModel):
    """Row counts per entity, used by the status command and migrations."""
    backend: str
    users: int = 0
    chats: int = 0
    active_chats: int = 0
    feedback: int = 0
    activity: int = 0
    degraded: bool = False


def validate_feedback_value(kind: FeedbackKind | str, value: Any) -> FeedbackKind:
    """
    Check a feedback value against its kind and return the normalized kind.

    Raises:
        ValidationError: unknown kind, rating outside 1..5 or blank improvement text
    """
    try:
        kind = FeedbackKind(kind)
    except ValueError:
        raise ValidationError(f"Unknown feedback kind: {kind}")
    if kind == FeedbackKind.RATING:
        if isinstance(value, bool) or not isinstance(value, int) or not 1 <= value <= 5:
            raise ValidationError("Rating must be a whole number from 1 to 5.")
    elif kind == FeedbackKind.IMPROVEMENT:
        if not isinstance(value, str) or not value.strip():
            raise ValidationError("Improvement request cannot be empty.")
    return kind


def next_touch_time(now: datetime, sibling_times: Iterable[datetime]) -> datetime:
    """
    Timestamp for a chat that is being used now.

    Kept strictly later than every sibling's updated_at so the touched chat
    sorts first even when the clock has not advanced.
    """
    latest = max(sibling_times, default=None)
    if latest is not None and latest >= now:
        return latest + timedelta(microseconds=1)
    return now


class PersistenceBackend(ABC):
    """
    Durable storage for users, chats, feedback and activity.

    Backends enforce the chat invariants themselves (one active chat per
    user, capacity, name length) so a caller that skips manager-level
    validation still cannot corrupt the data.
    """

    name: str = "abstract"

    def __init__(self, limits: Optional[ChatLimits] = None, clock: Clock = utc_now):
        self.limits = limits or ChatLimits()
        self.clock = clock
        self.degraded = False

    @abstractmethod
    async def init(self) -> None:
        """
        Open the store and create the schema/documents if missing.

        Raises:
            Exception: if the store cannot be opened; the factory decides
                whether to fall back
        """
        pass

    @abstractmethod
    async def close(self) -> None:
        pass

    # ---- users ----

    @abstractmethod
    async def get_or_create_user(
        self, external_id: str, profile: Optional[UserProfile] = None
    ) -> Result[User]:
        """
        Return the user with this platform id, creating it on first contact.

        Profile hints are only used on creation; an existing record is
        returned unchanged.
        """
        pass

    @abstractmethod
    async def get_user(self, user_id: int) -> Result[User]:
        pass

    @abstractmethod
    async def update_user_settings(self, user_id: int, updates: Dict[str, Any]) -> Result[User]:
        """Merge updates into the user's settings blob."""
        pass

    @abstractmethod
    async def list_users(self) -> Result[List[User]]:
        pass

    # ---- chats ----

    @abstractmethod
    async def create_chat(self, user_id: int, name: str, model: str) -> Result[Chat]:
        """
        Create a chat and make it the user's only active chat.

        Args:
            user_id: Owner
            name: Chat name, validated against limits
            model: Generation model identifier stored on the chat

        Returns:
            Result[Chat]: the new chat; fails with ValidationError, NotFound
            (unknown user) or LimitExceeded (capacity reached, nothing written)
        """
        pass

    @abstractmethod
    async def list_chats(self, user_id: int) -> Result[List[Chat]]:
        """All chats of a user, most recently updated first."""
        pass

    @abstractmethod
    async def get_active_chat(self, user_id: int) -> Result[Chat]:
        """The active chat, or NotFound when the user has none."""
        pass

    @abstractmethod
    async def set_active_chat(self, user_id: int, chat_id: int) -> Result[Chat]:
        """Activate chat_id and deactivate its siblings in one step."""
        pass

    @abstractmethod
    async def rename_chat(self, user_id: int, chat_id: int, new_name: str) -> Result[Chat]:
        pass

    @abstractmethod
    async def delete_chat(self, user_id: int, chat_id: int) -> Result[Chat]:
        """
        Delete a chat owned by the user and return the deleted record.

        Promoting a replacement active chat is the manager's job.
        """
        pass

    @abstractmethod
    async def touch_chat(self, user_id: int, chat_id: int) -> Result[Chat]:
        """Increment message_count and mark the chat as just used."""
        pass

    @abstractmethod
    async def list_chats_updated_before(self, cutoff: datetime) -> Result[List[Chat]]:
        """Chats of any user whose updated_at is strictly older than cutoff."""
        pass

    @abstractmethod
    async def delete_chat_if_updated_before(
        self, user_id: int, chat_id: int, cutoff: datetime
    ) -> Result[Optional[Chat]]:
        """
        Delete the chat only if it is still older than cutoff.

        Age check and delete happen atomically. Returns the deleted chat,
        or None when the chat was used since it was listed.
        """
        pass

    # ---- feedback and activity ----

    @abstractmethod
    async def record_feedback(
        self,
        user_id: int,
        event_id: str,
        kind: FeedbackKind,
        value: int | str,
        context: GenerationSnapshot,
    ) -> Result[int]:
        """
        Append a feedback record.

        Args:
            value: rating (1..5) for RATING, improvement text for IMPROVEMENT

        Returns:
            Result[int]: id of the new record
        """
        pass

    @abstractmethod
    async def list_feedback(self, user_id: Optional[int] = None) -> Result[List[FeedbackRecord]]:
        """Feedback records, newest first, optionally for one user."""
        pass

    @abstractmethod
    async def get_user_feedback_stats(self, user_id: int) -> Result[FeedbackStats]:
        pass

    @abstractmethod
    async def get_global_feedback_stats(self) -> Result[GlobalFeedbackStats]:
        pass

    @abstractmethod
    async def record_activity(
        self,
        user_id: int,
        chat_id: Optional[int],
        action: str,
        data: Optional[Dict[str, Any]] = None,
    ) -> Result[int]:
        pass

    @abstractmethod
    async def purge_older_than(self, cutoff: datetime) -> Result[PurgeCounts]:
        """Delete feedback and activity records created before cutoff."""
        pass

    @abstractmethod
    async def get_storage_stats(self) -> Result[StorageStats]:
        pass

    # ---- bulk import (backend-to-backend migration) ----

    @abstractmethod
    async def import_chat(self, user_id: int, chat: Chat) -> Result[Chat]:
        """
        Insert a chat copied from another store, keeping its name, model,
        counters and timestamps. Limits still apply; an active import
        deactivates the user's other chats.
        """
        pass

    @abstractmethod
    async def import_feedback(self, user_id: int, record: FeedbackRecord) -> Result[int]:
        """Insert a feedback record copied from another store, keeping created_at."""
        pass
