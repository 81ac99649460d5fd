"""
Chat/Session Manager - Chat lifecycle on top of the persistence backend.

Validates names and capacity before touching storage, keeps exactly one
active chat per user with chats (promoting a replacement on delete), and
runs the stale-chat retention sweep.
"""

import logging
from datetime import datetime, timedelta
from typing import List, Optional

from pydantic import BaseModel, Field

from .errors import LimitExceeded, NotFound, ValidationError
from .logging_config import UserLoggerAdapter
from .result import result_boundary
from ..models.chat import Chat, ChatLimits, sort_most_recent_first
from ..models.user import User, UserProfile
from ..storage.backend import PersistenceBackend
from ..utils.clock import Clock, utc_now

logger = logging.getLogger(__name__)

MODEL_SETTING = "model"


class ChatDeletion(BaseModel):
    deleted: Chat
    promoted: Optional[Chat] = None  # new active chat, if the deleted one was active


class SweepReport(BaseModel):
    scanned: int = 0
    deleted: int = 0
    skipped: int = 0  # used again since the scan
    promoted: int = 0
    errors: List[str] = Field(default_factory=list)


class ChatManager:
    """
    Owns chat business rules. Every public method returns a Result.
    """

    def __init__(
        self,
        backend: PersistenceBackend,
        limits: Optional[ChatLimits] = None,
        default_model: str = "qwen-max-latest",
        default_chat_name: str = "Main chat",
        retention_days: int = 30,
        clock: Clock = utc_now,
    ):
        self.backend = backend
        self.limits = limits or backend.limits
        self.default_model = default_model
        self.default_chat_name = default_chat_name
        self.retention_days = retention_days
        self.clock = clock

    # ---- users ----

    @result_boundary("get_or_create_user")
    async def get_or_create_user(self, external_id: str, profile: Optional[UserProfile] = None) -> User:
        return (await self.backend.get_or_create_user(external_id, profile)).unwrap()

    @result_boundary("get_user_model")
    async def get_user_model(self, user_id: int) -> str:
        user = (await self.backend.get_user(user_id)).unwrap()
        return user.settings.get(MODEL_SETTING) or self.default_model

    @result_boundary("set_user_model")
    async def set_user_model(self, user_id: int, model: str) -> str:
        model = (model or "").strip()
        if not model:
            raise ValidationError("Model name cannot be empty.")
        (await self.backend.update_user_settings(user_id, {MODEL_SETTING: model})).unwrap()
        UserLoggerAdapter(logger, {"user_id": user_id}).info(f"Model set to {model}")
        return model

    # ---- chats ----

    @result_boundary("create_chat")
    async def create_chat(self, user_id: int, name: str, model: Optional[str] = None) -> Chat:
        """
        Create a chat and make it active.

        Fails with ValidationError for a bad name and LimitExceeded when the
        user already has the maximum number of chats.
        """
        name = self.limits.validate_name(name.strip() if isinstance(name, str) else name)
        existing = (await self.backend.list_chats(user_id)).unwrap()
        if len(existing) >= self.limits.max_chats:
            raise LimitExceeded(self.limits.max_chats)

        if model is None:
            model = (await self.get_user_model(user_id)).unwrap()
        chat = (await self.backend.create_chat(user_id, name, model)).unwrap()
        UserLoggerAdapter(logger, {"user_id": user_id}).info(
            "Chat created", extra={"extra_fields": {"chat_id": chat.id, "chat_name": chat.name}}
        )
        return chat

    @result_boundary("ensure_active_chat")
    async def ensure_active_chat(self, user_id: int) -> Chat:
        """
        Return the active chat, activating the most recent chat or creating
        the default chat when there is none.
        """
        active = await self.backend.get_active_chat(user_id)
        if active.success:
            return active.data
        if active.error_kind != NotFound.kind:
            return active.unwrap()

        chats = (await self.backend.list_chats(user_id)).unwrap()
        if chats:
            return (await self.backend.set_active_chat(user_id, chats[0].id)).unwrap()
        return (await self.create_chat(user_id, self.default_chat_name)).unwrap()

    @result_boundary("list_chats")
    async def list_chats(self, user_id: int) -> List[Chat]:
        return (await self.backend.list_chats(user_id)).unwrap()

    @result_boundary("get_active_chat")
    async def get_active_chat(self, user_id: int) -> Chat:
        return (await self.backend.get_active_chat(user_id)).unwrap()

    @result_boundary("select_chat")
    async def select_chat(self, user_id: int, chat_id: int) -> Chat:
        chat = (await self.backend.set_active_chat(user_id, chat_id)).unwrap()
        UserLoggerAdapter(logger, {"user_id": user_id}).info(
            "Chat selected", extra={"extra_fields": {"chat_id": chat_id}}
        )
        return chat

    @result_boundary("rename_chat")
    async def rename_chat(self, user_id: int, chat_id: int, new_name: str) -> Chat:
        new_name = self.limits.validate_name(new_name.strip() if isinstance(new_name, str) else new_name)
        return (await self.backend.rename_chat(user_id, chat_id, new_name)).unwrap()

    @result_boundary("delete_chat")
    async def delete_chat(self, user_id: int, chat_id: int) -> ChatDeletion:
        """Delete a chat; if it was active, promote the most recently used remaining chat."""
        deleted = (await self.backend.delete_chat(user_id, chat_id)).unwrap()
        promoted = await self._promote_if_needed(user_id) if deleted.is_active else None
        UserLoggerAdapter(logger, {"user_id": user_id}).info(
            "Chat deleted",
            extra={"extra_fields": {
                "chat_id": chat_id,
                "promoted_chat_id": promoted.id if promoted else None,
            }},
        )
        return ChatDeletion(deleted=deleted, promoted=promoted)

    @result_boundary("record_message")
    async def record_message(
        self, user_id: int, chat_id: int, action: str = "generate", data: Optional[dict] = None
    ) -> Chat:
        """Count one generation against the chat, mark it as just used and log the activity."""
        chat = (await self.backend.touch_chat(user_id, chat_id)).unwrap()
        activity = await self.backend.record_activity(user_id, chat_id, action, data)
        if not activity.success:
            logger.warning(
                f"Activity not recorded: {activity.error}",
                extra={"extra_fields": {"user_id": user_id, "chat_id": chat_id}},
            )
        return chat

    async def _promote_if_needed(self, user_id: int) -> Optional[Chat]:
        active = await self.backend.get_active_chat(user_id)
        if active.success:
            return None
        if active.error_kind != NotFound.kind:
            active.unwrap()
        remaining = sort_most_recent_first((await self.backend.list_chats(user_id)).unwrap())
        if not remaining:
            return None
        return (await self.backend.set_active_chat(user_id, remaining[0].id)).unwrap()

    # ---- maintenance ----

    @result_boundary("repair_active_chats")
    async def repair_active_chats(self) -> int:
        """Activate the most recent chat of every user that has chats but none active."""
        repaired = 0
        for user in (await self.backend.list_users()).unwrap():
            if await self._promote_if_needed(user.id) is not None:
                repaired += 1
        if repaired:
            logger.info(f"Repaired active chat for {repaired} users")
        return repaired

    @result_boundary("sweep_stale_chats")
    async def sweep_stale_chats(self, now: Optional[datetime] = None) -> SweepReport:
        """
        Delete chats unused for longer than the retention period.

        Each chat is deleted on its own and only if it is still past the
        cutoff, so a chat used or removed since the scan is skipped. Users
        who lose their active chat get the most recently used survivor
        promoted.
        """
        now = now or self.clock()
        cutoff = now - timedelta(days=self.retention_days)
        stale = (await self.backend.list_chats_updated_before(cutoff)).unwrap()
        report = SweepReport(scanned=len(stale))

        affected_users = set()
        for chat in stale:
            result = await self.backend.delete_chat_if_updated_before(chat.user_id, chat.id, cutoff)
            if result.success and result.data is None:
                report.skipped += 1
            elif result.success:
                report.deleted += 1
                if result.data.is_active:
                    affected_users.add(chat.user_id)
            elif result.error_kind == NotFound.kind:
                report.skipped += 1
            else:
                report.errors.append(f"chat {chat.id}: {result.error}")

        for user_id in sorted(affected_users):
            promoted = await self._promote_if_needed(user_id)
            if promoted is not None:
                report.promoted += 1

        logger.info(
            "Stale chat sweep finished",
            extra={"extra_fields": {
                "cutoff": cutoff.isoformat(),
                "scanned": report.scanned,
                "deleted": report.deleted,
                "skipped": report.skipped,
                "promoted": report.promoted,
                "errors": len(report.errors),
            }},
        )
        return report
