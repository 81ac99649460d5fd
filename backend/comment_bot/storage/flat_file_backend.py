"""
Flat-file persistence backend.

Keeps the whole data set in memory and mirrors it to four JSON documents
(users.json, chats.json, feedback.json, activity.json) through a
StorageInterface. The in-memory state is authoritative: a failed flush is
logged, marks the backend as degraded and is retried on the next mutation.
"""

import asyncio
import json
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from ..core.errors import LimitExceeded, NotFound
from ..core.result import result_boundary
from ..models.chat import Chat, ChatLimits, sort_most_recent_first
from ..models.feedback import (
    ActivityRecord,
    FeedbackKind,
    FeedbackRecord,
    FeedbackStats,
    GenerationSnapshot,
    GlobalFeedbackStats,
    PurgeCounts,
)
from ..models.user import User, UserProfile
from ..utils.clock import Clock, utc_now
from .backend import PersistenceBackend, StorageStats, next_touch_time, validate_feedback_value
from .interface import StorageInterface

logger = logging.getLogger(__name__)

USERS_DOC = "users.json"
CHATS_DOC = "chats.json"
FEEDBACK_DOC = "feedback.json"
ACTIVITY_DOC = "activity.json"


class FlatFileBackend(PersistenceBackend):
    """JSON document store with single-lock serialized mutations."""

    name = "flat_file"

    def __init__(
        self,
        storage: StorageInterface,
        limits: Optional[ChatLimits] = None,
        clock: Clock = utc_now,
    ):
        super().__init__(limits=limits, clock=clock)
        self.storage = storage
        self._lock = asyncio.Lock()
        self._users: Dict[int, User] = {}
        self._chats: Dict[int, Chat] = {}
        self._feedback: List[FeedbackRecord] = []
        self._activity: List[ActivityRecord] = []
        self._next_ids = {"users": 1, "chats": 1, "feedback": 1, "activity": 1}
        self._dirty: set = set()

    async def init(self) -> None:
        users_doc = await self._load_doc(USERS_DOC)
        chats_doc = await self._load_doc(CHATS_DOC)
        feedback_doc = await self._load_doc(FEEDBACK_DOC)
        activity_doc = await self._load_doc(ACTIVITY_DOC)

        self._users = {
            user.id: user
            for user in (User.model_validate(item) for item in users_doc.get("users", []))
        }
        self._chats = {}
        for items in chats_doc.get("chats", {}).values():
            for item in items:
                chat = Chat.model_validate(item)
                self._chats[chat.id] = chat
        self._feedback = [FeedbackRecord.model_validate(item) for item in feedback_doc.get("records", [])]
        self._activity = [ActivityRecord.model_validate(item) for item in activity_doc.get("records", [])]

        self._next_ids = {
            "users": users_doc.get("next_id", max(self._users, default=0) + 1),
            "chats": chats_doc.get("next_id", max(self._chats, default=0) + 1),
            "feedback": feedback_doc.get("next_id", max((r.id for r in self._feedback), default=0) + 1),
            "activity": activity_doc.get("next_id", max((r.id for r in self._activity), default=0) + 1),
        }

        logger.info(
            "Flat-file backend loaded",
            extra={"extra_fields": {
                "base_dir": str(getattr(self.storage, "base_dir", "")),
                "users": len(self._users),
                "chats": len(self._chats),
                "feedback": len(self._feedback),
            }},
        )

    async def close(self) -> None:
        async with self._lock:
            if self._dirty:
                await self._flush(*list(self._dirty))

    # ---- document I/O ----

    async def _load_doc(self, path: str) -> Dict[str, Any]:
        content = await self.storage.load(path)
        if content is None:
            return {}
        return json.loads(content.decode("utf-8"))

    def _serialize(self, doc: str) -> Dict[str, Any]:
        if doc == USERS_DOC:
            return {
                "next_id": self._next_ids["users"],
                "users": [u.model_dump(mode="json") for u in self._users.values()],
            }
        if doc == CHATS_DOC:
            by_user: Dict[str, List[Dict[str, Any]]] = {}
            for chat in self._chats.values():
                by_user.setdefault(str(chat.user_id), []).append(chat.model_dump(mode="json"))
            return {"next_id": self._next_ids["chats"], "chats": by_user}
        if doc == FEEDBACK_DOC:
            return {
                "next_id": self._next_ids["feedback"],
                "records": [r.model_dump(mode="json") for r in self._feedback],
            }
        return {
            "next_id": self._next_ids["activity"],
            "records": [r.model_dump(mode="json") for r in self._activity],
        }

    async def _flush(self, *docs: str) -> None:
        """Persist the given documents plus any left dirty by an earlier failure."""
        pending = set(docs) | self._dirty
        failed = set()
        for doc in sorted(pending):
            payload = json.dumps(self._serialize(doc), ensure_ascii=False, indent=2)
            if not await self.storage.save(doc, payload):
                failed.add(doc)

        self._dirty = failed
        if failed:
            self.degraded = True
            logger.warning(
                "Flat-file flush failed; continuing with in-memory state",
                extra={"extra_fields": {"documents": sorted(failed)}},
            )
        elif self.degraded:
            self.degraded = False
            logger.info("Flat-file persistence recovered")

    # ---- lookups (caller holds the lock) ----

    def _require_user(self, user_id: int) -> User:
        user = self._users.get(user_id)
        if user is None:
            raise NotFound("User not found.")
        return user

    def _user_chats(self, user_id: int) -> List[Chat]:
        return [chat for chat in self._chats.values() if chat.user_id == user_id]

    def _require_chat(self, user_id: int, chat_id: int) -> Chat:
        chat = self._chats.get(chat_id)
        if chat is None or chat.user_id != user_id:
            raise NotFound("Chat not found.")
        return chat

    def _next_id(self, kind: str) -> int:
        value = self._next_ids[kind]
        self._next_ids[kind] = value + 1
        return value

    def _touch_time(self, user_id: int) -> datetime:
        return next_touch_time(self.clock(), (c.updated_at for c in self._user_chats(user_id)))

    def _deactivate_siblings(self, user_id: int, keep_id: Optional[int] = None) -> None:
        for chat in self._user_chats(user_id):
            if chat.id != keep_id and chat.is_active:
                self._chats[chat.id] = chat.model_copy(update={"is_active": False})

    # ---- users ----

    @result_boundary("get_or_create_user")
    async def get_or_create_user(
        self, external_id: str, profile: Optional[UserProfile] = None
    ) -> User:
        async with self._lock:
            for user in self._users.values():
                if user.external_id == str(external_id):
                    return user

            profile = profile or UserProfile()
            now = self.clock()
            user = User(
                id=self._next_id("users"),
                external_id=str(external_id),
                username=profile.username,
                first_name=profile.first_name,
                last_name=profile.last_name,
                created_at=now,
                updated_at=now,
                settings={},
            )
            self._users[user.id] = user
            await self._flush(USERS_DOC)
            logger.info("User created", extra={"extra_fields": {"user_id": user.id}})
            return user

    @result_boundary("get_user")
    async def get_user(self, user_id: int) -> User:
        async with self._lock:
            return self._require_user(user_id)

    @result_boundary("update_user_settings")
    async def update_user_settings(self, user_id: int, updates: Dict[str, Any]) -> User:
        async with self._lock:
            user = self._require_user(user_id)
            user = user.model_copy(update={
                "settings": {**user.settings, **updates},
                "updated_at": self.clock(),
            })
            self._users[user_id] = user
            await self._flush(USERS_DOC)
            return user

    @result_boundary("list_users")
    async def list_users(self) -> List[User]:
        async with self._lock:
            return sorted(self._users.values(), key=lambda u: u.id)

    # ---- chats ----

    @result_boundary("create_chat")
    async def create_chat(self, user_id: int, name: str, model: str) -> Chat:
        self.limits.validate_name(name)
        async with self._lock:
            self._require_user(user_id)
            if len(self._user_chats(user_id)) >= self.limits.max_chats:
                raise LimitExceeded(self.limits.max_chats)

            now = self._touch_time(user_id)
            self._deactivate_siblings(user_id)
            chat = Chat(
                id=self._next_id("chats"),
                user_id=user_id,
                name=name,
                model=model,
                is_active=True,
                message_count=0,
                created_at=now,
                updated_at=now,
            )
            self._chats[chat.id] = chat
            await self._flush(CHATS_DOC)
            return chat

    @result_boundary("list_chats")
    async def list_chats(self, user_id: int) -> List[Chat]:
        async with self._lock:
            return sort_most_recent_first(self._user_chats(user_id))

    @result_boundary("get_active_chat")
    async def get_active_chat(self, user_id: int) -> Chat:
        async with self._lock:
            active = [chat for chat in self._user_chats(user_id) if chat.is_active]
            if not active:
                raise NotFound("No active chat.")
            return sort_most_recent_first(active)[0]

    @result_boundary("set_active_chat")
    async def set_active_chat(self, user_id: int, chat_id: int) -> Chat:
        async with self._lock:
            chat = self._require_chat(user_id, chat_id)
            now = self._touch_time(user_id)
            self._deactivate_siblings(user_id, keep_id=chat_id)
            chat = chat.model_copy(update={"is_active": True, "updated_at": now})
            self._chats[chat_id] = chat
            await self._flush(CHATS_DOC)
            return chat

    @result_boundary("rename_chat")
    async def rename_chat(self, user_id: int, chat_id: int, new_name: str) -> Chat:
        self.limits.validate_name(new_name)
        async with self._lock:
            chat = self._require_chat(user_id, chat_id)
            chat = chat.model_copy(update={"name": new_name, "updated_at": self._touch_time(user_id)})
            self._chats[chat_id] = chat
            await self._flush(CHATS_DOC)
            return chat

    @result_boundary("delete_chat")
    async def delete_chat(self, user_id: int, chat_id: int) -> Chat:
        async with self._lock:
            chat = self._require_chat(user_id, chat_id)
            del self._chats[chat_id]
            await self._flush(CHATS_DOC)
            return chat

    @result_boundary("touch_chat")
    async def touch_chat(self, user_id: int, chat_id: int) -> Chat:
        async with self._lock:
            chat = self._require_chat(user_id, chat_id)
            chat = chat.model_copy(update={
                "message_count": chat.message_count + 1,
                "updated_at": self._touch_time(user_id),
            })
            self._chats[chat_id] = chat
            await self._flush(CHATS_DOC)
            return chat

    @result_boundary("list_chats_updated_before")
    async def list_chats_updated_before(self, cutoff: datetime) -> List[Chat]:
        async with self._lock:
            stale = [chat for chat in self._chats.values() if chat.updated_at < cutoff]
            return sorted(stale, key=lambda c: (c.updated_at, c.id))

    @result_boundary("delete_chat_if_updated_before")
    async def delete_chat_if_updated_before(
        self, user_id: int, chat_id: int, cutoff: datetime
    ) -> Optional[Chat]:
        async with self._lock:
            chat = self._require_chat(user_id, chat_id)
            if chat.updated_at >= cutoff:
                return None
            del self._chats[chat_id]
            await self._flush(CHATS_DOC)
            return chat

    # ---- feedback and activity ----

    @result_boundary("record_feedback")
    async def record_feedback(
        self,
        user_id: int,
        event_id: str,
        kind: FeedbackKind,
        value: int | str,
        context: GenerationSnapshot,
    ) -> int:
        kind = validate_feedback_value(kind, value)
        async with self._lock:
            self._require_user(user_id)
            record = FeedbackRecord(
                id=self._next_id("feedback"),
                user_id=user_id,
                event_id=event_id,
                kind=kind,
                rating=value if kind == FeedbackKind.RATING else None,
                text=value if kind == FeedbackKind.IMPROVEMENT else None,
                context=context,
                created_at=self.clock(),
            )
            self._feedback.append(record)
            await self._flush(FEEDBACK_DOC)
            return record.id

    @result_boundary("list_feedback")
    async def list_feedback(self, user_id: Optional[int] = None) -> List[FeedbackRecord]:
        async with self._lock:
            records = [r for r in self._feedback if user_id is None or r.user_id == user_id]
            return sorted(records, key=lambda r: (r.created_at, r.id), reverse=True)

    @result_boundary("get_user_feedback_stats")
    async def get_user_feedback_stats(self, user_id: int) -> FeedbackStats:
        async with self._lock:
            return FeedbackStats.from_records([r for r in self._feedback if r.user_id == user_id])

    @result_boundary("get_global_feedback_stats")
    async def get_global_feedback_stats(self) -> GlobalFeedbackStats:
        async with self._lock:
            return GlobalFeedbackStats.from_records(list(self._feedback))

    @result_boundary("record_activity")
    async def record_activity(
        self,
        user_id: int,
        chat_id: Optional[int],
        action: str,
        data: Optional[Dict[str, Any]] = None,
    ) -> int:
        async with self._lock:
            self._require_user(user_id)
            record = ActivityRecord(
                id=self._next_id("activity"),
                user_id=user_id,
                chat_id=chat_id,
                action=action,
                data=data or {},
                created_at=self.clock(),
            )
            self._activity.append(record)
            await self._flush(ACTIVITY_DOC)
            return record.id

    @result_boundary("purge_older_than")
    async def purge_older_than(self, cutoff: datetime) -> PurgeCounts:
        async with self._lock:
            kept_feedback = [r for r in self._feedback if r.created_at >= cutoff]
            kept_activity = [r for r in self._activity if r.created_at >= cutoff]
            counts = PurgeCounts(
                feedback=len(self._feedback) - len(kept_feedback),
                activity=len(self._activity) - len(kept_activity),
            )
            self._feedback = kept_feedback
            self._activity = kept_activity
            if counts.total:
                await self._flush(FEEDBACK_DOC, ACTIVITY_DOC)
            return counts

    @result_boundary("get_storage_stats")
    async def get_storage_stats(self) -> StorageStats:
        async with self._lock:
            return StorageStats(
                backend=self.name,
                users=len(self._users),
                chats=len(self._chats),
                active_chats=sum(1 for c in self._chats.values() if c.is_active),
                feedback=len(self._feedback),
                activity=len(self._activity),
                degraded=self.degraded,
            )

    # ---- bulk import ----

    @result_boundary("import_chat")
    async def import_chat(self, user_id: int, chat: Chat) -> Chat:
        self.limits.validate_name(chat.name)
        async with self._lock:
            self._require_user(user_id)
            if len(self._user_chats(user_id)) >= self.limits.max_chats:
                raise LimitExceeded(self.limits.max_chats)
            if chat.is_active:
                self._deactivate_siblings(user_id)
            imported = chat.model_copy(update={"id": self._next_id("chats"), "user_id": user_id})
            self._chats[imported.id] = imported
            await self._flush(CHATS_DOC)
            return imported

    @result_boundary("import_feedback")
    async def import_feedback(self, user_id: int, record: FeedbackRecord) -> int:
        validate_feedback_value(
            record.kind, record.rating if record.kind == FeedbackKind.RATING else record.text
        )
        async with self._lock:
            self._require_user(user_id)
            imported = record.model_copy(update={"id": self._next_id("feedback"), "user_id": user_id})
            self._feedback.append(imported)
            await self._flush(FEEDBACK_DOC)
            return imported.id
