"""
Relational persistence backend (SQLAlchemy ORM, SQLite by default).

Each public operation is one transaction: committed on success, rolled back
on any error. Blocking database work runs in a worker thread; a single lock
keeps operations from interleaving so the capacity and active-chat checks see
a consistent view.
"""

import asyncio
import logging
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, TypeVar

from sqlalchemy import create_engine, event, func, select, delete, update
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from ..core.errors import LimitExceeded, NotFound
from ..core.result import result_boundary
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
from .backend import PersistenceBackend, StorageStats, next_touch_time, validate_feedback_value
from .entities import (
    INITIAL_MIGRATION,
    ActivityEntity,
    Base,
    ChatEntity,
    FeedbackEntity,
    MigrationEntity,
    UserEntity,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")


def _enable_sqlite_pragmas(dbapi_connection, connection_record):
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA journal_mode=WAL")
    cursor.execute("PRAGMA synchronous=NORMAL")
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def _feedback_from_entity(entity: FeedbackEntity) -> FeedbackRecord:
    return FeedbackRecord(
        id=entity.id,
        user_id=entity.user_id,
        event_id=entity.event_id,
        kind=FeedbackKind(entity.kind),
        rating=entity.rating,
        text=entity.text,
        context=GenerationSnapshot.model_validate(entity.context),
        created_at=entity.created_at,
    )


class SqlBackend(PersistenceBackend):
    """SQLAlchemy-backed store."""

    name = "sql"

    def __init__(
        self,
        database_url: str,
        limits: Optional[ChatLimits] = None,
        clock: Clock = utc_now,
    ):
        super().__init__(limits=limits, clock=clock)
        self.database_url = database_url
        self.engine: Optional[Engine] = None
        self._session_factory: Optional[sessionmaker] = None
        self._lock = asyncio.Lock()

    async def init(self) -> None:
        await asyncio.to_thread(self._init_sync)
        logger.info(
            "SQL backend initialized",
            extra={"extra_fields": {"database_url": self.database_url}},
        )

    def _init_sync(self) -> None:
        connect_args = {}
        if self.database_url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
            path = self.database_url.split("///", 1)[-1]
            if path and path != ":memory:":
                Path(path).parent.mkdir(parents=True, exist_ok=True)

        self.engine = create_engine(self.database_url, connect_args=connect_args)
        if self.engine.dialect.name == "sqlite":
            event.listen(self.engine, "connect", _enable_sqlite_pragmas)

        Base.metadata.create_all(self.engine)
        self._session_factory = sessionmaker(bind=self.engine, expire_on_commit=False)

        with self._transaction() as session:
            applied = session.scalar(
                select(MigrationEntity).where(MigrationEntity.name == INITIAL_MIGRATION)
            )
            if applied is None:
                session.add(MigrationEntity(name=INITIAL_MIGRATION, executed_at=self.clock()))
                logger.info(f"Applied migration {INITIAL_MIGRATION}")

    async def close(self) -> None:
        if self.engine is not None:
            await asyncio.to_thread(self.engine.dispose)
            self.engine = None

    @contextmanager
    def _transaction(self):
        """Open a session; commit on success, roll back and re-raise on error."""
        if self._session_factory is None:
            raise RuntimeError("SQL backend is not initialized")
        session: Session = self._session_factory()
        try:
            yield session
            session.flush()
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    async def _run(self, work: Callable[[Session], T]) -> T:
        def execute() -> T:
            with self._transaction() as session:
                return work(session)

        async with self._lock:
            return await asyncio.to_thread(execute)

    # ---- helpers (run inside a transaction) ----

    @staticmethod
    def _require_user(session: Session, user_id: int) -> UserEntity:
        entity = session.get(UserEntity, user_id)
        if entity is None:
            raise NotFound("User not found.")
        return entity

    @staticmethod
    def _require_chat(session: Session, user_id: int, chat_id: int) -> ChatEntity:
        entity = session.get(ChatEntity, chat_id)
        if entity is None or entity.user_id != user_id:
            raise NotFound("Chat not found.")
        return entity

    def _touch_time(self, session: Session, user_id: int) -> datetime:
        latest = session.scalars(
            select(ChatEntity.updated_at).where(ChatEntity.user_id == user_id)
        ).all()
        return next_touch_time(self.clock(), latest)

    @staticmethod
    def _deactivate_siblings(session: Session, user_id: int, keep_id: Optional[int] = None) -> None:
        stmt = (
            update(ChatEntity)
            .where(ChatEntity.user_id == user_id, ChatEntity.is_active.is_(True))
        )
        if keep_id is not None:
            stmt = stmt.where(ChatEntity.id != keep_id)
        session.execute(stmt.values(is_active=False))

    # ---- users ----

    @result_boundary("get_or_create_user")
    async def get_or_create_user(
        self, external_id: str, profile: Optional[UserProfile] = None
    ) -> User:
        profile = profile or UserProfile()

        def work(session: Session) -> User:
            entity = session.scalar(
                select(UserEntity).where(UserEntity.external_id == str(external_id))
            )
            if entity is None:
                now = self.clock()
                entity = UserEntity(
                    external_id=str(external_id),
                    username=profile.username,
                    first_name=profile.first_name,
                    last_name=profile.last_name,
                    settings={},
                    created_at=now,
                    updated_at=now,
                )
                session.add(entity)
                session.flush()
                logger.info("User created", extra={"extra_fields": {"user_id": entity.id}})
            return User.model_validate(entity)

        return await self._run(work)

    @result_boundary("get_user")
    async def get_user(self, user_id: int) -> User:
        return await self._run(lambda session: User.model_validate(self._require_user(session, user_id)))

    @result_boundary("update_user_settings")
    async def update_user_settings(self, user_id: int, updates: Dict[str, Any]) -> User:
        def work(session: Session) -> User:
            entity = self._require_user(session, user_id)
            # reassign so the JSON column is marked dirty
            entity.settings = {**(entity.settings or {}), **updates}
            entity.updated_at = self.clock()
            session.flush()
            return User.model_validate(entity)

        return await self._run(work)

    @result_boundary("list_users")
    async def list_users(self) -> List[User]:
        def work(session: Session) -> List[User]:
            entities = session.scalars(select(UserEntity).order_by(UserEntity.id)).all()
            return [User.model_validate(e) for e in entities]

        return await self._run(work)

    # ---- chats ----

    @result_boundary("create_chat")
    async def create_chat(self, user_id: int, name: str, model: str) -> Chat:
        self.limits.validate_name(name)

        def work(session: Session) -> Chat:
            self._require_user(session, user_id)
            count = session.scalar(
                select(func.count(ChatEntity.id)).where(ChatEntity.user_id == user_id)
            )
            if count >= self.limits.max_chats:
                raise LimitExceeded(self.limits.max_chats)

            now = self._touch_time(session, user_id)
            self._deactivate_siblings(session, user_id)
            entity = ChatEntity(
                user_id=user_id,
                name=name,
                model=model,
                is_active=True,
                message_count=0,
                created_at=now,
                updated_at=now,
            )
            session.add(entity)
            session.flush()
            return Chat.model_validate(entity)

        return await self._run(work)

    @result_boundary("list_chats")
    async def list_chats(self, user_id: int) -> List[Chat]:
        def work(session: Session) -> List[Chat]:
            entities = session.scalars(
                select(ChatEntity)
                .where(ChatEntity.user_id == user_id)
                .order_by(ChatEntity.updated_at.desc(), ChatEntity.id.desc())
            ).all()
            return [Chat.model_validate(e) for e in entities]

        return await self._run(work)

    @result_boundary("get_active_chat")
    async def get_active_chat(self, user_id: int) -> Chat:
        def work(session: Session) -> Chat:
            entity = session.scalars(
                select(ChatEntity)
                .where(ChatEntity.user_id == user_id, ChatEntity.is_active.is_(True))
                .order_by(ChatEntity.updated_at.desc(), ChatEntity.id.desc())
                .limit(1)
            ).first()
            if entity is None:
                raise NotFound("No active chat.")
            return Chat.model_validate(entity)

        return await self._run(work)

    @result_boundary("set_active_chat")
    async def set_active_chat(self, user_id: int, chat_id: int) -> Chat:
        def work(session: Session) -> Chat:
            entity = self._require_chat(session, user_id, chat_id)
            now = self._touch_time(session, user_id)
            self._deactivate_siblings(session, user_id, keep_id=chat_id)
            entity.is_active = True
            entity.updated_at = now
            session.flush()
            return Chat.model_validate(entity)

        return await self._run(work)

    @result_boundary("rename_chat")
    async def rename_chat(self, user_id: int, chat_id: int, new_name: str) -> Chat:
        self.limits.validate_name(new_name)

        def work(session: Session) -> Chat:
            entity = self._require_chat(session, user_id, chat_id)
            entity.updated_at = self._touch_time(session, user_id)
            entity.name = new_name
            session.flush()
            return Chat.model_validate(entity)

        return await self._run(work)

    @result_boundary("delete_chat")
    async def delete_chat(self, user_id: int, chat_id: int) -> Chat:
        def work(session: Session) -> Chat:
            entity = self._require_chat(session, user_id, chat_id)
            deleted = Chat.model_validate(entity)
            session.delete(entity)
            return deleted

        return await self._run(work)

    @result_boundary("touch_chat")
    async def touch_chat(self, user_id: int, chat_id: int) -> Chat:
        def work(session: Session) -> Chat:
            entity = self._require_chat(session, user_id, chat_id)
            entity.updated_at = self._touch_time(session, user_id)
            entity.message_count = entity.message_count + 1
            session.flush()
            return Chat.model_validate(entity)

        return await self._run(work)

    @result_boundary("list_chats_updated_before")
    async def list_chats_updated_before(self, cutoff: datetime) -> List[Chat]:
        def work(session: Session) -> List[Chat]:
            entities = session.scalars(
                select(ChatEntity)
                .where(ChatEntity.updated_at < cutoff)
                .order_by(ChatEntity.updated_at, ChatEntity.id)
            ).all()
            return [Chat.model_validate(e) for e in entities]

        return await self._run(work)

    @result_boundary("delete_chat_if_updated_before")
    async def delete_chat_if_updated_before(
        self, user_id: int, chat_id: int, cutoff: datetime
    ) -> Optional[Chat]:
        def work(session: Session) -> Optional[Chat]:
            snapshot = Chat.model_validate(self._require_chat(session, user_id, chat_id))
            result = session.execute(
                delete(ChatEntity)
                .where(
                    ChatEntity.id == chat_id,
                    ChatEntity.user_id == user_id,
                    ChatEntity.updated_at < cutoff,
                )
                .execution_options(synchronize_session=False)
            )
            return snapshot if result.rowcount else None

        return await self._run(work)

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

        def work(session: Session) -> int:
            self._require_user(session, user_id)
            entity = FeedbackEntity(
                user_id=user_id,
                event_id=event_id,
                kind=kind.value,
                rating=value if kind == FeedbackKind.RATING else None,
                text=value if kind == FeedbackKind.IMPROVEMENT else None,
                context=context.model_dump(mode="json"),
                created_at=self.clock(),
            )
            session.add(entity)
            session.flush()
            return entity.id

        return await self._run(work)

    def _select_feedback(self, session: Session, user_id: Optional[int] = None) -> List[FeedbackRecord]:
        stmt = select(FeedbackEntity).order_by(FeedbackEntity.created_at.desc(), FeedbackEntity.id.desc())
        if user_id is not None:
            stmt = stmt.where(FeedbackEntity.user_id == user_id)
        return [_feedback_from_entity(e) for e in session.scalars(stmt).all()]

    @result_boundary("list_feedback")
    async def list_feedback(self, user_id: Optional[int] = None) -> List[FeedbackRecord]:
        return await self._run(lambda session: self._select_feedback(session, user_id))

    @result_boundary("get_user_feedback_stats")
    async def get_user_feedback_stats(self, user_id: int) -> FeedbackStats:
        records = await self._run(lambda session: self._select_feedback(session, user_id))
        return FeedbackStats.from_records(records)

    @result_boundary("get_global_feedback_stats")
    async def get_global_feedback_stats(self) -> GlobalFeedbackStats:
        records = await self._run(lambda session: self._select_feedback(session))
        return GlobalFeedbackStats.from_records(records)

    @result_boundary("record_activity")
    async def record_activity(
        self,
        user_id: int,
        chat_id: Optional[int],
        action: str,
        data: Optional[Dict[str, Any]] = None,
    ) -> int:
        def work(session: Session) -> int:
            self._require_user(session, user_id)
            entity = ActivityEntity(
                user_id=user_id,
                chat_id=chat_id,
                action=action,
                data=data or {},
                created_at=self.clock(),
            )
            session.add(entity)
            session.flush()
            return entity.id

        return await self._run(work)

    @result_boundary("purge_older_than")
    async def purge_older_than(self, cutoff: datetime) -> PurgeCounts:
        def work(session: Session) -> PurgeCounts:
            feedback = session.execute(
                delete(FeedbackEntity).where(FeedbackEntity.created_at < cutoff)
            ).rowcount
            activity = session.execute(
                delete(ActivityEntity).where(ActivityEntity.created_at < cutoff)
            ).rowcount
            return PurgeCounts(feedback=feedback or 0, activity=activity or 0)

        return await self._run(work)

    @result_boundary("get_storage_stats")
    async def get_storage_stats(self) -> StorageStats:
        def work(session: Session) -> StorageStats:
            def count(column, *where) -> int:
                return session.scalar(select(func.count(column)).where(*where)) or 0

            return StorageStats(
                backend=self.name,
                users=count(UserEntity.id),
                chats=count(ChatEntity.id),
                active_chats=count(ChatEntity.id, ChatEntity.is_active.is_(True)),
                feedback=count(FeedbackEntity.id),
                activity=count(ActivityEntity.id),
                degraded=self.degraded,
            )

        return await self._run(work)

    # ---- bulk import ----

    @result_boundary("import_chat")
    async def import_chat(self, user_id: int, chat: Chat) -> Chat:
        self.limits.validate_name(chat.name)

        def work(session: Session) -> Chat:
            self._require_user(session, user_id)
            count = session.scalar(
                select(func.count(ChatEntity.id)).where(ChatEntity.user_id == user_id)
            )
            if count >= self.limits.max_chats:
                raise LimitExceeded(self.limits.max_chats)
            if chat.is_active:
                self._deactivate_siblings(session, user_id)
            entity = ChatEntity(
                user_id=user_id,
                name=chat.name,
                model=chat.model,
                is_active=chat.is_active,
                message_count=chat.message_count,
                created_at=chat.created_at,
                updated_at=chat.updated_at,
            )
            session.add(entity)
            session.flush()
            return Chat.model_validate(entity)

        return await self._run(work)

    @result_boundary("import_feedback")
    async def import_feedback(self, user_id: int, record: FeedbackRecord) -> int:
        validate_feedback_value(
            record.kind, record.rating if record.kind == FeedbackKind.RATING else record.text
        )

        def work(session: Session) -> int:
            self._require_user(session, user_id)
            entity = FeedbackEntity(
                user_id=user_id,
                event_id=record.event_id,
                kind=record.kind.value,
                rating=record.rating,
                text=record.text,
                context=record.context.model_dump(mode="json"),
                created_at=record.created_at,
            )
            session.add(entity)
            session.flush()
            return entity.id

        return await self._run(work)
