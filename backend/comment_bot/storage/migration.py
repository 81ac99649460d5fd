"""
Backend-to-backend migration.

Copies users, chats and feedback from one store into another (typically the
flat-file store into the relational store). Users are matched by platform id;
a user already present in the target is skipped with all of their chats and
feedback, so re-running the migration does not duplicate data.

Run as a script to move the configured flat-file data into the configured
database:

    python -m comment_bot.storage.migration
"""

import asyncio
import logging
from typing import List

from pydantic import BaseModel, Field

from ..config.settings import Settings, settings as default_settings
from ..core.logging_config import setup_logging
from .backend import PersistenceBackend
from .factory import create_backend

logger = logging.getLogger(__name__)


class MigrationReport(BaseModel):
    users: int = 0
    skipped_users: int = 0
    chats: int = 0
    feedback: int = 0
    errors: List[str] = Field(default_factory=list)


async def migrate_backend(source: PersistenceBackend, target: PersistenceBackend) -> MigrationReport:
    """
    Copy every user with their chats and feedback from source to target.
    Users that already exist in the target are left untouched.

    Failures for individual records are collected in the report and do not
    stop the migration.
    """
    report = MigrationReport()

    existing = {u.external_id for u in (await target.list_users()).unwrap()}
    users = (await source.list_users()).unwrap()
    for user in users:
        if user.external_id in existing:
            report.skipped_users += 1
            continue
        created = await target.get_or_create_user(user.external_id, user)
        if not created.success:
            report.errors.append(f"user {user.external_id}: {created.error}")
            continue
        target_user = created.data
        report.users += 1

        if user.settings:
            await target.update_user_settings(target_user.id, user.settings)

        chats = (await source.list_chats(user.id)).unwrap()
        # oldest first so the copy keeps the same relative order
        for chat in reversed(chats):
            imported = await target.import_chat(target_user.id, chat)
            if imported.success:
                report.chats += 1
            else:
                report.errors.append(f"chat {chat.id} of {user.external_id}: {imported.error}")

        records = (await source.list_feedback(user.id)).unwrap()
        for record in reversed(records):
            imported = await target.import_feedback(target_user.id, record)
            if imported.success:
                report.feedback += 1
            else:
                report.errors.append(f"feedback {record.id} of {user.external_id}: {imported.error}")

    logger.info(
        "Migration finished",
        extra={"extra_fields": {
            "source": source.name,
            "target": target.name,
            "users": report.users,
            "skipped_users": report.skipped_users,
            "chats": report.chats,
            "feedback": report.feedback,
            "errors": len(report.errors),
        }},
    )
    return report


async def migrate_flat_file_to_sql(settings: Settings) -> MigrationReport:
    source = create_backend("flat_file", settings)
    target = create_backend("sql", settings)
    await source.init()
    await target.init()
    try:
        return await migrate_backend(source, target)
    finally:
        await source.close()
        await target.close()


if __name__ == "__main__":
    setup_logging(default_settings)
    result = asyncio.run(migrate_flat_file_to_sql(default_settings))
    print(
        f"Migrated {result.users} users ({result.skipped_users} already present), "
        f"{result.chats} chats, {result.feedback} feedback records"
    )
    for error in result.errors:
        print(f"  ! {error}")
