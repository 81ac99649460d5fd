"""
Persistence Backend Factory - Opens the configured backend once at startup.
"""

import logging
from typing import Optional

from ..config.settings import Settings
from ..models.chat import ChatLimits
from ..utils.clock import Clock, utc_now
from .backend import PersistenceBackend
from .flat_file_backend import FlatFileBackend
from .local_storage import LocalStorage
from .sql_backend import SqlBackend

logger = logging.getLogger(__name__)

BACKEND_CHOICES = ("auto", "sql", "flat_file")


def limits_from_settings(settings: Settings) -> ChatLimits:
    return ChatLimits(
        max_chats=settings.max_chats_per_user,
        max_name_length=settings.max_chat_name_length,
    )


def create_backend(
    backend: str,
    settings: Settings,
    clock: Clock = utc_now,
) -> PersistenceBackend:
    """
    Build (but do not initialize) a backend instance.

    Args:
        backend: "sql" or "flat_file"
        settings: Source of the database URL, flat-file directory and limits
        clock: Time source for timestamps

    Raises:
        ValueError: for an unsupported backend name
    """
    limits = limits_from_settings(settings)
    if backend == "sql":
        return SqlBackend(settings.database_url, limits=limits, clock=clock)
    elif backend == "flat_file":
        return FlatFileBackend(LocalStorage(settings.flat_file_path), limits=limits, clock=clock)
    else:
        raise ValueError(f"Unsupported storage backend: {backend}")


async def open_backend(
    settings: Settings,
    clock: Clock = utc_now,
) -> PersistenceBackend:
    """
    Create and initialize the configured backend.

    With storage_backend="auto" the relational store is tried first and the
    flat-file store is used if it cannot be opened. An explicit choice never
    falls back.

    Returns:
        An initialized PersistenceBackend
    """
    choice = settings.storage_backend.lower()
    if choice not in BACKEND_CHOICES:
        raise ValueError(f"Unsupported storage backend: {settings.storage_backend}")

    if choice != "auto":
        backend = create_backend(choice, settings, clock=clock)
        await backend.init()
        logger.info(f"Storage backend ready: {backend.name}")
        return backend

    sql_backend: Optional[PersistenceBackend] = None
    try:
        sql_backend = create_backend("sql", settings, clock=clock)
        await sql_backend.init()
        logger.info("Storage backend ready: sql")
        return sql_backend
    except Exception as e:
        logger.warning(
            f"Relational store unavailable, falling back to flat files: {e}",
            extra={"extra_fields": {"database_url": settings.database_url}},
        )
        if sql_backend is not None:
            await sql_backend.close()

    backend = create_backend("flat_file", settings, clock=clock)
    await backend.init()
    logger.info("Storage backend ready: flat_file")
    return backend
