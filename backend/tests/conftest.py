"""
Shared test fixtures and configuration.
"""

import os
from datetime import datetime, timedelta, timezone

import pytest
import pytest_asyncio

# Set test environment variables before importing app modules
os.environ.setdefault("LOG_FILE_ENABLED", "false")
os.environ.setdefault("LOG_LEVEL", "WARNING")
os.environ.setdefault("STORAGE_BACKEND", "flat_file")
os.environ.setdefault("FLAT_FILE_PATH", "/tmp/commentbot_test_data/chats")
os.environ.setdefault("GENERATION_RETRY_BASE_DELAY", "0")

from comment_bot.models.chat import ChatLimits  # noqa: E402
from comment_bot.models.feedback import GenerationSnapshot  # noqa: E402
from comment_bot.storage import FlatFileBackend, LocalStorage, SqlBackend  # noqa: E402


class FakeClock:
    """Manually advanced UTC clock."""

    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now

    def set(self, value: datetime) -> None:
        self.now = value


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture
def clock():
    return FakeClock(datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc))


@pytest.fixture
def limits():
    return ChatLimits(max_chats=10, max_name_length=50)


@pytest.fixture
def snapshot():
    return GenerationSnapshot(
        original_text="New cafe opened downtown",
        personality="timur",
        model="qwen-max-latest",
        chat_id=1,
        generated_text="1. Nice\n\n2. Great",
    )


def make_backend(kind: str, tmp_path, clock, limits):
    if kind == "sql":
        return SqlBackend(f"sqlite:///{tmp_path / 'bot.db'}", limits=limits, clock=clock)
    return FlatFileBackend(LocalStorage(str(tmp_path / "chats")), limits=limits, clock=clock)


@pytest_asyncio.fixture(params=["sql", "flat_file"])
async def backend(request, tmp_path, clock, limits):
    """Initialized backend; every test using it runs against both stores."""
    store = make_backend(request.param, tmp_path, clock, limits)
    await store.init()
    yield store
    await store.close()
