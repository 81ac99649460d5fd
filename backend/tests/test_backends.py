"""
Tests for the persistence backends.
The `backend` fixture runs each test against the SQL and the flat-file store.
"""

import json
from datetime import timedelta
from unittest.mock import AsyncMock

import pytest

from comment_bot.core.errors import LimitExceeded, NotFound, ValidationError
from comment_bot.models.feedback import FeedbackKind
from comment_bot.models.user import UserProfile
from comment_bot.storage import FlatFileBackend, LocalStorage, StorageInterface


async def _user(backend, external_id="100"):
    return (await backend.get_or_create_user(external_id)).unwrap()


async def _active_ids(backend, user_id):
    chats = (await backend.list_chats(user_id)).unwrap()
    return [chat.id for chat in chats if chat.is_active]


class TestUsers:

    @pytest.mark.asyncio
    async def test_get_or_create_is_idempotent(self, backend):
        first = await backend.get_or_create_user("42", UserProfile(first_name="Anna"))
        second = await backend.get_or_create_user("42", UserProfile(first_name="Other"))
        assert first.success and second.success
        assert first.data.id == second.data.id
        assert second.data.first_name == "Anna"
        assert len((await backend.list_users()).unwrap()) == 1

    @pytest.mark.asyncio
    async def test_get_unknown_user(self, backend):
        result = await backend.get_user(999)
        assert not result.success
        assert result.error_kind == NotFound.kind

    @pytest.mark.asyncio
    async def test_update_settings_merges(self, backend):
        user = await _user(backend)
        await backend.update_user_settings(user.id, {"model": "qwen-plus"})
        updated = (await backend.update_user_settings(user.id, {"lang": "en"})).unwrap()
        assert updated.settings == {"model": "qwen-plus", "lang": "en"}
        assert (await backend.get_user(user.id)).unwrap().settings["model"] == "qwen-plus"


class TestChats:

    @pytest.mark.asyncio
    async def test_new_chat_is_the_only_active_one(self, backend):
        user = await _user(backend)
        first = (await backend.create_chat(user.id, "First", "m")).unwrap()
        second = (await backend.create_chat(user.id, "Second", "m")).unwrap()
        assert second.is_active
        assert await _active_ids(backend, user.id) == [second.id]
        assert (await backend.get_active_chat(user.id)).unwrap().id == second.id
        assert first.id != second.id

    @pytest.mark.asyncio
    async def test_at_most_one_active_over_operation_sequence(self, backend, clock):
        user = await _user(backend)
        ids = []
        for name in ("a", "b", "c", "d"):
            ids.append((await backend.create_chat(user.id, name, "m")).unwrap().id)
            assert len(await _active_ids(backend, user.id)) == 1

        for chat_id in (ids[0], ids[2], ids[1]):
            clock.advance(seconds=1)
            await backend.set_active_chat(user.id, chat_id)
            assert await _active_ids(backend, user.id) == [chat_id]

        await backend.touch_chat(user.id, ids[3])
        await backend.rename_chat(user.id, ids[0], "renamed")
        assert await _active_ids(backend, user.id) == [ids[1]]

        await backend.delete_chat(user.id, ids[1])
        assert len(await _active_ids(backend, user.id)) <= 1

    @pytest.mark.asyncio
    async def test_eleventh_chat_is_rejected(self, backend):
        user = await _user(backend)
        for i in range(10):
            assert (await backend.create_chat(user.id, f"Chat {i}", "m")).success

        before = (await backend.list_chats(user.id)).unwrap()
        result = await backend.create_chat(user.id, "Chat 11", "m")
        after = (await backend.list_chats(user.id)).unwrap()

        assert not result.success
        assert result.error_kind == LimitExceeded.kind
        assert "10" in result.error
        assert [c.id for c in after] == [c.id for c in before]
        assert [c.id for c in after if c.is_active] == [c.id for c in before if c.is_active]

    @pytest.mark.asyncio
    async def test_name_length_boundary(self, backend):
        user = await _user(backend)
        assert (await backend.create_chat(user.id, "x" * 50, "m")).success

        result = await backend.create_chat(user.id, "x" * 51, "m")
        assert not result.success
        assert result.error_kind == ValidationError.kind
        assert len((await backend.list_chats(user.id)).unwrap()) == 1

    @pytest.mark.asyncio
    async def test_blank_name_is_rejected(self, backend):
        user = await _user(backend)
        result = await backend.create_chat(user.id, "   ", "m")
        assert result.error_kind == ValidationError.kind

    @pytest.mark.asyncio
    async def test_rename_validates_length(self, backend):
        user = await _user(backend)
        chat = (await backend.create_chat(user.id, "Old", "m")).unwrap()
        assert (await backend.rename_chat(user.id, chat.id, "y" * 51)).error_kind == ValidationError.kind
        assert (await backend.rename_chat(user.id, chat.id, "New")).unwrap().name == "New"

    @pytest.mark.asyncio
    async def test_get_active_chat_without_chats(self, backend):
        user = await _user(backend)
        result = await backend.get_active_chat(user.id)
        assert not result.success
        assert result.error_kind == NotFound.kind

    @pytest.mark.asyncio
    async def test_selecting_a_chat_moves_it_first(self, backend):
        user = await _user(backend)
        chat_a = (await backend.create_chat(user.id, "A", "m")).unwrap()
        chat_b = (await backend.create_chat(user.id, "B", "m")).unwrap()

        chats = (await backend.list_chats(user.id)).unwrap()
        assert [c.name for c in chats] == ["B", "A"]

        await backend.set_active_chat(user.id, chat_a.id)
        chats = (await backend.list_chats(user.id)).unwrap()
        assert [c.name for c in chats] == ["A", "B"]
        assert [c.is_active for c in chats] == [True, False]
        assert chat_b.id == chats[1].id

    @pytest.mark.asyncio
    async def test_chat_of_another_user_is_not_found(self, backend):
        owner = await _user(backend, "1")
        stranger = await _user(backend, "2")
        chat = (await backend.create_chat(owner.id, "Mine", "m")).unwrap()

        for result in (
            await backend.set_active_chat(stranger.id, chat.id),
            await backend.rename_chat(stranger.id, chat.id, "Theirs"),
            await backend.delete_chat(stranger.id, chat.id),
            await backend.touch_chat(stranger.id, chat.id),
        ):
            assert result.error_kind == NotFound.kind
        assert len((await backend.list_chats(owner.id)).unwrap()) == 1

    @pytest.mark.asyncio
    async def test_delete_active_leaves_no_active(self, backend):
        user = await _user(backend)
        (await backend.create_chat(user.id, "A", "m")).unwrap()
        chat_b = (await backend.create_chat(user.id, "B", "m")).unwrap()

        deleted = (await backend.delete_chat(user.id, chat_b.id)).unwrap()
        assert deleted.is_active
        assert (await backend.get_active_chat(user.id)).error_kind == NotFound.kind
        assert len((await backend.list_chats(user.id)).unwrap()) == 1

    @pytest.mark.asyncio
    async def test_touch_counts_messages(self, backend):
        user = await _user(backend)
        chat = (await backend.create_chat(user.id, "A", "m")).unwrap()
        await backend.touch_chat(user.id, chat.id)
        touched = (await backend.touch_chat(user.id, chat.id)).unwrap()
        assert touched.message_count == 2
        assert touched.updated_at > chat.updated_at

    @pytest.mark.asyncio
    async def test_list_chats_updated_before(self, backend, clock):
        user = await _user(backend)
        old = (await backend.create_chat(user.id, "Old", "m")).unwrap()
        clock.advance(days=31)
        (await backend.create_chat(user.id, "New", "m")).unwrap()

        stale = (await backend.list_chats_updated_before(clock() - timedelta(days=30))).unwrap()
        assert [c.id for c in stale] == [old.id]

    @pytest.mark.asyncio
    async def test_delete_chat_if_updated_before(self, backend, clock):
        user = await _user(backend)
        old = (await backend.create_chat(user.id, "Old", "m")).unwrap()
        used = (await backend.create_chat(user.id, "Used", "m")).unwrap()
        clock.advance(days=31)
        cutoff = clock() - timedelta(days=30)
        (await backend.touch_chat(user.id, used.id)).unwrap()

        assert (await backend.delete_chat_if_updated_before(user.id, used.id, cutoff)).unwrap() is None
        deleted = (await backend.delete_chat_if_updated_before(user.id, old.id, cutoff)).unwrap()
        assert deleted.id == old.id
        assert [c.id for c in (await backend.list_chats(user.id)).unwrap()] == [used.id]

        missing = await backend.delete_chat_if_updated_before(user.id, old.id, cutoff)
        assert missing.error_kind == NotFound.kind


class TestFeedback:

    @pytest.mark.asyncio
    async def test_single_rating_statistics(self, backend, snapshot):
        user = await _user(backend)
        result = await backend.record_feedback(user.id, "comment_1", FeedbackKind.RATING, 3, snapshot)
        assert result.success

        stats = (await backend.get_user_feedback_stats(user.id)).unwrap()
        assert stats.total_feedback == 1
        assert stats.ratings == {1: 0, 2: 0, 3: 1, 4: 0, 5: 0}
        assert stats.average_rating == 3.0
        assert stats.average_rating_text == "3.0"

    @pytest.mark.asyncio
    async def test_feedback_counted_once(self, backend, snapshot):
        user = await _user(backend)
        await backend.record_feedback(user.id, "e1", FeedbackKind.RATING, 5, snapshot)
        await backend.record_feedback(user.id, "e1", FeedbackKind.IMPROVEMENT, "shorter", snapshot)

        stats = (await backend.get_user_feedback_stats(user.id)).unwrap()
        assert stats.total_feedback == 2
        assert stats.rating_count == 1
        assert stats.improvement_count == 1

        overall = (await backend.get_global_feedback_stats()).unwrap()
        assert overall.total_feedback == 2
        assert overall.users_with_feedback == 1

    @pytest.mark.asyncio
    @pytest.mark.parametrize("value", [0, 6, True, "4", 2.5])
    async def test_invalid_rating_is_rejected(self, backend, snapshot, value):
        user = await _user(backend)
        result = await backend.record_feedback(user.id, "e1", FeedbackKind.RATING, value, snapshot)
        assert result.error_kind == ValidationError.kind
        assert (await backend.get_user_feedback_stats(user.id)).unwrap().total_feedback == 0

    @pytest.mark.asyncio
    async def test_blank_improvement_is_rejected(self, backend, snapshot):
        user = await _user(backend)
        result = await backend.record_feedback(user.id, "e1", FeedbackKind.IMPROVEMENT, "  ", snapshot)
        assert result.error_kind == ValidationError.kind

    @pytest.mark.asyncio
    async def test_feedback_for_unknown_user(self, backend, snapshot):
        result = await backend.record_feedback(404, "e1", FeedbackKind.RATING, 4, snapshot)
        assert result.error_kind == NotFound.kind

    @pytest.mark.asyncio
    async def test_list_feedback_newest_first(self, backend, snapshot, clock):
        user = await _user(backend)
        await backend.record_feedback(user.id, "old", FeedbackKind.RATING, 2, snapshot)
        clock.advance(minutes=5)
        await backend.record_feedback(user.id, "new", FeedbackKind.RATING, 4, snapshot)

        records = (await backend.list_feedback(user.id)).unwrap()
        assert [r.event_id for r in records] == ["new", "old"]
        assert records[0].context.original_text == snapshot.original_text

    @pytest.mark.asyncio
    async def test_purge_older_than(self, backend, snapshot, clock):
        user = await _user(backend)
        chat = (await backend.create_chat(user.id, "A", "m")).unwrap()
        await backend.record_feedback(user.id, "old", FeedbackKind.RATING, 1, snapshot)
        await backend.record_activity(user.id, chat.id, "generate", {"model": "m"})
        clock.advance(days=91)
        await backend.record_feedback(user.id, "new", FeedbackKind.RATING, 5, snapshot)

        counts = (await backend.purge_older_than(clock() - timedelta(days=90))).unwrap()
        assert counts.feedback == 1
        assert counts.activity == 1
        assert counts.total == 2
        remaining = (await backend.list_feedback()).unwrap()
        assert [r.event_id for r in remaining] == ["new"]

    @pytest.mark.asyncio
    async def test_storage_stats(self, backend, snapshot):
        user = await _user(backend)
        await backend.create_chat(user.id, "A", "m")
        await backend.create_chat(user.id, "B", "m")
        await backend.record_feedback(user.id, "e", FeedbackKind.RATING, 4, snapshot)

        stats = (await backend.get_storage_stats()).unwrap()
        assert stats.backend == backend.name
        assert (stats.users, stats.chats, stats.active_chats, stats.feedback) == (1, 2, 1, 1)


class TestFlatFileBackend:

    @pytest.mark.asyncio
    async def test_reload_from_disk(self, tmp_path, clock, limits, snapshot):
        storage = LocalStorage(str(tmp_path / "chats"))
        first = FlatFileBackend(storage, limits=limits, clock=clock)
        await first.init()
        user = (await first.get_or_create_user("7")).unwrap()
        chat = (await first.create_chat(user.id, "Saved", "m")).unwrap()
        await first.record_feedback(user.id, "e", FeedbackKind.RATING, 4, snapshot)
        await first.close()

        chats_doc = json.loads((tmp_path / "chats" / "chats.json").read_text(encoding="utf-8"))
        assert str(user.id) in chats_doc["chats"]

        second = FlatFileBackend(LocalStorage(str(tmp_path / "chats")), limits=limits, clock=clock)
        await second.init()
        assert (await second.get_active_chat(user.id)).unwrap().id == chat.id
        assert (await second.get_user_feedback_stats(user.id)).unwrap().total_feedback == 1
        new_chat = (await second.create_chat(user.id, "Next", "m")).unwrap()
        assert new_chat.id > chat.id

    @pytest.mark.asyncio
    async def test_failed_flush_degrades_and_recovers(self, clock, limits):
        storage = AsyncMock(spec=StorageInterface)
        storage.load.return_value = None
        storage.save.return_value = False
        backend = FlatFileBackend(storage, limits=limits, clock=clock)
        await backend.init()

        result = await backend.get_or_create_user("9")
        assert result.success
        assert backend.degraded is True
        assert (await backend.list_users()).unwrap()[0].external_id == "9"

        storage.save.reset_mock()
        storage.save.return_value = True
        assert (await backend.create_chat(result.data.id, "A", "m")).success
        assert backend.degraded is False

        saved_docs = {call.args[0] for call in storage.save.call_args_list}
        assert {"users.json", "chats.json"} <= saved_docs
