"""
Unit tests for the feedback aggregator.
"""

import json
from datetime import timedelta
from unittest.mock import AsyncMock

import pytest

from comment_bot.core.errors import InfrastructureError, NotFound, ValidationError
from comment_bot.core.feedback_aggregator import FeedbackAggregator
from comment_bot.models.session import GenerationContext
from comment_bot.storage import LocalStorage, StorageInterface


@pytest.fixture
def aggregator(backend, clock):
    return FeedbackAggregator(backend, retention_days=90, clock=clock)


@pytest.fixture
def context():
    return GenerationContext(
        original_text="Our team won the regional cup",
        personality="pavel",
        model="qwen-max-latest",
        chat_id=1,
        generated_text="1. Congrats!\n\n2. Well deserved\n\n3. Bravo\n\n4. Next: nationals",
    )


async def _user_id(backend, external_id="300"):
    return (await backend.get_or_create_user(external_id)).unwrap().id


class TestRecording:

    @pytest.mark.asyncio
    async def test_record_rating(self, aggregator, backend, context):
        user_id = await _user_id(backend)
        result = await aggregator.record_rating(user_id, context, 4)
        assert result.success

        records = (await backend.list_feedback(user_id)).unwrap()
        assert len(records) == 1
        assert records[0].event_id == context.event_id
        assert records[0].rating == 4
        assert records[0].context.personality == "pavel"
        assert records[0].context.generated_text == context.generated_text
        assert records[0].context.selected_comment is None

    @pytest.mark.asyncio
    async def test_record_rating_for_selected_comment(self, aggregator, backend, context):
        user_id = await _user_id(backend)
        assert (await aggregator.record_rating(user_id, context, 5, selected_index=3)).success
        record = (await backend.list_feedback(user_id)).unwrap()[0]
        assert record.context.selected_comment == "4. Next: nationals"
        assert record.context.generated_text == context.generated_text

    @pytest.mark.asyncio
    @pytest.mark.parametrize("rating", [0, 6, -1])
    async def test_rating_out_of_range(self, aggregator, backend, context, rating):
        user_id = await _user_id(backend)
        result = await aggregator.record_rating(user_id, context, rating)
        assert result.error_kind == ValidationError.kind
        assert (await backend.list_feedback()).unwrap() == []

    @pytest.mark.asyncio
    async def test_rating_without_context(self, aggregator, backend):
        user_id = await _user_id(backend)
        result = await aggregator.record_rating(user_id, None, 5)
        assert result.error_kind == NotFound.kind
        assert (await backend.list_feedback()).unwrap() == []

    @pytest.mark.asyncio
    async def test_improvement_without_context(self, aggregator, backend):
        user_id = await _user_id(backend)
        result = await aggregator.record_improvement(user_id, None, "shorter")
        assert result.error_kind == NotFound.kind

    @pytest.mark.asyncio
    async def test_record_improvement_strips_text(self, aggregator, backend, context):
        user_id = await _user_id(backend)
        assert (await aggregator.record_improvement(user_id, context, "  make it shorter ")).success
        records = (await backend.list_feedback(user_id)).unwrap()
        assert records[0].text == "make it shorter"

    @pytest.mark.asyncio
    async def test_blank_improvement(self, aggregator, backend, context):
        user_id = await _user_id(backend)
        result = await aggregator.record_improvement(user_id, context, "   ")
        assert result.error_kind == ValidationError.kind


class TestStatistics:

    @pytest.mark.asyncio
    async def test_average_rounds_half_up(self, aggregator, backend, context):
        user_id = await _user_id(backend)
        for rating in (4, 4, 5, 4):
            await aggregator.record_rating(user_id, context, rating)

        stats = (await aggregator.get_user_stats(user_id)).unwrap()
        assert stats.rating_count == 4
        # 17 / 4 = 4.25
        assert stats.average_rating_text == "4.3"

    @pytest.mark.asyncio
    async def test_no_feedback(self, aggregator, backend):
        user_id = await _user_id(backend)
        stats = (await aggregator.get_user_stats(user_id)).unwrap()
        assert stats.total_feedback == 0
        assert stats.average_rating_text == "0.0"

    @pytest.mark.asyncio
    async def test_global_stats(self, aggregator, backend, context):
        first = await _user_id(backend, "1")
        second = await _user_id(backend, "2")
        await aggregator.record_rating(first, context, 2)
        await aggregator.record_rating(second, context, 5)
        await aggregator.record_improvement(second, context, "more facts")

        overall = (await aggregator.get_global_stats()).unwrap()
        assert overall.total_feedback == 3
        assert overall.users_with_feedback == 2
        assert overall.improvement_count == 1
        assert overall.average_rating_text == "3.5"


class TestTrainingData:

    @pytest.mark.asyncio
    async def test_training_data_split_by_kind(self, aggregator, backend, context, clock):
        user_id = await _user_id(backend)
        await aggregator.record_rating(user_id, context, 3)
        clock.advance(seconds=1)
        await aggregator.record_improvement(user_id, context, "friendlier")
        clock.advance(seconds=1)
        await aggregator.record_rating(user_id, context, 5)

        data = (await aggregator.get_training_data()).unwrap()
        assert [r.rating for r in data.ratings] == [5, 3]
        assert [r.text for r in data.improvements] == ["friendlier"]
        assert data.total_feedback == 3

    @pytest.mark.asyncio
    async def test_export_training_data(self, aggregator, backend, context, tmp_path):
        user_id = await _user_id(backend)
        await aggregator.record_rating(user_id, context, 5)
        storage = LocalStorage(str(tmp_path / "export"))

        exported = (await aggregator.export_training_data(storage, "learning/training-data.json")).unwrap()
        assert exported == 1

        document = json.loads((tmp_path / "export" / "learning" / "training-data.json").read_text(encoding="utf-8"))
        assert document["total_feedback"] == 1
        assert document["ratings"][0]["rating"] == 5
        assert document["improvements"] == []

    @pytest.mark.asyncio
    async def test_export_write_failure(self, aggregator):
        storage = AsyncMock(spec=StorageInterface)
        storage.save.return_value = False
        result = await aggregator.export_training_data(storage, "training.json")
        assert result.error_kind == InfrastructureError.kind
        assert result.error == InfrastructureError.GENERIC_MESSAGE


class TestRetention:

    @pytest.mark.asyncio
    async def test_sweep_purges_old_feedback(self, aggregator, backend, context, clock):
        user_id = await _user_id(backend)
        start = clock()
        clock.set(start - timedelta(days=100))
        await aggregator.record_rating(user_id, context, 1)
        clock.set(start - timedelta(days=10))
        await aggregator.record_rating(user_id, context, 5)
        clock.set(start)

        counts = (await aggregator.sweep()).unwrap()
        assert counts.feedback == 1
        stats = (await aggregator.get_user_stats(user_id)).unwrap()
        assert stats.ratings[5] == 1
        assert stats.ratings[1] == 0
