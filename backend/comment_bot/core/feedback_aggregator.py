"""
Feedback/Learning Aggregator - Records ratings and improvement requests and
derives statistics and training data from them.
"""

import json
import logging
from datetime import datetime, timedelta
from typing import Optional

from .errors import InfrastructureError, NotFound
from .logging_config import UserLoggerAdapter, truncate_large_data
from .result import result_boundary
from ..models.feedback import (
    FeedbackKind,
    FeedbackStats,
    GlobalFeedbackStats,
    PurgeCounts,
    TrainingData,
)
from ..models.session import GenerationContext
from ..storage.backend import PersistenceBackend, validate_feedback_value
from ..storage.interface import StorageInterface
from ..utils.clock import Clock, utc_now

logger = logging.getLogger(__name__)


class FeedbackAggregator:
    """Validates feedback before it is written; reads are recomputed from storage."""

    def __init__(
        self,
        backend: PersistenceBackend,
        retention_days: int = 90,
        clock: Clock = utc_now,
    ):
        self.backend = backend
        self.retention_days = retention_days
        self.clock = clock

    @staticmethod
    def _require_context(context: Optional[GenerationContext]) -> GenerationContext:
        if context is None:
            raise NotFound("There is no generated comment to give feedback on.")
        return context

    @result_boundary("record_rating")
    async def record_rating(
        self,
        user_id: int,
        context: Optional[GenerationContext],
        rating: int,
        selected_index: Optional[int] = None,
    ) -> int:
        """Store a 1..5 rating for a generation, or for one picked variant. Returns the record id."""
        context = self._require_context(context)
        validate_feedback_value(FeedbackKind.RATING, rating)
        record_id = (await self.backend.record_feedback(
            user_id, context.event_id, FeedbackKind.RATING, rating, context.snapshot(selected_index)
        )).unwrap()
        UserLoggerAdapter(logger, {"user_id": user_id}).info(
            "Rating saved",
            extra={"extra_fields": {"event_id": context.event_id, "rating": rating}},
        )
        return record_id

    @result_boundary("record_improvement")
    async def record_improvement(
        self, user_id: int, context: Optional[GenerationContext], text: str
    ) -> int:
        """Store a free-text improvement request for a generation."""
        context = self._require_context(context)
        validate_feedback_value(FeedbackKind.IMPROVEMENT, text)
        record_id = (await self.backend.record_feedback(
            user_id, context.event_id, FeedbackKind.IMPROVEMENT, text.strip(), context.snapshot()
        )).unwrap()
        UserLoggerAdapter(logger, {"user_id": user_id}).info(
            "Improvement request saved",
            extra={"extra_fields": {
                "event_id": context.event_id,
                "text": truncate_large_data(text, 100),
            }},
        )
        return record_id

    @result_boundary("get_user_stats")
    async def get_user_stats(self, user_id: int) -> FeedbackStats:
        return (await self.backend.get_user_feedback_stats(user_id)).unwrap()

    @result_boundary("get_global_stats")
    async def get_global_stats(self) -> GlobalFeedbackStats:
        return (await self.backend.get_global_feedback_stats()).unwrap()

    @result_boundary("get_training_data")
    async def get_training_data(self) -> TrainingData:
        """All ratings and improvements with their generation context, newest first."""
        records = (await self.backend.list_feedback()).unwrap()
        return TrainingData(
            ratings=[r for r in records if r.kind == FeedbackKind.RATING],
            improvements=[r for r in records if r.kind == FeedbackKind.IMPROVEMENT],
        )

    @result_boundary("export_training_data")
    async def export_training_data(self, storage: StorageInterface, path: str) -> int:
        """
        Write the training data as one JSON document.

        Returns:
            int: number of exported records
        """
        data = (await self.get_training_data()).unwrap()
        document = {
            "exported_at": self.clock().isoformat(),
            "total_feedback": data.total_feedback,
            **data.model_dump(mode="json"),
        }
        if not await storage.save(path, json.dumps(document, ensure_ascii=False, indent=2)):
            raise InfrastructureError(f"could not write training data to {path}")
        logger.info(f"Exported {data.total_feedback} feedback records to {path}")
        return data.total_feedback

    @result_boundary("feedback_sweep")
    async def sweep(self, now: Optional[datetime] = None) -> PurgeCounts:
        """Purge feedback and activity older than the retention period."""
        now = now or self.clock()
        cutoff = now - timedelta(days=self.retention_days)
        counts = (await self.backend.purge_older_than(cutoff)).unwrap()
        logger.info(
            "Feedback retention sweep finished",
            extra={"extra_fields": {
                "cutoff": cutoff.isoformat(),
                "feedback_deleted": counts.feedback,
                "activity_deleted": counts.activity,
            }},
        )
        return counts
