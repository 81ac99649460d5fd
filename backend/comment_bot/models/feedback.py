"""
Feedback Models - Ratings, improvement requests and their aggregate statistics.
"""

from datetime import datetime
from decimal import Decimal, ROUND_HALF_UP
from enum import Enum
from typing import Any, Dict, List, Optional
from pydantic import BaseModel, Field


class FeedbackKind(str, Enum):
    RATING = "rating"
    IMPROVEMENT = "improvement"


class GenerationSnapshot(BaseModel):
    """Generation context stored alongside a feedback record."""
    original_text: str
    personality: Optional[str] = None
    model: str
    chat_id: Optional[int] = None
    generated_text: Optional[str] = None
    selected_comment: Optional[str] = None  # the variant that was rated, if one was picked


class FeedbackRecord(BaseModel):
    """Append-only feedback entry tied to one generation event."""
    id: int
    user_id: int
    event_id: str
    kind: FeedbackKind
    rating: Optional[int] = None  # 1..5, rating records only
    text: Optional[str] = None  # improvement records only
    context: GenerationSnapshot
    created_at: datetime

    class Config:
        from_attributes = True


class ActivityRecord(BaseModel):
    """Auxiliary activity log entry (generations, improvements)."""
    id: int
    user_id: int
    chat_id: Optional[int] = None
    action: str
    data: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime


def _empty_buckets() -> Dict[int, int]:
    return {1: 0, 2: 0, 3: 0, 4: 0, 5: 0}


def average_rating(ratings: Dict[int, int]) -> float:
    """Mean over rating buckets, rounded half-up to one decimal; 0.0 without ratings."""
    count = sum(ratings.values())
    if count == 0:
        return 0.0
    total = sum(value * hits for value, hits in ratings.items())
    mean = Decimal(total) / Decimal(count)
    return float(mean.quantize(Decimal("0.1"), rounding=ROUND_HALF_UP))


class FeedbackStats(BaseModel):
    """Per-user feedback statistics, recomputed from the full record set."""
    total_feedback: int = 0
    ratings: Dict[int, int] = Field(default_factory=_empty_buckets)
    improvement_count: int = 0
    average_rating: float = 0.0

    @property
    def rating_count(self) -> int:
        return sum(self.ratings.values())

    @property
    def average_rating_text(self) -> str:
        return f"{self.average_rating:.1f}"

    @classmethod
    def from_records(cls, records: List[FeedbackRecord]) -> "FeedbackStats":
        ratings = _empty_buckets()
        improvements = 0
        for record in records:
            if record.kind == FeedbackKind.RATING and record.rating in ratings:
                ratings[record.rating] += 1
            elif record.kind == FeedbackKind.IMPROVEMENT:
                improvements += 1
        return cls(
            total_feedback=len(records),
            ratings=ratings,
            improvement_count=improvements,
            average_rating=average_rating(ratings),
        )


class GlobalFeedbackStats(FeedbackStats):
    """System-wide statistics."""
    users_with_feedback: int = 0

    @classmethod
    def from_records(cls, records: List[FeedbackRecord]) -> "GlobalFeedbackStats":
        base = FeedbackStats.from_records(records)
        return cls(
            **base.model_dump(),
            users_with_feedback=len({record.user_id for record in records}),
        )


class TrainingData(BaseModel):
    """Feedback exported for prompt tuning, newest first."""
    ratings: List[FeedbackRecord] = Field(default_factory=list)
    improvements: List[FeedbackRecord] = Field(default_factory=list)

    @property
    def total_feedback(self) -> int:
        return len(self.ratings) + len(self.improvements)


class PurgeCounts(BaseModel):
    feedback: int = 0
    activity: int = 0

    @property
    def total(self) -> int:
        return self.feedback + self.activity
