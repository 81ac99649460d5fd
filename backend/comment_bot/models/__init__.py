"""Data models for users, chats, feedback, session state and channel events."""

from .user import User, UserProfile
from .chat import Chat, ChatRef, ChatLimits, sort_most_recent_first
from .feedback import (
    ActivityRecord,
    FeedbackKind,
    FeedbackRecord,
    FeedbackStats,
    GenerationSnapshot,
    GlobalFeedbackStats,
    PurgeCounts,
    TrainingData,
)
from .session import (
    GenerationContext,
    SessionMode,
    SessionState,
    IdleState,
    AwaitingModelName,
    AwaitingChatName,
    AwaitingChatSelection,
    AwaitingRenameTarget,
    AwaitingRenameValue,
    AwaitingDeleteTarget,
    AwaitingGenerationText,
    AwaitingRatingTarget,
    AwaitingImprovementText,
)
from .events import Button, EventKind, InboundEvent, Reply

__all__ = [
    'User', 'UserProfile',
    'Chat', 'ChatRef', 'ChatLimits', 'sort_most_recent_first',
    'ActivityRecord', 'FeedbackKind', 'FeedbackRecord', 'FeedbackStats',
    'GenerationSnapshot', 'GlobalFeedbackStats', 'PurgeCounts', 'TrainingData',
    'GenerationContext', 'SessionMode', 'SessionState', 'IdleState',
    'AwaitingModelName', 'AwaitingChatName', 'AwaitingChatSelection',
    'AwaitingRenameTarget', 'AwaitingRenameValue', 'AwaitingDeleteTarget',
    'AwaitingGenerationText', 'AwaitingRatingTarget', 'AwaitingImprovementText',
    'Button', 'EventKind', 'InboundEvent', 'Reply',
]
