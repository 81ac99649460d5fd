"""
Session Models - The closed set of per-user conversation states.

Each state names the input the bot expects next and carries only the payload
that input needs. States are immutable; a transition builds the next state.
"""

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, List, Literal, Optional, Union
from pydantic import BaseModel, Field

from .chat import ChatRef
from .feedback import GenerationSnapshot


class SessionMode(str, Enum):
    IDLE = "idle"
    AWAITING_MODEL_NAME = "awaiting_model_name"
    AWAITING_CHAT_NAME = "awaiting_chat_name"
    AWAITING_CHAT_SELECTION = "awaiting_chat_selection"
    AWAITING_RENAME_TARGET = "awaiting_rename_target"
    AWAITING_RENAME_VALUE = "awaiting_rename_value"
    AWAITING_DELETE_TARGET = "awaiting_delete_target"
    AWAITING_GENERATION_TEXT = "awaiting_generation_text"
    AWAITING_RATING_TARGET = "awaiting_rating_target"
    AWAITING_IMPROVEMENT_TEXT = "awaiting_improvement_text"


class GenerationContext(BaseModel):
    """Everything a follow-up rating or improvement needs about one generation."""
    event_id: str = Field(default_factory=lambda: f"comment_{uuid.uuid4().hex[:16]}")
    original_text: str
    personality: Optional[str] = None
    model: str
    chat_id: int
    generated_text: str
    session_token: Optional[str] = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    class Config:
        frozen = True

    @property
    def comments(self) -> List[str]:
        """Individual comment variants (blank-line separated)."""
        return [part.strip() for part in self.generated_text.split("\n\n") if part.strip()]

    def snapshot(self, selected_index: Optional[int] = None) -> GenerationSnapshot:
        comments = self.comments
        selected = None
        if selected_index is not None and 0 <= selected_index < len(comments):
            selected = comments[selected_index]
        return GenerationSnapshot(
            original_text=self.original_text,
            personality=self.personality,
            model=self.model,
            chat_id=self.chat_id,
            generated_text=self.generated_text,
            selected_comment=selected,
        )


class _State(BaseModel):
    class Config:
        frozen = True


class IdleState(_State):
    mode: Literal["idle"] = "idle"


class AwaitingModelName(_State):
    mode: Literal["awaiting_model_name"] = "awaiting_model_name"


class AwaitingChatName(_State):
    mode: Literal["awaiting_chat_name"] = "awaiting_chat_name"


class AwaitingChatSelection(_State):
    mode: Literal["awaiting_chat_selection"] = "awaiting_chat_selection"
    candidates: List[ChatRef]


class AwaitingRenameTarget(_State):
    mode: Literal["awaiting_rename_target"] = "awaiting_rename_target"
    candidates: List[ChatRef]


class AwaitingRenameValue(_State):
    mode: Literal["awaiting_rename_value"] = "awaiting_rename_value"
    chat_id: int
    old_name: str


class AwaitingDeleteTarget(_State):
    mode: Literal["awaiting_delete_target"] = "awaiting_delete_target"
    candidates: List[ChatRef]


class AwaitingGenerationText(_State):
    mode: Literal["awaiting_generation_text"] = "awaiting_generation_text"
    personality: Optional[str] = None


class AwaitingRatingTarget(_State):
    """Holds the last generation until it is rated, improved or replaced."""
    mode: Literal["awaiting_rating_target"] = "awaiting_rating_target"
    context: GenerationContext
    selected_index: Optional[int] = None


class AwaitingImprovementText(_State):
    mode: Literal["awaiting_improvement_text"] = "awaiting_improvement_text"
    context: GenerationContext


SessionState = Annotated[
    Union[
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
    ],
    Field(discriminator="mode"),
]

SESSION_STATE_TYPES = (
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

# States that select from a numbered candidate list
CANDIDATE_STATES = (AwaitingChatSelection, AwaitingRenameTarget, AwaitingDeleteTarget)
