"""
Chat Models - Defines per-user chats and the limits that apply to them.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import List
from pydantic import BaseModel

from ..core.errors import ValidationError


class Chat(BaseModel):
    """A named conversation owned by one user."""
    id: int
    user_id: int
    name: str
    model: str  # generation model identifier
    is_active: bool = False
    message_count: int = 0
    created_at: datetime
    updated_at: datetime  # last used

    class Config:
        from_attributes = True


class ChatRef(BaseModel):
    """Lightweight chat reference kept in session state candidate lists."""
    id: int
    name: str
    is_active: bool = False

    class Config:
        frozen = True

    @classmethod
    def from_chat(cls, chat: Chat) -> "ChatRef":
        return cls(id=chat.id, name=chat.name, is_active=chat.is_active)


@dataclass(frozen=True)
class ChatLimits:
    """Capacity and naming policy, enforced by the manager and again by storage."""
    max_chats: int = 10
    max_name_length: int = 50

    def validate_name(self, name: str) -> str:
        """
        Check a chat name against the policy.

        Raises:
            ValidationError: if the name is blank or longer than max_name_length
        """
        if not isinstance(name, str) or not name.strip():
            raise ValidationError("Chat name cannot be empty.")
        if len(name) > self.max_name_length:
            raise ValidationError(
                f"Chat name is too long (maximum {self.max_name_length} characters)."
            )
        return name


def sort_most_recent_first(chats: List[Chat]) -> List[Chat]:
    """Order chats by last use, newest first; id breaks ties."""
    return sorted(chats, key=lambda chat: (chat.updated_at, chat.id), reverse=True)
