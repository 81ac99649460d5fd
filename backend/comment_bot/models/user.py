"""
User Model - Defines the chat-platform user record.
"""

from datetime import datetime
from typing import Any, Dict, Optional
from pydantic import BaseModel, Field


class UserProfile(BaseModel):
    """Profile hints supplied by the messaging platform on first contact."""
    username: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None


class User(UserProfile):
    """User model with all fields."""
    id: int
    external_id: str  # platform user id, unique
    created_at: datetime
    updated_at: datetime
    settings: Dict[str, Any] = Field(default_factory=dict)

    class Config:
        from_attributes = True

    @property
    def display_name(self) -> str:
        return self.first_name or self.username or self.external_id
