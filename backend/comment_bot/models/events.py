"""
Channel-neutral inbound events and outbound replies.
"""

from enum import Enum
from typing import List, Optional
from pydantic import BaseModel, Field

from .user import UserProfile


class EventKind(str, Enum):
    COMMAND = "command"
    TEXT = "text"
    ACTION = "action"  # inline button press


class InboundEvent(BaseModel):
    """One user interaction, already parsed out of the platform payload."""
    external_user_id: str
    conversation_id: str  # where replies are delivered
    kind: EventKind
    command: Optional[str] = None  # without leading slash
    text: Optional[str] = None
    action: Optional[str] = None  # button callback data, e.g. "rate:4"
    callback_id: Optional[str] = None
    profile: UserProfile = Field(default_factory=UserProfile)


class Button(BaseModel):
    label: str
    action: str


class Reply(BaseModel):
    """Text plus optional inline keyboard rows."""
    text: str
    buttons: List[List[Button]] = Field(default_factory=list)
