"""
Session State Store - In-memory per-user conversation state.

State is not persisted; a restart returns every user to idle.
"""

import logging
from typing import Dict

from ..models.session import SESSION_STATE_TYPES, IdleState, SessionState

logger = logging.getLogger(__name__)


class SessionStateStore:
    """Maps user id to the current SessionState. Absent means idle."""

    def __init__(self):
        self._states: Dict[int, SessionState] = {}

    def get(self, user_id: int) -> SessionState:
        state = self._states.get(user_id)
        if state is None:
            return IdleState()
        if not isinstance(state, SESSION_STATE_TYPES):
            logger.warning(
                "Discarding unknown session state",
                extra={"extra_fields": {"user_id": user_id, "state": type(state).__name__}},
            )
            self._states.pop(user_id, None)
            return IdleState()
        return state

    def set(self, user_id: int, state: SessionState) -> None:
        """Replace the whole state; setting idle clears the entry."""
        if isinstance(state, IdleState):
            self._states.pop(user_id, None)
        else:
            self._states[user_id] = state

    def clear(self, user_id: int) -> None:
        self._states.pop(user_id, None)

    def __len__(self) -> int:
        return len(self._states)
