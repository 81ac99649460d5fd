"""
Generation Client Base - Abstract contract for the remote comment generation API.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional


@dataclass
class GenerationResult:
    """Response from a generation call."""
    text: str
    model: str
    session_token: Optional[str] = None  # upstream conversation id, reused on the next call
    raw: Optional[Any] = field(default=None, repr=False)


class GenerationClient(ABC):
    """
    Abstract base class for generation backends.
    Implementations raise on transport or protocol errors; retrying is the
    caller's concern (see generate_with_retry).
    """

    def __init__(self, base_url: str, api_key: Optional[str] = None, timeout: float = 60.0):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout = timeout

    @abstractmethod
    async def generate(
        self,
        prompt: str,
        model: str,
        session_token: Optional[str] = None,
    ) -> GenerationResult:
        """
        Send one prompt and return the generated text.

        Args:
            prompt: Full prompt, instructions included
            model: Model identifier
            session_token: Upstream conversation id to continue, if any

        Returns:
            GenerationResult with the text and the session token to reuse
        """
        pass

    @abstractmethod
    async def check_status(self) -> Dict[str, Any]:
        pass

    @abstractmethod
    async def list_models(self) -> List[str]:
        pass

    @abstractmethod
    async def clear_history(self, session_token: str) -> bool:
        pass
