"""
Storage Interface - Abstract base class for document storage.
The flat-file backend and the training-data export write through it, so the
local filesystem can be swapped for another blob store.
"""

from abc import ABC, abstractmethod
from typing import Optional


class StorageInterface(ABC):
    """
    Abstract document storage contract.
    Paths are relative to the store root, e.g. "chats.json".
    """

    @abstractmethod
    async def save(self, path: str, content: bytes | str) -> bool:
        """
        Replace the document at path.

        The write must be atomic: a reader sees either the previous document
        or the new one, never a partial write.

        Args:
            path: Relative path of the document
            content: Document body (bytes or text)

        Returns:
            bool: True if the document was written, False otherwise
        """
        pass

    @abstractmethod
    async def load(self, path: str) -> Optional[bytes]:
        """
        Load the document at path.

        Args:
            path: Relative path to load from

        Returns:
            Optional[bytes]: Document body, or None if it doesn't exist
        """
        pass
