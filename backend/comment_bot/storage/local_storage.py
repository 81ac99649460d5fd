"""
Local Filesystem Storage Implementation.
Stores documents under a base directory on the server's local filesystem.
"""

import logging
import os
import uuid
import aiofiles
import aiofiles.os
from pathlib import Path
from typing import Optional
from .interface import StorageInterface

logger = logging.getLogger(__name__)


class LocalStorage(StorageInterface):
    """
    Local filesystem storage implementation.
    Documents are written to a sibling temp file and moved into place.
    """

    def __init__(self, base_dir: str = "./data"):
        """
        Initialize local storage with a base directory.

        Args:
            base_dir: Base directory for all stored documents
        """
        self.base_dir = Path(base_dir).resolve()
        self.base_dir.mkdir(parents=True, exist_ok=True)

    def _get_full_path(self, path: str) -> Path:
        """Convert relative path to full absolute path within base directory."""
        full_path = (self.base_dir / path).resolve()

        # Security check: ensure path is within base_dir
        if full_path != self.base_dir and self.base_dir not in full_path.parents:
            raise ValueError(f"Invalid path: {path} - path traversal detected")

        return full_path

    async def save(self, path: str, content: bytes | str) -> bool:
        """Write content atomically via temp file + replace."""
        try:
            full_path = self._get_full_path(path)
            full_path.parent.mkdir(parents=True, exist_ok=True)
            temp_path = full_path.with_name(f".{full_path.name}.{uuid.uuid4().hex[:8]}.tmp")

            data = content.encode("utf-8") if isinstance(content, str) else content
            async with aiofiles.open(temp_path, 'wb') as f:
                await f.write(data)
                await f.flush()
                os.fsync(f.fileno())

            await aiofiles.os.replace(temp_path, full_path)
            return True
        except Exception as e:
            logger.error(
                f"Error saving file {path}: {e}",
                extra={"extra_fields": {"path": path, "error": str(e)}},
            )
            try:
                if 'temp_path' in locals() and temp_path.exists():
                    temp_path.unlink()
            except OSError:
                pass
            return False

    async def load(self, path: str) -> Optional[bytes]:
        """Load content from local filesystem."""
        full_path = self._get_full_path(path)
        if not full_path.exists():
            return None

        async with aiofiles.open(full_path, 'rb') as f:
            return await f.read()
