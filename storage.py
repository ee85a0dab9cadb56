"""Screenshot object storage."""
from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Optional

from exceptions import StorageError

SCREENSHOT_CONTENT_TYPE = "image/jpeg"


def screenshot_path(test_result_id: str, step_number: int, phase: str) -> str:
    """Object key for a step screenshot; ``phase`` is ``before`` or ``after``."""
    return f"{test_result_id}/step-{step_number}-{phase}.jpg"


class ScreenshotStorage(ABC):
    """Opaque blob store keyed by path."""

    @abstractmethod
    def upload(self, path: str, data: bytes, content_type: str = SCREENSHOT_CONTENT_TYPE) -> str:
        """Store ``data`` under ``path`` (overwriting) and return the path."""

    @abstractmethod
    def get_public_url(self, path: str) -> str:
        """Return a URL a dashboard can load the object from."""

    @abstractmethod
    def delete(self, path: str) -> None:
        """Remove the object; missing objects are ignored."""


class LocalScreenshotStorage(ScreenshotStorage):
    """Filesystem-backed bucket."""

    def __init__(self, root: Path, bucket: str = "test-screenshots", logger: Optional[logging.Logger] = None):
        self.root = Path(root) / bucket
        self.logger = logger or logging.getLogger("swarm.storage")

    def _resolve(self, path: str) -> Path:
        target = (self.root / path).resolve()
        root = self.root.resolve()
        if root != target and root not in target.parents:
            raise StorageError(f"Path escapes storage root: {path}", {"path": path})
        return target

    def upload(self, path: str, data: bytes, content_type: str = SCREENSHOT_CONTENT_TYPE) -> str:
        target = self._resolve(path)
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_bytes(data)
        except OSError as e:
            self.logger.error(f"Failed to upload screenshot {path}: {e}")
            raise StorageError(f"Failed to upload screenshot: {e}", {"path": path}) from e
        return path

    def get_public_url(self, path: str) -> str:
        return self._resolve(path).as_uri()

    def delete(self, path: str) -> None:
        try:
            self._resolve(path).unlink(missing_ok=True)
        except OSError as e:
            raise StorageError(f"Failed to delete screenshot: {e}", {"path": path}) from e
