"""Explicit cleanup of temporary upload files.

Items register their encrypted temp file with a tracker; the owner of the
tracker decides when files are reclaimed, either per item with release() or
all at once with cleanup() (also run when a ``with`` block ends). Owners are
held through weak references, so tracking an item never keeps it (or its key)
alive; the path stays registered until it is released or cleaned up.
"""

from __future__ import annotations

import logging
import threading
import weakref
from pathlib import Path
from typing import List, Tuple

logger = logging.getLogger(__name__)


class FileCleaningTracker:
    def __init__(self):
        self._lock = threading.Lock()
        self._entries: List[Tuple[Path, weakref.ref]] = []

    def track(self, path: str | Path, owner: object) -> None:
        """Register ``path`` for deletion on behalf of ``owner``."""
        with self._lock:
            self._entries.append((Path(path), weakref.ref(owner)))
        logger.debug("Tracking %s", path)

    def tracked_count(self) -> int:
        with self._lock:
            return len(self._entries)

    def release(self, owner: object) -> int:
        """Delete the files registered for ``owner``; return how many were removed."""
        with self._lock:
            mine = [p for p, ref in self._entries if ref() is owner]
            self._entries = [(p, ref) for p, ref in self._entries if ref() is not owner]
        return sum(1 for p in mine if self._delete(p))

    def cleanup(self) -> int:
        """Delete every tracked file; return how many were removed."""
        with self._lock:
            paths = [p for p, _ in self._entries]
            self._entries = []
        removed = sum(1 for p in paths if self._delete(p))
        if paths:
            logger.debug("Cleanup removed %d of %d tracked files", removed, len(paths))
        return removed

    @staticmethod
    def _delete(path: Path) -> bool:
        try:
            path.unlink()
        except FileNotFoundError:
            # never written to disk, or already discarded
            return False
        logger.debug("Deleted %s", path)
        return True

    def __enter__(self) -> "FileCleaningTracker":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.cleanup()
