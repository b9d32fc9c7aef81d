"""Transparent per-item encryption for buffered uploads."""

from .core.factory import EncryptedItemFactory, DEFAULT_SIZE_THRESHOLD
from .core.item import EncryptedStorageItem
from .core.storage import BufferedStorageItem
from .core.tracker import FileCleaningTracker

__all__ = [
    "EncryptedItemFactory",
    "DEFAULT_SIZE_THRESHOLD",
    "EncryptedStorageItem",
    "BufferedStorageItem",
    "FileCleaningTracker",
]
