"""
Factory producing encrypted upload items.

Items keep content in memory up to ``size_threshold`` stored bytes and in a
temp file inside ``repository`` beyond that. Defaults come from the settings
(see cryptupload.config): a 10KB threshold and the system temp directory.

NOTE: temp files get predictable names. On a host with untrusted local users,
set ``repository`` to a directory they cannot write to; otherwise a local
attacker can swap the file between write and read.

AES-CTR output is malleable: flipped ciphertext bits decrypt to flipped
plaintext bits and nothing here detects it.
"""

from __future__ import annotations

from pathlib import Path
from typing import Optional

from ..config import DEFAULT_SIZE_THRESHOLD, get_settings
from ..security.crypto import generate_key
from .item import EncryptedStorageItem
from .storage import BufferedStorageItem
from .tracker import FileCleaningTracker


class EncryptedItemFactory:
    """Creates EncryptedStorageItem instances, each with a fresh key."""

    def __init__(
        self,
        size_threshold: Optional[int] = None,
        repository: Optional[str | Path] = None,
        tracker: Optional[FileCleaningTracker] = None,
        default_charset: Optional[str] = None,
    ):
        settings = get_settings()
        self.size_threshold = settings.size_threshold if size_threshold is None else size_threshold
        self.repository = Path(repository) if repository else settings.repository
        self.tracker = tracker
        self.default_charset = default_charset or settings.default_charset

    def create_item(
        self,
        field_name: str,
        content_type: Optional[str],
        is_form_field: bool,
        file_name: Optional[str],
    ) -> EncryptedStorageItem:
        """Create an item for one form field or uploaded file."""
        storage = BufferedStorageItem(
            field_name,
            content_type,
            is_form_field,
            file_name,
            self.size_threshold,
            self.repository,
        )
        storage.default_charset = self.default_charset
        item = EncryptedStorageItem(storage, generate_key(), tracker=self.tracker)
        if self.tracker is not None:
            # the tracker gets the encrypted temp file, never a decrypted copy
            self.tracker.track(item._raw_temp_path(), item)
        return item


__all__ = ["EncryptedItemFactory", "DEFAULT_SIZE_THRESHOLD"]
