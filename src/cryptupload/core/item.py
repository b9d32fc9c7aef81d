"""
EncryptedStorageItem: a buffered upload item whose stored bytes are always encrypted.

The item wraps a RawStorage (see core/storage.py) and one per-item key. Every write
goes through an encrypting sink and every read through a decrypting source, so the
storage only ever holds ``IV || ciphertext`` whether it sits in memory or in a temp file.
Callers see plaintext and plaintext sizes.

Lifecycle:
    Empty -> Writing (sink open) -> Written (sink closed) -> Read* / Materialized / Discarded

Write once: every open_output_sink() call starts a new IV, and interleaving writers
produces an unreadable artifact. Discarded is terminal.
"""

from __future__ import annotations

import logging
import shutil
from pathlib import Path
from typing import BinaryIO, Optional

from ..security.crypto import (
    DecryptingSource,
    EncryptingSink,
    SymmetricKey,
    decrypt_buffer,
    generate_key,
    iv_size,
    wrap_for_decryption,
    wrap_for_encryption,
)
from .exceptions import ItemDiscardedError, UnsupportedOperationError
from .storage import RawStorage, charset_from_content_type
from .tracker import FileCleaningTracker

logger = logging.getLogger(__name__)


class EncryptedStorageItem:
    """Buffered upload item with transparent per-item encryption."""

    def __init__(
        self,
        storage: RawStorage,
        key: Optional[SymmetricKey] = None,
        tracker: Optional[FileCleaningTracker] = None,
    ):
        self._storage = storage
        self._key = key if key is not None else generate_key()
        self._tracker = tracker
        self._discarded = False

    # ------------------------------------------------------------------
    # Item metadata (delegated)
    # ------------------------------------------------------------------

    @property
    def field_name(self) -> str:
        return self._storage.field_name

    @property
    def content_type(self) -> Optional[str]:
        return self._storage.content_type

    @property
    def is_form_field(self) -> bool:
        return self._storage.is_form_field

    @property
    def name(self) -> Optional[str]:
        return self._storage.file_name

    @property
    def default_charset(self) -> str:
        return self._storage.default_charset

    @property
    def discarded(self) -> bool:
        return self._discarded

    def is_in_memory(self) -> bool:
        return self._storage.is_in_memory()

    def _require_live(self) -> None:
        if self._discarded:
            raise ItemDiscardedError(f"Item for field '{self.field_name}' has been discarded")

    # ------------------------------------------------------------------
    # Streams
    # ------------------------------------------------------------------

    def open_output_sink(self) -> EncryptingSink:
        """Return a writable stream; bytes written to it are stored encrypted."""
        self._require_live()
        raw = self._storage.open_raw_output_sink()
        try:
            return wrap_for_encryption(raw, self._key)
        except BaseException:
            raw.close()
            raise

    def open_input_source(self) -> DecryptingSource:
        """Return a readable stream over the decrypted content."""
        self._require_live()
        raw = self._storage.open_raw_input_source()
        try:
            return wrap_for_decryption(raw, self._key)
        except BaseException:
            raw.close()
            raise

    def read_all(self) -> Optional[bytes]:
        """
        Return the whole decrypted content.

        Returns None when the storage has nothing cached and cannot load it
        (never written, or the temp file is gone).
        """
        self._require_live()
        raw = self._storage.read_raw()
        if raw is None:
            return None
        return decrypt_buffer(raw, self._key)

    def read_text(self, encoding: Optional[str] = None) -> Optional[str]:
        """
        Return the decrypted content as text.

        The charset is, in order: ``encoding``, the ``charset`` parameter of
        the content type, the item's default charset.
        """
        data = self.read_all()
        if data is None:
            return None
        charset = encoding or charset_from_content_type(self.content_type) or self.default_charset
        return data.decode(charset)

    # ------------------------------------------------------------------
    # Size and materialization
    # ------------------------------------------------------------------

    def size(self) -> int:
        # stored bytes carry the IV in front of the ciphertext
        return max(0, self._storage.raw_length() - iv_size())

    def materialize_to(self, destination: str | Path) -> Path:
        """
        Write the decrypted content to ``destination``.

        Always decrypts and copies, whether the content sits in memory or on
        disk. The encrypted temp file is never renamed into place: it holds
        ciphertext, not the upload.
        """
        self._require_live()
        destination = Path(destination)
        destination.parent.mkdir(parents=True, exist_ok=True)
        with self.open_input_source() as src, open(destination, "wb") as out:
            shutil.copyfileobj(src, out)
        logger.debug("Materialized %d bytes for field '%s'", self.size(), self.field_name)
        return destination

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def discard(self) -> None:
        """Drop cached content, delete the temp file if any, leave the tracker and wipe the key."""
        self._storage.clear_cache()
        path = self._storage.raw_storage_path()
        if path is not None and not self._storage.is_in_memory():
            try:
                path.unlink()
                logger.debug("Deleted temp file %s", path)
            except FileNotFoundError:
                pass
        if self._tracker is not None:
            self._tracker.release(self)
            self._tracker = None
        if not self._key.wiped:
            self._key.wipe()
        self._discarded = True

    def __enter__(self) -> "EncryptedStorageItem":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.discard()

    # ------------------------------------------------------------------
    # Raw storage access
    # ------------------------------------------------------------------

    def raw_storage_location(self) -> Path:
        """
        Not supported: the only file available holds encrypted data.

        Use open_input_source() or materialize_to() to get at the content.
        """
        raise UnsupportedOperationError(
            "EncryptedStorageItem doesn't expose its temp file. "
            "The raw file is encrypted, so renaming or reading it directly won't give you the upload. "
            "Use open_input_source() or materialize_to() instead."
        )

    def _raw_temp_path(self) -> Path:
        # For trusted internal callers (the factory's cleanup tracker); the file is encrypted.
        return self._storage.temp_path()

    def describe(self) -> str:
        return "name=%s, StoreLocation=%s, size=%s bytes, isFormField=%s, FieldName=%s" % (
            self.name,
            self._storage.raw_storage_path(),
            self.size(),
            self.is_form_field,
            self.field_name,
        )

    def __str__(self) -> str:
        return self.describe()

    def __repr__(self) -> str:
        return f"EncryptedStorageItem(field_name={self.field_name!r}, name={self.name!r}, size={self.size()})"
