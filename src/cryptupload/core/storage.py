"""
Buffered storage for upload content

Structure for reference:
==============================
 - content stays in memory while the total written is <= size_threshold
 - the first write that would exceed size_threshold moves everything to
     <repository>/upload_<uid>_<counter>.tmp
   and all further writes go to that file
==============================
For reference:
> The storage knows nothing about encryption. EncryptedStorageItem (core/item.py) hands it
> IV || ciphertext and reads the same bytes back, so the threshold applies to stored bytes.
> Temp file names are predictable. Point the repository at a directory that
> untrusted local users cannot write to.

"""

from __future__ import annotations

import io
import itertools
import logging
import tempfile
import threading
import uuid
from email.message import Message
from pathlib import Path
from typing import BinaryIO, Optional, Protocol, runtime_checkable

from ..config import DEFAULT_CHARSET
from .exceptions import StorageError

logger = logging.getLogger(__name__)

_UID = str(uuid.uuid4()).replace("-", "_")
_counter = itertools.count()
_counter_lock = threading.Lock()


def _unique_id() -> str:
    with _counter_lock:
        n = next(_counter)
    return f"{n:08d}"


def charset_from_content_type(content_type: Optional[str]) -> Optional[str]:
    """Return the ``charset`` parameter of a content type header, if any."""
    if not content_type:
        return None
    msg = Message()
    msg["content-type"] = content_type
    charset = msg.get_param("charset")
    if isinstance(charset, tuple):
        # RFC 2231 encoded parameter: (charset, language, value)
        charset = charset[2]
    return charset or None


@runtime_checkable
class RawStorage(Protocol):
    """What an encrypting wrapper needs from a buffered item."""

    field_name: str
    content_type: Optional[str]
    is_form_field: bool
    file_name: Optional[str]
    default_charset: str

    def open_raw_output_sink(self) -> BinaryIO: ...

    def open_raw_input_source(self) -> BinaryIO: ...

    def raw_length(self) -> int: ...

    def is_in_memory(self) -> bool: ...

    def raw_storage_path(self) -> Optional[Path]: ...

    def read_raw(self) -> Optional[bytes]: ...

    def clear_cache(self) -> None: ...

    def temp_path(self) -> Path: ...


class DeferredOutputStream(io.RawIOBase):
    """Writable stream that buffers in memory and spills to a file past a threshold."""

    def __init__(self, threshold: int, path_factory):
        super().__init__()
        self.threshold = threshold
        self.path: Optional[Path] = None
        self._path_factory = path_factory
        self._memory: Optional[io.BytesIO] = io.BytesIO()
        self._file: Optional[BinaryIO] = None
        self._written = 0

    @property
    def written(self) -> int:
        return self._written

    def writable(self) -> bool:
        return True

    def is_in_memory(self) -> bool:
        return self._file is None

    def write(self, b) -> int:
        if self.closed:
            raise ValueError("write to closed stream")
        data = memoryview(b).cast("B")
        n = data.nbytes
        if self._file is None and self._written + n > self.threshold:
            self._spill()
        target = self._file if self._file is not None else self._memory
        target.write(data)
        self._written += n
        return n

    def _spill(self) -> None:
        path = Path(self._path_factory())
        try:
            f = open(path, "wb")
        except FileNotFoundError as e:
            raise StorageError(f"Repository directory does not exist: {path.parent}") from e
        try:
            f.write(self._memory.getvalue())
        except BaseException:
            f.close()
            raise
        logger.debug("Threshold %d exceeded, moved %d bytes to %s", self.threshold, self._written, path)
        self._memory = None
        self._file = f
        self.path = path

    def getvalue(self) -> bytes:
        """Return the buffered bytes; only valid while in memory."""
        if self._memory is None:
            raise StorageError("Content is no longer held in memory")
        return self._memory.getvalue()

    def release_memory(self) -> None:
        if self._memory is not None:
            self._memory = io.BytesIO()

    def flush(self) -> None:
        if self._file is not None and not self._file.closed:
            self._file.flush()

    def close(self) -> None:
        if self.closed:
            return
        try:
            if self._file is not None:
                self._file.close()
        finally:
            super().close()


class BufferedStorageItem:
    """Upload content kept in memory below a size threshold and in a temp file above it.

    The boundary is strict: a total of exactly ``size_threshold`` bytes stays in
    memory and only a write taking the total past it spills to disk, the same
    ``written + count > threshold`` rule as commons-io DeferredFileOutputStream.
    """

    def __init__(
        self,
        field_name: str,
        content_type: Optional[str],
        is_form_field: bool,
        file_name: Optional[str],
        size_threshold: int,
        repository: Optional[str | Path] = None,
    ):
        self.field_name = field_name
        self.content_type = content_type
        self.is_form_field = is_form_field
        self.file_name = file_name
        self.size_threshold = size_threshold
        self.repository = Path(repository) if repository else Path(tempfile.gettempdir())
        self.default_charset = DEFAULT_CHARSET
        self._output: Optional[DeferredOutputStream] = None
        self._cached: Optional[bytes] = None
        self._temp_path: Optional[Path] = None

    @property
    def name(self) -> Optional[str]:
        return self.file_name

    def temp_path(self) -> Path:
        """Return the temp file this item spills to; the name is fixed on first call."""
        if self._temp_path is None:
            self._temp_path = self.repository / f"upload_{_UID}_{_unique_id()}.tmp"
        return self._temp_path

    def open_raw_output_sink(self) -> DeferredOutputStream:
        self._cached = None
        self._output = DeferredOutputStream(self.size_threshold, self.temp_path)
        return self._output

    def is_in_memory(self) -> bool:
        if self._cached is not None:
            return True
        return self._output is None or self._output.is_in_memory()

    def raw_storage_path(self) -> Optional[Path]:
        if self._output is None or self.is_in_memory():
            return None
        return self._output.path

    def raw_length(self) -> int:
        if self._cached is not None:
            return len(self._cached)
        if self._output is None:
            return 0
        if self._output.is_in_memory():
            return self._output.written
        path = self._output.path
        return path.stat().st_size if path.exists() else 0

    def read_raw(self) -> Optional[bytes]:
        """Return all stored bytes, or None when there is nothing to return."""
        if self._cached is not None:
            return self._cached
        if self._output is None:
            return None
        if self._output.is_in_memory():
            self._cached = self._output.getvalue()
            return self._cached
        try:
            return self._output.path.read_bytes()
        except FileNotFoundError:
            return None

    def open_raw_input_source(self) -> BinaryIO:
        if not self.is_in_memory():
            return open(self._output.path, "rb")
        data = self.read_raw()
        return io.BytesIO(data if data is not None else b"")

    def clear_cache(self) -> None:
        self._cached = None
        if self._output is not None and self._output.is_in_memory():
            self._output.release_memory()
            self._output = None
