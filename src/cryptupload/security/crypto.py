"""Streaming AES-CTR encryption for buffered upload content.

Stored layout (one artifact per write pass):
- block_size bytes: random IV, unencrypted
- N bytes: AES-CTR ciphertext of the N plaintext bytes

No header, no padding, no length prefix: the ciphertext is exactly as long as
the plaintext, so ``len(plaintext) == len(stored) - block_size``. There is no
authentication tag either; CTR ciphertext is malleable and tampering is not
detected here.

Algorithm parameters are process-wide module constants. ``KEY_SIZE`` comes
from the settings (``CRYPTUPLOAD_KEY_SIZE``) and may be raised to 192 or 256.
"""

from __future__ import annotations

import io
import os
from typing import BinaryIO

from cryptography.exceptions import UnsupportedAlgorithm
from cryptography.hazmat.primitives.ciphers import Cipher, CipherContext, algorithms, modes

from ..config import get_settings
from ..core.exceptions import ConfigurationError, InvalidKeyError, TruncatedStreamError


CIPHER_ALGORITHM = "AES"
CIPHER_MODE = "CTR"
CIPHER_PADDING = "NoPadding"
CIPHER_NAME = f"{CIPHER_ALGORITHM}/{CIPHER_MODE}/{CIPHER_PADDING}"

# bits; 128 unless the deployment raises it
KEY_SIZE: int = get_settings().key_size

_CTR_KEY_SIZES = (128, 192, 256)


def iv_size() -> int:
    """Return the IV length in bytes, i.e. the cipher block size."""
    return algorithms.AES.block_size // 8


class SymmetricKey:
    """Secret key material owned by a single item.

    The bytes live in a ``bytearray`` so :meth:`wipe` can overwrite them in
    place once the owner is done with the key.
    """

    __slots__ = ("_material", "_wiped")

    def __init__(self, material: bytes):
        self._material = bytearray(material)
        self._wiped = False

    @property
    def bits(self) -> int:
        return len(self._material) * 8

    @property
    def wiped(self) -> bool:
        return self._wiped

    @property
    def material(self) -> bytearray:
        if self._wiped:
            raise InvalidKeyError("Key material has been wiped")
        return self._material

    def wipe(self) -> None:
        """Overwrite the key bytes with zeros (best-effort)."""
        for i in range(len(self._material)):
            self._material[i] = 0
        self._wiped = True

    def __len__(self) -> int:
        return len(self._material)

    def __repr__(self) -> str:
        # never show key material
        state = "wiped" if self._wiped else "live"
        return f"SymmetricKey(bits={self.bits}, {state})"


def generate_key() -> SymmetricKey:
    """Return a new random AES key of ``KEY_SIZE`` bits.

    AES keys are plain random bytes; this also checks that the runtime can
    build an AES-CTR context so a broken deployment fails here, not on the
    first upload.
    """
    if KEY_SIZE not in _CTR_KEY_SIZES:
        raise InvalidKeyError(
            f"Unsupported key size {KEY_SIZE} for {CIPHER_NAME}; "
            f"use one of {', '.join(str(s) for s in _CTR_KEY_SIZES)} bits"
        )
    key = SymmetricKey(os.urandom(KEY_SIZE // 8))
    _cipher_context(key, bytes(iv_size()), encrypt=True)
    return key


def _cipher_context(key: SymmetricKey, iv: bytes, encrypt: bool) -> CipherContext:
    # Translate backend failures into the package's error taxonomy.
    try:
        cipher = Cipher(algorithms.AES(key.material), modes.CTR(iv))
        return cipher.encryptor() if encrypt else cipher.decryptor()
    except UnsupportedAlgorithm as e:
        raise ConfigurationError(
            f"The required encryption algorithm is not available: {CIPHER_NAME}"
        ) from e
    except ValueError as e:
        message = f"The given key ({key.bits} bits) is not supported for: {CIPHER_NAME}"
        if key.bits > 128:
            message += (
                ". The runtime's cryptographic policy may restrict key strength;"
                " lower CRYPTUPLOAD_KEY_SIZE or enable strong keys in the crypto backend"
            )
        raise InvalidKeyError(message) from e


class EncryptingSink(io.RawIOBase):
    """Writable stream encrypting everything written to it into ``sink``."""

    def __init__(self, sink: BinaryIO, encryptor: CipherContext):
        super().__init__()
        self._sink = sink
        self._encryptor = encryptor

    def writable(self) -> bool:
        return True

    def write(self, b) -> int:
        if self.closed:
            raise ValueError("write to closed stream")
        data = memoryview(b).cast("B")
        if data.nbytes:
            self._sink.write(self._encryptor.update(data))
        return data.nbytes

    def flush(self) -> None:
        if not self.closed and not getattr(self._sink, "closed", False):
            self._sink.flush()

    def close(self) -> None:
        if self.closed:
            return
        try:
            # CTR keeps no partial block, so this is always empty
            tail = self._encryptor.finalize()
            if tail:
                self._sink.write(tail)
        finally:
            try:
                self._sink.close()
            finally:
                super().close()


class DecryptingSource(io.RawIOBase):
    """Readable stream yielding the plaintext of the ciphertext in ``source``."""

    def __init__(self, source: BinaryIO, decryptor: CipherContext):
        super().__init__()
        self._source = source
        self._decryptor = decryptor

    def readable(self) -> bool:
        return True

    def readinto(self, b) -> int:
        if self.closed:
            raise ValueError("read from closed stream")
        view = memoryview(b).cast("B")
        chunk = self._source.read(len(view))
        if not chunk:
            return 0
        plain = self._decryptor.update(chunk)
        n = len(plain)
        view[:n] = plain
        return n

    def close(self) -> None:
        if self.closed:
            return
        try:
            self._source.close()
        finally:
            super().close()


def wrap_for_encryption(sink: BinaryIO, key: SymmetricKey) -> EncryptingSink:
    """Write a fresh IV to ``sink`` and return a stream that encrypts into it.

    The IV goes out immediately, before any plaintext, so the first
    ``iv_size()`` bytes of ``sink`` are always the raw IV.
    """
    iv = os.urandom(iv_size())
    encryptor = _cipher_context(key, iv, encrypt=True)

    written = sink.write(iv)
    if written is not None and written != len(iv):
        raise TruncatedStreamError(f"short IV write: {written} of {len(iv)} bytes")

    return EncryptingSink(sink, encryptor)


def _read_iv(source: BinaryIO, size: int) -> bytes:
    buf = bytearray()
    while len(buf) < size:
        chunk = source.read(size - len(buf))
        if not chunk:
            raise TruncatedStreamError(
                f"stream ended after {len(buf)} of {size} IV bytes; content is corrupt"
            )
        buf += chunk
    return bytes(buf)


def wrap_for_decryption(source: BinaryIO, key: SymmetricKey) -> DecryptingSource:
    """Consume the IV from ``source`` and return a stream that decrypts the rest.

    Raises :class:`TruncatedStreamError` when ``source`` ends before a whole IV
    has been read.
    """
    iv = _read_iv(source, iv_size())
    decryptor = _cipher_context(key, iv, encrypt=False)
    return DecryptingSource(source, decryptor)


def decrypt_buffer(data: bytes, key: SymmetricKey) -> bytes:
    """Decrypt a complete stored buffer (``IV || ciphertext``) in one pass."""
    with wrap_for_decryption(io.BytesIO(data), key) as stream:
        return stream.read()
