"""Security helpers: key generation and streaming AES-CTR framing for cryptupload.

This package provides:
- per-item symmetric key generation
- an encrypting sink that prefixes a random IV to the stored bytes
- a decrypting source that consumes that IV and yields plaintext
"""

from .crypto import (
    SymmetricKey,
    generate_key,
    iv_size,
    wrap_for_encryption,
    wrap_for_decryption,
    decrypt_buffer,
)

__all__ = [
    "SymmetricKey",
    "generate_key",
    "iv_size",
    "wrap_for_encryption",
    "wrap_for_decryption",
    "decrypt_buffer",
]
