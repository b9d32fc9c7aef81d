"""
Unit tests for cryptupload.security.crypto.
"""

import io
import os
from unittest.mock import MagicMock, patch

import pytest
from cryptography.exceptions import UnsupportedAlgorithm
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes

from cryptupload.core.exceptions import (
    ConfigurationError,
    InvalidKeyError,
    TruncatedStreamError,
)
from cryptupload.security import crypto
from cryptupload.security.crypto import (
    SymmetricKey,
    decrypt_buffer,
    generate_key,
    iv_size,
    wrap_for_decryption,
    wrap_for_encryption,
)


# ==============================================================================
# Helpers / Fixtures
# ==============================================================================

@pytest.fixture
def key():
    return generate_key()


def encrypt_bytes(data, key):
    """Encrypt into a BytesIO and return the stored bytes."""
    sink = io.BytesIO()
    enc = wrap_for_encryption(sink, key)
    enc.write(data)
    enc.flush()
    stored = sink.getvalue()
    enc.close()
    return stored


class TrickleReader(io.RawIOBase):
    """Source that hands out at most one byte per read() call."""

    def __init__(self, data):
        super().__init__()
        self._buf = io.BytesIO(data)

    def readable(self):
        return True

    def read(self, size=-1):
        return self._buf.read(1)


# ==============================================================================
# Tests: Key generation
# ==============================================================================

def test_iv_size_is_aes_block_size():
    assert iv_size() == 16


def test_generate_key_uses_configured_size(key):
    assert key.bits == crypto.KEY_SIZE
    assert len(key) == crypto.KEY_SIZE // 8


def test_generate_key_stronger_size(monkeypatch):
    monkeypatch.setattr(crypto, "KEY_SIZE", 256)
    assert generate_key().bits == 256


def test_generate_key_returns_distinct_keys():
    a = generate_key()
    b = generate_key()
    assert bytes(a.material) != bytes(b.material)


def test_generate_key_rejects_unsupported_size(monkeypatch):
    monkeypatch.setattr(crypto, "KEY_SIZE", 100)
    with pytest.raises(InvalidKeyError, match="Unsupported key size"):
        generate_key()


def test_generate_key_missing_algorithm_is_configuration_error():
    with patch("cryptupload.security.crypto.Cipher", side_effect=UnsupportedAlgorithm("no AES")):
        with pytest.raises(ConfigurationError, match="AES/CTR/NoPadding"):
            generate_key()


# ==============================================================================
# Tests: SymmetricKey
# ==============================================================================

def test_key_repr_hides_material(key):
    text = repr(key)
    assert "bits=" in text
    assert bytes(key.material).hex() not in text


def test_key_wipe_zeroes_and_blocks_use():
    material = os.urandom(16)
    key = SymmetricKey(material)
    backing = key.material
    key.wipe()
    assert key.wiped
    assert bytes(backing) == bytes(16)
    with pytest.raises(InvalidKeyError):
        key.material


# ==============================================================================
# Tests: Encryption framing
# ==============================================================================

def test_stored_bytes_are_iv_then_ctr_ciphertext(key):
    data = os.urandom(1000)
    stored = encrypt_bytes(data, key)

    assert len(stored) == len(data) + iv_size()
    iv, ciphertext = stored[:iv_size()], stored[iv_size():]

    # independent AES-CTR with the stored IV must give the same ciphertext
    enc = Cipher(algorithms.AES(bytes(key.material)), modes.CTR(iv)).encryptor()
    assert ciphertext == enc.update(data) + enc.finalize()
    assert ciphertext != data


def test_iv_written_before_any_plaintext(key):
    sink = io.BytesIO()
    enc = wrap_for_encryption(sink, key)
    assert len(sink.getvalue()) == iv_size()
    enc.close()


def test_empty_plaintext_stores_only_iv(key):
    stored = encrypt_bytes(b"", key)
    assert len(stored) == iv_size()
    assert decrypt_buffer(stored, key) == b""


def test_same_plaintext_twice_gives_different_ciphertext(key):
    data = b"identical plaintext" * 10
    first = encrypt_bytes(data, key)
    second = encrypt_bytes(data, key)
    assert first[:iv_size()] != second[:iv_size()]
    assert first != second


def test_invalid_key_writes_nothing():
    sink = io.BytesIO()
    with pytest.raises(InvalidKeyError):
        wrap_for_encryption(sink, SymmetricKey(b"short"))
    assert sink.getvalue() == b""


def test_strong_key_rejection_mentions_policy():
    with patch("cryptupload.security.crypto.Cipher", side_effect=ValueError("bad key")):
        with pytest.raises(InvalidKeyError, match="policy"):
            wrap_for_encryption(io.BytesIO(), SymmetricKey(os.urandom(32)))


def test_iv_write_failure_propagates(key):
    sink = MagicMock()
    sink.write.side_effect = OSError("disk full")
    with pytest.raises(OSError, match="disk full"):
        wrap_for_encryption(sink, key)


def test_short_iv_write_is_rejected(key):
    sink = MagicMock()
    sink.write.return_value = 3
    with pytest.raises(TruncatedStreamError, match="short IV write"):
        wrap_for_encryption(sink, key)


def test_write_after_close_raises(key):
    enc = wrap_for_encryption(io.BytesIO(), key)
    enc.close()
    with pytest.raises(ValueError):
        enc.write(b"late")


def test_closing_sink_closes_underlying_stream(key):
    sink = io.BytesIO()
    enc = wrap_for_encryption(sink, key)
    enc.close()
    assert sink.closed
    # closing twice is harmless
    enc.close()


# ==============================================================================
# Tests: Decryption
# ==============================================================================

@pytest.mark.parametrize("length", [1, 15, 16, 17, 100_003])
def test_file_roundtrip(tmp_path, key, length):
    data = os.urandom(length)
    path = tmp_path / "stored.bin"

    with wrap_for_encryption(open(path, "wb"), key) as enc:
        # uneven chunks so writes don't line up with AES blocks
        for i in range(0, length, 4093):
            enc.write(data[i:i + 4093])

    assert path.stat().st_size == length + iv_size()

    with wrap_for_decryption(open(path, "rb"), key) as dec:
        assert dec.read() == data


def test_decrypting_source_small_reads(key):
    data = os.urandom(333)
    stored = encrypt_bytes(data, key)
    out = bytearray()
    with wrap_for_decryption(io.BytesIO(stored), key) as dec:
        while True:
            piece = dec.read(7)
            if not piece:
                break
            out += piece
    assert bytes(out) == data


def test_iv_read_loops_over_short_reads(key):
    data = b"trickled"
    stored = encrypt_bytes(data, key)
    dec = wrap_for_decryption(TrickleReader(stored), key)
    assert dec.read() == data


@pytest.mark.parametrize("stored", [b"", b"\x00" * 5, b"\x00" * 15])
def test_short_iv_raises_truncated(key, stored):
    with pytest.raises(TruncatedStreamError, match="IV bytes"):
        wrap_for_decryption(io.BytesIO(stored), key)


def test_truncated_stream_error_is_an_io_error(key):
    with pytest.raises(OSError):
        decrypt_buffer(b"\x01\x02", key)


def test_wrong_key_does_not_recover_plaintext(key):
    data = os.urandom(64)
    stored = encrypt_bytes(data, key)
    assert decrypt_buffer(stored, generate_key()) != data


def test_ciphertext_is_malleable(key):
    # no authentication: a flipped ciphertext bit flips the same plaintext bit
    data = b"amount=100"
    stored = bytearray(encrypt_bytes(data, key))
    stored[iv_size() + 7] ^= 0x01
    assert decrypt_buffer(bytes(stored), key) == b"amount=000"


def test_closing_source_closes_underlying_stream(key):
    source = io.BytesIO(encrypt_bytes(b"x", key))
    dec = wrap_for_decryption(source, key)
    dec.close()
    assert source.closed
    with pytest.raises(ValueError):
        dec.read(1)
