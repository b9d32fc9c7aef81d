"""
Exceptions for cryptupload
Everything raised on purpose derives from CryptUploadError so callers have one catch-all
"""


class CryptUploadError(Exception):
    # general container for errors
    pass


class ConfigurationError(CryptUploadError):
    # raised when the cipher, key size or a setting is unusable in this runtime
    pass


class InvalidKeyError(CryptUploadError, ValueError):
    # raised when a key of unsupported strength is used
    pass


class StorageError(CryptUploadError, OSError):
    # raised if reading or writing buffered content fails
    pass


class TruncatedStreamError(StorageError):
    # raised when the stored IV is short or missing (corrupt artifact)
    pass


class ItemDiscardedError(StorageError):
    # raised when an item is used after discard()
    pass


class UnsupportedOperationError(CryptUploadError):
    # raised by accessors that are deliberately disabled
    pass
