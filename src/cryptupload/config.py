"""Runtime settings for cryptupload, read from environment variables.

Supported variables:

- ``CRYPTUPLOAD_SIZE_THRESHOLD``: bytes kept in memory before an item spills
  to a temporary file (default 10240)
- ``CRYPTUPLOAD_REPOSITORY``: directory for temporary files (default: the
  system temp directory)
- ``CRYPTUPLOAD_KEY_SIZE``: AES key length in bits, one of 128/192/256
  (default 128)
- ``CRYPTUPLOAD_DEFAULT_CHARSET``: charset used by ``read_text`` when the
  content type names none (default ISO-8859-1)
- ``CRYPTUPLOAD_LOG_LEVEL``: level name passed to ``configure_logging``
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from typing import Mapping, Optional

from .core.exceptions import ConfigurationError

ENV_PREFIX = "CRYPTUPLOAD_"

DEFAULT_SIZE_THRESHOLD = 10240
DEFAULT_KEY_SIZE = 128
DEFAULT_CHARSET = "ISO-8859-1"
ALLOWED_KEY_SIZES = (128, 192, 256)


@dataclass(frozen=True)
class Settings:
    size_threshold: int = DEFAULT_SIZE_THRESHOLD
    repository: Optional[Path] = None
    key_size: int = DEFAULT_KEY_SIZE
    default_charset: str = DEFAULT_CHARSET
    log_level: int = logging.INFO


def _int_setting(env: Mapping[str, str], name: str, default: int) -> int:
    raw = env.get(ENV_PREFIX + name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise ConfigurationError(f"{ENV_PREFIX}{name} must be an integer, got {raw!r}") from None


def load_settings(env: Optional[Mapping[str, str]] = None) -> Settings:
    """Build a Settings object from ``env`` (defaults to ``os.environ``)."""
    if env is None:
        env = os.environ

    size_threshold = _int_setting(env, "SIZE_THRESHOLD", DEFAULT_SIZE_THRESHOLD)
    if size_threshold < 0:
        raise ConfigurationError(f"{ENV_PREFIX}SIZE_THRESHOLD must not be negative")

    key_size = _int_setting(env, "KEY_SIZE", DEFAULT_KEY_SIZE)
    if key_size not in ALLOWED_KEY_SIZES:
        raise ConfigurationError(
            f"{ENV_PREFIX}KEY_SIZE must be one of {ALLOWED_KEY_SIZES}, got {key_size}"
        )

    repository = env.get(ENV_PREFIX + "REPOSITORY") or None
    charset = env.get(ENV_PREFIX + "DEFAULT_CHARSET") or DEFAULT_CHARSET

    level_name = (env.get(ENV_PREFIX + "LOG_LEVEL") or "INFO").upper()
    level = logging.getLevelName(level_name)
    if not isinstance(level, int):
        raise ConfigurationError(f"Unknown log level: {level_name}")

    return Settings(
        size_threshold=size_threshold,
        repository=Path(repository).expanduser() if repository else None,
        key_size=key_size,
        default_charset=charset,
        log_level=level,
    )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    # process-wide settings, read once
    return load_settings()
