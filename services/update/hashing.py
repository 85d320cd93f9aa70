"""Hashing helpers for artifact verification."""

from __future__ import annotations

import hashlib
import logging
from pathlib import Path

_LOGGER = logging.getLogger(__name__)

DEFAULT_ALGORITHM = "md5"
_SUPPORTED_ALGORITHMS = {"md5", "sha1", "sha256"}

__all__ = [
    "DEFAULT_ALGORITHM",
    "calculate_digest",
    "is_valid",
    "normalise_digest",
    "split_digest",
]


def calculate_digest(path: Path, algorithm: str = DEFAULT_ALGORITHM) -> str:
    # Read the whole file in one go; artifacts are modest in size.
    return hashlib.new(algorithm, path.read_bytes()).hexdigest()


def normalise_digest(value: str) -> str:
    """Strip weak-validator prefixes, quotes and case from ``value``."""

    cleaned = value.strip()
    if cleaned[:2] in ("W/", "w/"):
        cleaned = cleaned[2:]
    return cleaned.strip().strip('"').strip("'").strip().lower()


def split_digest(value: str) -> tuple[str, str]:
    """Return ``(algorithm, hex digest)`` for ``value``.

    Accepts ``sha256:<hex>`` / ``sha256=<hex>`` prefixes; bare values are
    treated as MD5.
    """

    cleaned = normalise_digest(value)
    for separator in (":", "="):
        if separator in cleaned:
            algorithm, digest = cleaned.split(separator, 1)
            algorithm = algorithm.strip().replace("-", "")
            if algorithm in _SUPPORTED_ALGORITHMS:
                return algorithm, digest.strip()
    return DEFAULT_ALGORITHM, cleaned


def is_valid(local_path: Path, expected_digest: str | None) -> bool:
    """Return ``True`` when ``local_path`` matches ``expected_digest``.

    Missing or empty files, unreadable files and absent expectations are all
    reported as invalid so the caller re-downloads.
    """

    if not expected_digest or not expected_digest.strip():
        return False
    try:
        if local_path.stat().st_size == 0:
            _LOGGER.debug("%s is empty", local_path)
            return False
        algorithm, expected = split_digest(expected_digest)
        actual = calculate_digest(local_path, algorithm)
    except OSError as exc:
        _LOGGER.debug("Unable to hash %s: %s", local_path, exc)
        return False

    _LOGGER.debug("Local %s: %s; remote: %s", algorithm, actual, expected)
    return actual == expected
