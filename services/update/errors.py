"""Failure taxonomy for the update engine.

``IntegrityMismatch`` and ``CleanupUnitFailed`` are recovered inside a cycle;
every other subclass of :class:`UpdateError` ends the cycle in ``FAILED``.
"""

from __future__ import annotations

from pathlib import Path
from typing import Iterable, Sequence


class UpdateError(RuntimeError):
    """Raised when an update cycle cannot continue."""


class DirectoryUnavailable(UpdateError):
    def __init__(self, path: Path | str | None, cause: BaseException | str) -> None:
        self.path = Path(path) if path is not None else None
        self.cause = cause
        super().__init__(f"Installation directory unavailable: {path} ({cause})")


class CatalogUnreachable(UpdateError):
    def __init__(self, url: str, reason: str) -> None:
        self.url = url
        self.reason = reason
        super().__init__(f"Can't read the release catalog at {url}: {reason}")


class ArtifactMissingRequired(UpdateError):
    def __init__(self, names: Iterable[str]) -> None:
        self.names = tuple(names)
        super().__init__(f"Missing {' and '.join(self.names)} runtime files")


class UnexpectedRemoteResponse(UpdateError):
    def __init__(self, url: str, status: int) -> None:
        self.url = url
        self.status = status
        super().__init__(f"Unexpected HTTP status {status} from {url}")


class TooManyRedirects(UpdateError):
    def __init__(self, url: str, limit: int) -> None:
        self.url = url
        self.limit = limit
        super().__init__(f"Gave up on {url} after {limit} redirects")


class NetworkTimeout(UpdateError):
    def __init__(self, url: str, timeout: float) -> None:
        self.url = url
        self.timeout = timeout
        super().__init__(f"Timed out after {timeout:g}s waiting for {url}")


class NetworkError(UpdateError):
    """Transport failure that persisted through the fetcher's retries."""

    def __init__(self, url: str, reason: str) -> None:
        self.url = url
        self.reason = reason
        super().__init__(f"Network error while fetching {url}: {reason}")


class IntegrityMismatch(UpdateError):
    def __init__(self, path: Path, expected: str, actual: str | None) -> None:
        self.path = path
        self.expected = expected
        self.actual = actual
        super().__init__(f"{path.name} failed verification: expected {expected} but found {actual}")


class CleanupUnitFailed(UpdateError):
    def __init__(self, packages: Sequence[object], cause: BaseException | str) -> None:
        self.packages = tuple(packages)
        self.cause = cause
        names = ", ".join(str(package) for package in self.packages)
        super().__init__(f"Could not remove {names}: {cause}")


class UpdateCancelled(UpdateError):
    def __init__(self, message: str = "Update cancelled") -> None:
        super().__init__(message)


__all__ = [
    "ArtifactMissingRequired",
    "CatalogUnreachable",
    "CleanupUnitFailed",
    "DirectoryUnavailable",
    "IntegrityMismatch",
    "NetworkError",
    "NetworkTimeout",
    "TooManyRedirects",
    "UnexpectedRemoteResponse",
    "UpdateCancelled",
    "UpdateError",
]
