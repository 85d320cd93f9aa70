"""Data models used by the update engine."""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable, Iterator, Mapping, Tuple

Dependency = Tuple[str, str]


@dataclass(frozen=True)
class UpdateSettings:
    """Explicit settings handed to the engine components at construction."""

    timeout: float = 30.0
    max_redirects: int = 20
    retries: int = 2
    retry_delay: float = 1.0
    chunk_size: int = 64 * 1024
    workers: int = 2
    user_agent: str = "coupler-launcher"


@dataclass(frozen=True)
class ArtifactDescriptor:
    """One downloadable build discovered in a remote catalog."""

    name: str
    version_key: str
    download_path: str
    basename: str
    checksum: str | None = None
    dependencies: frozenset[Dependency] = frozenset()

    @property
    def short_name(self) -> str:
        return self.name.split("-")[-1]

    def as_package(self) -> "PackageVersion":
        return PackageVersion(self.name, self.version_key, self.dependencies)


@dataclass(frozen=True)
class ReleaseCatalog:
    """Latest descriptor per logical name plus every candidate seen."""

    source_url: str
    latest: Mapping[str, ArtifactDescriptor]
    candidates: Mapping[str, Tuple[ArtifactDescriptor, ...]] = field(default_factory=dict)

    def __contains__(self, name: object) -> bool:
        return name in self.latest

    def __len__(self) -> int:
        return len(self.latest)

    def get(self, name: str) -> ArtifactDescriptor | None:
        return self.latest.get(name)

    def missing(self, names: Iterable[str]) -> list[str]:
        return [name for name in names if name not in self.latest]


@dataclass(frozen=True)
class InstalledArtifact:
    """A file already present in the installation root."""

    name: str
    local_path: Path
    local_digest: str | None = None


@dataclass(frozen=True)
class RedirectResolution:
    final_url: str
    etag: str | None = None


@dataclass(frozen=True)
class PackageVersion:
    """A resolvable unit; ``dependencies`` holds ``(name, constraint)`` pairs."""

    name: str
    version: str
    dependencies: frozenset[Dependency] = frozenset()

    def __str__(self) -> str:
        return f"{self.name}-{self.version}"


@dataclass(frozen=True)
class CleanupPlan:
    """Removal units ordered so dependents precede their dependencies.

    Each unit is a strongly connected component of the dependency graph; a
    unit with more than one member is a dependency cycle removed together.
    """

    units: Tuple[Tuple[PackageVersion, ...], ...] = ()

    def __iter__(self) -> Iterator[Tuple[PackageVersion, ...]]:
        return iter(self.units)

    def __len__(self) -> int:
        return len(self.units)

    @property
    def packages(self) -> Tuple[PackageVersion, ...]:
        return tuple(package for unit in self.units for package in unit)


__all__ = [
    "ArtifactDescriptor",
    "CleanupPlan",
    "Dependency",
    "InstalledArtifact",
    "PackageVersion",
    "RedirectResolution",
    "ReleaseCatalog",
    "UpdateSettings",
]
