"""Decide whether each artifact needs installing, updating or nothing.

Two strategies make the same decision. :class:`CatalogMarkerStrategy` keeps
the files named by a static catalog in the installation root and trusts the
catalog's content hash or the transport's entity tag.
:class:`RegistryVersionStrategy` keeps registry packages in the package store
and only updates when a strictly greater version is published.
"""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Iterable, Protocol, Sequence

from services.update.cleanup import CleanupPlanner, execute_plan
from services.update.constants import ARTIFACT_PATTERN, INTEGRITY_ETAG
from services.update.errors import (
    ArtifactMissingRequired,
    CleanupUnitFailed,
    IntegrityMismatch,
)
from services.update.fetcher import ProgressCallback, RedirectFetcher
from services.update.hashing import calculate_digest, is_valid, normalise_digest, split_digest
from services.update.installers import PackageStore
from services.update.models import (
    ArtifactDescriptor,
    InstalledArtifact,
    PackageVersion,
    ReleaseCatalog,
)
from services.update.providers import BUILD_SUFFIX_PATTERN, logical_name
from services.update.versioning import highest_version, is_version_newer, satisfies

_LOGGER = logging.getLogger(__name__)

ETAG_SUFFIX = ".etag"

VerifyCallback = Callable[[ArtifactDescriptor], None]

__all__ = [
    "CatalogMarkerStrategy",
    "Decision",
    "RegistryVersionStrategy",
    "Resolution",
    "ResolutionStrategy",
]


class Decision(str, enum.Enum):
    INSTALL = "install"
    UPDATE = "update"
    NOOP = "no-op"


@dataclass(frozen=True)
class Resolution:
    """Outcome of comparing one artifact against the catalog."""

    descriptor: ArtifactDescriptor
    decision: Decision
    local_path: Path
    expected_digest: str | None = None
    reason: str = ""

    @property
    def name(self) -> str:
        return self.descriptor.name

    @property
    def needs_fetch(self) -> bool:
        return self.decision is not Decision.NOOP


class ResolutionStrategy(Protocol):
    def resolve(
        self,
        catalog: ReleaseCatalog,
        required: Sequence[str],
        on_verify: VerifyCallback | None = None,
    ) -> list[Resolution]:
        """Return one resolution for every artifact the cycle must hold."""

    def apply(
        self, resolution: Resolution, on_progress: ProgressCallback | None = None
    ) -> InstalledArtifact:
        """Make ``resolution`` true on disk and return the verified artifact."""

    def cleanup(
        self,
        installed: Iterable[InstalledArtifact],
        report: Callable[[Sequence[PackageVersion]], None] | None = None,
    ) -> tuple[CleanupUnitFailed, ...]:
        """Remove what the cycle superseded; failures are returned."""


class CatalogMarkerStrategy:
    """Files named by a static catalog, verified by digest or entity tag."""

    def __init__(
        self,
        root: Path,
        fetcher: RedirectFetcher,
        *,
        integrity: str,
        artifact_pattern: str = ARTIFACT_PATTERN,
        planner: CleanupPlanner | None = None,
    ) -> None:
        self._root = root
        self._fetcher = fetcher
        self._integrity = integrity
        self._pattern = artifact_pattern
        self._planner = planner or CleanupPlanner()

    def resolve(
        self,
        catalog: ReleaseCatalog,
        required: Sequence[str],
        on_verify: VerifyCallback | None = None,
    ) -> list[Resolution]:
        missing = catalog.missing(required)
        if missing:
            raise ArtifactMissingRequired(missing)
        resolutions = []
        for _, descriptor in sorted(catalog.latest.items()):
            if on_verify is not None:
                on_verify(descriptor)
            resolutions.append(self._decide(descriptor))
        return resolutions

    def _decide(self, descriptor: ArtifactDescriptor) -> Resolution:
        local_path = self._root / descriptor.basename
        expected = self._expected_digest(descriptor)

        if not local_path.exists():
            previous = self._files_for(descriptor.name)
            decision = Decision.UPDATE if previous else Decision.INSTALL
            return Resolution(descriptor, decision, local_path, expected, "not present")

        if self._verify(local_path, expected):
            _LOGGER.info("%s looks good", descriptor.basename)
            return Resolution(descriptor, Decision.NOOP, local_path, expected, "verified")

        _LOGGER.info("%s seems to be corrupt; will redownload it", descriptor.basename)
        return Resolution(descriptor, Decision.UPDATE, local_path, expected, "verification failed")

    def apply(
        self, resolution: Resolution, on_progress: ProgressCallback | None = None
    ) -> InstalledArtifact:
        descriptor = resolution.descriptor
        if resolution.needs_fetch:
            _download_verified(
                self._fetcher,
                descriptor,
                resolution.local_path,
                resolution.expected_digest,
                on_progress,
                check_content=self._integrity != INTEGRITY_ETAG
                or _is_content_digest(resolution.expected_digest),
            )
            if self._integrity == INTEGRITY_ETAG and resolution.expected_digest:
                _etag_path(resolution.local_path).write_text(
                    resolution.expected_digest, encoding="utf-8"
                )
            # The new file is in place; only now retire older builds.
            for stale in self._files_for(descriptor.name):
                if stale != resolution.local_path:
                    _remove_file(stale)
        return InstalledArtifact(
            descriptor.name,
            resolution.local_path,
            calculate_digest(resolution.local_path),
        )

    def cleanup(
        self,
        installed: Iterable[InstalledArtifact],
        report: Callable[[Sequence[PackageVersion]], None] | None = None,
    ) -> tuple[CleanupUnitFailed, ...]:
        keep_paths = {artifact.local_path.name for artifact in installed}
        on_disk = {
            PackageVersion(logical_name(path.name, BUILD_SUFFIX_PATTERN), path.name)
            for path in self._managed_files()
        }
        keep = {package for package in on_disk if package.version in keep_paths}
        plan = self._planner.plan(on_disk, keep)
        return execute_plan(plan, _FileRemover(self._root), report)

    def _expected_digest(self, descriptor: ArtifactDescriptor) -> str | None:
        if self._integrity == INTEGRITY_ETAG:
            return self._fetcher.resolve(descriptor.download_path).etag
        return descriptor.checksum

    def _verify(self, local_path: Path, expected: str | None) -> bool:
        if is_valid(local_path, expected):
            return True
        if self._integrity != INTEGRITY_ETAG or not expected:
            return False
        try:
            recorded = _etag_path(local_path).read_text(encoding="utf-8")
        except OSError:
            return False
        return bool(recorded.strip()) and normalise_digest(recorded) == normalise_digest(expected)

    def _files_for(self, name: str) -> list[Path]:
        return [
            path
            for path in self._managed_files()
            if logical_name(path.name, BUILD_SUFFIX_PATTERN) == name
        ]

    def _managed_files(self) -> list[Path]:
        return sorted(
            path
            for path in self._root.glob(self._pattern)
            if path.is_file()
            and not path.name.startswith(".")
            and not path.name.endswith(ETAG_SUFFIX)
        )


class RegistryVersionStrategy:
    """Registry packages compared by version number, plus their dependencies."""

    def __init__(
        self,
        store: PackageStore,
        fetcher: RedirectFetcher,
        *,
        planner: CleanupPlanner | None = None,
    ) -> None:
        self._store = store
        self._fetcher = fetcher
        self._planner = planner or CleanupPlanner()
        self._required: tuple[str, ...] = ()

    def resolve(
        self,
        catalog: ReleaseCatalog,
        required: Sequence[str],
        on_verify: VerifyCallback | None = None,
    ) -> list[Resolution]:
        missing = catalog.missing(required)
        if missing:
            raise ArtifactMissingRequired(missing)
        self._required = tuple(required)

        installed = self._store.installed()
        resolutions: dict[str, Resolution] = {}
        pending: list[tuple[str, str]] = [(name, "") for name in required]
        while pending:
            name, constraint = pending.pop(0)
            if name in resolutions:
                continue
            resolution = self._decide(catalog, installed, name, constraint)
            if on_verify is not None:
                on_verify(resolution.descriptor)
            resolutions[name] = resolution
            pending.extend(sorted(resolution.descriptor.dependencies))
        return list(resolutions.values())

    def _decide(
        self,
        catalog: ReleaseCatalog,
        installed: Sequence[PackageVersion],
        name: str,
        constraint: str,
    ) -> Resolution:
        candidates = [
            descriptor
            for descriptor in catalog.candidates.get(name, ())
            if satisfies(descriptor.version_key, constraint)
        ]
        local = [
            package
            for package in installed
            if package.name == name and satisfies(package.version, constraint)
        ]
        if not candidates and not local:
            requirement = f"{name} {constraint}".strip()
            raise ArtifactMissingRequired([requirement])

        current = highest_version(package.version for package in local)
        if current is None:
            target = _highest_descriptor(candidates)
            return self._resolution(target, Decision.INSTALL, "not installed")

        newer = [c for c in candidates if is_version_newer(current, c.version_key)]
        if newer:
            target = _highest_descriptor(newer)
            _LOGGER.info("Update available for %s: %s -> %s", name, current, target.version_key)
            return self._resolution(target, Decision.UPDATE, f"newer than {current}")

        package = next(p for p in local if p.version == current)
        listed = next((c for c in candidates if c.version_key == current), None)
        artifact = self._store.artifact_path(package)
        if artifact is None or not artifact.is_file():
            if listed is None:
                raise ArtifactMissingRequired([str(package)])
            return self._resolution(listed, Decision.UPDATE, "file missing")
        descriptor = listed or ArtifactDescriptor(
            name=name,
            version_key=current,
            download_path="",
            basename=artifact.name,
            dependencies=package.dependencies,
        )
        resolution = self._resolution(descriptor, Decision.NOOP, "up to date")
        if listed is not None and listed.checksum and not is_valid(
            resolution.local_path, listed.checksum
        ):
            _LOGGER.info("%s failed verification; reinstalling", package)
            return self._resolution(listed, Decision.UPDATE, "verification failed")
        return resolution

    def _resolution(self, descriptor: ArtifactDescriptor, decision: Decision, reason: str) -> Resolution:
        package_dir = self._store.package_dir(descriptor.as_package())
        return Resolution(
            descriptor,
            decision,
            package_dir / descriptor.basename,
            descriptor.checksum,
            reason,
        )

    def apply(
        self, resolution: Resolution, on_progress: ProgressCallback | None = None
    ) -> InstalledArtifact:
        if resolution.needs_fetch:
            resolution.local_path.parent.mkdir(parents=True, exist_ok=True)
            _download_verified(
                self._fetcher,
                resolution.descriptor,
                resolution.local_path,
                resolution.expected_digest,
                on_progress,
                check_content=True,
            )
            self._store.record(resolution.descriptor)
        return InstalledArtifact(
            resolution.name,
            resolution.local_path,
            calculate_digest(resolution.local_path),
        )

    def cleanup(
        self,
        installed: Iterable[InstalledArtifact],
        report: Callable[[Sequence[PackageVersion]], None] | None = None,
    ) -> tuple[CleanupUnitFailed, ...]:
        on_disk = self._store.installed()
        keep = _runtime_closure(self._required, on_disk)
        plan = self._planner.plan(on_disk, keep)
        return execute_plan(plan, self._store, report)


class _FileRemover:
    """Uninstaller for loose artifact files in the installation root."""

    def __init__(self, root: Path) -> None:
        self._root = root

    def uninstall(self, unit: Sequence[PackageVersion]) -> None:
        for package in unit:
            try:
                _remove_file(self._root / package.version)
            except OSError as exc:
                raise CleanupUnitFailed(tuple(unit), exc) from exc


def _download_verified(
    fetcher: RedirectFetcher,
    descriptor: ArtifactDescriptor,
    destination: Path,
    expected: str | None,
    on_progress: ProgressCallback | None,
    *,
    check_content: bool,
) -> None:
    """Download once, and once more if the payload fails verification."""

    for attempt in (1, 2):
        fetcher.download(descriptor.download_path, destination, on_progress)
        if not expected or not check_content or is_valid(destination, expected):
            return
        mismatch = IntegrityMismatch(destination, expected, _safe_digest(destination, expected))
        if attempt == 2:
            destination.unlink(missing_ok=True)
            raise mismatch
        _LOGGER.warning("%s; downloading again", mismatch)


def _safe_digest(path: Path, expected: str) -> str | None:
    algorithm, _ = split_digest(expected)
    try:
        return calculate_digest(path, algorithm)
    except OSError:
        return None


def _is_content_digest(value: str | None) -> bool:
    if not value:
        return False
    _, digest = split_digest(value)
    return len(digest) in (32, 40, 64) and all(char in "0123456789abcdef" for char in digest)


def _etag_path(path: Path) -> Path:
    return path.with_name(path.name + ETAG_SUFFIX)


def _remove_file(path: Path) -> None:
    path.unlink(missing_ok=True)
    _etag_path(path).unlink(missing_ok=True)
    _LOGGER.info("Removed old file %s", path.name)


def _highest_descriptor(descriptors: Sequence[ArtifactDescriptor]) -> ArtifactDescriptor:
    best = descriptors[0]
    for descriptor in descriptors[1:]:
        if is_version_newer(best.version_key, descriptor.version_key):
            best = descriptor
    return best


def _runtime_closure(
    required: Iterable[str], installed: Sequence[PackageVersion]
) -> set[PackageVersion]:
    """Highest installed version of each required package and its dependencies."""

    keep: set[PackageVersion] = set()
    pending: list[tuple[str, str]] = [(name, "") for name in required]
    while pending:
        name, constraint = pending.pop(0)
        matches = [p for p in installed if p.name == name and satisfies(p.version, constraint)]
        best_version = highest_version(p.version for p in matches)
        if best_version is None:
            continue
        package = next(p for p in matches if p.version == best_version)
        if package in keep:
            continue
        keep.add(package)
        pending.extend(sorted(package.dependencies))
    return keep
