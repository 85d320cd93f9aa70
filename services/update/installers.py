"""Local package store for registry-managed dependency trees.

Each package lives in ``<root>/packages/<name>-<version>/`` next to a
``package.json`` record. The record is written last, so a directory without
one is an interrupted install and is ignored.
"""

from __future__ import annotations

import json
import logging
import os
import shutil
import tempfile
from pathlib import Path
from typing import Protocol, Sequence

from services.update.constants import PACKAGE_METADATA_NAME
from services.update.errors import CleanupUnitFailed
from services.update.models import ArtifactDescriptor, PackageVersion
from services.update.versioning import satisfies

_LOGGER = logging.getLogger(__name__)


class Uninstaller(Protocol):
    """Protocol describing how a cleanup unit is removed."""

    def uninstall(self, unit: Sequence[PackageVersion]) -> None:
        """Remove every package in ``unit`` or raise :class:`CleanupUnitFailed`."""


class PackageStore:
    """Install, enumerate and remove packages under one directory."""

    def __init__(self, root: Path) -> None:
        self._root = Path(root)

    @property
    def root(self) -> Path:
        return self._root

    def package_dir(self, package: PackageVersion) -> Path:
        return self._root / f"{package.name}-{package.version}"

    def installed(self) -> list[PackageVersion]:
        if not self._root.is_dir():
            return []
        packages: list[PackageVersion] = []
        for entry in sorted(self._root.iterdir()):
            if not entry.is_dir():
                continue
            record = self._read_record(entry)
            if record is not None:
                packages.append(record[0])
        return packages

    def artifact_path(self, package: PackageVersion) -> Path | None:
        record = self._read_record(self.package_dir(package))
        if record is None:
            return None
        return self.package_dir(package) / record[1]

    def record(self, descriptor: ArtifactDescriptor) -> Path:
        """Mark ``descriptor``'s already-downloaded file as installed."""

        package = descriptor.as_package()
        package_dir = self.package_dir(package)
        payload = {
            "name": package.name,
            "version": package.version,
            "file": descriptor.basename,
            "checksum": descriptor.checksum,
            "dependencies": sorted([name, constraint] for name, constraint in package.dependencies),
        }
        handle, temp_name = tempfile.mkstemp(dir=package_dir, prefix=".package-", suffix=".json")
        try:
            with os.fdopen(handle, "w", encoding="utf-8") as stream:
                json.dump(payload, stream, indent=2)
            os.replace(temp_name, package_dir / PACKAGE_METADATA_NAME)
        except BaseException:
            Path(temp_name).unlink(missing_ok=True)
            raise
        _LOGGER.info("Installed package %s", package)
        return package_dir / descriptor.basename

    def uninstall(self, unit: Sequence[PackageVersion]) -> None:
        members = set(unit)
        remaining = [package for package in self.installed() if package not in members]
        blockers = _blocking_dependents(members, remaining)
        if blockers:
            names = ", ".join(sorted(str(package) for package in blockers))
            raise CleanupUnitFailed(tuple(unit), f"still required by {names}")

        for package in unit:
            package_dir = self.package_dir(package)
            try:
                (package_dir / PACKAGE_METADATA_NAME).unlink(missing_ok=True)
                shutil.rmtree(package_dir)
            except FileNotFoundError:
                continue
            except OSError as exc:
                raise CleanupUnitFailed(tuple(unit), exc) from exc
            _LOGGER.info("Removed package %s", package)

    def _read_record(self, package_dir: Path) -> tuple[PackageVersion, str] | None:
        metadata_path = package_dir / PACKAGE_METADATA_NAME
        try:
            data = json.loads(metadata_path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return None
        except (OSError, json.JSONDecodeError) as exc:
            _LOGGER.debug("Ignoring unreadable package record %s: %s", metadata_path, exc)
            return None
        if not isinstance(data, dict):
            _LOGGER.debug("Ignoring package record %s: not a JSON object", metadata_path)
            return None

        name = str(data.get("name") or "").strip()
        version = str(data.get("version") or "").strip()
        filename = str(data.get("file") or "").strip()
        if not name or not version or not filename:
            return None
        raw_dependencies = data.get("dependencies")
        if not isinstance(raw_dependencies, list):
            raw_dependencies = []
        dependencies = frozenset(
            (str(item[0]), str(item[1]) if len(item) > 1 else "")
            for item in raw_dependencies
            if isinstance(item, list) and item
        )
        return PackageVersion(name, version, dependencies), filename


def _blocking_dependents(
    members: set[PackageVersion], remaining: Sequence[PackageVersion]
) -> list[PackageVersion]:
    """Return remaining packages whose dependency would be left unsatisfied."""

    blockers: list[PackageVersion] = []
    for dependent in remaining:
        for dep_name, constraint in dependent.dependencies:
            removed = any(
                member.name == dep_name and satisfies(member.version, constraint)
                for member in members
            )
            if not removed:
                continue
            still_met = any(
                candidate.name == dep_name and satisfies(candidate.version, constraint)
                for candidate in remaining
            )
            if not still_met:
                blockers.append(dependent)
                break
    return blockers


__all__ = ["PackageStore", "Uninstaller"]
