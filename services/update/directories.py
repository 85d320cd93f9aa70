"""Locate and prepare the launcher's installation root."""

from __future__ import annotations

import logging
import os
import sys
import tempfile
from pathlib import Path
from typing import Mapping

from services.update.constants import APP_NAME, INSTALL_ROOT_ENV, PACKAGES_DIRNAME
from services.update.errors import DirectoryUnavailable

_LOGGER = logging.getLogger(__name__)

__all__ = ["ensure_directory", "packages_directory", "resolve_install_root"]


def resolve_install_root(
    override: str | Path | None = None,
    *,
    os_family: str | None = None,
    home: str | Path | None = None,
    environ: Mapping[str, str] | None = None,
    app_name: str = APP_NAME,
) -> Path:
    """Return an existing, writable installation root.

    ``override`` wins, then the ``COUPLER_HOME`` environment variable, then the
    per-OS convention: ``%APPDATA%\\<app>`` on Windows and ``~/.<app>``
    everywhere else.
    """

    env = os.environ if environ is None else environ
    if override is None:
        override = env.get(INSTALL_ROOT_ENV) or None

    if override is not None:
        candidate = Path(override).expanduser()
    else:
        candidate = _conventional_root(os_family or _detect_os_family(), home, env, app_name)

    return ensure_directory(candidate.absolute())


def packages_directory(root: Path) -> Path:
    """Return ``<root>/packages``, creating it on demand."""

    return ensure_directory(root / PACKAGES_DIRNAME)


def ensure_directory(path: Path) -> Path:
    """Create ``path`` when needed and prove it can be written to.

    Concurrent callers racing on creation are tolerated.
    """

    try:
        path.mkdir(parents=True, exist_ok=True)
    except OSError as exc:
        raise DirectoryUnavailable(path, exc) from exc

    if not path.is_dir():
        raise DirectoryUnavailable(path, "not a directory")

    try:
        with tempfile.TemporaryFile(dir=path, prefix=".write-probe-"):
            pass
    except OSError as exc:
        raise DirectoryUnavailable(path, exc) from exc

    _LOGGER.debug("Directory ready: %s", path)
    return path


def _conventional_root(
    os_family: str,
    home: str | Path | None,
    env: Mapping[str, str],
    app_name: str,
) -> Path:
    if os_family == "windows":
        appdata = env.get("APPDATA")
        if appdata:
            return Path(appdata) / app_name

    home_dir = home if home is not None else env.get("HOME") or env.get("USERPROFILE")
    if not home_dir:
        raise DirectoryUnavailable(None, f"can't figure out where {app_name} lives")
    return Path(home_dir).expanduser() / f".{app_name}"


def _detect_os_family() -> str:
    if sys.platform.startswith("win"):
        return "windows"
    if sys.platform == "darwin":
        return "macos"
    return "posix"
