"""Report which launcher build is running."""

from __future__ import annotations

import os
from functools import lru_cache
from importlib import metadata, resources

DISTRIBUTION_NAME = "coupler-launcher"
VERSION_ENV = "COUPLER_APP_VERSION"
DEV_VERSION = "0.0.0-dev"


def _bundled_version() -> str | None:
    try:
        text = resources.files("app").joinpath("VERSION").read_text(encoding="utf-8")
    except OSError:
        return None
    return text.strip() or None


def _installed_version() -> str | None:
    try:
        return metadata.version(DISTRIBUTION_NAME)
    except metadata.PackageNotFoundError:
        return None


def _without_tag_prefix(tag: str) -> str:
    tag = tag.strip()
    return tag[1:] if tag[:1] in ("v", "V") else tag


@lru_cache(maxsize=1)
def get_app_version() -> str:
    """Return the launcher version.

    ``COUPLER_APP_VERSION`` wins (release builds set it from the tag), then the
    ``app/VERSION`` file shipped as package data, then the installed
    distribution's metadata.
    """

    override = os.environ.get(VERSION_ENV, "").strip()
    if override:
        return _without_tag_prefix(override)
    for source in (_bundled_version, _installed_version):
        found = source()
        if found:
            return _without_tag_prefix(found)
    return DEV_VERSION


__all__ = ["DEV_VERSION", "VERSION_ENV", "get_app_version"]
