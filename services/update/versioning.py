"""Helpers for comparing release markers and package versions."""

from __future__ import annotations

import datetime
from typing import Iterable

from packaging.specifiers import InvalidSpecifier, SpecifierSet
from packaging.version import InvalidVersion, Version


__all__ = [
    "compare_versions",
    "date_marker_key",
    "highest_version",
    "is_version_newer",
    "parse_date_marker",
    "satisfies",
    "version_marker_key",
]

_DATE_FORMATS = (
    "%Y-%m-%d",
    "%Y-%m-%d %H:%M",
    "%Y-%m-%d %H:%M:%S",
    "%Y-%m-%dT%H:%M:%S",
    "%d-%b-%Y %H:%M",
    "%d-%b-%Y %H:%M:%S",
    "%d-%b-%Y",
    "%d %b %Y",
    "%b %d, %Y",
    "%Y/%m/%d",
)

# Sort-key ranks keep unparseable markers below every parseable one and
# never compare values of different types.
_RANK_UNPARSED = 0
_RANK_PARSED = 1


def compare_versions(current_version: str, candidate: str) -> int:
    """Compare ``candidate`` against ``current_version``.

    Returns ``1`` when ``candidate`` is newer, ``-1`` when it is older and ``0``
    when the versions are equivalent. Strings that are not PEP 440 versions are
    compared token by token.
    """

    if candidate == current_version:
        return 0

    try:
        candidate_version = Version(candidate)
        current_version_parsed = Version(current_version)
    except InvalidVersion:
        return _fallback_compare(current_version, candidate)

    if candidate_version == current_version_parsed:
        return 0
    if candidate_version > current_version_parsed:
        return 1
    return -1


def is_version_newer(current_version: str, candidate: str) -> bool:
    """Return ``True`` if ``candidate`` is newer than ``current_version``."""

    return compare_versions(current_version, candidate) > 0


def satisfies(version: str, constraint: str) -> bool:
    """Return ``True`` when ``version`` meets a PEP 440 ``constraint``.

    An empty constraint accepts any version.
    """

    if not constraint or not constraint.strip():
        return True
    try:
        specifier = SpecifierSet(constraint)
        return specifier.contains(Version(version), prereleases=True)
    except (InvalidSpecifier, InvalidVersion):
        return False


def highest_version(versions: Iterable[str]) -> str | None:
    best: str | None = None
    for version in versions:
        if best is None or is_version_newer(best, version):
            best = version
    return best


def parse_date_marker(marker: str) -> datetime.datetime | None:
    cleaned = " ".join(marker.split())
    for fmt in _DATE_FORMATS:
        try:
            return datetime.datetime.strptime(cleaned, fmt)
        except ValueError:
            continue
    try:
        return datetime.datetime.fromisoformat(cleaned)
    except ValueError:
        return None


def date_marker_key(marker: str) -> tuple:
    parsed = parse_date_marker(marker)
    if parsed is None:
        return (_RANK_UNPARSED, marker)
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(datetime.timezone.utc).replace(tzinfo=None)
    return (_RANK_PARSED, parsed)


def version_marker_key(marker: str) -> tuple:
    try:
        return (_RANK_PARSED, Version(marker))
    except InvalidVersion:
        return (_RANK_UNPARSED, marker)


def _fallback_compare(current_version: str, candidate: str) -> int:
    def tokenize(version: str) -> list[tuple[int, object]]:
        tokens: list[tuple[int, object]] = []
        for raw in version.replace("-", ".").replace("+", ".").split("."):
            if not raw:
                continue
            if raw.isdigit():
                tokens.append((0, int(raw)))
            else:
                tokens.append((1, raw.lower()))
        return tokens

    current_tokens = tokenize(current_version)
    candidate_tokens = tokenize(candidate)
    length = max(len(current_tokens), len(candidate_tokens))
    for index in range(length):
        current_token = current_tokens[index] if index < len(current_tokens) else (0, 0)
        candidate_token = candidate_tokens[index] if index < len(candidate_tokens) else (0, 0)
        if candidate_token != current_token:
            return 1 if candidate_token > current_token else -1
    return 0
