"""Catalog source implementations.

A source knows how to retrieve a raw listing and turn its rows into
:class:`ArtifactDescriptor` candidates. Reducing candidates to the latest
build per logical name is the reader's job (see :mod:`services.update.catalog`).
"""

from __future__ import annotations

import json
import logging
import posixpath
import re
from html.parser import HTMLParser
from pathlib import Path
from typing import Any, Iterable, Protocol
from urllib.error import URLError
from urllib.parse import unquote, urljoin, urlparse
from urllib.request import Request, urlopen

from services.update.constants import INTEGRITY_DIGEST, INTEGRITY_ETAG
from services.update.errors import CatalogUnreachable, NetworkTimeout
from services.update.models import ArtifactDescriptor, Dependency, UpdateSettings
from services.update.versioning import date_marker_key, version_marker_key


_LOGGER = logging.getLogger(__name__)

BUILD_SUFFIX_PATTERN = re.compile(r"-[a-f0-9]{7}\.jar$")
_TRAILING_DATE_PATTERN = re.compile(r"\((?P<date>[^()]+)\)\s*$")


def logical_name(basename: str, pattern: re.Pattern[str] = BUILD_SUFFIX_PATTERN) -> str:
    """Strip the build identifier from ``basename``."""

    return pattern.sub("", basename)


class CatalogSource(Protocol):
    """Protocol describing remote catalog formats.

    ``integrity`` is either ``"digest"`` (rows carry a content hash) or
    ``"etag"`` (integrity comes from the transport's entity tag).
    ``versioned`` marks sources whose markers are queryable version numbers.
    """

    integrity: str
    versioned: bool

    def fetch(self, url: str) -> str:
        """Return the raw listing published at ``url``."""

    def parse(self, raw: str, base_url: str) -> list[ArtifactDescriptor]:
        """Return one candidate descriptor per listing row."""

    def marker_key(self, marker: str) -> Any:
        """Return a sortable key for a row's version marker."""


class _HttpCatalogSource:
    integrity = INTEGRITY_DIGEST
    versioned = False
    local_index_name = "index.html"

    def __init__(
        self,
        settings: UpdateSettings | None = None,
        *,
        build_suffix: re.Pattern[str] = BUILD_SUFFIX_PATTERN,
    ) -> None:
        self._settings = settings or UpdateSettings()
        self._build_suffix = build_suffix

    def fetch(self, url: str) -> str:
        request = Request(url, headers={"User-Agent": self._settings.user_agent})
        try:
            with urlopen(request, timeout=self._settings.timeout) as response:  # nosec - catalog URL is configured
                payload = response.read()
                headers = getattr(response, "headers", None)
                charset = headers.get_content_charset() if headers is not None else None
        except TimeoutError as exc:
            raise NetworkTimeout(url, self._settings.timeout) from exc
        except URLError as exc:
            if isinstance(exc.reason, TimeoutError):
                raise NetworkTimeout(url, self._settings.timeout) from exc
            raise CatalogUnreachable(url, str(exc.reason)) from exc
        except OSError as exc:
            raise CatalogUnreachable(url, str(exc)) from exc
        return payload.decode(charset or "utf-8", errors="replace")

    def marker_key(self, marker: str) -> Any:
        return date_marker_key(marker)

    def _descriptor(
        self,
        base_url: str,
        href: str,
        label: str,
        marker: str,
        checksum: str | None = None,
    ) -> ArtifactDescriptor | None:
        basename = label.strip() or _basename_from_url(href)
        if not basename or not href:
            return None
        return ArtifactDescriptor(
            name=logical_name(basename, self._build_suffix),
            version_key=marker.strip(),
            download_path=urljoin(base_url, href),
            basename=basename,
            checksum=checksum.strip() if checksum and checksum.strip() else None,
        )


class HtmlListingSource(_HttpCatalogSource):
    """Static directory listing with file, modification date and MD5 columns."""

    def parse(self, raw: str, base_url: str) -> list[ArtifactDescriptor]:
        parser = _TableParser()
        _feed(parser, raw, base_url)

        descriptors: list[ArtifactDescriptor] = []
        for row in parser.rows:
            if len(row) < 3:
                continue
            file_cell, mtime_cell, md5_cell = row[0], row[1], row[2]
            if not file_cell.links:
                continue
            href, label = file_cell.links[0]
            descriptor = self._descriptor(base_url, href, label, mtime_cell.text, md5_cell.text)
            if descriptor is not None:
                descriptors.append(descriptor)
        _LOGGER.debug("Parsed %d listing rows from %s", len(descriptors), base_url)
        return descriptors


class HtmlDownloadPageSource(_HttpCatalogSource):
    """Download page of anchors; no content hash is published."""

    integrity = INTEGRITY_ETAG

    def parse(self, raw: str, base_url: str) -> list[ArtifactDescriptor]:
        parser = _AnchorParser()
        _feed(parser, raw, base_url)

        descriptors: list[ArtifactDescriptor] = []
        for anchor in parser.anchors:
            href = anchor.attrs.get("href") or ""
            marker = anchor.attrs.get("data-date") or anchor.attrs.get("data-version")
            label = anchor.text
            if marker is None:
                match = _TRAILING_DATE_PATTERN.search(anchor.tail)
                if match is None:
                    continue
                marker = match.group("date")
            descriptor = self._descriptor(base_url, href, label, marker)
            if descriptor is not None:
                descriptors.append(descriptor)
        _LOGGER.debug("Parsed %d download links from %s", len(descriptors), base_url)
        return descriptors


class RegistrySource(_HttpCatalogSource):
    """JSON package registry listing name/version/dependency tuples."""

    versioned = True
    local_index_name = "index.json"

    def marker_key(self, marker: str) -> Any:
        return version_marker_key(marker)

    def parse(self, raw: str, base_url: str) -> list[ArtifactDescriptor]:
        try:
            payload = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise CatalogUnreachable(base_url, f"registry response is not JSON: {exc}") from exc

        entries = payload.get("packages") if isinstance(payload, dict) else payload
        if not isinstance(entries, list):
            return []

        descriptors: list[ArtifactDescriptor] = []
        for entry in entries:
            descriptor = self._registry_descriptor(entry, base_url)
            if descriptor is not None:
                descriptors.append(descriptor)
        _LOGGER.debug("Parsed %d registry entries from %s", len(descriptors), base_url)
        return descriptors

    def _registry_descriptor(self, entry: Any, base_url: str) -> ArtifactDescriptor | None:
        if not isinstance(entry, dict):
            return None
        name = str(entry.get("name") or "").strip()
        version = str(entry.get("version") or "").strip()
        location = str(entry.get("url") or entry.get("file") or "").strip()
        if not name or not version or not location:
            _LOGGER.debug("Skipping incomplete registry entry: %s", entry)
            return None

        basename = str(entry.get("file") or "").strip() or _basename_from_url(location)
        checksum = _registry_checksum(entry)
        return ArtifactDescriptor(
            name=name,
            version_key=version,
            download_path=urljoin(base_url, location),
            basename=posixpath.basename(basename),
            checksum=checksum,
            dependencies=frozenset(_clean_dependencies(entry.get("dependencies"))),
        )


class LocalFolderSource:
    """Serve another source's listing from a local directory."""

    def __init__(self, folder: Path, inner: _HttpCatalogSource) -> None:
        self._folder = Path(folder)
        self._inner = inner
        self.integrity = inner.integrity
        self.versioned = inner.versioned

    def fetch(self, url: str) -> str:
        index_path = self._folder / self._inner.local_index_name
        try:
            text = index_path.read_text(encoding="utf-8")
        except OSError as exc:
            raise CatalogUnreachable(str(index_path), str(exc)) from exc
        _LOGGER.info("Using local catalog %s instead of %s", index_path, url)
        return text

    def parse(self, raw: str, base_url: str) -> list[ArtifactDescriptor]:
        return self._inner.parse(raw, self._folder.absolute().as_uri() + "/")

    def marker_key(self, marker: str) -> Any:
        return self._inner.marker_key(marker)


class _Cell:
    def __init__(self) -> None:
        self.parts: list[str] = []
        self.links: list[tuple[str, str]] = []

    @property
    def text(self) -> str:
        return " ".join("".join(self.parts).split())


class _TableParser(HTMLParser):
    """Collect ``<td>`` cells of every table row; header rows are skipped."""

    def __init__(self) -> None:
        super().__init__(convert_charrefs=True)
        self.rows: list[list[_Cell]] = []
        self._row: list[_Cell] | None = None
        self._cell: _Cell | None = None
        self._href: str | None = None
        self._link_text: list[str] = []

    def handle_starttag(self, tag: str, attrs: list[tuple[str, str | None]]) -> None:
        if tag == "tr":
            self._finish_row()
            self._row = []
        elif tag == "td" and self._row is not None:
            self._finish_cell()
            self._cell = _Cell()
        elif tag == "a" and self._cell is not None:
            self._href = dict(attrs).get("href") or ""
            self._link_text = []

    def handle_endtag(self, tag: str) -> None:
        if tag == "a" and self._cell is not None and self._href is not None:
            self._cell.links.append((self._href, "".join(self._link_text)))
            self._href = None
        elif tag == "td":
            self._finish_cell()
        elif tag in ("tr", "table"):
            self._finish_row()

    def handle_data(self, data: str) -> None:
        if self._cell is not None:
            self._cell.parts.append(data)
            if self._href is not None:
                self._link_text.append(data)

    def close(self) -> None:
        super().close()
        self._finish_row()

    def _finish_cell(self) -> None:
        if self._cell is not None and self._row is not None:
            self._row.append(self._cell)
        self._cell = None
        self._href = None

    def _finish_row(self) -> None:
        self._finish_cell()
        if self._row:
            self.rows.append(self._row)
        self._row = None


class _Anchor:
    def __init__(self, attrs: dict[str, str | None]) -> None:
        self.attrs = {key: value for key, value in attrs.items() if value is not None}
        self.parts: list[str] = []
        self.tail_parts: list[str] = []

    @property
    def text(self) -> str:
        return "".join(self.parts).strip()

    @property
    def tail(self) -> str:
        return "".join(self.tail_parts).strip()


class _AnchorParser(HTMLParser):
    """Collect anchors with their text and the text that trails them."""

    _BLOCK_TAGS = {"li", "p", "div", "tr", "td", "br", "ul", "ol", "table"}

    def __init__(self) -> None:
        super().__init__(convert_charrefs=True)
        self.anchors: list[_Anchor] = []
        self._open: _Anchor | None = None
        self._last: _Anchor | None = None

    def handle_starttag(self, tag: str, attrs: list[tuple[str, str | None]]) -> None:
        if tag == "a":
            self._open = _Anchor(dict(attrs))
            self._last = None
        elif tag in self._BLOCK_TAGS:
            self._last = None

    def handle_endtag(self, tag: str) -> None:
        if tag == "a" and self._open is not None:
            self.anchors.append(self._open)
            self._last = self._open
            self._open = None
        elif tag in self._BLOCK_TAGS:
            self._last = None

    def handle_data(self, data: str) -> None:
        if self._open is not None:
            self._open.parts.append(data)
        elif self._last is not None:
            self._last.tail_parts.append(data)


def _feed(parser: HTMLParser, raw: str, base_url: str) -> None:
    # HTMLParser asserts on some malformed declarations.
    try:
        parser.feed(raw)
        parser.close()
    except (AssertionError, ValueError) as exc:
        raise CatalogUnreachable(base_url, f"listing is not readable HTML: {exc}") from exc


def _basename_from_url(url: str) -> str:
    return posixpath.basename(unquote(urlparse(url).path))


def _registry_checksum(entry: dict) -> str | None:
    for key in ("md5", "sha256", "digest"):
        value = entry.get(key)
        if isinstance(value, str) and value.strip():
            cleaned = value.strip()
            if key == "sha256" and ":" not in cleaned:
                return f"sha256:{cleaned}"
            return cleaned
    return None


def _clean_dependencies(raw: Any) -> Iterable[Dependency]:
    if isinstance(raw, dict):
        items: Iterable[Any] = raw.items()
    elif isinstance(raw, list):
        items = raw
    else:
        return []

    cleaned: list[Dependency] = []
    for item in items:
        if isinstance(item, str):
            name, constraint = item, ""
        elif isinstance(item, (list, tuple)) and item:
            name = item[0]
            constraint = item[1] if len(item) > 1 else ""
        else:
            continue
        name = str(name).strip()
        if name:
            cleaned.append((name, str(constraint or "").strip()))
    return cleaned


__all__ = [
    "BUILD_SUFFIX_PATTERN",
    "CatalogSource",
    "HtmlDownloadPageSource",
    "HtmlListingSource",
    "LocalFolderSource",
    "RegistrySource",
    "logical_name",
]
