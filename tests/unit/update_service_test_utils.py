from __future__ import annotations

import hashlib
import io
from dataclasses import dataclass, field
from email.message import Message
from pathlib import Path
from typing import Iterable, Mapping, Sequence
from urllib.request import Request

import pytest

from services.update.constants import INTEGRITY_DIGEST
from services.update.models import ArtifactDescriptor, UpdateSettings
from services.update.versioning import date_marker_key, version_marker_key

LISTING_URL = "http://files.example/coupler/"

# Zero delays so retry tests never sleep.
FAST_SETTINGS = UpdateSettings(timeout=1.0, retries=2, retry_delay=0.0, chunk_size=4)


def md5_of(payload: bytes) -> str:
    return hashlib.md5(payload).hexdigest()


def make_headers(headers: Mapping[str, str] | None = None) -> Message:
    message = Message()
    for key, value in (headers or {}).items():
        message[key] = value
    return message


class FakeResponse(io.BytesIO):
    """Stand-in for an ``http.client.HTTPResponse``.

    ``fail_after`` makes ``read`` raise once that many bytes were served.
    """

    def __init__(
        self,
        body: bytes = b"",
        *,
        status: int = 200,
        headers: Mapping[str, str] | None = None,
        fail_after: int | None = None,
        send_length: bool = True,
    ) -> None:
        super().__init__(body)
        self.status = status
        merged = {"Content-Length": str(len(body))} if send_length else {}
        merged.update(headers or {})
        self.headers = make_headers(merged)
        self._fail_after = fail_after

    def __enter__(self) -> "FakeResponse":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def getcode(self) -> int:
        return self.status

    def read(self, size: int | None = -1) -> bytes:
        if self._fail_after is not None and self.tell() >= self._fail_after:
            raise ConnectionResetError("connection reset by peer")
        if self._fail_after is not None and size is not None and size > 0:
            size = min(size, self._fail_after - self.tell())
        return super().read(size)


def ok(body: bytes = b"", **headers: str) -> FakeResponse:
    return FakeResponse(body, headers={key.replace("_", "-"): value for key, value in headers.items()})


def redirect(location: str, status: int = 302) -> FakeResponse:
    return FakeResponse(status=status, headers={"Location": location})


@dataclass
class FakeOpener:
    """Serve canned responses per URL, recording every request.

    A route is either a single response factory result or a list that is
    consumed in order; the last entry repeats. Exceptions are raised.
    """

    routes: dict[str, object] = field(default_factory=dict)
    requests: list[tuple[str, str]] = field(default_factory=list)

    def open(self, fullurl: Request, data: bytes | None = None, timeout: float | None = None):
        url = fullurl.full_url
        self.requests.append((fullurl.get_method(), url))
        if url not in self.routes:
            raise AssertionError(f"Unexpected URL requested: {url}")
        route = self.routes[url]
        if isinstance(route, list):
            entry = route.pop(0) if len(route) > 1 else route[0]
        else:
            entry = route
        if callable(entry):
            entry = entry()
        if isinstance(entry, BaseException):
            raise entry
        if isinstance(entry, FakeResponse):
            # Each request gets a fresh stream over the same payload.
            return FakeResponse(
                entry.getvalue(),
                status=entry.status,
                headers=dict(entry.headers.items()),
                fail_after=entry._fail_after,
                send_length=False,
            )
        raise AssertionError(f"Unsupported route entry for {url}: {entry!r}")

    def urls(self, method: str | None = None) -> list[str]:
        return [url for verb, url in self.requests if method is None or verb == method]


@dataclass
class StaticCatalogSource:
    """Catalog source returning fixed descriptors."""

    descriptors: Sequence[ArtifactDescriptor]
    integrity: str = INTEGRITY_DIGEST
    versioned: bool = False
    fetched: list[str] = field(default_factory=list)

    def fetch(self, url: str) -> str:
        self.fetched.append(url)
        return ""

    def parse(self, raw: str, base_url: str) -> list[ArtifactDescriptor]:
        return list(self.descriptors)

    def marker_key(self, marker: str):
        if self.versioned:
            return version_marker_key(marker)
        return date_marker_key(marker)


def descriptor(
    basename: str,
    marker: str,
    *,
    name: str | None = None,
    checksum: str | None = None,
    base_url: str = LISTING_URL,
    dependencies: Iterable[tuple[str, str]] = (),
) -> ArtifactDescriptor:
    return ArtifactDescriptor(
        name=name or basename.rsplit("-", 1)[0],
        version_key=marker,
        download_path=base_url + basename,
        basename=basename,
        checksum=checksum,
        dependencies=frozenset(dependencies),
    )


def listing_html(rows: Iterable[tuple[str, str, str]]) -> str:
    """Render a directory listing with file, modification date and MD5 columns."""

    body = "\n".join(
        f'      <tr><td><a href="{name}">{name}</a></td><td>{mtime}</td><td>{digest}</td></tr>'
        for name, mtime, digest in rows
    )
    return (
        "<html><body>\n"
        "  <table>\n"
        "    <thead><tr><th>File</th><th>Modified</th><th>MD5</th></tr></thead>\n"
        "    <tbody>\n"
        f"{body}\n"
        "    </tbody>\n"
        "  </table>\n"
        "</body></html>\n"
    )


def configure_install_root(monkeypatch: pytest.MonkeyPatch, tmp_path: Path, env_var: str) -> Path:
    install_root = tmp_path / "install"
    install_root.mkdir()
    monkeypatch.setenv(env_var, str(install_root))
    return install_root


__all__ = [
    "FAST_SETTINGS",
    "FakeOpener",
    "FakeResponse",
    "LISTING_URL",
    "StaticCatalogSource",
    "configure_install_root",
    "descriptor",
    "listing_html",
    "make_headers",
    "md5_of",
    "ok",
    "redirect",
]
