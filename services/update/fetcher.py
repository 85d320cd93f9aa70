"""Resolve download URLs through redirects and stream artifacts to disk."""

from __future__ import annotations

import http.client
import logging
import os
import tempfile
import threading
import time
from contextlib import closing
from http import HTTPStatus
from pathlib import Path
from typing import Any, Callable, Protocol, TypeVar
from urllib.error import HTTPError, URLError
from urllib.parse import urljoin
from urllib.request import HTTPRedirectHandler, Request, build_opener

from services.update.constants import PARTIAL_DOWNLOAD_SUFFIX, REDIRECT_STATUSES, UNKNOWN_TOTAL
from services.update.errors import (
    DirectoryUnavailable,
    NetworkError,
    NetworkTimeout,
    TooManyRedirects,
    UnexpectedRemoteResponse,
    UpdateCancelled,
)
from services.update.models import RedirectResolution, UpdateSettings

_LOGGER = logging.getLogger(__name__)

ProgressCallback = Callable[[int, int], None]
T = TypeVar("T")

__all__ = ["Opener", "ProgressCallback", "RedirectFetcher", "build_no_redirect_opener"]


class Opener(Protocol):
    """The subset of :class:`urllib.request.OpenerDirector` the fetcher uses."""

    def open(self, fullurl: Request, data: bytes | None = None, timeout: float = ...) -> Any:
        ...


class _NoRedirectHandler(HTTPRedirectHandler):
    """Surface 3xx responses as :class:`HTTPError` so hops can be counted."""

    def redirect_request(self, req, fp, code, msg, headers, newurl):  # type: ignore[override]
        return None


def build_no_redirect_opener() -> Opener:
    return build_opener(_NoRedirectHandler())


class RedirectFetcher:
    """Follow redirects with a hop limit and download with atomic placement."""

    def __init__(
        self,
        settings: UpdateSettings | None = None,
        *,
        opener: Opener | None = None,
        cancel_event: threading.Event | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._settings = settings or UpdateSettings()
        self._opener = opener or build_no_redirect_opener()
        self._cancel_event = cancel_event or threading.Event()
        self._sleep = sleep

    @property
    def cancel_event(self) -> threading.Event:
        return self._cancel_event

    def resolve(self, url: str) -> RedirectResolution:
        """Return the final URL and entity tag for ``url`` without a body."""

        def attempt() -> RedirectResolution:
            response, final_url = self._follow(url, "HEAD")
            with closing(response):
                etag = response.headers.get("ETag")
            return RedirectResolution(final_url=final_url, etag=etag)

        resolution = self._with_retries(url, attempt)
        _LOGGER.debug("Resolved %s to %s (etag=%s)", url, resolution.final_url, resolution.etag)
        return resolution

    def download(
        self,
        url: str,
        destination: Path,
        on_progress: ProgressCallback | None = None,
    ) -> Path:
        """Stream ``url`` into ``destination``.

        The body lands in a temporary file beside ``destination`` and is only
        renamed into place once complete; on any failure the temporary file is
        discarded and ``destination`` is left as it was.
        """

        _LOGGER.info("Downloading %s to %s", url, destination)
        return self._with_retries(url, lambda: self._download_once(url, destination, on_progress))

    def _download_once(
        self,
        url: str,
        destination: Path,
        on_progress: ProgressCallback | None,
    ) -> Path:
        response, final_url = self._follow(url, "GET")
        total = _content_length(response)
        try:
            handle, temp_name = tempfile.mkstemp(
                dir=destination.parent,
                prefix=f".{destination.name}.",
                suffix=PARTIAL_DOWNLOAD_SUFFIX,
            )
        except OSError as exc:
            response.close()
            raise DirectoryUnavailable(destination.parent, exc) from exc

        temp_path = Path(temp_name)
        received = 0
        try:
            with closing(response), os.fdopen(handle, "wb") as sink:
                while True:
                    self._check_cancelled()
                    chunk = self._read_chunk(response, final_url)
                    if not chunk:
                        break
                    sink.write(chunk)
                    received += len(chunk)
                    if on_progress is not None:
                        on_progress(received, total)
                sink.flush()
                os.fsync(sink.fileno())
            if total != UNKNOWN_TOTAL and received < total:
                raise NetworkError(
                    final_url, f"connection closed after {received} of {total} bytes"
                )
            os.replace(temp_path, destination)
        except OSError as exc:
            temp_path.unlink(missing_ok=True)
            raise DirectoryUnavailable(destination.parent, exc) from exc
        except BaseException:
            temp_path.unlink(missing_ok=True)
            raise

        _LOGGER.debug("Downloaded %d bytes from %s", received, final_url)
        return destination

    def _follow(self, url: str, method: str) -> tuple[Any, str]:
        limit = self._settings.max_redirects
        current = url
        for _ in range(limit + 1):
            self._check_cancelled()
            request = Request(
                current,
                method=method,
                headers={"User-Agent": self._settings.user_agent},
            )
            response = self._open(request, current)
            status = _status_of(response)
            if status in REDIRECT_STATUSES:
                location = response.headers.get("Location")
                response.close()
                if not location:
                    raise UnexpectedRemoteResponse(current, status)
                target = urljoin(current, location)
                _LOGGER.debug("%s %s redirected (%s) to %s", method, current, status, target)
                current = target
                continue
            if status != HTTPStatus.OK:
                response.close()
                raise UnexpectedRemoteResponse(current, status)
            return response, current
        raise TooManyRedirects(url, limit)

    def _open(self, request: Request, url: str) -> Any:
        try:
            return self._opener.open(request, timeout=self._settings.timeout)
        except HTTPError as exc:
            return exc
        except TimeoutError as exc:
            raise NetworkTimeout(url, self._settings.timeout) from exc
        except URLError as exc:
            if isinstance(exc.reason, TimeoutError):
                raise NetworkTimeout(url, self._settings.timeout) from exc
            raise NetworkError(url, str(exc.reason)) from exc
        except OSError as exc:
            raise NetworkError(url, str(exc)) from exc

    def _read_chunk(self, response: Any, url: str) -> bytes:
        try:
            return response.read(self._settings.chunk_size)
        except TimeoutError as exc:
            raise NetworkTimeout(url, self._settings.timeout) from exc
        except (OSError, http.client.HTTPException) as exc:
            raise NetworkError(url, str(exc) or type(exc).__name__) from exc

    def _with_retries(self, url: str, operation: Callable[[], T]) -> T:
        attempts = max(0, self._settings.retries) + 1
        for attempt in range(1, attempts + 1):
            try:
                return operation()
            except (NetworkTimeout, NetworkError) as exc:
                if attempt >= attempts:
                    raise
                delay = self._settings.retry_delay * attempt
                _LOGGER.warning(
                    "Attempt %d/%d for %s failed: %s; retrying in %.1fs",
                    attempt,
                    attempts,
                    url,
                    exc,
                    delay,
                )
                self._sleep(delay)
                self._check_cancelled()
        raise AssertionError("unreachable")  # pragma: no cover

    def _check_cancelled(self) -> None:
        if self._cancel_event.is_set():
            raise UpdateCancelled()


def _status_of(response: Any) -> int:
    status = getattr(response, "status", None)
    if status is None:
        status = response.getcode()
    # Non-HTTP handlers (file://) report no status.
    return 200 if status is None else int(status)


def _content_length(response: Any) -> int:
    raw = response.headers.get("Content-Length")
    if raw is None:
        return UNKNOWN_TOTAL
    try:
        length = int(raw)
    except (TypeError, ValueError):
        return UNKNOWN_TOTAL
    return length if length >= 0 else UNKNOWN_TOTAL
