"""Orchestrate one update cycle: discover, verify, install, clean up."""

from __future__ import annotations

import enum
import logging
import threading
from concurrent.futures import FIRST_EXCEPTION, ThreadPoolExecutor, wait
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Iterator, Mapping, Sequence

from services.update.catalog import ReleaseIndexReader
from services.update.constants import APP_NAME, REQUIRED_ARTIFACTS
from services.update.errors import (
    ArtifactMissingRequired,
    CleanupUnitFailed,
    DirectoryUnavailable,
    UpdateCancelled,
    UpdateError,
)
from services.update.models import ArtifactDescriptor, InstalledArtifact, PackageVersion
from services.update.resolver import Resolution, ResolutionStrategy

_LOGGER = logging.getLogger(__name__)

ProgressReporter = Callable[[str], None]
BusyCallback = Callable[[bool], None]
TransferCallback = Callable[[str, int, int], None]
StrategyFactory = Callable[[Path], ResolutionStrategy]

__all__ = ["CycleResult", "UpdateOrchestrator", "UpdateOutcome", "UpdateState"]


class UpdateState(str, enum.Enum):
    IDLE = "idle"
    DISCOVERING_CATALOG = "discovering-catalog"
    RESOLVING_VERSIONS = "resolving-versions"
    INSTALLING = "installing"
    CLEANING_UP = "cleaning-up"
    READY = "ready"
    FAILED = "failed"


@dataclass(frozen=True)
class UpdateOutcome:
    """What a finished cycle leaves behind for the launcher."""

    state: UpdateState
    install_root: Path
    artifacts: Mapping[str, Path]
    installed: tuple[InstalledArtifact, ...] = ()
    cleanup_failures: tuple[CleanupUnitFailed, ...] = ()
    history: tuple[UpdateState, ...] = field(default=())

    @property
    def ready(self) -> bool:
        return self.state is UpdateState.READY


@dataclass(frozen=True)
class CycleResult:
    """Either the outcome of a finished cycle or the error that ended it."""

    outcome: UpdateOutcome | None = None
    error: UpdateError | None = None

    @property
    def succeeded(self) -> bool:
        return self.error is None and self.outcome is not None

    def unwrap(self) -> UpdateOutcome:
        if self.error is not None:
            raise self.error
        if self.outcome is None:
            raise UpdateError("The update cycle ended without an outcome")
        return self.outcome


class UpdateOrchestrator:
    """Sequence the update engine for a single cycle.

    Only one orchestrator may work on an installation root at a time; the
    surrounding launcher is expected to hold its single-instance lock before
    calling :meth:`run`.
    """

    def __init__(
        self,
        reader: ReleaseIndexReader,
        strategy_factory: StrategyFactory,
        locate_root: Callable[[], Path],
        *,
        index_url: str,
        required: Sequence[str] = REQUIRED_ARTIFACTS,
        report: ProgressReporter | None = None,
        on_busy: BusyCallback | None = None,
        on_transfer: TransferCallback | None = None,
        workers: int = 1,
        cancel_event: threading.Event | None = None,
        app_name: str = APP_NAME,
    ) -> None:
        self._reader = reader
        self._strategy_factory = strategy_factory
        self._locate_root = locate_root
        self._index_url = index_url
        self._required = tuple(required)
        self._report_callback = report
        self._busy_callback = on_busy
        self._transfer_callback = on_transfer
        self._workers = max(1, workers)
        self._cancel_event = cancel_event or threading.Event()
        self._app_name = app_name
        self._callback_lock = threading.Lock()
        self._state = UpdateState.IDLE
        self._history: list[UpdateState] = [UpdateState.IDLE]
        self._error: UpdateError | None = None

    @property
    def state(self) -> UpdateState:
        return self._state

    @property
    def history(self) -> tuple[UpdateState, ...]:
        return tuple(self._history)

    @property
    def error(self) -> UpdateError | None:
        return self._error

    def shutdown(self) -> None:
        """Stop in-flight downloads and start no further steps."""

        _LOGGER.info("Shutdown requested during %s", self._state.value)
        self._cancel_event.set()

    def run(self) -> UpdateOutcome:
        """Run the cycle; fatal errors are reported, then re-raised."""

        if self._state is not UpdateState.IDLE:
            raise RuntimeError("An orchestrator runs a single update cycle")

        try:
            self._enter(UpdateState.DISCOVERING_CATALOG)
            self._report(f"Locating {self._app_name.capitalize()} directory...")
            root = self._locate_root()
            strategy = self._strategy_factory(root)
            self._report("Checking for updates...")
            with self._busy():
                catalog = self._reader.fetch_latest(self._index_url)

            self._enter(UpdateState.RESOLVING_VERSIONS)
            resolutions = strategy.resolve(catalog, self._required, self._on_verify)

            self._enter(UpdateState.INSTALLING)
            installed = self._install(strategy, resolutions)

            self._enter(UpdateState.CLEANING_UP)
            self._report("Removing old files...")
            failures = strategy.cleanup(installed, self._on_cleanup_unit)
            for failure in failures:
                self._report(str(failure))

            artifacts = self._required_paths(installed)
            self._enter(UpdateState.READY)
        except UpdateError as exc:
            self._fail(exc)
            raise
        except Exception as exc:
            error = UpdateError(f"Update failed while {self._state.value}: {exc}")
            self._fail(error)
            raise error from exc

        self._report("Ready")
        return UpdateOutcome(
            state=self._state,
            install_root=root,
            artifacts=artifacts,
            installed=tuple(installed),
            cleanup_failures=failures,
            history=self.history,
        )

    def _install(
        self, strategy: ResolutionStrategy, resolutions: Sequence[Resolution]
    ) -> list[InstalledArtifact]:
        results: dict[str, InstalledArtifact] = {}
        to_fetch = [resolution for resolution in resolutions if resolution.needs_fetch]
        for resolution in resolutions:
            if not resolution.needs_fetch:
                try:
                    results[resolution.name] = strategy.apply(resolution)
                except OSError as exc:
                    raise DirectoryUnavailable(resolution.local_path.parent, exc) from exc

        if to_fetch:
            workers = min(self._workers, len(to_fetch))
            with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="coupler-update") as pool:
                futures = {
                    pool.submit(self._fetch_one, strategy, resolution): resolution
                    for resolution in to_fetch
                }
                done, pending = wait(futures, return_when=FIRST_EXCEPTION)
                failure = next(
                    (future.exception() for future in done if future.exception() is not None),
                    None,
                )
                if failure is not None:
                    # Stop the remaining downloads before surfacing the first error.
                    self._cancel_event.set()
                    for future in pending:
                        future.cancel()
                    wait(pending)
                    raise failure
                for future, resolution in futures.items():
                    results[resolution.name] = future.result()

        return [results[resolution.name] for resolution in resolutions]

    def _fetch_one(self, strategy: ResolutionStrategy, resolution: Resolution) -> InstalledArtifact:
        self._check_cancelled()
        descriptor = resolution.descriptor
        _LOGGER.info(
            "%s %s (%s): %s",
            resolution.decision.value,
            descriptor.name,
            descriptor.version_key,
            resolution.reason,
        )
        self._report(f"Downloading {descriptor.short_name}...")

        def on_progress(received: int, total: int) -> None:
            if self._transfer_callback is not None:
                with self._callback_lock:
                    self._transfer_callback(descriptor.name, received, total)

        try:
            artifact = strategy.apply(resolution, on_progress)
        except OSError as exc:
            raise DirectoryUnavailable(resolution.local_path.parent, exc) from exc
        _LOGGER.info("Downloaded %s => %s", descriptor.short_name, artifact.local_path)
        return artifact

    def _required_paths(self, installed: Sequence[InstalledArtifact]) -> dict[str, Path]:
        by_name = {artifact.name: artifact.local_path for artifact in installed}
        missing = [name for name in self._required if name not in by_name]
        if missing:
            raise ArtifactMissingRequired(missing)
        return {name: by_name[name] for name in self._required}

    def _on_verify(self, descriptor: ArtifactDescriptor) -> None:
        self._check_cancelled()
        self._report(f"Verifying {descriptor.short_name}...")

    def _on_cleanup_unit(self, unit: Sequence[PackageVersion]) -> None:
        self._check_cancelled()
        _LOGGER.debug("Removing %s", ", ".join(str(package) for package in unit))

    def _enter(self, state: UpdateState) -> None:
        self._check_cancelled()
        _LOGGER.debug("Update cycle: %s -> %s", self._state.value, state.value)
        self._state = state
        self._history.append(state)

    def _fail(self, exc: UpdateError) -> None:
        self._error = exc
        failed_during = self._state
        self._state = UpdateState.FAILED
        self._history.append(UpdateState.FAILED)
        if isinstance(exc, UpdateCancelled):
            _LOGGER.info("Update cycle cancelled during %s", failed_during.value)
        else:
            _LOGGER.error("Update cycle failed during %s: %s", failed_during.value, exc)
        self._report(str(exc))

    def _report(self, message: str) -> None:
        _LOGGER.info("%s", message)
        if self._report_callback is None:
            return
        with self._callback_lock:
            self._report_callback(message)

    @contextmanager
    def _busy(self) -> Iterator[None]:
        if self._busy_callback is None:
            yield
            return
        with self._callback_lock:
            self._busy_callback(True)
        try:
            yield
        finally:
            with self._callback_lock:
                self._busy_callback(False)

    def _check_cancelled(self) -> None:
        if self._cancel_event.is_set():
            raise UpdateCancelled()
