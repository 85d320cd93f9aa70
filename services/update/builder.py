"""Helpers for constructing and scheduling the update orchestrator."""

from __future__ import annotations

import logging
import os
import threading
from pathlib import Path
from typing import TYPE_CHECKING, Callable

from services.update.catalog import ReleaseIndexReader
from services.update.constants import (
    CATALOG_FORMAT_DOWNLOAD_PAGE,
    CATALOG_FORMAT_LISTING,
    CATALOG_FORMAT_REGISTRY,
    INDEX_URL_ENV,
    LOCAL_CATALOG_ENV,
)
from services.update.directories import packages_directory, resolve_install_root
from services.update.errors import UpdateError
from services.update.fetcher import Opener, RedirectFetcher
from services.update.installers import PackageStore
from services.update.models import UpdateSettings
from services.update.providers import (
    CatalogSource,
    HtmlDownloadPageSource,
    HtmlListingSource,
    LocalFolderSource,
    RegistrySource,
)
from services.update.resolver import (
    CatalogMarkerStrategy,
    RegistryVersionStrategy,
    ResolutionStrategy,
)
from services.update.service import (
    BusyCallback,
    CycleResult,
    ProgressReporter,
    StrategyFactory,
    TransferCallback,
    UpdateOrchestrator,
)

if TYPE_CHECKING:
    from app.config import LauncherConfig

_LOGGER = logging.getLogger(__name__)

_SOURCES: dict[str, type] = {
    CATALOG_FORMAT_LISTING: HtmlListingSource,
    CATALOG_FORMAT_DOWNLOAD_PAGE: HtmlDownloadPageSource,
    CATALOG_FORMAT_REGISTRY: RegistrySource,
}


def build_catalog_source(catalog_format: str, settings: UpdateSettings | None = None) -> CatalogSource:
    """Return the catalog source for ``catalog_format``.

    ``COUPLER_UPDATE_LOCAL_DIR`` swaps the network read for a local folder.
    """

    try:
        source_type = _SOURCES[catalog_format]
    except KeyError:
        raise ValueError(f"Unsupported catalog format: {catalog_format}") from None
    source: CatalogSource = source_type(settings)

    local_dir = os.environ.get(LOCAL_CATALOG_ENV)
    if local_dir:
        folder = Path(local_dir)
        if folder.exists():
            _LOGGER.info("Using local catalog at %s", folder)
            return LocalFolderSource(folder, source)
        _LOGGER.warning("Configured local catalog directory does not exist: %s", folder)
    return source


def select_strategy(
    source: CatalogSource,
    fetcher: RedirectFetcher,
    *,
    artifact_pattern: str,
) -> StrategyFactory:
    """Pick the resolution strategy the source's capabilities call for."""

    if source.versioned:

        def registry_strategy(root: Path) -> ResolutionStrategy:
            return RegistryVersionStrategy(PackageStore(packages_directory(root)), fetcher)

        return registry_strategy

    def marker_strategy(root: Path) -> ResolutionStrategy:
        return CatalogMarkerStrategy(
            root,
            fetcher,
            integrity=source.integrity,
            artifact_pattern=artifact_pattern,
        )

    return marker_strategy


def build_update_orchestrator(
    config: "LauncherConfig",
    *,
    root: str | Path | None = None,
    index_url: str | None = None,
    report: ProgressReporter | None = None,
    on_busy: BusyCallback | None = None,
    on_transfer: TransferCallback | None = None,
    opener: Opener | None = None,
) -> UpdateOrchestrator:
    """Construct an :class:`UpdateOrchestrator` for the current environment."""

    settings = config.update
    source = build_catalog_source(config.catalog_format, settings)
    cancel_event = threading.Event()
    fetcher = RedirectFetcher(settings, opener=opener, cancel_event=cancel_event)
    resolved_index = index_url or os.environ.get(INDEX_URL_ENV) or config.index_url
    override = Path(root) if root is not None else None

    def locate_root() -> Path:
        return resolve_install_root(override, app_name=config.app_name)

    _LOGGER.debug(
        "Building update orchestrator: format=%s index=%s required=%s",
        config.catalog_format,
        resolved_index,
        ", ".join(config.required_artifacts),
    )
    return UpdateOrchestrator(
        ReleaseIndexReader(source),
        select_strategy(source, fetcher, artifact_pattern=config.artifact_pattern),
        locate_root,
        index_url=resolved_index,
        required=config.required_artifacts,
        report=report,
        on_busy=on_busy,
        on_transfer=on_transfer,
        workers=settings.workers,
        cancel_event=cancel_event,
        app_name=config.app_name,
    )


def _run_update_cycle(
    orchestrator: UpdateOrchestrator,
    on_complete: Callable[[CycleResult], None],
) -> None:
    try:
        outcome = orchestrator.run()
    except UpdateError as exc:
        _LOGGER.warning("Update cycle failed: %s", exc)
        on_complete(CycleResult(error=exc))
        return
    on_complete(CycleResult(outcome=outcome))


def run_update_cycle_in_background(
    orchestrator: UpdateOrchestrator,
    on_complete: Callable[[CycleResult], None],
) -> threading.Thread:
    """Run one cycle on a daemon thread and hand its :class:`CycleResult` to ``on_complete``."""

    thread = threading.Thread(
        target=_run_update_cycle,
        args=(orchestrator, on_complete),
        name="coupler-update",
        daemon=True,
    )
    thread.start()
    return thread


__all__ = [
    "build_catalog_source",
    "build_update_orchestrator",
    "run_update_cycle_in_background",
    "select_strategy",
]
