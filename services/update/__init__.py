"""Public API for the update engine package."""

from __future__ import annotations

from services.update.builder import (
    build_catalog_source,
    build_update_orchestrator,
    run_update_cycle_in_background,
    select_strategy,
)
from services.update.catalog import ReleaseIndexReader, reduce_catalog
from services.update.cleanup import CleanupPlanner, execute_plan, strongly_connected_components
from services.update.constants import (
    APP_NAME,
    FILES_URL,
    INDEX_URL_ENV,
    INSTALL_ROOT_ENV,
    LOCAL_CATALOG_ENV,
    REQUIRED_ARTIFACTS,
)
from services.update.directories import resolve_install_root
from services.update.errors import (
    ArtifactMissingRequired,
    CatalogUnreachable,
    CleanupUnitFailed,
    DirectoryUnavailable,
    IntegrityMismatch,
    NetworkError,
    NetworkTimeout,
    TooManyRedirects,
    UnexpectedRemoteResponse,
    UpdateCancelled,
    UpdateError,
)
from services.update.fetcher import RedirectFetcher
from services.update.hashing import is_valid
from services.update.installers import PackageStore
from services.update.models import (
    ArtifactDescriptor,
    CleanupPlan,
    InstalledArtifact,
    PackageVersion,
    RedirectResolution,
    ReleaseCatalog,
    UpdateSettings,
)
from services.update.providers import (
    CatalogSource,
    HtmlDownloadPageSource,
    HtmlListingSource,
    LocalFolderSource,
    RegistrySource,
)
from services.update.resolver import (
    CatalogMarkerStrategy,
    Decision,
    RegistryVersionStrategy,
    Resolution,
    ResolutionStrategy,
)
from services.update.service import CycleResult, UpdateOrchestrator, UpdateOutcome, UpdateState

__all__ = [
    "APP_NAME",
    "FILES_URL",
    "INDEX_URL_ENV",
    "INSTALL_ROOT_ENV",
    "LOCAL_CATALOG_ENV",
    "REQUIRED_ARTIFACTS",
    "ArtifactDescriptor",
    "ArtifactMissingRequired",
    "CatalogMarkerStrategy",
    "CatalogSource",
    "CatalogUnreachable",
    "CleanupPlan",
    "CleanupPlanner",
    "CleanupUnitFailed",
    "CycleResult",
    "Decision",
    "DirectoryUnavailable",
    "HtmlDownloadPageSource",
    "HtmlListingSource",
    "InstalledArtifact",
    "IntegrityMismatch",
    "LocalFolderSource",
    "NetworkError",
    "NetworkTimeout",
    "PackageStore",
    "PackageVersion",
    "RedirectFetcher",
    "RedirectResolution",
    "RegistrySource",
    "RegistryVersionStrategy",
    "ReleaseCatalog",
    "ReleaseIndexReader",
    "Resolution",
    "ResolutionStrategy",
    "TooManyRedirects",
    "UnexpectedRemoteResponse",
    "UpdateCancelled",
    "UpdateError",
    "UpdateOrchestrator",
    "UpdateOutcome",
    "UpdateSettings",
    "UpdateState",
    "build_catalog_source",
    "build_update_orchestrator",
    "execute_plan",
    "is_valid",
    "reduce_catalog",
    "resolve_install_root",
    "run_update_cycle_in_background",
    "select_strategy",
    "strongly_connected_components",
]
