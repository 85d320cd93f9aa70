"""Constants shared across the update engine modules."""

from __future__ import annotations

APP_NAME = "coupler"
FILES_URL = "http://biostat.mc.vanderbilt.edu/coupler/"

REQUIRED_ARTIFACTS = ("coupler", "coupler-dependencies")
ARTIFACT_PATTERN = "*.jar"
PACKAGES_DIRNAME = "packages"
PACKAGE_METADATA_NAME = "package.json"

CATALOG_FORMAT_LISTING = "listing"
CATALOG_FORMAT_DOWNLOAD_PAGE = "download_page"
CATALOG_FORMAT_REGISTRY = "registry"
CATALOG_FORMATS = (
    CATALOG_FORMAT_LISTING,
    CATALOG_FORMAT_DOWNLOAD_PAGE,
    CATALOG_FORMAT_REGISTRY,
)

INTEGRITY_DIGEST = "digest"
INTEGRITY_ETAG = "etag"

# Passed as ``total`` to progress callbacks when Content-Length is absent.
UNKNOWN_TOTAL = -1
REDIRECT_STATUSES = frozenset({301, 302, 303, 307, 308})
PARTIAL_DOWNLOAD_SUFFIX = ".part"

INSTALL_ROOT_ENV = "COUPLER_HOME"
INDEX_URL_ENV = "COUPLER_UPDATE_INDEX_URL"
LOCAL_CATALOG_ENV = "COUPLER_UPDATE_LOCAL_DIR"
