"""Reduce a remote release listing to the latest build per artifact."""

from __future__ import annotations

import logging
from typing import Any, Callable, Iterable

from services.update.errors import CatalogUnreachable, NetworkTimeout, UpdateCancelled, UpdateError
from services.update.models import ArtifactDescriptor, ReleaseCatalog
from services.update.providers import CatalogSource

_LOGGER = logging.getLogger(__name__)

__all__ = ["ReleaseIndexReader", "reduce_catalog"]


def reduce_catalog(
    source_url: str,
    descriptors: Iterable[ArtifactDescriptor],
    marker_key: Callable[[str], Any],
) -> ReleaseCatalog:
    """Keep the descriptor with the greatest marker for each logical name.

    Ties keep whichever row was listed first.
    """

    latest: dict[str, ArtifactDescriptor] = {}
    best_keys: dict[str, Any] = {}
    candidates: dict[str, list[ArtifactDescriptor]] = {}
    for descriptor in descriptors:
        candidates.setdefault(descriptor.name, []).append(descriptor)
        key = marker_key(descriptor.version_key)
        if descriptor.name not in latest or best_keys[descriptor.name] < key:
            latest[descriptor.name] = descriptor
            best_keys[descriptor.name] = key

    return ReleaseCatalog(
        source_url=source_url,
        latest=latest,
        candidates={name: tuple(rows) for name, rows in candidates.items()},
    )


class ReleaseIndexReader:
    """Fetch a catalog through a :class:`CatalogSource` and reduce it."""

    def __init__(self, source: CatalogSource) -> None:
        self._source = source

    @property
    def source(self) -> CatalogSource:
        return self._source

    def fetch_latest(self, index_url: str) -> ReleaseCatalog:
        _LOGGER.info("Checking %s for the latest builds", index_url)
        try:
            raw = self._source.fetch(index_url)
            descriptors = self._source.parse(raw, index_url)
        except (CatalogUnreachable, NetworkTimeout, UpdateCancelled):
            raise
        except UpdateError as exc:
            raise CatalogUnreachable(index_url, str(exc)) from exc

        if not descriptors:
            raise CatalogUnreachable(index_url, "the listing has no entries")

        catalog = reduce_catalog(index_url, descriptors, self._source.marker_key)
        for name, descriptor in sorted(catalog.latest.items()):
            _LOGGER.debug(
                "Latest %s: %s (%s, checksum=%s)",
                name,
                descriptor.basename,
                descriptor.version_key,
                descriptor.checksum or "none",
            )
        return catalog
