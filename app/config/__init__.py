"""Launcher configuration loaded from JSON resources."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from importlib import resources
from math import isfinite
from pathlib import Path
from typing import Any, Mapping

from services.update.constants import (
    APP_NAME,
    ARTIFACT_PATTERN,
    CATALOG_FORMAT_LISTING,
    CATALOG_FORMATS,
    FILES_URL,
    REQUIRED_ARTIFACTS,
)
from services.update.models import UpdateSettings

_CONFIG_RESOURCE = "launcher.json"
_LAUNCHER_CONFIG_CACHE: LauncherConfig | None = None
_DEFAULT_SETTINGS = UpdateSettings()


@dataclass(frozen=True)
class LauncherConfig:
    """Structured configuration values for the launcher."""

    app_name: str = APP_NAME
    index_url: str = FILES_URL
    catalog_format: str = CATALOG_FORMAT_LISTING
    required_artifacts: tuple[str, ...] = REQUIRED_ARTIFACTS
    artifact_pattern: str = ARTIFACT_PATTERN
    update: UpdateSettings = field(default_factory=UpdateSettings)


def get_launcher_config() -> LauncherConfig:
    """Return the cached launcher configuration."""

    global _LAUNCHER_CONFIG_CACHE
    if _LAUNCHER_CONFIG_CACHE is None:
        _LAUNCHER_CONFIG_CACHE = load_launcher_config()
    return _LAUNCHER_CONFIG_CACHE


def reset_launcher_config_cache() -> None:
    """Reset the cached configuration for subsequent reloads."""

    global _LAUNCHER_CONFIG_CACHE
    _LAUNCHER_CONFIG_CACHE = None


def load_launcher_config(path: str | Path | None = None) -> LauncherConfig:
    """Load configuration from ``path`` or the bundled JSON resource."""

    data = _read_config_data(path)
    defaults = LauncherConfig()
    catalog_format = _coerce_text(data.get("catalog_format"), default=defaults.catalog_format)
    if catalog_format not in CATALOG_FORMATS:
        catalog_format = defaults.catalog_format
    update_section = data.get("update")
    return LauncherConfig(
        app_name=_coerce_text(data.get("app_name"), default=defaults.app_name),
        index_url=_coerce_text(data.get("index_url"), default=defaults.index_url),
        catalog_format=catalog_format,
        required_artifacts=_coerce_names(
            data.get("required_artifacts"), default=defaults.required_artifacts
        ),
        artifact_pattern=_coerce_text(
            data.get("artifact_pattern"), default=defaults.artifact_pattern
        ),
        update=_parse_update_section(update_section if isinstance(update_section, Mapping) else None),
    )


def _read_config_data(path: str | Path | None) -> Mapping[str, Any]:
    if path is not None:
        return _load_json_from_path(Path(path).expanduser())
    return _load_default_config_data()


def _load_json_from_path(path: Path) -> Mapping[str, Any]:
    try:
        raw = path.read_text(encoding="utf-8")
    except OSError:
        return {}
    return _parse_json(raw)


def _load_default_config_data() -> Mapping[str, Any]:
    try:
        resource = resources.files(__package__).joinpath(_CONFIG_RESOURCE)
        raw = resource.read_text(encoding="utf-8")
    except (FileNotFoundError, OSError):
        return {}
    return _parse_json(raw)


def _parse_json(raw: str) -> Mapping[str, Any]:
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError:
        return {}
    if isinstance(parsed, Mapping):
        return parsed
    return {}


def _parse_update_section(section: Mapping[str, Any] | None) -> UpdateSettings:
    if section is None:
        return _DEFAULT_SETTINGS
    defaults = _DEFAULT_SETTINGS
    return UpdateSettings(
        timeout=_coerce_positive_float(section.get("timeout"), default=defaults.timeout),
        max_redirects=_coerce_non_negative_int(
            section.get("max_redirects"), default=defaults.max_redirects
        ),
        retries=_coerce_non_negative_int(section.get("retries"), default=defaults.retries),
        retry_delay=_coerce_non_negative_float(
            section.get("retry_delay"), default=defaults.retry_delay
        ),
        chunk_size=_coerce_positive_int(section.get("chunk_size"), default=defaults.chunk_size),
        workers=_coerce_positive_int(section.get("workers"), default=defaults.workers),
        user_agent=_coerce_text(section.get("user_agent"), default=defaults.user_agent),
    )


def _coerce_text(value: Any, *, default: str) -> str:
    if not isinstance(value, str):
        return default
    text = value.strip()
    return text or default


def _coerce_names(value: Any, *, default: tuple[str, ...]) -> tuple[str, ...]:
    if not isinstance(value, list):
        return default
    names = tuple(item.strip() for item in value if isinstance(item, str) and item.strip())
    return names or default


def _coerce_number(value: Any) -> float | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        candidate = float(value)
    elif isinstance(value, str):
        try:
            candidate = float(value.strip())
        except ValueError:
            return None
    else:
        return None
    if not isfinite(candidate):
        return None
    return candidate


def _coerce_positive_int(value: Any, *, default: int) -> int:
    candidate = _coerce_number(value)
    if candidate is None or int(candidate) <= 0:
        return default
    return int(candidate)


def _coerce_non_negative_int(value: Any, *, default: int) -> int:
    candidate = _coerce_number(value)
    if candidate is None or candidate < 0:
        return default
    return int(candidate)


def _coerce_positive_float(value: Any, *, default: float) -> float:
    candidate = _coerce_number(value)
    if candidate is None or candidate <= 0:
        return default
    return candidate


def _coerce_non_negative_float(value: Any, *, default: float) -> float:
    candidate = _coerce_number(value)
    if candidate is None or candidate < 0:
        return default
    return candidate


__all__ = [
    "LauncherConfig",
    "get_launcher_config",
    "load_launcher_config",
    "reset_launcher_config_cache",
]
