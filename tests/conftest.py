from __future__ import annotations

import sys
from pathlib import Path

import pytest


def _ensure_project_root_on_path() -> None:
    """Guarantee the repository root is discoverable for absolute imports."""

    root = Path(__file__).resolve().parent.parent
    root_str = str(root)
    if root_str not in sys.path:
        sys.path.insert(0, root_str)


_ensure_project_root_on_path()

_UPDATE_ENV_VARS = (
    "COUPLER_HOME",
    "COUPLER_UPDATE_INDEX_URL",
    "COUPLER_UPDATE_LOCAL_DIR",
    "COUPLER_LOG_FILE",
    "COUPLER_APP_VERSION",
)


@pytest.fixture(autouse=True)
def _launcher_env(monkeypatch: pytest.MonkeyPatch, tmp_path_factory: pytest.TempPathFactory):
    """Keep installs and log files out of the real home directory."""

    for name in _UPDATE_ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("COUPLER_LOG_DIR", str(tmp_path_factory.mktemp("logs")))

    from app.config import reset_launcher_config_cache
    from app.version import get_app_version

    reset_launcher_config_cache()
    get_app_version.cache_clear()
    yield
    reset_launcher_config_cache()
    get_app_version.cache_clear()
