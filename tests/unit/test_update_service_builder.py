from __future__ import annotations

import json
import threading
from pathlib import Path

import pytest

from app.config import LauncherConfig
from services.update import (
    INDEX_URL_ENV,
    LOCAL_CATALOG_ENV,
    CatalogUnreachable,
    HtmlDownloadPageSource,
    HtmlListingSource,
    LocalFolderSource,
    RegistrySource,
    UpdateCancelled,
    UpdateState,
    build_catalog_source,
    build_update_orchestrator,
    run_update_cycle_in_background,
)
from services.update.models import UpdateSettings
from tests.unit.update_service_test_utils import (
    FakeOpener,
    listing_html,
    md5_of,
    ok,
)

SETTINGS = UpdateSettings(retries=0, retry_delay=0.0, workers=2)


@pytest.fixture(autouse=True)
def _clear_update_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in (INDEX_URL_ENV, LOCAL_CATALOG_ENV, "COUPLER_HOME"):
        monkeypatch.delenv(name, raising=False)


@pytest.mark.parametrize(
    ("catalog_format", "expected"),
    [
        ("listing", HtmlListingSource),
        ("download_page", HtmlDownloadPageSource),
        ("registry", RegistrySource),
    ],
)
def test_build_catalog_source_by_format(catalog_format: str, expected: type) -> None:
    assert isinstance(build_catalog_source(catalog_format), expected)


def test_build_catalog_source_rejects_unknown_format() -> None:
    with pytest.raises(ValueError):
        build_catalog_source("ftp")


def test_local_catalog_directory_wraps_the_source(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.setenv(LOCAL_CATALOG_ENV, str(tmp_path))

    source = build_catalog_source("registry")

    assert isinstance(source, LocalFolderSource)
    assert source.versioned is True


def test_missing_local_catalog_directory_is_ignored(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.setenv(LOCAL_CATALOG_ENV, str(tmp_path / "absent"))

    assert isinstance(build_catalog_source("listing"), HtmlListingSource)


def _publish_listing(folder: Path, files: dict[str, tuple[bytes, str]]) -> None:
    folder.mkdir(parents=True, exist_ok=True)
    rows = []
    for name, (payload, mtime) in files.items():
        (folder / name).write_bytes(payload)
        rows.append((name, mtime, md5_of(payload)))
    (folder / "index.html").write_text(listing_html(rows), encoding="utf-8")


def test_offline_listing_cycle_installs_into_root(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    mirror = tmp_path / "mirror"
    _publish_listing(
        mirror,
        {
            "coupler-aaaaaaa.jar": (b"core-old", "2024-01-01 10:00"),
            "coupler-bbbbbbb.jar": (b"core-new", "2024-02-01 10:00"),
            "coupler-dependencies-ccccccc.jar": (b"deps", "2024-01-15 10:00"),
        },
    )
    monkeypatch.setenv(LOCAL_CATALOG_ENV, str(mirror))
    root = tmp_path / "root"
    root.mkdir()
    (root / "coupler-aaaaaaa.jar").write_bytes(b"core-old")
    messages: list[str] = []

    orchestrator = build_update_orchestrator(
        LauncherConfig(update=SETTINGS), root=root, report=messages.append
    )
    outcome = orchestrator.run()

    assert outcome.state is UpdateState.READY
    assert outcome.install_root == root
    assert outcome.artifacts["coupler"] == root / "coupler-bbbbbbb.jar"
    assert (root / "coupler-bbbbbbb.jar").read_bytes() == b"core-new"
    assert (root / "coupler-dependencies-ccccccc.jar").read_bytes() == b"deps"
    assert not (root / "coupler-aaaaaaa.jar").exists()
    assert "Downloading dependencies..." in messages


def test_offline_registry_cycle_uses_package_store(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    mirror = tmp_path / "mirror"
    mirror.mkdir()
    (mirror / "app-1.1.0.jar").write_bytes(b"app")
    (mirror / "runtime-2.0.0.jar").write_bytes(b"runtime")
    registry = {
        "packages": [
            {
                "name": "app",
                "version": "1.1.0",
                "file": "app-1.1.0.jar",
                "md5": md5_of(b"app"),
                "dependencies": {"runtime": ">=2"},
            },
            {"name": "runtime", "version": "2.0.0", "file": "runtime-2.0.0.jar", "md5": md5_of(b"runtime")},
        ]
    }
    (mirror / "index.json").write_text(json.dumps(registry), encoding="utf-8")
    monkeypatch.setenv(LOCAL_CATALOG_ENV, str(mirror))
    root = tmp_path / "root"
    config = LauncherConfig(
        catalog_format="registry",
        required_artifacts=("app",),
        update=SETTINGS,
    )

    outcome = build_update_orchestrator(config, root=root).run()

    assert outcome.state is UpdateState.READY
    assert outcome.artifacts == {"app": root / "packages" / "app-1.1.0" / "app-1.1.0.jar"}
    assert (root / "packages" / "runtime-2.0.0" / "package.json").is_file()


def test_index_url_precedence(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.setenv(INDEX_URL_ENV, "http://env.example/")
    monkeypatch.setenv("COUPLER_HOME", str(tmp_path))
    served = listing_html([("coupler-bbbbbbb.jar", "2024-01-01", md5_of(b"x"))]).encode("utf-8")
    requested: list[str] = []

    class Response:
        def __init__(self, payload: bytes) -> None:
            self._payload = payload
            self.headers = None

        def __enter__(self):
            return self

        def __exit__(self, *exc) -> None:
            return None

        def read(self) -> bytes:
            return self._payload

    def fake_urlopen(request, timeout=None):  # type: ignore[override]
        requested.append(request.full_url)
        return Response(served)

    monkeypatch.setattr("services.update.providers.urlopen", fake_urlopen)
    config = LauncherConfig(required_artifacts=("coupler",), update=SETTINGS)
    opener = FakeOpener({"http://env.example/coupler-bbbbbbb.jar": ok(b"x")})

    build_update_orchestrator(config, opener=opener).run()
    assert (tmp_path / "coupler-bbbbbbb.jar").read_bytes() == b"x"

    # An explicit URL beats the environment; the file is already current.
    build_update_orchestrator(config, index_url="http://cli.example/", opener=opener).run()

    assert requested == ["http://env.example/", "http://cli.example/"]
    assert opener.urls("GET") == ["http://env.example/coupler-bbbbbbb.jar"]


def test_run_update_cycle_in_background_reports_success(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    mirror = tmp_path / "mirror"
    _publish_listing(
        mirror,
        {
            "coupler-bbbbbbb.jar": (b"core", "2024-02-01 10:00"),
            "coupler-dependencies-ccccccc.jar": (b"deps", "2024-01-15 10:00"),
        },
    )
    monkeypatch.setenv(LOCAL_CATALOG_ENV, str(mirror))
    orchestrator = build_update_orchestrator(LauncherConfig(update=SETTINGS), root=tmp_path / "root")
    done = threading.Event()
    results = []

    def on_complete(result) -> None:
        results.append(result)
        done.set()

    thread = run_update_cycle_in_background(orchestrator, on_complete)

    assert done.wait(10)
    thread.join(10)
    assert thread.daemon
    assert results[0].succeeded
    assert results[0].unwrap().state is UpdateState.READY


def test_run_update_cycle_in_background_reports_errors(tmp_path: Path) -> None:
    orchestrator = build_update_orchestrator(LauncherConfig(update=SETTINGS), root=tmp_path)
    orchestrator.shutdown()
    results = []

    run_update_cycle_in_background(orchestrator, results.append).join(10)

    assert len(results) == 1
    assert isinstance(results[0].error, UpdateCancelled)


def test_background_cycle_reports_malformed_listing(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    mirror = tmp_path / "mirror"
    mirror.mkdir()
    (mirror / "index.html").write_text("<html><![foo bar]><table></table>", encoding="utf-8")
    monkeypatch.setenv(LOCAL_CATALOG_ENV, str(mirror))
    orchestrator = build_update_orchestrator(LauncherConfig(update=SETTINGS), root=tmp_path / "root")
    results = []

    run_update_cycle_in_background(orchestrator, results.append).join(10)

    assert len(results) == 1
    assert not results[0].succeeded
    assert isinstance(results[0].error, CatalogUnreachable)
    assert orchestrator.state is UpdateState.FAILED
