from __future__ import annotations

from pathlib import Path
from typing import Sequence

import pytest

from services.update.cleanup import (
    CleanupPlanner,
    build_dependency_graph,
    execute_plan,
    strongly_connected_components,
)
from services.update.errors import CleanupUnitFailed
from services.update.installers import PackageStore
from services.update.models import ArtifactDescriptor, CleanupPlan, PackageVersion


def _pkg(name: str, version: str = "1.0.0", **dependencies: str) -> PackageVersion:
    return PackageVersion(name, version, frozenset(dependencies.items()))


class RecordingUninstaller:
    def __init__(self, fail_on: set[str] | None = None) -> None:
        self.removed: list[tuple[str, ...]] = []
        self._fail_on = fail_on or set()

    def uninstall(self, unit: Sequence[PackageVersion]) -> None:
        names = tuple(package.name for package in unit)
        if self._fail_on.intersection(names):
            raise PermissionError(f"locked: {', '.join(names)}")
        self.removed.append(names)


def test_scc_emits_dependencies_before_dependents() -> None:
    graph = {"a": ["b"], "b": ["c"], "c": []}

    assert strongly_connected_components(graph) == [["c"], ["b"], ["a"]]


def test_scc_groups_cycles_into_one_component() -> None:
    graph = {"a": ["b"], "b": ["c"], "c": ["a"], "d": ["a"]}

    components = strongly_connected_components(graph)

    assert sorted(components[0]) == ["a", "b", "c"]
    assert components[1] == ["d"]


def test_scc_handles_deep_chains_without_recursion() -> None:
    depth = 5000
    graph = {index: [index + 1] for index in range(depth)}
    graph[depth] = []

    components = strongly_connected_components(graph)

    assert len(components) == depth + 1
    assert components[0] == [depth]


def test_dependency_graph_matches_constraints() -> None:
    app = _pkg("app", runtime=">=2")
    old_runtime = _pkg("runtime", "1.0.0")
    new_runtime = _pkg("runtime", "2.0.0")

    graph = build_dependency_graph([app], [app, old_runtime, new_runtime])

    assert graph[app] == [new_runtime]
    assert graph[new_runtime] == []
    assert old_runtime not in graph


def test_plan_orders_dependents_before_dependencies() -> None:
    c = _pkg("c")
    b = _pkg("b", c="")
    a = _pkg("a", b="")

    plan = CleanupPlanner().plan([c, a, b], keep=[])

    assert [tuple(p.name for p in unit) for unit in plan] == [("a",), ("b",), ("c",)]


def test_plan_removes_a_cycle_as_one_unit() -> None:
    a = _pkg("a", b="")
    b = _pkg("b", a="")
    tool = _pkg("tool", a="")

    plan = CleanupPlanner().plan([a, b, tool], keep=[])

    assert [tuple(p.name for p in unit) for unit in plan] == [("tool",), ("a", "b")]


def test_plan_never_includes_kept_packages() -> None:
    shared = _pkg("shared")
    old_app = _pkg("app", "1.0.0", shared="")
    new_app = _pkg("app", "2.0.0", shared="")

    plan = CleanupPlanner().plan([shared, old_app, new_app], keep=[new_app, shared])

    assert plan.packages == (old_app,)


def test_nothing_removable_gives_an_empty_plan() -> None:
    only = _pkg("app")

    assert len(CleanupPlanner().plan([only], keep=[only])) == 0


def test_execute_plan_is_best_effort() -> None:
    plan = CleanupPlan(((_pkg("a"),), (_pkg("b"),), (_pkg("c"),)))
    uninstaller = RecordingUninstaller(fail_on={"b"})
    reported: list[str] = []

    failures = execute_plan(plan, uninstaller, lambda unit: reported.append(unit[0].name))

    assert uninstaller.removed == [("a",), ("c",)]
    assert reported == ["a", "b", "c"]
    assert len(failures) == 1
    assert failures[0].packages == (_pkg("b"),)
    assert isinstance(failures[0].cause, PermissionError)


def _record(store: PackageStore, package: PackageVersion) -> None:
    row = ArtifactDescriptor(
        name=package.name,
        version_key=package.version,
        download_path="",
        basename=f"{package}.jar",
        dependencies=package.dependencies,
    )
    package_dir = store.package_dir(package)
    package_dir.mkdir(parents=True)
    (package_dir / row.basename).write_bytes(b"jar")
    store.record(row)


def test_package_store_refuses_to_orphan_a_dependent(tmp_path: Path) -> None:
    store = PackageStore(tmp_path)
    runtime = _pkg("runtime", "2.0.0")
    app = _pkg("app", "1.0.0", runtime=">=2")
    _record(store, runtime)
    _record(store, app)

    with pytest.raises(CleanupUnitFailed) as excinfo:
        store.uninstall([runtime])

    assert "still required by app-1.0.0" in str(excinfo.value)
    assert store.package_dir(runtime).is_dir()


def test_package_store_uninstalls_in_planned_order(tmp_path: Path) -> None:
    store = PackageStore(tmp_path)
    runtime = _pkg("runtime", "2.0.0")
    app = _pkg("app", "1.0.0", runtime=">=2")
    _record(store, runtime)
    _record(store, app)

    plan = CleanupPlanner().plan(store.installed(), keep=[])
    failures = execute_plan(plan, store)

    assert failures == ()
    assert store.installed() == []
    assert list(tmp_path.iterdir()) == []


def test_package_store_ignores_interrupted_installs(tmp_path: Path) -> None:
    store = PackageStore(tmp_path)
    (tmp_path / "half-1.0.0").mkdir()
    (tmp_path / "half-1.0.0" / "half-1.0.0.jar").write_bytes(b"partial")
    runtime = _pkg("runtime", "2.0.0")
    _record(store, runtime)

    assert store.installed() == [runtime]
    assert store.artifact_path(runtime) == tmp_path / "runtime-2.0.0" / "runtime-2.0.0.jar"


@pytest.mark.parametrize("record", ['["not", "a", "record"]', "null", '"coupler"', "42"])
def test_package_store_ignores_records_that_are_not_objects(tmp_path: Path, record: str) -> None:
    store = PackageStore(tmp_path)
    broken = tmp_path / "coupler-1.0"
    broken.mkdir()
    (broken / "package.json").write_text(record, encoding="utf-8")
    runtime = _pkg("runtime", "2.0.0")
    _record(store, runtime)

    assert store.installed() == [runtime]
    assert store.artifact_path(_pkg("coupler", "1.0")) is None


def test_package_store_ignores_malformed_dependency_lists(tmp_path: Path) -> None:
    store = PackageStore(tmp_path)
    package_dir = tmp_path / "coupler-1.0"
    package_dir.mkdir()
    (package_dir / "package.json").write_text(
        '{"name": "coupler", "version": "1.0", "file": "coupler-1.0.jar", "dependencies": 7}',
        encoding="utf-8",
    )

    assert store.installed() == [_pkg("coupler", "1.0")]
