"""Dependency-ordered removal of superseded packages."""

from __future__ import annotations

import logging
from typing import Callable, Hashable, Iterable, Mapping, Sequence, TypeVar

from services.update.errors import CleanupUnitFailed, UpdateError
from services.update.installers import Uninstaller
from services.update.models import CleanupPlan, PackageVersion
from services.update.versioning import satisfies, version_marker_key

_LOGGER = logging.getLogger(__name__)

N = TypeVar("N", bound=Hashable)

__all__ = [
    "CleanupPlanner",
    "build_dependency_graph",
    "execute_plan",
    "strongly_connected_components",
]


def strongly_connected_components(graph: Mapping[N, Iterable[N]]) -> list[list[N]]:
    """Tarjan's algorithm, iteratively.

    Components are returned dependencies-first: a component is emitted only
    after every component reachable from it.
    """

    index_of: dict[N, int] = {}
    lowlink: dict[N, int] = {}
    on_stack: set[N] = set()
    stack: list[N] = []
    components: list[list[N]] = []
    counter = 0

    def visit(node: N) -> None:
        nonlocal counter
        index_of[node] = lowlink[node] = counter
        counter += 1
        stack.append(node)
        on_stack.add(node)

    for root in graph:
        if root in index_of:
            continue
        visit(root)
        work = [(root, iter(graph.get(root, ())))]
        while work:
            node, successors = work[-1]
            descended = False
            for successor in successors:
                if successor not in index_of:
                    visit(successor)
                    work.append((successor, iter(graph.get(successor, ()))))
                    descended = True
                    break
                if successor in on_stack:
                    lowlink[node] = min(lowlink[node], index_of[successor])
            if descended:
                continue

            work.pop()
            if lowlink[node] == index_of[node]:
                component: list[N] = []
                while True:
                    member = stack.pop()
                    on_stack.discard(member)
                    component.append(member)
                    if member == node:
                        break
                components.append(component)
            if work:
                parent = work[-1][0]
                lowlink[parent] = min(lowlink[parent], lowlink[node])
    return components


def build_dependency_graph(
    roots: Iterable[PackageVersion],
    universe: Iterable[PackageVersion],
) -> dict[PackageVersion, list[PackageVersion]]:
    """Return edges ``A -> B`` (A depends on B) reachable from ``roots``.

    A dependency edge points at every package in ``universe`` whose name
    matches and whose version satisfies the constraint.
    """

    by_name: dict[str, list[PackageVersion]] = {}
    for package in sorted(set(universe), key=_package_sort_key):
        by_name.setdefault(package.name, []).append(package)

    graph: dict[PackageVersion, list[PackageVersion]] = {}
    pending = sorted(set(roots), key=_package_sort_key)
    while pending:
        package = pending.pop(0)
        if package in graph:
            continue
        targets: list[PackageVersion] = []
        for dep_name, constraint in sorted(package.dependencies):
            for candidate in by_name.get(dep_name, ()):
                if candidate != package and satisfies(candidate.version, constraint):
                    targets.append(candidate)
        graph[package] = targets
        pending.extend(target for target in targets if target not in graph)
    return graph


class CleanupPlanner:
    """Compute which installed packages may go, and in what order."""

    def plan(
        self,
        installed: Iterable[PackageVersion],
        keep: Iterable[PackageVersion],
    ) -> CleanupPlan:
        installed_set = set(installed)
        removable = installed_set - set(keep)
        if not removable:
            return CleanupPlan()

        graph = build_dependency_graph(removable, installed_set)
        units: list[tuple[PackageVersion, ...]] = []
        for component in reversed(strongly_connected_components(graph)):
            unit = tuple(sorted((p for p in component if p in removable), key=_package_sort_key))
            if unit:
                units.append(unit)

        plan = CleanupPlan(tuple(units))
        _LOGGER.debug(
            "Cleanup plan: %s",
            " -> ".join("{" + ", ".join(str(p) for p in unit) + "}" for unit in plan),
        )
        return plan


def execute_plan(
    plan: CleanupPlan,
    uninstaller: Uninstaller,
    report: Callable[[Sequence[PackageVersion]], None] | None = None,
) -> tuple[CleanupUnitFailed, ...]:
    """Remove each unit in order; failures are collected, never raised."""

    failures: list[CleanupUnitFailed] = []
    for unit in plan:
        if report is not None:
            report(unit)
        try:
            uninstaller.uninstall(unit)
        except CleanupUnitFailed as exc:
            failure = exc
        except (OSError, UpdateError) as exc:
            failure = CleanupUnitFailed(unit, exc)
        else:
            continue
        _LOGGER.warning("%s", failure)
        failures.append(failure)
    return tuple(failures)


def _package_sort_key(package: PackageVersion) -> tuple:
    return (package.name, version_marker_key(package.version))
