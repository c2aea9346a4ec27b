"""
Dependency graph resolution for import modules.

``resolve_order`` is a Kahn topological sort whose ready set is a heap keyed
by ``(priority, id)``, so independent modules come out in ascending priority
and then ascending id. A cycle is reported with its members in cycle order;
a partial order is never returned.
"""

from __future__ import annotations

import heapq
from collections import defaultdict
from dataclasses import dataclass
from typing import Iterable, Mapping, Protocol, Sequence

from ..contracts import ModuleDescriptor
from ..errors import CyclicDependencyError, DuplicateModuleError, UnresolvedDependencyError


class SatisfactionSource(Protocol):
    """Anything that can answer which modules hold a standing successful import."""

    def satisfied_modules(self, module_ids: Iterable[str]) -> set[str]: ...


def _index(descriptors: Iterable[ModuleDescriptor]) -> dict[str, ModuleDescriptor]:
    by_id: dict[str, ModuleDescriptor] = {}
    for descriptor in descriptors:
        if descriptor.id in by_id:
            raise DuplicateModuleError(descriptor.id)
        by_id[descriptor.id] = descriptor
    return by_id


def find_unresolved(descriptors: Mapping[str, ModuleDescriptor]) -> dict[str, tuple[str, ...]]:
    unresolved: dict[str, tuple[str, ...]] = {}
    for descriptor in descriptors.values():
        missing = tuple(dep for dep in descriptor.dependencies if dep not in descriptors)
        if missing:
            unresolved[descriptor.id] = missing
    return unresolved


def _find_cycle(remaining: Mapping[str, ModuleDescriptor]) -> list[str]:
    # Every remaining node still waits on at least one remaining dependency,
    # so following those edges must revisit a node.
    start = min(remaining)
    path: list[str] = []
    position: dict[str, int] = {}
    current = start
    while current not in position:
        position[current] = len(path)
        path.append(current)
        current = min(dep for dep in remaining[current].dependencies if dep in remaining)
    return path[position[current] :]


def resolve_order(descriptors: Iterable[ModuleDescriptor]) -> tuple[ModuleDescriptor, ...]:
    """
    Return descriptors ordered so every dependency precedes its dependents.

    Raises:
        DuplicateModuleError: two descriptors share an id.
        UnresolvedDependencyError: a dependency id is not in the set.
        CyclicDependencyError: the dependency graph is not acyclic.
    """

    by_id = _index(descriptors)
    unresolved = find_unresolved(by_id)
    if unresolved:
        raise UnresolvedDependencyError(unresolved)

    indegree: dict[str, int] = {}
    dependents: dict[str, list[str]] = defaultdict(list)
    for descriptor in by_id.values():
        unique_deps = set(descriptor.dependencies)
        indegree[descriptor.id] = len(unique_deps)
        for dep in unique_deps:
            dependents[dep].append(descriptor.id)

    ready = [(descriptor.priority, descriptor.id) for descriptor in by_id.values() if indegree[descriptor.id] == 0]
    heapq.heapify(ready)

    ordered: list[ModuleDescriptor] = []
    while ready:
        _, module_id = heapq.heappop(ready)
        ordered.append(by_id[module_id])
        for dependent_id in dependents[module_id]:
            indegree[dependent_id] -= 1
            if indegree[dependent_id] == 0:
                heapq.heappush(ready, (by_id[dependent_id].priority, dependent_id))

    if len(ordered) != len(by_id):
        done = {descriptor.id for descriptor in ordered}
        remaining = {module_id: descriptor for module_id, descriptor in by_id.items() if module_id not in done}
        raise CyclicDependencyError(_find_cycle(remaining))
    return tuple(ordered)


def transitive_dependents(
    module_id: str,
    descriptors: Iterable[ModuleDescriptor],
) -> set[str]:
    """Return ids of every module that depends on ``module_id`` directly or indirectly."""

    reverse: dict[str, set[str]] = defaultdict(set)
    for descriptor in descriptors:
        for dep in descriptor.dependencies:
            reverse[dep].add(descriptor.id)

    found: set[str] = set()
    worklist = [module_id]
    while worklist:
        current = worklist.pop()
        for dependent_id in reverse.get(current, ()):
            if dependent_id not in found:
                found.add(dependent_id)
                worklist.append(dependent_id)
    found.discard(module_id)
    return found


def missing_dependencies(descriptor: ModuleDescriptor, ledger: SatisfactionSource) -> tuple[str, ...]:
    if not descriptor.dependencies:
        return ()
    satisfied = ledger.satisfied_modules(descriptor.dependencies)
    return tuple(dep for dep in descriptor.dependencies if dep not in satisfied)


def is_satisfied(descriptor: ModuleDescriptor, ledger: SatisfactionSource) -> bool:
    """True when every dependency holds a completed, non-dry-run, not rolled back import."""

    return not missing_dependencies(descriptor, ledger)


@dataclass(slots=True)
class PlanEntry:
    """One module's place in the import order with its readiness."""

    position: int
    descriptor: ModuleDescriptor
    missing_dependencies: tuple[str, ...]
    imported: bool

    @property
    def can_import(self) -> bool:
        return not self.missing_dependencies

    def as_dict(self) -> dict:
        payload = self.descriptor.as_dict()
        payload.update(
            {
                "position": self.position,
                "missing_dependencies": list(self.missing_dependencies),
                "can_import": self.can_import,
                "imported": self.imported,
            }
        )
        return payload


def build_import_plan(
    ordered: Sequence[ModuleDescriptor],
    ledger: SatisfactionSource,
) -> list[PlanEntry]:
    satisfied = ledger.satisfied_modules([descriptor.id for descriptor in ordered])
    plan: list[PlanEntry] = []
    for position, descriptor in enumerate(ordered, start=1):
        missing = tuple(dep for dep in descriptor.dependencies if dep not in satisfied)
        plan.append(
            PlanEntry(
                position=position,
                descriptor=descriptor,
                missing_dependencies=missing,
                imported=descriptor.id in satisfied,
            )
        )
    return plan
