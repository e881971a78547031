"""
Planner — order compiled units and apply the run's selection.

Ordering is Kahn's algorithm over the dependency graph. Among units
that are ready at the same time, the lowest phase goes first, then
manifest order, so the plan reads phase by phase wherever the graph
allows it.

Selection never reorders anything. It only marks entries as selected
or not, and records why an entry was excluded:

    filter   left out by --only / --only-phase (assumed handled elsewhere)
    skip     named by --skip (dependents treat it as unresolved)
"""

from __future__ import annotations

import heapq
from dataclasses import dataclass, field

from flywheel.core.engine.generator import CompiledManifest, ExecutableUnit
from flywheel.core.models.module import Module

EXCLUDED_BY_FILTER = "filter"
EXCLUDED_BY_SKIP = "skip"


def _split_csv(value: str | None) -> list[str]:
    if not value:
        return []
    return [part.strip() for part in value.split(",") if part.strip()]


@dataclass(frozen=True)
class SelectionCriteria:
    """Immutable filters for one run.

    ``only_modules`` and ``only_phases`` together select the union of
    both; an empty pair selects everything. ``skip_modules`` is applied
    last and always wins.
    """

    only_modules: frozenset[str] = frozenset()
    only_phases: frozenset[int] = frozenset()
    skip_modules: frozenset[str] = frozenset()

    @classmethod
    def from_options(
        cls,
        only: str | None = None,
        only_phase: str | None = None,
        skip: str | None = None,
    ) -> SelectionCriteria:
        """Parse comma-separated CLI values.

        Raises:
            ValueError: If a phase is not an integer.
        """
        phases: set[int] = set()
        for part in _split_csv(only_phase):
            try:
                phases.add(int(part))
            except ValueError:
                raise ValueError(f"Invalid phase number: {part!r}") from None
        return cls(
            only_modules=frozenset(_split_csv(only)),
            only_phases=frozenset(phases),
            skip_modules=frozenset(_split_csv(skip)),
        )

    def exclusion(self, module: Module) -> str | None:
        """Why ``module`` is excluded, or None when it is selected."""
        if module.id in self.skip_modules:
            return EXCLUDED_BY_SKIP
        if self.only_modules or self.only_phases:
            if module.id not in self.only_modules and module.phase not in self.only_phases:
                return EXCLUDED_BY_FILTER
        return None

    def unknown_ids(self, known: set[str]) -> list[str]:
        """Ids named in --only / --skip that the manifest does not declare."""
        return sorted((self.only_modules | self.skip_modules) - known)


@dataclass(frozen=True)
class PlanEntry:
    unit: ExecutableUnit
    excluded_by: str | None = None

    @property
    def selected(self) -> bool:
        return self.excluded_by is None


@dataclass
class ExecutionPlan:
    """Ordered entries for one run. Built fresh each run, never mutated."""

    entries: list[PlanEntry] = field(default_factory=list)
    criteria: SelectionCriteria = field(default_factory=SelectionCriteria)
    omitted: list[str] = field(default_factory=list)

    @property
    def order(self) -> list[str]:
        return [e.unit.id for e in self.entries]

    @property
    def selected(self) -> list[PlanEntry]:
        return [e for e in self.entries if e.selected]

    def entry(self, module_id: str) -> PlanEntry | None:
        for e in self.entries:
            if e.unit.id == module_id:
                return e
        return None

    def phase_batches(self) -> list[list[PlanEntry]]:
        """Consecutive runs of entries sharing a phase, in plan order."""
        batches: list[list[PlanEntry]] = []
        for e in self.entries:
            if batches and batches[-1][0].unit.module.phase == e.unit.module.phase:
                batches[-1].append(e)
            else:
                batches.append([e])
        return batches

    def to_dict(self) -> dict:
        return {
            "order": self.order,
            "selected": [e.unit.id for e in self.selected],
            "excluded": {e.unit.id: e.excluded_by for e in self.entries if not e.selected},
            "omitted": self.omitted,
        }


def topological_order(units: list[ExecutableUnit]) -> list[ExecutableUnit]:
    """Dependencies before dependents; ties by (phase, manifest index).

    Edges to modules that are not in ``units`` (omitted ones) are
    ignored.

    Raises:
        ValueError: On a cycle. Validated manifests never have one.
    """
    index = {u.id: i for i, u in enumerate(units)}
    in_degree = {u.id: 0 for u in units}
    dependents: dict[str, list[str]] = {u.id: [] for u in units}
    for unit in units:
        for dep in unit.module.dependencies:
            if dep in index:
                in_degree[unit.id] += 1
                dependents[dep].append(unit.id)

    heap = [(u.module.phase, index[u.id], u.id) for u in units if in_degree[u.id] == 0]
    heapq.heapify(heap)

    ordered: list[ExecutableUnit] = []
    while heap:
        _, idx, _ = heapq.heappop(heap)
        unit = units[idx]
        ordered.append(unit)
        for child in dependents[unit.id]:
            in_degree[child] -= 1
            if in_degree[child] == 0:
                child_unit = units[index[child]]
                heapq.heappush(heap, (child_unit.module.phase, index[child], child))

    if len(ordered) < len(units):
        stuck = sorted(uid for uid, deg in in_degree.items() if deg > 0)
        raise ValueError(f"Dependency cycle among: {', '.join(stuck)}")
    return ordered


def build_plan(compiled: CompiledManifest, criteria: SelectionCriteria) -> ExecutionPlan:
    """Order every unit and mark which ones this run selects."""
    entries = [
        PlanEntry(unit=unit, excluded_by=criteria.exclusion(unit.module))
        for unit in topological_order(compiled.units)
    ]
    return ExecutionPlan(entries=entries, criteria=criteria, omitted=list(compiled.omitted))


def get_ready_entries(
    entries: list[PlanEntry],
    completed: set[str],
    running: set[str],
) -> list[PlanEntry]:
    """Entries whose in-batch dependencies are all completed.

    Dependencies outside ``entries`` are assumed settled by earlier
    batches.
    """
    in_batch = {e.unit.id for e in entries}
    done_or_running = completed | running
    ready: list[PlanEntry] = []
    for e in entries:
        if e.unit.id in done_or_running:
            continue
        deps = [d for d in e.unit.module.dependencies if d in in_batch]
        if all(d in completed for d in deps):
            ready.append(e)
    return ready
