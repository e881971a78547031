"""
Manifest validator — raw YAML data in, immutable Manifest out.

All checks run in a single pass and every problem is collected, so an
author sees the whole list at once instead of fixing one error per run:

    1. schema shape and field types (unknown fields rejected)
    2. module id pattern and uniqueness
    3. derived procedure-name collisions
    4. dependency references exist
    5. no dependency cycles (each reported as its full chain)
    6. phase numbers within the declared bounds
    7. every verified installer resolves in the trust store

Any error means no Manifest is produced. Nothing downstream ever sees a
partially valid manifest.
"""

from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass, field
from typing import Any

from pydantic import ValidationError as PydanticValidationError

from flywheel.core.models.manifest import SUPPORTED_MANIFEST_VERSION, Manifest, Phase
from flywheel.core.models.module import MODULE_ID_PATTERN, Module
from flywheel.core.models.trust import TrustStore
from flywheel.core.services.step_lint import lint_module

logger = logging.getLogger(__name__)

_TOP_LEVEL_FIELDS = {"version", "name", "phases", "modules"}


@dataclass
class ValidationResult:
    """Result of manifest validation."""

    manifest: Manifest | None = None
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    @property
    def valid(self) -> bool:
        return self.manifest is not None and not self.errors

    def to_dict(self) -> dict:
        return {
            "valid": self.valid,
            "errors": self.errors,
            "warnings": self.warnings,
            "manifest_name": self.manifest.name if self.manifest else None,
            "module_count": len(self.manifest.modules) if self.manifest else 0,
        }


def validate_manifest(raw: Any, trust_store: TrustStore | None = None) -> ValidationResult:
    """Validate raw manifest data.

    Args:
        raw: Parsed YAML document (normally a dict).
        trust_store: Pinned installers. ``None`` is treated as empty,
            so any verified installer reference fails.

    Returns:
        ValidationResult with either a Manifest or a non-empty error list.
    """
    result = ValidationResult()
    errors = result.errors
    store = trust_store or TrustStore()

    if not isinstance(raw, dict):
        errors.append(f"Manifest must be a mapping, got {type(raw).__name__}")
        return result

    # ── Top level ────────────────────────────────────────────────
    unknown = sorted(set(raw) - _TOP_LEVEL_FIELDS)
    if unknown:
        errors.append(f"Unknown top-level field(s): {', '.join(unknown)}")

    version = raw.get("version")
    if version != SUPPORTED_MANIFEST_VERSION:
        errors.append(
            f"Unsupported manifest version: {version!r} "
            f"(expected {SUPPORTED_MANIFEST_VERSION})"
        )

    name = raw.get("name", "")
    if not isinstance(name, str):
        errors.append("Field 'name' must be a string")
        name = ""

    phases = _parse_phases(raw.get("phases", []), errors)

    raw_modules = raw.get("modules", [])
    if not isinstance(raw_modules, list):
        errors.append("Field 'modules' must be a list")
        raw_modules = []
    if not raw_modules:
        result.warnings.append("Manifest declares no modules")

    # ── Schema (per module) ──────────────────────────────────────
    modules: list[Module] = []
    declared_ids: set[str] = set()
    for idx, item in enumerate(raw_modules):
        label = _module_label(idx, item)
        if not isinstance(item, dict):
            errors.append(f"{label}: must be a mapping")
            continue
        if isinstance(item.get("id"), str):
            declared_ids.add(item["id"])
        try:
            modules.append(Module.model_validate(item))
        except PydanticValidationError as e:
            for err in e.errors():
                loc = ".".join(str(part) for part in err["loc"]) or "(module)"
                errors.append(f"{label}: {loc}: {err['msg']}")

    # ── Identity ─────────────────────────────────────────────────
    _check_ids(modules, errors)
    _check_procedure_names(modules, errors)

    # ── Graph ────────────────────────────────────────────────────
    _check_dependencies(modules, declared_ids, errors)
    graph = {m.id: [d for d in m.dependencies if d in declared_ids] for m in modules}
    for cycle in find_cycles(graph):
        errors.append(f"Dependency cycle: {' -> '.join(cycle)}")

    # ── Phases ───────────────────────────────────────────────────
    bounds = {p.number for p in phases} if phases else Manifest().phase_bounds()
    for module in modules:
        if module.phase not in bounds:
            errors.append(
                f"Module '{module.id}' phase {module.phase} outside declared phases "
                f"{sorted(bounds)}"
            )

    # ── Trust store ──────────────────────────────────────────────
    for module in modules:
        vi = module.verified_installer
        if vi is not None and vi.tool not in store:
            errors.append(
                f"Module '{module.id}' references verified installer '{vi.tool}' "
                "with no pinned checksum in the trust store"
            )

    # ── Warnings (never block) ───────────────────────────────────
    by_id = {m.id: m for m in modules}
    for module in modules:
        result.warnings.extend(lint_module(module))
        for dep in module.dependencies:
            upstream = by_id.get(dep)
            if upstream is not None and upstream.phase > module.phase:
                result.warnings.append(
                    f"Module '{module.id}' (phase {module.phase}) depends on "
                    f"'{dep}' (phase {upstream.phase})"
                )

    if errors:
        logger.debug("Manifest validation failed with %d error(s)", len(errors))
        return result

    result.manifest = Manifest(
        version=version,
        name=name,
        phases=tuple(phases),
        modules=tuple(modules),
    )
    logger.info("Validated manifest '%s' with %d modules", name, len(modules))
    return result


# ── Helpers ─────────────────────────────────────────────────────


def _module_label(idx: int, item: Any) -> str:
    if isinstance(item, dict) and isinstance(item.get("id"), str):
        return f"modules[{idx}] ({item['id']})"
    return f"modules[{idx}]"


def _parse_phases(raw_phases: Any, errors: list[str]) -> list[Phase]:
    if not isinstance(raw_phases, list):
        errors.append("Field 'phases' must be a list")
        return []

    phases: list[Phase] = []
    for idx, item in enumerate(raw_phases):
        try:
            phases.append(Phase.model_validate(item))
        except PydanticValidationError as e:
            for err in e.errors():
                loc = ".".join(str(part) for part in err["loc"]) or "(phase)"
                errors.append(f"phases[{idx}]: {loc}: {err['msg']}")

    numbers = [p.number for p in phases]
    dupes = sorted({n for n in numbers if numbers.count(n) > 1})
    if dupes:
        errors.append(f"Duplicate phase numbers: {', '.join(str(n) for n in dupes)}")
    return phases


def _check_ids(modules: list[Module], errors: list[str]) -> None:
    for module in modules:
        if not MODULE_ID_PATTERN.match(module.id):
            errors.append(
                f"Invalid module id '{module.id}': expected a dotted namespace "
                "like 'lang.bun'"
            )

    ids = [m.id for m in modules]
    dupes = sorted({i for i in ids if ids.count(i) > 1})
    if dupes:
        errors.append(f"Duplicate module ids: {', '.join(dupes)}")


def _check_procedure_names(modules: list[Module], errors: list[str]) -> None:
    owners: dict[str, set[str]] = {}
    for module in modules:
        owners.setdefault(module.procedure_name, set()).add(module.id)

    for proc, ids in sorted(owners.items()):
        if len(ids) > 1:
            errors.append(
                f"Procedure name collision: {', '.join(sorted(ids))} "
                f"all map to '{proc}'"
            )


def _check_dependencies(
    modules: list[Module], declared_ids: set[str], errors: list[str]
) -> None:
    for module in modules:
        for dep in module.dependencies:
            if dep not in declared_ids:
                errors.append(f"Module '{module.id}' depends on unknown module '{dep}'")


def find_cycles(graph: dict[str, list[str]]) -> list[list[str]]:
    """Find dependency cycles with an explicit-stack DFS.

    Each cycle is returned as its full chain, closing back on its first
    element (``["a", "b", "a"]``). Every node that sits on any cycle is
    named in at least one returned chain.

    Args:
        graph: node → list of nodes it depends on. Edges to nodes not in
            the graph are ignored.

    Returns:
        Distinct cycles, in discovery order.
    """
    white, gray, black = 0, 1, 2
    color = {node: white for node in graph}
    cycles: list[list[str]] = []
    seen: set[tuple[str, ...]] = set()

    def _record(chain: list[str]) -> None:
        key = _canonical(chain)
        if key not in seen:
            seen.add(key)
            cycles.append(chain + [chain[0]])

    for root in graph:
        if color[root] != white:
            continue
        color[root] = gray
        path = [root]
        stack = [iter(graph[root])]

        while stack:
            advanced = False
            for child in stack[-1]:
                if child not in color:
                    continue
                if color[child] == gray:
                    _record(path[path.index(child):])
                elif color[child] == white:
                    color[child] = gray
                    path.append(child)
                    stack.append(iter(graph[child]))
                    advanced = True
                    break
            if not advanced:
                color[path.pop()] = black
                stack.pop()

    # Back edges alone can miss nodes that reach a cycle through an
    # already-finished node; name those with their own shortest loop.
    named = {node for chain in cycles for node in chain}
    for node in graph:
        if node not in named:
            loop = _path_back_to(graph, node)
            if loop:
                _record(loop)
                named.update(loop)

    return cycles


def _canonical(chain: list[str]) -> tuple[str, ...]:
    """Rotation-independent key for a cycle."""
    pivot = chain.index(min(chain))
    return tuple(chain[pivot:] + chain[:pivot])


def _path_back_to(graph: dict[str, list[str]], start: str) -> list[str] | None:
    """Shortest chain start → ... → (edge back to start), or None."""
    parents: dict[str, str] = {}
    queue = deque([start])
    visited = {start}
    while queue:
        node = queue.popleft()
        for child in graph.get(node, []):
            if child == start:
                chain = [node]
                while chain[-1] != start:
                    chain.append(parents[chain[-1]])
                return list(reversed(chain))
            if child in graph and child not in visited:
                visited.add(child)
                parents[child] = node
                queue.append(child)
    return None
