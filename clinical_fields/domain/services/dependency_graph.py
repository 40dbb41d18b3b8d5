"""Dependency Graph Resolver.

Orders calculated field definitions so that each one is evaluated after every
calculated field it references. Cycles never raise: their members, and every
field that can only be reached through them, are reported as excluded and
left unresolved.

Ordering is deterministic. Among fields that are ready at the same time the one
with the lowest ``(display_order, field_name)`` goes first.
"""

import heapq
import logging
from dataclasses import dataclass
from typing import Dict, Iterable, List, Sequence, Set, Tuple

from clinical_fields.domain.formula import parse_formula
from clinical_fields.domain.models import MEASURE_PREFIX, FieldDefinition

logger = logging.getLogger(__name__)


def _sort_key(definition: FieldDefinition) -> Tuple[int, str]:
    return (definition.display_order, definition.field_name)


@dataclass(frozen=True)
class ResolutionOrder:
    """Evaluation order of calculated fields.

    Attributes:
        ordered: Definitions in a safe evaluation order
        excluded: Definitions left unresolved because of a cycle
    """

    ordered: Tuple[FieldDefinition, ...]
    excluded: Tuple[FieldDefinition, ...]

    @property
    def ordered_names(self) -> List[str]:
        return [d.field_name for d in self.ordered]

    @property
    def excluded_names(self) -> List[str]:
        return [d.field_name for d in self.excluded]

    @property
    def has_cycles(self) -> bool:
        return bool(self.excluded)


def _calculated_by_name(definitions: Iterable[FieldDefinition]) -> Dict[str, FieldDefinition]:
    return {d.field_name: d for d in definitions if d.is_calculated}


def resolve_order(definitions: Iterable[FieldDefinition]) -> ResolutionOrder:
    """Topologically order the calculated definitions of a set.

    Plain definitions are ignored: they have no formula to evaluate and their
    stored values are simply read.

    Parameters:
        definitions: Definitions to order (plain ones are skipped)

    Returns:
        ResolutionOrder with the ordered and the excluded definitions
    """
    calculated = _calculated_by_name(definitions)

    prerequisites: Dict[str, Set[str]] = {}
    dependents: Dict[str, Set[str]] = {name: set() for name in calculated}
    for name, definition in calculated.items():
        prerequisites[name] = {ref for ref in definition.references if ref in calculated}
        for ref in prerequisites[name]:
            dependents[ref].add(name)

    remaining = {name: len(refs) for name, refs in prerequisites.items()}
    ready = [(_sort_key(calculated[name]), name) for name, count in remaining.items() if count == 0]
    heapq.heapify(ready)

    ordered: List[FieldDefinition] = []
    while ready:
        _, name = heapq.heappop(ready)
        ordered.append(calculated[name])
        for dependent in dependents[name]:
            remaining[dependent] -= 1
            if remaining[dependent] == 0:
                heapq.heappush(ready, (_sort_key(calculated[dependent]), dependent))

    placed = {d.field_name for d in ordered}
    excluded = sorted((d for n, d in calculated.items() if n not in placed), key=_sort_key)
    if excluded:
        logger.warning(
            f"Circular dependencies left {len(excluded)} calculated field(s) unresolved: "
            f"{[d.field_name for d in excluded]}"
        )
    return ResolutionOrder(ordered=tuple(ordered), excluded=tuple(excluded))


def dependents_of(changed_names: Iterable[str], definitions: Iterable[FieldDefinition]) -> List[FieldDefinition]:
    """Return every calculated definition that transitively references a changed name.

    Parameters:
        changed_names: Field names (or ``measure:<name>`` keys) whose value changed
        definitions: Candidate definitions

    Returns:
        Affected calculated definitions, sorted by display order
    """
    calculated = _calculated_by_name(definitions)
    affected: Dict[str, FieldDefinition] = {}
    frontier = set(changed_names)
    while frontier:
        next_frontier: Set[str] = set()
        for name, definition in calculated.items():
            if name in affected:
                continue
            if any(ref in frontier for ref in definition.references):
                affected[name] = definition
                next_frontier.add(name)
        frontier = next_frontier
    return sorted(affected.values(), key=_sort_key)


def _with_dependents(seed_names: Set[str], definitions: Sequence[FieldDefinition]) -> Set[str]:
    if not seed_names:
        return set()
    ids = {d.id for d in definitions if d.field_name in seed_names}
    ids.update(d.id for d in dependents_of(seed_names, definitions))
    return ids


def volatile_definition_ids(definitions: Sequence[FieldDefinition]) -> Set[str]:
    """Ids of calculated definitions whose value depends on the current date.

    A definition is volatile when its own formula uses a volatile function or
    when it references a volatile definition.
    """
    return _with_dependents(
        {d.field_name for d in definitions if d.is_calculated and parse_formula(d.formula).is_volatile},
        definitions
    )


def measure_dependent_ids(definitions: Sequence[FieldDefinition]) -> Set[str]:
    """Ids of calculated definitions that read a measure, directly or through another field."""
    return _with_dependents(
        {
            d.field_name for d in definitions
            if d.is_calculated and any(ref.startswith(MEASURE_PREFIX) for ref in d.references)
        },
        definitions
    )


def detect_circular_dependencies(
    field_name: str,
    dependencies: Iterable[str],
    all_fields: Iterable[FieldDefinition]
) -> Tuple[bool, List[str]]:
    """Check whether giving a field these dependencies would close a cycle.

    Parameters:
        field_name: Field being created or edited
        dependencies: Its proposed references
        all_fields: Existing definitions

    Returns:
        ``(has_circular, cycle)`` where ``cycle`` is the path from ``field_name``
        back to itself, empty when there is none
    """
    graph: Dict[str, List[str]] = {
        d.field_name: list(d.references) for d in all_fields if d.is_calculated
    }
    graph[field_name] = list(dependencies)

    visited: Set[str] = set()

    def visit(node: str, path: List[str]) -> List[str]:
        for dep in graph.get(node, []):
            if dep == field_name:
                return path + [dep]
            if dep in visited:
                continue
            visited.add(dep)
            found = visit(dep, path + [dep])
            if found:
                return found
        return []

    cycle = visit(field_name, [field_name])
    return bool(cycle), cycle
