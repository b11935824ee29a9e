from __future__ import annotations

import heapq
import logging
from collections.abc import Mapping, Sequence
from dataclasses import dataclass

from ..errors import DependencyCycleError
from ..models.mapping import MappingDefinition
from ..models.relation import RelationKind
from .relation_types import DescriptorRegistry, ModelRegistry

"""Dependency ordering of entity types.

Edges run parent -> child for every owned-single ("belongs to") relation the
child declares towards another entity type of the set. The order is a
topological sort (Kahn's algorithm); ties are broken by declaration order so
the same input always yields the same order. Cycles are reported, never
broken: the error carries exactly the entity types that lie on a cycle.
"""

__all__ = [
    "DependencyEdge",
    "OrderViolation",
    "DependencyGraphBuilder",
    "validate_mapping_dependencies",
]

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DependencyEdge:
    parent: type
    child: type
    relation: str


@dataclass(frozen=True)
class OrderViolation:
    edge: DependencyEdge
    parent_order: int
    child_order: int

    @property
    def message(self) -> str:
        return (
            f"Model {self.edge.child.__name__} (order: {self.child_order}) depends on "
            f"{self.edge.parent.__name__} (order: {self.parent_order}). "
            "Dependencies must have lower execution_order."
        )


class DependencyGraphBuilder:
    """Builds parent -> child edges from owned-single relations and orders them.

    Parameters
    ----------
    registry: descriptor cache used to read each type's relations
    required_only: only count relations whose foreign key is NOT NULL
    """

    def __init__(self, registry: DescriptorRegistry | None = None, *, required_only: bool = False) -> None:
        self.registry = registry or DescriptorRegistry()
        self.required_only = required_only

    def edges(self, entity_types: Sequence[type]) -> list[DependencyEdge]:
        members = set(entity_types)
        result: list[DependencyEdge] = []
        for child in _unique(entity_types):
            descriptor = self.registry.describe(child)
            for rel in descriptor.relations.values():
                if rel.kind is not RelationKind.OWNED_SINGLE:
                    continue
                if self.required_only and not rel.required:
                    continue
                if rel.target not in members:
                    continue
                if rel.target is child:
                    # self-reference (tree structures); not an ordering constraint
                    logger.debug("ignoring self-referencing relation %s", rel.qualified_name)
                    continue
                result.append(DependencyEdge(parent=rel.target, child=child, relation=rel.name))
        return result

    def build_order(self, entity_types: Sequence[type]) -> list[type]:
        """Return ``entity_types`` ordered so that every parent precedes its children.

        Raises
        ------
        DependencyCycleError: some types cannot be ordered; ``members`` lists
            exactly the types lying on a cycle, in declaration order.
        """
        nodes = _unique(entity_types)
        position = {node: i for i, node in enumerate(nodes)}
        successors: dict[type, list[type]] = {n: [] for n in nodes}
        in_degree: dict[type, int] = {n: 0 for n in nodes}
        for edge in self.edges(nodes):
            successors[edge.parent].append(edge.child)
            in_degree[edge.child] += 1

        ready = [position[n] for n in nodes if in_degree[n] == 0]
        heapq.heapify(ready)
        order: list[type] = []
        while ready:
            node = nodes[heapq.heappop(ready)]
            order.append(node)
            for child in successors[node]:
                in_degree[child] -= 1
                if in_degree[child] == 0:
                    heapq.heappush(ready, position[child])

        if len(order) < len(nodes):
            remaining = [n for n in nodes if n not in set(order)]
            members = _cycle_members(remaining, successors)
            raise DependencyCycleError([m.__name__ for m in members])
        return order

    def validate_order(self, order: Sequence[type] | Mapping[type, int]) -> list[OrderViolation]:
        """Check a caller-supplied order against the same edge set.

        ``order`` is either a sequence (position is the order) or a mapping of
        type -> order number. Returns one violation per edge whose parent does
        not come strictly before its child.
        """
        if isinstance(order, Mapping):
            ranks = dict(order)
        else:
            ranks = {t: i + 1 for i, t in enumerate(order)}
        violations: list[OrderViolation] = []
        for edge in self.edges(list(ranks)):
            p, c = ranks[edge.parent], ranks[edge.child]
            if p >= c:
                violations.append(OrderViolation(edge=edge, parent_order=p, child_order=c))
        return violations


def _unique(types: Sequence[type]) -> list[type]:
    seen: list[type] = []
    for t in types:
        if t not in seen:
            seen.append(t)
    return seen


def _reachable(start: type, successors: Mapping[type, list[type]], allowed: set[type]) -> set[type]:
    seen: set[type] = set()
    stack = [s for s in successors[start] if s in allowed]
    while stack:
        node = stack.pop()
        if node in seen:
            continue
        seen.add(node)
        stack.extend(s for s in successors[node] if s in allowed)
    return seen


def _cycle_members(remaining: list[type], successors: Mapping[type, list[type]]) -> list[type]:
    # Kahn leaves behind cycle members plus anything downstream of a cycle;
    # keep only the nodes that can reach themselves.
    allowed = set(remaining)
    return [n for n in remaining if n in _reachable(n, successors, allowed)]


def validate_mapping_dependencies(
    definition: MappingDefinition,
    models: ModelRegistry,
    registry: DescriptorRegistry | None = None,
) -> list[str]:
    """Report ordering problems in a mapping document as human readable messages.

    Checks duplicated ``execution_order`` values, required-parent relations
    mapped with a higher order than their child, and ``pivot_sync`` mappings
    whose owner or related type is mapped after them.
    """
    registry = registry or DescriptorRegistry()
    problems: list[str] = []

    by_order: dict[int, list[str]] = {}
    for m in definition.mappings:
        by_order.setdefault(m.execution_order, []).append(m.label)
    for order, labels in sorted(by_order.items()):
        if len(labels) > 1:
            problems.append(f"Multiple mappings have execution_order {order}: {', '.join(labels)}")

    ranks: dict[type, int] = {}
    for m in definition.mappings:
        if m.is_association_sync:
            continue
        model = models.get(m.model)
        ranks[model] = min(ranks.get(model, m.execution_order), m.execution_order)

    builder = DependencyGraphBuilder(registry, required_only=True)
    problems.extend(v.message for v in builder.validate_order(ranks))

    for m in definition.mappings:
        if not m.is_association_sync or not m.relation_path or "." not in m.relation_path:
            continue
        owner_name, relation_name = m.relation_path.split(".", 1)
        owner = models.get(owner_name)
        rel = registry.describe(owner).relation(relation_name)
        if rel is None or rel.kind is not RelationKind.MANY_TO_MANY:
            problems.append(
                f"Pivot mapping '{m.relation_path}' does not name a many-to-many relation"
            )
            continue
        for side in (owner, rel.target):
            side_order = ranks.get(side)
            if side_order is not None and side_order > m.execution_order:
                problems.append(
                    f"Pivot mapping '{m.relation_path}' (order: {m.execution_order}) runs before "
                    f"{side.__name__} (order: {side_order})"
                )
    return problems
