from __future__ import annotations

import logging
from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from typing import Any

from sqlalchemy import and_, delete, event, insert, select, update
from sqlalchemy.orm import Session

from ..errors import MappingStructureError, RelationResolutionError
from ..models.flow_run import TruncationRecord
from ..models.mapping import AssociationStrategy, ColumnMapping, EntityMapping
from ..models.relation import RelationDescriptor, RelationKind
from ..models.row import Row
from ..transforms.text import snake_case
from .path_parser import parse_target_path
from .relation_resolver import RelationResolver
from .relation_types import DescriptorRegistry, ModelRegistry
from .row_values import RowValues

"""Many-to-many association synchronization.

``reconcile`` works directly on the association table with Core statements,
so association-level attributes (a pivot "role" or "position") are written
alongside the keys and the ORM collection is simply expired afterwards.

``sync`` handles ``pivot_sync`` mappings (relation_path ``Model.relation``).
Column targets are classified by their first segment:

- owner side: the owner model name (``book``), ``owner`` or ``parent``
- related side: the relation name (``tags``), its singular (``tag``), the
  related model name, or ``related``
- association attributes: ``pivot.<attr>`` or ``pivot_<attr>``; a blank value is
  written as null unless the attribute is marked optional (``pivot.?<attr>``)

The owner is only ever looked up. The related entity may be created when
the related column asks for it (``tag.name+`` or ``create_if_missing``).
"""

__all__ = [
    "PivotItem",
    "PivotSyncResult",
    "PivotSyncEngine",
]

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PivotItem:
    target: Any
    attributes: dict[str, Any]


@dataclass(frozen=True)
class PivotSyncResult:
    attached: int = 0
    updated: int = 0
    detached: int = 0

    @property
    def changed(self) -> bool:
        return bool(self.attached or self.updated or self.detached)


@dataclass(frozen=True)
class _SidePlan:
    column: ColumnMapping
    attribute: str
    create_if_missing: bool


@dataclass(frozen=True)
class _PivotPlan:
    owner_type: type
    relation: RelationDescriptor
    owner_lookup: _SidePlan
    related_lookup: _SidePlan
    related_attributes: tuple[tuple[ColumnMapping, str], ...]
    pivot_columns: tuple[tuple[ColumnMapping, str, bool], ...]  # (column, attribute, optional)


def _singular(name: str) -> str:
    if name.endswith("ies") and len(name) > 3:
        return name[:-3] + "y"
    if name.endswith("s") and not name.endswith("ss"):
        return name[:-1]
    return name


def _is_blank(value: Any) -> bool:
    return value is None or (isinstance(value, str) and value.strip() == "")


class PivotSyncEngine:
    def __init__(
        self,
        session: Session,
        models: ModelRegistry,
        *,
        registry: DescriptorRegistry | None = None,
        resolver: RelationResolver | None = None,
        values: RowValues | None = None,
        truncate_long_fields: bool = True,
    ) -> None:
        self.session = session
        self.models = models
        self.registry = registry or DescriptorRegistry()
        self.resolver = resolver or RelationResolver(session, self.registry)
        self.values = values or RowValues()
        self.truncate_long_fields = truncate_long_fields
        self._plans: dict[int, _PivotPlan] = {}
        # (relation, owner key) -> {target key: PivotItem}; accumulated for the ``sync`` strategy
        self._desired: dict[tuple[str, tuple], dict[tuple, PivotItem]] = {}
        # same shape, for rows not committed yet
        self._pending: dict[tuple[str, tuple], dict[tuple, PivotItem]] = {}
        event.listen(session, "after_commit", self.commit_row)
        event.listen(session, "after_rollback", self.discard_row)

    def commit_row(self, session: Session | None = None) -> None:
        """Keep the association sets of the committed rows."""
        self._desired.update(self._pending)
        self._pending.clear()

    def discard_row(self, session: Session | None = None) -> None:
        """Forget what rolled-back rows asked for."""
        if self._pending:
            logger.debug("discarding %d pending association set(s)", len(self._pending))
        self._pending.clear()

    # association table primitives

    def _owner_clause(self, relation: RelationDescriptor, owner: Any):
        table = relation.association_table
        return and_(*(table.c[assoc] == getattr(owner, attr) for attr, assoc in relation.owner_key_pairs))

    @staticmethod
    def _target_key(relation: RelationDescriptor, target: Any) -> tuple:
        return tuple(getattr(target, attr) for attr, _ in relation.target_key_pairs)

    def reconcile(
        self,
        owner: Any,
        relation: RelationDescriptor,
        items: Sequence[PivotItem],
        strategy: AssociationStrategy = AssociationStrategy.SYNC,
    ) -> PivotSyncResult:
        """Bring the owner's association rows in line with ``items``.

        sync: attach missing, update changed attributes, detach the rest.
        attach: attach missing and update changed attributes only.
        detach: remove the listed associations.
        """
        if relation.kind is not RelationKind.MANY_TO_MANY or relation.association_table is None:
            raise MappingStructureError(f"{relation.qualified_name} is not a many-to-many relation")
        self.session.flush()
        table = relation.association_table
        target_cols = [assoc for _, assoc in relation.target_key_pairs]
        existing: dict[tuple, dict[str, Any]] = {}
        for row in self.session.execute(select(table).where(self._owner_clause(relation, owner))).mappings():
            existing[tuple(row[c] for c in target_cols)] = dict(row)

        wanted: dict[tuple, PivotItem] = {}
        for item in items:
            wanted[self._target_key(relation, item.target)] = item

        attached = updated = detached = 0
        if strategy is AssociationStrategy.DETACH:
            for key in wanted:
                if key in existing:
                    self._delete(relation, owner, key)
                    detached += 1
        else:
            for key, item in wanted.items():
                current = existing.get(key)
                if current is None:
                    values = {assoc: getattr(owner, attr) for attr, assoc in relation.owner_key_pairs}
                    values.update(dict(zip(target_cols, key)))
                    values.update(item.attributes)
                    self.session.execute(insert(table).values(**values))
                    attached += 1
                elif any(current.get(k) != v for k, v in item.attributes.items()):
                    self.session.execute(
                        update(table)
                        .where(self._owner_clause(relation, owner))
                        .where(and_(*(table.c[c] == v for c, v in zip(target_cols, key))))
                        .values(**item.attributes)
                    )
                    updated += 1
            if strategy is AssociationStrategy.SYNC:
                for key in existing:
                    if key not in wanted:
                        self._delete(relation, owner, key)
                        detached += 1

        self.session.expire(owner, [relation.name])
        result = PivotSyncResult(attached=attached, updated=updated, detached=detached)
        if result.changed:
            logger.debug(
                "%s: attached=%d updated=%d detached=%d",
                relation.qualified_name,
                attached,
                updated,
                detached,
            )
        return result

    def _delete(self, relation: RelationDescriptor, owner: Any, key: tuple) -> None:
        table = relation.association_table
        target_cols = [assoc for _, assoc in relation.target_key_pairs]
        self.session.execute(
            delete(table)
            .where(self._owner_clause(relation, owner))
            .where(and_(*(table.c[c] == v for c, v in zip(target_cols, key))))
        )

    def assign(
        self,
        owner: Any,
        relation: RelationDescriptor,
        items: Sequence[PivotItem],
        strategy: AssociationStrategy = AssociationStrategy.SYNC,
    ) -> PivotSyncResult:
        """Reconcile, accumulating the desired set per owner for the ``sync`` strategy.

        Rows that mention the same owner add to its association set instead
        of replacing each other; anything not mentioned by any committed row
        of this engine's lifetime (or the current one) is detached. A row
        that rolls back contributes nothing to later rows.
        """
        if strategy is not AssociationStrategy.SYNC:
            return self.reconcile(owner, relation, items, strategy)
        self.session.flush()
        owner_key = tuple(getattr(owner, attr) for attr, _ in relation.owner_key_pairs)
        slot = (relation.qualified_name, owner_key)
        desired = dict(self._pending.get(slot) or self._desired.get(slot, {}))
        for item in items:
            desired[self._target_key(relation, item.target)] = item
        result = self.reconcile(owner, relation, list(desired.values()), strategy)
        self._pending[slot] = desired
        return result

    # pivot_sync mappings

    def plan(self, mapping: EntityMapping) -> _PivotPlan:
        plan = self._plans.get(id(mapping))
        if plan is None:
            plan = self._compile(mapping)
            self._plans[id(mapping)] = plan
        return plan

    def _compile(self, mapping: EntityMapping) -> _PivotPlan:
        path = mapping.relation_path or ""
        if "." not in path:
            raise MappingStructureError(f"pivot_sync mapping needs relation_path 'Model.relation', got '{path}'")
        owner_name, relation_name = path.rsplit(".", 1)
        owner_type = self.models.get(owner_name)
        relation = self.registry.describe(owner_type).relation(relation_name)
        if relation is None or relation.kind is not RelationKind.MANY_TO_MANY:
            raise MappingStructureError(f"'{path}' is not a many-to-many relation")

        owner_prefixes = {
            snake_case(owner_type.__name__),
            owner_type.__name__.lower(),
            "owner",
            "parent",
        }
        related_prefixes = {
            relation.name.lower(),
            _singular(relation.name.lower()),
            snake_case(relation.target_name),
            relation.target_name.lower(),
            "related",
        }

        owner_lookup: _SidePlan | None = None
        related_lookup: _SidePlan | None = None
        related_attrs: list[tuple[ColumnMapping, str]] = []
        pivot_cols: list[tuple[ColumnMapping, str, bool]] = []
        for column in mapping.columns:
            target = parse_target_path(column.target)
            if not target.is_nested:
                name = target.attribute
                if name.startswith("pivot_"):
                    pivot_cols.append((column, name[len("pivot_"):], target.attribute_segment.is_optional))
                else:
                    logger.warning("%s: column '%s' ignored (no owner/related/pivot prefix)", path, column.target)
                continue
            head = target.relations[0]
            prefix = head.name.lower()
            lookup = column.relation_lookup
            create = head.create_if_missing or bool(lookup and lookup.create_if_missing)
            field = lookup.field if lookup else target.attribute
            if prefix == "pivot" or head.pivot:
                pivot_cols.append((column, target.attribute, target.attribute_segment.is_optional))
            elif prefix in owner_prefixes:
                if owner_lookup is None:
                    owner_lookup = _SidePlan(column, field, False)
            elif prefix in related_prefixes:
                if related_lookup is None:
                    related_lookup = _SidePlan(column, field, create)
                else:
                    related_attrs.append((column, target.attribute))
            else:
                logger.warning("%s: column '%s' ignored (unknown prefix '%s')", path, column.target, head.name)

        if owner_lookup is None or related_lookup is None:
            raise MappingStructureError(
                f"pivot_sync mapping '{path}' needs one owner column and one related column"
            )
        allowed = set(relation.association_attributes)
        kept_pivot: list[tuple[ColumnMapping, str, bool]] = []
        for column, attr, optional in pivot_cols:
            if attr in allowed:
                kept_pivot.append((column, attr, optional))
            else:
                logger.warning(
                    "%s: '%s' is not a column of association table %s; ignored",
                    path,
                    attr,
                    relation.association_table_name,
                )
        return _PivotPlan(
            owner_type=owner_type,
            relation=relation,
            owner_lookup=owner_lookup,
            related_lookup=related_lookup,
            related_attributes=tuple(related_attrs),
            pivot_columns=tuple(kept_pivot),
        )

    def _find_owner(self, plan: _PivotPlan, value: Any) -> Any:
        descriptor = self.registry.describe(plan.owner_type)
        attr = descriptor.match_attribute(plan.owner_lookup.attribute)
        if attr is None:
            raise MappingStructureError(
                f"Unknown attribute '{plan.owner_lookup.attribute}' on {descriptor.name}"
            )
        stmt = select(plan.owner_type).where(getattr(plan.owner_type, attr) == value).limit(1)
        owner = self.session.scalars(stmt).first()
        if owner is None:
            raise RelationResolutionError(plan.relation.qualified_name, attr, value, "not_found")
        return owner

    @staticmethod
    def lookup_values(value: Any, delimiter: str | None) -> list[Any]:
        if isinstance(value, (list, tuple)):
            items: Iterable[Any] = value
        elif isinstance(value, str) and delimiter:
            items = value.split(delimiter)
        else:
            items = [value]
        result = []
        for item in items:
            if isinstance(item, str):
                item = item.strip()
            if not _is_blank(item):
                result.append(item)
        return result

    def sync(
        self,
        row: Row,
        mapping: EntityMapping,
        truncations: list[TruncationRecord] | None = None,
    ) -> PivotSyncResult | None:
        """Apply one row of a ``pivot_sync`` mapping. Returns None when the row names no owner.

        Related entities created here follow ``truncate_long_fields``: over-long
        strings are cut and recorded in ``truncations``, or rejected with a
        ``data_too_long`` RelationResolutionError when truncation is off.
        """
        plan = self.plan(mapping)
        owner_value = self.values.value(row, plan.owner_lookup.column, truncations)
        if _is_blank(owner_value):
            return None
        owner = self._find_owner(plan, owner_value)

        related_column = plan.related_lookup.column
        delimiter = related_column.relation_lookup.delimiter if related_column.relation_lookup else None
        lookup_values = self.lookup_values(self.values.value(row, related_column, truncations), delimiter)
        if not lookup_values:
            # a blank related cell asserts nothing; it must not detach the owner's set
            return PivotSyncResult()
        attributes = {attr: self.values.value(row, col, truncations) for col, attr in plan.related_attributes}
        pivot = {}
        for col, attr, optional in plan.pivot_columns:
            value = self.values.value(row, col, truncations)
            if not (optional and _is_blank(value)):
                pivot[attr] = value

        items: list[PivotItem] = []
        for value in lookup_values:
            target = self.resolver.resolve(
                plan.relation,
                plan.related_lookup.attribute,
                value,
                plan.related_lookup.create_if_missing,
                attributes,
                truncate=self.truncate_long_fields,
                truncations=truncations,
                line_number=row.line_number,
            )
            if target is None:
                logger.debug("%s: related %r not found; skipped", plan.relation.qualified_name, value)
                continue
            items.append(PivotItem(target=target, attributes=dict(pivot)))
        return self.assign(owner, plan.relation, items, mapping.options.association_strategy)
