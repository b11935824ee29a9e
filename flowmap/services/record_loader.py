from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import Any

from sqlalchemy import and_, select
from sqlalchemy.orm import Session

from ..errors import DuplicateKeyError, MappingStructureError, ValidationError
from ..models.flow_run import TruncationRecord
from ..models.mapping import (
    ColumnMapping,
    DuplicateStrategy,
    EntityMapping,
    RelationSync,
)
from ..models.relation import (
    AttributeDescriptor,
    EntityTypeDescriptor,
    NotFound,
    RelationDescriptor,
    RelationKind,
)
from ..models.row import Row
from ..models.target_path import PathSegment
from .path_parser import TargetPathParser, parse_target_path
from .pivot_sync import PivotItem, PivotSyncEngine
from .relation_resolver import RelationResolver
from .relation_types import DescriptorRegistry, ModelRegistry, RelationTypeResolver
from .row_values import RowValues
from .validation import validate_fields

"""Per-row loading of one entity mapping.

Each mapping is compiled once into a plan: plain attributes, and a tree of
relation plans keyed by relation name. Loading a row then runs:

1. evaluate every column (default, transforms) and validate the rules
2. look up an existing entity by the unique key and apply the duplicate strategy
3. resolve owned-single parents (lookup or create) and attach them
4. assign plain attributes, truncating over-long strings
5. persist (flush) so the entity has its keys
6. inverse-single dependents, owned-many collections and many-to-many associations

A target naming an unknown relation or attribute is dropped from the plan
with one warning.
"""

__all__ = ["RecordLoader"]

logger = logging.getLogger(__name__)

_LIST_TYPES = (list, tuple)


def _is_blank(value: Any) -> bool:
    return value is None or (isinstance(value, str) and value.strip() == "")


def _same(a: Any, b: Any) -> bool:
    if a == b:
        return True
    return a is not None and b is not None and str(a).strip() == str(b).strip()


@dataclass
class _RelationPlan:
    relation: RelationDescriptor
    fields: list[tuple[ColumnMapping, str]] = field(default_factory=list)
    pivot_fields: list[tuple[ColumnMapping, str]] = field(default_factory=list)
    children: dict[str, _RelationPlan] = field(default_factory=dict)
    lookup_column: ColumnMapping | None = None
    lookup_attribute: str | None = None
    create_if_missing: bool = False
    delimiter: str | None = None
    optional: bool = False  # '?relation': skipped when the row carries no value for it
    optional_columns: set[int] = field(default_factory=set)  # ids of '?attribute' columns
    explicit_lookup: bool = False  # lookup named by relation_lookup, not picked automatically

    @property
    def kind(self) -> RelationKind:
        return self.relation.kind

    def omits(self, column: ColumnMapping, value: Any) -> bool:
        """Blank values of optional fields are left out; other blanks are written as null."""
        return _is_blank(value) and (self.optional or id(column) in self.optional_columns)


@dataclass
class _LoadPlan:
    model: type
    descriptor: EntityTypeDescriptor
    attributes: list[tuple[ColumnMapping, AttributeDescriptor]] = field(default_factory=list)
    relations: dict[str, _RelationPlan] = field(default_factory=dict)
    unique_key: tuple[str, ...] = ()

    def relations_of(self, *kinds: RelationKind) -> list[_RelationPlan]:
        return [p for p in self.relations.values() if p.kind in kinds]


class RecordLoader:
    def __init__(
        self,
        session: Session,
        models: ModelRegistry,
        *,
        registry: DescriptorRegistry | None = None,
        values: RowValues | None = None,
        resolver: RelationResolver | None = None,
        pivots: PivotSyncEngine | None = None,
        truncate_long_fields: bool = True,
    ) -> None:
        self.session = session
        self.models = models
        self.registry = registry or DescriptorRegistry()
        self.values = values or RowValues()
        self.resolver = resolver or RelationResolver(session, self.registry)
        self.pivots = pivots or PivotSyncEngine(
            session,
            models,
            registry=self.registry,
            resolver=self.resolver,
            values=self.values,
            truncate_long_fields=truncate_long_fields,
        )
        self.paths = TargetPathParser(RelationTypeResolver(self.registry))
        self.truncate_long_fields = truncate_long_fields
        self._plans: dict[int, _LoadPlan] = {}
        self._warned: set[str] = set()

    # plan compilation

    def _warn_once(self, key: str, message: str, *args: Any) -> None:
        if key in self._warned:
            return
        self._warned.add(key)
        logger.warning(message, *args)

    def plan(self, mapping: EntityMapping) -> _LoadPlan:
        compiled = self._plans.get(id(mapping))
        if compiled is None:
            compiled = self._compile(mapping)
            self._plans[id(mapping)] = compiled
        return compiled

    def _compile(self, mapping: EntityMapping) -> _LoadPlan:
        model = self.models.get(mapping.model)
        descriptor = self.registry.describe(model)
        plan = _LoadPlan(model=model, descriptor=descriptor)

        for column in mapping.columns:
            path = parse_target_path(column.target)
            if not path.is_nested:
                self._compile_attribute(plan, column, path.attribute, mapping)
                continue
            chain = self.paths.check(path, model)
            if isinstance(chain, NotFound):
                self._warn_once(
                    f"{mapping.model}:{column.target}",
                    "%s: target '%s' ignored (%s)",
                    mapping.model,
                    column.target,
                    chain,
                )
                continue
            (seg, rel), *nested = zip(path.relations, chain)
            rplan = self._relation_node(plan.relations, seg, rel)
            for seg, rel in nested:
                if rplan.kind.is_collection or rel.kind is not RelationKind.OWNED_SINGLE:
                    raise MappingStructureError(
                        f"{mapping.model}: nested relation '{rel.name}' below "
                        f"{rplan.kind.value} relation '{rplan.relation.name}' is not supported "
                        f"(target '{column.target}')"
                    )
                rplan = self._relation_node(rplan.children, seg, rel)
            self._compile_relation_field(
                rplan,
                column,
                path.attribute,
                path.targets_pivot,
                mapping,
                optional=path.attribute_segment.is_optional,
            )

        for rplan in self._walk(plan.relations.values()):
            self._choose_lookup(rplan, mapping)

        plan.unique_key = self._compile_unique_key(descriptor, mapping)
        logger.debug(
            "compiled %s: %d attribute(s), %d relation(s)",
            mapping.model,
            len(plan.attributes),
            len(plan.relations),
        )
        return plan

    @staticmethod
    def _relation_node(
        container: dict[str, _RelationPlan], seg: PathSegment, rel: RelationDescriptor
    ) -> _RelationPlan:
        rplan = container.get(rel.name)
        if rplan is None:
            rplan = _RelationPlan(relation=rel)
            container[rel.name] = rplan
        rplan.create_if_missing |= seg.create_if_missing
        rplan.optional |= seg.is_optional
        return rplan

    def _walk(self, plans: Iterable[_RelationPlan]) -> Iterable[_RelationPlan]:
        for p in plans:
            yield p
            yield from self._walk(p.children.values())

    def _compile_attribute(self, plan: _LoadPlan, column: ColumnMapping, name: str, mapping: EntityMapping) -> None:
        attr = plan.descriptor.attribute(name)
        if attr is not None:
            plan.attributes.append((column, attr))
            return
        rel = plan.descriptor.relation(name)
        if rel is not None and column.relation_lookup is not None:
            # "author" + relation_lookup {field: name}: the cell is the lookup value itself
            rplan = plan.relations.setdefault(rel.name, _RelationPlan(relation=rel))
            self._compile_relation_field(rplan, column, column.relation_lookup.field, False, mapping)
            return
        self._warn_once(
            f"{mapping.model}:{column.target}",
            "%s: target '%s' ignored (%s)",
            mapping.model,
            column.target,
            NotFound(plan.descriptor.name, name, "not a declared attribute"),
        )

    def _compile_relation_field(
        self,
        rplan: _RelationPlan,
        column: ColumnMapping,
        attribute: str,
        pivot: bool,
        mapping: EntityMapping,
        optional: bool = False,
    ) -> None:
        rel = rplan.relation
        if optional:
            rplan.optional_columns.add(id(column))
        if pivot:
            if attribute not in rel.association_attributes:
                self._warn_once(
                    f"{rel.qualified_name}:pivot:{attribute}",
                    "%s: '%s' is not a column of association table %s; ignored",
                    rel.qualified_name,
                    attribute,
                    rel.association_table_name,
                )
                return
            rplan.pivot_fields.append((column, attribute))
            return
        target_descriptor = self.registry.describe(rel.target)
        matched = target_descriptor.match_attribute(attribute)
        if matched is None:
            self._warn_once(
                f"{mapping.model}:{column.target}",
                "%s: target '%s' ignored (%s)",
                mapping.model,
                column.target,
                NotFound(target_descriptor.name, attribute, "not a declared attribute"),
            )
            return
        rplan.fields.append((column, matched))
        lookup = column.relation_lookup
        if lookup is not None and rplan.lookup_column is None:
            lookup_attr = target_descriptor.match_attribute(lookup.field)
            if lookup_attr is None:
                raise MappingStructureError(
                    f"{mapping.model}: relation_lookup field '{lookup.field}' is not an attribute of "
                    f"{target_descriptor.name}"
                )
            rplan.lookup_column = column
            rplan.lookup_attribute = lookup_attr
            rplan.explicit_lookup = True
            rplan.create_if_missing |= lookup.create_if_missing
            rplan.delimiter = lookup.delimiter

    def _choose_lookup(self, rplan: _RelationPlan, mapping: EntityMapping) -> None:
        if rplan.lookup_column is not None or not rplan.fields:
            if rplan.lookup_column is None and rplan.kind is RelationKind.OWNED_SINGLE and rplan.children:
                self._warn_once(
                    f"{mapping.model}:{rplan.relation.name}:nolookup",
                    "%s: relation '%s' has no mapped lookup column; nested values ignored",
                    mapping.model,
                    rplan.relation.name,
                )
            return
        if rplan.kind is RelationKind.OWNED_MANY:
            # first unique attribute of the dependent identifies existing items
            target = self.registry.describe(rplan.relation.target)
            for column, attr in rplan.fields:
                described = target.attributes[attr]
                if described.unique or described.primary_key:
                    rplan.lookup_column, rplan.lookup_attribute = column, attr
                    rplan.create_if_missing = True
                    return
            return
        rplan.lookup_column, rplan.lookup_attribute = rplan.fields[0]

    def _compile_unique_key(self, descriptor: EntityTypeDescriptor, mapping: EntityMapping) -> tuple[str, ...]:
        names: list[str] = []
        for key in mapping.options.unique_key:
            matched = descriptor.match_attribute(key)
            if matched is None:
                raise MappingStructureError(f"{mapping.model}: unique_key '{key}' is not an attribute")
            names.append(matched)
        return tuple(names)

    # loading

    def _fit(
        self,
        value: Any,
        attr: AttributeDescriptor,
        row: Row,
        truncations: list[TruncationRecord] | None,
        record: bool = True,
    ) -> Any:
        if not self.truncate_long_fields or attr.max_length is None:
            return value
        if not isinstance(value, str) or len(value) <= attr.max_length:
            return value
        if record and truncations is not None:
            truncations.append(
                TruncationRecord(
                    row=row.line_number,
                    field=attr.name,
                    original_length=len(value),
                    max_length=attr.max_length,
                )
            )
        return value[: attr.max_length]

    def _find_duplicate(self, plan: _LoadPlan, key_values: dict[str, Any]) -> Any | None:
        model = plan.model
        clause = and_(*(getattr(model, k) == v for k, v in key_values.items()))
        return self.session.scalars(select(model).where(clause).limit(1)).first()

    def load(
        self,
        row: Row,
        mapping: EntityMapping,
        truncations: list[TruncationRecord] | None = None,
    ) -> Any | None:
        """Load one row into ``mapping.model``. Returns the entity, or None when skipped.

        Raises
        ------
        ValidationError: a column rule failed; carries the per-field messages
        DuplicateKeyError: the unique key matched under the ``error`` strategy
        RelationResolutionError: a related entity could not be resolved or created
        """
        plan = self.plan(mapping)
        vals: dict[int, Any] = {id(c): self.values.value(row, c, truncations) for c in mapping.columns}

        rules = RowValues.rules(mapping.columns)
        if rules:
            by_target = {c.target: vals[id(c)] for c in mapping.columns}
            errors = validate_fields(by_target, rules)
            if errors:
                raise ValidationError(errors, row.to_dict(), f"Validation failed for row {row.line_number}")

        entity = None
        if plan.unique_key:
            by_attr = {attr.name: vals[id(col)] for col, attr in plan.attributes}
            key_values = {
                k: self._fit(by_attr.get(k), plan.descriptor.attributes[k], row, None, record=False)
                for k in plan.unique_key
            }
            if all(not _is_blank(v) for v in key_values.values()):
                existing = self._find_duplicate(plan, key_values)
                if existing is not None:
                    strategy = mapping.options.duplicate_strategy
                    if strategy is DuplicateStrategy.ERROR:
                        raise DuplicateKeyError(mapping.model, key_values)
                    if strategy is DuplicateStrategy.SKIP:
                        logger.debug("row %d: %s duplicate %s skipped", row.line_number, mapping.model, key_values)
                        return None
                    entity = existing

        # Parents are resolved before the entity is touched: attaching one would
        # cascade the half-built entity into the session and autoflush it.
        parents: list[tuple[str, Any]] = []
        for rplan in plan.relations_of(RelationKind.OWNED_SINGLE):
            parent = self._resolve_single(rplan, vals, row, truncations)
            if parent is not None:
                parents.append((rplan.relation.name, parent))

        if entity is None:
            entity = plan.model()
        for column, attr in plan.attributes:
            value = vals[id(column)]
            if value is None:
                continue
            setattr(entity, attr.name, self._fit(value, attr, row, truncations))
        for name, parent in parents:
            setattr(entity, name, parent)

        self.session.add(entity)
        self.session.flush()

        for rplan in plan.relations_of(RelationKind.INVERSE_SINGLE):
            self._load_inverse_single(entity, rplan, vals, row, truncations)
        for rplan in plan.relations_of(RelationKind.OWNED_MANY):
            self._load_owned_many(entity, rplan, vals, row, truncations, mapping)
        for rplan in plan.relations_of(RelationKind.MANY_TO_MANY):
            self._load_many_to_many(entity, rplan, vals, row, truncations, mapping)
        return entity

    def _field_values(self, rplan: _RelationPlan, vals: dict[int, Any]) -> dict[str, Any]:
        return {attr: vals[id(col)] for col, attr in rplan.fields if not rplan.omits(col, vals[id(col)])}

    def _links(self, rplan: _RelationPlan, vals: dict[int, Any], row: Row, truncations) -> dict[str, Any]:
        links: dict[str, Any] = {}
        for child in rplan.children.values():
            parent = self._resolve_single(child, vals, row, truncations)
            if parent is None:
                continue
            for fk_attr, parent_attr in child.relation.key_pairs:
                links[fk_attr] = getattr(parent, parent_attr)
        return links

    def _resolve_single(
        self,
        rplan: _RelationPlan,
        vals: dict[int, Any],
        row: Row,
        truncations: list[TruncationRecord] | None,
        owner: Any = None,
    ) -> Any | None:
        if rplan.lookup_column is None:
            return None
        lookup_value = vals[id(rplan.lookup_column)]
        if _is_blank(lookup_value):
            return None
        return self.resolver.resolve(
            rplan.relation,
            rplan.lookup_attribute,
            lookup_value,
            rplan.create_if_missing,
            self._field_values(rplan, vals),
            owner=owner,
            links=self._links(rplan, vals, row, truncations),
            fill=owner is not None,
            truncate=self.truncate_long_fields,
            truncations=truncations,
            line_number=row.line_number,
        )

    def _load_inverse_single(
        self,
        entity: Any,
        rplan: _RelationPlan,
        vals: dict[int, Any],
        row: Row,
        truncations: list[TruncationRecord] | None,
    ) -> None:
        rel = rplan.relation
        attrs = self._field_values(rplan, vals)
        present = any(not _is_blank(v) for v in attrs.values())
        if rplan.optional and not present:
            return
        lookup_value = vals[id(rplan.lookup_column)] if rplan.lookup_column is not None else None
        current = getattr(entity, rel.name)

        if current is not None and (
            not rplan.explicit_lookup
            or _is_blank(lookup_value)
            or _same(getattr(current, rplan.lookup_attribute), lookup_value)
        ):
            self.resolver.assign(
                current, rel, attrs,
                truncate=self.truncate_long_fields, truncations=truncations, line_number=row.line_number,
            )
            return

        if rplan.lookup_attribute is not None and not _is_blank(lookup_value):
            dependent = self._resolve_single(rplan, vals, row, truncations, owner=entity)
        elif present:
            dependent = self.resolver.create(
                rel,
                attrs,
                owner=entity,
                links=self._links(rplan, vals, row, truncations),
                truncate=self.truncate_long_fields,
                truncations=truncations,
                line_number=row.line_number,
            )
        else:
            return
        if dependent is not None:
            setattr(entity, rel.name, dependent)
            self.session.flush()

    def _items(self, rplan: _RelationPlan, vals: dict[int, Any]) -> list[dict[str, Any]]:
        """Spread the relation's column values into one attribute dict per collection item."""
        per_column: list[tuple[ColumnMapping, str, list[Any] | None, Any]] = []
        count = 0
        for column, attr in rplan.fields:
            value = vals[id(column)]
            if isinstance(value, str) and rplan.delimiter and column is rplan.lookup_column:
                value = [v.strip() for v in value.split(rplan.delimiter) if v.strip()]
            if isinstance(value, _LIST_TYPES):
                per_column.append((column, attr, list(value), None))
                count = max(count, len(value))
            else:
                per_column.append((column, attr, None, value))
                if not _is_blank(value):
                    count = max(count, 1)
        items: list[dict[str, Any]] = []
        for i in range(count):
            item: dict[str, Any] = {}
            for column, attr, seq, scalar in per_column:
                value = (seq[i] if i < len(seq) else None) if seq is not None else scalar
                if isinstance(value, dict):
                    value = value.get(attr)
                if not rplan.omits(column, value):
                    item[attr] = value
            if any(not _is_blank(v) for v in item.values()):
                items.append(item)
        return items

    def _load_owned_many(
        self,
        entity: Any,
        rplan: _RelationPlan,
        vals: dict[int, Any],
        row: Row,
        truncations: list[TruncationRecord] | None,
        mapping: EntityMapping,
    ) -> None:
        rel = rplan.relation
        items = self._items(rplan, vals)
        existing = list(getattr(entity, rel.name))
        kept: list[Any] = []
        skip_existing = mapping.options.duplicate_strategy is DuplicateStrategy.SKIP
        for item in items:
            child = None
            lookup_value = item.get(rplan.lookup_attribute) if rplan.lookup_attribute else None
            if rplan.lookup_attribute and not _is_blank(lookup_value):
                child = next(
                    (c for c in existing if _same(getattr(c, rplan.lookup_attribute), lookup_value)),
                    None,
                )
                if child is not None:
                    if not skip_existing:
                        self.resolver.assign(
                            child, rel, item,
                            truncate=self.truncate_long_fields,
                            truncations=truncations,
                            line_number=row.line_number,
                        )
                else:
                    child = self.resolver.resolve(
                        rel,
                        rplan.lookup_attribute,
                        lookup_value,
                        rplan.create_if_missing,
                        item,
                        owner=entity,
                        fill=not skip_existing,
                        truncate=self.truncate_long_fields,
                        truncations=truncations,
                        line_number=row.line_number,
                    )
            else:
                child = self.resolver.create(
                    rel,
                    item,
                    owner=entity,
                    truncate=self.truncate_long_fields,
                    truncations=truncations,
                    line_number=row.line_number,
                )
            if child is not None:
                kept.append(child)

        if mapping.options.relation_sync is RelationSync.REPLACE and items:
            kept_ids = {id(c) for c in kept}
            for stale in existing:
                if id(stale) not in kept_ids:
                    self.session.delete(stale)
        self.session.flush()
        self.session.expire(entity, [rel.name])

    def _load_many_to_many(
        self,
        entity: Any,
        rplan: _RelationPlan,
        vals: dict[int, Any],
        row: Row,
        truncations: list[TruncationRecord] | None,
        mapping: EntityMapping,
    ) -> None:
        if rplan.lookup_column is None:
            return
        lookup_values = self.pivots.lookup_values(vals[id(rplan.lookup_column)], rplan.delimiter)
        if not lookup_values:
            return
        attrs = {
            attr: vals[id(col)]
            for col, attr in rplan.fields
            if col is not rplan.lookup_column and not rplan.omits(col, vals[id(col)])
        }
        pivot = {attr: vals[id(col)] for col, attr in rplan.pivot_fields if not rplan.omits(col, vals[id(col)])}
        items: list[PivotItem] = []
        for value in lookup_values:
            target = self.resolver.resolve(
                rplan.relation,
                rplan.lookup_attribute,
                value,
                rplan.create_if_missing,
                attrs,
                truncate=self.truncate_long_fields,
                truncations=truncations,
                line_number=row.line_number,
            )
            if target is not None:
                items.append(PivotItem(target=target, attributes=dict(pivot)))
        self.pivots.assign(entity, rplan.relation, items, mapping.options.association_strategy)
