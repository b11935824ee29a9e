from __future__ import annotations

import importlib
import logging
from collections.abc import Callable, Iterable
from typing import Any

from sqlalchemy import String
from sqlalchemy import inspect as sa_inspect
from sqlalchemy.exc import NoInspectionAvailable
from sqlalchemy.orm import Mapper, RelationshipDirection, RelationshipProperty
from sqlalchemy.orm.exc import UnmappedColumnError

from ..errors import MappingStructureError
from ..models.relation import (
    AttributeDescriptor,
    EntityTypeDescriptor,
    NotFound,
    RelationDescriptor,
    RelationKind,
)

"""Entity type descriptors, relation kind resolution and model lookup.

Relations are discovered with a single ``sqlalchemy.inspect()`` probe per
entity type; the resulting descriptors are cached for the registry's
lifetime and never re-inspected. Kinds are assigned by a priority-ordered
match so that a join-table relation is never mistaken for a plain
one-to-many.
"""

__all__ = [
    "DescriptorRegistry",
    "RelationTypeResolver",
    "ModelRegistry",
    "classify_relationship",
]

logger = logging.getLogger(__name__)


# Most specific first. Each probe receives a RelationshipProperty.
_KIND_PROBES: tuple[tuple[RelationKind, Callable[[RelationshipProperty], bool]], ...] = (
    (RelationKind.MANY_TO_MANY, lambda rel: rel.secondary is not None),
    (RelationKind.OWNED_SINGLE, lambda rel: rel.direction is RelationshipDirection.MANYTOONE),
    (
        RelationKind.INVERSE_SINGLE,
        lambda rel: rel.direction is RelationshipDirection.ONETOMANY and not rel.uselist,
    ),
    (RelationKind.OWNED_MANY, lambda rel: rel.direction is RelationshipDirection.ONETOMANY),
)


def classify_relationship(rel: RelationshipProperty) -> RelationKind | None:
    for kind, probe in _KIND_PROBES:
        if probe(rel):
            return kind
    return None


def _attr_name(mapper: Mapper, column: Any) -> str:
    try:
        return mapper.get_property_by_column(column).key
    except UnmappedColumnError:
        return column.key


def _describe_attribute(key: str, column: Any) -> AttributeDescriptor:
    max_length = None
    if isinstance(column.type, String) and column.type.length:
        max_length = int(column.type.length)
    nullable = bool(column.nullable)
    has_default = column.default is not None or column.server_default is not None
    required = (not nullable) and (not has_default) and (not column.primary_key)
    return AttributeDescriptor(
        name=key,
        column=column.name,
        max_length=max_length,
        nullable=nullable,
        required=required,
        primary_key=bool(column.primary_key),
        unique=bool(column.unique),
    )


def _describe_relation(owner_mapper: Mapper, rel: RelationshipProperty) -> RelationDescriptor | None:
    kind = classify_relationship(rel)
    if kind is None:
        return None
    owner = owner_mapper.class_
    target_mapper = rel.mapper
    target = target_mapper.class_

    if kind is RelationKind.MANY_TO_MANY:
        table = rel.secondary
        owner_pairs = tuple(
            (_attr_name(owner_mapper, local), assoc.key) for local, assoc in rel.synchronize_pairs
        )
        target_pairs = tuple(
            (_attr_name(target_mapper, remote), assoc.key)
            for remote, assoc in rel.secondary_synchronize_pairs
        )
        key_cols = {assoc for _, assoc in owner_pairs} | {assoc for _, assoc in target_pairs}
        extra = tuple(
            c.key for c in table.columns if c.key not in key_cols and not c.primary_key
        )
        return RelationDescriptor(
            name=rel.key,
            kind=kind,
            owner=owner,
            target=target,
            association_table_name=table.name,
            owner_key_pairs=owner_pairs,
            target_key_pairs=target_pairs,
            association_attributes=extra,
            association_table=table,
        )

    pairs: list[tuple[str, str]] = []
    for local, remote in rel.local_remote_pairs:
        pairs.append((_attr_name(owner_mapper, local), _attr_name(target_mapper, remote)))
    if kind is RelationKind.OWNED_SINGLE:
        fk_attr = pairs[0][0] if pairs else None
        fk_cols = [local for local, _ in rel.local_remote_pairs]
        required = bool(fk_cols) and all(not c.nullable for c in fk_cols)
    else:
        fk_attr = pairs[0][1] if pairs else None
        required = False
    return RelationDescriptor(
        name=rel.key,
        kind=kind,
        owner=owner,
        target=target,
        foreign_key_attribute=fk_attr,
        required=required,
        key_pairs=tuple(pairs),
    )


class DescriptorRegistry:
    """Per-run cache of EntityTypeDescriptors, keyed by entity class."""

    def __init__(self) -> None:
        self._cache: dict[type, EntityTypeDescriptor] = {}

    def __contains__(self, entity_type: type) -> bool:
        return entity_type in self._cache

    def register(self, descriptor: EntityTypeDescriptor) -> None:
        """Declare a descriptor explicitly instead of probing the mapper."""
        self._cache[descriptor.entity_type] = descriptor

    def describe(self, entity_type: type) -> EntityTypeDescriptor:
        cached = self._cache.get(entity_type)
        if cached is not None:
            return cached
        descriptor = self._probe(entity_type)
        self._cache[entity_type] = descriptor
        return descriptor

    def _probe(self, entity_type: type) -> EntityTypeDescriptor:
        try:
            mapper = sa_inspect(entity_type)
        except NoInspectionAvailable as e:
            raise MappingStructureError(
                f"{getattr(entity_type, '__name__', entity_type)} is not a mapped entity type"
            ) from e
        attributes: dict[str, AttributeDescriptor] = {}
        for prop in mapper.column_attrs:
            attributes[prop.key] = _describe_attribute(prop.key, prop.columns[0])
        relations: dict[str, RelationDescriptor] = {}
        for rel in mapper.relationships:
            described = _describe_relation(mapper, rel)
            if described is not None:
                relations[rel.key] = described
        primary_key = tuple(_attr_name(mapper, c) for c in mapper.primary_key)
        logger.debug(
            "described %s: %d attribute(s), %d relation(s)",
            entity_type.__name__,
            len(attributes),
            len(relations),
        )
        return EntityTypeDescriptor(
            entity_type=entity_type,
            name=entity_type.__name__,
            storage_name=mapper.local_table.name,
            attributes=attributes,
            relations=relations,
            primary_key=primary_key,
        )


class RelationTypeResolver:
    """``resolve(entity_type, name) -> RelationDescriptor | NotFound``."""

    def __init__(self, registry: DescriptorRegistry | None = None) -> None:
        self.registry = registry or DescriptorRegistry()

    def resolve(self, entity_type: type, relation_name: str) -> RelationDescriptor | NotFound:
        descriptor = self.registry.describe(entity_type)
        rel = descriptor.relation(relation_name)
        if rel is None:
            reason = (
                "is a plain attribute, not a relation"
                if descriptor.match_attribute(relation_name)
                else "not a declared relation"
            )
            return NotFound(descriptor.name, relation_name, reason)
        return rel

    def kind_of(self, entity_type: type, relation_name: str) -> RelationKind | None:
        rel = self.resolve(entity_type, relation_name)
        return None if isinstance(rel, NotFound) else rel.kind


class ModelRegistry:
    """Resolves entity type names used in mapping documents to mapped classes."""

    def __init__(self, models: Iterable[type] = ()) -> None:
        self._models: dict[str, type] = {}
        for m in models:
            self.add(m)

    def add(self, model: type) -> None:
        self._models[model.__name__] = model
        self._models[f"{model.__module__}.{model.__qualname__}"] = model

    @classmethod
    def from_base(cls, base: Any) -> ModelRegistry:
        """Collect every class mapped on a declarative base."""
        return cls(m.class_ for m in base.registry.mappers)

    @classmethod
    def from_module(cls, module_path: str) -> ModelRegistry:
        """Import ``module_path`` and collect the models of its declarative ``Base``."""
        module = importlib.import_module(module_path)
        base = getattr(module, "Base", None)
        if base is None or not hasattr(base, "registry"):
            raise MappingStructureError(f"module '{module_path}' has no declarative Base")
        return cls.from_base(base)

    def __contains__(self, name: str) -> bool:
        return name in self._models

    def names(self) -> list[str]:
        return sorted({m.__name__ for m in self._models.values()})

    def get(self, name: str) -> type:
        model = self._models.get(name)
        if model is None:
            # tolerate "app.models.Book" style when only "Book" was registered
            model = self._models.get(name.rsplit(".", 1)[-1])
        if model is None:
            raise MappingStructureError(f"Unknown model: {name}")
        return model
