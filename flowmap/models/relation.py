from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

"""Entity type and relation descriptors.

An ``EntityTypeDescriptor`` is built once per entity type (one probe of the
ORM mapper), cached by the descriptor registry and never mutated afterwards.
``RelationDescriptor`` is the first-class value every relation-aware service
works with; ``NotFound`` is what relation lookups return instead of raising.
"""

__all__ = [
    "RelationKind",
    "AttributeDescriptor",
    "RelationDescriptor",
    "EntityTypeDescriptor",
    "NotFound",
    "normalize_name",
]


class RelationKind(Enum):
    """The four relation kinds the engine distinguishes.

    - OWNED_SINGLE: this entity references one parent through a foreign key
    - INVERSE_SINGLE: this entity owns exactly one dependent
    - OWNED_MANY: this entity owns a collection of dependents
    - MANY_TO_MANY: symmetric association through a join table
    """
    OWNED_SINGLE = "owned_single"
    INVERSE_SINGLE = "inverse_single"
    OWNED_MANY = "owned_many"
    MANY_TO_MANY = "many_to_many"

    @property
    def is_collection(self) -> bool:
        return self in (RelationKind.OWNED_MANY, RelationKind.MANY_TO_MANY)


def normalize_name(name: str) -> str:
    """Fold snake_case / camelCase / PascalCase spellings onto one key."""
    return name.replace("_", "").replace("-", "").lower()


@dataclass(frozen=True)
class AttributeDescriptor:
    name: str
    column: str
    max_length: int | None = None
    nullable: bool = True
    required: bool = False  # NOT NULL without default and not a generated key
    primary_key: bool = False
    unique: bool = False


@dataclass(frozen=True)
class RelationDescriptor:
    """A declared relation of an entity type.

    ``key_pairs`` holds ``(owner_attribute, target_attribute)`` pairs that are
    equal when two entities are linked. For OWNED_SINGLE the owner side carries
    the foreign key; for INVERSE_SINGLE and OWNED_MANY the target side does.
    MANY_TO_MANY relations use ``owner_key_pairs`` / ``target_key_pairs``
    instead, each pairing an entity attribute with an association column.
    """
    name: str
    kind: RelationKind
    owner: type
    target: type
    foreign_key_attribute: str | None = None
    association_table_name: str | None = None
    required: bool = False
    key_pairs: tuple[tuple[str, str], ...] = ()
    owner_key_pairs: tuple[tuple[str, str], ...] = ()
    target_key_pairs: tuple[tuple[str, str], ...] = ()
    association_attributes: tuple[str, ...] = ()
    association_table: Any = field(default=None, compare=False, repr=False)

    @property
    def target_name(self) -> str:
        return self.target.__name__

    @property
    def qualified_name(self) -> str:
        return f"{self.owner.__name__}.{self.name}"


@dataclass(frozen=True)
class EntityTypeDescriptor:
    entity_type: type
    name: str
    storage_name: str
    attributes: Mapping[str, AttributeDescriptor]
    relations: Mapping[str, RelationDescriptor]
    primary_key: tuple[str, ...] = ()

    def attribute(self, name: str) -> AttributeDescriptor | None:
        matched = self.match_attribute(name)
        return self.attributes.get(matched) if matched else None

    def relation(self, name: str) -> RelationDescriptor | None:
        if name in self.relations:
            return self.relations[name]
        key = normalize_name(name)
        for rel_name, rel in self.relations.items():
            if normalize_name(rel_name) == key:
                return rel
        return None

    def match_attribute(self, name: str) -> str | None:
        """Return the declared attribute spelled like ``name``, tolerating case styles."""
        if name in self.attributes:
            return name
        key = normalize_name(name)
        for attr in self.attributes:
            if normalize_name(attr) == key:
                return attr
        return None

    @property
    def required_attributes(self) -> tuple[str, ...]:
        return tuple(a.name for a in self.attributes.values() if a.required)


@dataclass(frozen=True)
class NotFound:
    """Lookup miss for a relation or attribute name. Falsy so call sites can branch on it."""
    entity: str
    name: str
    reason: str = "not a declared relation"

    def __bool__(self) -> bool:
        return False

    def __str__(self) -> str:
        return f"{self.entity}.{self.name}: {self.reason}"
