from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import Any

from sqlalchemy import select
from sqlalchemy.exc import DataError, IntegrityError, StatementError
from sqlalchemy.orm import Session

from ..errors import MappingStructureError, RelationResolutionError
from ..models.flow_run import TruncationRecord
from ..models.relation import EntityTypeDescriptor, RelationDescriptor, RelationKind
from .relation_types import DescriptorRegistry

"""Lookup-or-create for one relation occurrence.

The lookup runs through the session with autoflush on, so an entity created
earlier in the same run (even not yet committed) is found by the next lookup
and never created twice.
"""

__all__ = ["RelationResolver"]

logger = logging.getLogger(__name__)


def _is_blank(value: Any) -> bool:
    return value is None or (isinstance(value, str) and value.strip() == "")


class RelationResolver:
    def __init__(self, session: Session, registry: DescriptorRegistry | None = None) -> None:
        self.session = session
        self.registry = registry or DescriptorRegistry()

    def describe(self, relation: RelationDescriptor) -> EntityTypeDescriptor:
        return self.registry.describe(relation.target)

    def attribute_name(self, relation: RelationDescriptor, name: str) -> str:
        descriptor = self.describe(relation)
        matched = descriptor.match_attribute(name)
        if matched is None:
            raise MappingStructureError(
                f"Unknown attribute '{name}' on {descriptor.name} (relation {relation.qualified_name})"
            )
        return matched

    def find(self, relation: RelationDescriptor, lookup_attribute: str, lookup_value: Any) -> Any | None:
        attr = self.attribute_name(relation, lookup_attribute)
        target = relation.target
        stmt = select(target).where(getattr(target, attr) == lookup_value).limit(1)
        return self.session.scalars(stmt).first()

    def resolve(
        self,
        relation: RelationDescriptor,
        lookup_attribute: str,
        lookup_value: Any,
        create_if_missing: bool,
        attributes: Mapping[str, Any] | None = None,
        *,
        owner: Any = None,
        links: Mapping[str, Any] | None = None,
        fill: bool = False,
        truncate: bool = True,
        truncations: list[TruncationRecord] | None = None,
        line_number: int | None = None,
    ) -> Any | None:
        """Find the related entity by ``lookup_attribute == lookup_value``, or create it.

        Parameters
        ----------
        relation: the relation being resolved (its target is the entity type searched)
        attributes: other values mapped onto the target for this row; used on create,
            and on a found entity when ``fill`` is set
        owner: the entity declaring the relation; dependents found or created
            through an inverse-single or owned-many relation are linked to it
        links: foreign key values already known for the target (e.g. a parent
            resolved earlier in the chain)

        Returns None when the lookup value is empty, or when nothing matched
        and ``create_if_missing`` is false.

        Raises
        ------
        RelationResolutionError: ``missing_required`` when the target cannot be
            created from the mapped values, ``data_too_long`` when truncation is
            off and a value exceeds its column, or the classified storage error.
        """
        if _is_blank(lookup_value):
            return None
        attrs = dict(attributes or {})
        lookup_attr = self.attribute_name(relation, lookup_attribute)
        found = self.find(relation, lookup_attr, lookup_value)
        if found is not None:
            if fill:
                self.assign(
                    found, relation, attrs,
                    truncate=truncate, truncations=truncations, line_number=line_number,
                    lookup=(lookup_attr, lookup_value),
                )
            self._link(found, relation, owner)
            return found

        if not create_if_missing:
            logger.debug(
                "%s: no %s with %s=%r and creation disabled",
                relation.qualified_name,
                relation.target_name,
                lookup_attr,
                lookup_value,
            )
            return None
        return self._create(
            relation,
            lookup_attr,
            lookup_value,
            attrs,
            owner=owner,
            links=links or {},
            truncate=truncate,
            truncations=truncations,
            line_number=line_number,
        )

    def _owner_links(self, relation: RelationDescriptor, owner: Any) -> dict[str, Any]:
        if owner is None or relation.kind not in (RelationKind.INVERSE_SINGLE, RelationKind.OWNED_MANY):
            return {}
        return {target_attr: getattr(owner, owner_attr) for owner_attr, target_attr in relation.key_pairs}

    def _link(self, entity: Any, relation: RelationDescriptor, owner: Any) -> None:
        for attr, value in self._owner_links(relation, owner).items():
            if value is not None and getattr(entity, attr) != value:
                setattr(entity, attr, value)

    def assign(
        self,
        entity: Any,
        relation: RelationDescriptor,
        attrs: Mapping[str, Any],
        *,
        truncate: bool = True,
        truncations: list[TruncationRecord] | None = None,
        line_number: int | None = None,
        lookup: tuple[str | None, Any] = (None, None),
    ) -> None:
        """Set mapped values on a related entity, cutting strings to their column length."""
        descriptor = self.describe(relation)
        for name, value in attrs.items():
            attr_name = descriptor.match_attribute(name)
            if attr_name is None:
                continue
            attr = descriptor.attributes[attr_name]
            if isinstance(value, str) and attr.max_length is not None and len(value) > attr.max_length:
                if not truncate:
                    raise RelationResolutionError(
                        relation.qualified_name,
                        lookup[0],
                        lookup[1],
                        "data_too_long",
                        detail=f"{attr_name} exceeds {attr.max_length} characters",
                    )
                if truncations is not None:
                    truncations.append(
                        TruncationRecord(
                            row=line_number,
                            field=f"{relation.name}.{attr_name}",
                            original_length=len(value),
                            max_length=attr.max_length,
                        )
                    )
                value = value[: attr.max_length]
            setattr(entity, attr_name, value)

    def create(
        self,
        relation: RelationDescriptor,
        attributes: Mapping[str, Any],
        *,
        owner: Any = None,
        links: Mapping[str, Any] | None = None,
        truncate: bool = True,
        truncations: list[TruncationRecord] | None = None,
        line_number: int | None = None,
    ) -> Any:
        """Create a related entity without a lookup (dependents that have no natural key)."""
        return self._create(
            relation,
            None,
            None,
            dict(attributes),
            owner=owner,
            links=links or {},
            truncate=truncate,
            truncations=truncations,
            line_number=line_number,
        )

    def _create(
        self,
        relation: RelationDescriptor,
        lookup_attr: str | None,
        lookup_value: Any,
        attrs: dict[str, Any],
        *,
        owner: Any,
        links: Mapping[str, Any],
        truncate: bool,
        truncations: list[TruncationRecord] | None,
        line_number: int | None,
    ) -> Any:
        descriptor = self.describe(relation)
        values: dict[str, Any] = {}
        for name, value in attrs.items():
            attr_name = descriptor.match_attribute(name)
            if attr_name is not None and not _is_blank(value):
                values[attr_name] = value
        if lookup_attr is not None:
            values[lookup_attr] = lookup_value
        values.update({k: v for k, v in links.items() if v is not None})
        values.update({k: v for k, v in self._owner_links(relation, owner).items() if v is not None})

        missing = [a for a in descriptor.required_attributes if _is_blank(values.get(a))]
        if missing:
            raise RelationResolutionError(
                relation.qualified_name,
                lookup_attr,
                lookup_value,
                "missing_required",
                missing_fields=missing,
                create_if_missing=True,
            )

        entity = relation.target()
        self.assign(
            entity, relation, values,
            truncate=truncate, truncations=truncations, line_number=line_number,
            lookup=(lookup_attr, lookup_value),
        )
        self.session.add(entity)
        try:
            self.session.flush()
        except (IntegrityError, DataError, StatementError) as e:
            raise RelationResolutionError.from_storage_error(
                e,
                relation.qualified_name,
                lookup_attr,
                lookup_value,
                create_if_missing=True,
            ) from e
        logger.debug("created %s %s=%r", descriptor.name, lookup_attr, lookup_value)
        return entity
