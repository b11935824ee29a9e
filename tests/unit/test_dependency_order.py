from __future__ import annotations

import pytest
from sqlalchemy import ForeignKey
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

from flowmap.errors import DependencyCycleError
from flowmap.models.mapping import EntityMapping, MappingDefinition, MappingKind
from flowmap.services.dependency_graph import (
    DependencyGraphBuilder,
    validate_mapping_dependencies,
)
from flowmap.services.relation_types import DescriptorRegistry, ModelRegistry
from sample_models import Author, Book, Chapter, Country, Tag

"""Unit tests for dependency ordering and mapping order validation."""


class CycleBase(DeclarativeBase):
    pass


class Left(CycleBase):
    __tablename__ = "cycle_left"

    id: Mapped[int] = mapped_column(primary_key=True)
    right_id: Mapped[int] = mapped_column(ForeignKey("cycle_right.id"))
    right: Mapped[Right] = relationship(foreign_keys=[right_id])


class Right(CycleBase):
    __tablename__ = "cycle_right"

    id: Mapped[int] = mapped_column(primary_key=True)
    left_id: Mapped[int] = mapped_column(ForeignKey("cycle_left.id"))
    left: Mapped[Left] = relationship(foreign_keys=[left_id])


class Downstream(CycleBase):
    __tablename__ = "cycle_downstream"

    id: Mapped[int] = mapped_column(primary_key=True)
    left_id: Mapped[int] = mapped_column(ForeignKey("cycle_left.id"))
    left: Mapped[Left] = relationship()


def test_parents_come_before_children():
    order = DependencyGraphBuilder().build_order([Chapter, Book, Author])
    assert order == [Author, Book, Chapter]


def test_independent_types_keep_declaration_order():
    assert DependencyGraphBuilder().build_order([Tag, Country]) == [Tag, Country]
    assert DependencyGraphBuilder().build_order([Country, Tag]) == [Country, Tag]


def test_required_only_ignores_nullable_parents():
    loose = DependencyGraphBuilder()
    strict = DependencyGraphBuilder(required_only=True)
    assert [(e.parent, e.child) for e in loose.edges([Author, Country])] == [(Country, Author)]
    assert strict.edges([Author, Country]) == []
    assert strict.build_order([Author, Country]) == [Author, Country]


def test_types_outside_the_set_are_not_edges():
    edges = DependencyGraphBuilder().edges([Book])
    assert edges == []


def test_cycle_reports_only_members():
    with pytest.raises(DependencyCycleError) as excinfo:
        DependencyGraphBuilder().build_order([Downstream, Left, Right])
    assert excinfo.value.members == ("Left", "Right")
    assert "Left, Right" in str(excinfo.value)


def test_validate_order_reports_parent_after_child():
    violations = DependencyGraphBuilder().validate_order({Author: 2, Book: 1})
    assert len(violations) == 1
    assert violations[0].message == (
        "Model Book (order: 1) depends on Author (order: 2). "
        "Dependencies must have lower execution_order."
    )
    assert DependencyGraphBuilder().validate_order([Author, Book]) == []


def test_validate_mapping_dependencies_messages():
    definition = MappingDefinition(
        name="m",
        mappings=(
            EntityMapping(model="Book", execution_order=1, columns=()),
            EntityMapping(model="Author", execution_order=2, columns=()),
            EntityMapping(
                model="Book",
                execution_order=0,
                columns=(),
                kind=MappingKind.ASSOCIATION_SYNC,
                relation_path="Book.tags",
            ),
        ),
    )
    models = ModelRegistry([Author, Book, Tag])
    problems = validate_mapping_dependencies(definition, models, DescriptorRegistry())
    assert any(p.startswith("Model Book (order: 1) depends on Author (order: 2)") for p in problems)
    assert "Pivot mapping 'Book.tags' (order: 0) runs before Book (order: 1)" in problems


def test_validate_mapping_dependencies_flags_non_association_pivot():
    definition = MappingDefinition(
        name="m",
        mappings=(
            EntityMapping(
                model="Book",
                execution_order=1,
                columns=(),
                kind=MappingKind.ASSOCIATION_SYNC,
                relation_path="Book.chapters",
            ),
        ),
    )
    problems = validate_mapping_dependencies(definition, ModelRegistry([Book, Chapter]))
    assert problems == ["Pivot mapping 'Book.chapters' does not name a many-to-many relation"]


def test_validate_mapping_dependencies_flags_duplicate_orders():
    definition = MappingDefinition(
        name="m",
        mappings=(
            EntityMapping(model="Author", execution_order=1, columns=()),
            EntityMapping(model="Tag", execution_order=1, columns=()),
        ),
    )
    problems = validate_mapping_dependencies(definition, ModelRegistry([Author, Tag]))
    assert problems == ["Multiple mappings have execution_order 1: Author, Tag"]
