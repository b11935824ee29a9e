from __future__ import annotations

import logging
from logging.handlers import BufferingHandler
from typing import Any

import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError

from flowmap.config.loader import parse_mapping
from flowmap.errors import DuplicateKeyError, RelationResolutionError, ValidationError
from flowmap.models.flow_run import TruncationRecord
from flowmap.models.mapping import EntityMapping
from flowmap.models.row import Row
from flowmap.services.record_loader import RecordLoader
from sample_models import Author, Book, Chapter, Profile, Tag, book_tags

"""RecordLoader against a SQLite database built from the sample models."""


def _mapping(model: str, columns: list[dict[str, Any]], **options: Any) -> EntityMapping:
    doc = {"name": "test", "mappings": [{"model": model, "columns": columns, "options": options or None}]}
    return parse_mapping(doc).mappings[0]


def _count(session, model) -> int:
    return session.scalar(select(func.count()).select_from(model))


def _seed_author(session, email: str = "ada@example.com", name: str = "Ada") -> Author:
    author = Author(email=email, name=name)
    session.add(author)
    session.commit()
    return author


BOOK_COLUMNS = [
    {"source": "isbn", "target": "isbn"},
    {"source": "title", "target": "title"},
    {"source": "email", "target": "author.email"},
]


def test_book_creates_missing_author(session, models):
    mapping = _mapping(
        "Book",
        [
            {"source": "isbn", "target": "isbn"},
            {"source": "title", "target": "title"},
            {"source": "email", "target": "author.email+"},
            {"source": "name", "target": "author.name"},
        ],
        unique_key="isbn",
    )
    loader = RecordLoader(session, models)
    first = Row(fields={"isbn": "1", "title": "Dune", "email": "frank@example.com", "name": "Frank"}, line_number=1)
    second = Row(fields={"isbn": "2", "title": "Emperor", "email": "frank@example.com", "name": "Frank"}, line_number=2)

    book = loader.load(first, mapping)
    session.commit()
    other = loader.load(second, mapping)
    session.commit()

    assert book.author.email == "frank@example.com"
    assert book.author.name == "Frank"
    assert other.author_id == book.author_id
    assert _count(session, Author) == 1
    assert _count(session, Book) == 2


def test_missing_required_parent_fields(session, models):
    mapping = _mapping(
        "Book",
        [
            {"source": "isbn", "target": "isbn"},
            {"source": "title", "target": "title"},
            {"source": "email", "target": "author+.email"},
        ],
    )
    loader = RecordLoader(session, models)
    row = Row(fields={"isbn": "1", "title": "Dune", "email": "frank@example.com"}, line_number=1)

    with pytest.raises(RelationResolutionError) as info:
        loader.load(row, mapping)
    session.rollback()

    assert info.value.kind == "missing_required"
    assert info.value.missing_fields == ("name",)
    assert "Missing: name." in str(info.value)
    assert _count(session, Book) == 0


def test_lookup_only_parent_leaves_foreign_key_empty(session, models):
    mapping = _mapping("Book", BOOK_COLUMNS)
    loader = RecordLoader(session, models)
    row = Row(fields={"isbn": "1", "title": "Dune", "email": "nobody@example.com"}, line_number=1)

    with pytest.raises(IntegrityError):
        loader.load(row, mapping)
    session.rollback()


def test_validation_rules_run_before_loading(session, models):
    mapping = _mapping(
        "Author",
        [
            {"source": "email", "target": "email", "validation_rule": "required|email"},
            {"source": "name", "target": "name", "validation_rule": "required|max:50"},
        ],
    )
    loader = RecordLoader(session, models)
    row = Row(fields={"email": "not-an-email", "name": None}, line_number=4)

    with pytest.raises(ValidationError) as info:
        loader.load(row, mapping)

    assert set(info.value.errors) == {"email", "name"}
    assert str(info.value) == "Validation failed for row 4"
    assert _count(session, Author) == 0


@pytest.mark.parametrize("strategy", ["error", "skip", "update"])
def test_duplicate_strategies(session, models, strategy):
    _seed_author(session)
    mapping = _mapping("Book", BOOK_COLUMNS, unique_key="isbn", duplicate_strategy=strategy)
    loader = RecordLoader(session, models)
    loader.load(Row(fields={"isbn": "1", "title": "Dune", "email": "ada@example.com"}, line_number=1), mapping)
    session.commit()

    again = Row(fields={"isbn": "1", "title": "Dune (revised)", "email": "ada@example.com"}, line_number=2)
    if strategy == "error":
        with pytest.raises(DuplicateKeyError, match="isbn=1"):
            loader.load(again, mapping)
        session.rollback()
    else:
        result = loader.load(again, mapping)
        session.commit()
        if strategy == "skip":
            assert result is None
        else:
            assert result.title == "Dune (revised)"

    titles = session.scalars(select(Book.title)).all()
    assert titles == (["Dune (revised)"] if strategy == "update" else ["Dune"])


def test_long_strings_are_truncated_and_recorded(session, models):
    _seed_author(session)
    mapping = _mapping("Book", BOOK_COLUMNS)
    loader = RecordLoader(session, models)
    title = "A" * 40
    truncations: list[TruncationRecord] = []

    book = loader.load(Row(fields={"isbn": "1", "title": title, "email": "ada@example.com"}, line_number=3), mapping, truncations)
    session.commit()

    assert book.title == "A" * 30
    assert truncations == [TruncationRecord(row=3, field="title", original_length=40, max_length=30)]


def test_inverse_single_dependent_is_created_then_updated(session, models):
    mapping = _mapping(
        "Author",
        [
            {"source": "email", "target": "email"},
            {"source": "name", "target": "name"},
            {"source": "bio", "target": "profile+.bio"},
        ],
        unique_key="email",
        duplicate_strategy="update",
    )
    loader = RecordLoader(session, models)

    author = loader.load(Row(fields={"email": "ada@example.com", "name": "Ada", "bio": "first"}, line_number=1), mapping)
    session.commit()
    loader.load(Row(fields={"email": "ada@example.com", "name": "Ada", "bio": "second"}, line_number=2), mapping)
    session.commit()

    assert _count(session, Profile) == 1
    profile = session.scalars(select(Profile)).one()
    assert profile.bio == "second"
    assert profile.author_id == author.id


def test_owned_many_items_from_nested_values(session, models):
    _seed_author(session)
    mapping = _mapping(
        "Book",
        BOOK_COLUMNS
        + [
            {"source": "chapters", "target": "chapters.*.number"},
            {"source": "chapters", "target": "chapters.*.title"},
        ],
        unique_key="isbn",
        duplicate_strategy="update",
        relation_sync="replace",
    )
    loader = RecordLoader(session, models)
    first = Row(
        fields={
            "isbn": "1",
            "title": "Dune",
            "email": "ada@example.com",
            "chapters": [{"number": 1, "title": "Intro"}, {"number": 2, "title": "Arrakis"}],
        },
        line_number=1,
    )
    book = loader.load(first, mapping)
    session.commit()
    assert sorted(c.number for c in book.chapters) == [1, 2]

    second = Row(
        fields={
            "isbn": "1",
            "title": "Dune",
            "email": "ada@example.com",
            "chapters": [{"number": 3, "title": "Sietch"}],
        },
        line_number=2,
    )
    loader.load(second, mapping)
    session.commit()

    chapters = session.scalars(select(Chapter).where(Chapter.book_id == book.id)).all()
    assert [(c.number, c.title) for c in chapters] == [(3, "Sietch")]


def test_many_to_many_with_pivot_attribute(session, models):
    _seed_author(session)
    mapping = _mapping(
        "Book",
        BOOK_COLUMNS
        + [
            {
                "source": "tags",
                "target": "tags.name",
                "relation_lookup": {"field": "name", "create_if_missing": True, "delimiter": ","},
            },
            {"source": "role", "target": "tags.pivot.role"},
        ],
        unique_key="isbn",
        duplicate_strategy="update",
    )
    loader = RecordLoader(session, models)
    loader.load(
        Row(fields={"isbn": "1", "title": "Dune", "email": "ada@example.com", "tags": "scifi, classic", "role": "primary"}, line_number=1),
        mapping,
    )
    session.commit()
    book = loader.load(
        Row(fields={"isbn": "1", "title": "Dune", "email": "ada@example.com", "tags": "scifi", "role": "secondary"}, line_number=2),
        mapping,
    )
    session.commit()

    assert sorted(session.scalars(select(Tag.name)).all()) == ["classic", "scifi"]
    rows = session.execute(
        select(Tag.name, book_tags.c.role)
        .join(book_tags, book_tags.c.tag_id == Tag.id)
        .where(book_tags.c.book_id == book.id)
        .order_by(Tag.name)
    ).all()
    # rows of one run accumulate, the repeated tag gets the new pivot value
    assert [tuple(r) for r in rows] == [("classic", "primary"), ("scifi", "secondary")]
    assert sorted(t.name for t in book.tags) == ["classic", "scifi"]


def test_unknown_target_is_dropped_with_one_warning(session, models):
    _seed_author(session)
    mapping = _mapping("Book", BOOK_COLUMNS + [{"source": "pages", "target": "pages"}])
    loader = RecordLoader(session, models)
    captured = BufferingHandler(capacity=100)
    log = logging.getLogger("flowmap.services.record_loader")
    log.addHandler(captured)
    try:
        loader.load(Row(fields={"isbn": "1", "title": "Dune", "email": "ada@example.com", "pages": "412"}, line_number=1), mapping)
        loader.load(Row(fields={"isbn": "2", "title": "Emperor", "email": "ada@example.com", "pages": "300"}, line_number=2), mapping)
    finally:
        log.removeHandler(captured)
    session.commit()

    warnings = [r for r in captured.buffer if "'pages' ignored" in r.getMessage()]
    assert len(warnings) == 1
    assert _count(session, Book) == 2


@pytest.mark.parametrize(
    ("bio_target", "website_target", "expected"),
    [
        ("profile.bio", "profile.?website", (None, "old")),
        ("profile.bio", "profile.website", (None, None)),
        ("?profile.bio", "?profile.website", ("old", "old")),
    ],
)
def test_blank_relation_values_are_written_unless_optional(session, models, bio_target, website_target, expected):
    author = _seed_author(session)
    session.add(Profile(author_id=author.id, bio="old", website="old"))
    session.commit()
    mapping = _mapping(
        "Author",
        [
            {"source": "email", "target": "email"},
            {"source": "bio", "target": bio_target},
            {"source": "website", "target": website_target},
        ],
        unique_key="email",
        duplicate_strategy="update",
    )

    RecordLoader(session, models).load(
        Row(fields={"email": "ada@example.com", "bio": None, "website": None}, line_number=1), mapping
    )
    session.commit()

    profile = session.scalars(select(Profile)).one()
    assert (profile.bio, profile.website) == expected


def test_blank_optional_relation_creates_nothing(session, models):
    mapping = _mapping(
        "Author",
        [
            {"source": "email", "target": "email"},
            {"source": "name", "target": "name"},
            {"source": "bio", "target": "?profile+.bio"},
        ],
    )
    RecordLoader(session, models).load(Row(fields={"email": "ada@example.com", "name": "Ada", "bio": ""}, line_number=1), mapping)
    session.commit()

    assert _count(session, Author) == 1
    assert _count(session, Profile) == 0
