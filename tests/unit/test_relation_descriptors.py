from __future__ import annotations

import pytest

from flowmap.errors import MappingStructureError
from flowmap.models.relation import NotFound, RelationKind, normalize_name
from flowmap.services.relation_types import DescriptorRegistry, ModelRegistry, RelationTypeResolver
from sample_models import Author, Base, Book, Profile, Tag

"""Unit tests for entity descriptors, relation kinds and the model registry."""


@pytest.fixture()
def registry() -> DescriptorRegistry:
    return DescriptorRegistry()


def test_relation_kinds(registry):
    author = registry.describe(Author)
    assert author.relations["country"].kind is RelationKind.OWNED_SINGLE
    assert author.relations["profile"].kind is RelationKind.INVERSE_SINGLE
    assert author.relations["books"].kind is RelationKind.OWNED_MANY
    assert registry.describe(Book).relations["tags"].kind is RelationKind.MANY_TO_MANY
    assert registry.describe(Profile).relations["author"].kind is RelationKind.OWNED_SINGLE


def test_owned_single_keys_and_required_flag(registry):
    book_author = registry.describe(Book).relations["author"]
    assert book_author.required
    assert book_author.foreign_key_attribute == "author_id"
    assert book_author.key_pairs == (("author_id", "id"),)
    assert not registry.describe(Author).relations["country"].required


def test_inverse_single_keys(registry):
    profile = registry.describe(Author).relations["profile"]
    assert profile.key_pairs == (("id", "author_id"),)
    assert profile.foreign_key_attribute == "author_id"
    assert profile.target is Profile


def test_many_to_many_association_metadata(registry):
    tags = registry.describe(Book).relations["tags"]
    assert tags.association_table_name == "book_tags"
    assert tags.owner_key_pairs == (("id", "book_id"),)
    assert tags.target_key_pairs == (("id", "tag_id"),)
    assert tags.association_attributes == ("role",)
    assert tags.target_name == "Tag"
    assert tags.qualified_name == "Book.tags"


def test_attribute_descriptors(registry):
    book = registry.describe(Book)
    assert book.storage_name == "books"
    assert book.primary_key == ("id",)
    assert book.attributes["title"].max_length == 30
    assert book.attributes["title"].required
    assert not book.attributes["price"].required
    assert not book.attributes["id"].required
    assert book.attributes["isbn"].unique
    assert book.required_attributes == ("isbn", "title", "author_id")


def test_attribute_names_tolerate_case_styles(registry):
    book = registry.describe(Book)
    assert book.match_attribute("Title") == "title"
    assert book.match_attribute("authorId") == "author_id"
    assert book.match_attribute("publisher") is None
    assert book.relation("Tags").name == "tags"
    assert normalize_name("Author_Id") == normalize_name("authorId")


def test_descriptors_are_cached(registry):
    first = registry.describe(Book)
    assert Book in registry
    assert registry.describe(Book) is first


def test_unmapped_type_raises(registry):
    with pytest.raises(MappingStructureError, match="not a mapped entity type"):
        registry.describe(str)


def test_resolver_returns_not_found():
    resolver = RelationTypeResolver()
    missing = resolver.resolve(Book, "publisher")
    assert isinstance(missing, NotFound)
    assert missing.reason == "not a declared relation"
    plain = resolver.resolve(Book, "isbn")
    assert isinstance(plain, NotFound)
    assert plain.reason == "is a plain attribute, not a relation"
    assert resolver.kind_of(Book, "tags") is RelationKind.MANY_TO_MANY
    assert resolver.kind_of(Book, "publisher") is None


def test_model_registry_lookup():
    models = ModelRegistry.from_base(Base)
    assert models.get("Book") is Book
    assert models.get("sample_models.Tag") is Tag
    assert models.get("app.models.Author") is Author
    assert "Profile" in models
    assert models.names() == ["Author", "Book", "Chapter", "Country", "Profile", "Tag"]
    with pytest.raises(MappingStructureError, match="Unknown model: Publisher"):
        models.get("Publisher")


def test_model_registry_from_module():
    assert ModelRegistry.from_module("sample_models").get("Chapter").__tablename__ == "chapters"
    with pytest.raises(MappingStructureError, match="no declarative Base"):
        ModelRegistry.from_module("json")
