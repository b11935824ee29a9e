from __future__ import annotations

import json

import jsonschema
import pytest
import yaml
from jsonschema.exceptions import ValidationError

from flowmap.config.loader import SCHEMA_PATH, dump_mapping, parse_mapping

"""Mapping document schema contract."""


def _schema() -> dict:
    return json.loads(SCHEMA_PATH.read_text(encoding="utf-8"))


FULL_DOCUMENT = {
    "version": "1.0",
    "name": "library",
    "description": "authors, books and tags",
    "source_schema": {"columns": ["email", "isbn", "tags"]},
    "flow_config": {
        "chunk_size": 500,
        "error_policy": "stop",
        "skip_empty_rows": False,
        "truncate_long_fields": True,
    },
    "mappings": [
        {
            "model": "Author",
            "execution_order": 1,
            "type": "model",
            "columns": [
                {"source": "email", "target": "email", "transforms": ["trim", "lower"], "validation_rule": "required|email"},
                {"source": "__default_country", "target": "country.code", "default": "JP"},
            ],
            "options": {"unique_key": "email", "duplicate_strategy": "update", "relation_sync": "keep"},
        },
        {
            "model": "Book",
            "executionOrder": 2,
            "columns": [
                {
                    "source": "tags",
                    "target": "tags.name",
                    "relation_lookup": {"field": "name", "create_if_missing": True, "delimiter": ","},
                },
            ],
            "options": {"unique_key": ["isbn"], "belongs_to_many_strategy": "attach"},
        },
        {
            "model": "Book",
            "execution_order": 3,
            "type": "pivot_sync",
            "relation_path": "Book.tags",
            "columns": [
                {"source": "isbn", "target": "book.isbn"},
                {"source": "tag", "target": "tag.name+"},
                {"source": "role", "target": "pivot.role"},
            ],
        },
    ],
}


def test_full_document_is_valid():
    jsonschema.validate(FULL_DOCUMENT, _schema())


def test_dumped_mapping_stays_valid():
    definition = parse_mapping(FULL_DOCUMENT)
    dumped = dump_mapping(definition)
    jsonschema.validate(dumped, _schema())
    # YAML emit/parse keeps the document valid as well
    jsonschema.validate(yaml.safe_load(yaml.safe_dump(dumped)), _schema())


@pytest.mark.parametrize(
    "patch",
    [
        {"mappings": []},
        {"flow_config": {"chunk_size": 0}},
        {"flow_config": {"chunk_size": 100001}},
        {"flow_config": {"error_policy": "ignore"}},
        {"unexpected": True},
    ],
)
def test_invalid_top_level(patch):
    doc = {**FULL_DOCUMENT, **patch}
    with pytest.raises(ValidationError):
        jsonschema.validate(doc, _schema())


@pytest.mark.parametrize(
    "column",
    [
        {"source": "a"},
        {"target": "a"},
        {"source": "", "target": "a"},
        {"source": "a", "target": "a", "transforms": "trim"},
        {"source": "a", "target": "a", "relation_lookup": {"create_if_missing": True}},
        {"source": "a", "target": "a", "relation_lookup": {"field": "x", "delimiter": ""}},
    ],
)
def test_invalid_columns(column):
    doc = {"name": "x", "mappings": [{"model": "Author", "columns": [column]}]}
    with pytest.raises(ValidationError):
        jsonschema.validate(doc, _schema())


@pytest.mark.parametrize(
    "options",
    [
        {"duplicate_strategy": "merge"},
        {"belongs_to_many_strategy": "replace"},
        {"relation_sync": "delete"},
        {"unique_key": 3},
    ],
)
def test_invalid_options(options):
    doc = {"name": "x", "mappings": [{"model": "Author", "columns": [], "options": options}]}
    with pytest.raises(ValidationError):
        jsonschema.validate(doc, _schema())
