# Shared pytest fixtures
from __future__ import annotations

import tempfile
from collections.abc import Callable, Iterable, Mapping
from pathlib import Path
from typing import Any

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session

from flowmap.logging.init import reset_logging
from flowmap.models.row import Row
from flowmap.services.relation_types import ModelRegistry
from sample_models import Base


@pytest.fixture()
def temp_workdir(monkeypatch) -> Path:
    with tempfile.TemporaryDirectory() as d:
        p = Path(d)
        (p / "data").mkdir()
        (p / "logs").mkdir()
        monkeypatch.chdir(p)
        yield p


@pytest.fixture()
def clean_env(monkeypatch) -> None:
    for name in ("DATABASE_URL", "PGDSN", "PGHOST", "PGPORT", "PGUSER", "PGPASSWORD", "PGDATABASE"):
        monkeypatch.delenv(name, raising=False)


@pytest.fixture()
def fresh_logging():
    reset_logging()
    yield
    reset_logging()


@pytest.fixture()
def engine(tmp_path: Path):
    eng = create_engine(f"sqlite:///{tmp_path / 'flowmap-test.db'}")
    Base.metadata.create_all(eng)
    yield eng
    eng.dispose()


@pytest.fixture()
def session(engine):
    s = Session(engine, autoflush=True, expire_on_commit=False)
    yield s
    s.close()


@pytest.fixture()
def models() -> ModelRegistry:
    return ModelRegistry.from_base(Base)


@pytest.fixture()
def make_rows() -> Callable[[Iterable[Mapping[str, Any]]], list[Row]]:
    def build(records: Iterable[Mapping[str, Any]]) -> list[Row]:
        return [Row(fields=dict(r), line_number=i) for i, r in enumerate(records, start=1)]
    return build


@pytest.fixture()
def sample_mapping_yaml() -> str:
    return """version: "1.0"
name: authors and books
flow_config:
  error_policy: continue
mappings:
  - model: Author
    execution_order: 1
    columns:
      - source: author_email
        target: email
        transforms: [trim, lower]
        validation_rule: required|email
      - source: author_name
        target: name
    options:
      unique_key: email
      duplicate_strategy: update
  - model: Book
    execution_order: 2
    columns:
      - source: isbn
        target: isbn
      - source: title
        target: title
      - source: author_email
        target: author.email
        transforms: [trim, lower]
    options:
      unique_key: [isbn]
      duplicate_strategy: update
"""


@pytest.fixture()
def write_mapping(temp_workdir: Path, sample_mapping_yaml: str) -> Path:
    path = temp_workdir / "mapping.yml"
    path.write_text(sample_mapping_yaml, encoding="utf-8")
    return path
