from __future__ import annotations

import json
import logging
from collections import defaultdict
from collections.abc import Mapping
from functools import lru_cache
from pathlib import Path
from typing import Any

import jsonschema
import yaml
from jsonschema.exceptions import ValidationError as SchemaValidationError

from ..errors import MappingStructureError
from ..models.mapping import (
    AssociationStrategy,
    ColumnMapping,
    DuplicateStrategy,
    EntityMapping,
    ErrorPolicy,
    FlowConfig,
    MappingDefinition,
    MappingKind,
    MappingOptions,
    RelationLookup,
    RelationSync,
)
from ..services.path_parser import parse_target_path
from ..services.validation import parse_rules
from ..transforms.engine import TransformEngine
from ..transforms.interactive import Prompter, resolve_interactive

"""Mapping document loading.

Responsibilities:
- Read YAML (``.yml`` / ``.yaml``) or JSON mapping documents
- Validate them against the bundled JSON Schema (``mapping_schema.json``)
- Build the frozen ``MappingDefinition`` models, applying defaults
- Check what the schema cannot express: target path grammar, transform keys
  (bare interactive keys are resolved first), validation rules, pivot paths
  and duplicate execution orders

Every failure is a ``MappingStructureError``; nothing here touches the
database or the model registry.
"""

__all__ = [
    "SCHEMA_PATH",
    "load_mapping",
    "parse_mapping",
    "dump_mapping",
    "save_mapping",
]

logger = logging.getLogger(__name__)

SCHEMA_PATH = Path(__file__).with_name("mapping_schema.json")


@lru_cache(maxsize=1)
def _schema() -> dict[str, Any]:
    if not SCHEMA_PATH.exists():
        raise MappingStructureError(f"mapping schema not found: {SCHEMA_PATH}")
    try:
        return json.loads(SCHEMA_PATH.read_text(encoding="utf-8"))
    except json.JSONDecodeError as e:
        raise MappingStructureError(f"invalid schema file: {e}") from e


def _validate_schema(data: Any) -> None:
    try:
        jsonschema.validate(data, _schema())
    except SchemaValidationError as e:
        where = "/".join(str(p) for p in e.absolute_path) or "<root>"
        raise MappingStructureError(f"mapping validation failed at {where}: {e.message}") from e


def _enum(enum_type: type, value: Any, default: Any) -> Any:
    return default if value is None else enum_type(value)


def _column(raw: Mapping[str, Any], engine: TransformEngine, prompter: Prompter | None) -> ColumnMapping:
    target = raw["target"]
    parse_target_path(target)
    transforms = resolve_interactive(tuple(raw.get("transforms") or ()), engine, prompter)
    rule = raw.get("validation_rule") or None
    if rule:
        parse_rules(rule)
    lookup = None
    if raw.get("relation_lookup"):
        lk = raw["relation_lookup"]
        lookup = RelationLookup(
            field=lk["field"],
            create_if_missing=bool(lk.get("create_if_missing", False)),
            delimiter=lk.get("delimiter") or None,
        )
    return ColumnMapping(
        source=raw["source"],
        target=target,
        transforms=transforms,
        default=raw.get("default"),
        validation_rule=rule,
        relation_lookup=lookup,
    )


def _options(raw: Mapping[str, Any] | None) -> MappingOptions:
    raw = raw or {}
    unique_key = raw.get("unique_key")
    if isinstance(unique_key, str):
        unique_key = (unique_key,)
    return MappingOptions(
        unique_key=tuple(unique_key or ()),
        duplicate_strategy=_enum(DuplicateStrategy, raw.get("duplicate_strategy"), DuplicateStrategy.ERROR),
        association_strategy=_enum(
            AssociationStrategy, raw.get("belongs_to_many_strategy"), AssociationStrategy.SYNC
        ),
        relation_sync=_enum(RelationSync, raw.get("relation_sync"), RelationSync.KEEP),
    )


def _entity(
    raw: Mapping[str, Any],
    position: int,
    engine: TransformEngine,
    prompter: Prompter | None,
) -> EntityMapping:
    order = raw.get("execution_order", raw.get("executionOrder"))
    kind = MappingKind(raw.get("type") or MappingKind.STANDARD.value)
    relation_path = raw.get("relation_path") or None
    if kind is MappingKind.ASSOCIATION_SYNC:
        if not relation_path or "." not in relation_path:
            raise MappingStructureError(
                f"pivot_sync mapping for {raw['model']} needs relation_path 'Model.relation'"
            )
    columns = []
    for c in raw["columns"]:
        try:
            columns.append(_column(c, engine, prompter))
        except MappingStructureError as e:
            raise MappingStructureError(f"{raw['model']}: column '{c['source']}': {e}") from e
    return EntityMapping(
        model=raw["model"],
        execution_order=position if order is None else int(order),
        columns=tuple(columns),
        options=_options(raw.get("options")),
        kind=kind,
        relation_path=relation_path,
    )


def _flow_config(raw: Mapping[str, Any] | None) -> FlowConfig:
    raw = raw or {}
    defaults = FlowConfig()
    return FlowConfig(
        chunk_size=int(raw.get("chunk_size", defaults.chunk_size)),
        error_policy=_enum(ErrorPolicy, raw.get("error_policy"), defaults.error_policy),
        skip_empty_rows=bool(raw.get("skip_empty_rows", defaults.skip_empty_rows)),
        truncate_long_fields=bool(raw.get("truncate_long_fields", defaults.truncate_long_fields)),
    )


def _check_orders(mappings: tuple[EntityMapping, ...]) -> None:
    by_order: dict[int, list[str]] = defaultdict(list)
    for m in mappings:
        by_order[m.execution_order].append(m.label)
    for order, labels in sorted(by_order.items()):
        if len(labels) > 1:
            raise MappingStructureError(
                f"Multiple mappings have execution_order {order}: {', '.join(labels)}"
            )


def parse_mapping(
    data: Any,
    *,
    engine: TransformEngine | None = None,
    prompter: Prompter | None = None,
) -> MappingDefinition:
    """Build a MappingDefinition from an already-decoded document.

    Parameters
    ----------
    data: the decoded YAML/JSON document
    engine: transform engine used to check transform keys (custom transforms
        must be registered on it before loading)
    prompter: asked for parameters of bare interactive transforms; without
        one the prompt defaults are used

    Raises
    ------
    MappingStructureError: schema violation, malformed target path, unknown
        transform or validation rule, pivot mapping without relation_path,
        duplicate execution_order.
    """
    _validate_schema(data)
    engine = engine or TransformEngine()
    mappings = tuple(
        _entity(raw, position, engine, prompter)
        for position, raw in enumerate(data["mappings"], start=1)
    )
    _check_orders(mappings)
    version = data.get("version", "1.0")
    definition = MappingDefinition(
        name=data["name"],
        mappings=mappings,
        version=str(version),
        description=data.get("description"),
        source_schema=data.get("source_schema"),
        flow_config=_flow_config(data.get("flow_config")),
    )
    logger.debug("mapping '%s' loaded with %d entity mapping(s)", definition.name, len(mappings))
    return definition


def load_mapping(
    path: Path | str,
    *,
    engine: TransformEngine | None = None,
    prompter: Prompter | None = None,
) -> MappingDefinition:
    path = Path(path)
    if not path.exists():
        raise MappingStructureError(f"mapping file not found: {path}")
    text = path.read_text(encoding="utf-8")
    if path.suffix.lower() == ".json":
        try:
            data = json.loads(text)
        except json.JSONDecodeError as e:
            raise MappingStructureError(f"invalid json: {e}") from e
    else:
        try:
            data = yaml.safe_load(text)
        except yaml.YAMLError as e:
            raise MappingStructureError(f"invalid yaml: {e}") from e
    if not isinstance(data, Mapping):
        raise MappingStructureError(f"mapping document must be an object: {path}")
    return parse_mapping(dict(data), engine=engine, prompter=prompter)


def _dump_column(column: ColumnMapping) -> dict[str, Any]:
    out: dict[str, Any] = {"source": column.source, "target": column.target}
    if column.transforms:
        out["transforms"] = list(column.transforms)
    if column.default is not None:
        out["default"] = column.default
    if column.validation_rule:
        out["validation_rule"] = column.validation_rule
    if column.relation_lookup is not None:
        lookup: dict[str, Any] = {
            "field": column.relation_lookup.field,
            "create_if_missing": column.relation_lookup.create_if_missing,
        }
        if column.relation_lookup.delimiter:
            lookup["delimiter"] = column.relation_lookup.delimiter
        out["relation_lookup"] = lookup
    return out


def dump_mapping(definition: MappingDefinition) -> dict[str, Any]:
    """Serialize back to the document shape accepted by ``parse_mapping``."""
    mappings = []
    for m in definition.mappings:
        entry: dict[str, Any] = {
            "model": m.model,
            "execution_order": m.execution_order,
            "type": m.kind.value,
        }
        if m.relation_path:
            entry["relation_path"] = m.relation_path
        entry["columns"] = [_dump_column(c) for c in m.columns]
        entry["options"] = {
            "unique_key": list(m.options.unique_key),
            "duplicate_strategy": m.options.duplicate_strategy.value,
            "belongs_to_many_strategy": m.options.association_strategy.value,
            "relation_sync": m.options.relation_sync.value,
        }
        mappings.append(entry)
    fc = definition.flow_config
    doc: dict[str, Any] = {"version": definition.version, "name": definition.name}
    if definition.description is not None:
        doc["description"] = definition.description
    if definition.source_schema is not None:
        doc["source_schema"] = definition.source_schema
    doc["flow_config"] = {
        "chunk_size": fc.chunk_size,
        "error_policy": fc.error_policy.value,
        "skip_empty_rows": fc.skip_empty_rows,
        "truncate_long_fields": fc.truncate_long_fields,
    }
    doc["mappings"] = mappings
    return doc


def save_mapping(definition: MappingDefinition, path: Path | str) -> Path:
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    doc = dump_mapping(definition)
    if path.suffix.lower() == ".json":
        path.write_text(json.dumps(doc, indent=2, ensure_ascii=False, default=str), encoding="utf-8")
    else:
        path.write_text(yaml.safe_dump(doc, sort_keys=False, allow_unicode=True), encoding="utf-8")
    return path
