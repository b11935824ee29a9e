from __future__ import annotations

import re
from functools import lru_cache

from ..errors import MappingStructureError
from ..models.relation import NotFound, RelationDescriptor, RelationKind
from ..models.target_path import PathSegment, TargetPath

"""Target path parsing.

Grammar (segments separated by '.'):

    segment   := ['?'] NAME ['+']  |  '*'  |  'pivot'
    NAME      := [A-Za-z_][A-Za-z0-9_]*

- ``?`` marks a segment optional: a blank value for it is left out instead of
  written as null, and a blank optional relation is skipped altogether.
- ``+`` asks for the relation to be created when the lookup misses. On the
  final (attribute) segment it applies to the relation right before it, so
  ``author.email+`` and ``author+.email`` parse to the same structure.
- ``*`` repeats the preceding relation for each element of the source value.
- ``pivot`` right before the final segment addresses an attribute of the
  association row of the preceding many-to-many relation.

``parse_target_path`` is pure and cached. ``TargetPathParser.check`` adds the
schema-aware rules (``*`` only after collection relations, ``pivot`` only
after many-to-many relations) once a relation resolver is available.
"""

__all__ = [
    "parse_target_path",
    "serialize_target_path",
    "TargetPathParser",
]

_SEGMENT_RE = re.compile(r"^(?P<optional>\?)?(?P<name>[A-Za-z_][A-Za-z0-9_]*)(?P<create>\+)?$")
ARRAY_TOKEN = "*"
PIVOT_TOKEN = "pivot"


def _bad(target: str, reason: str) -> MappingStructureError:
    return MappingStructureError(f"invalid target path '{target}': {reason}")


def _segment(target: str, token: str) -> dict:
    m = _SEGMENT_RE.match(token)
    if m is None:
        raise _bad(target, f"malformed segment '{token}'")
    return {
        "name": m.group("name"),
        "is_optional": bool(m.group("optional")),
        "create_if_missing": bool(m.group("create")),
        "is_array": False,
        "pivot": False,
    }


@lru_cache(maxsize=2048)
def parse_target_path(target: str) -> TargetPath:
    """Parse a target string into a TargetPath.

    Raises
    ------
    MappingStructureError: empty path, empty or malformed segment, misplaced
        ``*`` / ``pivot`` / ``+`` marker.
    """
    if not isinstance(target, str) or not target.strip():
        raise MappingStructureError("invalid target path: empty")
    text = target.strip()
    tokens = text.split(".")
    if any(t == "" for t in tokens):
        raise _bad(text, "empty segment")

    # Mutable working copies; frozen PathSegments are built at the end.
    relations: list[dict] = []
    *chain, last_token = tokens
    for i, token in enumerate(chain):
        if token == ARRAY_TOKEN:
            if not relations or tokens[i - 1] in (ARRAY_TOKEN, PIVOT_TOKEN):
                raise _bad(text, "'*' must directly follow a relation segment")
            relations[-1]["is_array"] = True
            continue
        if token == PIVOT_TOKEN and relations and i == len(chain) - 1:
            if relations[-1]["pivot"]:
                raise _bad(text, "duplicate 'pivot' segment")
            relations[-1]["pivot"] = True
            continue
        if relations and relations[-1]["pivot"]:
            raise _bad(text, "'pivot' must be followed by exactly one attribute")
        relations.append(_segment(text, token))

    if last_token == ARRAY_TOKEN:
        raise _bad(text, "'*' must directly follow a relation segment")
    attribute = _segment(text, last_token)
    if attribute["create_if_missing"]:
        if not relations:
            raise _bad(text, f"'+' on plain attribute '{attribute['name']}' needs a relation")
        relations[-1]["create_if_missing"] = True

    segments = [
        PathSegment(
            name=r["name"],
            is_relation=True,
            is_array=r["is_array"],
            is_optional=r["is_optional"],
            create_if_missing=r["create_if_missing"],
            pivot=r["pivot"],
        )
        for r in relations
    ]
    segments.append(
        PathSegment(name=attribute["name"], is_relation=False, is_optional=attribute["is_optional"])
    )
    return TargetPath(tuple(segments))


def serialize_target_path(path: TargetPath) -> str:
    """Inverse of ``parse_target_path`` up to equivalence (``+`` moves onto the relation)."""
    return str(path)


class TargetPathParser:
    """Schema-aware parser. ``resolver`` maps (entity_type, name) to a relation."""

    def __init__(self, resolver) -> None:
        self.resolver = resolver

    def check(self, path: TargetPath, entity_type: type) -> list[RelationDescriptor] | NotFound:
        """Resolve the relation chain of ``path`` starting at ``entity_type``.

        Returns the chain of RelationDescriptors, or NotFound for the first
        segment that is not a declared relation. Raises MappingStructureError
        when a marker is used on a relation kind that cannot carry it.
        """
        chain: list[RelationDescriptor] = []
        current = entity_type
        for seg in path.relations:
            rel = self.resolver.resolve(current, seg.name)
            if isinstance(rel, NotFound):
                return rel
            if seg.is_array and not rel.kind.is_collection:
                raise _bad(
                    str(path),
                    f"'*' must follow a collection relation; '{seg.name}' is {rel.kind.value}",
                )
            if seg.pivot and rel.kind is not RelationKind.MANY_TO_MANY:
                raise _bad(str(path), f"'pivot' needs a many-to-many relation; '{seg.name}' is {rel.kind.value}")
            chain.append(rel)
            current = rel.target
        return chain
