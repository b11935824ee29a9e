from __future__ import annotations

from dataclasses import dataclass

"""TargetPath value objects.

A target path is derived from a column mapping's ``target`` string and is
never persisted. Every segment but the last names a relation; the last one
names the attribute that receives the value.
"""

__all__ = [
    "PathSegment",
    "TargetPath",
]


@dataclass(frozen=True)
class PathSegment:
    name: str
    is_relation: bool
    is_array: bool = False  # followed by '*' in the source string
    is_optional: bool = False  # leading '?'
    create_if_missing: bool = False  # trailing '+'
    pivot: bool = False  # followed by '.pivot': attribute lives on the association row


@dataclass(frozen=True)
class TargetPath:
    segments: tuple[PathSegment, ...]

    @property
    def attribute(self) -> str:
        return self.segments[-1].name

    @property
    def attribute_segment(self) -> PathSegment:
        return self.segments[-1]

    @property
    def relations(self) -> tuple[PathSegment, ...]:
        return self.segments[:-1]

    @property
    def is_nested(self) -> bool:
        return len(self.segments) > 1

    @property
    def targets_pivot(self) -> bool:
        return bool(self.relations) and self.relations[-1].pivot

    def __str__(self) -> str:
        parts: list[str] = []
        for seg in self.relations:
            token = ("?" if seg.is_optional else "") + seg.name + ("+" if seg.create_if_missing else "")
            parts.append(token)
            if seg.is_array:
                parts.append("*")
            if seg.pivot:
                parts.append("pivot")
        last = self.attribute_segment
        parts.append(("?" if last.is_optional else "") + last.name)
        return ".".join(parts)
