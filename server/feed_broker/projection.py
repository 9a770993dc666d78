"""
Projection Engine

Trims a document down to a whitelisted set of fields before it is queued
for a subscription. Only inclusion is supported:

    {"count": 1}                 keep only "count"
    {"count": 1, "meta.src": 1}  keep "count" and the "src" field of "meta"

Fields named in the projection but absent from the document are left out
of the result entirely; they never appear as None.
"""
from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

from .errors import ProjectionError


@dataclass(frozen=True)
class Projection:
    """Compiled inclusion list. Paths keep the order they were declared in."""

    paths: tuple[tuple[str, ...], ...]

    @property
    def fields(self) -> list[str]:
        return [".".join(path) for path in self.paths]


def compile_projection(spec: Mapping[str, Any] | None) -> Projection | None:
    """
    Validate a projection mapping.

    Returns None when spec is None or empty, meaning "retain all fields".

    Raises:
        ProjectionError: If spec is not a mapping, a field name is not a
                         non-empty string, or a marker is falsy (exclusion)
                         or a mapping (operator form).
    """
    if spec is None:
        return None
    if not isinstance(spec, Mapping):
        raise ProjectionError("projection must be a mapping", value=spec)

    paths: list[tuple[str, ...]] = []
    for field, marker in spec.items():
        if not isinstance(field, str) or not field:
            raise ProjectionError("projection field names must be non-empty strings", value=field)
        if isinstance(marker, Mapping):
            raise ProjectionError(
                "projection operators are not supported",
                field=field,
                value=marker,
            )
        if not marker:
            raise ProjectionError(
                "only inclusion projections are supported",
                field=field,
                value=marker,
            )
        path = tuple(field.split("."))
        if any(not part for part in path):
            raise ProjectionError(f"invalid field path '{field}'", field=field)
        paths.append(path)

    if not paths:
        return None
    return Projection(tuple(paths))


def project(projection: Projection | None, document: Mapping[str, Any]) -> Mapping[str, Any]:
    """
    Apply projection to document.

    With no projection the same document object is returned, so callers
    must treat the result as read-only.
    """
    if projection is None:
        return document

    result: dict[str, Any] = {}
    for path in projection.paths:
        _copy_path(document, result, path)
    return result


def _copy_path(source: Mapping[str, Any], target: dict[str, Any], path: tuple[str, ...]) -> None:
    head, rest = path[0], path[1:]
    if head not in source:
        return
    value = source[head]

    if not rest:
        target[head] = value
        return
    if not isinstance(value, Mapping):
        return

    if head in target:
        nested = target[head]
        if nested is value:
            # A shorter path already copied the whole subdocument.
            return
    else:
        nested = {}
    _copy_path(value, nested, rest)
    if nested:
        target[head] = nested
