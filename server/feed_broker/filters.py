"""
Filter Matcher

Compiles the filter mapping supplied at subscribe time into a small
predicate tree and evaluates that tree against published documents.

Wire shape:
    {"count": 3}                       equality
    {"count": {"gt": 3}}               comparison (gt, gte, lt, lte, ne, eq, in)
    {"count": {"$gt": 1, "$lt": 5}}    several comparators are conjoined
    {"meta.source": "reuters"}         dotted paths descend into nested documents

Top-level fields are conjoined. compile_filter() raises FilterError for
anything it does not understand, so matches() never fails at publish time:
a missing field or a type mismatch simply does not match.

Usage:
    predicate = compile_filter({"count": {"gt": 3}})
    matches(predicate, {"body": "hello", "count": 4})   # True
"""
from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any, Union

from .errors import FilterError

ORDERING_OPS = frozenset({"gt", "gte", "lt", "lte"})
COMPARATORS = ORDERING_OPS | {"eq", "ne", "in"}

_MISSING = object()


# ── Predicate tree ────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class Equality:
    """`path == literal`."""

    path: tuple[str, ...]
    literal: Any


@dataclass(frozen=True)
class Comparison:
    """`path <op> literal` for op in gt, gte, lt, lte, ne."""

    path: tuple[str, ...]
    op: str
    literal: Any


@dataclass(frozen=True)
class Membership:
    """`path` equals any of `choices`."""

    path: tuple[str, ...]
    choices: tuple[Any, ...]


@dataclass(frozen=True)
class Conjunction:
    clauses: tuple["Predicate", ...]


Predicate = Union[Equality, Comparison, Membership, Conjunction]


# ── Compilation ───────────────────────────────────────────────────────────────

def compile_filter(spec: Mapping[str, Any] | None) -> Predicate | None:
    """
    Validate a filter mapping and build its predicate tree.

    Returns None when spec is None or empty (no filtering).

    Raises:
        FilterError: If the spec is not a mapping, names an unknown
                     comparator, or carries a literal the comparator
                     cannot use.
    """
    if spec is None:
        return None
    if not isinstance(spec, Mapping):
        raise FilterError("filter must be a mapping", value=spec)

    clauses: list[Predicate] = []
    for field, literal in spec.items():
        path = _parse_path(field)
        if isinstance(literal, Mapping):
            clauses.extend(_compile_operators(field, path, literal))
        else:
            clauses.append(Equality(path, _freeze(literal)))

    if not clauses:
        return None
    if len(clauses) == 1:
        return clauses[0]
    return Conjunction(tuple(clauses))


def _parse_path(field: Any) -> tuple[str, ...]:
    if not isinstance(field, str) or not field:
        raise FilterError("filter field names must be non-empty strings", value=field)
    if field.startswith("$"):
        raise FilterError(f"unsupported top-level operator '{field}'", field=field)
    path = tuple(field.split("."))
    if any(not part for part in path):
        raise FilterError(f"invalid field path '{field}'", field=field)
    return path


def _compile_operators(
    field: str,
    path: tuple[str, ...],
    operators: Mapping[str, Any],
) -> list[Predicate]:
    if not operators:
        raise FilterError("comparison must name at least one comparator", field=field)

    clauses: list[Predicate] = []
    for key, literal in operators.items():
        op = key[1:] if isinstance(key, str) and key.startswith("$") else key
        if op not in COMPARATORS:
            raise FilterError(f"unknown comparator '{key}'", field=field)

        if op == "eq":
            clauses.append(Equality(path, _freeze(literal)))
        elif op == "in":
            if not isinstance(literal, (list, tuple)):
                raise FilterError("'in' requires a list literal", field=field, value=literal)
            clauses.append(Membership(path, tuple(_freeze(item) for item in literal)))
        else:
            if op in ORDERING_OPS and _kind(literal) not in ("number", "string"):
                raise FilterError(
                    f"'{op}' requires a numeric or string literal",
                    field=field,
                    value=literal,
                )
            clauses.append(Comparison(path, op, _freeze(literal)))
    return clauses


def _freeze(literal: Any) -> Any:
    # Literals live inside frozen nodes; sequences become tuples.
    if isinstance(literal, list):
        return tuple(_freeze(item) for item in literal)
    return literal


# ── Evaluation ────────────────────────────────────────────────────────────────

def matches(predicate: Predicate | None, document: Mapping[str, Any]) -> bool:
    """Return True if document satisfies predicate. A None predicate matches everything."""
    if predicate is None:
        return True
    if isinstance(predicate, Conjunction):
        return all(matches(clause, document) for clause in predicate.clauses)

    value = _lookup(document, predicate.path)
    if value is _MISSING:
        return False

    if isinstance(predicate, Equality):
        return _equals_or_contains(value, predicate.literal)
    if isinstance(predicate, Membership):
        return any(_equals_or_contains(value, choice) for choice in predicate.choices)
    if isinstance(predicate, Comparison):
        return _compare(value, predicate.op, predicate.literal)

    raise TypeError(f"not a predicate node: {predicate!r}")


def _lookup(document: Mapping[str, Any], path: tuple[str, ...]) -> Any:
    current: Any = document
    for part in path:
        if not isinstance(current, Mapping) or part not in current:
            return _MISSING
        current = current[part]
    return current


def _kind(value: Any) -> str:
    if isinstance(value, bool):
        return "bool"
    if isinstance(value, (int, float)):
        return "number"
    if isinstance(value, str):
        return "string"
    if value is None:
        return "null"
    if isinstance(value, Mapping):
        return "document"
    if isinstance(value, (list, tuple)):
        return "array"
    return type(value).__name__


def _equal(left: Any, right: Any) -> bool:
    kind = _kind(left)
    if kind != _kind(right):
        return False
    if kind == "array":
        return len(left) == len(right) and all(_equal(a, b) for a, b in zip(left, right))
    if kind == "document":
        return left.keys() == right.keys() and all(_equal(left[k], right[k]) for k in left)
    return left == right


def _equals_or_contains(value: Any, literal: Any) -> bool:
    if _equal(value, literal):
        return True
    # A scalar literal matches an array field holding it.
    if _kind(value) == "array" and _kind(literal) != "array":
        return any(_equal(item, literal) for item in value)
    return False


def _compare(value: Any, op: str, literal: Any) -> bool:
    if op == "ne":
        if _kind(value) == "array" and _kind(literal) != "array":
            return not _equals_or_contains(value, literal)
        if _kind(value) != _kind(literal):
            return False
        return not _equal(value, literal)

    if _kind(value) == "array":
        return any(_order(item, op, literal) for item in value)
    return _order(value, op, literal)


def _order(value: Any, op: str, literal: Any) -> bool:
    kind = _kind(value)
    if kind not in ("number", "string") or kind != _kind(literal):
        return False
    if op == "gt":
        return value > literal
    if op == "gte":
        return value >= literal
    if op == "lt":
        return value < literal
    return value <= literal
