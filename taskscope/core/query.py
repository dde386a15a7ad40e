"""Composable query predicates and ordering for the task store.

Predicates are small immutable trees of ``Condition``, ``And`` and ``Or`` nodes.
Groups keep their own parentheses when compiled, so an AND of two OR-groups
stays ``(a OR b) AND (c OR d)`` instead of collapsing into one OR-list.
"""

import re
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, field as dataclass_field
from datetime import datetime
from enum import StrEnum
from typing import Any


class Operator(StrEnum):
    """Comparison operators supported by the store."""

    EQ = "="
    LT = "<"
    GTE = ">="
    CONTAINS = "~"  # case-insensitive substring
    IS_NULL = "is null"


_SQL_OPERATORS = {
    Operator.EQ: "=",
    Operator.LT: "<",
    Operator.GTE: ">=",
    Operator.CONTAINS: "LIKE",
}

_FIELD_PATTERN = re.compile(r"^[a-zA-Z_][a-zA-Z0-9_]*$")


def _validate_field_name(name: str) -> None:
    """Validate that a field name contains only alphanumeric characters and underscores."""
    if not _FIELD_PATTERN.match(name):
        msg = f"Invalid field name: {name}. Only alphanumeric characters and underscores are allowed."
        raise ValueError(msg)


@dataclass(frozen=True)
class Condition:
    """A single ``field <op> value`` comparison."""

    field: str
    op: Operator
    value: Any = None

    def __post_init__(self) -> None:
        _validate_field_name(self.field)


@dataclass(frozen=True)
class And:
    """All clauses must hold."""

    clauses: tuple["Predicate", ...]


@dataclass(frozen=True)
class Or:
    """At least one clause must hold."""

    clauses: tuple["Predicate", ...]


Predicate = Condition | And | Or


def eq(field: str, value: Any) -> Condition:  # noqa: ANN401
    return Condition(field, Operator.EQ, value)


def lt(field: str, value: Any) -> Condition:  # noqa: ANN401
    return Condition(field, Operator.LT, value)


def gte(field: str, value: Any) -> Condition:  # noqa: ANN401
    return Condition(field, Operator.GTE, value)


def contains(field: str, value: str) -> Condition:
    return Condition(field, Operator.CONTAINS, value)


def is_null(field: str) -> Condition:
    return Condition(field, Operator.IS_NULL)


def between(field: str, start: Any, end: Any) -> "And":  # noqa: ANN401
    """Half-open range ``start <= field < end``."""
    return And((gte(field, start), lt(field, end)))


def all_of(*clauses: Predicate | None) -> Predicate:
    """AND the given clauses, skipping ``None`` and unwrapping a single clause."""
    kept = tuple(c for c in clauses if c is not None)
    if len(kept) == 1:
        return kept[0]
    return And(kept)


def any_of(*clauses: Predicate | None) -> Predicate:
    """OR the given clauses, skipping ``None`` and unwrapping a single clause."""
    kept = tuple(c for c in clauses if c is not None)
    if len(kept) == 1:
        return kept[0]
    return Or(kept)


def _escape_like(value: str) -> str:
    return value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def _identity(value: Any) -> Any:  # noqa: ANN401
    return value


def compile_predicate(
    predicate: Predicate,
    *,
    convert: Callable[[Any], Any] = _identity,
) -> tuple[str, list[Any]]:
    """Compile a predicate into a parameterised SQL condition.

    Args:
        predicate: Predicate tree to compile
        convert: Hook applied to every bound value (e.g. datetime -> ISO text)

    Returns:
        Tuple of (SQL condition, parameter list)
    """
    if isinstance(predicate, Condition):
        if predicate.op is Operator.IS_NULL:
            return f"{predicate.field} IS NULL", []
        if predicate.op is Operator.CONTAINS:
            pattern = f"%{_escape_like(str(predicate.value))}%"
            return f"{predicate.field} LIKE ? ESCAPE '\\'", [pattern]
        return f"{predicate.field} {_SQL_OPERATORS[predicate.op]} ?", [convert(predicate.value)]

    if not predicate.clauses:
        # Empty AND matches everything, empty OR matches nothing
        return ("1 = 1" if isinstance(predicate, And) else "1 = 0"), []

    joiner = " AND " if isinstance(predicate, And) else " OR "
    conditions = []
    params: list[Any] = []
    for clause in predicate.clauses:
        cond, cond_params = compile_predicate(clause, convert=convert)
        conditions.append(cond)
        params.extend(cond_params)
    return f"({joiner.join(conditions)})", params


def render_filter(predicate: Predicate) -> str:
    """Render a predicate in a readable ``a = "x" && (b = "y" || c = "z")`` form for logs."""
    if isinstance(predicate, Condition):
        if predicate.op is Operator.IS_NULL:
            return f"{predicate.field} {predicate.op.value}"
        value = predicate.value.isoformat() if isinstance(predicate.value, datetime) else predicate.value
        return f'{predicate.field} {predicate.op.value} "{value}"'
    joiner = " && " if isinstance(predicate, And) else " || "
    return f"({joiner.join(render_filter(c) for c in predicate.clauses)})"


@dataclass(frozen=True)
class OrderBy:
    """One ORDER BY term.

    ``rank`` maps enumerated values onto sortable integers (unknown values rank 0).
    ``nulls_last`` places missing values after present ones regardless of direction.
    """

    field: str
    descending: bool = False
    rank: Mapping[str, int] | None = dataclass_field(default=None, hash=False)
    nulls_last: bool = False

    def __post_init__(self) -> None:
        _validate_field_name(self.field)


def compile_order_by(order: Iterable[OrderBy]) -> tuple[str, list[Any]]:
    """Compile ORDER BY terms into SQL and parameters."""
    terms = []
    params: list[Any] = []
    for term in order:
        direction = "DESC" if term.descending else "ASC"
        if term.nulls_last:
            terms.append(f"({term.field} IS NULL) ASC")
        if term.rank:
            whens = " ".join("WHEN ? THEN ?" for _ in term.rank)
            for value, position in term.rank.items():
                params.extend([value, position])
            terms.append(f"CASE {term.field} {whens} ELSE 0 END {direction}")
        else:
            terms.append(f"{term.field} {direction}")
    return ", ".join(terms), params
