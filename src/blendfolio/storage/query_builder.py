"""Composable SELECT builder with named DuckDB binds.

Every predicate is added with a named parameter (`$name`), never by string
interpolation of values. IN-lists expand to `$name_0, $name_1, ...`.

A page query and its count query are built from the same `Query`, so they
always share the exact same FROM / WHERE:

    q = Query("parsed_events").where_eq("user_address", "user", user)
    page_sql, page_params = q.order_by("ledger_closed_at DESC").page(50, 0)
    count_sql, count_params = q.count()
"""

from __future__ import annotations

import re
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field, replace
from typing import Any

_IDENT = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


def _check_name(name: str) -> str:
    if not _IDENT.match(name):
        raise ValueError(f"invalid bind / identifier name: {name!r}")
    return name


def expand_in(name: str, values: Iterable[Any]) -> tuple[str, dict[str, Any]]:
    """`($name_0, $name_1, ...)` placeholder list and its params."""
    _check_name(name)
    params = {f"{name}_{i}": v for i, v in enumerate(values)}
    if not params:
        # Empty IN-list matches nothing.
        return "(NULL)", {}
    return "(" + ", ".join(f"${k}" for k in params) + ")", params


@dataclass(frozen=True, slots=True)
class Query:
    """Immutable SELECT description; every `where_*` returns a new Query."""

    table: str
    predicates: tuple[str, ...] = ()
    params: dict[str, Any] = field(default_factory=dict)
    ordering: tuple[str, ...] = ()

    def __post_init__(self) -> None:
        _check_name(self.table)

    # --- predicates -------------------------------------------------------

    def where(self, clause: str, **params: Any) -> Query:
        """Raw predicate using `$name` placeholders for `params`."""
        for k in params:
            _check_name(k)
            if k in self.params:
                raise ValueError(f"duplicate bind name: {k}")
        return replace(self, predicates=self.predicates + (clause,), params={**self.params, **params})

    def where_eq(self, column: str, name: str, value: Any) -> Query:
        """`column = $name`; skipped when `value` is None."""
        if value is None:
            return self
        return self.where(f"{_check_name(column)} = ${name}", **{name: value})

    def where_in(self, column: str, name: str, values: Sequence[Any] | None) -> Query:
        """`column IN (...)`; skipped when `values` is None, empty matches nothing."""
        if values is None:
            return self
        fragment, params = expand_in(name, values)
        return self.where(f"{_check_name(column)} IN {fragment}", **params)

    def where_range(self, column: str, name: str, start: Any = None, end: Any = None, *, end_inclusive: bool = True) -> Query:
        """`start <= column` and `column <= end` (or `< end`); open bounds are skipped."""
        q = self
        _check_name(column)
        if start is not None:
            q = q.where(f"{column} >= ${name}_start", **{f"{name}_start": start})
        if end is not None:
            op = "<=" if end_inclusive else "<"
            q = q.where(f"{column} {op} ${name}_end", **{f"{name}_end": end})
        return q

    def order_by(self, *columns: str) -> Query:
        return replace(self, ordering=tuple(columns))

    # --- rendering --------------------------------------------------------

    def _from_where(self) -> str:
        sql = f"FROM {self.table}"
        if self.predicates:
            sql += "\nWHERE " + "\n  AND ".join(f"({p})" for p in self.predicates)
        return sql

    def select(self, columns: str = "*") -> tuple[str, dict[str, Any]]:
        sql = f"SELECT {columns}\n{self._from_where()}"
        if self.ordering:
            sql += "\nORDER BY " + ", ".join(self.ordering)
        return sql, dict(self.params)

    def page(self, limit: int, offset: int, columns: str = "*") -> tuple[str, dict[str, Any]]:
        if limit < 0 or offset < 0:
            raise ValueError("limit and offset must be non-negative")
        sql, params = self.select(columns)
        params.update(page_limit=int(limit), page_offset=int(offset))
        return sql + "\nLIMIT $page_limit OFFSET $page_offset", params

    def count(self) -> tuple[str, dict[str, Any]]:
        return f"SELECT COUNT(*) AS total\n{self._from_where()}", dict(self.params)
