"""
Packet filter expressions.

Parses the operator-facing filter text into a FilterSet and compiles it into
a StorePredicate any packet store can evaluate.

Grammar, per comma-separated clause::

    [direction-char]['.' name-pattern]

``direction-char`` is ``c`` (clientbound), ``s`` (serverbound) or ``a`` /
empty (any direction). A ``name-pattern`` containing ``*`` is a wildcard
pattern matched case-insensitively against the full name; otherwise it is an
exact, case-sensitive name. Clauses are combined with OR.
"""

import logging
import re
from dataclasses import dataclass, field
from typing import List, Optional, Tuple

from .models import Direction

logger = logging.getLogger(__name__)

WILDCARD = "*"
CLAUSE_SEPARATOR = ","
NAME_SEPARATOR = "."

_DIRECTION_CHARS = {
    "c": Direction.CLIENTBOUND,
    "s": Direction.SERVERBOUND,
    "a": None,
    "": None,
}
_DISPLAY_CHARS = {
    Direction.CLIENTBOUND: "c",
    Direction.SERVERBOUND: "s",
    None: "a",
}


@dataclass(frozen=True)
class FilterExpression:
    """A single filter clause: direction AND name pattern."""
    direction: Optional[Direction] = None
    name_pattern: Optional[str] = None
    is_wildcard: bool = False

    def to_display_string(self) -> str:
        direction = _DISPLAY_CHARS[self.direction]
        if self.name_pattern is None:
            return direction
        return f"{direction}{NAME_SEPARATOR}{self.name_pattern}"


@dataclass(frozen=True)
class FilterSet:
    """
    Ordered clauses combined with OR; an empty set means no filtering.

    ``dropped`` keeps the text of clauses that were ignored while parsing so
    a front-end can mention them. It does not take part in equality.
    """
    expressions: Tuple[FilterExpression, ...] = ()
    dropped: Tuple[str, ...] = field(default=(), compare=False)

    def is_empty(self) -> bool:
        return not self.expressions

    def to_display_string(self) -> str:
        return to_display_string(self)


def parse_clause(text: str) -> Optional[FilterExpression]:
    """Parse one clause; None if its direction character is not recognised."""
    text = text.strip()
    if NAME_SEPARATOR in text:
        direction_text, name = text.split(NAME_SEPARATOR, 1)
    else:
        direction_text, name = text, None

    direction_key = direction_text.strip().lower()
    if direction_key not in _DIRECTION_CHARS:
        return None

    if name is not None:
        name = name.strip() or None
    return FilterExpression(
        direction=_DIRECTION_CHARS[direction_key],
        name_pattern=name,
        is_wildcard=name is not None and WILDCARD in name,
    )


def parse_filter(text: str) -> FilterSet:
    """
    Parse filter text into a FilterSet.

    Empty text yields an empty FilterSet (match everything). Clauses with an
    unrecognised direction character are dropped and parsing continues.
    """
    expressions: List[FilterExpression] = []
    dropped: List[str] = []

    for clause in text.split(CLAUSE_SEPARATOR):
        clause = clause.strip()
        if not clause:
            continue
        expression = parse_clause(clause)
        if expression is None:
            logger.warning(f"Ignoring filter clause with unknown direction: {clause!r}")
            dropped.append(clause)
            continue
        expressions.append(expression)

    return FilterSet(tuple(expressions), tuple(dropped))


def to_display_string(filter_set: Optional[FilterSet]) -> str:
    """Render a FilterSet back into filter text; inverse of parse_filter."""
    if filter_set is None:
        return ""
    return CLAUSE_SEPARATOR.join(expr.to_display_string() for expr in filter_set.expressions)


def wildcard_to_regex(pattern: str) -> "re.Pattern[str]":
    """Compile a ``*`` wildcard pattern into an anchored, case-insensitive regex."""
    body = ".*".join(re.escape(part) for part in pattern.split(WILDCARD))
    return re.compile(f"^{body}$", re.IGNORECASE | re.DOTALL)


def wildcard_to_like(pattern: str, escape: str = "\\") -> str:
    """Translate a ``*`` wildcard pattern into a SQL LIKE pattern."""
    escaped = (pattern.replace(escape, escape * 2)
               .replace("%", f"{escape}%")
               .replace("_", f"{escape}_"))
    return escaped.replace(WILDCARD, "%")


@dataclass(frozen=True)
class PredicateClause:
    """A compiled clause: every set condition must hold."""
    direction: Optional[Direction] = None
    name_equals: Optional[str] = None
    name_like: Optional[str] = None

    def matches(self, direction: Direction, name: Optional[str]) -> bool:
        if self.direction is not None and direction is not self.direction:
            return False
        if self.name_equals is not None and name != self.name_equals:
            return False
        if self.name_like is not None:
            if name is None or not wildcard_to_regex(self.name_like).match(name):
                return False
        return True


@dataclass(frozen=True)
class StorePredicate:
    """Store-independent predicate: OR over clauses, AND within a clause."""
    clauses: Tuple[PredicateClause, ...]

    def matches(self, direction: Direction, name: Optional[str]) -> bool:
        """Evaluate the predicate in memory."""
        return any(clause.matches(direction, name) for clause in self.clauses)

    def to_sql(
        self,
        direction_column: str = "direction",
        name_expression: str = "json_extract(packet, '$.name')",
        placeholder: str = "?",
        like_operator: str = "LIKE",
        fold_function: Optional[str] = None,
    ) -> Tuple[str, List[str]]:
        """
        Render a parameterised WHERE fragment.

        Exact names compare with ``=`` (case-sensitive). Wildcard names use
        ``like_operator``; when ``fold_function`` is given, both sides of the
        pattern match are passed through it first.
        """
        conditions: List[str] = []
        params: List[str] = []

        for clause in self.clauses:
            parts: List[str] = []
            if clause.direction is not None:
                parts.append(f"{direction_column} = {placeholder}")
                params.append(clause.direction.value)
            if clause.name_equals is not None:
                parts.append(f"{name_expression} = {placeholder}")
                params.append(clause.name_equals)
            if clause.name_like is not None:
                name, pattern = name_expression, placeholder
                if fold_function:
                    name, pattern = f"{fold_function}({name})", f"{fold_function}({pattern})"
                parts.append(f"{name} {like_operator} {pattern} ESCAPE '\\'")
                params.append(wildcard_to_like(clause.name_like))
            conditions.append(f"({' AND '.join(parts)})" if parts else "(1=1)")

        return " OR ".join(conditions), params

    def to_postgres(self, direction_column: str = "direction") -> Tuple[str, List[str]]:
        """Render for the relay's PostgreSQL schema: ``packet->>'name'`` and ``ILIKE``."""
        return self.to_sql(direction_column, "packet->>'name'", placeholder="%s", like_operator="ILIKE")


def compile_filter(filter_set: Optional[FilterSet]) -> Optional[StorePredicate]:
    """
    Compile a FilterSet into a StorePredicate.

    Returns None for a missing or empty FilterSet, meaning "match everything".
    """
    if filter_set is None or filter_set.is_empty():
        return None

    clauses = []
    for expr in filter_set.expressions:
        if expr.name_pattern is None:
            clauses.append(PredicateClause(direction=expr.direction))
        elif expr.is_wildcard:
            clauses.append(PredicateClause(direction=expr.direction, name_like=expr.name_pattern))
        else:
            clauses.append(PredicateClause(direction=expr.direction, name_equals=expr.name_pattern))
    return StorePredicate(tuple(clauses))
