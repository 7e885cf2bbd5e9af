"""Read-only SQL gate: parse, classify and row-cap statements before execution."""

from __future__ import annotations

import logging

import sqlglot
from sqlglot import exp
from sqlglot.errors import SqlglotError
from sqlglot.tokens import TokenType

from .errors import ValidationError

LOG = logging.getLogger(__name__)

ROW_CAP = 1000

_SET_OPERATIONS = (exp.Union, exp.Intersect, exp.Except)
_WRAPPERS = (exp.Subquery, exp.Paren)

# Nodes that make an otherwise query-shaped statement write or lock.
_SIDE_EFFECTS = (exp.Insert, exp.Update, exp.Delete, exp.Merge, exp.Into, exp.Lock)


class SqlGuard:
    """Facade over sqlglot that only admits single, side-effect-free queries."""

    def __init__(self, *, dialect: str = "postgres", row_cap: int = ROW_CAP) -> None:
        self._dialect = dialect
        self._row_cap = row_cap

    @property
    def row_cap(self) -> int:
        return self._row_cap

    def validate(self, sql: str) -> str:
        """Return the executable form of ``sql`` or raise ``ValidationError``.

        The returned text has its trailing terminator and trailing comments
        removed. When the statement carries no ``LIMIT``/``FETCH FIRST`` of its
        own, ``LIMIT <row_cap>`` is appended. A ``LIMIT ALL`` or ``LIMIT NULL``
        does not count; such a query is wrapped in a capped sub-query instead.
        """

        statement = self.parse_single(sql)
        _ensure_query_form(statement)
        offending = statement.find(*_SIDE_EFFECTS)
        if offending is not None:
            raise ValidationError(
                f"Only read-only SELECT statements are allowed (found {offending.key.upper()})"
            )
        trimmed = self._trim(sql)
        clause = outer_row_limit(statement)
        if clause is None:
            LOG.debug("Injecting row cap", extra={"row_cap": self._row_cap})
            return f"{trimmed} LIMIT {self._row_cap}"
        if is_unbounded_limit(clause):
            LOG.debug("Wrapping unbounded query in row cap", extra={"row_cap": self._row_cap})
            return f"SELECT * FROM ({trimmed}) AS _capped LIMIT {self._row_cap}"
        return trimmed

    def parse_single(self, sql: str) -> exp.Expression:
        """Parse ``sql`` and require exactly one statement."""

        if not sql or not sql.strip():
            raise ValidationError("Empty SQL statement")
        try:
            parsed = sqlglot.parse(sql, read=self._dialect)
        except SqlglotError as exc:
            raise ValidationError(f"Invalid SQL syntax: {str(exc).strip()}") from exc
        statements = [statement for statement in parsed if statement is not None]
        if not statements:
            raise ValidationError("Empty SQL statement")
        if len(statements) > 1:
            raise ValidationError(
                "Multiple statements not allowed. Please provide a single SELECT statement."
            )
        return statements[0]

    def zero_row_query(self, sql: str) -> str:
        """Rewrite ``sql`` so it returns column metadata but no rows."""

        try:
            statement = self.parse_single(sql)
        except ValidationError:
            statement = None
        trimmed = self._trim(sql)
        if statement is not None and outer_row_limit(statement) is None:
            return f"{trimmed} LIMIT 0"
        return f"SELECT * FROM ({trimmed}) AS _columns LIMIT 0"

    def _trim(self, sql: str) -> str:
        """Cut everything after the last significant token (``;``, comments, blanks)."""

        try:
            tokens = sqlglot.tokenize(sql, read=self._dialect)
        except SqlglotError:
            return sql.strip().rstrip(";").rstrip()
        significant = [token for token in tokens if token.token_type != TokenType.SEMICOLON]
        if not significant:
            return sql.strip()
        return sql[: significant[-1].end + 1].strip()


def outer_row_limit(statement: exp.Expression) -> exp.Expression | None:
    """The ``LIMIT``/``FETCH`` clause governing the outermost query, if any.

    Set operations are followed down their final operand, where a trailing
    ``LIMIT`` may be attached instead of on the set operation itself.
    """

    node: exp.Expression | None = statement
    while node is not None:
        for key in ("limit", "fetch"):
            clause = node.args.get(key)
            if clause is not None:
                return clause
        if isinstance(node, _SET_OPERATIONS):
            node = node.expression
            continue
        return None
    return None


def is_unbounded_limit(clause: exp.Expression) -> bool:
    """``LIMIT ALL`` and ``LIMIT NULL`` return every row."""

    if not isinstance(clause, exp.Limit):
        return False
    count = clause.expression
    if count is None or isinstance(count, exp.Null):
        return True
    return isinstance(count, exp.Var) and count.name.upper() == "ALL"


def has_row_limit(statement: exp.Expression) -> bool:
    """True when the outermost query already restricts its row count."""

    clause = outer_row_limit(statement)
    return clause is not None and not is_unbounded_limit(clause)


def _ensure_query_form(node: exp.Expression | None) -> None:
    if isinstance(node, (exp.Select, exp.Values)):
        return
    if isinstance(node, _WRAPPERS):
        _ensure_query_form(node.this)
        return
    if isinstance(node, _SET_OPERATIONS):
        _ensure_query_form(node.this)
        _ensure_query_form(node.expression)
        return
    raise ValidationError("Only SELECT statements are allowed")


_DEFAULT_GUARD = SqlGuard()


def validate_sql(sql: str) -> str:
    """Validate ``sql`` with the default PostgreSQL guard."""

    return _DEFAULT_GUARD.validate(sql)


__all__ = [
    "ROW_CAP",
    "SqlGuard",
    "has_row_limit",
    "is_unbounded_limit",
    "outer_row_limit",
    "validate_sql",
]
