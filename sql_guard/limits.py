from dataclasses import dataclass
from typing import Optional

from sqlglot import exp


@dataclass
class LimitedSql:
    sql: str
    truncated: bool


def _has_with_clause(statement: exp.Expression) -> bool:
    return any(isinstance(value, exp.With) for value in statement.args.values())


def _numeric_limit(statement: exp.Expression) -> Optional[int]:
    """Literal integer LIMIT of the top-level statement, or None if absent or not a literal."""
    limit = statement.args.get("limit")
    if not isinstance(limit, exp.Limit):
        return None
    value = limit.expression
    if isinstance(value, exp.Literal) and value.is_int:
        return int(value.this)
    return None


def wrap_with_limit(sql: str, limit: int) -> str:
    return f"SELECT * FROM (\n{sql}\n) AS q\nLIMIT {limit}"


def apply_row_limit(sql: str, statement: exp.Expression, limit: int) -> LimitedSql:
    """
    Guarantee that `sql` returns at most `limit` rows.

    A plain SELECT without LIMIT gets one appended. An existing LIMIT is never
    rewritten in place: if it is larger than the cap, or is anything other than
    an integer literal, the whole query is wrapped instead so OFFSET/ORDER BY
    semantics of the inner query are preserved. UNION, WITH and VALUES are
    always wrapped.
    """
    if type(statement) is exp.Select and not _has_with_clause(statement):
        existing = statement.args.get("limit")
        if existing is None:
            return LimitedSql(sql=f"{sql}\nLIMIT {limit}", truncated=True)

        numeric = _numeric_limit(statement)
        if numeric is not None and numeric <= limit:
            return LimitedSql(sql=sql, truncated=False)
        return LimitedSql(sql=wrap_with_limit(sql, limit), truncated=True)

    return LimitedSql(sql=wrap_with_limit(sql, limit), truncated=True)
