from dataclasses import dataclass
from typing import Iterable, List, Optional, Set

import structlog
import sqlglot
from sqlglot import exp
from sqlglot.errors import SqlglotError

from sql_guard.errors import SqlValidationError

logger = structlog.get_logger()

# Top-level statement kinds accepted as read-only. WITH [RECURSIVE] parses as
# one of these with a `with` argument attached.
SELECT_LIKE_TYPES = (exp.Select, exp.Union, exp.Values)

# Resolved by name because sqlglot has renamed some of these across releases.
_WRITE_NODE_NAMES = (
    "Insert", "Update", "Delete", "Merge", "Create", "Drop", "Alter", "AlterTable",
    "TruncateTable", "Command", "Copy", "Grant", "Into",
)
WRITE_NODE_TYPES = tuple(getattr(exp, name) for name in _WRITE_NODE_NAMES if hasattr(exp, name))


@dataclass
class ValidatedSql:
    statement: exp.Expression
    normalized_sql: str


def _normalize_name(name: str) -> str:
    return name.strip().lower()


def _with_clause(node: exp.Expression) -> Optional[exp.With]:
    for value in node.args.values():
        if isinstance(value, exp.With):
            return value
    return None


def _cte_names(ctes: Iterable[exp.Expression]) -> Set[str]:
    return {_normalize_name(cte.alias_or_name) for cte in ctes}


def is_cte_reference(table: exp.Table) -> bool:
    """
    True when an unqualified table name resolves to a CTE in scope.

    Walks outward from the reference. A WITH list is visible to the query that
    owns it; inside the list, a CTE sees only the CTEs before it unless the
    list is RECURSIVE. Names defined in a sibling or nested subquery never
    shadow a real table.
    """
    if table.db or table.catalog:
        return False
    name = _normalize_name(table.name)

    child: exp.Expression = table
    node = table.parent
    while node is not None:
        if isinstance(node, exp.With):
            ctes = list(node.expressions)
            if node.args.get("recursive"):
                visible = ctes
            else:
                position = next((i for i, cte in enumerate(ctes) if cte is child), 0)
                visible = ctes[:position]
            if name in _cte_names(visible):
                return True
        else:
            with_ = _with_clause(node)
            if with_ is not None and with_ is not child and name in _cte_names(with_.expressions):
                return True
        child = node
        node = node.parent
    return False


class SQLValidator:
    """
    AST-level guard for assistant-generated SQL.

    Parses exactly one PostgreSQL statement and rejects anything that is not a
    plain read: writes anywhere in the tree, row locks, set-returning functions
    used as row sources, denylisted functions, and tables outside the allowlist.
    The accepted statement is re-printed from the AST without comments so that
    formatting tricks never reach the database.
    """

    def __init__(
        self,
        allowed_tables: Optional[Iterable[str]] = None,
        enforce_public_schema: bool = False,
        denied_functions: Optional[Iterable[str]] = None,
        dialect: str = "postgres",
    ):
        self.allowed_tables: Set[str] = {_normalize_name(t) for t in (allowed_tables or [])}
        self.enforce_public_schema = enforce_public_schema
        self.denied_functions: Set[str] = {_normalize_name(f) for f in (denied_functions or [])}
        self.dialect = dialect

    def validate(self, sql: str) -> ValidatedSql:
        trimmed = (sql or "").strip()
        if not trimmed:
            raise SqlValidationError("SQL is empty.")

        try:
            statements = [s for s in sqlglot.parse(trimmed, read=self.dialect) if s is not None]
        except SqlglotError as e:
            raise SqlValidationError(f"Invalid SQL (failed to parse): {e}") from e

        if len(statements) != 1:
            raise SqlValidationError("Only a single SQL statement is allowed.")

        statement = statements[0]
        if type(statement) not in SELECT_LIKE_TYPES:
            raise SqlValidationError("Only SELECT queries are allowed.")

        if statement.find(*WRITE_NODE_TYPES) is not None:
            raise SqlValidationError("Only SELECT queries are allowed.")

        if statement.find(exp.Lock) is not None:
            raise SqlValidationError("SELECT ... FOR <lock> is not allowed.")

        self._check_row_sources(statement)
        self._check_functions(statement)
        used_tables = self._collect_tables(statement)

        if self.allowed_tables:
            for table in used_tables:
                if table not in self.allowed_tables and f"public.{table}" not in self.allowed_tables:
                    raise SqlValidationError(f"Table not allowed: {table}")

        normalized_sql = statement.sql(dialect=self.dialect, comments=False)
        logger.debug("SQL validated", tables=sorted(used_tables), sql_preview=normalized_sql[:100])
        return ValidatedSql(statement=statement, normalized_sql=normalized_sql)

    def _check_row_sources(self, statement: exp.Expression) -> None:
        # generate_series, dblink, unnest, LATERAL calls and similar generators
        for clause in statement.find_all(exp.From, exp.Join):
            source = clause.this
            if isinstance(source, (exp.Func, exp.UDTF)) and not isinstance(source, exp.Values):
                raise SqlValidationError("Function calls in FROM are not allowed.")
            if isinstance(source, exp.Table) and isinstance(source.this, exp.Func):
                raise SqlValidationError("Function calls in FROM are not allowed.")

    def _check_functions(self, statement: exp.Expression) -> None:
        if not self.denied_functions:
            return
        for func in statement.find_all(exp.Func):
            name = func.name if isinstance(func, exp.Anonymous) else func.sql_name()
            fn_name = _normalize_name(name or "")
            if fn_name in self.denied_functions:
                raise SqlValidationError(f"Function {fn_name} is not allowed.")

    def _collect_tables(self, statement: exp.Expression) -> Set[str]:
        used: Set[str] = set()

        for table in statement.find_all(exp.Table):
            if isinstance(table.this, exp.Func):
                continue

            name = _normalize_name(table.name)
            if not name:
                raise SqlValidationError("Invalid table reference.")

            schema = _normalize_name(table.db) if table.db else None
            catalog = table.catalog

            if self.enforce_public_schema:
                if catalog:
                    raise SqlValidationError("Cross-database references are not allowed.")
                if schema and schema != "public":
                    raise SqlValidationError("Only the public schema is allowed.")

            if is_cte_reference(table):
                continue

            used.add(f"{schema}.{name}" if schema else name)

        return used


def referenced_tables(validated: ValidatedSql) -> List[str]:
    """Bare table names referenced by an already validated statement."""
    names = {
        _normalize_name(t.name)
        for t in validated.statement.find_all(exp.Table)
        if not isinstance(t.this, exp.Func) and not is_cte_reference(t)
    }
    return sorted(names)
