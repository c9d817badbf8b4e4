import asyncio
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, FrozenSet, Iterable, List, Optional

import structlog
from pydantic import ValidationError

from agent.models import (
    ExecuteSqlFailure,
    ExecuteSqlInput,
    ExecuteSqlMeta,
    ExecuteSqlOutcome,
    ExecuteSqlSuccess,
)
from agent.utils import make_json_serializable
from services.usage_tracker import ToolCallSpan, duration_ms, format_sql_for_storage, utc_now
from sql_guard.errors import QueryAbortedError, SqlGuardError, SqlValidationError
from sql_guard.explain_gate import ExplainGateOptions, enforce_explain_gate, summarize_explain_json
from sql_guard.limits import apply_row_limit
from sql_guard.sandbox import ReadonlySandbox
from sql_guard.validator import SQLValidator, referenced_tables

logger = structlog.get_logger()

TOOL_NAME = "execute_sql"

DEFAULT_ALLOWED_TABLES: FrozenSet[str] = frozenset({
    # Spend / pipeline
    "public.spend_entries",
    "public.pipeline_assets",
    "public.pipeline_runs",
    "public.pipeline_run_stages",
    "public.pipeline_run_logs",
    "public.pipeline_skipped_rows",
    "public.audit_log",
    # Entity registry / matching
    "public.entities",
    "public.companies",
    "public.nhs_organisations",
    "public.councils",
    "public.government_departments",
    "public.suppliers",
    "public.buyers",
    # Contracts cache
    "public.contracts",
    "public.contract_supplier_searches",
})

DEFAULT_DENIED_FUNCTIONS: FrozenSet[str] = frozenset({
    "pg_sleep",
    "pg_sleep_for",
    "pg_sleep_until",
    "dblink",
    "dblink_connect",
    "dblink_exec",
    "dblink_open",
    "dblink_fetch",
    "dblink_close",
    "lo_import",
    "lo_export",
    "pg_read_file",
    "pg_read_binary_file",
    "pg_write_file",
    "pg_ls_dir",
    "copy_database",
    "set_config",
})

SpanRecorder = Callable[[ToolCallSpan], None]


def allowed_table_names(allowed_tables: Iterable[str] = DEFAULT_ALLOWED_TABLES) -> List[str]:
    return sorted({t.split(".", 1)[1] if "." in t else t for t in allowed_tables})


def clamp_rows(requested: Optional[int], default_max: int = 200, hard_max: int = 500) -> int:
    n = default_max if requested is None else requested
    return min(max(1, n), hard_max)


def format_sql_tool_error(error: Exception, allowed_tables: Iterable[str] = DEFAULT_ALLOWED_TABLES) -> str:
    """Readable tool-result text for a failed execute_sql call."""
    message = str(error)
    if isinstance(error, SqlValidationError) and "Table not allowed" in message:
        allowed = ", ".join(allowed_table_names(allowed_tables))
        return (
            f"{message}. Allowed tables: {allowed}. "
            'For payment/spending data, use "spend_entries" (and always filter by a date range).'
        )
    return message


@dataclass
class ToolInvocation:
    outcome: ExecuteSqlOutcome
    db_time_ms: int = 0
    span: Optional[ToolCallSpan] = None


@dataclass
class ExecuteSqlTool:
    """
    The execute_sql action exposed to the model: validate, clamp, EXPLAIN-gate,
    then run inside the read-only sandbox.

    Validation, cost-gate and execution failures come back as an
    ExecuteSqlFailure for the model to read; only an abort propagates.
    """

    sandbox: ReadonlySandbox
    gate_options: ExplainGateOptions
    allowed_tables: FrozenSet[str] = DEFAULT_ALLOWED_TABLES
    denied_functions: FrozenSet[str] = DEFAULT_DENIED_FUNCTIONS
    default_max_rows: int = 200
    hard_max_rows: int = 500
    usage_sql_mode: str = "truncated"
    validator: SQLValidator = field(init=False)

    name = TOOL_NAME
    description = (
        "Execute a guarded, read-only SQL query against Postgres and return a small result set. "
        "Use this to answer questions with exact numbers. "
        "You MUST provide a 'reason' explaining why this query is necessary."
    )

    def __post_init__(self):
        self.validator = SQLValidator(
            allowed_tables=self.allowed_tables,
            enforce_public_schema=True,
            denied_functions=self.denied_functions,
        )

    @classmethod
    def from_settings(cls, sandbox: ReadonlySandbox, settings) -> "ExecuteSqlTool":
        return cls(
            sandbox=sandbox,
            gate_options=ExplainGateOptions(
                max_total_cost=settings.sql_max_total_cost,
                max_plan_rows=settings.sql_max_plan_rows,
                fact_table=settings.sql_fact_table,
            ),
            default_max_rows=settings.sql_default_max_rows,
            hard_max_rows=settings.sql_hard_max_rows,
            usage_sql_mode=settings.assistant_usage_sql_mode,
        )

    async def invoke(
        self,
        args: Dict[str, Any],
        signal: Optional[asyncio.Event] = None,
        record_span: Optional[SpanRecorder] = None,
    ) -> ToolInvocation:
        started_at = utc_now()
        db_time_ms = 0

        try:
            params = ExecuteSqlInput.model_validate(args or {})
        except ValidationError as e:
            failure = ExecuteSqlFailure(kind="validation", message=f"Invalid execute_sql arguments: {e}")
            span = self._span(started_at, args or {}, None, failure=failure)
            self._record(span, record_span)
            return ToolInvocation(outcome=failure, span=span)

        max_rows = clamp_rows(params.max_rows, self.default_max_rows, self.hard_max_rows)
        logger.info("execute_sql invoked", reason=params.reason, max_rows=max_rows, sql_preview=params.sql[:100])

        try:
            validated = self.validator.validate(params.sql)
            limited = apply_row_limit(validated.normalized_sql, validated.statement, max_rows)

            explain = await self.sandbox.run_explain(limited.sql, signal)
            db_time_ms += explain.execution_ms
            summary = summarize_explain_json(explain.plan_json, self.gate_options.fact_table)
            logger.info("Query plan estimated", total_cost=summary.total_cost, plan_rows=summary.plan_rows)
            enforce_explain_gate(summary, self.gate_options)

            result = await self.sandbox.run_query(limited.sql, signal)
            db_time_ms += result.execution_ms
        except QueryAbortedError as e:
            span = self._span(started_at, params.model_dump(), max_rows, error=str(e), error_kind=e.kind)
            self._record(span, record_span)
            raise
        except SqlGuardError as e:
            failure = ExecuteSqlFailure(kind=e.kind, message=format_sql_tool_error(e, self.allowed_tables))
            logger.warning("execute_sql failed", kind=e.kind, error=str(e))
            span = self._span(started_at, params.model_dump(), max_rows, failure=failure)
            self._record(span, record_span)
            return ToolInvocation(outcome=failure, db_time_ms=db_time_ms, span=span)

        rows = [make_json_serializable(row) for row in result.rows]
        success = ExecuteSqlSuccess(
            columns=result.columns,
            rows=rows,
            row_count=len(rows),
            truncated=limited.truncated and len(rows) >= max_rows,
            meta=ExecuteSqlMeta(
                execution_ms=result.execution_ms,
                explain_ms=explain.execution_ms,
                explain_summary=summary.to_dict(),
            ),
        )
        logger.info("execute_sql success", row_count=success.row_count, execution_ms=result.execution_ms)

        span = self._span(
            started_at,
            params.model_dump(),
            max_rows,
            output_meta={
                "row_count": success.row_count,
                "tables": referenced_tables(validated),
                "truncated": success.truncated,
                "execution_ms": result.execution_ms,
                "explain_ms": explain.execution_ms,
                "explain_summary": summary.to_dict(),
            },
        )
        self._record(span, record_span)
        return ToolInvocation(outcome=success, db_time_ms=db_time_ms, span=span)

    def _span(
        self,
        started_at,
        params: Dict[str, Any],
        max_rows: Optional[int],
        output_meta: Optional[Dict[str, Any]] = None,
        failure: Optional[ExecuteSqlFailure] = None,
        error: Optional[str] = None,
        error_kind: Optional[str] = None,
    ) -> ToolCallSpan:
        ended_at = utc_now()
        sql = params.get("sql")
        if failure is not None:
            error, error_kind = failure.message, failure.kind
        return ToolCallSpan(
            tool_name=self.name,
            started_at=started_at.isoformat(),
            ended_at=ended_at.isoformat(),
            duration_ms=duration_ms(started_at, ended_at),
            input={
                "reason": params.get("reason"),
                "sql": format_sql_for_storage(sql, self.usage_sql_mode) if isinstance(sql, str) else None,
                "max_rows": max_rows,
            },
            output_meta=output_meta,
            error=error,
            error_kind=error_kind,
            success=error is None,
        )

    def _record(self, span: ToolCallSpan, record_span: Optional[SpanRecorder]) -> None:
        if record_span is None:
            return
        try:
            record_span(span)
        except Exception as e:
            logger.warning("Failed to record tool call span", error=str(e))

    def tool_schema(self) -> Dict[str, Any]:
        """OpenAI-style function definition for bind_tools."""
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": {
                    "type": "object",
                    "properties": {
                        "sql": {
                            "type": "string",
                            "description": "A single read-only SELECT statement, without a trailing semicolon.",
                        },
                        "reason": {
                            "type": "string",
                            "description": "Why this query is needed to answer the question.",
                        },
                        "maxRows": {
                            "type": "integer",
                            "description": f"Maximum rows to return (default {self.default_max_rows}, max {self.hard_max_rows}).",
                        },
                    },
                    "required": ["sql", "reason"],
                },
            },
        }
