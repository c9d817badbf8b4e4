from .errors import (
    CostGateError,
    QueryAbortedError,
    SqlExecutionError,
    SqlGuardError,
    SqlTimeoutError,
    SqlValidationError,
)
from .validator import SQLValidator, ValidatedSql
from .limits import LimitedSql, apply_row_limit
from .explain_gate import ExplainGateOptions, ExplainSummary, enforce_explain_gate, summarize_explain_json
from .sandbox import ReadonlySandbox, SandboxTimeouts, create_readonly_pool
from .execute_tool import ExecuteSqlTool, ToolInvocation, format_sql_tool_error

__all__ = [
    "CostGateError",
    "QueryAbortedError",
    "SqlExecutionError",
    "SqlGuardError",
    "SqlTimeoutError",
    "SqlValidationError",
    "SQLValidator",
    "ValidatedSql",
    "LimitedSql",
    "apply_row_limit",
    "ExplainGateOptions",
    "ExplainSummary",
    "enforce_explain_gate",
    "summarize_explain_json",
    "ReadonlySandbox",
    "SandboxTimeouts",
    "create_readonly_pool",
    "ExecuteSqlTool",
    "ToolInvocation",
    "format_sql_tool_error",
]
