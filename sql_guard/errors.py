"""
Error taxonomy for the guarded SQL path.

Validation and cost-gate errors are always recoverable by asking the model for
a corrected query. Execution errors are recoverable up to the retry budget.
QueryAbortedError is not a tool failure: it ends the whole turn.
"""


class SqlGuardError(Exception):
    """Base class for every failure raised by the guarded SQL path."""

    kind = "execution"


class SqlValidationError(SqlGuardError):
    kind = "validation"


class CostGateError(SqlGuardError):
    kind = "cost_gate"


class SqlExecutionError(SqlGuardError):
    kind = "execution"


class SqlTimeoutError(SqlExecutionError):
    kind = "timeout"


class QueryAbortedError(SqlGuardError):
    kind = "aborted"

    def __init__(self, message: str = "Query aborted by caller"):
        super().__init__(message)
