import asyncio
import json
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

import asyncpg
import structlog

from sql_guard.errors import QueryAbortedError, SqlExecutionError, SqlTimeoutError

logger = structlog.get_logger()

TIMEOUT_ERRORS = (
    asyncpg.exceptions.QueryCanceledError,
    asyncpg.exceptions.LockNotAvailableError,
    asyncpg.exceptions.IdleInTransactionSessionTimeoutError,
)


@dataclass
class SandboxTimeouts:
    statement_timeout_ms: int = 30_000
    lock_timeout_ms: int = 5_000
    idle_in_tx_timeout_ms: int = 20_000

    @classmethod
    def from_settings(cls, settings) -> "SandboxTimeouts":
        return cls(
            statement_timeout_ms=settings.sql_statement_timeout_ms,
            lock_timeout_ms=settings.sql_lock_timeout_ms,
            idle_in_tx_timeout_ms=settings.sql_idle_in_tx_timeout_ms,
        )


@dataclass
class QueryResult:
    columns: List[str]
    rows: List[Dict[str, Any]]
    execution_ms: int


@dataclass
class ExplainResult:
    plan_json: Any
    execution_ms: int


async def create_readonly_pool(settings) -> asyncpg.Pool:
    """Connection pool for assistant queries; prefer a DSN whose role only has SELECT grants."""
    logger.info(
        "Creating read-only query pool",
        min_size=settings.db_pool_min_size,
        max_size=settings.db_pool_max_size,
    )
    return await asyncpg.create_pool(
        dsn=settings.database_readonly_url,
        min_size=settings.db_pool_min_size,
        max_size=settings.db_pool_max_size,
    )


async def _fetch_rows(conn, sql: str) -> Tuple[List[str], List[Dict[str, Any]]]:
    # A prepared statement exposes column names even when no rows come back
    stmt = await conn.prepare(sql)
    columns = [attr.name for attr in stmt.get_attributes()]
    records = await stmt.fetch()
    return columns, [dict(record) for record in records]


async def _fetch_plan(conn, sql: str) -> Any:
    raw = await conn.fetchval(f"EXPLAIN (FORMAT JSON) {sql}")
    return json.loads(raw) if isinstance(raw, (str, bytes)) else raw


class ReadonlySandbox:
    """
    Runs already-validated SQL inside a read-only transaction with per-transaction
    statement, lock and idle-in-transaction timeouts.

    The pool is injected so one sandbox can be shared by every turn while tests
    can pass a fake. Nothing here changes session-level defaults: every timeout
    is SET LOCAL and dies with the transaction.
    """

    CLIENT_GRACE_SECONDS = 5.0
    CANCEL_GRACE_SECONDS = 2.0
    CANCEL_ACQUIRE_TIMEOUT_SECONDS = 5.0

    def __init__(self, pool, timeouts: Optional[SandboxTimeouts] = None):
        self.pool = pool
        self.timeouts = timeouts or SandboxTimeouts()

    async def run_query(self, sql: str, signal: Optional[asyncio.Event] = None) -> QueryResult:
        (columns, rows), execution_ms = await self._run(sql, _fetch_rows, signal)
        logger.info("Read-only query executed", row_count=len(rows), execution_ms=execution_ms, sql_preview=sql[:100])
        return QueryResult(columns=columns, rows=rows, execution_ms=execution_ms)

    async def run_explain(self, sql: str, signal: Optional[asyncio.Event] = None) -> ExplainResult:
        plan_json, execution_ms = await self._run(sql, _fetch_plan, signal)
        return ExplainResult(plan_json=plan_json, execution_ms=execution_ms)

    async def _run(
        self,
        sql: str,
        work: Callable[[Any, str], Awaitable[Any]],
        signal: Optional[asyncio.Event],
    ) -> Tuple[Any, int]:
        if signal is not None and signal.is_set():
            raise QueryAbortedError()

        start = time.monotonic()
        try:
            async with self.pool.acquire() as conn:
                pid = conn.get_server_pid()
                task = asyncio.ensure_future(self._in_transaction(conn, sql, work))
                payload = await self._await_with_signal(task, pid, signal)
        except TIMEOUT_ERRORS as e:
            logger.warning("Read-only query timed out", error=str(e))
            raise SqlTimeoutError(f"Query timed out: {e}") from e
        except asyncpg.PostgresError as e:
            raise SqlExecutionError(str(e)) from e
        except (OSError, asyncpg.InterfaceError) as e:
            logger.error("Read-only pool connection failed", error=str(e), error_type=type(e).__name__)
            raise SqlExecutionError(f"DATABASE_CONNECTION_ERROR: {e}") from e

        return payload, int((time.monotonic() - start) * 1000)

    async def _in_transaction(self, conn, sql: str, work) -> Any:
        # Leaving the transaction block commits on success and rolls back on any exception
        async with conn.transaction(readonly=True):
            await conn.execute(f"SET LOCAL statement_timeout = {int(self.timeouts.statement_timeout_ms)}")
            await conn.execute(f"SET LOCAL lock_timeout = {int(self.timeouts.lock_timeout_ms)}")
            await conn.execute(
                f"SET LOCAL idle_in_transaction_session_timeout = {int(self.timeouts.idle_in_tx_timeout_ms)}"
            )
            return await work(conn, sql)

    async def _await_with_signal(self, task: asyncio.Future, pid: int, signal: Optional[asyncio.Event]) -> Any:
        waiters = {task}
        signal_task = None
        if signal is not None:
            signal_task = asyncio.ensure_future(signal.wait())
            waiters.add(signal_task)

        client_timeout = self.timeouts.statement_timeout_ms / 1000 + self.CLIENT_GRACE_SECONDS
        try:
            done, _ = await asyncio.wait(waiters, timeout=client_timeout, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            logger.info("Turn cancelled during query, cancelling backend", pid=pid)
            await self._abort_in_flight(task, pid)
            raise
        finally:
            if signal_task is not None and not signal_task.done():
                signal_task.cancel()

        if task in done:
            return task.result()

        if signal_task is not None and signal_task in done:
            logger.info("Abort signal fired during query, cancelling backend", pid=pid)
            await self._abort_in_flight(task, pid)
            raise QueryAbortedError()

        await self._abort_in_flight(task, pid)
        raise SqlTimeoutError(
            f"Query timed out after {self.timeouts.statement_timeout_ms}ms (client-side guard)."
        )

    async def _abort_in_flight(self, task: asyncio.Future, pid: int) -> None:
        if not task.done():
            await self._cancel_backend(pid)
            done, _ = await asyncio.wait({task}, timeout=self.CANCEL_GRACE_SECONDS)
            if not done:
                task.cancel()
                await asyncio.wait({task})

        if not task.cancelled() and task.exception() is not None:
            logger.debug("In-flight query unwound after cancel", error=str(task.exception()))

    async def _cancel_backend(self, pid: int) -> None:
        # Out-of-band cancel on a separate connection; the busy one cannot take new commands
        try:
            async with self.pool.acquire(timeout=self.CANCEL_ACQUIRE_TIMEOUT_SECONDS) as cancel_conn:
                await cancel_conn.fetchval("SELECT pg_cancel_backend($1)", pid)
            logger.info("Backend query cancelled", pid=pid)
        except Exception as e:
            logger.warning("Failed to cancel backend query", pid=pid, error=str(e))
