import asyncio

import asyncpg
import pytest

from sql_guard import QueryAbortedError, ReadonlySandbox, SandboxTimeouts, SqlExecutionError, SqlTimeoutError

from tests.conftest import FakePool


@pytest.mark.asyncio
async def test_query_runs_in_readonly_transaction_with_local_timeouts():
    pool = FakePool(rows=[{"name": "Trust X", "total": 10}], columns=["name", "total"])
    sandbox = ReadonlySandbox(pool, SandboxTimeouts(statement_timeout_ms=1000, lock_timeout_ms=200, idle_in_tx_timeout_ms=500))

    result = await sandbox.run_query("SELECT name, total FROM buyers")

    assert result.columns == ["name", "total"]
    assert result.rows == [{"name": "Trust X", "total": 10}]
    assert result.execution_ms >= 0

    conn = pool.connections[0]
    assert conn.executed == [
        "SET LOCAL statement_timeout = 1000",
        "SET LOCAL lock_timeout = 200",
        "SET LOCAL idle_in_transaction_session_timeout = 500",
    ]
    assert conn.transactions[0].readonly is True
    assert conn.transactions[0].committed is True


@pytest.mark.asyncio
async def test_empty_result_still_reports_columns():
    pool = FakePool(rows=[], columns=["id", "amount"])
    result = await ReadonlySandbox(pool).run_query("SELECT id, amount FROM spend_entries LIMIT 0")
    assert result.columns == ["id", "amount"]
    assert result.rows == []


@pytest.mark.asyncio
async def test_explain_returns_parsed_plan():
    pool = FakePool()
    result = await ReadonlySandbox(pool).run_explain("SELECT 1")
    assert pool.explained == ["EXPLAIN (FORMAT JSON) SELECT 1"]
    assert result.plan_json[0]["Plan"]["Node Type"] == "Aggregate"


@pytest.mark.asyncio
@pytest.mark.parametrize("error", [
    asyncpg.exceptions.QueryCanceledError("canceling statement due to statement timeout"),
    asyncpg.exceptions.LockNotAvailableError("could not obtain lock"),
])
async def test_server_timeouts_become_timeout_errors(error):
    pool = FakePool()
    pool.query_error = error

    with pytest.raises(SqlTimeoutError) as exc_info:
        await ReadonlySandbox(pool).run_query("SELECT 1")

    assert exc_info.value.kind == "timeout"
    assert pool.connections[0].transactions[0].rolled_back is True


@pytest.mark.asyncio
async def test_other_database_errors_become_execution_errors():
    pool = FakePool()
    pool.query_error = asyncpg.exceptions.UndefinedColumnError('column "nope" does not exist')

    with pytest.raises(SqlExecutionError) as exc_info:
        await ReadonlySandbox(pool).run_query("SELECT nope FROM buyers")

    assert exc_info.value.kind == "execution"
    assert "nope" in str(exc_info.value)


@pytest.mark.asyncio
async def test_signal_already_set_skips_database():
    pool = FakePool()
    signal = asyncio.Event()
    signal.set()

    with pytest.raises(QueryAbortedError):
        await ReadonlySandbox(pool).run_query("SELECT 1", signal)

    assert pool.connections == []


@pytest.mark.asyncio
async def test_abort_cancels_backend_and_rolls_back():
    pool = FakePool()
    pool.block_queries = True
    sandbox = ReadonlySandbox(pool)
    signal = asyncio.Event()

    async def fire():
        while not pool.queries:
            await asyncio.sleep(0.01)
        signal.set()

    firing = asyncio.create_task(fire())
    with pytest.raises(QueryAbortedError):
        await sandbox.run_query("SELECT * FROM spend_entries", signal)
    await firing

    query_conn = pool.connections[0]
    assert pool.cancelled_pids == [query_conn.pid]
    # the cancel goes out on a second connection
    assert pool.connections[1].pid != query_conn.pid
    assert pool.acquire_timeouts[1] == ReadonlySandbox.CANCEL_ACQUIRE_TIMEOUT_SECONDS
    assert query_conn.transactions[0].rolled_back is True


@pytest.mark.asyncio
async def test_client_side_guard_times_out_hung_query():
    class QuickSandbox(ReadonlySandbox):
        CLIENT_GRACE_SECONDS = 0.05

    pool = FakePool()
    pool.block_queries = True
    sandbox = QuickSandbox(pool, SandboxTimeouts(statement_timeout_ms=10))

    with pytest.raises(SqlTimeoutError, match="client-side guard"):
        await sandbox.run_query("SELECT 1")

    assert pool.cancelled_pids == [pool.connections[0].pid]
