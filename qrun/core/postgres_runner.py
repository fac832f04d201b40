"""
Postgres-backed query runner.

Maps the runner execution cases onto asyncpg:
- scheme query: every statement executed in order
- generic script: a background "operation" whose result sets are fetched
  (and optionally forgotten) afterwards; subject to cancel-after
- generic query: every statement in one transaction, results collected directly
- legacy script: the whole text through the simple query protocol
- async query: like a generic query, results discarded

Per-request identity: the trace id becomes ``application_name`` and the user
becomes the session role for the duration of the request.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, AsyncIterator, Optional

import asyncpg

from qrun.connectors.postgres_pool import PoolRegistry
from qrun.core.outputs import OutputRegistry
from qrun.core.render import render_plan
from qrun.core.runner import QueryRunner
from qrun.core.sql_utils import (
    classify_sql_error,
    is_explainable,
    is_row_returning,
    preview_query_for_log,
    quote_ident,
    split_statements,
    sql_error_meta_for_log,
)
from qrun.models import (
    QueryAction,
    ResolvedRequest,
    ResultSet,
    RunnerOptions,
    TraceOptType,
)

logger = logging.getLogger(__name__)
trace_logger = logging.getLogger("qrun.trace")

BACKEND_ERRORS = (
    asyncpg.PostgresError,
    asyncpg.InterfaceError,
    OSError,
    asyncio.TimeoutError,
)

# Postgres truncates application_name to NAMEDATALEN - 1
_APPLICATION_NAME_MAX = 63


@dataclass
class ScriptOperation:
    """Runner-side record of one generic script execution."""

    operation_id: str
    request: ResolvedRequest
    statement_count: int
    started_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    statements_done: int = 0
    rows: int = 0
    result_sets: list[ResultSet] = field(default_factory=list)
    success: bool = False
    cancelled: bool = False


class PostgresRunner(QueryRunner):
    """Runs resolved requests against Postgres through asyncpg pools."""

    def __init__(
        self,
        options: RunnerOptions,
        outputs: OutputRegistry,
        *,
        result_rows_limit: int = 0,
        pools: Optional[PoolRegistry] = None,
    ) -> None:
        super().__init__(options, result_rows_limit)
        self.outputs = outputs
        self.pools = pools or PoolRegistry()
        self._sessions: dict[tuple[str, str], asyncpg.Connection] = {}
        self._operation: Optional[ScriptOperation] = None

    # ------------------------------------------------------------------
    # Connections and identity
    # ------------------------------------------------------------------

    @asynccontextmanager
    async def _connection(
        self, request: ResolvedRequest, *, use_session: bool = True
    ) -> AsyncIterator[asyncpg.Connection]:
        pool = self.pools.get(request.database, request.pool_id)
        if use_session and self.options.same_session:
            key = (pool.database, pool.pool_name)
            conn = self._sessions.get(key)
            if conn is None:
                conn = await pool.acquire()
                self._sessions[key] = conn
                logger.info("Opened shared session on %s (pool %s)", pool.database, pool.pool_name)
            await self._apply_identity(conn, request)
            try:
                yield conn
            finally:
                await self._reset_identity(conn, request)
        else:
            async with pool.get_connection() as conn:
                await self._apply_identity(conn, request)
                try:
                    yield conn
                finally:
                    await self._reset_identity(conn, request)

    async def _apply_identity(self, conn: asyncpg.Connection, request: ResolvedRequest) -> None:
        await conn.execute(
            "SELECT set_config('application_name', $1, false)",
            request.trace_id[:_APPLICATION_NAME_MAX],
        )
        if request.user_sid:
            await conn.execute(f"SET ROLE {quote_ident(request.user_sid)}")

    async def _reset_identity(self, conn: asyncpg.Connection, request: ResolvedRequest) -> None:
        if not request.user_sid or conn.is_closed():
            return
        try:
            await conn.execute("RESET ROLE")
        except asyncpg.PostgresError as e:
            logger.warning("Failed to reset role after %s: %s", request.trace_id, e)

    # ------------------------------------------------------------------
    # Diagnostics outputs
    # ------------------------------------------------------------------

    def _trace_enabled(self, *, scheme: bool) -> bool:
        trace_opt = self.options.trace_opt
        if trace_opt == TraceOptType.ALL:
            return True
        if scheme:
            return trace_opt == TraceOptType.SCHEME
        return trace_opt == TraceOptType.SCRIPT

    def _write_ast(self, path: Optional[str], request: ResolvedRequest, statements: list[str]) -> None:
        if not path:
            return
        lines = [f"-- {request.trace_id}: {len(statements)} statement(s)"]
        for n, statement in enumerate(statements):
            lines.append(f"-- statement {n}")
            lines.append(statement + ";")
        self.outputs.write(path, "\n".join(lines) + "\n")

    def _write_plan(self, request: ResolvedRequest, plan: Any) -> None:
        rendered = render_plan(plan, self.options.plan_format)
        if not self.outputs.write(self.options.script_plan_output, rendered):
            logger.info("Plan for %s:\n%s", request.trace_id, rendered)

    def _write_statistics(self, operation: ScriptOperation) -> None:
        path = self.options.in_progress_statistics_output
        if not path:
            return
        elapsed_ms = (datetime.now(UTC) - operation.started_at).total_seconds() * 1000.0
        payload = {
            "operation_id": operation.operation_id,
            "trace_id": operation.request.trace_id,
            "statements_total": operation.statement_count,
            "statements_done": operation.statements_done,
            "rows": operation.rows,
            "elapsed_ms": round(elapsed_ms, 3),
            "updated_at": datetime.now(UTC).isoformat(),
        }
        try:
            Path(path).write_text(json.dumps(payload, indent=2) + "\n", encoding="utf-8")
        except OSError as e:
            logger.warning("Failed to write script statistics to %s: %s", path, e)

    def _log_failure(self, what: str, request: ResolvedRequest, exc: BaseException) -> None:
        logger.error(
            "%s failed [%s] %s: %s %s | query: %s",
            what,
            classify_sql_error(exc),
            request.trace_id,
            exc,
            sql_error_meta_for_log(exc) or "",
            preview_query_for_log(request.query, max_chars=300),
        )

    # ------------------------------------------------------------------
    # Statement execution
    # ------------------------------------------------------------------

    async def _fetch_result_set(
        self, conn: asyncpg.Connection, statement: str, timeout: Optional[float]
    ) -> ResultSet:
        prepared = await conn.prepare(statement, timeout=timeout)
        columns = [attr.name for attr in prepared.get_attributes()]
        records = await prepared.fetch(timeout=timeout)
        return ResultSet(columns=columns, rows=[list(record.values()) for record in records])

    async def _explain(
        self, conn: asyncpg.Connection, statements: list[str], request: ResolvedRequest
    ) -> None:
        for statement in statements:
            if not is_explainable(statement):
                logger.info("Skipping explain of non-plannable statement: %s", preview_query_for_log(statement, max_chars=120))
                continue
            raw = await conn.fetchval(
                f"EXPLAIN (FORMAT JSON) {statement}", timeout=request.timeout_seconds
            )
            self._write_plan(request, json.loads(raw) if isinstance(raw, str) else raw)

    async def _run_statements(
        self,
        conn: asyncpg.Connection,
        statements: list[str],
        request: ResolvedRequest,
        *,
        operation: Optional[ScriptOperation] = None,
    ) -> list[ResultSet]:
        traced = self._trace_enabled(scheme=False)
        timeout = request.timeout_seconds
        result_sets: list[ResultSet] = []

        for n, statement in enumerate(statements):
            if traced:
                trace_logger.info("[%s] statement %d: %s", request.trace_id, n, preview_query_for_log(statement))
            if self.options.script_plan_output and is_explainable(statement):
                await self._explain(conn, [statement], request)

            if is_row_returning(statement):
                result_set = await self._fetch_result_set(conn, statement, timeout)
                result_sets.append(result_set)
                rows = len(result_set.rows)
            else:
                await conn.execute(statement, timeout=timeout)
                rows = 0

            if operation is not None:
                operation.statements_done = n + 1
                operation.rows += rows
                self._write_statistics(operation)

        return result_sets

    async def run_query(
        self, request: ResolvedRequest, *, use_session: bool = True
    ) -> list[ResultSet]:
        """
        Run every statement of ``request`` in one transaction.

        Raises backend errors instead of reporting them; used by the query
        gateway and by the generic/async query cases.
        """
        statements = split_statements(request.query)
        async with self._connection(request, use_session=use_session) as conn:
            if request.action == QueryAction.EXPLAIN:
                await self._explain(conn, statements, request)
                return []
            async with conn.transaction():
                return await self._run_statements(conn, statements, request)

    # ------------------------------------------------------------------
    # Execution cases
    # ------------------------------------------------------------------

    async def execute_scheme_query(self, request: ResolvedRequest) -> bool:
        statements = split_statements(request.query)
        self._write_ast(self.options.scheme_ast_output, request, statements)
        traced = self._trace_enabled(scheme=True)
        try:
            async with self._connection(request, use_session=False) as conn:
                for n, statement in enumerate(statements):
                    if traced:
                        trace_logger.info("[%s] scheme statement %d: %s", request.trace_id, n, preview_query_for_log(statement))
                    await conn.execute(statement, timeout=request.timeout_seconds)
        except BACKEND_ERRORS as e:
            self._log_failure("Scheme query", request, e)
            return False
        return True

    async def _run_script_operation(
        self, operation: ScriptOperation, statements: list[str]
    ) -> bool:
        request = operation.request
        try:
            async with self._connection(request) as conn:
                if request.action == QueryAction.EXPLAIN:
                    await self._explain(conn, statements, request)
                else:
                    operation.result_sets = await self._run_statements(
                        conn, statements, request, operation=operation
                    )
        except BACKEND_ERRORS as e:
            self._log_failure("Script", request, e)
            return False
        return True

    def _cancel_operation(self, operation: ScriptOperation, task: asyncio.Task) -> None:
        if task.done():
            return
        logger.warning(
            "Cancelling script operation %s after %d ms",
            operation.operation_id,
            self.options.cancel_after_ms,
        )
        operation.cancelled = True
        task.cancel()

    async def execute_script(self, request: ResolvedRequest) -> bool:
        statements = split_statements(request.query)
        self._write_ast(self.options.script_ast_output, request, statements)

        if self._operation is not None:
            logger.debug("Replacing unforgotten script operation %s", self._operation.operation_id)
        operation = ScriptOperation(
            operation_id=uuid.uuid4().hex,
            request=request,
            statement_count=len(statements),
        )
        self._operation = operation

        task = asyncio.create_task(self._run_script_operation(operation, statements))
        cancel_handle = None
        if self.options.cancel_after_ms:
            cancel_handle = asyncio.get_running_loop().call_later(
                self.options.cancel_after_ms / 1000.0, self._cancel_operation, operation, task
            )
        start = time.perf_counter()
        try:
            await asyncio.wait({task})
        finally:
            if cancel_handle is not None:
                cancel_handle.cancel()

        if task.cancelled():
            logger.error("Script operation %s was cancelled", operation.operation_id)
            return False
        operation.success = task.result()
        logger.debug(
            "Script operation %s finished in %.1f ms (success=%s)",
            operation.operation_id,
            (time.perf_counter() - start) * 1000.0,
            operation.success,
        )
        return operation.success

    async def fetch_script_results(self) -> bool:
        operation = self._operation
        if operation is None:
            logger.error("No script operation to fetch results from")
            return False
        if not operation.success:
            logger.error("Script operation %s did not succeed", operation.operation_id)
            return False
        self.add_results(operation.result_sets)
        return True

    async def forget_execution_operation(self) -> bool:
        operation = self._operation
        if operation is None:
            logger.error("No script operation to forget")
            return False
        logger.debug("Forgot script operation %s", operation.operation_id)
        self._operation = None
        return True

    async def execute_query(self, request: ResolvedRequest) -> bool:
        if self.options.script_ast_output:
            self._write_ast(self.options.script_ast_output, request, split_statements(request.query))
        try:
            self.add_results(await self.run_query(request))
        except BACKEND_ERRORS as e:
            self._log_failure("Query", request, e)
            return False
        return True

    async def execute_legacy_script(self, request: ResolvedRequest) -> bool:
        statements = split_statements(request.query)
        self._write_ast(self.options.script_ast_output, request, statements)
        try:
            async with self._connection(request) as conn:
                if request.action == QueryAction.EXPLAIN:
                    await self._explain(conn, statements, request)
                    return True
                if self._trace_enabled(scheme=False):
                    trace_logger.info("[%s] legacy script: %s", request.trace_id, preview_query_for_log(request.query))
                status = await conn.execute(request.query, timeout=request.timeout_seconds)
        except BACKEND_ERRORS as e:
            self._log_failure("Legacy script", request, e)
            return False
        self.add_results([ResultSet(columns=["status"], rows=[[status]])])
        return True

    async def _execute_async(self, request: ResolvedRequest) -> bool:
        try:
            await self.run_query(request, use_session=False)
        except BACKEND_ERRORS as e:
            self._log_failure("Async query", request, e)
            return False
        return True

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def stats(self) -> dict[str, Any]:
        return {
            "async": self.async_stats(),
            "pools": self.pools.stats(),
            "shared_sessions": len(self._sessions),
            "pending_operation": self._operation.operation_id if self._operation else None,
        }

    async def close(self) -> None:
        for (database, pool_id), conn in list(self._sessions.items()):
            try:
                await self.pools.get(database, pool_id).release(conn)
            except BACKEND_ERRORS as e:
                logger.warning("Failed to release shared session on %s: %s", database, e)
        self._sessions.clear()
        await self.pools.close_all()
