"""
Runner interface used by the execution scheduler.

A runner executes one resolved request at a time for synchronous cases and
owns the tasks of asynchronous (fire-and-forget) queries. The scheduler only
defers async dispatch; the runner is the authority on how many async queries
are still outstanding.
"""

from __future__ import annotations

import asyncio
import logging
import time
from abc import ABC, abstractmethod
from typing import Awaitable

from qrun.core.render import render_results
from qrun.models import AsyncVerbose, ResolvedRequest, ResultSet, RunnerOptions

logger = logging.getLogger(__name__)


class AsyncQueryTracker:
    """
    Tracks outstanding async queries.

    The count is guarded by an asyncio.Condition so callers can block until it
    drops below a limit (in-flight gate) or reaches zero (finalization).
    """

    def __init__(self, verbose: AsyncVerbose = AsyncVerbose.EACH_QUERY) -> None:
        self.verbose = verbose
        self._cond = asyncio.Condition()
        self._tasks: set[asyncio.Task] = set()
        self.outstanding = 0
        self.max_outstanding = 0
        self.submitted = 0
        self.completed = 0
        self.failed = 0

    def submit(self, query: Awaitable[bool], *, label: str) -> asyncio.Task:
        """Start ``query`` in the background and count it as outstanding."""
        self.outstanding += 1
        self.submitted += 1
        self.max_outstanding = max(self.max_outstanding, self.outstanding)
        task = asyncio.create_task(self._run(query, label))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _run(self, query: Awaitable[bool], label: str) -> None:
        start = time.perf_counter()
        success = False
        try:
            success = bool(await query)
        except asyncio.CancelledError:
            logger.warning("Async query %s cancelled", label)
        except Exception as e:
            logger.error("Async query %s failed: %s", label, e)
        finally:
            async with self._cond:
                self.outstanding -= 1
                if success:
                    self.completed += 1
                else:
                    self.failed += 1
                self._cond.notify_all()

        if self.verbose == AsyncVerbose.EACH_QUERY:
            elapsed_ms = (time.perf_counter() - start) * 1000.0
            logger.info(
                "Async query %s %s in %.1f ms (in flight: %d)",
                label,
                "completed" if success else "failed",
                elapsed_ms,
                self.outstanding,
            )

    async def wait_below(self, limit: int) -> None:
        """Block until fewer than ``limit`` queries are outstanding."""
        async with self._cond:
            await self._cond.wait_for(lambda: self.outstanding < limit)

    async def drain(self) -> None:
        """Block until every submitted query has reached a terminal state."""
        async with self._cond:
            await self._cond.wait_for(lambda: self.outstanding == 0)
        if self.submitted:
            logger.info(
                "Async queries finished: %d submitted, %d completed, %d failed, "
                "max in flight %d",
                self.submitted,
                self.completed,
                self.failed,
                self.max_outstanding,
            )

    def stats(self) -> dict[str, int]:
        return {
            "outstanding": self.outstanding,
            "max_outstanding": self.max_outstanding,
            "submitted": self.submitted,
            "completed": self.completed,
            "failed": self.failed,
        }


class QueryRunner(ABC):
    """
    Base class for query runners.

    Subclasses implement the synchronous execution cases and the body of an
    async query; submission, in-flight accounting, finalization and result
    printing are shared.
    """

    def __init__(self, options: RunnerOptions, result_rows_limit: int = 0) -> None:
        self.options = options
        self.result_rows_limit = result_rows_limit
        self._tracker = AsyncQueryTracker(options.async_verbose)
        self._results: list[ResultSet] = []

    @abstractmethod
    async def execute_scheme_query(self, request: ResolvedRequest) -> bool: ...

    @abstractmethod
    async def execute_script(self, request: ResolvedRequest) -> bool: ...

    @abstractmethod
    async def fetch_script_results(self) -> bool: ...

    @abstractmethod
    async def forget_execution_operation(self) -> bool: ...

    @abstractmethod
    async def execute_query(self, request: ResolvedRequest) -> bool: ...

    @abstractmethod
    async def execute_legacy_script(self, request: ResolvedRequest) -> bool: ...

    @abstractmethod
    async def _execute_async(self, request: ResolvedRequest) -> bool:
        """Body of one async query; runs as a background task."""

    async def execute_query_async(self, request: ResolvedRequest) -> None:
        """Submit ``request`` without waiting for it to complete."""
        self._tracker.submit(self._execute_async(request), label=request.trace_id)

    async def wait_inflight_below(self, limit: int) -> None:
        await self._tracker.wait_below(limit)

    @property
    def outstanding_async(self) -> int:
        return self._tracker.outstanding

    def async_stats(self) -> dict[str, int]:
        return self._tracker.stats()

    async def finalize_runner(self) -> None:
        """Wait for all async queries, then release backend resources."""
        try:
            await self._tracker.drain()
        finally:
            await self.close()

    async def close(self) -> None:
        """Release backend resources. No-op by default."""

    def add_results(self, result_sets: list[ResultSet]) -> None:
        self._results.extend(rs.limited(self.result_rows_limit) for rs in result_sets)

    async def print_script_results(self) -> tuple[bool, str]:
        """Render every collected result set."""
        try:
            rendered = render_results(self._results, self.options.result_format)
        except (TypeError, ValueError) as e:
            logger.error("Failed to render script results: %s", e)
            return False, ""
        return True, rendered
