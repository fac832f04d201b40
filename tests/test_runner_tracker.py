"""
Tests for async query tracking and the shared runner behaviour.
"""

from __future__ import annotations

import asyncio

import pytest

from stubs import StubRunner
from qrun.core.runner import AsyncQueryTracker
from qrun.models import (
    AsyncVerbose,
    QueryAction,
    ResolvedRequest,
    ResultFormat,
    ResultSet,
    RunnerOptions,
)


async def _succeed(delay: float = 0.0) -> bool:
    await asyncio.sleep(delay)
    return True


async def _explode() -> bool:
    raise RuntimeError("boom")


class TestAsyncQueryTracker:
    """Tests for AsyncQueryTracker."""

    @pytest.mark.asyncio
    async def test_counts_outcomes(self):
        tracker = AsyncQueryTracker(AsyncVerbose.FINAL)
        tracker.submit(_succeed(), label="ok")
        tracker.submit(_explode(), label="bad")
        assert tracker.outstanding == 2

        await tracker.drain()

        assert tracker.stats() == {
            "outstanding": 0,
            "max_outstanding": 2,
            "submitted": 2,
            "completed": 1,
            "failed": 1,
        }

    @pytest.mark.asyncio
    async def test_wait_below_blocks_until_completion(self):
        tracker = AsyncQueryTracker()
        tracker.submit(_succeed(0.01), label="a")
        tracker.submit(_succeed(0.01), label="b")

        await asyncio.wait_for(tracker.wait_below(2), timeout=1.0)
        assert tracker.outstanding < 2
        await tracker.drain()

    @pytest.mark.asyncio
    async def test_drain_without_queries_returns(self):
        tracker = AsyncQueryTracker()
        await asyncio.wait_for(tracker.drain(), timeout=1.0)
        assert tracker.submitted == 0


class TestQueryRunner:
    """Tests for QueryRunner shared behaviour."""

    @pytest.mark.asyncio
    async def test_rows_limit_applied_to_results(self):
        runner = StubRunner()
        runner.result_rows_limit = 1
        runner.add_results([ResultSet(columns=["id"], rows=[[1], [2]])])

        success, rendered = await runner.print_script_results()

        assert success
        assert rendered == '{"id": 1}\n# results truncated to 1 rows\n'

    @pytest.mark.asyncio
    async def test_full_json_results(self):
        runner = StubRunner(RunnerOptions(result_format=ResultFormat.FULL_JSON))
        runner.add_results([ResultSet(columns=["id"], rows=[[1]])])
        success, rendered = await runner.print_script_results()
        assert success
        assert '"columns"' in rendered

    @pytest.mark.asyncio
    async def test_finalize_closes_after_drain(self):
        runner = StubRunner(async_delay=0.01)
        request = ResolvedRequest(
            query="SELECT 1", action=QueryAction.EXECUTE, trace_id="t",
            pool_id="", user_sid="", database="",
        )
        await runner.execute_query_async(request)
        await runner.execute_query_async(request)
        await runner.finalize_runner()

        assert runner.closed
        assert runner.outstanding_async == 0
        assert runner.async_finished == 2
