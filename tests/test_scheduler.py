"""
Tests for the execution scheduler.

All tests use the in-memory StubRunner; no backend is required.
"""

from __future__ import annotations

import asyncio
import io
from unittest.mock import AsyncMock

import pytest

from stubs import StubRunner, make_config
from qrun.core.errors import (
    ConfigurationError,
    FinalizationFailure,
    JobFailure,
    ResultPrintingFailure,
    SchemeFailure,
)
from qrun.core.scheduler import ExecutionScheduler
from qrun.models import ExecutionCase, QueryAction, RunPhase, RunVerdict

ASYNC = ExecutionCase.ASYNC_QUERY
QUERY = ExecutionCase.GENERIC_QUERY
LEGACY = ExecutionCase.LEGACY_SCRIPT


class TestSynchronousJobs:
    """Dispatch of synchronous execution cases."""

    @pytest.mark.asyncio
    async def test_jobs_run_in_order_per_loop(self):
        runner = StubRunner()
        config = make_config(["q1", "q2"], overrides={"execution_cases": [QUERY]}, loop_count=2)
        outcome = await ExecutionScheduler(config, runner).run()

        assert outcome.verdict == RunVerdict.SUCCEEDED
        assert outcome.iterations == 4
        assert runner.queries("query") == ["q1", "q2", "q1", "q2"]
        assert runner.names()[-2:] == ["finalize", "print"]

    @pytest.mark.asyncio
    async def test_generic_script_fetches_and_forgets(self):
        runner = StubRunner()
        config = make_config(["q1"], forget_execution=True)
        await ExecutionScheduler(config, runner).run()

        assert runner.names()[:3] == ["script", "fetch", "forget"]

    @pytest.mark.asyncio
    async def test_generic_script_without_forget(self):
        runner = StubRunner()
        await ExecutionScheduler(make_config(["q1"]), runner).run()
        assert "forget" not in runner.names()

    @pytest.mark.asyncio
    async def test_fetch_failure_is_job_failure(self):
        runner = StubRunner(fetch_ok=False)
        outcome = await ExecutionScheduler(make_config(["q1"]), runner).run()

        assert outcome.verdict == RunVerdict.FAILED
        assert isinstance(outcome.terminal_error, JobFailure)
        assert "Fetch script results failed" in str(outcome.terminal_error)

    @pytest.mark.asyncio
    async def test_legacy_script(self):
        runner = StubRunner()
        config = make_config(["q1"], overrides={"execution_cases": [LEGACY]})
        await ExecutionScheduler(config, runner).run()
        assert runner.queries("legacy") == ["q1"]

    @pytest.mark.asyncio
    async def test_results_written_to_stream(self):
        runner = StubRunner()
        stream = io.StringIO()
        await ExecutionScheduler(make_config(["q1"]), runner, result_stream=stream).run()
        # fetch is the second recorded call
        assert stream.getvalue() == '{"n": 2}\n'

    @pytest.mark.asyncio
    async def test_explain_only_jobs_skip_printing(self):
        runner = StubRunner()
        config = make_config(["q1"], overrides={"actions": [QueryAction.EXPLAIN]})
        await ExecutionScheduler(config, runner).run()
        assert "print" not in runner.names()


class TestFailurePolicy:
    """Continue-after-fail and fatal failures."""

    @pytest.mark.asyncio
    async def test_abort_on_first_failure(self):
        runner = StubRunner(fail_on=("q2",))
        config = make_config(["q1", "q2", "q3"], overrides={"execution_cases": [QUERY]})
        scheduler = ExecutionScheduler(config, runner)
        outcome = await scheduler.run()

        assert outcome.verdict == RunVerdict.FAILED
        assert outcome.terminal_error.job_index == 1
        assert outcome.job_failures == []
        assert runner.queries("query") == ["q1", "q2"]
        assert "finalize" in runner.names()
        assert scheduler.session.phase == RunPhase.FAILED

    @pytest.mark.asyncio
    async def test_continue_after_fail_runs_every_job(self):
        runner = StubRunner(fail_on=("q2",))
        config = make_config(
            ["q1", "q2", "q3"],
            overrides={"execution_cases": [QUERY]},
            continue_after_fail=True,
            loop_count=2,
        )
        outcome = await ExecutionScheduler(config, runner).run()

        assert outcome.verdict == RunVerdict.SUCCEEDED
        assert outcome.succeeded
        assert runner.queries("query") == ["q1", "q2", "q3"] * 2
        assert [(f.job_index, f.loop) for f in outcome.job_failures] == [(1, 0), (1, 1)]

    @pytest.mark.asyncio
    async def test_runner_exception_becomes_job_failure(self):
        runner = StubRunner(raise_on=("q1",))
        config = make_config(["q1"], overrides={"execution_cases": [QUERY]})
        outcome = await ExecutionScheduler(config, runner).run()

        error = outcome.terminal_error
        assert isinstance(error, JobFailure)
        assert isinstance(error.cause, RuntimeError)
        assert "finalize" in runner.names()

    @pytest.mark.asyncio
    async def test_scheme_failure_is_fatal(self):
        runner = StubRunner(fail_on=("CREATE TABLE t (id int)",))
        config = make_config(
            ["q1"], scheme_query="CREATE TABLE t (id int)", continue_after_fail=True
        )
        outcome = await ExecutionScheduler(config, runner).run()

        assert isinstance(outcome.terminal_error, SchemeFailure)
        assert runner.queries("script") == []
        assert "finalize" in runner.names()

    @pytest.mark.asyncio
    async def test_missing_template_token_fails_the_job(self):
        runner = StubRunner()
        config = make_config(
            ["SELECT '${QRUN_TOKEN}'", "SELECT 2"],
            overrides={"execution_cases": [QUERY]},
            use_templates=True,
            continue_after_fail=True,
        )
        outcome = await ExecutionScheduler(config, runner).run()

        assert outcome.verdict == RunVerdict.SUCCEEDED
        assert len(outcome.job_failures) == 1
        assert "please specify QRUN_TOKEN" in str(outcome.job_failures[0])
        assert runner.queries("query") == ["SELECT 2"]

    @pytest.mark.asyncio
    async def test_missing_template_token_in_scheme_is_fatal(self):
        config = make_config(scheme_query="CREATE TABLE ${QRUN_TOKEN} (id int)", use_templates=True)
        outcome = await ExecutionScheduler(config, StubRunner()).run()
        assert isinstance(outcome.terminal_error, SchemeFailure)

    @pytest.mark.asyncio
    async def test_invalid_configuration_executes_nothing(self):
        runner = StubRunner()
        scheduler = ExecutionScheduler(make_config(), runner)
        with pytest.raises(ConfigurationError):
            await scheduler.run()
        assert runner.calls == []
        assert scheduler.session.phase == RunPhase.FAILED

    @pytest.mark.asyncio
    async def test_finalization_failure_reported_separately(self):
        runner = StubRunner(finalize_error=RuntimeError("pool close failed"))
        outcome = await ExecutionScheduler(make_config(["q1"]), runner).run()

        assert outcome.verdict == RunVerdict.SUCCEEDED
        assert isinstance(outcome.finalization_error, FinalizationFailure)
        assert outcome.errors() == [outcome.finalization_error]

    @pytest.mark.asyncio
    async def test_printing_failure_reported_separately(self):
        runner = StubRunner(print_ok=False)
        outcome = await ExecutionScheduler(make_config(["q1"]), runner).run()

        assert outcome.verdict == RunVerdict.SUCCEEDED
        assert isinstance(outcome.printing_error, ResultPrintingFailure)


    @pytest.mark.asyncio
    async def test_unexpected_printing_error_reported_separately(self):
        class CrashingRenderer(StubRunner):
            async def print_script_results(self):
                raise RuntimeError("renderer crashed")

        scheduler = ExecutionScheduler(make_config(["q1"]), CrashingRenderer())
        outcome = await scheduler.run()

        assert outcome.verdict == RunVerdict.SUCCEEDED
        assert isinstance(outcome.printing_error, ResultPrintingFailure)
        assert "renderer crashed" in str(outcome.printing_error)
        assert scheduler.session.phase == RunPhase.DONE


class TestResultBearingJobs:
    """Jobs whose results are printed at the end of the run."""

    @pytest.mark.asyncio
    async def test_indices_recorded_once_in_dispatch_order(self):
        config = make_config(
            ["q1", "q2", "q3"],
            overrides={
                "execution_cases": [ExecutionCase.GENERIC_SCRIPT, ASYNC, QUERY],
            },
            loop_count=2,
        )
        scheduler = ExecutionScheduler(config, StubRunner())
        await scheduler.run()

        assert scheduler.session.result_job_indices == [0, 2]
        assert scheduler.session.snapshot()["result_job_indices"] == [0, 2]

    @pytest.mark.asyncio
    async def test_explain_jobs_not_recorded(self):
        config = make_config(
            ["q1", "q2"],
            overrides={"execution_cases": [QUERY], "actions": [QueryAction.EXECUTE, QueryAction.EXPLAIN]},
        )
        scheduler = ExecutionScheduler(config, StubRunner())
        await scheduler.run()
        assert scheduler.session.result_job_indices == [0]

    @pytest.mark.asyncio
    async def test_no_printing_when_scheme_fails_before_jobs(self):
        runner = StubRunner(fail_on=("CREATE TABLE t (id int)",))
        config = make_config(["q1"], scheme_query="CREATE TABLE t (id int)")
        scheduler = ExecutionScheduler(config, runner)
        await scheduler.run()

        assert scheduler.session.result_job_indices == []
        assert "print" not in runner.names()


class TestAsyncQueries:
    """In-flight limiting and the finalization barrier."""

    @pytest.mark.asyncio
    async def test_inflight_limit_bounds_concurrency(self):
        runner = StubRunner(async_delay=0.01)
        config = make_config(
            ["q1"],
            overrides={"execution_cases": [ASYNC]},
            loop_count=5,
            runner={"inflight_limit": 2},
        )
        scheduler = ExecutionScheduler(config, runner)
        outcome = await scheduler.run()

        assert outcome.verdict == RunVerdict.SUCCEEDED
        assert runner.max_concurrent <= 2
        assert runner.async_stats()["max_outstanding"] == 2
        assert runner.async_finished == 5
        assert scheduler.session.async_dispatched == 5

    @pytest.mark.asyncio
    async def test_unlimited_inflight(self):
        runner = StubRunner(async_delay=0.01)
        config = make_config(["q1"], overrides={"execution_cases": [ASYNC]}, loop_count=5)
        await ExecutionScheduler(config, runner).run()
        assert runner.max_concurrent == 5

    @pytest.mark.asyncio
    async def test_finalize_waits_for_outstanding_queries(self):
        runner = StubRunner(async_delay=0.02)
        outstanding_at_close = []

        async def close():
            outstanding_at_close.append(runner.outstanding_async)

        runner.close = close
        config = make_config(
            ["q1", "q2"], overrides={"execution_cases": [QUERY, ASYNC]}, loop_count=3
        )
        await ExecutionScheduler(config, runner).run()

        assert outstanding_at_close == [0]
        assert runner.outstanding_async == 0
        assert runner.async_finished == 3

    @pytest.mark.asyncio
    async def test_failed_async_query_does_not_fail_run(self):
        runner = StubRunner(fail_on=("q1",))
        config = make_config(["q1"], overrides={"execution_cases": [ASYNC]}, loop_count=2)
        outcome = await ExecutionScheduler(config, runner).run()

        assert outcome.verdict == RunVerdict.SUCCEEDED
        assert runner.async_stats()["failed"] == 2
        assert "print" not in runner.names()


class TestLoopControl:
    """Loop count, delay and external stop."""

    @pytest.mark.asyncio
    async def test_unbounded_loop_ends_on_stop_event(self):
        runner = StubRunner()
        stop_event = asyncio.Event()

        def on_call(name, request):
            if name == "query" and len(runner.queries("query")) == 10:
                stop_event.set()

        runner.on_call = on_call
        config = make_config(["q1"], overrides={"execution_cases": [QUERY]}, loop_count=0)
        outcome = await ExecutionScheduler(config, runner, stop_event=stop_event).run()

        assert outcome.iterations == 10
        assert runner.names()[-2:] == ["finalize", "print"]

    @pytest.mark.asyncio
    async def test_delay_between_passes_only(self):
        sleep = AsyncMock()
        config = make_config(
            ["q1", "q2"], overrides={"execution_cases": [QUERY]}, loop_count=3, loop_delay_ms=50
        )
        await ExecutionScheduler(config, StubRunner(), sleep=sleep).run()

        assert sleep.await_count == 2
        sleep.assert_awaited_with(0.05)

    @pytest.mark.asyncio
    async def test_stop_during_delay_skips_next_pass(self):
        stop_event = asyncio.Event()
        sleep = AsyncMock(side_effect=lambda _delay: stop_event.set())
        runner = StubRunner()
        config = make_config(
            ["q1", "q2"], overrides={"execution_cases": [QUERY]}, loop_count=0, loop_delay_ms=10
        )
        outcome = await ExecutionScheduler(
            config, runner, stop_event=stop_event, sleep=sleep
        ).run()

        assert outcome.iterations == 2
        assert runner.queries("query") == ["q1", "q2"]

    @pytest.mark.asyncio
    async def test_zero_loop_count_without_jobs_skips_loop(self):
        runner = StubRunner()
        config = make_config(scheme_query="CREATE TABLE t (id int)", loop_count=0)
        scheduler = ExecutionScheduler(config, runner)
        outcome = await scheduler.run()

        assert outcome.iterations == 0
        assert runner.names() == ["scheme", "finalize"]
        assert scheduler.session.phase == RunPhase.DONE
