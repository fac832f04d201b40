"""
Execution scheduler.

Drives a run through its phases:

    IDLE -> VALIDATING -> RUNNING_SCHEME -> RUNNING_LOOP -> FINALIZING -> DONE

with FAILED as the terminal phase of an aborted run. Synchronous jobs are
dispatched strictly one at a time in iteration order; async jobs are submitted
in order and gated by the in-flight limit, but complete whenever the runner's
tasks do.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import UTC, datetime
from typing import Awaitable, Callable, Optional, TextIO

from qrun.core.errors import (
    ConfigurationError,
    FinalizationFailure,
    JobFailure,
    QrunError,
    ResultPrintingFailure,
    SchemeFailure,
)
from qrun.core.requests import RequestBuilder, build_jobs
from qrun.core.runner import QueryRunner
from qrun.core.validation import ValidationReport, validate_run_config
from qrun.models import (
    ExecutionCase,
    QueryJob,
    ResolvedRequest,
    RunConfig,
    RunOutcome,
    RunPhase,
    RunSession,
    RunVerdict,
)

logger = logging.getLogger(__name__)

Sleeper = Callable[[float], Awaitable[None]]


class ExecutionScheduler:
    """
    Runs the scheme query once, then the (job x loop) iterations, then
    finalizes the runner and prints results.
    """

    def __init__(
        self,
        config: RunConfig,
        runner: QueryRunner,
        *,
        request_builder: Optional[RequestBuilder] = None,
        result_stream: Optional[TextIO] = None,
        stop_event: Optional[asyncio.Event] = None,
        sleep: Sleeper = asyncio.sleep,
    ) -> None:
        """
        Args:
            config: Full run configuration
            runner: Runner that executes resolved requests
            request_builder: Builds requests (defaults to one over config.execution)
            result_stream: Where rendered results go (None = discard)
            stop_event: External signal ending the loop before its next iteration
            sleep: Awaitable used for the inter-loop delay
        """
        self.config = config
        self.runner = runner
        self.request_builder = request_builder or RequestBuilder(config.execution)
        self.result_stream = result_stream
        self.stop_event = stop_event
        self._sleep = sleep
        self.jobs: list[QueryJob] = build_jobs(config.execution)
        self.session = RunSession()
        self._report: Optional[ValidationReport] = None

    def validate(self) -> ValidationReport:
        """
        Validate the configuration once; later calls return the same report.

        Raises:
            ConfigurationError: the configuration is rejected.
        """
        if self._report is None:
            self.session.phase = RunPhase.VALIDATING
            try:
                self._report = validate_run_config(self.config)
            except ConfigurationError:
                self.session.phase = RunPhase.FAILED
                raise
        return self._report

    async def run(self) -> RunOutcome:
        """
        Execute the whole run.

        Raises:
            ConfigurationError: the configuration is rejected; nothing was executed.
        """
        session = self.session
        self.validate()

        terminal_error: Optional[QrunError] = None
        try:
            if self.config.execution.scheme_query:
                session.phase = RunPhase.RUNNING_SCHEME
                await self._run_scheme_query()

            session.phase = RunPhase.RUNNING_LOOP
            await self._run_loop()
        except (SchemeFailure, JobFailure) as e:
            terminal_error = e
            session.failed = True
            logger.error("%s", e)

        session.phase = RunPhase.FINALIZING
        finalization_error = await self._finalize()

        printing_error: Optional[ResultPrintingFailure] = None
        if session.result_job_indices:
            printing_error = await self._print_results()

        session.phase = RunPhase.FAILED if terminal_error is not None else RunPhase.DONE
        return RunOutcome(
            verdict=RunVerdict.FAILED if terminal_error is not None else RunVerdict.SUCCEEDED,
            iterations=session.iteration,
            terminal_error=terminal_error,
            job_failures=[f for f in session.failures if f is not terminal_error],
            finalization_error=finalization_error,
            printing_error=printing_error,
        )

    async def _run_scheme_query(self) -> None:
        logger.info("Executing scheme query...")
        try:
            request = self.request_builder.scheme_request()
        except ConfigurationError as e:
            raise SchemeFailure(f"Scheme query execution failed: {e}") from e
        try:
            success = await self.runner.execute_scheme_query(request)
        except Exception as e:
            raise SchemeFailure(f"Scheme query execution failed: {e}") from e
        if not success:
            raise SchemeFailure("Scheme query execution failed")

    def _should_continue(self, query_id: int, total: int, loop_count: int) -> bool:
        if self.stop_event is not None and self.stop_event.is_set():
            logger.info("Stop requested, leaving loop after %d iterations", query_id)
            return False
        return loop_count == 0 or query_id < total

    async def _run_loop(self) -> None:
        execution = self.config.execution
        number_queries = len(self.jobs)
        if number_queries == 0:
            return

        loop_count = execution.loop_count
        total = number_queries * loop_count
        delay = execution.loop_delay_ms / 1000.0

        query_id = 0
        while self._should_continue(query_id, total, loop_count):
            index = query_id % number_queries
            if index == 0 and query_id > 0 and delay > 0:
                await self._sleep(delay)
                if self.stop_event is not None and self.stop_event.is_set():
                    break

            self.session.iteration = query_id + 1
            self.session.loop = query_id // number_queries
            job = self.jobs[index]
            try:
                await self._run_job(job, query_id)
            except JobFailure as e:
                self.session.record_failure(e)
                if not execution.continue_after_fail:
                    raise
                job_logger = logging.LoggerAdapter(logger, {"job": e.job_index, "loop": e.loop})
                job_logger.error("%s (continuing)", e)
            query_id += 1

    def _job_label(self, job: QueryJob, query_id: int) -> str:
        label = "Executing script"
        if len(self.jobs) > 1:
            label += f" {job.index}"
        if self.config.execution.loop_count != 1:
            label += f", loop {query_id // len(self.jobs)}"
        return label + "..."

    async def _run_job(self, job: QueryJob, query_id: int) -> None:
        loop = query_id // len(self.jobs)

        def failure(message: str, cause: Optional[BaseException] = None) -> JobFailure:
            return JobFailure(message, job_index=job.index, loop=loop, cause=cause)

        job_logger = logging.LoggerAdapter(logger, {"job": job.index, "loop": loop})
        start_time = datetime.now(UTC)
        if not job.is_async:
            job_logger.info(self._job_label(job, query_id))

        try:
            request = self.request_builder.job_request(job, query_id, start_time)
        except ConfigurationError as e:
            raise failure(str(e), e) from e

        if job.has_results and job.index not in self.session.result_job_indices:
            self.session.result_job_indices.append(job.index)

        try:
            await self._dispatch(job, request, failure)
        except JobFailure:
            raise
        except Exception as e:
            raise failure(f"{job.execution_case.value} execution raised: {e}", e) from e

    async def _dispatch(
        self,
        job: QueryJob,
        request: ResolvedRequest,
        failure: Callable[[str], JobFailure],
    ) -> None:
        case = job.execution_case
        runner = self.runner

        if case == ExecutionCase.GENERIC_SCRIPT:
            if not await runner.execute_script(request):
                raise failure("Script execution failed")
            logger.info("Fetching script results...")
            if not await runner.fetch_script_results():
                raise failure("Fetch script results failed")
            if self.config.execution.forget_execution:
                logger.info("Forgetting script execution operation...")
                if not await runner.forget_execution_operation():
                    raise failure("Forget script execution operation failed")

        elif case == ExecutionCase.GENERIC_QUERY:
            if not await runner.execute_query(request):
                raise failure("Query execution failed")

        elif case == ExecutionCase.LEGACY_SCRIPT:
            if not await runner.execute_legacy_script(request):
                raise failure("Legacy script execution failed")

        elif case == ExecutionCase.ASYNC_QUERY:
            limit = self.config.runner.inflight_limit
            if limit > 0:
                await runner.wait_inflight_below(limit)
            await runner.execute_query_async(request)
            self.session.async_dispatched += 1

        else:
            raise failure(f"Execution case {case.value} is not supported for script queries")

    async def _finalize(self) -> Optional[FinalizationFailure]:
        try:
            await self.runner.finalize_runner()
        except Exception as e:
            error = FinalizationFailure(f"Runner finalization failed: {e}")
            logger.error("%s", error)
            return error
        return None

    async def _print_results(self) -> Optional[ResultPrintingFailure]:
        try:
            success, rendered = await self.runner.print_script_results()
            if not success:
                raise ResultPrintingFailure("Failed to print script results")
            if self.result_stream is not None and rendered:
                self.result_stream.write(rendered)
                self.result_stream.flush()
        except ResultPrintingFailure as e:
            logger.error("%s", e)
            return e
        except Exception as e:
            error = ResultPrintingFailure(f"Failed to print script results, reason:\n{e}")
            logger.error("%s", error)
            return error
        return None
