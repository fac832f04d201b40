"""
Cross-option validation for a run configuration.

Runs once, after all configuration is loaded and before the first request is
built. Every check is an independent predicate over the same immutable
configuration; the first violated one raises ConfigurationError. The
in-flight-limit sizing check only produces a warning.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from qrun.core.errors import ConfigurationError
from qrun.core.requests import build_jobs
from qrun.models import (
    ExecutionCase,
    ExecutionOptions,
    QueryJob,
    RunConfig,
    RunnerOptions,
    TraceOptType,
)

logger = logging.getLogger(__name__)


@dataclass
class ValidationReport:
    """Non-fatal findings of a successful validation."""

    warnings: list[str] = field(default_factory=list)


def _has_case(jobs: list[QueryJob], *cases: ExecutionCase) -> bool:
    return any(job.execution_case in cases for job in jobs)


def check_something_to_execute(execution: ExecutionOptions, runner: RunnerOptions) -> None:
    if (
        not execution.scheme_query
        and not execution.script_queries
        and not runner.monitoring_enabled
        and not runner.gateway_enabled
    ):
        raise ConfigurationError("Nothing to execute and is not running as daemon")


def check_override_sizes(execution: ExecutionOptions) -> None:
    number_queries = len(execution.script_queries)
    for option_name, size in execution.overrides.sizes().items():
        if size > number_queries:
            raise ConfigurationError(
                f"Too many {option_name}. Specified {size}, "
                f"when number of queries is {number_queries}"
            )


def check_job_cases(jobs: list[QueryJob]) -> None:
    for job in jobs:
        if job.execution_case == ExecutionCase.SCHEME_QUERY:
            raise ConfigurationError(
                f"Execution case 'scheme' can not be used for script query {job.index}"
            )


def check_scheme_options(execution: ExecutionOptions, runner: RunnerOptions) -> None:
    if execution.scheme_query:
        return
    if runner.scheme_ast_output:
        raise ConfigurationError(
            "Scheme query AST output can not be used without scheme query"
        )


def check_script_options(
    execution: ExecutionOptions, runner: RunnerOptions, jobs: list[QueryJob]
) -> None:
    if runner.same_session and _has_case(jobs, ExecutionCase.ASYNC_QUERY):
        raise ConfigurationError("Same session can not be used with async queries")

    # GenericScript only
    if not _has_case(jobs, ExecutionCase.GENERIC_SCRIPT):
        if execution.forget_execution:
            raise ConfigurationError(
                "Forget execution can not be used without generic script queries"
            )
        if runner.cancel_after_ms:
            raise ConfigurationError(
                "Cancel after can not be used without generic script queries"
            )

    # GenericScript or GenericQuery
    if not _has_case(jobs, ExecutionCase.GENERIC_SCRIPT, ExecutionCase.GENERIC_QUERY):
        if execution.result_rows_limit:
            raise ConfigurationError(
                "Result rows limit can not be used without script queries"
            )
        if runner.in_progress_statistics_output:
            raise ConfigurationError(
                "Script statistics can not be used without script queries"
            )

    # Any synchronous case
    if not _has_case(
        jobs,
        ExecutionCase.GENERIC_SCRIPT,
        ExecutionCase.GENERIC_QUERY,
        ExecutionCase.LEGACY_SCRIPT,
    ):
        if runner.script_ast_output:
            raise ConfigurationError(
                "Script query AST output can not be used without script/legacy queries"
            )
        if runner.script_plan_output:
            raise ConfigurationError(
                "Script query plan output can not be used without script/legacy queries"
            )
        if runner.same_session:
            raise ConfigurationError(
                "Same session can not be used without script/legacy queries"
            )


def check_async_options(
    execution: ExecutionOptions, runner: RunnerOptions, jobs: list[QueryJob]
) -> list[str]:
    """Returns warnings; raises only for a limit without async queries."""
    limit = runner.inflight_limit
    if limit and not _has_case(jobs, ExecutionCase.ASYNC_QUERY):
        raise ConfigurationError("In flight limit can not be used without async queries")

    warnings: list[str] = []
    max_queries = len(execution.script_queries) * execution.loop_count
    if execution.loop_count and limit and limit > max_queries:
        warnings.append(
            f"Warning: inflight limit is {limit}, that is larger than max possible "
            f"number of queries {max_queries}"
        )
    return warnings


def check_trace_opt(execution: ExecutionOptions, runner: RunnerOptions) -> None:
    """
    Each broader scope re-checks the narrower prerequisites: ``script``
    requires script queries and then also passes through the ``all`` rule.
    """
    trace_opt = runner.trace_opt
    has_scheme = bool(execution.scheme_query)
    has_scripts = bool(execution.script_queries)

    if trace_opt == TraceOptType.SCHEME and not has_scheme:
        raise ConfigurationError(
            "Trace opt type scheme cannot be used without scheme query"
        )
    if trace_opt == TraceOptType.SCRIPT and not has_scripts:
        raise ConfigurationError(
            "Trace opt type script cannot be used without script queries"
        )
    if trace_opt in (TraceOptType.SCRIPT, TraceOptType.ALL):
        if not has_scheme and not has_scripts:
            raise ConfigurationError(
                "Trace opt type all cannot be used without any queries"
            )


def validate_run_config(config: RunConfig) -> ValidationReport:
    """
    Validate a full run configuration.

    Raises:
        ConfigurationError: on the first incompatible option combination.
    """
    execution = config.execution
    runner = config.runner

    # Structural
    check_something_to_execute(execution, runner)
    check_override_sizes(execution)
    jobs = build_jobs(execution)
    check_job_cases(jobs)

    check_scheme_options(execution, runner)
    check_script_options(execution, runner, jobs)
    report = ValidationReport(warnings=check_async_options(execution, runner, jobs))
    check_trace_opt(execution, runner)

    for warning in report.warnings:
        logger.warning(warning)
    return report
