"""
Data models for qrun.

This package contains:
- Run configuration (pydantic): execution options, runner options, overrides
- Runtime records (dataclasses): jobs, resolved requests, result sets
- Run session state and outcome
"""

from qrun.models.run_config import (
    ExecutionCase,
    JOB_EXECUTION_CASES,
    QueryAction,
    TraceOptType,
    AsyncVerbose,
    ResultFormat,
    PlanFormat,
    PerQueryOverrides,
    ExecutionOptions,
    RunnerOptions,
    RunConfig,
)

from qrun.models.request import (
    QueryJob,
    ResolvedRequest,
    ResultSet,
)

from qrun.models.run_result import (
    RunPhase,
    RunVerdict,
    RunSession,
    RunOutcome,
)

__all__ = [
    # run_config
    "ExecutionCase",
    "JOB_EXECUTION_CASES",
    "QueryAction",
    "TraceOptType",
    "AsyncVerbose",
    "ResultFormat",
    "PlanFormat",
    "PerQueryOverrides",
    "ExecutionOptions",
    "RunnerOptions",
    "RunConfig",
    # request
    "QueryJob",
    "ResolvedRequest",
    "ResultSet",
    # run_result
    "RunPhase",
    "RunVerdict",
    "RunSession",
    "RunOutcome",
]
