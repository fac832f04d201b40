"""
Run Configuration Models

Defines Pydantic models for a qrun batch:
- Execution options (queries, loops, failure policy, per-query overrides)
- Runner options (sessions, async in-flight limit, outputs, endpoints)
"""

from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field, field_validator


class ExecutionCase(str, Enum):
    """How a query is submitted to the runner."""

    SCHEME_QUERY = "scheme"
    GENERIC_SCRIPT = "script"
    GENERIC_QUERY = "query"
    LEGACY_SCRIPT = "legacy-script"
    ASYNC_QUERY = "async"


# Cases an operator may assign to a script query (-C / execution_cases)
JOB_EXECUTION_CASES = (
    ExecutionCase.GENERIC_SCRIPT,
    ExecutionCase.GENERIC_QUERY,
    ExecutionCase.LEGACY_SCRIPT,
    ExecutionCase.ASYNC_QUERY,
)


class QueryAction(str, Enum):
    """What the runner does with the query text."""

    EXECUTE = "execute"
    EXPLAIN = "explain"


class TraceOptType(str, Enum):
    """Which phase gets per-statement tracing."""

    ALL = "all"
    SCHEME = "scheme"
    SCRIPT = "script"
    DISABLED = "disabled"


class AsyncVerbose(str, Enum):
    """Logging verbosity for async queries."""

    EACH_QUERY = "each-query"
    FINAL = "final"


class ResultFormat(str, Enum):
    """Rendering of fetched script results."""

    ROWS = "rows"
    FULL_JSON = "full-json"


class PlanFormat(str, Enum):
    """Rendering of query plans."""

    PRETTY = "pretty"
    TABLE = "table"
    JSON = "json"


class PerQueryOverrides(BaseModel):
    """
    Index-aligned per-query option vectors.

    An empty list means "use the global default"; otherwise query ``i`` uses
    ``values[min(i, len(values) - 1)]``.
    """

    execution_cases: List[ExecutionCase] = Field(
        default_factory=list, description="Execution case per query"
    )
    actions: List[QueryAction] = Field(
        default_factory=list, description="Query action per query"
    )
    databases: List[str] = Field(default_factory=list, description="Database per query")
    trace_ids: List[str] = Field(default_factory=list, description="Trace id per query")
    pool_ids: List[str] = Field(default_factory=list, description="Pool id per query")
    user_sids: List[str] = Field(default_factory=list, description="User per query")
    timeouts_ms: List[int] = Field(
        default_factory=list, description="Timeout per query (ms, 0 = none)"
    )

    @field_validator("timeouts_ms")
    @classmethod
    def validate_timeouts(cls, v):
        """Timeouts cannot be negative."""
        if any(t < 0 for t in v):
            raise ValueError("timeouts must be >= 0")
        return v

    def sizes(self) -> dict[str, int]:
        """Lengths keyed by the name used in configuration errors."""
        return {
            "execution cases": len(self.execution_cases),
            "script query actions": len(self.actions),
            "databases": len(self.databases),
            "trace ids": len(self.trace_ids),
            "pool ids": len(self.pool_ids),
            "user SIDs": len(self.user_sids),
            "timeouts": len(self.timeouts_ms),
        }


class ExecutionOptions(BaseModel):
    """
    What to run and how often.
    """

    scheme_query: Optional[str] = Field(
        None, description="Scheme query text (typically DDL), run once first"
    )
    script_queries: List[str] = Field(
        default_factory=list, description="Script query texts (typically DML)"
    )
    use_templates: bool = Field(
        False, description="Substitute ${QRUN_TOKEN} and ${QUERY_ID} in queries"
    )

    loop_count: int = Field(
        1, ge=0, description="Number of passes over the queries (0 = unbounded)"
    )
    loop_delay_ms: int = Field(0, ge=0, description="Delay between passes (ms)")
    continue_after_fail: bool = Field(
        False, description="Keep going after a failed query"
    )

    forget_execution: bool = Field(
        False, description="Forget script operations after fetching results"
    )
    result_rows_limit: int = Field(
        0, ge=0, description="Rows limit for script results (0 = unlimited)"
    )

    overrides: PerQueryOverrides = Field(
        default_factory=PerQueryOverrides, description="Per-query option vectors"
    )


class RunnerOptions(BaseModel):
    """
    How the runner behaves and where it writes diagnostics.
    """

    same_session: bool = Field(False, description="Run all queries in one session")
    inflight_limit: int = Field(
        0, ge=0, description="Max outstanding async queries (0 = unlimited)"
    )
    async_verbose: AsyncVerbose = Field(
        AsyncVerbose.EACH_QUERY, description="Async query logging verbosity"
    )
    trace_opt: TraceOptType = Field(
        TraceOptType.DISABLED, description="Phase with per-statement tracing"
    )
    cancel_after_ms: Optional[int] = Field(
        None, ge=0, description="Cancel script operations after this delay (ms, 0 = disabled)"
    )

    result_output: Optional[str] = Field(
        "-", description="File for script results ('-' = stdout)"
    )
    result_format: ResultFormat = Field(ResultFormat.ROWS, description="Result format")
    plan_format: PlanFormat = Field(PlanFormat.PRETTY, description="Plan format")

    scheme_ast_output: Optional[str] = Field(
        None, description="File for scheme query statements ('-' = stdout)"
    )
    script_ast_output: Optional[str] = Field(
        None, description="File for script query statements ('-' = stdout)"
    )
    script_plan_output: Optional[str] = Field(
        None, description="File for script query plans ('-' = stdout)"
    )
    in_progress_statistics_output: Optional[str] = Field(
        None, description="File for in-progress script statistics"
    )

    monitoring_port: Optional[int] = Field(
        None, ge=0, le=65535, description="Monitoring endpoint port (0 = random)"
    )
    gateway_port: Optional[int] = Field(
        None, ge=0, le=65535, description="Query gateway port (0 = random)"
    )

    @field_validator("in_progress_statistics_output")
    @classmethod
    def validate_statistics_output(cls, v):
        """Statistics are rewritten in place, so they need a real file."""
        if v == "-":
            raise ValueError(
                "Script in progress statistics cannot be printed to stdout, "
                "please specify file name"
            )
        return v

    @property
    def monitoring_enabled(self) -> bool:
        return self.monitoring_port is not None

    @property
    def gateway_enabled(self) -> bool:
        return self.gateway_port is not None


class RunConfig(BaseModel):
    """
    Full configuration of one qrun invocation.
    """

    execution: ExecutionOptions = Field(
        default_factory=ExecutionOptions, description="Execution options"
    )
    runner: RunnerOptions = Field(
        default_factory=RunnerOptions, description="Runner options"
    )
