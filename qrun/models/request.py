"""
Runtime records passed between the scheduler and runners.
"""

from dataclasses import dataclass, field
from typing import Any, Optional

from qrun.models.run_config import ExecutionCase, QueryAction


@dataclass(frozen=True)
class QueryJob:
    """One configured script query, independent of how many times it loops."""

    index: int
    text: str
    execution_case: ExecutionCase
    action: QueryAction

    @property
    def is_async(self) -> bool:
        return self.execution_case == ExecutionCase.ASYNC_QUERY

    @property
    def has_results(self) -> bool:
        """Sync jobs that execute (not explain) produce printable results."""
        return not self.is_async and self.action == QueryAction.EXECUTE


@dataclass(frozen=True)
class ResolvedRequest:
    """A fully materialized request for a single runner call."""

    query: str
    action: QueryAction
    trace_id: str
    pool_id: str
    user_sid: str
    database: str
    timeout_ms: int = 0

    @property
    def timeout_seconds(self) -> Optional[float]:
        if self.timeout_ms <= 0:
            return None
        return self.timeout_ms / 1000.0


@dataclass
class ResultSet:
    """Rows returned by one statement."""

    columns: list[str]
    rows: list[list[Any]] = field(default_factory=list)
    truncated: bool = False

    def limited(self, rows_limit: int) -> "ResultSet":
        """Copy holding at most ``rows_limit`` rows (0 = unlimited)."""
        if rows_limit <= 0 or len(self.rows) <= rows_limit:
            return self
        return ResultSet(
            columns=list(self.columns),
            rows=self.rows[:rows_limit],
            truncated=True,
        )
