"""
Run Result Models

Defines the scheduler's mutable session state and the final outcome of a run.
"""

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any, Optional


class RunPhase(str, Enum):
    """Scheduler state machine phases."""

    IDLE = "idle"
    VALIDATING = "validating"
    RUNNING_SCHEME = "running_scheme"
    RUNNING_LOOP = "running_loop"
    FINALIZING = "finalizing"
    DONE = "done"
    FAILED = "failed"


class RunVerdict(str, Enum):
    """Success or failure of the run as decided by the execution loop."""

    SUCCEEDED = "succeeded"
    FAILED = "failed"


@dataclass
class RunSession:
    """
    Mutable state of one run, owned by the scheduler task.

    Created when the scheduler starts and consumed once at finalization.
    """

    phase: RunPhase = RunPhase.IDLE
    started_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    iteration: int = 0
    loop: int = 0
    async_dispatched: int = 0
    failed: bool = False
    failures: list[Exception] = field(default_factory=list)
    result_job_indices: list[int] = field(default_factory=list)

    def record_failure(self, exc: Exception) -> None:
        self.failed = True
        self.failures.append(exc)

    def snapshot(self) -> dict[str, Any]:
        """JSON-friendly view for the monitoring endpoint."""
        return {
            "phase": self.phase.value,
            "started_at": self.started_at.isoformat(),
            "iteration": self.iteration,
            "loop": self.loop,
            "async_dispatched": self.async_dispatched,
            "failed": self.failed,
            "failures": [str(f) for f in self.failures],
            "result_job_indices": list(self.result_job_indices),
        }


@dataclass
class RunOutcome:
    """Final report of a run."""

    verdict: RunVerdict
    iterations: int
    terminal_error: Optional[Exception] = None
    job_failures: list[Exception] = field(default_factory=list)
    finalization_error: Optional[Exception] = None
    printing_error: Optional[Exception] = None

    @property
    def succeeded(self) -> bool:
        return self.verdict == RunVerdict.SUCCEEDED

    def errors(self) -> list[Exception]:
        """Every error that should be surfaced to the operator."""
        out: list[Exception] = []
        if self.terminal_error is not None:
            out.append(self.terminal_error)
        if self.finalization_error is not None:
            out.append(self.finalization_error)
        if self.printing_error is not None:
            out.append(self.printing_error)
        return out
