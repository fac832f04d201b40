"""
Error taxonomy for qrun runs.

Every failure the orchestrator surfaces to the operator is a ``QrunError``.
None of them are retried; repetition is the operator's choice through
loop-count and continue-after-fail.
"""

from __future__ import annotations

from typing import Optional


class QrunError(Exception):
    """Base class for orchestration failures."""


class ConfigurationError(QrunError):
    """Rejected option combination, reported before any execution starts."""


class MissingTemplateVariable(ConfigurationError):
    """A template placeholder is present but its value is not available."""

    def __init__(self, variable: str) -> None:
        self.variable = variable
        super().__init__(
            f"Failed to replace ${{{variable}}} template, "
            f"please specify {variable} environment variable"
        )


class SchemeFailure(QrunError):
    """Scheme query failed. Always fatal."""


class JobFailure(QrunError):
    """A synchronous job's execute, fetch or forget step failed."""

    def __init__(
        self,
        message: str,
        *,
        job_index: int,
        loop: int,
        cause: Optional[BaseException] = None,
    ) -> None:
        self.job_index = job_index
        self.loop = loop
        self.cause = cause
        super().__init__(message)


class FinalizationFailure(QrunError):
    """The runner failed to drain or release resources at the end of the run."""


class ResultPrintingFailure(QrunError):
    """Fetched results could not be rendered or written."""
