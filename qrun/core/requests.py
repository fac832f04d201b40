"""
Builds jobs and per-iteration requests from execution options.
"""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from qrun.config import settings
from qrun.core.overrides import resolve
from qrun.core.templates import TemplateExpander
from qrun.models import (
    ExecutionCase,
    ExecutionOptions,
    QueryAction,
    QueryJob,
    ResolvedRequest,
)


def build_jobs(execution: ExecutionOptions) -> list[QueryJob]:
    """One QueryJob per configured script query, with case and action resolved."""
    overrides = execution.overrides
    return [
        QueryJob(
            index=i,
            text=text,
            execution_case=resolve(
                i, overrides.execution_cases, ExecutionCase.GENERIC_SCRIPT
            ),
            action=resolve(i, overrides.actions, QueryAction.EXECUTE),
        )
        for i, text in enumerate(execution.script_queries)
    ]


class RequestBuilder:
    """Materializes ResolvedRequests for the scheme query and for each iteration."""

    def __init__(
        self,
        execution: ExecutionOptions,
        expander: Optional[TemplateExpander] = None,
        default_trace_id: Optional[str] = None,
    ) -> None:
        self.execution = execution
        self.expander = expander or TemplateExpander.from_environment()
        self.default_trace_id = default_trace_id or settings.DEFAULT_TRACE_ID

    def scheme_request(self) -> ResolvedRequest:
        sql = self.execution.scheme_query or ""
        if self.execution.use_templates:
            sql = self.expander.expand(sql)

        return ResolvedRequest(
            query=sql,
            action=QueryAction.EXECUTE,
            trace_id=self.default_trace_id,
            pool_id="",
            user_sid="",
            database="",
            timeout_ms=0,
        )

    def job_request(
        self, job: QueryJob, query_id: int, start_time: datetime
    ) -> ResolvedRequest:
        """
        Request for ``job`` in iteration ``query_id``.

        The trace id carries the start time so that every loop iteration gets
        a distinct one.
        """
        sql = job.text
        if self.execution.use_templates:
            sql = self.expander.expand(sql, query_id=query_id)

        overrides = self.execution.overrides
        i = job.index
        trace_id = resolve(i, overrides.trace_ids, self.default_trace_id)
        return ResolvedRequest(
            query=sql,
            action=job.action,
            trace_id=f"{trace_id}-{start_time.isoformat()}",
            pool_id=resolve(i, overrides.pool_ids, ""),
            user_sid=resolve(i, overrides.user_sids, ""),
            database=resolve(i, overrides.databases, ""),
            timeout_ms=resolve(i, overrides.timeouts_ms, 0),
        )
