"""
API routes for the query gateway.

Lets external clients run queries through the same runner (pools, identity,
timeouts) while qrun is running or serving as a daemon.
"""

from datetime import UTC, datetime
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, HTTPException, Request, status
from pydantic import BaseModel, Field

from qrun.api.error_handling import http_exception
from qrun.config import settings
from qrun.core.postgres_runner import BACKEND_ERRORS
from qrun.models import QueryAction, ResolvedRequest

router = APIRouter()


class GatewayQuery(BaseModel):
    """Query submitted through the gateway."""

    query: str = Field(..., min_length=1, description="Query text")
    action: QueryAction = Field(QueryAction.EXECUTE, description="Execute or explain")
    database: str = Field("", description="Database (runner default when empty)")
    pool_id: str = Field("", description="Pool id")
    user_sid: str = Field("", description="Role to run as")
    trace_id: Optional[str] = Field(None, description="Trace id prefix")
    timeout_ms: int = Field(0, ge=0, description="Timeout (ms, 0 = none)")


class GatewayResultSet(BaseModel):
    columns: List[str]
    rows: List[List[Any]]


class GatewayResponse(BaseModel):
    trace_id: str
    result_sets: List[GatewayResultSet]


@router.post("/query", response_model=GatewayResponse)
async def run_query(body: GatewayQuery, request: Request) -> Dict[str, Any]:
    """
    Run one query and return its result sets.
    """
    runner = request.app.state.monitor.runner
    run = getattr(runner, "run_query", None)
    if not callable(run):
        raise HTTPException(
            status_code=status.HTTP_501_NOT_IMPLEMENTED,
            detail={"code": "GATEWAY_UNSUPPORTED", "message": "Runner does not serve queries."},
        )

    trace_id = f"{body.trace_id or settings.DEFAULT_TRACE_ID}-{datetime.now(UTC).isoformat()}"
    resolved = ResolvedRequest(
        query=body.query,
        action=body.action,
        trace_id=trace_id,
        pool_id=body.pool_id,
        user_sid=body.user_sid,
        database=body.database,
        timeout_ms=body.timeout_ms,
    )
    try:
        result_sets = await run(resolved, use_session=False)
    except BACKEND_ERRORS as e:
        raise http_exception("query", e)

    return {
        "trace_id": trace_id,
        "result_sets": [{"columns": rs.columns, "rows": rs.rows} for rs in result_sets],
    }
