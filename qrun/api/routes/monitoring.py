"""
API routes for run monitoring.
"""

from typing import Any, Dict

from fastapi import APIRouter, Request

router = APIRouter()


@router.get("/session", response_model=Dict[str, Any])
async def get_session(request: Request):
    """
    Current state of the run: phase, iteration, loop, async dispatch count
    and recorded failures.
    """
    monitor = request.app.state.monitor
    if monitor.session is None:
        return {"phase": "idle"}
    return monitor.session.snapshot()


@router.get("/runner", response_model=Dict[str, Any])
async def get_runner(request: Request):
    """
    Runner statistics: async in-flight counters and, for the Postgres runner,
    pool usage.
    """
    runner = request.app.state.monitor.runner
    stats = getattr(runner, "stats", None)
    if callable(stats):
        return stats()
    return {"async": runner.async_stats()}
