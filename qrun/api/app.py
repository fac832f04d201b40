"""
FastAPI applications for the monitoring endpoint and the query gateway.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Optional

from fastapi import FastAPI

from qrun import __version__
from qrun.api.routes import gateway, monitoring
from qrun.core.runner import QueryRunner
from qrun.models import RunSession


@dataclass
class RunMonitor:
    """What the endpoints can see of the current run."""

    runner: QueryRunner
    session: Optional[RunSession] = None
    started_at: datetime = field(default_factory=lambda: datetime.now(UTC))


def _health(app: FastAPI) -> None:
    @app.get("/health")
    async def health_check():
        """
        Health check endpoint.

        Returns:
            dict: Service status, version and uptime
        """
        monitor: RunMonitor = app.state.monitor
        uptime = (datetime.now(UTC) - monitor.started_at).total_seconds()
        return {
            "status": "healthy",
            "service": "qrun",
            "version": __version__,
            "uptime_seconds": round(uptime, 3),
        }


def create_monitoring_app(monitor: RunMonitor) -> FastAPI:
    app = FastAPI(
        title="qrun monitoring",
        version=__version__,
        docs_url="/api/docs",
        redoc_url=None,
    )
    app.state.monitor = monitor
    _health(app)
    app.include_router(monitoring.router, prefix="/api", tags=["monitoring"])
    return app


def create_gateway_app(monitor: RunMonitor) -> FastAPI:
    app = FastAPI(
        title="qrun gateway",
        version=__version__,
        docs_url="/api/docs",
        redoc_url=None,
    )
    app.state.monitor = monitor
    _health(app)
    app.include_router(gateway.router, prefix="/api", tags=["gateway"])
    return app
