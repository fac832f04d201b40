"""
Serving the endpoints inside the run's event loop.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Optional

import uvicorn
from fastapi import FastAPI

from qrun.config import settings

logger = logging.getLogger(__name__)


class EndpointServer:
    """A uvicorn server running as a task of the current event loop."""

    def __init__(self, name: str, app: FastAPI, port: int, host: Optional[str] = None) -> None:
        self.name = name
        self.config = uvicorn.Config(
            app,
            host=host or settings.ENDPOINT_HOST,
            port=port,
            log_level=settings.LOG_LEVEL.lower(),
            lifespan="off",
        )
        self.server = uvicorn.Server(self.config)
        self._task: Optional[asyncio.Task] = None

    @property
    def bound_port(self) -> Optional[int]:
        """Actual port, useful when started on port 0."""
        for server in getattr(self.server, "servers", None) or []:
            for sock in server.sockets:
                return sock.getsockname()[1]
        return None

    async def start(self) -> None:
        self._task = asyncio.create_task(self.server.serve())
        while not self.server.started:
            if self._task.done():
                # serve() returned early (bind failure); surface its error
                self._task.result()
                raise RuntimeError(f"{self.name} endpoint failed to start")
            await asyncio.sleep(0.05)
        logger.info("%s endpoint listening on %s:%s", self.name, self.config.host, self.bound_port)

    async def stop(self) -> None:
        if self._task is None:
            return
        self.server.should_exit = True
        await self._task
        self._task = None
        logger.info("%s endpoint stopped", self.name)
