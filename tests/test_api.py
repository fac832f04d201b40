"""
Tests for the monitoring and gateway endpoints.
"""

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock, MagicMock

import asyncpg
import pytest
from fastapi.testclient import TestClient

from stubs import StubRunner
from qrun.api.app import RunMonitor, create_gateway_app, create_monitoring_app
from qrun.api.error_handling import classify_backend_error
from qrun.core.errors import JobFailure
from qrun.models import QueryAction, ResultSet, RunPhase, RunSession


class TestMonitoringApp:
    """Tests for the monitoring endpoint."""

    def test_health(self):
        client = TestClient(create_monitoring_app(RunMonitor(runner=StubRunner())))
        response = client.get("/health")
        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "healthy"
        assert body["service"] == "qrun"

    def test_session_idle_without_run(self):
        client = TestClient(create_monitoring_app(RunMonitor(runner=StubRunner())))
        assert client.get("/api/session").json() == {"phase": "idle"}

    def test_session_snapshot(self):
        session = RunSession()
        session.phase = RunPhase.RUNNING_LOOP
        session.iteration = 7
        session.loop = 2
        session.record_failure(JobFailure("Query execution failed", job_index=0, loop=1))

        client = TestClient(create_monitoring_app(RunMonitor(runner=StubRunner(), session=session)))
        body = client.get("/api/session").json()

        assert body["phase"] == "running_loop"
        assert body["iteration"] == 7
        assert body["loop"] == 2
        assert body["failures"] == ["Query execution failed"]

    def test_runner_async_stats(self):
        client = TestClient(create_monitoring_app(RunMonitor(runner=StubRunner())))
        body = client.get("/api/runner").json()
        assert body["async"]["outstanding"] == 0

    def test_gateway_routes_not_mounted(self):
        client = TestClient(create_monitoring_app(RunMonitor(runner=StubRunner())))
        assert client.post("/api/query", json={"query": "SELECT 1"}).status_code == 404


class TestGatewayApp:
    """Tests for the query gateway."""

    def _client(self, run_query: AsyncMock) -> TestClient:
        runner = MagicMock()
        runner.run_query = run_query
        return TestClient(create_gateway_app(RunMonitor(runner=runner)))

    def test_runs_query(self):
        run_query = AsyncMock(return_value=[ResultSet(columns=["id"], rows=[[1], [2]])])
        client = self._client(run_query)

        response = client.post(
            "/api/query",
            json={"query": "SELECT id FROM t", "database": "db1", "trace_id": "ext"},
        )

        assert response.status_code == 200
        body = response.json()
        assert body["result_sets"] == [{"columns": ["id"], "rows": [[1], [2]]}]
        assert body["trace_id"].startswith("ext-")

        request = run_query.await_args.args[0]
        assert request.database == "db1"
        assert request.action == QueryAction.EXECUTE
        assert run_query.await_args.kwargs == {"use_session": False}

    def test_empty_query_rejected(self):
        client = self._client(AsyncMock(return_value=[]))
        assert client.post("/api/query", json={"query": ""}).status_code == 422

    def test_timeout_maps_to_504(self):
        client = self._client(AsyncMock(side_effect=asyncio.TimeoutError()))
        response = client.post("/api/query", json={"query": "SELECT pg_sleep(10)"})
        assert response.status_code == 504
        assert response.json()["detail"]["code"] == "QUERY_TIMEOUT"

    def test_permission_denied_maps_to_403(self):
        error = asyncpg.exceptions.InsufficientPrivilegeError("permission denied for table t")
        client = self._client(AsyncMock(side_effect=error))
        response = client.post("/api/query", json={"query": "SELECT * FROM t"})
        assert response.status_code == 403
        assert response.json()["detail"]["code"] == "PERMISSION_DENIED"

    def test_runner_without_gateway_support(self):
        client = TestClient(create_gateway_app(RunMonitor(runner=StubRunner())))
        response = client.post("/api/query", json={"query": "SELECT 1"})
        assert response.status_code == 501


class TestClassifyBackendError:
    """Tests for classify_backend_error()."""

    @pytest.mark.parametrize(
        "exc, status_code",
        [
            (asyncpg.exceptions.UndefinedTableError("missing"), 400),
            (asyncpg.exceptions.QueryCanceledError("canceling statement"), 408),
            (asyncpg.exceptions.InvalidPasswordError("bad password"), 403),
            (asyncpg.exceptions.TooManyConnectionsError("too many"), 503),
            (ConnectionRefusedError(), 503),
        ],
    )
    def test_status_codes(self, exc, status_code):
        assert classify_backend_error(exc).status_code == status_code

    def test_unknown_error_unclassified(self):
        assert classify_backend_error(ValueError("x")) is None
