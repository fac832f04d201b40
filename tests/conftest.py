"""
Shared fixtures for qrun tests.
"""

from __future__ import annotations

import pytest

from stubs import StubRunner


@pytest.fixture
def stub_runner() -> StubRunner:
    return StubRunner()


@pytest.fixture(autouse=True)
def _no_template_token(monkeypatch):
    """Tests never pick up a token from the developer's environment."""
    monkeypatch.delenv("QRUN_TOKEN", raising=False)
