"""
Tests for process-wide settings.
"""

from __future__ import annotations

from qrun.config import Settings


class TestSettings:
    """Tests for Settings."""

    def test_defaults(self, monkeypatch):
        monkeypatch.delenv("QRUN_POSTGRES_PORT", raising=False)
        settings = Settings(_env_file=None)
        assert settings.POSTGRES_PORT == 5432
        assert settings.DEFAULT_TRACE_ID == "qrun"
        assert settings.TEMPLATE_TOKEN_VARIABLE == "QRUN_TOKEN"

    def test_environment_prefix(self, monkeypatch):
        monkeypatch.setenv("QRUN_POSTGRES_PORT", "6543")
        monkeypatch.setenv("QRUN_LOG_LEVEL", "DEBUG")
        settings = Settings(_env_file=None)
        assert settings.POSTGRES_PORT == 6543
        assert settings.LOG_LEVEL == "DEBUG"

    def test_env_file(self, tmp_path, monkeypatch):
        monkeypatch.delenv("QRUN_DEFAULT_TRACE_ID", raising=False)
        env_file = tmp_path / ".env"
        env_file.write_text("QRUN_DEFAULT_TRACE_ID=nightly\n")
        assert Settings(_env_file=env_file).DEFAULT_TRACE_ID == "nightly"
