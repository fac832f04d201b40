"""
Application settings.

Values are read from environment variables prefixed with ``QRUN_`` and from a
local ``.env`` file. Run-specific options (queries, loops, outputs) live in
``qrun.models.run_config``; this module only holds process-wide defaults.
"""

from typing import Literal, Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Process-wide settings for qrun."""

    model_config = SettingsConfigDict(
        env_prefix="QRUN_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Postgres backend
    POSTGRES_HOST: str = Field("localhost", description="Postgres host")
    POSTGRES_PORT: int = Field(5432, description="Postgres port")
    POSTGRES_DATABASE: str = Field("postgres", description="Default database")
    POSTGRES_USER: str = Field("postgres", description="Connection user")
    POSTGRES_PASSWORD: str = Field("", description="Connection password")
    POSTGRES_POOL_MIN_SIZE: int = Field(1, ge=0, description="Min pool size")
    POSTGRES_POOL_MAX_SIZE: int = Field(10, ge=1, description="Max pool size")
    POSTGRES_COMMAND_TIMEOUT: float = Field(
        300.0, gt=0, description="Default command timeout (seconds)"
    )
    POSTGRES_CONNECT_RETRIES: int = Field(3, ge=1, description="Pool create retries")

    # Request defaults
    DEFAULT_TRACE_ID: str = Field("qrun", description="Trace id for requests")
    TEMPLATE_TOKEN_VARIABLE: str = Field(
        "QRUN_TOKEN", description="Environment variable behind ${QRUN_TOKEN}"
    )

    # Endpoints
    ENDPOINT_HOST: str = Field("127.0.0.1", description="Bind host for endpoints")

    # Logging
    LOG_LEVEL: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"
    LOG_FORMAT: str = "%(asctime)s %(levelname)s %(name)s: %(message)s"
    LOG_FILE: Optional[str] = None

    APP_DEBUG: bool = False


settings = Settings()
