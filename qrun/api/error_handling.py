"""
Centralized API error handling helpers.

Goal: map backend failures surfaced through the query gateway onto stable,
user-actionable HTTP error payloads instead of a generic 500.
"""

from __future__ import annotations

import asyncio
import logging
import traceback
from dataclasses import dataclass
from typing import Any

from fastapi import HTTPException, status

from qrun.config import settings
from qrun.core.sql_utils import classify_sql_error

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class ApiError:
    status_code: int
    code: str
    message: str
    hint: str | None = None
    debug: str | None = None


def _maybe_debug(exc: BaseException) -> str | None:
    if settings.APP_DEBUG:
        return str(exc)
    return None


def classify_backend_error(exc: BaseException) -> ApiError | None:
    """
    Classify Postgres/asyncpg failures into user-actionable errors.

    Uses the SQLSTATE class where the exception carries one.
    """
    if isinstance(exc, asyncio.TimeoutError):
        return ApiError(
            status_code=status.HTTP_504_GATEWAY_TIMEOUT,
            code="QUERY_TIMEOUT",
            message="Query did not finish within its timeout.",
            hint="Increase timeout_ms or simplify the query.",
            debug=_maybe_debug(exc),
        )

    if isinstance(exc, OSError):
        return ApiError(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            code="BACKEND_UNAVAILABLE",
            message="Failed to connect to the database backend.",
            hint="Check QRUN_POSTGRES_HOST/PORT and network access, then retry.",
            debug=_maybe_debug(exc),
        )

    category = classify_sql_error(exc)
    if not category.startswith("PG_SQLSTATE_"):
        return None
    sqlstate = category.removeprefix("PG_SQLSTATE_")

    if sqlstate == "57014":
        return ApiError(
            status_code=status.HTTP_408_REQUEST_TIMEOUT,
            code="QUERY_CANCELLED",
            message="Query was cancelled by the server.",
            debug=_maybe_debug(exc),
        )
    if sqlstate.startswith("28") or sqlstate == "42501":
        return ApiError(
            status_code=status.HTTP_403_FORBIDDEN,
            code="PERMISSION_DENIED",
            message=str(exc),
            hint="Check the user and its grants.",
        )
    if sqlstate.startswith(("42", "22", "23")):
        return ApiError(
            status_code=status.HTTP_400_BAD_REQUEST,
            code=category,
            message=str(exc),
        )
    if sqlstate.startswith(("08", "53", "57")):
        return ApiError(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            code=category,
            message="Database backend is unavailable.",
            debug=_maybe_debug(exc),
        )
    return None


def http_exception(operation: str, exc: BaseException) -> HTTPException:
    """
    Convert an exception into a consistent HTTPException payload.
    """
    logger.error(
        "API error during '%s': %s\n%s",
        operation,
        exc,
        traceback.format_exc(),
    )

    classified = classify_backend_error(exc)
    if classified is not None:
        detail: dict[str, Any] = {
            "code": classified.code,
            "message": classified.message,
            "operation": operation,
        }
        if classified.hint:
            detail["hint"] = classified.hint
        if classified.debug:
            detail["debug"] = classified.debug
        return HTTPException(status_code=classified.status_code, detail=detail)

    base_detail: dict[str, Any] = {
        "code": "INTERNAL_ERROR",
        "message": f"{operation} failed.",
        "operation": operation,
    }
    dbg = _maybe_debug(exc)
    if dbg:
        base_detail["debug"] = dbg
    return HTTPException(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        detail=base_detail,
    )
