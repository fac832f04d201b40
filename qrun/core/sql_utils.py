"""
SQL helpers for the Postgres runner.

Contains statement splitting, identifier quoting, error classification and
log previews.
"""

import asyncio
import re
from typing import Any

_ROW_RETURNING_RE = re.compile(
    r"^\s*(SELECT|WITH|VALUES|TABLE|SHOW|EXPLAIN)\b", re.IGNORECASE
)
_RETURNING_RE = re.compile(r"\bRETURNING\b", re.IGNORECASE)
_EXPLAINABLE_RE = re.compile(
    r"^\s*(SELECT|WITH|VALUES|TABLE|INSERT|UPDATE|DELETE|MERGE)\b", re.IGNORECASE
)
_DOLLAR_TAG_RE = re.compile(r"\$[A-Za-z_][A-Za-z0-9_]*\$|\$\$")


def _is_escape_string_prefix(script: str, quote_pos: int) -> bool:
    """Whether the quote at ``quote_pos`` opens an E'...' string."""
    if quote_pos == 0 or script[quote_pos - 1] not in "eE":
        return False
    if quote_pos == 1:
        return True
    before = script[quote_pos - 2]
    return not (before.isalnum() or before in "_$")


def split_statements(script: str) -> list[str]:
    """
    Split a script into statements on top-level semicolons.

    Semicolons inside quoted strings, quoted identifiers, comments and
    dollar-quoted bodies do not split. Empty statements are dropped.
    """
    statements: list[str] = []
    current: list[str] = []
    i = 0
    n = len(script)

    while i < n:
        ch = script[i]

        # Line comment
        if ch == "-" and script.startswith("--", i):
            end = script.find("\n", i)
            end = n if end == -1 else end
            current.append(script[i:end])
            i = end
            continue

        # Block comment
        if ch == "/" and script.startswith("/*", i):
            end = script.find("*/", i + 2)
            end = n if end == -1 else end + 2
            current.append(script[i:end])
            i = end
            continue

        # Quoted string or identifier; doubled quote is an escape, and so is
        # a backslash inside an E'...' string
        if ch in ("'", '"'):
            backslash_escapes = ch == "'" and _is_escape_string_prefix(script, i)
            j = i + 1
            while j < n:
                if backslash_escapes and script[j] == "\\":
                    j += 2
                    continue
                if script[j] == ch:
                    if j + 1 < n and script[j + 1] == ch:
                        j += 2
                        continue
                    break
                j += 1
            current.append(script[i:j + 1])
            i = j + 1
            continue

        # Dollar-quoted body
        if ch == "$":
            m = _DOLLAR_TAG_RE.match(script, i)
            if m:
                tag = m.group(0)
                end = script.find(tag, m.end())
                end = n if end == -1 else end + len(tag)
                current.append(script[i:end])
                i = end
                continue

        if ch == ";":
            statement = "".join(current).strip()
            if statement:
                statements.append(statement)
            current = []
        else:
            current.append(ch)
        i += 1

    statement = "".join(current).strip()
    if statement:
        statements.append(statement)
    return statements


def _strip_leading_comments(statement: str) -> str:
    text = statement.lstrip()
    while True:
        if text.startswith("--"):
            end = text.find("\n")
            text = "" if end == -1 else text[end + 1:].lstrip()
        elif text.startswith("/*"):
            end = text.find("*/")
            text = "" if end == -1 else text[end + 2:].lstrip()
        else:
            return text


def _statement_head(statement: str) -> str:
    """Statement text from its first keyword, past comments and opening parentheses."""
    return _strip_leading_comments(statement).lstrip("( \t\r\n")


def is_row_returning(statement: str) -> bool:
    """Whether ``statement`` produces rows (queries and DML with RETURNING)."""
    text = _statement_head(statement)
    return bool(_ROW_RETURNING_RE.match(text) or _RETURNING_RE.search(text))


def is_explainable(statement: str) -> bool:
    """Whether Postgres accepts ``EXPLAIN`` for ``statement``."""
    return bool(_EXPLAINABLE_RE.match(_statement_head(statement)))


def quote_ident(name: str) -> str:
    """Quote an identifier for Postgres (role names in SET ROLE)."""
    return '"' + name.replace('"', '""') + '"'


def classify_sql_error(exc: BaseException) -> str:
    """
    Return a stable, low-cardinality category for an execution-time error.
    """
    if isinstance(exc, asyncio.TimeoutError):
        return "TIMEOUT"
    if isinstance(exc, asyncio.CancelledError):
        return "CANCELLED"

    sqlstate = getattr(exc, "sqlstate", None)
    if sqlstate:
        return f"PG_SQLSTATE_{sqlstate}"

    if isinstance(exc, OSError):
        return "CONNECTION_ERROR"

    return type(exc).__name__


def preview_query_for_log(query: str, *, max_chars: int = 2000) -> str:
    """Normalize and truncate a query for logging."""
    q = re.sub(r"\s+", " ", str(query or "")).strip()
    if len(q) > max_chars:
        return q[:max_chars] + "…[truncated]"
    return q


def sql_error_meta_for_log(exc: BaseException, *, max_chars: int = 500) -> dict[str, Any]:
    """Extract common asyncpg error fields."""
    out: dict[str, Any] = {}
    for key in (
        "sqlstate",
        "constraint_name",
        "schema_name",
        "table_name",
        "column_name",
        "detail",
        "hint",
    ):
        raw = getattr(exc, key, None)
        if raw is None:
            continue
        val = str(raw)
        if not val:
            continue
        if len(val) > max_chars:
            val = val[:max_chars] + "…[truncated]"
        out[key] = val
    return out
