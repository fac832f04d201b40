"""
Query text templating.

Two placeholders are recognized:
- ``${<token variable>}`` (``${QRUN_TOKEN}`` by default): a secret taken from the
  environment.
- ``${QUERY_ID}``: the iteration counter of the current (job, loop) pair. Only
  substituted for script queries; the scheme query runs once and has none.
"""

from __future__ import annotations

import os
from typing import Optional

from qrun.config import settings
from qrun.core.errors import MissingTemplateVariable

QUERY_ID_PLACEHOLDER = "${QUERY_ID}"


class TemplateExpander:
    """Substitutes template placeholders into raw query text."""

    def __init__(self, token: Optional[str], token_variable: str) -> None:
        self.token = token
        self.token_variable = token_variable

    @classmethod
    def from_environment(cls) -> "TemplateExpander":
        variable = settings.TEMPLATE_TOKEN_VARIABLE
        return cls(os.environ.get(variable) or None, variable)

    @property
    def token_placeholder(self) -> str:
        return "${" + self.token_variable + "}"

    def expand(self, text: str, query_id: Optional[int] = None) -> str:
        """
        Expand placeholders in ``text``.

        Raises:
            MissingTemplateVariable: the token placeholder is used but no token
                value is available.
        """
        if self.token:
            text = text.replace(self.token_placeholder, self.token)
        elif self.token_placeholder in text:
            raise MissingTemplateVariable(self.token_variable)

        if query_id is not None:
            text = text.replace(QUERY_ID_PLACEHOLDER, str(query_id))
        return text
