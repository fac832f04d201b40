"""
Registry of output streams opened for a run.

Output options name a file path, ``-`` for stdout, or nothing. The registry
opens each path once, hands out the same stream to every user of that path,
and closes the files it opened when the run ends.
"""

from __future__ import annotations

import logging
import sys
from pathlib import Path
from typing import Optional, TextIO

logger = logging.getLogger(__name__)

STDOUT = "-"


class OutputRegistry:
    """Owns every file handle opened for a run."""

    def __init__(self, stdout: Optional[TextIO] = None) -> None:
        self._stdout = stdout
        self._streams: dict[str, TextIO] = {}

    def open(self, path: Optional[str]) -> Optional[TextIO]:
        """
        Stream for ``path``: stdout for ``-``, None when unset, otherwise a
        file truncated on first open.
        """
        if not path:
            return None
        if path == STDOUT:
            return self._stdout or sys.stdout
        stream = self._streams.get(path)
        if stream is None:
            Path(path).parent.mkdir(parents=True, exist_ok=True)
            stream = open(path, "w", encoding="utf-8")
            self._streams[path] = stream
            logger.debug("Opened output file %s", path)
        return stream

    def write(self, path: Optional[str], text: str) -> bool:
        """Write ``text`` to ``path`` if it is set. Returns whether it was written."""
        stream = self.open(path)
        if stream is None:
            return False
        stream.write(text)
        stream.flush()
        return True

    def close(self) -> None:
        for path, stream in self._streams.items():
            try:
                stream.close()
            except OSError as e:
                logger.warning("Failed to close output file %s: %s", path, e)
        self._streams.clear()

    def __enter__(self) -> "OutputRegistry":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()
