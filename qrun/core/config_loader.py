"""
Run Configuration Loader

Loads YAML run files and converts them into RunConfig models. Query texts can
be given inline or as paths to SQL files, resolved relative to the YAML file:

    execution:
      scheme_query_file: schema.sql
      script_query_files: [load.sql, read.sql]
      loop_count: 10
      overrides:
        execution_cases: [script, async]
    runner:
      inflight_limit: 4
"""

from pathlib import Path
from typing import Any, Dict, Optional

import yaml
from pydantic import ValidationError

from qrun.core.errors import ConfigurationError
from qrun.models import RunConfig


def load_query_file(path: Path) -> str:
    """Read a query file."""
    try:
        return path.read_text(encoding="utf-8")
    except OSError as e:
        raise ConfigurationError(f"Failed to read query file {path}: {e}") from e


def deep_merge(base: Dict[str, Any], overrides: Dict[str, Any]) -> Dict[str, Any]:
    """Merge ``overrides`` into a copy of ``base``; nested dicts merge, anything else replaces."""
    merged = dict(base)
    for key, value in overrides.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


class RunConfigLoader:
    """
    Loads YAML run files.
    """

    def __init__(self, base_dir: Optional[Path] = None):
        self.base_dir = Path(base_dir) if base_dir is not None else Path.cwd()

    def load_file(self, path: Path) -> Dict[str, Any]:
        """
        Load a run file into a raw configuration dict with query files inlined.

        Args:
            path: YAML file path

        Returns:
            Dict accepted by RunConfig.model_validate
        """
        path = Path(path)
        if not path.exists():
            raise ConfigurationError(f"Run file not found: {path}")

        try:
            with open(path, "r", encoding="utf-8") as f:
                data = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Bad format of run file {path}: {e}") from e

        if not isinstance(data, dict):
            raise ConfigurationError(f"Run file {path} must contain a mapping")

        return self.inline_query_files(data, path.parent)

    def inline_query_files(self, data: Dict[str, Any], base_dir: Optional[Path] = None) -> Dict[str, Any]:
        """Replace ``scheme_query_file`` / ``script_query_files`` with query texts."""
        base_dir = base_dir or self.base_dir
        execution = dict(data.get("execution") or {})

        scheme_file = execution.pop("scheme_query_file", None)
        if scheme_file:
            execution["scheme_query"] = load_query_file(base_dir / scheme_file)

        script_files = execution.pop("script_query_files", None) or []
        if script_files:
            queries = [load_query_file(base_dir / f) for f in script_files]
            execution["script_queries"] = queries + list(execution.get("script_queries") or [])

        out = dict(data)
        out["execution"] = execution
        return out

    def build(self, data: Dict[str, Any]) -> RunConfig:
        """
        Validate a raw configuration dict.

        Raises:
            ConfigurationError: the dict does not describe a valid RunConfig
        """
        try:
            return RunConfig.model_validate(data)
        except ValidationError as e:
            raise ConfigurationError(f"Invalid run configuration: {e}") from e

    def load(self, path: Path) -> RunConfig:
        return self.build(self.load_file(path))
