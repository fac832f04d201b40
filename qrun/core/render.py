"""
Rendering of result sets and query plans for the operator.
"""

import json
from typing import Any, Iterator

from qrun.models import PlanFormat, ResultFormat, ResultSet


def _row_dict(columns: list[str], row: list[Any]) -> dict[str, Any]:
    return {col: value for col, value in zip(columns, row)}


def render_results(results: list[ResultSet], fmt: ResultFormat) -> str:
    """
    Render fetched result sets.

    - rows: one JSON object per row, result sets separated by a blank line
    - full-json: a JSON array with columns, rows and truncation per result set
    """
    if fmt == ResultFormat.FULL_JSON:
        payload = [
            {"columns": rs.columns, "rows": rs.rows, "truncated": rs.truncated}
            for rs in results
        ]
        return json.dumps(payload, indent=2, default=str) + "\n"

    blocks: list[str] = []
    for rs in results:
        lines = [
            json.dumps(_row_dict(rs.columns, row), default=str, ensure_ascii=False)
            for row in rs.rows
        ]
        if rs.truncated:
            lines.append(f"# results truncated to {len(rs.rows)} rows")
        blocks.append("\n".join(lines))
    return "\n\n".join(blocks) + ("\n" if blocks else "")


def _walk_plan(node: dict[str, Any], depth: int = 0) -> Iterator[tuple[int, dict[str, Any]]]:
    yield depth, node
    for child in node.get("Plans", []) or []:
        yield from _walk_plan(child, depth + 1)


def _node_label(node: dict[str, Any]) -> str:
    label = str(node.get("Node Type", "?"))
    relation = node.get("Relation Name")
    if relation:
        label += f" on {relation}"
    return label


def render_plan(plan: Any, fmt: PlanFormat) -> str:
    """
    Render a Postgres ``EXPLAIN (FORMAT JSON)`` document.

    ``plan`` is the decoded document: a list with one ``{"Plan": {...}}`` entry.
    """
    if fmt == PlanFormat.JSON:
        return json.dumps(plan, indent=2) + "\n"

    roots = [entry.get("Plan", {}) for entry in plan] if isinstance(plan, list) else [plan]
    lines: list[str] = []
    if fmt == PlanFormat.TABLE:
        lines.append(f"{'depth':>5} | {'node':<40} | {'rows':>10} | {'cost':>12}")
        lines.append("-" * 76)
        for root in roots:
            for depth, node in _walk_plan(root):
                lines.append(
                    f"{depth:>5} | {_node_label(node):<40} | "
                    f"{node.get('Plan Rows', ''):>10} | {node.get('Total Cost', ''):>12}"
                )
    else:
        for root in roots:
            for depth, node in _walk_plan(root):
                prefix = "  " * depth + ("-> " if depth else "")
                lines.append(
                    f"{prefix}{_node_label(node)} "
                    f"(cost={node.get('Startup Cost', 0)}..{node.get('Total Cost', 0)} "
                    f"rows={node.get('Plan Rows', 0)})"
                )
    return "\n".join(lines) + "\n"
