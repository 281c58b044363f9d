"""reqflow output - render execution results for the terminal."""

from __future__ import annotations

import json
from typing import Any


def _render_body(body: Any) -> str:
    if isinstance(body, dict | list):
        return json.dumps(body, indent=2)
    return str(body)


def format_output(
    result,  # ExecutionResult from pipeline.py
    verbose: bool = False,
    raw: bool = False,
    show_logs: bool = True,
) -> str:
    """Format an execution result for CLI output.

    STATUS / TIME / HEADERS (verbose only) / BODY, then script LOGS and
    TESTS. With raw, only the body is printed.
    """
    response = result.response
    if raw:
        if response is None or response.body is None:
            return ""
        return _render_body(response.body)

    lines: list[str] = []
    if response is not None:
        status = f"STATUS: {response.status}"
        if response.status_text:
            status += f" {response.status_text}"
        lines.append(status)
        lines.append(f"TIME: {int(response.elapsed_ms)}ms")

        if verbose and response.headers:
            lines.append("HEADERS:")
            for key, value in response.headers.items():
                lines.append(f"  {key}: {value}")

        if response.body not in (None, ""):
            lines.append("BODY:")
            lines.append(_render_body(response.body))

    if show_logs and result.logs:
        lines.append("LOGS:")
        for entry in result.logs:
            lines.append(f"  {entry}")

    if result.tests:
        passed = sum(1 for t in result.tests if t[1])
        lines.append(f"TESTS: {passed}/{len(result.tests)} passed")

    return "\n".join(lines)


def format_history(entries) -> str:
    if not entries:
        return "No request history."
    lines = ["Request history:", ""]
    for i, entry in enumerate(entries):
        label = f"[{entry.name}]" if entry.name else entry.url
        status = entry.status if entry.status is not None else "ERR"
        lines.append(f"  [{i}] {entry.method:<6} {status:<4} {label}  ({entry.timestamp})")
    return "\n".join(lines)


def format_records(records) -> str:
    if not records:
        return "No saved requests."
    lines = ["Saved requests:", ""]
    for record in records:
        last = record.response.get("status") if record.response else "-"
        lines.append(f"  {record.id}  {record.method:<6} {record.url}  (last: {last})")
        if record.name and record.name != f"{record.method} {record.url}":
            lines.append(f"    name: {record.name}")
    return "\n".join(lines)


def format_variables(scopes, folder_id: str | None, environment_id: str | None) -> str:
    """Show each tier that participates in a run, lowest precedence first."""
    view = scopes.for_run(folder_id, environment_id)
    labels = {
        "global": "GLOBAL",
        "folder": f"FOLDER ({folder_id})" if folder_id else None,
        "environment": f"ENVIRONMENT ({environment_id})" if environment_id else None,
    }
    lines: list[str] = []
    for tier, label in labels.items():
        if label is None:
            continue
        lines.append(f"{label}:")
        values = view[tier]
        if not values:
            lines.append("  (empty)")
        for key, value in values.items():
            lines.append(f"  {key} = {value}")
    return "\n".join(lines)
