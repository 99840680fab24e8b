"""Result sinks: where delivered execution output ends up.

The host (a document, the CLI, a notebook) decides how results are shown.
:class:`InlineSink` keeps the rendered block for the host to insert next to
the query; :class:`SideViewSink` prints it to a side console with ``rich``.
:class:`ResultRouter` picks one per execution from its ``result_format``.
"""

from __future__ import annotations

import logging
from typing import Any, Protocol

from rich.console import Console
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from sqlblocks.models import Execution, ExecutionResult, ResultFormat, Status

log = logging.getLogger(__name__)

_STATUS_STYLES = {
    Status.COMPLETED: "green",
    Status.COMPLETED_WITH_ERRORS: "yellow",
    Status.ERROR: "red",
    Status.CANCELLED: "magenta",
    Status.UNKNOWN: "dim",
}


class ResultSink(Protocol):
    def deliver(self, execution: Execution, result: ExecutionResult) -> None: ...


def render_text(result: ExecutionResult) -> str:
    """Plain-text rendering with stdout and stderr both present."""
    parts: list[str] = []
    if result.status != Status.COMPLETED:
        header = f"[{result.status}]"
        if result.detail:
            header += f" {result.detail.splitlines()[0]}"
        parts.append(header)
    if result.output:
        parts.append(result.output.rstrip("\n"))
    if result.stderr:
        parts.append("[stderr]\n" + result.stderr.rstrip("\n"))
    return "\n".join(parts)


def records_table(records: list[dict[str, str]], *, title: str | None = None) -> Table:
    table = Table(title=title, show_lines=False)
    columns = list(records[0]) if records else []
    for column in columns:
        table.add_column(column)
    for record in records:
        table.add_row(*(record.get(column, "") for column in columns))
    return table


class InlineSink:
    """Collects rendered results keyed by execution id for the host to insert.

    Only the newest *limit* results are kept.
    """

    def __init__(self, limit: int = 1000) -> None:
        self.limit = limit
        self.blocks: dict[str, str] = {}
        self.results: dict[str, ExecutionResult] = {}

    def insert_result(self, content: str, render_options: dict[str, Any]) -> None:
        exec_id = render_options["exec_id"]
        if render_options.get("wrap"):
            content = f"```\n{content}\n```"
        self.blocks.pop(exec_id, None)
        self.blocks[exec_id] = content
        while len(self.blocks) > self.limit:
            oldest = next(iter(self.blocks))
            del self.blocks[oldest]
            self.results.pop(oldest, None)

    def deliver(self, execution: Execution, result: ExecutionResult) -> None:
        self.results.pop(result.exec_id, None)
        self.results[result.exec_id] = result
        self.insert_result(
            render_text(result),
            {"exec_id": result.exec_id, "format": str(execution.result_format)},
        )


class SideViewSink:
    """Shows results in a separate console view."""

    def __init__(self, console: Console | None = None) -> None:
        self.console = console or Console(stderr=True)

    def display_in_side_view(self, content: Any, *, title: str = "", style: str = "") -> None:
        self.console.print(Panel(content, title=title, border_style=style or "dim"))

    def deliver(self, execution: Execution, result: ExecutionResult) -> None:
        title = f"{result.session or 'standalone'} · {result.exec_id[:8]} · {result.status}"
        style = _STATUS_STYLES.get(result.status, "dim")
        if result.records:
            body: Any = records_table(result.records)
        else:
            body = Text(render_text(result) or "(no output)")
        self.display_in_side_view(body, title=title, style=style)


class ResultRouter:
    """Routes each result to the inline or side-view sink by its format."""

    def __init__(self, inline: InlineSink | None = None, side: SideViewSink | None = None) -> None:
        self.inline = inline or InlineSink()
        self.side = side

    def deliver(self, execution: Execution, result: ExecutionResult) -> None:
        if execution.result_format == ResultFormat.SIDE and self.side is not None:
            self.side.deliver(execution, result)
            return
        self.inline.deliver(execution, result)
