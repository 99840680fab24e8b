"""Execution status tracking with an optional live progress display.

The tracker is the key -> status map every component reports into.  When a
:class:`LiveStatusDisplay` is attached, a ``rich`` live table is refreshed
while any execution is still queued or executing, and torn down as soon as
nothing is pending.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging

from rich.console import Console
from rich.live import Live
from rich.table import Table
from rich.text import Text

from sqlblocks.models import PENDING_STATUSES, TERMINAL_STATUSES, Execution, Status, utc_now

log = logging.getLogger(__name__)

ALLOWED_TRANSITIONS: dict[Status, frozenset[Status]] = {
    Status.QUEUED: frozenset({Status.EXECUTING, Status.CANCELLED, Status.ERROR}),
    Status.EXECUTING: TERMINAL_STATUSES,
}

_STATUS_STYLES = {
    Status.QUEUED: "dim",
    Status.EXECUTING: "cyan",
    Status.COMPLETED: "green",
    Status.COMPLETED_WITH_ERRORS: "yellow",
    Status.ERROR: "red",
    Status.CANCELLED: "magenta",
    Status.UNKNOWN: "dim",
}


def format_elapsed(execution: Execution) -> str:
    if execution.started_at is None:
        return ""
    end = execution.finished_at or utc_now()
    elapsed = (end - execution.started_at).total_seconds()
    if elapsed < 60:
        return f"{elapsed:.1f}s"
    minutes, seconds = divmod(int(elapsed), 60)
    return f"{minutes}m {seconds}s"


class LiveStatusDisplay:
    """Periodically refreshed table of tracked executions."""

    def __init__(self, console: Console | None = None, *, refresh_interval: float = 0.5) -> None:
        self.console = console or Console(stderr=True)
        self.refresh_interval = refresh_interval
        self._live: Live | None = None

    @property
    def active(self) -> bool:
        return self._live is not None

    def start(self, tracker: StatusTracker) -> None:
        if self._live is not None:
            return
        self._live = Live(
            self.build(tracker),
            console=self.console,
            refresh_per_second=max(1, int(1 / self.refresh_interval)),
            transient=True,
        )
        self._live.start()

    def update(self, tracker: StatusTracker) -> None:
        if self._live:
            self._live.update(self.build(tracker))

    def stop(self) -> None:
        if self._live:
            self._live.stop()
            self._live = None

    def build(self, tracker: StatusTracker) -> Table:
        table = Table.grid(padding=(0, 2))
        table.add_column(justify="left")
        table.add_column(justify="left")
        table.add_column(justify="left")
        table.add_column(justify="right")
        for execution in tracker.executions():
            if execution.is_terminal:
                continue
            progress = f"{execution.progress}%" if execution.progress is not None else ""
            table.add_row(
                Text(execution.session or "standalone", style="bold"),
                Text(execution.exec_id[:8], style="dim"),
                Text(str(execution.status), style=_STATUS_STYLES[execution.status]),
                Text(f"{progress} {format_elapsed(execution)}".strip()),
            )
        return table


class StatusTracker:
    """Key -> status map for every execution the engine knows about."""

    def __init__(
        self, display: LiveStatusDisplay | None = None, *, retain_finished: int = 1000
    ) -> None:
        self._executions: dict[str, Execution] = {}
        # Finalized ids, oldest first; only the newest retain_finished stay queryable.
        self._finished: dict[str, None] = {}
        self.retain_finished = retain_finished
        self._display = display
        self._refresh_task: asyncio.Task[None] | None = None

    def track(self, execution: Execution) -> None:
        self._executions[execution.exec_id] = execution
        self._ensure_display()

    def get(self, exec_id: str) -> Status | None:
        execution = self._executions.get(exec_id)
        return execution.status if execution else None

    def execution(self, exec_id: str) -> Execution | None:
        return self._executions.get(exec_id)

    def executions(self) -> list[Execution]:
        return list(self._executions.values())

    def pending(self) -> list[Execution]:
        return [e for e in self._executions.values() if e.status in PENDING_STATUSES]

    def set(self, execution: Execution, status: Status, *, final: bool = False) -> bool:
        """Move *execution* to *status*; returns False for an illegal transition.

        A terminal status set without *final* is provisional: the Completion
        Router may still replace it with the classified outcome.
        """
        current = execution.status
        if execution.finalized:
            return current == status
        if current == status:
            execution.finalized = final
            if final and status in TERMINAL_STATUSES:
                self._retire(execution)
            return True
        if current in TERMINAL_STATUSES:
            allowed = TERMINAL_STATUSES
        else:
            allowed = ALLOWED_TRANSITIONS.get(current, frozenset())
        if status not in allowed:
            log.debug("Ignoring %s -> %s for %s", current, status, execution.exec_id)
            return False
        execution.status = status
        execution.finalized = final
        if status == Status.EXECUTING:
            execution.started_at = utc_now()
        elif status in TERMINAL_STATUSES:
            execution.finished_at = utc_now()
            if execution.started_at is None:
                execution.started_at = execution.finished_at
            execution.process = None
        self._executions.setdefault(execution.exec_id, execution)
        if final and status in TERMINAL_STATUSES:
            self._retire(execution)
        self._ensure_display()
        return True

    def report_progress(self, execution: Execution, percent: int) -> None:
        execution.progress = percent

    def _retire(self, execution: Execution) -> None:
        self._finished.pop(execution.exec_id, None)
        self._finished[execution.exec_id] = None
        while len(self._finished) > self.retain_finished:
            oldest = next(iter(self._finished))
            del self._finished[oldest]
            self._executions.pop(oldest, None)

    # -- Live display --

    def _ensure_display(self) -> None:
        if self._display is None or not self.pending():
            return
        if self._refresh_task is not None and not self._refresh_task.done():
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        self._display.start(self)
        self._refresh_task = loop.create_task(self._refresh_loop())

    async def _refresh_loop(self) -> None:
        assert self._display is not None
        try:
            while self.pending():
                self._display.update(self)
                await asyncio.sleep(self._display.refresh_interval)
        finally:
            self._display.stop()

    async def close(self) -> None:
        if self._refresh_task is not None:
            self._refresh_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._refresh_task
            self._refresh_task = None
        if self._display is not None:
            self._display.stop()
