"""Tests for the status tracker state machine and live display."""

from __future__ import annotations

import asyncio
import io
from pathlib import Path

import pytest
from rich.console import Console

from sqlblocks.models import Execution, Status
from sqlblocks.status import LiveStatusDisplay, StatusTracker, format_elapsed


@pytest.fixture()
def make_execution(tmp_path: Path):
    counter = iter(range(1000))

    def _make(session: str | None = "default") -> Execution:
        n = next(counter)
        return Execution(
            exec_id=f"exec{n}",
            session=session,
            query="SELECT 1;",
            command_text="SELECT 1;\n",
            marker=f"ASYNC_COMPLETE_exec{n}",
            result_path=tmp_path / f"exec{n}.out",
            future=asyncio.get_running_loop().create_future(),
        )

    return _make


async def test_happy_path_sets_timestamps(make_execution):
    tracker = StatusTracker()
    execution = make_execution()
    tracker.track(execution)
    assert tracker.get(execution.exec_id) == Status.QUEUED

    assert tracker.set(execution, Status.EXECUTING)
    assert execution.started_at is not None
    assert tracker.set(execution, Status.COMPLETED, final=True)
    assert execution.finished_at >= execution.started_at
    assert execution.finalized is True


async def test_queued_can_be_cancelled_directly(make_execution):
    tracker = StatusTracker()
    execution = make_execution()
    tracker.track(execution)
    assert tracker.set(execution, Status.CANCELLED)
    assert execution.started_at == execution.finished_at


async def test_queued_cannot_jump_to_completed(make_execution):
    tracker = StatusTracker()
    execution = make_execution()
    tracker.track(execution)
    assert tracker.set(execution, Status.COMPLETED) is False
    assert execution.status == Status.QUEUED


async def test_provisional_terminal_can_be_reclassified(make_execution):
    tracker = StatusTracker()
    execution = make_execution()
    tracker.track(execution)
    tracker.set(execution, Status.EXECUTING)
    tracker.set(execution, Status.COMPLETED)
    assert tracker.set(execution, Status.COMPLETED_WITH_ERRORS, final=True)
    assert execution.status == Status.COMPLETED_WITH_ERRORS


async def test_final_status_is_sticky(make_execution):
    tracker = StatusTracker()
    execution = make_execution()
    tracker.track(execution)
    tracker.set(execution, Status.EXECUTING)
    tracker.set(execution, Status.CANCELLED, final=True)
    assert tracker.set(execution, Status.COMPLETED) is False
    assert execution.status == Status.CANCELLED


async def test_only_newest_finished_executions_are_retained(make_execution):
    tracker = StatusTracker(retain_finished=2)
    running = make_execution()
    finished = [make_execution() for _ in range(3)]
    for execution in (running, *finished):
        tracker.track(execution)
        tracker.set(execution, Status.EXECUTING)
    for execution in finished:
        # Provisional then classified, as the session pump and router do.
        tracker.set(execution, Status.COMPLETED)
        tracker.set(execution, Status.COMPLETED, final=True)

    assert tracker.pending() == [running]
    assert tracker.get(finished[0].exec_id) is None
    assert [e.exec_id for e in tracker.executions()] == [
        running.exec_id,
        finished[1].exec_id,
        finished[2].exec_id,
    ]


async def test_provisional_terminal_status_is_not_retired(make_execution):
    tracker = StatusTracker(retain_finished=1)
    first, second = make_execution(), make_execution()
    for execution in (first, second):
        tracker.track(execution)
        tracker.set(execution, Status.EXECUTING)
        tracker.set(execution, Status.COMPLETED)

    assert tracker.get(first.exec_id) == Status.COMPLETED
    assert tracker.get(second.exec_id) == Status.COMPLETED


async def test_report_progress(make_execution):
    tracker = StatusTracker()
    execution = make_execution()
    tracker.report_progress(execution, 42)
    assert execution.progress == 42


async def test_format_elapsed(make_execution):
    execution = make_execution()
    assert format_elapsed(execution) == ""
    StatusTracker().set(execution, Status.EXECUTING)
    assert format_elapsed(execution).endswith("s")


async def test_live_display_runs_only_while_pending(make_execution):
    console = Console(file=io.StringIO(), force_terminal=False, width=100)
    display = LiveStatusDisplay(console, refresh_interval=0.01)
    tracker = StatusTracker(display)
    execution = make_execution()

    tracker.track(execution)
    assert display.active is True

    tracker.set(execution, Status.EXECUTING)
    table = display.build(tracker)
    assert table.row_count == 1

    tracker.set(execution, Status.COMPLETED, final=True)
    for _ in range(50):
        if not display.active:
            break
        await asyncio.sleep(0.01)
    assert display.active is False
    await tracker.close()


async def test_live_display_skipped_without_pending(make_execution):
    display = LiveStatusDisplay(Console(file=io.StringIO()), refresh_interval=0.01)
    tracker = StatusTracker(display)
    execution = make_execution()
    execution.status = Status.COMPLETED
    tracker.track(execution)
    assert display.active is False
