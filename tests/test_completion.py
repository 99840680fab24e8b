"""Tests for result classification, truncation and the Completion Router."""

from __future__ import annotations

import asyncio
from pathlib import Path
from unittest.mock import MagicMock

import pytest

from sqlblocks.completion import (
    TRUNCATION_NOTICE,
    CompletionRouter,
    classify,
    excerpt,
    truncate_lines,
)
from sqlblocks.events import EXECUTION_COMPLETED, Notifier
from sqlblocks.models import Execution, FinishEvent, ResultFormat, Status
from sqlblocks.render import InlineSink
from sqlblocks.status import StatusTracker


def _make_execution(tmp_path: Path, output: str | None = None, **kwargs) -> Execution:
    result_path = tmp_path / "abc.out"
    if output is not None:
        result_path.write_text(output)
    defaults = {
        "exec_id": "abc",
        "session": "default",
        "query": "SELECT 1;",
        "command_text": "SELECT 1;\n",
        "marker": "ASYNC_COMPLETE_abc",
        "result_path": result_path,
        "future": asyncio.get_running_loop().create_future(),
        "owned_paths": [result_path],
    }
    defaults.update(kwargs)
    execution = Execution(**defaults)
    execution.status = Status.EXECUTING
    return execution


# ---------------------------------------------------------------------------
# Truncation
# ---------------------------------------------------------------------------


def test_truncate_under_limit_untouched():
    text = "\n".join(f"row {i}" for i in range(5)) + "\n"
    assert truncate_lines(text, 6) == (text, False)
    assert truncate_lines(text, 5) == (text, False)


def test_truncate_over_limit_appends_notice():
    text = "\n".join(f"row {i}" for i in range(5)) + "\n"
    truncated, was_truncated = truncate_lines(text, 4)
    assert was_truncated is True
    lines = truncated.splitlines()
    assert lines[:4] == ["row 0", "row 1", "row 2", "row 3"]
    assert lines[4] == TRUNCATION_NOTICE.format(limit=4)
    assert len(lines) == 5


@pytest.mark.parametrize("limit", [0, None])
def test_truncate_unlimited(limit):
    text = "a\n" * 1000
    assert truncate_lines(text, limit) == (text, False)


def test_excerpt_caps_lines():
    text = "\n".join(f"e{i}" for i in range(30))
    lines = excerpt(text).splitlines()
    assert len(lines) == 21
    assert lines[-1] == "... (10 more lines)"


# ---------------------------------------------------------------------------
# Classification
# ---------------------------------------------------------------------------


@pytest.mark.parametrize(
    ("finish", "stderr", "expected"),
    [
        (FinishEvent(0), "", Status.COMPLETED),
        (FinishEvent(0), "Warning: x", Status.COMPLETED_WITH_ERRORS),
        (FinishEvent(1), "", Status.ERROR),
        (FinishEvent(1), "Parser Error: x", Status.ERROR),
        (FinishEvent(-9), "", Status.CANCELLED),
        (FinishEvent(0, interrupted=True), "Error: Interrupted", Status.CANCELLED),
        (FinishEvent(1, interrupted=True), "", Status.CANCELLED),
        (FinishEvent(None, "process was killed"), "", Status.CANCELLED),
        (FinishEvent(None, "terminated by host"), "", Status.CANCELLED),
        (FinishEvent(None, "went away"), "", Status.UNKNOWN),
        (FinishEvent(None), "", Status.UNKNOWN),
    ],
)
def test_classify_decision_table(finish, stderr, expected):
    status, _detail = classify(finish, stderr)
    assert status == expected


def test_classify_error_detail_falls_back_to_exit_code():
    assert classify(FinishEvent(3), "") == (Status.ERROR, "process exited with code 3")


def test_classify_completed_with_errors_detail_is_excerpt():
    stderr = "\n".join(f"warning {i}" for i in range(25))
    status, detail = classify(FinishEvent(0), stderr)
    assert status == Status.COMPLETED_WITH_ERRORS
    assert detail.splitlines()[0] == "warning 0"
    assert len(detail.splitlines()) == 21


# ---------------------------------------------------------------------------
# Router
# ---------------------------------------------------------------------------


@pytest.fixture()
def router_parts():
    tracker = StatusTracker()
    notifier = Notifier()
    sink = InlineSink()
    completed: list[dict] = []
    notifier.on(EXECUTION_COMPLETED, completed.append)
    return CompletionRouter(tracker, notifier, sink), tracker, sink, completed


async def test_route_reads_side_file_and_cleans_up(tmp_path, router_parts):
    router, tracker, sink, completed = router_parts
    execution = _make_execution(tmp_path, "+---+\n| n |\n+---+\n| 1 |\n+---+\n")
    tracker.track(execution)

    result = router.route(execution, FinishEvent(0))

    assert result.status == Status.COMPLETED
    assert result.records == [{"n": "1"}]
    assert execution.future.result() is result
    assert execution.status == Status.COMPLETED
    assert execution.finalized is True
    assert not execution.result_path.exists()
    assert sink.results["abc"] is result
    assert [e["id"] for e in completed] == ["abc"]
    assert completed[0]["status"] == "completed"


async def test_route_includes_diagnostics_as_stderr(tmp_path, router_parts):
    router, _tracker, sink, _completed = router_parts
    execution = _make_execution(tmp_path, "42\n")
    execution.diagnostics.append("Warning: careful")

    result = router.route(execution, FinishEvent(0))

    assert result.status == Status.COMPLETED_WITH_ERRORS
    assert result.output == "42\n"
    assert result.stderr == "Warning: careful"
    assert "42" in sink.blocks["abc"]
    assert "[stderr]\nWarning: careful" in sink.blocks["abc"]


async def test_route_error_detail_prefers_error_lines(tmp_path, router_parts):
    router, *_ = router_parts
    execution = _make_execution(tmp_path)
    execution.diagnostics.extend(["noise", "Catalog Error: Table foo does not exist"])
    execution.error_lines.append("Catalog Error: Table foo does not exist")

    result = router.route(execution, FinishEvent(1))

    assert result.status == Status.ERROR
    assert result.detail == "Catalog Error: Table foo does not exist"


async def test_route_cancel_requested_wins(tmp_path, router_parts):
    router, *_ = router_parts
    execution = _make_execution(tmp_path, "partial\n")
    execution.cancel_requested = True

    result = router.route(execution, FinishEvent(0))

    assert result.status == Status.CANCELLED


async def test_route_override_skips_classification(tmp_path, router_parts):
    router, *_ = router_parts
    execution = _make_execution(tmp_path)

    result = router.route(
        execution, FinishEvent(None), override=(Status.ERROR, "session exited")
    )

    assert result.status == Status.ERROR
    assert result.detail == "session exited"


async def test_route_raw_format_skips_parsing(tmp_path, router_parts):
    router, *_ = router_parts
    execution = _make_execution(
        tmp_path, "+---+\n| n |\n+---+\n| 1 |\n+---+\n", result_format=ResultFormat.RAW
    )

    result = router.route(execution, FinishEvent(0))

    assert result.records is None
    assert "| 1 |" in result.output


async def test_route_sink_fault_becomes_error_result(tmp_path):
    tracker = StatusTracker()
    notifier = Notifier()
    sink = MagicMock()
    sink.deliver.side_effect = [RuntimeError("renderer exploded"), None]
    router = CompletionRouter(tracker, notifier, sink)
    execution = _make_execution(tmp_path, "ok\n")
    stderr_path = tmp_path / "abc.err"
    stderr_path.write_text("")
    execution.stderr_path = stderr_path
    execution.owned_paths.append(stderr_path)

    result = router.route(execution, FinishEvent(0))

    assert result.status == Status.ERROR
    assert "renderer exploded" in result.detail
    assert execution.status == Status.ERROR
    assert execution.future.result() is result
    assert not execution.result_path.exists()
    assert not stderr_path.exists()
    assert sink.deliver.call_count == 2


async def test_route_survives_double_fault(tmp_path):
    tracker = StatusTracker()
    sink = MagicMock()
    sink.deliver.side_effect = RuntimeError("always broken")
    router = CompletionRouter(tracker, Notifier(), sink)
    execution = _make_execution(tmp_path, "ok\n")

    result = router.route(execution, FinishEvent(0))

    assert result.status == Status.ERROR
    assert execution.future.done()
