"""Tests for result rendering and sink routing."""

from __future__ import annotations

import asyncio
import io
from pathlib import Path

from rich.console import Console

from sqlblocks.models import Execution, ExecutionResult, ResultFormat, Status
from sqlblocks.render import InlineSink, ResultRouter, SideViewSink, render_text


def _execution(tmp_path: Path, result_format: ResultFormat) -> Execution:
    return Execution(
        exec_id="abc",
        session="default",
        query="SELECT 1;",
        command_text="SELECT 1;\n",
        marker="ASYNC_COMPLETE_abc",
        result_path=tmp_path / "abc.out",
        future=asyncio.get_running_loop().create_future(),
        result_format=result_format,
    )


def _side_sink() -> tuple[SideViewSink, io.StringIO]:
    buffer = io.StringIO()
    return SideViewSink(Console(file=buffer, width=80, color_system=None)), buffer


def test_render_text_completed_is_output_only():
    result = ExecutionResult("abc", "default", Status.COMPLETED, output="42\n")
    assert render_text(result) == "42"


def test_render_text_keeps_status_and_stderr():
    result = ExecutionResult(
        "abc",
        "default",
        Status.ERROR,
        detail="Parser Error: nope\nLINE 1",
        output="",
        stderr="Parser Error: nope\n",
    )
    assert render_text(result) == "[error] Parser Error: nope\n[stderr]\nParser Error: nope"


def test_inline_sink_wraps_when_asked():
    sink = InlineSink()
    sink.insert_result("42", {"exec_id": "abc", "wrap": True})
    assert sink.blocks["abc"] == "```\n42\n```"


def test_inline_sink_keeps_only_newest_results():
    sink = InlineSink(limit=2)
    for exec_id in ("a", "b", "c"):
        sink.insert_result(exec_id.upper(), {"exec_id": exec_id})
    assert list(sink.blocks) == ["b", "c"]

    sink.insert_result("B again", {"exec_id": "b"})
    sink.insert_result("D", {"exec_id": "d"})
    assert sink.blocks == {"b": "B again", "d": "D"}


async def test_router_sends_side_results_to_side_view(tmp_path):
    side, buffer = _side_sink()
    inline = InlineSink()
    router = ResultRouter(inline, side)
    result = ExecutionResult(
        "abc", "default", Status.COMPLETED, output="...", records=[{"city": "Oslo", "n": "3"}]
    )

    router.deliver(_execution(tmp_path, ResultFormat.SIDE), result)

    rendered = buffer.getvalue()
    assert "Oslo" in rendered
    assert "city" in rendered
    assert "abc" in rendered
    assert inline.blocks == {}


async def test_router_sends_other_formats_inline(tmp_path):
    side, buffer = _side_sink()
    inline = InlineSink()
    router = ResultRouter(inline, side)

    router.deliver(
        _execution(tmp_path, ResultFormat.RAW),
        ExecutionResult("abc", "default", Status.COMPLETED, output="hello\n"),
    )

    assert inline.blocks["abc"] == "hello"
    assert buffer.getvalue() == ""


async def test_router_without_side_view_falls_back_inline(tmp_path):
    inline = InlineSink()
    ResultRouter(inline).deliver(
        _execution(tmp_path, ResultFormat.SIDE),
        ExecutionResult("abc", None, Status.CANCELLED, detail="interrupted"),
    )
    assert inline.blocks["abc"] == "[cancelled] interrupted"


async def test_side_view_placeholder_for_empty_output(tmp_path):
    side, buffer = _side_sink()
    side.deliver(
        _execution(tmp_path, ResultFormat.SIDE),
        ExecutionResult("abc", None, Status.COMPLETED),
    )
    assert "(no output)" in buffer.getvalue()
    assert "standalone" in buffer.getvalue()
