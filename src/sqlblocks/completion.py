"""Completion Router: turns a finished execution into a delivered result.

Runs exactly once per execution, from the session pump (or the one-off
runner) that observed its finish.  Result content always comes from the
execution's side file, never from the streamed chunks.  Whatever happens
while classifying or delivering, the execution's temp files are removed,
its status is finalized and its future resolves.
"""

from __future__ import annotations

import logging
from pathlib import Path

from sqlblocks import protocol
from sqlblocks.events import EXECUTION_COMPLETED, Notifier
from sqlblocks.models import Execution, ExecutionResult, FinishEvent, ResultFormat, Status
from sqlblocks.render import ResultSink
from sqlblocks.status import StatusTracker
from sqlblocks.tabular import parse_tabular

log = logging.getLogger(__name__)

TRUNCATION_NOTICE = "[output truncated to {limit} lines]"
STDERR_EXCERPT_LINES = 20


def truncate_lines(text: str, max_lines: int | None) -> tuple[str, bool]:
    """Cap *text* at *max_lines* lines, appending an explicit notice when cut."""
    if not max_lines or max_lines <= 0:
        return text, False
    lines = text.splitlines()
    if len(lines) <= max_lines:
        return text, False
    kept = "\n".join(lines[:max_lines])
    return f"{kept}\n{TRUNCATION_NOTICE.format(limit=max_lines)}\n", True


def read_result_file(path: Path, max_lines: int | None) -> tuple[str, bool]:
    """Read a result file; a missing file (nothing was written) reads as empty."""
    try:
        text = path.read_text(encoding="utf-8", errors="replace")
    except FileNotFoundError:
        return "", False
    return truncate_lines(text, max_lines)


def excerpt(text: str, max_lines: int = STDERR_EXCERPT_LINES) -> str:
    lines = text.strip().splitlines()
    if len(lines) <= max_lines:
        return "\n".join(lines)
    return "\n".join([*lines[:max_lines], f"... ({len(lines) - max_lines} more lines)"])


def classify(finish: FinishEvent, stderr_text: str) -> tuple[Status, str | None]:
    """Ordered decision table mapping a finish event to a terminal status.

    Structured cancellation evidence (an interrupt we sent, a signal exit)
    is checked first; matching the finish message text is the fallback.
    """
    if finish.interrupted or (finish.exit_code is not None and finish.exit_code < 0):
        return Status.CANCELLED, finish.message or "execution interrupted"
    if finish.exit_code is not None:
        if finish.exit_code != 0:
            detail = stderr_text.strip() or f"process exited with code {finish.exit_code}"
            return Status.ERROR, detail
        if stderr_text.strip():
            return Status.COMPLETED_WITH_ERRORS, excerpt(stderr_text)
        return Status.COMPLETED, None
    if protocol.mentions_cancellation(finish.message):
        return Status.CANCELLED, finish.message
    return Status.UNKNOWN, finish.message or None


def remove_owned_files(execution: Execution) -> None:
    for path in execution.owned_paths:
        try:
            path.unlink(missing_ok=True)
        except OSError:
            log.warning("Could not remove temp file %s", path, exc_info=True)


class CompletionRouter:
    """Reads, classifies, delivers and cleans up finished executions."""

    def __init__(self, tracker: StatusTracker, notifier: Notifier, sink: ResultSink) -> None:
        self.tracker = tracker
        self.notifier = notifier
        self.sink = sink

    def _collect_stderr(self, execution: Execution) -> str:
        parts = [execution.stderr_text] if execution.diagnostics else []
        if execution.stderr_path is not None:
            try:
                file_text = execution.stderr_path.read_text(encoding="utf-8", errors="replace")
            except FileNotFoundError:
                file_text = ""
            file_lines = [line for line in file_text.splitlines() if line.strip()]
            execution.error_lines.extend(
                line for line in file_lines if protocol.is_error_line(line)
            )
            if file_lines:
                parts.append("\n".join(file_lines))
        return "\n".join(parts)

    def _build_result(
        self,
        execution: Execution,
        finish: FinishEvent,
        override: tuple[Status, str] | None = None,
    ) -> ExecutionResult:
        if execution.cancel_requested and not finish.interrupted:
            finish = FinishEvent(finish.exit_code, finish.message or "interrupted", True)
        output, truncated = read_result_file(execution.result_path, execution.max_lines)
        stderr = self._collect_stderr(execution)
        status, detail = override or classify(finish, stderr)
        if status == Status.ERROR and execution.error_lines and override is None:
            detail = excerpt("\n".join(execution.error_lines))
        records = None
        if execution.result_format != ResultFormat.RAW and output and not truncated:
            parsed = parse_tabular(output, execution.mode)
            if isinstance(parsed, list):
                records = parsed
        return ExecutionResult(
            exec_id=execution.exec_id,
            session=execution.session,
            status=status,
            detail=detail,
            output=output,
            stderr=stderr,
            truncated=truncated,
            records=records,
        )

    def route(
        self,
        execution: Execution,
        finish: FinishEvent,
        *,
        override: tuple[Status, str] | None = None,
    ) -> ExecutionResult:
        """Finish *execution*. Never raises.

        *override* skips classification for outcomes the caller already
        knows, such as a queued execution cancelled before it was sent.
        """
        result: ExecutionResult | None = None
        try:
            result = self._build_result(execution, finish, override)
            self._finalize(execution, result)
            self.sink.deliver(execution, result)
        except Exception as exc:
            log.exception("Completion handler failed for %s", execution.exec_id)
            result = ExecutionResult(
                exec_id=execution.exec_id,
                session=execution.session,
                status=Status.ERROR,
                detail=f"completion handler failed: {exc}",
                output=result.output if result else "",
                stderr=result.stderr if result else execution.stderr_text,
                truncated=result.truncated if result else False,
            )
            execution.finalized = False
            self._finalize(execution, result)
            try:
                self.sink.deliver(execution, result)
            except Exception:
                log.exception("Could not deliver failure result for %s", execution.exec_id)
        finally:
            remove_owned_files(execution)
            if result is None:
                result = ExecutionResult(execution.exec_id, execution.session, Status.ERROR)
                self._finalize(execution, result)
            if not execution.future.done():
                execution.future.set_result(result)
        self.notifier.emit(
            EXECUTION_COMPLETED,
            execution.exec_id,
            str(result.status),
            session=execution.session,
            extra={"detail": result.detail, "truncated": result.truncated},
        )
        return result

    def _finalize(self, execution: Execution, result: ExecutionResult) -> None:
        execution.detail = result.detail
        self.tracker.set(execution, result.status, final=True)
        result.started_at = execution.started_at
        result.finished_at = execution.finished_at
