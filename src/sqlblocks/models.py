"""Execution records, statuses and results shared across the engine."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from pathlib import Path
from typing import Any


class Status(StrEnum):
    QUEUED = "queued"
    EXECUTING = "executing"
    COMPLETED = "completed"
    COMPLETED_WITH_ERRORS = "completed-with-errors"
    ERROR = "error"
    CANCELLED = "cancelled"
    UNKNOWN = "unknown"


PENDING_STATUSES = frozenset({Status.QUEUED, Status.EXECUTING})
TERMINAL_STATUSES = frozenset(Status) - PENDING_STATUSES


class CancelOutcome(StrEnum):
    """What ``cancel`` did with the execution it was given."""

    INTERRUPTED = "interrupted"
    DEQUEUED = "dequeued"
    NOT_FOUND = "not_found"


class ResultFormat(StrEnum):
    """How delivered output is shaped for the result sink."""

    TABLE = "table"
    RAW = "raw"
    SIDE = "side"


def utc_now() -> datetime:
    return datetime.now(UTC)


@dataclass(slots=True)
class FinishEvent:
    """How an execution ended, as seen by the engine.

    ``exit_code`` is 0 when the completion marker arrived from a live
    session, the process return code when the process itself ended
    (negative when killed by a signal), and None when nothing is known.
    """

    exit_code: int | None
    message: str = ""
    interrupted: bool = False


@dataclass
class Execution:
    """One request to run a query against a session or a one-off process."""

    exec_id: str
    session: str | None
    query: str
    command_text: str
    marker: str
    result_path: Path
    future: asyncio.Future[ExecutionResult]
    mode: str = "box"
    result_format: ResultFormat = ResultFormat.TABLE
    max_lines: int = 0
    stderr_path: Path | None = None
    owned_paths: list[Path] = field(default_factory=list)
    status: Status = Status.QUEUED
    submitted_at: datetime = field(default_factory=utc_now)
    started_at: datetime | None = None
    finished_at: datetime | None = None
    detail: str | None = None
    process: asyncio.subprocess.Process | None = None
    cancel_requested: bool = False
    finalized: bool = False
    diagnostics: list[str] = field(default_factory=list)
    error_lines: list[str] = field(default_factory=list)
    progress: int | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def stderr_text(self) -> str:
        return "\n".join(self.diagnostics)


@dataclass(slots=True)
class ExecutionResult:
    """Final, delivered outcome of an execution."""

    exec_id: str
    session: str | None
    status: Status
    detail: str | None = None
    output: str = ""
    stderr: str = ""
    truncated: bool = False
    records: list[dict[str, str]] | None = None
    started_at: datetime | None = None
    finished_at: datetime | None = None

    @property
    def ok(self) -> bool:
        return self.status == Status.COMPLETED

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "exec_id": self.exec_id,
            "session": self.session,
            "status": str(self.status),
            "detail": self.detail,
            "output": self.output,
            "stderr": self.stderr,
            "truncated": self.truncated,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
        }
        if self.records is not None:
            payload["records"] = self.records
        return payload
