"""Wire protocol spoken to the engine CLI over stdin.

Every execution is sent as plain text lines::

    .mode box
    .headers on
    ...
    .output '/tmp/sqlblocks-x/3f2a....out'
    SELECT 42;
    .output
    .print ASYNC_COMPLETE_3f2a...

Results land in the side file; the only thing the engine writes to its
stream for an execution is diagnostics, progress fragments and the marker.
Marker detection is line-oriented: a marker counts only when it is the whole
line, so echoed commands containing it never match.
"""

from __future__ import annotations

import re
import uuid

from sqlblocks.config import DirectiveSettings

ASYNC_MARKER_PREFIX = "ASYNC_COMPLETE_"
SYNC_MARKER = "SQLBLOCKS_SYNC_COMPLETE"

# Engine diagnostics worth surfacing as errors (DuckDB and sqlite3 CLI wording).
ERROR_PATTERN = re.compile(
    r"(?:(?:Parser|Catalog|Binder|Syntax|Conversion|Constraint|Invalid Input|"
    r"Not implemented|IO|Out of Range|Internal|Interrupt|Transaction)\s+Error:.*"
    r"|^Error:.*|Runtime error.*|Parse error.*|near \".*\": syntax error.*)",
    re.IGNORECASE,
)

# DuckDB draws "  42% ▕██████         ▏" with carriage returns and no newline.
PROGRESS_PATTERN = re.compile(r"(\d{1,3})%\s*[▕|\[]")

CANCEL_PATTERN = re.compile(r"\b(?:kill(?:ed)?|terminat(?:e|ed)|interrupt(?:ed)?)\b", re.IGNORECASE)


def new_exec_id() -> str:
    """High-entropy execution id, safe to embed in a marker."""
    return uuid.uuid4().hex


def marker_for(exec_id: str, *, sync: bool = False) -> str:
    return SYNC_MARKER if sync else f"{ASYNC_MARKER_PREFIX}{exec_id}"


def quote_arg(value: str) -> str:
    """Quote a dot-command argument the way the CLI argument parser expects."""
    if "'" not in value:
        return f"'{value}'"
    escaped = value.replace("\\", "\\\\").replace('"', '\\"')
    return f'"{escaped}"'


def _on_off(flag: bool) -> str:
    return "on" if flag else "off"


def render_directives(directives: DirectiveSettings, *, mode: str | None = None) -> list[str]:
    """Dot-command lines that put the CLI into a known display state."""
    return [
        f".mode {mode or directives.mode}",
        f".headers {_on_off(directives.headers)}",
        f".nullvalue {quote_arg(directives.nullvalue)}",
        f".separator {quote_arg(directives.separator)}",
        f".timer {_on_off(directives.timer)}",
        f".echo {_on_off(directives.echo)}",
        f".bail {_on_off(directives.bail)}",
    ]


def startup_script(directives: DirectiveSettings, ready_sentinel: str) -> str:
    """Lines sent once after spawning a session; the sentinel proves readiness."""
    lines = [
        f".prompt {quote_arg(directives.prompt)}",
        *render_directives(directives),
        f".print {ready_sentinel}",
    ]
    return "\n".join(lines) + "\n"


def terminate_statement(query: str) -> str:
    """Make sure a trailing statement is closed before the next dot-command."""
    body = query.rstrip()
    if not body:
        return ""
    last_line = body.rsplit("\n", 1)[-1].strip()
    if last_line.startswith(".") or body.endswith(";"):
        return body
    return body + "\n;"


def build_session_command(
    query: str,
    *,
    directives: DirectiveSettings,
    result_path: str,
    marker: str,
    mode: str | None = None,
) -> str:
    """Command text for one session execution, ending with the marker print."""
    lines = [
        *render_directives(directives, mode=mode),
        f".output {quote_arg(result_path)}",
        terminate_statement(query),
        ".output",
        f".print {marker}",
    ]
    return "\n".join(line for line in lines if line) + "\n"


def build_script(query: str, *, directives: DirectiveSettings, mode: str | None = None) -> str:
    """Script fed on stdin to a one-off process; the process exit ends it."""
    lines = [*render_directives(directives, mode=mode), terminate_statement(query)]
    return "\n".join(line for line in lines if line) + "\n"


def is_error_line(line: str) -> bool:
    return bool(ERROR_PATTERN.search(line))


def progress_from(text: str) -> int | None:
    """Return the last progress percentage found in *text*, if any."""
    matches = PROGRESS_PATTERN.findall(text)
    if not matches:
        return None
    return min(int(matches[-1]), 100)


def is_progress_line(line: str) -> bool:
    return PROGRESS_PATTERN.search(line) is not None


def mentions_cancellation(message: str) -> bool:
    return bool(CANCEL_PATTERN.search(message))


class LineBuffer:
    """Splits an unframed chunk stream into complete lines.

    A trailing partial line is held back until a later chunk completes it.
    Carriage returns (progress bar redraws) end a line too.
    """

    __slots__ = ("_pending",)

    def __init__(self) -> None:
        self._pending = ""

    @property
    def pending(self) -> str:
        return self._pending

    def feed(self, chunk: str) -> list[str]:
        data = self._pending + chunk
        parts = re.split(r"\r\n|\r|\n", data)
        self._pending = parts.pop()
        return parts

    def flush(self) -> list[str]:
        """Return the held partial line (if any) as a final line."""
        rest, self._pending = self._pending, ""
        return [rest] if rest else []
