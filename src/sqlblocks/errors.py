"""Exceptions raised to callers of the engine.

Engine-side failures (nonzero exits, stderr output, cancellations) are not
exceptions: they come back as an :class:`~sqlblocks.models.ExecutionResult`.
"""

from __future__ import annotations


class SqlBlocksError(Exception):
    """Base class for errors surfaced to the immediate caller."""


class StartupTimeout(SqlBlocksError):
    """A session process never signaled readiness."""

    def __init__(self, session: str, message: str) -> None:
        super().__init__(f"Session '{session}' failed to start: {message}")
        self.session = session


class ExecutionTimeout(SqlBlocksError):
    """A synchronous execution did not finish within its timeout."""

    def __init__(self, exec_id: str, timeout: float) -> None:
        super().__init__(f"Execution {exec_id} did not complete within {timeout:g}s")
        self.exec_id = exec_id
        self.timeout = timeout


class SessionClosedError(SqlBlocksError):
    """Work was submitted to a session that is dead or shutting down."""

    def __init__(self, session: str) -> None:
        super().__init__(f"Session '{session}' is not running")
        self.session = session
