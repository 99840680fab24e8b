"""Engine: the public entry point tying sessions, tracking and delivery together.

Usage::

    async with Engine(Settings.load()) as engine:
        result = await engine.execute("SELECT 42 AS answer;")
        execution = await engine.submit("SELECT * FROM big_table;", session="etl")
        await engine.cancel(execution.exec_id)
        result = await engine.wait(execution.exec_id)

``session=None`` runs the query in a one-off process instead of a named
session.  Engine-side failures come back as results; only startup failures,
synchronous timeouts and closed sessions raise.
"""

from __future__ import annotations

import asyncio
import logging
import shutil
import tempfile
from pathlib import Path
from typing import Any

from sqlblocks import protocol
from sqlblocks.completion import CompletionRouter
from sqlblocks.config import Settings
from sqlblocks.errors import ExecutionTimeout
from sqlblocks.events import Notifier, RedisEventPublisher
from sqlblocks.models import CancelOutcome, Execution, ExecutionResult, ResultFormat, Status
from sqlblocks.registry import DEFAULT_SESSION, SessionRegistry
from sqlblocks.render import InlineSink, ResultRouter, ResultSink, SideViewSink
from sqlblocks.standalone import StandaloneRunner
from sqlblocks.status import LiveStatusDisplay, StatusTracker
from sqlblocks.template import expand_template

log = logging.getLogger(__name__)


class Engine:
    """Owns the session registry, status tracker, notifier and result sink."""

    def __init__(
        self,
        settings: Settings | None = None,
        *,
        sink: ResultSink | None = None,
        notifier: Notifier | None = None,
        tracker: StatusTracker | None = None,
    ) -> None:
        self.settings = settings or Settings.load()
        self.settings.validate()
        self.notifier = notifier or Notifier()
        if tracker is None:
            display = LiveStatusDisplay() if self.settings.output.live_display else None
            tracker = StatusTracker(
                display, retain_finished=self.settings.output.retain_finished
            )
        self.tracker = tracker
        self.sink = sink or ResultRouter(
            InlineSink(limit=self.settings.output.retain_finished), SideViewSink()
        )
        self.router = CompletionRouter(self.tracker, self.notifier, self.sink)
        self.registry = SessionRegistry(
            self.settings, router=self.router, tracker=self.tracker, notifier=self.notifier
        )
        self.standalone = StandaloneRunner(
            self.settings, router=self.router, tracker=self.tracker, notifier=self.notifier
        )
        temp_root = self.settings.output.temp_dir
        if temp_root is not None:
            temp_root.mkdir(parents=True, exist_ok=True)
        self.temp_dir = Path(tempfile.mkdtemp(prefix="sqlblocks-", dir=temp_root))
        self.publisher: RedisEventPublisher | None = None
        if self.settings.events.redis_url:
            self.publisher = RedisEventPublisher(
                self.settings.events.redis_url, maxlen=self.settings.events.stream_maxlen
            )
            self.publisher.attach(self.notifier)

    async def __aenter__(self) -> Engine:
        return self

    async def __aexit__(self, *exc: object) -> None:
        await self.close()

    # -- Requests --

    def _prepare(
        self,
        query: str,
        *,
        session: str | None,
        params: dict[str, Any] | None,
        mode: str | None,
        result_format: ResultFormat,
        max_lines: int | None,
        sync: bool,
    ) -> Execution:
        body = expand_template(query, params) if params is not None else query
        exec_id = protocol.new_exec_id()
        marker = protocol.marker_for(exec_id, sync=sync)
        result_path = self.temp_dir / f"{exec_id}.out"
        directives = self.settings.directives
        stderr_path = None
        if session is None:
            stderr_path = self.temp_dir / f"{exec_id}.err"
            command_text = protocol.build_script(body, directives=directives, mode=mode)
        else:
            command_text = protocol.build_session_command(
                body,
                directives=directives,
                result_path=str(result_path),
                marker=marker,
                mode=mode,
            )
        owned = [result_path] if stderr_path is None else [result_path, stderr_path]
        return Execution(
            exec_id=exec_id,
            session=session,
            query=body,
            command_text=command_text,
            marker=marker,
            result_path=result_path,
            future=asyncio.get_running_loop().create_future(),
            mode=mode or directives.mode,
            result_format=result_format,
            max_lines=self.settings.output.max_result_lines if max_lines is None else max_lines,
            stderr_path=stderr_path,
            owned_paths=owned,
        )

    async def _dispatch(self, execution: Execution, database: str | None) -> None:
        if execution.session is None:
            await self.standalone.start(execution, database=database)
            return
        session = await self.registry.get_or_create(execution.session, database)
        await session.submit(execution)

    async def submit(
        self,
        query: str,
        *,
        session: str | None = DEFAULT_SESSION,
        database: str | None = None,
        params: dict[str, Any] | None = None,
        mode: str | None = None,
        result_format: ResultFormat = ResultFormat.TABLE,
        max_lines: int | None = None,
    ) -> Execution:
        """Queue *query* and return its execution without waiting for the result.

        Raises ``StartupTimeout`` if the session has to be spawned and never
        becomes ready.
        """
        execution = self._prepare(
            query,
            session=session,
            params=params,
            mode=mode,
            result_format=result_format,
            max_lines=max_lines,
            sync=False,
        )
        await self._dispatch(execution, database)
        log.debug("Submitted %s to %s", execution.exec_id, session or "one-off process")
        return execution

    async def execute(
        self,
        query: str,
        *,
        session: str | None = DEFAULT_SESSION,
        database: str | None = None,
        params: dict[str, Any] | None = None,
        mode: str | None = None,
        result_format: ResultFormat = ResultFormat.TABLE,
        max_lines: int | None = None,
        timeout: float | None = None,
    ) -> ExecutionResult:
        """Run *query* and wait for its result.

        On timeout the execution is interrupted (a one-off process is
        killed) and ``ExecutionTimeout`` is raised.
        """
        execution = self._prepare(
            query,
            session=session,
            params=params,
            mode=mode,
            result_format=result_format,
            max_lines=max_lines,
            sync=True,
        )
        await self._dispatch(execution, database)
        timeout = timeout or self.settings.output.sync_timeout
        try:
            return await asyncio.wait_for(asyncio.shield(execution.future), timeout)
        except TimeoutError:
            log.warning("Execution %s timed out after %gs", execution.exec_id, timeout)
            if execution.session is None:
                self.standalone.kill(execution.exec_id)
            else:
                await self.cancel(execution.exec_id)
            raise ExecutionTimeout(execution.exec_id, timeout) from None

    async def wait(self, exec_id: str, timeout: float | None = None) -> ExecutionResult:
        execution = self.tracker.execution(exec_id)
        if execution is None:
            raise KeyError(f"Unknown execution: {exec_id}")
        if timeout is None:
            return await asyncio.shield(execution.future)
        try:
            return await asyncio.wait_for(asyncio.shield(execution.future), timeout)
        except TimeoutError:
            raise ExecutionTimeout(exec_id, timeout) from None

    async def cancel(self, exec_id: str) -> CancelOutcome:
        """Interrupt a running execution or drop a queued one."""
        execution = self.tracker.execution(exec_id)
        if execution is None or execution.finalized:
            return CancelOutcome.NOT_FOUND
        if execution.session is None:
            return self.standalone.cancel(exec_id)
        session = self.registry.get(execution.session)
        if session is None:
            return CancelOutcome.NOT_FOUND
        return await session.cancel(exec_id)

    def status(self, exec_id: str) -> Status | None:
        return self.tracker.get(exec_id)

    # -- Sessions --

    def sessions(self) -> list[str]:
        return self.registry.list()

    async def delete_session(self, name: str) -> bool:
        return await self.registry.delete(name)

    async def close(self) -> None:
        await self.standalone.close()
        await self.registry.close()
        await self.tracker.close()
        shutil.rmtree(self.temp_dir, ignore_errors=True)
        log.debug("Engine closed")
