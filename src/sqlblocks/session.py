"""One persistent engine CLI process and the queue of work sent to it.

A session owns three asyncio tasks.  Two readers pull raw chunks off the
process's stdout and stderr pipes.  The pump is the only task that touches
the queue and execution statuses: it consumes ``submit``, ``cancel``,
``output``, ``stderr`` and ``eof`` messages in order, so the queue has a
single writer and needs no locks.  Callers only post messages and await
their replies.

Query results go to a per-execution file, so stdout only carries the
readiness sentinel, completion markers and echoed commands.  stderr is what
gets attributed to the executing head.  The head's marker line is the
barrier: stderr written before it belongs to the head.

The engine CLIs read a non-interactive stdin, and they quit on SIGINT
instead of just stopping the running statement.  When the process exits
after an interrupt this session sent, it is restarted with the same
arguments and the queue carries on.  Anything the old process held in
memory (temp tables, attached databases, ``SET`` options) is gone.
"""

from __future__ import annotations

import asyncio
import codecs
import contextlib
import logging
import signal
from collections import deque
from collections.abc import Awaitable, Callable
from typing import Any

from sqlblocks import protocol
from sqlblocks.completion import CompletionRouter
from sqlblocks.config import Settings
from sqlblocks.errors import SessionClosedError, StartupTimeout
from sqlblocks.events import EXECUTION_STARTED, PROCESS_STARTED, Notifier
from sqlblocks.models import CancelOutcome, Execution, FinishEvent, Status
from sqlblocks.status import StatusTracker

log = logging.getLogger(__name__)

READ_CHUNK_SIZE = 4096

OutputHandler = Callable[[str], Awaitable[None]]


class Session:
    """A named, long-lived engine process with a FIFO execution queue."""

    def __init__(
        self,
        name: str,
        *,
        settings: Settings,
        router: CompletionRouter,
        tracker: StatusTracker,
        notifier: Notifier,
        database: str | None = None,
        output_sink: Callable[[str], None] | None = None,
    ) -> None:
        self.name = name
        self.database = database
        self.output_sink = output_sink
        self.process: asyncio.subprocess.Process | None = None
        self.restarts = 0
        self._settings = settings
        self._router = router
        self._tracker = tracker
        self._notifier = notifier
        self._queue: deque[Execution] = deque()
        self._inbox: asyncio.Queue[tuple[str, Any]] = asyncio.Queue()
        self._lines = protocol.LineBuffer()
        self._err_lines = protocol.LineBuffer()
        self._stderr_chunks: list[str] = []
        self._reader_task: asyncio.Task[None] | None = None
        self._stderr_task: asyncio.Task[None] | None = None
        self._pump_task: asyncio.Task[None] | None = None
        self._alive = False
        self._closing = False
        self._restarting = False
        self._interrupted_id: str | None = None
        self._output_handler: OutputHandler = self._idle_output
        self._saved_handler: OutputHandler | None = None

    # -- Lifecycle --

    @property
    def alive(self) -> bool:
        if not self._alive or self.process is None:
            return False
        return self._restarting or self.process.returncode is None

    @property
    def argv(self) -> list[str]:
        engine = self._settings.engine
        argv = [engine.executable, *engine.args]
        if self.database:
            argv.append(self.database)
        return argv

    async def start(self) -> None:
        """Spawn the process and wait for it to print the readiness sentinel."""
        await self._spawn()
        await self._handshake()
        self._alive = True
        self._pump_task = asyncio.create_task(self._pump())
        log.info("Session '%s' ready (pid=%d)", self.name, self.process.pid or 0)

    async def _spawn(self) -> None:
        log.info("Starting session '%s': %s", self.name, " ".join(self.argv))
        try:
            process = await asyncio.create_subprocess_exec(
                *self.argv,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                start_new_session=True,
            )
        except OSError as e:
            raise StartupTimeout(self.name, str(e)) from e
        self.process = process
        self._lines = protocol.LineBuffer()
        self._err_lines = protocol.LineBuffer()
        self._stderr_chunks.clear()
        self._stderr_task = asyncio.create_task(self._read_stderr(process))
        self._reader_task = asyncio.create_task(self._read_stdout(process, self._stderr_task))
        self._notifier.emit(
            PROCESS_STARTED,
            self.name,
            "started",
            session=self.name,
            extra={"pid": process.pid, "argv": self.argv, "restarts": self.restarts},
        )

    async def _handshake(self) -> None:
        script = protocol.startup_script(
            self._settings.directives, self._settings.engine.ready_pattern
        )
        try:
            # A process that dies right away shows up as EOF in _await_ready.
            with contextlib.suppress(BrokenPipeError, ConnectionResetError):
                await self._write(script)
            await self._await_ready(self._settings.engine.startup_timeout)
        except BaseException:
            await self._kill()
            raise

    async def _await_ready(self, timeout: float) -> None:
        """Read until the sentinel arrives on a line of its own.

        Submits and cancels that arrive meanwhile (during a restart) are
        put back on the inbox, in order, once this returns or fails.
        """
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        sentinel = self._settings.engine.ready_pattern
        deferred: list[tuple[str, Any]] = []
        try:
            while True:
                remaining = deadline - loop.time()
                if remaining <= 0:
                    raise StartupTimeout(self.name, f"no readiness signal within {timeout:g}s")
                try:
                    kind, payload = await asyncio.wait_for(self._inbox.get(), remaining)
                except TimeoutError:
                    raise StartupTimeout(
                        self.name, f"no readiness signal within {timeout:g}s"
                    ) from None
                if kind in ("submit", "cancel"):
                    deferred.append((kind, payload))
                elif kind == "stderr":
                    self._take_stderr()
                elif kind == "eof":
                    raise StartupTimeout(self.name, f"process exited with code {payload}")
                else:
                    for line in self._lines.feed(payload):
                        if line.strip() == sentinel:
                            return
                        if line.strip():
                            log.debug("session %s startup: %s", self.name, line)
        finally:
            for item in deferred:
                self._inbox.put_nowait(item)

    async def close(self, grace: float | None = None) -> None:
        """Ask the process to quit, then terminate or kill it if it lingers."""
        grace = self._settings.engine.shutdown_grace if grace is None else grace
        self._alive = False
        self._closing = True
        process = self.process
        if process is not None and process.returncode is None:
            with contextlib.suppress(BrokenPipeError, ConnectionResetError):
                await self._write(".quit\n")
            try:
                await asyncio.wait_for(process.wait(), grace)
            except TimeoutError:
                log.info("Session '%s' did not exit in %gs; terminating", self.name, grace)
                with contextlib.suppress(ProcessLookupError):
                    process.terminate()
                try:
                    await asyncio.wait_for(process.wait(), grace)
                except TimeoutError:
                    with contextlib.suppress(ProcessLookupError):
                        process.kill()
                    await process.wait()
        if self._pump_task is not None:
            with contextlib.suppress(asyncio.CancelledError):
                await self._pump_task
        # A restart in flight may have replaced the readers.
        for task in (self._reader_task, self._stderr_task):
            if task is not None:
                with contextlib.suppress(asyncio.CancelledError):
                    await task
        log.info("Session '%s' closed", self.name)

    async def _kill(self) -> None:
        if self.process is not None and self.process.returncode is None:
            with contextlib.suppress(ProcessLookupError):
                self.process.kill()
            await self.process.wait()
        for task in (self._reader_task, self._stderr_task):
            if task is not None and not task.done():
                task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await task

    async def _restart(self) -> bool:
        """Replace an exited process in place; False when the session should end."""
        if self._closing:
            return False
        self.restarts += 1
        self._restarting = True
        try:
            await self._spawn()
            await self._handshake()
        except StartupTimeout as e:
            log.warning("Session '%s' could not be restarted: %s", self.name, e)
            return False
        finally:
            self._restarting = False
        if self._closing:
            await self._kill()
            return False
        while self._queue and self._queue[0].status == Status.CANCELLED:
            self._queue.popleft()
        if self._queue:
            await self._transmit(self._queue[0])
        else:
            self._detach_scanner()
        log.info("Session '%s' restarted (pid=%d)", self.name, self.process.pid or 0)
        return True

    # -- Caller-facing messages --

    async def submit(self, execution: Execution) -> None:
        """Hand *execution* to the pump; returns once it is queued or transmitted."""
        if not self.alive:
            raise SessionClosedError(self.name)
        accepted: asyncio.Future[None] = asyncio.get_running_loop().create_future()
        self._inbox.put_nowait(("submit", (execution, accepted)))
        await accepted

    async def cancel(self, exec_id: str) -> CancelOutcome:
        if self._pump_task is None or self._pump_task.done():
            return CancelOutcome.NOT_FOUND
        reply: asyncio.Future[CancelOutcome] = asyncio.get_running_loop().create_future()
        self._inbox.put_nowait(("cancel", (exec_id, reply)))
        return await reply

    def queued_ids(self) -> list[str]:
        return [execution.exec_id for execution in self._queue]

    # -- Readers --

    async def _read_stdout(
        self, process: asyncio.subprocess.Process, stderr_task: asyncio.Task[None]
    ) -> None:
        assert process.stdout
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        while True:
            chunk = await process.stdout.read(READ_CHUNK_SIZE)
            if not chunk:
                tail = decoder.decode(b"", final=True)
                if tail:
                    self._inbox.put_nowait(("output", tail))
                break
            self._inbox.put_nowait(("output", decoder.decode(chunk)))
        await stderr_task
        returncode = await process.wait()
        self._inbox.put_nowait(("eof", returncode))

    async def _read_stderr(self, process: asyncio.subprocess.Process) -> None:
        assert process.stderr
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        while True:
            chunk = await process.stderr.read(READ_CHUNK_SIZE)
            text = decoder.decode(chunk, final=not chunk)
            if text:
                self._stderr_chunks.append(text)
                self._inbox.put_nowait(("stderr", None))
            if not chunk:
                break

    # -- Pump (single writer) --

    async def _pump(self) -> None:
        while True:
            kind, payload = await self._inbox.get()
            if kind == "submit":
                execution, accepted = payload
                await self._enqueue(execution)
                if not accepted.done():
                    accepted.set_result(None)
            elif kind == "cancel":
                exec_id, reply = payload
                outcome = self._cancel(exec_id)
                if not reply.done():
                    reply.set_result(outcome)
            elif kind == "output":
                await self._output_handler(payload)
            elif kind == "stderr":
                self._take_stderr()
            elif kind == "eof":
                if await self._on_exit(payload):
                    return

    async def _enqueue(self, execution: Execution) -> None:
        was_empty = not self._queue
        self._queue.append(execution)
        self._tracker.track(execution)
        if was_empty:
            self._attach_scanner()
        if was_empty and self._alive:
            await self._transmit(execution)
        else:
            self._tracker.set(execution, Status.QUEUED)
            log.debug(
                "Queued %s on '%s' behind %d",
                execution.exec_id,
                self.name,
                len(self._queue) - 1,
            )

    async def _dequeue(self) -> None:
        self._queue.popleft()
        while self._queue and self._queue[0].status == Status.CANCELLED:
            skipped = self._queue.popleft()
            log.debug("Skipping cancelled %s on '%s'", skipped.exec_id, self.name)
        if not self._queue:
            self._detach_scanner()
        elif self._alive:
            await self._transmit(self._queue[0])
        else:
            log.debug("Session '%s' shutting down; holding %d", self.name, len(self._queue))

    async def _transmit(self, execution: Execution) -> None:
        self._tracker.set(execution, Status.EXECUTING)
        execution.process = self.process
        try:
            await self._write(execution.command_text)
        except (BrokenPipeError, ConnectionResetError):
            # The reader will see EOF and route this execution with the exit code.
            log.warning("Session '%s' stdin closed while sending %s", self.name, execution.exec_id)
        log.debug("Sent %s to '%s'", execution.exec_id, self.name)
        self._notifier.emit(
            EXECUTION_STARTED, execution.exec_id, str(Status.EXECUTING), session=self.name
        )

    def _cancel(self, exec_id: str) -> CancelOutcome:
        position = next(
            (i for i, execution in enumerate(self._queue) if execution.exec_id == exec_id), None
        )
        if position is None:
            return CancelOutcome.NOT_FOUND
        execution = self._queue[position]
        if execution.is_terminal:
            return CancelOutcome.NOT_FOUND
        if position == 0:
            execution.cancel_requested = True
            self._interrupted_id = exec_id
            if self.process is not None and self.process.returncode is None:
                with contextlib.suppress(ProcessLookupError):
                    self.process.send_signal(signal.SIGINT)
            log.info("Interrupted %s on '%s'", exec_id, self.name)
            return CancelOutcome.INTERRUPTED
        self._tracker.set(execution, Status.CANCELLED)
        self._router.route(
            execution,
            FinishEvent(None, "cancelled before start", interrupted=True),
            override=(Status.CANCELLED, "cancelled before start"),
        )
        log.info("Cancelled queued %s on '%s' (position %d)", exec_id, self.name, position)
        return CancelOutcome.DEQUEUED

    # -- Output handlers --

    def _attach_scanner(self) -> None:
        if self._saved_handler is None:
            self._saved_handler = self._output_handler
            self._output_handler = self._scan

    def _detach_scanner(self) -> None:
        if self._saved_handler is not None:
            self._output_handler = self._saved_handler
            self._saved_handler = None

    def _idle_line(self, line: str) -> None:
        if self.output_sink is not None:
            self.output_sink(line)
        else:
            log.debug("session %s: %s", self.name, line)

    async def _idle_output(self, chunk: str) -> None:
        for line in self._lines.feed(chunk):
            if line.strip():
                self._idle_line(line)

    async def _scan(self, chunk: str) -> None:
        if self._queue:
            percent = protocol.progress_from(chunk)
            if percent is not None:
                self._tracker.report_progress(self._queue[0], percent)
        for line in self._lines.feed(chunk):
            await self._scan_line(line)

    async def _scan_line(self, line: str) -> None:
        stripped = line.strip()
        if not stripped:
            return
        if not self._queue:
            self._idle_line(stripped)
            return
        head = self._queue[0]
        if stripped != head.marker:
            log.debug("session %s stdout: %s", self.name, stripped)
            return
        # stderr written before the marker is already in the pipe; one loop
        # turn lets its reader hand it over.
        await asyncio.sleep(0)
        self._take_stderr()
        if head.exec_id != self._interrupted_id:
            self._interrupted_id = None
        self._tracker.set(head, Status.COMPLETED)
        self._router.route(head, FinishEvent(0, "marker", interrupted=head.cancel_requested))
        await self._dequeue()

    def _take_stderr(self, *, final: bool = False) -> None:
        text = "".join(self._stderr_chunks)
        self._stderr_chunks.clear()
        lines = self._err_lines.feed(text)
        if final:
            lines += self._err_lines.flush()
        head = self._queue[0] if self._queue else None
        if head is not None and (head.status != Status.EXECUTING or self._restarting):
            head = None
        if head is not None:
            percent = protocol.progress_from(text)
            if percent is not None:
                self._tracker.report_progress(head, percent)
        for line in lines:
            stripped = line.strip()
            if not stripped or protocol.is_progress_line(stripped):
                continue
            if head is None:
                self._idle_line(stripped)
                continue
            if protocol.is_error_line(stripped):
                head.error_lines.append(stripped)
            head.diagnostics.append(stripped)

    async def _on_exit(self, returncode: int) -> bool:
        """Handle process exit; returns True when the session is finished."""
        for line in self._lines.flush():
            await self._output_handler(line + "\n")
        self._take_stderr(final=True)
        restart = self._interrupted_id is not None and not self._closing
        self._interrupted_id = None

        if self._queue and self._queue[0].status == Status.EXECUTING:
            head = self._queue[0]
            # An uncancelled head that was sent right before the interrupt
            # landed never ran; it is sent again after the restart.
            if head.cancel_requested or not restart:
                self._queue.popleft()
                if not head.finalized:
                    message = (
                        f"interrupted; session process exited with code {returncode}"
                        if head.cancel_requested
                        else f"session process exited with code {returncode}"
                    )
                    self._router.route(
                        head,
                        FinishEvent(returncode, message, interrupted=head.cancel_requested),
                    )

        if restart:
            log.info(
                "Session '%s' exited (code %s) after an interrupt; restarting",
                self.name,
                returncode,
            )
            if await self._restart():
                return False

        self._alive = False
        if self._queue:
            log.warning("Session '%s' exited (code %s) with work pending", self.name, returncode)
        else:
            log.info("Session '%s' exited (code %s)", self.name, returncode)
        verb = "closed" if self._closing else "exited"
        self._fail_pending(f"session '{self.name}' {verb} before execution started")
        return True

    def _fail_pending(self, detail: str) -> None:
        stranded = list(self._queue)
        self._queue.clear()
        while not self._inbox.empty():
            kind, payload = self._inbox.get_nowait()
            if kind == "submit":
                execution, accepted = payload
                stranded.append(execution)
                self._tracker.track(execution)
                if not accepted.done():
                    accepted.set_result(None)
            elif kind == "cancel":
                _exec_id, reply = payload
                if not reply.done():
                    reply.set_result(CancelOutcome.NOT_FOUND)
        for execution in stranded:
            if not execution.finalized:
                self._router.route(
                    execution, FinishEvent(None, detail), override=(Status.ERROR, detail)
                )
        self._detach_scanner()

    async def _write(self, text: str) -> None:
        assert self.process and self.process.stdin
        self.process.stdin.write(text.encode())
        await self.process.stdin.drain()
