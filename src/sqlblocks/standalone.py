"""One-off executions: a fresh engine process per query.

The script is fed on stdin, stdout goes straight to the result file and
stderr to a sibling file.  There is no marker: the process exit is the
completion signal, and its return code drives classification.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import signal

from sqlblocks.completion import CompletionRouter
from sqlblocks.config import Settings
from sqlblocks.events import EXECUTION_STARTED, PROCESS_STARTED, Notifier
from sqlblocks.models import CancelOutcome, Execution, FinishEvent, Status
from sqlblocks.status import StatusTracker

log = logging.getLogger(__name__)


class StandaloneRunner:
    """Spawns and supervises one-off engine processes."""

    def __init__(
        self,
        settings: Settings,
        *,
        router: CompletionRouter,
        tracker: StatusTracker,
        notifier: Notifier,
    ) -> None:
        self._settings = settings
        self._router = router
        self._tracker = tracker
        self._notifier = notifier
        self._running: dict[str, tuple[Execution, asyncio.Task[None]]] = {}

    def argv(self, database: str | None = None) -> list[str]:
        engine = self._settings.engine
        argv = [engine.executable, *engine.args]
        database = database or engine.database
        if database:
            argv.append(database)
        return argv

    async def start(self, execution: Execution, *, database: str | None = None) -> None:
        """Spawn the process for *execution*; completion is routed in the background."""
        assert execution.stderr_path is not None
        argv = self.argv(database)
        self._tracker.track(execution)
        try:
            with (
                open(execution.result_path, "wb") as out,
                open(execution.stderr_path, "wb") as err,
            ):
                process = await asyncio.create_subprocess_exec(
                    *argv,
                    stdin=asyncio.subprocess.PIPE,
                    stdout=out,
                    stderr=err,
                    start_new_session=True,
                )
        except OSError as e:
            log.warning("Could not start %s: %s", argv[0], e)
            detail = f"could not start {argv[0]}: {e}"
            self._router.route(
                execution, FinishEvent(None, detail), override=(Status.ERROR, detail)
            )
            return
        execution.process = process
        self._notifier.emit(
            PROCESS_STARTED,
            execution.exec_id,
            "started",
            session=None,
            extra={"pid": process.pid, "argv": argv},
        )
        self._tracker.set(execution, Status.EXECUTING)
        self._notifier.emit(
            EXECUTION_STARTED, execution.exec_id, str(Status.EXECUTING), session=None
        )
        task = asyncio.create_task(self._drive(execution, process))
        self._running[execution.exec_id] = (execution, task)

    async def _drive(self, execution: Execution, process: asyncio.subprocess.Process) -> None:
        try:
            await process.communicate(execution.command_text.encode())
        except asyncio.CancelledError:
            with contextlib.suppress(ProcessLookupError):
                process.kill()
            await process.wait()
            execution.cancel_requested = True
            self._finish(execution, process)
            raise
        self._finish(execution, process)

    def _finish(self, execution: Execution, process: asyncio.subprocess.Process) -> None:
        self._running.pop(execution.exec_id, None)
        code = process.returncode
        log.debug("One-off %s exited with code %s", execution.exec_id, code)
        self._router.route(
            execution,
            FinishEvent(
                code,
                f"process exited with code {code}",
                interrupted=execution.cancel_requested,
            ),
        )

    def cancel(self, exec_id: str) -> CancelOutcome:
        """Interrupt a running one-off process with SIGINT."""
        entry = self._running.get(exec_id)
        if entry is None:
            return CancelOutcome.NOT_FOUND
        execution, _task = entry
        process = execution.process
        if process is None or process.returncode is not None:
            return CancelOutcome.NOT_FOUND
        execution.cancel_requested = True
        with contextlib.suppress(ProcessLookupError):
            process.send_signal(signal.SIGINT)
        log.info("Interrupted one-off %s", exec_id)
        return CancelOutcome.INTERRUPTED

    def kill(self, exec_id: str) -> bool:
        entry = self._running.get(exec_id)
        if entry is None:
            return False
        execution, _task = entry
        execution.cancel_requested = True
        if execution.process is not None:
            with contextlib.suppress(ProcessLookupError):
                execution.process.kill()
        return True

    async def close(self) -> None:
        tasks = [task for _execution, task in self._running.values()]
        for task in tasks:
            task.cancel()
        for task in tasks:
            with contextlib.suppress(asyncio.CancelledError):
                await task
