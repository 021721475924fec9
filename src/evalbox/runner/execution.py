"""
Execution of a single program: spawn, deadline, forced termination, status.

A `RunningProgram` moves from RUNNING to exactly one of DONE / ERROR / TIMEOUT.
The transition is made once, by the background watcher task that owns the
child's exit wait; every reader sees the settled value afterwards.
"""
from __future__ import annotations

import asyncio
import os
import signal
import threading
from typing import List, Optional

import structlog

from ..core.errors import StartError
from ..core.models import CANCELED_MESSAGE, Program, RunOutcome, Status
from ..runners.base import Runner
from .rlimits import MemoryLimiter, get_memory_limiter

_POSIX = os.name == "posix"
_SIGKILL = getattr(signal, "SIGKILL", signal.SIGTERM)
_READ_CHUNK = 64 * 1024


def _describe_signal(rc: int) -> str:
    try:
        return signal.Signals(-rc).name
    except ValueError:
        return str(-rc)


class RunningProgram:
    def __init__(
        self,
        program: Program,
        proc: asyncio.subprocess.Process,
        *,
        kill_grace_secs: float,
        max_output_bytes: int,
        logger,
    ):
        loop = asyncio.get_running_loop()
        self.program = program
        self._proc = proc
        self._kill_grace = kill_grace_secs
        self._max_output = max_output_bytes
        self._log = logger

        self._started = loop.time()
        self._deadline = self._started + program.timeout_secs

        self._lock = threading.Lock()
        self._status = Status.RUNNING
        self._outcome: Optional[RunOutcome] = None

        self._stdout = bytearray()
        self._stderr = bytearray()
        self._cancel_requested = asyncio.Event()
        self._deadline_hit = False
        self._canceled = False
        self._io_error: Optional[str] = None

        self._task = asyncio.create_task(self._watch(), name=f"evalbox-watch-{proc.pid}")

    # ------------ lifecycle ------------

    @classmethod
    async def start(
        cls,
        program: Program,
        runner: Runner,
        *,
        limiter: Optional[MemoryLimiter] = None,
        max_memory_bytes: int = 0,
        kill_grace_secs: float = 2.0,
        max_output_bytes: int = 1024 * 1024,
        logger=None,
    ) -> "RunningProgram":
        """
        Spawn `program` and return its running record.

        Raises StartError if the child could not be created; in that case no
        record exists and nothing is left running.
        """
        log = logger or structlog.get_logger("evalbox")
        cmd = runner.command(program.code)
        try:
            proc = await asyncio.create_subprocess_exec(
                *cmd,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                # own process group, so the whole tree can be signalled
                start_new_session=_POSIX,
            )
        except (OSError, ValueError) as e:
            log.error("program_start_failed", cmd=cmd[0], error=str(e))
            raise StartError(f"failed to start {cmd[0]}: {e}") from e

        if max_memory_bytes > 0:
            res = (limiter or get_memory_limiter()).apply(proc.pid, max_memory_bytes)
            if not res.ok:
                log.warning(
                    "memory_limit_not_applied",
                    pid=proc.pid,
                    outcome=res.outcome.value,
                    detail=res.detail,
                )

        log.info("program_started", pid=proc.pid, timeout_s=program.timeout_secs)
        return cls(
            program,
            proc,
            kill_grace_secs=kill_grace_secs,
            max_output_bytes=max_output_bytes,
            logger=log,
        )

    @property
    def pid(self) -> int:
        return self._proc.pid

    def status(self) -> Status:
        with self._lock:
            return self._status

    async def wait(self) -> Status:
        """Block until the program is settled. Any number of callers may wait."""
        try:
            await asyncio.shield(self._task)
        except asyncio.CancelledError:
            if not self._task.done():
                raise
        return self.status()

    async def cancel(self) -> Status:
        """Terminate the process tree and settle as canceled (ERROR)."""
        self._cancel_requested.set()
        return await self.wait()

    def outcome(self) -> RunOutcome:
        with self._lock:
            if self._outcome is None:
                raise RuntimeError("program is still running")
            return self._outcome

    # ------------ watcher ------------

    async def _watch(self) -> None:
        readers = [
            asyncio.create_task(self._drain(self._proc.stdout, self._stdout, "stdout")),
            asyncio.create_task(self._drain(self._proc.stderr, self._stderr, "stderr")),
        ]
        try:
            await self._wait_exit_or_interrupt()
            await self._terminate_tree()
            await self._collect(readers)
        except asyncio.CancelledError:
            # the watcher itself was torn down (loop shutdown): still no leak
            self._canceled = True
            await self._terminate_tree()
            await self._collect(readers)
            self._settle()
            raise
        self._settle()

    async def _wait_exit_or_interrupt(self) -> None:
        exit_wait = asyncio.ensure_future(self._proc.wait())
        cancel_wait = asyncio.ensure_future(self._cancel_requested.wait())
        try:
            remaining = max(0.0, self._deadline - asyncio.get_running_loop().time())
            await asyncio.wait(
                {exit_wait, cancel_wait},
                timeout=remaining,
                return_when=asyncio.FIRST_COMPLETED,
            )
        finally:
            for f in (exit_wait, cancel_wait):
                if not f.done():
                    f.cancel()

        if self._proc.returncode is not None:
            return
        if self._cancel_requested.is_set():
            self._canceled = True
            self._log.info("program_canceled", pid=self.pid)
        else:
            self._deadline_hit = True
            self._log.info("program_deadline_exceeded", pid=self.pid, timeout_s=self.program.timeout_secs)

    async def _wait_exit(self, timeout: float) -> Optional[int]:
        try:
            await asyncio.wait_for(self._proc.wait(), timeout)
        except asyncio.TimeoutError:
            pass
        return self._proc.returncode

    async def _terminate_tree(self) -> None:
        """SIGTERM the group, SIGKILL it after the grace period, then sweep leftovers."""
        if self._proc.returncode is None:
            self._signal_tree(force=False)
            if await self._wait_exit(self._kill_grace) is None:
                self._log.warning("program_kill_escalated", pid=self.pid, grace_s=self._kill_grace)
                self._signal_tree(force=True)
                if await self._wait_exit(self._kill_grace + 1.0) is None:
                    self._log.error("program_not_reaped", pid=self.pid)
        # Descendants may outlive the interpreter; the group goes with it.
        # The kernel keeps a pgid reserved while the group has members, so
        # this can only hit a stranger if the group emptied and its id was
        # recycled as a new session in the moment since the reap. Accepted.
        self._signal_tree(force=True)

    def _signal_tree(self, force: bool) -> None:
        try:
            if _POSIX:
                os.killpg(self._proc.pid, _SIGKILL if force else signal.SIGTERM)
            elif self._proc.returncode is None:
                if force:
                    self._proc.kill()
                else:
                    self._proc.terminate()
        except ProcessLookupError:
            pass
        except PermissionError as e:
            self._log.warning("program_signal_failed", pid=self.pid, error=str(e))

    async def _drain(self, stream: asyncio.StreamReader, buf: bytearray, name: str) -> None:
        truncated = False
        while True:
            chunk = await stream.read(_READ_CHUNK)
            if not chunk:
                return
            room = self._max_output - len(buf)
            if room > 0:
                buf.extend(chunk[:room])
            if len(chunk) > room and not truncated:
                truncated = True
                self._log.warning("output_truncated", pid=self.pid, stream=name, limit=self._max_output)

    async def _collect(self, readers: List[asyncio.Task]) -> None:
        done, pending = await asyncio.wait(readers, timeout=self._kill_grace + 1.0)
        for t in pending:
            t.cancel()
        if pending:
            self._log.warning("output_pipes_left_open", pid=self.pid)
            await asyncio.gather(*pending, return_exceptions=True)
        for t in done:
            if not t.cancelled() and t.exception() is not None:
                self._io_error = f"reading output: {t.exception()}"
                self._log.error("output_read_failed", pid=self.pid, error=self._io_error)

    # ------------ classification ------------

    def _settle(self) -> None:
        rc = self._proc.returncode
        exit_code: Optional[int] = None
        error: Optional[str] = None

        # a program terminated at the deadline is a timeout however it exited
        if self._canceled:
            status, error = Status.ERROR, CANCELED_MESSAGE
        elif self._deadline_hit:
            status = Status.TIMEOUT
            error = f"deadline exceeded after {self.program.timeout_secs:g}s"
        elif rc == 0 and self._io_error is None:
            status, exit_code = Status.DONE, 0
        else:
            status = Status.ERROR
            if self._io_error is not None:
                error = self._io_error
            elif rc is None:
                error = "process did not exit"
            elif rc < 0:
                error = f"terminated by signal {_describe_signal(rc)}"
            if rc is not None and rc >= 0:
                exit_code = rc

        # killed or timed out: the runtime's own verdict is unknown
        compiler_exit_code: Optional[int] = None
        if status is not Status.TIMEOUT and rc is not None and rc >= 0:
            compiler_exit_code = 0

        outcome = RunOutcome(
            status=status,
            compiler_exit_code=compiler_exit_code,
            exit_code=exit_code,
            stdout=self._stdout.decode("utf-8", errors="replace"),
            stderr=self._stderr.decode("utf-8", errors="replace"),
            error=error,
            timed_out=status is Status.TIMEOUT,
            canceled=self._canceled,
            duration_s=asyncio.get_running_loop().time() - self._started,
        )
        with self._lock:
            if self._status is not Status.RUNNING:
                return
            self._outcome = outcome
            self._status = status

        self._log.info(
            "program_finished",
            pid=self.pid,
            status=status.value,
            exit_code=exit_code,
            duration_s=round(outcome.duration_s, 3),
        )


async def start(program: Program, runner: Runner, **kwargs) -> RunningProgram:
    return await RunningProgram.start(program, runner, **kwargs)
