"""Tests for RunningProgram (single-program lifecycle)."""

from __future__ import annotations

import asyncio
import sys
import time

import pytest

from evalbox.core.errors import StartError
from evalbox.core.models import CANCELED_MESSAGE, Program, RuntimeId, Status
from evalbox.runner.execution import RunningProgram
from evalbox.runner.rlimits import LimitOutcome, LimitResult, MemoryLimiter
from evalbox.runners.python_runner import PythonRunner
from evalbox.services.result_mapper import map_outcome

posix_only = pytest.mark.skipif(sys.platform == "win32", reason="process groups and signals are POSIX")
linux_only = pytest.mark.skipif(not sys.platform.startswith("linux"), reason="needs /proc and prlimit")


def prog(code: str, timeout: float = 10.0) -> Program:
    return Program(runtime=RuntimeId.PYTHON3, code=code, timeout_secs=timeout)


async def start(p: Program, runner: PythonRunner, **kw) -> RunningProgram:
    kw.setdefault("kill_grace_secs", 0.5)
    return await RunningProgram.start(p, runner, **kw)


class RecordingLimiter(MemoryLimiter):
    def __init__(self, outcome: LimitOutcome):
        self.outcome = outcome
        self.calls = []

    def apply(self, pid: int, max_bytes: int) -> LimitResult:
        self.calls.append((pid, max_bytes))
        return LimitResult(self.outcome, "recorded")


class TestTermination:
    """Classification of how a program finished."""

    async def test_clean_exit_is_done(self, runner: PythonRunner) -> None:
        rp = await start(prog("print('hello, world')"), runner)
        assert rp.status() is Status.RUNNING

        assert await rp.wait() is Status.DONE
        out = rp.outcome()
        assert out.exit_code == 0
        assert out.compiler_exit_code == 0
        assert out.stdout == "hello, world\n"
        assert out.error is None
        assert not out.timed_out

    async def test_sleep_past_deadline_is_timeout(self, runner: PythonRunner) -> None:
        t0 = time.monotonic()
        rp = await start(prog("import time\ntime.sleep(10)", timeout=1), runner)

        assert await rp.wait() is Status.TIMEOUT
        assert time.monotonic() - t0 < 5
        out = rp.outcome()
        assert out.timed_out
        assert out.exit_code is None
        assert out.compiler_exit_code is None
        assert map_outcome(out).compiled is None
        assert "deadline exceeded" in out.error

    async def test_nonzero_exit_is_error_with_exit_code(self, runner: PythonRunner) -> None:
        rp = await start(prog("import sys\nsys.exit(3)"), runner)

        assert await rp.wait() is Status.ERROR
        out = rp.outcome()
        assert out.exit_code == 3
        assert out.error is None
        assert not out.timed_out

    async def test_uncaught_exception_reports_stderr(self, runner: PythonRunner) -> None:
        rp = await start(prog("raise ValueError('boom')"), runner)

        assert await rp.wait() is Status.ERROR
        out = rp.outcome()
        assert out.exit_code == 1
        assert "ValueError: boom" in out.stderr

    @posix_only
    async def test_killed_by_signal_is_error_without_exit_code(self, runner: PythonRunner) -> None:
        rp = await start(prog("import os, signal\nos.kill(os.getpid(), signal.SIGKILL)"), runner)

        assert await rp.wait() is Status.ERROR
        out = rp.outcome()
        assert out.exit_code is None
        assert "SIGKILL" in out.error
        assert not out.timed_out
        assert out.compiler_exit_code is None
        assert map_outcome(out).compiled is None

    async def test_empty_code_is_a_noop(self, runner: PythonRunner) -> None:
        rp = await start(prog(""), runner)
        assert await rp.wait() is Status.DONE

    async def test_code_is_passed_inline_verbatim(self, runner: PythonRunner) -> None:
        code = "s = \"it's \\\"quoted\\\"\"\nprint(s)\nprint('line two')"
        rp = await start(prog(code), runner)

        assert await rp.wait() is Status.DONE
        assert rp.outcome().stdout == "it's \"quoted\"\nline two\n"


class TestStart:
    async def test_missing_interpreter_raises_start_error(self) -> None:
        runner = PythonRunner(python_bin="/nonexistent/evalbox-python")
        with pytest.raises(StartError, match="failed to start"):
            await start(prog("print(1)"), runner)

    async def test_null_byte_in_code_raises_start_error(self, runner: PythonRunner) -> None:
        with pytest.raises(StartError):
            await start(prog("print(1)\x00"), runner)

    async def test_memory_limit_is_requested_for_started_pid(self, runner: PythonRunner) -> None:
        limiter = RecordingLimiter(LimitOutcome.OK)
        rp = await start(prog("pass"), runner, limiter=limiter, max_memory_bytes=1 << 30)

        await rp.wait()
        assert limiter.calls == [(rp.pid, 1 << 30)]

    async def test_unsupported_memory_limit_does_not_fail_program(self, runner: PythonRunner) -> None:
        limiter = RecordingLimiter(LimitOutcome.UNSUPPORTED)
        rp = await start(prog("print('still runs')"), runner, limiter=limiter, max_memory_bytes=1 << 30)

        assert await rp.wait() is Status.DONE
        assert rp.outcome().stdout == "still runs\n"

    async def test_zero_memory_limit_skips_limiter(self, runner: PythonRunner) -> None:
        limiter = RecordingLimiter(LimitOutcome.ERROR)
        rp = await start(prog("pass"), runner, limiter=limiter, max_memory_bytes=0)

        assert await rp.wait() is Status.DONE
        assert limiter.calls == []

    @linux_only
    async def test_memory_ceiling_stops_large_allocation(self, runner: PythonRunner) -> None:
        code = "import time\ntime.sleep(0.2)\nb = bytearray(2 * 1024 ** 3)\nprint('allocated')"
        rp = await start(prog(code), runner, max_memory_bytes=256 * 1024 * 1024)

        assert await rp.wait() is Status.ERROR
        out = rp.outcome()
        assert "MemoryError" in out.stderr
        assert "allocated" not in out.stdout


class TestWaitAndCancel:
    async def test_many_waiters_observe_same_status(self, runner: PythonRunner) -> None:
        rp = await start(prog("import time\ntime.sleep(0.3)"), runner)

        statuses = await asyncio.gather(rp.wait(), rp.wait(), rp.wait())
        assert statuses == [Status.DONE] * 3
        assert rp.status() is Status.DONE

    async def test_canceled_waiter_does_not_stop_program(self, runner: PythonRunner) -> None:
        rp = await start(prog("import time\ntime.sleep(0.5)\nprint('finished')"), runner)

        waiter = asyncio.create_task(rp.wait())
        await asyncio.sleep(0.1)
        waiter.cancel()
        with pytest.raises(asyncio.CancelledError):
            await waiter

        assert await rp.wait() is Status.DONE
        assert rp.outcome().stdout == "finished\n"

    async def test_cancel_terminates_and_settles_error(self, runner: PythonRunner) -> None:
        rp = await start(prog("import time\nprint('up', flush=True)\ntime.sleep(30)", timeout=60), runner)
        await asyncio.sleep(0.5)

        t0 = time.monotonic()
        assert await rp.cancel() is Status.ERROR
        assert time.monotonic() - t0 < 5
        out = rp.outcome()
        assert out.canceled
        assert out.error == CANCELED_MESSAGE
        assert not out.timed_out

    async def test_outcome_before_settled_raises(self, runner: PythonRunner) -> None:
        rp = await start(prog("import time\ntime.sleep(5)"), runner)
        try:
            with pytest.raises(RuntimeError, match="still running"):
                rp.outcome()
        finally:
            await rp.cancel()

    async def test_output_is_capped(self, runner: PythonRunner) -> None:
        rp = await start(prog("print('x' * 100000)"), runner, max_output_bytes=10)

        assert await rp.wait() is Status.DONE
        assert rp.outcome().stdout == "x" * 10


@posix_only
class TestProcessTree:
    async def test_sigterm_ignoring_program_is_force_killed(self, runner: PythonRunner) -> None:
        code = (
            "import signal, time\n"
            "signal.signal(signal.SIGTERM, signal.SIG_IGN)\n"
            "time.sleep(30)\n"
        )
        t0 = time.monotonic()
        rp = await start(prog(code, timeout=0.5), runner, kill_grace_secs=0.5)

        assert await rp.wait() is Status.TIMEOUT
        assert time.monotonic() - t0 < 10

    async def test_clean_exit_on_sigterm_after_deadline_is_still_timeout(self, runner: PythonRunner) -> None:
        code = (
            "import signal, sys, time\n"
            "signal.signal(signal.SIGTERM, lambda *a: sys.exit(0))\n"
            "time.sleep(10)\n"
        )
        rp = await start(prog(code, timeout=1), runner, kill_grace_secs=0.5)

        assert await rp.wait() is Status.TIMEOUT
        out = rp.outcome()
        assert out.timed_out
        assert out.exit_code is None
        assert "deadline exceeded" in out.error

        result = map_outcome(out)
        assert result.success is False
        assert result.timeout is True
        assert result.compiled is None

    @linux_only
    async def test_clean_exit_sweeps_leftover_descendants(self, runner: PythonRunner, wait_dead) -> None:
        code = (
            "import subprocess, sys\n"
            "c = subprocess.Popen([sys.executable, '-c', 'import time; time.sleep(60)'],\n"
            "                     stdout=subprocess.DEVNULL, stderr=subprocess.DEVNULL)\n"
            "print(c.pid, flush=True)\n"
        )
        rp = await start(prog(code, timeout=10), runner)

        assert await rp.wait() is Status.DONE
        assert wait_dead(int(rp.outcome().stdout.split()[0]))

    @linux_only
    async def test_timeout_kills_descendants(self, runner: PythonRunner, wait_dead) -> None:
        code = (
            "import subprocess, sys, time\n"
            "c = subprocess.Popen([sys.executable, '-c', 'import time; time.sleep(60)'])\n"
            "print(c.pid, flush=True)\n"
            "time.sleep(60)\n"
        )
        rp = await start(prog(code, timeout=1.5), runner)

        assert await rp.wait() is Status.TIMEOUT
        grandchild = int(rp.outcome().stdout.split()[0])
        assert wait_dead(grandchild)
        assert wait_dead(rp.pid)
