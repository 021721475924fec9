from __future__ import annotations

import asyncio
import itertools
from typing import List, Optional, Sequence

import structlog

from ..core.admission import admit
from ..core.errors import AdmissionError, StartError, UnknownRuntimeError
from ..core.schemas import ProgramProto, ProgramResult
from ..core.settings import Settings
from ..runner.execution import RunningProgram
from ..runner.rlimits import MemoryLimiter, get_memory_limiter
from ..runners.base import RunnerRegistry
from .result_mapper import canceled_placeholder, map_outcome, rejected, start_failed


class BatchDispatcher:
    """
    Runs a batch: admission + concurrency ceiling + one RunningProgram per slot.

    Results are written by index, so the returned list is aligned with the
    submitted programs whatever order they finish in. A failure in one slot
    never touches another.
    """

    def __init__(
        self,
        registry: RunnerRegistry,
        settings: Settings,
        *,
        logger=None,
        semaphore: Optional[asyncio.Semaphore] = None,
        limiter: Optional[MemoryLimiter] = None,
    ):
        self.registry = registry
        self.settings = settings
        self._log = logger or structlog.get_logger("evalbox")
        # shared across batches when set (concurrency_scope == "global")
        self._semaphore = semaphore
        self._limiter = limiter or get_memory_limiter()
        self._trace_ids = itertools.count(1)

    async def run_batch(
        self,
        raws: Sequence[ProgramProto],
        *,
        concurrency_limit: Optional[int] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> List[ProgramResult]:
        """
        Run every program and return one result per input, in input order.

        `concurrency_limit` sizes this batch's own semaphore. It is ignored
        when the dispatcher was built with a shared semaphore
        (`concurrency_scope: global`); that semaphore's size applies instead.

        Setting `cancel_event` stops the batch: running programs are killed,
        queued ones never start, and every slot still gets a result.
        """
        results: List[Optional[ProgramResult]] = [None] * len(raws)
        if not raws:
            return []

        sem = self._semaphore or asyncio.Semaphore(
            concurrency_limit or self.settings.max_concurrent_evaluations
        )
        cancel_event = cancel_event or asyncio.Event()
        log = self._log.bind(batch_size=len(raws))
        log.info("batch_started")

        tasks = [
            asyncio.create_task(self._run_one(i, raw, sem, cancel_event, results))
            for i, raw in enumerate(raws)
        ]
        try:
            outcomes = await asyncio.gather(*tasks, return_exceptions=True)
        except asyncio.CancelledError:
            for t in tasks:
                t.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            log.warning("batch_aborted")
            raise

        for i, exc in enumerate(outcomes):
            if isinstance(exc, BaseException):
                # bug in a slot, not in the program; keep the batch alive
                log.error("program_slot_crashed", index=i, error=repr(exc))
                results[i] = rejected(f"internal error: {exc}")

        if cancel_event.is_set():
            log.info("batch_canceled")
        log.info("batch_finished", ok=sum(1 for r in results if r is not None and r.success))
        return [r if r is not None else canceled_placeholder() for r in results]

    async def _run_one(
        self,
        index: int,
        raw: ProgramProto,
        sem: asyncio.Semaphore,
        cancel_event: asyncio.Event,
        results: List[Optional[ProgramResult]],
    ) -> None:
        log = self._log.bind(trace_id=next(self._trace_ids), index=index, runtime=raw.runtime)

        try:
            program = admit(raw, self.settings.max_timeout_secs)
            runner = self.registry.get(program.runtime)
        except (AdmissionError, UnknownRuntimeError) as e:
            log.info("program_rejected", error=str(e))
            results[index] = rejected(str(e))
            return

        if not await _acquire(sem, cancel_event):
            results[index] = canceled_placeholder()
            return
        try:
            try:
                rp = await RunningProgram.start(
                    program,
                    runner,
                    limiter=self._limiter,
                    max_memory_bytes=self.settings.max_memory_bytes,
                    kill_grace_secs=self.settings.kill_grace_secs,
                    max_output_bytes=self.settings.max_output_bytes,
                    logger=log,
                )
            except StartError as e:
                results[index] = start_failed(str(e))
                return

            try:
                await _wait_or_cancel(rp, cancel_event)
            except asyncio.CancelledError:
                await rp.cancel()
                results[index] = map_outcome(rp.outcome())
                raise
            results[index] = map_outcome(rp.outcome())
        finally:
            sem.release()


async def _acquire(sem: asyncio.Semaphore, cancel_event: asyncio.Event) -> bool:
    """Take a slot, unless the batch is canceled first."""
    if cancel_event.is_set():
        return False
    acquire = asyncio.ensure_future(sem.acquire())
    canceled = asyncio.ensure_future(cancel_event.wait())
    try:
        await asyncio.wait({acquire, canceled}, return_when=asyncio.FIRST_COMPLETED)
    except asyncio.CancelledError:
        if acquire.done() and not acquire.cancelled():
            sem.release()
        else:
            acquire.cancel()
        raise
    finally:
        canceled.cancel()

    if not acquire.done():
        acquire.cancel()
        return False
    if cancel_event.is_set():
        sem.release()
        return False
    return True


async def _wait_or_cancel(rp: RunningProgram, cancel_event: asyncio.Event) -> None:
    waiter = asyncio.ensure_future(rp.wait())
    canceled = asyncio.ensure_future(cancel_event.wait())
    try:
        await asyncio.wait({waiter, canceled}, return_when=asyncio.FIRST_COMPLETED)
    finally:
        canceled.cancel()
        if not waiter.done():
            waiter.cancel()
    if not rp.status().is_terminal:
        await rp.cancel()
