"""Scheduler dispatching matrix jobs with an optional concurrency cap."""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from typing import Awaitable, Callable, Iterable

from matrixci.models import FailureReason, JobOutcome, JobSpec

logger = logging.getLogger(__name__)

JobRunner = Callable[[JobSpec], Awaitable[JobOutcome]]


class JobScheduler:
    """Queue-based scheduler; every job gets exactly one outcome slot.

    Fail-open by default: a failing job never stops its siblings. With
    ``fail_fast`` the first failure of a required job stops dispatch and
    cancels running jobs.
    """

    def __init__(self, *, max_parallel: int | None = None, fail_fast: bool = False) -> None:
        if max_parallel is not None and max_parallel < 1:
            raise ValueError(f"max_parallel must be >= 1 (got {max_parallel}).")
        self._max_parallel = max_parallel
        self._fail_fast = fail_fast

    async def run(
        self,
        jobs: Iterable[JobSpec],
        runner: JobRunner,
        *,
        shutdown_event: asyncio.Event | None = None,
    ) -> list[JobOutcome]:
        job_list = list(jobs)
        outcomes: list[JobOutcome | None] = [None] * len(job_list)
        pending: deque[int] = deque(range(len(job_list)))
        runner_tasks: dict[int, asyncio.Task[None]] = {}
        slot_available = asyncio.Event()
        active = 0
        abandoned = False

        def _has_slot() -> bool:
            return self._max_parallel is None or active < self._max_parallel

        def _abandon(trigger: JobOutcome) -> None:
            nonlocal abandoned
            abandoned = True
            logger.warning("Fail-fast: job %s failed; cancelling remaining jobs.", trigger.job_id)
            for index, task in runner_tasks.items():
                if outcomes[index] is None and not task.done():
                    task.cancel()
            slot_available.set()

        async def _wait_for_events() -> None:
            waiters: list[asyncio.Task[object]] = [asyncio.create_task(slot_available.wait())]
            try:
                if shutdown_event:
                    waiters.append(asyncio.create_task(shutdown_event.wait()))
                await asyncio.wait(waiters, return_when=asyncio.FIRST_COMPLETED)
            finally:
                for waiter in waiters:
                    if not waiter.done():
                        waiter.cancel()
                await asyncio.gather(*waiters, return_exceptions=True)

        async def _runner_wrapper(index: int, job: JobSpec) -> None:
            nonlocal active
            try:
                try:
                    outcome = await runner(job)
                except asyncio.CancelledError:
                    if not abandoned:
                        raise
                    outcome = JobOutcome.failure(
                        job, reason=FailureReason.cancelled, error="cancelled by fail-fast"
                    )
                except Exception as exc:  # noqa: BLE001
                    logger.exception("Runner for job %s raised unexpectedly.", job.job_id)
                    outcome = JobOutcome.failure(
                        job, reason=FailureReason.unexpected_exception, error=str(exc)
                    )
                outcomes[index] = outcome
                if self._fail_fast and outcome.blocks_run and not abandoned:
                    _abandon(outcome)
            finally:
                active -= 1
                slot_available.set()

        def _launch(index: int) -> None:
            nonlocal active
            active += 1
            runner_tasks[index] = asyncio.create_task(_runner_wrapper(index, job_list[index]))

        try:
            while pending:
                if abandoned:
                    break
                if shutdown_event and shutdown_event.is_set():
                    logger.info("Shutdown requested; %d job(s) will not be dispatched.", len(pending))
                    break
                if not _has_slot():
                    slot_available.clear()
                    await _wait_for_events()
                    continue
                _launch(pending.popleft())
                # Let the new runner start before dispatching the next one.
                await asyncio.sleep(0)
            if runner_tasks:
                await asyncio.gather(*runner_tasks.values(), return_exceptions=True)
        except asyncio.CancelledError:
            for task in runner_tasks.values():
                task.cancel()
            await asyncio.gather(*runner_tasks.values(), return_exceptions=True)
            raise

        reason = "cancelled by fail-fast" if abandoned else "not dispatched before shutdown"
        return [
            outcome
            if outcome is not None
            else JobOutcome.failure(job_list[index], reason=FailureReason.cancelled, error=reason)
            for index, outcome in enumerate(outcomes)
        ]


__all__ = ["JobRunner", "JobScheduler"]
