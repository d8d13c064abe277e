"""Sequential execution of one job's steps in an isolated environment."""

from __future__ import annotations

import asyncio
import logging
import os
import shlex
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Mapping

from matrixci.errors import EnvironmentFailure, StepFailure
from matrixci.models import FailureReason, JobOutcome, JobSpec, StepResult, StepSpec
from matrixci.state import JobPaths
from matrixci.steps import start_step, terminate_step, wait_step

logger = logging.getLogger(__name__)

StepCallback = Callable[[JobSpec, int, StepSpec], None]


@dataclass
class _Progress:
    index: int | None = None


class JobExecutor:
    """Runs a job's steps one at a time; the first failing step ends the job.

    Every job gets its own environment dict and its own log directory under
    ``output_root``. Failures are returned as a failed :class:`JobOutcome`;
    only cancellation propagates.
    """

    def __init__(
        self,
        output_root: Path,
        *,
        inherit_env: bool = True,
        on_step: StepCallback | None = None,
        term_timeout_s: float = 5.0,
    ) -> None:
        self._output_root = output_root
        self._inherit_env = inherit_env
        self._on_step = on_step
        self._term_timeout_s = term_timeout_s
        self._interrupted: dict[str, JobOutcome] = {}

    def paths_for(self, job: JobSpec) -> JobPaths:
        return self.paths_for_id(job.job_id)

    def paths_for_id(self, job_id: str) -> JobPaths:
        return JobPaths(self._output_root / job_id)

    def pop_interrupted(self, job: JobSpec) -> JobOutcome | None:
        """Partial outcome of a job whose execution was cancelled, if any."""
        return self._interrupted.pop(job.job_id, None)

    async def execute(self, job: JobSpec) -> JobOutcome:
        paths = self.paths_for(job)
        env = self._job_env(job)
        results: list[StepResult] = []
        progress = _Progress()
        started = time.monotonic()
        try:
            if job.timeout_s is not None:
                await asyncio.wait_for(self._run_steps(job, env, paths, results, progress), timeout=job.timeout_s)
            else:
                await self._run_steps(job, env, paths, results, progress)
        except StepFailure as exc:
            logger.info("Job %s failed at step %d: %s", job.job_id, exc.step_index, exc)
            return JobOutcome.failure(
                job,
                reason=exc.reason,
                error=str(exc),
                failed_step=exc.step_index,
                exit_code=exc.exit_code,
                duration_s=time.monotonic() - started,
                steps=tuple(results),
            )
        except asyncio.TimeoutError:
            logger.info("Job %s timed out after %.1fs.", job.job_id, job.timeout_s)
            return JobOutcome.failure(
                job,
                reason=FailureReason.timed_out,
                error=f"job exceeded timeout of {job.timeout_s}s",
                failed_step=progress.index,
                duration_s=time.monotonic() - started,
                steps=tuple(results),
            )
        except asyncio.CancelledError:
            self._interrupted[job.job_id] = JobOutcome.failure(
                job,
                reason=FailureReason.cancelled,
                error="cancelled",
                failed_step=progress.index,
                duration_s=time.monotonic() - started,
                steps=tuple(results),
            )
            raise
        return JobOutcome.success(job, duration_s=time.monotonic() - started, steps=tuple(results))

    async def _run_steps(
        self,
        job: JobSpec,
        env: Mapping[str, str],
        paths: JobPaths,
        results: list[StepResult],
        progress: _Progress,
    ) -> None:
        for index, step in enumerate(job.steps):
            progress.index = index
            if self._on_step is not None:
                self._on_step(job, index, step)
            await self._run_step(job, index, step, env, paths, results)

    async def _run_step(
        self,
        job: JobSpec,
        index: int,
        step: StepSpec,
        env: Mapping[str, str],
        paths: JobPaths,
        results: list[StepResult],
    ) -> None:
        step_env = {**env, **step.env}
        logger.debug("Job %s step %d starting: %s", job.job_id, index, shlex.join(step.argv))
        spawn_started = time.monotonic()
        try:
            proc = await start_step(
                step.argv,
                cwd=step.cwd,
                env=step_env,
                stdout_path=paths.step_stdout_path(index, step.name),
                stderr_path=paths.step_stderr_path(index, step.name),
            )
        except OSError as exc:
            results.append(
                StepResult(
                    index=index,
                    name=step.name,
                    exit_code=None,
                    duration_s=time.monotonic() - spawn_started,
                    error=str(exc),
                )
            )
            raise EnvironmentFailure(
                f"step {index} ({step.name}) could not start: {exc}", step_index=index
            ) from exc
        try:
            step_exit = await wait_step(proc)
        except asyncio.CancelledError:
            await terminate_step(proc, term_timeout_s=self._term_timeout_s)
            results.append(
                StepResult(
                    index=index,
                    name=step.name,
                    exit_code=proc.process.returncode,
                    duration_s=time.monotonic() - proc.started,
                    terminated=True,
                )
            )
            raise
        results.append(
            StepResult(
                index=index,
                name=step.name,
                exit_code=step_exit.exit_code,
                duration_s=step_exit.duration_s,
                terminated=step_exit.terminated,
            )
        )
        if step_exit.exit_code != 0:
            raise StepFailure(
                f"step {index} ({step.name}) exited with code {step_exit.exit_code}",
                step_index=index,
                exit_code=step_exit.exit_code,
            )
        logger.debug("Job %s step %d ok in %.1fs.", job.job_id, index, step_exit.duration_s)

    def _job_env(self, job: JobSpec) -> dict[str, str]:
        env = dict(os.environ) if self._inherit_env else {}
        env.update(job.env)
        return env


__all__ = ["JobExecutor", "StepCallback"]
