"""Runtime loop wiring scheduler, executor, state files and dashboard."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import signal
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Iterable

from matrixci.aggregate import aggregate_outcomes
from matrixci.dashboard import RunDashboard, format_duration, format_elapsed
from matrixci.executor import JobExecutor
from matrixci.models import TERMINAL_STATES, FailureReason, JobOutcome, JobSpec, JobState, RunResult, StepSpec
from matrixci.scheduler import JobScheduler
from matrixci.state import JobManifest, write_job_manifest, write_job_result, write_summary

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RunOptions:
    run_id: str
    output_root: Path
    max_parallel: int | None = None
    fail_fast: bool = False
    inherit_env: bool = True


class MatrixRunner:
    def __init__(
        self,
        jobs: Iterable[JobSpec],
        *,
        options: RunOptions,
        use_dashboard: bool = True,
        dashboard: RunDashboard | None = None,
    ) -> None:
        self._jobs = list(jobs)
        self._options = options
        self._dashboard = dashboard or RunDashboard(enabled=use_dashboard)
        self._executor = JobExecutor(options.output_root, inherit_env=options.inherit_env, on_step=self._on_step)
        self._manifests: dict[str, JobManifest] = {
            job.job_id: JobManifest(
                job_id=job.job_id,
                axes=dict(job.axes),
                tolerant=job.tolerant,
                step_count=len(job.steps),
            )
            for job in self._jobs
        }
        self._outcomes: dict[str, JobOutcome] = {}
        self._shutdown = asyncio.Event()
        self._shutdown_mode: str | None = None
        self._run_started_at: str | None = None
        self._dashboard_refresh_task: asyncio.Task[None] | None = None
        self._scheduler_task: asyncio.Task[list[JobOutcome]] | None = None

    @property
    def summary_path(self) -> Path:
        return self._options.output_root / "summary.json"

    def run(self) -> RunResult:
        return asyncio.run(self._run_async())

    async def _run_async(self) -> RunResult:
        scheduler = JobScheduler(max_parallel=self._options.max_parallel, fail_fast=self._options.fail_fast)
        self._run_started_at = _utcnow()
        self._dashboard.start()
        self._refresh_dashboard()
        self._dashboard_refresh_task = self._start_dashboard_refresh()
        parallel_text = self._options.max_parallel if self._options.max_parallel is not None else "unbounded"
        self._dashboard.log(
            f"RUN started run_id={self._options.run_id} jobs={len(self._jobs)} "
            f"max_parallel={parallel_text} fail_fast={self._options.fail_fast} output={self._options.output_root}"
        )
        write_summary(self.summary_path, list(self._manifests.values()))
        outcomes: list[JobOutcome] | None = None
        try:
            loop = asyncio.get_running_loop()
            runner_task = asyncio.create_task(
                scheduler.run(self._jobs, self._run_job, shutdown_event=self._shutdown)
            )
            self._scheduler_task = runner_task
            signals = _register_signal_handlers(loop, lambda: self._handle_shutdown(runner_task))
            try:
                outcomes = await runner_task
            except asyncio.CancelledError:
                if self._shutdown_mode != "force":
                    raise
            finally:
                for sig in signals:
                    loop.remove_signal_handler(sig)
        finally:
            if self._dashboard_refresh_task:
                self._dashboard_refresh_task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await self._dashboard_refresh_task
                self._dashboard_refresh_task = None
            self._dashboard.stop()

        if outcomes is None:
            outcomes = [
                self._outcomes.get(job.job_id)
                or JobOutcome.failure(job, reason=FailureReason.cancelled, error="run was force-stopped")
                for job in self._jobs
            ]
        else:
            # Runner-recorded outcomes carry step data the scheduler never sees.
            outcomes = [self._outcomes.get(outcome.job_id, outcome) for outcome in outcomes]
        self._mark_undispatched(outcomes)
        result = aggregate_outcomes(outcomes)
        write_summary(self.summary_path, list(self._manifests.values()), overall=result.overall)
        self._dashboard.log(
            f"RUN complete overall={result.overall} required_failures={len(result.required_failures)} "
            f"tolerated_failures={len(result.tolerated_failures)} "
            f"elapsed={format_elapsed(self._run_started_at, _utcnow())}"
        )
        self._dashboard.print_report(result)
        return result

    async def _run_job(self, job: JobSpec) -> JobOutcome:
        manifest = self._manifests[job.job_id]
        manifest.started_at = _utcnow()
        self._set_state(manifest, JobState.running)
        try:
            outcome = await self._executor.execute(job)
        except asyncio.CancelledError:
            note = "run was force-stopped" if self._shutdown_mode == "force" else "cancelled by fail-fast"
            outcome = self._executor.pop_interrupted(job)
            if outcome is None:
                outcome = JobOutcome.failure(job, reason=FailureReason.cancelled, error=note)
            self._finish(job, replace(outcome, error=note))
            raise
        self._finish(job, outcome)
        return outcome

    def _on_step(self, job: JobSpec, index: int, step: StepSpec) -> None:
        manifest = self._manifests[job.job_id]
        manifest.current_step = index
        manifest.current_step_name = step.name
        write_job_manifest(self._executor.paths_for(job), manifest)
        self._dashboard.log(f"JOB step job={job.job_id} step={index + 1}/{len(job.steps)} name={step.name!r}")
        self._refresh_dashboard()

    def _finish(self, job: JobSpec, outcome: JobOutcome) -> None:
        self._outcomes[job.job_id] = outcome
        logger.debug("Job %s finished: status=%s reason=%s.", job.job_id, outcome.status, outcome.failure_reason)
        manifest = self._manifests[job.job_id]
        manifest.failed_step = outcome.failed_step
        manifest.exit_code = outcome.exit_code
        manifest.failure_reason = outcome.failure_reason
        manifest.error = outcome.error
        manifest.current_step = None
        manifest.current_step_name = None
        write_job_result(self._executor.paths_for(job), outcome.to_dict())
        self._set_state(manifest, outcome.status)
        self._log_outcome(outcome)

    def _mark_undispatched(self, outcomes: list[JobOutcome]) -> None:
        for outcome in outcomes:
            manifest = self._manifests[outcome.job_id]
            if manifest.state in TERMINAL_STATES:
                continue
            manifest.failure_reason = outcome.failure_reason
            manifest.error = outcome.error
            self._set_state(manifest, outcome.status)
            self._log_outcome(outcome)

    def _set_state(self, manifest: JobManifest, state: str) -> None:
        now = _utcnow()
        if state != manifest.state:
            manifest.state = state
            manifest.state_entered_at = now
        if state in TERMINAL_STATES:
            manifest.completed_at = now
        write_job_manifest(self._executor.paths_for_id(manifest.job_id), manifest)
        write_summary(self.summary_path, list(self._manifests.values()))
        self._refresh_dashboard()

    def _log_outcome(self, outcome: JobOutcome) -> None:
        duration = format_duration(outcome.duration_s)
        if outcome.succeeded:
            self._dashboard.log(f"JOB succeeded job={outcome.job_id} duration={duration}")
            return
        if outcome.failure_reason == FailureReason.cancelled:
            self._dashboard.log(f"JOB cancelled job={outcome.job_id} note={outcome.error!r}")
            return
        event = "tolerated" if outcome.tolerant else "failed"
        step_text = f" step={outcome.failed_step}" if outcome.failed_step is not None else ""
        exit_text = f" exit={outcome.exit_code}" if outcome.exit_code is not None else ""
        self._dashboard.log(
            f"JOB {event} job={outcome.job_id} reason={outcome.failure_reason}{step_text}{exit_text} "
            f"duration={duration}"
        )

    def _handle_shutdown(self, runner_task: asyncio.Task) -> None:
        if not self._shutdown.is_set():
            self._shutdown_mode = "graceful"
            self._dashboard.log(
                "SHUTDOWN graceful requested (press Ctrl+C again to force) "
                f"running={self._count(JobState.running)} pending={self._count(JobState.pending)} "
                "note=\"no new jobs will start\""
            )
            self._shutdown.set()
            self._refresh_dashboard()
            return
        if self._shutdown_mode == "force":
            return
        self._shutdown_mode = "force"
        self._dashboard.log(f"SHUTDOWN force requested running={self._count(JobState.running)}")
        runner_task.cancel()

    def _count(self, state: str) -> int:
        return sum(1 for manifest in self._manifests.values() if manifest.state == state)

    def _caption(self) -> str | None:
        if not self._run_started_at:
            return None
        uptime = format_elapsed(self._run_started_at, _utcnow())
        mode = self._shutdown_mode or "running"
        return f"uptime={uptime} mode={mode}"

    def _refresh_dashboard(self) -> None:
        self._dashboard.update(self._manifests.values(), caption=self._caption())

    def _start_dashboard_refresh(self) -> asyncio.Task[None] | None:
        if not self._dashboard.enabled:
            return None

        async def refresh_loop() -> None:
            interval_s = 1.0 / max(0.1, float(self._dashboard.refresh_hz or 1.0))
            while True:
                await asyncio.sleep(interval_s)
                try:
                    self._refresh_dashboard()
                except Exception as exc:  # noqa: BLE001
                    self._dashboard.log(f"RUN dashboard-refresh failed error={exc!r}")

        return asyncio.create_task(refresh_loop())


def _utcnow() -> str:
    return datetime.now(timezone.utc).isoformat()


def _register_signal_handlers(
    loop: asyncio.AbstractEventLoop, handler: Callable[[], None]
) -> list[signal.Signals]:
    registered: list[signal.Signals] = []
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, handler)
        except (NotImplementedError, RuntimeError, ValueError):
            continue
        registered.append(sig)
    return registered


__all__ = ["MatrixRunner", "RunOptions"]
