"""Core data structures shared by expansion, execution, scheduling and aggregation."""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Mapping


class JobState:
    pending = "pending"
    running = "running"
    succeeded = "succeeded"
    failed = "failed"


TERMINAL_STATES = frozenset({JobState.succeeded, JobState.failed})


class FailureReason:
    step_failed = "step_failed"
    environment_failure = "environment_failure"
    timed_out = "timed_out"
    cancelled = "cancelled"
    unexpected_exception = "unexpected_exception"


@dataclass(frozen=True)
class StepSpec:
    """One rendered external command."""

    name: str
    argv: tuple[str, ...]
    cwd: Path | None = None
    env: Mapping[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class JobSpec:
    """One matrix cell: its axis values, tolerance flag and ordered steps."""

    job_id: str
    axes: Mapping[str, Any]
    tolerant: bool
    steps: tuple[StepSpec, ...]
    timeout_s: float | None = None
    env: Mapping[str, str] = field(default_factory=dict)

    @property
    def label(self) -> str:
        values = ", ".join(format_axis_value(value) for value in self.axes.values())
        return f"{self.job_id} ({values})" if values else self.job_id


@dataclass(frozen=True)
class StepResult:
    index: int
    name: str
    exit_code: int | None
    duration_s: float
    terminated: bool = False
    error: str | None = None

    @property
    def ok(self) -> bool:
        return not self.terminated and self.error is None and self.exit_code == 0


@dataclass(frozen=True)
class JobOutcome:
    """Result of executing one job; produced exactly once per job."""

    job_id: str
    axes: Mapping[str, Any]
    tolerant: bool
    status: str
    failed_step: int | None = None
    failure_reason: str | None = None
    error: str | None = None
    exit_code: int | None = None
    duration_s: float = 0.0
    steps: tuple[StepResult, ...] = ()

    @property
    def succeeded(self) -> bool:
        return self.status == JobState.succeeded

    @property
    def blocks_run(self) -> bool:
        """True when this outcome alone makes the whole run fail."""
        return self.status == JobState.failed and not self.tolerant

    @classmethod
    def success(cls, job: JobSpec, *, duration_s: float = 0.0, steps: tuple[StepResult, ...] = ()) -> "JobOutcome":
        return cls(
            job_id=job.job_id,
            axes=job.axes,
            tolerant=job.tolerant,
            status=JobState.succeeded,
            exit_code=0,
            duration_s=duration_s,
            steps=steps,
        )

    @classmethod
    def failure(
        cls,
        job: JobSpec,
        *,
        reason: str,
        error: str | None = None,
        failed_step: int | None = None,
        exit_code: int | None = None,
        duration_s: float = 0.0,
        steps: tuple[StepResult, ...] = (),
    ) -> "JobOutcome":
        return cls(
            job_id=job.job_id,
            axes=job.axes,
            tolerant=job.tolerant,
            status=JobState.failed,
            failed_step=failed_step,
            failure_reason=reason,
            error=error,
            exit_code=exit_code,
            duration_s=duration_s,
            steps=steps,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "job_id": self.job_id,
            "axes": dict(self.axes),
            "tolerant": self.tolerant,
            "status": self.status,
            "failed_step": self.failed_step,
            "failure_reason": self.failure_reason,
            "error": self.error,
            "exit_code": self.exit_code,
            "duration_s": self.duration_s,
            "steps": [
                {
                    "index": step.index,
                    "name": step.name,
                    "exit_code": step.exit_code,
                    "duration_s": step.duration_s,
                    "terminated": step.terminated,
                    "error": step.error,
                }
                for step in self.steps
            ],
        }


@dataclass(frozen=True)
class RunResult:
    overall: str
    outcomes: tuple[JobOutcome, ...]

    @property
    def succeeded(self) -> bool:
        return self.overall == JobState.succeeded

    @property
    def required_failures(self) -> list[JobOutcome]:
        return [outcome for outcome in self.outcomes if outcome.blocks_run]

    @property
    def tolerated_failures(self) -> list[JobOutcome]:
        return [outcome for outcome in self.outcomes if outcome.tolerant and not outcome.succeeded]

    @property
    def exit_code(self) -> int:
        return 0 if self.succeeded else 1


def format_axis_value(value: Any) -> str:
    if value is None:
        return "none"
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


__all__ = [
    "FailureReason",
    "JobOutcome",
    "JobSpec",
    "JobState",
    "RunResult",
    "StepResult",
    "StepSpec",
    "TERMINAL_STATES",
    "format_axis_value",
]
