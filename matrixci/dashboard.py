"""Rich live dashboard and final matrix report."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Iterable

from rich.console import Console
from rich.live import Live
from rich.table import Table
from rich.text import Text

from matrixci.models import FailureReason, JobOutcome, JobState, RunResult, format_axis_value
from matrixci.state import JobManifest


STATE_STYLES: dict[str, str] = {
    "pending": "dim",
    "running": "yellow",
    "succeeded": "green",
    "failed": "bold red",
    "tolerated": "yellow",
    "cancelled": "magenta",
}

LOG_PREFIX_STYLES: dict[str, str] = {
    "RUN": "bold cyan",
    "JOB": "bold",
    "SHUTDOWN": "bold red",
}

LOG_EVENT_STYLES: dict[str, str] = {
    "started": "cyan",
    "start": "cyan",
    "step": "blue",
    "succeeded": "bold green",
    "failed": "bold red",
    "tolerated": "yellow",
    "cancelled": "magenta",
    "skipped": "dim",
    "complete": "bold",
}


def _parse_time(value: str | None) -> datetime | None:
    if not value:
        return None
    try:
        return datetime.fromisoformat(value)
    except ValueError:
        return None


def format_elapsed(started_at: str | None, completed_at: str | None) -> str:
    start = _parse_time(started_at)
    if not start:
        return "-"
    end = _parse_time(completed_at) or datetime.now(timezone.utc)
    return format_duration((end - start).total_seconds())


def format_duration(seconds: float | None) -> str:
    if seconds is None:
        return "-"
    total_seconds = int(seconds)
    minutes, seconds_part = divmod(total_seconds, 60)
    hours, minutes = divmod(minutes, 60)
    if hours:
        return f"{hours}h{minutes:02d}m"
    if minutes:
        return f"{minutes}m{seconds_part:02d}s"
    return f"{seconds_part}s"


def _axes_text(axes: dict) -> str:
    return ", ".join(f"{key}={format_axis_value(value)}" for key, value in axes.items()) or "-"


def build_table(jobs: Iterable[JobManifest], *, caption: str | None = None, include_summary: bool = False) -> Table:
    job_list = list(jobs)
    table = Table(title=Text("Matrix", style="bold cyan"), caption=caption, expand=True)
    table.add_column("Job", no_wrap=True, style="bold")
    table.add_column("Axes", style="dim")
    table.add_column("State", no_wrap=True)
    table.add_column("Step", no_wrap=True)
    table.add_column("State Elapsed", no_wrap=True, style="dim")
    table.add_column("Note")
    for job in job_list:
        if job.state != JobState.running:
            continue
        step_text = "-"
        if job.current_step is not None:
            step_text = f"{job.current_step + 1}/{job.step_count} {job.current_step_name or ''}".rstrip()
        table.add_row(
            Text(job.job_id),
            Text(_axes_text(job.axes), style="dim"),
            Text(job.state, style=STATE_STYLES.get(job.state, "")),
            step_text,
            format_elapsed(job.state_entered_at, None),
            Text("tolerant" if job.tolerant else "", style="dim"),
        )

    if include_summary:
        for state in (JobState.pending, JobState.succeeded, JobState.failed):
            count = sum(1 for job in job_list if job.state == state)
            table.add_row(
                Text(f"{state.upper()} (all)", style="dim"),
                Text("-", style="dim"),
                Text(state, style=STATE_STYLES[state]),
                Text("-", style="dim"),
                Text("-", style="dim"),
                Text(f"count={count}", style="dim"),
            )
    return table


def outcome_label(outcome: JobOutcome) -> Text:
    if outcome.succeeded:
        return Text("succeeded", style=STATE_STYLES["succeeded"])
    if outcome.failure_reason == FailureReason.cancelled:
        label = "cancelled (tolerated)" if outcome.tolerant else "cancelled"
        return Text(label, style=STATE_STYLES["cancelled"])
    if outcome.tolerant:
        return Text("failed (tolerated)", style=STATE_STYLES["tolerated"])
    return Text("FAILED", style=STATE_STYLES["failed"])


def build_report_table(result: RunResult) -> Table:
    """Pass/fail matrix: one row per job, one column per axis."""
    axis_names: list[str] = []
    for outcome in result.outcomes:
        for name in outcome.axes:
            if name not in axis_names:
                axis_names.append(name)
    overall_style = STATE_STYLES["succeeded"] if result.succeeded else STATE_STYLES["failed"]
    table = Table(
        title=Text("Matrix result", style="bold cyan"),
        caption=Text(f"overall={result.overall}", style=overall_style),
        expand=False,
    )
    table.add_column("Job", no_wrap=True, style="bold")
    for name in axis_names:
        table.add_column(name, no_wrap=True)
    table.add_column("Tolerant", no_wrap=True)
    table.add_column("Status", no_wrap=True)
    table.add_column("Failed Step", no_wrap=True)
    table.add_column("Duration", no_wrap=True, style="dim")
    table.add_column("Note")
    for outcome in result.outcomes:
        axis_cells = [
            format_axis_value(outcome.axes[name]) if name in outcome.axes else "-" for name in axis_names
        ]
        failed_step = "-"
        if outcome.failed_step is not None:
            step_name = next(
                (step.name for step in outcome.steps if step.index == outcome.failed_step), None
            )
            failed_step = f"{outcome.failed_step}" + (f" {step_name}" if step_name else "")
        note = outcome.failure_reason or ""
        table.add_row(
            outcome.job_id,
            *axis_cells,
            "yes" if outcome.tolerant else "no",
            outcome_label(outcome),
            failed_step,
            format_duration(outcome.duration_s),
            Text(note, style="red" if outcome.blocks_run else "dim"),
        )
    return table


def format_log_message(message: str) -> Text:
    text = Text(message)
    parts = message.split(" ", maxsplit=2)
    if not parts:
        return text
    prefix = parts[0]
    prefix_style = LOG_PREFIX_STYLES.get(prefix)
    if prefix_style:
        text.stylize(prefix_style, 0, len(prefix))
    if len(parts) >= 2:
        event = parts[1]
        event_style = LOG_EVENT_STYLES.get(event)
        if event_style:
            start = len(prefix) + 1
            text.stylize(event_style, start, start + len(event))
    return text


@dataclass
class RunDashboard:
    refresh_hz: float = 1.0
    enabled: bool = True
    console: Console | None = None

    def __post_init__(self) -> None:
        if self.console is None:
            self.console = Console(log_path=False, highlight=False)
        self._live = Live(
            build_table([], include_summary=True),
            refresh_per_second=self.refresh_hz,
            transient=True,
            console=self.console,
        )

    def start(self) -> None:
        if self.enabled:
            self._live.start()

    def update(self, jobs: Iterable[JobManifest], *, caption: str | None = None) -> None:
        if self.enabled:
            self._live.update(build_table(jobs, caption=caption, include_summary=True))

    def stop(self) -> None:
        if self.enabled:
            self._live.stop()

    def log(self, message: str) -> None:
        self.console.log(format_log_message(message))

    def print_report(self, result: RunResult) -> None:
        self.console.print(build_report_table(result))


__all__ = [
    "RunDashboard",
    "build_report_table",
    "build_table",
    "format_duration",
    "format_elapsed",
    "outcome_label",
]
