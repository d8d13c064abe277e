import io

from rich.console import Console

from matrixci.aggregate import aggregate_outcomes
from matrixci.dashboard import RunDashboard, build_report_table, build_table, format_duration, outcome_label
from matrixci.models import FailureReason, JobOutcome, JobSpec, JobState, StepResult
from matrixci.state import JobManifest


def _job(job_id: str, channel: str, *, tolerant: bool = False) -> JobSpec:
    return JobSpec(job_id=job_id, axes={"channel": channel}, tolerant=tolerant, steps=())


def test_build_table_filters_to_running_jobs() -> None:
    jobs = [
        JobManifest(job_id="build-stable", axes={"channel": "stable"}, tolerant=False, state=JobState.running),
        JobManifest(job_id="build-nightly", axes={"channel": "nightly"}, tolerant=True, state=JobState.failed),
        JobManifest(job_id="build-beta", axes={"channel": "beta"}, tolerant=False),
    ]

    assert len(build_table(jobs).rows) == 1
    assert len(build_table(jobs, include_summary=True).rows) == 4


def test_outcome_labels_distinguish_tolerated_failures() -> None:
    stable = JobOutcome.failure(_job("build-stable", "stable"), reason=FailureReason.step_failed, failed_step=2)
    nightly = JobOutcome.failure(
        _job("build-nightly", "nightly", tolerant=True), reason=FailureReason.step_failed, failed_step=2
    )
    skipped = JobOutcome.failure(_job("build-beta", "beta"), reason=FailureReason.cancelled)

    assert outcome_label(JobOutcome.success(_job("a", "stable"))).plain == "succeeded"
    assert outcome_label(stable).plain == "FAILED"
    assert outcome_label(nightly).plain == "failed (tolerated)"
    assert outcome_label(skipped).plain == "cancelled"


def test_report_lists_every_job_with_failed_step() -> None:
    nightly_job = _job("build-nightly", "nightly", tolerant=True)
    result = aggregate_outcomes(
        [
            JobOutcome.success(_job("build-stable", "stable"), duration_s=75.0),
            JobOutcome.failure(
                nightly_job,
                reason=FailureReason.step_failed,
                failed_step=1,
                exit_code=101,
                steps=(
                    StepResult(index=0, name="Install", exit_code=0, duration_s=1.0),
                    StepResult(index=1, name="Build", exit_code=101, duration_s=2.0),
                ),
            ),
        ]
    )
    table = build_report_table(result)
    console = Console(file=io.StringIO(), width=200, color_system=None)

    console.print(table)
    rendered = console.file.getvalue()

    assert len(table.rows) == 2
    assert "failed (tolerated)" in rendered
    assert "1 Build" in rendered
    assert "overall=succeeded" in rendered


def test_dashboard_log_writes_when_disabled() -> None:
    buffer = io.StringIO()
    dashboard = RunDashboard(enabled=False, console=Console(file=buffer, width=200, color_system=None))

    dashboard.log("JOB succeeded job=build-stable duration=1s")

    assert "JOB succeeded job=build-stable" in buffer.getvalue()


def test_format_duration() -> None:
    assert format_duration(None) == "-"
    assert format_duration(75) == "1m15s"
