from pathlib import Path

import pytest

from matrixci.models import JobState
from matrixci.state import JobManifest, JobPaths, load_summary, write_summary


def test_step_log_paths_are_sanitized(tmp_path: Path) -> None:
    paths = JobPaths(tmp_path / "build-channel-stable")

    stdout_path = paths.step_stdout_path(3, "Run cargo +nightly test --all")

    assert stdout_path.parent == paths.steps_dir
    assert stdout_path.name == "03-Run-cargo-nightly-test---all.stdout.txt"
    assert paths.step_stderr_path(0, "::").name == "00-step.stderr.txt"


def test_summary_round_trip(tmp_path: Path) -> None:
    summary_path = tmp_path / "summary.json"
    jobs = [
        JobManifest(job_id="build-stable", axes={"channel": "stable"}, tolerant=False, state=JobState.succeeded),
        JobManifest(
            job_id="build-nightly",
            axes={"channel": "nightly"},
            tolerant=True,
            state=JobState.failed,
            failed_step=2,
            failure_reason="step_failed",
        ),
    ]

    write_summary(summary_path, jobs, overall=JobState.succeeded)
    summary = load_summary(summary_path)

    assert summary["overall"] == JobState.succeeded
    assert summary["jobs"][1] == {
        "job_id": "build-nightly",
        "axes": {"channel": "nightly"},
        "tolerant": True,
        "state": JobState.failed,
        "failed_step": 2,
        "failure_reason": "step_failed",
        "error": None,
    }
    assert list(tmp_path.iterdir()) == [summary_path]


def test_load_summary_missing(tmp_path: Path) -> None:
    with pytest.raises(FileNotFoundError):
        load_summary(tmp_path / "summary.json")
