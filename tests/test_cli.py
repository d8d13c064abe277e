import json
import sys
from pathlib import Path

import pytest

from matrixci.cli import main


def _write_plan(tmp_path: Path, *, failing_channel: str, **extra: object) -> Path:
    plan = {
        "name": "ci",
        "triggers": ["push"],
        "strategy": {
            "matrix": {
                "channel": ["stable", "nightly"],
                "include": [{"channel": "nightly", "tolerant": True}],
            },
        },
        "steps": [
            {"name": "Install", "run": [sys.executable, "-c", "print('{matrix.channel}')"]},
            {
                "name": "Test",
                "run": [
                    sys.executable,
                    "-c",
                    f"import sys; sys.exit(1 if '{{matrix.channel}}' == '{failing_channel}' else 0)",
                ],
            },
        ],
        **extra,
    }
    plan_path = tmp_path / "plan.json"
    plan_path.write_text(json.dumps(plan), encoding="utf-8")
    return plan_path


def _run_args(plan_path: Path, tmp_path: Path, *extra: str) -> list[str]:
    return [
        "--plan",
        str(plan_path),
        "--no-dashboard",
        "--output-dir",
        str(tmp_path / "out"),
        "--run-id",
        "r1",
        *extra,
    ]


def test_tolerated_failure_exits_zero(tmp_path: Path) -> None:
    plan_path = _write_plan(tmp_path, failing_channel="nightly")

    assert main(_run_args(plan_path, tmp_path)) == 0
    summary = json.loads((tmp_path / "out" / "r1" / "summary.json").read_text(encoding="utf-8"))
    assert summary["overall"] == "succeeded"


def test_required_failure_exits_one(tmp_path: Path) -> None:
    plan_path = _write_plan(tmp_path, failing_channel="stable")

    assert main(_run_args(plan_path, tmp_path)) == 1


def test_untriggered_event_skips_the_run(tmp_path: Path) -> None:
    plan_path = _write_plan(tmp_path, failing_channel="stable")

    assert main(_run_args(plan_path, tmp_path, "--event", "pull_request")) == 0
    assert not (tmp_path / "out").exists()


def test_dry_run_prints_jobs_without_running(tmp_path: Path, capsys) -> None:
    plan_path = _write_plan(tmp_path, failing_channel="stable")

    assert main(_run_args(plan_path, tmp_path, "--dry-run")) == 0

    lines = capsys.readouterr().out.splitlines()
    assert lines[0] == "ci-channel-stable\tchannel=stable\trequired"
    assert "ci-channel-nightly\tchannel=nightly\ttolerant" in lines
    assert any(line.startswith("  1\tTest\t") for line in lines)
    assert not (tmp_path / "out").exists()


def test_job_filter_runs_only_selected_jobs(tmp_path: Path) -> None:
    plan_path = _write_plan(tmp_path, failing_channel="stable")

    assert main(_run_args(plan_path, tmp_path, "--job", "ci-channel-nightly")) == 0
    summary = json.loads((tmp_path / "out" / "r1" / "summary.json").read_text(encoding="utf-8"))
    assert [job["job_id"] for job in summary["jobs"]] == ["ci-channel-nightly"]


def test_unknown_job_is_a_usage_error(tmp_path: Path) -> None:
    plan_path = _write_plan(tmp_path, failing_channel="stable")

    with pytest.raises(SystemExit) as excinfo:
        main(_run_args(plan_path, tmp_path, "--job", "ci-channel-beta"))
    assert excinfo.value.code == 2


def test_invalid_matrix_is_a_usage_error(tmp_path: Path) -> None:
    plan_path = _write_plan(
        tmp_path,
        failing_channel="stable",
        strategy={"matrix": {"channel": ["stable"]}, "include": [{"compiler": "gcc"}]},
    )

    with pytest.raises(SystemExit) as excinfo:
        main(_run_args(plan_path, tmp_path))
    assert excinfo.value.code == 2


def test_status_reads_summary(tmp_path: Path, capsys) -> None:
    plan_path = _write_plan(tmp_path, failing_channel="nightly")
    main(_run_args(plan_path, tmp_path))
    capsys.readouterr()

    assert main(_run_args(plan_path, tmp_path, "--status")) == 0

    lines = capsys.readouterr().out.splitlines()
    assert lines[0] == "overall\tsucceeded"
    assert lines[1:] == [
        "ci-channel-stable\tsucceeded\trequired\t-",
        "ci-channel-nightly\tfailed\ttolerant\tstep_failed",
    ]
