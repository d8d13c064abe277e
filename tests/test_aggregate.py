import random

import pytest

from matrixci.aggregate import aggregate_outcomes
from matrixci.models import FailureReason, JobOutcome, JobSpec, JobState


def _outcome(job_id: str, *, tolerant: bool, failed: bool) -> JobOutcome:
    job = JobSpec(job_id=job_id, axes={"channel": job_id}, tolerant=tolerant, steps=())
    if failed:
        return JobOutcome.failure(job, reason=FailureReason.step_failed, failed_step=0, exit_code=1)
    return JobOutcome.success(job)


@pytest.mark.parametrize(
    ("stable_failed", "nightly_failed", "expected"),
    [
        (False, False, JobState.succeeded),
        (False, True, JobState.succeeded),
        (True, False, JobState.failed),
        (True, True, JobState.failed),
    ],
)
def test_only_required_failures_fail_the_run(stable_failed: bool, nightly_failed: bool, expected: str) -> None:
    result = aggregate_outcomes(
        [
            _outcome("stable", tolerant=False, failed=stable_failed),
            _outcome("nightly", tolerant=True, failed=nightly_failed),
        ]
    )

    assert result.overall == expected
    assert result.exit_code == (1 if expected == JobState.failed else 0)


def test_failure_lists_split_by_tolerance() -> None:
    result = aggregate_outcomes(
        [
            _outcome("stable", tolerant=False, failed=True),
            _outcome("beta", tolerant=False, failed=False),
            _outcome("nightly", tolerant=True, failed=True),
        ]
    )

    assert [outcome.job_id for outcome in result.required_failures] == ["stable"]
    assert [outcome.job_id for outcome in result.tolerated_failures] == ["nightly"]


def test_overall_does_not_depend_on_completion_order() -> None:
    rng = random.Random(11)
    for _ in range(50):
        outcomes = [
            _outcome(f"job-{index}", tolerant=rng.random() < 0.5, failed=rng.random() < 0.4)
            for index in range(rng.randint(1, 8))
        ]
        expected = aggregate_outcomes(outcomes).overall
        shuffled = list(outcomes)
        rng.shuffle(shuffled)
        assert aggregate_outcomes(shuffled).overall == expected
        assert (expected == JobState.failed) == any(o.blocks_run for o in outcomes)


def test_empty_outcomes_are_rejected() -> None:
    with pytest.raises(ValueError):
        aggregate_outcomes([])
