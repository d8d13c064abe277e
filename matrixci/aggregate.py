"""Fold job outcomes into the run verdict."""

from __future__ import annotations

from typing import Iterable

from matrixci.models import JobOutcome, JobState, RunResult


def aggregate_outcomes(outcomes: Iterable[JobOutcome]) -> RunResult:
    """The run fails iff some failed outcome is not tolerant; order never matters."""
    outcome_list = tuple(outcomes)
    if not outcome_list:
        raise ValueError("Cannot aggregate an empty outcome list.")
    overall = JobState.failed if any(outcome.blocks_run for outcome in outcome_list) else JobState.succeeded
    return RunResult(overall=overall, outcomes=outcome_list)


__all__ = ["aggregate_outcomes"]
