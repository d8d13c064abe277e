"""Error taxonomy for matrix runs."""

from __future__ import annotations


class ConfigurationError(ValueError):
    """Raised when a plan or matrix declaration cannot be turned into jobs."""


class StepFailure(RuntimeError):
    """Raised inside a job when one of its steps signals failure."""

    reason = "step_failed"

    def __init__(self, message: str, *, step_index: int, exit_code: int | None = None) -> None:
        super().__init__(message)
        self.step_index = step_index
        self.exit_code = exit_code


class EnvironmentFailure(StepFailure):
    """Raised when a step cannot even be started (missing executable, bad cwd, ...)."""

    reason = "environment_failure"


__all__ = ["ConfigurationError", "EnvironmentFailure", "StepFailure"]
