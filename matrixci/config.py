"""Plan loader for matrix runs."""

from __future__ import annotations

from pathlib import Path
from typing import Any, Literal, Mapping

from dotenv import dotenv_values
from omegaconf import OmegaConf
from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator

from matrixci.errors import ConfigurationError

TriggerKind = Literal["push", "pull_request"]
TRIGGER_KINDS: tuple[str, ...] = ("push", "pull_request")


def _stringify_env(value: Any) -> Any:
    if isinstance(value, Mapping):
        return {str(key): "" if item is None else str(item) for key, item in value.items()}
    return value


class StepConfig(BaseModel):
    """One step template; ``run`` is rendered against each job's axis values."""

    name: str | None = None
    run: str | list[str]
    shell: str | None = None
    cwd: Path | None = None
    env: dict[str, str] = Field(default_factory=dict)

    @field_validator("run")
    @classmethod
    def _require_command(cls, value: str | list[str]) -> str | list[str]:
        if isinstance(value, str) and not value.strip():
            raise ValueError("run must not be empty.")
        if isinstance(value, list) and not value:
            raise ValueError("run must not be empty.")
        return value

    @field_validator("env", mode="before")
    @classmethod
    def _coerce_env(cls, value: Any) -> Any:
        return _stringify_env(value)


class StrategyConfig(BaseModel):
    """Matrix declaration plus the scheduling policy applied to it."""

    matrix: dict[str, list[Any]] = Field(default_factory=dict)
    include: list[dict[str, Any]] = Field(default_factory=list)
    exclude: list[dict[str, Any]] = Field(default_factory=list)
    experimental: dict[str, list[Any]] = Field(default_factory=dict)
    tolerant_axis: str | None = None
    job_id_format: str | None = None
    fail_fast: bool = False
    max_parallel: int | None = Field(default=None, ge=1)

    @model_validator(mode="before")
    @classmethod
    def _lift_matrix_modifiers(cls, data: Any) -> Any:
        # include/exclude may be nested under matrix, workflow style.
        if not isinstance(data, Mapping):
            return data
        matrix = data.get("matrix")
        if not isinstance(matrix, Mapping):
            return data
        payload = dict(data)
        axes = dict(matrix)
        for key in ("include", "exclude"):
            if key not in axes:
                continue
            nested = axes.pop(key) or []
            if not isinstance(nested, list):
                raise ValueError(f"matrix.{key} must be a list of mappings.")
            payload[key] = [*nested, *(payload.get(key) or [])]
        payload["matrix"] = axes
        return payload


class PlanConfig(BaseModel):
    """Schema for the plan file."""

    name: str = "build"
    triggers: list[TriggerKind] = Field(default_factory=lambda: list(TRIGGER_KINDS))
    strategy: StrategyConfig = Field(default_factory=StrategyConfig)
    steps: list[StepConfig] = Field(..., min_length=1)
    timeout_s: float | None = Field(default=None, gt=0)
    working_directory: Path | None = None
    env: dict[str, str] = Field(default_factory=dict)
    env_file: Path | None = None
    run_id: str | None = None
    output_dir: Path | None = None

    @field_validator("env", mode="before")
    @classmethod
    def _coerce_env(cls, value: Any) -> Any:
        return _stringify_env(value)


def load_plan(path: Path) -> PlanConfig:
    resolved = path.expanduser().resolve()
    payload = _load_mapping(resolved)
    try:
        plan = PlanConfig(**payload)
    except ValidationError as exc:
        raise ConfigurationError(f"Invalid plan file: {resolved}\n{exc}") from exc
    base_dir = resolved.parent
    plan.working_directory = _resolve_path(plan.working_directory, base_dir) or base_dir
    plan.env_file = _resolve_path(plan.env_file, base_dir)
    plan.output_dir = _resolve_path(plan.output_dir, base_dir)
    for step in plan.steps:
        step.cwd = _resolve_path(step.cwd, plan.working_directory)
    return plan


def load_plan_env(plan: PlanConfig) -> dict[str, str]:
    """Environment shared by every job: dotenv values first, then inline ``env``."""
    env: dict[str, str] = {}
    if plan.env_file is not None:
        env.update(load_env_file(plan.env_file))
    env.update(plan.env)
    return env


def load_env_file(path: Path) -> dict[str, str]:
    env_path = path.expanduser()
    if not env_path.exists():
        raise ConfigurationError(f"env_file not found: {env_path}")
    values = dotenv_values(env_path)
    return {key: value for key, value in values.items() if value is not None}


def _resolve_path(value: Path | None, base_dir: Path) -> Path | None:
    if value is None:
        return None
    candidate = Path(value).expanduser()
    if not candidate.is_absolute():
        candidate = base_dir / candidate
    return candidate.resolve()


def _load_mapping(path: Path) -> Mapping[str, Any]:
    if not path.exists():
        raise ConfigurationError(f"Plan not found: {path}")
    if path.suffix not in {".yaml", ".yml", ".json"}:
        raise ConfigurationError(f"Unsupported plan format: {path} (expected .yaml/.yml/.json)")
    try:
        data = OmegaConf.to_container(OmegaConf.load(path), resolve=True)
    except Exception as exc:  # pragma: no cover - OmegaConf error types vary
        raise ConfigurationError(f"Failed to load plan: {path}") from exc
    if not isinstance(data, Mapping):
        raise ConfigurationError(f"Plan must be a mapping at top level: {path}")
    return data


__all__ = [
    "PlanConfig",
    "StepConfig",
    "StrategyConfig",
    "TRIGGER_KINDS",
    "TriggerKind",
    "load_env_file",
    "load_plan",
    "load_plan_env",
]
