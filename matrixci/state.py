"""State tracking and artifact persistence for matrix runs."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Mapping
import json
import os
import re
import uuid

from matrixci.models import JobState

_STEP_SLUG_ALLOWED = re.compile(r"[^a-zA-Z0-9_.-]+")


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _write_json_atomic(path: Path, payload: Mapping[str, Any]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_suffix(f"{path.suffix}.tmp-{uuid.uuid4().hex}")
    with open(tmp_path, "w", encoding="utf-8") as handle:
        json.dump(payload, handle, indent=2, default=str)
    os.replace(tmp_path, path)


@dataclass
class JobManifest:
    job_id: str
    axes: dict[str, Any]
    tolerant: bool
    step_count: int = 0
    state: str = JobState.pending
    updated_at: str = field(default_factory=_now)
    state_entered_at: str | None = field(default_factory=_now)
    started_at: str | None = None
    completed_at: str | None = None
    current_step: int | None = None
    current_step_name: str | None = None
    failed_step: int | None = None
    exit_code: int | None = None
    failure_reason: str | None = None
    error: str | None = None

    def touch(self) -> None:
        self.updated_at = _now()

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class JobPaths:
    root: Path

    @property
    def manifest_path(self) -> Path:
        return self.root / "run_manifest.json"

    @property
    def result_path(self) -> Path:
        return self.root / "result.json"

    @property
    def steps_dir(self) -> Path:
        return self.root / "steps"

    def step_stdout_path(self, index: int, name: str) -> Path:
        return self.steps_dir / f"{_step_stem(index, name)}.stdout.txt"

    def step_stderr_path(self, index: int, name: str) -> Path:
        return self.steps_dir / f"{_step_stem(index, name)}.stderr.txt"


def _step_stem(index: int, name: str) -> str:
    slug = _STEP_SLUG_ALLOWED.sub("-", name).strip("-.")[:60].rstrip("-.")
    return f"{index:02d}-{slug or 'step'}"


def write_job_manifest(paths: JobPaths, manifest: JobManifest) -> None:
    manifest.touch()
    _write_json_atomic(paths.manifest_path, manifest.to_dict())


def write_job_result(paths: JobPaths, payload: Mapping[str, Any]) -> None:
    _write_json_atomic(paths.result_path, payload)


def write_summary(path: Path, jobs: list[JobManifest], *, overall: str | None = None) -> None:
    payload = {
        "updated_at": _now(),
        "overall": overall,
        "jobs": [
            {
                "job_id": job.job_id,
                "axes": job.axes,
                "tolerant": job.tolerant,
                "state": job.state,
                "failed_step": job.failed_step,
                "failure_reason": job.failure_reason,
                "error": job.error,
            }
            for job in jobs
        ],
    }
    _write_json_atomic(path, payload)


def load_summary(path: Path) -> Mapping[str, Any]:
    if not path.exists():
        raise FileNotFoundError(f"Summary not found: {path}")
    with open(path, "r", encoding="utf-8") as handle:
        payload = json.load(handle)
    if not isinstance(payload, Mapping):
        raise ValueError(f"Summary file is not a mapping: {path}")
    return payload


__all__ = [
    "JobManifest",
    "JobPaths",
    "load_summary",
    "write_job_manifest",
    "write_job_result",
    "write_summary",
]
