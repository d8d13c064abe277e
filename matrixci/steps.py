"""Child processes for individual job steps."""

from __future__ import annotations

import asyncio
import os
import signal
import subprocess
import time
from dataclasses import dataclass
from pathlib import Path
from typing import IO, Mapping, Sequence

_POSIX = os.name == "posix"


@dataclass(frozen=True)
class StepExit:
    exit_code: int
    duration_s: float
    terminated: bool = False


@dataclass
class StepProcess:
    """A running step and the two log files its output goes to."""

    argv: tuple[str, ...]
    process: asyncio.subprocess.Process
    started: float
    logs: tuple[IO[str], IO[str]]
    terminated: bool = False

    @property
    def running(self) -> bool:
        return self.process.returncode is None

    def close_logs(self) -> None:
        for handle in self.logs:
            handle.close()

    def stop(self, *, force: bool) -> bool:
        """Signal the whole process group. Returns False once the step is gone."""
        try:
            if _POSIX:
                os.killpg(self.process.pid, signal.SIGKILL if force else signal.SIGTERM)
            elif force:
                self.process.kill()
            else:
                self.process.terminate()
        except ProcessLookupError:
            return False
        return True


def _new_session_kwargs() -> dict[str, object]:
    if _POSIX:
        return {"start_new_session": True}
    return {"creationflags": subprocess.CREATE_NEW_PROCESS_GROUP}


async def start_step(
    argv: Sequence[str],
    *,
    cwd: Path | None,
    env: Mapping[str, str] | None,
    stdout_path: Path,
    stderr_path: Path,
) -> StepProcess:
    """Spawn ``argv`` in its own session; raises ``OSError`` if it cannot start."""
    logs: list[IO[str]] = []
    try:
        for path in (stdout_path, stderr_path):
            path.parent.mkdir(parents=True, exist_ok=True)
            logs.append(open(path, "w", encoding="utf-8"))
        process = await asyncio.create_subprocess_exec(
            *argv,
            cwd=None if cwd is None else str(cwd),
            env=None if env is None else dict(env),
            stdin=subprocess.DEVNULL,
            stdout=logs[0],
            stderr=logs[1],
            **_new_session_kwargs(),
        )
    except BaseException:
        for handle in logs:
            handle.close()
        raise
    return StepProcess(argv=tuple(argv), process=process, started=time.monotonic(), logs=(logs[0], logs[1]))


async def wait_step(proc: StepProcess) -> StepExit:
    try:
        exit_code = await proc.process.wait()
    finally:
        proc.close_logs()
    return StepExit(exit_code=exit_code, duration_s=time.monotonic() - proc.started, terminated=proc.terminated)


async def terminate_step(proc: StepProcess, *, term_timeout_s: float = 5.0) -> None:
    """SIGTERM the step's process group, then SIGKILL after ``term_timeout_s``."""
    if not proc.running:
        return
    proc.terminated = True
    if not proc.stop(force=False):
        return
    try:
        await asyncio.wait_for(proc.process.wait(), timeout=term_timeout_s)
    except asyncio.TimeoutError:
        if proc.stop(force=True):
            await proc.process.wait()


__all__ = ["StepExit", "StepProcess", "start_step", "terminate_step", "wait_step"]
