"""CLI entrypoint for matrix runs."""

from __future__ import annotations

import argparse
import logging
import shlex
from datetime import datetime, timezone
from pathlib import Path
from typing import Sequence

from matrixci.config import TRIGGER_KINDS, PlanConfig, load_plan, load_plan_env
from matrixci.errors import ConfigurationError
from matrixci.expand import expand_jobs
from matrixci.models import JobSpec, format_axis_value
from matrixci.run import MatrixRunner, RunOptions
from matrixci.state import load_summary
from matrixci.utils.shared import ensure_root_logging, slug_run_id

logger = logging.getLogger(__name__)

COMMAND = "matrixci"
DEFAULT_OUTPUT_DIR = Path("outputs") / "matrixci"


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog=COMMAND,
        description="Expand a build matrix and run every job's steps; exits non-zero iff a required job fails.",
    )
    parser.add_argument("--plan", required=True, type=Path, help="Path to the plan YAML/JSON.")
    parser.add_argument(
        "--event",
        choices=TRIGGER_KINDS,
        default="push",
        help="Triggering event; the run is skipped when the plan does not list it (default: %(default)s).",
    )
    parser.add_argument("--dry-run", action="store_true", help="Print the expanded jobs and exit without running.")
    parser.add_argument("--status", action="store_true", help="Print job states from an existing summary and exit.")
    parser.add_argument("--job", action="append", help="Run only the given job id (repeatable).")
    parser.add_argument("--run-id", help="Run identifier (default: plan name + timestamp).")
    parser.add_argument("--output-dir", type=Path, help="Override the output directory root.")
    parser.add_argument(
        "--max-parallel",
        type=int,
        default=None,
        help="Maximum concurrent jobs (default: plan strategy.max_parallel, unbounded when unset).",
    )
    parser.add_argument(
        "--fail-fast",
        action=argparse.BooleanOptionalAction,
        default=None,
        help="Cancel remaining jobs after the first required failure (default: plan strategy.fail_fast).",
    )
    parser.add_argument("--timeout-s", type=float, default=None, help="Per-job timeout in seconds.")
    parser.add_argument(
        "--env-file",
        type=Path,
        default=None,
        help="Dotenv file merged into every job's environment (overrides plan env_file).",
    )
    parser.add_argument("--no-dashboard", action="store_true", help="Disable the live dashboard.")
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable verbose logging.")
    return parser


def main(argv: Sequence[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    ensure_root_logging("DEBUG" if args.verbose else "INFO")
    try:
        return _execute(args)
    except ConfigurationError as exc:
        parser.error(str(exc))
    except KeyboardInterrupt:
        logger.warning("Run interrupted by user.")
        return 1
    return 1  # pragma: no cover - parser.error exits


def _execute(args: argparse.Namespace) -> int:
    plan_path = args.plan.expanduser().resolve()
    plan = load_plan(plan_path)
    if args.env_file is not None:
        env_file = args.env_file.expanduser()
        if not env_file.is_absolute():
            env_file = plan_path.parent / env_file
        plan.env_file = env_file.resolve()

    configured_run_id = args.run_id or plan.run_id
    output_base = args.output_dir or plan.output_dir or DEFAULT_OUTPUT_DIR
    if args.status:
        if not configured_run_id:
            raise ConfigurationError("--status needs --run-id (or run_id in the plan).")
        summary = load_summary(output_base / configured_run_id / "summary.json")
        print(f"overall\t{summary.get('overall') or '-'}")
        for entry in summary.get("jobs", []):
            tolerant = "tolerant" if entry.get("tolerant") else "required"
            print(f"{entry.get('job_id')}\t{entry.get('state')}\t{tolerant}\t{entry.get('failure_reason') or '-'}")
        return 0

    if args.event not in plan.triggers:
        logger.info(
            "Plan '%s' is not triggered by '%s' events (triggers: %s); nothing to run.",
            plan.name,
            args.event,
            ", ".join(plan.triggers) or "none",
        )
        return 0

    jobs = _select_jobs(_expand_plan(plan, timeout_s=args.timeout_s), args.job)
    if args.dry_run:
        _print_jobs(jobs)
        return 0

    max_parallel = args.max_parallel if args.max_parallel is not None else plan.strategy.max_parallel
    if max_parallel is not None and max_parallel < 1:
        raise ConfigurationError(f"--max-parallel must be >= 1 (got {max_parallel}).")
    fail_fast = args.fail_fast if args.fail_fast is not None else plan.strategy.fail_fast
    timestamp = datetime.now(timezone.utc).strftime("%Y%m%d-%H%M%S")
    run_id = configured_run_id or f"{slug_run_id(plan.name)}-{timestamp}"
    options = RunOptions(
        run_id=run_id,
        output_root=output_base / run_id,
        max_parallel=max_parallel,
        fail_fast=fail_fast,
    )
    logger.debug("Running %d job(s) for %s event into %s.", len(jobs), args.event, options.output_root)
    result = MatrixRunner(jobs, options=options, use_dashboard=not args.no_dashboard).run()
    return result.exit_code


def _expand_plan(plan: PlanConfig, *, timeout_s: float | None) -> list[JobSpec]:
    return expand_jobs(
        plan.strategy,
        plan.steps,
        base_name=plan.name,
        timeout_s=timeout_s if timeout_s is not None else plan.timeout_s,
        env=load_plan_env(plan),
        workdir=plan.working_directory,
    )


def _select_jobs(jobs: list[JobSpec], selected: Sequence[str] | None) -> list[JobSpec]:
    if not selected:
        return jobs
    known = {job.job_id for job in jobs}
    unknown = sorted(set(selected) - known)
    if unknown:
        raise ConfigurationError(f"Unknown job id(s): {', '.join(unknown)} (known: {', '.join(sorted(known))}).")
    wanted = set(selected)
    return [job for job in jobs if job.job_id in wanted]


def _print_jobs(jobs: Sequence[JobSpec]) -> None:
    for job in jobs:
        axes = ",".join(f"{name}={format_axis_value(value)}" for name, value in job.axes.items()) or "-"
        print(f"{job.job_id}\t{axes}\t{'tolerant' if job.tolerant else 'required'}")
        for index, step in enumerate(job.steps):
            print(f"  {index}\t{step.name}\t{shlex.join(step.argv)}")


__all__ = ["build_parser", "main"]
