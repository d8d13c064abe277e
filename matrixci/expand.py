"""Matrix expansion: a strategy plus step templates become an ordered job list."""

from __future__ import annotations

import logging
import re
import shlex
from collections.abc import Iterable, Mapping, Sequence
from itertools import product
from pathlib import Path
from typing import Any

from matrixci.config import StepConfig, StrategyConfig
from matrixci.errors import ConfigurationError
from matrixci.models import JobSpec, StepSpec, format_axis_value

logger = logging.getLogger(__name__)

RESERVED_INCLUDE_KEYS = frozenset({"tolerant", "match"})
_JOB_ID_ALLOWED = re.compile(r"[^a-zA-Z0-9_.-]+")
_ENV_NAME_ALLOWED = re.compile(r"[^A-Za-z0-9]+")
_TRUTHY_STRINGS = {"1", "true", "yes", "on"}


class _MatrixContext:
    """Exposes axis values to step templates as ``{matrix.name}`` or ``{matrix[name]}``."""

    def __init__(self, axes: Mapping[str, Any]) -> None:
        self._axes = dict(axes)

    def __getattr__(self, name: str) -> str:
        try:
            return format_axis_value(self._axes[name])
        except KeyError:
            raise AttributeError(name) from None

    def __getitem__(self, name: str) -> str:
        return format_axis_value(self._axes[name])


def expand_jobs(
    strategy: StrategyConfig,
    steps: Sequence[StepConfig],
    *,
    base_name: str = "build",
    timeout_s: float | None = None,
    env: Mapping[str, str] | None = None,
    workdir: Path | None = None,
) -> list[JobSpec]:
    """Expand ``strategy`` into concrete jobs.

    Base product first (axis declaration order), then new combinations added by
    ``include`` entries in declaration order. Raises :class:`ConfigurationError`
    for empty axes, unknown include/exclude keys, duplicate combinations or an
    empty result.
    """
    if not steps:
        raise ConfigurationError("plan defines no steps.")
    combos = expand_combinations(strategy)
    jobs: list[JobSpec] = []
    seen_axes: set[tuple[tuple[str, str], ...]] = set()
    seen_ids: set[str] = set()
    for axes, tolerant in combos:
        axes_key = tuple((name, repr(value)) for name, value in axes.items())
        if axes_key in seen_axes:
            raise ConfigurationError(f"matrix produced duplicate combination {dict(axes)!r}.")
        seen_axes.add(axes_key)
        job_id = build_job_id(base_name, axes, strategy.job_id_format)
        if job_id in seen_ids:
            raise ConfigurationError(f"matrix generated duplicate job id '{job_id}'.")
        seen_ids.add(job_id)
        job_env = dict(env or {})
        job_env.update(_matrix_env(axes))
        job_env["MATRIXCI_JOB_ID"] = job_id
        jobs.append(
            JobSpec(
                job_id=job_id,
                axes=axes,
                tolerant=tolerant,
                steps=render_steps(steps, job_id=job_id, base_name=base_name, axes=axes, workdir=workdir),
                timeout_s=timeout_s,
                env=job_env,
            )
        )
    logger.debug("Expanded %d job(s) from matrix axes %s.", len(jobs), list(strategy.matrix))
    return jobs


def expand_combinations(strategy: StrategyConfig) -> list[tuple[dict[str, Any], bool]]:
    """Return ``(axes, tolerant)`` pairs in dispatch/report order."""
    axis_names = list(strategy.matrix.keys())
    if not axis_names and not strategy.include:
        raise ConfigurationError("matrix declares no axes and no include entries.")
    for name in axis_names:
        if not strategy.matrix[name]:
            raise ConfigurationError(f"matrix axis '{name}' has no values.")
    declared = set(axis_names)
    _check_declared(strategy.experimental.keys(), declared, context="experimental")
    if strategy.tolerant_axis is not None:
        _check_declared([strategy.tolerant_axis], declared, context="tolerant_axis")
    for position, pattern in enumerate(strategy.exclude):
        _check_declared(pattern.keys(), declared, context=f"exclude[{position}]")

    base: list[dict[str, Any]] = []
    if axis_names:
        for values in product(*(strategy.matrix[name] for name in axis_names)):
            combo = dict(zip(axis_names, values))
            if any(_matches(combo, pattern) for pattern in strategy.exclude):
                continue
            base.append(combo)
    originals = [dict(combo) for combo in base]
    overrides: list[bool | None] = [None] * len(base)
    extras: list[tuple[dict[str, Any], bool | None]] = []

    for position, entry in enumerate(strategy.include):
        values, match, tolerant = _split_include(entry, declared, position=position)
        keys = match if match is not None else values
        if not keys:
            raise ConfigurationError(f"include[{position}] names no axis values.")
        targets = [index for index, combo in enumerate(originals) if _matches(combo, keys)]
        if targets:
            for index in targets:
                base[index].update(values)
                if tolerant is not None:
                    overrides[index] = tolerant
            continue
        extras.append(({**(match or {}), **values}, tolerant))

    combos: list[tuple[dict[str, Any], bool]] = []
    for combo, override in [*zip(base, overrides), *extras]:
        axes = {name: combo[name] for name in axis_names if name in combo}
        tolerant = override if override is not None else derive_tolerant(axes, strategy)
        combos.append((axes, tolerant))
    if not combos:
        raise ConfigurationError("matrix produced no jobs after exclusions.")
    return combos


def derive_tolerant(axes: Mapping[str, Any], strategy: StrategyConfig) -> bool:
    for name, values in strategy.experimental.items():
        if name in axes and axes[name] in values:
            return True
    if strategy.tolerant_axis is not None:
        return _truthy(axes.get(strategy.tolerant_axis))
    return False


def build_job_id(base_name: str, axes: Mapping[str, Any], id_format: str | None) -> str:
    format_values = {name: format_axis_value(value) for name, value in axes.items()}
    if id_format:
        try:
            raw = id_format.format(base=base_name, **format_values)
        except (KeyError, IndexError, ValueError) as exc:
            raise ConfigurationError(f"job_id_format '{id_format}' cannot be rendered for {dict(axes)!r}: {exc}") from exc
    else:
        suffix_parts = [f"{name}-{value}" for name, value in format_values.items()]
        raw = base_name if not suffix_parts else f"{base_name}-{'-'.join(suffix_parts)}"
    job_id = _JOB_ID_ALLOWED.sub("-", raw).strip("-.")
    if not job_id:
        raise ConfigurationError(f"matrix generated an invalid job id {raw!r}.")
    return job_id


def render_steps(
    templates: Sequence[StepConfig],
    *,
    job_id: str,
    base_name: str,
    axes: Mapping[str, Any],
    workdir: Path | None = None,
) -> tuple[StepSpec, ...]:
    context = {"matrix": _MatrixContext(axes), "job_id": job_id, "base": base_name}
    rendered: list[StepSpec] = []
    for index, template in enumerate(templates):
        label = template.name or f"step {index + 1}"

        def _render(text: str) -> str:
            try:
                return text.format(**context)
            except (KeyError, AttributeError, IndexError, ValueError) as exc:
                raise ConfigurationError(
                    f"step '{label}' of job '{job_id}' cannot be rendered ({exc!r}): {text!r}"
                ) from exc

        if isinstance(template.run, list):
            parts = [_render(part) for part in template.run]
            argv = (template.shell, "-c", shlex.join(parts)) if template.shell else tuple(parts)
            default_name = " ".join(parts)
        else:
            command = _render(template.run)
            argv = (template.shell, "-c", command) if template.shell else tuple(shlex.split(command))
            default_name = command
        if not argv:
            raise ConfigurationError(f"step '{label}' of job '{job_id}' rendered to an empty command.")
        rendered.append(
            StepSpec(
                name=_render(template.name) if template.name else f"Run {default_name}",
                argv=argv,
                cwd=template.cwd or workdir,
                env={key: _render(value) for key, value in template.env.items()},
            )
        )
    return tuple(rendered)


def _split_include(
    entry: Mapping[str, Any], declared: set[str], *, position: int
) -> tuple[dict[str, Any], dict[str, Any] | None, bool | None]:
    values = {key: value for key, value in entry.items() if key not in RESERVED_INCLUDE_KEYS}
    _check_declared(values.keys(), declared, context=f"include[{position}]")
    match = entry.get("match")
    if match is not None:
        if not isinstance(match, Mapping):
            raise ConfigurationError(f"include[{position}].match must be a mapping.")
        match = dict(match)
        _check_declared(match.keys(), declared, context=f"include[{position}].match")
    tolerant = entry.get("tolerant")
    if tolerant is not None and not isinstance(tolerant, bool):
        raise ConfigurationError(f"include[{position}].tolerant must be a boolean.")
    return values, match, tolerant


def _check_declared(keys: Iterable[str], declared: set[str], *, context: str) -> None:
    unknown = sorted(str(key) for key in keys if key not in declared)
    if unknown:
        raise ConfigurationError(f"{context} references undeclared axis key(s): {', '.join(unknown)}.")


def _matches(combo: Mapping[str, Any], pattern: Mapping[str, Any]) -> bool:
    return all(key in combo and combo[key] == value for key, value in pattern.items())


def _matrix_env(axes: Mapping[str, Any]) -> dict[str, str]:
    return {
        f"MATRIX_{_ENV_NAME_ALLOWED.sub('_', name).strip('_').upper()}": format_axis_value(value)
        for name, value in axes.items()
    }


def _truthy(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in _TRUTHY_STRINGS
    return bool(value)


__all__ = ["build_job_id", "derive_tolerant", "expand_combinations", "expand_jobs", "render_steps"]
