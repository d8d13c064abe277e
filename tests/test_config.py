from pathlib import Path

import pytest

from matrixci.config import load_plan, load_plan_env
from matrixci.errors import ConfigurationError


def test_plan_paths_resolve_relative_to_plan_file(tmp_path: Path) -> None:
    (tmp_path / "ci.env").write_text("TOKEN=abc\nCI=false\n", encoding="utf-8")
    plan_path = tmp_path / "plan.yaml"
    plan_path.write_text(
        """
name: ci
triggers: [push]
env_file: ci.env
env:
  CI: true
  RUST_BACKTRACE: 1
output_dir: outputs/ci
working_directory: src
timeout_s: 600
strategy:
  fail_fast: true
  max_parallel: 2
  tolerant_axis: experimental
  matrix:
    rust: [stable]
    experimental: [false]
    include:
      - rust: nightly
        experimental: true
steps:
  - name: Build
    run: cargo +{matrix.rust} build --all
    cwd: crate
  - run: [cargo, test]
""".lstrip(),
        encoding="utf-8",
    )

    plan = load_plan(plan_path)

    assert plan.name == "ci"
    assert plan.triggers == ["push"]
    assert plan.working_directory == (tmp_path / "src").resolve()
    assert plan.output_dir == (tmp_path / "outputs" / "ci").resolve()
    assert plan.env_file == (tmp_path / "ci.env").resolve()
    assert plan.steps[0].cwd == (tmp_path / "src" / "crate").resolve()
    assert plan.steps[1].cwd is None
    assert plan.timeout_s == 600
    assert plan.strategy.fail_fast is True
    assert plan.strategy.max_parallel == 2
    assert plan.strategy.matrix == {"rust": ["stable"], "experimental": [False]}
    assert plan.strategy.include == [{"rust": "nightly", "experimental": True}]
    assert load_plan_env(plan) == {"TOKEN": "abc", "CI": "True", "RUST_BACKTRACE": "1"}


def test_defaults_cover_both_triggers(tmp_path: Path) -> None:
    plan_path = tmp_path / "plan.json"
    plan_path.write_text('{"strategy": {"matrix": {"os": ["linux"]}}, "steps": [{"run": "make"}]}', encoding="utf-8")

    plan = load_plan(plan_path)

    assert plan.name == "build"
    assert plan.triggers == ["push", "pull_request"]
    assert plan.working_directory == tmp_path.resolve()
    assert plan.strategy.fail_fast is False
    assert plan.strategy.max_parallel is None


@pytest.mark.parametrize(
    ("body", "message"),
    [
        ("name: ci\n", "Invalid plan"),
        ("steps:\n  - run: ''\n", "Invalid plan"),
        ("triggers: [schedule]\nsteps:\n  - run: make\n", "Invalid plan"),
        ("strategy:\n  max_parallel: 0\nsteps:\n  - run: make\n", "Invalid plan"),
        ("strategy:\n  matrix:\n    os: [linux]\n    include: [linux]\nsteps:\n  - run: make\n", "Invalid plan"),
        ("- run: make\n", "mapping"),
    ],
)
def test_invalid_plans_raise_configuration_error(tmp_path: Path, body: str, message: str) -> None:
    plan_path = tmp_path / "plan.yaml"
    plan_path.write_text(body, encoding="utf-8")

    with pytest.raises(ConfigurationError, match=message):
        load_plan(plan_path)


def test_missing_plan_and_env_file(tmp_path: Path) -> None:
    with pytest.raises(ConfigurationError, match="Plan not found"):
        load_plan(tmp_path / "missing.yaml")

    plan_path = tmp_path / "plan.yaml"
    plan_path.write_text("env_file: nope.env\nsteps:\n  - run: make\n", encoding="utf-8")
    plan = load_plan(plan_path)
    with pytest.raises(ConfigurationError, match="env_file not found"):
        load_plan_env(plan)
