from __future__ import annotations

import json
from pathlib import Path

import allure
import pytest
from click.testing import CliRunner
from conftest import ECHO_AGENT_COMMAND

from peal.main import peal

pytestmark = [
    allure.epic("CLI"),
    allure.feature("peal run / plan / state"),
]

_PLAN = """## Task 1
Create the module.

## Task 2 (parallel)
Write docs.

## Task 3 (parallel)
Write changelog.
"""


@pytest.fixture()
def workspace(tmp_path: Path, monkeypatch, clean_peal_env) -> dict[str, Path]:
    repo = tmp_path / "repo"
    repo.mkdir()
    plan = tmp_path / "plan.md"
    plan.write_text(_PLAN, "utf-8")
    monkeypatch.setenv("PEAL_AGENT_CMD", ECHO_AGENT_COMMAND)
    monkeypatch.setenv("PEAL_REVIEWER_CMD", str(tmp_path / "no-reviewer-installed"))
    return {"repo": repo, "plan": plan, "state": tmp_path / "state"}


def _run_args(workspace: dict[str, Path], *extra: str) -> list[str]:
    return [
        "run",
        "--plan",
        str(workspace["plan"]),
        "--repo",
        str(workspace["repo"]),
        "--state-dir",
        str(workspace["state"]),
        *extra,
    ]


def test_run_with_echo_agent_completes_and_resumes(workspace: dict[str, Path]) -> None:
    runner = CliRunner()

    first = runner.invoke(peal, _run_args(workspace, "--parallel", "--max-parallel", "2"))

    assert first.exit_code == 0, first.output
    assert "classification=clean" in first.output
    assert "Task 2: ok plan=ok execute=ok address=skipped" in first.output
    state = json.loads((workspace["state"] / "state.json").read_text("utf-8"))
    assert state["completed"] == [1, 2, 3]
    summary = json.loads((workspace["state"] / "run_summary.json").read_text("utf-8"))
    assert summary["tasks_completed"] == 3
    assert summary["exit_code"] == 0

    second = runner.invoke(peal, _run_args(workspace))

    assert second.exit_code == 0, second.output
    assert "Skipped (already completed): 1, 2, 3" in second.output
    assert "completed=0 failed=0" in second.output


def test_run_single_task_only(workspace: dict[str, Path]) -> None:
    result = CliRunner().invoke(peal, _run_args(workspace, "--task", "3"))

    assert result.exit_code == 0, result.output
    state = json.loads((workspace["state"] / "state.json").read_text("utf-8"))
    assert state["completed"] == [3]


def test_failing_task_exits_with_hard_failure(workspace: dict[str, Path]) -> None:
    workspace["plan"].write_text(
        "## Task 1\nok\n\n## Task 2\nECHO_AGENT_FAIL\n\n## Task 3\nok\n",
        "utf-8",
    )

    result = CliRunner().invoke(peal, _run_args(workspace))

    assert result.exit_code == 1
    assert "classification=hard_failure" in result.output
    assert "Task 2: failed" in result.output
    summary = json.loads((workspace["state"] / "run_summary.json").read_text("utf-8"))
    assert summary["tasks_failed"] == 1


def test_tolerated_failure_exits_with_issues_code(workspace: dict[str, Path]) -> None:
    workspace["plan"].write_text("## Task 1\nECHO_AGENT_FAIL\n\n## Task 2\nok\n", "utf-8")

    result = CliRunner().invoke(peal, _run_args(workspace, "--continue-with-remaining-tasks"))

    assert result.exit_code == 2
    assert "classification=completed_with_issues" in result.output


def test_circuit_breaker_exit_code(workspace: dict[str, Path]) -> None:
    workspace["plan"].write_text(
        "## Task 1\nECHO_AGENT_FAIL\n\n## Task 2\nECHO_AGENT_FAIL\n\n## Task 3\nok\n",
        "utf-8",
    )

    result = CliRunner().invoke(
        peal,
        _run_args(
            workspace,
            "--continue-with-remaining-tasks",
            "--max-consecutive-task-failures",
            "2",
        ),
    )

    assert result.exit_code == 3
    assert "classification=circuit_breaker" in result.output


def test_missing_agent_is_reported_before_any_phase(workspace, monkeypatch) -> None:
    monkeypatch.setenv("PEAL_AGENT_CMD", "no-such-agent-binary-for-peal")

    result = CliRunner().invoke(peal, _run_args(workspace))

    assert result.exit_code == 1
    assert "Agent command not found" in result.output
    assert not (workspace["state"] / "state.json").exists()


def test_missing_plan_file_is_reported(workspace: dict[str, Path]) -> None:
    workspace["plan"].unlink()

    result = CliRunner().invoke(peal, _run_args(workspace))

    assert result.exit_code == 1
    assert "Plan file does not exist" in result.output


def test_unwritable_log_file_is_reported(workspace: dict[str, Path], tmp_path: Path) -> None:
    blocker = tmp_path / "blocker"
    blocker.write_text("not a directory", "utf-8")

    result = CliRunner().invoke(
        peal,
        _run_args(workspace, "--log-file", str(blocker / "peal.log")),
    )

    assert result.exit_code == 1
    assert "Cannot open log file" in result.output
    assert not isinstance(result.exception, OSError)
    assert not (workspace["state"] / "state.json").exists()


def test_task_and_from_task_are_mutually_exclusive(workspace: dict[str, Path]) -> None:
    result = CliRunner().invoke(peal, _run_args(workspace, "--task", "1", "--from-task", "2"))

    assert result.exit_code == 2
    assert "cannot be combined" in result.output


def test_config_file_supplies_paths(workspace: dict[str, Path], tmp_path: Path) -> None:
    config = tmp_path / "peal.toml"
    config.write_text(
        f'plan_path = "{workspace["plan"].as_posix()}"\n'
        f'repo_path = "{workspace["repo"].as_posix()}"\n'
        f'state_dir = "{workspace["state"].as_posix()}"\n',
        "utf-8",
    )

    result = CliRunner().invoke(peal, ["run", "--config", str(config), "--from-task", "2"])

    assert result.exit_code == 0, result.output
    state = json.loads((workspace["state"] / "state.json").read_text("utf-8"))
    assert state["completed"] == [2, 3]


def test_plan_command_shows_segments(workspace: dict[str, Path]) -> None:
    result = CliRunner().invoke(peal, ["plan", "--plan", str(workspace["plan"])])

    assert result.exit_code == 0, result.output
    assert "- Task 2 [parallel] Write docs." in result.output
    assert "1. sequential [1]" in result.output
    assert "2. concurrent [2, 3]" in result.output


def test_state_show_and_reset(workspace: dict[str, Path]) -> None:
    runner = CliRunner()
    state_dir = str(workspace["state"])

    empty = runner.invoke(peal, ["state", "show", "--state-dir", state_dir])
    assert "No run state" in empty.output

    assert runner.invoke(peal, _run_args(workspace, "--task", "1")).exit_code == 0
    shown = runner.invoke(peal, ["state", "show", "--state-dir", state_dir])
    assert "Completed tasks: 1" in shown.output

    reset = runner.invoke(peal, ["state", "reset", "--state-dir", state_dir])
    assert reset.exit_code == 0
    assert "Removed run state" in reset.output
    assert not (workspace["state"] / "state.json").exists()


def test_version_option() -> None:
    result = CliRunner().invoke(peal, ["--version"])

    assert result.exit_code == 0
    assert "peal" in result.output
