from __future__ import annotations

import json
import logging
from pathlib import Path

import allure
import pytest

from peal.errors import StateReadError, StateWriteError
from peal.state import (
    RunState,
    clear_state,
    identity_for,
    load_state,
    read_state,
    save_state,
    state_file_path,
)

pytestmark = [
    allure.epic("Run State"),
    allure.feature("Persistence and Resume"),
]


def test_saved_state_is_resumed_for_same_plan_and_repo(tmp_path: Path) -> None:
    state = RunState(plan_identity="/plans/a.md", repo_identity="/repos/a")
    state.mark_completed(2)
    state.mark_completed(1)
    save_state(state, tmp_path)

    loaded = load_state(tmp_path, plan_identity="/plans/a.md", repo_identity="/repos/a")

    assert loaded.completed == {1, 2}
    assert loaded.is_completed(1)
    assert not loaded.is_completed(3)


def test_state_file_is_sorted_json_and_leaves_no_temp_file(tmp_path: Path) -> None:
    state = RunState(plan_identity="p", repo_identity="r", completed={3, 1})

    save_state(state, tmp_path)

    payload = json.loads(state_file_path(tmp_path).read_text("utf-8"))
    assert payload == {"completed": [1, 3], "plan_identity": "p", "repo_identity": "r"}
    assert not (tmp_path / "state.json.tmp").exists()


def test_reserved_fields_are_read_but_never_written(tmp_path: Path) -> None:
    state_file_path(tmp_path).write_text(
        json.dumps(
            {
                "plan_identity": "p",
                "repo_identity": "r",
                "completed": [1],
                "last_artifact_by_task": {"1": "abc123"},
                "last_resolved_marker": "def456",
            },
        ),
        "utf-8",
    )

    state = load_state(tmp_path, plan_identity="p", repo_identity="r")
    assert state.last_artifact_by_task == {1: "abc123"}
    assert state.last_resolved_marker == "def456"

    save_state(state, tmp_path)
    payload = json.loads(state_file_path(tmp_path).read_text("utf-8"))
    assert "last_artifact_by_task" not in payload
    assert "last_resolved_marker" not in payload


def test_state_for_other_plan_is_discarded(tmp_path: Path, caplog) -> None:
    save_state(RunState(plan_identity="old", repo_identity="r", completed={1}), tmp_path)

    with caplog.at_level(logging.WARNING, logger="peal.state"):
        loaded = load_state(tmp_path, plan_identity="new", repo_identity="r")

    assert loaded.completed == set()
    assert loaded.plan_identity == "new"
    assert "different plan/repo" in caplog.text


def test_corrupt_state_falls_back_to_fresh_state(tmp_path: Path, caplog) -> None:
    state_file_path(tmp_path).write_text("{not json", "utf-8")

    with caplog.at_level(logging.WARNING, logger="peal.state"):
        loaded = load_state(tmp_path, plan_identity="p", repo_identity="r")

    assert loaded.completed == set()
    assert "Ignoring unreadable run state" in caplog.text


def test_missing_state_logs_and_starts_fresh(tmp_path: Path, caplog) -> None:
    with caplog.at_level(logging.WARNING, logger="peal.state"):
        loaded = load_state(tmp_path / "nope", plan_identity="p", repo_identity="r")

    assert loaded.completed == set()
    assert "No run state" in caplog.text


def test_read_state_rejects_invalid_completed_entries(tmp_path: Path) -> None:
    state_file_path(tmp_path).write_text(
        json.dumps({"plan_identity": "p", "repo_identity": "r", "completed": ["one"]}),
        "utf-8",
    )

    with pytest.raises(StateReadError, match="not an index"):
        read_state(tmp_path)
    assert read_state(tmp_path / "empty") is None


def test_save_state_reports_unwritable_directory(tmp_path: Path) -> None:
    blocker = tmp_path / "blocker"
    blocker.write_text("file, not a directory", "utf-8")

    with pytest.raises(StateWriteError) as error:
        save_state(RunState(plan_identity="p", repo_identity="r"), blocker)
    assert error.value.path == blocker / "state.json"


def test_clear_state_removes_state_file(tmp_path: Path) -> None:
    save_state(RunState(plan_identity="p", repo_identity="r", completed={1}), tmp_path)

    assert clear_state(tmp_path) is True
    assert not state_file_path(tmp_path).exists()
    assert clear_state(tmp_path) is False


def test_identity_resolves_relative_paths(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.chdir(tmp_path)
    (tmp_path / "plan.md").write_text("## Task 1\n", "utf-8")

    assert identity_for(Path("plan.md")) == str((tmp_path / "plan.md").resolve())
