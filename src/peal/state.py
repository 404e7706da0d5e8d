"""Durable run state: which task indices already completed for a plan/repo pair."""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from peal.errors import StateReadError, StateWriteError

logger = logging.getLogger(__name__)

STATE_FILE_NAME = "state.json"


@dataclass(slots=True)
class RunState:
    """Completed-task record keyed to one (plan, repository) identity pair.

    ``completed`` only grows for the lifetime of a run. The two reserved fields
    are read from storage when present but never written back.
    """

    plan_identity: str
    repo_identity: str
    completed: set[int] = field(default_factory=set)
    last_artifact_by_task: dict[int, str] | None = None
    last_resolved_marker: str | None = None

    def is_completed(self, index: int) -> bool:
        return index in self.completed

    def mark_completed(self, index: int) -> None:
        self.completed.add(index)

    def matches(self, plan_identity: str, repo_identity: str) -> bool:
        return self.plan_identity == plan_identity and self.repo_identity == repo_identity

    def to_payload(self) -> dict[str, Any]:
        return {
            "plan_identity": self.plan_identity,
            "repo_identity": self.repo_identity,
            "completed": sorted(self.completed),
        }


def state_file_path(state_dir: Path) -> Path:
    return state_dir / STATE_FILE_NAME


def identity_for(path: Path) -> str:
    """Stable identity string for a plan or repository path."""

    return str(path.expanduser().resolve())


def load_state(state_dir: Path, *, plan_identity: str, repo_identity: str) -> RunState:
    """Load resumable state, falling back to an empty state with a warning."""

    fresh = RunState(plan_identity=plan_identity, repo_identity=repo_identity)
    path = state_file_path(state_dir)
    try:
        stored = read_state(state_dir)
    except StateReadError as error:
        logger.warning("Ignoring unreadable run state %s: %s", path, error.detail)
        return fresh
    if stored is None:
        logger.warning("No run state at %s; starting fresh", path)
        return fresh

    if not stored.matches(plan_identity, repo_identity):
        logger.warning(
            "Discarding run state %s recorded for a different plan/repo "
            "(plan=%s repo=%s)",
            path,
            stored.plan_identity,
            stored.repo_identity,
        )
        return fresh

    logger.info("Resuming from %s: %d task(s) already completed", path, len(stored.completed))
    return stored


def read_state(state_dir: Path) -> RunState | None:
    """Return the stored state as-is, or None when nothing has been written yet."""

    path = state_file_path(state_dir)
    if not path.exists():
        return None
    try:
        return _state_from_payload(json.loads(path.read_text("utf-8")))
    except (OSError, ValueError, TypeError) as error:
        raise StateReadError(path, str(error)) from error


def clear_state(state_dir: Path) -> bool:
    """Delete the state file; returns False when there was none."""

    path = state_file_path(state_dir)
    try:
        path.with_name(f"{STATE_FILE_NAME}.tmp").unlink(missing_ok=True)
        if not path.exists():
            return False
        path.unlink()
    except OSError as error:
        raise StateWriteError(path, str(error)) from error
    logger.info("Removed run state %s", path)
    return True


def save_state(state: RunState, state_dir: Path) -> None:
    """Write the full state, replacing the previous file atomically."""

    path = state_file_path(state_dir)
    tmp_path = path.with_name(f"{STATE_FILE_NAME}.tmp")
    text = json.dumps(state.to_payload(), ensure_ascii=False, indent=2, sort_keys=True)
    try:
        state_dir.mkdir(parents=True, exist_ok=True)
        tmp_path.write_text(text, "utf-8")
        os.replace(tmp_path, path)
    except OSError as error:
        raise StateWriteError(path, str(error)) from error


def _state_from_payload(payload: object) -> RunState:
    if not isinstance(payload, dict):
        raise TypeError("run state must be a JSON object")

    plan_identity = payload.get("plan_identity")
    repo_identity = payload.get("repo_identity")
    if not isinstance(plan_identity, str) or not isinstance(repo_identity, str):
        raise ValueError("run state plan_identity/repo_identity must be strings")

    raw_completed = payload.get("completed", [])
    if not isinstance(raw_completed, list):
        raise TypeError("run state completed must be an array")
    completed: set[int] = set()
    for item in raw_completed:
        if isinstance(item, bool) or not isinstance(item, int) or item < 0:
            raise ValueError(f"run state completed entry is not an index: {item!r}")
        completed.add(item)

    artifacts: dict[int, str] | None = None
    raw_artifacts = payload.get("last_artifact_by_task")
    if raw_artifacts is not None:
        if not isinstance(raw_artifacts, dict):
            raise TypeError("run state last_artifact_by_task must be an object")
        artifacts = {int(key): str(value) for key, value in raw_artifacts.items()}

    marker = payload.get("last_resolved_marker")
    if marker is not None and not isinstance(marker, str):
        raise TypeError("run state last_resolved_marker must be a string")

    return RunState(
        plan_identity=plan_identity,
        repo_identity=repo_identity,
        completed=completed,
        last_artifact_by_task=artifacts,
        last_resolved_marker=marker,
    )
