from __future__ import annotations

import json
from datetime import UTC, datetime
from pathlib import Path

import allure

from peal.address_loop import AddressLoopOutcome, AddressResult
from peal.config import Settings
from peal.errors import PhaseExitError
from peal.runner import RunClassification, RunOutcome, TaskOutcome
from peal.summary import build_summary, write_run_summary

pytestmark = [
    allure.epic("Run Summary"),
    allure.feature("Summary File"),
]


def _outcome() -> RunOutcome:
    return RunOutcome(
        classification=RunClassification.COMPLETED_WITH_ISSUES,
        outcomes=[
            TaskOutcome(
                index=1,
                phase1_ok=True,
                phase2_ok=True,
                address=AddressLoopOutcome(AddressResult.RESOLVED),
            ),
            TaskOutcome(
                index=2,
                phase1_ok=True,
                phase2_ok=True,
                address=AddressLoopOutcome(AddressResult.FINDINGS_REMAINING, rounds_used=5),
            ),
            TaskOutcome(
                index=3,
                phase1_ok=True,
                error=PhaseExitError(phase="execute", exit_code=2, stderr=""),
            ),
        ],
    )


def test_build_summary_counts_outcomes() -> None:
    settings = Settings(plan_path=Path("plan.md"), repo_path=Path("repo"))
    now = datetime(2026, 3, 1, 12, 0, tzinfo=UTC)

    summary = build_summary(_outcome(), settings, now=now)

    assert summary.tasks_completed == 2
    assert summary.tasks_failed == 1
    assert summary.tasks_with_remaining_findings == 1
    assert summary.classification == "completed_with_issues"
    assert summary.exit_code == 2
    assert summary.completed_at == "2026-03-01T12:00:00+00:00"


def test_write_run_summary_is_atomic_json(tmp_path: Path) -> None:
    settings = Settings(plan_path=Path("plan.md"), repo_path=Path("repo"), state_dir=tmp_path)
    summary = build_summary(_outcome(), settings)

    assert write_run_summary(summary, settings.summary_path) is True

    payload = json.loads((tmp_path / "run_summary.json").read_text("utf-8"))
    assert payload["tasks_failed"] == 1
    assert payload["plan_path"] == "plan.md"
    assert not (tmp_path / "run_summary.json.tmp").exists()


def test_write_run_summary_failure_is_reported_not_raised(tmp_path: Path, caplog) -> None:
    blocker = tmp_path / "blocker"
    blocker.write_text("file", "utf-8")
    summary = build_summary(_outcome(), Settings())

    assert write_run_summary(summary, blocker / "run_summary.json") is False
    assert "Could not write run summary" in caplog.text
