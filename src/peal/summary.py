"""Machine-readable summary written at the end of every run."""

from __future__ import annotations

import json
import logging
import os
from dataclasses import asdict, dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from peal.address_loop import AddressResult
from peal.config import Settings
from peal.runner import RunOutcome

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class RunSummary:
    """Counts and identity of one finished run."""

    tasks_completed: int
    tasks_failed: int
    tasks_with_remaining_findings: int
    classification: str
    exit_code: int
    plan_path: str
    repo_path: str
    completed_at: str

    def to_payload(self) -> dict[str, Any]:
        return asdict(self)


def build_summary(outcome: RunOutcome, settings: Settings, *, now: datetime | None = None) -> RunSummary:
    completed = sum(1 for item in outcome.outcomes if item.succeeded)
    remaining = sum(
        1 for item in outcome.outcomes if item.address_result is AddressResult.FINDINGS_REMAINING
    )
    return RunSummary(
        tasks_completed=completed,
        tasks_failed=len(outcome.failed_indices),
        tasks_with_remaining_findings=remaining,
        classification=outcome.classification.value,
        exit_code=outcome.exit_code,
        plan_path=str(settings.plan_path or ""),
        repo_path=str(settings.repo_path or ""),
        completed_at=(now or datetime.now(tz=UTC)).isoformat(),
    )


def write_run_summary(summary: RunSummary, path: Path) -> bool:
    """Write `summary` atomically; a failure is logged and never changes the exit code."""

    tmp_path = path.with_name(f"{path.name}.tmp")
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path.write_text(
            json.dumps(summary.to_payload(), ensure_ascii=False, indent=2, sort_keys=True),
            "utf-8",
        )
        os.replace(tmp_path, path)
    except OSError as error:
        logger.warning("Could not write run summary to %s: %s", path, error)
        return False
    logger.info("Run summary written to %s", path)
    return True
