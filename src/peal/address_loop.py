"""Bounded review-and-fix loop run after a task's execute phase."""

from __future__ import annotations

import logging
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from enum import Enum
from typing import TypeVar

from peal.errors import PhaseError, ReviewerError
from peal.findings import DismissRule, Finding, apply_dismiss_rules, triage_says_nothing_actionable
from peal.phases import PhaseContext, PhaseExecutor, PhaseKind
from peal.plan import Task
from peal.reviewer import ReviewCheck, ReviewerClient

logger = logging.getLogger(__name__)

_T = TypeVar("_T")


class AddressResult(str, Enum):
    """Terminal states of the address loop."""

    RESOLVED = "resolved"
    FINDINGS_REMAINING = "findings_remaining"
    SKIPPED = "skipped"


@dataclass(slots=True)
class AddressLoopOutcome:
    """Terminal state plus round accounting for one task."""

    result: AddressResult
    rounds_used: int = 0
    remaining: list[Finding] = field(default_factory=list)
    dismissed: int = 0
    skip_reason: str | None = None


class _ReviewSkipped(Exception):
    def __init__(self, reason: str) -> None:
        super().__init__(reason)
        self.reason = reason


class AddressLoop:
    """Drive reviewer check → (dismiss, triage) → address → re-check rounds.

    The round counter is hard-capped at `max_rounds`; exceeding it with
    findings still present yields ``FINDINGS_REMAINING`` regardless of the
    run-level findings policy.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        phases: PhaseExecutor,
        reviewer: ReviewerClient | None,
        max_rounds: int,
        on_reviewer_failure: str = "fail",
        triage: bool = False,
        dismiss_rules: Sequence[DismissRule] = (),
    ) -> None:
        self.phases = phases
        self.reviewer = reviewer
        self.max_rounds = max_rounds
        self.on_reviewer_failure = on_reviewer_failure
        self.triage = triage
        self.dismiss_rules = tuple(dismiss_rules)

    def run(self, task: Task) -> AddressLoopOutcome:
        if self.reviewer is None:
            logger.info("Task %s: no reviewer available; address loop skipped", task.index)
            return AddressLoopOutcome(AddressResult.SKIPPED, skip_reason="no reviewer")

        reviewer = self.reviewer
        started = False
        try:
            self._reviewer_call("start", reviewer.start_session)
            started = True
            check = self._reviewer_call("run", reviewer.check)
            return self._rounds(task, check, reviewer)
        except _ReviewSkipped as skipped:
            logger.warning(
                "Task %s: reviewer failure, address loop skipped: %s",
                task.index,
                skipped.reason,
            )
            return AddressLoopOutcome(AddressResult.SKIPPED, skip_reason=skipped.reason)
        finally:
            if started:
                self._finish(task, reviewer)

    def _rounds(self, task: Task, check: ReviewCheck, reviewer: ReviewerClient) -> AddressLoopOutcome:
        round_no = 0
        dismissed_total = 0
        while True:
            if not check.findings_present:
                logger.info("Task %s: no findings after %d round(s)", task.index, round_no)
                return AddressLoopOutcome(
                    AddressResult.RESOLVED,
                    rounds_used=round_no,
                    dismissed=dismissed_total,
                )

            actionable, dismissed = apply_dismiss_rules(
                check.classification.findings,
                self.dismiss_rules,
            )
            for finding, rule in dismissed:
                logger.info(
                    "Task %s: auto-dismissed finding %s (%s)",
                    task.index,
                    finding.identifier,
                    rule.reason or rule.pattern.pattern,
                )
            dismissed_total += len(dismissed)
            if not actionable:
                return AddressLoopOutcome(
                    AddressResult.RESOLVED,
                    rounds_used=round_no,
                    dismissed=dismissed_total,
                )

            if round_no >= self.max_rounds:
                logger.warning(
                    "Task %s: %d finding(s) remain after %d address round(s)",
                    task.index,
                    len(actionable),
                    round_no,
                )
                return AddressLoopOutcome(
                    AddressResult.FINDINGS_REMAINING,
                    rounds_used=round_no,
                    remaining=actionable,
                    dismissed=dismissed_total,
                )

            if self.triage and self._nothing_actionable(task, actionable):
                return AddressLoopOutcome(
                    AddressResult.RESOLVED,
                    rounds_used=round_no,
                    dismissed=dismissed_total,
                )

            round_no += 1
            logger.info(
                "Task %s: address round %d/%d (%d finding(s))",
                task.index,
                round_no,
                self.max_rounds,
                len(actionable),
            )
            self.phases.run_phase(PhaseKind.ADDRESS, task, PhaseContext(findings=actionable))
            check = self._reviewer_call("run", reviewer.check)

    def _nothing_actionable(self, task: Task, findings: list[Finding]) -> bool:
        try:
            output = self.phases.run_phase(
                PhaseKind.TRIAGE,
                task,
                PhaseContext(findings=findings),
            )
        except PhaseError as error:
            logger.warning("Task %s: triage failed, addressing findings: %s", task.index, error)
            return False
        if triage_says_nothing_actionable(output.stdout):
            logger.info("Task %s: triage found nothing actionable", task.index)
            return True
        return False

    def _reviewer_call(self, step: str, call: Callable[[], _T]) -> _T:
        try:
            return call()
        except ReviewerError as error:
            if self.on_reviewer_failure == "skip":
                raise _ReviewSkipped(str(error)) from error
            if self.on_reviewer_failure != "retry_once":
                raise
            logger.warning("Reviewer %s failed, retrying once: %s", step, error)
        return call()

    def _finish(self, task: Task, reviewer: ReviewerClient) -> None:
        try:
            reviewer.finish_session()
        except ReviewerError as error:
            logger.warning("Task %s: reviewer finish failed (ignored): %s", task.index, error)
