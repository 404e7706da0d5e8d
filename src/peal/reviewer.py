"""External reviewer client: session start, findings check, session finish."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from pathlib import Path

from peal.backend import ProcessExecutor, ProcessResult, resolve_executable
from peal.errors import ReviewerError
from peal.findings import FindingsFallback, ReviewClassification, ReviewMode, classify_review_output

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class ReviewCheck:
    """One findings-check invocation and its classification."""

    result: ProcessResult
    classification: ReviewClassification

    @property
    def findings_present(self) -> bool:
        return self.classification.findings_present


def resolve_reviewer(reviewer_cmd: str | None) -> Path | None:
    """Locate the reviewer binary; absence means the address loop is skipped."""

    if not reviewer_cmd:
        return None
    resolved = resolve_executable(reviewer_cmd)
    if resolved is None:
        logger.warning("Reviewer %r not found; address loop will be skipped", reviewer_cmd)
    return resolved


class ReviewerClient:
    """Invoke ``<reviewer> start|run|finish`` in the target repository."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        executor: ProcessExecutor,
        reviewer_path: Path,
        repo_path: Path,
        timeout_seconds: float,
        start_ref: str | None = None,
        fallback: FindingsFallback = FindingsFallback.EXIT_CODE_OR_OUTPUT,
        findings_pattern: re.Pattern[str] | None = None,
    ) -> None:
        self.executor = executor
        self.reviewer_path = reviewer_path
        self.repo_path = repo_path
        self.timeout_seconds = timeout_seconds
        self.start_ref = start_ref
        self.fallback = fallback
        self.findings_pattern = findings_pattern

    def start_session(self) -> ProcessResult:
        args = ["start"] if self.start_ref is None else ["start", self.start_ref]
        result = self._run("start", args)
        if not result.succeeded:
            raise ReviewerError(
                step="start",
                detail=f"exit code {result.exit_code}: {result.stderr.strip()[:200]}",
            )
        return result

    def check(self) -> ReviewCheck:
        """Run the reviewer; a non-zero exit is a findings signal, not an error."""

        result = self._run("run", ["run"])
        classification = classify_review_output(
            stdout=result.stdout,
            exit_code=result.exit_code,
            fallback=self.fallback,
            findings_pattern=self.findings_pattern,
        )
        if classification.mode is ReviewMode.FALLBACK:
            logger.warning(
                "Review output not structured; using fallback heuristic %s (rule=%s)",
                self.fallback.value,
                classification.matched_rule,
            )
        logger.info("Reviewer check: %s", classification.to_log_details())
        return ReviewCheck(result=result, classification=classification)

    def finish_session(self) -> ProcessResult:
        result = self._run("finish", ["finish"])
        if not result.succeeded:
            raise ReviewerError(step="finish", detail=f"exit code {result.exit_code}")
        return result

    def _run(self, step: str, args: list[str]) -> ProcessResult:
        logger.info("Invoking reviewer %s %s", self.reviewer_path.name, " ".join(args))
        try:
            result = self.executor.run(
                str(self.reviewer_path),
                args,
                self.repo_path,
                self.timeout_seconds,
            )
        except OSError as error:
            raise ReviewerError(step=step, detail=f"spawn failed: {error}") from error
        if result.timed_out:
            raise ReviewerError(step=step, detail="timed out")
        logger.debug(
            "Reviewer %s exit=%s stdout=%d chars stderr=%d chars",
            step,
            result.exit_code,
            len(result.stdout),
            len(result.stderr),
        )
        return result
