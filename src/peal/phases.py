"""Agent phase invocation with timeout, bounded retry and plan-text validation."""

from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass
from enum import Enum
from pathlib import Path

from peal import prompts
from peal.backend import ProcessExecutor, ProcessResult
from peal.config import Settings
from peal.errors import (
    InvalidPhaseOutputError,
    PhaseError,
    PhaseExitError,
    PhaseSpawnError,
    PhaseTimeoutError,
)
from peal.findings import Finding
from peal.plan import Task

logger = logging.getLogger(__name__)


class PhaseKind(str, Enum):
    """Agent invocation kinds."""

    PLAN = "plan"
    EXECUTE = "execute"
    ADDRESS = "address"
    TRIAGE = "triage"


@dataclass(slots=True)
class PhaseOutput:
    """Captured output of a successful phase invocation."""

    stdout: str
    stderr: str
    attempts: int = 1


@dataclass(slots=True)
class PhaseContext:
    """Phase-specific prompt input."""

    plan_text: str = ""
    findings: Sequence[Finding] = ()


class PhaseExecutor:
    """Build the phase prompt, run the agent and classify the result.

    Retries are counted per `run_phase` call; phases never share a retry allowance.
    Never touches run state.
    """

    def __init__(
        self,
        *,
        executor: ProcessExecutor,
        agent_argv: Sequence[str],
        settings: Settings,
        repo_path: Path,
    ) -> None:
        if not agent_argv:
            raise ValueError("agent_argv must contain at least the agent executable")
        self.executor = executor
        self.agent_argv = list(agent_argv)
        self.settings = settings
        self.repo_path = repo_path

    @property
    def phase_retries(self) -> int:
        return self.settings.phases.phase_retry_count

    @property
    def address_retries(self) -> int:
        return self.settings.phases.effective_phase_3_retries

    def run_phase(
        self,
        kind: PhaseKind,
        task: Task,
        context: PhaseContext | None = None,
        max_extra_attempts: int | None = None,
    ) -> PhaseOutput:
        """Run one phase for `task`, raising a `PhaseError` subclass when it fails."""

        context = context or PhaseContext()
        if max_extra_attempts is None:
            max_extra_attempts = (
                self.phase_retries
                if kind in (PhaseKind.PLAN, PhaseKind.EXECUTE)
                else self.address_retries
            )
        prompt = _build_prompt(kind, task, context)

        if kind is PhaseKind.TRIAGE:
            return self._run_triage(task, prompt, max_extra_attempts)

        output = self._invoke_with_retry(kind, task, prompt, max_extra_attempts)
        if kind is not PhaseKind.PLAN or not self.settings.phases.validate_plan_text:
            return output

        reason = self._plan_text_problem(output.stdout)
        if reason is None:
            return output
        logger.warning(
            "Task %s: plan text rejected (%s, %d chars); retrying phase plan once",
            task.index,
            reason,
            len(output.stdout),
        )
        attempt = output.attempts + 1
        result = self._invoke(kind, task, prompt, attempt, attempt)
        if result.timed_out:
            reason = "plan re-invocation timed out"
        elif result.exit_code != 0:
            reason = f"plan re-invocation exited with code {result.exit_code}"
        else:
            reason = self._plan_text_problem(result.stdout)
        if reason is not None:
            raise InvalidPhaseOutputError(phase=kind.value, reason=reason)
        return PhaseOutput(stdout=result.stdout, stderr=result.stderr, attempts=attempt)

    def _invoke_with_retry(
        self,
        kind: PhaseKind,
        task: Task,
        prompt: str,
        max_extra_attempts: int,
    ) -> PhaseOutput:
        max_attempts = 1 + max(0, max_extra_attempts)
        for attempt in range(1, max_attempts + 1):
            result = self._invoke(kind, task, prompt, attempt, max_attempts)
            try:
                _check_result(kind, result, self.settings.phases.phase_timeout_sec)
            except PhaseError as error:
                if attempt < max_attempts:
                    logger.warning(
                        "Task %s: phase %s attempt %d/%d failed, retrying: %s",
                        task.index,
                        kind.value,
                        attempt,
                        max_attempts,
                        error,
                    )
                    continue
                logger.error(
                    "Task %s: phase %s failed after %d attempt(s): %s",
                    task.index,
                    kind.value,
                    attempt,
                    error,
                )
                raise
            logger.info(
                "Task %s: phase %s complete (attempt %d/%d, stdout %d chars)",
                task.index,
                kind.value,
                attempt,
                max_attempts,
                len(result.stdout),
            )
            return PhaseOutput(stdout=result.stdout, stderr=result.stderr, attempts=attempt)
        raise AssertionError("retry loop returns or raises")  # pragma: no cover

    def _run_triage(self, task: Task, prompt: str, max_extra_attempts: int) -> PhaseOutput:
        """Triage treats an exhausted non-zero exit as an empty (actionable) reply."""

        max_attempts = 1 + max(0, max_extra_attempts)
        attempt = 1
        result = self._invoke(PhaseKind.TRIAGE, task, prompt, attempt, max_attempts)
        while not result.succeeded:
            logger.warning(
                "Task %s: triage attempt %d/%d failed (exit=%s timed_out=%s)",
                task.index,
                attempt,
                max_attempts,
                result.exit_code,
                result.timed_out,
            )
            if attempt >= max_attempts:
                break
            attempt += 1
            result = self._invoke(PhaseKind.TRIAGE, task, prompt, attempt, max_attempts)
        if result.succeeded:
            return PhaseOutput(stdout=result.stdout, stderr=result.stderr, attempts=attempt)
        if result.timed_out:
            raise PhaseTimeoutError(
                phase=PhaseKind.TRIAGE.value,
                timeout_seconds=self.settings.phases.phase_timeout_sec,
            )
        logger.warning("Task %s: triage reply unusable; treating findings as actionable", task.index)
        return PhaseOutput(stdout="", stderr=result.stderr, attempts=max_attempts)

    def _invoke(
        self,
        kind: PhaseKind,
        task: Task,
        prompt: str,
        attempt: int,
        max_attempts: int,
    ) -> ProcessResult:
        args = self.build_args(kind, prompt)
        logger.info(
            "Task %s: invoking phase %s (attempt %d/%d, timeout %ss)",
            task.index,
            kind.value,
            attempt,
            max_attempts,
            self.settings.phases.phase_timeout_sec,
        )
        logger.debug("Task %s: phase %s argv %s", task.index, kind.value, args_for_log(args))
        try:
            return self.executor.run(
                self.agent_argv[0],
                args,
                self.repo_path,
                self.settings.phases.phase_timeout_sec,
            )
        except OSError as error:
            raise PhaseSpawnError(phase=kind.value, detail=str(error)) from error

    def build_args(self, kind: PhaseKind, prompt: str) -> list[str]:
        """Agent argv after the executable; the prompt is always the last element."""

        agent = self.settings.agent
        args = [*self.agent_argv[1:], "--print"]
        if kind is PhaseKind.PLAN:
            args.extend(["--plan", "--workspace", str(self.repo_path), "--output-format", "text"])
        else:
            args.extend(["--workspace", str(self.repo_path), "--sandbox", agent.sandbox])
        if agent.model:
            args.extend(["--model", agent.model])
        args.append(prompt)
        return args

    def _plan_text_problem(self, stdout: str) -> str | None:
        text = stdout.strip()
        if not text:
            return "empty plan text"
        minimum = self.settings.phases.min_plan_text_len
        if minimum is not None and len(text) < minimum:
            return f"plan text shorter than {minimum} chars"
        return None


def args_for_log(args: Sequence[str]) -> list[str]:
    """Copy of `args` with the trailing prompt replaced by its length."""

    out = list(args)
    if out:
        out[-1] = f"<prompt len={len(out[-1])}>"
    return out


def _build_prompt(kind: PhaseKind, task: Task, context: PhaseContext) -> str:
    if kind is PhaseKind.PLAN:
        return prompts.plan_prompt(task.text)
    if kind is PhaseKind.EXECUTE:
        return prompts.execute_prompt(context.plan_text)
    if kind is PhaseKind.ADDRESS:
        return prompts.address_prompt(context.findings)
    return prompts.triage_prompt(context.findings)


def _check_result(kind: PhaseKind, result: ProcessResult, timeout_seconds: float) -> None:
    if result.timed_out:
        raise PhaseTimeoutError(phase=kind.value, timeout_seconds=timeout_seconds)
    if result.exit_code != 0:
        raise PhaseExitError(phase=kind.value, exit_code=result.exit_code, stderr=result.stderr)
