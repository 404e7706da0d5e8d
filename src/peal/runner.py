"""Scheduler: drives plan segments through phases and the address loop.

The coordinating thread is the only reader and writer of `RunState`. Inside a
concurrent group, plan/execute streams run on a bounded thread pool and hand
back isolated `StreamResult` values; everything after the join barrier
(address loops, state mutation, failure accounting) happens on the
coordinating thread in ascending task-index order.
"""

from __future__ import annotations

import logging
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path

from peal.address_loop import AddressLoop, AddressLoopOutcome, AddressResult
from peal.backend import ProcessExecutor, SubprocessExecutor, resolve_command
from peal.config import Settings
from peal.errors import (
    CircuitBreakerTripped,
    ConfigError,
    FindingsRemainError,
    PealError,
    PhaseSpawnError,
    StateWriteError,
)
from peal.findings import FindingsFallback
from peal.phases import PhaseContext, PhaseExecutor, PhaseKind, PhaseOutput
from peal.plan import ConcurrentGroup, Plan, Task
from peal.reviewer import ReviewerClient, resolve_reviewer
from peal.state import RunState, identity_for, load_state, save_state

logger = logging.getLogger(__name__)


class RunClassification(str, Enum):
    """Final classification consumed by the summary and exit-code mapping."""

    CLEAN = "clean"
    COMPLETED_WITH_ISSUES = "completed_with_issues"
    HARD_FAILURE = "hard_failure"
    CIRCUIT_BREAKER = "circuit_breaker"

    @property
    def exit_code(self) -> int:
        return _EXIT_CODES[self]


_EXIT_CODES = {
    RunClassification.CLEAN: 0,
    RunClassification.HARD_FAILURE: 1,
    RunClassification.COMPLETED_WITH_ISSUES: 2,
    RunClassification.CIRCUIT_BREAKER: 3,
}


@dataclass(slots=True)
class StreamResult:
    """Plan/execute result returned by one worker; never shared."""

    index: int
    plan: PhaseOutput | None = None
    execute: PhaseOutput | None = None
    error: PealError | None = None


@dataclass(slots=True)
class TaskOutcome:
    """Per-task result of one run."""

    index: int
    phase1_ok: bool = False
    phase2_ok: bool = False
    address: AddressLoopOutcome | None = None
    error: PealError | None = None
    duration_seconds: float = 0.0

    @property
    def succeeded(self) -> bool:
        return self.error is None

    @property
    def address_result(self) -> AddressResult | None:
        return None if self.address is None else self.address.result


@dataclass(slots=True)
class RunOutcome:
    """Aggregate result of a run."""

    classification: RunClassification
    outcomes: list[TaskOutcome] = field(default_factory=list)
    skipped_indices: list[int] = field(default_factory=list)
    error: str | None = None

    @property
    def failed_indices(self) -> list[int]:
        return [outcome.index for outcome in self.outcomes if not outcome.succeeded]

    @property
    def exit_code(self) -> int:
        return self.classification.exit_code


class _RunAborted(Exception):
    def __init__(self, error: PealError) -> None:
        super().__init__(str(error))
        self.error = error


class Runner:
    """Runs every segment of a plan against one repository."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        plan: Plan,
        state: RunState,
        state_dir: Path,
        phases: PhaseExecutor,
        address_loop: AddressLoop,
        parallel: bool = False,
        max_parallel: int = 4,
        continue_with_remaining_tasks: bool = False,
        max_consecutive_task_failures: int | None = None,
        on_findings_remaining: str = "fail",
    ) -> None:
        self.plan = plan
        self.state = state
        self.state_dir = state_dir
        self.phases = phases
        self.address_loop = address_loop
        self.parallel = parallel
        self.max_parallel = max_parallel
        self.continue_with_remaining_tasks = continue_with_remaining_tasks
        self.max_consecutive_task_failures = max_consecutive_task_failures
        self.on_findings_remaining = on_findings_remaining
        self.consecutive_failures = 0
        self._outcomes: list[TaskOutcome] = []
        self._skipped: list[int] = []

    def run(self) -> RunOutcome:
        """Execute all segments; task failures never escape as exceptions."""

        self.consecutive_failures = 0
        self._outcomes = []
        self._skipped = []
        logger.info(
            "Starting run: %d task(s), %d segment(s), %d already completed",
            len(self.plan.tasks),
            len(self.plan.segments),
            len(self.state.completed),
        )
        try:
            for segment in self.plan.segments:
                if isinstance(segment, ConcurrentGroup):
                    self._run_group(segment)
                else:
                    self._run_sequential(segment.index)
        except CircuitBreakerTripped as error:
            logger.error("%s", error)
            return self._result(RunClassification.CIRCUIT_BREAKER, error=str(error))
        except _RunAborted as aborted:
            logger.error("Run stopped: %s", aborted.error)
            return self._result(RunClassification.HARD_FAILURE, error=str(aborted.error))

        issues = any(not outcome.succeeded for outcome in self._outcomes) or any(
            outcome.address_result is AddressResult.FINDINGS_REMAINING
            for outcome in self._outcomes
        )
        classification = (
            RunClassification.COMPLETED_WITH_ISSUES if issues else RunClassification.CLEAN
        )
        logger.info(
            "Run finished: %s (ran %d, skipped %d)",
            classification.value,
            len(self._outcomes),
            len(self._skipped),
        )
        return self._result(classification)

    def _run_sequential(self, index: int) -> None:
        if self.state.is_completed(index):
            logger.info("Task %s already completed; skipping", index)
            self._skipped.append(index)
            return
        task = self.plan.task(index)
        started = time.monotonic()
        stream = self._run_streams(task)
        self._apply(self._finish_task(task, stream, started))

    def _run_group(self, group: ConcurrentGroup) -> None:
        pending = [index for index in group.indices if not self.state.is_completed(index)]
        done = [index for index in group.indices if self.state.is_completed(index)]
        if done:
            logger.info("Group %s: tasks %s already completed; skipping", group.indices, done)
            self._skipped.extend(done)

        if not self.parallel or self.max_parallel <= 1 or len(pending) <= 1:
            for index in pending:
                self._run_sequential(index)
            return

        started = time.monotonic()
        streams = self._run_streams_concurrently(pending)
        for index in pending:
            self._apply(self._finish_task(self.plan.task(index), streams[index], started))

    def _run_streams_concurrently(self, pending: list[int]) -> dict[int, StreamResult]:
        workers = min(self.max_parallel, len(pending))
        logger.info(
            "Running plan/execute for tasks %s on %d worker(s)",
            pending,
            workers,
        )
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="peal-task") as pool:
            futures = {
                index: pool.submit(self._run_streams, self.plan.task(index)) for index in pending
            }
        # leaving the pool context joins every worker
        return {index: future.result() for index, future in futures.items()}

    def _run_streams(self, task: Task) -> StreamResult:
        """Phase 1 and 2 for one task; safe to call from a worker thread."""

        stream = StreamResult(index=task.index)
        kind = PhaseKind.PLAN
        try:
            stream.plan = self.phases.run_phase(kind, task)
            kind = PhaseKind.EXECUTE
            stream.execute = self.phases.run_phase(
                PhaseKind.EXECUTE,
                task,
                PhaseContext(plan_text=stream.plan.stdout),
            )
        except PealError as error:
            stream.error = error
        except Exception as error:  # noqa: BLE001
            logger.exception("Task %s: phase %s raised unexpectedly", task.index, kind.value)
            stream.error = PhaseSpawnError(
                phase=kind.value,
                detail=f"{type(error).__name__}: {error}",
            )
        return stream

    def _finish_task(self, task: Task, stream: StreamResult, started: float) -> TaskOutcome:
        outcome = TaskOutcome(
            index=task.index,
            phase1_ok=stream.plan is not None,
            phase2_ok=stream.execute is not None,
            error=stream.error,
        )
        if stream.error is None:
            try:
                outcome.address = self.address_loop.run(task)
            except PealError as error:
                outcome.error = error
        if (
            outcome.address is not None
            and outcome.address.result is AddressResult.FINDINGS_REMAINING
            and self.on_findings_remaining == "fail"
        ):
            outcome.error = FindingsRemainError(
                task_index=task.index,
                rounds=outcome.address.rounds_used,
                remaining=len(outcome.address.remaining),
            )
        outcome.duration_seconds = time.monotonic() - started
        return outcome

    def _apply(self, outcome: TaskOutcome) -> None:
        """Record one outcome; the only place run state is mutated."""

        self._outcomes.append(outcome)
        error = outcome.error
        if error is None:
            self.consecutive_failures = 0
            self.state.mark_completed(outcome.index)
            logger.info(
                "Task %s completed in %.1fs (address=%s)",
                outcome.index,
                outcome.duration_seconds,
                outcome.address_result.value if outcome.address_result else "none",
            )
            try:
                save_state(self.state, self.state_dir)
            except StateWriteError as write_error:
                raise _RunAborted(write_error) from write_error
            return

        self.consecutive_failures += 1
        logger.error(
            "Task %s failed (%d consecutive): %s",
            outcome.index,
            self.consecutive_failures,
            error,
        )
        self._persist_best_effort()

        cap = self.max_consecutive_task_failures
        if cap is not None and self.consecutive_failures >= cap:
            raise CircuitBreakerTripped(consecutive_failures=self.consecutive_failures, cap=cap)
        if not self.continue_with_remaining_tasks:
            raise _RunAborted(error)

    def _persist_best_effort(self) -> None:
        try:
            save_state(self.state, self.state_dir)
        except StateWriteError as error:
            logger.error("Could not persist run state after task failure: %s", error)

    def _result(self, classification: RunClassification, error: str | None = None) -> RunOutcome:
        return RunOutcome(
            classification=classification,
            outcomes=list(self._outcomes),
            skipped_indices=list(self._skipped),
            error=error,
        )


def create_runner(
    settings: Settings,
    plan: Plan,
    *,
    executor: ProcessExecutor | None = None,
) -> Runner:
    """Wire a runner from resolved settings.

    Resolves the agent before anything runs (`AgentNotFoundError` when it is
    missing) and loads resumable state for this plan/repo pair.
    """

    if settings.plan_path is None or settings.repo_path is None:
        raise ConfigError("plan_path and repo_path must be resolved before running")
    executor = executor or SubprocessExecutor()
    repo_path = settings.repo_path.expanduser().resolve()
    agent_argv = resolve_command(settings.agent.agent_cmd)

    state = load_state(
        settings.state_dir,
        plan_identity=identity_for(settings.plan_path),
        repo_identity=identity_for(repo_path),
    )

    phases = PhaseExecutor(
        executor=executor,
        agent_argv=agent_argv,
        settings=settings,
        repo_path=repo_path,
    )
    reviewer_path = resolve_reviewer(settings.reviewer.reviewer_cmd)
    reviewer = None
    if reviewer_path is not None:
        reviewer = ReviewerClient(
            executor=executor,
            reviewer_path=reviewer_path,
            repo_path=repo_path,
            timeout_seconds=settings.phases.phase_timeout_sec,
            start_ref=settings.reviewer.reviewer_start_ref,
            fallback=FindingsFallback(settings.reviewer.findings_fallback),
            findings_pattern=settings.reviewer.compiled_findings_pattern(),
        )
    address_loop = AddressLoop(
        phases=phases,
        reviewer=reviewer,
        max_rounds=settings.reviewer.max_address_rounds,
        on_reviewer_failure=settings.reviewer.on_reviewer_failure,
        triage=settings.reviewer.address_triage,
        dismiss_rules=settings.reviewer.dismiss_rules(),
    )
    return Runner(
        plan=plan,
        state=state,
        state_dir=settings.state_dir,
        phases=phases,
        address_loop=address_loop,
        parallel=settings.scheduler.parallel,
        max_parallel=settings.scheduler.max_parallel,
        continue_with_remaining_tasks=settings.scheduler.continue_with_remaining_tasks,
        max_consecutive_task_failures=settings.scheduler.max_consecutive_task_failures,
        on_findings_remaining=settings.reviewer.on_findings_remaining,
    )
