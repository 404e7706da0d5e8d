"""Error taxonomy shared by the scheduler, phases and reviewer client."""

from __future__ import annotations

from pathlib import Path


class PealError(RuntimeError):
    """Base class for orchestrator errors."""


class ConfigError(PealError):
    """Resolved configuration is incomplete or inconsistent."""


class PlanError(PealError):
    """Plan file is missing, unreadable, malformed or empty."""

    def __init__(self, message: str, *, path: Path | None = None) -> None:
        super().__init__(message)
        self.path = path


class AgentNotFoundError(PealError):
    """Configured agent command cannot be resolved to an executable."""

    def __init__(self, command: str) -> None:
        super().__init__(
            f"Agent command not found: {command!r}. "
            "Install the agent CLI or point agent_cmd at an executable.",
        )
        self.command = command


class StateWriteError(PealError):
    """Run state could not be persisted."""

    def __init__(self, path: Path, detail: str) -> None:
        super().__init__(f"Failed to write run state {path}: {detail}")
        self.path = path
        self.detail = detail


class PhaseError(PealError):
    """Agent invocation failure with retryability hint."""

    def __init__(self, message: str, *, phase: str, retryable: bool) -> None:
        super().__init__(message)
        self.phase = phase
        self.retryable = retryable


class PhaseTimeoutError(PhaseError):
    def __init__(self, *, phase: str, timeout_seconds: float) -> None:
        super().__init__(
            f"Phase {phase} timed out after {timeout_seconds:g}s",
            phase=phase,
            retryable=True,
        )
        self.timeout_seconds = timeout_seconds


class PhaseExitError(PhaseError):
    def __init__(self, *, phase: str, exit_code: int | None, stderr: str) -> None:
        super().__init__(
            f"Phase {phase} exited with code {exit_code} (stderr {len(stderr)} chars)",
            phase=phase,
            retryable=True,
        )
        self.exit_code = exit_code
        self.stderr = stderr


class PhaseSpawnError(PhaseError):
    def __init__(self, *, phase: str, detail: str) -> None:
        super().__init__(
            f"Phase {phase} failed to start: {detail}",
            phase=phase,
            retryable=False,
        )


class InvalidPhaseOutputError(PhaseError):
    """Plan output failed validation and its single re-invocation did not recover."""

    def __init__(self, *, phase: str, reason: str) -> None:
        super().__init__(
            f"Phase {phase} produced invalid output: {reason}",
            phase=phase,
            retryable=False,
        )
        self.reason = reason


class ReviewerError(PealError):
    """Reviewer start/run invocation failed."""

    def __init__(self, *, step: str, detail: str) -> None:
        super().__init__(f"Reviewer {step} failed: {detail}")
        self.step = step
        self.detail = detail


class FindingsRemainError(PealError):
    """Findings still present after the last address round."""

    def __init__(self, *, task_index: int, rounds: int, remaining: int) -> None:
        super().__init__(
            f"Task {task_index}: {remaining} finding(s) remain after {rounds} address round(s)",
        )
        self.task_index = task_index
        self.rounds = rounds
        self.remaining = remaining


class CircuitBreakerTripped(PealError):
    """Consecutive task failures reached the configured cap."""

    def __init__(self, *, consecutive_failures: int, cap: int) -> None:
        super().__init__(
            f"Stopping run: {consecutive_failures} consecutive task failures (cap {cap})",
        )
        self.consecutive_failures = consecutive_failures
        self.cap = cap


class StateReadError(PealError):
    """Stored run state exists but cannot be parsed."""

    def __init__(self, path: Path, detail: str) -> None:
        super().__init__(f"Failed to read run state {path}: {detail}")
        self.path = path
        self.detail = detail
