"""Controllers for peal CLI commands."""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from peal.backend import ProcessExecutor
from peal.config import Settings
from peal.errors import ConfigError
from peal.logs import configure_logging
from peal.plan import ConcurrentGroup, Plan, parse_plan_file
from peal.runner import RunOutcome, TaskOutcome, create_runner
from peal.state import clear_state, read_state, state_file_path
from peal.summary import build_summary, write_run_summary


@dataclass(slots=True)
class RunCommand:
    """CLI input for a plan run."""

    config_path: Path | None = None
    task: int | None = None
    from_task: int | None = None
    overrides: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class PlanCommand:
    """CLI input for plan inspection."""

    plan_path: Path


@dataclass(slots=True)
class StateCommand:
    """CLI input for state inspection and reset."""

    state_dir: Path


@dataclass(slots=True)
class RunReport:
    """Printable run result plus the process exit code."""

    lines: list[str]
    exit_code: int
    outcome: RunOutcome | None = None


class PealCliController:
    """Coordinates run, plan and state CLI operations."""

    def __init__(self, executor: ProcessExecutor | None = None) -> None:
        self.executor = executor

    def run(self, command: RunCommand, *, environ: dict[str, str] | None = None) -> RunReport:
        if command.task is not None and command.from_task is not None:
            raise ConfigError("--task and --from-task cannot be combined.")

        settings = Settings.load(
            config_path=command.config_path,
            overrides=command.overrides,
            environ=environ,
        )
        try:
            configure_logging(settings.log_level, settings.log_file)
        except ValueError as error:
            raise ConfigError(str(error)) from error
        except OSError as error:
            raise ConfigError(f"Cannot open log file {settings.log_file}: {error}") from error
        settings.validate()

        plan = parse_plan_file(settings.plan_path)  # type: ignore[arg-type]
        if command.task is not None:
            plan = plan.only_task(command.task)
        elif command.from_task is not None:
            plan = plan.from_task(command.from_task)

        runner = create_runner(settings, plan, executor=self.executor)
        outcome = runner.run()
        write_run_summary(build_summary(outcome, settings), settings.summary_path)

        lines = [_task_line(item) for item in outcome.outcomes]
        if outcome.skipped_indices:
            skipped = ", ".join(str(index) for index in outcome.skipped_indices)
            lines.append(f"Skipped (already completed): {skipped}")
        lines.append(
            "Run finished: "
            f"classification={outcome.classification.value} "
            f"completed={sum(1 for item in outcome.outcomes if item.succeeded)} "
            f"failed={len(outcome.failed_indices)} exit_code={outcome.exit_code}",
        )
        if outcome.error:
            lines.append(f"Error: {outcome.error}")
        lines.append(f"Summary: {settings.summary_path}")
        return RunReport(lines=lines, exit_code=outcome.exit_code, outcome=outcome)

    def show_plan(self, command: PlanCommand) -> list[str]:
        plan = parse_plan_file(command.plan_path)
        lines = [f"Plan: {command.plan_path} ({len(plan.tasks)} task(s))"]
        for task in plan.tasks:
            mode = "parallel" if task.concurrent else "sequential"
            first_line = task.text.splitlines()[0] if task.text else ""
            lines.append(f"- Task {task.index} [{mode}] {first_line}")
        lines.extend(_segment_lines(plan))
        return lines

    def show_state(self, command: StateCommand) -> list[str]:
        path = state_file_path(command.state_dir)
        state = read_state(command.state_dir)
        if state is None:
            return [f"No run state at {path}"]
        completed = ", ".join(str(index) for index in sorted(state.completed)) or "none"
        return [
            f"State: {path}",
            f"Plan: {state.plan_identity}",
            f"Repo: {state.repo_identity}",
            f"Completed tasks: {completed}",
        ]

    def reset_state(self, command: StateCommand) -> list[str]:
        path = state_file_path(command.state_dir)
        if clear_state(command.state_dir):
            return [f"Removed run state {path}"]
        return [f"No run state at {path}"]


def _segment_lines(plan: Plan) -> list[str]:
    lines = ["Segments:"]
    for number, segment in enumerate(plan.segments, start=1):
        indices = ", ".join(str(index) for index in segment.indices)
        kind = "concurrent" if isinstance(segment, ConcurrentGroup) else "sequential"
        lines.append(f"  {number}. {kind} [{indices}]")
    return lines


def _task_line(outcome: TaskOutcome) -> str:
    status = "ok" if outcome.succeeded else "failed"
    address = outcome.address_result.value if outcome.address_result else "-"
    line = (
        f"Task {outcome.index}: {status} "
        f"plan={'ok' if outcome.phase1_ok else 'no'} "
        f"execute={'ok' if outcome.phase2_ok else 'no'} "
        f"address={address} duration={outcome.duration_seconds:.1f}s"
    )
    if outcome.error is not None:
        line += f" error={outcome.error}"
    return line
