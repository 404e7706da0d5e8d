"""CLI entrypoint for peal."""

from pathlib import Path

import rich_click as click

from peal import __version__
from peal.config import FINDINGS_POLICIES
from peal.controllers import PealCliController, PlanCommand, RunCommand, StateCommand
from peal.errors import PealError

click.rich_click.USE_MARKDOWN = True
CONTROLLER = PealCliController()


@click.group()
@click.version_option(version=__version__, prog_name="peal")
def peal() -> None:
    """Plan-execute-address loop for agent-driven coding tasks."""


@peal.command("run")
@click.option("--plan", "plan_path", type=click.Path(path_type=Path), default=None, help="Plan file.")
@click.option(
    "--repo",
    "repo_path",
    type=click.Path(path_type=Path),
    default=None,
    help="Target repository the agent works in.",
)
@click.option(
    "--config",
    "config_path",
    type=click.Path(path_type=Path, exists=True, dir_okay=False),
    default=None,
    help="TOML config file. CLI options and PEAL_* env vars take precedence.",
)
@click.option("--agent-cmd", default=None, help="Agent command line (default: agent).")
@click.option("--model", default=None, help="Model passed to the agent.")
@click.option("--sandbox", default=None, help="Sandbox mode for execute/address phases.")
@click.option(
    "--state-dir",
    type=click.Path(path_type=Path, file_okay=False),
    default=None,
    help="Directory holding state.json and run_summary.json (default: .peal).",
)
@click.option(
    "--phase-timeout-sec",
    type=click.IntRange(min=1),
    default=None,
    help="Timeout for each agent or reviewer invocation.",
)
@click.option(
    "--parallel/--no-parallel",
    default=None,
    help="Run plan/execute of (parallel) task groups concurrently.",
)
@click.option(
    "--max-parallel",
    type=click.IntRange(min=1),
    default=None,
    help="Worker cap for concurrent task groups (default: 4).",
)
@click.option(
    "--max-address-rounds",
    type=click.IntRange(min=1),
    default=None,
    help="Address rounds per task before findings count as remaining (default: 5).",
)
@click.option(
    "--on-findings-remaining",
    type=click.Choice(FINDINGS_POLICIES, case_sensitive=False),
    default=None,
    help="Treat remaining findings as a task failure or a warning.",
)
@click.option(
    "--continue-with-remaining-tasks/--stop-on-failure",
    default=None,
    help="Keep running later tasks after a task fails.",
)
@click.option(
    "--max-consecutive-task-failures",
    type=click.IntRange(min=1),
    default=None,
    help="Stop the run after this many task failures in a row.",
)
@click.option("--task", type=click.IntRange(min=0), default=None, help="Run only this task.")
@click.option(
    "--from-task",
    type=click.IntRange(min=0),
    default=None,
    help="Run this task and every task after it.",
)
@click.option("--log-level", default=None, help="Log level (default: INFO, or PEAL_LOG).")
@click.option("--log-file", type=click.Path(path_type=Path), default=None, help="Also log to file.")
def run(  # noqa: PLR0913
    plan_path: Path | None,
    repo_path: Path | None,
    config_path: Path | None,
    agent_cmd: str | None,
    model: str | None,
    sandbox: str | None,
    state_dir: Path | None,
    phase_timeout_sec: int | None,
    parallel: bool | None,
    max_parallel: int | None,
    max_address_rounds: int | None,
    on_findings_remaining: str | None,
    continue_with_remaining_tasks: bool | None,
    max_consecutive_task_failures: int | None,
    task: int | None,
    from_task: int | None,
    log_level: str | None,
    log_file: Path | None,
) -> None:
    """Run every task of a plan: plan, execute, then review-and-address."""

    if task is not None and from_task is not None:
        raise click.UsageError("--task and --from-task cannot be combined.")
    command = RunCommand(
        config_path=config_path,
        task=task,
        from_task=from_task,
        overrides={
            "plan_path": plan_path,
            "repo_path": repo_path,
            "agent_cmd": agent_cmd,
            "model": model,
            "sandbox": sandbox,
            "state_dir": state_dir,
            "phase_timeout_sec": phase_timeout_sec,
            "parallel": parallel,
            "max_parallel": max_parallel,
            "max_address_rounds": max_address_rounds,
            "on_findings_remaining": (
                on_findings_remaining.lower() if on_findings_remaining is not None else None
            ),
            "continue_with_remaining_tasks": continue_with_remaining_tasks,
            "max_consecutive_task_failures": max_consecutive_task_failures,
            "log_level": log_level,
            "log_file": log_file,
        },
    )
    try:
        report = CONTROLLER.run(command)
    except PealError as error:
        raise click.ClickException(str(error)) from error
    _emit_lines(report.lines)
    if report.exit_code != 0:
        raise SystemExit(report.exit_code)


@peal.command("plan")
@click.option(
    "--plan",
    "plan_path",
    type=click.Path(path_type=Path),
    required=True,
    help="Plan file to inspect.",
)
def plan(plan_path: Path) -> None:
    """Show parsed tasks and how they are grouped into segments."""

    try:
        lines = CONTROLLER.show_plan(PlanCommand(plan_path=plan_path))
    except PealError as error:
        raise click.ClickException(str(error)) from error
    _emit_lines(lines)


@peal.group()
def state() -> None:
    """Inspect or reset resumable run state."""


@state.command("show")
@click.option(
    "--state-dir",
    type=click.Path(path_type=Path, file_okay=False),
    default=Path(".peal"),
    show_default=True,
    help="State directory.",
)
def state_show(state_dir: Path) -> None:
    """Print the completed tasks recorded in state.json."""

    try:
        lines = CONTROLLER.show_state(StateCommand(state_dir=state_dir))
    except PealError as error:
        raise click.ClickException(str(error)) from error
    _emit_lines(lines)


@state.command("reset")
@click.option(
    "--state-dir",
    type=click.Path(path_type=Path, file_okay=False),
    default=Path(".peal"),
    show_default=True,
    help="State directory.",
)
def state_reset(state_dir: Path) -> None:
    """Delete state.json so the next run starts from the first task."""

    try:
        lines = CONTROLLER.reset_state(StateCommand(state_dir=state_dir))
    except PealError as error:
        raise click.ClickException(str(error)) from error
    _emit_lines(lines)


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    peal()
