"""Shared test fixtures."""

from __future__ import annotations

import os
import re
import sys
import threading
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from pathlib import Path

import pytest

from peal.address_loop import AddressLoop
from peal.backend import ProcessResult
from peal.config import Settings
from peal.logs import reset_logging
from peal.phases import PhaseExecutor
from peal.plan import Plan, Task
from peal.reviewer import ReviewerClient
from peal.runner import Runner
from peal.state import RunState

AGENT = "/opt/fake/agent"
REVIEWER = "/opt/fake/stet"
ECHO_AGENT_COMMAND = f"{sys.executable} -m peal.backend.echo_agent"

_TASK_MARKER = re.compile(r"task-(\d+)")


@dataclass(slots=True)
class Call:
    """One recorded process invocation."""

    command: str
    args: list[str]
    cwd: Path
    timeout_seconds: float | None

    @property
    def is_agent(self) -> bool:
        return self.command == AGENT

    @property
    def prompt(self) -> str:
        return self.args[-1] if self.args else ""

    @property
    def phase(self) -> str:
        if not self.is_agent:
            return f"reviewer:{self.args[0]}"
        if "--plan" in self.args:
            return "plan"
        if self.prompt.startswith("Execute"):
            return "execute"
        if self.prompt.startswith("Address"):
            return "address"
        return "triage"

    @property
    def task_index(self) -> int | None:
        match = _TASK_MARKER.search(self.prompt)
        return int(match.group(1)) if match else None


def ok(stdout: str = "done", stderr: str = "") -> ProcessResult:
    return ProcessResult(stdout=stdout, stderr=stderr, exit_code=0, timed_out=False)


def failed(exit_code: int = 1, stderr: str = "boom") -> ProcessResult:
    return ProcessResult(stdout="", stderr=stderr, exit_code=exit_code, timed_out=False)


def timed_out() -> ProcessResult:
    return ProcessResult(stdout="", stderr="", exit_code=None, timed_out=True)


FINDINGS_JSON = '{"findings": [{"id": "F1", "description": "missing test"}]}'
CLEAN_JSON = '{"findings": []}'


def default_response(call: Call) -> ProcessResult:
    """Agent echoes its prompt; reviewer sessions succeed with no findings."""

    if call.is_agent:
        return ok(stdout=f"plan for {call.prompt}")
    if call.args[0] == "run":
        return ok(stdout=CLEAN_JSON)
    return ok(stdout="")


class FakeExecutor:
    """Scripted `ProcessExecutor` that records every call."""

    def __init__(self, handler: Callable[[Call], ProcessResult] | None = None) -> None:
        self.handler = handler or default_response
        self.calls: list[Call] = []
        self._lock = threading.Lock()

    def run(
        self,
        command: str,
        args: Sequence[str],
        cwd: Path,
        timeout_seconds: float | None,
    ) -> ProcessResult:
        call = Call(command=command, args=list(args), cwd=cwd, timeout_seconds=timeout_seconds)
        with self._lock:
            self.calls.append(call)
        return self.handler(call)

    def agent_calls(self, phase: str | None = None) -> list[Call]:
        return [call for call in self.calls if call.is_agent and phase in (None, call.phase)]

    def reviewer_calls(self, step: str | None = None) -> list[Call]:
        return [
            call
            for call in self.calls
            if not call.is_agent and step in (None, call.args[0])
        ]


def make_plan(*specs: int | tuple[int, bool]) -> Plan:
    """Build a plan from indices; ``(index, True)`` marks a parallel task."""

    tasks = []
    for entry in specs:
        index, concurrent = entry if isinstance(entry, tuple) else (entry, False)
        tasks.append(Task(index=index, text=f"Implement task-{index}", concurrent=concurrent))
    return Plan(tasks=tuple(tasks))


@pytest.fixture()
def fake_executor() -> FakeExecutor:
    return FakeExecutor()


@pytest.fixture()
def make_settings(tmp_path: Path) -> Callable[..., Settings]:
    """Settings rooted in `tmp_path`; keyword overrides use flat config keys."""

    def _make(**overrides) -> Settings:
        repo = tmp_path / "repo"
        repo.mkdir(exist_ok=True)
        plan_path = tmp_path / "plan.md"
        if not plan_path.exists():
            plan_path.write_text("## Task 1\nImplement task-1\n", "utf-8")
        values = {
            "plan_path": plan_path,
            "repo_path": repo,
            "state_dir": tmp_path / "state",
            **overrides,
        }
        return Settings.load(overrides=values, environ={})

    return _make


@pytest.fixture()
def build_runner() -> Callable[..., Runner]:
    """Wire a runner around a fake executor without resolving real binaries."""

    def _build(
        settings: Settings,
        plan: Plan,
        executor: FakeExecutor,
        *,
        reviewer: bool = True,
        state: RunState | None = None,
    ) -> Runner:
        assert settings.repo_path is not None
        phases = PhaseExecutor(
            executor=executor,
            agent_argv=[AGENT],
            settings=settings,
            repo_path=settings.repo_path,
        )
        client = None
        if reviewer:
            client = ReviewerClient(
                executor=executor,
                reviewer_path=Path(REVIEWER),
                repo_path=settings.repo_path,
                timeout_seconds=settings.phases.phase_timeout_sec,
                start_ref=settings.reviewer.reviewer_start_ref,
            )
        address_loop = AddressLoop(
            phases=phases,
            reviewer=client,
            max_rounds=settings.reviewer.max_address_rounds,
            on_reviewer_failure=settings.reviewer.on_reviewer_failure,
            triage=settings.reviewer.address_triage,
            dismiss_rules=settings.reviewer.dismiss_rules(),
        )
        return Runner(
            plan=plan,
            state=state or RunState(plan_identity="plan", repo_identity="repo"),
            state_dir=settings.state_dir,
            phases=phases,
            address_loop=address_loop,
            parallel=settings.scheduler.parallel,
            max_parallel=settings.scheduler.max_parallel,
            continue_with_remaining_tasks=settings.scheduler.continue_with_remaining_tasks,
            max_consecutive_task_failures=settings.scheduler.max_consecutive_task_failures,
            on_findings_remaining=settings.reviewer.on_findings_remaining,
        )

    return _build


@pytest.fixture()
def clean_peal_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Remove inherited PEAL_* variables so CLI tests only see what they set."""

    for name in list(os.environ):
        if name.startswith("PEAL_"):
            monkeypatch.delenv(name)


@pytest.fixture(autouse=True)
def _reset_peal_logging():
    """Drop CLI log handlers so they never outlive the stream they were bound to."""

    yield
    reset_logging()
