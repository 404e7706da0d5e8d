"""Plan model: ordered tasks and their scheduling segments."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from pathlib import Path

from peal.errors import PlanError

logger = logging.getLogger(__name__)

_HEADING = re.compile(r"^## Task\s+(\d+)\s*(\(parallel\))?\s*$")


@dataclass(frozen=True, slots=True)
class Task:
    """One unit of work parsed from the plan."""

    index: int
    text: str
    concurrent: bool = False


@dataclass(frozen=True, slots=True)
class SequentialSegment:
    """Single task executed on the coordinating thread."""

    index: int

    @property
    def indices(self) -> tuple[int, ...]:
        return (self.index,)


@dataclass(frozen=True, slots=True)
class ConcurrentGroup:
    """Maximal run of adjacent concurrency-flagged tasks."""

    indices: tuple[int, ...]


Segment = SequentialSegment | ConcurrentGroup


def compute_segments(tasks: list[Task] | tuple[Task, ...]) -> tuple[Segment, ...]:
    """Group ascending tasks into sequential singletons and concurrent groups.

    A run of concurrent tasks of length one is scheduled exactly like a
    sequential task.
    """

    if not tasks:
        raise PlanError("Plan contains no tasks.")

    ordered = sorted(tasks, key=lambda task: task.index)
    segments: list[Segment] = []
    run: list[int] = []

    def _flush() -> None:
        if len(run) == 1:
            segments.append(SequentialSegment(run[0]))
        elif run:
            segments.append(ConcurrentGroup(tuple(run)))
        run.clear()

    for task in ordered:
        if task.concurrent:
            run.append(task.index)
            continue
        _flush()
        segments.append(SequentialSegment(task.index))
    _flush()
    return tuple(segments)


@dataclass(frozen=True, slots=True)
class Plan:
    """Immutable task list with segments derived once at construction."""

    tasks: tuple[Task, ...]
    segments: tuple[Segment, ...] = field(init=False)

    def __post_init__(self) -> None:
        ordered = tuple(sorted(self.tasks, key=lambda task: task.index))
        seen: set[int] = set()
        for task in ordered:
            if task.index in seen:
                raise PlanError(f"Duplicate task index in plan: {task.index}")
            seen.add(task.index)
        object.__setattr__(self, "tasks", ordered)
        object.__setattr__(self, "segments", compute_segments(ordered))

    @property
    def indices(self) -> tuple[int, ...]:
        return tuple(task.index for task in self.tasks)

    def task(self, index: int) -> Task:
        for task in self.tasks:
            if task.index == index:
                return task
        raise KeyError(index)

    def only_task(self, index: int) -> Plan:
        """Return a plan restricted to one task."""

        self._require(index)
        return Plan(tasks=tuple(task for task in self.tasks if task.index == index))

    def from_task(self, index: int) -> Plan:
        """Return a plan with the given task and every task after it."""

        self._require(index)
        return Plan(tasks=tuple(task for task in self.tasks if task.index >= index))

    def _require(self, index: int) -> None:
        if index not in self.indices:
            available = ", ".join(str(item) for item in self.indices)
            raise PlanError(f"Task {index} not found in plan (available: {available})")


def parse_plan(content: str) -> Plan:
    """Parse `## Task N` / `## Task N (parallel)` headed markdown into a plan."""

    tasks: list[Task] = []
    current_index: int | None = None
    current_concurrent = False
    body: list[str] = []

    for line in content.replace("\r\n", "\n").split("\n"):
        match = _HEADING.match(line)
        if match is None:
            if current_index is not None:
                body.append(line)
            continue
        if current_index is not None:
            tasks.append(Task(current_index, "\n".join(body).strip(), current_concurrent))
        current_index = int(match.group(1))
        current_concurrent = match.group(2) is not None
        body = []

    if current_index is not None:
        tasks.append(Task(current_index, "\n".join(body).strip(), current_concurrent))

    logger.debug("Parsed %d task(s) from plan content (%d chars)", len(tasks), len(content))
    return Plan(tasks=tuple(tasks))


def parse_plan_file(path: Path) -> Plan:
    """Read and parse a plan file; any read or format problem is a `PlanError`."""

    try:
        raw = path.read_bytes()
    except FileNotFoundError as error:
        raise PlanError(f"Plan file does not exist: {path}", path=path) from error
    except OSError as error:
        raise PlanError(f"Invalid or unreadable plan file: {path}", path=path) from error
    try:
        content = raw.decode("utf-8")
    except UnicodeDecodeError as error:
        raise PlanError(f"Plan file is not valid UTF-8: {path}", path=path) from error
    return parse_plan(content)
