"""Process execution interface consumed by phases and the reviewer client."""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol


@dataclass(slots=True)
class ProcessResult:
    """Captured outcome of one external process invocation."""

    stdout: str
    stderr: str
    exit_code: int | None
    timed_out: bool

    @property
    def succeeded(self) -> bool:
        return self.exit_code == 0 and not self.timed_out


class ProcessExecutor(Protocol):
    """Protocol implemented by process runners."""

    def run(
        self,
        command: str,
        args: Sequence[str],
        cwd: Path,
        timeout_seconds: float | None,
    ) -> ProcessResult:
        """Run `command` with `args` in `cwd` without a shell.

        Raises `OSError` when the process cannot be started.
        """
