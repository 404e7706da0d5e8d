"""Subprocess-based process executor for agent and reviewer CLIs."""

from __future__ import annotations

import logging
import shlex
import shutil
import subprocess
import tempfile
import time
from collections.abc import Sequence
from pathlib import Path
from typing import IO

from peal.backend.base import ProcessResult
from peal.errors import AgentNotFoundError

logger = logging.getLogger(__name__)

MAX_OUTPUT_BYTES = 10 * 1024 * 1024

_POLL_INTERVAL_SECONDS = 0.05
_TERMINATE_GRACE_SECONDS = 2


class SubprocessExecutor:
    """Run external commands directly (no shell) with timeout and bounded capture."""

    def __init__(
        self,
        *,
        max_output_bytes: int = MAX_OUTPUT_BYTES,
        poll_interval_seconds: float = _POLL_INTERVAL_SECONDS,
    ) -> None:
        self.max_output_bytes = max_output_bytes
        self.poll_interval_seconds = poll_interval_seconds

    def run(
        self,
        command: str,
        args: Sequence[str],
        cwd: Path,
        timeout_seconds: float | None,
    ) -> ProcessResult:
        with (
            tempfile.TemporaryFile() as stdout_handle,
            tempfile.TemporaryFile() as stderr_handle,
        ):
            process = subprocess.Popen(  # noqa: S603
                [command, *args],
                cwd=cwd,
                stdin=subprocess.DEVNULL,
                stdout=stdout_handle,
                stderr=stderr_handle,
            )
            exit_code, timed_out = self._wait(process, timeout_seconds)
            return ProcessResult(
                stdout=self._read_bounded(stdout_handle),
                stderr=self._read_bounded(stderr_handle),
                exit_code=exit_code,
                timed_out=timed_out,
            )

    def _wait(
        self,
        process: subprocess.Popen[bytes],
        timeout_seconds: float | None,
    ) -> tuple[int | None, bool]:
        if timeout_seconds is None:
            return process.wait(), False

        deadline = time.monotonic() + timeout_seconds
        while True:
            returncode = process.poll()
            if returncode is not None:
                return returncode, False
            if time.monotonic() >= deadline:
                _terminate_process(process)
                return None, True
            time.sleep(self.poll_interval_seconds)

    def _read_bounded(self, handle: IO[bytes]) -> str:
        handle.seek(0)
        return handle.read(self.max_output_bytes).decode("utf-8", errors="replace")


def resolve_executable(command: str) -> Path | None:
    """Resolve an explicit path or a bare name on `PATH` to an executable."""

    if not command.strip():
        return None
    found = shutil.which(command)
    if found is None:
        return None
    return Path(found)


def resolve_command(command_line: str) -> list[str]:
    """Split `agent_cmd` into argv and resolve its head to an absolute path.

    `agent_cmd` may carry leading arguments (``"python -m my_agent"``); they are
    split with POSIX rules and never interpreted by a shell.
    """

    try:
        tokens = shlex.split(command_line)
    except ValueError as error:
        raise AgentNotFoundError(command_line) from error
    if not tokens:
        raise AgentNotFoundError(command_line)
    resolved = resolve_executable(tokens[0])
    if resolved is None:
        raise AgentNotFoundError(tokens[0])
    return [str(resolved), *tokens[1:]]


def _terminate_process(process: subprocess.Popen[bytes]) -> None:
    try:
        process.terminate()
    except OSError:
        return
    try:
        process.wait(timeout=_TERMINATE_GRACE_SECONDS)
    except subprocess.TimeoutExpired:
        try:
            process.kill()
        except OSError:
            return
        try:
            process.wait(timeout=_TERMINATE_GRACE_SECONDS)
        except subprocess.TimeoutExpired:
            logger.warning("Process %s did not exit after kill; abandoning it", process.pid)
