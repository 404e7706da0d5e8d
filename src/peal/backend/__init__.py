"""Process execution backends."""

from peal.backend.base import ProcessExecutor, ProcessResult
from peal.backend.subprocess_executor import (
    MAX_OUTPUT_BYTES,
    SubprocessExecutor,
    resolve_command,
    resolve_executable,
)

__all__ = [
    "MAX_OUTPUT_BYTES",
    "ProcessExecutor",
    "ProcessResult",
    "SubprocessExecutor",
    "resolve_command",
    "resolve_executable",
]
