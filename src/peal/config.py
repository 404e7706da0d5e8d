"""Runtime configuration for a peal run.

Values are resolved from four layers, highest precedence first: CLI options,
``PEAL_*`` environment variables, a TOML config file, built-in defaults.
"""

from __future__ import annotations

import os
import re
import tomllib
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from peal.errors import ConfigError
from peal.findings import DismissRule, FindingsFallback

ENV_PREFIX = "PEAL_"
MAX_PHASE_3_RETRIES = 2

FINDINGS_POLICIES = ("fail", "warn")
REVIEWER_FAILURE_POLICIES = ("fail", "retry_once", "skip")


@dataclass(slots=True)
class AgentSettings:
    """Agent CLI invocation settings."""

    agent_cmd: str = "agent"
    model: str | None = None
    sandbox: str = "disabled"


@dataclass(slots=True)
class PhaseSettings:
    """Per-phase timeout, retry and validation settings."""

    phase_timeout_sec: int = 1_800
    phase_retry_count: int = 0
    phase_3_retry_count: int = 0
    validate_plan_text: bool = False
    min_plan_text_len: int | None = None

    @property
    def effective_phase_3_retries(self) -> int:
        return min(self.phase_3_retry_count, MAX_PHASE_3_RETRIES)


@dataclass(slots=True)
class DismissPattern:
    """Configured auto-dismiss rule before compilation."""

    pattern: str
    reason: str = ""


@dataclass(slots=True)
class ReviewerSettings:
    """Reviewer CLI and address-loop settings."""

    reviewer_cmd: str | None = "stet"
    reviewer_start_ref: str | None = None
    max_address_rounds: int = 5
    on_findings_remaining: str = "fail"
    on_reviewer_failure: str = "fail"
    findings_fallback: str = FindingsFallback.EXIT_CODE_OR_OUTPUT.value
    findings_pattern: str | None = None
    address_triage: bool = False
    dismiss_patterns: tuple[DismissPattern, ...] = ()

    def dismiss_rules(self) -> tuple[DismissRule, ...]:
        return tuple(DismissRule.compile(item.pattern, item.reason) for item in self.dismiss_patterns)

    def compiled_findings_pattern(self) -> re.Pattern[str] | None:
        if self.findings_pattern is None:
            return None
        return re.compile(self.findings_pattern)


@dataclass(slots=True)
class SchedulerSettings:
    """Concurrency and failure-containment settings."""

    parallel: bool = False
    max_parallel: int = 4
    continue_with_remaining_tasks: bool = False
    max_consecutive_task_failures: int | None = None


@dataclass(slots=True)
class Settings:
    """Application settings grouped by concern."""

    plan_path: Path | None = None
    repo_path: Path | None = None
    state_dir: Path = Path(".peal")
    run_summary_path: Path | None = None
    log_level: str | None = None
    log_file: Path | None = None
    agent: AgentSettings = field(default_factory=AgentSettings)
    phases: PhaseSettings = field(default_factory=PhaseSettings)
    reviewer: ReviewerSettings = field(default_factory=ReviewerSettings)
    scheduler: SchedulerSettings = field(default_factory=SchedulerSettings)

    @classmethod
    def load(
        cls,
        *,
        config_path: Path | None = None,
        overrides: Mapping[str, Any] | None = None,
        environ: Mapping[str, str] | None = None,
    ) -> Settings:
        """Merge file, environment and CLI layers over the defaults."""

        values: dict[str, Any] = {}
        if config_path is not None:
            values.update(_load_file_layer(config_path))
        values.update(_load_env_layer(os.environ if environ is None else environ))
        if overrides:
            values.update({key: value for key, value in overrides.items() if value is not None})

        unknown = sorted(set(values) - set(_FIELDS))
        if unknown:
            raise ConfigError(f"Unknown configuration keys: {', '.join(unknown)}")

        settings = cls()
        for key, value in values.items():
            group = _FIELDS[key][0]
            target = settings if group is None else getattr(settings, group)
            setattr(target, key, value)
        return settings

    def validate(self) -> None:
        """Raise `ConfigError` when the resolved configuration cannot drive a run."""

        if self.plan_path is None:
            raise ConfigError("plan_path is required (via --plan, PEAL_PLAN_PATH, or config file)")
        if self.repo_path is None:
            raise ConfigError("repo_path is required (via --repo, PEAL_REPO_PATH, or config file)")
        if not self.plan_path.exists():
            raise ConfigError(f"Plan file does not exist: {self.plan_path}")
        if not self.plan_path.is_file():
            raise ConfigError(f"Invalid or missing plan file: {self.plan_path}")
        if not self.repo_path.exists():
            raise ConfigError(f"Repo path does not exist: {self.repo_path}")
        if not self.repo_path.is_dir():
            raise ConfigError(f"Target path is not a directory: {self.repo_path}")

        if self.phases.phase_timeout_sec <= 0:
            raise ConfigError("phase_timeout_sec must be > 0.")
        if self.phases.phase_retry_count < 0 or self.phases.phase_3_retry_count < 0:
            raise ConfigError("phase retry counts must be >= 0.")
        if self.phases.min_plan_text_len is not None and self.phases.min_plan_text_len < 1:
            raise ConfigError("min_plan_text_len must be >= 1 when set.")
        if self.scheduler.max_parallel < 1:
            raise ConfigError("max_parallel must be >= 1.")
        cap = self.scheduler.max_consecutive_task_failures
        if cap is not None and cap < 1:
            raise ConfigError("max_consecutive_task_failures must be >= 1 when set.")
        if self.reviewer.max_address_rounds < 1:
            raise ConfigError("max_address_rounds must be >= 1.")
        if self.reviewer.on_findings_remaining not in FINDINGS_POLICIES:
            raise ConfigError(
                "on_findings_remaining must be one of "
                f"{', '.join(FINDINGS_POLICIES)}: {self.reviewer.on_findings_remaining!r}",
            )
        if self.reviewer.on_reviewer_failure not in REVIEWER_FAILURE_POLICIES:
            raise ConfigError(
                "on_reviewer_failure must be one of "
                f"{', '.join(REVIEWER_FAILURE_POLICIES)}: {self.reviewer.on_reviewer_failure!r}",
            )
        try:
            fallback = FindingsFallback(self.reviewer.findings_fallback)
        except ValueError as error:
            raise ConfigError(
                f"Unsupported findings_fallback: {self.reviewer.findings_fallback!r}",
            ) from error
        if fallback is FindingsFallback.PATTERN and not self.reviewer.findings_pattern:
            raise ConfigError("findings_pattern is required when findings_fallback is 'pattern'.")
        try:
            self.reviewer.compiled_findings_pattern()
            self.reviewer.dismiss_rules()
        except re.error as error:
            raise ConfigError(f"Invalid regular expression in reviewer settings: {error}") from error

    @property
    def summary_path(self) -> Path:
        return self.run_summary_path or self.state_dir / "run_summary.json"


def _load_file_layer(path: Path) -> dict[str, Any]:
    try:
        raw = tomllib.loads(path.read_text("utf-8"))
    except OSError as error:
        raise ConfigError(f"Failed to read config file {path}: {error}") from error
    except tomllib.TOMLDecodeError as error:
        raise ConfigError(f"Failed to parse config file {path}: {error}") from error

    values: dict[str, Any] = {}
    for key, value in raw.items():
        if key not in _FIELDS:
            raise ConfigError(f"Unknown key {key!r} in config file {path}")
        values[key] = _coerce_file_value(key, value, path)
    return values


def _coerce_file_value(key: str, value: Any, path: Path) -> Any:  # noqa: PLR0911
    kind = _FIELDS[key][1]
    if key == "dismiss_patterns":
        return _dismiss_patterns_from_file(value, path)
    if kind is Path:
        if not isinstance(value, str):
            raise ConfigError(f"{key} must be a string path in {path}")
        return Path(value)
    if kind is bool:
        if not isinstance(value, bool):
            raise ConfigError(f"{key} must be a boolean in {path}")
        return value
    if kind is int:
        if isinstance(value, bool) or not isinstance(value, int):
            raise ConfigError(f"{key} must be an integer in {path}")
        return value
    if not isinstance(value, str):
        raise ConfigError(f"{key} must be a string in {path}")
    return value


def _dismiss_patterns_from_file(value: Any, path: Path) -> tuple[DismissPattern, ...]:
    if not isinstance(value, list):
        raise ConfigError(f"dismiss_patterns must be an array in {path}")
    patterns: list[DismissPattern] = []
    for item in value:
        if isinstance(item, str):
            patterns.append(DismissPattern(pattern=item))
            continue
        if not isinstance(item, dict) or not isinstance(item.get("pattern"), str):
            raise ConfigError(f"dismiss_patterns entries need a 'pattern' string in {path}")
        reason = item.get("reason", "")
        patterns.append(DismissPattern(pattern=item["pattern"], reason=str(reason)))
    return tuple(patterns)


def _load_env_layer(environ: Mapping[str, str]) -> dict[str, Any]:
    values: dict[str, Any] = {}
    for key, (_group, kind) in _FIELDS.items():
        name = f"{ENV_PREFIX}{key.upper()}"
        raw = environ.get(name, "").strip()
        if not raw:
            continue
        if key == "dismiss_patterns":
            values[key] = _collect_dismiss_patterns(name, raw)
        elif kind is bool:
            values[key] = _env_bool(name, raw)
        elif kind is int:
            values[key] = _env_int(name, raw)
        elif kind is Path:
            values[key] = Path(raw)
        else:
            values[key] = raw
    log_env = environ.get("PEAL_LOG", "").strip()
    if log_env and "log_level" not in values:
        values["log_level"] = log_env
    return values


def _collect_dismiss_patterns(name: str, raw: str) -> tuple[DismissPattern, ...]:
    """Parse ``<regex>|<reason>`` entries separated by ``;``."""

    patterns: list[DismissPattern] = []
    for part in raw.split(";"):
        token = part.strip()
        if not token:
            continue
        pattern, _, reason = token.partition("|")
        if not pattern.strip():
            raise ConfigError(f"Invalid {name} entry: {token!r}. Expected '<regex>|<reason>'.")
        patterns.append(DismissPattern(pattern=pattern.strip(), reason=reason.strip()))
    return tuple(patterns)


def _env_int(name: str, value: str) -> int:
    try:
        return int(value)
    except ValueError as error:
        raise ConfigError(f"Invalid integer value for {name}: {value!r}") from error


def _env_bool(name: str, value: str) -> bool:
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ConfigError(f"Invalid boolean value for {name}: {value!r}")


_FieldSpec = tuple[str | None, Callable[..., Any] | type]

_FIELDS: dict[str, _FieldSpec] = {
    "plan_path": (None, Path),
    "repo_path": (None, Path),
    "state_dir": (None, Path),
    "run_summary_path": (None, Path),
    "log_level": (None, str),
    "log_file": (None, Path),
    "agent_cmd": ("agent", str),
    "model": ("agent", str),
    "sandbox": ("agent", str),
    "phase_timeout_sec": ("phases", int),
    "phase_retry_count": ("phases", int),
    "phase_3_retry_count": ("phases", int),
    "validate_plan_text": ("phases", bool),
    "min_plan_text_len": ("phases", int),
    "reviewer_cmd": ("reviewer", str),
    "reviewer_start_ref": ("reviewer", str),
    "max_address_rounds": ("reviewer", int),
    "on_findings_remaining": ("reviewer", str),
    "on_reviewer_failure": ("reviewer", str),
    "findings_fallback": ("reviewer", str),
    "findings_pattern": ("reviewer", str),
    "address_triage": ("reviewer", bool),
    "dismiss_patterns": ("reviewer", tuple),
    "parallel": ("scheduler", bool),
    "max_parallel": ("scheduler", int),
    "continue_with_remaining_tasks": ("scheduler", bool),
    "max_consecutive_task_failures": ("scheduler", int),
}
