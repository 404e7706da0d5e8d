"""Findings detection over untrusted reviewer output.

Classification is a two-tier lookup. A structured JSON payload wins when the
reviewer emitted one (``{"findings": [...]}``, ``{"count": N}`` or a top-level
array, bare or inside a fenced/embedded block). Otherwise the configured
fallback heuristic decides:

``exit_code_or_output``
    non-zero exit, or exit 0 with any non-blank stdout, means findings.
``exit_code``
    only a non-zero exit means findings.
``pattern``
    findings when ``findings_pattern`` matches stdout.
"""

from __future__ import annotations

import json
import re
from collections.abc import Sequence
from dataclasses import dataclass, field
from enum import Enum

FINDINGS_PARSER_VERSION = 1

_FENCED_JSON = re.compile(r"```(?:json)?\s*([\[{].*?[\]}])\s*```", re.DOTALL | re.IGNORECASE)
_IDENTIFIER_KEYS = ("id", "identifier", "finding_id", "rule")
_DESCRIPTION_KEYS = ("description", "message", "text", "title")
_NOTHING_TOKEN = re.compile(r"\bNOTHING_TO_ADDRESS\b")
_NOTHING_REPLIES = frozenset(
    {
        "no",
        "none",
        "nothing",
        "nothing to address",
        "nothing actionable",
        "no action needed",
        "no actionable findings",
    },
)

FALLBACK_IDENTIFIER = "review-output"


class ReviewMode(str, Enum):
    """Which tier produced a classification."""

    STRUCTURED = "structured"
    FALLBACK = "fallback"


class FindingsFallback(str, Enum):
    """Heuristic used when the reviewer output is not structured."""

    EXIT_CODE_OR_OUTPUT = "exit_code_or_output"
    EXIT_CODE = "exit_code"
    PATTERN = "pattern"


@dataclass(frozen=True, slots=True)
class Finding:
    """One reviewer finding."""

    identifier: str
    description: str
    suggestion: str | None = None


@dataclass(slots=True)
class ReviewClassification:
    """Normalized findings-check result."""

    findings_present: bool
    mode: ReviewMode
    matched_rule: str
    findings: list[Finding] = field(default_factory=list)

    def to_log_details(self) -> dict[str, object]:
        return {
            "parser_version": FINDINGS_PARSER_VERSION,
            "mode": self.mode.value,
            "matched_rule": self.matched_rule,
            "findings_present": self.findings_present,
            "finding_ids": [finding.identifier for finding in self.findings],
        }


@dataclass(frozen=True, slots=True)
class DismissRule:
    """Auto-dismiss findings whose identifier or description matches `pattern`."""

    pattern: re.Pattern[str]
    reason: str = ""

    @classmethod
    def compile(cls, pattern: str, reason: str = "") -> DismissRule:
        return cls(pattern=re.compile(pattern), reason=reason)

    def matches(self, finding: Finding) -> bool:
        return bool(self.pattern.search(f"{finding.identifier} {finding.description}"))


def classify_review_output(
    *,
    stdout: str,
    exit_code: int | None,
    fallback: FindingsFallback = FindingsFallback.EXIT_CODE_OR_OUTPUT,
    findings_pattern: re.Pattern[str] | None = None,
) -> ReviewClassification:
    """Classify reviewer output; structured payload first, heuristic second."""

    payload = _parse_json_payload(stdout.strip())
    if payload is not None:
        structured = _classify_structured(payload, stdout=stdout)
        if structured is not None:
            return structured

    return _classify_fallback(
        stdout=stdout,
        exit_code=exit_code,
        fallback=fallback,
        findings_pattern=findings_pattern,
    )


def apply_dismiss_rules(
    findings: Sequence[Finding],
    rules: Sequence[DismissRule],
) -> tuple[list[Finding], list[tuple[Finding, DismissRule]]]:
    """Split findings into kept ones and ones excluded by the first matching rule."""

    kept: list[Finding] = []
    dismissed: list[tuple[Finding, DismissRule]] = []
    for finding in findings:
        rule = next((rule for rule in rules if rule.matches(finding)), None)
        if rule is None:
            kept.append(finding)
        else:
            dismissed.append((finding, rule))
    return kept, dismissed


def triage_says_nothing_actionable(triage_stdout: str) -> bool:
    """True only when the triage reply explicitly says nothing needs addressing.

    Empty or unrecognized replies count as actionable.
    """

    text = triage_stdout.strip()
    if not text:
        return False
    if _NOTHING_TOKEN.search(text):
        return True
    return text.lower().rstrip(".!") in _NOTHING_REPLIES


def _classify_structured(
    payload: dict[str, object] | list[object],
    *,
    stdout: str,
) -> ReviewClassification | None:
    if isinstance(payload, list):
        findings = _findings_from_items(payload)
        return ReviewClassification(
            findings_present=bool(payload),
            mode=ReviewMode.STRUCTURED,
            matched_rule="json_array",
            findings=findings,
        )

    raw_findings = payload.get("findings")
    if isinstance(raw_findings, list):
        return ReviewClassification(
            findings_present=bool(raw_findings),
            mode=ReviewMode.STRUCTURED,
            matched_rule="json_findings",
            findings=_findings_from_items(raw_findings),
        )

    count = payload.get("count")
    if isinstance(count, int) and not isinstance(count, bool) and count >= 0:
        findings = [Finding(FALLBACK_IDENTIFIER, stdout.strip())] if count else []
        return ReviewClassification(
            findings_present=count > 0,
            mode=ReviewMode.STRUCTURED,
            matched_rule="json_count",
            findings=findings,
        )
    return None


def _classify_fallback(
    *,
    stdout: str,
    exit_code: int | None,
    fallback: FindingsFallback,
    findings_pattern: re.Pattern[str] | None,
) -> ReviewClassification:
    text = stdout.strip()
    if fallback is FindingsFallback.PATTERN:
        if findings_pattern is None:
            raise ValueError("findings_pattern is required for the pattern fallback")
        present = findings_pattern.search(stdout) is not None
        rule = "pattern_match" if present else "pattern_no_match"
    elif exit_code != 0:
        present = True
        rule = "nonzero_exit"
    elif fallback is FindingsFallback.EXIT_CODE_OR_OUTPUT and text:
        present = True
        rule = "nonblank_output"
    else:
        present = False
        rule = "clean_exit"

    findings: list[Finding] = []
    if present:
        description = text or f"reviewer exited with code {exit_code}"
        findings.append(Finding(FALLBACK_IDENTIFIER, description))
    return ReviewClassification(
        findings_present=present,
        mode=ReviewMode.FALLBACK,
        matched_rule=rule,
        findings=findings,
    )


def _findings_from_items(items: list[object]) -> list[Finding]:
    findings: list[Finding] = []
    for position, item in enumerate(items, start=1):
        if isinstance(item, str):
            findings.append(Finding(f"finding-{position}", item.strip()))
            continue
        if not isinstance(item, dict):
            findings.append(Finding(f"finding-{position}", json.dumps(item)))
            continue
        identifier = _first_str(item, _IDENTIFIER_KEYS) or f"finding-{position}"
        description = _first_str(item, _DESCRIPTION_KEYS) or json.dumps(item, sort_keys=True)
        suggestion = item.get("suggestion")
        findings.append(
            Finding(
                identifier=identifier,
                description=description,
                suggestion=suggestion if isinstance(suggestion, str) and suggestion else None,
            ),
        )
    return findings


def _first_str(item: dict[str, object], keys: tuple[str, ...]) -> str | None:
    for key in keys:
        value = item.get(key)
        if isinstance(value, str) and value.strip():
            return value.strip()
        if isinstance(value, int) and not isinstance(value, bool):
            return str(value)
    return None


def _parse_json_payload(text: str) -> dict[str, object] | list[object] | None:
    if not text:
        return None
    direct = _try_load(text)
    if direct is not None:
        return direct

    fenced = _FENCED_JSON.search(text)
    if fenced is not None:
        payload = _try_load(fenced.group(1))
        if payload is not None:
            return payload

    start = text.find("{")
    end = text.rfind("}")
    if start == -1 or end <= start:
        return None
    return _try_load(text[start : end + 1])


def _try_load(raw: str) -> dict[str, object] | list[object] | None:
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError:
        return None
    if not isinstance(parsed, dict | list):
        return None
    return parsed
