"""Prompt construction for every agent invocation.

Dynamic text (task body, plan, reviewer output) is fenced between fixed
delimiter lines so the agent can tell payload from instructions. Prompts are
passed as a single argv element, never through a shell.
"""

from __future__ import annotations

from collections.abc import Sequence

from peal.findings import Finding

TASK_DELIMITER = "---TASK---"
PLAN_DELIMITER = "---PLAN---"
FINDINGS_DELIMITER = "---FINDINGS---"
SUGGESTIONS_DELIMITER = "---SUGGESTIONS---"
REVIEW_DELIMITER = "---REVIEW---"

TRIAGE_NOTHING_TOKEN = "NOTHING_TO_ADDRESS"


def plan_prompt(task_text: str) -> str:
    return (
        "Create a plan for implementing this task:\n\n"
        f"{TASK_DELIMITER}\n{task_text}\n{TASK_DELIMITER}"
    )


def execute_prompt(plan_text: str) -> str:
    return (
        "Execute the following plan. Do not re-plan; only implement and test.\n\n"
        f"{PLAN_DELIMITER}\n{plan_text}\n{PLAN_DELIMITER}"
    )


def address_prompt(findings: Sequence[Finding]) -> str:
    """Ask the agent to fix the listed findings, forwarding any suggestions."""

    described = "\n".join(
        f"- [{finding.identifier}] {finding.description}" for finding in findings
    )
    prompt = (
        "Address the following review findings. Apply fixes and run tests.\n\n"
        f"{FINDINGS_DELIMITER}\n{described}\n{FINDINGS_DELIMITER}"
    )
    suggestions = [
        f"- [{finding.identifier}] {finding.suggestion}"
        for finding in findings
        if finding.suggestion
    ]
    if suggestions:
        prompt += (
            "\n\nThe reviewer suggested these changes; apply them where they are correct:\n\n"
            f"{SUGGESTIONS_DELIMITER}\n" + "\n".join(suggestions) + f"\n{SUGGESTIONS_DELIMITER}"
        )
    return prompt


def triage_prompt(findings: Sequence[Finding]) -> str:
    described = "\n".join(
        f"- [{finding.identifier}] {finding.description}" for finding in findings
    )
    return (
        "Anything to address from this review? If nothing is actionable, reply with "
        f"exactly {TRIAGE_NOTHING_TOKEN}.\n\n"
        f"{REVIEW_DELIMITER}\n{described}\n{REVIEW_DELIMITER}"
    )
