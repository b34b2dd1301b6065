"""Pick the worker persona that should execute a story, and the one that gates it."""

from __future__ import annotations

import re
from dataclasses import dataclass

SUPPORTED_WORKERS = (
    "analyst",
    "architect",
    "data-engineer",
    "dev",
    "devops",
    "pm",
    "po",
    "qa",
    "sm",
    "ux-design-expert",
)

DEFAULT_STORY_TYPE = "code_general"

# Checked in order; the first type with the most keyword hits wins ties.
STORY_TYPE_KEYWORDS: dict[str, tuple[str, ...]] = {
    "database": ("database", "schema", "migration", "sql", "table", "index", "query", "rls"),
    "infrastructure": (
        "deploy",
        "ci/cd",
        "pipeline",
        "docker",
        "kubernetes",
        "terraform",
        "infrastructure",
        "monitoring",
    ),
    "ui_ux": ("ui", "ux", "component", "layout", "design system", "accessibility", "css"),
    "research": ("research", "investigate", "spike", "benchmark", "evaluate options"),
    "architecture": ("architecture", "adr", "system design", "boundaries", "refactor module"),
    "code_general": ("implement", "feature", "endpoint", "bug", "fix", "api", "function"),
}


@dataclass(frozen=True, slots=True)
class ExecutorAssignment:
    story_type: str
    executor: str
    quality_gate: str


EXECUTOR_ASSIGNMENT_TABLE: dict[str, tuple[str, str]] = {
    "code_general": ("dev", "architect"),
    "database": ("data-engineer", "dev"),
    "infrastructure": ("devops", "architect"),
    "ui_ux": ("ux-design-expert", "dev"),
    "research": ("analyst", "pm"),
    "architecture": ("architect", "pm"),
}


def _keyword_hits(text: str, keyword: str) -> int:
    return len(re.findall(rf"(?<![a-z0-9]){re.escape(keyword)}(?![a-z0-9])", text))


def detect_story_type(content: str) -> str:
    text = content.lower()
    best_type = DEFAULT_STORY_TYPE
    best_hits = 0
    for story_type, keywords in STORY_TYPE_KEYWORDS.items():
        hits = sum(_keyword_hits(text, keyword) for keyword in keywords)
        if hits > best_hits:
            best_type, best_hits = story_type, hits
    return best_type


def assign_executor(story_type: str) -> ExecutorAssignment:
    executor, quality_gate = EXECUTOR_ASSIGNMENT_TABLE.get(
        story_type, EXECUTOR_ASSIGNMENT_TABLE[DEFAULT_STORY_TYPE]
    )
    if story_type not in EXECUTOR_ASSIGNMENT_TABLE:
        story_type = DEFAULT_STORY_TYPE
    return ExecutorAssignment(story_type=story_type, executor=executor, quality_gate=quality_gate)


def assign_executor_from_content(content: str) -> ExecutorAssignment:
    return assign_executor(detect_story_type(content))


def validate_executor_assignment(assignment: ExecutorAssignment) -> list[str]:
    errors: list[str] = []
    if assignment.executor not in SUPPORTED_WORKERS:
        errors.append(f"Unknown executor: {assignment.executor}")
    if assignment.quality_gate not in SUPPORTED_WORKERS:
        errors.append(f"Unknown quality gate: {assignment.quality_gate}")
    if assignment.executor == assignment.quality_gate:
        errors.append("Executor cannot be its own quality gate")
    return errors
