"""Quality gates applied to a completed invocation's output."""

from __future__ import annotations

import json
import re
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from enum import StrEnum
from typing import Any

from foreman.config import GateConfig
from foreman.dispatch.watcher import NO_OUTPUT

CheckPredicate = Callable[[str], tuple[bool, str]]

TEST_COUNT_FAILURE_PATTERN = re.compile(r"\b[1-9]\d*\s+(?:tests?\s+)?(?:failed|failing)\b", re.I)
PYTEST_FAILED_LINE_PATTERN = re.compile(r"^FAILED\b", re.M)
LINT_FAILURE_PATTERN = re.compile(
    r"\blint(?:ing)?\s+(?:failed|errors?)\b|\b[1-9]\d*\s+lint\s+(?:errors?|warnings?)\b", re.I
)
BLOCKER_PATTERN = re.compile(r"\bBLOCKER\b", re.I)
ERROR_LINE_PATTERN = re.compile(r"^\s*(?:ERROR|FATAL)\b", re.M)


class GateVerdict(StrEnum):
    PASS = "PASS"
    CONCERNS = "CONCERNS"
    FAIL = "FAIL"
    WAIVED = "WAIVED"

    @property
    def passed(self) -> bool:
        return self in {GateVerdict.PASS, GateVerdict.WAIVED}


@dataclass(frozen=True, slots=True)
class OutputArtifact:
    ref: str
    content: str
    completed_at: str


@dataclass(frozen=True, slots=True)
class GateResult:
    verdict: GateVerdict
    reasons: tuple[str, ...]
    evaluated_at: str
    checks: tuple[tuple[str, bool], ...] = ()

    def to_dict(self) -> dict[str, Any]:
        return {
            "verdict": self.verdict.value,
            "reasons": list(self.reasons),
            "evaluated_at": self.evaluated_at,
            "checks": {name: passed for name, passed in self.checks},
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> GateResult:
        checks = payload.get("checks", {})
        return cls(
            verdict=GateVerdict(payload["verdict"]),
            reasons=tuple(str(item) for item in payload.get("reasons", [])),
            evaluated_at=str(payload.get("evaluated_at", "")),
            checks=tuple((str(k), bool(v)) for k, v in checks.items())
            if isinstance(checks, dict)
            else (),
        )


def _has_output(content: str) -> tuple[bool, str]:
    stripped = content.strip()
    if not stripped:
        return False, "output is empty"
    if stripped == NO_OUTPUT:
        return False, "worker finished without writing output"
    return True, ""


def _tests_pass(content: str) -> tuple[bool, str]:
    for pattern in (TEST_COUNT_FAILURE_PATTERN, PYTEST_FAILED_LINE_PATTERN):
        match = pattern.search(content)
        if match:
            return False, f"output reports failing tests ({match.group(0).strip()!r})"
    return True, ""


def _lint_clean(content: str) -> tuple[bool, str]:
    match = LINT_FAILURE_PATTERN.search(content)
    if match:
        return False, f"output reports lint problems ({match.group(0).strip()!r})"
    return True, ""


def _no_blockers(content: str) -> tuple[bool, str]:
    count = len(BLOCKER_PATTERN.findall(content))
    if count:
        return False, f"{count} blocker finding(s) reported"
    return True, ""


def _no_errors(content: str) -> tuple[bool, str]:
    count = len(ERROR_LINE_PATTERN.findall(content))
    if count:
        return False, f"{count} error line(s) in output"
    return True, ""


BUILTIN_CHECKS: dict[str, CheckPredicate] = {
    "has_output": _has_output,
    "tests_pass": _tests_pass,
    "lint_clean": _lint_clean,
    "no_blockers": _no_blockers,
    "no_errors": _no_errors,
}


def extract_check_evidence(content: str) -> dict[str, bool]:
    """Collect check outcomes reported as JSON lines, e.g. ``{"checks": {"tests_pass": false}}``."""
    evidence: dict[str, bool] = {}
    for raw_line in content.splitlines():
        line = raw_line.strip()
        if not (line.startswith("{") and line.endswith("}")):
            continue
        try:
            payload = json.loads(line)
        except json.JSONDecodeError:
            continue
        if not isinstance(payload, dict):
            continue
        checks = payload.get("checks")
        if isinstance(checks, dict):
            evidence.update({str(k): v for k, v in checks.items() if isinstance(v, bool)})
        evidence.update({str(k): v for k, v in payload.items() if isinstance(v, bool)})
    return evidence


class GateEvaluator:
    def __init__(self, extra_checks: Mapping[str, CheckPredicate] | None = None) -> None:
        self.checks: dict[str, CheckPredicate] = dict(BUILTIN_CHECKS)
        if extra_checks:
            self.checks.update(extra_checks)

    def _run_check(
        self, name: str, content: str, evidence: Mapping[str, bool]
    ) -> tuple[bool, str]:
        if name in evidence:
            passed = evidence[name]
            return passed, "" if passed else "worker reported failure"
        predicate = self.checks.get(name)
        if predicate is None:
            return False, "no evidence in output and no built-in predicate"
        return predicate(content)

    def evaluate(
        self,
        output: OutputArtifact,
        config: GateConfig,
        *,
        waiver: str | None = None,
    ) -> GateResult:
        evidence = extract_check_evidence(output.content)
        required = list(dict.fromkeys(config.required_checks))
        advisory = [name for name in dict.fromkeys(config.advisory_checks) if name not in required]

        checks: list[tuple[str, bool]] = []
        reasons: list[str] = []
        required_failed = False
        advisory_failed = False
        advisory_weight = 0

        for name in required:
            passed, detail = self._run_check(name, output.content, evidence)
            checks.append((name, passed))
            if not passed:
                required_failed = True
                reasons.append(f"required check '{name}' failed: {detail}")

        for name in advisory:
            passed, detail = self._run_check(name, output.content, evidence)
            checks.append((name, passed))
            if not passed:
                advisory_failed = True
                advisory_weight += int(config.weights.get(name, 1))
                reasons.append(f"advisory check '{name}' failed: {detail}")

        if required_failed:
            verdict = GateVerdict.FAIL
        elif advisory_failed:
            verdict = GateVerdict.CONCERNS
            threshold = int(config.failure_threshold)
            if threshold >= 0 and advisory_weight > threshold:
                verdict = GateVerdict.FAIL
                reasons.append(
                    f"advisory failure weight {advisory_weight} exceeds threshold {threshold}"
                )
        else:
            verdict = GateVerdict.PASS

        if waiver and verdict is not GateVerdict.PASS:
            if config.allow_waivers:
                verdict = GateVerdict.WAIVED
                reasons.append(f"waived: {waiver}")
            else:
                reasons.append("waiver rejected: waivers are disabled")

        return GateResult(
            verdict=verdict,
            reasons=tuple(reasons),
            evaluated_at=output.completed_at,
            checks=tuple(checks),
        )
