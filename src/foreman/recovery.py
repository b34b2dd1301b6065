from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from enum import StrEnum
from typing import Any

from foreman.config import RecoveryConfig, StageConfig
from foreman.dispatch.base import FATAL_FAILURE_KINDS
from foreman.dispatch.invoker import InvocationResult
from foreman.gates import GateResult, GateVerdict


class RecoveryStrategy(StrEnum):
    RETRY = "RETRY"
    ESCALATE = "ESCALATE"
    SKIP = "SKIP"
    ABORT = "ABORT"


@dataclass(frozen=True, slots=True)
class RecoveryDecision:
    strategy: RecoveryStrategy
    attempt: int
    max_attempts: int
    reason: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "strategy": self.strategy.value,
            "attempt": self.attempt,
            "max_attempts": self.max_attempts,
            "reason": self.reason,
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> RecoveryDecision:
        return cls(
            strategy=RecoveryStrategy(payload["strategy"]),
            attempt=int(payload.get("attempt", 1)),
            max_attempts=int(payload.get("max_attempts", 1)),
            reason=str(payload.get("reason", "")),
        )


class RecoveryHandler:
    """Chooses what to do after a failed invocation or a failing gate.

    Decisions depend only on the failure, the stage flags and the prior
    decisions for the stage, so replaying the same history gives the same answer.
    """

    def __init__(self, config: RecoveryConfig | None = None) -> None:
        self.config = config or RecoveryConfig()

    def decide(
        self,
        failure: InvocationResult | GateResult,
        history: Sequence[RecoveryDecision],
        *,
        stage: StageConfig,
    ) -> RecoveryDecision:
        max_attempts = max(1, int(self.config.max_attempts))
        attempt = len(history) + 1

        def _decision(strategy: RecoveryStrategy, reason: str) -> RecoveryDecision:
            return RecoveryDecision(
                strategy=strategy, attempt=attempt, max_attempts=max_attempts, reason=reason
            )

        if isinstance(failure, InvocationResult):
            if failure.success:
                raise ValueError("Recovery requested for a successful invocation.")
            kind = failure.error_kind
            if kind in FATAL_FAILURE_KINDS:
                return _decision(
                    RecoveryStrategy.ABORT, f"unrecoverable {kind.value} error: {failure.error}"
                )
            if attempt < max_attempts:
                return _decision(RecoveryStrategy.RETRY, f"invocation failed: {failure.error}")
            return _decision(
                RecoveryStrategy.ESCALATE,
                f"invocation still failing after {attempt} attempt(s): {failure.error}",
            )

        if failure.verdict.passed:
            raise ValueError(f"Recovery requested for a {failure.verdict.value} gate result.")
        summary = "; ".join(failure.reasons) or failure.verdict.value
        if failure.verdict is GateVerdict.CONCERNS:
            return _decision(RecoveryStrategy.ESCALATE, f"gate raised concerns: {summary}")
        if stage.critical:
            return _decision(
                RecoveryStrategy.ABORT, f"gate failed on critical stage {stage.name}: {summary}"
            )
        if stage.skippable:
            return _decision(RecoveryStrategy.SKIP, f"gate failed on skippable stage: {summary}")
        return _decision(RecoveryStrategy.ESCALATE, f"gate failed: {summary}")
