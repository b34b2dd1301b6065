import pytest

from foreman.config import RecoveryConfig, StageConfig
from foreman.dispatch import FailureKind, InvocationResult
from foreman.gates import GateResult, GateVerdict
from foreman.recovery import RecoveryDecision, RecoveryHandler, RecoveryStrategy

PLAIN_STAGE = StageConfig(name="qa", worker="qa", task="review")
CRITICAL_STAGE = StageConfig(name="develop", worker="dev", task="develop", critical=True)
SKIPPABLE_STAGE = StageConfig(name="docs", worker="dev", task="document", skippable=True)


def _failed_invocation(kind: FailureKind) -> InvocationResult:
    return InvocationResult(
        success=False, output="", output_ref="", duration_ms=5, error="boom", error_kind=kind
    )


def _gate(verdict: GateVerdict) -> GateResult:
    return GateResult(verdict=verdict, reasons=("check failed",), evaluated_at="t")


def _history(count: int) -> list[RecoveryDecision]:
    return [
        RecoveryDecision(RecoveryStrategy.RETRY, attempt=index + 1, max_attempts=3)
        for index in range(count)
    ]


def test_retryable_invocation_failure_is_retried_until_budget() -> None:
    handler = RecoveryHandler(RecoveryConfig(max_attempts=3))
    failure = _failed_invocation(FailureKind.DISPATCH)

    first = handler.decide(failure, [], stage=PLAIN_STAGE)
    second = handler.decide(failure, _history(1), stage=PLAIN_STAGE)
    third = handler.decide(failure, _history(2), stage=PLAIN_STAGE)

    assert (first.strategy, first.attempt) == (RecoveryStrategy.RETRY, 1)
    assert (second.strategy, second.attempt) == (RecoveryStrategy.RETRY, 2)
    assert (third.strategy, third.attempt) == (RecoveryStrategy.ESCALATE, 3)
    assert third.max_attempts == 3


@pytest.mark.parametrize(
    "kind",
    [
        FailureKind.INVALID_ARGUMENT,
        FailureKind.LAUNCHER_NOT_FOUND,
        FailureKind.UNSUPPORTED_PLATFORM,
    ],
)
def test_fatal_invocation_failure_aborts(kind: FailureKind) -> None:
    decision = RecoveryHandler().decide(_failed_invocation(kind), [], stage=SKIPPABLE_STAGE)

    assert decision.strategy is RecoveryStrategy.ABORT
    assert kind.value in decision.reason


def test_concerns_escalate_even_on_critical_stage() -> None:
    decision = RecoveryHandler().decide(_gate(GateVerdict.CONCERNS), [], stage=CRITICAL_STAGE)

    assert decision.strategy is RecoveryStrategy.ESCALATE


def test_gate_failure_on_critical_stage_aborts() -> None:
    decision = RecoveryHandler().decide(_gate(GateVerdict.FAIL), [], stage=CRITICAL_STAGE)

    assert decision.strategy is RecoveryStrategy.ABORT
    assert "develop" in decision.reason


def test_gate_failure_on_skippable_stage_skips() -> None:
    decision = RecoveryHandler().decide(_gate(GateVerdict.FAIL), [], stage=SKIPPABLE_STAGE)

    assert decision.strategy is RecoveryStrategy.SKIP


def test_gate_failure_on_plain_stage_escalates() -> None:
    decision = RecoveryHandler().decide(_gate(GateVerdict.FAIL), _history(1), stage=PLAIN_STAGE)

    assert decision.strategy is RecoveryStrategy.ESCALATE
    assert decision.attempt == 2


def test_same_history_gives_same_decision() -> None:
    handler = RecoveryHandler()
    failure = _failed_invocation(FailureKind.TIMEOUT)

    assert handler.decide(failure, _history(1), stage=PLAIN_STAGE) == handler.decide(
        failure, _history(1), stage=PLAIN_STAGE
    )


def test_recovery_rejects_successful_outcomes() -> None:
    handler = RecoveryHandler()
    success = InvocationResult(success=True, output="ok", output_ref="x", duration_ms=1)

    with pytest.raises(ValueError):
        handler.decide(success, [], stage=PLAIN_STAGE)
    with pytest.raises(ValueError):
        handler.decide(_gate(GateVerdict.PASS), [], stage=PLAIN_STAGE)
    with pytest.raises(ValueError):
        handler.decide(_gate(GateVerdict.WAIVED), [], stage=PLAIN_STAGE)


def test_decision_dict_roundtrip() -> None:
    decision = RecoveryDecision(RecoveryStrategy.SKIP, attempt=2, max_attempts=3, reason="x")

    assert RecoveryDecision.from_dict(decision.to_dict()) == decision
