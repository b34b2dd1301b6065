import pytest

from foreman.config import GateConfig
from foreman.dispatch import NO_OUTPUT
from foreman.gates import (
    GateEvaluator,
    GateResult,
    GateVerdict,
    OutputArtifact,
    extract_check_evidence,
)


def _output(content: str) -> OutputArtifact:
    return OutputArtifact(
        ref="/tmp/foreman-output-1.md",
        content=content,
        completed_at="2026-01-01T00:00:00.000+00:00",
    )


def test_clean_output_passes_required_checks() -> None:
    result = GateEvaluator().evaluate(
        _output("Implemented the endpoint.\n12 passed in 0.4s"),
        GateConfig(required_checks=["has_output", "tests_pass"]),
    )

    assert result.verdict is GateVerdict.PASS
    assert result.reasons == ()
    assert result.checks == (("has_output", True), ("tests_pass", True))
    assert result.evaluated_at == "2026-01-01T00:00:00.000+00:00"


@pytest.mark.parametrize(
    "content", ["Ran suite: 14 passed, 0 tests failed", "All green, no tests failed."]
)
def test_zero_or_negated_failure_counts_pass(content: str) -> None:
    result = GateEvaluator().evaluate(
        _output(content), GateConfig(required_checks=["has_output", "tests_pass"])
    )

    assert result.verdict is GateVerdict.PASS
    assert result.reasons == ()


def test_evaluation_is_deterministic() -> None:
    evaluator = GateEvaluator()
    config = GateConfig(required_checks=["has_output", "tests_pass"], advisory_checks=["no_errors"])
    output = _output("ERROR: flaky network\n2 tests failed")

    assert evaluator.evaluate(output, config) == evaluator.evaluate(output, config)


def test_failing_tests_fail_required_gate() -> None:
    result = GateEvaluator().evaluate(
        _output("Ran suite.\nFAILED tests/test_api.py::test_create - AssertionError"),
        GateConfig(required_checks=["has_output", "tests_pass"]),
    )

    assert result.verdict is GateVerdict.FAIL
    assert any("tests_pass" in reason for reason in result.reasons)


def test_no_output_sentinel_fails_has_output() -> None:
    result = GateEvaluator().evaluate(_output(NO_OUTPUT), GateConfig())

    assert result.verdict is GateVerdict.FAIL
    assert "worker finished without writing output" in result.reasons[0]


def test_advisory_failure_raises_concerns() -> None:
    result = GateEvaluator().evaluate(
        _output("Done.\nlint errors: 3 lint warnings"),
        GateConfig(required_checks=["has_output"], advisory_checks=["lint_clean"]),
    )

    assert result.verdict is GateVerdict.CONCERNS
    assert result.verdict.passed is False
    assert result.reasons[0].startswith("advisory check 'lint_clean' failed")


def test_zero_weight_advisory_failure_still_raises_concerns() -> None:
    result = GateEvaluator().evaluate(
        _output("BLOCKER: missing migration"),
        GateConfig(
            advisory_checks=["no_blockers"], weights={"no_blockers": 0}, failure_threshold=0
        ),
    )

    assert result.verdict is GateVerdict.CONCERNS


def test_advisory_weight_over_threshold_fails() -> None:
    config = GateConfig(
        advisory_checks=["lint_clean", "no_errors"],
        weights={"lint_clean": 2, "no_errors": 1},
        failure_threshold=2,
    )
    result = GateEvaluator().evaluate(_output("lint failed\nERROR: bad import"), config)

    assert result.verdict is GateVerdict.FAIL
    assert "advisory failure weight 3 exceeds threshold 2" in result.reasons


def test_waiver_turns_failure_into_waived() -> None:
    result = GateEvaluator().evaluate(
        _output("1 test failed"),
        GateConfig(required_checks=["tests_pass"]),
        waiver="known flaky test, tracked separately",
    )

    assert result.verdict is GateVerdict.WAIVED
    assert result.verdict.passed is True
    assert result.reasons[-1] == "waived: known flaky test, tracked separately"


def test_waiver_rejected_when_disabled() -> None:
    result = GateEvaluator().evaluate(
        _output("1 test failed"),
        GateConfig(required_checks=["tests_pass"], allow_waivers=False),
        waiver="please",
    )

    assert result.verdict is GateVerdict.FAIL
    assert "waiver rejected: waivers are disabled" in result.reasons


def test_waiver_does_not_change_pass() -> None:
    result = GateEvaluator().evaluate(_output("all good"), GateConfig(), waiver="unneeded")

    assert result.verdict is GateVerdict.PASS


def test_reported_evidence_overrides_heuristics() -> None:
    content = 'Summary\n{"checks": {"tests_pass": false}, "lint_clean": true}\n'

    assert extract_check_evidence(content) == {"tests_pass": False, "lint_clean": True}
    result = GateEvaluator().evaluate(_output(content), GateConfig(required_checks=["tests_pass"]))
    assert result.verdict is GateVerdict.FAIL


def test_unknown_check_without_evidence_fails() -> None:
    result = GateEvaluator().evaluate(
        _output("done"), GateConfig(required_checks=["coverage_ok"])
    )

    assert result.verdict is GateVerdict.FAIL
    assert "no built-in predicate" in result.reasons[0]


def test_extra_checks_are_pluggable() -> None:
    evaluator = GateEvaluator(
        extra_checks={"mentions_story": lambda text: ("story" in text, "story not referenced")}
    )

    result = evaluator.evaluate(
        _output("story 1.1 done"), GateConfig(required_checks=["mentions_story"])
    )

    assert result.verdict is GateVerdict.PASS


def test_gate_result_dict_roundtrip() -> None:
    result = GateEvaluator().evaluate(
        _output("BLOCKER: x"), GateConfig(required_checks=["no_blockers"])
    )

    assert GateResult.from_dict(result.to_dict()) == result
