import pytest

from labverify.models.domain import (
    AbsurdParams,
    CriticalParams,
    CustomParams,
    DeltaParams,
    DeltaType,
    RangeParams,
    ReferenceRange,
    ResultFlag,
    RuleAction,
    RuleType,
    ValidationRule,
)
from labverify.validation.evaluator import ValidationEvaluator, evaluate

from conftest import make_result


def make_rule(rule_type, parameters, rule_id=None, action=RuleAction.WARN, **kwargs):
    return ValidationRule(
        id=rule_id or f"{rule_type.value}-1",
        test_id="GLU",
        rule_type=rule_type,
        parameters=parameters,
        action=action,
        **kwargs,
    )


@pytest.fixture
def evaluator():
    return ValidationEvaluator()


class TestRangeRules:

    @pytest.mark.parametrize("value", [70, 90, 110])
    def test_boundaries_are_inclusive(self, evaluator, value):
        rule = make_rule(RuleType.RANGE, RangeParams(min=70, max=110), action=RuleAction.BLOCK)

        outcome = evaluator.evaluate(make_result(value), [rule])

        assert outcome.is_valid
        assert outcome.errors == ()
        assert outcome.warnings == ()
        assert outcome.triggered_rule_ids == ()

    def test_block_action_produces_error(self, evaluator):
        rule = make_rule(RuleType.RANGE, RangeParams(min=70, max=110), action=RuleAction.BLOCK)

        outcome = evaluator.evaluate(make_result(115), [rule])

        assert not outcome.is_valid
        assert outcome.errors == ("Value 115 is outside acceptable range (70-110)",)
        assert ResultFlag.HIGH in outcome.flags

    def test_warn_action_keeps_result_valid(self, evaluator):
        rule = make_rule(RuleType.RANGE, RangeParams(min=70, max=110))

        outcome = evaluator.evaluate(make_result(65), [rule])

        assert outcome.is_valid
        assert outcome.warnings == ("Value 65 is outside acceptable range (70-110)",)
        assert outcome.flags == (ResultFlag.LOW,)

    def test_open_ended_range(self, evaluator):
        rule = make_rule(RuleType.RANGE, RangeParams(max=110))

        outcome = evaluator.evaluate(make_result(111), [rule])

        assert outcome.warnings == ("Value 111 is outside acceptable range (-inf-110)",)


class TestCriticalAndAbsurdRules:

    def test_critical_value_is_alert_not_error(self, evaluator):
        rule = make_rule(RuleType.CRITICAL, CriticalParams(critical_low=40, critical_high=500))

        outcome = evaluator.evaluate(make_result(600), [rule])

        assert outcome.is_critical
        assert outcome.is_valid
        assert outcome.requires_review
        assert outcome.errors == ()
        assert outcome.alerts == ("Critical high value: 600 (>= 500)",)
        assert outcome.flags == (ResultFlag.CRITICAL_HIGH,)

    def test_critical_limit_is_inclusive(self, evaluator):
        rule = make_rule(RuleType.CRITICAL, CriticalParams(critical_low=40))

        outcome = evaluator.evaluate(make_result(40), [rule])

        assert outcome.is_critical
        assert outcome.flags == (ResultFlag.CRITICAL_LOW,)

    def test_absurd_blocks_even_with_warn_action(self, evaluator):
        rule = make_rule(RuleType.ABSURD, AbsurdParams(absurd_low=0, absurd_high=2000), action=RuleAction.WARN)

        outcome = evaluator.evaluate(make_result(5000), [rule])

        assert not outcome.is_valid
        assert outcome.errors == ("Value 5000 is absurdly high (> 2000)",)

    def test_all_rules_contribute(self, evaluator):
        rules = [
            make_rule(RuleType.RANGE, RangeParams(min=70, max=110)),
            make_rule(RuleType.CRITICAL, CriticalParams(critical_high=500)),
            make_rule(RuleType.ABSURD, AbsurdParams(absurd_high=2000)),
        ]

        outcome = evaluator.evaluate(make_result(550), rules)

        assert outcome.is_valid
        assert outcome.is_critical
        assert len(outcome.warnings) == 1
        assert outcome.triggered_rule_ids == ("range-1", "critical-1")


class TestDeltaRules:

    def test_percent_delta_fires_over_threshold(self, evaluator):
        rule = make_rule(RuleType.DELTA, DeltaParams(threshold=25, delta_type=DeltaType.PERCENT))
        previous = make_result(100, result_id="R0")

        outcome = evaluator.evaluate(make_result(130), [rule], previous_value=previous)

        assert outcome.delta_check_failed
        assert outcome.warnings == (
            "Significant delta from previous result: 30.0% change (previous: 100, current: 130)",
        )

    def test_absolute_delta_within_threshold(self, evaluator):
        rule = make_rule(RuleType.DELTA, DeltaParams(threshold=50, delta_type=DeltaType.ABSOLUTE))
        previous = make_result(100, result_id="R0")

        outcome = evaluator.evaluate(make_result(130), [rule], previous_value=previous)

        assert not outcome.delta_check_failed
        assert outcome.warnings == ()

    def test_no_previous_value_skips_rule(self, evaluator):
        rule = make_rule(RuleType.DELTA, DeltaParams(threshold=25))

        outcome = evaluator.evaluate(make_result(130), [rule])

        assert not outcome.delta_check_failed
        assert outcome.warnings == ()

    def test_previous_zero_degrades_to_warning(self, evaluator):
        rule = make_rule(RuleType.DELTA, DeltaParams(threshold=25))
        previous = make_result(0, result_id="R0")

        outcome = evaluator.evaluate(make_result(5), [rule], previous_value=previous)

        assert outcome.is_valid
        assert not outcome.delta_check_failed
        assert outcome.warnings[0].startswith("delta-1: rule could not be evaluated")

    def test_previous_value_of_another_patient_is_rejected(self, evaluator):
        rule = make_rule(RuleType.DELTA, DeltaParams(threshold=25))
        previous = make_result(100, result_id="R0", patient_id="P2")

        outcome = evaluator.evaluate(make_result(200), [rule], previous_value=previous)

        assert not outcome.delta_check_failed
        assert "different patient" in outcome.warnings[0]


class TestDegradedRules:

    def test_malformed_rule_becomes_warning_and_others_still_run(self, evaluator):
        rules = [
            make_rule(RuleType.RANGE, DeltaParams(threshold=5), rule_id="broken"),
            make_rule(RuleType.RANGE, RangeParams(min=70, max=110), action=RuleAction.BLOCK),
        ]

        outcome = evaluator.evaluate(make_result(200), rules)

        assert outcome.warnings[0].startswith("broken: rule could not be evaluated")
        assert outcome.errors == ("Value 200 is outside acceptable range (70-110)",)

    def test_unregistered_predicate(self, evaluator):
        rule = make_rule(RuleType.CUSTOM, CustomParams(predicate_id="hemolysis_index"))

        outcome = evaluator.evaluate(make_result(90), [rule])

        assert outcome.is_valid
        assert outcome.warnings == ("custom-1: rule unavailable (predicate 'hemolysis_index' not registered)",)

    def test_enumerated_value_against_numeric_rule(self, evaluator):
        rule = make_rule(RuleType.RANGE, RangeParams(min=70, max=110))

        outcome = evaluator.evaluate(make_result("POSITIVE"), [rule])

        assert outcome.is_valid
        assert "not numeric" in outcome.warnings[0]

    def test_failing_predicate_degrades(self):
        def explode(result, arguments):
            raise RuntimeError("lookup failed")

        evaluator = ValidationEvaluator(predicates={"explode": explode})
        rule = make_rule(RuleType.CUSTOM, CustomParams(predicate_id="explode"), action=RuleAction.BLOCK)

        outcome = evaluator.evaluate(make_result(90), [rule])

        assert outcome.is_valid
        assert "lookup failed" in outcome.warnings[0]

    def test_inactive_rules_are_skipped(self, evaluator):
        rule = make_rule(RuleType.RANGE, RangeParams(min=70, max=110), action=RuleAction.BLOCK, active=False)

        outcome = evaluator.evaluate(make_result(500), [rule])

        assert outcome.is_valid
        assert outcome.triggered_rule_ids == ()


class TestCustomPredicates:

    def test_pattern_predicate(self, evaluator):
        rule = make_rule(
            RuleType.CUSTOM,
            CustomParams(predicate_id="pattern", arguments=(("pattern", "^(POSITIVE|NEGATIVE)$"),)),
            action=RuleAction.BLOCK,
        )

        assert evaluator.evaluate(make_result("NEGATIVE"), [rule]).is_valid
        outcome = evaluator.evaluate(make_result("EQUIVOCAL"), [rule])
        assert outcome.errors == ("Value does not match required pattern: ^(POSITIVE|NEGATIVE)$",)

    def test_registered_predicate_receives_arguments(self):
        seen = {}

        def glucose_fasting(result, arguments):
            seen.update(arguments)
            return "Fasting glucose above limit" if result.value > arguments["limit"] else None

        evaluator = ValidationEvaluator(predicates={"fasting": glucose_fasting})
        rule = make_rule(RuleType.CUSTOM, CustomParams(predicate_id="fasting", arguments=(("limit", 100),)),
                         notify_on_trigger=True, requires_review=True)

        outcome = evaluator.evaluate(make_result(120), [rule])

        assert seen == {"limit": 100}
        assert outcome.warnings == ("Fasting glucose above limit",)
        assert outcome.notify_rule_ids == ("custom-1",)
        assert outcome.requires_review


class TestReferenceRangeAndPurity:

    def test_reference_range_flags(self, evaluator):
        reference = ReferenceRange(min=70, max=110)

        assert evaluator.evaluate(make_result(90), [], reference_range=reference).flags == (ResultFlag.NORMAL,)
        assert evaluator.evaluate(make_result(120), [], reference_range=reference).flags == (ResultFlag.HIGH,)
        assert evaluator.evaluate(make_result(60), [], reference_range=reference).flags == (ResultFlag.LOW,)

    def test_critical_flag_takes_precedence(self, evaluator):
        rule = make_rule(RuleType.CRITICAL, CriticalParams(critical_high=500))

        outcome = evaluator.evaluate(make_result(600), [rule], reference_range=ReferenceRange(min=70, max=110))

        assert outcome.flags == (ResultFlag.CRITICAL_HIGH,)

    def test_evaluation_is_idempotent(self):
        rules = [
            make_rule(RuleType.RANGE, RangeParams(min=70, max=110)),
            make_rule(RuleType.DELTA, DeltaParams(threshold=10)),
        ]
        result = make_result(130)
        previous = make_result(100, result_id="R0")

        first = evaluate(result, rules, previous)
        second = evaluate(result, rules, previous)

        assert first == second
