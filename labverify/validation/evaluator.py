import logging
import math
import re
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional

from ..exceptions import RuleEvaluationError
from ..models.domain import (
    PARAMS_BY_RULE_TYPE,
    OUT_OF_RANGE_FLAGS,
    DeltaType,
    ReferenceRange,
    ResultFlag,
    ResultValue,
    RuleAction,
    RuleType,
    ValidationOutcome,
    ValidationRule,
)

logger = logging.getLogger(__name__)

# A custom predicate returns a message when the rule fires and None otherwise.
Predicate = Callable[[ResultValue, Dict[str, Any]], Optional[str]]


def pattern_predicate(result: ResultValue, arguments: Dict[str, Any]) -> Optional[str]:
    """Fire when an enumerated value does not match the configured regex"""
    pattern = arguments.get("pattern")
    if not pattern:
        raise ValueError("missing 'pattern' argument")
    if re.search(pattern, str(result.value)) is None:
        return f"Value does not match required pattern: {pattern}"
    return None


DEFAULT_PREDICATES: Dict[str, Predicate] = {
    "pattern": pattern_predicate,
}


def _fmt(number: float) -> str:
    return f"{number:g}"


@dataclass
class _Findings:
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    alerts: List[str] = field(default_factory=list)
    flags: List[ResultFlag] = field(default_factory=list)
    is_critical: bool = False
    requires_review: bool = False
    notify_rule_ids: List[str] = field(default_factory=list)
    triggered_rule_ids: List[str] = field(default_factory=list)
    delta_check_failed: bool = False

    def mark_triggered(self, rule: ValidationRule):
        if rule.id not in self.triggered_rule_ids:
            self.triggered_rule_ids.append(rule.id)
        if rule.requires_review:
            self.requires_review = True
        if rule.notify_on_trigger and rule.id not in self.notify_rule_ids:
            self.notify_rule_ids.append(rule.id)

    def add_flag(self, flag: ResultFlag):
        if flag not in self.flags:
            self.flags.append(flag)

    def freeze(self) -> ValidationOutcome:
        return ValidationOutcome(
            errors=tuple(self.errors),
            warnings=tuple(self.warnings),
            alerts=tuple(self.alerts),
            flags=tuple(self.flags),
            is_critical=self.is_critical,
            is_valid=not self.errors,
            requires_review=self.requires_review,
            notify_rule_ids=tuple(self.notify_rule_ids),
            triggered_rule_ids=tuple(self.triggered_rule_ids),
            delta_check_failed=self.delta_check_failed,
        )


class ValidationEvaluator:
    """Applies a test's validation rules to one result value.

    Rules run in the order given; every rule contributes to the outcome so the
    caller sees all reasons at once. A rule that cannot be evaluated degrades to
    a warning instead of aborting the remaining checks. No state is kept
    between calls.
    """

    def __init__(self, predicates: Optional[Mapping[str, Predicate]] = None):
        self.predicates: Dict[str, Predicate] = dict(DEFAULT_PREDICATES)
        if predicates:
            self.predicates.update(predicates)
        self._checks = {
            RuleType.RANGE: self._check_range,
            RuleType.ABSURD: self._check_absurd,
            RuleType.CRITICAL: self._check_critical,
            RuleType.DELTA: self._check_delta,
            RuleType.CUSTOM: self._check_custom,
        }

    def evaluate(self, result: ResultValue, rules: Iterable[ValidationRule],
                 previous_value: Optional[ResultValue] = None,
                 reference_range: Optional[ReferenceRange] = None) -> ValidationOutcome:
        findings = _Findings()

        for rule in rules:
            if not rule.active:
                continue
            try:
                self._apply(rule, result, previous_value, findings)
            except RuleEvaluationError as e:
                logger.warning(f"Degrading rule {rule.id} to warning: {e.message}")
                findings.warnings.append(f"{rule.id}: rule could not be evaluated ({e.message})")

        if reference_range is not None and not findings.is_critical:
            self._apply_reference_range(result, reference_range, findings)

        return findings.freeze()

    def _apply(self, rule: ValidationRule, result: ResultValue,
               previous_value: Optional[ResultValue], findings: _Findings):
        expected = PARAMS_BY_RULE_TYPE.get(rule.rule_type)
        if expected is None or not isinstance(rule.parameters, expected):
            raise RuleEvaluationError(
                rule.id, f"parameters {type(rule.parameters).__name__} do not match rule type {rule.rule_type.value}"
            )
        self._checks[rule.rule_type](rule, result, previous_value, findings)

    def _report(self, rule: ValidationRule, message: str, findings: _Findings):
        if rule.action is RuleAction.BLOCK:
            findings.errors.append(message)
        else:
            findings.warnings.append(message)
        findings.mark_triggered(rule)

    def _check_range(self, rule, result, previous_value, findings):
        params = rule.parameters
        if params.min is None and params.max is None:
            raise RuleEvaluationError(rule.id, "range rule has neither min nor max")
        value = numeric_value(rule.id, result.value)
        low = _fmt(params.min) if params.min is not None else "-inf"
        high = _fmt(params.max) if params.max is not None else "inf"

        if params.min is not None and value < params.min:
            findings.add_flag(ResultFlag.LOW)
            self._report(rule, f"Value {_fmt(value)} is outside acceptable range ({low}-{high})", findings)
        elif params.max is not None and value > params.max:
            findings.add_flag(ResultFlag.HIGH)
            self._report(rule, f"Value {_fmt(value)} is outside acceptable range ({low}-{high})", findings)

    def _check_absurd(self, rule, result, previous_value, findings):
        # Absurd limits block regardless of the configured action.
        params = rule.parameters
        if params.absurd_low is None and params.absurd_high is None:
            raise RuleEvaluationError(rule.id, "absurd rule has no limits")
        value = numeric_value(rule.id, result.value)

        if params.absurd_low is not None and value < params.absurd_low:
            findings.errors.append(f"Value {_fmt(value)} is absurdly low (< {_fmt(params.absurd_low)})")
            findings.mark_triggered(rule)
        if params.absurd_high is not None and value > params.absurd_high:
            findings.errors.append(f"Value {_fmt(value)} is absurdly high (> {_fmt(params.absurd_high)})")
            findings.mark_triggered(rule)

    def _check_critical(self, rule, result, previous_value, findings):
        params = rule.parameters
        if params.critical_low is None and params.critical_high is None:
            raise RuleEvaluationError(rule.id, "critical rule has no limits")
        value = numeric_value(rule.id, result.value)

        fired = False
        if params.critical_low is not None and value <= params.critical_low:
            findings.add_flag(ResultFlag.CRITICAL_LOW)
            findings.alerts.append(f"Critical low value: {_fmt(value)} (<= {_fmt(params.critical_low)})")
            fired = True
        if params.critical_high is not None and value >= params.critical_high:
            findings.add_flag(ResultFlag.CRITICAL_HIGH)
            findings.alerts.append(f"Critical high value: {_fmt(value)} (>= {_fmt(params.critical_high)})")
            fired = True

        if fired:
            findings.is_critical = True
            findings.requires_review = True
            findings.mark_triggered(rule)

    def _check_delta(self, rule, result, previous_value, findings):
        if previous_value is None:
            return
        if (previous_value.patient_id != result.patient_id
                or previous_value.test_id != result.test_id):
            raise RuleEvaluationError(rule.id, "previous value belongs to a different patient or test")

        params = rule.parameters
        value = numeric_value(rule.id, result.value)
        previous = numeric_value(rule.id, previous_value.value)

        if params.delta_type is DeltaType.PERCENT:
            if previous == 0:
                raise RuleEvaluationError(rule.id, "percent delta against a previous value of 0")
            delta = abs(value - previous) / abs(previous) * 100
            delta_msg = f"{delta:.1f}% change"
        else:
            delta = abs(value - previous)
            delta_msg = f"{_fmt(delta)} change"

        if delta > params.threshold:
            findings.delta_check_failed = True
            self._report(
                rule,
                f"Significant delta from previous result: {delta_msg} "
                f"(previous: {_fmt(previous)}, current: {_fmt(value)})",
                findings,
            )

    def _check_custom(self, rule, result, previous_value, findings):
        params = rule.parameters
        predicate = self.predicates.get(params.predicate_id)
        if predicate is None:
            logger.warning(f"Custom predicate '{params.predicate_id}' for rule {rule.id} is not registered")
            findings.warnings.append(f"{rule.id}: rule unavailable (predicate '{params.predicate_id}' not registered)")
            return
        try:
            message = predicate(result, params.argument_map)
        except Exception as e:
            raise RuleEvaluationError(rule.id, f"predicate '{params.predicate_id}' failed: {e}") from e
        if message:
            self._report(rule, message, findings)

    def _apply_reference_range(self, result, reference_range, findings):
        try:
            value = numeric_value("reference_range", result.value)
        except RuleEvaluationError:
            return
        if reference_range.min is not None and value < reference_range.min:
            findings.add_flag(ResultFlag.LOW)
        elif reference_range.max is not None and value > reference_range.max:
            findings.add_flag(ResultFlag.HIGH)
        elif not any(f in OUT_OF_RANGE_FLAGS for f in findings.flags):
            findings.add_flag(ResultFlag.NORMAL)


def numeric_value(rule_id: str, value: Any) -> float:
    """Coerce a result value to float, raising RuleEvaluationError for enumerated values"""
    if isinstance(value, bool):
        raise RuleEvaluationError(rule_id, f"value {value!r} is not numeric")
    if isinstance(value, (int, float)):
        number = float(value)
    elif isinstance(value, str):
        try:
            number = float(value.strip())
        except ValueError:
            raise RuleEvaluationError(rule_id, f"value {value!r} is not numeric")
    else:
        raise RuleEvaluationError(rule_id, f"value {value!r} is not numeric")
    if math.isnan(number):
        raise RuleEvaluationError(rule_id, "value is NaN")
    return number


_default_evaluator = ValidationEvaluator()


def evaluate(result: ResultValue, rules: Iterable[ValidationRule],
             previous_value: Optional[ResultValue] = None,
             reference_range: Optional[ReferenceRange] = None) -> ValidationOutcome:
    """Evaluate with the built-in predicate registry"""
    return _default_evaluator.evaluate(result, rules, previous_value, reference_range)
