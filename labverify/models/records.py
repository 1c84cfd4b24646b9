from sqlalchemy import Column, Integer, String, DateTime, Float, Boolean, Text, Index, Enum, JSON, UniqueConstraint
from sqlalchemy.sql import func
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from .base import TimeStampedModel, AuditMixin
from .domain import (
    AbsurdParams,
    AutoVerificationRule,
    CriticalParams,
    CustomParams,
    DeltaParams,
    DeltaType,
    QCLevel,
    QCResult,
    RangeParams,
    ResultValue,
    RuleAction,
    RuleParams,
    RuleType,
    ValidationRule,
    VerificationCriteria,
    VerificationStatusEnum,
    WestgardRuleEnum,
)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite hands back naive datetimes; everything stored is UTC"""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def params_to_json(params: RuleParams) -> Dict[str, Any]:
    if isinstance(params, RangeParams):
        return {"min": params.min, "max": params.max, "unit": params.unit}
    if isinstance(params, DeltaParams):
        return {"threshold": params.threshold, "delta_type": params.delta_type.value}
    if isinstance(params, AbsurdParams):
        return {"absurd_low": params.absurd_low, "absurd_high": params.absurd_high}
    if isinstance(params, CriticalParams):
        return {"critical_low": params.critical_low, "critical_high": params.critical_high}
    if isinstance(params, CustomParams):
        return {"predicate_id": params.predicate_id, "arguments": params.argument_map}
    raise TypeError(f"Unsupported rule parameters: {type(params).__name__}")


def params_from_json(rule_type: RuleType, data: Dict[str, Any]) -> RuleParams:
    """Build the parameter shape for ``rule_type``; unknown keys are ignored"""
    data = data or {}
    if rule_type is RuleType.RANGE:
        return RangeParams(min=data.get("min"), max=data.get("max"), unit=data.get("unit"))
    if rule_type is RuleType.DELTA:
        return DeltaParams(
            threshold=float(data["threshold"]),
            delta_type=DeltaType(data.get("delta_type", DeltaType.PERCENT.value)),
        )
    if rule_type is RuleType.ABSURD:
        return AbsurdParams(absurd_low=data.get("absurd_low"), absurd_high=data.get("absurd_high"))
    if rule_type is RuleType.CRITICAL:
        return CriticalParams(critical_low=data.get("critical_low"), critical_high=data.get("critical_high"))
    if rule_type is RuleType.CUSTOM:
        arguments = data.get("arguments") or {}
        return CustomParams(predicate_id=data["predicate_id"], arguments=tuple(sorted(arguments.items())))
    raise ValueError(f"Unknown rule type: {rule_type}")


CRITERIA_FIELDS = (
    "normal_range_check",
    "delta_check",
    "critical_value_check",
    "require_qc_pass",
    "instrument_check",
    "sample_integrity_check",
    "consistency_check",
)


def criteria_to_json(criteria: VerificationCriteria) -> Dict[str, Any]:
    data: Dict[str, Any] = {name: getattr(criteria, name) for name in CRITERIA_FIELDS}
    data["qc_within_hours"] = criteria.qc_within_hours
    data["allowed_instruments"] = list(criteria.allowed_instruments)
    return data


def criteria_from_json(data: Dict[str, Any]) -> VerificationCriteria:
    data = data or {}
    return VerificationCriteria(
        **{name: bool(data.get(name, False)) for name in CRITERIA_FIELDS},
        qc_within_hours=data.get("qc_within_hours"),
        allowed_instruments=tuple(data.get("allowed_instruments") or ()),
    )


class ValidationRuleRecord(TimeStampedModel, AuditMixin):
    __tablename__ = "validation_rules"

    rule_id = Column(String(50), unique=True, nullable=False, index=True)
    test_id = Column(String(50), nullable=False, index=True)
    rule_type = Column(Enum(RuleType), nullable=False)
    parameters = Column(JSON, nullable=False)
    action = Column(Enum(RuleAction), nullable=False, default=RuleAction.WARN)
    requires_review = Column(Boolean, default=False)
    notify_on_trigger = Column(Boolean, default=False)
    priority = Column(Integer, default=0)

    __table_args__ = (
        Index('idx_rule_test_priority', 'test_id', 'priority'),
    )

    @classmethod
    def from_domain(cls, rule: ValidationRule) -> "ValidationRuleRecord":
        return cls(
            rule_id=rule.id,
            test_id=rule.test_id,
            rule_type=rule.rule_type,
            parameters=params_to_json(rule.parameters),
            action=rule.action,
            requires_review=rule.requires_review,
            notify_on_trigger=rule.notify_on_trigger,
            priority=rule.priority,
            is_active=rule.active,
        )

    def to_domain(self) -> ValidationRule:
        return ValidationRule(
            id=self.rule_id,
            test_id=self.test_id,
            rule_type=self.rule_type,
            parameters=params_from_json(self.rule_type, self.parameters),
            action=self.action,
            requires_review=bool(self.requires_review),
            notify_on_trigger=bool(self.notify_on_trigger),
            active=bool(self.is_active),
            priority=self.priority or 0,
        )

    def __repr__(self):
        return f"<ValidationRuleRecord(id='{self.rule_id}', type='{self.rule_type.value}')>"


class AutoVerificationRuleRecord(TimeStampedModel, AuditMixin):
    __tablename__ = "auto_verification_rules"

    test_id = Column(String(50), unique=True, nullable=False, index=True)
    name = Column(String(100))
    criteria = Column(JSON, nullable=False)

    @classmethod
    def from_domain(cls, rule: AutoVerificationRule, name: Optional[str] = None) -> "AutoVerificationRuleRecord":
        return cls(
            test_id=rule.test_id,
            name=name,
            criteria=criteria_to_json(rule.criteria),
            is_active=rule.active,
        )

    def to_domain(self, success_count: int = 0, failure_count: int = 0) -> AutoVerificationRule:
        return AutoVerificationRule(
            test_id=self.test_id,
            criteria=criteria_from_json(self.criteria),
            success_count=success_count,
            failure_count=failure_count,
            active=bool(self.is_active),
        )

    def __repr__(self):
        return f"<AutoVerificationRuleRecord(test='{self.test_id}')>"


class QCLevelRecord(TimeStampedModel, AuditMixin):
    __tablename__ = "qc_levels"

    qc_test_id = Column(String(50), nullable=False, index=True)
    level_id = Column(String(50), nullable=False)
    target_mean = Column(Float)
    target_sd = Column(Float)
    allowable_total_error = Column(Float)  # Percentage

    __table_args__ = (
        UniqueConstraint('qc_test_id', 'level_id', name='uq_qc_level'),
    )

    def to_domain(self) -> QCLevel:
        return QCLevel(
            qc_test_id=self.qc_test_id,
            level_id=self.level_id,
            target_mean=self.target_mean,
            target_sd=self.target_sd,
            allowable_total_error=self.allowable_total_error,
        )


class QCResultRecord(TimeStampedModel, AuditMixin):
    """Append-only. ``violations`` is written once at insertion time."""
    __tablename__ = "qc_results"

    point_id = Column(String(50), unique=True, nullable=False, index=True)
    qc_test_id = Column(String(50), nullable=False)
    level_id = Column(String(50), nullable=False)
    instrument_id = Column(String(50), index=True)

    value = Column(Float, nullable=False)
    run_datetime = Column(DateTime(timezone=True), nullable=False, default=func.now())
    performed_by = Column(String(100))

    violations = Column(JSON, nullable=False, default=list)
    is_rejected = Column(Boolean, nullable=False, default=False)

    __table_args__ = (
        Index('idx_qc_result_series', 'qc_test_id', 'level_id', 'id'),
    )

    @classmethod
    def from_domain(cls, point: QCResult) -> "QCResultRecord":
        return cls(
            point_id=point.point_id,
            qc_test_id=point.qc_test_id,
            level_id=point.level_id,
            instrument_id=point.instrument_id,
            value=point.value,
            run_datetime=point.timestamp,
            performed_by=point.performed_by,
            violations=[v.value for v in point.violations],
            is_rejected=point.is_rejected,
        )

    def to_domain(self) -> QCResult:
        return QCResult(
            qc_test_id=self.qc_test_id,
            level_id=self.level_id,
            value=self.value,
            timestamp=as_utc(self.run_datetime),
            performed_by=self.performed_by or "",
            violations=tuple(WestgardRuleEnum(v) for v in (self.violations or [])),
            instrument_id=self.instrument_id,
            point_id=self.point_id,
        )

    def __repr__(self):
        return f"<QCResultRecord(id='{self.point_id}', value={self.value}, rejected={self.is_rejected})>"


class PatientResultRecord(TimeStampedModel, AuditMixin):
    __tablename__ = "patient_results"

    result_id = Column(String(50), unique=True, nullable=False, index=True)
    test_id = Column(String(50), nullable=False)
    patient_id = Column(String(50), nullable=False)
    sample_id = Column(String(50))
    instrument_id = Column(String(50))

    value_numeric = Column(Float)
    value_text = Column(String(200))
    units = Column(String(20))
    run_datetime = Column(DateTime(timezone=True), nullable=False)
    corrects = Column(String(50))

    # Audit snapshot of the evaluation at submission time
    status = Column(Enum(VerificationStatusEnum), nullable=False)
    is_critical = Column(Boolean, default=False)
    outcome = Column(JSON)
    reasons = Column(JSON)
    comments = Column(Text)

    __table_args__ = (
        Index('idx_result_patient_test', 'patient_id', 'test_id', 'run_datetime'),
    )

    @property
    def value(self):
        return self.value_numeric if self.value_numeric is not None else self.value_text

    def to_domain(self) -> ResultValue:
        return ResultValue(
            result_id=self.result_id,
            test_id=self.test_id,
            patient_id=self.patient_id,
            sample_id=self.sample_id or "",
            instrument_id=self.instrument_id or "",
            value=self.value,
            unit=self.units or "",
            timestamp=as_utc(self.run_datetime),
            corrects=self.corrects,
        )

    def __repr__(self):
        return f"<PatientResultRecord(id='{self.result_id}', status='{self.status.value}')>"


class VerificationEventRecord(TimeStampedModel):
    """One row per auto-verification decision; success/failure counts derive from these."""
    __tablename__ = "verification_events"

    result_id = Column(String(50), nullable=False, index=True)
    test_id = Column(String(50), nullable=False, index=True)
    outcome = Column(Enum(VerificationStatusEnum), nullable=False)
    reasons = Column(JSON, nullable=False, default=list)
    recorded_at = Column(DateTime(timezone=True), nullable=False)

    def __repr__(self):
        return f"<VerificationEventRecord(result='{self.result_id}', outcome='{self.outcome.value}')>"
