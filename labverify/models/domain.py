from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Optional, Tuple, Union
import enum


class RuleType(enum.Enum):
    RANGE = "range"
    DELTA = "delta"
    ABSURD = "absurd"
    CRITICAL = "critical"
    CUSTOM = "custom"


class RuleAction(enum.Enum):
    WARN = "warn"
    BLOCK = "block"
    FLAG = "flag"


class DeltaType(enum.Enum):
    PERCENT = "percent"
    ABSOLUTE = "absolute"


class ResultFlag(enum.Enum):
    NORMAL = "normal"
    ABNORMAL = "abnormal"
    HIGH = "high"
    LOW = "low"
    CRITICAL_HIGH = "critical_high"
    CRITICAL_LOW = "critical_low"


OUT_OF_RANGE_FLAGS = frozenset({
    ResultFlag.ABNORMAL,
    ResultFlag.HIGH,
    ResultFlag.LOW,
    ResultFlag.CRITICAL_HIGH,
    ResultFlag.CRITICAL_LOW,
})


class WestgardRuleEnum(enum.Enum):
    RULE_12S = "1-2s"
    RULE_13S = "1-3s"
    RULE_22S = "2-2s"
    RULE_R4S = "R-4s"
    RULE_41S = "4-1s"
    RULE_10X = "10x"


WARNING_RULES = frozenset({WestgardRuleEnum.RULE_12S})
REJECT_RULES = frozenset({
    WestgardRuleEnum.RULE_13S,
    WestgardRuleEnum.RULE_22S,
    WestgardRuleEnum.RULE_R4S,
    WestgardRuleEnum.RULE_41S,
    WestgardRuleEnum.RULE_10X,
})


class VerificationStatusEnum(enum.Enum):
    AUTO_VERIFIED = "auto_verified"
    HELD_FOR_REVIEW = "held_for_review"


class NotificationKind(enum.Enum):
    CRITICAL_VALUE = "critical_value"
    QC_FAILURE = "qc_failure"
    CRITICAL_ESCALATION = "critical_escalation"
    TAT_BREACH = "tat_breach"


class TargetRole(enum.Enum):
    ORDERING_CLINICIAN = "ordering_clinician"
    LAB_SUPERVISOR = "lab_supervisor"


ResultValueType = Union[float, str]


@dataclass(frozen=True)
class ResultValue:
    """A single patient result as entered. Corrections reference the original via ``corrects``."""
    result_id: str
    test_id: str
    patient_id: str
    sample_id: str
    instrument_id: str
    value: ResultValueType
    unit: str
    timestamp: datetime
    corrects: Optional[str] = None


# Rule parameters, one shape per rule type

@dataclass(frozen=True)
class RangeParams:
    min: Optional[float] = None
    max: Optional[float] = None
    unit: Optional[str] = None


@dataclass(frozen=True)
class DeltaParams:
    threshold: float
    delta_type: DeltaType = DeltaType.PERCENT


@dataclass(frozen=True)
class AbsurdParams:
    absurd_low: Optional[float] = None
    absurd_high: Optional[float] = None


@dataclass(frozen=True)
class CriticalParams:
    critical_low: Optional[float] = None
    critical_high: Optional[float] = None


@dataclass(frozen=True)
class CustomParams:
    predicate_id: str
    arguments: Tuple[Tuple[str, Any], ...] = ()

    @property
    def argument_map(self) -> Dict[str, Any]:
        return dict(self.arguments)


RuleParams = Union[RangeParams, DeltaParams, AbsurdParams, CriticalParams, CustomParams]

PARAMS_BY_RULE_TYPE = {
    RuleType.RANGE: RangeParams,
    RuleType.DELTA: DeltaParams,
    RuleType.ABSURD: AbsurdParams,
    RuleType.CRITICAL: CriticalParams,
    RuleType.CUSTOM: CustomParams,
}


@dataclass(frozen=True)
class ValidationRule:
    id: str
    test_id: str
    rule_type: RuleType
    parameters: RuleParams
    action: RuleAction = RuleAction.WARN
    requires_review: bool = False
    notify_on_trigger: bool = False
    active: bool = True
    priority: int = 0


@dataclass(frozen=True)
class ReferenceRange:
    min: Optional[float] = None
    max: Optional[float] = None


@dataclass(frozen=True)
class ValidationOutcome:
    """Aggregate result of applying every rule of a test to one value"""
    errors: Tuple[str, ...] = ()
    warnings: Tuple[str, ...] = ()
    alerts: Tuple[str, ...] = ()
    flags: Tuple[ResultFlag, ...] = ()
    is_critical: bool = False
    is_valid: bool = True
    requires_review: bool = False
    notify_rule_ids: Tuple[str, ...] = ()
    triggered_rule_ids: Tuple[str, ...] = ()
    delta_check_failed: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "errors": list(self.errors),
            "warnings": list(self.warnings),
            "alerts": list(self.alerts),
            "flags": [f.value for f in self.flags],
            "is_critical": self.is_critical,
            "is_valid": self.is_valid,
            "requires_review": self.requires_review,
            "notify_rule_ids": list(self.notify_rule_ids),
            "triggered_rule_ids": list(self.triggered_rule_ids),
            "delta_check_failed": self.delta_check_failed,
        }


@dataclass(frozen=True)
class QCLevel:
    qc_test_id: str
    level_id: str
    target_mean: Optional[float] = None
    target_sd: Optional[float] = None
    allowable_total_error: Optional[float] = None  # TEa, percent


@dataclass(frozen=True)
class QCResult:
    """One QC measurement. Violations are computed once at insertion and never recomputed."""
    qc_test_id: str
    level_id: str
    value: float
    timestamp: datetime
    performed_by: str = ""
    violations: Tuple[WestgardRuleEnum, ...] = ()
    instrument_id: Optional[str] = None
    point_id: Optional[str] = None

    @property
    def is_rejected(self) -> bool:
        return any(v in REJECT_RULES for v in self.violations)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "point_id": self.point_id,
            "qc_test_id": self.qc_test_id,
            "level_id": self.level_id,
            "value": self.value,
            "timestamp": self.timestamp.isoformat(),
            "performed_by": self.performed_by,
            "instrument_id": self.instrument_id,
            "violations": [v.value for v in self.violations],
        }


@dataclass(frozen=True)
class QCStatistics:
    """Snapshot of the rolling QC window"""
    mean: float
    sd: float
    cv: float
    n: int
    min: float
    max: float
    period_start: Optional[datetime] = None
    period_end: Optional[datetime] = None
    median: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "mean": self.mean,
            "sd": self.sd,
            "cv": self.cv,
            "n": self.n,
            "min": self.min,
            "max": self.max,
            "median": self.median,
            "period_start": self.period_start.isoformat() if self.period_start else None,
            "period_end": self.period_end.isoformat() if self.period_end else None,
        }


@dataclass(frozen=True)
class VerificationCriteria:
    normal_range_check: bool = False
    delta_check: bool = False
    critical_value_check: bool = False
    require_qc_pass: bool = False
    instrument_check: bool = False
    sample_integrity_check: bool = False
    consistency_check: bool = False
    qc_within_hours: Optional[float] = None
    allowed_instruments: Tuple[str, ...] = ()

    @classmethod
    def defaults(cls) -> "VerificationCriteria":
        """Criteria applied to newly authored auto-verification rules"""
        return cls(
            normal_range_check=True,
            critical_value_check=True,
            require_qc_pass=True,
            sample_integrity_check=True,
        )


@dataclass(frozen=True)
class AutoVerificationRule:
    test_id: str
    criteria: VerificationCriteria = field(default_factory=VerificationCriteria)
    success_count: int = 0
    failure_count: int = 0
    active: bool = True


@dataclass(frozen=True)
class AutoVerificationDecision:
    outcome: VerificationStatusEnum
    reasons: Tuple[str, ...] = ()

    @property
    def auto_verified(self) -> bool:
        return self.outcome is VerificationStatusEnum.AUTO_VERIFIED

    def to_dict(self) -> Dict[str, Any]:
        return {"outcome": self.outcome.value, "reasons": list(self.reasons)}


@dataclass(frozen=True)
class NotificationIntent:
    kind: NotificationKind
    target_role: TargetRole
    dedup_key: str
    payload: Dict[str, Any] = field(default_factory=dict, compare=False)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind.value,
            "target_role": self.target_role.value,
            "dedup_key": self.dedup_key,
            "payload": self.payload,
        }


@dataclass(frozen=True)
class VerificationAuditEvent:
    result_id: str
    test_id: str
    outcome: VerificationStatusEnum
    reasons: Tuple[str, ...]
    recorded_at: datetime
