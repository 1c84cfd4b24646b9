from datetime import datetime, timezone
from typing import List, Optional

from ..models.domain import (
    OUT_OF_RANGE_FLAGS,
    AutoVerificationDecision,
    ValidationOutcome,
    VerificationAuditEvent,
    VerificationCriteria,
    VerificationStatusEnum,
)

REASON_OUT_OF_RANGE = "out of reference range"
REASON_CRITICAL = "critical value"
REASON_DELTA = "delta check failed"
REASON_VALIDATION_ERROR = "validation error"
REASON_QC = "QC out of control"
REASON_INSTRUMENT = "instrument not ready"
REASON_SAMPLE = "sample integrity issue"
REASON_CONSISTENCY = "panel inconsistency"


def decide(outcome: ValidationOutcome, qc_failed: bool, instrument_ok: bool, sample_ok: bool,
           consistency_ok: bool, criteria: VerificationCriteria) -> AutoVerificationDecision:
    """Auto-verify or hold a result for review.

    Only criteria switched on are evaluated; blocking validation errors hold
    the result regardless of criteria. Every matching reason is returned.
    The function has no side effects; counting decisions is done by the
    caller through :func:`audit_event`.
    """
    reasons: List[str] = []

    if criteria.normal_range_check and any(f in OUT_OF_RANGE_FLAGS for f in outcome.flags):
        reasons.append(REASON_OUT_OF_RANGE)
    if criteria.critical_value_check and outcome.is_critical:
        reasons.append(REASON_CRITICAL)
    if criteria.delta_check and outcome.delta_check_failed:
        reasons.append(REASON_DELTA)
    if not outcome.is_valid:
        reasons.append(REASON_VALIDATION_ERROR)
    if criteria.require_qc_pass and qc_failed:
        reasons.append(REASON_QC)
    if criteria.instrument_check and not instrument_ok:
        reasons.append(REASON_INSTRUMENT)
    if criteria.sample_integrity_check and not sample_ok:
        reasons.append(REASON_SAMPLE)
    if criteria.consistency_check and not consistency_ok:
        reasons.append(REASON_CONSISTENCY)

    status = VerificationStatusEnum.HELD_FOR_REVIEW if reasons else VerificationStatusEnum.AUTO_VERIFIED
    return AutoVerificationDecision(outcome=status, reasons=tuple(reasons))


def audit_event(result_id: str, test_id: str, decision: AutoVerificationDecision,
                recorded_at: Optional[datetime] = None) -> VerificationAuditEvent:
    """The single audit record appended for one decision"""
    return VerificationAuditEvent(
        result_id=result_id,
        test_id=test_id,
        outcome=decision.outcome,
        reasons=decision.reasons,
        recorded_at=recorded_at or datetime.now(timezone.utc),
    )
