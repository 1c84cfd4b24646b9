import logging
import uuid
from dataclasses import dataclass, replace
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

import pandas as pd

from ..exceptions import DuplicateRecordError, SubmissionBlockedError
from ..escalation.router import EscalationRouter
from ..models.domain import (
    AutoVerificationDecision,
    NotificationIntent,
    ReferenceRange,
    ResultValue,
    ValidationOutcome,
    VerificationStatusEnum,
)
from ..models.records import as_utc
from ..qc.analytics import levey_jennings_frame, summarize_performance, trend_summary
from ..qc.westgard import MAX_RUN_LENGTH, QCPointEvaluation, QCStatisticsEngine, is_qc_failed
from ..validation.evaluator import ValidationEvaluator
from ..verification.decider import audit_event, decide
from .repository import SqlAlchemyStore

logger = logging.getLogger(__name__)

REASON_NO_RULE = "no auto-verification rule"


@dataclass(frozen=True)
class VerificationReport:
    result: ResultValue
    outcome: ValidationOutcome
    decision: AutoVerificationDecision
    qc_failed: bool
    notification: Optional[NotificationIntent] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "result_id": self.result.result_id,
            "outcome": self.outcome.to_dict(),
            "decision": self.decision.to_dict(),
            "qc_failed": self.qc_failed,
            "notification": self.notification.to_dict() if self.notification else None,
        }


class ResultVerificationService:
    """Result entry flow: validate, decide, audit, escalate.

    ``evaluate_and_decide`` only reads from the store. ``submit`` audits the
    decision and escalates critical values once per stored result id; nothing
    there waits on notification delivery, and a blocked submission raises
    before the result is persisted.
    """

    def __init__(self, store: SqlAlchemyStore, router: EscalationRouter,
                 evaluator: Optional[ValidationEvaluator] = None,
                 default_tat: timedelta = timedelta(minutes=60)):
        self.store = store
        self.router = router
        self.evaluator = evaluator or ValidationEvaluator()
        self.default_tat = default_tat

    def evaluate_and_decide(self, result: ResultValue, instrument_ok: bool = True, sample_ok: bool = True,
                            consistency_ok: bool = True,
                            reference_range: Optional[ReferenceRange] = None) -> VerificationReport:
        rules = self.store.get_validation_rules(result.test_id)
        previous = self.store.get_previous_result(
            result.test_id, result.patient_id, exclude=(result.result_id, result.corrects)
        )
        outcome = self.evaluator.evaluate(result, rules, previous, reference_range)

        av_rule = self.store.get_auto_verification_rule(result.test_id)
        qc_failed = False
        if av_rule is None:
            logger.info(f"No auto-verification rule for {result.test_id}; holding {result.result_id}")
            decision = AutoVerificationDecision(
                outcome=VerificationStatusEnum.HELD_FOR_REVIEW, reasons=(REASON_NO_RULE,)
            )
        else:
            criteria = av_rule.criteria
            if criteria.require_qc_pass:
                qc_failed = self.store.is_qc_failed(
                    result.test_id, instrument_id=result.instrument_id or None,
                    within_hours=criteria.qc_within_hours, now=as_utc(result.timestamp),
                )
            if criteria.allowed_instruments and result.instrument_id not in criteria.allowed_instruments:
                instrument_ok = False
            decision = decide(outcome, qc_failed, instrument_ok, sample_ok, consistency_ok, criteria)

        return VerificationReport(result=result, outcome=outcome, decision=decision, qc_failed=qc_failed)

    def submit(self, result: ResultValue, tat_started_at: Optional[datetime] = None,
               tat_target: Optional[timedelta] = None, ordering_clinician_id: Optional[str] = None,
               **signals) -> VerificationReport:
        """Evaluate, audit and escalate, then persist unless a blocking error is present"""
        if self.store.has_result(result.result_id):
            logger.warning(f"Result {result.result_id} was already submitted")
            raise DuplicateRecordError("result", result.result_id)

        report = self.evaluate_and_decide(result, **signals)
        decision = report.decision
        self.store.record_decision(audit_event(result.result_id, result.test_id, decision))
        logger.info(
            f"Result {result.result_id} ({result.test_id}): {decision.outcome.value}"
            + (f" [{', '.join(decision.reasons)}]" if decision.reasons else "")
        )
        report = replace(report, notification=self.router.route_result(result, report.outcome,
                                                                        ordering_clinician_id))

        if not report.outcome.is_valid:
            logger.warning(f"Submission of {result.result_id} blocked: {list(report.outcome.errors)}")
            raise SubmissionBlockedError(result.result_id, report.outcome, decision)

        self.store.save_result(result, report.outcome, decision)
        self.router.track_tat(
            result.result_id, as_utc(tat_started_at or result.timestamp), tat_target or self.default_tat
        )
        if decision.auto_verified:
            self.router.release(result.result_id)
        return report


class QCService:
    """QC entry flow: serialized append-and-evaluate, then escalate rejections"""

    def __init__(self, store: SqlAlchemyStore, router: EscalationRouter,
                 engine: Optional[QCStatisticsEngine] = None):
        self.store = store
        self.router = router
        self.engine = engine or QCStatisticsEngine()

    @property
    def history_window(self) -> int:
        return max(self.engine.window_size, MAX_RUN_LENGTH - 1)

    def record_point(self, qc_test_id: str, level_id: str, value: float, performed_by: str = "",
                     instrument_id: Optional[str] = None,
                     timestamp: Optional[datetime] = None) -> QCPointEvaluation:
        point_id = f"QC_{uuid.uuid4().hex[:16]}"
        timestamp = timestamp or datetime.now(timezone.utc)

        def evaluate(history, level):
            return self.engine.record_qc_point(
                qc_test_id, level_id, value, history, level=level, timestamp=timestamp,
                performed_by=performed_by, instrument_id=instrument_id or None, point_id=point_id,
            )

        evaluation = self.store.append_qc_point(qc_test_id, level_id, self.history_window, evaluate)
        self.router.route_qc_point(evaluation)
        return evaluation

    def status(self, qc_test_id: str, level_id: str) -> Dict[str, Any]:
        latest = self.store.latest_qc_point(qc_test_id, level_id)
        return {
            "qc_test_id": qc_test_id,
            "level_id": level_id,
            "qc_failed": is_qc_failed(latest),
            "latest": latest.to_dict() if latest else None,
        }

    def summary(self, qc_test_id: str, level_id: str) -> Dict[str, Any]:
        history = self.store.get_qc_history(qc_test_id, level_id, self.engine.window_size)
        statistics = self.engine.calculate_statistics(history)
        level = self.store.get_qc_level(qc_test_id, level_id)
        performance = summarize_performance(statistics, level) if level else None
        return {
            "statistics": statistics.to_dict(),
            "performance": performance.to_dict() if performance else None,
            "trend": trend_summary(history),
        }

    def levey_jennings(self, qc_test_id: str, level_id: str) -> pd.DataFrame:
        history = self.store.get_qc_history(qc_test_id, level_id, self.engine.window_size)
        statistics = self.engine.calculate_statistics(history)
        return levey_jennings_frame(history, statistics)
