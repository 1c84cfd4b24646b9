"""
SQLAlchemy-backed rule source, history source and persistence collaborator.

QC points are appended through :meth:`SqlAlchemyStore.append_qc_point`, which
holds a lock per (qc_test_id, level_id) across the history read, the
evaluation and the insert so concurrent points for one level never evaluate
against the same prior history. Different levels proceed in parallel.
"""

import logging
import threading
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, List, Optional, Tuple

from sqlalchemy import func, or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from ..exceptions import DuplicateRecordError, RuleNotFoundError
from ..models.domain import (
    AutoVerificationDecision,
    AutoVerificationRule,
    QCLevel,
    QCResult,
    ResultValue,
    ValidationOutcome,
    ValidationRule,
    VerificationAuditEvent,
    VerificationStatusEnum,
)
from ..models.records import (
    AutoVerificationRuleRecord,
    PatientResultRecord,
    QCLevelRecord,
    QCResultRecord,
    ValidationRuleRecord,
    VerificationEventRecord,
    as_utc,
)
from ..qc.westgard import QCPointEvaluation, is_qc_failed

logger = logging.getLogger(__name__)

QCEvaluator = Callable[[List[QCResult], Optional[QCLevel]], QCPointEvaluation]


class SqlAlchemyStore:
    def __init__(self, session_factory: sessionmaker):
        self.session_factory = session_factory
        self._locks_guard = threading.Lock()
        self._qc_locks: Dict[Tuple[str, str], threading.Lock] = {}

    def _session(self) -> Session:
        return self.session_factory()

    # Rule source

    def add_validation_rule(self, rule: ValidationRule):
        try:
            with self._session() as session, session.begin():
                session.add(ValidationRuleRecord.from_domain(rule))
        except IntegrityError as e:
            raise DuplicateRecordError("validation rule", rule.id) from e

    def get_validation_rules(self, test_id: str) -> List[ValidationRule]:
        """Active rules for a test, ordered by priority then creation"""
        with self._session() as session:
            rows = session.scalars(
                select(ValidationRuleRecord)
                .where(ValidationRuleRecord.test_id == test_id, ValidationRuleRecord.is_active.is_(True))
                .order_by(ValidationRuleRecord.priority, ValidationRuleRecord.id)
            ).all()
            return [row.to_domain() for row in rows]

    def set_auto_verification_rule(self, rule: AutoVerificationRule, name: Optional[str] = None):
        with self._session() as session, session.begin():
            existing = session.scalars(
                select(AutoVerificationRuleRecord).where(AutoVerificationRuleRecord.test_id == rule.test_id)
            ).first()
            record = AutoVerificationRuleRecord.from_domain(rule, name=name)
            if existing is None:
                session.add(record)
            else:
                existing.criteria = record.criteria
                existing.is_active = record.is_active
                existing.name = name or existing.name

    def get_auto_verification_rule(self, test_id: str) -> Optional[AutoVerificationRule]:
        with self._session() as session:
            row = session.scalars(
                select(AutoVerificationRuleRecord).where(
                    AutoVerificationRuleRecord.test_id == test_id,
                    AutoVerificationRuleRecord.is_active.is_(True),
                )
            ).first()
            if row is None:
                return None
            success, failure = self._decision_counts(session, test_id)
            return row.to_domain(success_count=success, failure_count=failure)

    # QC levels and history

    def set_qc_level(self, level: QCLevel):
        with self._session() as session, session.begin():
            row = session.scalars(
                select(QCLevelRecord).where(
                    QCLevelRecord.qc_test_id == level.qc_test_id,
                    QCLevelRecord.level_id == level.level_id,
                )
            ).first()
            if row is None:
                row = QCLevelRecord(qc_test_id=level.qc_test_id, level_id=level.level_id)
                session.add(row)
            row.target_mean = level.target_mean
            row.target_sd = level.target_sd
            row.allowable_total_error = level.allowable_total_error

    def get_qc_level(self, qc_test_id: str, level_id: str) -> Optional[QCLevel]:
        with self._session() as session:
            row = session.scalars(
                select(QCLevelRecord).where(
                    QCLevelRecord.qc_test_id == qc_test_id, QCLevelRecord.level_id == level_id
                )
            ).first()
            return row.to_domain() if row else None

    def get_qc_history(self, qc_test_id: str, level_id: str, window_size: int) -> List[QCResult]:
        """Most recent ``window_size`` points, oldest first"""
        with self._session() as session:
            return self._qc_history(session, qc_test_id, level_id, window_size)

    @staticmethod
    def _qc_history(session: Session, qc_test_id: str, level_id: str, window_size: int) -> List[QCResult]:
        rows = session.scalars(
            select(QCResultRecord)
            .where(QCResultRecord.qc_test_id == qc_test_id, QCResultRecord.level_id == level_id)
            .order_by(QCResultRecord.id.desc())
            .limit(window_size)
        ).all()
        return [row.to_domain() for row in reversed(rows)]

    def _qc_lock(self, qc_test_id: str, level_id: str) -> threading.Lock:
        with self._locks_guard:
            return self._qc_locks.setdefault((qc_test_id, level_id), threading.Lock())

    def append_qc_point(self, qc_test_id: str, level_id: str, window_size: int,
                        evaluate: QCEvaluator) -> QCPointEvaluation:
        """Read history, evaluate the new point and insert it as one serialized step"""
        with self._qc_lock(qc_test_id, level_id):
            with self._session() as session, session.begin():
                history = self._qc_history(session, qc_test_id, level_id, window_size)
                level_row = session.scalars(
                    select(QCLevelRecord).where(
                        QCLevelRecord.qc_test_id == qc_test_id, QCLevelRecord.level_id == level_id
                    )
                ).first()
                evaluation = evaluate(history, level_row.to_domain() if level_row else None)
                session.add(QCResultRecord.from_domain(evaluation.point))
        logger.info(
            f"Stored QC point {evaluation.point.point_id} for {qc_test_id}/{level_id} "
            f"(violations: {[v.value for v in evaluation.violations]})"
        )
        return evaluation

    def latest_qc_point(self, qc_test_id: str, level_id: str,
                        instrument_id: Optional[str] = None) -> Optional[QCResult]:
        with self._session() as session:
            query = select(QCResultRecord).where(
                QCResultRecord.qc_test_id == qc_test_id, QCResultRecord.level_id == level_id
            )
            if instrument_id is not None:
                # Points recorded without an instrument apply to every instrument
                query = query.where(or_(
                    QCResultRecord.instrument_id == instrument_id,
                    QCResultRecord.instrument_id.is_(None),
                ))
            row = session.scalars(query.order_by(QCResultRecord.id.desc()).limit(1)).first()
            return row.to_domain() if row else None

    def qc_level_ids(self, qc_test_id: str) -> List[str]:
        with self._session() as session:
            return list(session.scalars(
                select(QCResultRecord.level_id)
                .where(QCResultRecord.qc_test_id == qc_test_id)
                .distinct()
                .order_by(QCResultRecord.level_id)
            ).all())

    def is_qc_failed(self, qc_test_id: str, instrument_id: Optional[str] = None,
                     within_hours: Optional[float] = None, now: Optional[datetime] = None) -> bool:
        """True when any level's latest point is rejected, or, with ``within_hours``,
        when a level has no point recent enough to count as a pass.

        With ``instrument_id`` only that instrument's points and points recorded
        without an instrument are considered. An instrument that has never run
        QC for the test is not treated as failed.
        """
        now = now or datetime.now(timezone.utc)
        for level_id in self.qc_level_ids(qc_test_id):
            latest = self.latest_qc_point(qc_test_id, level_id, instrument_id)
            if latest is None:
                continue
            if is_qc_failed(latest):
                return True
            if within_hours is not None and now - as_utc(latest.timestamp) > timedelta(hours=within_hours):
                logger.info(f"QC for {qc_test_id}/{level_id} is older than {within_hours}h")
                return True
        return False

    # Patient results and audit stream

    def save_result(self, result: ResultValue, outcome: ValidationOutcome,
                    decision: AutoVerificationDecision):
        numeric = isinstance(result.value, (int, float)) and not isinstance(result.value, bool)
        try:
            with self._session() as session, session.begin():
                session.add(PatientResultRecord(
                    result_id=result.result_id,
                    test_id=result.test_id,
                    patient_id=result.patient_id,
                    sample_id=result.sample_id,
                    instrument_id=result.instrument_id,
                    value_numeric=float(result.value) if numeric else None,
                    value_text=None if numeric else str(result.value),
                    units=result.unit,
                    run_datetime=result.timestamp,
                    corrects=result.corrects,
                    status=decision.outcome,
                    is_critical=outcome.is_critical,
                    outcome=outcome.to_dict(),
                    reasons=list(decision.reasons),
                ))
        except IntegrityError as e:
            raise DuplicateRecordError("result", result.result_id) from e

    def has_result(self, result_id: str) -> bool:
        with self._session() as session:
            return session.scalars(
                select(PatientResultRecord.id).where(PatientResultRecord.result_id == result_id).limit(1)
            ).first() is not None

    def get_previous_result(self, test_id: str, patient_id: str,
                            exclude: Tuple[str, ...] = ()) -> Optional[ResultValue]:
        """Most recent stored result for the patient and test, skipping ``exclude`` ids"""
        with self._session() as session:
            query = select(PatientResultRecord).where(
                PatientResultRecord.test_id == test_id,
                PatientResultRecord.patient_id == patient_id,
            )
            excluded = [e for e in exclude if e]
            if excluded:
                query = query.where(PatientResultRecord.result_id.not_in(excluded))
            row = session.scalars(
                query.order_by(PatientResultRecord.run_datetime.desc(), PatientResultRecord.id.desc()).limit(1)
            ).first()
            return row.to_domain() if row else None

    def record_decision(self, event: VerificationAuditEvent):
        with self._session() as session, session.begin():
            session.add(VerificationEventRecord(
                result_id=event.result_id,
                test_id=event.test_id,
                outcome=event.outcome,
                reasons=list(event.reasons),
                recorded_at=event.recorded_at,
            ))

    def decision_counts(self, test_id: str) -> Tuple[int, int]:
        """(success_count, failure_count) for a test"""
        with self._session() as session:
            return self._decision_counts(session, test_id)

    @staticmethod
    def _decision_counts(session: Session, test_id: str) -> Tuple[int, int]:
        rows = session.execute(
            select(VerificationEventRecord.outcome, func.count())
            .where(VerificationEventRecord.test_id == test_id)
            .group_by(VerificationEventRecord.outcome)
        ).all()
        counts = {outcome: count for outcome, count in rows}
        return (
            counts.get(VerificationStatusEnum.AUTO_VERIFIED, 0),
            counts.get(VerificationStatusEnum.HELD_FOR_REVIEW, 0),
        )

    def require_auto_verification_rule(self, test_id: str) -> AutoVerificationRule:
        rule = self.get_auto_verification_rule(test_id)
        if rule is None:
            raise RuleNotFoundError("auto-verification rule", test_id)
        return rule
