import logging
import threading
from collections import OrderedDict
from concurrent.futures import Executor, Future, ThreadPoolExecutor
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional, Protocol

from ..models.domain import (
    NotificationIntent,
    NotificationKind,
    ResultValue,
    TargetRole,
    ValidationOutcome,
)
from ..qc.westgard import QCPointEvaluation

logger = logging.getLogger(__name__)

DEFAULT_ACK_TIMEOUT = timedelta(minutes=15)
DEFAULT_DEDUP_WINDOW = timedelta(hours=24)


class Notifier(Protocol):
    """Delivery collaborator. Owns its retries; the router never waits on it."""

    def send(self, intent: NotificationIntent) -> Any:
        ...


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class LoggingNotifier:
    """Writes intents to the log; used when no delivery collaborator is configured"""

    def send(self, intent: NotificationIntent):
        logger.warning(
            f"NOTIFY {intent.target_role.value} [{intent.kind.value}] {intent.dedup_key}: {intent.payload}"
        )


@dataclass
class _PendingAcknowledgement:
    intent: NotificationIntent
    deadline: datetime


@dataclass
class _TATEntry:
    result_id: str
    started_at: datetime
    target: timedelta

    @property
    def due_at(self) -> datetime:
        return self.started_at + self.target


class EscalationRouter:
    """Decides whether and to whom a notification goes, then hands it off.

    Each triggering event produces at most one intent (keyed by result or QC
    point id) within the dedup window. Delivery runs on a thread pool so
    the submitting request never waits for it.
    """

    def __init__(self, notifier: Notifier, executor: Optional[Executor] = None,
                 max_workers: int = 4, ack_timeout: timedelta = DEFAULT_ACK_TIMEOUT,
                 dedup_window: timedelta = DEFAULT_DEDUP_WINDOW,
                 clock: Callable[[], datetime] = _utcnow):
        self.notifier = notifier
        self.executor = executor or ThreadPoolExecutor(max_workers=max_workers,
                                                       thread_name_prefix="labverify-notify")
        self._owns_executor = executor is None
        self.ack_timeout = ack_timeout
        self.dedup_window = dedup_window
        self.clock = clock

        self._lock = threading.Lock()
        # dedup key -> emitted at, oldest first
        self._emitted: "OrderedDict[str, datetime]" = OrderedDict()
        self._pending_ack: Dict[str, _PendingAcknowledgement] = {}
        self._tat: Dict[str, _TATEntry] = {}

    # Triggering events

    def route_result(self, result: ResultValue, outcome: ValidationOutcome,
                     ordering_clinician_id: Optional[str] = None) -> Optional[NotificationIntent]:
        """Critical values go to the ordering clinician"""
        if not outcome.is_critical:
            return None

        intent = NotificationIntent(
            kind=NotificationKind.CRITICAL_VALUE,
            target_role=TargetRole.ORDERING_CLINICIAN,
            dedup_key=f"{NotificationKind.CRITICAL_VALUE.value}:{result.result_id}",
            payload={
                "result_id": result.result_id,
                "patient_id": result.patient_id,
                "test_id": result.test_id,
                "sample_id": result.sample_id,
                "value": result.value,
                "unit": result.unit,
                "flags": [f.value for f in outcome.flags],
                "alerts": list(outcome.alerts),
                "notify_rule_ids": list(outcome.notify_rule_ids),
                "recipient_id": ordering_clinician_id,
                "requires_acknowledgment": True,
            },
        )
        if not self._emit(intent):
            return None

        with self._lock:
            self._pending_ack[intent.dedup_key] = _PendingAcknowledgement(
                intent=intent, deadline=self.clock() + self.ack_timeout
            )
        return intent

    def route_qc_point(self, evaluation: QCPointEvaluation) -> Optional[NotificationIntent]:
        """QC rejections go to the lab supervisor; 1-2s warnings alone do not notify"""
        if not evaluation.qc_failed:
            return None

        point = evaluation.point
        point_key = point.point_id or f"{point.qc_test_id}/{point.level_id}@{point.timestamp.isoformat()}"
        intent = NotificationIntent(
            kind=NotificationKind.QC_FAILURE,
            target_role=TargetRole.LAB_SUPERVISOR,
            dedup_key=f"{NotificationKind.QC_FAILURE.value}:{point_key}",
            payload={
                "point_id": point.point_id,
                "qc_test_id": point.qc_test_id,
                "level_id": point.level_id,
                "instrument_id": point.instrument_id,
                "value": point.value,
                "violations": [v.value for v in point.violations],
                "recommended_actions": [d.recommended_action for d in evaluation.details],
            },
        )
        return intent if self._emit(intent) else None

    # Critical value acknowledgement

    def acknowledge(self, dedup_key: str) -> bool:
        with self._lock:
            return self._pending_ack.pop(dedup_key, None) is not None

    def overdue_escalations(self, now: Optional[datetime] = None) -> List[NotificationIntent]:
        """Escalate unacknowledged critical values to the lab supervisor, once each"""
        now = now or self.clock()
        with self._lock:
            overdue = [key for key, pending in self._pending_ack.items() if pending.deadline <= now]
            expired = [self._pending_ack.pop(key) for key in overdue]

        escalations = []
        for pending in expired:
            original = pending.intent
            intent = NotificationIntent(
                kind=NotificationKind.CRITICAL_ESCALATION,
                target_role=TargetRole.LAB_SUPERVISOR,
                dedup_key=f"{NotificationKind.CRITICAL_ESCALATION.value}:{original.payload['result_id']}",
                payload={**original.payload, "escalated_from": original.dedup_key,
                         "deadline": pending.deadline.isoformat()},
            )
            if self._emit(intent):
                escalations.append(intent)
        return escalations

    # Turnaround time bookkeeping

    def track_tat(self, result_id: str, started_at: datetime, target: timedelta):
        with self._lock:
            self._tat.setdefault(result_id, _TATEntry(result_id, started_at, target))

    def release(self, result_id: str, released_at: Optional[datetime] = None) -> bool:
        """Stop tracking a result; returns True when it was released past its TAT target.

        A result already reported by :meth:`tat_breaches` is no longer tracked,
        so releasing it returns False.
        """
        released_at = released_at or self.clock()
        with self._lock:
            entry = self._tat.pop(result_id, None)
        if entry is None:
            return False
        breached = released_at > entry.due_at
        if breached:
            self._emit(self._tat_intent(entry, released_at))
        return breached

    def tat_breaches(self, now: Optional[datetime] = None) -> List[NotificationIntent]:
        """Unreleased results past their TAT target, each reported once and then dropped"""
        now = now or self.clock()
        with self._lock:
            late = [e for e in self._tat.values() if now > e.due_at]
            for entry in late:
                del self._tat[entry.result_id]

        breaches = []
        for entry in late:
            intent = self._tat_intent(entry, now)
            if self._emit(intent):
                breaches.append(intent)
        return breaches

    def tracked_results(self) -> List[str]:
        """Result ids still awaiting release"""
        with self._lock:
            return list(self._tat)

    def _tat_intent(self, entry: _TATEntry, at: datetime) -> NotificationIntent:
        return NotificationIntent(
            kind=NotificationKind.TAT_BREACH,
            target_role=TargetRole.LAB_SUPERVISOR,
            dedup_key=f"{NotificationKind.TAT_BREACH.value}:{entry.result_id}",
            payload={
                "result_id": entry.result_id,
                "started_at": entry.started_at.isoformat(),
                "due_at": entry.due_at.isoformat(),
                "minutes_over": round((at - entry.due_at).total_seconds() / 60, 1),
            },
        )

    # Dispatch

    def _emit(self, intent: NotificationIntent) -> bool:
        now = self.clock()
        with self._lock:
            self._expire_dedup_keys(now)
            if intent.dedup_key in self._emitted:
                logger.debug(f"Suppressing duplicate notification {intent.dedup_key}")
                return False
            self._emitted[intent.dedup_key] = now

        logger.info(f"Dispatching {intent.kind.value} notification to {intent.target_role.value}: {intent.dedup_key}")
        future = self.executor.submit(self.notifier.send, intent)
        future.add_done_callback(lambda f, key=intent.dedup_key: self._log_delivery(key, f))
        return True

    def _expire_dedup_keys(self, now: datetime):
        # Caller holds self._lock
        cutoff = now - self.dedup_window
        while self._emitted:
            key, emitted_at = next(iter(self._emitted.items()))
            if emitted_at > cutoff:
                break
            del self._emitted[key]

    @staticmethod
    def _log_delivery(dedup_key: str, future: Future):
        error = future.exception()
        if error is not None:
            logger.error(f"Notification {dedup_key} delivery failed: {error}")

    def shutdown(self, wait: bool = True):
        if self._owns_executor:
            self.executor.shutdown(wait=wait)
