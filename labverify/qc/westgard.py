import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence, Tuple

import numpy as np

from ..models.domain import (
    QCLevel,
    QCResult,
    QCStatistics,
    WestgardRuleEnum,
)

logger = logging.getLogger(__name__)

DEFAULT_WINDOW_SIZE = 20
DEFAULT_MIN_POINTS_FOR_LIMITS = 20

# Longest run any rule looks at (10x)
MAX_RUN_LENGTH = 10


@dataclass
class WestgardViolationResult:
    """Violation details for one rule on the newest QC point"""
    rule_violated: WestgardRuleEnum
    severity: str
    message: str
    affected_points: List[int]  # Offsets back from the new point, 0 is the new point
    recommended_action: str
    additional_context: Optional[Dict[str, Any]] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "rule_violated": self.rule_violated.value,
            "severity": self.severity,
            "message": self.message,
            "affected_points": self.affected_points,
            "recommended_action": self.recommended_action,
            "additional_context": self.additional_context,
        }


@dataclass(frozen=True)
class ControlLimits:
    mean: float
    sd: float
    n: int
    source: str  # "computed" or "target"

    def to_dict(self) -> Dict[str, Any]:
        return {"mean": self.mean, "sd": self.sd, "n": self.n, "source": self.source}


@dataclass(frozen=True)
class QCPointEvaluation:
    point: QCResult
    statistics: QCStatistics
    limits: ControlLimits
    details: Tuple[WestgardViolationResult, ...] = field(default=(), compare=False)

    @property
    def violations(self) -> Tuple[WestgardRuleEnum, ...]:
        return self.point.violations

    @property
    def qc_failed(self) -> bool:
        return self.point.is_rejected


def is_qc_failed(latest: Optional[QCResult]) -> bool:
    """QC-failed state of a (test, level) pair, read from its latest point only"""
    return latest is not None and latest.is_rejected


class QCStatisticsEngine:
    """Rolling QC statistics and Westgard multi-rule evaluation.

    The engine never fetches data: callers pass the history (oldest first)
    and are responsible for serializing inserts per (qc_test_id, level_id).
    """

    def __init__(self, window_size: int = DEFAULT_WINDOW_SIZE,
                 min_points_for_limits: int = DEFAULT_MIN_POINTS_FOR_LIMITS):
        if window_size < 2:
            raise ValueError("window_size must be at least 2")
        self.window_size = window_size
        self.min_points_for_limits = min_points_for_limits

    def record_qc_point(self, qc_test_id: str, level_id: str, value: float,
                        history: Sequence[QCResult], *, level: Optional[QCLevel] = None,
                        timestamp: Optional[datetime] = None, performed_by: str = "",
                        instrument_id: Optional[str] = None,
                        point_id: Optional[str] = None) -> QCPointEvaluation:
        """Evaluate a new QC point against prior history and return its frozen result"""
        series = [p for p in history if p.qc_test_id == qc_test_id and p.level_id == level_id]
        if len(series) != len(history):
            logger.warning(
                f"Ignoring {len(history) - len(series)} history points not belonging to {qc_test_id}/{level_id}"
            )
        timestamp = timestamp or datetime.now(timezone.utc)

        limits = self.control_limits(series, level)
        preceding = [p.value for p in series[-(MAX_RUN_LENGTH - 1):]]
        details = self.evaluate_rules(value, preceding, limits)

        point = QCResult(
            qc_test_id=qc_test_id,
            level_id=level_id,
            value=float(value),
            timestamp=timestamp,
            performed_by=performed_by,
            violations=tuple(d.rule_violated for d in details),
            instrument_id=instrument_id,
            point_id=point_id,
        )

        window = list(series[-(self.window_size - 1):]) + [point]
        statistics = self.calculate_statistics(window)

        if point.is_rejected:
            logger.warning(
                f"QC rejected for {qc_test_id}/{level_id}: "
                f"{', '.join(v.value for v in point.violations)}"
            )
        elif point.violations:
            logger.info(f"QC warning for {qc_test_id}/{level_id}: 1-2s")

        return QCPointEvaluation(point=point, statistics=statistics, limits=limits, details=tuple(details))

    def calculate_statistics(self, points: Sequence[QCResult]) -> QCStatistics:
        """Mean, sample SD and CV% over the given points"""
        if not points:
            return QCStatistics(mean=0.0, sd=0.0, cv=0.0, n=0, min=0.0, max=0.0)

        values_array = np.array([p.value for p in points], dtype=float)
        n_points = len(values_array)
        mean = float(np.mean(values_array))

        if n_points < 2:
            std_dev = 0.0
        else:
            std_dev = float(np.std(values_array, ddof=1))  # Sample standard deviation
        cv_percent = (std_dev / mean) * 100 if mean != 0 and std_dev > 0 else 0.0

        return QCStatistics(
            mean=mean,
            sd=std_dev,
            cv=cv_percent,
            n=n_points,
            min=float(np.min(values_array)),
            max=float(np.max(values_array)),
            period_start=points[0].timestamp,
            period_end=points[-1].timestamp,
            median=float(np.median(values_array)),
        )

    def control_limits(self, history: Sequence[QCResult], level: Optional[QCLevel] = None) -> ControlLimits:
        """Limits the next point is judged against, from history that excludes it"""
        prior = list(history[-self.window_size:])

        if (len(prior) < self.min_points_for_limits and level is not None
                and level.target_mean is not None and level.target_sd):
            return ControlLimits(mean=level.target_mean, sd=level.target_sd, n=len(prior), source="target")

        stats = self.calculate_statistics(prior)
        return ControlLimits(mean=stats.mean, sd=stats.sd, n=stats.n, source="computed")

    def evaluate_rules(self, value: float, preceding: Sequence[float],
                       limits: ControlLimits) -> List[WestgardViolationResult]:
        """All Westgard rules violated by ``value`` given up to nine preceding values"""
        if limits.sd <= 0:
            logger.debug(f"No usable SD (n={limits.n}), skipping Westgard evaluation")
            return []

        values = list(preceding) + [float(value)]
        z_scores = [(v - limits.mean) / limits.sd for v in values]

        violations = []
        for check in (self._check_12s, self._check_13s, self._check_22s,
                      self._check_r4s, self._check_41s, self._check_10x):
            violation = check(z_scores, values, limits)
            if violation:
                violations.append(violation)
        return violations

    def _check_12s(self, z_scores, values, limits) -> Optional[WestgardViolationResult]:
        """Check 1-2s rule: newest control exceeds ±2SD (warning)"""
        z = z_scores[-1]
        if abs(z) > 2:
            return WestgardViolationResult(
                rule_violated=WestgardRuleEnum.RULE_12S,
                severity="warning",
                message=f"Control exceeds 2 standard deviations (Z-score: {z:.2f})",
                affected_points=[0],
                recommended_action="Inspect the run with the remaining rules before reporting",
                additional_context={"z_score": z, "value": values[-1]},
            )
        return None

    def _check_13s(self, z_scores, values, limits) -> Optional[WestgardViolationResult]:
        """Check 1-3s rule: newest control exceeds ±3SD"""
        z = z_scores[-1]
        if abs(z) > 3:
            return WestgardViolationResult(
                rule_violated=WestgardRuleEnum.RULE_13S,
                severity="reject",
                message=f"Control exceeds 3 standard deviations (Z-score: {z:.2f})",
                affected_points=[0],
                recommended_action="Stop testing, investigate and correct before resuming",
                additional_context={"z_score": z, "value": values[-1], "mean": limits.mean, "sd": limits.sd},
            )
        return None

    def _check_22s(self, z_scores, values, limits) -> Optional[WestgardViolationResult]:
        """Check 2-2s rule: newest two controls exceed 2SD on the same side"""
        if len(z_scores) < 2:
            return None
        z1, z2 = z_scores[-2], z_scores[-1]
        if (z1 > 2 and z2 > 2) or (z1 < -2 and z2 < -2):
            return WestgardViolationResult(
                rule_violated=WestgardRuleEnum.RULE_22S,
                severity="reject",
                message=f"Two consecutive controls exceed 2SD on same side (Z-scores: {z1:.2f}, {z2:.2f})",
                affected_points=[1, 0],
                recommended_action="Stop testing, investigate systematic error",
                additional_context={"z_scores": [z1, z2], "values": values[-2:]},
            )
        return None

    def _check_r4s(self, z_scores, values, limits) -> Optional[WestgardViolationResult]:
        """Check R-4s rule: newest two controls on opposite sides, more than 4SD apart"""
        if len(z_scores) < 2:
            return None
        z1, z2 = z_scores[-2], z_scores[-1]
        range_val = abs(values[-1] - values[-2])
        if z1 * z2 < 0 and range_val > 4 * limits.sd:
            return WestgardViolationResult(
                rule_violated=WestgardRuleEnum.RULE_R4S,
                severity="reject",
                message=f"Range between controls exceeds 4SD (Range: {range_val:.2f})",
                affected_points=[1, 0],
                recommended_action="Check for random error, repeat analysis",
                additional_context={"range_value": range_val, "threshold": 4 * limits.sd, "values": values[-2:]},
            )
        return None

    def _check_41s(self, z_scores, values, limits) -> Optional[WestgardViolationResult]:
        """Check 4-1s rule: newest four controls exceed 1SD on the same side"""
        if len(z_scores) < 4:
            return None
        last4 = z_scores[-4:]
        if all(z > 1 for z in last4) or all(z < -1 for z in last4):
            return WestgardViolationResult(
                rule_violated=WestgardRuleEnum.RULE_41S,
                severity="reject",
                message="Four consecutive controls exceed 1SD on same side",
                affected_points=[3, 2, 1, 0],
                recommended_action="Investigate systematic shift or trend",
                additional_context={"z_scores": last4, "values": values[-4:]},
            )
        return None

    def _check_10x(self, z_scores, values, limits) -> Optional[WestgardViolationResult]:
        """Check 10x rule: newest ten controls on the same side of the mean"""
        if len(z_scores) < 10:
            return None
        last10 = z_scores[-10:]
        all_above = all(z > 0 for z in last10)
        all_below = all(z < 0 for z in last10)
        if all_above or all_below:
            side = "above" if all_above else "below"
            return WestgardViolationResult(
                rule_violated=WestgardRuleEnum.RULE_10X,
                severity="reject",
                message=f"Ten consecutive controls {side} mean",
                affected_points=list(range(9, -1, -1)),
                recommended_action="Check for systematic bias, consider recalibration",
                additional_context={"side": side, "values": values[-10:]},
            )
        return None


def record_qc_point(qc_test_id: str, level_id: str, value: float, history: Sequence[QCResult],
                    **kwargs) -> QCPointEvaluation:
    """Evaluate with the default window and limit settings"""
    return QCStatisticsEngine().record_qc_point(qc_test_id, level_id, value, history, **kwargs)

