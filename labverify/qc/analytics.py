"""
Derived QC views: performance metrics against targets, trend analysis and
Levey-Jennings chart data. Nothing here feeds back into rule evaluation.
"""

from dataclasses import dataclass
from typing import Any, Dict, Optional, Sequence

import numpy as np
import pandas as pd
from scipy import stats

from ..models.domain import QCLevel, QCResult, QCStatistics

# z-value for a one-sided 95% limit used in the total error estimate
TOTAL_ERROR_Z = 1.65


@dataclass(frozen=True)
class QCPerformance:
    bias: float  # Percent difference from target mean
    total_error: float
    sigma: float

    def to_dict(self) -> Dict[str, Any]:
        return {"bias": self.bias, "total_error": self.total_error, "sigma": self.sigma}


def summarize_performance(statistics: QCStatistics, level: QCLevel) -> Optional[QCPerformance]:
    """Bias, total error and sigma metric for a level with a target mean"""
    if not level.target_mean or statistics.n == 0:
        return None

    bias = (statistics.mean - level.target_mean) / level.target_mean * 100
    total_error = abs(bias) + TOTAL_ERROR_Z * statistics.cv
    if level.allowable_total_error and statistics.cv > 0:
        sigma = (level.allowable_total_error - abs(bias)) / statistics.cv
    else:
        sigma = 0.0
    return QCPerformance(bias=bias, total_error=total_error, sigma=sigma)


def trend_summary(history: Sequence[QCResult], min_points: int = 5) -> Dict[str, Any]:
    """Linear regression of value against hours since the first point"""
    if len(history) < min_points:
        return {"insufficient_data": True}

    first = history[0].timestamp
    time_hours = np.array([(p.timestamp - first).total_seconds() / 3600 for p in history])
    values = np.array([p.value for p in history], dtype=float)

    if np.ptp(time_hours) == 0:
        # linregress cannot fit when every x is identical
        time_hours = np.arange(len(values), dtype=float)

    result = stats.linregress(time_hours, values)
    trend_significant = bool(result.pvalue < 0.05)

    if result.slope > 0 and trend_significant:
        trend_direction = "increasing"
    elif result.slope < 0 and trend_significant:
        trend_direction = "decreasing"
    else:
        trend_direction = "stable"

    return {
        "trend_direction": trend_direction,
        "slope": float(result.slope),
        "intercept": float(result.intercept),
        "correlation_coefficient": float(result.rvalue),
        "p_value": float(result.pvalue),
        "trend_significant": trend_significant,
    }


def levey_jennings_frame(history: Sequence[QCResult], statistics: QCStatistics) -> pd.DataFrame:
    """One row per QC point with its z-score and the ±2SD / ±3SD limits"""
    frame = pd.DataFrame({
        "point_id": [p.point_id for p in history],
        "timestamp": [p.timestamp for p in history],
        "value": [p.value for p in history],
        "violations": [[v.value for v in p.violations] for p in history],
    })
    if statistics.sd > 0:
        frame["z_score"] = (frame["value"] - statistics.mean) / statistics.sd
    else:
        frame["z_score"] = 0.0

    frame["mean"] = statistics.mean
    frame["uwl"] = statistics.mean + 2 * statistics.sd
    frame["lwl"] = statistics.mean - 2 * statistics.sd
    frame["ucl"] = statistics.mean + 3 * statistics.sd
    frame["lcl"] = statistics.mean - 3 * statistics.sd
    return frame
