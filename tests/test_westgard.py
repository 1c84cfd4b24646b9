import numpy as np
import pytest
from datetime import timedelta

from labverify.models.domain import QCLevel, QCResult, WestgardRuleEnum
from labverify.qc.analytics import levey_jennings_frame, summarize_performance, trend_summary
from labverify.qc.westgard import QCStatisticsEngine, is_qc_failed, record_qc_point

from conftest import BASE_TIME

W = WestgardRuleEnum


@pytest.fixture
def level():
    """Target mean 100, SD 2"""
    return QCLevel(qc_test_id="GLU", level_id="L1", target_mean=100.0, target_sd=2.0, allowable_total_error=10.0)


@pytest.fixture
def engine():
    return QCStatisticsEngine(window_size=20, min_points_for_limits=20)


def feed(engine, values, level=None, history=None):
    """Record values one after another, each against the points before it"""
    history = list(history or [])
    evaluations = []
    for value in values:
        evaluation = engine.record_qc_point(
            "GLU", "L1", value, history, level=level,
            timestamp=BASE_TIME + timedelta(hours=len(history)),
            point_id=f"QC{len(history):03d}",
        )
        history.append(evaluation.point)
        evaluations.append(evaluation)
    return evaluations


def make_points(values, level_id="L1"):
    return [
        QCResult(qc_test_id="GLU", level_id=level_id, value=v, timestamp=BASE_TIME + timedelta(hours=i))
        for i, v in enumerate(values)
    ]


class TestWestgardRules:

    def test_in_control_point(self, engine, level):
        evaluation = feed(engine, [100.5], level)[0]

        assert evaluation.violations == ()
        assert not evaluation.qc_failed

    def test_12s_is_warning_only(self, engine, level):
        evaluation = feed(engine, [105.0], level)[0]

        assert evaluation.violations == (W.RULE_12S,)
        assert not evaluation.qc_failed
        assert evaluation.details[0].severity == "warning"

    def test_single_excursion_after_flat_series(self, engine, level):
        evaluations = feed(engine, [100.0, 101.0, 99.0, 100.5, 105.0], level)

        assert [e.violations for e in evaluations[:4]] == [(), (), (), ()]
        assert evaluations[-1].violations == (W.RULE_12S,)
        assert not is_qc_failed(evaluations[-1].point)

    def test_13s_reports_12s_as_well(self, engine, level):
        evaluation = feed(engine, [107.0], level)[0]

        assert evaluation.violations == (W.RULE_12S, W.RULE_13S)
        assert evaluation.qc_failed

    def test_22s(self, engine, level):
        first, second = feed(engine, [104.2, 104.2], level)

        assert first.violations == (W.RULE_12S,)
        assert second.violations == (W.RULE_12S, W.RULE_22S)
        assert second.qc_failed

    def test_r4s(self, engine, level):
        first, second = feed(engine, [104.5, 95.5], level)

        assert first.violations == (W.RULE_12S,)
        assert second.violations == (W.RULE_12S, W.RULE_R4S)

    def test_41s(self, engine, level):
        evaluations = feed(engine, [102.5] * 4, level)

        assert [e.violations for e in evaluations[:3]] == [(), (), ()]
        assert evaluations[3].violations == (W.RULE_41S,)

    def test_10x(self, engine, level):
        evaluations = feed(engine, [99.5] * 10, level)

        assert all(e.violations == () for e in evaluations[:9])
        assert evaluations[9].violations == (W.RULE_10X,)
        assert evaluations[9].details[0].additional_context["side"] == "below"

    def test_failed_state_clears_on_next_good_point(self, engine, level):
        evaluations = feed(engine, [104.2, 104.2, 100.0], level)

        assert is_qc_failed(evaluations[1].point)
        assert not is_qc_failed(evaluations[2].point)
        assert not is_qc_failed(None)

    def test_violations_are_frozen_on_the_point(self, engine, level):
        first, _ = feed(engine, [107.0, 100.0], level)

        # Later points never rewrite the earlier result
        assert first.point.violations == (W.RULE_12S, W.RULE_13S)


class TestControlLimits:

    def test_targets_used_until_enough_history(self, level):
        engine = QCStatisticsEngine(window_size=20, min_points_for_limits=5)

        limits = engine.control_limits(make_points([98, 102, 98, 102]), level)

        assert limits.source == "target"
        assert (limits.mean, limits.sd) == (100.0, 2.0)

    def test_computed_limits_exclude_new_point(self):
        engine = QCStatisticsEngine(window_size=20, min_points_for_limits=5)
        wide_level = QCLevel(qc_test_id="GLU", level_id="L1", target_mean=100.0, target_sd=10.0)
        history = make_points([98, 102, 98, 102, 100])

        evaluation = engine.record_qc_point("GLU", "L1", 105.0, history, level=wide_level)

        assert evaluation.limits.source == "computed"
        assert evaluation.limits.mean == pytest.approx(100.0)
        assert evaluation.limits.sd == pytest.approx(2.0)
        assert evaluation.violations == (W.RULE_12S,)

    def test_no_usable_sd_skips_evaluation(self, engine):
        evaluation = engine.record_qc_point("GLU", "L1", 500.0, make_points([100.0]))

        assert evaluation.violations == ()
        assert evaluation.limits.sd == 0.0

    def test_other_levels_in_history_are_ignored(self, engine, level):
        history = make_points([130.0, 130.0, 130.0], level_id="L2")

        evaluation = engine.record_qc_point("GLU", "L1", 100.0, history, level=level)

        assert evaluation.statistics.n == 1
        assert evaluation.violations == ()

    def test_window_size_validation(self):
        with pytest.raises(ValueError):
            QCStatisticsEngine(window_size=1)


class TestStatistics:

    def test_fewer_than_two_points(self, engine):
        stats = engine.calculate_statistics(make_points([101.0]))

        assert stats.n == 1
        assert stats.mean == 101.0
        assert stats.sd == 0.0
        assert stats.cv == 0.0

    def test_empty(self, engine):
        stats = engine.calculate_statistics([])

        assert stats.n == 0
        assert stats.period_start is None

    def test_sample_standard_deviation(self, engine):
        stats = engine.calculate_statistics(make_points([98.0, 100.0, 102.0]))

        assert stats.mean == pytest.approx(100.0)
        assert stats.sd == pytest.approx(2.0)
        assert stats.cv == pytest.approx(2.0)
        assert stats.median == pytest.approx(100.0)
        assert (stats.min, stats.max) == (98.0, 102.0)
        assert stats.period_end == BASE_TIME + timedelta(hours=2)

    def test_rolling_window_includes_new_point(self, level):
        engine = QCStatisticsEngine(window_size=3, min_points_for_limits=20)
        evaluations = feed(engine, [100.0, 101.0, 102.0, 103.0], level)

        stats = evaluations[-1].statistics
        assert stats.n == 3
        assert stats.mean == pytest.approx(102.0)

    def test_options_are_keyword_only(self, engine, level):
        with pytest.raises(TypeError):
            engine.record_qc_point("GLU", "L1", 100.0, [], level)

    def test_module_level_shortcut(self, level):
        evaluation = record_qc_point("GLU", "L1", 107.0, [], level=level)

        assert evaluation.qc_failed
        assert evaluation.point.timestamp.tzinfo is not None


class TestQCAnalytics:

    def test_performance_metrics(self, engine, level):
        stats = engine.calculate_statistics(make_points([100.0, 102.0, 104.0]))

        performance = summarize_performance(stats, level)

        # mean 102, cv = 2/102*100
        assert performance.bias == pytest.approx(2.0)
        assert performance.total_error == pytest.approx(2.0 + 1.65 * stats.cv)
        assert performance.sigma == pytest.approx((10.0 - 2.0) / stats.cv)

    def test_performance_needs_target(self, engine):
        stats = engine.calculate_statistics(make_points([100.0, 102.0]))

        assert summarize_performance(stats, QCLevel(qc_test_id="GLU", level_id="L1")) is None

    def test_trend_detects_drift(self):
        trend = trend_summary(make_points([100.0 + i for i in range(10)]))

        assert trend["trend_direction"] == "increasing"
        assert trend["slope"] == pytest.approx(1.0)
        assert trend["trend_significant"]

    def test_trend_needs_enough_points(self):
        assert trend_summary(make_points([100.0, 101.0])) == {"insufficient_data": True}

    def test_levey_jennings_frame(self, engine):
        points = make_points([98.0, 100.0, 102.0])
        stats = engine.calculate_statistics(points)

        frame = levey_jennings_frame(points, stats)

        assert list(frame.columns) == [
            "point_id", "timestamp", "value", "violations", "z_score", "mean", "uwl", "lwl", "ucl", "lcl",
        ]
        assert np.allclose(frame["z_score"], [-1.0, 0.0, 1.0])
        assert frame["ucl"].iloc[0] == pytest.approx(106.0)
