"""
Unit tests for usage analytics.

Tests metric recomputation, history retention, forecasting and
recommendations.
"""

from datetime import datetime

import pytest

from feature_gate.core.analytics import (
    MS_PER_HOUR,
    Priority,
    RecommendationType,
    Trend,
    UsageAnalyticsEngine,
)
from feature_gate.core.clock import MockTimeSource
from feature_gate.core.context import EvaluationContext

BASE_HOUR = 475_000  # an arbitrary absolute hour
BASE_MS = BASE_HOUR * MS_PER_HOUR


def ctx(tenant="tenant-1", user=None, **kwargs):
    return EvaluationContext(tenant_id=tenant, user_id=user, **kwargs)


class TestRecording:
    """Test metrics maintained on every recording."""

    def setup_method(self):
        self.clock = MockTimeSource(BASE_MS)
        self.engine = UsageAnalyticsEngine(self.clock)

    def test_metrics_recompute(self):
        for enabled, ms in [(True, 10.0), (True, 20.0), (False, 30.0), (True, 40.0)]:
            self.engine.record_evaluation("flag", ctx(), enabled, ms)

        metrics = self.engine.get_metrics("flag")
        assert metrics.evaluation_count == 4
        assert metrics.enabled_rate == pytest.approx(0.75)
        assert metrics.avg_response_time == pytest.approx(25.0)

    def test_history_cap_drops_oldest(self):
        for i in range(1005):
            self.engine.record_evaluation("flag", ctx(), i >= 5, 1.0, timestamp_ms=i)

        history = self.engine.get_history("flag")
        assert len(history) == 1000
        assert history[0].timestamp == 5
        assert history[-1].timestamp == 1004

        metrics = self.engine.get_metrics("flag")
        assert metrics.evaluation_count == 1005
        # Only the retained window counts towards the enabled rate
        assert metrics.enabled_rate == 1.0

    def test_custom_history_limit(self):
        engine = UsageAnalyticsEngine(self.clock, history_limit=3)
        for i in range(5):
            engine.record_evaluation("flag", ctx(), True, 1.0, timestamp_ms=i)
        assert [r.timestamp for r in engine.get_history("flag")] == [2, 3, 4]

    def test_history_limit_must_be_positive(self):
        with pytest.raises(ValueError):
            UsageAnalyticsEngine(history_limit=0)

    def test_unique_users_error_rate_and_tenants(self):
        self.engine.record_evaluation("flag", ctx("a", "u1"), True, 1.0)
        self.engine.record_evaluation("flag", ctx("a", "u1"), True, 1.0)
        self.engine.record_evaluation("flag", ctx("b", "u2"), False, 1.0, error=True)
        self.engine.record_evaluation("flag", ctx("b"), True, 1.0)

        metrics = self.engine.get_metrics("flag")
        assert metrics.unique_users == 2
        assert metrics.error_rate == pytest.approx(0.25)
        assert metrics.tenant_distribution == {"a": 2, "b": 2}

    def test_unknown_flag(self):
        assert self.engine.get_metrics("missing") is None
        assert self.engine.get_history("missing") == []

    def test_metrics_are_a_snapshot(self):
        self.engine.record_evaluation("flag", ctx(), True, 1.0)
        snapshot = self.engine.get_metrics("flag")
        snapshot.tenant_distribution["other"] = 99
        assert "other" not in self.engine.get_metrics("flag").tenant_distribution

    def test_timestamp_defaults_to_clock(self):
        self.engine.record_evaluation("flag", ctx(), True, 1.0)
        assert self.engine.get_history("flag")[0].timestamp == BASE_MS


class TestUsagePattern:
    """Test history bucketing."""

    def test_buckets(self):
        sunday_3pm = datetime(2024, 1, 14, 15, 30)
        ts = int(sunday_3pm.timestamp() * 1000)
        engine = UsageAnalyticsEngine(MockTimeSource(ts))

        engine.record_evaluation("flag", ctx(region="us-east-1", user_cohort="beta"), True, 1.0)
        engine.record_evaluation("flag", ctx(metadata={"region": "eu-west-1", "userCohort": "beta"}), True, 1.0)
        engine.record_evaluation("flag", ctx(), True, 1.0)

        pattern = engine.analyze_usage_pattern("flag")
        assert pattern.time_of_day == {15: 3}
        assert pattern.day_of_week == {0: 3}
        assert pattern.regional_distribution == {"us-east-1": 1, "eu-west-1": 1}
        assert pattern.user_cohorts == {"beta": 2}

    def test_empty(self):
        pattern = UsageAnalyticsEngine(MockTimeSource()).analyze_usage_pattern("flag")
        assert pattern.time_of_day == {}
        assert pattern.regional_distribution == {}


class TestLoadForecast:
    """Test load prediction."""

    def setup_method(self):
        self.clock = MockTimeSource(BASE_MS + 48 * MS_PER_HOUR)
        self.engine = UsageAnalyticsEngine(self.clock)

    def record_hours(self, counts):
        for hour, count in enumerate(counts):
            for j in range(count):
                self.engine.record_evaluation(
                    "flag", ctx(), True, 1.0, timestamp_ms=BASE_MS + hour * MS_PER_HOUR + j
                )

    def test_low_data_fallback(self):
        self.record_hours([50])
        forecast = self.engine.predict_load("flag")
        assert forecast.predicted_load == 50
        assert forecast.confidence == 0.3
        assert forecast.trend is Trend.STABLE
        assert forecast.seasonality == []

    def test_unknown_flag_uses_fallback(self):
        forecast = self.engine.predict_load("missing")
        assert forecast.predicted_load == 0
        assert forecast.confidence == 0.3

    def test_flat_load(self):
        self.record_hours([5] * 48)
        forecast = self.engine.predict_load("flag")

        assert forecast.trend is Trend.STABLE
        assert forecast.seasonality == []
        assert forecast.predicted_load == pytest.approx(5.0)
        assert forecast.confidence == pytest.approx((48 / 168 + 240 / 1000) / 2)

    def test_increasing_trend_and_seasonality(self):
        self.record_hours([3] * 24 + [6] * 24)
        forecast = self.engine.predict_load("flag")

        assert forecast.trend is Trend.INCREASING
        assert len(forecast.seasonality) == 1
        assert forecast.seasonality[0].amplitude == pytest.approx(0.5)
        assert forecast.predicted_load > 0

    def test_decreasing_trend(self):
        self.record_hours([6] * 24 + [3] * 24)
        assert self.engine.predict_load("flag").trend is Trend.DECREASING

    def test_short_history_has_no_trend(self):
        self.record_hours([10] * 12)
        forecast = self.engine.predict_load("flag")
        assert forecast.trend is Trend.STABLE
        assert forecast.seasonality == []

    def test_seasonal_boost_uses_utc_hour_of_day(self):
        counts = [4] * 24
        counts[10] = 8
        self.record_hours(counts)
        peak_hour = BASE_HOUR + 10
        mean = sum(counts) / 24

        self.clock.set_time((peak_hour + 48) * MS_PER_HOUR)
        at_peak = self.engine.predict_load("flag", hours_ahead=0)
        assert at_peak.seasonality[0].peak == peak_hour % 24
        assert at_peak.predicted_load == pytest.approx(mean * 1.5)

        self.clock.set_time((peak_hour + 48 + 12) * MS_PER_HOUR)
        off_peak = self.engine.predict_load("flag", hours_ahead=0)
        assert off_peak.predicted_load == pytest.approx(mean)


class TestRecommendations:
    """Test optimization recommendations."""

    def setup_method(self):
        self.engine = UsageAnalyticsEngine(MockTimeSource(BASE_MS))

    def test_all_recommendations_sorted_by_priority(self):
        for i in range(10):
            self.engine.record_evaluation("flag", ctx(region="us-east-1"), i % 2 == 0, 150.0)

        recommendations = self.engine.generate_optimization_recommendations("flag")
        assert [r.type for r in recommendations] == [
            RecommendationType.CACHE_TTL,
            RecommendationType.REGIONAL_DEPLOYMENT,
            RecommendationType.ROLLOUT_STRATEGY,
        ]
        assert [r.priority for r in recommendations] == [Priority.HIGH, Priority.MEDIUM, Priority.LOW]

    def test_healthy_flag_has_no_recommendations(self):
        regions = ["us-east-1", "eu-west-1"]
        for i in range(10):
            self.engine.record_evaluation("flag", ctx(region=regions[i % 2]), True, 5.0)
        assert self.engine.generate_optimization_recommendations("flag") == []

    def test_rollout_leans_towards_majority(self):
        for i in range(10):
            self.engine.record_evaluation("flag", ctx(), i < 7, 5.0)
        (rec,) = self.engine.generate_optimization_recommendations("flag")
        assert rec.type is RecommendationType.ROLLOUT_STRATEGY
        assert "100%" in rec.implementation

    def test_unknown_flag(self):
        assert self.engine.generate_optimization_recommendations("missing") == []


class TestStatsSummary:
    """Test the cross-flag summary."""

    def setup_method(self):
        self.engine = UsageAnalyticsEngine(MockTimeSource(BASE_MS))

    def test_empty_summary(self):
        summary = self.engine.generate_stats_summary()
        assert summary.total_evaluations == 0
        assert summary.average_response_time == 0.0
        assert summary.top_flags == []
        assert summary.system_health == "excellent"

    def test_top_five_and_health(self):
        for n in range(1, 8):
            for _ in range(n):
                self.engine.record_evaluation(f"flag-{n}", ctx(), True, 75.0)

        summary = self.engine.generate_stats_summary()
        assert summary.total_evaluations == sum(range(1, 8))
        assert [f.flag_key for f in summary.top_flags] == ["flag-7", "flag-6", "flag-5", "flag-4", "flag-3"]
        assert summary.average_response_time == pytest.approx(75.0)
        assert summary.system_health == "good"

    def test_poor_health(self):
        self.engine.record_evaluation("slow", ctx(), True, 250.0)
        assert self.engine.generate_stats_summary().system_health == "poor"
