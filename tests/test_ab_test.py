"""
Unit tests for A/B test assignment and experiment statistics.
"""

import logging
from datetime import datetime
from unittest.mock import patch

import pytest

from feature_gate.core.ab_test import (
    CONTROL_VARIANT_ID,
    ABTestConfig,
    ABTestEngine,
    ABTestVariant,
    VariantMetrics,
    calculate_significance,
)
from feature_gate.core.clock import MockTimeSource
from feature_gate.core.context import EvaluationContext

NOW = datetime(2024, 3, 1, 12, 0)


def make_test(test_id="checkout", weights=(50, 50), **kwargs):
    variants = [ABTestVariant(id=CONTROL_VARIANT_ID, name="Control", weight=weights[0])]
    variants.append(ABTestVariant(id="treatment", name="Treatment", weight=weights[1], config={"color": "blue"}))
    return ABTestConfig(test_id=test_id, variants=variants, **kwargs)


class TestABTestConfig:
    """Test experiment config validation."""

    def test_negative_weight_rejected(self):
        with pytest.raises(ValueError, match="variant weight cannot be negative"):
            ABTestVariant(id="a", name="A", weight=-1)

    def test_allocation_range(self):
        with pytest.raises(ValueError, match="traffic_allocation must be between 0 and 100"):
            make_test(traffic_allocation=150)

    def test_duplicate_variant_ids(self):
        with pytest.raises(ValueError, match="duplicate variant ids"):
            ABTestConfig(
                test_id="t",
                variants=[ABTestVariant("a", "A", 1), ABTestVariant("a", "A again", 1)],
            )

    def test_control_variant_lookup(self):
        assert make_test().control_variant().id == CONTROL_VARIANT_ID

        no_control = ABTestConfig(test_id="t", variants=[ABTestVariant("blue", "Blue", 1), ABTestVariant("red", "Red", 1)])
        assert no_control.control_variant().id == "blue"

        empty = ABTestConfig(test_id="t")
        assert empty.control_variant().id == CONTROL_VARIANT_ID
        assert empty.control_variant().weight == 100


class TestVariantAssignment:
    """Test single experiment assignment."""

    def setup_method(self):
        self.engine = ABTestEngine(MockTimeSource(int(NOW.timestamp() * 1000)))

    def context(self, user_id="user-1", **kwargs):
        return EvaluationContext(tenant_id="tenant-1", user_id=user_id, **kwargs)

    def test_inactive_test_returns_control(self):
        result = self.engine.assign_variant(self.context(), "flag", make_test(weights=(0, 100), is_active=False))
        assert result.variant_id == CONTROL_VARIANT_ID
        assert result.is_control is True

    def test_outside_window_returns_control(self):
        test = make_test(weights=(0, 100), start_date=datetime(2024, 4, 1))
        assert self.engine.assign_variant(self.context(), "flag", test).is_control

        ended = make_test(weights=(0, 100), end_date=datetime(2024, 2, 1))
        assert self.engine.assign_variant(self.context(), "flag", ended).is_control

    def test_zero_allocation_returns_control(self):
        test = make_test(weights=(0, 100), traffic_allocation=0)
        for i in range(50):
            assert self.engine.assign_variant(self.context(f"user-{i}"), "flag", test).is_control

    def test_full_allocation_assigns_everyone(self):
        test = make_test(weights=(0, 100), traffic_allocation=100)
        for i in range(50):
            result = self.engine.assign_variant(self.context(f"user-{i}"), "flag", test)
            assert result.variant_id == "treatment"
            assert result.is_control is False
            assert result.config == {"color": "blue"}

    def test_segment_targeting(self):
        test = make_test(weights=(0, 100), target_segments={"vip"})

        assert self.engine.assign_variant(self.context(), "flag", test).is_control
        assert self.engine.assign_variant(
            self.context(metadata={"segments": ["free", "vip"]}), "flag", test
        ).variant_id == "treatment"
        # Segments that are not a list count as none
        assert self.engine.assign_variant(self.context(metadata={"segments": "vip"}), "flag", test).is_control

    def test_zero_total_weight_falls_back_to_control(self):
        test = make_test(weights=(0, 0))
        result = self.engine.assign_variant(self.context(), "flag", test)
        assert result.variant_id == CONTROL_VARIANT_ID
        assert result.is_control is True

    def test_assignment_is_sticky(self):
        test = make_test()
        first = self.engine.assign_variant(self.context("user-77"), "flag", test)
        for _ in range(10):
            assert self.engine.assign_variant(self.context("user-77"), "flag", test).variant_id == first.variant_id

    def test_weight_proportionality(self):
        test = make_test(weights=(20, 80))
        counts = {CONTROL_VARIANT_ID: 0, "treatment": 0}
        for i in range(10000):
            counts[self.engine.assign_variant(self.context(f"user-{i}"), "flag", test).variant_id] += 1

        assert 0.17 < counts[CONTROL_VARIANT_ID] / 10000 < 0.23
        assert 0.77 < counts["treatment"] / 10000 < 0.83

    def test_impressions_counted(self):
        test = make_test(weights=(0, 100))
        for i in range(5):
            self.engine.assign_variant(self.context(f"user-{i}"), "flag", test)

        metrics = self.engine.get_variant_metrics("checkout")
        assert [(m.variant_id, m.impressions) for m in metrics] == [("treatment", 5)]


class TestMultipleVariants:
    """Test sequential multi-experiment assignment."""

    def setup_method(self):
        self.engine = ABTestEngine(MockTimeSource())

    def test_results_written_to_previous_variants(self):
        ctx = EvaluationContext(tenant_id="tenant-1", user_id="user-1")
        results = self.engine.assign_multiple_variants(ctx, [
            ("flag_a", make_test("test-a")),
            ("flag_b", make_test("test-b")),
        ])

        assert [r.test_id for r in results] == ["test-a", "test-b"]
        assert ctx.previous_variants == {
            "flag_a": results[0].variant_id,
            "flag_b": results[1].variant_id,
        }

    def test_later_experiment_sees_earlier_assignment(self):
        ctx = EvaluationContext(tenant_id="tenant-1", user_id="user-1")
        seen = []
        original = self.engine.assign_variant

        def spy(context, flag_key, test_config):
            seen.append((flag_key, dict(context.previous_variants)))
            return original(context, flag_key, test_config)

        with patch.object(self.engine, "assign_variant", side_effect=spy):
            results = self.engine.assign_multiple_variants(ctx, [
                ("flag_a", make_test("test-a")),
                ("flag_b", make_test("test-b")),
            ])

        assert seen[0] == ("flag_a", {})
        assert seen[1] == ("flag_b", {"flag_a": results[0].variant_id})


class TestConversions:
    """Test conversion tracking."""

    def setup_method(self):
        self.engine = ABTestEngine(MockTimeSource())

    def test_track_conversion(self):
        self.engine.track_conversion("checkout", "treatment", "user-1", value=19.99, metadata={"sku": "x"})

        events = self.engine.get_conversions("checkout")
        assert len(events) == 1
        assert events[0].value == 19.99
        assert events[0].metadata == {"sku": "x"}

    def test_malformed_input_is_logged_not_raised(self, caplog):
        with caplog.at_level(logging.WARNING, logger="feature_gate.core.ab_test"):
            self.engine.track_conversion("", "treatment", "user-1")
            self.engine.track_conversion("checkout", "treatment", "user-1", value="lots")

        assert self.engine.get_conversions("checkout") == []
        assert "Dropping conversion" in caplog.text

    def test_conversions_feed_metrics(self):
        test = make_test(weights=(0, 100))
        for i in range(4):
            self.engine.assign_variant(EvaluationContext(tenant_id="t", user_id=f"u{i}"), "flag", test)
        self.engine.track_conversion("checkout", "treatment", "u1")

        (metrics,) = self.engine.get_variant_metrics("checkout")
        assert metrics.impressions == 4
        assert metrics.conversions == 1
        assert metrics.conversion_rate == 0.25

    def test_conversion_log_keeps_newest_events(self):
        engine = ABTestEngine(MockTimeSource(), conversion_log_limit=3)
        for i in range(5):
            engine.track_conversion("checkout", "treatment", f"user-{i}")

        events = engine.get_conversions("checkout")
        assert [e.user_id for e in events] == ["user-2", "user-3", "user-4"]
        (metrics,) = engine.get_variant_metrics("checkout")
        assert metrics.conversions == 5

    def test_conversion_log_limit_must_be_positive(self):
        with pytest.raises(ValueError, match="conversion_log_limit"):
            ABTestEngine(MockTimeSource(), conversion_log_limit=0)


class TestSignificance:
    """Test variant vs control comparison."""

    def test_no_impressions(self):
        result = calculate_significance(
            VariantMetrics("t", "control", 0, 0),
            VariantMetrics("t", "treatment", 0, 0),
        )
        assert result.p_value == 1.0
        assert result.is_significant is False

    def test_clear_winner_is_significant(self):
        result = calculate_significance(
            VariantMetrics("t", "control", 1000, 100),
            VariantMetrics("t", "treatment", 1000, 200),
        )
        assert result.is_significant is True
        assert result.p_value < 0.05
        assert result.improvement == pytest.approx(100.0)
        low, high = result.confidence_interval
        assert low < 0.2 < high

    def test_identical_rates_not_significant(self):
        result = calculate_significance(
            VariantMetrics("t", "control", 500, 50),
            VariantMetrics("t", "treatment", 500, 50),
        )
        assert result.is_significant is False
        assert result.improvement == 0.0

    def test_nobody_converted(self):
        result = calculate_significance(
            VariantMetrics("t", "control", 100, 0),
            VariantMetrics("t", "treatment", 100, 0),
        )
        assert result.p_value == 1.0

    def test_confidence_level_range(self):
        with pytest.raises(ValueError):
            calculate_significance(VariantMetrics("t", "a", 1, 0), VariantMetrics("t", "b", 1, 0), confidence_level=1.5)

    def test_more_conversions_than_impressions_rejected(self):
        with pytest.raises(ValueError, match="5 conversions but only 2 impressions"):
            calculate_significance(
                VariantMetrics("t", "control", 10, 2),
                VariantMetrics("t", "treatment", 2, 5),
            )

    def test_negative_counts_rejected(self):
        with pytest.raises(ValueError, match="negative counts"):
            calculate_significance(
                VariantMetrics("t", "control", -1, 0),
                VariantMetrics("t", "treatment", 10, 1),
            )
