"""
Usage analytics and load forecasting.

Records flag evaluations, derives usage patterns, forecasts near-term
evaluation load and proposes tuning actions.

Every statistic has an explicit low-data fallback so queries never raise
on sparse history.
"""

import logging
import threading
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Deque, Dict, List, Optional, Set

from .clock import SystemTimeSource, TimeSource, to_datetime
from .context import EvaluationContext

logger = logging.getLogger(__name__)

DEFAULT_HISTORY_LIMIT = 1000
MIN_FORECAST_SAMPLES = 100
LOW_DATA_CONFIDENCE = 0.3
MS_PER_HOUR = 3_600_000
HOURS_PER_WEEK = 168
TREND_THRESHOLD = 0.1
SEASONALITY_THRESHOLD = 0.3
SLOW_RESPONSE_MS = 100.0
DOMINANT_REGION_SHARE = 0.7


class Trend(Enum):
    """Direction of evaluation volume."""
    INCREASING = "increasing"
    DECREASING = "decreasing"
    STABLE = "stable"


class Priority(Enum):
    """Recommendation priority; the value is its sort weight."""
    HIGH = 3
    MEDIUM = 2
    LOW = 1


class RecommendationType(Enum):
    CACHE_TTL = "cache_ttl"
    REGIONAL_DEPLOYMENT = "regional_deployment"
    ROLLOUT_STRATEGY = "rollout_strategy"


TREND_MULTIPLIERS = {
    Trend.INCREASING: 1.1,
    Trend.DECREASING: 0.9,
    Trend.STABLE: 1.0,
}


@dataclass(frozen=True)
class UsageRecord:
    """One recorded evaluation."""
    timestamp: int  # epoch ms
    context: EvaluationContext
    enabled: bool
    response_time_ms: float


@dataclass
class FlagMetrics:
    """Running metrics for one flag key."""
    evaluation_count: int = 0
    enabled_rate: float = 0.0
    avg_response_time: float = 0.0
    error_rate: float = 0.0
    unique_users: int = 0
    tenant_distribution: Dict[str, int] = field(default_factory=dict)


@dataclass(frozen=True)
class UsagePattern:
    """Distributions of retained history."""
    time_of_day: Dict[int, int]
    day_of_week: Dict[int, int]  # 0 = Sunday
    regional_distribution: Dict[str, int]
    user_cohorts: Dict[str, int]


@dataclass(frozen=True)
class SeasonalityPattern:
    type: str
    peak: int  # UTC hour of day
    amplitude: float


@dataclass(frozen=True)
class LoadForecast:
    """Predicted evaluation load."""
    predicted_load: float
    confidence: float
    trend: Trend
    seasonality: List[SeasonalityPattern] = field(default_factory=list)


@dataclass(frozen=True)
class OptimizationRecommendation:
    type: RecommendationType
    priority: Priority
    expected_improvement: float
    description: str
    implementation: str


@dataclass(frozen=True)
class FlagUsage:
    flag_key: str
    evaluation_count: int


@dataclass(frozen=True)
class StatsSummary:
    """Cross-flag summary."""
    total_evaluations: int
    average_response_time: float
    top_flags: List[FlagUsage]
    system_health: str


@dataclass
class _FlagState:
    history: Deque[UsageRecord]
    metrics: FlagMetrics = field(default_factory=FlagMetrics)
    users: Set[str] = field(default_factory=set)
    errors: int = 0
    lock: threading.Lock = field(default_factory=threading.Lock)


class UsageAnalyticsEngine:
    """Per-flag usage history, metrics and forecasts.

    Each flag key has its own lock so concurrent recordings for one flag
    never interleave partial updates.
    """

    def __init__(
        self,
        time_source: Optional[TimeSource] = None,
        history_limit: int = DEFAULT_HISTORY_LIMIT,
    ):
        if history_limit <= 0:
            raise ValueError("history_limit must be > 0")
        self._time = time_source or SystemTimeSource()
        self.history_limit = history_limit
        self._flags: Dict[str, _FlagState] = {}
        self._registry_lock = threading.Lock()

    def record_evaluation(
        self,
        flag_key: str,
        context: EvaluationContext,
        enabled: bool,
        response_time_ms: float,
        error: bool = False,
        timestamp_ms: Optional[int] = None,
    ) -> None:
        """Append an evaluation to history and update the flag's metrics.

        Args:
            flag_key: Evaluated flag
            context: Context the flag was evaluated for
            enabled: Decision returned to the caller
            response_time_ms: Time taken to decide
            error: Whether the decision was a fail-safe after a store error
            timestamp_ms: When the evaluation happened; defaults to now
        """
        record = UsageRecord(
            timestamp=self._time.now_ms() if timestamp_ms is None else timestamp_ms,
            context=context,
            enabled=enabled,
            response_time_ms=response_time_ms,
        )
        state = self._state(flag_key)
        with state.lock:
            # deque(maxlen) drops the oldest record first
            state.history.append(record)

            metrics = state.metrics
            metrics.evaluation_count += 1
            n = metrics.evaluation_count
            metrics.enabled_rate = sum(1 for r in state.history if r.enabled) / len(state.history)
            metrics.avg_response_time = (metrics.avg_response_time * (n - 1) + response_time_ms) / n

            if error:
                state.errors += 1
            metrics.error_rate = state.errors / n

            if context.user_id:
                state.users.add(context.user_id)
            metrics.unique_users = len(state.users)

            tenant = context.tenant_id
            metrics.tenant_distribution[tenant] = metrics.tenant_distribution.get(tenant, 0) + 1

    def get_metrics(self, flag_key: str) -> Optional[FlagMetrics]:
        """Snapshot of a flag's metrics, or None if it was never recorded."""
        state = self._flags.get(flag_key)
        if state is None:
            return None
        with state.lock:
            m = state.metrics
            return FlagMetrics(
                evaluation_count=m.evaluation_count,
                enabled_rate=m.enabled_rate,
                avg_response_time=m.avg_response_time,
                error_rate=m.error_rate,
                unique_users=m.unique_users,
                tenant_distribution=dict(m.tenant_distribution),
            )

    def get_history(self, flag_key: str) -> List[UsageRecord]:
        state = self._flags.get(flag_key)
        if state is None:
            return []
        with state.lock:
            return list(state.history)

    def tracked_flags(self) -> List[str]:
        with self._registry_lock:
            return list(self._flags)

    def analyze_usage_pattern(self, flag_key: str) -> UsagePattern:
        """Bucket retained history by hour, weekday, region and cohort."""
        time_of_day: Dict[int, int] = {}
        day_of_week: Dict[int, int] = {}
        regions: Dict[str, int] = {}
        cohorts: Dict[str, int] = {}

        for record in self.get_history(flag_key):
            moment = to_datetime(record.timestamp)
            day = (moment.weekday() + 1) % 7  # Sunday first
            time_of_day[moment.hour] = time_of_day.get(moment.hour, 0) + 1
            day_of_week[day] = day_of_week.get(day, 0) + 1

            region = record.context.effective_region
            if region:
                regions[region] = regions.get(region, 0) + 1
            cohort = record.context.effective_cohort
            if cohort:
                cohorts[cohort] = cohorts.get(cohort, 0) + 1

        return UsagePattern(
            time_of_day=time_of_day,
            day_of_week=day_of_week,
            regional_distribution=regions,
            user_cohorts=cohorts,
        )

    def predict_load(self, flag_key: str, hours_ahead: int = 24) -> LoadForecast:
        """Forecast evaluations per hour `hours_ahead` hours from now.

        With fewer than 100 retained records the raw record count is
        returned with confidence 0.3 and a stable trend.

        Args:
            flag_key: Flag to forecast
            hours_ahead: Forecast horizon in hours

        Returns:
            LoadForecast with trend, seasonality and confidence
        """
        history = self.get_history(flag_key)
        if len(history) < MIN_FORECAST_SAMPLES:
            return LoadForecast(
                predicted_load=len(history),
                confidence=LOW_DATA_CONFIDENCE,
                trend=Trend.STABLE,
                seasonality=[],
            )

        hourly = _aggregate_hourly(history)
        trend = _calculate_trend(hourly)
        seasonality = _detect_seasonality(hourly)

        prediction = sum(hourly.values()) / len(hourly)

        # Same basis as the seasonality peak: UTC hour of day from epoch ms
        current_hour = (self._time.now_ms() // MS_PER_HOUR) % 24
        target_hour = (current_hour + hours_ahead) % 24
        for pattern in seasonality:
            distance = abs(target_hour - pattern.peak)
            normalized_distance = min(distance, 24 - distance) / 12
            prediction *= 1 + pattern.amplitude * (1 - normalized_distance)

        prediction *= TREND_MULTIPLIERS[trend] ** (hours_ahead / 24)

        coverage = min(len(hourly) / HOURS_PER_WEEK, 1.0)
        sample_size = min(len(history) / 1000, 1.0)

        return LoadForecast(
            predicted_load=max(0.0, prediction),
            confidence=(coverage + sample_size) / 2,
            trend=trend,
            seasonality=seasonality,
        )

    def generate_optimization_recommendations(self, flag_key: str) -> List[OptimizationRecommendation]:
        """Suggest cache, deployment and rollout changes, highest priority first."""
        metrics = self.get_metrics(flag_key)
        if metrics is None:
            return []

        recommendations = []

        if metrics.avg_response_time > SLOW_RESPONSE_MS:
            recommendations.append(OptimizationRecommendation(
                type=RecommendationType.CACHE_TTL,
                priority=Priority.HIGH,
                expected_improvement=0.6,
                description=(
                    f"Average response time {metrics.avg_response_time:.1f}ms exceeds "
                    f"{SLOW_RESPONSE_MS:.0f}ms; a longer cache TTL should cut store reads."
                ),
                implementation="Raise cache.default_ttl_seconds from 300 to 600",
            ))

        regions = self.analyze_usage_pattern(flag_key).regional_distribution
        total = sum(regions.values())
        if regions:
            region, count = max(regions.items(), key=lambda item: item[1])
            if count > total * DOMINANT_REGION_SHARE:
                recommendations.append(OptimizationRecommendation(
                    type=RecommendationType.REGIONAL_DEPLOYMENT,
                    priority=Priority.MEDIUM,
                    expected_improvement=0.3,
                    description=(
                        f"Region {region} accounts for {count / total:.0%} of evaluations; "
                        "consider a region-local deployment."
                    ),
                    implementation=f"Place an edge cache in {region}",
                ))

        if 0.1 < metrics.enabled_rate < 0.9:
            target = 1.0 if metrics.enabled_rate > 0.5 else 0.0
            recommendations.append(OptimizationRecommendation(
                type=RecommendationType.ROLLOUT_STRATEGY,
                priority=Priority.LOW,
                expected_improvement=0.2,
                description=(
                    f"Flag is enabled for {metrics.enabled_rate * 100:.1f}% of evaluations; "
                    "consider a staged rollout to settle it."
                ),
                implementation=f"Stage the rollout toward {target * 100:.0f}% enabled",
            ))

        return sorted(recommendations, key=lambda r: r.priority.value, reverse=True)

    def generate_stats_summary(self) -> StatsSummary:
        """Totals, mean response time, top five flags and a health label."""
        snapshot = {key: self.get_metrics(key) for key in self.tracked_flags()}
        snapshot = {key: m for key, m in snapshot.items() if m is not None}

        total = sum(m.evaluation_count for m in snapshot.values())
        average = (
            sum(m.avg_response_time for m in snapshot.values()) / len(snapshot)
            if snapshot else 0.0
        )
        ranked = sorted(snapshot.items(), key=lambda item: item[1].evaluation_count, reverse=True)
        top_flags = [FlagUsage(flag_key=key, evaluation_count=m.evaluation_count) for key, m in ranked[:5]]

        if average < 50:
            health = "excellent"
        elif average < 100:
            health = "good"
        else:
            health = "poor"

        return StatsSummary(
            total_evaluations=total,
            average_response_time=average,
            top_flags=top_flags,
            system_health=health,
        )

    def _state(self, flag_key: str) -> _FlagState:
        with self._registry_lock:
            state = self._flags.get(flag_key)
            if state is None:
                state = _FlagState(history=deque(maxlen=self.history_limit))
                self._flags[flag_key] = state
            return state


def _aggregate_hourly(history: List[UsageRecord]) -> Dict[int, int]:
    """Count records per absolute hour (epoch ms // 1h)."""
    hourly: Dict[int, int] = {}
    for record in history:
        hour = record.timestamp // MS_PER_HOUR
        hourly[hour] = hourly.get(hour, 0) + 1
    return hourly


def _calculate_trend(hourly: Dict[int, int]) -> Trend:
    """Compare the last 24 hourly buckets with the 24 before them."""
    hours = sorted(hourly)
    recent = hours[-24:]
    earlier = hours[-48:-24]
    if len(hours) < 2 or not earlier:
        return Trend.STABLE

    recent_avg = sum(hourly[h] for h in recent) / len(recent)
    earlier_avg = sum(hourly[h] for h in earlier) / len(earlier)
    change = (recent_avg - earlier_avg) / earlier_avg

    if change > TREND_THRESHOLD:
        return Trend.INCREASING
    if change < -TREND_THRESHOLD:
        return Trend.DECREASING
    return Trend.STABLE


def _detect_seasonality(hourly: Dict[int, int]) -> List[SeasonalityPattern]:
    """Emit an hourly pattern when bucket counts swing by more than 30%."""
    if len(hourly) < 24:
        return []

    peak_hour = max(hourly, key=lambda h: hourly[h])
    max_count = hourly[peak_hour]
    min_count = min(hourly.values())
    amplitude = (max_count - min_count) / max_count

    if amplitude <= SEASONALITY_THRESHOLD:
        return []
    return [SeasonalityPattern(type="hourly", peak=peak_hour % 24, amplitude=amplitude)]
