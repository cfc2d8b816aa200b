"""
Percentage rollout targeting.

Decides whether a user is rolled in to a flag by running a fixed sequence
of gates. Any failing gate excludes the user.

Gate Order:
1. Time window - start/end dates
2. Business hours - Monday to Friday, 09:00-18:00 local time
3. Region - context region must be targeted
4. Cohort - context cohort must be targeted
5. Percentage - stable hash bucket below the rollout percentage

A phased rollout sets `initial_percentage` and ramps up to `percentage`
across its time window along an S-curve: slow at both ends, fastest in
the middle. The window is split into `phases` equal steps for reporting.
"""

import math
from dataclasses import dataclass, field
from datetime import datetime
from typing import FrozenSet, Optional

from .clock import SystemTimeSource, TimeSource, to_datetime
from .context import EvaluationContext
from .hashing import bucket

BUSINESS_HOURS_START = 9
BUSINESS_HOURS_END = 18  # exclusive

SIGMOID_STEEPNESS = 6.0


@dataclass(frozen=True)
class RolloutConfig:
    """Rollout gates for one flag.

    `percentage` is the final share of users. With `initial_percentage`
    set, the share ramps from it to `percentage` between `start_date` and
    `end_date`, which are then both required.
    """
    percentage: float
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    business_hours_only: bool = False
    target_regions: FrozenSet[str] = field(default_factory=frozenset)
    user_cohorts: FrozenSet[str] = field(default_factory=frozenset)
    initial_percentage: Optional[float] = None
    phases: int = 1

    def __post_init__(self):
        """Validate percentage range, window ordering and ramp settings."""
        if not 0 <= self.percentage <= 100:
            raise ValueError("percentage must be between 0 and 100")
        if self.start_date and self.end_date and self.start_date > self.end_date:
            raise ValueError("start_date must be before end_date")
        if self.initial_percentage is not None:
            if not 0 <= self.initial_percentage <= 100:
                raise ValueError("initial_percentage must be between 0 and 100")
            if self.start_date is None or self.end_date is None:
                raise ValueError("a phased rollout needs both start_date and end_date")
        if self.phases < 1:
            raise ValueError("phases must be >= 1")
        # Accept any iterable for the sets but store them frozen
        object.__setattr__(self, "target_regions", frozenset(self.target_regions))
        object.__setattr__(self, "user_cohorts", frozenset(self.user_cohorts))

    @property
    def is_phased(self) -> bool:
        return self.initial_percentage is not None


@dataclass(frozen=True)
class RolloutMetrics:
    """Where a rollout stands on its schedule."""
    current_percentage: float
    current_phase: int  # 1-based
    phases: int
    time_to_next_phase_ms: int
    progress: float  # 0.0 at start_date, 1.0 at end_date


class RolloutEngine:
    """Evaluates rollout gates against an evaluation context."""

    def __init__(self, time_source: Optional[TimeSource] = None):
        self._time = time_source or SystemTimeSource()

    def evaluate(self, context: EvaluationContext, flag_key: str, config: RolloutConfig) -> bool:
        """Decide whether the context is rolled in to the flag.

        Args:
            context: Request context; missing optional fields fail their gate
            flag_key: Flag being evaluated, part of the hash seed
            config: Rollout gates

        Returns:
            True only when every gate passes
        """
        moment = context.timestamp or self._now()

        if not self._within_window(config, moment):
            return False

        if config.business_hours_only and not self._is_business_hours(moment):
            return False

        if config.target_regions and context.region not in config.target_regions:
            return False

        if config.user_cohorts and context.user_cohort not in config.user_cohorts:
            return False

        # Anonymous users all share the "" seed and therefore one bucket
        return self.user_bucket(context.user_id or "", flag_key) < self.current_percentage(config, moment)

    def current_percentage(self, config: RolloutConfig, moment: Optional[datetime] = None) -> float:
        """Share of users rolled in at `moment` (default: now).

        Fixed rollouts always return `percentage`. Phased rollouts return
        0 before the window opens and `percentage` once it has closed.
        """
        if not config.is_phased:
            return config.percentage

        moment = moment or self._now()
        if moment < config.start_date:
            return 0.0
        if moment >= config.end_date:
            return config.percentage

        curve = _s_curve(self._progress(config, moment))
        return config.initial_percentage + (config.percentage - config.initial_percentage) * curve

    def rollout_metrics(self, config: RolloutConfig) -> RolloutMetrics:
        """Report the current percentage and phase of a rollout."""
        if not config.is_phased:
            return RolloutMetrics(
                current_percentage=config.percentage,
                current_phase=1,
                phases=1,
                time_to_next_phase_ms=0,
                progress=1.0,
            )

        now = self._now()
        progress = self._progress(config, now)
        current_phase = min(config.phases, int(progress * config.phases) + 1)

        total_ms = (config.end_date - config.start_date).total_seconds() * 1000
        next_phase_at_ms = current_phase * total_ms / config.phases
        elapsed_ms = (now - config.start_date).total_seconds() * 1000

        return RolloutMetrics(
            current_percentage=round(self.current_percentage(config, now), 2),
            current_phase=current_phase,
            phases=config.phases,
            time_to_next_phase_ms=max(0, int(next_phase_at_ms - elapsed_ms)),
            progress=progress,
        )

    @staticmethod
    def user_bucket(user_id: str, flag_key: str) -> int:
        """Stable 0-99 bucket for a user on a flag."""
        return bucket(user_id, flag_key)

    def _now(self) -> datetime:
        return to_datetime(self._time.now_ms())

    @staticmethod
    def _progress(config: RolloutConfig, moment: datetime) -> float:
        total = (config.end_date - config.start_date).total_seconds()
        if total <= 0:
            return 1.0
        elapsed = (moment - config.start_date).total_seconds()
        return max(0.0, min(1.0, elapsed / total))

    @staticmethod
    def _within_window(config: RolloutConfig, moment: datetime) -> bool:
        if config.start_date and moment < config.start_date:
            return False
        if config.end_date and moment > config.end_date:
            return False
        return True

    @staticmethod
    def _is_business_hours(moment: datetime) -> bool:
        # weekday(): Monday == 0
        return moment.weekday() < 5 and BUSINESS_HOURS_START <= moment.hour < BUSINESS_HOURS_END


def _logistic(x: float) -> float:
    return 1 / (1 + math.exp(-SIGMOID_STEEPNESS * (x - 0.5)))


def _s_curve(progress: float) -> float:
    """Logistic curve rescaled so 0 maps to 0 and 1 maps to 1."""
    low, high = _logistic(0.0), _logistic(1.0)
    return (_logistic(progress) - low) / (high - low)
