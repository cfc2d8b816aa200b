"""
Feature flag evaluation.

Composes kill switches, the decision cache, tenant overrides, rollouts and
experiments into one boolean answer per (tenant, flag).

Precedence Order:
1. Global kill switch - engaged means every flag is off
2. Flag kill switch - engaged means this flag is off
3. Cache - a live cached decision is returned as-is
4. Tenant override
5. Rollout - only a positive rollout decision is final
6. Experiment - only a non-control variant is final
7. Flag default - a missing flag is off

Kill switch results are never cached so that releasing a switch takes
effect immediately. The cache is keyed by (tenant, flag) and only holds
tenant-wide decisions: overrides, and defaults of flags with no rollout or
experiment. Rollout and experiment outcomes depend on the user.
"""

import logging
import queue
import threading
import time
from dataclasses import dataclass
from enum import Enum
from typing import Dict, List, Optional, Sequence

from feature_gate.config.loader import EvaluatorConfig
from feature_gate.storage.repository import FlagStore, FlagStoreError
from .ab_test import ABTestEngine, VariantAssignment
from .analytics import UsageAnalyticsEngine
from .cache import DecisionCache, LRUEvictionPolicy
from .clock import SystemTimeSource, TimeSource
from .context import EvaluationContext
from .rollout import RolloutEngine

logger = logging.getLogger(__name__)

DEFAULT_QUEUE_SIZE = 10000


class EvaluationReason(Enum):
    """Which precedence step produced a decision."""
    GLOBAL_KILL_SWITCH = "GLOBAL_KILL_SWITCH"
    FLAG_KILL_SWITCH = "FLAG_KILL_SWITCH"
    CACHE_HIT = "CACHE_HIT"
    TENANT_OVERRIDE = "TENANT_OVERRIDE"
    ROLLOUT = "ROLLOUT"
    EXPERIMENT = "EXPERIMENT"
    DEFAULT = "DEFAULT"
    FLAG_NOT_FOUND = "FLAG_NOT_FOUND"
    STORE_ERROR = "STORE_ERROR"


@dataclass(frozen=True)
class EvaluationResult:
    """A flag decision and how it was reached."""
    tenant_id: str
    flag_key: str
    enabled: bool
    reason: EvaluationReason
    variant: Optional[VariantAssignment] = None


@dataclass(frozen=True)
class _AnalyticsRecord:
    flag_key: str
    context: EvaluationContext
    enabled: bool
    response_time_ms: float
    error: bool
    timestamp_ms: int


class AnalyticsDispatcher:
    """Moves usage recording off the evaluation path.

    Records go into a bounded queue. A daemon worker drains it after
    `start()`; without a worker, callers drain it with `drain()`.
    """

    def __init__(
        self,
        analytics: UsageAnalyticsEngine,
        max_queue_size: int = DEFAULT_QUEUE_SIZE,
        synchronous: bool = False,
    ):
        self.analytics = analytics
        self.synchronous = synchronous
        self._queue: "queue.Queue[_AnalyticsRecord]" = queue.Queue(maxsize=max_queue_size)
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self.dropped = 0

    def submit(self, record: _AnalyticsRecord) -> None:
        """Hand a record over without blocking; a full queue drops it."""
        if self.synchronous:
            self._record(record)
            return
        try:
            self._queue.put_nowait(record)
        except queue.Full:
            self.dropped += 1
            logger.warning("Analytics queue full, dropping evaluation of %s", record.flag_key)

    def drain(self) -> int:
        """Record everything currently queued on the calling thread."""
        processed = 0
        while True:
            try:
                record = self._queue.get_nowait()
            except queue.Empty:
                return processed
            self._record(record)
            self._queue.task_done()
            processed += 1

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run, name="feature-gate-analytics", daemon=True)
        self._thread.start()

    def stop(self, timeout: float = 5.0) -> None:
        """Stop the worker, then record anything it left behind."""
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout=timeout)
            self._thread = None
        self.drain()

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    def _run(self) -> None:
        while not self._stop_event.is_set():
            try:
                record = self._queue.get(timeout=0.1)
            except queue.Empty:
                continue
            self._record(record)
            self._queue.task_done()

    def _record(self, record: _AnalyticsRecord) -> None:
        try:
            self.analytics.record_evaluation(
                record.flag_key,
                record.context,
                record.enabled,
                record.response_time_ms,
                error=record.error,
                timestamp_ms=record.timestamp_ms,
            )
        except Exception:
            logger.exception("Failed to record analytics for %s", record.flag_key)


class FeatureFlagEvaluator:
    """Answers "is this flag on for this tenant?" against a flag store."""

    def __init__(
        self,
        store: FlagStore,
        *,
        cache: Optional[DecisionCache] = None,
        rollout_engine: Optional[RolloutEngine] = None,
        ab_test_engine: Optional[ABTestEngine] = None,
        analytics: Optional[UsageAnalyticsEngine] = None,
        config: Optional[EvaluatorConfig] = None,
        time_source: Optional[TimeSource] = None,
    ):
        """Wire the evaluator; omitted collaborators are built from config.

        Args:
            store: Read interface for flags, overrides and kill switches
            cache: Decision cache
            rollout_engine: Rollout gate evaluator
            ab_test_engine: Experiment assigner
            analytics: Usage analytics sink
            config: Cache, analytics, rollout and experiment settings
            time_source: Clock shared by every collaborator built here
        """
        self.store = store
        self.config = config or EvaluatorConfig.default()
        self._time = time_source or SystemTimeSource()

        if cache is None:
            eviction = (
                LRUEvictionPolicy(self.config.cache.max_entries)
                if self.config.cache.max_entries else None
            )
            cache = DecisionCache(
                default_ttl_seconds=self.config.cache.default_ttl_seconds,
                time_source=self._time,
                eviction_policy=eviction,
            )
        self.cache = cache
        self.rollout_engine = rollout_engine or RolloutEngine(self._time)
        self.ab_test_engine = ab_test_engine or ABTestEngine(self._time)
        self.analytics = analytics or UsageAnalyticsEngine(
            self._time, history_limit=self.config.analytics.history_limit
        )
        self.dispatcher = AnalyticsDispatcher(
            self.analytics, synchronous=not self.config.analytics.async_recording
        )

    def is_enabled(
        self,
        tenant_id: str,
        flag_key: str,
        context: Optional[EvaluationContext] = None,
    ) -> bool:
        return self.evaluate(tenant_id, flag_key, context).enabled

    def evaluate(
        self,
        tenant_id: str,
        flag_key: str,
        context: Optional[EvaluationContext] = None,
    ) -> EvaluationResult:
        """Decide a flag for a tenant and report the evaluation to analytics.

        Args:
            tenant_id: Tenant asking
            flag_key: Flag to decide
            context: Request attributes; defaults to a bare context for the tenant

        Returns:
            EvaluationResult with the decision and its reason
        """
        started = time.perf_counter()
        if context is None:
            context = EvaluationContext(tenant_id=tenant_id)

        try:
            result = self._decide(tenant_id, flag_key, context)
        except FlagStoreError as e:
            logger.warning("Store read failed for %s/%s, returning False: %s", tenant_id, flag_key, e)
            result = EvaluationResult(tenant_id, flag_key, False, EvaluationReason.STORE_ERROR)

        logger.debug("Flag %s for tenant %s -> %s (%s)", flag_key, tenant_id, result.enabled, result.reason.value)

        elapsed_ms = (time.perf_counter() - started) * 1000
        self.dispatcher.submit(_AnalyticsRecord(
            flag_key=flag_key,
            context=context,
            enabled=result.enabled,
            response_time_ms=elapsed_ms,
            error=result.reason is EvaluationReason.STORE_ERROR,
            timestamp_ms=self._time.now_ms(),
        ))
        return result

    def evaluate_all(self, context: EvaluationContext) -> Dict[str, bool]:
        """Decide every flag the store knows about for the context's tenant."""
        try:
            flags = self.store.list_flags()
        except FlagStoreError as e:
            logger.warning("Could not list flags for tenant %s: %s", context.tenant_id, e)
            return {}
        return {flag.key: self.is_enabled(context.tenant_id, flag.key, context) for flag in flags}

    def assign_variants(self, context: EvaluationContext, flag_keys: Sequence[str]) -> List[VariantAssignment]:
        """Run the configured experiments for `flag_keys` in order.

        Flags without an experiment are skipped.
        """
        experiments = [
            (key, self.config.experiments[key])
            for key in flag_keys
            if key in self.config.experiments
        ]
        return self.ab_test_engine.assign_multiple_variants(context, experiments)

    def invalidate_cache(self, tenant_id: str, flag_key: str) -> None:
        self.cache.invalidate(tenant_id, flag_key)

    def invalidate_all_cache(self) -> None:
        self.cache.invalidate_all()

    def _decide(self, tenant_id: str, flag_key: str, context: EvaluationContext) -> EvaluationResult:
        global_switch = self.store.get_kill_switch()
        if global_switch is not None and global_switch.enabled:
            return EvaluationResult(tenant_id, flag_key, False, EvaluationReason.GLOBAL_KILL_SWITCH)

        flag_switch = self.store.get_kill_switch(flag_key)
        if flag_switch is not None and flag_switch.enabled:
            return EvaluationResult(tenant_id, flag_key, False, EvaluationReason.FLAG_KILL_SWITCH)

        cached = self.cache.get(tenant_id, flag_key)
        if cached is not None:
            logger.debug("Cache hit for %s/%s", tenant_id, flag_key)
            return EvaluationResult(tenant_id, flag_key, cached, EvaluationReason.CACHE_HIT)

        result = self._decide_uncached(tenant_id, flag_key, context)
        if result.reason is EvaluationReason.TENANT_OVERRIDE or not self._is_user_targeted(flag_key):
            self.cache.set(tenant_id, flag_key, result.enabled)
        return result

    def _is_user_targeted(self, flag_key: str) -> bool:
        return flag_key in self.config.rollouts or flag_key in self.config.experiments

    def _decide_uncached(self, tenant_id: str, flag_key: str, context: EvaluationContext) -> EvaluationResult:
        override = self.store.get_tenant_override(tenant_id, flag_key)
        if override is not None:
            return EvaluationResult(tenant_id, flag_key, override.enabled, EvaluationReason.TENANT_OVERRIDE)

        rollout = self.config.rollouts.get(flag_key)
        if rollout is not None and self.rollout_engine.evaluate(context, flag_key, rollout):
            return EvaluationResult(tenant_id, flag_key, True, EvaluationReason.ROLLOUT)

        variant = None
        experiment = self.config.experiments.get(flag_key)
        if experiment is not None:
            variant = self.ab_test_engine.assign_variant(context, flag_key, experiment)
            if not variant.is_control:
                return EvaluationResult(tenant_id, flag_key, True, EvaluationReason.EXPERIMENT, variant)

        flag = self.store.get_flag(flag_key)
        if flag is None:
            return EvaluationResult(tenant_id, flag_key, False, EvaluationReason.FLAG_NOT_FOUND, variant)
        return EvaluationResult(tenant_id, flag_key, flag.default_enabled, EvaluationReason.DEFAULT, variant)
