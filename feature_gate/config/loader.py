"""
Configuration management and loading.

Handles cache, analytics, rollout and experiment settings for the evaluator.
"""

from dataclasses import dataclass, field
from datetime import date, datetime
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from feature_gate.core.ab_test import ABTestConfig, ABTestVariant
from feature_gate.core.rollout import RolloutConfig

DEFAULT_TTL_SECONDS = 300
DEFAULT_HISTORY_LIMIT = 1000


@dataclass(frozen=True)
class CacheConfig:
    """Decision cache settings."""
    default_ttl_seconds: int = DEFAULT_TTL_SECONDS
    max_entries: Optional[int] = None

    def __post_init__(self):
        """Validate TTL and capacity."""
        if self.default_ttl_seconds < 0:
            raise ValueError("default_ttl_seconds must be >= 0")
        if self.max_entries is not None and self.max_entries <= 0:
            raise ValueError("max_entries must be > 0")


@dataclass(frozen=True)
class AnalyticsConfig:
    """Usage analytics settings."""
    history_limit: int = DEFAULT_HISTORY_LIMIT
    async_recording: bool = True

    def __post_init__(self):
        """Validate history limit."""
        if self.history_limit <= 0:
            raise ValueError("history_limit must be > 0")


@dataclass(frozen=True)
class EvaluatorConfig:
    """Complete evaluator configuration."""
    cache: CacheConfig = field(default_factory=CacheConfig)
    analytics: AnalyticsConfig = field(default_factory=AnalyticsConfig)
    rollouts: Dict[str, RolloutConfig] = field(default_factory=dict)
    experiments: Dict[str, ABTestConfig] = field(default_factory=dict)

    @classmethod
    def default(cls) -> "EvaluatorConfig":
        return cls()


def load_evaluator_config(path: str) -> EvaluatorConfig:
    """Load and validate evaluator configuration from YAML file.

    Unknown keys are rejected at every level so a typo never silently
    disables a rollout or experiment.

    Args:
        path: Path to YAML configuration file

    Returns:
        Validated EvaluatorConfig object

    Raises:
        FileNotFoundError: If config file doesn't exist
        yaml.YAMLError: If YAML is invalid
        ValueError: If configuration is invalid
    """
    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(f"Evaluator config file not found: {path}")

    with open(config_path, 'r', encoding='utf-8') as f:
        try:
            raw_config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise yaml.YAMLError(f"Invalid YAML in config file {path}: {e}")

    if not raw_config:
        raise ValueError("Configuration file is empty")
    if not isinstance(raw_config, dict):
        raise ValueError("Configuration must be a dictionary")

    _check_keys(raw_config, {'cache', 'analytics', 'rollouts', 'experiments'}, "configuration")

    cache = _parse_cache(_section(raw_config, 'cache'))
    analytics = _parse_analytics(_section(raw_config, 'analytics'))

    rollouts = {
        flag_key: _parse_rollout(data, f"rollouts.{flag_key}")
        for flag_key, data in _section(raw_config, 'rollouts').items()
    }
    experiments = {
        flag_key: _parse_experiment(data, f"experiments.{flag_key}")
        for flag_key, data in _section(raw_config, 'experiments').items()
    }

    return EvaluatorConfig(
        cache=cache,
        analytics=analytics,
        rollouts=rollouts,
        experiments=experiments,
    )


def _section(raw_config: Dict, name: str) -> Dict:
    data = raw_config.get(name)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValueError(f"'{name}' must be a dictionary")
    return data


def _check_keys(data: Dict, allowed: set, path: str) -> None:
    unknown_keys = set(data.keys()) - allowed
    if unknown_keys:
        raise ValueError(f"Unknown keys in {path}: {unknown_keys}")


def _parse_cache(data: Dict) -> CacheConfig:
    _check_keys(data, {'default_ttl_seconds', 'max_entries'}, "cache")

    ttl = data.get('default_ttl_seconds', DEFAULT_TTL_SECONDS)
    if not _is_int(ttl) or ttl < 0:
        raise ValueError("'cache.default_ttl_seconds' must be an integer >= 0")

    max_entries = data.get('max_entries')
    if max_entries is not None and (not _is_int(max_entries) or max_entries <= 0):
        raise ValueError("'cache.max_entries' must be an integer > 0")

    return CacheConfig(default_ttl_seconds=ttl, max_entries=max_entries)


def _parse_analytics(data: Dict) -> AnalyticsConfig:
    _check_keys(data, {'history_limit', 'async_recording'}, "analytics")

    history_limit = data.get('history_limit', DEFAULT_HISTORY_LIMIT)
    if not _is_int(history_limit) or history_limit <= 0:
        raise ValueError("'analytics.history_limit' must be an integer > 0")

    async_recording = data.get('async_recording', True)
    if not isinstance(async_recording, bool):
        raise ValueError("'analytics.async_recording' must be a boolean")

    return AnalyticsConfig(history_limit=history_limit, async_recording=async_recording)


def _parse_rollout(data: Any, path: str) -> RolloutConfig:
    """Parse and validate one flag's rollout.

    Args:
        data: Rollout configuration data
        path: Path for error messages

    Returns:
        Validated RolloutConfig

    Raises:
        ValueError: If configuration is invalid
    """
    if not isinstance(data, dict):
        raise ValueError(f"'{path}' must be a dictionary")
    _check_keys(
        data,
        {
            'percentage', 'start_date', 'end_date', 'business_hours_only',
            'target_regions', 'user_cohorts', 'initial_percentage', 'phases',
        },
        path,
    )

    if 'percentage' not in data:
        raise ValueError(f"Missing required 'percentage' in {path}")
    percentage = data['percentage']
    if not _is_number(percentage) or not 0 <= percentage <= 100:
        raise ValueError(f"'{path}.percentage' must be between 0 and 100")

    business_hours_only = data.get('business_hours_only', False)
    if not isinstance(business_hours_only, bool):
        raise ValueError(f"'{path}.business_hours_only' must be a boolean")

    initial_percentage = data.get('initial_percentage')
    if initial_percentage is not None and (
        not _is_number(initial_percentage) or not 0 <= initial_percentage <= 100
    ):
        raise ValueError(f"'{path}.initial_percentage' must be between 0 and 100")

    phases = data.get('phases', 1)
    if not _is_int(phases) or phases < 1:
        raise ValueError(f"'{path}.phases' must be an integer >= 1")

    try:
        return RolloutConfig(
            percentage=float(percentage),
            start_date=_parse_datetime(data.get('start_date'), f"{path}.start_date"),
            end_date=_parse_datetime(data.get('end_date'), f"{path}.end_date"),
            business_hours_only=business_hours_only,
            target_regions=_parse_str_list(data.get('target_regions'), f"{path}.target_regions"),
            user_cohorts=_parse_str_list(data.get('user_cohorts'), f"{path}.user_cohorts"),
            initial_percentage=float(initial_percentage) if initial_percentage is not None else None,
            phases=phases,
        )
    except ValueError as e:
        raise ValueError(f"Invalid {path}: {e}") from e


def _parse_experiment(data: Any, path: str) -> ABTestConfig:
    """Parse and validate one flag's experiment.

    Args:
        data: Experiment configuration data
        path: Path for error messages

    Returns:
        Validated ABTestConfig

    Raises:
        ValueError: If configuration is invalid
    """
    if not isinstance(data, dict):
        raise ValueError(f"'{path}' must be a dictionary")
    _check_keys(
        data,
        {'test_id', 'is_active', 'traffic_allocation', 'start_date', 'end_date', 'target_segments', 'variants'},
        path,
    )

    test_id = data.get('test_id')
    if not isinstance(test_id, str) or not test_id:
        raise ValueError(f"Missing required 'test_id' in {path}")

    is_active = data.get('is_active', True)
    if not isinstance(is_active, bool):
        raise ValueError(f"'{path}.is_active' must be a boolean")

    allocation = data.get('traffic_allocation', 100)
    if not _is_number(allocation) or not 0 <= allocation <= 100:
        raise ValueError(f"'{path}.traffic_allocation' must be between 0 and 100")

    variants_data = data.get('variants', [])
    if not isinstance(variants_data, list):
        raise ValueError(f"'{path}.variants' must be a list")
    variants = tuple(
        _parse_variant(variant, f"{path}.variants[{i}]")
        for i, variant in enumerate(variants_data)
    )

    try:
        return ABTestConfig(
            test_id=test_id,
            variants=variants,
            is_active=is_active,
            traffic_allocation=float(allocation),
            start_date=_parse_datetime(data.get('start_date'), f"{path}.start_date"),
            end_date=_parse_datetime(data.get('end_date'), f"{path}.end_date"),
            target_segments=_parse_str_list(data.get('target_segments'), f"{path}.target_segments"),
        )
    except ValueError as e:
        raise ValueError(f"Invalid {path}: {e}") from e


def _parse_variant(data: Any, path: str) -> ABTestVariant:
    if not isinstance(data, dict):
        raise ValueError(f"'{path}' must be a dictionary")
    _check_keys(data, {'id', 'name', 'weight', 'config'}, path)

    variant_id = data.get('id')
    if not isinstance(variant_id, str) or not variant_id:
        raise ValueError(f"Missing required 'id' in {path}")

    weight = data.get('weight')
    if not _is_int(weight) or weight < 0:
        raise ValueError(f"'{path}.weight' must be an integer >= 0")

    config = data.get('config') or {}
    if not isinstance(config, dict):
        raise ValueError(f"'{path}.config' must be a dictionary")

    return ABTestVariant(
        id=variant_id,
        name=str(data.get('name', variant_id)),
        weight=weight,
        config=config,
    )


def _parse_datetime(value: Any, path: str) -> Optional[datetime]:
    """Accept YAML timestamps, dates and ISO-8601 strings as naive local datetimes."""
    if value is None:
        return None
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, date):
        parsed = datetime.combine(value, datetime.min.time())
    elif isinstance(value, str):
        try:
            parsed = datetime.fromisoformat(value)
        except ValueError:
            raise ValueError(f"'{path}' must be an ISO-8601 datetime, got {value!r}")
    else:
        raise ValueError(f"'{path}' must be an ISO-8601 datetime")

    if parsed.tzinfo is not None:
        parsed = parsed.astimezone().replace(tzinfo=None)
    return parsed


def _parse_str_list(value: Any, path: str) -> frozenset:
    if value is None:
        return frozenset()
    if not isinstance(value, list) or not all(isinstance(item, str) for item in value):
        raise ValueError(f"'{path}' must be a list of strings")
    return frozenset(value)


def _is_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)
