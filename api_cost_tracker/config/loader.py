"""
Configuration management and loading.

Handles the tracker's YAML configuration: budget, provider catalog,
optimization thresholds, monitoring intervals and logging.
"""

import logging
from dataclasses import dataclass, field
from datetime import timedelta
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

import yaml

from ..core.budget import Budget, parse_alert_rule
from ..core.optimizer import OptimizationSettings
from ..core.pricing import (
    BillingPeriod,
    BillingType,
    Endpoint,
    Provider,
    RateLimits,
    SubscriptionPlan,
)

LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")
LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


@dataclass(frozen=True)
class HealthConfig:
    """Health monitoring windows and timer intervals."""
    window_hours: float = 24.0
    check_interval_seconds: float = 300.0
    report_interval_seconds: float = 86400.0

    def __post_init__(self):
        """Validate intervals are positive."""
        if self.window_hours <= 0:
            raise ValueError("health.window_hours must be > 0")
        if self.check_interval_seconds <= 0:
            raise ValueError("health.check_interval_seconds must be > 0")
        if self.report_interval_seconds <= 0:
            raise ValueError("health.report_interval_seconds must be > 0")

    @property
    def window(self) -> timedelta:
        return timedelta(hours=self.window_hours)


@dataclass(frozen=True)
class TrackerConfig:
    """Complete tracker configuration."""
    budget: Optional[Budget] = None
    providers: Optional[Tuple[Provider, ...]] = None
    optimization: OptimizationSettings = field(default_factory=OptimizationSettings)
    health: HealthConfig = field(default_factory=HealthConfig)
    webhook_timeout_seconds: float = 5.0
    log_level: str = "INFO"


def configure_logging(level: str = "INFO") -> None:
    """Configure root logging for command-line use."""
    level = level.upper()
    if level not in LOG_LEVELS:
        raise ValueError(f"logging level must be one of: {list(LOG_LEVELS)}")
    logging.basicConfig(level=getattr(logging, level), format=LOG_FORMAT)


def load_tracker_config(path: str) -> TrackerConfig:
    """Load and validate tracker configuration from a YAML file.

    Strict validation ensures no silent misconfigurations that could
    lead to mispriced usage or missed budget alerts.

    Args:
        path: Path to YAML configuration file

    Returns:
        Validated TrackerConfig object

    Raises:
        FileNotFoundError: If config file doesn't exist
        yaml.YAMLError: If YAML is invalid
        ValueError: If configuration is invalid
    """
    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(f"Tracker config file not found: {path}")

    with open(config_path, 'r', encoding='utf-8') as f:
        try:
            raw_config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise yaml.YAMLError(f"Invalid YAML in config file {path}: {e}")

    if not raw_config:
        raise ValueError("Configuration file is empty")
    if not isinstance(raw_config, dict):
        raise ValueError("Configuration must be a mapping")

    allowed_top_keys = {'budget', 'providers', 'optimization', 'health', 'alerts', 'logging'}
    unknown_keys = set(raw_config.keys()) - allowed_top_keys
    if unknown_keys:
        raise ValueError(f"Unknown configuration keys: {unknown_keys}")

    budget = None
    if 'budget' in raw_config:
        budget = _parse_budget(_section(raw_config, 'budget'))

    providers = None
    if 'providers' in raw_config:
        providers_data = _section(raw_config, 'providers')
        providers = tuple(
            _parse_provider(name, data)
            for name, data in providers_data.items()
        )

    optimization = OptimizationSettings()
    if 'optimization' in raw_config:
        optimization = _parse_optimization(_section(raw_config, 'optimization'))

    health = HealthConfig()
    if 'health' in raw_config:
        health_data = _section(raw_config, 'health')
        _check_keys(health_data, {'window_hours', 'check_interval_seconds', 'report_interval_seconds'}, 'health')
        health = HealthConfig(**{
            key: _number(value, f"health.{key}") for key, value in health_data.items()
        })

    webhook_timeout = 5.0
    if 'alerts' in raw_config:
        alerts_data = _section(raw_config, 'alerts')
        _check_keys(alerts_data, {'webhook_timeout_seconds'}, 'alerts')
        if 'webhook_timeout_seconds' in alerts_data:
            webhook_timeout = _number(alerts_data['webhook_timeout_seconds'], 'alerts.webhook_timeout_seconds')
            if webhook_timeout <= 0:
                raise ValueError("'alerts.webhook_timeout_seconds' must be > 0")

    log_level = "INFO"
    if 'logging' in raw_config:
        logging_data = _section(raw_config, 'logging')
        _check_keys(logging_data, {'level'}, 'logging')
        log_level = str(logging_data.get('level', 'INFO')).upper()
        if log_level not in LOG_LEVELS:
            raise ValueError(f"'logging.level' must be one of: {list(LOG_LEVELS)}")

    return TrackerConfig(
        budget=budget,
        providers=providers,
        optimization=optimization,
        health=health,
        webhook_timeout_seconds=webhook_timeout,
        log_level=log_level,
    )


def _section(raw_config: Dict, name: str) -> Dict:
    data = raw_config[name]
    if not isinstance(data, dict):
        raise ValueError(f"'{name}' must be a dictionary")
    return data


def _check_keys(data: Dict, allowed_keys: set, path: str) -> None:
    unknown_keys = set(data.keys()) - allowed_keys
    if unknown_keys:
        raise ValueError(f"Unknown keys in {path}: {unknown_keys}")


def _number(value: Any, path: str) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValueError(f"'{path}' must be a number")
    return float(value)


def _parse_budget(data: Dict) -> Budget:
    """Parse and validate the budget section."""
    _check_keys(data, {'monthly', 'alerts'}, 'budget')
    if 'monthly' not in data:
        raise ValueError("Missing required 'monthly' budget")

    alerts_data = data.get('alerts', [])
    if not isinstance(alerts_data, list):
        raise ValueError("'budget.alerts' must be a list")
    for i, alert in enumerate(alerts_data):
        if not isinstance(alert, dict):
            raise ValueError(f"'budget.alerts[{i}]' must be a dictionary")
        _check_keys(alert, {'threshold', 'action', 'target'}, f"budget.alerts[{i}]")

    return Budget(
        monthly=_number(data['monthly'], 'budget.monthly'),
        alerts=tuple(parse_alert_rule(alert) for alert in alerts_data)
    )


def _parse_provider(name: str, data: Dict) -> Provider:
    """Parse and validate one provider catalog entry.

    Args:
        name: Provider name (the mapping key)
        data: Provider configuration data

    Returns:
        Validated Provider

    Raises:
        ValueError: If configuration is invalid
    """
    path = f"providers.{name}"
    if not isinstance(data, dict):
        raise ValueError(f"Provider '{name}' must be a dictionary")
    _check_keys(data, {'display_name', 'billing_type', 'endpoints', 'subscription', 'limits'}, path)

    if 'billing_type' not in data:
        raise ValueError(f"Missing required 'billing_type' in {path}")
    try:
        billing_type = BillingType(str(data['billing_type']).lower())
    except ValueError:
        valid_types = [t.value for t in BillingType]
        raise ValueError(f"'billing_type' in {path} must be one of: {valid_types}")

    endpoints_data = data.get('endpoints', [])
    if not isinstance(endpoints_data, list):
        raise ValueError(f"'endpoints' in {path} must be a list")
    endpoints = []
    for i, endpoint in enumerate(endpoints_data):
        endpoint_path = f"{path}.endpoints[{i}]"
        if not isinstance(endpoint, dict):
            raise ValueError(f"'{endpoint_path}' must be a dictionary")
        _check_keys(endpoint, {'name', 'path', 'cost', 'unit', 'category'}, endpoint_path)
        for required in ('name', 'path', 'cost'):
            if required not in endpoint:
                raise ValueError(f"Missing required '{required}' in {endpoint_path}")
        cost = _number(endpoint['cost'], f"{endpoint_path}.cost")
        if cost < 0:
            raise ValueError(f"'cost' in {endpoint_path} must be >= 0")
        endpoints.append(Endpoint(
            name=str(endpoint['name']),
            path=str(endpoint['path']),
            unit_cost=cost,
            unit=str(endpoint.get('unit', 'request')),
            category=str(endpoint.get('category', 'general')),
        ))

    subscription = None
    if 'subscription' in data:
        sub = data['subscription']
        if not isinstance(sub, dict):
            raise ValueError(f"'subscription' in {path} must be a dictionary")
        _check_keys(sub, {'name', 'cost', 'period', 'credits'}, f"{path}.subscription")
        if 'cost' not in sub:
            raise ValueError(f"Missing required 'cost' in {path}.subscription")
        try:
            period = BillingPeriod(str(sub.get('period', 'monthly')).lower())
        except ValueError:
            valid_periods = [p.value for p in BillingPeriod]
            raise ValueError(f"'period' in {path}.subscription must be one of: {valid_periods}")
        subscription = SubscriptionPlan(
            name=str(sub.get('name', name)),
            cost=_number(sub['cost'], f"{path}.subscription.cost"),
            period=period,
            credits=int(sub.get('credits', 0)),
        )

    limits = None
    if 'limits' in data:
        limits_data = data['limits']
        if not isinstance(limits_data, dict):
            raise ValueError(f"'limits' in {path} must be a dictionary")
        allowed = {
            'requests_per_second', 'requests_per_minute', 'requests_per_hour',
            'requests_per_day', 'concurrent_requests',
        }
        _check_keys(limits_data, allowed, f"{path}.limits")
        limits = RateLimits(**{
            key: _number(value, f"{path}.limits.{key}") for key, value in limits_data.items()
        })

    return Provider(
        name=name,
        display_name=str(data.get('display_name', name)),
        billing_type=billing_type,
        endpoints=tuple(endpoints),
        subscription=subscription,
        limits=limits,
    )


def _parse_optimization(data: Dict) -> OptimizationSettings:
    allowed_keys = {
        'plan_upgrade_threshold', 'error_rate_threshold', 'slow_response_ms',
        'duplicate_min_calls', 'duplicate_window_hours',
    }
    _check_keys(data, allowed_keys, 'optimization')
    defaults = OptimizationSettings()
    window_hours = data.get('duplicate_window_hours')
    return OptimizationSettings(
        plan_upgrade_threshold=_number(
            data.get('plan_upgrade_threshold', defaults.plan_upgrade_threshold),
            'optimization.plan_upgrade_threshold'
        ),
        error_rate_threshold=_number(
            data.get('error_rate_threshold', defaults.error_rate_threshold),
            'optimization.error_rate_threshold'
        ),
        slow_response_ms=_number(
            data.get('slow_response_ms', defaults.slow_response_ms),
            'optimization.slow_response_ms'
        ),
        duplicate_min_calls=int(_number(
            data.get('duplicate_min_calls', defaults.duplicate_min_calls),
            'optimization.duplicate_min_calls'
        )),
        duplicate_window=(
            timedelta(hours=_number(window_hours, 'optimization.duplicate_window_hours'))
            if window_hours is not None else defaults.duplicate_window
        ),
    )
