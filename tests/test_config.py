"""
Unit tests for configuration loading and validation.

Tests strict validation and error handling for tracker configs.
"""

import logging
import os
import tempfile
from datetime import timedelta
from unittest.mock import patch

import pytest
import yaml

from api_cost_tracker.config.loader import (
    HealthConfig,
    TrackerConfig,
    configure_logging,
    load_tracker_config,
)
from api_cost_tracker.core.budget import AlertAction
from api_cost_tracker.core.pricing import BillingPeriod, BillingType
from api_cost_tracker.core.registry import ProviderRegistry
from api_cost_tracker.core.tracker import CostTracker


class TestConfigLoading:
    """Test configuration loading and validation."""

    def setup_method(self):
        """Set up test environment."""
        self.temp_dir = tempfile.mkdtemp()

    def teardown_method(self):
        """Clean up test environment."""
        import shutil
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def _write_config(self, config_data: dict, filename: str = "config.yaml") -> str:
        """Write configuration data to temporary file."""
        config_path = os.path.join(self.temp_dir, filename)
        with open(config_path, 'w', encoding='utf-8') as f:
            yaml.dump(config_data, f)
        return config_path

    def test_valid_config_loads_correctly(self):
        """Test that a valid configuration loads correctly."""
        config_data = {
            "budget": {
                "monthly": 500.0,
                "alerts": [
                    {"threshold": 80, "action": "webhook", "target": "https://hooks.example.com/x"},
                    {"threshold": 50},
                ]
            },
            "providers": {
                "serpapi": {
                    "display_name": "SerpApi",
                    "billing_type": "subscription",
                    "subscription": {"name": "Developer", "cost": 75, "period": "monthly", "credits": 5000},
                    "endpoints": [
                        {"name": "search", "path": "/search", "cost": 0.015, "category": "serp"}
                    ],
                    "limits": {"requests_per_hour": 1000}
                }
            },
            "optimization": {"plan_upgrade_threshold": 250, "duplicate_window_hours": 6},
            "health": {"window_hours": 12, "check_interval_seconds": 60},
            "alerts": {"webhook_timeout_seconds": 2},
            "logging": {"level": "debug"}
        }

        config = load_tracker_config(self._write_config(config_data))

        assert config.budget.monthly == 500.0
        assert config.budget.thresholds() == [50.0, 80.0]
        assert config.budget.alerts[1].action == AlertAction.WEBHOOK

        [provider] = config.providers
        assert provider.name == "serpapi"
        assert provider.billing_type == BillingType.SUBSCRIPTION
        assert provider.subscription.period == BillingPeriod.MONTHLY
        assert provider.endpoints[0].unit_cost == 0.015
        assert provider.endpoints[0].unit == "request"
        assert provider.limits.per_minute() == pytest.approx(1000 / 60)

        assert config.optimization.plan_upgrade_threshold == 250.0
        assert config.optimization.duplicate_window == timedelta(hours=6)
        assert config.health.window == timedelta(hours=12)
        assert config.health.report_interval_seconds == 86400.0
        assert config.webhook_timeout_seconds == 2.0
        assert config.log_level == "DEBUG"

    def test_minimal_config_uses_defaults(self):
        config = load_tracker_config(self._write_config({"budget": {"monthly": 100}}))
        assert config.providers is None
        assert config.budget.thresholds() == [50.0, 75.0, 90.0, 100.0]
        assert config.health == HealthConfig()
        assert ProviderRegistry.from_config(config.providers).names() == [
            "builtwith", "dataforseo", "facebook", "google"
        ]

    def test_tracker_from_config(self):
        config_data = {
            "budget": {"monthly": 100},
            "providers": {
                "acme": {
                    "billing_type": "pay_per_use",
                    "endpoints": [{"name": "bulk", "path": "/bulk", "cost": 60}]
                }
            }
        }
        config = load_tracker_config(self._write_config(config_data))
        with CostTracker.from_config(config) as tracker:
            assert tracker.registry.names() == ["acme"]
            tracker.record_usage("acme", "bulk")
            assert [a.threshold for a in tracker.recent_alerts()] == [50.0]

    def test_missing_file_raises_error(self):
        """Test that missing config file raises error."""
        with pytest.raises(FileNotFoundError, match="Tracker config file not found"):
            load_tracker_config("nonexistent.yaml")

    def test_empty_config_raises_error(self):
        """Test that empty config file raises error."""
        config_path = self._write_config({})

        with pytest.raises(ValueError, match="Configuration file is empty"):
            load_tracker_config(config_path)

    def test_invalid_yaml_raises_error(self):
        """Test that invalid YAML raises error."""
        config_path = os.path.join(self.temp_dir, "invalid.yaml")
        with open(config_path, 'w') as f:
            f.write("invalid: yaml: content: [")

        with pytest.raises(yaml.YAMLError):
            load_tracker_config(config_path)

    def test_missing_monthly_budget_raises_error(self):
        config_path = self._write_config({"budget": {"alerts": []}})
        with pytest.raises(ValueError, match="Missing required 'monthly' budget"):
            load_tracker_config(config_path)

    def test_negative_monthly_budget_raises_error(self):
        config_path = self._write_config({"budget": {"monthly": -100.0}})
        with pytest.raises(ValueError, match="monthly budget must be > 0"):
            load_tracker_config(config_path)

    def test_non_numeric_budget_raises_error(self):
        config_path = self._write_config({"budget": {"monthly": "lots"}})
        with pytest.raises(ValueError, match="must be a number"):
            load_tracker_config(config_path)

    def test_invalid_alert_action_raises_error(self):
        config_path = self._write_config({
            "budget": {"monthly": 100, "alerts": [{"threshold": 50, "action": "pager"}]}
        })
        with pytest.raises(ValueError, match="must be one of"):
            load_tracker_config(config_path)

    def test_unknown_top_level_keys_raise_error(self):
        config_path = self._write_config({"budget": {"monthly": 100}, "unknown_key": "value"})
        with pytest.raises(ValueError, match="Unknown configuration keys"):
            load_tracker_config(config_path)

    def test_unknown_budget_keys_raise_error(self):
        config_path = self._write_config({"budget": {"monthly": 100, "weekly": 25}})
        with pytest.raises(ValueError, match="Unknown keys in budget"):
            load_tracker_config(config_path)

    def test_unknown_endpoint_keys_raise_error(self):
        config_path = self._write_config({
            "providers": {
                "acme": {
                    "billing_type": "pay_per_use",
                    "endpoints": [{"name": "x", "path": "/x", "cost": 1, "price": 2}]
                }
            }
        })
        with pytest.raises(ValueError, match=r"Unknown keys in providers.acme.endpoints\[0\]"):
            load_tracker_config(config_path)

    def test_missing_endpoint_cost_raises_error(self):
        config_path = self._write_config({
            "providers": {"acme": {"billing_type": "pay_per_use", "endpoints": [{"name": "x", "path": "/x"}]}}
        })
        with pytest.raises(ValueError, match="Missing required 'cost'"):
            load_tracker_config(config_path)

    def test_negative_endpoint_cost_raises_error(self):
        config_path = self._write_config({
            "providers": {
                "acme": {"billing_type": "pay_per_use", "endpoints": [{"name": "x", "path": "/x", "cost": -1}]}
            }
        })
        with pytest.raises(ValueError, match="must be >= 0"):
            load_tracker_config(config_path)

    def test_invalid_billing_type_raises_error(self):
        config_path = self._write_config({"providers": {"acme": {"billing_type": "barter"}}})
        with pytest.raises(ValueError, match="'billing_type' in providers.acme must be one of"):
            load_tracker_config(config_path)

    def test_invalid_health_interval_raises_error(self):
        config_path = self._write_config({"health": {"check_interval_seconds": 0}})
        with pytest.raises(ValueError, match="check_interval_seconds must be > 0"):
            load_tracker_config(config_path)

    def test_invalid_logging_level_raises_error(self):
        config_path = self._write_config({"logging": {"level": "chatty"}})
        with pytest.raises(ValueError, match="logging.level"):
            load_tracker_config(config_path)

    def test_invalid_error_rate_threshold_raises_error(self):
        config_path = self._write_config({"optimization": {"error_rate_threshold": 2}})
        with pytest.raises(ValueError, match="error_rate_threshold"):
            load_tracker_config(config_path)


class TestLogging:
    """Test logging configuration."""

    def test_configure_logging_rejects_unknown_level(self):
        with pytest.raises(ValueError):
            configure_logging("chatty")

    def test_configure_logging_accepts_lowercase(self):
        with patch("api_cost_tracker.config.loader.logging.basicConfig") as mock_basic_config:
            configure_logging("warning")
        mock_basic_config.assert_called_once()
        assert mock_basic_config.call_args.kwargs["level"] == logging.WARNING

    def test_default_config(self):
        config = TrackerConfig()
        assert config.budget is None
        assert config.log_level == "INFO"
