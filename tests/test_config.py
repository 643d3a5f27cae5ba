"""
Tests for configuration module.
"""

from __future__ import annotations

import json
import os
from unittest.mock import patch

import pytest

from incident_orchestrator.core.config import (
    AlertingConfig,
    ControlLoopConfig,
    DetectionConfig,
    MetricsConfig,
    OrchestratorConfig,
    PlanningConfig,
    get_config,
    reset_config,
    set_config,
)
from incident_orchestrator.core.exceptions import ConfigurationError


class TestMetricsConfig:
    """Tests for metrics configuration."""

    def test_default_values(self):
        """Test default configuration values."""
        config = MetricsConfig()
        assert config.timeout_seconds == 10
        assert config.max_retries == 3
        assert config.circuit_breaker_threshold == 5
        assert config.endpoints == ("http://localhost:9090",)

    def test_from_env(self):
        """Test environment variables override the config file."""
        with patch.dict(os.environ, {
            "METRICS_ENDPOINTS": "http://a:9090, http://b:9090",
            "METRICS_TIMEOUT": "20",
        }):
            config = MetricsConfig.from_config({"metrics": {"timeout_seconds": 5}})
            assert config.endpoints == ("http://a:9090", "http://b:9090")
            assert config.timeout_seconds == 20

    def test_immutability(self):
        """Test that config is immutable (frozen)."""
        config = MetricsConfig()
        with pytest.raises(Exception):  # FrozenInstanceError
            config.timeout_seconds = 999


class TestControlLoopConfig:
    """Tests for control loop configuration."""

    def test_default_interval(self):
        assert ControlLoopConfig().interval_seconds == 120

    @pytest.mark.parametrize("interval", [60, 300])
    def test_interval_bounds_accepted(self, interval):
        assert ControlLoopConfig(interval_seconds=interval).interval_seconds == interval

    @pytest.mark.parametrize("interval", [59, 301])
    def test_interval_out_of_bounds_rejected(self, interval):
        with pytest.raises(ConfigurationError):
            ControlLoopConfig(interval_seconds=interval)

    def test_workers_must_be_positive(self):
        with pytest.raises(ConfigurationError):
            ControlLoopConfig(max_workers=0)

    def test_interval_from_env(self):
        with patch.dict(os.environ, {"ORCHESTRATOR_INTERVAL": "90"}):
            assert ControlLoopConfig.from_config({}).interval_seconds == 90


class TestSectionDefaults:
    """Tests for the defaults of the detection, planning and alerting sections."""

    def test_detection_defaults(self):
        config = DetectionConfig()
        assert config.coalesce_window_minutes == 5.0
        assert config.baseline_window_days == 14
        assert config.baseline_sigma == 3.0
        assert config.min_baseline_samples == 30

    def test_planning_approval_roles(self):
        config = PlanningConfig()
        assert config.approval_roles["high"] == ["on_call_engineer"]
        assert config.approval_roles["critical"] == ["on_call_engineer", "incident_commander"]

    @pytest.mark.parametrize("roles", [
        {"high": [], "critical": ["incident_commander"]},
        {"high": ["on_call_engineer"], "critical": []},
        {"high": ["on_call_engineer"]},
    ])
    def test_planning_rejects_ungated_severities(self, roles):
        with pytest.raises(ConfigurationError, match="approval_roles"):
            PlanningConfig(approval_roles=roles)

    def test_planning_rejects_empty_roles_from_file(self):
        with pytest.raises(ConfigurationError):
            PlanningConfig.from_config({"planning": {"approval_roles": {"critical": []}}})

    def test_planning_merges_overrides(self):
        config = PlanningConfig.from_config({"planning": {"step_durations": {"scale_out": 10}}})
        assert config.step_durations["scale_out"] == 10
        assert config.step_durations["service_restart"] == 300.0

    def test_alerting_channels(self):
        config = AlertingConfig()
        assert config.aggregation_window_minutes == 15.0
        assert config.severity_channels["critical"] == ["chat", "email", "topic"]

    def test_alerting_email_recipients_from_env(self):
        with patch.dict(os.environ, {"ALERT_EMAIL_TO": "a@example.com,b@example.com"}):
            config = AlertingConfig.from_config({})
            assert config.email.to_addresses == ("a@example.com", "b@example.com")


class TestOrchestratorConfig:
    """Tests for the root configuration."""

    def test_from_file(self, tmp_path):
        """Test loading every section from a JSON file."""
        path = tmp_path / "config.json"
        path.write_text(json.dumps({
            "control_loop": {"interval_seconds": 180, "max_workers": 2},
            "detection": {"rules": [{"namespace": "checkout", "metric_name": "error_rate",
                                     "service": "checkout", "incident_type": "high_error_rate"}]},
            "storage": {"db_path": "/tmp/state.db"},
        }))
        with patch.dict(os.environ, {}, clear=False):
            os.environ.pop("ORCHESTRATOR_INTERVAL", None)
            os.environ.pop("ORCHESTRATOR_DB_PATH", None)
            config = OrchestratorConfig.from_file(path)
        assert config.control_loop.interval_seconds == 180
        assert config.control_loop.max_workers == 2
        assert len(config.detection.rules) == 1
        assert config.storage.db_path == "/tmp/state.db"
        assert config.config_file_path == str(path)

    def test_invalid_interval_in_file(self, tmp_path):
        path = tmp_path / "config.json"
        path.write_text(json.dumps({"control_loop": {"interval_seconds": 5}}))
        with patch.dict(os.environ, {}, clear=False):
            os.environ.pop("ORCHESTRATOR_INTERVAL", None)
            with pytest.raises(ConfigurationError):
                OrchestratorConfig.from_file(path)


class TestGlobalConfig:
    """Tests for the global configuration accessors."""

    def test_set_and_get(self):
        config = OrchestratorConfig.default()
        set_config(config)
        try:
            assert get_config() is config
        finally:
            reset_config()

    def test_reset_reloads(self):
        first = OrchestratorConfig.default()
        set_config(first)
        reset_config()
        with patch("incident_orchestrator.core.config._load_config_file", return_value={}):
            assert get_config() is not first
        reset_config()
