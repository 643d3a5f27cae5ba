"""
Factory functions that wire a control loop from configuration.
"""

from __future__ import annotations

import importlib
from typing import Any

from incident_orchestrator.alerting.aggregator import AlertAggregator
from incident_orchestrator.alerting.channels import EmailChannel, SlackWebhookChannel, TopicChannel
from incident_orchestrator.alerting.router import AlertRouter, ChannelBinding
from incident_orchestrator.classification.classifier import IncidentClassifier
from incident_orchestrator.core.config import AlertingConfig, OrchestratorConfig, PlatformConfig, get_config
from incident_orchestrator.core.constants import ChannelType
from incident_orchestrator.core.exceptions import ConfigurationError
from incident_orchestrator.core.logging import get_logger
from incident_orchestrator.core.protocols import MetricsProvider, RuntimePlatform
from incident_orchestrator.detection.detector import AnomalyDetector
from incident_orchestrator.detection.rules import RuleRegistry
from incident_orchestrator.execution.actions import StepRunner
from incident_orchestrator.execution.approvals import ApprovalRegistry
from incident_orchestrator.execution.executor import RecoveryExecutor
from incident_orchestrator.metrics.client import PrometheusMetricsProvider
from incident_orchestrator.metrics.gateway import MetricsGateway
from incident_orchestrator.orchestrator.control_loop import ControlLoop
from incident_orchestrator.planning.planner import RecoveryPlanner
from incident_orchestrator.storage.store import StateStore

logger = get_logger(__name__)


def load_platform(config: PlatformConfig) -> RuntimePlatform:
    """Instantiate the runtime platform named by ``config.factory``.

    Raises:
        ConfigurationError: If no factory is configured, it cannot be
            imported, or it does not return a RuntimePlatform.
    """
    if not config.factory:
        raise ConfigurationError("platform.factory", reason="no runtime platform configured")

    module_name, _, attr = config.factory.partition(":")
    if not module_name or not attr:
        raise ConfigurationError(
            "platform.factory", reason="expected 'package.module:callable'", value=config.factory
        )
    try:
        factory = getattr(importlib.import_module(module_name), attr)
    except (ImportError, AttributeError) as e:
        raise ConfigurationError("platform.factory", reason=str(e), value=config.factory) from e

    platform = factory(**config.options)
    if not isinstance(platform, RuntimePlatform):
        raise ConfigurationError(
            "platform.factory",
            reason=f"returned {type(platform).__name__}, not a RuntimePlatform",
            value=config.factory,
        )
    return platform


def build_channels(config: AlertingConfig) -> dict[str, ChannelBinding]:
    """Notification channels for every transport that has settings."""
    channels: dict[str, ChannelBinding] = {}
    if config.slack_webhook_url:
        channels[ChannelType.CHAT.value] = ChannelBinding(
            SlackWebhookChannel(config.slack_webhook_url, config.timeout_seconds),
            config.slack_channel,
        )
    if config.email.smtp_host:
        channels[ChannelType.EMAIL.value] = ChannelBinding(
            EmailChannel(config.email, timeout_seconds=config.timeout_seconds),
            ",".join(config.email.to_addresses),
        )
    if config.topic_url:
        channels[ChannelType.TOPIC.value] = ChannelBinding(
            TopicChannel(config.topic_url, config.timeout_seconds),
            "incidents",
        )
    if not channels:
        logger.warning("No notification channels configured; alerts will only be logged")
    return channels


def create_control_loop(
    config: OrchestratorConfig | None = None,
    *,
    platform: RuntimePlatform | None = None,
    providers: list[MetricsProvider] | None = None,
    channels: dict[str, ChannelBinding] | None = None,
    db_path: str | None = None,
) -> ControlLoop:
    """Create a ready-to-use control loop.

    Args:
        config: Orchestrator configuration. Defaults to the global config.
        platform: Runtime platform. Defaults to ``config.platform.factory``.
        providers: Metrics providers. Defaults to one Prometheus provider per
            configured endpoint.
        channels: Notification channels. Defaults to those with settings.
        db_path: State store path. Defaults to the configured path.

    Returns:
        Configured ControlLoop instance.
    """
    config = config or get_config()

    store = StateStore(db_path or config.storage.db_path)
    if providers is None:
        providers = [
            PrometheusMetricsProvider(endpoint, config.metrics, name=f"prometheus-{i}")
            for i, endpoint in enumerate(config.metrics.endpoints)
        ]
    gateway = MetricsGateway(providers, config.metrics)

    detector = AnomalyDetector(gateway, RuleRegistry.from_config(config.detection.rules), config.detection)
    runner = StepRunner(platform or load_platform(config.platform), gateway, config.execution)
    executor = RecoveryExecutor(runner, detector.recheck, ApprovalRegistry(), config.execution)

    router = AlertRouter(
        AlertAggregator(config=config.alerting),
        build_channels(config.alerting) if channels is None else channels,
        config.alerting,
    )
    return ControlLoop(
        store,
        detector,
        IncidentClassifier(store, config.classification),
        RecoveryPlanner(config.planning),
        executor,
        router,
        config.control_loop,
        gateway=gateway,
    )


def describe_loop(loop: ControlLoop) -> dict[str, Any]:
    """JSON-ready status of a control loop."""
    return loop.get_system_status().model_dump(mode="json")
