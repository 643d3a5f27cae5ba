"""
Alert routing - aggregation-aware delivery to notification channels.

Each routed alert first joins its alert group. Only the alert that opens a
group, or one that raises the group's highest severity, is delivered; the
rest are absorbed by the group. Delivery fans out to the channels mapped to
the alert's severity, and a failing channel never blocks the others.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from incident_orchestrator.alerting.aggregator import AlertAggregator
from incident_orchestrator.alerting.formatter import format_alert_body, format_resolution, format_title
from incident_orchestrator.core.config import AlertingConfig, get_config
from incident_orchestrator.core.constants import Severity
from incident_orchestrator.core.logging import EventType, get_logger, log_event
from incident_orchestrator.core.models import Alert, AlertGroup, DeliveryResult
from incident_orchestrator.core.protocols import NotificationChannel

logger = get_logger(__name__)


@dataclass(frozen=True)
class ChannelBinding:
    """A notification channel together with its delivery target."""

    channel: NotificationChannel
    target: str = ""


class AlertRouter:
    """Routes alerts through the aggregator to severity-mapped channels.

    Args:
        aggregator: Alert aggregator owning group state.
        channels: Channel bindings keyed by channel type (``chat``, ``email``,
            ``topic``).
        config: Alerting configuration (severity to channel mapping).
    """

    def __init__(
        self,
        aggregator: AlertAggregator,
        channels: dict[str, ChannelBinding] | None = None,
        config: AlertingConfig | None = None,
    ) -> None:
        self._aggregator = aggregator
        self._channels = dict(channels or {})
        self._config = config or get_config().alerting

    @property
    def aggregator(self) -> AlertAggregator:
        return self._aggregator

    def channels_for(self, severity: Severity) -> list[str]:
        return list(self._config.severity_channels.get(severity.value, []))

    def route(self, alert: Alert, force: bool = False) -> list[DeliveryResult]:
        """Aggregate ``alert`` and deliver it if it is new or escalates its group.

        Alerts that ask for an operator action (approvals, failed recoveries)
        pass ``force=True``: they still join their group but are always
        delivered.

        Returns:
            One result per attempted delivery; empty when the alert was
            absorbed by an existing group.
        """
        previous = self._aggregator.active_group(alert.type, alert.source)
        group, created = self._aggregator.add(alert)

        escalated = previous is not None and group.id == previous.id and alert.severity > previous.max_severity
        if not (created or escalated or force):
            return []

        title = format_title(alert.severity, alert.title)
        body = format_alert_body(alert, group)
        metadata = dict(alert.metadata)
        metadata.update({"alert_id": alert.id, "group_id": group.id, "occurrences": group.count})
        return self._deliver(alert.severity, alert.source, title, body, metadata)

    def notify_resolved(self, group: AlertGroup) -> list[DeliveryResult]:
        """Announce that an alert group resolved, using its highest severity's channels."""
        title, body = format_resolution(group)
        metadata = {"group_id": group.id, "type": group.type, "count": group.count}
        return self._deliver(group.max_severity, group.source, title, body, metadata)

    def _deliver(
        self,
        severity: Severity,
        source: str,
        title: str,
        body: str,
        metadata: dict,
    ) -> list[DeliveryResult]:
        results: list[DeliveryResult] = []
        for channel_name in self.channels_for(severity):
            binding = self._channels.get(channel_name)
            if binding is None:
                logger.debug(f"No {channel_name} channel configured, skipping")
                continue
            try:
                binding.channel.send(binding.target, severity, title, body, metadata)
            except Exception as e:
                results.append(DeliveryResult(channel_name, binding.target, False, str(e)))
                log_event(
                    logger, logging.ERROR, EventType.NOTIFICATION_FAILED, source,
                    f"Delivery via {channel_name} failed: {e}", target=binding.target,
                )
                continue
            results.append(DeliveryResult(channel_name, binding.target, True))
            log_event(
                logger, logging.INFO, EventType.NOTIFICATION_SENT, source,
                title, channel=channel_name, target=binding.target,
            )
        return results
