"""
Alerting module - alert aggregation, routing and notification channels.

This module contains:
    - aggregator: Groups alerts by (type, source) within a sliding window
    - router: Delivers new or escalating alerts to severity-mapped channels
    - channels: Slack webhook, SMTP email and HTTP topic channels
    - formatter: Titles, bodies and chat payloads
"""

from incident_orchestrator.alerting.aggregator import AlertAggregator
from incident_orchestrator.alerting.channels import (
    EmailChannel,
    SlackWebhookChannel,
    TopicChannel,
)
from incident_orchestrator.alerting.formatter import (
    SEVERITY_COLORS,
    build_slack_payload,
    format_alert_body,
    format_resolution,
    format_title,
)
from incident_orchestrator.alerting.router import AlertRouter, ChannelBinding

__all__ = [
    # Aggregation and routing
    "AlertAggregator",
    "AlertRouter",
    "ChannelBinding",
    # Channels
    "SlackWebhookChannel",
    "EmailChannel",
    "TopicChannel",
    # Formatting
    "SEVERITY_COLORS",
    "format_title",
    "format_alert_body",
    "format_resolution",
    "build_slack_payload",
]
