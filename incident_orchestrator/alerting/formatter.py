"""
Notification formatting for chat, email and topic channels.
"""

from __future__ import annotations

import json
from typing import Any, Final

from incident_orchestrator.core.constants import Severity
from incident_orchestrator.core.models import Alert, AlertGroup
from incident_orchestrator.core.utils import format_duration, truncate_string

SEVERITY_COLORS: Final[dict[Severity, str]] = {
    Severity.LOW: "#17A2B8",
    Severity.MEDIUM: "#FFC107",
    Severity.HIGH: "#FFC107",
    Severity.CRITICAL: "#DC3545",
}

MAX_FIELD_LENGTH = 500


def _render_value(value: Any) -> str:
    if isinstance(value, str):
        return value
    return json.dumps(value, default=str, sort_keys=True)


def format_title(severity: Severity, title: str) -> str:
    return f"[{severity.value.upper()}] {title}"


def format_alert_body(alert: Alert, group: AlertGroup | None = None) -> str:
    """Plain-text body shared by email and topic notifications."""
    lines = [
        "Alert Details:",
        "-------------",
        f"Severity: {alert.severity.value.upper()}",
        f"Time: {alert.timestamp.isoformat()}Z",
        f"Source: {alert.source}",
        f"Message: {alert.message}",
    ]
    if group is not None and group.count > 1:
        lines.append(f"Occurrences: {group.count} since {group.first_occurrence.isoformat()}Z")
    if alert.metadata:
        lines.extend(["", "Metadata:", "---------"])
        lines.extend(f"{k}: {_render_value(v)}" for k, v in sorted(alert.metadata.items()))
    return "\n".join(lines)


def format_resolution(group: AlertGroup) -> tuple[str, str]:
    """Title and body announcing a resolved alert group."""
    title = f"Resolved: {group.type} on {group.source}"
    active_for = (group.resolved_at or group.last_occurrence) - group.first_occurrence
    body = "\n".join([
        "Alert Group Resolved:",
        "---------------------",
        f"Type: {group.type}",
        f"Source: {group.source}",
        f"Alerts: {group.count}",
        f"Highest severity: {group.max_severity.value.upper()}",
        f"Active for: {format_duration(active_for)}",
    ])
    return title, body


def build_slack_payload(
    target: str,
    severity: Severity,
    title: str,
    body: str,
    metadata: dict[str, Any],
) -> dict[str, Any]:
    """Slack webhook payload with one color-coded attachment."""
    payload: dict[str, Any] = {
        "attachments": [
            {
                "title": title,
                "text": body,
                "color": SEVERITY_COLORS.get(severity, SEVERITY_COLORS[Severity.LOW]),
                "fields": [
                    {
                        "title": key,
                        "value": truncate_string(_render_value(value), MAX_FIELD_LENGTH),
                        "short": True,
                    }
                    for key, value in sorted(metadata.items())
                ],
            }
        ]
    }
    if target:
        payload["channel"] = target
    return payload
