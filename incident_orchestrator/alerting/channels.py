"""
Notification channels: Slack webhook, SMTP email and HTTP topic publish.

Every channel raises NotificationError on failure; isolating failures
between channels is the router's job.
"""

from __future__ import annotations

import smtplib
from collections.abc import Callable
from email.message import EmailMessage
from typing import Any

import requests

from incident_orchestrator.alerting.formatter import build_slack_payload
from incident_orchestrator.api.models import TopicMessage
from incident_orchestrator.core.config import EmailConfig
from incident_orchestrator.core.constants import ChannelType, Severity
from incident_orchestrator.core.exceptions import NotificationError
from incident_orchestrator.core.protocols import NotificationChannel


class SlackWebhookChannel(NotificationChannel):
    """Posts color-coded attachments to a Slack incoming webhook."""

    name = ChannelType.CHAT.value

    def __init__(
        self,
        webhook_url: str,
        timeout_seconds: int = 10,
        session: requests.Session | None = None,
    ) -> None:
        self._webhook_url = webhook_url
        self._timeout = timeout_seconds
        self._session = session or requests.Session()

    def send(
        self,
        target: str,
        severity: Severity,
        title: str,
        body: str,
        metadata: dict[str, Any],
    ) -> None:
        payload = build_slack_payload(target, severity, title, body, metadata)
        try:
            response = self._session.post(self._webhook_url, json=payload, timeout=self._timeout)
            response.raise_for_status()
        except requests.RequestException as e:
            raise NotificationError(self.name, target=target, reason=str(e), cause=e) from e


class EmailChannel(NotificationChannel):
    """Sends plain-text email through SMTP.

    ``target`` is a comma-separated recipient list; when empty the configured
    default recipients are used.
    """

    name = ChannelType.EMAIL.value

    def __init__(
        self,
        config: EmailConfig,
        smtp_factory: Callable[..., smtplib.SMTP] = smtplib.SMTP,
        timeout_seconds: int = 10,
    ) -> None:
        self._config = config
        self._smtp_factory = smtp_factory
        self._timeout = timeout_seconds

    def _recipients(self, target: str) -> list[str]:
        if target:
            return [addr.strip() for addr in target.split(",") if addr.strip()]
        return list(self._config.to_addresses)

    def build_message(self, target: str, title: str, body: str) -> EmailMessage:
        message = EmailMessage()
        message["Subject"] = title
        message["From"] = self._config.from_address
        message["To"] = ", ".join(self._recipients(target))
        message.set_content(body)
        return message

    def send(
        self,
        target: str,
        severity: Severity,
        title: str,
        body: str,
        metadata: dict[str, Any],
    ) -> None:
        if not self._config.smtp_host:
            raise NotificationError(self.name, target=target, reason="SMTP host not configured")
        recipients = self._recipients(target)
        if not recipients:
            raise NotificationError(self.name, target=target, reason="no recipients")

        message = self.build_message(target, title, body)
        try:
            with self._smtp_factory(self._config.smtp_host, self._config.smtp_port, timeout=self._timeout) as smtp:
                if self._config.use_tls:
                    smtp.starttls()
                if self._config.username:
                    smtp.login(self._config.username, self._config.password or "")
                smtp.send_message(message)
        except (smtplib.SMTPException, OSError) as e:
            raise NotificationError(self.name, target=target, reason=str(e), cause=e) from e


class TopicChannel(NotificationChannel):
    """Publishes a JSON message to an HTTP pub/sub topic endpoint."""

    name = ChannelType.TOPIC.value

    def __init__(
        self,
        topic_url: str,
        timeout_seconds: int = 10,
        session: requests.Session | None = None,
    ) -> None:
        self._topic_url = topic_url
        self._timeout = timeout_seconds
        self._session = session or requests.Session()

    def send(
        self,
        target: str,
        severity: Severity,
        title: str,
        body: str,
        metadata: dict[str, Any],
    ) -> None:
        message = TopicMessage(
            topic=target or "incidents",
            subject=title,
            severity=severity,
            message=body,
            metadata=metadata,
        )
        try:
            response = self._session.post(
                self._topic_url,
                json=message.model_dump(mode="json"),
                timeout=self._timeout,
            )
            response.raise_for_status()
        except requests.RequestException as e:
            raise NotificationError(self.name, target=target, reason=str(e), cause=e) from e
