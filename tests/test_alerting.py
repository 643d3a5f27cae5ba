"""
Tests for alert aggregation, routing, formatting and notification channels.
"""

from __future__ import annotations

import smtplib
from datetime import timedelta
from unittest.mock import MagicMock

import pytest
import requests

from conftest import FakeChannel
from incident_orchestrator.alerting import (
    SEVERITY_COLORS,
    AlertAggregator,
    AlertRouter,
    ChannelBinding,
    EmailChannel,
    SlackWebhookChannel,
    TopicChannel,
    build_slack_payload,
    format_alert_body,
    format_resolution,
    format_title,
)
from incident_orchestrator.core.config import EmailConfig
from incident_orchestrator.core.constants import AlertGroupStatus, Severity
from incident_orchestrator.core.exceptions import NotificationError
from incident_orchestrator.core.models import Alert

WINDOW = timedelta(minutes=15)


def make_alert(at, severity=Severity.MEDIUM, alert_type="high_error_rate", source="checkout", **metadata):
    return Alert(
        type=alert_type,
        source=source,
        severity=severity,
        title=f"{alert_type} on {source}",
        message="error_rate above threshold",
        metadata=metadata,
        timestamp=at,
    )


# =============================================================================
# Aggregator
# =============================================================================


class TestAlertAggregator:
    """Tests for AlertAggregator."""

    def test_alerts_join_one_group(self, now):
        """Test five alerts in ten minutes land in a single group."""
        aggregator = AlertAggregator(window=WINDOW)
        created_flags = []
        for minute in (0, 2.5, 5, 7.5, 10):
            _, created = aggregator.add(make_alert(now + timedelta(minutes=minute)))
            created_flags.append(created)

        assert created_flags == [True, False, False, False, False]
        groups = aggregator.get_groups()
        assert len(groups) == 1
        assert groups[0].count == 5
        assert len(groups[0].alert_ids) == 5
        assert groups[0].first_occurrence == now
        assert groups[0].last_occurrence == now + timedelta(minutes=10)

    def test_silent_group_resolved_by_sweep(self, now):
        aggregator = AlertAggregator(window=WINDOW)
        for minute in (0, 2.5, 5, 7.5, 10):
            aggregator.add(make_alert(now + timedelta(minutes=minute)))

        sweep_time = now + timedelta(minutes=30)
        resolved = aggregator.aggregate(now=sweep_time)

        assert len(resolved) == 1
        assert resolved[0].status == AlertGroupStatus.RESOLVED
        assert resolved[0].resolved_at == sweep_time
        assert aggregator.active_group("high_error_rate", "checkout") is None
        assert aggregator.aggregate(now=sweep_time) == []

    def test_sweep_keeps_recent_groups(self, now):
        aggregator = AlertAggregator(window=WINDOW)
        aggregator.add(make_alert(now))
        assert aggregator.aggregate(now=now + timedelta(minutes=5)) == []

    def test_stale_group_resolved_on_add(self, now):
        """Test an alert arriving after a full silent window opens a new group."""
        aggregator = AlertAggregator(window=WINDOW)
        first, _ = aggregator.add(make_alert(now))
        second, created = aggregator.add(make_alert(now + timedelta(minutes=20)))

        assert created
        assert second.id != first.id
        resolved = aggregator.get_groups(AlertGroupStatus.RESOLVED)
        assert [g.id for g in resolved] == [first.id]
        assert resolved[0].resolved_at == now + WINDOW

    def test_group_resolved_on_add_reported_by_next_sweep(self, now):
        aggregator = AlertAggregator(window=WINDOW)
        first, _ = aggregator.add(make_alert(now))
        aggregator.add(make_alert(now + timedelta(minutes=20)))

        resolved = aggregator.aggregate(now=now + timedelta(minutes=21))

        assert [g.id for g in resolved] == [first.id]
        assert resolved[0].resolved_at == now + WINDOW
        assert aggregator.aggregate(now=now + timedelta(minutes=22)) == []

    def test_groups_keyed_by_type_and_source(self, now):
        aggregator = AlertAggregator(window=WINDOW)
        aggregator.add(make_alert(now))
        aggregator.add(make_alert(now, source="search"))
        aggregator.add(make_alert(now, alert_type="service_down"))
        assert len(aggregator.get_groups(AlertGroupStatus.ACTIVE)) == 3

    def test_max_severity_tracked(self, now):
        aggregator = AlertAggregator(window=WINDOW)
        aggregator.add(make_alert(now, severity=Severity.HIGH))
        group, _ = aggregator.add(make_alert(now + timedelta(minutes=1), severity=Severity.LOW))
        assert group.max_severity == Severity.HIGH

    def test_snapshots_are_isolated(self, now):
        aggregator = AlertAggregator(window=WINDOW)
        group, _ = aggregator.add(make_alert(now))
        group.alert_ids.append("tampered")
        assert aggregator.get_groups()[0].alert_ids == group.alert_ids[:1]

    def test_load_restores_active_groups(self, now):
        original = AlertAggregator(window=WINDOW)
        group, _ = original.add(make_alert(now))

        restored = AlertAggregator(window=WINDOW)
        restored.load(original.get_groups())
        joined, created = restored.add(make_alert(now + timedelta(minutes=1)))

        assert not created
        assert joined.id == group.id
        assert joined.count == 2

    def test_prune(self, now):
        aggregator = AlertAggregator(window=WINDOW)
        aggregator.add(make_alert(now))
        aggregator.aggregate(now=now + timedelta(minutes=20))

        assert aggregator.prune(timedelta(days=1), now=now + timedelta(hours=1)) == 0
        assert aggregator.prune(timedelta(days=1), now=now + timedelta(days=2)) == 1
        assert aggregator.get_groups() == []


# =============================================================================
# Router
# =============================================================================


class TestAlertRouter:
    """Tests for AlertRouter."""

    @pytest.fixture
    def router(self, channels, test_config) -> AlertRouter:
        bindings = {name: ChannelBinding(channel, target=f"{name}-target") for name, channel in channels.items()}
        return AlertRouter(AlertAggregator(window=WINDOW), bindings, test_config.alerting)

    def test_routes_by_severity(self, router, channels, now):
        results = router.route(make_alert(now, severity=Severity.MEDIUM))

        assert [(r.channel, r.success) for r in results] == [("chat", True), ("email", True)]
        assert len(channels["chat"].sent) == 1
        assert channels["topic"].sent == []
        sent = channels["email"].sent[0]
        assert sent["target"] == "email-target"
        assert sent["title"] == "[MEDIUM] high_error_rate on checkout"
        assert sent["metadata"]["occurrences"] == 1

    def test_duplicates_absorbed(self, router, channels, now):
        router.route(make_alert(now))
        results = router.route(make_alert(now + timedelta(minutes=1)))

        assert results == []
        assert len(channels["chat"].sent) == 1
        assert router.aggregator.active_group("high_error_rate", "checkout").count == 2

    def test_escalation_renotifies(self, router, channels, now):
        router.route(make_alert(now, severity=Severity.MEDIUM))
        router.route(make_alert(now + timedelta(minutes=1), severity=Severity.MEDIUM))
        results = router.route(make_alert(now + timedelta(minutes=2), severity=Severity.CRITICAL))

        assert [r.channel for r in results] == ["chat", "email", "topic"]
        assert "Occurrences: 3" in channels["topic"].sent[0]["body"]
        assert router.route(make_alert(now + timedelta(minutes=3), severity=Severity.HIGH)) == []

    def test_forced_alerts_always_delivered(self, router, channels, now):
        first = make_alert(now, Severity.HIGH, alert_type="approval_required", plan_id="plan-a")
        second = make_alert(
            now + timedelta(minutes=1), Severity.HIGH, alert_type="approval_required", plan_id="plan-b"
        )

        assert len(router.route(first, force=True)) == 2
        assert [r.channel for r in router.route(second, force=True)] == ["chat", "email"]

        assert [sent["metadata"]["plan_id"] for sent in channels["chat"].sent] == ["plan-a", "plan-b"]
        assert router.aggregator.active_group("approval_required", "checkout").count == 2

    def test_channel_failure_isolated(self, router, channels, now):
        channels["chat"].fail = True

        results = router.route(make_alert(now, severity=Severity.HIGH))

        assert [(r.channel, r.success) for r in results] == [("chat", False), ("email", True)]
        assert "channel down" in results[0].error
        assert len(channels["email"].sent) == 1

    def test_unbound_channel_skipped(self, test_config, now):
        chat = FakeChannel("chat")
        router = AlertRouter(AlertAggregator(window=WINDOW), {"chat": ChannelBinding(chat)}, test_config.alerting)

        results = router.route(make_alert(now, severity=Severity.CRITICAL))

        assert [r.channel for r in results] == ["chat"]
        assert len(chat.sent) == 1

    def test_notify_resolved(self, router, channels, now):
        router.route(make_alert(now, severity=Severity.HIGH))
        (group,) = router.aggregator.aggregate(now=now + timedelta(minutes=20))

        results = router.notify_resolved(group)

        assert [r.channel for r in results] == ["chat", "email"]
        assert channels["chat"].sent[-1]["title"] == "Resolved: high_error_rate on checkout"


# =============================================================================
# Formatting
# =============================================================================


class TestFormatter:
    """Tests for notification formatting."""

    def test_format_title(self):
        assert format_title(Severity.CRITICAL, "service_down on checkout") == "[CRITICAL] service_down on checkout"

    def test_alert_body(self, now):
        alert = make_alert(now, severity=Severity.HIGH, incident_id="inc-1", metrics={"error_rate": 0.2})
        body = format_alert_body(alert)

        assert body.startswith("Alert Details:")
        assert "Severity: HIGH" in body
        assert "Source: checkout" in body
        assert "Message: error_rate above threshold" in body
        assert "incident_id: inc-1" in body
        assert 'metrics: {"error_rate": 0.2}' in body
        assert "Occurrences" not in body

    def test_resolution(self, now):
        aggregator = AlertAggregator(window=WINDOW)
        aggregator.add(make_alert(now, severity=Severity.HIGH))
        aggregator.add(make_alert(now + timedelta(minutes=5)))
        (group,) = aggregator.aggregate(now=now + timedelta(minutes=25))

        title, body = format_resolution(group)

        assert title == "Resolved: high_error_rate on checkout"
        assert "Alerts: 2" in body
        assert "Highest severity: HIGH" in body
        assert "Active for: 25m" in body

    @pytest.mark.parametrize("severity", list(Severity))
    def test_slack_payload_color(self, severity):
        payload = build_slack_payload("", severity, "title", "body", {})
        assert payload["attachments"][0]["color"] == SEVERITY_COLORS[severity]
        assert "channel" not in payload

    def test_slack_payload_fields(self):
        payload = build_slack_payload("#ops", Severity.CRITICAL, "title", "body", {"b": 2, "a": "x" * 600})

        assert payload["channel"] == "#ops"
        fields = payload["attachments"][0]["fields"]
        assert [f["title"] for f in fields] == ["a", "b"]
        assert len(fields[0]["value"]) == 500
        assert fields[1]["value"] == "2"


# =============================================================================
# Channels
# =============================================================================


class TestSlackWebhookChannel:
    """Tests for SlackWebhookChannel."""

    def test_posts_payload(self):
        session = MagicMock()
        channel = SlackWebhookChannel("https://hooks.example/T0", timeout_seconds=3, session=session)

        channel.send("#incidents", Severity.HIGH, "[HIGH] title", "body", {"incident_id": "inc-1"})

        args, kwargs = session.post.call_args
        assert args == ("https://hooks.example/T0",)
        assert kwargs["timeout"] == 3
        assert kwargs["json"]["channel"] == "#incidents"
        assert kwargs["json"]["attachments"][0]["title"] == "[HIGH] title"

    def test_http_error(self):
        session = MagicMock()
        session.post.return_value.raise_for_status.side_effect = requests.HTTPError("500")
        channel = SlackWebhookChannel("https://hooks.example/T0", session=session)

        with pytest.raises(NotificationError, match="chat"):
            channel.send("", Severity.LOW, "t", "b", {})

    def test_connection_error(self):
        session = MagicMock()
        session.post.side_effect = requests.ConnectionError("refused")
        channel = SlackWebhookChannel("https://hooks.example/T0", session=session)

        with pytest.raises(NotificationError):
            channel.send("", Severity.LOW, "t", "b", {})


class TestEmailChannel:
    """Tests for EmailChannel with a mocked SMTP client."""

    @pytest.fixture
    def email_config(self) -> EmailConfig:
        return EmailConfig(
            smtp_host="smtp.example",
            smtp_port=2525,
            username="bot",
            password="secret",
            from_address="orchestrator@example.com",
            to_addresses=("oncall@example.com",),
        )

    def test_sends_message(self, email_config):
        factory = MagicMock()
        smtp = factory.return_value.__enter__.return_value
        channel = EmailChannel(email_config, smtp_factory=factory, timeout_seconds=4)

        channel.send("", Severity.HIGH, "[HIGH] title", "body text", {})

        factory.assert_called_once_with("smtp.example", 2525, timeout=4)
        smtp.starttls.assert_called_once()
        smtp.login.assert_called_once_with("bot", "secret")
        (message,), _ = smtp.send_message.call_args
        assert message["Subject"] == "[HIGH] title"
        assert message["To"] == "oncall@example.com"
        assert message["From"] == "orchestrator@example.com"

    def test_target_overrides_recipients(self, email_config):
        channel = EmailChannel(email_config, smtp_factory=MagicMock())
        message = channel.build_message("a@example.com, b@example.com", "t", "b")
        assert message["To"] == "a@example.com, b@example.com"

    def test_missing_host(self):
        channel = EmailChannel(EmailConfig(to_addresses=("oncall@example.com",)), smtp_factory=MagicMock())
        with pytest.raises(NotificationError, match="SMTP host not configured"):
            channel.send("", Severity.LOW, "t", "b", {})

    def test_no_recipients(self):
        channel = EmailChannel(EmailConfig(smtp_host="smtp.example"), smtp_factory=MagicMock())
        with pytest.raises(NotificationError, match="no recipients"):
            channel.send("", Severity.LOW, "t", "b", {})

    def test_smtp_failure(self, email_config):
        factory = MagicMock()
        factory.return_value.__enter__.return_value.send_message.side_effect = smtplib.SMTPException("boom")
        channel = EmailChannel(email_config, smtp_factory=factory)

        with pytest.raises(NotificationError, match="boom"):
            channel.send("", Severity.LOW, "t", "b", {})


class TestTopicChannel:
    """Tests for TopicChannel."""

    def test_publishes_topic_message(self):
        session = MagicMock()
        channel = TopicChannel("https://pubsub.example/publish", session=session)

        channel.send("", Severity.CRITICAL, "[CRITICAL] title", "body", {"incident_id": "inc-1"})

        _, kwargs = session.post.call_args
        payload = kwargs["json"]
        assert payload["topic"] == "incidents"
        assert payload["subject"] == "[CRITICAL] title"
        assert payload["severity"] == "critical"
        assert payload["metadata"] == {"incident_id": "inc-1"}
        assert "schema_version" in payload

    def test_failure(self):
        session = MagicMock()
        session.post.side_effect = requests.Timeout("slow")
        channel = TopicChannel("https://pubsub.example/publish", session=session)

        with pytest.raises(NotificationError, match="topic"):
            channel.send("alerts", Severity.CRITICAL, "t", "b", {})
