"""
Tests for pydantic payload and snapshot models.
"""

from __future__ import annotations

from datetime import timedelta

import pytest
from pydantic import ValidationError

from incident_orchestrator.api.models import (
    API_SCHEMA_VERSION,
    AlertGroupSnapshot,
    ExecutionSnapshot,
    IncidentSnapshot,
    SystemStatus,
    TopicMessage,
)
from incident_orchestrator.core.constants import (
    AlertGroupStatus,
    ExecutionStatus,
    RollbackStatus,
    Severity,
    StepStatus,
)
from incident_orchestrator.core.models import AlertGroup, RecoveryExecution
from incident_orchestrator.planning import RecoveryPlanner


class TestTopicMessage:
    """Tests for TopicMessage."""

    def test_topic_stripped(self):
        message = TopicMessage(topic="  incidents ", subject="s", severity=Severity.HIGH, message="m")
        assert message.topic == "incidents"
        assert message.schema_version == API_SCHEMA_VERSION

    @pytest.mark.parametrize("topic", ["", "   "])
    def test_blank_topic_rejected(self, topic):
        with pytest.raises(ValidationError):
            TopicMessage(topic=topic, subject="s", severity=Severity.HIGH, message="m")

    def test_severity_from_string(self):
        message = TopicMessage(topic="t", subject="s", severity="critical", message="m")
        assert message.severity == Severity.CRITICAL
        assert message.model_dump(mode="json")["severity"] == "critical"


class TestSnapshots:
    """Tests for snapshot construction from domain objects."""

    def test_incident_snapshot(self, make_incident):
        incident = make_incident(severity=Severity.HIGH, occurrence_count=2)
        snapshot = IncidentSnapshot.from_incident(incident)

        assert snapshot.id == incident.id
        assert snapshot.detected_at == incident.timestamp
        assert snapshot.occurrence_count == 2
        assert snapshot.metrics == {"error_rate": 0.2}
        assert snapshot.model_dump(mode="json")["type"] == "high_error_rate"

    def test_execution_snapshot(self, make_incident, test_config):
        plan = RecoveryPlanner(test_config.planning).plan(make_incident())
        execution = RecoveryExecution.for_plan(plan)
        execution.status = ExecutionStatus.ROLLED_BACK
        record = execution.step_record(1)
        record.status = StepStatus.COMPLETED
        record.rollback_status = RollbackStatus.SUCCEEDED

        snapshot = ExecutionSnapshot.from_execution(execution)

        assert snapshot.status == ExecutionStatus.ROLLED_BACK
        assert snapshot.steps[0].action == "scale_out"
        assert snapshot.steps[0].rollback_status == "succeeded"

    def test_alert_group_snapshot(self, now):
        group = AlertGroup(
            type="service_down", source="search",
            first_occurrence=now - timedelta(minutes=3), last_occurrence=now,
            count=4, max_severity=Severity.CRITICAL,
        )
        snapshot = AlertGroupSnapshot.from_group(group)
        assert snapshot.status == AlertGroupStatus.ACTIVE
        assert snapshot.count == 4

    def test_system_status_defaults(self):
        status = SystemStatus(running=False, interval_seconds=60)
        assert status.open_incidents == []
        assert status.ticks_completed == 0
        assert status.schema_version == API_SCHEMA_VERSION

    def test_system_status_rejects_zero_interval(self):
        with pytest.raises(ValidationError):
            SystemStatus(running=True, interval_seconds=0)
