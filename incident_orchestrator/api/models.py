"""
Pydantic data models for orchestrator payloads and status snapshots.

This module defines stable, versioned data contracts for:
- Messages published to the alert topic
- Incident, execution and alert group snapshots
- The system status report returned by the control loop

Snapshots are read-only views built from the domain dataclasses; they are
what leaves the process (topic payloads, CLI output).
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field, field_validator

from incident_orchestrator.core.constants import (
    AlertGroupStatus,
    ExecutionStatus,
    IncidentStatus,
    IncidentType,
    Severity,
    StepStatus,
)
from incident_orchestrator.core.models import (
    AlertGroup,
    Incident,
    RecoveryExecution,
)
from incident_orchestrator.core.utils import utc_now

# =============================================================================
# Schema Version - Increment when breaking changes are made
# =============================================================================

API_SCHEMA_VERSION = "1.0.0"


# =============================================================================
# Topic Payloads
# =============================================================================


class TopicMessage(BaseModel):
    """Message published to the pub/sub alert topic."""

    topic: str = Field(..., description="Destination topic name")
    subject: str = Field(..., description="Formatted alert title")
    severity: Severity = Field(..., description="Alert severity")
    message: str = Field(..., description="Plain-text alert body")
    metadata: dict[str, Any] = Field(default_factory=dict, description="Alert metadata")
    published_at: datetime = Field(default_factory=utc_now, description="Publish time (UTC)")
    schema_version: str = Field(API_SCHEMA_VERSION, description="Payload schema version")

    @field_validator("topic")
    @classmethod
    def validate_topic(cls, v: str) -> str:
        """Reject blank topic names."""
        if not v or not v.strip():
            raise ValueError("topic must not be empty")
        return v.strip()

    class Config:
        extra = "allow"


# =============================================================================
# Snapshots
# =============================================================================


class IncidentSnapshot(BaseModel):
    """Read-only view of an incident."""

    id: str
    type: IncidentType
    severity: Severity
    status: IncidentStatus
    service: str
    description: str
    detected_at: datetime
    resolved_at: datetime | None = None
    occurrence_count: int = Field(1, ge=1)
    affected_resources: list[str] = Field(default_factory=list)
    metrics: dict[str, float] = Field(default_factory=dict)

    @classmethod
    def from_incident(cls, incident: Incident) -> IncidentSnapshot:
        return cls(
            id=incident.id,
            type=incident.type,
            severity=incident.severity,
            status=incident.status,
            service=incident.service,
            description=incident.description,
            detected_at=incident.timestamp,
            resolved_at=incident.resolved_at,
            occurrence_count=incident.occurrence_count,
            affected_resources=list(incident.affected_resources),
            metrics=dict(incident.metrics),
        )


class StepSnapshot(BaseModel):
    """Per-step execution state."""

    order: int
    action: str
    status: StepStatus
    operation_id: str | None = None
    error: str | None = None
    rollback_status: str | None = None


class ExecutionSnapshot(BaseModel):
    """Read-only view of a recovery execution."""

    id: str
    plan_id: str
    incident_id: str
    status: ExecutionStatus
    start_time: datetime
    end_time: datetime | None = None
    postcheck_passed: bool | None = None
    cancelled: bool = False
    steps: list[StepSnapshot] = Field(default_factory=list)
    metrics: dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def from_execution(cls, execution: RecoveryExecution) -> ExecutionSnapshot:
        return cls(
            id=execution.id,
            plan_id=execution.plan_id,
            incident_id=execution.incident_id,
            status=execution.status,
            start_time=execution.start_time,
            end_time=execution.end_time,
            postcheck_passed=execution.postcheck_passed,
            cancelled=execution.cancelled,
            steps=[
                StepSnapshot(
                    order=s.order,
                    action=s.action,
                    status=s.status,
                    operation_id=s.operation_id,
                    error=s.error,
                    rollback_status=s.rollback_status.value if s.rollback_status else None,
                )
                for s in execution.steps
            ],
            metrics=dict(execution.metrics),
        )


class AlertGroupSnapshot(BaseModel):
    """Read-only view of an alert group."""

    id: str
    type: str
    source: str
    status: AlertGroupStatus
    count: int = Field(..., ge=1)
    max_severity: Severity
    first_occurrence: datetime
    last_occurrence: datetime
    resolved_at: datetime | None = None

    @classmethod
    def from_group(cls, group: AlertGroup) -> AlertGroupSnapshot:
        return cls(
            id=group.id,
            type=group.type,
            source=group.source,
            status=group.status,
            count=group.count,
            max_severity=group.max_severity,
            first_occurrence=group.first_occurrence,
            last_occurrence=group.last_occurrence,
            resolved_at=group.resolved_at,
        )


# =============================================================================
# System Status
# =============================================================================


class SystemStatus(BaseModel):
    """Overall orchestrator status."""

    running: bool = Field(..., description="Whether the background scheduler is running")
    interval_seconds: int = Field(..., ge=1, description="Tick interval")
    last_tick: datetime | None = Field(None, description="Start time of the last tick")
    ticks_completed: int = Field(0, ge=0)
    open_incidents: list[IncidentSnapshot] = Field(default_factory=list)
    active_executions: list[ExecutionSnapshot] = Field(default_factory=list)
    active_alert_groups: list[AlertGroupSnapshot] = Field(default_factory=list)
    pending_approvals: list[dict[str, Any]] = Field(default_factory=list)
    pending_sign_offs: list[dict[str, Any]] = Field(default_factory=list)
    metrics_providers: dict[str, bool] = Field(default_factory=dict, description="Provider health")
    schema_version: str = API_SCHEMA_VERSION
