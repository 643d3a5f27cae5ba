"""
Domain records for the incident response pipeline.

Records that are write-once after creation (samples, classifications,
plans and their steps) are frozen dataclasses. Incidents, executions and
alert groups are mutable, but each has a single writer: the control loop
for incidents and executions, the aggregator for alert groups.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any

from incident_orchestrator.core.constants import (
    AlertGroupStatus,
    DetectionMethod,
    ErrorCategory,
    ExecutionStatus,
    IncidentStatus,
    IncidentType,
    OperationState,
    RollbackStatus,
    Severity,
    StepStatus,
    ValidationType,
)
from incident_orchestrator.core.utils import (
    generate_alert_id,
    generate_id,
    utc_now,
)

# =============================================================================
# Metrics
# =============================================================================


@dataclass(frozen=True)
class TimeRange:
    """Closed time interval used for metric queries."""

    start: datetime
    end: datetime

    @classmethod
    def last(cls, minutes: float, now: datetime | None = None) -> TimeRange:
        """Build the range covering the trailing ``minutes`` before ``now``."""
        end = now or utc_now()
        return cls(start=end - timedelta(minutes=minutes), end=end)

    def contains(self, timestamp: datetime) -> bool:
        return self.start <= timestamp <= self.end

    @property
    def duration(self) -> timedelta:
        return self.end - self.start


@dataclass(frozen=True)
class MetricSample:
    """A single normalized time-series point."""

    source: str
    namespace: str
    name: str
    value: float
    unit: str
    timestamp: datetime
    dimensions: dict[str, str] = field(default_factory=dict)

    def stream_key(self) -> str:
        """Identity of the stream this sample belongs to."""
        return stream_key(self.namespace, self.name, self.dimensions)


def stream_key(namespace: str, name: str, dimensions: dict[str, str] | None = None) -> str:
    """Build a stable key for a metric stream."""
    dims = ",".join(f"{k}={v}" for k, v in sorted((dimensions or {}).items()))
    return f"{namespace}:{name}:{dims}"


# =============================================================================
# Incidents
# =============================================================================


@dataclass(frozen=True)
class DetectionTrigger:
    """The metric observation that caused an incident to be raised."""

    rule_id: str
    namespace: str
    metric_name: str
    method: DetectionMethod
    observed_value: float
    dimensions: dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "rule_id": self.rule_id,
            "namespace": self.namespace,
            "metric_name": self.metric_name,
            "method": self.method.value,
            "observed_value": self.observed_value,
            "dimensions": dict(self.dimensions),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> DetectionTrigger:
        return cls(
            rule_id=data["rule_id"],
            namespace=data["namespace"],
            metric_name=data["metric_name"],
            method=DetectionMethod(data["method"]),
            observed_value=float(data["observed_value"]),
            dimensions=dict(data.get("dimensions") or {}),
        )


@dataclass
class Incident:
    """A detected operational anomaly."""

    type: IncidentType
    severity: Severity
    service: str
    description: str
    metrics: dict[str, float] = field(default_factory=dict)
    affected_resources: list[str] = field(default_factory=list)
    status: IncidentStatus = IncidentStatus.DETECTED
    trigger: DetectionTrigger | None = None
    id: str = field(default_factory=generate_id)
    timestamp: datetime = field(default_factory=utc_now)
    resolved_at: datetime | None = None
    occurrence_count: int = 1

    @property
    def pair(self) -> tuple[str, IncidentType]:
        """The (service, type) pair used for coalescing and mutual exclusion."""
        return (self.service, self.type)

    @property
    def is_open(self) -> bool:
        return self.status != IncidentStatus.RESOLVED


@dataclass(frozen=True)
class Classification:
    """Enriched triage metadata for an incident."""

    incident_id: str
    category: str
    root_cause: str
    impact_level: Severity
    required_actions: tuple[str, ...]
    priority: int
    estimated_resolution_time: timedelta
    id: str = field(default_factory=generate_id)
    created_at: datetime = field(default_factory=utc_now)


@dataclass(frozen=True)
class HistoricalIncident:
    """A prior incident as seen by the classifier's similarity heuristic."""

    incident_id: str
    affected_resources: tuple[str, ...]
    root_cause: str | None
    resolution_time: timedelta | None


# =============================================================================
# Recovery Plans
# =============================================================================


@dataclass(frozen=True)
class StepValidation:
    """How to verify a step.

    ``metric`` validations check the incident's trigger metric (or
    ``metric_name``) against ``operator``/``threshold``; with no operator they
    only require the metric to be reporting. ``log`` validations inspect the
    platform operation status and logs. ``manual`` validations wait for an
    operator sign-off.
    """

    type: ValidationType
    criteria: str
    metric_name: str | None = None
    operator: str | None = None
    threshold: float | None = None


@dataclass(frozen=True)
class RecoveryStep:
    """One idempotent remediation step of a plan."""

    order: int
    action: str
    description: str
    estimated_duration: timedelta
    validation: StepValidation
    required_resources: tuple[str, ...] = ()
    rollback_procedure: str | None = None
    parameters: dict[str, Any] = field(default_factory=dict)
    rollback_parameters: dict[str, Any] = field(default_factory=dict)
    destructive: bool = True


@dataclass(frozen=True)
class RecoveryPlan:
    """Ordered, immutable remediation procedure for a classified incident."""

    incident_id: str
    steps: tuple[RecoveryStep, ...]
    estimated_total_duration: timedelta
    required_approvals: tuple[str, ...] = ()
    risks: tuple[str, ...] = ()
    authored_by: str = "planner"
    id: str = field(default_factory=generate_id)
    created_at: datetime = field(default_factory=utc_now)

    @property
    def first_destructive_order(self) -> int | None:
        for step in self.steps:
            if step.destructive:
                return step.order
        return None


# =============================================================================
# Recovery Executions
# =============================================================================


@dataclass(frozen=True)
class OperationStatus:
    """Status of an asynchronous runtime platform operation."""

    op_id: str
    state: OperationState
    message: str = ""
    logs: tuple[str, ...] = ()


@dataclass
class StepExecutionRecord:
    """Per-execution state of a single plan step."""

    order: int
    action: str
    status: StepStatus = StepStatus.PENDING
    started_at: datetime | None = None
    finished_at: datetime | None = None
    operation_id: str | None = None
    error: str | None = None
    error_category: ErrorCategory | None = None
    rollback_status: RollbackStatus | None = None
    rollback_error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "order": self.order,
            "action": self.action,
            "status": self.status.value,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "operation_id": self.operation_id,
            "error": self.error,
            "error_category": self.error_category.value if self.error_category else None,
            "rollback_status": self.rollback_status.value if self.rollback_status else None,
            "rollback_error": self.rollback_error,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> StepExecutionRecord:
        return cls(
            order=int(data["order"]),
            action=data["action"],
            status=StepStatus(data["status"]),
            started_at=datetime.fromisoformat(data["started_at"]) if data.get("started_at") else None,
            finished_at=datetime.fromisoformat(data["finished_at"]) if data.get("finished_at") else None,
            operation_id=data.get("operation_id"),
            error=data.get("error"),
            error_category=ErrorCategory(data["error_category"]) if data.get("error_category") else None,
            rollback_status=RollbackStatus(data["rollback_status"]) if data.get("rollback_status") else None,
            rollback_error=data.get("rollback_error"),
        )


@dataclass
class RecoveryExecution:
    """One concrete run of a recovery plan."""

    plan_id: str
    incident_id: str
    steps: list[StepExecutionRecord] = field(default_factory=list)
    status: ExecutionStatus = ExecutionStatus.PENDING
    id: str = field(default_factory=generate_id)
    start_time: datetime = field(default_factory=utc_now)
    end_time: datetime | None = None
    metrics: dict[str, Any] = field(default_factory=dict)
    postcheck_passed: bool | None = None
    cancelled: bool = False

    @classmethod
    def for_plan(cls, plan: RecoveryPlan) -> RecoveryExecution:
        return cls(
            plan_id=plan.id,
            incident_id=plan.incident_id,
            steps=[StepExecutionRecord(order=s.order, action=s.action) for s in plan.steps],
        )

    def step_record(self, order: int) -> StepExecutionRecord:
        for record in self.steps:
            if record.order == order:
                return record
        raise KeyError(order)

    def step_status(self, order: int) -> StepStatus:
        return self.step_record(order).status

    @property
    def completed_steps(self) -> list[StepExecutionRecord]:
        return [s for s in self.steps if s.status == StepStatus.COMPLETED]

    @property
    def failed_step(self) -> StepExecutionRecord | None:
        for record in self.steps:
            if record.status == StepStatus.FAILED:
                return record
        return None


# =============================================================================
# Alerting
# =============================================================================


@dataclass(frozen=True)
class Alert:
    """A notification-worthy event before aggregation."""

    type: str
    source: str
    severity: Severity
    title: str
    message: str
    metadata: dict[str, Any] = field(default_factory=dict)
    id: str = field(default_factory=generate_alert_id)
    timestamp: datetime = field(default_factory=utc_now)


@dataclass
class AlertGroup:
    """Deduplicated cluster of alerts sharing (type, source)."""

    type: str
    source: str
    first_occurrence: datetime
    last_occurrence: datetime
    count: int = 1
    status: AlertGroupStatus = AlertGroupStatus.ACTIVE
    alert_ids: list[str] = field(default_factory=list)
    max_severity: Severity = Severity.LOW
    resolved_at: datetime | None = None
    id: str = field(default_factory=generate_id)

    @property
    def key(self) -> tuple[str, str]:
        return (self.type, self.source)

    @property
    def is_active(self) -> bool:
        return self.status == AlertGroupStatus.ACTIVE


@dataclass(frozen=True)
class DeliveryResult:
    """Outcome of one channel delivery attempt."""

    channel: str
    target: str
    success: bool
    error: str | None = None
