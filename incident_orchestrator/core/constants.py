"""
Enumerations and constants shared across the incident response orchestrator.

All enums subclass ``str`` so their values serialize directly into SQLite
columns, JSON payloads and log lines.
"""

from __future__ import annotations

from enum import Enum
from typing import Final

# =============================================================================
# Incident Enumerations
# =============================================================================


class IncidentType(str, Enum):
    """Categories of operational anomalies the detector can raise."""

    SERVICE_DOWN = "service_down"
    HIGH_ERROR_RATE = "high_error_rate"
    RESOURCE_EXHAUSTION = "resource_exhaustion"
    DATA_CORRUPTION = "data_corruption"
    NETWORK = "network"


class Severity(str, Enum):
    """Incident, impact and alert severity levels (ordered)."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @classmethod
    def from_string(cls, value: str | None) -> Severity:
        """Convert a string to a severity, defaulting to MEDIUM."""
        if not value:
            return cls.MEDIUM
        try:
            return cls(value.lower())
        except ValueError:
            return cls.MEDIUM

    @property
    def numeric_value(self) -> int:
        """Numeric weight of the severity (low=1 ... critical=4)."""
        return _SEVERITY_ORDER.index(self) + 1

    def escalate(self, levels: int = 1) -> Severity:
        """Return the severity ``levels`` steps higher, capped at CRITICAL."""
        idx = min(_SEVERITY_ORDER.index(self) + levels, len(_SEVERITY_ORDER) - 1)
        return _SEVERITY_ORDER[idx]

    @classmethod
    def max_severity(cls, severities: list[Severity]) -> Severity:
        """Return the highest severity from a list (LOW if empty)."""
        if not severities:
            return cls.LOW
        return max(severities, key=lambda s: s.numeric_value)

    def __lt__(self, other: object) -> bool:
        if not isinstance(other, Severity):
            return NotImplemented
        return self.numeric_value < other.numeric_value

    def __le__(self, other: object) -> bool:
        if not isinstance(other, Severity):
            return NotImplemented
        return self.numeric_value <= other.numeric_value

    def __gt__(self, other: object) -> bool:
        if not isinstance(other, Severity):
            return NotImplemented
        return self.numeric_value > other.numeric_value

    def __ge__(self, other: object) -> bool:
        if not isinstance(other, Severity):
            return NotImplemented
        return self.numeric_value >= other.numeric_value


_SEVERITY_ORDER: Final[list[Severity]] = [
    Severity.LOW,
    Severity.MEDIUM,
    Severity.HIGH,
    Severity.CRITICAL,
]


class IncidentStatus(str, Enum):
    """Incident lifecycle states (written only by the control loop)."""

    DETECTED = "detected"
    INVESTIGATING = "investigating"
    MITIGATING = "mitigating"
    RESOLVED = "resolved"


class DetectionMethod(str, Enum):
    """Which rule family raised an incident."""

    THRESHOLD = "threshold"
    BASELINE = "baseline"


# =============================================================================
# Recovery Enumerations
# =============================================================================


class ValidationType(str, Enum):
    """How a recovery step's outcome is verified."""

    METRIC = "metric"
    LOG = "log"
    MANUAL = "manual"


class StepStatus(str, Enum):
    """Per-step execution states."""

    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"


class ExecutionStatus(str, Enum):
    """Recovery execution states."""

    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    ROLLED_BACK = "rolled_back"

    @property
    def is_terminal(self) -> bool:
        return self in (
            ExecutionStatus.COMPLETED,
            ExecutionStatus.FAILED,
            ExecutionStatus.ROLLED_BACK,
        )


class RollbackStatus(str, Enum):
    """Outcome of rolling back a single completed step."""

    NOT_REQUIRED = "not_required"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class StepAction(str, Enum):
    """Catalog of remediation actions known to the planner and executor."""

    HEALTH_CHECK = "health_check"
    SERVICE_RESTART = "service_restart"
    SCALE_OUT = "scale_out"
    FAILOVER_TRAFFIC = "failover_traffic"
    ISOLATE_TRAFFIC = "isolate_traffic"
    RESTORE_TRAFFIC = "restore_traffic"
    RESTORE_FROM_BACKUP = "restore_from_backup"
    MANUAL_INTERVENTION = "manual_intervention"


class RollbackProcedure(str, Enum):
    """Compensating operations a step may declare."""

    SCALE_SERVICE = "scale_service"
    UPDATE_TRAFFIC_ROUTING = "update_traffic_routing"


class OperationState(str, Enum):
    """States reported by the runtime platform for an async operation."""

    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (OperationState.SUCCEEDED, OperationState.FAILED)


# =============================================================================
# Alerting Enumerations
# =============================================================================


class AlertGroupStatus(str, Enum):
    """Alert group lifecycle states (written only by the aggregator)."""

    ACTIVE = "active"
    RESOLVED = "resolved"


class AlertType(str, Enum):
    """Kinds of alerts emitted by the control loop."""

    INCIDENT_DETECTED = "incident_detected"
    RECOVERY_SUCCEEDED = "recovery_succeeded"
    RECOVERY_FAILED = "recovery_failed"
    APPROVAL_REQUIRED = "approval_required"


class ChannelType(str, Enum):
    """Notification channel families."""

    CHAT = "chat"
    EMAIL = "email"
    TOPIC = "topic"


class ErrorCategory(str, Enum):
    """Error taxonomy used to classify failures."""

    TRANSIENT_INFRA = "transient_infra"
    STEP_FAILURE = "step_failure"
    PLANNING = "planning"
    NOTIFICATION = "notification"
    INTERNAL = "internal"


# =============================================================================
# Constants
# =============================================================================

UNKNOWN_ROOT_CAUSE: Final[str] = "unknown — requires investigation"

THRESHOLD_OPERATORS: Final[frozenset[str]] = frozenset({"gt", "gte", "lt", "lte", "eq"})

INCIDENT_CATEGORIES: Final[dict[IncidentType, str]] = {
    IncidentType.SERVICE_DOWN: "availability",
    IncidentType.HIGH_ERROR_RATE: "reliability",
    IncidentType.RESOURCE_EXHAUSTION: "capacity",
    IncidentType.DATA_CORRUPTION: "data_integrity",
    IncidentType.NETWORK: "connectivity",
}

# Used when no resolved history exists for the (service, type) cohort
DEFAULT_RESOLUTION_MINUTES: Final[dict[IncidentType, float]] = {
    IncidentType.SERVICE_DOWN: 15.0,
    IncidentType.HIGH_ERROR_RATE: 30.0,
    IncidentType.RESOURCE_EXHAUSTION: 20.0,
    IncidentType.NETWORK: 30.0,
    IncidentType.DATA_CORRUPTION: 120.0,
}
