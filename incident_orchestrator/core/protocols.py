"""
Protocol definitions and abstract base classes for the orchestrator.

The metrics source, the runtime platform and the notifiers are external
capabilities. This module defines the interfaces the pipeline depends on so
concrete backends can be swapped and faked in tests.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from incident_orchestrator.core.constants import IncidentType, Severity
    from incident_orchestrator.core.models import (
        HistoricalIncident,
        MetricSample,
        OperationStatus,
        TimeRange,
    )

# =============================================================================
# Metrics Interface
# =============================================================================


class MetricsProvider(ABC):
    """Abstract base class for a time-series metrics source.

    Implementations should handle:
    - Connection management
    - Retry logic for transport errors
    - Circuit breaker patterns
    """

    name: str = "provider"

    @abstractmethod
    def query(
        self,
        namespace: str,
        metric_names: list[str],
        dimensions: dict[str, str],
        time_range: TimeRange,
    ) -> list[MetricSample]:
        """Fetch raw samples for the given metrics.

        Args:
            namespace: Metric namespace (e.g. ``"checkout"``).
            metric_names: Metric names to fetch.
            dimensions: Label filters applied to every metric.
            time_range: Interval to fetch.

        Returns:
            Samples in any order. Values need not be normalized.

        Raises:
            TransientInfraError: If the backend cannot be reached.
        """
        ...

    def health_check(self) -> bool:
        """Check if the provider is healthy."""
        return True


# =============================================================================
# Runtime Platform Interface
# =============================================================================


class RuntimePlatform(ABC):
    """Compute scheduler that recovery steps act upon.

    Every mutating call is asynchronous: it returns an operation id whose
    progress is read back with ``get_status``. Calls are expected to be
    idempotent at the resource level ("ensure replica count = N").
    """

    @abstractmethod
    def ensure_service_running(self, service: str) -> str:
        """Ensure every task of ``service`` is running. Returns an op id."""
        ...

    @abstractmethod
    def scale_service(self, service: str, desired_count: int) -> str:
        """Ensure ``service`` runs ``desired_count`` replicas. Returns an op id."""
        ...

    @abstractmethod
    def update_traffic_routing(self, service: str, target: str) -> str:
        """Ensure traffic for ``service`` goes to ``target``. Returns an op id."""
        ...

    @abstractmethod
    def restore_from_backup(self, resource_ref: str) -> str:
        """Restore ``resource_ref`` from its latest backup. Returns an op id."""
        ...

    @abstractmethod
    def get_status(self, op_id: str) -> OperationStatus:
        """Get the current status of an operation.

        Raises:
            TransientInfraError: If the platform cannot be reached.
        """
        ...


# =============================================================================
# Notification Interface
# =============================================================================


class NotificationChannel(ABC):
    """A destination for human-facing notifications."""

    name: str = "channel"

    @abstractmethod
    def send(
        self,
        target: str,
        severity: Severity,
        title: str,
        body: str,
        metadata: dict[str, Any],
    ) -> None:
        """Deliver one notification.

        Raises:
            NotificationError: If delivery fails.
        """
        ...


# =============================================================================
# History Interface
# =============================================================================


class IncidentHistory(ABC):
    """Read access to past incidents, used for similarity heuristics."""

    @abstractmethod
    def recent_incidents(
        self,
        service: str,
        incident_type: IncidentType,
        limit: int,
        exclude_id: str | None = None,
    ) -> list[HistoricalIncident]:
        """Most recent incidents of the same type and service, newest first."""
        ...
