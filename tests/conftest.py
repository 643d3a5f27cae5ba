"""
Pytest configuration and shared fixtures.

This module provides reusable fixtures and in-memory fakes for the metrics
source, the runtime platform and the notification channels.
"""

from __future__ import annotations

import threading
import time
from collections.abc import Callable, Generator
from datetime import datetime
from typing import Any

import pytest

from incident_orchestrator.core.config import (
    AlertingConfig,
    ExecutionConfig,
    MetricsConfig,
    OrchestratorConfig,
    PlanningConfig,
    reset_config,
    set_config,
)
from incident_orchestrator.core.constants import (
    DetectionMethod,
    IncidentType,
    OperationState,
    Severity,
)
from incident_orchestrator.core.exceptions import MetricsUnavailableError, NotificationError
from incident_orchestrator.core.models import (
    DetectionTrigger,
    Incident,
    MetricSample,
    OperationStatus,
    TimeRange,
)
from incident_orchestrator.core.protocols import (
    MetricsProvider,
    NotificationChannel,
    RuntimePlatform,
)
from incident_orchestrator.core.utils import generate_operation_id, utc_now
from incident_orchestrator.metrics.gateway import MetricsGateway
from incident_orchestrator.storage.store import StateStore

# Every step gets a 0.5s deadline (duration 0.5s x multiplier 1.0)
FAST_STEP_SECONDS = 0.5

# =============================================================================
# Fakes
# =============================================================================


class FakeMetricsProvider(MetricsProvider):
    """In-memory metrics source."""

    def __init__(self, name: str = "fake") -> None:
        self.name = name
        self.samples: list[MetricSample] = []
        self.fail = False
        self.delay = 0.0
        self.healthy = True
        self.queries = 0

    def add(
        self,
        namespace: str,
        metric_name: str,
        value: Any,
        timestamp: datetime,
        dimensions: dict[str, str] | None = None,
        unit: str = "",
    ) -> None:
        self.samples.append(
            MetricSample(
                source=self.name,
                namespace=namespace,
                name=metric_name,
                value=value,
                unit=unit,
                timestamp=timestamp,
                dimensions=dict(dimensions or {}),
            )
        )

    def query(
        self,
        namespace: str,
        metric_names: list[str],
        dimensions: dict[str, str],
        time_range: TimeRange,
    ) -> list[MetricSample]:
        self.queries += 1
        if self.delay:
            time.sleep(self.delay)
        if self.fail:
            raise MetricsUnavailableError(namespace, reason=f"{self.name} outage")
        return [
            s for s in self.samples
            if s.namespace == namespace
            and s.name in metric_names
            and time_range.contains(s.timestamp)
            and all(s.dimensions.get(k) == v for k, v in dimensions.items())
        ]

    def health_check(self) -> bool:
        return self.healthy


class FakePlatform(RuntimePlatform):
    """Idempotent in-memory runtime platform.

    ``failing`` methods produce operations that end FAILED, ``hanging``
    methods produce operations that never leave RUNNING, and ``errors``
    holds exceptions raised (one per call) before an operation is created.
    """

    def __init__(self) -> None:
        self.replicas: dict[str, int] = {}
        self.routing: dict[str, str] = {}
        self.running: set[str] = set()
        self.restored: list[str] = []
        self.calls: list[tuple[str, tuple]] = []
        self.failing: set[str] = set()
        self.hanging: set[str] = set()
        self.errors: dict[str, list[Exception]] = {}
        self.op_logs: dict[str, tuple[str, ...]] = {}
        self.operations: dict[str, OperationStatus] = {}
        self._lock = threading.Lock()

    def _operation(self, method: str, args: tuple, apply: Callable[[], None]) -> str:
        with self._lock:
            self.calls.append((method, args))
            pending_errors = self.errors.get(method)
            if pending_errors:
                raise pending_errors.pop(0)
            op_id = generate_operation_id(method)
            if method in self.failing:
                status = OperationStatus(op_id, OperationState.FAILED, message=f"{method} rejected")
            elif method in self.hanging:
                status = OperationStatus(op_id, OperationState.RUNNING)
            else:
                apply()
                status = OperationStatus(op_id, OperationState.SUCCEEDED, logs=self.op_logs.get(method, ()))
            self.operations[op_id] = status
            return op_id

    def call_count(self, method: str) -> int:
        with self._lock:
            return sum(1 for name, _ in self.calls if name == method)

    def ensure_service_running(self, service: str) -> str:
        return self._operation("ensure_service_running", (service,), lambda: self.running.add(service))

    def scale_service(self, service: str, desired_count: int) -> str:
        return self._operation(
            "scale_service", (service, desired_count),
            lambda: self.replicas.__setitem__(service, desired_count),
        )

    def update_traffic_routing(self, service: str, target: str) -> str:
        return self._operation(
            "update_traffic_routing", (service, target),
            lambda: self.routing.__setitem__(service, target),
        )

    def restore_from_backup(self, resource_ref: str) -> str:
        return self._operation("restore_from_backup", (resource_ref,), lambda: self.restored.append(resource_ref))

    def get_status(self, op_id: str) -> OperationStatus:
        with self._lock:
            return self.operations[op_id]


class FakeChannel(NotificationChannel):
    """Records every notification; raises when ``fail`` is set."""

    def __init__(self, name: str = "fake", fail: bool = False) -> None:
        self.name = name
        self.fail = fail
        self.sent: list[dict[str, Any]] = []

    def send(
        self,
        target: str,
        severity: Severity,
        title: str,
        body: str,
        metadata: dict[str, Any],
    ) -> None:
        if self.fail:
            raise NotificationError(self.name, target=target, reason="channel down")
        self.sent.append(
            {"target": target, "severity": severity, "title": title, "body": body, "metadata": dict(metadata)}
        )


# =============================================================================
# Configuration Fixtures
# =============================================================================


@pytest.fixture
def test_config() -> Generator[OrchestratorConfig, None, None]:
    """Provide a configuration with no retry delays and short steps."""
    config = OrchestratorConfig(
        metrics=MetricsConfig(
            endpoints=("http://localhost:9090",),
            timeout_seconds=5,
            max_retries=1,
            retry_attempts=2,
            retry_base_delay=0.0,
            retry_max_delay=0.0,
        ),
        planning=PlanningConfig(
            step_durations={
                action: FAST_STEP_SECONDS
                for action in (
                    "health_check", "service_restart", "scale_out", "failover_traffic",
                    "isolate_traffic", "restore_traffic", "restore_from_backup", "manual_intervention",
                )
            },
        ),
        execution=ExecutionConfig(
            timeout_multiplier=1.0,
            poll_interval_seconds=0.01,
            platform_retry_attempts=3,
            platform_retry_base_delay=0.0,
            platform_retry_max_delay=0.0,
            postcheck_window_minutes=5.0,
        ),
        alerting=AlertingConfig(
            aggregation_window_minutes=15.0,
            severity_channels={
                "low": ["chat"],
                "medium": ["chat", "email"],
                "high": ["chat", "email"],
                "critical": ["chat", "email", "topic"],
            },
        ),
    )
    set_config(config)
    yield config
    reset_config()


@pytest.fixture
def temp_db_path(tmp_path) -> str:
    """Provide a temporary database path for the state store."""
    return str(tmp_path / "state.db")


@pytest.fixture
def store(temp_db_path, test_config) -> StateStore:
    return StateStore(temp_db_path)


# =============================================================================
# Fake Fixtures
# =============================================================================


@pytest.fixture
def provider() -> FakeMetricsProvider:
    return FakeMetricsProvider()


@pytest.fixture
def gateway(provider, test_config) -> MetricsGateway:
    return MetricsGateway([provider], test_config.metrics)


@pytest.fixture
def platform() -> FakePlatform:
    return FakePlatform()


@pytest.fixture
def channels() -> dict[str, FakeChannel]:
    return {"chat": FakeChannel("chat"), "email": FakeChannel("email"), "topic": FakeChannel("topic")}


# =============================================================================
# Data Fixtures
# =============================================================================


@pytest.fixture
def now() -> datetime:
    """A fixed reference time aligned to the minute."""
    return utc_now().replace(second=0, microsecond=0)


@pytest.fixture
def make_incident() -> Callable[..., Incident]:
    """Factory for incidents with a threshold trigger on ``error_rate``."""

    def _make(
        incident_type: IncidentType = IncidentType.HIGH_ERROR_RATE,
        severity: Severity = Severity.MEDIUM,
        service: str = "checkout",
        affected_resources: list[str] | None = None,
        rule_id: str = "rule-error-rate",
        timestamp: datetime | None = None,
        **kwargs: Any,
    ) -> Incident:
        return Incident(
            type=incident_type,
            severity=severity,
            service=service,
            description=f"{incident_type.value} on {service}",
            metrics={"error_rate": 0.2},
            affected_resources=list(affected_resources or [service]),
            trigger=DetectionTrigger(
                rule_id=rule_id,
                namespace=service,
                metric_name="error_rate",
                method=DetectionMethod.THRESHOLD,
                observed_value=0.2,
            ),
            timestamp=timestamp or utc_now(),
            **kwargs,
        )

    return _make