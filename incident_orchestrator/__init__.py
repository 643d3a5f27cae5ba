"""
Incident Response Orchestrator.

Detects operational anomalies from service metrics, classifies them,
plans and executes remediation against the runtime platform, validates the
outcome with rollback on failure, and routes deduplicated alerts to humans.

Package Structure:
    - core: Configuration, constants, exceptions, logging, models, protocols, utils
    - metrics: Metrics gateway and Prometheus-compatible provider
    - detection: Monitoring rules, rolling baselines and the anomaly detector
    - classification: Incident classifier
    - planning: Step catalog and recovery planner
    - execution: Step runner, approvals and the recovery executor
    - alerting: Alert aggregation, routing and notification channels
    - storage: SQLite state store
    - api: Pydantic payloads and status snapshots
    - orchestrator: Control loop and factory

Example usage:
    from incident_orchestrator import get_config
    from incident_orchestrator.orchestrator import create_control_loop

    loop = create_control_loop(get_config(), platform=my_platform)
    loop.tick()
"""

__version__ = "1.0.0"

from incident_orchestrator.core.config import OrchestratorConfig, get_config
from incident_orchestrator.core.constants import (
    ExecutionStatus,
    IncidentStatus,
    IncidentType,
    Severity,
)
from incident_orchestrator.core.exceptions import OrchestratorError
from incident_orchestrator.core.logging import configure_logging, get_logger

__all__ = [
    # Version
    "__version__",
    # Config
    "OrchestratorConfig",
    "get_config",
    # Constants
    "IncidentType",
    "IncidentStatus",
    "ExecutionStatus",
    "Severity",
    # Errors
    "OrchestratorError",
    # Logging
    "configure_logging",
    "get_logger",
]
