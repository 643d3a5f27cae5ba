"""
API module - pydantic payloads and status snapshots.

This module contains:
    - models: Topic payloads, snapshots and the system status report
"""

from incident_orchestrator.api.models import (
    API_SCHEMA_VERSION,
    AlertGroupSnapshot,
    ExecutionSnapshot,
    IncidentSnapshot,
    StepSnapshot,
    SystemStatus,
    TopicMessage,
)

__all__ = [
    "API_SCHEMA_VERSION",
    "TopicMessage",
    "IncidentSnapshot",
    "ExecutionSnapshot",
    "StepSnapshot",
    "AlertGroupSnapshot",
    "SystemStatus",
]
