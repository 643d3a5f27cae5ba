"""
Planning module - step catalog and recovery planner.
"""

from incident_orchestrator.planning.catalog import CATALOG, actions_for, build_step
from incident_orchestrator.planning.planner import RecoveryPlanner

__all__ = [
    "CATALOG",
    "actions_for",
    "build_step",
    "RecoveryPlanner",
]
