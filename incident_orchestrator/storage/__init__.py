"""
Storage module - SQLite persistence of orchestrator state.

This module contains:
    - store: Incidents, classifications, plans, executions and alert groups
"""

from incident_orchestrator.storage.store import SCHEMA_VERSION, StateStore

__all__ = [
    "StateStore",
    "SCHEMA_VERSION",
]
