"""
Execution module - runs recovery plans.

This module contains:
    - approvals: Plan approvals, manual sign-offs and cancellation tokens
    - actions: Step runner (platform calls, polling, validation, rollback)
    - executor: Ordered execution with post-check and rollback
"""

from incident_orchestrator.execution.actions import Deadline, StepRunner
from incident_orchestrator.execution.approvals import (
    ApprovalRegistry,
    CancellationToken,
    Decision,
)
from incident_orchestrator.execution.executor import RecoveryExecutor

__all__ = [
    "RecoveryExecutor",
    "StepRunner",
    "Deadline",
    "ApprovalRegistry",
    "CancellationToken",
    "Decision",
]
