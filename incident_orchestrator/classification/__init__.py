"""
Classification module - incident triage.
"""

from incident_orchestrator.classification.classifier import (
    IncidentClassifier,
    assess_impact,
    compute_priority,
    infer_root_cause,
)

__all__ = [
    "IncidentClassifier",
    "infer_root_cause",
    "assess_impact",
    "compute_priority",
]
