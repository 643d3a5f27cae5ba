"""
Detection module - rules, baselines and the anomaly detector.

This module contains:
    - rules: Monitoring rules and the mutable rule registry
    - baseline: Rolling mean/stddev per metric stream
    - detector: Threshold and baseline detection with coalescing
"""

from incident_orchestrator.detection.baseline import BaselineStats, RollingBaseline
from incident_orchestrator.detection.detector import AnomalyDetector
from incident_orchestrator.detection.rules import (
    MonitoringRule,
    RuleRegistry,
    evaluate_threshold,
)

__all__ = [
    "AnomalyDetector",
    "RollingBaseline",
    "BaselineStats",
    "MonitoringRule",
    "RuleRegistry",
    "evaluate_threshold",
]
