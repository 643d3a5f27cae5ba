"""
Incident classifier - enriches incidents with triage metadata.

Classification is deterministic given the incident and the history it is
compared against:

- ``category`` comes from the incident type
- ``root_cause`` is inferred from similar past incidents when enough of the
  cohort overlaps on affected resources
- ``impact_level`` follows severity, escalated for wide blast radius
- ``estimated_resolution_time`` is the mean of past resolution durations
"""

from __future__ import annotations

import logging
from collections import Counter
from datetime import timedelta

import numpy as np

from incident_orchestrator.core.config import ClassificationConfig, get_config
from incident_orchestrator.core.constants import (
    DEFAULT_RESOLUTION_MINUTES,
    INCIDENT_CATEGORIES,
    UNKNOWN_ROOT_CAUSE,
    Severity,
)
from incident_orchestrator.core.logging import EventType, get_logger, log_event
from incident_orchestrator.core.models import Classification, HistoricalIncident, Incident
from incident_orchestrator.core.protocols import IncidentHistory
from incident_orchestrator.planning.catalog import actions_for

logger = get_logger(__name__)


def infer_root_cause(
    incident: Incident,
    cohort: list[HistoricalIncident],
    overlap_ratio: float = 0.6,
) -> str:
    """Pick a root cause from similar past incidents.

    The cohort qualifies when at least ``overlap_ratio`` of it shares one or
    more affected resources with ``incident``. The majority known label
    among the overlapping incidents is then adopted.

    Args:
        incident: Incident being classified.
        cohort: Past incidents of the same type and service.
        overlap_ratio: Minimum share of the cohort that must overlap.

    Returns:
        The adopted label, or the unknown marker.
    """
    if not cohort:
        return UNKNOWN_ROOT_CAUSE

    resources = set(incident.affected_resources)
    overlapping = [h for h in cohort if resources & set(h.affected_resources)]
    if len(overlapping) / len(cohort) < overlap_ratio:
        return UNKNOWN_ROOT_CAUSE

    labels = Counter(
        h.root_cause for h in overlapping
        if h.root_cause and h.root_cause != UNKNOWN_ROOT_CAUSE
    )
    if not labels:
        return UNKNOWN_ROOT_CAUSE
    # most_common keeps first-seen order on ties, i.e. the most recent incident
    return labels.most_common(1)[0][0]


def assess_impact(severity: Severity, affected_count: int, escalation_threshold: int = 2) -> Severity:
    """Map severity to impact, one level higher for a wide blast radius."""
    if affected_count >= escalation_threshold:
        return severity.escalate()
    return severity


def compute_priority(severity: Severity, impact: Severity) -> int:
    """Triage priority: ``severity_weight * 10 + impact_weight``."""
    return severity.numeric_value * 10 + impact.numeric_value


class IncidentClassifier:
    """Assigns category, root cause, impact and priority to incidents.

    Example:
        >>> classifier = IncidentClassifier(store)
        >>> classification = classifier.classify(incident)
    """

    def __init__(
        self,
        history: IncidentHistory,
        config: ClassificationConfig | None = None,
    ) -> None:
        self._history = history
        self._config = config or get_config().classification

    def classify(self, incident: Incident) -> Classification:
        """Classify an incident against its recent history."""
        cohort = self._history.recent_incidents(
            incident.service,
            incident.type,
            limit=self._config.history_limit,
            exclude_id=incident.id,
        )

        root_cause = infer_root_cause(incident, cohort, self._config.root_cause_overlap_ratio)
        impact = assess_impact(
            incident.severity,
            len(incident.affected_resources),
            self._config.impact_escalation_resources,
        )

        classification = Classification(
            incident_id=incident.id,
            category=INCIDENT_CATEGORIES[incident.type],
            root_cause=root_cause,
            impact_level=impact,
            required_actions=tuple(a.value for a in actions_for(incident.type)),
            priority=compute_priority(incident.severity, impact),
            estimated_resolution_time=self._estimate_resolution(incident, cohort),
        )

        log_event(
            logger, logging.INFO, EventType.INCIDENT_CLASSIFIED, incident.service,
            f"Classified as {classification.category}",
            incident_id=incident.id,
            root_cause=root_cause,
            impact=impact.value,
            priority=classification.priority,
            cohort=len(cohort),
        )
        return classification

    @staticmethod
    def _estimate_resolution(incident: Incident, cohort: list[HistoricalIncident]) -> timedelta:
        durations = [
            h.resolution_time.total_seconds()
            for h in cohort
            if h.resolution_time is not None
        ]
        if durations:
            return timedelta(seconds=float(np.mean(durations)))
        return timedelta(minutes=DEFAULT_RESOLUTION_MINUTES[incident.type])
