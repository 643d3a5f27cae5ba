"""
Recovery planner - turns a classified incident into an immutable plan.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping

from incident_orchestrator.core.config import PlanningConfig, get_config
from incident_orchestrator.core.constants import IncidentType, Severity, StepAction
from incident_orchestrator.core.exceptions import PlanningError
from incident_orchestrator.core.logging import EventType, get_logger, log_event
from incident_orchestrator.core.models import (
    Classification,
    Incident,
    RecoveryPlan,
    RecoveryStep,
)
from incident_orchestrator.core.utils import sum_durations
from incident_orchestrator.planning.catalog import ACTION_RISKS, CATALOG, build_step

logger = get_logger(__name__)


class RecoveryPlanner:
    """Builds recovery plans from the static step catalog.

    Example:
        >>> planner = RecoveryPlanner()
        >>> plan = planner.plan(incident, classification)
    """

    def __init__(
        self,
        config: PlanningConfig | None = None,
        catalog: Mapping[IncidentType, tuple[StepAction, ...]] | None = None,
    ) -> None:
        self._config = config or get_config().planning
        self._catalog = dict(CATALOG if catalog is None else catalog)

    def required_approvals(self, severity: Severity) -> tuple[str, ...]:
        """Roles that must approve destructive steps at this severity."""
        return tuple(self._config.approval_roles.get(severity.value, ()))

    def plan(self, incident: Incident, classification: Classification | None = None) -> RecoveryPlan:
        """Build the catalog plan for an incident.

        Incidents with no catalog entry get a single manual intervention
        step; the gap is logged as a planning error but never dropped.
        """
        actions = self._catalog.get(incident.type, ())
        if not actions:
            error = PlanningError(incident.type.value, reason="no catalog entry")
            log_event(
                logger, logging.ERROR, EventType.PLAN_CREATED, incident.service,
                f"{error}; falling back to manual intervention",
                incident_id=incident.id, category=error.category.value,
            )
            return self.manual_plan(
                incident,
                description=f"No automated remediation for {incident.type.value}; investigate {incident.service}",
                authored_by="planner",
            )

        steps = [
            build_step(action, order, incident.service, self._config)
            for order, action in enumerate(actions, start=1)
        ]
        return self._finalize(incident, steps, classification, authored_by="planner")

    def manual_plan(
        self,
        incident: Incident,
        description: str,
        authored_by: str = "operator",
    ) -> RecoveryPlan:
        """Build a single-step manual plan (e.g. a human-authored replacement)."""
        step = build_step(
            StepAction.MANUAL_INTERVENTION, 1, incident.service, self._config, description=description
        )
        return self._finalize(incident, [step], None, authored_by=authored_by)

    def _finalize(
        self,
        incident: Incident,
        steps: list[RecoveryStep],
        classification: Classification | None,
        authored_by: str,
    ) -> RecoveryPlan:
        risks = [ACTION_RISKS[StepAction(s.action)] for s in steps if StepAction(s.action) in ACTION_RISKS]
        if classification is not None and classification.impact_level == Severity.CRITICAL:
            risks.append("Critical impact: customer-facing degradation likely during recovery")

        plan = RecoveryPlan(
            incident_id=incident.id,
            steps=tuple(steps),
            estimated_total_duration=sum_durations([s.estimated_duration for s in steps]),
            required_approvals=self.required_approvals(incident.severity),
            risks=tuple(risks),
            authored_by=authored_by,
        )
        log_event(
            logger, logging.INFO, EventType.PLAN_CREATED, incident.service,
            f"Plan with {len(steps)} steps",
            incident_id=incident.id,
            plan_id=plan.id,
            actions=",".join(s.action for s in steps),
            approvals=",".join(plan.required_approvals) or "none",
        )
        return plan
