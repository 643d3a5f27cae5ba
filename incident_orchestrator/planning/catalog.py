"""
Static catalog of remediation procedures.

Maps each incident type to an ordered list of actions and knows how to turn
an action into a concrete, parameterized recovery step for a service.
"""

from __future__ import annotations

from datetime import timedelta
from typing import Final

from incident_orchestrator.core.config import PlanningConfig
from incident_orchestrator.core.constants import (
    IncidentType,
    RollbackProcedure,
    StepAction,
    ValidationType,
)
from incident_orchestrator.core.models import RecoveryStep, StepValidation

CATALOG: Final[dict[IncidentType, tuple[StepAction, ...]]] = {
    IncidentType.SERVICE_DOWN: (StepAction.HEALTH_CHECK, StepAction.SERVICE_RESTART),
    IncidentType.HIGH_ERROR_RATE: (StepAction.SCALE_OUT,),
    IncidentType.RESOURCE_EXHAUSTION: (StepAction.HEALTH_CHECK, StepAction.SCALE_OUT),
    IncidentType.NETWORK: (StepAction.FAILOVER_TRAFFIC, StepAction.HEALTH_CHECK),
    IncidentType.DATA_CORRUPTION: (
        StepAction.ISOLATE_TRAFFIC,
        StepAction.RESTORE_FROM_BACKUP,
        StepAction.RESTORE_TRAFFIC,
    ),
}

ACTION_RISKS: Final[dict[StepAction, str]] = {
    StepAction.SERVICE_RESTART: "Restart drops in-flight requests",
    StepAction.SCALE_OUT: "Scale-out increases cost and may hit capacity limits",
    StepAction.FAILOVER_TRAFFIC: "Failover target may lack warm caches",
    StepAction.ISOLATE_TRAFFIC: "Service is unavailable to users while isolated",
    StepAction.RESTORE_FROM_BACKUP: "Writes since the last backup are lost",
    StepAction.RESTORE_TRAFFIC: "Traffic returns before data is independently verified",
    StepAction.MANUAL_INTERVENTION: "No automated remediation available",
}


def actions_for(incident_type: IncidentType) -> tuple[StepAction, ...]:
    """Catalog actions for an incident type (empty if uncatalogued)."""
    return CATALOG.get(incident_type, ())


def _duration(action: StepAction, config: PlanningConfig) -> timedelta:
    return timedelta(seconds=float(config.step_durations.get(action.value, 300.0)))


def build_step(
    action: StepAction,
    order: int,
    service: str,
    config: PlanningConfig,
    description: str | None = None,
) -> RecoveryStep:
    """Build the concrete step for ``action`` against ``service``.

    Args:
        action: Catalog action.
        order: 1-based position in the plan.
        service: Target service.
        config: Planning configuration (durations and parameters).
        description: Optional override for the step description.

    Returns:
        A fully parameterized recovery step.
    """
    duration = _duration(action, config)
    log_validation = StepValidation(
        type=ValidationType.LOG,
        criteria="platform operation succeeded with no error entries in its log",
    )

    if action == StepAction.HEALTH_CHECK:
        return RecoveryStep(
            order=order,
            action=action.value,
            description=description or f"Verify {service} is reporting its trigger metric",
            estimated_duration=duration,
            validation=StepValidation(
                type=ValidationType.METRIC,
                criteria="trigger metric is reporting samples",
            ),
            destructive=False,
        )

    if action == StepAction.SERVICE_RESTART:
        return RecoveryStep(
            order=order,
            action=action.value,
            description=description or f"Ensure all tasks of {service} are running",
            estimated_duration=duration,
            validation=log_validation,
            required_resources=(service,),
        )

    if action == StepAction.SCALE_OUT:
        return RecoveryStep(
            order=order,
            action=action.value,
            description=description or f"Ensure {service} runs {config.scale_out_replicas} replicas",
            estimated_duration=duration,
            validation=log_validation,
            required_resources=(service,),
            rollback_procedure=RollbackProcedure.SCALE_SERVICE.value,
            parameters={"desired_count": config.scale_out_replicas},
            rollback_parameters={"desired_count": config.baseline_replicas},
        )

    if action in (StepAction.FAILOVER_TRAFFIC, StepAction.ISOLATE_TRAFFIC, StepAction.RESTORE_TRAFFIC):
        target, previous = {
            StepAction.FAILOVER_TRAFFIC: (config.failover_target, config.primary_target),
            StepAction.ISOLATE_TRAFFIC: (config.isolation_target, config.primary_target),
            StepAction.RESTORE_TRAFFIC: (config.primary_target, config.isolation_target),
        }[action]
        return RecoveryStep(
            order=order,
            action=action.value,
            description=description or f"Ensure traffic for {service} routes to {target}",
            estimated_duration=duration,
            validation=log_validation,
            required_resources=(service,),
            rollback_procedure=RollbackProcedure.UPDATE_TRAFFIC_ROUTING.value,
            parameters={"target": target},
            rollback_parameters={"target": previous},
        )

    if action == StepAction.RESTORE_FROM_BACKUP:
        resource_ref = config.backup_ref_template.format(service=service)
        return RecoveryStep(
            order=order,
            action=action.value,
            description=description or f"Restore {resource_ref} from backup",
            estimated_duration=duration,
            validation=StepValidation(
                type=ValidationType.MANUAL,
                criteria="operator confirms restored data is consistent",
            ),
            required_resources=(resource_ref,),
            parameters={"resource_ref": resource_ref},
        )

    return RecoveryStep(
        order=order,
        action=StepAction.MANUAL_INTERVENTION.value,
        description=description or f"Manual remediation of {service} by an operator",
        estimated_duration=duration,
        validation=StepValidation(
            type=ValidationType.MANUAL,
            criteria="operator signs off that the service is healthy",
        ),
        destructive=False,
    )
