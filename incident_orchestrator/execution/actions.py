"""
Step runner - performs one recovery action against the runtime platform.

Every platform action is expressed as a desired state ("ensure replica
count = N", "ensure routing target = T"), so running a step twice leaves
the platform where running it once did. Platform calls return an operation
id that is polled until it reaches a terminal state, the step deadline
passes, or the execution is cancelled.
"""

from __future__ import annotations

import time
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from datetime import timedelta
from functools import partial

from incident_orchestrator.core.config import ExecutionConfig, get_config
from incident_orchestrator.core.constants import (
    OperationState,
    RollbackProcedure,
    StepAction,
    ValidationType,
)
from incident_orchestrator.core.exceptions import (
    ExecutionCancelledError,
    StepFailureError,
    StepTimeoutError,
    TransientInfraError,
    ValidationFailedError,
)
from incident_orchestrator.core.logging import get_logger
from incident_orchestrator.core.models import Incident, OperationStatus, RecoveryStep, TimeRange
from incident_orchestrator.core.protocols import RuntimePlatform
from incident_orchestrator.core.utils import retry_with_backoff
from incident_orchestrator.detection.rules import evaluate_threshold
from incident_orchestrator.execution.approvals import CancellationToken
from incident_orchestrator.metrics.gateway import MetricsGateway

logger = get_logger(__name__)

# Slice used while waiting on a probe, so cancellation is noticed promptly
_PROBE_WAIT_SLICE_SECONDS = 0.05

_ERROR_LOG_MARKERS = ("error", "fatal", "panic")


class Deadline:
    """Monotonic deadline for a single step."""

    def __init__(self, seconds: float) -> None:
        self.seconds = seconds
        self._expires_at = time.monotonic() + seconds

    @classmethod
    def for_step(cls, step: RecoveryStep, multiplier: float) -> Deadline:
        return cls(step.estimated_duration.total_seconds() * multiplier)

    @property
    def remaining(self) -> float:
        return max(0.0, self._expires_at - time.monotonic())

    @property
    def expired(self) -> bool:
        return time.monotonic() >= self._expires_at


class StepRunner:
    """Runs step actions and their rollbacks.

    Example:
        >>> runner = StepRunner(platform, gateway)
        >>> op_id = runner.run(step, incident, token)
    """

    def __init__(
        self,
        platform: RuntimePlatform,
        gateway: MetricsGateway,
        config: ExecutionConfig | None = None,
        probe_workers: int = 4,
    ) -> None:
        self._platform = platform
        self._gateway = gateway
        self._config = config or get_config().execution
        self._probe_pool = ThreadPoolExecutor(max_workers=probe_workers, thread_name_prefix="probe")

    def shutdown(self) -> None:
        self._probe_pool.shutdown(wait=False)

    # =========================================================================
    # Forward Actions
    # =========================================================================

    def run(self, step: RecoveryStep, incident: Incident, token: CancellationToken) -> str | None:
        """Perform ``step`` for ``incident`` and validate it.

        Manual validations are not handled here; the executor collects the
        operator sign-off after this returns.

        Returns:
            The platform operation id, or None for steps without one.

        Raises:
            StepFailureError: On failure, timeout, failed validation or
                cancellation.
            TransientInfraError: If the platform stays unreachable after retries.
        """
        deadline = Deadline.for_step(step, self._config.timeout_multiplier)
        action = StepAction(step.action)
        service = incident.service

        if action == StepAction.HEALTH_CHECK:
            self._health_check(step, incident, token, deadline)
            return None
        if action == StepAction.MANUAL_INTERVENTION:
            return None

        if action == StepAction.SERVICE_RESTART:
            call = partial(self._platform.ensure_service_running, service)
        elif action == StepAction.SCALE_OUT:
            count = int(step.parameters["desired_count"])
            call = partial(self._platform.scale_service, service, count)
        elif action in (StepAction.FAILOVER_TRAFFIC, StepAction.ISOLATE_TRAFFIC, StepAction.RESTORE_TRAFFIC):
            target = str(step.parameters["target"])
            call = partial(self._platform.update_traffic_routing, service, target)
        elif action == StepAction.RESTORE_FROM_BACKUP:
            ref = str(step.parameters["resource_ref"])
            call = partial(self._platform.restore_from_backup, ref)
        else:
            raise StepFailureError(step.action, order=step.order, reason="unsupported action")

        op_id = self._submit(call, step)
        logger.debug(f"Step {step.order} ({step.action}) submitted as {op_id}")
        status = self._await_operation(op_id, step, deadline, token)
        if step.validation.type == ValidationType.LOG:
            self._validate_logs(status, step)
        return op_id

    def _submit(self, call: Callable[[], str], step: RecoveryStep) -> str:
        try:
            return retry_with_backoff(
                call,
                max_attempts=self._config.platform_retry_attempts,
                base_delay=self._config.platform_retry_base_delay,
                max_delay=self._config.platform_retry_max_delay,
                operation=f"platform {step.action}",
            )
        except TransientInfraError:
            raise
        except StepFailureError:
            raise
        except Exception as e:
            raise StepFailureError(step.action, order=step.order, reason=str(e), cause=e) from e

    def _get_status(self, op_id: str, step: RecoveryStep) -> OperationStatus:
        return retry_with_backoff(
            partial(self._platform.get_status, op_id),
            max_attempts=self._config.platform_retry_attempts,
            base_delay=self._config.platform_retry_base_delay,
            max_delay=self._config.platform_retry_max_delay,
            operation=f"status of {op_id}",
        )

    def _await_operation(
        self,
        op_id: str,
        step: RecoveryStep,
        deadline: Deadline,
        token: CancellationToken | None,
    ) -> OperationStatus:
        """Poll ``op_id`` until it is terminal.

        Raises:
            ExecutionCancelledError: If ``token`` is cancelled first.
            StepTimeoutError: If the deadline passes first.
            StepFailureError: If the operation failed.
        """
        while True:
            if token is not None and token.is_cancelled:
                raise ExecutionCancelledError(step.action, order=step.order, operation_id=op_id)
            status = self._get_status(op_id, step)
            if status.state == OperationState.SUCCEEDED:
                return status
            if status.state == OperationState.FAILED:
                raise StepFailureError(
                    step.action, order=step.order, operation_id=op_id,
                    reason=status.message or "platform operation failed",
                )
            if deadline.expired:
                raise StepTimeoutError(
                    step.action, order=step.order, timeout_seconds=deadline.seconds, operation_id=op_id
                )
            wait = min(self._config.poll_interval_seconds, deadline.remaining)
            if token is not None:
                token.wait(wait)
            else:
                time.sleep(wait)

    @staticmethod
    def _validate_logs(status: OperationStatus, step: RecoveryStep) -> None:
        errors = [line for line in status.logs if any(m in line.lower() for m in _ERROR_LOG_MARKERS)]
        if errors:
            raise ValidationFailedError(
                step.action, order=step.order, operation_id=status.op_id,
                reason=f"error entries in operation log: {errors[0]}",
            )

    def _health_check(
        self,
        step: RecoveryStep,
        incident: Incident,
        token: CancellationToken,
        deadline: Deadline,
    ) -> None:
        """Read-only probe of the incident's trigger metric."""
        trigger = incident.trigger
        if trigger is None:
            raise ValidationFailedError(step.action, order=step.order, reason="incident has no trigger metric")

        metric_name = step.validation.metric_name or trigger.metric_name
        window = TimeRange.last(self._config.postcheck_window_minutes)
        future = self._probe_pool.submit(
            self._gateway.query, trigger.namespace, [metric_name], trigger.dimensions, window
        )

        while True:
            if token.is_cancelled:
                future.cancel()
                raise ExecutionCancelledError(step.action, order=step.order)
            if deadline.expired:
                future.cancel()
                raise StepTimeoutError(step.action, order=step.order, timeout_seconds=deadline.seconds)
            try:
                samples = future.result(timeout=min(_PROBE_WAIT_SLICE_SECONDS, deadline.remaining))
                break
            except FutureTimeoutError:
                continue
            except TransientInfraError as e:
                raise ValidationFailedError(
                    step.action, order=step.order, reason=f"metrics probe failed: {e.message}", cause=e
                ) from e

        relevant = [s for s in samples if s.name == metric_name]
        if not relevant:
            raise ValidationFailedError(step.action, order=step.order, reason=f"no samples for {metric_name}")

        validation = step.validation
        if validation.operator and validation.threshold is not None:
            latest = relevant[-1].value
            if not evaluate_threshold(latest, validation.operator, validation.threshold):
                raise ValidationFailedError(
                    step.action, order=step.order,
                    reason=f"{metric_name}={latest:g} fails {validation.operator} {validation.threshold:g}",
                )

    # =========================================================================
    # Rollback
    # =========================================================================

    def rollback(self, step: RecoveryStep, service: str) -> str | None:
        """Run the compensating procedure of a completed step.

        Rollbacks ignore cancellation: they only stop at the step deadline.

        Returns:
            The rollback operation id, or None if the step has no procedure.

        Raises:
            StepFailureError: If the rollback fails or times out.
            TransientInfraError: If the platform stays unreachable.
        """
        if not step.rollback_procedure:
            return None

        procedure = RollbackProcedure(step.rollback_procedure)
        if procedure == RollbackProcedure.SCALE_SERVICE:
            count = int(step.rollback_parameters["desired_count"])
            call = partial(self._platform.scale_service, service, count)
        else:
            target = str(step.rollback_parameters["target"])
            call = partial(self._platform.update_traffic_routing, service, target)

        op_id = self._submit(call, step)
        deadline = Deadline(
            max(step.estimated_duration, timedelta(seconds=1)).total_seconds() * self._config.timeout_multiplier
        )
        self._await_operation(op_id, step, deadline, token=None)
        return op_id
