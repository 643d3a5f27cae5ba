"""
Recovery executor - runs a plan step by step with rollback on failure.

Execution rules:

1. Steps run strictly in ascending order; a step starts only after the
   previous one completed.
2. On the first failure the remaining steps are skipped and every completed
   step is rolled back in reverse order, each rollback isolated so one
   failure never prevents the others.
3. When every step completed, the post-check re-queries the trigger metric
   before a final status is chosen. A persisting (or unverifiable) anomaly
   fails the execution and triggers the same rollback path.

Final status after a rollback is ``rolled_back`` when at least one rollback
ran and all of them succeeded, and ``failed`` otherwise.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable

from incident_orchestrator.core.config import ExecutionConfig, get_config
from incident_orchestrator.core.constants import (
    ErrorCategory,
    ExecutionStatus,
    RollbackStatus,
    StepStatus,
    ValidationType,
)
from incident_orchestrator.core.exceptions import (
    ExecutionCancelledError,
    OrchestratorError,
)
from incident_orchestrator.core.logging import EventType, get_logger, log_event
from incident_orchestrator.core.models import (
    Incident,
    RecoveryExecution,
    RecoveryPlan,
    RecoveryStep,
    StepExecutionRecord,
    TimeRange,
)
from incident_orchestrator.core.utils import utc_now
from incident_orchestrator.execution.actions import StepRunner
from incident_orchestrator.execution.approvals import ApprovalRegistry, CancellationToken

logger = get_logger(__name__)

ExecutionListener = Callable[[RecoveryExecution], None]
PostCheck = Callable[[Incident, TimeRange], bool]


class RecoveryExecutor:
    """Executes recovery plans against the runtime platform.

    Args:
        runner: Performs individual step actions and rollbacks.
        postcheck: Returns True while the incident's anomaly is still
            present (typically ``AnomalyDetector.recheck``). Raising means the
            outcome could not be verified.
        approvals: Registry of plan approvals and manual sign-offs.
        config: Execution configuration.

    Example:
        >>> executor = RecoveryExecutor(runner, detector.recheck, approvals)
        >>> execution = executor.execute(plan, incident)
    """

    def __init__(
        self,
        runner: StepRunner,
        postcheck: PostCheck,
        approvals: ApprovalRegistry | None = None,
        config: ExecutionConfig | None = None,
    ) -> None:
        self._runner = runner
        self._postcheck = postcheck
        self._approvals = approvals or ApprovalRegistry()
        self._config = config or get_config().execution
        self._tokens: dict[str, CancellationToken] = {}
        self._lock = threading.Lock()

    @property
    def approvals(self) -> ApprovalRegistry:
        return self._approvals

    def prepare(self, plan: RecoveryPlan) -> RecoveryExecution:
        """Create a pending execution record that can be cancelled immediately."""
        execution = RecoveryExecution.for_plan(plan)
        with self._lock:
            self._tokens[execution.id] = CancellationToken()
        return execution

    def cancel(self, execution_id: str) -> bool:
        """Request cancellation. Returns False if the execution is not active."""
        with self._lock:
            token = self._tokens.get(execution_id)
        if token is None:
            return False
        token.cancel()
        logger.warning(f"Cancellation requested for execution {execution_id}")
        return True

    def active_executions(self) -> list[str]:
        with self._lock:
            return list(self._tokens)

    # =========================================================================
    # Execution
    # =========================================================================

    def execute(
        self,
        plan: RecoveryPlan,
        incident: Incident,
        listener: ExecutionListener | None = None,
        execution: RecoveryExecution | None = None,
    ) -> RecoveryExecution:
        """Run ``plan`` for ``incident`` to a terminal status.

        Args:
            plan: The plan to run.
            incident: Incident being remediated.
            listener: Called with the execution after every state transition.
            execution: A record created by ``prepare``; a fresh one otherwise.

        Returns:
            The execution in a terminal status.
        """
        if execution is None:
            execution = self.prepare(plan)
        with self._lock:
            token = self._tokens.setdefault(execution.id, CancellationToken())

        try:
            self._run(plan, incident, execution, token, listener)
        finally:
            with self._lock:
                self._tokens.pop(execution.id, None)
        return execution

    def _run(
        self,
        plan: RecoveryPlan,
        incident: Incident,
        execution: RecoveryExecution,
        token: CancellationToken,
        listener: ExecutionListener | None,
    ) -> None:
        service = incident.service
        execution.status = ExecutionStatus.IN_PROGRESS
        self._notify(listener, execution)
        log_event(
            logger, logging.INFO, EventType.EXECUTION_STARTED, service,
            f"Executing plan with {len(plan.steps)} steps",
            execution_id=execution.id, plan_id=plan.id, incident_id=incident.id,
        )

        steps = sorted(plan.steps, key=lambda s: s.order)
        approval_order = plan.first_destructive_order if plan.required_approvals else None
        failed = False

        for step in steps:
            record = execution.step_record(step.order)
            record.status = StepStatus.IN_PROGRESS
            record.started_at = utc_now()
            self._notify(listener, execution)
            log_event(
                logger, logging.INFO, EventType.STEP_STARTED, service,
                step.description, execution_id=execution.id, order=step.order, action=step.action,
            )
            try:
                if step.order == approval_order:
                    self._approvals.wait_for_approvals(
                        plan.id, plan.required_approvals, token,
                        action=step.action, order=step.order, service=service,
                    )
                if token.is_cancelled:
                    raise ExecutionCancelledError(step.action, order=step.order)

                record.operation_id = self._runner.run(step, incident, token)
                if step.validation.type == ValidationType.MANUAL:
                    self._approvals.wait_for_sign_off(execution.id, step.order, token, action=step.action)

                record.status = StepStatus.COMPLETED
                record.finished_at = utc_now()
                self._notify(listener, execution)
                log_event(
                    logger, logging.INFO, EventType.STEP_COMPLETED, service,
                    f"Step {step.order} completed",
                    execution_id=execution.id, action=step.action, operation_id=record.operation_id,
                )
            except Exception as e:
                self._fail_step(record, e, execution, service, token)
                self._notify(listener, execution)
                failed = True
                break

        if not failed:
            passed = self._run_postcheck(incident, execution)
            execution.postcheck_passed = passed
            self._notify(listener, execution)
            if passed:
                self._finish(execution, ExecutionStatus.COMPLETED, service, listener)
                return

        final = self._rollback(plan, execution, service)
        self._finish(execution, final, service, listener)

    def _fail_step(
        self,
        record: StepExecutionRecord,
        error: Exception,
        execution: RecoveryExecution,
        service: str,
        token: CancellationToken,
    ) -> None:
        record.status = StepStatus.FAILED
        record.finished_at = utc_now()
        record.error = str(error)
        if isinstance(error, OrchestratorError):
            record.error_category = error.category
        else:
            record.error_category = ErrorCategory.INTERNAL
        op_id = getattr(error, "operation_id", None)
        if op_id:
            record.operation_id = op_id

        if isinstance(error, ExecutionCancelledError) or token.is_cancelled:
            execution.cancelled = True
            log_event(
                logger, logging.WARNING, EventType.STEP_FAILED, service,
                f"Step {record.order} interrupted by cancellation",
                execution_id=execution.id, action=record.action,
                interrupted_operation=record.operation_id or "none",
            )
        else:
            log_event(
                logger, logging.ERROR, EventType.STEP_FAILED, service,
                f"Step {record.order} failed: {error}",
                execution_id=execution.id, action=record.action,
                category=record.error_category.value,
            )

    def _run_postcheck(self, incident: Incident, execution: RecoveryExecution) -> bool:
        window = TimeRange.last(self._config.postcheck_window_minutes)
        try:
            still_present = self._postcheck(incident, window)
        except Exception as e:
            log_event(
                logger, logging.ERROR, EventType.POSTCHECK, incident.service,
                f"Post-check could not verify recovery: {e}", execution_id=execution.id,
            )
            return False
        return not still_present

    def _rollback(self, plan: RecoveryPlan, execution: RecoveryExecution, service: str) -> ExecutionStatus:
        """Roll back completed steps in reverse order and pick the final status."""
        steps_by_order: dict[int, RecoveryStep] = {s.order: s for s in plan.steps}
        completed = sorted(execution.completed_steps, key=lambda r: r.order, reverse=True)

        attempted = 0
        all_succeeded = True
        for record in completed:
            step = steps_by_order[record.order]
            if not step.rollback_procedure:
                record.rollback_status = RollbackStatus.NOT_REQUIRED
                continue
            attempted += 1
            try:
                op_id = self._runner.rollback(step, service)
                record.rollback_status = RollbackStatus.SUCCEEDED
                log_event(
                    logger, logging.INFO, EventType.ROLLBACK, service,
                    f"Rolled back step {record.order}",
                    execution_id=execution.id, procedure=step.rollback_procedure, operation_id=op_id,
                )
            except Exception as e:
                all_succeeded = False
                record.rollback_status = RollbackStatus.FAILED
                record.rollback_error = str(e)
                log_event(
                    logger, logging.ERROR, EventType.ROLLBACK, service,
                    f"Rollback of step {record.order} failed: {e}",
                    execution_id=execution.id, procedure=step.rollback_procedure,
                )

        execution.metrics["rollbacks_attempted"] = attempted
        if attempted > 0 and all_succeeded:
            return ExecutionStatus.ROLLED_BACK
        return ExecutionStatus.FAILED

    def _finish(
        self,
        execution: RecoveryExecution,
        status: ExecutionStatus,
        service: str,
        listener: ExecutionListener | None,
    ) -> None:
        execution.status = status
        execution.end_time = utc_now()
        execution.metrics["duration_seconds"] = (execution.end_time - execution.start_time).total_seconds()
        execution.metrics["completed_steps"] = len(execution.completed_steps)
        self._notify(listener, execution)
        log_event(
            logger, logging.INFO if status == ExecutionStatus.COMPLETED else logging.ERROR,
            EventType.EXECUTION_FINISHED, service, f"Execution {status.value}",
            execution_id=execution.id, cancelled=execution.cancelled,
        )

    @staticmethod
    def _notify(listener: ExecutionListener | None, execution: RecoveryExecution) -> None:
        if listener is None:
            return
        try:
            listener(execution)
        except Exception as e:
            logger.error(f"Execution listener failed for {execution.id}: {e}")
