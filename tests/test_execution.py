"""
Tests for the step runner, approvals and the recovery executor.
"""

from __future__ import annotations

import time
from concurrent.futures import ThreadPoolExecutor
from datetime import timedelta

import pytest

from conftest import FakePlatform
from incident_orchestrator.core.config import PlanningConfig
from incident_orchestrator.core.constants import (
    ErrorCategory,
    ExecutionStatus,
    IncidentType,
    RollbackStatus,
    Severity,
    StepAction,
    StepStatus,
)
from incident_orchestrator.core.exceptions import (
    ApprovalRejectedError,
    ExecutionCancelledError,
    MetricsUnavailableError,
    PlatformCallError,
)
from incident_orchestrator.core.models import RecoveryPlan
from incident_orchestrator.core.utils import utc_now
from incident_orchestrator.execution import (
    ApprovalRegistry,
    CancellationToken,
    RecoveryExecutor,
    StepRunner,
)
from incident_orchestrator.planning import RecoveryPlanner, build_step

# =============================================================================
# Helpers
# =============================================================================


class PostCheck:
    """Scripted post-check: reports the anomaly present/cleared or raises."""

    def __init__(self, still_present: bool = False, error: Exception | None = None) -> None:
        self.still_present = still_present
        self.error = error
        self.calls = []

    def __call__(self, incident, window):
        self.calls.append((incident.id, window))
        if self.error is not None:
            raise self.error
        return self.still_present


class BrokenScaleDownPlatform(FakePlatform):
    """Platform that rejects every scale-down."""

    def scale_service(self, service: str, desired_count: int) -> str:
        if desired_count < self.replicas.get(service, 0):
            with self._lock:
                self.calls.append(("scale_service", (service, desired_count)))
            raise RuntimeError("scale-down rejected")
        return super().scale_service(service, desired_count)


def wait_until(predicate, timeout: float = 5.0) -> None:
    deadline = time.monotonic() + timeout
    while not predicate():
        if time.monotonic() > deadline:
            raise AssertionError("condition not reached in time")
        time.sleep(0.01)


def make_plan(incident, actions, config, approvals=()) -> RecoveryPlan:
    steps = tuple(build_step(action, order, incident.service, config) for order, action in enumerate(actions, 1))
    return RecoveryPlan(
        incident_id=incident.id,
        steps=steps,
        estimated_total_duration=sum((s.estimated_duration for s in steps), timedelta(0)),
        required_approvals=tuple(approvals),
    )


@pytest.fixture
def runner(platform, gateway, test_config):
    runner = StepRunner(platform, gateway, test_config.execution)
    yield runner
    runner.shutdown()


@pytest.fixture
def postcheck() -> PostCheck:
    return PostCheck()


@pytest.fixture
def executor(runner, postcheck, test_config) -> RecoveryExecutor:
    return RecoveryExecutor(runner, postcheck, ApprovalRegistry(), test_config.execution)


@pytest.fixture
def planner(test_config) -> RecoveryPlanner:
    return RecoveryPlanner(test_config.planning)


@pytest.fixture
def background():
    pool = ThreadPoolExecutor(max_workers=1)
    yield pool
    pool.shutdown(wait=True)


# =============================================================================
# Approvals
# =============================================================================


class TestApprovalRegistry:
    """Tests for ApprovalRegistry."""

    def test_no_roles_returns_immediately(self):
        ApprovalRegistry().wait_for_approvals("plan-1", (), CancellationToken())

    def test_all_roles_approved(self):
        registry = ApprovalRegistry()
        registry.approve("plan-1", "on_call_engineer", by="alice")
        registry.approve("plan-1", "incident_commander", by="bob")
        registry.wait_for_approvals("plan-1", ("on_call_engineer", "incident_commander"), CancellationToken())
        assert registry.approvals_for("plan-1")["on_call_engineer"].by == "alice"

    def test_rejection(self):
        registry = ApprovalRegistry()
        registry.approve("plan-1", "on_call_engineer")
        registry.reject("plan-1", "incident_commander", by="bob", reason="too risky")
        with pytest.raises(ApprovalRejectedError, match="too risky"):
            registry.wait_for_approvals(
                "plan-1", ("on_call_engineer", "incident_commander"), CancellationToken()
            )

    def test_cancelled_wait(self):
        token = CancellationToken()
        token.cancel()
        with pytest.raises(ExecutionCancelledError):
            ApprovalRegistry().wait_for_approvals("plan-1", ("on_call_engineer",), token)

    def test_pending_while_waiting(self, background):
        registry = ApprovalRegistry()
        future = background.submit(
            registry.wait_for_approvals, "plan-1", ("on_call_engineer",), CancellationToken()
        )
        wait_until(lambda: registry.is_waiting_for_approval("plan-1"))
        assert registry.pending()["approvals"] == [{"plan_id": "plan-1", "roles": ["on_call_engineer"]}]

        registry.approve("plan-1", "on_call_engineer")
        future.result(timeout=5)
        assert registry.pending()["approvals"] == []

    def test_sign_off(self, background):
        registry = ApprovalRegistry()
        future = background.submit(registry.wait_for_sign_off, "exec-1", 2, CancellationToken())
        wait_until(lambda: registry.is_waiting_for_sign_off("exec-1", 2))
        assert registry.pending()["sign_offs"] == [{"execution_id": "exec-1", "order": 2}]

        registry.sign_off("exec-1", 2, by="carol")
        assert future.result(timeout=5).by == "carol"

    def test_rejected_sign_off(self):
        registry = ApprovalRegistry()
        registry.sign_off("exec-1", 1, approved=False, reason="data mismatch")
        with pytest.raises(ApprovalRejectedError):
            registry.wait_for_sign_off("exec-1", 1, CancellationToken())


# =============================================================================
# Step Runner
# =============================================================================


class TestStepRunner:
    """Tests for StepRunner."""

    def test_scale_out_is_idempotent(self, runner, platform, make_incident, test_config):
        step = build_step(StepAction.SCALE_OUT, 1, "checkout", test_config.planning)
        incident = make_incident()

        runner.run(step, incident, CancellationToken())
        runner.run(step, incident, CancellationToken())

        assert platform.replicas == {"checkout": 4}
        assert platform.call_count("scale_service") == 2

    def test_transient_platform_error_retried(self, runner, platform, make_incident, test_config):
        platform.errors["scale_service"] = [PlatformCallError("scale_service", reason="503")]
        step = build_step(StepAction.SCALE_OUT, 1, "checkout", test_config.planning)

        op_id = runner.run(step, make_incident(), CancellationToken())

        assert op_id is not None
        assert platform.call_count("scale_service") == 2

    def test_rollback_restores_previous_state(self, runner, platform, test_config):
        step = build_step(StepAction.FAILOVER_TRAFFIC, 1, "checkout", test_config.planning)
        op_id = runner.rollback(step, "checkout")
        assert op_id is not None
        assert platform.routing == {"checkout": "primary"}

    def test_rollback_without_procedure(self, runner, test_config):
        step = build_step(StepAction.SERVICE_RESTART, 1, "checkout", test_config.planning)
        assert runner.rollback(step, "checkout") is None

    def test_health_check_passes(self, runner, provider, make_incident, test_config):
        provider.add("checkout", "error_rate", 0.01, utc_now() - timedelta(minutes=1))
        step = build_step(StepAction.HEALTH_CHECK, 1, "checkout", test_config.planning)
        assert runner.run(step, make_incident(), CancellationToken()) is None


# =============================================================================
# Executor
# =============================================================================


class TestRecoveryExecutor:
    """Tests for RecoveryExecutor."""

    def test_successful_execution(self, executor, planner, platform, postcheck, make_incident):
        incident = make_incident(incident_type=IncidentType.HIGH_ERROR_RATE)
        plan = planner.plan(incident)

        execution = executor.execute(plan, incident)

        assert execution.status == ExecutionStatus.COMPLETED
        assert execution.postcheck_passed is True
        assert execution.end_time is not None
        assert execution.step_status(1) == StepStatus.COMPLETED
        assert execution.step_record(1).operation_id is not None
        assert platform.replicas == {"checkout": 4}
        assert len(postcheck.calls) == 1
        assert executor.active_executions() == []

    def test_postcheck_failure_rolls_back(self, executor, planner, platform, postcheck, make_incident):
        postcheck.still_present = True
        incident = make_incident()
        plan = planner.plan(incident)

        execution = executor.execute(plan, incident)

        assert execution.status == ExecutionStatus.ROLLED_BACK
        assert execution.postcheck_passed is False
        assert execution.step_record(1).rollback_status == RollbackStatus.SUCCEEDED
        assert platform.replicas == {"checkout": 2}
        assert execution.metrics["rollbacks_attempted"] == 1

    def test_unverifiable_postcheck_counts_as_failed(self, executor, planner, postcheck, make_incident):
        postcheck.error = MetricsUnavailableError("checkout", reason="gateway down")
        incident = make_incident()

        execution = executor.execute(planner.plan(incident), incident)

        assert execution.postcheck_passed is False
        assert execution.status == ExecutionStatus.ROLLED_BACK

    def test_failure_rolls_back_each_completed_step_once(self, gateway, postcheck, make_incident, test_config):
        """Test rollback runs in reverse order, once per step, even if one rollback raises."""
        platform = BrokenScaleDownPlatform()
        platform.failing.add("ensure_service_running")
        runner = StepRunner(platform, gateway, test_config.execution)
        executor = RecoveryExecutor(runner, postcheck, config=test_config.execution)
        incident = make_incident()
        plan = make_plan(
            incident,
            [StepAction.FAILOVER_TRAFFIC, StepAction.SCALE_OUT, StepAction.SERVICE_RESTART],
            test_config.planning,
        )

        try:
            execution = executor.execute(plan, incident)
        finally:
            runner.shutdown()

        assert execution.status == ExecutionStatus.FAILED
        assert [execution.step_status(o) for o in (1, 2, 3)] == [
            StepStatus.COMPLETED, StepStatus.COMPLETED, StepStatus.FAILED,
        ]
        assert execution.step_record(3).error_category == ErrorCategory.STEP_FAILURE
        assert execution.step_record(2).rollback_status == RollbackStatus.FAILED
        assert "scale-down rejected" in execution.step_record(2).rollback_error
        assert execution.step_record(1).rollback_status == RollbackStatus.SUCCEEDED
        assert execution.metrics["rollbacks_attempted"] == 2
        assert platform.calls == [
            ("update_traffic_routing", ("checkout", "secondary")),
            ("scale_service", ("checkout", 4)),
            ("ensure_service_running", ("checkout",)),
            ("scale_service", ("checkout", 2)),
            ("update_traffic_routing", ("checkout", "primary")),
        ]
        assert postcheck.calls == []

    def test_health_check_timeout(self, executor, planner, provider, platform, postcheck, make_incident):
        """Test a hung probe fails the first step with nothing to roll back."""
        provider.delay = 1.0
        incident = make_incident(incident_type=IncidentType.SERVICE_DOWN)
        plan = planner.plan(incident)
        assert plan.steps[0].action == StepAction.HEALTH_CHECK.value

        execution = executor.execute(plan, incident)

        assert execution.status == ExecutionStatus.FAILED
        assert execution.step_status(1) == StepStatus.FAILED
        assert "timed out" in execution.step_record(1).error
        assert execution.step_status(2) == StepStatus.PENDING
        assert execution.metrics["completed_steps"] == 0
        assert execution.metrics["rollbacks_attempted"] == 0
        assert platform.calls == []
        assert postcheck.calls == []

    def test_operation_timeout(self, executor, planner, platform, make_incident):
        platform.hanging.add("scale_service")
        incident = make_incident()

        execution = executor.execute(planner.plan(incident), incident)

        assert execution.status == ExecutionStatus.FAILED
        record = execution.step_record(1)
        assert "timed out" in record.error
        assert record.operation_id is not None

    def test_error_in_operation_log_fails_validation(self, executor, planner, platform, make_incident):
        platform.op_logs["scale_service"] = ("scaling to 4", "ERROR: image pull failed")
        incident = make_incident()

        execution = executor.execute(planner.plan(incident), incident)

        assert execution.status == ExecutionStatus.FAILED
        assert "image pull failed" in execution.step_record(1).error

    def test_listener_sees_transitions(self, executor, planner, make_incident):
        statuses = []

        def listener(execution):
            statuses.append(execution.status)
            raise RuntimeError("listener bug")

        incident = make_incident()
        execution = executor.execute(planner.plan(incident), incident, listener=listener)

        assert execution.status == ExecutionStatus.COMPLETED
        assert statuses[0] == ExecutionStatus.IN_PROGRESS
        assert statuses[-1] == ExecutionStatus.COMPLETED

    def test_cancellation(self, platform, gateway, postcheck, make_incident, test_config, background):
        """Test cancelling mid-step records the interrupted operation and rolls back."""
        platform.hanging.add("scale_service")
        runner = StepRunner(platform, gateway, test_config.execution)
        executor = RecoveryExecutor(runner, postcheck, config=test_config.execution)
        slow = PlanningConfig(step_durations={"failover_traffic": 5.0, "scale_out": 30.0})
        incident = make_incident()
        plan = make_plan(incident, [StepAction.FAILOVER_TRAFFIC, StepAction.SCALE_OUT], slow)

        execution = executor.prepare(plan)
        future = background.submit(executor.execute, plan, incident, None, execution)
        wait_until(lambda: platform.call_count("scale_service") == 1)
        assert executor.cancel(execution.id) is True

        try:
            result = future.result(timeout=5)
        finally:
            runner.shutdown()

        assert result.cancelled is True
        assert result.status == ExecutionStatus.ROLLED_BACK
        record = result.step_record(2)
        assert record.status == StepStatus.FAILED
        assert record.operation_id is not None
        assert result.step_record(1).rollback_status == RollbackStatus.SUCCEEDED
        assert platform.routing == {"checkout": "primary"}
        assert platform.call_count("scale_service") == 1
        assert executor.cancel(execution.id) is False

    def test_approval_gates_destructive_steps(self, executor, planner, platform, make_incident, background):
        incident = make_incident(severity=Severity.HIGH)
        plan = planner.plan(incident)
        assert plan.required_approvals == ("on_call_engineer",)

        future = background.submit(executor.execute, plan, incident)
        wait_until(lambda: executor.approvals.is_waiting_for_approval(plan.id))
        assert platform.calls == []

        executor.approvals.approve(plan.id, "on_call_engineer", by="alice")
        execution = future.result(timeout=5)

        assert execution.status == ExecutionStatus.COMPLETED
        assert platform.replicas == {"checkout": 4}

    def test_rejected_approval(self, executor, planner, platform, make_incident, background):
        incident = make_incident(severity=Severity.CRITICAL)
        plan = planner.plan(incident)

        future = background.submit(executor.execute, plan, incident)
        wait_until(lambda: executor.approvals.is_waiting_for_approval(plan.id))
        executor.approvals.approve(plan.id, "on_call_engineer")
        executor.approvals.reject(plan.id, "incident_commander", by="bob")
        execution = future.result(timeout=5)

        assert execution.status == ExecutionStatus.FAILED
        assert "rejected by bob" in execution.step_record(1).error
        assert platform.calls == []

    def test_manual_sign_off(self, executor, planner, platform, make_incident, background):
        incident = make_incident(incident_type=IncidentType.DATA_CORRUPTION)
        plan = planner.plan(incident)
        execution = executor.prepare(plan)

        future = background.submit(executor.execute, plan, incident, None, execution)
        wait_until(lambda: executor.approvals.is_waiting_for_sign_off(execution.id, 2))
        assert platform.restored == ["checkout-latest"]
        assert platform.routing == {"checkout": "maintenance"}

        executor.approvals.sign_off(execution.id, 2, by="carol")
        result = future.result(timeout=5)

        assert result.status == ExecutionStatus.COMPLETED
        assert platform.routing == {"checkout": "primary"}

    def test_rejected_sign_off_is_step_failure(self, executor, planner, platform, make_incident, background):
        incident = make_incident(incident_type=IncidentType.DATA_CORRUPTION)
        plan = planner.plan(incident)
        execution = executor.prepare(plan)

        future = background.submit(executor.execute, plan, incident, None, execution)
        wait_until(lambda: executor.approvals.is_waiting_for_sign_off(execution.id, 2))
        executor.approvals.sign_off(execution.id, 2, approved=False, by="carol", reason="checksums differ")
        result = future.result(timeout=5)

        assert result.status == ExecutionStatus.ROLLED_BACK
        assert result.step_status(2) == StepStatus.FAILED
        assert result.step_status(3) == StepStatus.PENDING
        assert result.step_record(1).rollback_status == RollbackStatus.SUCCEEDED
        assert platform.routing == {"checkout": "primary"}
