"""
Control loop - drives detection, triage, recovery and alerting.

Each tick:

1. Queries the detector over the trailing detection window.
2. Opens every new incident (persisted as ``detected`` and alerted) and
   hands it to the worker pool, which classifies it (``investigating``),
   plans, and executes the plan (``mitigating``).
3. Coalesces detections for a pair that already has an unresolved incident
   or an active execution into that incident, raising a recurrence alert.
4. Runs the alert sweep and resolves incidents whose alert group resolved
   while no execution was active for them.

The control loop is the only writer of incident status. Nothing raised
while handling one incident escapes the tick or affects other incidents.
"""

from __future__ import annotations

import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from datetime import datetime, timedelta

from incident_orchestrator.alerting.router import AlertRouter
from incident_orchestrator.api.models import (
    AlertGroupSnapshot,
    ExecutionSnapshot,
    IncidentSnapshot,
    SystemStatus,
)
from incident_orchestrator.classification.classifier import IncidentClassifier
from incident_orchestrator.core.config import ControlLoopConfig, get_config
from incident_orchestrator.core.constants import (
    AlertGroupStatus,
    AlertType,
    ErrorCategory,
    ExecutionStatus,
    IncidentStatus,
    IncidentType,
    Severity,
    StepStatus,
)
from incident_orchestrator.core.exceptions import (
    IncidentNotFoundError,
    OrchestratorError,
    PlanningError,
)
from incident_orchestrator.core.logging import EventType, get_logger, log_event
from incident_orchestrator.core.models import (
    Alert,
    Incident,
    RecoveryExecution,
    RecoveryPlan,
    TimeRange,
)
from incident_orchestrator.core.utils import utc_now
from incident_orchestrator.detection.detector import AnomalyDetector
from incident_orchestrator.execution.executor import RecoveryExecutor
from incident_orchestrator.metrics.gateway import MetricsGateway
from incident_orchestrator.planning.planner import RecoveryPlanner
from incident_orchestrator.storage.store import StateStore

logger = get_logger(__name__)

Pair = tuple[str, IncidentType]

RESOLVED_GROUP_RETENTION = timedelta(days=1)


@dataclass
class TickReport:
    """What one control-loop tick did."""

    started_at: datetime
    finished_at: datetime | None = None
    detected: int = 0
    new_incidents: list[str] = field(default_factory=list)
    coalesced: list[str] = field(default_factory=list)
    submitted: list[str] = field(default_factory=list)
    resolved_incidents: list[str] = field(default_factory=list)
    resolved_groups: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)


@dataclass
class _ActiveRun:
    incident_id: str
    future: Future | None = None
    execution: RecoveryExecution | None = None


class ControlLoop:
    """Periodic orchestration of the incident response pipeline.

    Args:
        store: State store (also the classifier's history).
        detector: Anomaly detector.
        classifier: Incident classifier.
        planner: Recovery planner.
        executor: Recovery executor.
        router: Alert router (owns the aggregator).
        config: Control loop configuration.
        gateway: Metrics gateway, used for provider health in status reports.

    Example:
        >>> loop = ControlLoop(store, detector, classifier, planner, executor, router)
        >>> report = loop.tick()
        >>> loop.wait_for_executions(timeout=60)
    """

    def __init__(
        self,
        store: StateStore,
        detector: AnomalyDetector,
        classifier: IncidentClassifier,
        planner: RecoveryPlanner,
        executor: RecoveryExecutor,
        router: AlertRouter,
        config: ControlLoopConfig | None = None,
        gateway: MetricsGateway | None = None,
    ) -> None:
        self._store = store
        self._detector = detector
        self._classifier = classifier
        self._planner = planner
        self._executor = executor
        self._router = router
        self._config = config or get_config().control_loop
        self._gateway = gateway

        self._pool = ThreadPoolExecutor(
            max_workers=self._config.max_workers,
            thread_name_prefix="recovery",
        )
        self._lock = threading.RLock()
        self._open: dict[str, Incident] = {i.id: i for i in store.list_open_incidents()}
        self._active: dict[Pair, _ActiveRun] = {}

        self._router.aggregator.load(store.list_alert_groups(AlertGroupStatus.ACTIVE))

        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None
        self._last_tick: datetime | None = None
        self._ticks_completed = 0

    # =========================================================================
    # Tick
    # =========================================================================

    def tick(self, now: datetime | None = None) -> TickReport:
        """Run one detect, dispatch and sweep cycle. Never raises."""
        now = now or utc_now()
        report = TickReport(started_at=now)

        window = TimeRange.last(self._config.detection_window_minutes, now)
        try:
            incidents = self._detector.detect(window)
        except Exception as e:
            logger.error(f"Detection failed: {e}", exc_info=True)
            report.errors.append(f"detection: {e}")
            incidents = []
        report.detected = len(incidents)

        for incident in incidents:
            try:
                self._dispatch(incident, now, report)
            except Exception as e:
                logger.error(f"Failed to handle incident {incident.id}: {e}", exc_info=True)
                report.errors.append(f"{incident.id}: {e}")

        try:
            self._sweep(now, report)
        except Exception as e:
            logger.error(f"Alert sweep failed: {e}", exc_info=True)
            report.errors.append(f"sweep: {e}")

        report.finished_at = utc_now()
        with self._lock:
            self._last_tick = now
            self._ticks_completed += 1
        log_event(
            logger, logging.INFO, EventType.TICK, "orchestrator",
            f"Tick finished: {len(report.new_incidents)} new, {len(report.coalesced)} coalesced, "
            f"{len(report.resolved_incidents)} resolved",
            errors=len(report.errors),
        )
        return report

    def _dispatch(self, incident: Incident, now: datetime, report: TickReport) -> None:
        claimed = False
        with self._lock:
            existing = self._open_incident_for(incident.pair)
            if existing is None:
                self._open[incident.id] = incident
                claimed = self._claim(incident.pair, incident.id)

        if existing is not None:
            self._coalesce(existing, incident, now)
            report.coalesced.append(existing.id)
            return

        self._persist_incident(incident)
        report.new_incidents.append(incident.id)
        self._alert(
            incident.type.value, incident.service, incident.severity,
            f"{incident.type.value} detected on {incident.service}",
            incident.description,
            {
                "incident_id": incident.id,
                "kind": AlertType.INCIDENT_DETECTED.value,
                "metrics": incident.metrics,
                "affected_resources": incident.affected_resources,
            },
            timestamp=now,
        )

        if not claimed:
            logger.warning(f"Recovery already active for {incident.service}/{incident.type.value}; not starting another")
            return

        future = self._pool.submit(self._process_new_incident, incident)
        with self._lock:
            run = self._active.get(incident.pair)
            if run is not None and run.incident_id == incident.id:
                run.future = future
        report.submitted.append(incident.id)

    def _open_incident_for(self, pair: Pair) -> Incident | None:
        for incident in self._open.values():
            if incident.pair == pair and incident.is_open:
                return incident
        return None

    def _claim(self, pair: Pair, incident_id: str) -> bool:
        with self._lock:
            if pair in self._active:
                return False
            self._active[pair] = _ActiveRun(incident_id=incident_id)
            return True

    def _release(self, pair: Pair, incident_id: str) -> None:
        with self._lock:
            run = self._active.get(pair)
            if run is not None and run.incident_id == incident_id:
                del self._active[pair]

    def _coalesce(self, existing: Incident, incident: Incident, now: datetime) -> None:
        with self._lock:
            existing.occurrence_count += incident.occurrence_count
            existing.severity = max(existing.severity, incident.severity)
            existing.metrics.update(incident.metrics)
            for resource in incident.affected_resources:
                if resource not in existing.affected_resources:
                    existing.affected_resources.append(resource)
            self._persist_incident(existing)
            count = existing.occurrence_count

        log_event(
            logger, logging.INFO, EventType.INCIDENT_COALESCED, existing.service,
            f"Detection coalesced into incident {existing.id}",
            occurrences=count, type=existing.type.value,
        )
        self._alert(
            existing.type.value, existing.service, incident.severity,
            f"{existing.type.value} recurring on {existing.service}",
            incident.description,
            {"incident_id": existing.id, "kind": "recurrence", "occurrences": count},
            timestamp=now,
        )

    # =========================================================================
    # Incident Processing (worker threads)
    # =========================================================================

    def _process_new_incident(self, incident: Incident) -> RecoveryExecution | None:
        try:
            plan = self._triage(incident)
            return self._execute_plan(incident, plan)
        except Exception as e:
            category = e.category if isinstance(e, OrchestratorError) else ErrorCategory.INTERNAL
            log_event(
                logger, logging.ERROR, EventType.INCIDENT_STATUS, incident.service,
                f"Processing of incident {incident.id} stopped: {e}",
                category=category.value, status=incident.status.value,
            )
            return None
        finally:
            self._release(incident.pair, incident.id)

    def _triage(self, incident: Incident) -> RecoveryPlan:
        classification = self._classifier.classify(incident)
        self._store.save_classification(classification)
        self._set_status(incident, IncidentStatus.INVESTIGATING)

        plan = self._planner.plan(incident, classification)
        self._store.save_plan(plan)
        return plan

    def _execute_plan(self, incident: Incident, plan: RecoveryPlan) -> RecoveryExecution:
        execution = self._executor.prepare(plan)
        with self._lock:
            run = self._active.get(incident.pair)
            if run is not None and run.incident_id == incident.id:
                run.execution = execution
        self._store.save_execution(execution)
        self._set_status(incident, IncidentStatus.MITIGATING)

        self._request_approval(incident, plan, execution)
        execution = self._executor.execute(
            plan, incident, listener=self._store.save_execution, execution=execution
        )
        self._handle_outcome(incident, execution)
        return execution

    def _request_approval(self, incident: Incident, plan: RecoveryPlan, execution: RecoveryExecution) -> None:
        """Ask the plan's approvers to act, unless every role already approved it."""
        if not plan.required_approvals:
            return
        decisions = self._executor.approvals.approvals_for(plan.id)
        if all(role in decisions and decisions[role].approved for role in plan.required_approvals):
            return
        self._alert(
            AlertType.APPROVAL_REQUIRED.value, incident.service, incident.severity,
            f"Approval required to recover {incident.type.value} on {incident.service}",
            f"Plan {plan.id} needs approval from: {', '.join(plan.required_approvals)}",
            {
                "incident_id": incident.id,
                "plan_id": plan.id,
                "execution_id": execution.id,
                "roles": list(plan.required_approvals),
            },
            force=True,
        )

    def _handle_outcome(self, incident: Incident, execution: RecoveryExecution) -> None:
        if execution.status == ExecutionStatus.COMPLETED:
            with self._lock:
                self._resolve(incident, utc_now())
                self._release(incident.pair, incident.id)
            self._alert(
                AlertType.RECOVERY_SUCCEEDED.value, incident.service, Severity.LOW,
                f"Recovery succeeded for {incident.type.value} on {incident.service}",
                f"Plan {execution.plan_id} completed and the post-check passed.",
                {"incident_id": incident.id, "execution_id": execution.id},
            )
            return

        self._set_status(incident, IncidentStatus.MITIGATING)
        failed = execution.failed_step
        reason = failed.error if failed else "post-check detected the anomaly is still present"
        self._alert(
            AlertType.RECOVERY_FAILED.value, incident.service, Severity.CRITICAL,
            f"Recovery {execution.status.value} for {incident.type.value} on {incident.service}",
            f"Automated recovery did not resolve the incident: {reason}",
            {
                "incident_id": incident.id,
                "execution_id": execution.id,
                "status": execution.status.value,
                "cancelled": execution.cancelled,
            },
            force=True,
        )

    # =========================================================================
    # Incident State
    # =========================================================================

    def _set_status(self, incident: Incident, status: IncidentStatus) -> None:
        with self._lock:
            previous = incident.status
            incident.status = status
            self._persist_incident(incident)
        if previous != status:
            log_event(
                logger, logging.INFO, EventType.INCIDENT_STATUS, incident.service,
                f"Incident {incident.id} {previous.value} -> {status.value}",
            )

    def _resolve(self, incident: Incident, at: datetime) -> None:
        with self._lock:
            incident.status = IncidentStatus.RESOLVED
            incident.resolved_at = at
            self._open.pop(incident.id, None)
            self._persist_incident(incident)
        self._detector.forget(incident.service, incident.type, at)
        log_event(
            logger, logging.INFO, EventType.INCIDENT_RESOLVED, incident.service,
            f"Incident {incident.id} resolved", type=incident.type.value,
        )

    def _persist_incident(self, incident: Incident) -> None:
        self._store.save_incident(incident)

    def _alert(
        self,
        alert_type: str,
        source: str,
        severity: Severity,
        title: str,
        message: str,
        metadata: dict,
        timestamp: datetime | None = None,
        force: bool = False,
    ) -> None:
        alert = Alert(
            type=alert_type,
            source=source,
            severity=severity,
            title=title,
            message=message,
            metadata=metadata,
            timestamp=timestamp or utc_now(),
        )
        self._router.route(alert, force=force)

    # =========================================================================
    # Sweep
    # =========================================================================

    def _sweep(self, now: datetime, report: TickReport) -> None:
        aggregator = self._router.aggregator
        for group in aggregator.aggregate(now=now):
            report.resolved_groups.append(group.id)
            self._router.notify_resolved(group)

        with self._lock:
            candidates = [i for i in self._open.values() if i.pair not in self._active]
        for incident in candidates:
            if aggregator.active_group(incident.type.value, incident.service) is None:
                self._resolve(incident, now)
                report.resolved_incidents.append(incident.id)

        self._persist_alert_groups()
        aggregator.prune(RESOLVED_GROUP_RETENTION, now=now)

    def _persist_alert_groups(self) -> None:
        for group in self._router.aggregator.get_groups():
            try:
                self._store.save_alert_group(group)
            except OrchestratorError as e:
                logger.error(f"Failed to persist alert group {group.id}: {e}")

    # =========================================================================
    # Scheduler
    # =========================================================================

    def start(self) -> None:
        """Run ticks in a background thread; the first tick runs immediately.

        Raises:
            RuntimeError: If the loop is already running.
        """
        with self._lock:
            if self.is_running():
                raise RuntimeError("Control loop already running")
            self._stop_event.clear()
            self._thread = threading.Thread(target=self._run, name="control-loop", daemon=True)
            self._thread.start()
        logger.info(f"Control loop started (interval {self._config.interval_seconds}s)")

    def stop(self, timeout: float | None = None) -> None:
        """Stop the background thread after the current tick.

        Raises:
            RuntimeError: If the loop is not running.
        """
        with self._lock:
            if not self.is_running():
                raise RuntimeError("Control loop not running")
            thread = self._thread
            self._stop_event.set()
        thread.join(timeout)
        with self._lock:
            self._thread = None
        logger.info("Control loop stopped")

    def is_running(self) -> bool:
        thread = self._thread
        return thread is not None and thread.is_alive() and not self._stop_event.is_set()

    def _run(self) -> None:
        while not self._stop_event.is_set():
            self.tick()
            self._stop_event.wait(self._config.interval_seconds)

    def wait_for_executions(self, timeout: float | None = None) -> bool:
        """Block until every submitted execution finished.

        Returns:
            True if all finished within ``timeout``.
        """
        with self._lock:
            futures = [run.future for run in self._active.values() if run.future is not None]
        if not futures:
            return True
        _, not_done = wait(futures, timeout=timeout)
        return not not_done

    def close(self) -> None:
        """Stop the scheduler (if running), drain the pool and persist alert groups."""
        if self.is_running():
            self.stop()
        self._pool.shutdown(wait=True)
        self._persist_alert_groups()

    # =========================================================================
    # Operator Actions
    # =========================================================================

    def retry_incident(self, incident_id: str, plan: RecoveryPlan | None = None) -> str:
        """Start a fresh execution for an unresolved incident.

        Args:
            incident_id: Incident to retry.
            plan: Replacement plan (e.g. from ``RecoveryPlanner.manual_plan``);
                defaults to the incident's latest plan.

        Returns:
            The new execution id.

        Raises:
            IncidentNotFoundError: If the incident is unknown.
            OrchestratorError: If it is resolved or already being recovered.
            PlanningError: If ``plan`` belongs to another incident.
        """
        with self._lock:
            incident = self._open.get(incident_id)
        if incident is None:
            stored = self._store.get_incident(incident_id)
            if stored is None:
                raise IncidentNotFoundError(incident_id)
            raise OrchestratorError(
                f"Incident {incident_id} is {stored.status.value}; only unresolved incidents can be retried",
                context={"incident_id": incident_id},
            )

        if plan is None:
            plan = self._store.get_latest_plan(incident_id)
            if plan is None:
                plan = self._planner.plan(incident, self._store.get_latest_classification(incident_id))
        elif plan.incident_id != incident_id:
            raise PlanningError(incident.type.value, reason=f"plan {plan.id} belongs to incident {plan.incident_id}")
        self._store.save_plan(plan)

        if not self._claim(incident.pair, incident.id):
            raise OrchestratorError(
                f"Recovery already active for {incident.service}/{incident.type.value}",
                context={"incident_id": incident_id},
            )

        execution = self._executor.prepare(plan)
        with self._lock:
            self._active[incident.pair].execution = execution
            self._active[incident.pair].future = self._pool.submit(
                self._run_retry, incident, plan, execution
            )
        logger.info(f"Retrying incident {incident_id} with plan {plan.id} ({plan.authored_by})")
        return execution.id

    def _run_retry(self, incident: Incident, plan: RecoveryPlan, execution: RecoveryExecution) -> None:
        try:
            self._store.save_execution(execution)
            self._set_status(incident, IncidentStatus.MITIGATING)
            self._request_approval(incident, plan, execution)
            execution = self._executor.execute(
                plan, incident, listener=self._store.save_execution, execution=execution
            )
            self._handle_outcome(incident, execution)
        except Exception as e:
            logger.error(f"Retry of incident {incident.id} failed: {e}", exc_info=True)
        finally:
            self._release(incident.pair, incident.id)

    def recover_interrupted(self) -> list[str]:
        """Fail executions left unfinished by a previous process.

        Each interrupted execution is marked ``failed``, its incident moves to
        ``mitigating`` and a critical alert is raised.

        Returns:
            Ids of the executions marked failed.
        """
        with self._lock:
            running = {run.execution.id for run in self._active.values() if run.execution}
        interrupted = [
            e for status in (ExecutionStatus.PENDING, ExecutionStatus.IN_PROGRESS)
            for e in self._store.list_executions(status=status)
            if e.id not in running
        ]

        recovered: list[str] = []
        now = utc_now()
        for execution in interrupted:
            for record in execution.steps:
                if record.status == StepStatus.IN_PROGRESS:
                    record.status = StepStatus.FAILED
                    record.finished_at = now
                    record.error = "interrupted by orchestrator restart"
                    record.error_category = ErrorCategory.INTERNAL
            execution.status = ExecutionStatus.FAILED
            execution.end_time = now
            execution.metrics["interrupted"] = True
            self._store.save_execution(execution)
            recovered.append(execution.id)

            with self._lock:
                incident = self._open.get(execution.incident_id)
            if incident is None:
                incident = self._store.get_incident(execution.incident_id)
            if incident is None or not incident.is_open:
                continue
            with self._lock:
                self._open[incident.id] = incident
            self._set_status(incident, IncidentStatus.MITIGATING)
            self._alert(
                AlertType.RECOVERY_FAILED.value, incident.service, Severity.CRITICAL,
                f"Recovery interrupted for {incident.type.value} on {incident.service}",
                f"Execution {execution.id} was interrupted and has been marked failed; "
                "steps may need manual verification.",
                {"incident_id": incident.id, "execution_id": execution.id, "status": "failed"},
                force=True,
            )

        if recovered:
            logger.warning(f"Marked {len(recovered)} interrupted executions as failed")
        return recovered

    def approve_plan(self, plan_id: str, role: str, by: str | None = None) -> None:
        self._executor.approvals.approve(plan_id, role, by=by)

    def reject_plan(self, plan_id: str, role: str, by: str | None = None, reason: str | None = None) -> None:
        self._executor.approvals.reject(plan_id, role, by=by, reason=reason)

    def sign_off_step(
        self,
        execution_id: str,
        order: int,
        approved: bool = True,
        by: str | None = None,
        reason: str | None = None,
    ) -> None:
        self._executor.approvals.sign_off(execution_id, order, approved=approved, by=by, reason=reason)

    def cancel_execution(self, execution_id: str) -> bool:
        return self._executor.cancel(execution_id)

    # =========================================================================
    # Status
    # =========================================================================

    def get_open_incidents(self) -> list[Incident]:
        with self._lock:
            return sorted(self._open.values(), key=lambda i: i.timestamp)

    def get_system_status(self) -> SystemStatus:
        """Snapshot of incidents, executions, alert groups and pending decisions."""
        with self._lock:
            incidents = [IncidentSnapshot.from_incident(i) for i in self._open.values()]
            executions = [
                ExecutionSnapshot.from_execution(run.execution)
                for run in self._active.values()
                if run.execution is not None
            ]
            last_tick = self._last_tick
            ticks = self._ticks_completed

        pending = self._executor.approvals.pending()
        providers = self._gateway.health_check() if self._gateway is not None else {}
        status = SystemStatus(
            running=self.is_running(),
            interval_seconds=self._config.interval_seconds,
            last_tick=last_tick,
            ticks_completed=ticks,
            open_incidents=incidents,
            active_executions=executions,
            active_alert_groups=[
                AlertGroupSnapshot.from_group(g)
                for g in self._router.aggregator.get_groups(AlertGroupStatus.ACTIVE)
            ],
            pending_approvals=pending["approvals"],
            pending_sign_offs=pending["sign_offs"],
            metrics_providers=providers,
        )
        log_event(
            logger, logging.DEBUG, EventType.SYSTEM_STATUS, "orchestrator",
            f"{len(incidents)} open incidents, {len(executions)} active executions",
        )
        return status
