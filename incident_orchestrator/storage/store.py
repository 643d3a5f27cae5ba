"""
SQLite state store for incidents, plans, executions and alert groups.

Lists and maps are stored as JSON columns, timestamps as ISO-8601 text and
durations as seconds. Every record is keyed by its UUID; saving an existing
id replaces the row, so records can be persisted again as they progress.
Executions are never deleted.

All access goes through a single lock, so the store can be shared between
the control loop and its worker threads.
"""

from __future__ import annotations

import json
import sqlite3
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime, timedelta
from typing import Any

from incident_orchestrator.core.config import get_config
from incident_orchestrator.core.constants import (
    AlertGroupStatus,
    ExecutionStatus,
    IncidentStatus,
    IncidentType,
    Severity,
    ValidationType,
)
from incident_orchestrator.core.exceptions import DatabaseError
from incident_orchestrator.core.logging import get_logger
from incident_orchestrator.core.models import (
    AlertGroup,
    Classification,
    DetectionTrigger,
    HistoricalIncident,
    Incident,
    RecoveryExecution,
    RecoveryPlan,
    RecoveryStep,
    StepExecutionRecord,
    StepValidation,
)
from incident_orchestrator.core.protocols import IncidentHistory
from incident_orchestrator.core.utils import format_timestamp, parse_timestamp

logger = get_logger(__name__)

SCHEMA_VERSION = "1.0"

CREATE_TABLES_SQL = [
    """
    CREATE TABLE IF NOT EXISTS incidents (
        id TEXT PRIMARY KEY,
        timestamp TEXT NOT NULL,
        type TEXT NOT NULL,
        severity TEXT NOT NULL,
        service TEXT NOT NULL,
        description TEXT NOT NULL,
        metrics TEXT NOT NULL DEFAULT '{}',
        affected_resources TEXT NOT NULL DEFAULT '[]',
        status TEXT NOT NULL,
        detection_trigger TEXT,
        resolved_at TEXT,
        occurrence_count INTEGER NOT NULL DEFAULT 1,

        CHECK (status IN ('detected', 'investigating', 'mitigating', 'resolved'))
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS classifications (
        id TEXT PRIMARY KEY,
        incident_id TEXT NOT NULL,
        category TEXT NOT NULL,
        root_cause TEXT NOT NULL,
        impact_level TEXT NOT NULL,
        required_actions TEXT NOT NULL DEFAULT '[]',
        priority INTEGER NOT NULL,
        estimated_resolution_seconds REAL NOT NULL,
        created_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS recovery_plans (
        id TEXT PRIMARY KEY,
        incident_id TEXT NOT NULL,
        steps TEXT NOT NULL,
        estimated_total_seconds REAL NOT NULL,
        required_approvals TEXT NOT NULL DEFAULT '[]',
        risks TEXT NOT NULL DEFAULT '[]',
        authored_by TEXT NOT NULL,
        created_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS recovery_executions (
        id TEXT PRIMARY KEY,
        plan_id TEXT NOT NULL,
        incident_id TEXT NOT NULL,
        status TEXT NOT NULL,
        start_time TEXT NOT NULL,
        end_time TEXT,
        steps TEXT NOT NULL DEFAULT '[]',
        metrics TEXT NOT NULL DEFAULT '{}',
        postcheck_passed INTEGER,
        cancelled INTEGER NOT NULL DEFAULT 0
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS alert_groups (
        id TEXT PRIMARY KEY,
        type TEXT NOT NULL,
        source TEXT NOT NULL,
        count INTEGER NOT NULL,
        first_occurrence TEXT NOT NULL,
        last_occurrence TEXT NOT NULL,
        status TEXT NOT NULL,
        alert_ids TEXT NOT NULL DEFAULT '[]',
        max_severity TEXT NOT NULL,
        resolved_at TEXT
    )
    """,
]

CREATE_INDEXES_SQL = [
    """CREATE INDEX IF NOT EXISTS idx_incident_pair
       ON incidents(service, type, timestamp DESC)""",
    """CREATE INDEX IF NOT EXISTS idx_incident_status
       ON incidents(status)""",
    """CREATE INDEX IF NOT EXISTS idx_classification_incident
       ON classifications(incident_id, created_at DESC)""",
    """CREATE INDEX IF NOT EXISTS idx_plan_incident
       ON recovery_plans(incident_id, created_at DESC)""",
    """CREATE INDEX IF NOT EXISTS idx_execution_status
       ON recovery_executions(status, start_time)""",
    """CREATE INDEX IF NOT EXISTS idx_alert_group_key
       ON alert_groups(type, source, status)""",
]


# =============================================================================
# Row Conversion
# =============================================================================


def _step_to_dict(step: RecoveryStep) -> dict[str, Any]:
    return {
        "order": step.order,
        "action": step.action,
        "description": step.description,
        "estimated_duration_seconds": step.estimated_duration.total_seconds(),
        "validation": {
            "type": step.validation.type.value,
            "criteria": step.validation.criteria,
            "metric_name": step.validation.metric_name,
            "operator": step.validation.operator,
            "threshold": step.validation.threshold,
        },
        "required_resources": list(step.required_resources),
        "rollback_procedure": step.rollback_procedure,
        "parameters": step.parameters,
        "rollback_parameters": step.rollback_parameters,
        "destructive": step.destructive,
    }


def _step_from_dict(data: dict[str, Any]) -> RecoveryStep:
    validation = data["validation"]
    return RecoveryStep(
        order=int(data["order"]),
        action=data["action"],
        description=data["description"],
        estimated_duration=timedelta(seconds=data["estimated_duration_seconds"]),
        validation=StepValidation(
            type=ValidationType(validation["type"]),
            criteria=validation["criteria"],
            metric_name=validation.get("metric_name"),
            operator=validation.get("operator"),
            threshold=validation.get("threshold"),
        ),
        required_resources=tuple(data.get("required_resources", ())),
        rollback_procedure=data.get("rollback_procedure"),
        parameters=dict(data.get("parameters") or {}),
        rollback_parameters=dict(data.get("rollback_parameters") or {}),
        destructive=bool(data.get("destructive", True)),
    )


def _ts(value: str | None) -> datetime | None:
    return parse_timestamp(value) if value else None


def _incident_from_row(row: sqlite3.Row) -> Incident:
    trigger = json.loads(row["detection_trigger"]) if row["detection_trigger"] else None
    return Incident(
        id=row["id"],
        timestamp=_ts(row["timestamp"]),
        type=IncidentType(row["type"]),
        severity=Severity(row["severity"]),
        service=row["service"],
        description=row["description"],
        metrics=json.loads(row["metrics"]),
        affected_resources=json.loads(row["affected_resources"]),
        status=IncidentStatus(row["status"]),
        trigger=DetectionTrigger.from_dict(trigger) if trigger else None,
        resolved_at=_ts(row["resolved_at"]),
        occurrence_count=row["occurrence_count"],
    )


def _classification_from_row(row: sqlite3.Row) -> Classification:
    return Classification(
        id=row["id"],
        incident_id=row["incident_id"],
        category=row["category"],
        root_cause=row["root_cause"],
        impact_level=Severity(row["impact_level"]),
        required_actions=tuple(json.loads(row["required_actions"])),
        priority=row["priority"],
        estimated_resolution_time=timedelta(seconds=row["estimated_resolution_seconds"]),
        created_at=_ts(row["created_at"]),
    )


def _plan_from_row(row: sqlite3.Row) -> RecoveryPlan:
    return RecoveryPlan(
        id=row["id"],
        incident_id=row["incident_id"],
        steps=tuple(_step_from_dict(s) for s in json.loads(row["steps"])),
        estimated_total_duration=timedelta(seconds=row["estimated_total_seconds"]),
        required_approvals=tuple(json.loads(row["required_approvals"])),
        risks=tuple(json.loads(row["risks"])),
        authored_by=row["authored_by"],
        created_at=_ts(row["created_at"]),
    )


def _execution_from_row(row: sqlite3.Row) -> RecoveryExecution:
    postcheck = row["postcheck_passed"]
    return RecoveryExecution(
        id=row["id"],
        plan_id=row["plan_id"],
        incident_id=row["incident_id"],
        status=ExecutionStatus(row["status"]),
        start_time=_ts(row["start_time"]),
        end_time=_ts(row["end_time"]),
        steps=[StepExecutionRecord.from_dict(s) for s in json.loads(row["steps"])],
        metrics=json.loads(row["metrics"]),
        postcheck_passed=None if postcheck is None else bool(postcheck),
        cancelled=bool(row["cancelled"]),
    )


def _alert_group_from_row(row: sqlite3.Row) -> AlertGroup:
    return AlertGroup(
        id=row["id"],
        type=row["type"],
        source=row["source"],
        count=row["count"],
        first_occurrence=_ts(row["first_occurrence"]),
        last_occurrence=_ts(row["last_occurrence"]),
        status=AlertGroupStatus(row["status"]),
        alert_ids=json.loads(row["alert_ids"]),
        max_severity=Severity(row["max_severity"]),
        resolved_at=_ts(row["resolved_at"]),
    )


# =============================================================================
# State Store
# =============================================================================


class StateStore(IncidentHistory):
    """SQLite persistence for orchestrator state.

    Also serves as the classifier's incident history.

    Example:
        >>> store = StateStore("./incident_orchestrator.db")
        >>> store.save_incident(incident)
        >>> store.list_open_incidents()
    """

    def __init__(self, db_path: str | None = None) -> None:
        """Initialize the store.

        Args:
            db_path: Path to SQLite database. Defaults to config value.
        """
        self.db_path = db_path or get_config().storage.db_path
        self._lock = threading.Lock()
        self._init_database()

    @contextmanager
    def _get_connection(self) -> Iterator[sqlite3.Connection]:
        """Get a serialized database connection with row factory configured."""
        with self._lock:
            conn = sqlite3.connect(self.db_path)
            conn.row_factory = sqlite3.Row
            try:
                yield conn
            finally:
                conn.close()

    def _init_database(self) -> None:
        """Create tables and indexes."""
        try:
            with self._get_connection() as conn:
                for table_sql in CREATE_TABLES_SQL:
                    conn.execute(table_sql)
                for index_sql in CREATE_INDEXES_SQL:
                    conn.execute(index_sql)
                conn.commit()
        except sqlite3.Error as e:
            raise DatabaseError("initialization", db_path=self.db_path, reason=str(e), cause=e) from e
        logger.debug(f"State store ready at {self.db_path} (schema {SCHEMA_VERSION})")

    def _write(self, operation: str, sql: str, params: tuple) -> None:
        try:
            with self._get_connection() as conn:
                conn.execute(sql, params)
                conn.commit()
        except sqlite3.Error as e:
            raise DatabaseError(operation, db_path=self.db_path, reason=str(e), cause=e) from e

    def _fetch(self, sql: str, params: tuple = (), operation: str = "query") -> list[sqlite3.Row]:
        try:
            with self._get_connection() as conn:
                return conn.execute(sql, params).fetchall()
        except sqlite3.Error as e:
            raise DatabaseError(operation, db_path=self.db_path, reason=str(e), cause=e) from e

    # =========================================================================
    # Incidents
    # =========================================================================

    def save_incident(self, incident: Incident) -> None:
        self._write(
            "save incident",
            """INSERT OR REPLACE INTO incidents
               (id, timestamp, type, severity, service, description, metrics,
                affected_resources, status, detection_trigger, resolved_at, occurrence_count)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (
                incident.id,
                format_timestamp(incident.timestamp),
                incident.type.value,
                incident.severity.value,
                incident.service,
                incident.description,
                json.dumps(incident.metrics),
                json.dumps(list(incident.affected_resources)),
                incident.status.value,
                json.dumps(incident.trigger.to_dict()) if incident.trigger else None,
                format_timestamp(incident.resolved_at),
                incident.occurrence_count,
            ),
        )

    def get_incident(self, incident_id: str) -> Incident | None:
        rows = self._fetch("SELECT * FROM incidents WHERE id = ?", (incident_id,))
        return _incident_from_row(rows[0]) if rows else None

    def list_incidents(
        self,
        status: IncidentStatus | None = None,
        service: str | None = None,
        limit: int = 100,
    ) -> list[Incident]:
        """Incidents newest first, optionally filtered by status and service."""
        clauses: list[str] = []
        params: list[Any] = []
        if status is not None:
            clauses.append("status = ?")
            params.append(status.value)
        if service is not None:
            clauses.append("service = ?")
            params.append(service)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        rows = self._fetch(
            f"SELECT * FROM incidents {where} ORDER BY timestamp DESC LIMIT ?",
            (*params, limit),
        )
        return [_incident_from_row(r) for r in rows]

    def list_open_incidents(self) -> list[Incident]:
        """Every incident not yet resolved, oldest first."""
        rows = self._fetch("SELECT * FROM incidents WHERE status != 'resolved' ORDER BY timestamp")
        return [_incident_from_row(r) for r in rows]

    def recent_incidents(
        self,
        service: str,
        incident_type: IncidentType,
        limit: int,
        exclude_id: str | None = None,
    ) -> list[HistoricalIncident]:
        """Most recent incidents of a (service, type) pair with their root cause.

        The root cause is taken from each incident's latest classification;
        the resolution time is only known for resolved incidents.
        """
        rows = self._fetch(
            """SELECT i.id, i.timestamp, i.resolved_at, i.affected_resources,
                      (SELECT c.root_cause FROM classifications c
                       WHERE c.incident_id = i.id
                       ORDER BY c.created_at DESC LIMIT 1) AS root_cause
               FROM incidents i
               WHERE i.service = ? AND i.type = ? AND i.id != ?
               ORDER BY i.timestamp DESC LIMIT ?""",
            (service, incident_type.value, exclude_id or "", limit),
        )
        history: list[HistoricalIncident] = []
        for row in rows:
            detected = _ts(row["timestamp"])
            resolved = _ts(row["resolved_at"])
            history.append(
                HistoricalIncident(
                    incident_id=row["id"],
                    affected_resources=tuple(json.loads(row["affected_resources"])),
                    root_cause=row["root_cause"],
                    resolution_time=resolved - detected if resolved and detected else None,
                )
            )
        return history

    # =========================================================================
    # Classifications
    # =========================================================================

    def save_classification(self, classification: Classification) -> None:
        self._write(
            "save classification",
            """INSERT OR REPLACE INTO classifications
               (id, incident_id, category, root_cause, impact_level, required_actions,
                priority, estimated_resolution_seconds, created_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (
                classification.id,
                classification.incident_id,
                classification.category,
                classification.root_cause,
                classification.impact_level.value,
                json.dumps(list(classification.required_actions)),
                classification.priority,
                classification.estimated_resolution_time.total_seconds(),
                format_timestamp(classification.created_at),
            ),
        )

    def list_classifications(self, incident_id: str) -> list[Classification]:
        rows = self._fetch(
            "SELECT * FROM classifications WHERE incident_id = ? ORDER BY created_at",
            (incident_id,),
        )
        return [_classification_from_row(r) for r in rows]

    def get_latest_classification(self, incident_id: str) -> Classification | None:
        classifications = self.list_classifications(incident_id)
        return classifications[-1] if classifications else None

    # =========================================================================
    # Recovery Plans
    # =========================================================================

    def save_plan(self, plan: RecoveryPlan) -> None:
        self._write(
            "save plan",
            """INSERT OR REPLACE INTO recovery_plans
               (id, incident_id, steps, estimated_total_seconds, required_approvals,
                risks, authored_by, created_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?)""",
            (
                plan.id,
                plan.incident_id,
                json.dumps([_step_to_dict(s) for s in plan.steps]),
                plan.estimated_total_duration.total_seconds(),
                json.dumps(list(plan.required_approvals)),
                json.dumps(list(plan.risks)),
                plan.authored_by,
                format_timestamp(plan.created_at),
            ),
        )

    def get_plan(self, plan_id: str) -> RecoveryPlan | None:
        rows = self._fetch("SELECT * FROM recovery_plans WHERE id = ?", (plan_id,))
        return _plan_from_row(rows[0]) if rows else None

    def get_latest_plan(self, incident_id: str) -> RecoveryPlan | None:
        rows = self._fetch(
            """SELECT * FROM recovery_plans WHERE incident_id = ?
               ORDER BY created_at DESC, rowid DESC LIMIT 1""",
            (incident_id,),
        )
        return _plan_from_row(rows[0]) if rows else None

    # =========================================================================
    # Recovery Executions
    # =========================================================================

    def save_execution(self, execution: RecoveryExecution) -> None:
        self._write(
            "save execution",
            """INSERT OR REPLACE INTO recovery_executions
               (id, plan_id, incident_id, status, start_time, end_time, steps,
                metrics, postcheck_passed, cancelled)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (
                execution.id,
                execution.plan_id,
                execution.incident_id,
                execution.status.value,
                format_timestamp(execution.start_time),
                format_timestamp(execution.end_time),
                json.dumps([s.to_dict() for s in execution.steps]),
                json.dumps(execution.metrics, default=str),
                None if execution.postcheck_passed is None else int(execution.postcheck_passed),
                int(execution.cancelled),
            ),
        )

    def get_execution(self, execution_id: str) -> RecoveryExecution | None:
        rows = self._fetch("SELECT * FROM recovery_executions WHERE id = ?", (execution_id,))
        return _execution_from_row(rows[0]) if rows else None

    def list_executions(
        self,
        incident_id: str | None = None,
        status: ExecutionStatus | None = None,
    ) -> list[RecoveryExecution]:
        """Executions oldest first, optionally filtered."""
        clauses: list[str] = []
        params: list[Any] = []
        if incident_id is not None:
            clauses.append("incident_id = ?")
            params.append(incident_id)
        if status is not None:
            clauses.append("status = ?")
            params.append(status.value)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        rows = self._fetch(
            f"SELECT * FROM recovery_executions {where} ORDER BY start_time, rowid",
            tuple(params),
        )
        return [_execution_from_row(r) for r in rows]

    # =========================================================================
    # Alert Groups
    # =========================================================================

    def save_alert_group(self, group: AlertGroup) -> None:
        self._write(
            "save alert group",
            """INSERT OR REPLACE INTO alert_groups
               (id, type, source, count, first_occurrence, last_occurrence, status,
                alert_ids, max_severity, resolved_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (
                group.id,
                group.type,
                group.source,
                group.count,
                format_timestamp(group.first_occurrence),
                format_timestamp(group.last_occurrence),
                group.status.value,
                json.dumps(list(group.alert_ids)),
                group.max_severity.value,
                format_timestamp(group.resolved_at),
            ),
        )

    def list_alert_groups(self, status: AlertGroupStatus | None = None) -> list[AlertGroup]:
        if status is None:
            rows = self._fetch("SELECT * FROM alert_groups ORDER BY first_occurrence")
        else:
            rows = self._fetch(
                "SELECT * FROM alert_groups WHERE status = ? ORDER BY first_occurrence",
                (status.value,),
            )
        return [_alert_group_from_row(r) for r in rows]

    def get_statistics(self) -> dict[str, Any]:
        """Row counts per table and incident counts per status."""
        with self._get_connection() as conn:
            stats: dict[str, Any] = {}
            for table in ("incidents", "classifications", "recovery_plans", "recovery_executions", "alert_groups"):
                stats[table] = conn.execute(f"SELECT COUNT(*) FROM {table}").fetchone()[0]
            rows = conn.execute("SELECT status, COUNT(*) AS n FROM incidents GROUP BY status").fetchall()
            stats["incidents_by_status"] = {row["status"]: row["n"] for row in rows}
        return stats
