"""
Alert aggregation - deduplicates alerts into groups.

Alerts sharing ``(type, source)`` join the active group for that key while
the group keeps receiving alerts within the aggregation window. The sweep
(``aggregate``) resolves groups that have been silent for a full window.
The aggregator is the only writer of alert group state.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import replace
from datetime import datetime, timedelta

from incident_orchestrator.core.config import AlertingConfig, get_config
from incident_orchestrator.core.constants import AlertGroupStatus
from incident_orchestrator.core.logging import EventType, get_logger, log_event
from incident_orchestrator.core.models import Alert, AlertGroup
from incident_orchestrator.core.utils import utc_now

logger = get_logger(__name__)


def _snapshot(group: AlertGroup) -> AlertGroup:
    return replace(group, alert_ids=list(group.alert_ids))


class AlertAggregator:
    """Groups alerts by (type, source) within a sliding window.

    Example:
        >>> aggregator = AlertAggregator(window=timedelta(minutes=15))
        >>> group, created = aggregator.add(alert)
        >>> resolved = aggregator.aggregate()
    """

    def __init__(
        self,
        window: timedelta | None = None,
        config: AlertingConfig | None = None,
    ) -> None:
        if window is None:
            cfg = config or get_config().alerting
            window = timedelta(minutes=cfg.aggregation_window_minutes)
        self.window = window
        self._groups: dict[str, AlertGroup] = {}
        self._active: dict[tuple[str, str], str] = {}
        # Groups resolved inside add(), reported by the next sweep
        self._unreported: list[str] = []
        self._lock = threading.Lock()

    def load(self, groups: list[AlertGroup]) -> None:
        """Restore previously persisted groups (e.g. at startup)."""
        with self._lock:
            for group in groups:
                self._groups[group.id] = _snapshot(group)
                if group.is_active:
                    self._active[group.key] = group.id

    def add(self, alert: Alert) -> tuple[AlertGroup, bool]:
        """Add an alert to its group.

        Returns:
            Tuple of (group snapshot, created) where ``created`` is True when
            the alert opened a new group.
        """
        key = (alert.type, alert.source)
        with self._lock:
            group = self._current_group(key, alert.timestamp)
            if group is not None:
                group.count += 1
                group.alert_ids.append(alert.id)
                group.last_occurrence = max(group.last_occurrence, alert.timestamp)
                group.max_severity = max(group.max_severity, alert.severity)
                created = False
            else:
                group = AlertGroup(
                    type=alert.type,
                    source=alert.source,
                    first_occurrence=alert.timestamp,
                    last_occurrence=alert.timestamp,
                    alert_ids=[alert.id],
                    max_severity=alert.severity,
                )
                self._groups[group.id] = group
                self._active[key] = group.id
                created = True
            result = _snapshot(group)

        log_event(
            logger, logging.DEBUG, EventType.ALERT_GROUPED, alert.source,
            "Opened alert group" if created else "Alert joined group",
            type=alert.type, group_id=result.id, count=result.count,
        )
        return result, created

    def _current_group(self, key: tuple[str, str], at: datetime) -> AlertGroup | None:
        """Active group for ``key`` still within the window, resolving a stale one."""
        group_id = self._active.get(key)
        if group_id is None:
            return None
        group = self._groups[group_id]
        if at - group.last_occurrence < self.window:
            return group
        self._resolve(group, group.last_occurrence + self.window)
        self._unreported.append(group.id)
        return None

    def _resolve(self, group: AlertGroup, at: datetime) -> None:
        group.status = AlertGroupStatus.RESOLVED
        group.resolved_at = at
        self._active.pop(group.key, None)
        log_event(
            logger, logging.INFO, EventType.ALERT_GROUP_RESOLVED, group.source,
            f"Alert group resolved after {group.count} alerts", type=group.type, group_id=group.id,
        )

    def aggregate(self, now: datetime | None = None, window: timedelta | None = None) -> list[AlertGroup]:
        """Resolve groups with no alert inside ``window``.

        Args:
            now: Reference time (defaults to current UTC time).
            window: Silence required to resolve (defaults to the aggregator window).

        Returns:
            Snapshots of the groups resolved by this sweep, preceded by
            those resolved in ``add`` since the previous sweep.
        """
        now = now or utc_now()
        window = window or self.window
        resolved: list[AlertGroup] = []
        with self._lock:
            resolved.extend(_snapshot(self._groups[gid]) for gid in self._unreported if gid in self._groups)
            self._unreported.clear()
            for group_id in list(self._active.values()):
                group = self._groups[group_id]
                if now - group.last_occurrence >= window:
                    self._resolve(group, now)
                    resolved.append(_snapshot(group))
        return resolved

    def get_groups(self, status: AlertGroupStatus | None = None) -> list[AlertGroup]:
        with self._lock:
            groups = [_snapshot(g) for g in self._groups.values()]
        if status is not None:
            groups = [g for g in groups if g.status == status]
        return sorted(groups, key=lambda g: g.first_occurrence)

    def active_group(self, alert_type: str, source: str) -> AlertGroup | None:
        with self._lock:
            group_id = self._active.get((alert_type, source))
            return _snapshot(self._groups[group_id]) if group_id else None

    def prune(self, older_than: timedelta, now: datetime | None = None) -> int:
        """Forget resolved groups resolved more than ``older_than`` ago."""
        now = now or utc_now()
        with self._lock:
            stale = [
                gid for gid, g in self._groups.items()
                if g.status == AlertGroupStatus.RESOLVED and g.resolved_at and now - g.resolved_at > older_than
            ]
            for gid in stale:
                del self._groups[gid]
        return len(stale)
