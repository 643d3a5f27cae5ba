"""
Anomaly detector - turns metric samples into incidents.

Detection runs two rule families over every sample in the window:

1. Static thresholds (critical breach -> critical, warning breach -> high)
2. Rolling baseline deviation (|z| above ``baseline_sigma``)

Candidate incidents are coalesced so that a ``(service, type)`` pair yields
at most one incident per coalescing window, both within one call and across
consecutive calls.
"""

from __future__ import annotations

import logging
import threading
from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime, timedelta

from incident_orchestrator.core.config import DetectionConfig, get_config
from incident_orchestrator.core.constants import DetectionMethod, IncidentType, Severity
from incident_orchestrator.core.exceptions import (
    MetricsUnavailableError,
    RuleNotFoundError,
)
from incident_orchestrator.core.logging import EventType, get_logger, log_event
from incident_orchestrator.core.models import (
    DetectionTrigger,
    Incident,
    MetricSample,
    TimeRange,
)
from incident_orchestrator.detection.baseline import RollingBaseline
from incident_orchestrator.detection.rules import (
    MonitoringRule,
    RuleRegistry,
    evaluate_threshold,
)
from incident_orchestrator.metrics.gateway import MetricsGateway

logger = get_logger(__name__)


@dataclass(frozen=True)
class _Breach:
    """A single rule violation found in one sample."""

    rule: MonitoringRule
    sample: MetricSample
    severity: Severity
    method: DetectionMethod
    description: str


def _dimensions_match(sample: MetricSample, rule: MonitoringRule) -> bool:
    return all(sample.dimensions.get(k) == v for k, v in rule.dimensions.items())


class AnomalyDetector:
    """Rule- and baseline-driven incident detector.

    Example:
        >>> detector = AnomalyDetector(gateway, RuleRegistry.from_config(cfg.rules))
        >>> incidents = detector.detect(TimeRange.last(5))
    """

    def __init__(
        self,
        gateway: MetricsGateway,
        registry: RuleRegistry,
        config: DetectionConfig | None = None,
        baseline: RollingBaseline | None = None,
    ) -> None:
        self._gateway = gateway
        self._registry = registry
        self._config = config or get_config().detection
        self._baseline = baseline or RollingBaseline(
            window=timedelta(days=self._config.baseline_window_days),
            min_samples=self._config.min_baseline_samples,
            sigma=self._config.baseline_sigma,
        )
        self._baseline_severity = Severity.from_string(self._config.baseline_severity)
        self._coalesce_window = timedelta(minutes=self._config.coalesce_window_minutes)

        # Timestamp of the last incident raised per (service, type)
        self._recent: dict[tuple[str, IncidentType], datetime] = {}
        # Breaches at or before an incident's resolution belong to that incident
        self._resolved_floor: dict[tuple[str, IncidentType], datetime] = {}
        # Newest sample folded into the baseline per stream
        self._baseline_watermark: dict[str, datetime] = {}
        self._lock = threading.Lock()

    @property
    def registry(self) -> RuleRegistry:
        return self._registry

    @property
    def baseline(self) -> RollingBaseline:
        return self._baseline

    def seed(self, samples: list[MetricSample]) -> int:
        """Bootstrap baseline history from past samples."""
        with self._lock:
            for sample in samples:
                key = sample.stream_key()
                mark = self._baseline_watermark.get(key)
                if mark is None or sample.timestamp > mark:
                    self._baseline_watermark[key] = sample.timestamp
        return self._baseline.seed(samples)

    # =========================================================================
    # Detection
    # =========================================================================

    def detect(self, window: TimeRange) -> list[Incident]:
        """Evaluate every enabled rule over ``window``.

        Args:
            window: Time range to query.

        Returns:
            Newly raised incidents, at most one per (service, type) per
            coalescing window. Empty when the metrics gateway is unreachable.
        """
        rules = self._registry.get_rules(enabled_only=True)
        if not rules:
            return []

        groups: dict[tuple[str, tuple[tuple[str, str], ...]], list[MonitoringRule]] = defaultdict(list)
        for rule in rules:
            groups[(rule.namespace, tuple(sorted(rule.dimensions.items())))].append(rule)

        breaches: list[_Breach] = []
        for (namespace, dims), group_rules in groups.items():
            metric_names = sorted({r.metric_name for r in group_rules})
            try:
                samples = self._gateway.query(namespace, metric_names, dict(dims), window)
            except MetricsUnavailableError as e:
                log_event(
                    logger, logging.WARNING, EventType.DETECTION_DEGRADED, namespace,
                    "Metrics unavailable, skipping detection", error=e.message,
                )
                continue
            breaches.extend(self._evaluate_samples(samples, group_rules))

        breaches.sort(key=lambda b: b.sample.timestamp)
        with self._lock:
            incidents = self._coalesce(breaches)

        for incident in incidents:
            log_event(
                logger, logging.WARNING, EventType.INCIDENT_DETECTED, incident.service,
                incident.description,
                incident_id=incident.id, type=incident.type.value, severity=incident.severity.value,
            )
        return incidents

    def _evaluate_samples(
        self,
        samples: list[MetricSample],
        rules: list[MonitoringRule],
    ) -> list[_Breach]:
        breaches: list[_Breach] = []
        for sample in samples:
            matching = [r for r in rules if r.metric_name == sample.name and _dimensions_match(sample, r)]
            if not matching:
                continue
            for rule in matching:
                breach = self._evaluate(rule, sample)
                if breach is not None:
                    breaches.append(breach)
            if any(r.baseline_enabled for r in matching):
                self._fold_into_baseline(sample)
        return breaches

    def _evaluate(self, rule: MonitoringRule, sample: MetricSample) -> _Breach | None:
        value = sample.value

        if rule.critical is not None and evaluate_threshold(value, rule.operator, rule.critical):
            return _Breach(
                rule, sample, Severity.CRITICAL, DetectionMethod.THRESHOLD,
                f"{sample.name}={value:g} breached critical threshold ({rule.operator} {rule.critical:g})",
            )
        if rule.warning is not None and evaluate_threshold(value, rule.operator, rule.warning):
            return _Breach(
                rule, sample, Severity.HIGH, DetectionMethod.THRESHOLD,
                f"{sample.name}={value:g} breached warning threshold ({rule.operator} {rule.warning:g})",
            )

        if rule.baseline_enabled:
            anomalous, z = self._baseline.is_anomalous(sample.namespace, sample.name, value, sample.timestamp)
            if anomalous:
                return _Breach(
                    rule, sample, self._baseline_severity, DetectionMethod.BASELINE,
                    f"{sample.name}={value:g} deviates {z:.1f} standard deviations from baseline",
                )
        return None

    def _fold_into_baseline(self, sample: MetricSample) -> None:
        """Append a sample to the baseline once, even if later windows overlap."""
        key = sample.stream_key()
        with self._lock:
            mark = self._baseline_watermark.get(key)
            if mark is not None and sample.timestamp <= mark:
                return
            self._baseline_watermark[key] = sample.timestamp
        self._baseline.add(sample.namespace, sample.name, sample.timestamp, sample.value)

    # =========================================================================
    # Coalescing
    # =========================================================================

    def _coalesce(self, breaches: list[_Breach]) -> list[Incident]:
        """Fold breaches into incidents, one per pair per coalescing window."""
        incidents: list[Incident] = []
        current: dict[tuple[str, IncidentType], Incident] = {}

        for breach in breaches:
            key = (breach.rule.service, breach.rule.incident_type)
            ts = breach.sample.timestamp

            open_incident = current.get(key)
            if open_incident is not None and ts - open_incident.timestamp < self._coalesce_window:
                self._merge(open_incident, breach)
                continue

            floor = self._resolved_floor.get(key)
            if floor is not None and ts <= floor:
                continue

            last = self._recent.get(key)
            if last is not None and ts - last < self._coalesce_window:
                logger.debug(
                    f"Suppressed duplicate {key[1].value} for {key[0]} within coalescing window"
                )
                continue

            incident = self._new_incident(breach)
            self._recent[key] = ts
            current[key] = incident
            incidents.append(incident)

        return incidents

    @staticmethod
    def _affected_resources(breach: _Breach) -> list[str]:
        resources = list(breach.rule.affected_resources)
        resources.extend(f"{k}:{v}" for k, v in sorted(breach.sample.dimensions.items()))
        return resources or [breach.rule.service]

    def _new_incident(self, breach: _Breach) -> Incident:
        return Incident(
            type=breach.rule.incident_type,
            severity=breach.severity,
            service=breach.rule.service,
            description=breach.description,
            metrics={breach.sample.name: breach.sample.value},
            affected_resources=self._affected_resources(breach),
            trigger=self._trigger(breach),
            timestamp=breach.sample.timestamp,
        )

    def _merge(self, incident: Incident, breach: _Breach) -> None:
        incident.occurrence_count += 1
        incident.metrics[breach.sample.name] = breach.sample.value
        for resource in self._affected_resources(breach):
            if resource not in incident.affected_resources:
                incident.affected_resources.append(resource)
        if breach.severity > incident.severity:
            incident.severity = breach.severity
            incident.description = breach.description
            incident.trigger = self._trigger(breach)
        log_event(
            logger, logging.DEBUG, EventType.INCIDENT_COALESCED, incident.service,
            "Merged breach into incident", incident_id=incident.id, count=incident.occurrence_count,
        )

    @staticmethod
    def _trigger(breach: _Breach) -> DetectionTrigger:
        return DetectionTrigger(
            rule_id=breach.rule.id,
            namespace=breach.sample.namespace,
            metric_name=breach.sample.name,
            method=breach.method,
            observed_value=breach.sample.value,
            dimensions=dict(breach.rule.dimensions),
        )

    def forget(self, service: str, incident_type: IncidentType, resolved_at: datetime) -> None:
        """Close the coalescing memory for a pair whose incident resolved at ``resolved_at``.

        Breaches sampled after ``resolved_at`` open a new incident right away;
        older ones still visible in an overlapping window are ignored.
        """
        key = (service, incident_type)
        with self._lock:
            self._recent.pop(key, None)
            floor = self._resolved_floor.get(key)
            if floor is None or resolved_at > floor:
                self._resolved_floor[key] = resolved_at

    # =========================================================================
    # Post-check
    # =========================================================================

    def recheck(self, incident: Incident, window: TimeRange) -> bool:
        """Re-query the metric that triggered ``incident``.

        Returns:
            True if the anomaly is still present in the latest sample.

        Raises:
            MetricsUnavailableError: If the outcome cannot be verified
                (no trigger, unknown rule, gateway down or no samples).
        """
        trigger = incident.trigger
        if trigger is None:
            raise MetricsUnavailableError(incident.service, reason="incident has no detection trigger")
        try:
            rule = self._registry.get_rule(trigger.rule_id)
        except RuleNotFoundError as e:
            raise MetricsUnavailableError(
                trigger.namespace, metric_names=[trigger.metric_name], reason="detection rule no longer exists"
            ) from e

        samples = self._gateway.query(trigger.namespace, [trigger.metric_name], trigger.dimensions, window)
        relevant = [s for s in samples if s.name == trigger.metric_name and _dimensions_match(s, rule)]
        if not relevant:
            raise MetricsUnavailableError(
                trigger.namespace, metric_names=[trigger.metric_name], reason="no samples in post-check window"
            )

        latest = relevant[-1]
        if trigger.method == DetectionMethod.THRESHOLD:
            still_present = any(
                t is not None and evaluate_threshold(latest.value, rule.operator, t)
                for t in (rule.warning, rule.critical)
            )
        else:
            still_present, _ = self._baseline.is_anomalous(
                latest.namespace, latest.name, latest.value, latest.timestamp
            )

        log_event(
            logger, logging.INFO, EventType.POSTCHECK, incident.service,
            "Anomaly still present" if still_present else "Anomaly cleared",
            incident_id=incident.id, metric=trigger.metric_name, value=latest.value,
        )
        return still_present
