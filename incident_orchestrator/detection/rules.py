"""
Monitoring rules and the rule registry.

A rule binds one metric stream to a service and an incident type. It can
carry static thresholds, a rolling baseline, or both.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass, field, replace
from typing import Any

from incident_orchestrator.core.constants import THRESHOLD_OPERATORS, IncidentType
from incident_orchestrator.core.exceptions import ConfigurationError, RuleNotFoundError
from incident_orchestrator.core.logging import get_logger
from incident_orchestrator.core.utils import generate_id

logger = get_logger(__name__)


def evaluate_threshold(value: float, operator: str, threshold: float) -> bool:
    """Check whether ``value`` breaches ``threshold`` under ``operator``."""
    if operator == "gt":
        return value > threshold
    if operator == "gte":
        return value >= threshold
    if operator == "lt":
        return value < threshold
    if operator == "lte":
        return value <= threshold
    if operator == "eq":
        return value == threshold
    return False


@dataclass(frozen=True)
class MonitoringRule:
    """Detection rule for one metric stream.

    With the default ``gt`` operator a value above ``critical`` raises a
    critical incident and a value above ``warning`` raises a high one.
    """

    namespace: str
    metric_name: str
    service: str
    incident_type: IncidentType
    warning: float | None = None
    critical: float | None = None
    operator: str = "gt"
    baseline_enabled: bool = False
    dimensions: dict[str, str] = field(default_factory=dict)
    affected_resources: tuple[str, ...] = ()
    enabled: bool = True
    name: str = ""
    description: str = ""
    id: str = field(default_factory=generate_id)

    def __post_init__(self) -> None:
        if self.operator not in THRESHOLD_OPERATORS:
            raise ConfigurationError(
                "rule.operator",
                reason=f"must be one of {sorted(THRESHOLD_OPERATORS)}",
                value=self.operator,
            )

    @property
    def has_thresholds(self) -> bool:
        return self.warning is not None or self.critical is not None

    @property
    def display_name(self) -> str:
        return self.name or f"{self.service}:{self.metric_name}"

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> MonitoringRule:
        """Build a rule from a config dictionary.

        Raises:
            ConfigurationError: If a required key is missing or invalid.
        """
        for key in ("namespace", "metric_name", "service", "incident_type"):
            if key not in data:
                raise ConfigurationError(f"detection.rules.{key}", reason="is required")
        try:
            incident_type = IncidentType(data["incident_type"])
        except ValueError as e:
            raise ConfigurationError(
                "detection.rules.incident_type", reason="unknown incident type", value=data["incident_type"]
            ) from e

        kwargs: dict[str, Any] = {}
        if data.get("id"):
            kwargs["id"] = data["id"]
        return cls(
            namespace=data["namespace"],
            metric_name=data["metric_name"],
            service=data["service"],
            incident_type=incident_type,
            warning=data.get("warning"),
            critical=data.get("critical"),
            operator=data.get("operator", "gt"),
            baseline_enabled=bool(data.get("baseline_enabled", False)),
            dimensions={str(k): str(v) for k, v in data.get("dimensions", {}).items()},
            affected_resources=tuple(data.get("affected_resources", ())),
            enabled=bool(data.get("enabled", True)),
            name=data.get("name", ""),
            description=data.get("description", ""),
            **kwargs,
        )


class RuleRegistry:
    """Thread-safe, mutable set of monitoring rules."""

    def __init__(self, rules: list[MonitoringRule] | None = None) -> None:
        self._rules: dict[str, MonitoringRule] = {}
        self._lock = threading.Lock()
        for rule in rules or []:
            self.add_rule(rule)

    @classmethod
    def from_config(cls, raw_rules: tuple[dict[str, Any], ...] | list[dict[str, Any]]) -> RuleRegistry:
        return cls([MonitoringRule.from_dict(r) for r in raw_rules])

    def add_rule(self, rule: MonitoringRule) -> MonitoringRule:
        with self._lock:
            self._rules[rule.id] = rule
        logger.info(f"Added monitoring rule {rule.display_name} ({rule.id})")
        return rule

    def remove_rule(self, rule_id: str) -> bool:
        """Remove a rule. Returns False if it was not registered."""
        with self._lock:
            removed = self._rules.pop(rule_id, None)
        if removed:
            logger.info(f"Removed monitoring rule {removed.display_name} ({rule_id})")
        return removed is not None

    def update_rule(self, rule_id: str, **updates: Any) -> MonitoringRule:
        """Replace fields of a registered rule.

        Raises:
            RuleNotFoundError: If ``rule_id`` is unknown.
        """
        updates.pop("id", None)
        with self._lock:
            current = self._rules.get(rule_id)
            if current is None:
                raise RuleNotFoundError(rule_id)
            updated = replace(current, **updates)
            self._rules[rule_id] = updated
        return updated

    def get_rule(self, rule_id: str) -> MonitoringRule:
        with self._lock:
            rule = self._rules.get(rule_id)
        if rule is None:
            raise RuleNotFoundError(rule_id)
        return rule

    def get_rules(self, enabled_only: bool = False) -> list[MonitoringRule]:
        with self._lock:
            rules = list(self._rules.values())
        if enabled_only:
            rules = [r for r in rules if r.enabled]
        return rules

    def __len__(self) -> int:
        with self._lock:
            return len(self._rules)
