"""
Logging setup and structured lifecycle events.

Every component logs through ``get_logger(__name__)``. Lifecycle events
(detections, step transitions, rollbacks, deliveries) go through
``log_event`` so they share one shape in both output formats:

    STEP_FAILED - checkout: Step 2 failed: ... [execution_id=... action=scale_out]

With JSON output enabled the event type, service and fields become keys of
the emitted object.
"""

from __future__ import annotations

import json
import logging
import sys
from typing import Any

_configured: bool = False

_TEXT_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

# Libraries whose debug chatter drowns out our own events
_NOISY_LOGGERS: dict[str, int] = {
    "urllib3": logging.ERROR,
    "urllib3.connectionpool": logging.ERROR,
    "requests": logging.WARNING,
}


class JsonFormatter(logging.Formatter):
    """One JSON object per record, carrying ``log_event`` fields when present."""

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "timestamp": self.formatTime(record, _DATE_FORMAT),
            "logger": record.name,
            "level": record.levelname,
            "message": record.getMessage(),
        }
        event = getattr(record, "event", None)
        if event is not None:
            payload["event"] = event
            payload["service"] = getattr(record, "service", "")
            payload.update(getattr(record, "fields", {}))
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str)


def configure_logging(
    level: int = logging.INFO,
    verbose: bool = False,
    json_format: bool = False,
) -> None:
    """Install the root handler. Call once at startup.

    Args:
        level: Root logging level.
        verbose: Force DEBUG regardless of ``level``.
        json_format: Emit JSON objects instead of text lines.
    """
    global _configured

    handler = logging.StreamHandler(sys.stderr)
    if json_format:
        handler.setFormatter(JsonFormatter())
    else:
        handler.setFormatter(logging.Formatter(_TEXT_FORMAT, _DATE_FORMAT))

    logging.basicConfig(level=logging.DEBUG if verbose else level, handlers=[handler])
    for name, noisy_level in _NOISY_LOGGERS.items():
        logging.getLogger(name).setLevel(noisy_level)

    _configured = True


def get_logger(name: str) -> logging.Logger:
    """Logger for ``name``, configuring defaults on first use."""
    if not _configured:
        configure_logging()
    return logging.getLogger(name)


def log_event(
    logger: logging.Logger,
    level: int,
    event_type: str,
    service: str,
    message: str,
    **fields: Any,
) -> None:
    """Log a lifecycle event.

    Args:
        logger: Logger of the emitting module.
        level: Logging level.
        event_type: One of the ``EventType`` names.
        service: Service the event concerns.
        message: Human-readable message.
        **fields: Extra key/value context.
    """
    text = f"{event_type} - {service}: {message}"
    if fields:
        text += " [" + " ".join(f"{k}={v}" for k, v in fields.items()) + "]"
    logger.log(level, text, extra={"event": event_type, "service": service, "fields": fields})


class EventType:
    """Lifecycle event names used with ``log_event``."""

    # Detection
    INCIDENT_DETECTED = "INCIDENT_DETECTED"
    INCIDENT_COALESCED = "INCIDENT_COALESCED"
    DETECTION_DEGRADED = "DETECTION_DEGRADED"

    # Metrics
    METRICS_COLLECTED = "METRICS_COLLECTED"
    METRICS_FAILED = "METRICS_FAILED"
    CIRCUIT_BREAKER = "CIRCUIT_BREAKER"

    # Incident lifecycle
    INCIDENT_CLASSIFIED = "INCIDENT_CLASSIFIED"
    PLAN_CREATED = "PLAN_CREATED"
    INCIDENT_STATUS = "INCIDENT_STATUS"
    INCIDENT_RESOLVED = "INCIDENT_RESOLVED"

    # Recovery execution
    EXECUTION_STARTED = "EXECUTION_STARTED"
    EXECUTION_FINISHED = "EXECUTION_FINISHED"
    STEP_STARTED = "STEP_STARTED"
    STEP_COMPLETED = "STEP_COMPLETED"
    STEP_FAILED = "STEP_FAILED"
    ROLLBACK = "ROLLBACK"
    APPROVAL_WAIT = "APPROVAL_WAIT"
    POSTCHECK = "POSTCHECK"

    # Alerting
    ALERT_GROUPED = "ALERT_GROUPED"
    ALERT_GROUP_RESOLVED = "ALERT_GROUP_RESOLVED"
    NOTIFICATION_SENT = "NOTIFICATION_SENT"
    NOTIFICATION_FAILED = "NOTIFICATION_FAILED"

    # Scheduler
    TICK = "TICK"
    SYSTEM_STATUS = "SYSTEM_STATUS"
