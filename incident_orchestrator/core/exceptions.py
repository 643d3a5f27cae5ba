"""
Custom exception hierarchy for the incident response orchestrator.

This module provides a structured exception hierarchy that enables:
- Specific error handling at each pipeline stage
- Rich error context for debugging
- Assertions on *which* category of failure occurred (see ErrorCategory)
"""

from __future__ import annotations

from typing import Any

from incident_orchestrator.core.constants import ErrorCategory


class OrchestratorError(Exception):
    """Base exception for all orchestrator errors.

    All custom exceptions inherit from this class, enabling catching all
    orchestrator-related errors with a single except clause.
    """

    category: ErrorCategory = ErrorCategory.INTERNAL

    def __init__(
        self,
        message: str,
        *,
        context: dict[str, Any] | None = None,
        cause: Exception | None = None,
    ) -> None:
        self.message = message
        self.context = context or {}
        self.cause = cause
        super().__init__(self._format_message())

    def _format_message(self) -> str:
        """Format the full error message including context."""
        parts = [self.message]
        if self.context:
            context_str = ", ".join(f"{k}={v}" for k, v in self.context.items())
            parts.append(f"[{context_str}]")
        if self.cause:
            parts.append(f"Caused by: {self.cause}")
        return " ".join(parts)


# =============================================================================
# Transient Infrastructure Errors (retried at the call site)
# =============================================================================


class TransientInfraError(OrchestratorError):
    """Base exception for retryable infrastructure failures.

    Examples:
        - Metrics backend timeout
        - Runtime platform API 5xx
    """

    category = ErrorCategory.TRANSIENT_INFRA


class MetricsUnavailableError(TransientInfraError):
    """Raised when no metrics provider could answer a query."""

    def __init__(
        self,
        namespace: str,
        *,
        metric_names: list[str] | None = None,
        reason: str | None = None,
        cause: Exception | None = None,
    ) -> None:
        context: dict[str, Any] = {"namespace": namespace}
        if metric_names:
            context["metrics"] = metric_names
        message = f"Metrics unavailable for {namespace}"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message, context=context, cause=cause)
        self.namespace = namespace
        self.metric_names = metric_names


class PlatformCallError(TransientInfraError):
    """Raised when a runtime platform call fails transiently."""

    def __init__(
        self,
        operation: str,
        *,
        service: str | None = None,
        reason: str | None = None,
        cause: Exception | None = None,
    ) -> None:
        context: dict[str, Any] = {"operation": operation}
        if service:
            context["service"] = service
        message = f"Platform call {operation} failed"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message, context=context, cause=cause)
        self.operation = operation
        self.service = service


class CircuitBreakerOpenError(TransientInfraError):
    """Raised when circuit breaker prevents operation."""

    def __init__(
        self,
        service: str = "metrics",
        *,
        failures: int | None = None,
        timeout_remaining: float | None = None,
    ) -> None:
        context: dict[str, Any] = {"service": service}
        if failures is not None:
            context["failures"] = failures
        if timeout_remaining is not None:
            context["timeout_remaining_sec"] = round(timeout_remaining, 1)
        message = f"Circuit breaker open for {service}"
        super().__init__(message, context=context)


# =============================================================================
# Step Failures (handled by the rollback path)
# =============================================================================


class StepFailureError(OrchestratorError):
    """Raised when a recovery step cannot be completed."""

    category = ErrorCategory.STEP_FAILURE

    def __init__(
        self,
        action: str,
        *,
        order: int | None = None,
        reason: str | None = None,
        operation_id: str | None = None,
        cause: Exception | None = None,
    ) -> None:
        context: dict[str, Any] = {"action": action}
        if order is not None:
            context["order"] = order
        if operation_id:
            context["operation_id"] = operation_id
        message = f"Recovery step {action} failed"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message, context=context, cause=cause)
        self.action = action
        self.order = order
        self.operation_id = operation_id


class StepTimeoutError(StepFailureError):
    """Raised when a step exceeds its implicit timeout."""

    def __init__(
        self,
        action: str,
        *,
        order: int | None = None,
        timeout_seconds: float,
        operation_id: str | None = None,
    ) -> None:
        super().__init__(
            action,
            order=order,
            reason=f"timed out after {timeout_seconds:.1f}s",
            operation_id=operation_id,
        )
        self.timeout_seconds = timeout_seconds


class ValidationFailedError(StepFailureError):
    """Raised when a step's validation criteria are not met."""


class ApprovalRejectedError(StepFailureError):
    """Raised when an approval or a manual sign-off is rejected."""

    def __init__(
        self,
        action: str,
        *,
        order: int | None = None,
        rejected_by: str | None = None,
        reason: str | None = None,
    ) -> None:
        detail = f"rejected by {rejected_by}" if rejected_by else "rejected"
        if reason:
            detail = f"{detail}: {reason}"
        super().__init__(action, order=order, reason=detail)
        self.rejected_by = rejected_by


class ExecutionCancelledError(StepFailureError):
    """Raised inside a step when its execution was cancelled externally."""

    def __init__(
        self,
        action: str,
        *,
        order: int | None = None,
        operation_id: str | None = None,
    ) -> None:
        super().__init__(
            action,
            order=order,
            reason="execution cancelled",
            operation_id=operation_id,
        )


# =============================================================================
# Planning Errors
# =============================================================================


class PlanningError(OrchestratorError):
    """Raised when no automated plan can be produced for an incident."""

    category = ErrorCategory.PLANNING

    def __init__(self, incident_type: str, *, reason: str) -> None:
        super().__init__(
            f"Cannot plan recovery for {incident_type}: {reason}",
            context={"incident_type": incident_type},
        )
        self.incident_type = incident_type


# =============================================================================
# Notification Errors
# =============================================================================


class NotificationError(OrchestratorError):
    """Raised by a channel when delivery fails."""

    category = ErrorCategory.NOTIFICATION

    def __init__(
        self,
        channel: str,
        *,
        target: str | None = None,
        reason: str | None = None,
        cause: Exception | None = None,
    ) -> None:
        context: dict[str, Any] = {"channel": channel}
        if target:
            context["target"] = target
        message = f"Notification via {channel} failed"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message, context=context, cause=cause)
        self.channel = channel
        self.target = target


# =============================================================================
# Storage / Lookup Errors
# =============================================================================


class DatabaseError(OrchestratorError):
    """Raised when database operations fail."""

    def __init__(
        self,
        operation: str,
        *,
        db_path: str | None = None,
        reason: str | None = None,
        cause: Exception | None = None,
    ) -> None:
        context = {"operation": operation}
        if db_path:
            context["db_path"] = db_path
        message = f"Database {operation} failed"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message, context=context, cause=cause)


class IncidentNotFoundError(OrchestratorError):
    """Raised when a referenced incident doesn't exist."""

    def __init__(self, incident_id: str) -> None:
        super().__init__(f"Incident not found: {incident_id}", context={"incident_id": incident_id})
        self.incident_id = incident_id


class RuleNotFoundError(OrchestratorError):
    """Raised when a monitoring rule id is unknown."""

    def __init__(self, rule_id: str) -> None:
        super().__init__(f"Rule not found: {rule_id}", context={"rule_id": rule_id})
        self.rule_id = rule_id


# =============================================================================
# Configuration Errors
# =============================================================================


class ConfigurationError(OrchestratorError):
    """Raised when configuration is invalid or missing."""

    def __init__(
        self,
        parameter: str,
        *,
        reason: str,
        value: Any = None,
    ) -> None:
        context = {"parameter": parameter}
        if value is not None:
            context["value"] = value
        super().__init__(f"Configuration error for {parameter}: {reason}", context=context)
        self.parameter = parameter
