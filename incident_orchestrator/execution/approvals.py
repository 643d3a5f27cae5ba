"""
Human gates for recovery executions.

Two kinds of decisions are tracked here:

- plan approvals, one per required role, collected before the first
  destructive step of a plan
- manual sign-offs, one per (execution, step), collected after a step whose
  validation is manual

Waits have no timeout but are interruptible through a CancellationToken.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime

from incident_orchestrator.core.exceptions import (
    ApprovalRejectedError,
    ExecutionCancelledError,
)
from incident_orchestrator.core.logging import EventType, get_logger, log_event
from incident_orchestrator.core.utils import utc_now

logger = get_logger(__name__)

# Upper bound on a single condition wait, so cancellation is noticed promptly
_WAIT_SLICE_SECONDS = 0.1


class CancellationToken:
    """Cooperative cancellation flag shared between a worker and its owner."""

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def is_cancelled(self) -> bool:
        return self._event.is_set()

    def wait(self, timeout: float) -> bool:
        """Sleep up to ``timeout`` seconds. Returns True if cancelled meanwhile."""
        return self._event.wait(max(0.0, timeout))


@dataclass
class Decision:
    """An operator's approve/reject decision."""

    approved: bool
    by: str | None = None
    reason: str | None = None
    decided_at: datetime = field(default_factory=utc_now)


class ApprovalRegistry:
    """Thread-safe store of approvals and sign-offs with blocking waits."""

    def __init__(self) -> None:
        self._approvals: dict[str, dict[str, Decision]] = {}
        self._sign_offs: dict[tuple[str, int], Decision] = {}
        self._waiting: dict[str, tuple[str, ...]] = {}
        self._waiting_sign_offs: set[tuple[str, int]] = set()
        self._condition = threading.Condition()

    # =========================================================================
    # Plan Approvals
    # =========================================================================

    def approve(self, plan_id: str, role: str, by: str | None = None) -> None:
        self._decide_plan(plan_id, role, Decision(approved=True, by=by))

    def reject(self, plan_id: str, role: str, by: str | None = None, reason: str | None = None) -> None:
        self._decide_plan(plan_id, role, Decision(approved=False, by=by, reason=reason))

    def _decide_plan(self, plan_id: str, role: str, decision: Decision) -> None:
        with self._condition:
            self._approvals.setdefault(plan_id, {})[role] = decision
            self._condition.notify_all()
        logger.info(
            f"Plan {plan_id} {'approved' if decision.approved else 'rejected'} "
            f"for role {role}" + (f" by {decision.by}" if decision.by else "")
        )

    def approvals_for(self, plan_id: str) -> dict[str, Decision]:
        with self._condition:
            return dict(self._approvals.get(plan_id, {}))

    def wait_for_approvals(
        self,
        plan_id: str,
        roles: tuple[str, ...] | list[str],
        token: CancellationToken,
        action: str = "plan",
        order: int | None = None,
        service: str = "",
    ) -> None:
        """Block until every role approved ``plan_id``.

        Raises:
            ApprovalRejectedError: If any required role rejected.
            ExecutionCancelledError: If the token was cancelled while waiting.
        """
        required = tuple(roles)
        if not required:
            return
        log_event(
            logger, logging.INFO, EventType.APPROVAL_WAIT, service,
            "Waiting for approvals", plan_id=plan_id, roles=",".join(required),
        )
        with self._condition:
            self._waiting[plan_id] = required
            try:
                while True:
                    decisions = self._approvals.get(plan_id, {})
                    for role in required:
                        decision = decisions.get(role)
                        if decision is not None and not decision.approved:
                            raise ApprovalRejectedError(
                                action, order=order, rejected_by=decision.by or role, reason=decision.reason
                            )
                    if all(role in decisions for role in required):
                        return
                    if token.is_cancelled:
                        raise ExecutionCancelledError(action, order=order)
                    self._condition.wait(_WAIT_SLICE_SECONDS)
            finally:
                self._waiting.pop(plan_id, None)

    # =========================================================================
    # Manual Sign-off
    # =========================================================================

    def sign_off(
        self,
        execution_id: str,
        order: int,
        approved: bool = True,
        by: str | None = None,
        reason: str | None = None,
    ) -> None:
        with self._condition:
            self._sign_offs[(execution_id, order)] = Decision(approved=approved, by=by, reason=reason)
            self._condition.notify_all()
        logger.info(
            f"Step {order} of execution {execution_id} "
            f"{'signed off' if approved else 'rejected'}" + (f" by {by}" if by else "")
        )

    def wait_for_sign_off(
        self,
        execution_id: str,
        order: int,
        token: CancellationToken,
        action: str = "step",
    ) -> Decision:
        """Block until an operator signs off a step.

        Raises:
            ApprovalRejectedError: If the operator rejected the step.
            ExecutionCancelledError: If the token was cancelled while waiting.
        """
        key = (execution_id, order)
        with self._condition:
            self._waiting_sign_offs.add(key)
            try:
                while key not in self._sign_offs:
                    if token.is_cancelled:
                        raise ExecutionCancelledError(action, order=order)
                    self._condition.wait(_WAIT_SLICE_SECONDS)
                decision = self._sign_offs[key]
            finally:
                self._waiting_sign_offs.discard(key)
        if not decision.approved:
            raise ApprovalRejectedError(action, order=order, rejected_by=decision.by, reason=decision.reason)
        return decision

    # =========================================================================
    # Introspection
    # =========================================================================

    def pending(self) -> dict[str, list]:
        """Plans and steps currently blocked on a human decision."""
        with self._condition:
            return {
                "approvals": [
                    {"plan_id": plan_id, "roles": list(roles)}
                    for plan_id, roles in self._waiting.items()
                ],
                "sign_offs": [
                    {"execution_id": execution_id, "order": order}
                    for execution_id, order in sorted(self._waiting_sign_offs)
                ],
            }

    def is_waiting_for_approval(self, plan_id: str) -> bool:
        with self._condition:
            return plan_id in self._waiting

    def is_waiting_for_sign_off(self, execution_id: str, order: int) -> bool:
        with self._condition:
            return (execution_id, order) in self._waiting_sign_offs
