"""
Intent State Machine

created -> validated -> executing -> executed
created -> rejected                 (validation failed)
executing -> failed                 (execution failed, reverted, or simulation failed)

The machine never moves on its own initiative: callers hand it the
verdict of the PolicyEngine or the ExecutionResultReducer. Transitions are
applied with a conditional update so that exactly one concurrent caller
wins.
"""

from __future__ import annotations

import logging
from typing import Optional

from compliance.audit import AuditTrailRecorder
from compliance.errors import InvalidStateTransition
from compliance.models import Intent, IntentStatus, StateChangePayload
from compliance.stores import IntentStore

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Transition graph
# ---------------------------------------------------------------------------

TRANSITIONS: dict[IntentStatus, frozenset[IntentStatus]] = {
    IntentStatus.CREATED: frozenset({IntentStatus.VALIDATED, IntentStatus.REJECTED}),
    IntentStatus.VALIDATED: frozenset({IntentStatus.EXECUTING}),
    IntentStatus.EXECUTING: frozenset({IntentStatus.EXECUTED, IntentStatus.FAILED}),
    IntentStatus.EXECUTED: frozenset(),
    IntentStatus.REJECTED: frozenset(),
    IntentStatus.FAILED: frozenset(),
}

INITIAL_STATUS = IntentStatus.CREATED
TERMINAL_STATUSES = frozenset(s for s, targets in TRANSITIONS.items() if not targets)


def can_transition(current: IntentStatus, target: IntentStatus) -> bool:
    return target in TRANSITIONS[current]


def is_terminal(status: IntentStatus) -> bool:
    return status in TERMINAL_STATUSES


def assert_transition(intent_id: str, current: IntentStatus, target: IntentStatus) -> None:
    if not can_transition(current, target):
        raise InvalidStateTransition(intent_id, current.value, target.value)


def require_status(intent: Intent, required: IntentStatus, operation: str) -> None:
    """Guard an operation that is only legal from *required*."""
    if intent.status != required:
        raise InvalidStateTransition(
            intent.id, intent.status.value, operation,
            message=f"Intent cannot be {operation} in status: {intent.status.value} "
                    f"(must be '{required.value}')",
        )


def status_after_validation(passed: bool) -> IntentStatus:
    return IntentStatus.VALIDATED if passed else IntentStatus.REJECTED


def status_after_execution(success: bool) -> IntentStatus:
    return IntentStatus.EXECUTED if success else IntentStatus.FAILED


# ---------------------------------------------------------------------------
# Store-backed machine
# ---------------------------------------------------------------------------

class IntentStateMachine:
    """Applies legal transitions to stored intents."""

    def __init__(
        self,
        intents: IntentStore,
        recorder: AuditTrailRecorder | None = None,
        record_state_changes: bool = False,
    ):
        self.intents = intents
        self.recorder = recorder
        self.record_state_changes = record_state_changes and recorder is not None

    def transition(
        self,
        intent: Intent,
        target: IntentStatus,
        reason: str = "",
        execution_id: Optional[str] = None,
    ) -> Intent:
        """
        Move *intent* from its current status to *target*.

        Raises InvalidStateTransition when the graph forbids it, or
        StatusConflictError when the stored status changed underneath us.
        """
        assert_transition(intent.id, intent.status, target)
        updated = self.intents.update_status(intent.id, target, expected_status=intent.status)
        logger.info("intent %s: %s -> %s", intent.id, intent.status.value, target.value)

        if self.record_state_changes:
            self.recorder.record(
                intent.id,
                StateChangePayload(
                    from_status=intent.status.value,
                    to_status=target.value,
                    reason=reason,
                ),
                execution_id=execution_id,
            )
        return updated
