"""
Execution Result Reducer

Interprets the opaque outcome handed back by the execution collaborator
and turns it into audit artifacts, an updated Execution record, and the
terminal status the state machine should apply. It never talks to a chain.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Optional

from compliance.audit import AuditTrailRecorder
from compliance.models import (
    AuditArtifact,
    ErrorLoggedPayload,
    EventDecodedPayload,
    Execution,
    ExecutionStatus,
    Intent,
    IntentStatus,
    TransactionSubmittedPayload,
    to_json_safe,
)
from compliance.state_machine import status_after_execution
from compliance.stores import ExecutionStore

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Collaborator result types
# ---------------------------------------------------------------------------

@dataclass
class DecodedEvent:
    """One decoded on-chain log."""
    name: str
    args: dict[str, Any] = field(default_factory=dict)
    block_number: Optional[int] = None
    log_index: int = 0
    address: Optional[str] = None
    tx_ref: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "args": to_json_safe(self.args),
            "block_number": to_json_safe(self.block_number),
            "log_index": self.log_index,
            "address": self.address,
            "tx_ref": self.tx_ref,
        }


@dataclass
class ExecutionOutcome:
    """What the execution collaborator reports for one attempt.

    ``events`` is None when the collaborator did not decode logs itself;
    the service then asks it to via ``decode_events``.
    """
    success: bool
    tx_ref: Optional[str] = None
    block_number: Optional[int] = None
    block_timestamp: Optional[int] = None
    gas_used: Optional[int] = None
    amount_out: Optional[str] = None
    error: Optional[str] = None
    revert_reason: Optional[str] = None
    events: Optional[list[DecodedEvent]] = None


@dataclass
class ReducedExecution:
    execution: Execution
    target_status: IntentStatus
    artifacts: list[AuditArtifact] = field(default_factory=list)
    events: list[DecodedEvent] = field(default_factory=list)
    error: Optional[str] = None
    revert_reason: Optional[str] = None

    @property
    def success(self) -> bool:
        return self.target_status == IntentStatus.EXECUTED


def _decimal(value: Optional[int]) -> Optional[str]:
    return None if value is None else str(value)


# ---------------------------------------------------------------------------
# Reducer
# ---------------------------------------------------------------------------

class ExecutionResultReducer:

    def __init__(self, audit: AuditTrailRecorder, executions: ExecutionStore):
        self.audit = audit
        self.executions = executions

    def reduce(
        self,
        intent: Intent,
        execution: Execution,
        outcome: ExecutionOutcome,
    ) -> ReducedExecution:
        artifacts: list[AuditArtifact] = []

        if outcome.tx_ref:
            artifacts.append(self.audit.record(
                intent.id,
                TransactionSubmittedPayload(
                    tx_ref=outcome.tx_ref,
                    block_number=_decimal(outcome.block_number),
                    gas_used=_decimal(outcome.gas_used),
                ),
                execution_id=execution.id,
            ))

        succeeded = outcome.success and bool(outcome.tx_ref)

        if succeeded:
            events = list(outcome.events or [])
            for event in events:
                block = event.block_number if event.block_number is not None else outcome.block_number
                artifacts.append(self.audit.record(
                    intent.id,
                    EventDecodedPayload(
                        event_name=event.name,
                        args=to_json_safe(event.args),
                        block_number=_decimal(block),
                        log_index=event.log_index,
                        address=event.address,
                    ),
                    execution_id=execution.id,
                ))

            updated = self.executions.update(
                execution.id,
                status=ExecutionStatus.SUCCESS,
                tx_ref=outcome.tx_ref,
                block_number=outcome.block_number,
                block_timestamp=outcome.block_timestamp,
                gas_used=outcome.gas_used,
                amount_out=outcome.amount_out,
            )
            logger.info("intent %s executed: tx=%s events=%d",
                        intent.id, outcome.tx_ref, len(events))
            return ReducedExecution(
                execution=updated,
                target_status=status_after_execution(True),
                artifacts=artifacts,
                events=events,
            )

        error = outcome.error or (
            "Execution reported success without a transaction reference"
            if outcome.success else "Execution failed"
        )
        artifacts.append(self.audit.record(
            intent.id,
            ErrorLoggedPayload(
                error=error,
                phase="execution",
                revert_reason=outcome.revert_reason,
                tx_ref=outcome.tx_ref,
            ),
            execution_id=execution.id,
        ))

        status = ExecutionStatus.REVERTED if outcome.tx_ref else ExecutionStatus.FAILED
        updated = self.executions.update(
            execution.id,
            status=status,
            tx_ref=outcome.tx_ref,
            block_number=outcome.block_number,
            block_timestamp=outcome.block_timestamp,
            gas_used=outcome.gas_used,
            revert_reason=outcome.revert_reason or error,
        )
        logger.warning("intent %s execution %s: %s (revert=%s)",
                       intent.id, status.value, error, outcome.revert_reason)
        return ReducedExecution(
            execution=updated,
            target_status=status_after_execution(False),
            artifacts=artifacts,
            error=error,
            revert_reason=outcome.revert_reason,
        )
