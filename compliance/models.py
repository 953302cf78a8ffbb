"""
Domain Types

Intents, policies, executions and audit artifacts, plus the typed payload
union every audit artifact carries. Amounts travel as decimal strings and
are only ever compared as Python ints.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional, Union

from pydantic import BaseModel


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Enumerations
# ---------------------------------------------------------------------------

class IntentStatus(str, Enum):
    CREATED = "created"
    VALIDATED = "validated"
    EXECUTING = "executing"
    EXECUTED = "executed"
    REJECTED = "rejected"
    FAILED = "failed"


class PolicyType(str, Enum):
    ALLOW_DENY_LIST = "allow_deny_list"
    TRADE_LIMIT = "trade_limit"
    VENUE_ALLOWLIST = "venue_allowlist"
    CUSTOM = "custom"


class ExecutionStatus(str, Enum):
    PENDING = "pending"
    SUCCESS = "success"
    REVERTED = "reverted"
    FAILED = "failed"


class ArtifactType(str, Enum):
    POLICY_EVALUATION = "policy_evaluation"
    TRANSACTION_SUBMITTED = "transaction_submitted"
    EVENT_DECODED = "event_decoded"
    ERROR_LOGGED = "error_logged"
    STATE_CHANGE = "state_change"


# ---------------------------------------------------------------------------
# Amounts
# ---------------------------------------------------------------------------

_DECIMAL_RE = re.compile(r"^\d+$")


def parse_amount(value: Any) -> int:
    """Parse a non-negative decimal string (or int) into an arbitrary-precision int.

    Floats and booleans are refused outright; a float cannot carry a
    uint256 amount without losing digits.
    """
    if isinstance(value, bool) or isinstance(value, float):
        raise ValueError(f"amount must be a decimal string, got {type(value).__name__}")
    if isinstance(value, int):
        if value < 0:
            raise ValueError(f"amount must be non-negative, got {value}")
        return value
    if isinstance(value, str) and _DECIMAL_RE.match(value.strip()):
        return int(value.strip())
    raise ValueError(f"amount must be a non-negative decimal string, got {value!r}")


def to_json_safe(value: Any) -> Any:
    """Recursively convert ints to decimal strings and bytes to 0x-hex."""
    if value is None or isinstance(value, (bool, str, float)):
        return value
    if isinstance(value, int):
        return str(value)
    if isinstance(value, (bytes, bytearray)):
        return "0x" + bytes(value).hex()
    if isinstance(value, dict):
        return {str(k): to_json_safe(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [to_json_safe(v) for v in value]
    return str(value)


# ---------------------------------------------------------------------------
# Intents
# ---------------------------------------------------------------------------

@dataclass
class IntentInput:
    user_address: str
    asset_in: str
    asset_out: str
    amount_in: str
    amount_out_min: str
    venue: str
    deadline: int
    nonce: int
    signature: Optional[str] = None


@dataclass
class Intent:
    id: str
    user_address: str
    asset_in: str
    asset_out: str
    amount_in: str            # decimal string, arbitrary precision
    amount_out_min: str       # decimal string, arbitrary precision
    venue: str
    deadline: int             # unix seconds
    nonce: int
    status: IntentStatus = IntentStatus.CREATED
    signature: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "user_address": self.user_address,
            "asset_in": self.asset_in,
            "asset_out": self.asset_out,
            "amount_in": self.amount_in,
            "amount_out_min": self.amount_out_min,
            "venue": self.venue,
            "deadline": self.deadline,
            "nonce": self.nonce,
            "status": self.status.value,
            "signature": self.signature,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }


# ---------------------------------------------------------------------------
# Policies
# ---------------------------------------------------------------------------

@dataclass
class PolicyInput:
    name: str
    policy_type: str
    config: dict[str, Any]
    description: Optional[str] = None
    enabled: bool = True
    priority: int = 0


@dataclass
class Policy:
    id: str
    name: str
    policy_type: str
    config: dict[str, Any]
    description: Optional[str] = None
    enabled: bool = True
    priority: int = 0
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "policy_type": self.policy_type,
            "config": self.config,
            "enabled": self.enabled,
            "priority": self.priority,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }


@dataclass
class PolicyEvaluationResult:
    passed: bool
    reason: str
    policy_id: str
    policy_name: str
    policy_type: str
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "passed": self.passed,
            "reason": self.reason,
            "policy_id": self.policy_id,
            "policy_name": self.policy_name,
            "policy_type": self.policy_type,
            "metadata": to_json_safe(self.metadata),
        }


@dataclass
class IntentValidationResult:
    passed: bool
    evaluations: list[PolicyEvaluationResult] = field(default_factory=list)
    evaluated_at: datetime = field(default_factory=utcnow)
    reason: str = ""

    @property
    def passed_policies(self) -> list[PolicyEvaluationResult]:
        return [e for e in self.evaluations if e.passed]

    @property
    def failed_policies(self) -> list[PolicyEvaluationResult]:
        return [e for e in self.evaluations if not e.passed]

    @property
    def reasons(self) -> list[str]:
        """Specific reasons for a rejection, one per failed policy."""
        if self.failed_policies:
            return [f"{e.policy_name}: {e.reason}" for e in self.failed_policies]
        return [self.reason] if not self.passed and self.reason else []

    def summary(self) -> str:
        lines = [f"Passed:     {self.passed}"]
        for e in self.evaluations:
            tag = "PASS" if e.passed else "FAIL"
            lines.append(f"  [{tag}] {e.policy_name} ({e.policy_type}): {e.reason}")
        if not self.evaluations and self.reason:
            lines.append(f"  {self.reason}")
        return "\n".join(lines)

    def to_dict(self) -> dict[str, Any]:
        return {
            "passed": self.passed,
            "reason": self.reason,
            "reasons": self.reasons,
            "evaluations": [e.to_dict() for e in self.evaluations],
            "passed_policies": [e.to_dict() for e in self.passed_policies],
            "failed_policies": [e.to_dict() for e in self.failed_policies],
            "evaluated_at": self.evaluated_at.isoformat(),
        }


# ---------------------------------------------------------------------------
# Executions
# ---------------------------------------------------------------------------

@dataclass
class Execution:
    id: str
    intent_id: str
    status: ExecutionStatus = ExecutionStatus.PENDING
    tx_ref: Optional[str] = None
    block_number: Optional[int] = None
    block_timestamp: Optional[int] = None
    gas_used: Optional[int] = None
    revert_reason: Optional[str] = None
    amount_out: Optional[str] = None
    execution_price: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "intent_id": self.intent_id,
            "status": self.status.value,
            "tx_ref": self.tx_ref,
            "block_number": to_json_safe(self.block_number),
            "block_timestamp": self.block_timestamp,
            "gas_used": to_json_safe(self.gas_used),
            "revert_reason": self.revert_reason,
            "amount_out": self.amount_out,
            "execution_price": self.execution_price,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }


# ---------------------------------------------------------------------------
# Audit artifact payloads (closed union keyed by ArtifactType)
# ---------------------------------------------------------------------------

class PolicyEvaluationPayload(BaseModel):
    policy_id: str
    policy_name: str
    policy_type: str
    passed: bool
    reason: str
    metadata: dict[str, Any] = {}


class TransactionSubmittedPayload(BaseModel):
    tx_ref: str
    block_number: Optional[str] = None
    gas_used: Optional[str] = None


class EventDecodedPayload(BaseModel):
    event_name: str
    args: dict[str, Any] = {}
    block_number: Optional[str] = None
    log_index: int = 0
    address: Optional[str] = None


class ErrorLoggedPayload(BaseModel):
    error: str
    phase: str
    revert_reason: Optional[str] = None
    tx_ref: Optional[str] = None
    policy_id: Optional[str] = None
    policy_name: Optional[str] = None
    detail: Optional[str] = None


class StateChangePayload(BaseModel):
    from_status: str
    to_status: str
    reason: str = ""


ArtifactPayload = Union[
    PolicyEvaluationPayload,
    TransactionSubmittedPayload,
    EventDecodedPayload,
    ErrorLoggedPayload,
    StateChangePayload,
]

PAYLOAD_TYPES: dict[ArtifactType, type[BaseModel]] = {
    ArtifactType.POLICY_EVALUATION: PolicyEvaluationPayload,
    ArtifactType.TRANSACTION_SUBMITTED: TransactionSubmittedPayload,
    ArtifactType.EVENT_DECODED: EventDecodedPayload,
    ArtifactType.ERROR_LOGGED: ErrorLoggedPayload,
    ArtifactType.STATE_CHANGE: StateChangePayload,
}

ARTIFACT_TYPE_OF: dict[type[BaseModel], ArtifactType] = {
    cls: artifact_type for artifact_type, cls in PAYLOAD_TYPES.items()
}


@dataclass
class AuditArtifact:
    id: str
    intent_id: str
    artifact_type: ArtifactType
    data: dict[str, Any]
    hash: Optional[str] = None
    execution_id: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)

    def payload(self) -> BaseModel:
        """Re-hydrate the typed payload for this artifact."""
        return PAYLOAD_TYPES[self.artifact_type].model_validate(self.data)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "intent_id": self.intent_id,
            "execution_id": self.execution_id,
            "artifact_type": self.artifact_type.value,
            "data": self.data,
            "hash": self.hash,
            "created_at": self.created_at.isoformat(),
        }
