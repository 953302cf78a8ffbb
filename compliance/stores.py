"""
Collaborator Stores

Narrow interfaces the core reads and writes through, plus thread-safe
in-memory implementations used by default and in tests. The PostgreSQL
implementations live in compliance.postgres.
"""

from __future__ import annotations

import copy
import itertools
import threading
from contextlib import contextmanager
from dataclasses import replace
from typing import Any, ContextManager, Iterator, Optional, Protocol
from uuid import uuid4

from compliance.errors import (
    ConcurrentTransitionError,
    NonceConflictError,
    NotFoundError,
    StatusConflictError,
    StoreError,
)
from compliance.models import (
    ArtifactType,
    AuditArtifact,
    Execution,
    ExecutionStatus,
    Intent,
    IntentInput,
    IntentStatus,
    Policy,
    PolicyInput,
    PolicyType,
    utcnow,
)

DEFAULT_INTENT_PAGE = 50
DEFAULT_POLICY_PAGE = 100

EXECUTION_FIELDS = {
    "status", "tx_ref", "block_number", "block_timestamp", "gas_used",
    "revert_reason", "amount_out", "execution_price",
}
POLICY_FIELDS = {"name", "description", "policy_type", "config", "enabled", "priority"}


# ---------------------------------------------------------------------------
# Interfaces
# ---------------------------------------------------------------------------

class IntentStore(Protocol):
    def create(self, data: IntentInput) -> Intent: ...
    def get(self, intent_id: str) -> Intent: ...
    def update_status(self, intent_id: str, status: IntentStatus,
                      expected_status: Optional[IntentStatus] = None) -> Intent: ...
    def update_signature(self, intent_id: str, signature: str) -> Intent: ...
    def list(self, status: Optional[IntentStatus] = None,
             user_address: Optional[str] = None,
             limit: int = DEFAULT_INTENT_PAGE, offset: int = 0) -> list[Intent]: ...
    def next_nonce(self, user_address: str) -> int: ...
    def hold(self, intent_id: str, operation: str) -> ContextManager[None]: ...
    def stats(self) -> dict[str, int]: ...


class PolicyStore(Protocol):
    def list_active(self) -> list[Policy]: ...
    def get(self, policy_id: str) -> Policy: ...
    def create(self, data: PolicyInput) -> Policy: ...
    def update(self, policy_id: str, **fields: Any) -> Policy: ...
    def delete(self, policy_id: str) -> None: ...
    def list(self, enabled: Optional[bool] = None, policy_type: Optional[str] = None,
             limit: int = DEFAULT_POLICY_PAGE, offset: int = 0) -> list[Policy]: ...
    def stats(self) -> dict[str, Any]: ...


class AuditStore(Protocol):
    def append(self, artifact: AuditArtifact) -> AuditArtifact: ...
    def get(self, artifact_id: str) -> AuditArtifact: ...
    def list_by_intent(self, intent_id: str,
                       artifact_type: Optional[ArtifactType] = None,
                       execution_id: Optional[str] = None) -> list[AuditArtifact]: ...
    def list_by_execution(self, execution_id: str) -> list[AuditArtifact]: ...


class ExecutionStore(Protocol):
    def create(self, intent_id: str, status: ExecutionStatus = ExecutionStatus.PENDING,
               **fields: Any) -> Execution: ...
    def update(self, execution_id: str, **fields: Any) -> Execution: ...
    def get(self, execution_id: str) -> Execution: ...
    def get_by_intent(self, intent_id: str) -> Optional[Execution]: ...
    def list_by_intent(self, intent_id: str) -> list[Execution]: ...
    def stats(self) -> dict[str, int]: ...


# ---------------------------------------------------------------------------
# Per-intent mutual exclusion
# ---------------------------------------------------------------------------

class IntentLocks:
    """
    Non-blocking per-intent lock. A second caller for the same intent is
    refused immediately instead of queueing behind the first.
    """

    def __init__(self):
        self._guard = threading.Lock()
        self._held: set[str] = set()

    @contextmanager
    def hold(self, intent_id: str, operation: str) -> Iterator[None]:
        with self._guard:
            if intent_id in self._held:
                raise ConcurrentTransitionError(intent_id, operation)
            self._held.add(intent_id)
        try:
            yield
        finally:
            with self._guard:
                self._held.discard(intent_id)

    def is_held(self, intent_id: str) -> bool:
        with self._guard:
            return intent_id in self._held


# ---------------------------------------------------------------------------
# In-memory implementations
# ---------------------------------------------------------------------------

# Callers always get private copies; nested JSON must not alias stored rows.

def _copy_policy(policy: Policy) -> Policy:
    return replace(policy, config=copy.deepcopy(policy.config))


def _copy_artifact(artifact: AuditArtifact) -> AuditArtifact:
    return replace(artifact, data=copy.deepcopy(artifact.data))


class InMemoryIntentStore:
    def __init__(self):
        self._lock = threading.Lock()
        self._rows: dict[str, Intent] = {}
        self._nonces: set[tuple[str, int]] = set()
        self._seq = itertools.count()
        self._order: dict[str, int] = {}
        self._claims = IntentLocks()

    def create(self, data: IntentInput) -> Intent:
        key = (data.user_address.lower(), data.nonce)
        with self._lock:
            if key in self._nonces:
                raise NonceConflictError(data.user_address, data.nonce)
            now = utcnow()
            intent = Intent(
                id=str(uuid4()),
                user_address=data.user_address,
                asset_in=data.asset_in,
                asset_out=data.asset_out,
                amount_in=data.amount_in,
                amount_out_min=data.amount_out_min,
                venue=data.venue,
                deadline=data.deadline,
                nonce=data.nonce,
                status=IntentStatus.CREATED,
                signature=data.signature,
                created_at=now,
                updated_at=now,
            )
            self._nonces.add(key)
            self._rows[intent.id] = intent
            self._order[intent.id] = next(self._seq)
            return replace(intent)

    def get(self, intent_id: str) -> Intent:
        with self._lock:
            intent = self._rows.get(intent_id)
            if intent is None:
                raise NotFoundError("Intent", intent_id)
            return replace(intent)

    def update_status(self, intent_id: str, status: IntentStatus,
                      expected_status: Optional[IntentStatus] = None) -> Intent:
        with self._lock:
            intent = self._rows.get(intent_id)
            if intent is None:
                raise NotFoundError("Intent", intent_id)
            if expected_status is not None and intent.status != expected_status:
                raise StatusConflictError(
                    intent_id, intent.status.value, status.value,
                    message=f"Intent {intent_id} is '{intent.status.value}', "
                            f"expected '{expected_status.value}'",
                )
            intent.status = status
            intent.updated_at = utcnow()
            return replace(intent)

    def update_signature(self, intent_id: str, signature: str) -> Intent:
        with self._lock:
            intent = self._rows.get(intent_id)
            if intent is None:
                raise NotFoundError("Intent", intent_id)
            intent.signature = signature
            intent.updated_at = utcnow()
            return replace(intent)

    def list(self, status: Optional[IntentStatus] = None,
             user_address: Optional[str] = None,
             limit: int = DEFAULT_INTENT_PAGE, offset: int = 0) -> list[Intent]:
        with self._lock:
            rows = list(self._rows.values())
        if status is not None:
            rows = [r for r in rows if r.status == status]
        if user_address:
            rows = [r for r in rows if r.user_address.lower() == user_address.lower()]
        rows.sort(key=lambda r: (r.created_at, self._order[r.id]), reverse=True)
        return [replace(r) for r in rows[offset:offset + limit]]

    def next_nonce(self, user_address: str) -> int:
        user = user_address.lower()
        with self._lock:
            used = [nonce for (addr, nonce) in self._nonces if addr == user]
        return max(used) + 1 if used else 0

    def hold(self, intent_id: str, operation: str) -> ContextManager[None]:
        """Claim an intent for one validate or execute call; shared by every service on this store."""
        return self._claims.hold(intent_id, operation)

    def stats(self) -> dict[str, int]:
        with self._lock:
            statuses = [r.status for r in self._rows.values()]
        out = {"total": len(statuses)}
        for s in IntentStatus:
            out[s.value] = sum(1 for x in statuses if x == s)
        return out


class InMemoryPolicyStore:
    def __init__(self):
        self._lock = threading.Lock()
        self._rows: dict[str, Policy] = {}
        self._seq = itertools.count()
        self._order: dict[str, int] = {}

    def create(self, data: PolicyInput) -> Policy:
        now = utcnow()
        policy = Policy(
            id=str(uuid4()),
            name=data.name,
            description=data.description,
            policy_type=data.policy_type,
            config=copy.deepcopy(data.config),
            enabled=data.enabled,
            priority=data.priority,
            created_at=now,
            updated_at=now,
        )
        with self._lock:
            self._rows[policy.id] = policy
            self._order[policy.id] = next(self._seq)
        return _copy_policy(policy)

    def get(self, policy_id: str) -> Policy:
        with self._lock:
            policy = self._rows.get(policy_id)
            if policy is None:
                raise NotFoundError("Policy", policy_id)
            return _copy_policy(policy)

    def list_active(self) -> list[Policy]:
        with self._lock:
            rows = [p for p in self._rows.values() if p.enabled]
            rows.sort(key=lambda p: (p.priority, p.created_at, self._order[p.id]))
            return [_copy_policy(p) for p in rows]

    def list(self, enabled: Optional[bool] = None, policy_type: Optional[str] = None,
             limit: int = DEFAULT_POLICY_PAGE, offset: int = 0) -> list[Policy]:
        with self._lock:
            rows = list(self._rows.values())
            order = dict(self._order)
        if enabled is not None:
            rows = [p for p in rows if p.enabled == enabled]
        if policy_type:
            rows = [p for p in rows if p.policy_type == policy_type]
        # priority ascending, newest first within a priority
        rows.sort(key=lambda p: (-order[p.id]))
        rows.sort(key=lambda p: p.priority)
        return [_copy_policy(p) for p in rows[offset:offset + limit]]

    def update(self, policy_id: str, **fields: Any) -> Policy:
        unknown = set(fields) - POLICY_FIELDS
        if unknown:
            raise StoreError(f"Unknown policy fields: {sorted(unknown)}")
        if not fields:
            raise StoreError("No fields to update")
        with self._lock:
            policy = self._rows.get(policy_id)
            if policy is None:
                raise NotFoundError("Policy", policy_id)
            for key, value in fields.items():
                setattr(policy, key, copy.deepcopy(value))
            policy.updated_at = utcnow()
            return _copy_policy(policy)

    def delete(self, policy_id: str) -> None:
        with self._lock:
            if self._rows.pop(policy_id, None) is None:
                raise NotFoundError("Policy", policy_id)
            self._order.pop(policy_id, None)

    def stats(self) -> dict[str, Any]:
        with self._lock:
            rows = list(self._rows.values())
        return {
            "total": len(rows),
            "enabled": sum(1 for p in rows if p.enabled),
            "disabled": sum(1 for p in rows if not p.enabled),
            "by_type": {
                t.value: sum(1 for p in rows if p.policy_type == t.value)
                for t in PolicyType
            },
        }


class InMemoryAuditStore:
    """Append-only: there is deliberately no update or delete."""

    def __init__(self):
        self._lock = threading.Lock()
        self._rows: list[AuditArtifact] = []
        self._by_id: dict[str, AuditArtifact] = {}

    def append(self, artifact: AuditArtifact) -> AuditArtifact:
        with self._lock:
            if artifact.id in self._by_id:
                raise StoreError(f"Audit artifact {artifact.id} already exists")
            stored = _copy_artifact(artifact)
            self._rows.append(stored)
            self._by_id[stored.id] = stored
            return _copy_artifact(stored)

    def get(self, artifact_id: str) -> AuditArtifact:
        with self._lock:
            artifact = self._by_id.get(artifact_id)
            if artifact is None:
                raise NotFoundError("Audit artifact", artifact_id)
            return _copy_artifact(artifact)

    def list_by_intent(self, intent_id: str,
                       artifact_type: Optional[ArtifactType] = None,
                       execution_id: Optional[str] = None) -> list[AuditArtifact]:
        with self._lock:
            rows = [a for a in self._rows if a.intent_id == intent_id]
        if artifact_type is not None:
            rows = [a for a in rows if a.artifact_type == artifact_type]
        if execution_id is not None:
            rows = [a for a in rows if a.execution_id == execution_id]
        # append order is the tie-break; sorted() is stable
        return [_copy_artifact(a) for a in sorted(rows, key=lambda a: a.created_at)]

    def list_by_execution(self, execution_id: str) -> list[AuditArtifact]:
        with self._lock:
            rows = [a for a in self._rows if a.execution_id == execution_id]
        return [_copy_artifact(a) for a in sorted(rows, key=lambda a: a.created_at)]


class InMemoryExecutionStore:
    def __init__(self):
        self._lock = threading.Lock()
        self._rows: dict[str, Execution] = {}
        self._seq = itertools.count()
        self._order: dict[str, int] = {}

    def create(self, intent_id: str, status: ExecutionStatus = ExecutionStatus.PENDING,
               **fields: Any) -> Execution:
        unknown = set(fields) - EXECUTION_FIELDS
        if unknown:
            raise StoreError(f"Unknown execution fields: {sorted(unknown)}")
        now = utcnow()
        execution = Execution(
            id=str(uuid4()), intent_id=intent_id, status=status,
            created_at=now, updated_at=now, **fields,
        )
        with self._lock:
            self._rows[execution.id] = execution
            self._order[execution.id] = next(self._seq)
        return replace(execution)

    def update(self, execution_id: str, **fields: Any) -> Execution:
        unknown = set(fields) - EXECUTION_FIELDS
        if unknown:
            raise StoreError(f"Unknown execution fields: {sorted(unknown)}")
        if not fields:
            raise StoreError("No fields to update")
        with self._lock:
            execution = self._rows.get(execution_id)
            if execution is None:
                raise NotFoundError("Execution", execution_id)
            for key, value in fields.items():
                setattr(execution, key, value)
            execution.updated_at = utcnow()
            return replace(execution)

    def get(self, execution_id: str) -> Execution:
        with self._lock:
            execution = self._rows.get(execution_id)
            if execution is None:
                raise NotFoundError("Execution", execution_id)
            return replace(execution)

    def list_by_intent(self, intent_id: str) -> list[Execution]:
        with self._lock:
            rows = [e for e in self._rows.values() if e.intent_id == intent_id]
            order = dict(self._order)
        rows.sort(key=lambda e: (e.created_at, order[e.id]))
        return [replace(e) for e in rows]

    def get_by_intent(self, intent_id: str) -> Optional[Execution]:
        rows = self.list_by_intent(intent_id)
        return rows[-1] if rows else None

    def stats(self) -> dict[str, int]:
        with self._lock:
            statuses = [e.status for e in self._rows.values()]
        out = {"total": len(statuses)}
        for s in ExecutionStatus:
            out[s.value] = sum(1 for x in statuses if x == s)
        return out
