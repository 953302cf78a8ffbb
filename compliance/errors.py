"""
Error Taxonomy

Every failure the core can surface to a caller. Structural errors
(NotFoundError, StoreError) propagate unmodified; per-policy errors are
contained by the PolicyEngine; IntegrityError is never recoverable.
"""

from __future__ import annotations

from typing import Optional


class ComplianceError(Exception):
    """Base class for all intent-compliance errors."""


class StoreError(ComplianceError):
    """A collaborator store failed (connection lost, bad query, ...)."""

    def __init__(self, message: str, original: Optional[BaseException] = None):
        super().__init__(message)
        self.original = original


class NotFoundError(ComplianceError):
    def __init__(self, resource: str, resource_id: str):
        super().__init__(f"{resource} with id {resource_id} not found")
        self.resource = resource
        self.resource_id = resource_id


class NonceConflictError(ComplianceError):
    """The (user, nonce) pair has already been used."""

    def __init__(self, user_address: str, nonce: int):
        super().__init__(
            f"Nonce already used for this user: {user_address} nonce={nonce}"
        )
        self.user_address = user_address
        self.nonce = nonce


class InvalidStateTransition(ComplianceError):
    """An operation was attempted from a status that forbids it."""

    def __init__(self, intent_id: str, current: str, target: str, message: str = ""):
        super().__init__(
            message
            or f"Intent {intent_id} cannot move from '{current}' to '{target}'"
        )
        self.intent_id = intent_id
        self.current = current
        self.target = target


class StatusConflictError(InvalidStateTransition):
    """A conditional status update lost: the stored status was not the expected one."""


class ConcurrentTransitionError(InvalidStateTransition):
    """Another request is already transitioning this intent."""

    def __init__(self, intent_id: str, operation: str):
        super().__init__(
            intent_id,
            current="locked",
            target=operation,
            message=f"Intent {intent_id} already has a transition in flight; "
                    f"{operation} refused",
        )


class PolicyEvaluationError(ComplianceError):
    """A handler received malformed config or could not evaluate."""

    def __init__(self, message: str, policy_id: str, policy_type: str):
        super().__init__(message)
        self.policy_id = policy_id
        self.policy_type = policy_type


class IntegrityError(ComplianceError):
    """Stored artifact hash does not match its payload: tamper or corruption."""

    def __init__(self, artifact_id: str, stored_hash: Optional[str], computed_hash: str):
        super().__init__(
            f"Audit artifact {artifact_id} failed integrity check "
            f"(stored={stored_hash}, computed={computed_hash})"
        )
        self.artifact_id = artifact_id
        self.stored_hash = stored_hash
        self.computed_hash = computed_hash


class ExecutionError(ComplianceError):
    """The execution collaborator reported failure or a revert."""

    def __init__(self, message: str, revert_reason: Optional[str] = None):
        super().__init__(message)
        self.revert_reason = revert_reason
