"""
Intent Compliance Service

The operations callers see: create, validate, execute, read the audit
trail. Wires the PolicyEngine, state machine, ExecutionResultReducer and
AuditTrailRecorder to a set of stores and one execution collaborator.
"""

from __future__ import annotations

import logging
import traceback
from dataclasses import dataclass, field
from typing import Any, Optional, Union

from compliance.audit import AuditTrailRecorder
from compliance.config import STORE_POSTGRES, Settings, load_settings
from compliance.execution import ExecutionOutcome, ExecutionResultReducer, ReducedExecution
from compliance.executor import ExecutionCollaborator, HttpVenueExecutor, UnconfiguredExecutor
from compliance.models import (
    ArtifactType,
    AuditArtifact,
    ErrorLoggedPayload,
    Execution,
    Intent,
    IntentInput,
    IntentStatus,
    IntentValidationResult,
    Policy,
)
from compliance.policy_engine import PolicyEngine
from compliance.registry import PolicyRuleRegistry, default_registry
from compliance.state_machine import (
    IntentStateMachine,
    require_status,
    status_after_validation,
)
from compliance.stores import (
    AuditStore,
    ExecutionStore,
    InMemoryAuditStore,
    InMemoryExecutionStore,
    InMemoryIntentStore,
    InMemoryPolicyStore,
    IntentStore,
    PolicyStore,
)
from compliance.validation import (
    IntentCreate,
    PolicyCreate,
    PolicyUpdate,
    validate_policy_config,
)

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------

@dataclass
class ValidationOutcome:
    intent: Intent
    result: IntentValidationResult

    @property
    def status(self) -> IntentStatus:
        return self.intent.status

    def to_dict(self) -> dict[str, Any]:
        return {
            "intent_id": self.intent.id,
            "new_status": self.intent.status.value,
            "validation": self.result.to_dict(),
        }


@dataclass
class ExecutionReport:
    intent: Intent
    execution: Execution
    reduced: ReducedExecution
    artifacts: list[AuditArtifact] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return self.reduced.success

    def to_dict(self) -> dict[str, Any]:
        return {
            "intent_id": self.intent.id,
            "new_status": self.intent.status.value,
            "success": self.success,
            "execution": self.execution.to_dict(),
            "events": [e.to_dict() for e in self.reduced.events],
            "error": self.reduced.error,
            "revert_reason": self.reduced.revert_reason,
            "artifact_ids": [a.id for a in self.artifacts],
        }


# ---------------------------------------------------------------------------
# Service
# ---------------------------------------------------------------------------

class IntentService:

    def __init__(
        self,
        intents: IntentStore,
        policies: PolicyStore,
        audit_store: AuditStore,
        executions: ExecutionStore,
        executor: ExecutionCollaborator | None = None,
        registry: PolicyRuleRegistry | None = None,
        record_state_changes: bool = False,
        policy_workers: int = 1,
    ):
        self.intents = intents
        self.policies = policies
        self.executions = executions
        self.executor = executor or UnconfiguredExecutor()
        self.registry = registry or default_registry()
        self.audit = AuditTrailRecorder(audit_store)
        self.engine = PolicyEngine(policies, self.audit, self.registry, workers=policy_workers)
        self.machine = IntentStateMachine(intents, self.audit, record_state_changes)
        self.reducer = ExecutionResultReducer(self.audit, executions)

    @classmethod
    def in_memory(cls, **kwargs: Any) -> "IntentService":
        return cls(
            InMemoryIntentStore(),
            InMemoryPolicyStore(),
            InMemoryAuditStore(),
            InMemoryExecutionStore(),
            **kwargs,
        )

    # -- intents ------------------------------------------------------------

    def create_intent(self, data: Union[IntentCreate, IntentInput]) -> Intent:
        """
        Persist a new intent in status ``created``.

        An IntentCreate without a nonce gets the user's next free nonce.
        Raises NonceConflictError when (user, nonce) is already taken.
        """
        if isinstance(data, IntentCreate):
            nonce = None if data.nonce is not None else self.intents.next_nonce(data.user_address)
            data = data.to_input(nonce)
        intent = self.intents.create(data)
        logger.info("intent %s created for %s nonce=%d", intent.id, intent.user_address, intent.nonce)
        return intent

    def get_intent(self, intent_id: str) -> Intent:
        return self.intents.get(intent_id)

    def list_intents(self, status: Optional[IntentStatus] = None,
                     user_address: Optional[str] = None,
                     limit: int = 50, offset: int = 0) -> list[Intent]:
        return self.intents.list(status=status, user_address=user_address,
                                 limit=limit, offset=offset)

    def next_nonce(self, user_address: str) -> int:
        return self.intents.next_nonce(user_address)

    def update_signature(self, intent_id: str, signature: str) -> Intent:
        intent = self.intents.get(intent_id)
        require_status(intent, IntentStatus.CREATED, "signed")
        return self.intents.update_signature(intent_id, signature)

    # -- validation ---------------------------------------------------------

    def validate_intent(self, intent_id: str) -> ValidationOutcome:
        """
        Run every enabled policy against a ``created`` intent and apply the
        verdict: ``validated`` if all pass, ``rejected`` otherwise.
        """
        with self.intents.hold(intent_id, "validate"):
            intent = self.intents.get(intent_id)
            result = self.engine.validate_intent(intent)
            target = status_after_validation(result.passed)
            updated = self.machine.transition(intent, target, reason=result.reason)
            if not result.passed:
                logger.warning("intent %s rejected: %s", intent_id, "; ".join(result.reasons))
            return ValidationOutcome(intent=updated, result=result)

    # -- execution ----------------------------------------------------------

    def _run_collaborator(self, intent: Intent) -> tuple[ExecutionOutcome, Optional[str]]:
        """Call the collaborator; its exceptions become a failed outcome."""
        try:
            outcome = self.executor.execute(intent)
        except Exception as exc:
            logger.exception("execution collaborator raised for intent %s", intent.id)
            return ExecutionOutcome(success=False, error=str(exc) or type(exc).__name__), None

        decode_error = None
        if outcome.success and outcome.tx_ref and outcome.events is None:
            try:
                outcome.events = self.executor.decode_events(outcome.tx_ref)
            except Exception as exc:
                # The transaction is final; only the log decoding is lost.
                logger.exception("event decoding failed for tx %s", outcome.tx_ref)
                outcome.events = []
                decode_error = "".join(traceback.format_exception_only(type(exc), exc)).strip()
        return outcome, decode_error

    def execute_intent(self, intent_id: str) -> ExecutionReport:
        """
        Submit a ``validated`` intent through the execution collaborator.

        The intent moves to ``executing`` before the collaborator is called,
        then to ``executed`` or ``failed`` according to the reduced outcome.
        Calling this in any other status raises InvalidStateTransition and
        creates no Execution record.
        """
        with self.intents.hold(intent_id, "execute"):
            intent = self.intents.get(intent_id)
            require_status(intent, IntentStatus.VALIDATED, "executed")
            intent = self.machine.transition(intent, IntentStatus.EXECUTING,
                                             reason="execution started")
            execution = self.executions.create(intent.id)

            outcome, decode_error = self._run_collaborator(intent)
            reduced = self.reducer.reduce(intent, execution, outcome)
            artifacts = list(reduced.artifacts)
            if decode_error is not None:
                artifacts.append(self.audit.record(
                    intent.id,
                    ErrorLoggedPayload(error=decode_error, phase="decode", tx_ref=outcome.tx_ref),
                    execution_id=execution.id,
                ))

            final = self.machine.transition(
                intent, reduced.target_status,
                reason=reduced.error or f"transaction {outcome.tx_ref} confirmed",
                execution_id=execution.id,
            )
            return ExecutionReport(
                intent=final, execution=reduced.execution,
                reduced=reduced, artifacts=artifacts,
            )

    def get_execution(self, intent_id: str) -> Optional[Execution]:
        self.intents.get(intent_id)
        return self.executions.get_by_intent(intent_id)

    def list_executions(self, intent_id: str) -> list[Execution]:
        self.intents.get(intent_id)
        return self.executions.list_by_intent(intent_id)

    # -- audit --------------------------------------------------------------

    def get_audit_trail(self, intent_id: str,
                        artifact_type: Optional[ArtifactType] = None,
                        execution_id: Optional[str] = None) -> list[AuditArtifact]:
        """Artifacts for an existing intent in creation order. Read-only."""
        self.intents.get(intent_id)
        return self.audit.trail(intent_id, artifact_type=artifact_type,
                                execution_id=execution_id)

    def verify_audit_trail(self, intent_id: str) -> int:
        """Re-hash every artifact of an intent. Raises IntegrityError on tamper."""
        self.intents.get(intent_id)
        return self.audit.verify_trail(intent_id)

    # -- policies -----------------------------------------------------------

    def create_policy(self, data: PolicyCreate) -> Policy:
        policy = self.policies.create(data.to_input())
        if self.registry.resolve(policy) is None:
            logger.warning("policy %s (%s) has no registered handler and will fail closed",
                           policy.name, self.registry.tag_for(policy))
        logger.info("policy %s created: %s (%s)", policy.id, policy.name, policy.policy_type)
        return policy

    def get_policy(self, policy_id: str) -> Policy:
        return self.policies.get(policy_id)

    def list_policies(self, enabled: Optional[bool] = None,
                      policy_type: Optional[str] = None,
                      limit: int = 100, offset: int = 0) -> list[Policy]:
        return self.policies.list(enabled=enabled, policy_type=policy_type,
                                  limit=limit, offset=offset)

    def update_policy(self, policy_id: str, data: PolicyUpdate) -> Policy:
        """Partial update. A new config or type is re-checked against the effective type."""
        changes = data.changes()
        if "config" in changes or "policy_type" in changes:
            current = self.policies.get(policy_id)
            policy_type = changes.get("policy_type", current.policy_type)
            config = changes.get("config", current.config)
            changes["config"] = validate_policy_config(policy_type, config)
        policy = self.policies.update(policy_id, **changes)
        logger.info("policy %s updated: %s", policy_id, sorted(changes))
        return policy

    def delete_policy(self, policy_id: str) -> None:
        self.policies.delete(policy_id)
        logger.info("policy %s deleted", policy_id)

    # -- stats --------------------------------------------------------------

    def stats(self) -> dict[str, Any]:
        return {
            "intents": self.intents.stats(),
            "policies": self.policies.stats(),
            "executions": self.executions.stats(),
        }

    def check_registry_coverage(self) -> list[str]:
        """Log and return enabled policy types no handler covers."""
        missing = self.registry.missing_for(self.policies.list_active())
        for tag in missing:
            logger.warning("no handler registered for policy type %s; "
                           "intents will be rejected while it is enabled", tag)
        return missing


# ---------------------------------------------------------------------------
# Wiring
# ---------------------------------------------------------------------------

def build_service(settings: Settings | None = None,
                  registry: PolicyRuleRegistry | None = None) -> IntentService:
    """Assemble an IntentService from settings (environment by default)."""
    settings = settings or load_settings()

    if settings.executor_url:
        executor: ExecutionCollaborator = HttpVenueExecutor(
            settings.executor_url, timeout=settings.executor_timeout_seconds,
        )
    else:
        logger.warning("COMPLIANCE_EXECUTOR_URL not set; executions will fail closed")
        executor = UnconfiguredExecutor()

    options = dict(
        executor=executor,
        registry=registry,
        record_state_changes=settings.record_state_changes,
        policy_workers=settings.policy_workers,
    )

    if settings.store == STORE_POSTGRES:
        from compliance.postgres import (
            PostgresAuditStore,
            PostgresExecutionStore,
            PostgresIntentStore,
            PostgresPolicyStore,
        )
        db = settings.db_config
        service = IntentService(
            PostgresIntentStore(db), PostgresPolicyStore(db),
            PostgresAuditStore(db), PostgresExecutionStore(db),
            **options,
        )
    else:
        service = IntentService.in_memory(**options)
    return service
