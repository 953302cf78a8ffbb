"""
Deterministic Policy Engine

Evaluates an intent against every enabled policy, in priority order, and
records one audit artifact per policy before returning the verdict.
The engine never changes intent status; the caller applies the verdict.
"""

from __future__ import annotations

import logging
import traceback
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Optional

from compliance.audit import AuditTrailRecorder
from compliance.errors import PolicyEvaluationError
from compliance.models import (
    ErrorLoggedPayload,
    Intent,
    IntentStatus,
    IntentValidationResult,
    Policy,
    PolicyEvaluationPayload,
    PolicyEvaluationResult,
    to_json_safe,
    utcnow,
)
from compliance.registry import PolicyRuleRegistry, default_registry
from compliance.state_machine import require_status
from compliance.stores import PolicyStore

logger = logging.getLogger(__name__)

NO_POLICIES_REASON = (
    "No active policies - intents cannot be approved without policy coverage"
)


@dataclass
class _Evaluation:
    """One policy's outcome plus the error (if any) that produced it."""
    result: PolicyEvaluationResult
    error: Optional[BaseException] = None
    detail: Optional[str] = None


class PolicyEngine:
    """
    Validation orchestrator.

    Loads enabled policies from the PolicyStore, dispatches each to its
    registered handler, and logs every evaluation to the audit trail:
    pass or fail, handler error or missing handler.
    """

    def __init__(
        self,
        policies: PolicyStore,
        audit: AuditTrailRecorder,
        registry: PolicyRuleRegistry | None = None,
        workers: int = 1,
    ):
        self.policies = policies
        self.audit = audit
        self.registry = registry or default_registry()
        self.workers = max(1, workers)

    # -- single policy ------------------------------------------------------

    def _evaluate_one(self, intent: Intent, policy: Policy) -> _Evaluation:
        handler = self.registry.resolve(policy)
        try:
            if handler is None:
                raise PolicyEvaluationError(
                    f"No handler found for policy type: {self.registry.tag_for(policy)}",
                    policy.id, policy.policy_type,
                )
            return _Evaluation(result=handler(intent, policy))
        except PolicyEvaluationError as exc:
            reason = str(exc)
            error: BaseException = exc
        except Exception as exc:
            reason = f"Policy evaluation failed with unexpected error: {exc}"
            error = exc

        return _Evaluation(
            result=PolicyEvaluationResult(
                passed=False,
                reason=reason,
                policy_id=policy.id,
                policy_name=policy.name,
                policy_type=policy.policy_type,
                metadata={"error": str(error)},
            ),
            error=error,
            detail="".join(traceback.format_exception(type(error), error, error.__traceback__)),
        )

    def _record(self, intent: Intent, policy: Policy, evaluation: _Evaluation) -> None:
        result = evaluation.result
        if evaluation.error is None:
            payload = PolicyEvaluationPayload(
                policy_id=result.policy_id,
                policy_name=result.policy_name,
                policy_type=result.policy_type,
                passed=result.passed,
                reason=result.reason,
                metadata=to_json_safe(result.metadata),
            )
        else:
            payload = ErrorLoggedPayload(
                error=result.reason,
                phase="validation",
                policy_id=policy.id,
                policy_name=policy.name,
                detail=evaluation.detail,
            )
        self.audit.record(intent.id, payload)

    # -- orchestration ------------------------------------------------------

    def validate_intent(
        self,
        intent: Intent,
        record_audit: bool = True,
    ) -> IntentValidationResult:
        """
        Evaluate an intent (status ``created``) against all enabled policies.

        Returns:
            IntentValidationResult. ``passed`` is True only when at least one
            policy is enabled and every one of them passed.
        """
        require_status(intent, IntentStatus.CREATED, "validated")
        evaluated_at = utcnow()

        try:
            policies = self.policies.list_active()
        except Exception as exc:
            logger.exception("policy store unavailable while validating %s", intent.id)
            if record_audit:
                self.audit.record(intent.id, ErrorLoggedPayload(
                    error=str(exc), phase="validation",
                    detail="".join(traceback.format_exception(type(exc), exc, exc.__traceback__)),
                ))
            raise

        if not policies:
            logger.warning("intent %s rejected: no active policies", intent.id)
            return IntentValidationResult(
                passed=False, evaluations=[], evaluated_at=evaluated_at,
                reason=NO_POLICIES_REASON,
            )

        # Handlers are pure, so they may run concurrently; results and audit
        # writes are still emitted in priority order.
        if self.workers > 1 and len(policies) > 1:
            with ThreadPoolExecutor(max_workers=self.workers) as pool:
                evaluations = list(pool.map(lambda p: self._evaluate_one(intent, p), policies))
        else:
            evaluations = [self._evaluate_one(intent, p) for p in policies]

        for policy, evaluation in zip(policies, evaluations):
            if evaluation.error is not None:
                logger.warning("policy %s (%s) errored on intent %s: %s",
                               policy.name, policy.policy_type, intent.id,
                               evaluation.result.reason)
            if record_audit:
                self._record(intent, policy, evaluation)

        results = [e.result for e in evaluations]
        passed = all(r.passed for r in results)
        failed = [r for r in results if not r.passed]
        reason = (
            f"All {len(results)} policies passed" if passed
            else f"{len(failed)} of {len(results)} policies failed"
        )
        logger.info("intent %s validation: %s", intent.id, reason)

        return IntentValidationResult(
            passed=passed,
            evaluations=results,
            evaluated_at=evaluated_at,
            reason=reason,
        )
