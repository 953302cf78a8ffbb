"""
Intent Compliance Gateway

Single HTTP entry point for trading intents. Every intent is validated
against the enabled policies before it may be executed, and every policy
decision, transaction and decoded event lands in the audit trail.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Any, Optional

from fastapi import Depends, FastAPI, Request
from fastapi.responses import JSONResponse
from pydantic import ValidationError

from compliance.config import load_settings
from compliance.errors import (
    ConcurrentTransitionError,
    IntegrityError,
    InvalidStateTransition,
    NonceConflictError,
    NotFoundError,
    StoreError,
)
from compliance.models import ArtifactType, IntentStatus, PolicyType
from compliance.service import IntentService, build_service
from compliance.validation import (
    AuditQuery,
    IntentCreate,
    IntentListQuery,
    PolicyCreate,
    PolicyListQuery,
    PolicyUpdate,
    SignatureUpdate,
    check_address,
)

settings = load_settings()
logging.basicConfig(
    level=settings.log_level,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger("compliance.gateway")

# ---------------------------------------------------------------------------
# App + shared services
# ---------------------------------------------------------------------------

service = build_service(settings)


def get_service() -> IntentService:
    return service


@asynccontextmanager
async def lifespan(app: FastAPI):
    try:
        service.check_registry_coverage()
    except StoreError as exc:
        logger.warning("could not check policy handler coverage at startup: %s", exc)
    yield


app = FastAPI(
    title="Intent Compliance Gateway",
    version="1.0.0",
    lifespan=lifespan,
)


# ---------------------------------------------------------------------------
# Error mapping
# ---------------------------------------------------------------------------

@app.exception_handler(NotFoundError)
def _not_found(request: Request, exc: NotFoundError):
    return JSONResponse(status_code=404, content={"error": str(exc)})


@app.exception_handler(NonceConflictError)
def _nonce_conflict(request: Request, exc: NonceConflictError):
    return JSONResponse(
        status_code=409,
        content={"error": str(exc), "user_address": exc.user_address, "nonce": exc.nonce},
    )


@app.exception_handler(InvalidStateTransition)
def _invalid_transition(request: Request, exc: InvalidStateTransition):
    content: dict[str, Any] = {"error": str(exc), "intent_id": exc.intent_id}
    if isinstance(exc, ConcurrentTransitionError):
        content["code"] = "transition_in_flight"
    else:
        content["current_status"] = exc.current
    return JSONResponse(status_code=409, content=content)


@app.exception_handler(IntegrityError)
def _integrity(request: Request, exc: IntegrityError):
    logger.critical("AUDIT INTEGRITY VIOLATION: %s", exc)
    return JSONResponse(
        status_code=500,
        content={
            "error": str(exc),
            "code": "integrity_violation",
            "artifact_id": exc.artifact_id,
        },
    )


@app.exception_handler(ValidationError)
def _invalid_input(request: Request, exc: ValidationError):
    return JSONResponse(
        status_code=422,
        content={
            "error": "Invalid request",
            "details": exc.errors(include_url=False, include_context=False, include_input=False),
        },
    )


@app.exception_handler(StoreError)
def _store_error(request: Request, exc: StoreError):
    logger.error("store failure on %s %s: %s", request.method, request.url.path, exc)
    return JSONResponse(status_code=500, content={"error": str(exc), "code": "store_error"})


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------

@app.get("/health")
def health():
    return {"status": "operational", "service": "intent-compliance-gateway"}


# -- intents ----------------------------------------------------------------

@app.post("/intents")
def create_intent(body: IntentCreate, svc: IntentService = Depends(get_service)):
    """Register a new intent in status ``created``."""
    intent = svc.create_intent(body)
    return JSONResponse(
        status_code=201,
        content={"data": intent.to_dict(), "message": "Intent created."},
    )


@app.get("/intents")
def list_intents(
    status: Optional[IntentStatus] = None,
    user_address: Optional[str] = None,
    limit: int = 50,
    offset: int = 0,
    svc: IntentService = Depends(get_service),
):
    query = IntentListQuery(status=status, user_address=user_address,
                            limit=limit, offset=offset)
    intents = svc.list_intents(query.status, query.user_address, query.limit, query.offset)
    return {
        "data": [i.to_dict() for i in intents],
        "pagination": {"limit": query.limit, "offset": query.offset, "count": len(intents)},
    }


@app.get("/intents/nonce")
def next_nonce(address: str, svc: IntentService = Depends(get_service)):
    try:
        check_address(address)
    except ValueError as exc:
        return JSONResponse(status_code=422, content={"error": str(exc), "address": address})
    return {"address": address, "nonce": svc.next_nonce(address)}


@app.get("/intents/{intent_id}")
def get_intent(intent_id: str, svc: IntentService = Depends(get_service)):
    return {"data": svc.get_intent(intent_id).to_dict()}


@app.put("/intents/{intent_id}/signature")
def update_signature(intent_id: str, body: SignatureUpdate,
                     svc: IntentService = Depends(get_service)):
    intent = svc.update_signature(intent_id, body.signature)
    return {"data": intent.to_dict(), "message": "Signature recorded."}


@app.post("/intents/{intent_id}/validate")
def validate_intent(intent_id: str, svc: IntentService = Depends(get_service)):
    """
    Evaluate a ``created`` intent against every enabled policy.

    200 with the evaluations when all pass (intent is now ``validated``);
    403 with the specific reasons when any fail (intent is now ``rejected``).
    """
    outcome = svc.validate_intent(intent_id)
    if not outcome.result.passed:
        return JSONResponse(
            status_code=403,
            content={
                **outcome.to_dict(),
                "error": "Intent rejected by policy.",
                "reasons": outcome.result.reasons,
            },
        )
    return JSONResponse(
        status_code=200,
        content={**outcome.to_dict(), "message": "Intent validated. Cleared for execution."},
    )


@app.post("/intents/{intent_id}/execute")
def execute_intent(intent_id: str, svc: IntentService = Depends(get_service)):
    """
    Execute a ``validated`` intent through the configured venue.

    200 when the transaction succeeded (intent ``executed``); 400 with the
    error and revert reason otherwise (intent ``failed``).
    """
    report = svc.execute_intent(intent_id)
    if not report.success:
        return JSONResponse(
            status_code=400,
            content={
                **report.to_dict(),
                "error": report.reduced.error or "Execution failed",
            },
        )
    return JSONResponse(
        status_code=200,
        content={**report.to_dict(), "message": "Intent executed."},
    )


@app.get("/intents/{intent_id}/execution")
def get_execution(intent_id: str, svc: IntentService = Depends(get_service)):
    execution = svc.get_execution(intent_id)
    if execution is None:
        return JSONResponse(
            status_code=404,
            content={"error": f"No execution recorded for intent {intent_id}"},
        )
    return {"data": execution.to_dict()}


# -- audit ------------------------------------------------------------------

@app.get("/audit/{intent_id}")
def get_audit_trail(
    intent_id: str,
    artifact_type: Optional[ArtifactType] = None,
    execution_id: Optional[str] = None,
    svc: IntentService = Depends(get_service),
):
    query = AuditQuery(artifact_type=artifact_type, execution_id=execution_id)
    artifacts = svc.get_audit_trail(intent_id, query.artifact_type, query.execution_id)
    return {
        "intent_id": intent_id,
        "count": len(artifacts),
        "data": [a.to_dict() for a in artifacts],
    }


@app.get("/audit/{intent_id}/verify")
def verify_audit_trail(intent_id: str, svc: IntentService = Depends(get_service)):
    checked = svc.verify_audit_trail(intent_id)
    return {"intent_id": intent_id, "status": "valid", "verified": checked}


# -- policies ---------------------------------------------------------------

@app.get("/policies")
def list_policies(
    enabled: Optional[bool] = None,
    policy_type: Optional[PolicyType] = None,
    limit: int = 100,
    offset: int = 0,
    svc: IntentService = Depends(get_service),
):
    query = PolicyListQuery(enabled=enabled, policy_type=policy_type,
                            limit=limit, offset=offset)
    policies = svc.list_policies(
        query.enabled,
        query.policy_type.value if query.policy_type else None,
        query.limit, query.offset,
    )
    return {
        "data": [p.to_dict() for p in policies],
        "pagination": {"limit": query.limit, "offset": query.offset, "count": len(policies)},
    }


@app.post("/policies")
def create_policy(body: PolicyCreate, svc: IntentService = Depends(get_service)):
    policy = svc.create_policy(body)
    return JSONResponse(
        status_code=201,
        content={"data": policy.to_dict(), "message": "Policy created."},
    )


@app.get("/policies/{policy_id}")
def get_policy(policy_id: str, svc: IntentService = Depends(get_service)):
    return {"data": svc.get_policy(policy_id).to_dict()}


@app.patch("/policies/{policy_id}")
def update_policy(policy_id: str, body: PolicyUpdate,
                  svc: IntentService = Depends(get_service)):
    if not body.changes():
        return JSONResponse(status_code=422, content={"error": "No fields to update"})
    policy = svc.update_policy(policy_id, body)
    return {"data": policy.to_dict(), "message": "Policy updated."}


@app.delete("/policies/{policy_id}")
def delete_policy(policy_id: str, svc: IntentService = Depends(get_service)):
    svc.delete_policy(policy_id)
    return {"id": policy_id, "message": "Policy deleted."}


# -- stats ------------------------------------------------------------------

@app.get("/stats")
def stats(svc: IntentService = Depends(get_service)):
    return {"data": svc.stats()}
