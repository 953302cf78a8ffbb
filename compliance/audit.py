"""
Audit Trail Recorder

Centralized interface for writing to the append-only audit trail.
Every artifact is hashed at write time (SHA-256 over canonical JSON of its
payload) so the trail can later be re-verified; a mismatch is surfaced as
IntegrityError, never ignored.
"""

from __future__ import annotations

import hashlib
import json
import logging
from typing import Any, Optional
from uuid import uuid4

from pydantic import BaseModel

from compliance.errors import IntegrityError
from compliance.models import (
    ARTIFACT_TYPE_OF,
    ArtifactType,
    AuditArtifact,
    utcnow,
)
from compliance.stores import AuditStore

logger = logging.getLogger(__name__)


def compute_content_hash(data: dict[str, Any]) -> str:
    """SHA-256 hex digest of the canonical JSON form of *data*."""
    canonical = json.dumps(data, sort_keys=True)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


class AuditTrailRecorder:
    """
    Append-only writer and reader for audit artifacts.

    All inserts go through this class so that every component
    (PolicyEngine, ExecutionResultReducer, state machine) shares one
    interface and one hashing rule.
    """

    def __init__(self, store: AuditStore):
        self.store = store

    # -- writes -------------------------------------------------------------

    def record(
        self,
        intent_id: str,
        payload: BaseModel,
        execution_id: Optional[str] = None,
    ) -> AuditArtifact:
        """Persist one artifact; its type is derived from the payload class."""
        artifact_type = ARTIFACT_TYPE_OF.get(type(payload))
        if artifact_type is None:
            raise TypeError(f"Not an audit payload: {type(payload).__name__}")

        data = payload.model_dump(mode="json")
        artifact = AuditArtifact(
            id=str(uuid4()),
            intent_id=intent_id,
            execution_id=execution_id,
            artifact_type=artifact_type,
            data=data,
            hash=compute_content_hash(data),
            created_at=utcnow(),
        )
        stored = self.store.append(artifact)
        logger.debug("audit %s recorded for intent %s (%s)",
                     artifact_type.value, intent_id, stored.id)
        return stored

    # -- reads --------------------------------------------------------------

    def trail(
        self,
        intent_id: str,
        artifact_type: Optional[ArtifactType] = None,
        execution_id: Optional[str] = None,
    ) -> list[AuditArtifact]:
        """Artifacts for one intent in creation order."""
        return self.store.list_by_intent(
            intent_id, artifact_type=artifact_type, execution_id=execution_id,
        )

    def for_execution(self, execution_id: str) -> list[AuditArtifact]:
        return self.store.list_by_execution(execution_id)

    def policy_evaluations(self, intent_id: str) -> list[AuditArtifact]:
        return self.trail(intent_id, artifact_type=ArtifactType.POLICY_EVALUATION)

    def error_logs(self, intent_id: str) -> list[AuditArtifact]:
        return self.trail(intent_id, artifact_type=ArtifactType.ERROR_LOGGED)

    def stats(self, intent_id: str) -> dict[str, int]:
        """Artifact counts per type for one intent."""
        artifacts = self.trail(intent_id)
        counts = {"total": len(artifacts)}
        for t in ArtifactType:
            counts[t.value] = sum(1 for a in artifacts if a.artifact_type == t)
        return counts

    # -- integrity ----------------------------------------------------------

    def verify_artifact(self, artifact: AuditArtifact) -> bool:
        computed = compute_content_hash(artifact.data)
        if artifact.hash is None or artifact.hash != computed:
            logger.error("integrity check failed for audit artifact %s", artifact.id)
            raise IntegrityError(artifact.id, artifact.hash, computed)
        return True

    def verify(self, artifact_id: str) -> bool:
        """Recompute one artifact's hash. Raises IntegrityError on mismatch."""
        return self.verify_artifact(self.store.get(artifact_id))

    def verify_trail(self, intent_id: str) -> int:
        """Verify every artifact for an intent; returns how many were checked."""
        artifacts = self.trail(intent_id)
        for artifact in artifacts:
            self.verify_artifact(artifact)
        return len(artifacts)
