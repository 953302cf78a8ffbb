"""
Compliance SDK: Data Models
"""

from __future__ import annotations

from pydantic import BaseModel


class ValidationResult(BaseModel):
    """Result of a POST /intents/{id}/validate call."""
    intent_id: str
    passed: bool
    new_status: str         # validated | rejected
    reasons: list[str] = []
    evaluations: list[dict] = []
    raw: dict               # full response body


class ExecutionResult(BaseModel):
    """Result of a POST /intents/{id}/execute call."""
    intent_id: str
    success: bool
    new_status: str         # executed | failed
    tx_ref: str | None = None
    error: str | None = None
    revert_reason: str | None = None
    events: list[dict] = []
    raw: dict


class AuditTrail(BaseModel):
    """Result of a GET /audit/{intent_id} call."""
    intent_id: str
    artifacts: list[dict] = []
    raw: dict

    def of_type(self, artifact_type: str) -> list[dict]:
        return [a for a in self.artifacts if a.get("artifact_type") == artifact_type]
