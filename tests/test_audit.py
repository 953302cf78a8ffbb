"""
Audit Trail Recorder Tests
Hashing, typed payloads and tamper detection.
"""

from __future__ import annotations

import pytest
from pydantic import BaseModel

from compliance.audit import compute_content_hash
from compliance.errors import IntegrityError
from compliance.models import (
    ArtifactType,
    ErrorLoggedPayload,
    PolicyEvaluationPayload,
    TransactionSubmittedPayload,
)


def _evaluation(passed=False):
    return PolicyEvaluationPayload(
        policy_id="p-1", policy_name="max-2-eth", policy_type="trade_limit",
        passed=passed, reason="Rejected: amount_in (3) exceeds maximum (2)",
        metadata={"violations": ["amount_in (3) exceeds maximum (2)"]},
    )


def test_content_hash_is_key_order_independent():
    a = compute_content_hash({"b": 1, "a": [1, 2], "c": {"y": 1, "x": 2}})
    b = compute_content_hash({"c": {"x": 2, "y": 1}, "a": [1, 2], "b": 1})
    assert a == b
    assert len(a) == 64
    assert compute_content_hash({"a": 1}) != compute_content_hash({"a": 2})


def test_record_derives_type_and_hash(recorder):
    artifact = recorder.record("intent-1", _evaluation())
    assert artifact.artifact_type == ArtifactType.POLICY_EVALUATION
    assert artifact.data["policy_name"] == "max-2-eth"
    assert artifact.hash == compute_content_hash(artifact.data)
    assert isinstance(artifact.payload(), PolicyEvaluationPayload)
    assert recorder.verify(artifact.id)


def test_record_refuses_unknown_payloads(recorder):
    class Note(BaseModel):
        text: str

    with pytest.raises(TypeError):
        recorder.record("intent-1", Note(text="hi"))


def test_trail_is_in_creation_order_and_filterable(recorder):
    recorder.record("intent-1", _evaluation())
    recorder.record("intent-1", TransactionSubmittedPayload(tx_ref="0xabc"), execution_id="exec-1")
    recorder.record("intent-1", ErrorLoggedPayload(error="reverted", phase="execution"),
                    execution_id="exec-1")
    recorder.record("intent-2", _evaluation(passed=True))

    trail = recorder.trail("intent-1")
    assert [a.artifact_type for a in trail] == [
        ArtifactType.POLICY_EVALUATION,
        ArtifactType.TRANSACTION_SUBMITTED,
        ArtifactType.ERROR_LOGGED,
    ]
    assert len(recorder.trail("intent-1", execution_id="exec-1")) == 2
    assert len(recorder.policy_evaluations("intent-1")) == 1
    assert len(recorder.error_logs("intent-1")) == 1
    assert recorder.stats("intent-1")["total"] == 3
    assert recorder.stats("intent-1")["event_decoded"] == 0


def test_reads_do_not_change_the_trail(recorder):
    recorder.record("intent-1", _evaluation())
    first = recorder.trail("intent-1")
    first[0].data["passed"] = True
    assert recorder.trail("intent-1") == recorder.trail("intent-1")
    assert recorder.trail("intent-1")[0].data["passed"] is False


def test_tampered_payload_is_detected(recorder, audit_store):
    artifact = recorder.record("intent-1", _evaluation())
    assert recorder.verify_trail("intent-1") == 1

    audit_store._by_id[artifact.id].data["passed"] = True

    with pytest.raises(IntegrityError) as exc_info:
        recorder.verify_trail("intent-1")
    assert exc_info.value.artifact_id == artifact.id
    assert exc_info.value.stored_hash == artifact.hash


def test_missing_hash_is_an_integrity_failure(recorder, audit_store):
    artifact = recorder.record("intent-1", _evaluation())
    audit_store._by_id[artifact.id].hash = None
    with pytest.raises(IntegrityError):
        recorder.verify(artifact.id)
