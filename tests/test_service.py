"""
Intent Service Test Suite
End-to-end lifecycle scenarios on in-memory stores: creation, policy
validation, execution through a scripted collaborator, and the audit
trail each step leaves behind.
"""

from __future__ import annotations

import threading

import httpx
import pytest
from pydantic import ValidationError

from compliance import rules
from compliance.errors import (
    ConcurrentTransitionError,
    IntegrityError,
    InvalidStateTransition,
    NonceConflictError,
    NotFoundError,
)
from compliance.execution import ExecutionOutcome
from compliance.executor import HttpVenueExecutor, UnconfiguredExecutor
from compliance.models import ArtifactType, ExecutionStatus, IntentStatus
from compliance.policy_engine import NO_POLICIES_REASON
from compliance.registry import default_registry
from compliance.service import IntentService
from compliance.stores import IntentLocks
from compliance.validation import IntentCreate, PolicyCreate, PolicyUpdate
from tests.helpers import (
    FUTURE,
    ONE_ETH,
    SANCTIONED,
    USDC,
    USER,
    WETH,
    FakeExecutor,
    intent_input,
    policy_input,
)

A = ArtifactType

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _standard_policies(policies):
    policies.create(policy_input("allow-user", "allow_deny_list",
                                 {"mode": "allow", "addresses": [USER]}, priority=0))
    policies.create(policy_input("max-2-eth", "trade_limit",
                                 {"max_amount": str(2 * ONE_ETH)}, priority=1))
    policies.create(policy_input("venues", "venue_allowlist",
                                 {"allowed_venues": ["uniswap_v3", "curve"]}, priority=2))


def _validated(service, policies, **overrides):
    _standard_policies(policies)
    intent = service.create_intent(intent_input(**overrides))
    assert service.validate_intent(intent.id).status == IntentStatus.VALIDATED
    return intent


def _types(trail):
    return [a.artifact_type for a in trail]


# ---------------------------------------------------------------------------
# Creation
# ---------------------------------------------------------------------------


def test_create_rejects_reused_nonce(service):
    service.create_intent(intent_input(nonce=3))
    with pytest.raises(NonceConflictError):
        service.create_intent(intent_input(nonce=3))


def test_create_assigns_next_nonce_when_omitted(service):
    body = dict(user_address=USER, asset_in=WETH, asset_out=USDC, amount_in=str(ONE_ETH),
                amount_out_min="0", venue="curve", deadline=FUTURE)
    first = service.create_intent(IntentCreate(**body))
    second = service.create_intent(IntentCreate(**body))
    explicit = service.create_intent(IntentCreate(**body, nonce=10))
    assert (first.nonce, second.nonce, explicit.nonce) == (0, 1, 10)
    assert service.next_nonce(USER) == 11
    assert first.status == IntentStatus.CREATED


def test_signature_only_before_validation(service, policies):
    intent = service.create_intent(intent_input())
    assert service.update_signature(intent.id, "0xdeadbeef").signature == "0xdeadbeef"
    _standard_policies(policies)
    service.validate_intent(intent.id)
    with pytest.raises(InvalidStateTransition):
        service.update_signature(intent.id, "0xfeed")


def test_unknown_intent(service):
    with pytest.raises(NotFoundError):
        service.validate_intent("missing")
    with pytest.raises(NotFoundError):
        service.get_audit_trail("missing")


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------


def test_zero_policies_rejects(service):
    intent = service.create_intent(intent_input())
    outcome = service.validate_intent(intent.id)
    assert outcome.status == IntentStatus.REJECTED
    assert outcome.result.reasons == [NO_POLICIES_REASON]
    assert service.get_intent(intent.id).status == IntentStatus.REJECTED


def test_trail_grows_by_number_of_enabled_policies(service, policies):
    _standard_policies(policies)
    policies.create(policy_input("off", "custom", {}, enabled=False))
    intent = service.create_intent(intent_input())
    before = len(service.get_audit_trail(intent.id))
    service.validate_intent(intent.id)
    after = service.get_audit_trail(intent.id)
    assert len(after) - before == 3
    assert _types(after) == [A.POLICY_EVALUATION] * 3


def test_audit_trail_reads_are_idempotent(service, policies):
    intent = _validated(service, policies)
    service.execute_intent(intent.id)
    assert service.get_audit_trail(intent.id) == service.get_audit_trail(intent.id)


def test_allowlisted_intent_is_validated(service, policies):
    intent = _validated(service, policies)
    evaluations = service.get_audit_trail(intent.id, artifact_type=A.POLICY_EVALUATION)
    assert all(a.data["passed"] for a in evaluations)


def test_trade_limit_rejection_carries_reason(service, policies):
    _standard_policies(policies)
    intent = service.create_intent(intent_input(amount_in=str(5 * ONE_ETH)))
    outcome = service.validate_intent(intent.id)
    assert outcome.status == IntentStatus.REJECTED
    assert outcome.result.reasons == [
        "max-2-eth: Rejected: amount_in (5000000000000000000) exceeds maximum (2000000000000000000)"
    ]


def test_venue_rejection(service, policies):
    _standard_policies(policies)
    intent = service.create_intent(intent_input(venue="sushiswap"))
    outcome = service.validate_intent(intent.id)
    assert outcome.status == IntentStatus.REJECTED
    assert [e.policy_name for e in outcome.result.failed_policies] == ["venues"]


def test_denylisted_asset_is_rejected(service, policies):
    _standard_policies(policies)
    policies.create(policy_input("sanctions", "allow_deny_list",
                                 {"mode": "deny", "addresses": [SANCTIONED]}))
    intent = service.create_intent(intent_input(asset_out=SANCTIONED))
    assert service.validate_intent(intent.id).status == IntentStatus.REJECTED


def test_validation_is_not_repeatable(service, policies):
    intent = _validated(service, policies)
    with pytest.raises(InvalidStateTransition):
        service.validate_intent(intent.id)
    assert len(service.get_audit_trail(intent.id)) == 3


# ---------------------------------------------------------------------------
# Execution
# ---------------------------------------------------------------------------


def test_execute_from_created_creates_no_execution(service, executions):
    intent = service.create_intent(intent_input())
    with pytest.raises(InvalidStateTransition) as exc_info:
        service.execute_intent(intent.id)
    assert "cannot be executed in status: created" in str(exc_info.value)
    assert executions.list_by_intent(intent.id) == []
    assert service.get_intent(intent.id).status == IntentStatus.CREATED


def test_successful_execution_with_two_events(service, policies, executor):
    intent = _validated(service, policies)
    report = service.execute_intent(intent.id)

    assert report.success
    assert report.intent.status == IntentStatus.EXECUTED
    assert report.execution.status == ExecutionStatus.SUCCESS
    assert executor.decoded == [executor.outcome.tx_ref]

    trail = service.get_audit_trail(intent.id)
    assert _types(trail) == [A.POLICY_EVALUATION] * 3 + [
        A.TRANSACTION_SUBMITTED, A.EVENT_DECODED, A.EVENT_DECODED,
    ]
    assert [a.data["event_name"] for a in trail[-2:]] == ["Transfer", "Swap"]
    assert all(a.execution_id == report.execution.id for a in trail[3:])
    assert service.get_execution(intent.id).id == report.execution.id
    assert service.verify_audit_trail(intent.id) == 6


def test_collaborator_supplied_events_skip_decoding(service, policies, executor):
    executor.outcome.events = []
    intent = _validated(service, policies)
    report = service.execute_intent(intent.id)
    assert report.success
    assert executor.decoded == []


def test_revert_fails_intent(service, policies, executor):
    executor.outcome = ExecutionOutcome(
        success=False, tx_ref="0x" + "cd" * 32, error="Transaction reverted",
        revert_reason="Too little received",
    )
    intent = _validated(service, policies)
    report = service.execute_intent(intent.id)

    assert not report.success
    assert report.intent.status == IntentStatus.FAILED
    assert report.execution.status == ExecutionStatus.REVERTED
    assert report.reduced.revert_reason == "Too little received"
    assert _types(service.get_audit_trail(intent.id))[-2:] == [A.TRANSACTION_SUBMITTED, A.ERROR_LOGGED]

    with pytest.raises(InvalidStateTransition):
        service.execute_intent(intent.id)


def test_collaborator_exception_becomes_failure(intents, policies, audit_store, executions):
    executor = FakeExecutor(raises=TimeoutError("venue timed out"))
    service = IntentService(intents, policies, audit_store, executions, executor=executor)
    intent = _validated(service, policies)
    report = service.execute_intent(intent.id)

    assert report.intent.status == IntentStatus.FAILED
    assert report.execution.status == ExecutionStatus.FAILED
    error = service.get_audit_trail(intent.id, artifact_type=A.ERROR_LOGGED)[0]
    assert error.data["error"] == "venue timed out"


def test_decode_failure_keeps_execution_successful(intents, policies, audit_store, executions):
    executor = FakeExecutor(decode_raises=ConnectionError("rpc down"))
    service = IntentService(intents, policies, audit_store, executions, executor=executor)
    intent = _validated(service, policies)
    report = service.execute_intent(intent.id)

    assert report.intent.status == IntentStatus.EXECUTED
    errors = service.get_audit_trail(intent.id, artifact_type=A.ERROR_LOGGED)
    assert len(errors) == 1
    assert errors[0].data["phase"] == "decode"
    assert "rpc down" in errors[0].data["error"]


def test_unconfigured_venue_fails_closed(intents, policies, audit_store, executions):
    service = IntentService(intents, policies, audit_store, executions,
                            executor=UnconfiguredExecutor())
    intent = _validated(service, policies)
    report = service.execute_intent(intent.id)
    assert report.intent.status == IntentStatus.FAILED
    assert report.reduced.error == "No execution venue configured"


def test_malformed_venue_events_keep_transaction_reference(intents, policies, audit_store, executions):
    tx = "0x" + "fe" * 32
    venue = HttpVenueExecutor("http://venue.test", transport=httpx.MockTransport(
        lambda request: httpx.Response(200, json={"success": True, "tx_hash": tx, "events": ["Swap"]})
    ))
    service = IntentService(intents, policies, audit_store, executions, executor=venue)
    intent = _validated(service, policies)
    report = service.execute_intent(intent.id)

    assert report.intent.status == IntentStatus.FAILED
    assert report.execution.status == ExecutionStatus.REVERTED
    assert report.execution.tx_ref == tx
    trail = service.get_audit_trail(intent.id)
    assert _types(trail)[-2:] == [A.TRANSACTION_SUBMITTED, A.ERROR_LOGGED]
    assert trail[-2].data["tx_ref"] == tx
    assert trail[-1].data["error"].startswith("Malformed execution result")


def test_concurrent_execute_runs_once(intents, policies, audit_store, executions):
    executor = FakeExecutor(gate=True)
    service = IntentService(intents, policies, audit_store, executions, executor=executor)
    intent = _validated(service, policies)

    reports = []
    worker = threading.Thread(target=lambda: reports.append(service.execute_intent(intent.id)))
    worker.start()
    assert executor.entered.wait(timeout=5)

    with pytest.raises(ConcurrentTransitionError):
        service.execute_intent(intent.id)
    with pytest.raises(InvalidStateTransition):
        service.validate_intent(intent.id)

    executor.release.set()
    worker.join(timeout=5)

    assert len(reports) == 1 and reports[0].success
    assert executor.calls == [intent.id]
    assert len(executions.list_by_intent(intent.id)) == 1


def test_validation_claim_is_shared_by_services_on_one_store(intents, policies, audit_store, executions):
    entered, release = threading.Event(), threading.Event()

    def slow_venue_check(intent, policy):
        entered.set()
        release.wait(timeout=5)
        return rules.evaluate_venue_allowlist(intent, policy)

    registry = default_registry()
    registry.register("venue_allowlist", slow_venue_check, replace=True)
    first = IntentService(intents, policies, audit_store, executions, registry=registry)
    second = IntentService(intents, policies, audit_store, executions, registry=registry)
    _standard_policies(policies)
    intent = first.create_intent(intent_input())

    outcomes = []
    worker = threading.Thread(target=lambda: outcomes.append(first.validate_intent(intent.id)))
    worker.start()
    assert entered.wait(timeout=5)

    with pytest.raises(ConcurrentTransitionError):
        second.validate_intent(intent.id)

    release.set()
    worker.join(timeout=5)

    assert outcomes[0].status == IntentStatus.VALIDATED
    assert len(second.get_audit_trail(intent.id)) == 3
    with pytest.raises(InvalidStateTransition):
        second.validate_intent(intent.id)
    assert len(second.get_audit_trail(intent.id)) == 3


def test_intent_locks_release_after_error():
    locks = IntentLocks()
    with pytest.raises(RuntimeError):
        with locks.hold("i-1", "execute"):
            assert locks.is_held("i-1")
            raise RuntimeError("boom")
    assert not locks.is_held("i-1")
    with locks.hold("i-1", "execute"):
        pass


def test_state_change_artifacts_when_enabled(intents, policies, audit_store, executions):
    service = IntentService(intents, policies, audit_store, executions,
                            executor=FakeExecutor(), record_state_changes=True)
    intent = _validated(service, policies)
    service.execute_intent(intent.id)
    changes = service.get_audit_trail(intent.id, artifact_type=A.STATE_CHANGE)
    assert [(a.data["from_status"], a.data["to_status"]) for a in changes] == [
        ("created", "validated"),
        ("validated", "executing"),
        ("executing", "executed"),
    ]


def test_tampering_surfaces_as_integrity_error(service, policies, audit_store):
    intent = _validated(service, policies)
    audit_store._rows[0].data["passed"] = False
    with pytest.raises(IntegrityError):
        service.verify_audit_trail(intent.id)


# ---------------------------------------------------------------------------
# Policy administration
# ---------------------------------------------------------------------------


def test_policy_admin_round_trip(service):
    created = service.create_policy(PolicyCreate(
        name="venues", policy_type="venue_allowlist",
        config={"allowed_venues": ["curve"]}, priority=2,
    ))
    assert service.get_policy(created.id).config == {"allowed_venues": ["curve"]}

    updated = service.update_policy(created.id, PolicyUpdate(config={"allowed_venues": ["uniswap_v3"]}))
    assert updated.config == {"allowed_venues": ["uniswap_v3"]}

    with pytest.raises(ValidationError):
        service.update_policy(created.id, PolicyUpdate(config={"allowed_venues": "curve"}))
    with pytest.raises(ValidationError):
        service.update_policy(created.id, PolicyUpdate(policy_type="trade_limit"))

    assert [p.id for p in service.list_policies(policy_type="venue_allowlist")] == [created.id]
    service.delete_policy(created.id)
    assert service.list_policies() == []


def test_registry_coverage_check(service, policies):
    policies.create(policy_input("geo", "geo_fence", {}))
    policies.create(policy_input("off", "quantum", {}, enabled=False))
    assert service.check_registry_coverage() == ["geo_fence"]


def test_stats(service, policies):
    intent = _validated(service, policies)
    service.execute_intent(intent.id)
    stats = service.stats()
    assert stats["intents"]["executed"] == 1
    assert stats["policies"]["enabled"] == 3
    assert stats["executions"]["success"] == 1
