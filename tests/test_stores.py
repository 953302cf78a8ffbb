"""
In-memory Store Tests
Nonce uniqueness, conditional status updates, ordering and pagination.
"""

from __future__ import annotations

import pytest

from compliance.errors import NonceConflictError, NotFoundError, StatusConflictError, StoreError
from compliance.models import ExecutionStatus, IntentStatus
from tests.helpers import OTHER_USER, USER, intent_input, policy_input

# ---------------------------------------------------------------------------
# Intents
# ---------------------------------------------------------------------------


def test_nonce_is_unique_per_user(intents):
    intents.create(intent_input(nonce=7))
    with pytest.raises(NonceConflictError) as exc_info:
        intents.create(intent_input(nonce=7))
    assert exc_info.value.nonce == 7
    assert "Nonce already used for this user" in str(exc_info.value)

    # same nonce for a different user is fine
    intents.create(intent_input(user_address=OTHER_USER, nonce=7))


def test_nonce_uniqueness_ignores_address_case(intents):
    intents.create(intent_input(nonce=1))
    with pytest.raises(NonceConflictError):
        intents.create(intent_input(user_address=USER.upper().replace("0X", "0x"), nonce=1))


def test_next_nonce(intents):
    assert intents.next_nonce(USER) == 0
    intents.create(intent_input(nonce=0))
    intents.create(intent_input(nonce=4))
    assert intents.next_nonce(USER) == 5
    assert intents.next_nonce(OTHER_USER) == 0


def test_get_missing_intent(intents):
    with pytest.raises(NotFoundError) as exc_info:
        intents.get("nope")
    assert str(exc_info.value) == "Intent with id nope not found"


def test_conditional_status_update(intents):
    intent = intents.create(intent_input())
    intents.update_status(intent.id, IntentStatus.VALIDATED, expected_status=IntentStatus.CREATED)
    with pytest.raises(StatusConflictError):
        intents.update_status(intent.id, IntentStatus.REJECTED, expected_status=IntentStatus.CREATED)
    assert intents.get(intent.id).status == IntentStatus.VALIDATED


def test_returned_intents_are_copies(intents):
    intent = intents.create(intent_input())
    intent.status = IntentStatus.EXECUTED
    assert intents.get(intent.id).status == IntentStatus.CREATED


def test_list_filters_and_paginates_newest_first(intents):
    ids = [intents.create(intent_input(nonce=n)).id for n in range(5)]
    intents.create(intent_input(user_address=OTHER_USER, nonce=0))

    mine = intents.list(user_address=USER)
    assert [i.id for i in mine] == list(reversed(ids))
    assert [i.id for i in intents.list(user_address=USER, limit=2, offset=1)] == [ids[3], ids[2]]

    intents.update_status(ids[0], IntentStatus.REJECTED)
    assert [i.id for i in intents.list(status=IntentStatus.REJECTED)] == [ids[0]]


def test_intent_stats(intents):
    a = intents.create(intent_input(nonce=0))
    intents.create(intent_input(nonce=1))
    intents.update_status(a.id, IntentStatus.REJECTED)
    stats = intents.stats()
    assert stats["total"] == 2
    assert stats["created"] == 1
    assert stats["rejected"] == 1


# ---------------------------------------------------------------------------
# Policies
# ---------------------------------------------------------------------------


def test_policy_list_orders_priority_then_newest(policies):
    old = policies.create(policy_input("old", "trade_limit", {"max_amount": "1"}, priority=1))
    new = policies.create(policy_input("new", "trade_limit", {"max_amount": "1"}, priority=1))
    first = policies.create(policy_input("first", "trade_limit", {"max_amount": "1"}, priority=0))
    assert [p.id for p in policies.list()] == [first.id, new.id, old.id]
    # evaluation order is oldest first within a priority
    assert [p.id for p in policies.list_active()] == [first.id, old.id, new.id]


def test_policy_update_and_delete(policies):
    policy = policies.create(policy_input("venues", "venue_allowlist", {"allowed_venues": ["curve"]}))
    updated = policies.update(policy.id, enabled=False, priority=9)
    assert updated.enabled is False
    assert updated.priority == 9
    assert updated.updated_at >= policy.updated_at
    assert policies.list_active() == []
    assert [p.id for p in policies.list(enabled=False)] == [policy.id]

    with pytest.raises(StoreError):
        policies.update(policy.id, owner="me")

    policies.delete(policy.id)
    with pytest.raises(NotFoundError):
        policies.get(policy.id)
    with pytest.raises(NotFoundError):
        policies.delete(policy.id)


def test_policy_config_is_not_aliased(policies):
    config = {"allowed_venues": ["curve"]}
    policy = policies.create(policy_input("venues", "venue_allowlist", config))
    config["allowed_venues"].append("sushiswap")
    policy.config["allowed_venues"].append("balancer")
    assert policies.get(policy.id).config == {"allowed_venues": ["curve"]}


def test_policy_stats(policies):
    policies.create(policy_input("a", "trade_limit", {"max_amount": "1"}))
    policies.create(policy_input("b", "custom", {}, enabled=False))
    stats = policies.stats()
    assert stats["total"] == 2
    assert stats["enabled"] == 1
    assert stats["disabled"] == 1
    assert stats["by_type"]["custom"] == 1
    assert stats["by_type"]["venue_allowlist"] == 0


# ---------------------------------------------------------------------------
# Executions
# ---------------------------------------------------------------------------


def test_execution_lifecycle(executions):
    assert executions.get_by_intent("intent-1") is None
    first = executions.create("intent-1")
    assert first.status == ExecutionStatus.PENDING
    second = executions.create("intent-1", status=ExecutionStatus.FAILED, revert_reason="x")

    updated = executions.update(first.id, status=ExecutionStatus.SUCCESS, tx_ref="0xabc")
    assert updated.tx_ref == "0xabc"
    assert executions.get_by_intent("intent-1").id == second.id
    assert [e.id for e in executions.list_by_intent("intent-1")] == [first.id, second.id]
    assert executions.stats()["success"] == 1

    with pytest.raises(StoreError):
        executions.update(first.id, intent_id="other")
    with pytest.raises(NotFoundError):
        executions.get("missing")
