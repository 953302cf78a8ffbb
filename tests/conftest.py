from __future__ import annotations

import pytest

from compliance.audit import AuditTrailRecorder
from compliance.service import IntentService
from compliance.stores import (
    InMemoryAuditStore,
    InMemoryExecutionStore,
    InMemoryIntentStore,
    InMemoryPolicyStore,
)
from tests.helpers import FakeExecutor


@pytest.fixture
def intents():
    return InMemoryIntentStore()


@pytest.fixture
def policies():
    return InMemoryPolicyStore()


@pytest.fixture
def audit_store():
    return InMemoryAuditStore()


@pytest.fixture
def executions():
    return InMemoryExecutionStore()


@pytest.fixture
def recorder(audit_store):
    return AuditTrailRecorder(audit_store)


@pytest.fixture
def executor():
    return FakeExecutor()


@pytest.fixture
def service(intents, policies, audit_store, executions, executor):
    return IntentService(intents, policies, audit_store, executions, executor=executor)
