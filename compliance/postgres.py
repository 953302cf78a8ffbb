"""
PostgreSQL Stores

psycopg2-backed implementations of the four store interfaces. One
connection per call; every statement commits or rolls back on its own.
Schema: schema.sql at the repository root.
"""

from __future__ import annotations

import json
import uuid
from contextlib import contextmanager
from typing import Any, Iterator, Optional

import psycopg2
import psycopg2.errors

from compliance.config import DB_CONFIG
from compliance.errors import (
    ComplianceError,
    ConcurrentTransitionError,
    NonceConflictError,
    NotFoundError,
    StatusConflictError,
    StoreError,
)
from compliance.models import (
    ArtifactType,
    AuditArtifact,
    Execution,
    ExecutionStatus,
    Intent,
    IntentInput,
    IntentStatus,
    Policy,
    PolicyInput,
    PolicyType,
)
from compliance.stores import DEFAULT_INTENT_PAGE, DEFAULT_POLICY_PAGE, EXECUTION_FIELDS, POLICY_FIELDS

INTENT_COLUMNS = (
    "id, user_address, asset_in, asset_out, amount_in, amount_out_min, venue, "
    "deadline, nonce, status, signature, created_at, updated_at"
)
POLICY_COLUMNS = (
    "id, name, description, policy_type, config, enabled, priority, created_at, updated_at"
)
EXECUTION_COLUMNS = (
    "id, intent_id, status, tx_ref, block_number, block_timestamp, gas_used, "
    "revert_reason, amount_out, execution_price, created_at, updated_at"
)
ARTIFACT_COLUMNS = "id, intent_id, execution_id, artifact_type, data, hash, created_at"


def _int(value: Any) -> Optional[int]:
    return None if value is None else int(value)


def _dec(value: Any) -> Optional[str]:
    """NUMERIC(78,0) comes back as Decimal; keep it as a decimal string."""
    return None if value is None else str(int(value))


def _is_uuid(value: Any) -> bool:
    try:
        uuid.UUID(str(value))
    except ValueError:
        return False
    return True


def _require_id(resource: str, value: str) -> None:
    """Ids that cannot be UUIDs name no row; never hand them to the UUID columns."""
    if not _is_uuid(value):
        raise NotFoundError(resource, value)


class _PostgresStore:

    def __init__(self, db_config: dict | None = None):
        self._db_config = db_config or DB_CONFIG

    def _connect(self):
        return psycopg2.connect(**self._db_config)

    @contextmanager
    def _cursor(self) -> Iterator[Any]:
        """Cursor in its own transaction; backend errors surface as StoreError."""
        try:
            conn = self._connect()
        except psycopg2.Error as exc:
            raise StoreError(f"Database unavailable: {exc}".strip(), exc) from exc
        try:
            cur = conn.cursor()
            yield cur
            conn.commit()
            cur.close()
        except ComplianceError:
            conn.rollback()
            raise
        except psycopg2.Error as exc:
            conn.rollback()
            raise StoreError(str(exc).strip(), exc) from exc
        except BaseException:
            conn.rollback()
            raise
        finally:
            conn.close()


# ---------------------------------------------------------------------------
# Intents
# ---------------------------------------------------------------------------

def _intent_from_row(row: tuple) -> Intent:
    return Intent(
        id=str(row[0]),
        user_address=row[1],
        asset_in=row[2],
        asset_out=row[3],
        amount_in=_dec(row[4]),
        amount_out_min=_dec(row[5]),
        venue=row[6],
        deadline=int(row[7]),
        nonce=int(row[8]),
        status=IntentStatus(row[9]),
        signature=row[10],
        created_at=row[11],
        updated_at=row[12],
    )


class PostgresIntentStore(_PostgresStore):

    def create(self, data: IntentInput) -> Intent:
        with self._cursor() as cur:
            try:
                cur.execute(
                    "INSERT INTO intents (user_address, asset_in, asset_out, amount_in, "
                    "amount_out_min, venue, deadline, nonce, signature) "
                    "VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s) "
                    f"RETURNING {INTENT_COLUMNS}",
                    (
                        data.user_address, data.asset_in, data.asset_out,
                        data.amount_in, data.amount_out_min, data.venue,
                        data.deadline, data.nonce, data.signature,
                    ),
                )
            except psycopg2.errors.UniqueViolation as exc:
                raise NonceConflictError(data.user_address, data.nonce) from exc
            return _intent_from_row(cur.fetchone())

    def get(self, intent_id: str) -> Intent:
        _require_id("Intent", intent_id)
        with self._cursor() as cur:
            cur.execute(f"SELECT {INTENT_COLUMNS} FROM intents WHERE id = %s", (intent_id,))
            row = cur.fetchone()
        if row is None:
            raise NotFoundError("Intent", intent_id)
        return _intent_from_row(row)

    def update_status(self, intent_id: str, status: IntentStatus,
                      expected_status: Optional[IntentStatus] = None) -> Intent:
        """Conditional when *expected_status* is given: exactly one racer wins."""
        _require_id("Intent", intent_id)
        with self._cursor() as cur:
            if expected_status is None:
                cur.execute(
                    "UPDATE intents SET status = %s, updated_at = clock_timestamp() "
                    f"WHERE id = %s RETURNING {INTENT_COLUMNS}",
                    (status.value, intent_id),
                )
            else:
                cur.execute(
                    "UPDATE intents SET status = %s, updated_at = clock_timestamp() "
                    f"WHERE id = %s AND status = %s RETURNING {INTENT_COLUMNS}",
                    (status.value, intent_id, expected_status.value),
                )
            row = cur.fetchone()
            if row is None:
                cur.execute("SELECT status FROM intents WHERE id = %s", (intent_id,))
                current = cur.fetchone()
                if current is None:
                    raise NotFoundError("Intent", intent_id)
                raise StatusConflictError(
                    intent_id, current[0], status.value,
                    message=f"Intent {intent_id} is '{current[0]}', "
                            f"expected '{expected_status.value}'",
                )
        return _intent_from_row(row)

    def update_signature(self, intent_id: str, signature: str) -> Intent:
        _require_id("Intent", intent_id)
        with self._cursor() as cur:
            cur.execute(
                "UPDATE intents SET signature = %s, updated_at = clock_timestamp() "
                f"WHERE id = %s RETURNING {INTENT_COLUMNS}",
                (signature, intent_id),
            )
            row = cur.fetchone()
        if row is None:
            raise NotFoundError("Intent", intent_id)
        return _intent_from_row(row)

    def list(self, status: Optional[IntentStatus] = None,
             user_address: Optional[str] = None,
             limit: int = DEFAULT_INTENT_PAGE, offset: int = 0) -> list[Intent]:
        clauses, params = [], []
        if status is not None:
            clauses.append("status = %s")
            params.append(status.value)
        if user_address:
            clauses.append("lower(user_address) = lower(%s)")
            params.append(user_address)
        where = f"WHERE {' AND '.join(clauses)} " if clauses else ""
        with self._cursor() as cur:
            cur.execute(
                f"SELECT {INTENT_COLUMNS} FROM intents {where}"
                "ORDER BY created_at DESC, seq DESC LIMIT %s OFFSET %s",
                (*params, limit, offset),
            )
            rows = cur.fetchall()
        return [_intent_from_row(r) for r in rows]

    def next_nonce(self, user_address: str) -> int:
        with self._cursor() as cur:
            cur.execute(
                "SELECT COALESCE(MAX(nonce) + 1, 0) FROM intents "
                "WHERE lower(user_address) = lower(%s)",
                (user_address,),
            )
            return int(cur.fetchone()[0])

    @contextmanager
    def hold(self, intent_id: str, operation: str) -> Iterator[None]:
        """
        Claim an intent across every process sharing this database.

        A session advisory lock on a dedicated connection, held for the
        whole validate or execute call. A second claimant is refused with
        ConcurrentTransitionError instead of waiting.
        """
        try:
            conn = self._connect()
        except psycopg2.Error as exc:
            raise StoreError(f"Database unavailable: {exc}".strip(), exc) from exc
        try:
            try:
                cur = conn.cursor()
                cur.execute("SELECT pg_try_advisory_lock(hashtextextended(%s, 0))", (str(intent_id),))
                acquired = cur.fetchone()[0]
                conn.commit()
            except psycopg2.Error as exc:
                raise StoreError(str(exc).strip(), exc) from exc
            if not acquired:
                raise ConcurrentTransitionError(intent_id, operation)
            yield
        finally:
            # Closing the session releases its advisory locks.
            conn.close()

    def stats(self) -> dict[str, int]:
        with self._cursor() as cur:
            cur.execute("SELECT status, COUNT(*) FROM intents GROUP BY status")
            counts = dict(cur.fetchall())
        out = {"total": sum(int(c) for c in counts.values())}
        for s in IntentStatus:
            out[s.value] = int(counts.get(s.value, 0))
        return out


# ---------------------------------------------------------------------------
# Policies
# ---------------------------------------------------------------------------

def _policy_from_row(row: tuple) -> Policy:
    config = row[4]
    if isinstance(config, str):
        config = json.loads(config)
    return Policy(
        id=str(row[0]),
        name=row[1],
        description=row[2],
        policy_type=row[3],
        config=config,
        enabled=bool(row[5]),
        priority=int(row[6]),
        created_at=row[7],
        updated_at=row[8],
    )


class PostgresPolicyStore(_PostgresStore):

    def create(self, data: PolicyInput) -> Policy:
        with self._cursor() as cur:
            cur.execute(
                "INSERT INTO policies (name, description, policy_type, config, enabled, priority) "
                f"VALUES (%s, %s, %s, %s, %s, %s) RETURNING {POLICY_COLUMNS}",
                (
                    data.name, data.description, data.policy_type,
                    json.dumps(data.config), data.enabled, data.priority,
                ),
            )
            return _policy_from_row(cur.fetchone())

    def get(self, policy_id: str) -> Policy:
        _require_id("Policy", policy_id)
        with self._cursor() as cur:
            cur.execute(f"SELECT {POLICY_COLUMNS} FROM policies WHERE id = %s", (policy_id,))
            row = cur.fetchone()
        if row is None:
            raise NotFoundError("Policy", policy_id)
        return _policy_from_row(row)

    def list_active(self) -> list[Policy]:
        with self._cursor() as cur:
            cur.execute(
                f"SELECT {POLICY_COLUMNS} FROM policies WHERE enabled = TRUE "
                "ORDER BY priority ASC, created_at ASC, seq ASC"
            )
            rows = cur.fetchall()
        return [_policy_from_row(r) for r in rows]

    def list(self, enabled: Optional[bool] = None, policy_type: Optional[str] = None,
             limit: int = DEFAULT_POLICY_PAGE, offset: int = 0) -> list[Policy]:
        clauses, params = [], []
        if enabled is not None:
            clauses.append("enabled = %s")
            params.append(enabled)
        if policy_type:
            clauses.append("policy_type = %s")
            params.append(policy_type)
        where = f"WHERE {' AND '.join(clauses)} " if clauses else ""
        with self._cursor() as cur:
            cur.execute(
                f"SELECT {POLICY_COLUMNS} FROM policies {where}"
                "ORDER BY priority ASC, created_at DESC, seq DESC LIMIT %s OFFSET %s",
                (*params, limit, offset),
            )
            rows = cur.fetchall()
        return [_policy_from_row(r) for r in rows]

    def update(self, policy_id: str, **fields: Any) -> Policy:
        unknown = set(fields) - POLICY_FIELDS
        if unknown:
            raise StoreError(f"Unknown policy fields: {sorted(unknown)}")
        if not fields:
            raise StoreError("No fields to update")
        _require_id("Policy", policy_id)
        names = sorted(fields)
        values = [json.dumps(fields[n]) if n == "config" else fields[n] for n in names]
        assignments = ", ".join(f"{n} = %s" for n in names)
        with self._cursor() as cur:
            cur.execute(
                f"UPDATE policies SET {assignments}, updated_at = clock_timestamp() "
                f"WHERE id = %s RETURNING {POLICY_COLUMNS}",
                (*values, policy_id),
            )
            row = cur.fetchone()
        if row is None:
            raise NotFoundError("Policy", policy_id)
        return _policy_from_row(row)

    def delete(self, policy_id: str) -> None:
        _require_id("Policy", policy_id)
        with self._cursor() as cur:
            cur.execute("DELETE FROM policies WHERE id = %s", (policy_id,))
            deleted = cur.rowcount
        if not deleted:
            raise NotFoundError("Policy", policy_id)

    def stats(self) -> dict[str, Any]:
        with self._cursor() as cur:
            cur.execute("SELECT policy_type, enabled, COUNT(*) FROM policies "
                        "GROUP BY policy_type, enabled")
            rows = cur.fetchall()
        total = sum(int(r[2]) for r in rows)
        enabled = sum(int(r[2]) for r in rows if r[1])
        return {
            "total": total,
            "enabled": enabled,
            "disabled": total - enabled,
            "by_type": {
                t.value: sum(int(r[2]) for r in rows if r[0] == t.value)
                for t in PolicyType
            },
        }


# ---------------------------------------------------------------------------
# Audit artifacts
# ---------------------------------------------------------------------------

def _artifact_from_row(row: tuple) -> AuditArtifact:
    data = row[4]
    if isinstance(data, str):
        data = json.loads(data)
    return AuditArtifact(
        id=str(row[0]),
        intent_id=str(row[1]),
        execution_id=None if row[2] is None else str(row[2]),
        artifact_type=ArtifactType(row[3]),
        data=data,
        hash=row[5],
        created_at=row[6],
    )


class PostgresAuditStore(_PostgresStore):
    """Append-only writer; the table trigger refuses UPDATE and DELETE."""

    def append(self, artifact: AuditArtifact) -> AuditArtifact:
        with self._cursor() as cur:
            cur.execute(
                "INSERT INTO audit_artifacts "
                "(id, intent_id, execution_id, artifact_type, data, hash, created_at) "
                f"VALUES (%s, %s, %s, %s, %s, %s, %s) RETURNING {ARTIFACT_COLUMNS}",
                (
                    artifact.id, artifact.intent_id, artifact.execution_id,
                    artifact.artifact_type.value, json.dumps(artifact.data),
                    artifact.hash, artifact.created_at,
                ),
            )
            return _artifact_from_row(cur.fetchone())

    def get(self, artifact_id: str) -> AuditArtifact:
        _require_id("Audit artifact", artifact_id)
        with self._cursor() as cur:
            cur.execute(f"SELECT {ARTIFACT_COLUMNS} FROM audit_artifacts WHERE id = %s",
                        (artifact_id,))
            row = cur.fetchone()
        if row is None:
            raise NotFoundError("Audit artifact", artifact_id)
        return _artifact_from_row(row)

    def list_by_intent(self, intent_id: str,
                       artifact_type: Optional[ArtifactType] = None,
                       execution_id: Optional[str] = None) -> list[AuditArtifact]:
        if not _is_uuid(intent_id) or (execution_id is not None and not _is_uuid(execution_id)):
            return []
        clauses, params = ["intent_id = %s"], [intent_id]
        if artifact_type is not None:
            clauses.append("artifact_type = %s")
            params.append(artifact_type.value)
        if execution_id is not None:
            clauses.append("execution_id = %s")
            params.append(execution_id)
        with self._cursor() as cur:
            cur.execute(
                f"SELECT {ARTIFACT_COLUMNS} FROM audit_artifacts "
                f"WHERE {' AND '.join(clauses)} ORDER BY created_at ASC, seq ASC",
                tuple(params),
            )
            rows = cur.fetchall()
        return [_artifact_from_row(r) for r in rows]

    def list_by_execution(self, execution_id: str) -> list[AuditArtifact]:
        if not _is_uuid(execution_id):
            return []
        with self._cursor() as cur:
            cur.execute(
                f"SELECT {ARTIFACT_COLUMNS} FROM audit_artifacts "
                "WHERE execution_id = %s ORDER BY created_at ASC, seq ASC",
                (execution_id,),
            )
            rows = cur.fetchall()
        return [_artifact_from_row(r) for r in rows]


# ---------------------------------------------------------------------------
# Executions
# ---------------------------------------------------------------------------

def _execution_from_row(row: tuple) -> Execution:
    return Execution(
        id=str(row[0]),
        intent_id=str(row[1]),
        status=ExecutionStatus(row[2]),
        tx_ref=row[3],
        block_number=_int(row[4]),
        block_timestamp=_int(row[5]),
        gas_used=_int(row[6]),
        revert_reason=row[7],
        amount_out=_dec(row[8]),
        execution_price=row[9],
        created_at=row[10],
        updated_at=row[11],
    )


def _column_value(value: Any) -> Any:
    return value.value if isinstance(value, ExecutionStatus) else value


class PostgresExecutionStore(_PostgresStore):

    def create(self, intent_id: str, status: ExecutionStatus = ExecutionStatus.PENDING,
               **fields: Any) -> Execution:
        unknown = set(fields) - EXECUTION_FIELDS
        if unknown:
            raise StoreError(f"Unknown execution fields: {sorted(unknown)}")
        names = sorted(fields)
        columns = ", ".join(["intent_id", "status", *names])
        placeholders = ", ".join(["%s"] * (2 + len(names)))
        with self._cursor() as cur:
            cur.execute(
                f"INSERT INTO executions ({columns}) VALUES ({placeholders}) "
                f"RETURNING {EXECUTION_COLUMNS}",
                (intent_id, status.value, *[_column_value(fields[n]) for n in names]),
            )
            return _execution_from_row(cur.fetchone())

    def update(self, execution_id: str, **fields: Any) -> Execution:
        unknown = set(fields) - EXECUTION_FIELDS
        if unknown:
            raise StoreError(f"Unknown execution fields: {sorted(unknown)}")
        if not fields:
            raise StoreError("No fields to update")
        _require_id("Execution", execution_id)
        names = sorted(fields)
        assignments = ", ".join(f"{n} = %s" for n in names)
        with self._cursor() as cur:
            cur.execute(
                f"UPDATE executions SET {assignments}, updated_at = clock_timestamp() "
                f"WHERE id = %s RETURNING {EXECUTION_COLUMNS}",
                (*[_column_value(fields[n]) for n in names], execution_id),
            )
            row = cur.fetchone()
        if row is None:
            raise NotFoundError("Execution", execution_id)
        return _execution_from_row(row)

    def get(self, execution_id: str) -> Execution:
        _require_id("Execution", execution_id)
        with self._cursor() as cur:
            cur.execute(f"SELECT {EXECUTION_COLUMNS} FROM executions WHERE id = %s",
                        (execution_id,))
            row = cur.fetchone()
        if row is None:
            raise NotFoundError("Execution", execution_id)
        return _execution_from_row(row)

    def list_by_intent(self, intent_id: str) -> list[Execution]:
        if not _is_uuid(intent_id):
            return []
        with self._cursor() as cur:
            cur.execute(
                f"SELECT {EXECUTION_COLUMNS} FROM executions WHERE intent_id = %s "
                "ORDER BY created_at ASC, seq ASC",
                (intent_id,),
            )
            rows = cur.fetchall()
        return [_execution_from_row(r) for r in rows]

    def get_by_intent(self, intent_id: str) -> Optional[Execution]:
        if not _is_uuid(intent_id):
            return None
        with self._cursor() as cur:
            cur.execute(
                f"SELECT {EXECUTION_COLUMNS} FROM executions WHERE intent_id = %s "
                "ORDER BY created_at DESC, seq DESC LIMIT 1",
                (intent_id,),
            )
            row = cur.fetchone()
        return None if row is None else _execution_from_row(row)

    def stats(self) -> dict[str, int]:
        with self._cursor() as cur:
            cur.execute("SELECT status, COUNT(*) FROM executions GROUP BY status")
            counts = dict(cur.fetchall())
        out = {"total": sum(int(c) for c in counts.values())}
        for s in ExecutionStatus:
            out[s.value] = int(counts.get(s.value, 0))
        return out
