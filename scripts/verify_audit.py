#!/usr/bin/env python3
"""
Audit Trail Verifier

Independently walks the audit_artifacts table, recomputes every content
hash outside of the service, and confirms nothing was altered after it was
written.

Usage:
    python scripts/verify_audit.py              # every artifact
    python scripts/verify_audit.py <intent_id>  # one intent's trail
"""

from __future__ import annotations

import hashlib
import json
import os
import sys

import psycopg2

sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from compliance.config import load_settings


def compute_content_hash(data: dict) -> str:
    """Same formula the recorder uses at write time."""
    canonical = json.dumps(data, sort_keys=True)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def verify(intent_id: str | None = None) -> bool:
    conn = psycopg2.connect(**load_settings().db_config)
    cur = conn.cursor()
    query = (
        "SELECT id, intent_id, artifact_type, data, hash "
        "FROM audit_artifacts "
    )
    if intent_id:
        cur.execute(query + "WHERE intent_id = %s ORDER BY created_at ASC, seq ASC",
                    (intent_id,))
    else:
        cur.execute(query + "ORDER BY intent_id, created_at ASC, seq ASC")
    rows = cur.fetchall()
    cur.close()
    conn.close()

    if not rows:
        print("Audit trail is empty, nothing to verify.")
        return True

    print(f"Verifying {len(rows)} artifact(s)...\n")

    all_valid = True
    for i, (artifact_id, owner, artifact_type, data, stored_hash) in enumerate(rows):
        if isinstance(data, str):
            data = json.loads(data)
        expected_hash = compute_content_hash(data)

        status = "OK" if stored_hash and expected_hash == stored_hash else "TAMPERED"
        if status == "TAMPERED":
            all_valid = False

        print(f"  [{status}] Artifact {i + 1}: {artifact_type}")
        print(f"         Intent:   {owner}")
        print(f"         Hash:     {(stored_hash or 'MISSING')[:32]}...")
        if status == "TAMPERED":
            print(f"         EXPECTED: {expected_hash[:32]}...")
        print()

    if all_valid:
        print(f"AUDIT INTEGRITY: VALID, all {len(rows)} artifacts verified.")
    else:
        print("AUDIT INTEGRITY: BROKEN, tampering detected!")

    return all_valid


if __name__ == "__main__":
    ok = verify(sys.argv[1] if len(sys.argv) > 1 else None)
    sys.exit(0 if ok else 1)
