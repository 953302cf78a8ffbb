"""
Runtime Configuration

Read once from the environment. Defaults run the gateway entirely in
memory with no execution venue, so every execution fails closed until a
venue URL is configured.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Any, Mapping

STORE_MEMORY = "memory"
STORE_POSTGRES = "postgres"


def db_config_from(env: Mapping[str, str]) -> dict[str, Any]:
    """psycopg2 connection kwargs from COMPLIANCE_DB_* variables."""
    return {
        "host": env.get("COMPLIANCE_DB_HOST", "localhost"),
        "port": int(env.get("COMPLIANCE_DB_PORT", "5433")),
        "dbname": env.get("COMPLIANCE_DB_NAME", "intent_compliance"),
        "user": env.get("COMPLIANCE_DB_USER", "admin"),
        "password": env.get("COMPLIANCE_DB_PASSWORD", "password123"),
    }


DB_CONFIG = db_config_from(os.environ)


def _flag(value: str) -> bool:
    return value.strip().lower() in ("1", "true", "yes", "on")


@dataclass
class Settings:
    store: str = STORE_MEMORY
    db_config: dict[str, Any] = field(default_factory=lambda: dict(DB_CONFIG))
    executor_url: str = ""
    executor_timeout_seconds: float = 30.0
    record_state_changes: bool = False
    policy_workers: int = 1
    log_level: str = "INFO"


def load_settings(environ: Mapping[str, str] | None = None) -> Settings:
    env = os.environ if environ is None else environ

    store = env.get("COMPLIANCE_STORE", STORE_MEMORY).strip().lower()
    if store not in (STORE_MEMORY, STORE_POSTGRES):
        raise ValueError(f"COMPLIANCE_STORE must be '{STORE_MEMORY}' or '{STORE_POSTGRES}', got {store!r}")

    workers = int(env.get("COMPLIANCE_POLICY_WORKERS", "1"))
    if workers < 1:
        raise ValueError("COMPLIANCE_POLICY_WORKERS must be at least 1")

    return Settings(
        store=store,
        db_config=db_config_from(env),
        executor_url=env.get("COMPLIANCE_EXECUTOR_URL", "").strip(),
        executor_timeout_seconds=float(env.get("COMPLIANCE_EXECUTOR_TIMEOUT_SECONDS", "30")),
        record_state_changes=_flag(env.get("COMPLIANCE_RECORD_STATE_CHANGES", "0")),
        policy_workers=workers,
        log_level=env.get("COMPLIANCE_LOG_LEVEL", "INFO").upper(),
    )
