"""
Execution Collaborator: HTTP client

Thin synchronous wrapper over the venue execution service. The core only
sees ExecutionOutcome and DecodedEvent; signing, simulation and
submission all happen on the other side of this boundary.
"""

from __future__ import annotations

import logging
from typing import Any, Optional, Protocol

import httpx

from compliance.errors import ExecutionError
from compliance.execution import DecodedEvent, ExecutionOutcome
from compliance.models import Intent

logger = logging.getLogger(__name__)


class ExecutionCollaborator(Protocol):
    def execute(self, intent: Intent) -> ExecutionOutcome: ...
    def decode_events(self, tx_ref: str) -> list[DecodedEvent]: ...


def _opt_int(value: Any) -> Optional[int]:
    """Accept ints, decimal strings and 0x-prefixed hex quantities."""
    if value is None or value == "":
        return None
    if isinstance(value, bool):
        raise ValueError(f"expected integer quantity, got {value!r}")
    if isinstance(value, int):
        return value
    text = str(value).strip()
    if text.lower().startswith("0x"):
        return int(text, 16)
    return int(text)


def _opt_str(value: Any) -> Optional[str]:
    return None if value is None else str(value)


def intent_to_wire(intent: Intent) -> dict[str, Any]:
    """Request body for POST /execute. Amounts stay decimal strings."""
    return {
        "intent_id": intent.id,
        "user_address": intent.user_address,
        "asset_in": intent.asset_in,
        "asset_out": intent.asset_out,
        "amount_in": intent.amount_in,
        "amount_out_min": intent.amount_out_min,
        "venue": intent.venue,
        "deadline": intent.deadline,
        "nonce": intent.nonce,
        "signature": intent.signature,
    }


def _tx_ref(body: dict[str, Any]) -> Optional[str]:
    return _opt_str(body.get("tx_ref") or body.get("tx_hash") or body.get("txHash"))


def event_from_wire(body: Any, tx_ref: Optional[str] = None) -> DecodedEvent:
    if not isinstance(body, dict):
        raise ValueError(f"expected event object, got {type(body).__name__}")
    args = body.get("args") or {}
    if not isinstance(args, dict):
        raise ValueError(f"expected event args object, got {type(args).__name__}")
    return DecodedEvent(
        name=str(body.get("name") or body.get("event_name") or body.get("eventName") or ""),
        args=dict(args),
        block_number=_opt_int(body.get("block_number", body.get("blockNumber"))),
        log_index=_opt_int(body.get("log_index", body.get("logIndex"))) or 0,
        address=body.get("address"),
        tx_ref=body.get("tx_ref", tx_ref),
    )


def events_from_wire(events: Any, tx_ref: Optional[str] = None) -> list[DecodedEvent]:
    if not isinstance(events, list):
        raise ValueError(f"expected events list, got {type(events).__name__}")
    return [event_from_wire(e, tx_ref) for e in events]


def outcome_from_wire(body: dict[str, Any]) -> ExecutionOutcome:
    tx_ref = _tx_ref(body)
    events = body.get("events")
    return ExecutionOutcome(
        success=bool(body.get("success", False)),
        tx_ref=tx_ref,
        block_number=_opt_int(body.get("block_number")),
        block_timestamp=_opt_int(body.get("block_timestamp")),
        gas_used=_opt_int(body.get("gas_used")),
        amount_out=_opt_str(body.get("amount_out")),
        error=body.get("error"),
        revert_reason=body.get("revert_reason"),
        events=None if events is None else events_from_wire(events, tx_ref),
    )


class HttpVenueExecutor:
    """
    Client for an execution service exposing:

        POST /execute                       -> outcome JSON
        GET  /transactions/{tx_ref}/events  -> {"events": [...]}
    """

    def __init__(
        self,
        base_url: str,
        timeout: float = 30.0,
        transport: httpx.BaseTransport | None = None,
    ):
        """
        Args:
            base_url: Base URL of the execution service
            timeout: HTTP request timeout in seconds (the caller's deadline)
            transport: Optional httpx transport (tests use MockTransport)
        """
        self.base_url = base_url.rstrip("/")
        self._client = httpx.Client(timeout=timeout, transport=transport)

    def execute(self, intent: Intent) -> ExecutionOutcome:
        try:
            resp = self._client.post(f"{self.base_url}/execute", json=intent_to_wire(intent))
        except httpx.HTTPError as exc:
            logger.error("execution service unreachable for intent %s: %s", intent.id, exc)
            return ExecutionOutcome(success=False, error=f"Execution service unreachable: {exc}")

        try:
            body = resp.json()
        except ValueError:
            body = {}

        if resp.status_code >= 500 or not isinstance(body, dict):
            return ExecutionOutcome(
                success=False,
                error=f"Execution service returned HTTP {resp.status_code}",
            )

        # Resolved before parsing so a malformed body never loses the on-chain hash.
        tx_ref = _tx_ref(body)
        try:
            outcome = outcome_from_wire(body)
        except ValueError as exc:
            logger.error("malformed execution result for intent %s (tx %s): %s",
                         intent.id, tx_ref, exc)
            return ExecutionOutcome(
                success=False,
                tx_ref=tx_ref,
                error=f"Malformed execution result: {exc}",
            )
        if resp.status_code >= 400:
            outcome.success = False
            outcome.error = outcome.error or f"Execution service returned HTTP {resp.status_code}"
        return outcome

    def decode_events(self, tx_ref: str) -> list[DecodedEvent]:
        try:
            resp = self._client.get(f"{self.base_url}/transactions/{tx_ref}/events")
            resp.raise_for_status()
            body = resp.json()
            if not isinstance(body, dict):
                raise ValueError(f"expected object, got {type(body).__name__}")
            return events_from_wire(body.get("events", []), tx_ref)
        except (httpx.HTTPError, ValueError) as exc:
            raise ExecutionError(f"Failed to decode events for {tx_ref}: {exc}") from exc

    def close(self) -> None:
        self._client.close()


class UnconfiguredExecutor:
    """Used when no venue is configured: every execution fails closed."""

    def execute(self, intent: Intent) -> ExecutionOutcome:
        return ExecutionOutcome(success=False, error="No execution venue configured")

    def decode_events(self, tx_ref: str) -> list[DecodedEvent]:
        return []
