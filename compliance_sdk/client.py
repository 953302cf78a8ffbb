"""
Compliance SDK: Client
Thin synchronous wrapper over the intent compliance gateway.
"""

from __future__ import annotations

from typing import Any, Optional

import httpx

from compliance_sdk.models import AuditTrail, ExecutionResult, ValidationResult


class GatewayError(Exception):
    """The gateway answered with an error that is not a policy or execution verdict."""

    def __init__(self, status_code: int, body: dict):
        super().__init__(f"HTTP {status_code}: {body.get('error', body)}")
        self.status_code = status_code
        self.body = body


class IntentGatewayClient:
    """
    Client for the intent compliance gateway.

    Creates intents, asks for validation and execution, and reads back
    the audit trail. Policy rejections (403) and execution failures (400)
    are returned as results; every other error status raises GatewayError.
    """

    def __init__(
        self,
        gateway_url: str,
        timeout: float = 10.0,
        transport: httpx.BaseTransport | None = None,
    ):
        """
        Args:
            gateway_url: Base URL of the gateway (e.g. "http://localhost:8000")
            timeout: HTTP request timeout in seconds
            transport: Optional httpx transport (tests use MockTransport)
        """
        self.gateway_url = gateway_url.rstrip("/")
        self._client = httpx.Client(timeout=timeout, transport=transport)

    def _request(self, method: str, path: str, ok: tuple[int, ...] = (200, 201),
                 **kwargs: Any) -> tuple[int, dict]:
        resp = self._client.request(method, f"{self.gateway_url}{path}", **kwargs)
        try:
            body = resp.json()
        except ValueError:
            body = {"error": resp.text}
        if resp.status_code not in ok:
            raise GatewayError(resp.status_code, body)
        return resp.status_code, body

    # -- intents ------------------------------------------------------------

    def create_intent(
        self,
        user_address: str,
        asset_in: str,
        asset_out: str,
        amount_in: int | str,
        amount_out_min: int | str,
        venue: str,
        deadline: int,
        nonce: Optional[int] = None,
        signature: Optional[str] = None,
    ) -> dict:
        """
        Register a trading intent. Amounts are sent as decimal strings.

        Returns:
            The stored intent (status ``created``).
        """
        payload: dict[str, Any] = {
            "user_address": user_address,
            "asset_in": asset_in,
            "asset_out": asset_out,
            "amount_in": str(amount_in),
            "amount_out_min": str(amount_out_min),
            "venue": venue,
            "deadline": deadline,
        }
        if nonce is not None:
            payload["nonce"] = nonce
        if signature is not None:
            payload["signature"] = signature
        _, body = self._request("POST", "/intents", json=payload)
        return body["data"]

    def get_intent(self, intent_id: str) -> dict:
        _, body = self._request("GET", f"/intents/{intent_id}")
        return body["data"]

    def list_intents(self, status: Optional[str] = None,
                     user_address: Optional[str] = None,
                     limit: int = 50, offset: int = 0) -> list[dict]:
        params: dict[str, Any] = {"limit": limit, "offset": offset}
        if status:
            params["status"] = status
        if user_address:
            params["user_address"] = user_address
        _, body = self._request("GET", "/intents", params=params)
        return body["data"]

    def next_nonce(self, address: str) -> int:
        _, body = self._request("GET", "/intents/nonce", params={"address": address})
        return int(body["nonce"])

    def sign(self, intent_id: str, signature: str) -> dict:
        _, body = self._request("PUT", f"/intents/{intent_id}/signature",
                                json={"signature": signature})
        return body["data"]

    def validate(self, intent_id: str) -> ValidationResult:
        """
        Run policy validation for a ``created`` intent.

        Returns:
            ValidationResult; ``passed`` is False with reasons on rejection.
        """
        _, body = self._request("POST", f"/intents/{intent_id}/validate", ok=(200, 403))
        validation = body.get("validation", {})
        return ValidationResult(
            intent_id=body.get("intent_id", intent_id),
            passed=bool(validation.get("passed", False)),
            new_status=body.get("new_status", "unknown"),
            reasons=validation.get("reasons", []),
            evaluations=validation.get("evaluations", []),
            raw=body,
        )

    def execute(self, intent_id: str) -> ExecutionResult:
        """Execute a ``validated`` intent. Failures come back as results."""
        _, body = self._request("POST", f"/intents/{intent_id}/execute", ok=(200, 400))
        execution = body.get("execution") or {}
        return ExecutionResult(
            intent_id=body.get("intent_id", intent_id),
            success=bool(body.get("success", False)),
            new_status=body.get("new_status", "unknown"),
            tx_ref=execution.get("tx_ref"),
            error=body.get("error"),
            revert_reason=body.get("revert_reason"),
            events=body.get("events", []),
            raw=body,
        )

    def get_execution(self, intent_id: str) -> dict:
        _, body = self._request("GET", f"/intents/{intent_id}/execution")
        return body["data"]

    # -- audit --------------------------------------------------------------

    def audit_trail(self, intent_id: str, artifact_type: Optional[str] = None,
                    execution_id: Optional[str] = None) -> AuditTrail:
        params = {}
        if artifact_type:
            params["artifact_type"] = artifact_type
        if execution_id:
            params["execution_id"] = execution_id
        _, body = self._request("GET", f"/audit/{intent_id}", params=params)
        return AuditTrail(intent_id=intent_id, artifacts=body.get("data", []), raw=body)

    def verify_audit(self, intent_id: str) -> dict:
        """Re-hash the intent's trail server-side. Tampering raises GatewayError (500)."""
        _, body = self._request("GET", f"/audit/{intent_id}/verify")
        return body

    # -- policies -----------------------------------------------------------

    def create_policy(self, name: str, policy_type: str, config: dict,
                      description: Optional[str] = None, enabled: bool = True,
                      priority: int = 0) -> dict:
        payload: dict[str, Any] = {
            "name": name,
            "policy_type": policy_type,
            "config": config,
            "enabled": enabled,
            "priority": priority,
        }
        if description is not None:
            payload["description"] = description
        _, body = self._request("POST", "/policies", json=payload)
        return body["data"]

    def list_policies(self, enabled: Optional[bool] = None,
                      policy_type: Optional[str] = None) -> list[dict]:
        params: dict[str, Any] = {}
        if enabled is not None:
            params["enabled"] = str(enabled).lower()
        if policy_type:
            params["policy_type"] = policy_type
        _, body = self._request("GET", "/policies", params=params)
        return body["data"]

    def update_policy(self, policy_id: str, **changes: Any) -> dict:
        _, body = self._request("PATCH", f"/policies/{policy_id}", json=changes)
        return body["data"]

    def delete_policy(self, policy_id: str) -> None:
        self._request("DELETE", f"/policies/{policy_id}")

    # -- misc ---------------------------------------------------------------

    def stats(self) -> dict:
        _, body = self._request("GET", "/stats")
        return body["data"]

    def health(self) -> dict:
        """Check gateway health via GET /health."""
        resp = self._client.get(f"{self.gateway_url}/health")
        return resp.json()

    def close(self) -> None:
        self._client.close()
