"""
Policy Rule Handlers

Pure functions, one per policy type: (intent, policy) -> PolicyEvaluationResult.
Malformed configuration raises PolicyEvaluationError; it is never a
silent pass.
"""

from __future__ import annotations

from typing import Any

from compliance.errors import PolicyEvaluationError
from compliance.models import Intent, Policy, PolicyEvaluationResult, parse_amount

ALLOW_MODES = {"allow"}
DENY_MODES = {"deny"}


def normalize_address(address: str) -> str:
    """Canonical, case-insensitive form of an address."""
    return address.strip().lower()


def _result(policy: Policy, passed: bool, reason: str,
            metadata: dict[str, Any]) -> PolicyEvaluationResult:
    return PolicyEvaluationResult(
        passed=passed,
        reason=reason,
        policy_id=policy.id,
        policy_name=policy.name,
        policy_type=policy.policy_type,
        metadata=metadata,
    )


def _config_dict(policy: Policy, label: str) -> dict[str, Any]:
    if not isinstance(policy.config, dict):
        raise PolicyEvaluationError(
            f"Invalid {label} configuration", policy.id, policy.policy_type,
        )
    return policy.config


# ---------------------------------------------------------------------------
# Allow / deny list
# ---------------------------------------------------------------------------

def evaluate_allow_deny_list(intent: Intent, policy: Policy) -> PolicyEvaluationResult:
    """Check user address and both assets against an allow- or deny-list."""
    config = _config_dict(policy, "allow/deny list")
    mode = config.get("mode")
    addresses = config.get("addresses")

    if mode not in ALLOW_MODES | DENY_MODES:
        raise PolicyEvaluationError(
            f"Invalid allow/deny list configuration: unknown mode {mode!r}",
            policy.id, policy.policy_type,
        )
    if not isinstance(addresses, list) or not all(isinstance(a, str) for a in addresses):
        raise PolicyEvaluationError(
            "Invalid allow/deny list configuration: addresses must be a list of strings",
            policy.id, policy.policy_type,
        )

    listed = {normalize_address(a) for a in addresses}
    candidates = [
        normalize_address(intent.user_address),
        normalize_address(intent.asset_in),
        normalize_address(intent.asset_out),
    ]
    found = [c for c in candidates if c in listed]

    if mode in ALLOW_MODES:
        passed = len(found) > 0
        reason = (
            f"Allowed: found {len(found)} whitelisted address(es)"
            if passed else "Rejected: no addresses found in allowlist"
        )
    else:
        passed = len(found) == 0
        reason = (
            "Passed: no addresses found in denylist"
            if passed else f"Rejected: found {len(found)} blacklisted address(es)"
        )

    return _result(policy, passed, reason, {
        "mode": mode,
        "list_size": len(addresses),
        "found_addresses": found,
    })


# ---------------------------------------------------------------------------
# Trade limit
# ---------------------------------------------------------------------------

def _limit(policy: Policy, config: dict[str, Any], key: str):
    raw = config.get(key)
    if raw is None or raw == "":
        return None
    try:
        return parse_amount(raw)
    except ValueError as exc:
        raise PolicyEvaluationError(
            f"Invalid trade limit configuration: {key} {exc}",
            policy.id, policy.policy_type,
        ) from exc


def evaluate_trade_limits(intent: Intent, policy: Policy) -> PolicyEvaluationResult:
    """Instantaneous min/max bound on amount_in, optionally scoped to one asset."""
    config = _config_dict(policy, "trade limit")

    asset = config.get("asset")
    if asset:
        if normalize_address(str(asset)) != normalize_address(intent.asset_in):
            return _result(
                policy, True,
                f"Policy does not apply to asset {intent.asset_in}",
                {"skipped": True, "policy_asset": asset, "intent_asset": intent.asset_in},
            )

    min_amount = _limit(policy, config, "min_amount")
    max_amount = _limit(policy, config, "max_amount")

    try:
        amount_in = parse_amount(intent.amount_in)
    except ValueError as exc:
        raise PolicyEvaluationError(
            f"Intent amount_in is not a valid amount: {exc}",
            policy.id, policy.policy_type,
        ) from exc

    violations: list[str] = []
    if min_amount is not None and amount_in < min_amount:
        violations.append(
            f"amount_in ({intent.amount_in}) is below minimum ({min_amount})"
        )
    if max_amount is not None and amount_in > max_amount:
        violations.append(
            f"amount_in ({intent.amount_in}) exceeds maximum ({max_amount})"
        )

    passed = not violations
    reason = (
        f"Passed: amount {intent.amount_in} within limits"
        if passed else f"Rejected: {', '.join(violations)}"
    )
    return _result(policy, passed, reason, {
        "amount_in": intent.amount_in,
        "min_amount": None if min_amount is None else str(min_amount),
        "max_amount": None if max_amount is None else str(max_amount),
        "violations": violations,
    })


# ---------------------------------------------------------------------------
# Venue allowlist
# ---------------------------------------------------------------------------

def evaluate_venue_allowlist(intent: Intent, policy: Policy) -> PolicyEvaluationResult:
    config = _config_dict(policy, "venue allowlist")
    venues = config.get("allowed_venues")
    if not isinstance(venues, list) or not all(isinstance(v, str) for v in venues):
        raise PolicyEvaluationError(
            "Invalid venue allowlist configuration: allowed_venues must be a list of strings",
            policy.id, policy.policy_type,
        )

    allowed = {v.strip().lower() for v in venues}
    passed = intent.venue.strip().lower() in allowed
    reason = (
        f'Passed: venue "{intent.venue}" is in allowlist'
        if passed else f'Rejected: venue "{intent.venue}" is not in allowlist'
    )
    return _result(policy, passed, reason, {
        "intent_venue": intent.venue,
        "allowed_venues": venues,
        "total_allowed_venues": len(venues),
    })


# ---------------------------------------------------------------------------
# Custom (unimplemented): fails closed
# ---------------------------------------------------------------------------

def evaluate_custom_unimplemented(intent: Intent, policy: Policy) -> PolicyEvaluationResult:
    handler = policy.config.get("handler") if isinstance(policy.config, dict) else None
    return _result(
        policy, False,
        "Custom policy handler not implemented - failing closed",
        {"handler": handler},
    )
