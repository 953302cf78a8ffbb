"""
Policy Rule Registry

Explicit lookup table from policy-type tag to handler, populated at startup.
Anything not in the table is an evaluation failure, never a pass.
"""

from __future__ import annotations

from typing import Callable, Iterable, Optional

from compliance import rules
from compliance.models import Intent, Policy, PolicyEvaluationResult, PolicyType

PolicyRuleHandler = Callable[[Intent, Policy], PolicyEvaluationResult]

CUSTOM_PREFIX = "custom:"


class PolicyRuleRegistry:
    """Maps opaque type tags to rule handlers."""

    def __init__(self):
        self._handlers: dict[str, PolicyRuleHandler] = {}

    def register(self, tag: str, handler: PolicyRuleHandler, replace: bool = False) -> None:
        if tag in self._handlers and not replace:
            raise ValueError(f"Handler already registered for policy type: {tag}")
        self._handlers[tag] = handler

    def register_custom(self, name: str, handler: PolicyRuleHandler,
                        replace: bool = False) -> None:
        """Register a handler for custom policies whose config names ``handler: name``."""
        self.register(CUSTOM_PREFIX + name, handler, replace=replace)

    def tag_for(self, policy: Policy) -> str:
        """Lookup key for a policy: ``custom:<handler>`` for named custom policies."""
        if policy.policy_type == PolicyType.CUSTOM.value and isinstance(policy.config, dict):
            name = policy.config.get("handler")
            if isinstance(name, str) and name:
                return CUSTOM_PREFIX + name
        return policy.policy_type

    def resolve(self, policy: Policy) -> Optional[PolicyRuleHandler]:
        handler = self._handlers.get(self.tag_for(policy))
        if handler is None:
            handler = self._handlers.get(policy.policy_type)
        return handler

    def has(self, tag: str) -> bool:
        return tag in self._handlers

    def tags(self) -> list[str]:
        return sorted(self._handlers)

    def missing_for(self, policies: Iterable[Policy]) -> list[str]:
        """Tags of policies that no registered handler covers (startup check)."""
        missing: list[str] = []
        for policy in policies:
            if self.resolve(policy) is None:
                tag = self.tag_for(policy)
                if tag not in missing:
                    missing.append(tag)
        return missing


def default_registry() -> PolicyRuleRegistry:
    registry = PolicyRuleRegistry()
    registry.register(PolicyType.ALLOW_DENY_LIST.value, rules.evaluate_allow_deny_list)
    registry.register(PolicyType.TRADE_LIMIT.value, rules.evaluate_trade_limits)
    registry.register(PolicyType.VENUE_ALLOWLIST.value, rules.evaluate_venue_allowlist)
    registry.register(PolicyType.CUSTOM.value, rules.evaluate_custom_unimplemented)
    return registry
