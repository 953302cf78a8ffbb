"""
Shared builders and fakes for the test suites.
"""

from __future__ import annotations

import threading
import time
from typing import Optional

from compliance.execution import DecodedEvent, ExecutionOutcome
from compliance.models import Intent, IntentInput, IntentStatus, Policy, PolicyInput

USER = "0x" + "a1" * 20
OTHER_USER = "0x" + "a2" * 20
WETH = "0x" + "c0" * 20
USDC = "0x" + "b2" * 20
SANCTIONED = "0x" + "de" * 20

ONE_ETH = 10 ** 18
FUTURE = int(time.time()) + 3600


def intent_input(**overrides) -> IntentInput:
    fields = dict(
        user_address=USER,
        asset_in=WETH,
        asset_out=USDC,
        amount_in=str(ONE_ETH),
        amount_out_min="1800000000",
        venue="uniswap_v3",
        deadline=FUTURE,
        nonce=0,
    )
    fields.update(overrides)
    return IntentInput(**fields)


def make_intent(**overrides) -> Intent:
    """Free-standing intent for handler tests (no store involved)."""
    fields = dict(
        id="intent-1",
        user_address=USER,
        asset_in=WETH,
        asset_out=USDC,
        amount_in=str(ONE_ETH),
        amount_out_min="1800000000",
        venue="uniswap_v3",
        deadline=FUTURE,
        nonce=0,
        status=IntentStatus.CREATED,
    )
    fields.update(overrides)
    return Intent(**fields)


def make_policy(policy_type: str, config: dict, name: str = "policy",
                policy_id: str = "policy-1", priority: int = 0) -> Policy:
    return Policy(id=policy_id, name=name, policy_type=policy_type,
                  config=config, priority=priority)


def policy_input(name: str, policy_type: str, config: dict,
                 priority: int = 0, enabled: bool = True) -> PolicyInput:
    return PolicyInput(name=name, policy_type=policy_type, config=config,
                       priority=priority, enabled=enabled)


def swap_events(block: int = 19_000_000) -> list[DecodedEvent]:
    return [
        DecodedEvent(
            name="Transfer",
            args={"from": USER, "to": "0x" + "ee" * 20, "value": ONE_ETH},
            block_number=block, log_index=0, address=WETH,
        ),
        DecodedEvent(
            name="Swap",
            args={"sender": USER, "amount0In": ONE_ETH, "amount1Out": 1_850_000_000},
            block_number=block, log_index=1, address="0x" + "ee" * 20,
        ),
    ]


class FakeExecutor:
    """
    Scriptable execution collaborator.

    ``gate`` makes execute() block until released so tests can hold an
    intent mid-execution.
    """

    def __init__(
        self,
        outcome: Optional[ExecutionOutcome] = None,
        events: Optional[list[DecodedEvent]] = None,
        raises: Optional[BaseException] = None,
        decode_raises: Optional[BaseException] = None,
        gate: bool = False,
    ):
        self.outcome = outcome or ExecutionOutcome(
            success=True, tx_ref="0x" + "ab" * 32,
            block_number=19_000_000, gas_used=152_000, amount_out="1850000000",
        )
        self.events = swap_events() if events is None else events
        self.raises = raises
        self.decode_raises = decode_raises
        self.calls: list[str] = []
        self.decoded: list[str] = []
        self.entered = threading.Event()
        self.release = threading.Event()
        if not gate:
            self.release.set()

    def execute(self, intent: Intent) -> ExecutionOutcome:
        self.calls.append(intent.id)
        self.entered.set()
        self.release.wait(timeout=5)
        if self.raises is not None:
            raise self.raises
        return ExecutionOutcome(**vars(self.outcome))

    def decode_events(self, tx_ref: str) -> list[DecodedEvent]:
        self.decoded.append(tx_ref)
        if self.decode_raises is not None:
            raise self.decode_raises
        return list(self.events)
