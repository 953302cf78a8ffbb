"""
Input Validation

pydantic request models for intents and policies. Everything that enters
through the gateway or the SDK is checked here before it reaches a store;
the core itself trusts its typed inputs.
"""

from __future__ import annotations

import re
import time
from typing import Any, Optional

from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator

from compliance.models import (
    ArtifactType,
    IntentInput,
    IntentStatus,
    PolicyInput,
    PolicyType,
    parse_amount,
)
from compliance.stores import DEFAULT_INTENT_PAGE, DEFAULT_POLICY_PAGE

ADDRESS_RE = re.compile(r"^0x[a-fA-F0-9]{40}$")
SIGNATURE_RE = re.compile(r"^0x[a-fA-F0-9]+$")
MAX_PAGE = 100


def check_address(value: str) -> str:
    if not isinstance(value, str) or not ADDRESS_RE.match(value):
        raise ValueError("Invalid Ethereum address format")
    return value


def _amount_string(value: Any, allow_zero: bool) -> str:
    amount = parse_amount(value)
    if amount == 0 and not allow_zero:
        raise ValueError("Amount must be greater than 0")
    return str(amount)


# ---------------------------------------------------------------------------
# Intents
# ---------------------------------------------------------------------------

class IntentCreate(BaseModel):
    user_address: str
    asset_in: str
    asset_out: str
    amount_in: str
    amount_out_min: str
    venue: str = Field(min_length=1, max_length=100)
    deadline: int
    nonce: Optional[int] = Field(default=None, ge=0)
    signature: Optional[str] = None

    @field_validator("user_address", "asset_in", "asset_out")
    @classmethod
    def _address(cls, v: str) -> str:
        return check_address(v)

    @field_validator("amount_in", mode="before")
    @classmethod
    def _amount_in(cls, v: Any) -> str:
        return _amount_string(v, allow_zero=False)

    @field_validator("amount_out_min", mode="before")
    @classmethod
    def _amount_out_min(cls, v: Any) -> str:
        return _amount_string(v, allow_zero=True)

    @field_validator("deadline", mode="before")
    @classmethod
    def _deadline(cls, v: Any) -> int:
        if isinstance(v, bool) or not isinstance(v, int):
            raise ValueError("Deadline must be a Unix timestamp in seconds")
        if v <= int(time.time()):
            raise ValueError("Deadline must be in the future")
        return v

    @field_validator("signature")
    @classmethod
    def _signature(cls, v: Optional[str]) -> Optional[str]:
        if v is not None and not SIGNATURE_RE.match(v):
            raise ValueError("Signature must be a hex string starting with 0x")
        return v

    def to_input(self, nonce: Optional[int] = None) -> IntentInput:
        """Build the store input; *nonce* fills in when none was supplied."""
        chosen = self.nonce if self.nonce is not None else nonce
        if chosen is None:
            raise ValueError("nonce is required")
        return IntentInput(
            user_address=self.user_address,
            asset_in=self.asset_in,
            asset_out=self.asset_out,
            amount_in=self.amount_in,
            amount_out_min=self.amount_out_min,
            venue=self.venue,
            deadline=self.deadline,
            nonce=chosen,
            signature=self.signature,
        )


class SignatureUpdate(BaseModel):
    signature: str

    @field_validator("signature")
    @classmethod
    def _signature(cls, v: str) -> str:
        if not SIGNATURE_RE.match(v):
            raise ValueError("Signature must be a hex string starting with 0x")
        return v


class IntentListQuery(BaseModel):
    status: Optional[IntentStatus] = None
    user_address: Optional[str] = None
    limit: int = Field(default=DEFAULT_INTENT_PAGE, ge=1, le=MAX_PAGE)
    offset: int = Field(default=0, ge=0)

    @field_validator("user_address")
    @classmethod
    def _address(cls, v: Optional[str]) -> Optional[str]:
        return None if v is None else check_address(v)


class AuditQuery(BaseModel):
    artifact_type: Optional[ArtifactType] = None
    execution_id: Optional[str] = None


# ---------------------------------------------------------------------------
# Policy configuration, one model per built-in type
# ---------------------------------------------------------------------------

class AllowDenyListConfig(BaseModel):
    mode: str
    addresses: list[str]

    @field_validator("mode")
    @classmethod
    def _mode(cls, v: str) -> str:
        if v not in ("allow", "deny"):
            raise ValueError("mode must be 'allow' or 'deny'")
        return v

    @field_validator("addresses")
    @classmethod
    def _addresses(cls, v: list[str]) -> list[str]:
        return [check_address(a) for a in v]


class TradeLimitConfig(BaseModel):
    min_amount: Optional[str] = None
    max_amount: Optional[str] = None
    asset: Optional[str] = None

    @field_validator("min_amount", "max_amount", mode="before")
    @classmethod
    def _amount(cls, v: Any) -> Optional[str]:
        return None if v is None else _amount_string(v, allow_zero=False)

    @field_validator("asset")
    @classmethod
    def _asset(cls, v: Optional[str]) -> Optional[str]:
        return None if v is None else check_address(v)

    @model_validator(mode="after")
    def _bounds(self) -> "TradeLimitConfig":
        if self.min_amount is None and self.max_amount is None:
            raise ValueError("trade limit needs min_amount or max_amount")
        if (self.min_amount is not None and self.max_amount is not None
                and int(self.min_amount) > int(self.max_amount)):
            raise ValueError("min_amount exceeds max_amount")
        return self


class VenueAllowlistConfig(BaseModel):
    allowed_venues: list[str] = Field(min_length=1)

    @field_validator("allowed_venues")
    @classmethod
    def _venues(cls, v: list[str]) -> list[str]:
        if any(not venue.strip() for venue in v):
            raise ValueError("venue names must be non-empty")
        return v


CONFIG_MODELS: dict[str, type[BaseModel]] = {
    PolicyType.ALLOW_DENY_LIST.value: AllowDenyListConfig,
    PolicyType.TRADE_LIMIT.value: TradeLimitConfig,
    PolicyType.VENUE_ALLOWLIST.value: VenueAllowlistConfig,
}


def validate_policy_config(policy_type: str, config: dict[str, Any]) -> dict[str, Any]:
    """
    Check *config* against the shape the handler for *policy_type* reads.

    Custom configs are free-form. Raises pydantic.ValidationError.
    """
    model = CONFIG_MODELS.get(policy_type)
    if model is None:
        return dict(config)
    return model.model_validate(config).model_dump(exclude_none=True)


# ---------------------------------------------------------------------------
# Policies
# ---------------------------------------------------------------------------

class PolicyCreate(BaseModel):
    name: str = Field(min_length=1, max_length=200)
    description: Optional[str] = Field(default=None, max_length=1000)
    policy_type: PolicyType
    config: dict[str, Any]
    enabled: bool = True
    priority: int = Field(default=0, ge=0)

    @model_validator(mode="after")
    def _config_matches_type(self) -> "PolicyCreate":
        try:
            self.config = validate_policy_config(self.policy_type.value, self.config)
        except ValidationError as exc:
            raise ValueError(f"Invalid {self.policy_type.value} config: {exc}") from exc
        return self

    def to_input(self) -> PolicyInput:
        return PolicyInput(
            name=self.name,
            description=self.description,
            policy_type=self.policy_type.value,
            config=self.config,
            enabled=self.enabled,
            priority=self.priority,
        )


class PolicyUpdate(BaseModel):
    """Partial update. A new config is checked against the effective type by the service."""
    name: Optional[str] = Field(default=None, min_length=1, max_length=200)
    description: Optional[str] = Field(default=None, max_length=1000)
    policy_type: Optional[PolicyType] = None
    config: Optional[dict[str, Any]] = None
    enabled: Optional[bool] = None
    priority: Optional[int] = Field(default=None, ge=0)

    def changes(self) -> dict[str, Any]:
        fields = self.model_dump(exclude_unset=True, exclude_none=True)
        if "policy_type" in fields:
            fields["policy_type"] = self.policy_type.value
        return fields


class PolicyListQuery(BaseModel):
    enabled: Optional[bool] = None
    policy_type: Optional[PolicyType] = None
    limit: int = Field(default=DEFAULT_POLICY_PAGE, ge=1, le=MAX_PAGE)
    offset: int = Field(default=0, ge=0)
