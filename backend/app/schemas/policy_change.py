"""Pydantic schemas for routing-policy mutations.

Every change carries `expected_version`, the policy revision the editor
last saw; stale versions are rejected with 409.
"""
import uuid
from datetime import datetime
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, RootModel

FailoverStrategy = Literal["cascading", "parallel", "round_robin"]
VendorHealth = Literal["healthy", "warning", "critical"]


class _ChangeBase(BaseModel):
    model_config = ConfigDict(extra="forbid")

    expected_version: int = Field(ge=1)
    notes: str | None = None


class ActivatePolicy(_ChangeBase):
    type: Literal["activate"]
    effective_at: datetime | None = None


class RetirePolicy(_ChangeBase):
    type: Literal["retire"]


class UpdatePolicySettings(_ChangeBase):
    type: Literal["update_settings"]
    name: str | None = Field(default=None, min_length=1, max_length=255)
    description: str | None = None
    failover_strategy: FailoverStrategy | None = None
    sla_minutes: int | None = Field(default=None, gt=0)
    max_lag_minutes: int | None = Field(default=None, ge=0)
    allow_partial_fulfillment: bool | None = None
    effective_at: datetime | None = None


class AddRule(_ChangeBase):
    type: Literal["rule_add"]
    name: str | None = None
    priority: int
    criteria: Any = None
    weights: Any = None
    fallback_policy: str | None = None


class UpdateRule(_ChangeBase):
    type: Literal["rule_update"]
    rule_id: uuid.UUID
    name: str | None = None
    priority: int | None = None
    criteria: Any = None
    weights: Any = None
    fallback_policy: str | None = None


class RemoveRule(_ChangeBase):
    type: Literal["rule_remove"]
    rule_id: uuid.UUID


class AddVendorProfile(_ChangeBase):
    type: Literal["vendor_profile_add"]
    vendor_id: uuid.UUID
    region: str = Field(min_length=1)
    weight: float = Field(default=1.0, ge=0)
    capacity_per_hour: float = Field(ge=0)
    current_load_percent: float = Field(default=0.0, ge=0, le=100)
    failover_priority: int = 1
    health: VendorHealth = "healthy"
    auto_pause_threshold: float = Field(default=90.0, gt=0, le=100)
    specializations: list[str] = Field(default_factory=list)
    sla_minutes: int = Field(default=0, ge=0)


class UpdateVendorProfile(_ChangeBase):
    type: Literal["vendor_profile_update"]
    profile_id: uuid.UUID
    region: str | None = Field(default=None, min_length=1)
    weight: float | None = Field(default=None, ge=0)
    capacity_per_hour: float | None = Field(default=None, ge=0)
    failover_priority: int | None = None
    auto_pause_threshold: float | None = Field(default=None, gt=0, le=100)
    specializations: list[str] | None = None
    sla_minutes: int | None = Field(default=None, ge=0)


class RemoveVendorProfile(_ChangeBase):
    type: Literal["vendor_profile_remove"]
    profile_id: uuid.UUID


class AddSlaTarget(_ChangeBase):
    type: Literal["sla_target_add"]
    metric: str = Field(min_length=1, max_length=100)
    target_value: float | None = None
    threshold: float | None = Field(default=None, gt=0)
    warning_threshold: float | None = Field(default=None, ge=0)
    unit: str | None = "minutes"


class RemoveSlaTarget(_ChangeBase):
    type: Literal["sla_target_remove"]
    target_id: uuid.UUID


PolicyChange = Annotated[
    Union[
        ActivatePolicy,
        RetirePolicy,
        UpdatePolicySettings,
        AddRule,
        UpdateRule,
        RemoveRule,
        AddVendorProfile,
        UpdateVendorProfile,
        RemoveVendorProfile,
        AddSlaTarget,
        RemoveSlaTarget,
    ],
    Field(discriminator="type"),
]


class PolicyChangeResultOut(BaseModel):
    policy_id: uuid.UUID
    new_version: int
    audit_entry_id: uuid.UUID


class PolicyChangeRequest(RootModel[PolicyChange]):
    """Request body wrapper so the discriminated union can be a FastAPI body."""
