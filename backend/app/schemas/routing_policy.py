"""Pydantic schemas for routing policies and their owned records."""
import json
import uuid
from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

from app.schemas.policy_change import FailoverStrategy, VendorHealth


class RoutingPolicyCreate(BaseModel):
    name: str = Field(min_length=1, max_length=255)
    description: str | None = None
    channel: str = Field(min_length=1, max_length=100)
    region: str = Field(min_length=1, max_length=100)
    failover_strategy: FailoverStrategy = "cascading"
    allow_partial_fulfillment: bool = False
    sla_minutes: int = Field(gt=0)
    max_lag_minutes: int = Field(default=0, ge=0)
    effective_at: datetime | None = None
    organization_id: uuid.UUID | None = None


class RoutingPolicyOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    name: str
    description: str | None
    channel: str
    region: str
    status: str
    failover_strategy: str
    allow_partial_fulfillment: bool
    sla_minutes: int
    max_lag_minutes: int
    effective_at: datetime | None
    organization_id: uuid.UUID | None
    orchestration_status: str
    orchestration_last_sync: datetime | None
    version: int
    created_by: str | None
    updated_by: str | None
    created_at: datetime
    updated_at: datetime


class RoutingPolicyListResponse(BaseModel):
    items: list[RoutingPolicyOut]
    total: int


def _decode(value: Any) -> Any:
    if isinstance(value, str):
        try:
            return json.loads(value)
        except json.JSONDecodeError:
            return value
    return value


class RoutingRuleOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    name: str | None
    priority: int
    criteria: Any = Field(default=None, validation_alias="criteria_json")
    weights: Any = Field(default=None, validation_alias="weights_json")
    fallback_policy: str | None
    created_at: datetime

    @field_validator("criteria", "weights", mode="before")
    @classmethod
    def _json(cls, v):
        return _decode(v)


class VendorProfileOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    vendor_id: uuid.UUID
    region: str
    weight: float
    capacity_per_hour: float
    current_load_percent: float
    failover_priority: int
    health: VendorHealth
    auto_pause_threshold: float
    specializations: list[str] = Field(default_factory=list, validation_alias="specializations_json")
    sla_minutes: int
    last_incident_at: datetime | None

    @field_validator("specializations", mode="before")
    @classmethod
    def _json(cls, v):
        decoded = _decode(v)
        return decoded if isinstance(decoded, list) else []


class SlaTargetOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    metric: str
    target_value: float | None
    threshold: float | None
    warning_threshold: float | None
    unit: str | None


class RoutingPolicyDetail(RoutingPolicyOut):
    rules: list[RoutingRuleOut] = Field(default_factory=list)
    vendor_profiles: list[VendorProfileOut] = Field(default_factory=list)
    sla_targets: list[SlaTargetOut] = Field(default_factory=list)


class AuditEntryOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    policy_id: uuid.UUID
    actor: str
    role: str
    status: str
    change_type: str
    prior_status: str | None
    new_status: str | None
    policy_version: int | None
    summary: str
    notes: str | None
    timestamp: datetime


class AuditEntryListResponse(BaseModel):
    items: list[AuditEntryOut]
    total: int


class VendorHealthIn(BaseModel):
    current_load_percent: float | None = Field(default=None, ge=0, le=100)
    health: VendorHealth | None = None
    incident: bool = False
    reported_at: datetime | None = None
