"""Pydantic schemas for routing decisions, SLA state, and simulations."""
import uuid
from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class OrderIn(BaseModel):
    order_id: str = Field(min_length=1, max_length=255)
    channel: str = Field(min_length=1)
    region: str = Field(min_length=1)
    attributes: dict[str, Any] = Field(default_factory=dict)
    quantity: float = Field(default=1.0, gt=0)
    required_specializations: list[str] = Field(default_factory=list)


class RouteRequest(BaseModel):
    order: OrderIn
    policy_id: uuid.UUID | None = None  # explicit policy; defaults to the active one for channel/region


class AllocationOut(BaseModel):
    vendor_profile_id: str
    vendor_id: str
    quantity: float


class RoutingDecisionOut(BaseModel):
    decision_id: str
    order_id: str
    policy_id: str
    policy_version: int
    strategy: str
    vendor_id: str
    vendor_profile_id: str
    vendor_ids: list[str]
    dispatch_vendor_ids: list[str]
    allocations: list[AllocationOut]
    matched_rule_id: str | None
    skipped_rule_ids: list[str]
    partial: bool
    unallocated_quantity: float
    decided_at: datetime
    sla_minutes: float
    max_lag_minutes: float
    sla_deadline: datetime | None
    max_lag_deadline: datetime | None
    fallback_from_policy_id: str | None


class SlaEvaluationOut(BaseModel):
    decision_id: uuid.UUID
    state: str
    elapsed_minutes: float
    threshold_minutes: float | None
    warning_minutes: float | None
    metric: str | None
    deadline: datetime | None


class SimulationRequest(BaseModel):
    name: str | None = Field(default=None, max_length=255)
    scenario: dict[str, Any]


class SimulationOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    policy_id: uuid.UUID
    name: str | None
    policy_version: int
    scenario: dict[str, Any]
    results: dict[str, Any]
    created_by: str | None
    created_at: datetime


class SimulationListResponse(BaseModel):
    items: list[SimulationOut]
    total: int
