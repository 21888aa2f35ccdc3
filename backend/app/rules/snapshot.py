"""Immutable in-memory views of routing policy state.

The routing engine, SLA monitor, and simulation runner only ever see these
dataclasses, never ORM rows, so a snapshot can be evaluated concurrently
with live edits and replayed deterministically.
"""
import json
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

logger = logging.getLogger(__name__)


def _json_or_none(raw: str | None) -> Any:
    """Decode a JSON text column, passing malformed text through untouched.

    Criteria/weights are validated later by the rule evaluator, which turns
    unparseable text into an InvalidCriteria skip instead of a crash here.
    """
    if raw is None or raw == "":
        return None
    try:
        return json.loads(raw)
    except (json.JSONDecodeError, TypeError):
        return raw


def _specializations(raw: str | None) -> tuple[str, ...]:
    value = _json_or_none(raw)
    if value is None:
        return ()
    if isinstance(value, str):
        value = [value]
    if not isinstance(value, list):
        logger.warning("Ignoring malformed specializations blob: %r", raw)
        return ()
    return tuple(str(v).strip().lower() for v in value if str(v).strip())


@dataclass(frozen=True)
class OrderDescriptor:
    order_id: str
    channel: str
    region: str
    attributes: dict = field(default_factory=dict)
    quantity: float = 1.0
    required_specializations: tuple[str, ...] = ()

    @classmethod
    def from_dict(cls, raw: dict) -> "OrderDescriptor":
        if not isinstance(raw, dict):
            raise ValueError("order must be an object")
        try:
            order_id = str(raw["order_id"])
            channel = str(raw["channel"])
            region = str(raw["region"])
        except KeyError as exc:
            raise ValueError(f"order is missing required field {exc.args[0]!r}") from exc
        attributes = raw.get("attributes") or {}
        if not isinstance(attributes, dict):
            raise ValueError("order attributes must be an object")
        quantity = raw.get("quantity", 1)
        if isinstance(quantity, bool) or not isinstance(quantity, (int, float)) or quantity <= 0:
            raise ValueError("order quantity must be a positive number")
        specs = raw.get("required_specializations") or ()
        if isinstance(specs, str):
            specs = [specs]
        elif not isinstance(specs, (list, tuple)):
            raise ValueError("order required_specializations must be a list")
        return cls(
            order_id=order_id,
            channel=channel,
            region=region,
            attributes=dict(attributes),
            quantity=float(quantity),
            required_specializations=tuple(str(s).strip().lower() for s in specs),
        )

    def to_dict(self) -> dict:
        return {
            "order_id": self.order_id,
            "channel": self.channel,
            "region": self.region,
            "attributes": self.attributes,
            "quantity": self.quantity,
            "required_specializations": list(self.required_specializations),
        }


@dataclass(frozen=True)
class RuleSpec:
    id: str
    priority: int
    criteria: Any = None
    weights: Any = None
    fallback_policy: str | None = None
    name: str | None = None
    created_at: datetime | None = None

    @classmethod
    def from_model(cls, rule) -> "RuleSpec":
        return cls(
            id=str(rule.id),
            priority=int(rule.priority),
            criteria=_json_or_none(rule.criteria_json),
            weights=_json_or_none(rule.weights_json),
            fallback_policy=rule.fallback_policy or None,
            name=rule.name,
            created_at=rule.created_at,
        )


@dataclass(frozen=True)
class VendorProfile:
    id: str
    vendor_id: str
    weight: float
    capacity_per_hour: float
    current_load_percent: float
    failover_priority: int
    health: str
    auto_pause_threshold: float
    region: str
    specializations: tuple[str, ...] = ()
    sla_minutes: float = 0.0
    last_incident_at: datetime | None = None

    @property
    def is_auto_paused(self) -> bool:
        return self.current_load_percent >= self.auto_pause_threshold

    @property
    def remaining_capacity(self) -> float:
        """Units per hour still available at the current load."""
        headroom = max(0.0, 100.0 - self.current_load_percent) / 100.0
        return max(0.0, self.capacity_per_hour) * headroom

    @classmethod
    def from_model(cls, profile) -> "VendorProfile":
        return cls(
            id=str(profile.id),
            vendor_id=str(profile.vendor_id),
            weight=float(profile.weight),
            capacity_per_hour=float(profile.capacity_per_hour),
            current_load_percent=min(100.0, max(0.0, float(profile.current_load_percent))),
            failover_priority=int(profile.failover_priority),
            health=profile.health,
            auto_pause_threshold=float(profile.auto_pause_threshold),
            region=profile.region,
            specializations=_specializations(profile.specializations_json),
            sla_minutes=float(profile.sla_minutes or 0),
            last_incident_at=profile.last_incident_at,
        )


@dataclass(frozen=True)
class SlaTargetSpec:
    id: str
    metric: str
    target_value: float | None = None
    threshold: float | None = None
    warning_threshold: float | None = None
    unit: str | None = None

    @classmethod
    def from_model(cls, target) -> "SlaTargetSpec":
        return cls(
            id=str(target.id),
            metric=target.metric,
            target_value=target.target_value,
            threshold=target.threshold,
            warning_threshold=target.warning_threshold,
            unit=target.unit,
        )


@dataclass(frozen=True)
class PolicySnapshot:
    id: str
    name: str
    channel: str
    region: str
    status: str
    failover_strategy: str
    allow_partial_fulfillment: bool
    sla_minutes: float
    max_lag_minutes: float
    version: int
    rules: tuple[RuleSpec, ...] = ()
    vendors: tuple[VendorProfile, ...] = ()
    sla_targets: tuple[SlaTargetSpec, ...] = ()

    @classmethod
    def from_models(cls, policy, rules, vendors, sla_targets=()) -> "PolicySnapshot":
        return cls(
            id=str(policy.id),
            name=policy.name,
            channel=policy.channel,
            region=policy.region,
            status=policy.status,
            failover_strategy=policy.failover_strategy,
            allow_partial_fulfillment=bool(policy.allow_partial_fulfillment),
            sla_minutes=float(policy.sla_minutes or 0),
            max_lag_minutes=float(policy.max_lag_minutes or 0),
            version=int(policy.version),
            rules=tuple(RuleSpec.from_model(r) for r in rules),
            vendors=tuple(VendorProfile.from_model(v) for v in vendors),
            sla_targets=tuple(SlaTargetSpec.from_model(t) for t in sla_targets),
        )

    def vendor(self, profile_id: str) -> VendorProfile | None:
        for v in self.vendors:
            if v.id == profile_id:
                return v
        return None
