"""Policy change service — validated, audited, versioned policy mutations.

Every accepted change:
  1. is checked against the caller's expected_version (stale -> ConflictError),
  2. mutates the policy or one of its owned records,
  3. bumps the policy version (SQLAlchemy version_id_col) and marks
     orchestration_status=pending,
  4. writes exactly one 'approved' audit entry before the commit.

Invalid changes write a single 'rejected' audit entry and raise
PolicyChangeRejected. If an audit write fails the change is rolled back.
"""
import asyncio
import json
import logging
import uuid
from collections import Counter
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timezone

from sqlalchemy.orm.exc import StaleDataError

from app.core.capabilities import Actor
from app.core.errors import (
    AuditWriteFailed,
    ConflictError,
    InvalidCriteria,
    PolicyChangeRejected,
    PolicyNotFound,
)
from app.models.routing_policy import RoutingPolicy
from app.models.routing_policy_vendor import RoutingPolicyVendor
from app.models.routing_rule import RoutingRule
from app.models.sla_target import SlaTarget
from app.rules.criteria import parse_criteria
from app.rules.rule_evaluator import parse_weights
from app.schemas.policy_change import PolicyChange
from app.schemas.routing_policy import RoutingPolicyCreate
from app.services.policy_store import PolicyStore

logger = logging.getLogger(__name__)

# Serialises mutations of the same policy inside this process; the version
# column catches races between processes.
_policy_locks: dict[uuid.UUID, asyncio.Lock] = {}
_lock_users: Counter = Counter()

_CONTROL_FIELDS = {"type", "expected_version", "notes"}


@asynccontextmanager
async def _policy_lock(policy_id: uuid.UUID):
    """Hold the policy's lock; it is dropped once no task holds or awaits it."""
    lock = _policy_locks.setdefault(policy_id, asyncio.Lock())
    _lock_users[policy_id] += 1
    try:
        async with lock:
            yield
    finally:
        _lock_users[policy_id] -= 1
        if not _lock_users[policy_id]:
            del _lock_users[policy_id]
            _policy_locks.pop(policy_id, None)


@dataclass(frozen=True)
class PolicyChangeResult:
    new_version: int
    audit_entry_id: uuid.UUID


def _changed_fields(change) -> dict:
    return {
        name: getattr(change, name)
        for name in change.model_fields_set
        if name not in _CONTROL_FIELDS
    }


def _diff(target, fields: dict) -> list[str]:
    """Apply `fields` to `target` and return 'field: old -> new' lines for real changes."""
    lines = []
    for name, new in sorted(fields.items()):
        old = getattr(target, name)
        if old != new:
            setattr(target, name, new)
            lines.append(f"{name}: {old!r} -> {new!r}")
    return lines


def _dump(value) -> str | None:
    return None if value is None else json.dumps(value, sort_keys=True)


def _validate_rule_blobs(criteria, weights) -> None:
    parse_criteria(criteria)
    parse_weights(weights)


def _reject(message: str):
    raise PolicyChangeRejected(message)


# ─── Lifecycle ───

async def _activate(store: PolicyStore, policy: RoutingPolicy, change, actor: Actor, now: datetime) -> str:
    if policy.status == "active":
        _reject("Policy is already active.")
    if policy.status == "retired":
        _reject("Retired policies cannot be re-activated.")
    if not await store.get_vendor_profiles(policy.id):
        _reject("A policy needs at least one vendor profile before it can be activated.")

    for rule in await store.get_rules(policy.id):
        try:
            _validate_rule_blobs(rule.criteria_json, rule.weights_json)
        except InvalidCriteria as exc:
            _reject(f"Rule {rule.id} (priority {rule.priority}) is invalid: {exc}")

    # Retire the current active policy first; the partial unique index allows one active row.
    for other in await store.get_active_policies_for(policy.channel, policy.region):
        if other.id == policy.id:
            continue
        other.status = "retired"
        other.updated_by = actor.subject
        other.updated_at = now
        other.orchestration_status = "pending"
        await store.db.flush()
        await store.record_audit(
            policy_id=other.id,
            actor=actor.subject,
            role=actor.role.value,
            status="approved",
            change_type="superseded",
            summary=f"Superseded by policy {policy.id}",
            prior_status="active",
            new_status="retired",
            policy_version=other.version,
        )
        logger.info("Routing policy %s superseded by %s", other.id, policy.id)

    policy.status = "active"
    if change.effective_at is not None:
        policy.effective_at = change.effective_at
    elif policy.effective_at is None:
        policy.effective_at = now
    return f"Activated policy for {policy.channel}/{policy.region} effective {policy.effective_at.isoformat()}"


async def _retire(store: PolicyStore, policy: RoutingPolicy, change, actor: Actor, now: datetime) -> str:
    if policy.status == "retired":
        _reject("Policy is already retired.")
    prior = policy.status
    policy.status = "retired"
    return f"Retired policy (was {prior})"


async def _update_settings(store: PolicyStore, policy: RoutingPolicy, change, actor: Actor, now: datetime) -> str:
    fields = _changed_fields(change)
    if "name" in fields and fields["name"] is None:
        _reject("Policy name cannot be empty.")
    if "sla_minutes" in fields and fields["sla_minutes"] is None:
        _reject("sla_minutes is required.")
    for required in ("failover_strategy", "max_lag_minutes", "allow_partial_fulfillment"):
        if required in fields and fields[required] is None:
            fields.pop(required)
    lines = _diff(policy, fields)
    if not lines:
        _reject("Change does not modify any policy setting.")
    return "Updated settings: " + "; ".join(lines)


# ─── Rules ───

async def _priority_taken(store: PolicyStore, policy_id: uuid.UUID, priority: int, exclude: uuid.UUID | None = None) -> bool:
    return any(r.priority == priority and r.id != exclude for r in await store.get_rules(policy_id))


async def _rule_add(store: PolicyStore, policy: RoutingPolicy, change, actor: Actor, now: datetime) -> str:
    if await _priority_taken(store, policy.id, change.priority):
        _reject(f"Priority {change.priority} is already used by another rule.")
    _validate_rule_blobs(change.criteria, change.weights)
    rule = RoutingRule(
        policy_id=policy.id,
        name=change.name,
        priority=change.priority,
        criteria_json=_dump(change.criteria),
        weights_json=_dump(change.weights),
        fallback_policy=change.fallback_policy,
    )
    store.db.add(rule)
    return f"Added rule '{change.name or 'unnamed'}' at priority {change.priority}"


async def _get_rule(store: PolicyStore, policy: RoutingPolicy, rule_id: uuid.UUID) -> RoutingRule:
    rule = await store.db.get(RoutingRule, rule_id)
    if rule is None or rule.policy_id != policy.id:
        _reject(f"Rule {rule_id} does not belong to this policy.")
    return rule


async def _rule_update(store: PolicyStore, policy: RoutingPolicy, change, actor: Actor, now: datetime) -> str:
    rule = await _get_rule(store, policy, change.rule_id)
    fields = _changed_fields(change)
    fields.pop("rule_id", None)

    if "priority" in fields:
        if fields["priority"] is None:
            fields.pop("priority")
        elif await _priority_taken(store, policy.id, fields["priority"], exclude=rule.id):
            _reject(f"Priority {fields['priority']} is already used by another rule.")

    criteria = fields.pop("criteria", rule.criteria_json)
    weights = fields.pop("weights", rule.weights_json)
    _validate_rule_blobs(criteria, weights)
    if "criteria" in change.model_fields_set:
        fields["criteria_json"] = _dump(criteria)
    if "weights" in change.model_fields_set:
        fields["weights_json"] = _dump(weights)

    lines = _diff(rule, fields)
    if not lines:
        _reject("Change does not modify the rule.")
    rule.updated_at = now
    return f"Updated rule {rule.id}: " + "; ".join(lines)


async def _rule_remove(store: PolicyStore, policy: RoutingPolicy, change, actor: Actor, now: datetime) -> str:
    rule = await _get_rule(store, policy, change.rule_id)
    await store.db.delete(rule)
    return f"Removed rule '{rule.name or rule.id}' (priority {rule.priority})"


# ─── Vendor profiles ───

async def _vendor_profile_add(store: PolicyStore, policy: RoutingPolicy, change, actor: Actor, now: datetime) -> str:
    existing = await store.get_vendor_profiles(policy.id)
    if any(p.vendor_id == change.vendor_id and p.region.lower() == change.region.lower() for p in existing):
        _reject(f"Vendor {change.vendor_id} already has a profile for region {change.region}.")
    profile = RoutingPolicyVendor(
        policy_id=policy.id,
        vendor_id=change.vendor_id,
        region=change.region,
        weight=change.weight,
        capacity_per_hour=change.capacity_per_hour,
        current_load_percent=change.current_load_percent,
        failover_priority=change.failover_priority,
        health=change.health,
        auto_pause_threshold=change.auto_pause_threshold,
        specializations_json=json.dumps(sorted(set(change.specializations))),
        sla_minutes=change.sla_minutes,
    )
    store.db.add(profile)
    return f"Added vendor {change.vendor_id} ({change.region}) weight={change.weight} capacity={change.capacity_per_hour}/h"


async def _get_profile(store: PolicyStore, policy: RoutingPolicy, profile_id: uuid.UUID) -> RoutingPolicyVendor:
    profile = await store.get_vendor_profile(policy.id, profile_id)
    if profile is None:
        _reject(f"Vendor profile {profile_id} does not belong to this policy.")
    return profile


async def _vendor_profile_update(store: PolicyStore, policy: RoutingPolicy, change, actor: Actor, now: datetime) -> str:
    profile = await _get_profile(store, policy, change.profile_id)
    fields = {k: v for k, v in _changed_fields(change).items() if k != "profile_id" and v is not None}
    if "specializations" in fields:
        fields["specializations_json"] = json.dumps(sorted(set(fields.pop("specializations"))))
    lines = _diff(profile, fields)
    if not lines:
        _reject("Change does not modify the vendor profile.")
    profile.updated_at = now
    return f"Updated vendor profile {profile.id}: " + "; ".join(lines)


async def _vendor_profile_remove(store: PolicyStore, policy: RoutingPolicy, change, actor: Actor, now: datetime) -> str:
    profile = await _get_profile(store, policy, change.profile_id)
    if policy.status == "active" and len(await store.get_vendor_profiles(policy.id)) <= 1:
        _reject("An active policy must keep at least one vendor profile.")
    await store.db.delete(profile)
    return f"Removed vendor profile {profile.id} (vendor {profile.vendor_id})"


# ─── SLA targets ───

async def _sla_target_add(store: PolicyStore, policy: RoutingPolicy, change, actor: Actor, now: datetime) -> str:
    if (
        change.threshold is not None
        and change.warning_threshold is not None
        and change.warning_threshold > change.threshold
    ):
        _reject("warning_threshold cannot exceed threshold.")
    target = SlaTarget(
        policy_id=policy.id,
        metric=change.metric,
        target_value=change.target_value,
        threshold=change.threshold,
        warning_threshold=change.warning_threshold,
        unit=change.unit,
    )
    store.db.add(target)
    return f"Added SLA target '{change.metric}' threshold={change.threshold} {change.unit or ''}".rstrip()


async def _sla_target_remove(store: PolicyStore, policy: RoutingPolicy, change, actor: Actor, now: datetime) -> str:
    target = await store.db.get(SlaTarget, change.target_id)
    if target is None or target.policy_id != policy.id:
        _reject(f"SLA target {change.target_id} does not belong to this policy.")
    await store.db.delete(target)
    return f"Removed SLA target '{target.metric}'"


_HANDLERS = {
    "activate": _activate,
    "retire": _retire,
    "update_settings": _update_settings,
    "rule_add": _rule_add,
    "rule_update": _rule_update,
    "rule_remove": _rule_remove,
    "vendor_profile_add": _vendor_profile_add,
    "vendor_profile_update": _vendor_profile_update,
    "vendor_profile_remove": _vendor_profile_remove,
    "sla_target_add": _sla_target_add,
    "sla_target_remove": _sla_target_remove,
}

# Lifecycle changes are the only ones a retired policy accepts (and they reject).
_LIFECYCLE_CHANGES = {"activate", "retire"}


# ─── Public API ───

async def apply_policy_change(
    store: PolicyStore,
    policy_id: uuid.UUID,
    change: PolicyChange,
    actor: Actor,
    now: datetime | None = None,
) -> PolicyChangeResult:
    """Apply one change to a policy and return the new version and audit entry id.

    Raises:
        PolicyNotFound: no policy with this id.
        ConflictError: expected_version is stale or a concurrent writer won.
        PolicyChangeRejected: the change is invalid (a 'rejected' entry is recorded).
        AuditWriteFailed: the audit entry could not be written; nothing was committed.
    """
    now = now or datetime.now(timezone.utc)
    db = store.db

    async with _policy_lock(policy_id):
        policy = await store.get_policy(policy_id)
        if policy is None:
            raise PolicyNotFound(f"Routing policy {policy_id} not found")

        current_version = policy.version
        if change.expected_version != current_version:
            raise ConflictError(
                f"Policy {policy_id} is at version {current_version}, "
                f"change was made against version {change.expected_version}",
                current_version=current_version,
            )

        prior_status = policy.status
        try:
            if prior_status == "retired" and change.type not in _LIFECYCLE_CHANGES:
                _reject("Retired policies are read-only.")
            summary = await _HANDLERS[change.type](store, policy, change, actor, now)
        except (PolicyChangeRejected, InvalidCriteria) as exc:
            await db.rollback()
            entry = await _record_rejection(store, policy_id, change, actor, prior_status, current_version, str(exc))
            raise PolicyChangeRejected(str(exc), audit_entry_id=entry.id) from exc

        policy.updated_by = actor.subject
        policy.updated_at = now
        policy.orchestration_status = "pending"
        try:
            await db.flush()
        except StaleDataError as exc:
            await db.rollback()
            logger.warning("Concurrent edit on routing policy %s: %s", policy_id, exc)
            raise ConflictError(
                f"Policy {policy_id} was modified concurrently; reload and retry",
            ) from exc

        try:
            entry = await store.record_audit(
                policy_id=policy.id,
                actor=actor.subject,
                role=actor.role.value,
                status="approved",
                change_type=change.type,
                summary=summary,
                prior_status=prior_status,
                new_status=policy.status,
                policy_version=policy.version,
                notes=change.notes,
            )
        except AuditWriteFailed:
            await db.rollback()
            raise

        new_version = policy.version
        await db.commit()

    logger.info(
        "Routing policy %s: %s by %s (v%d -> v%d)",
        policy_id, change.type, actor.subject, current_version, new_version,
    )
    return PolicyChangeResult(new_version=new_version, audit_entry_id=entry.id)


async def _record_rejection(
    store: PolicyStore,
    policy_id: uuid.UUID,
    change,
    actor: Actor,
    prior_status: str,
    version: int,
    reason: str,
):
    try:
        entry = await store.record_audit(
            policy_id=policy_id,
            actor=actor.subject,
            role=actor.role.value,
            status="rejected",
            change_type=change.type,
            summary=f"Rejected: {reason}",
            prior_status=prior_status,
            new_status=prior_status,
            policy_version=version,
            notes=change.notes,
        )
        await store.db.commit()
    except AuditWriteFailed:
        await store.db.rollback()
        raise
    logger.info("Routing policy %s: %s by %s rejected: %s", policy_id, change.type, actor.subject, reason)
    return entry


async def create_policy(store: PolicyStore, payload: RoutingPolicyCreate, actor: Actor) -> RoutingPolicy:
    """Create a draft policy and record its 'created' audit entry in the same transaction."""
    policy = RoutingPolicy(
        **payload.model_dump(),
        status="draft",
        created_by=actor.subject,
        updated_by=actor.subject,
        orchestration_status="pending",
    )
    store.db.add(policy)
    await store.db.flush()
    try:
        await store.record_audit(
            policy_id=policy.id,
            actor=actor.subject,
            role=actor.role.value,
            status="approved",
            change_type="created",
            summary=f"Created draft policy '{policy.name}' for {policy.channel}/{policy.region}",
            new_status="draft",
            policy_version=policy.version,
        )
    except AuditWriteFailed:
        await store.db.rollback()
        raise
    await store.db.commit()
    await store.db.refresh(policy)
    logger.info("Routing policy %s created by %s", policy.id, actor.subject)
    return policy
