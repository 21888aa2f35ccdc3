"""Tests for audited, versioned routing-policy changes.

The policy store is replaced with an in-memory fake and the session with
AsyncMock; flush() bumps the policy version the way SQLAlchemy's
version_id_col does against a real database.
"""
import uuid
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import pytest
from sqlalchemy.orm.exc import StaleDataError

from app.core.capabilities import Actor, Role
from app.core.errors import AuditWriteFailed, ConflictError, PolicyChangeRejected, PolicyNotFound
from app.models.routing_policy import RoutingPolicy
from app.models.routing_rule import RoutingRule
from app.schemas.policy_change import (
    ActivatePolicy,
    AddRule,
    RemoveVendorProfile,
    RetirePolicy,
    UpdatePolicySettings,
)
from app.services.policy_changes import apply_policy_change

ACTOR = Actor.for_role("ops@printco.example", Role.SUPER_ADMIN)


# ─── Helpers ──────────────────────────────────────────────────────────────────

def _policy(status: str = "draft", version: int = 2, **overrides) -> RoutingPolicy:
    fields = dict(
        id=uuid.uuid4(),
        name="US posters",
        channel="shopify",
        region="US",
        status=status,
        failover_strategy="cascading",
        allow_partial_fulfillment=False,
        sla_minutes=60,
        max_lag_minutes=0,
        orchestration_status="synced",
        version=version,
    )
    fields.update(overrides)
    return RoutingPolicy(**fields)


class FakeStore:
    """In-memory stand-in for PolicyStore."""

    def __init__(self, policy, rules=(), profiles=(), actives=(), audit_error=None):
        self.policy = policy
        self.rules = list(rules)
        self.profiles = list(profiles)
        self.actives = list(actives)
        self.audit_entries: list = []
        self._audit_error = audit_error

        self.db = AsyncMock()
        self.db.add = MagicMock()

        async def flush():
            policy.version += 1

        self.db.flush = AsyncMock(side_effect=flush)

    async def get_policy(self, policy_id):
        return self.policy if policy_id == self.policy.id else None

    async def get_rules(self, policy_id):
        return self.rules

    async def get_vendor_profiles(self, policy_id):
        return self.profiles

    async def get_vendor_profile(self, policy_id, profile_id):
        return next((p for p in self.profiles if p.id == profile_id), None)

    async def get_active_policies_for(self, channel, region):
        return self.actives

    async def record_audit(self, **entry):
        if self._audit_error is not None:
            raise self._audit_error
        record = SimpleNamespace(id=uuid.uuid4(), **entry)
        self.audit_entries.append(record)
        return record


def _profile(policy_id):
    return SimpleNamespace(id=uuid.uuid4(), policy_id=policy_id, vendor_id=uuid.uuid4(), region="US")


# ─── Success path ─────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_rule_add_writes_one_approved_entry_and_bumps_version():
    policy = _policy()
    store = FakeStore(policy)
    change = AddRule(type="rule_add", expected_version=2, priority=1, criteria={"region": "US"}, weights={"v1": 2})

    result = await apply_policy_change(store, policy.id, change, ACTOR)

    assert result.new_version == 3
    assert len(store.audit_entries) == 1
    entry = store.audit_entries[0]
    assert entry.status == "approved"
    assert entry.change_type == "rule_add"
    assert entry.policy_version == 3
    assert entry.actor == "ops@printco.example"
    assert entry.role == "super_admin"
    assert result.audit_entry_id == entry.id

    added = store.db.add.call_args.args[0]
    assert isinstance(added, RoutingRule)
    assert added.criteria_json == '{"region": "US"}'
    assert policy.orchestration_status == "pending"
    assert policy.updated_by == "ops@printco.example"
    store.db.commit.assert_awaited_once()


@pytest.mark.asyncio
async def test_update_settings_summary_lists_changed_fields():
    policy = _policy()
    store = FakeStore(policy)
    change = UpdatePolicySettings(type="update_settings", expected_version=2, sla_minutes=90, max_lag_minutes=0)

    await apply_policy_change(store, policy.id, change, ACTOR)

    assert policy.sla_minutes == 90
    assert store.audit_entries[0].summary == "Updated settings: sla_minutes: 60 -> 90"


@pytest.mark.asyncio
async def test_activate_supersedes_current_active_policy():
    policy = _policy()
    incumbent = _policy(status="active", version=5)
    store = FakeStore(policy, profiles=[_profile(policy.id)], actives=[incumbent])

    await apply_policy_change(store, policy.id, ActivatePolicy(type="activate", expected_version=2), ACTOR)

    assert policy.status == "active"
    assert policy.effective_at is not None
    assert incumbent.status == "retired"
    by_policy = {}
    for entry in store.audit_entries:
        by_policy.setdefault(entry.policy_id, []).append(entry)
    assert [e.change_type for e in by_policy[incumbent.id]] == ["superseded"]
    assert [e.change_type for e in by_policy[policy.id]] == ["activate"]
    assert by_policy[policy.id][0].prior_status == "draft"
    assert by_policy[policy.id][0].new_status == "active"


# ─── Concurrency ──────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_stale_expected_version_raises_conflict():
    policy = _policy(version=4)
    store = FakeStore(policy)

    with pytest.raises(ConflictError) as exc_info:
        await apply_policy_change(store, policy.id, RetirePolicy(type="retire", expected_version=3), ACTOR)

    assert exc_info.value.current_version == 4
    assert store.audit_entries == []
    store.db.commit.assert_not_awaited()


@pytest.mark.asyncio
async def test_concurrent_writer_detected_at_flush():
    policy = _policy()
    store = FakeStore(policy)
    store.db.flush = AsyncMock(side_effect=StaleDataError("UPDATE statement on table 'routing_policies' expected to update 1 row(s); 0 were matched."))

    with pytest.raises(ConflictError):
        await apply_policy_change(store, policy.id, RetirePolicy(type="retire", expected_version=2), ACTOR)

    store.db.rollback.assert_awaited_once()
    store.db.commit.assert_not_awaited()
    assert store.audit_entries == []


@pytest.mark.asyncio
async def test_unknown_policy_raises_not_found():
    store = FakeStore(_policy())
    with pytest.raises(PolicyNotFound):
        await apply_policy_change(store, uuid.uuid4(), RetirePolicy(type="retire", expected_version=2), ACTOR)


# ─── Audit failure ────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_audit_failure_rolls_back_change():
    policy = _policy()
    store = FakeStore(policy, audit_error=AuditWriteFailed("db unavailable"))

    with pytest.raises(AuditWriteFailed):
        await apply_policy_change(store, policy.id, RetirePolicy(type="retire", expected_version=2), ACTOR)

    store.db.rollback.assert_awaited_once()
    store.db.commit.assert_not_awaited()


# ─── Rejections ───────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_invalid_criteria_rejected_with_single_audit_entry():
    policy = _policy()
    store = FakeStore(policy)
    change = AddRule(type="rule_add", expected_version=2, priority=1, criteria={"field": "region", "op": "like", "value": "U%"})

    with pytest.raises(PolicyChangeRejected) as exc_info:
        await apply_policy_change(store, policy.id, change, ACTOR)

    assert len(store.audit_entries) == 1
    entry = store.audit_entries[0]
    assert entry.status == "rejected"
    assert entry.policy_version == 2
    assert exc_info.value.audit_entry_id == entry.id
    store.db.rollback.assert_awaited_once()
    store.db.commit.assert_awaited_once()


@pytest.mark.asyncio
async def test_duplicate_rule_priority_rejected():
    policy = _policy()
    existing = SimpleNamespace(id=uuid.uuid4(), priority=5)
    store = FakeStore(policy, rules=[existing])
    change = AddRule(type="rule_add", expected_version=2, priority=5)

    with pytest.raises(PolicyChangeRejected, match="Priority 5"):
        await apply_policy_change(store, policy.id, change, ACTOR)
    store.db.add.assert_not_called()


@pytest.mark.asyncio
async def test_retired_policy_is_read_only():
    policy = _policy(status="retired")
    store = FakeStore(policy)
    change = UpdatePolicySettings(type="update_settings", expected_version=2, sla_minutes=30)

    with pytest.raises(PolicyChangeRejected, match="read-only"):
        await apply_policy_change(store, policy.id, change, ACTOR)
    assert policy.sla_minutes == 60


@pytest.mark.asyncio
async def test_activation_requires_a_vendor_profile():
    policy = _policy()
    store = FakeStore(policy, profiles=[])

    with pytest.raises(PolicyChangeRejected, match="at least one vendor profile"):
        await apply_policy_change(store, policy.id, ActivatePolicy(type="activate", expected_version=2), ACTOR)
    assert policy.status == "draft"


@pytest.mark.asyncio
async def test_active_policy_keeps_its_last_vendor():
    policy = _policy(status="active")
    profile = _profile(policy.id)
    store = FakeStore(policy, profiles=[profile])
    change = RemoveVendorProfile(type="vendor_profile_remove", expected_version=2, profile_id=profile.id)

    with pytest.raises(PolicyChangeRejected):
        await apply_policy_change(store, policy.id, change, ACTOR)
    store.db.delete.assert_not_awaited()


# ─── Lock registry ────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_policy_locks_are_released_after_changes():
    from app.services import policy_changes

    policy = _policy()
    store = FakeStore(policy)
    await apply_policy_change(store, policy.id, RetirePolicy(type="retire", expected_version=2), ACTOR)
    with pytest.raises(ConflictError):
        await apply_policy_change(store, policy.id, RetirePolicy(type="retire", expected_version=2), ACTOR)

    assert policy.id not in policy_changes._policy_locks
    assert policy.id not in policy_changes._lock_users
