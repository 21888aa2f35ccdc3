"""Unit tests for the routing engine (rule evaluation + vendor selection + fallback)."""
import json
from datetime import datetime, timedelta, timezone

import pytest

from app.core.errors import NoEligibleVendor, NoMatchingRule
from app.rules.routing_engine import RoutingEngine, effective_sla_minutes
from app.rules.snapshot import OrderDescriptor, PolicySnapshot, RuleSpec, VendorProfile

NOW = datetime(2024, 5, 1, 9, 0, tzinfo=timezone.utc)


# ─── Helpers ──────────────────────────────────────────────────────────────────

def _vendor(profile_id: str, **overrides) -> VendorProfile:
    base = dict(
        id=profile_id,
        vendor_id=f"vendor-{profile_id}",
        weight=1.0,
        capacity_per_hour=100.0,
        current_load_percent=0.0,
        failover_priority=1,
        health="healthy",
        auto_pause_threshold=90.0,
        region="US",
    )
    base.update(overrides)
    return VendorProfile(**base)


def _policy(policy_id: str, vendors, rules=(), name: str | None = None, **overrides) -> PolicySnapshot:
    base = dict(
        id=policy_id,
        name=name or policy_id,
        channel="shopify",
        region="US",
        status="active",
        failover_strategy="cascading",
        allow_partial_fulfillment=False,
        sla_minutes=60,
        max_lag_minutes=15,
        version=3,
        rules=tuple(rules),
        vendors=tuple(vendors),
    )
    base.update(overrides)
    return PolicySnapshot(**base)


def _order(**attributes) -> OrderDescriptor:
    return OrderDescriptor(order_id="ord-42", channel="shopify", region="US", attributes=attributes)


def _engine(**kwargs) -> RoutingEngine:
    kwargs.setdefault("unmatched_behavior", "default_pool")
    kwargs.setdefault("default_fanout", 1)
    kwargs.setdefault("max_fallback_depth", 3)
    return RoutingEngine(**kwargs)


# ─── Decisions ────────────────────────────────────────────────────────────────

def test_decision_carries_policy_rule_and_sla_details():
    rules = [RuleSpec(id="rush", priority=1, criteria={"rush": True}, weights={"b": 10})]
    policy = _policy("p1", [_vendor("a"), _vendor("b")], rules=rules)

    decision = _engine().route(_order(rush=True), policy, now=NOW)

    assert decision.policy_id == "p1"
    assert decision.policy_version == 3
    assert decision.matched_rule_id == "rush"
    assert decision.vendor_profile_id == "b"
    assert decision.vendor_ids == ["vendor-b", "vendor-a"]
    assert decision.sla_deadline == NOW + timedelta(minutes=60)
    assert decision.max_lag_deadline == NOW + timedelta(minutes=15)


def test_returned_vendor_belongs_to_policy():
    vendors = [_vendor(f"v{i}", weight=i + 1, current_load_percent=i * 10) for i in range(5)]
    policy = _policy("p1", vendors)
    profile_ids = {v.id for v in vendors}
    engine = _engine()
    for i in range(10):
        decision = engine.route(_order(n=i), policy, now=NOW)
        assert decision.vendor_profile_id in profile_ids


def test_decision_is_json_serialisable():
    decision = _engine().route(_order(), _policy("p1", [_vendor("a")]), now=NOW)
    payload = json.loads(json.dumps(decision.to_dict()))
    assert payload["allocations"] == [{"vendor_profile_id": "a", "vendor_id": "vendor-a", "quantity": 1.0}]
    assert payload["decided_at"] == NOW.isoformat()


def test_vendor_sla_tighter_than_policy_wins():
    policy = _policy("p1", [_vendor("a", sla_minutes=30)])
    assert effective_sla_minutes(policy, policy.vendors[0]) == 30
    assert _engine().route(_order(), policy, now=NOW).sla_minutes == 30


# ─── Unmatched orders ─────────────────────────────────────────────────────────

def test_unmatched_order_uses_default_pool():
    rules = [RuleSpec(id="eu", priority=1, criteria={"market": "EU"})]
    decision = _engine().route(_order(market="US"), _policy("p1", [_vendor("a")], rules=rules), now=NOW)
    assert decision.matched_rule_id is None
    assert decision.vendor_profile_id == "a"


def test_unmatched_order_rejected_when_configured():
    rules = [RuleSpec(id="eu", priority=1, criteria={"market": "EU"})]
    with pytest.raises(NoMatchingRule):
        _engine(unmatched_behavior="reject").route(
            _order(market="US"), _policy("p1", [_vendor("a")], rules=rules), now=NOW,
        )


def test_skipped_rules_are_reported_on_decision():
    rules = [RuleSpec(id="broken", priority=1, criteria="{nope"), RuleSpec(id="all", priority=2)]
    decision = _engine().route(_order(), _policy("p1", [_vendor("a")], rules=rules), now=NOW)
    assert decision.matched_rule_id == "all"
    assert decision.skipped_rule_ids == ["broken"]


# ─── Fallback policies ────────────────────────────────────────────────────────

def test_fallback_policy_used_when_no_vendor_eligible():
    primary = _policy(
        "p1",
        [_vendor("down", health="critical")],
        rules=[RuleSpec(id="r1", priority=1, fallback_policy="overflow")],
    )
    overflow = _policy("p2", [_vendor("spare")], name="overflow", version=7)

    decision = _engine().route(_order(), primary, now=NOW, fallbacks={"overflow": overflow})

    assert decision.policy_id == "p2"
    assert decision.policy_version == 7
    assert decision.vendor_profile_id == "spare"
    assert decision.fallback_from_policy_id == "p1"


def test_missing_fallback_surfaces_no_eligible_vendor():
    primary = _policy(
        "p1",
        [_vendor("down", health="critical")],
        rules=[RuleSpec(id="r1", priority=1, fallback_policy="nowhere")],
    )
    with pytest.raises(NoEligibleVendor) as exc_info:
        _engine().route(_order(), primary, now=NOW, fallbacks={})
    assert exc_info.value.reasons == {"down": ["health_critical"]}


def test_fallback_cycle_is_refused():
    a = _policy("pa", [_vendor("x", health="critical")], rules=[RuleSpec(id="ra", priority=1, fallback_policy="pb")])
    b = _policy("pb", [_vendor("y", health="critical")], rules=[RuleSpec(id="rb", priority=1, fallback_policy="pa")])
    with pytest.raises(NoEligibleVendor):
        _engine().route(_order(), a, now=NOW, fallbacks={"pa": a, "pb": b})


def test_fallback_depth_is_bounded():
    chain = {}
    for i in range(5):
        chain[f"p{i}"] = _policy(
            f"p{i}",
            [_vendor(f"x{i}", health="critical")] if i < 4 else [_vendor("ok")],
            rules=[RuleSpec(id=f"r{i}", priority=1, fallback_policy=f"p{i + 1}")] if i < 4 else [],
        )
    with pytest.raises(NoEligibleVendor):
        _engine(max_fallback_depth=2).route(_order(), chain["p0"], now=NOW, fallbacks=chain)

    decision = _engine(max_fallback_depth=4).route(_order(), chain["p0"], now=NOW, fallbacks=chain)
    assert decision.vendor_profile_id == "ok"
    assert decision.fallback_from_policy_id == "p0"


# ─── Evaluator cache ──────────────────────────────────────────────────────────

def test_evaluator_cache_keeps_newest_version_only():
    engine = _engine()
    vendors = [_vendor("a")]
    for version in range(1, 51):
        engine.route(_order(), _policy("p1", vendors, version=version), now=NOW)
    engine.route(_order(), _policy("p2", vendors, version=7), now=NOW)

    assert engine.cached_evaluators() == 2


def test_older_version_is_evaluated_from_its_own_rules():
    engine = _engine()
    vendors = [_vendor("a"), _vendor("b")]
    new = _policy("p1", vendors, rules=[RuleSpec(id="to-b", priority=1, criteria="default", weights={"a": 0})], version=5)
    old = _policy("p1", vendors, rules=[RuleSpec(id="to-a", priority=1, criteria="default", weights={"b": 0})], version=4)

    assert engine.route(_order(), new, now=NOW).vendor_profile_id == "b"
    assert engine.route(_order(), old, now=NOW).vendor_profile_id == "a"
    assert engine.route(_order(), new, now=NOW).matched_rule_id == "to-b"
