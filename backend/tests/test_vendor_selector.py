"""Unit tests for vendor eligibility and failover strategies."""
import random
from collections import Counter
from concurrent.futures import ThreadPoolExecutor

import pytest

from app.core.errors import NoEligibleVendor
from app.rules.rule_evaluator import RuleWeights
from app.rules.snapshot import OrderDescriptor, PolicySnapshot, VendorProfile
from app.rules.vendor_selector import (
    Candidate,
    RoundRobinCounter,
    filter_eligible,
    rank_cascading,
    select_vendors,
    weighted_pick,
)


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


def _policy(vendors, strategy: str = "cascading", partial: bool = False) -> PolicySnapshot:
    return PolicySnapshot(
        id="policy-1",
        name="US print",
        channel="shopify",
        region="US",
        status="active",
        failover_strategy=strategy,
        allow_partial_fulfillment=partial,
        sla_minutes=60,
        max_lag_minutes=0,
        version=1,
        vendors=tuple(vendors),
    )


def _order(quantity: float = 1, region: str = "US", specs=()) -> OrderDescriptor:
    return OrderDescriptor(
        order_id="ord-1",
        channel="shopify",
        region=region,
        quantity=quantity,
        required_specializations=tuple(specs),
    )


# ─── Eligibility ──────────────────────────────────────────────────────────────

def test_auto_paused_vendor_excluded_regardless_of_weight():
    paused = _vendor("v", weight=10, current_load_percent=95, auto_pause_threshold=90)
    steady = _vendor("w", weight=1, current_load_percent=10)

    eligible, rejected = filter_eligible([paused, steady], _order())

    assert [c.profile.id for c in eligible] == ["w"]
    assert "auto_paused" in rejected["v"]
    assert select_vendors(_policy([paused, steady]), _order()).primary.id == "w"


def test_only_auto_paused_vendors_raises_no_eligible_vendor():
    paused = _vendor("v", weight=10, current_load_percent=95, auto_pause_threshold=90)
    with pytest.raises(NoEligibleVendor) as exc_info:
        select_vendors(_policy([paused]), _order())
    assert exc_info.value.reasons == {"v": ["auto_paused"]}
    assert exc_info.value.policy_id == "policy-1"


def test_rejection_reasons_cover_every_filter():
    vendors = [
        _vendor("eu", region="EU"),
        _vendor("plain", specializations=()),
        _vendor("sick", health="critical", specializations=("large_format",)),
        _vendor("empty", capacity_per_hour=0, specializations=("large_format",)),
        _vendor("off", specializations=("large_format",)),
    ]
    weights = RuleWeights(overrides={"off": 0})
    eligible, rejected = filter_eligible(vendors, _order(specs=["large_format"]), weights)

    assert eligible == []
    assert "region_mismatch" in rejected["eu"]
    assert rejected["plain"] == ["missing_specialization"]
    assert rejected["sick"] == ["health_critical"]
    assert rejected["empty"] == ["no_capacity"]
    assert rejected["off"] == ["zero_weight"]


def test_global_region_serves_every_order():
    eligible, _ = filter_eligible([_vendor("g", region="global")], _order(region="JP"))
    assert len(eligible) == 1


# ─── Cascading ────────────────────────────────────────────────────────────────

def test_cascading_order_sorted_by_failover_priority():
    vendors = [
        _vendor("c", failover_priority=3, weight=9),
        _vendor("a", failover_priority=1, weight=1),
        _vendor("b", failover_priority=2, weight=5),
        _vendor("a2", failover_priority=1, weight=4),
    ]
    selection = select_vendors(_policy(vendors), _order())

    priorities = [p.failover_priority for p in selection.ordered]
    assert priorities == sorted(priorities)
    assert [p.id for p in selection.ordered] == ["a2", "a", "b", "c"]
    assert [a.vendor_profile_id for a in selection.allocations] == ["a2"]


def test_cascading_with_rng_keeps_priority_order():
    vendors = [_vendor(f"v{i}", failover_priority=i % 2) for i in range(6)]
    candidates = [Candidate(v, v.weight) for v in vendors]
    rng = random.Random(7)
    for _ in range(25):
        ranked = rank_cascading(candidates, rng)
        priorities = [c.profile.failover_priority for c in ranked]
        assert priorities == sorted(priorities)


def test_weighted_pick_without_rng_prefers_free_capacity():
    busy = Candidate(_vendor("busy", current_load_percent=80), 2.0)
    idle = Candidate(_vendor("idle", current_load_percent=0), 1.0)
    assert weighted_pick([busy, idle]).profile.id == "idle"


# ─── Parallel ─────────────────────────────────────────────────────────────────

def test_parallel_dispatches_top_n_by_weight():
    vendors = [_vendor("a", weight=1), _vendor("b", weight=5), _vendor("c", weight=3)]
    selection = select_vendors(
        _policy(vendors, strategy="parallel"),
        _order(),
        weights=RuleWeights(fanout=2),
    )
    assert [p.id for p in selection.dispatch] == ["b", "c"]
    assert len(selection.allocations) == 2


def test_parallel_uses_default_fanout():
    vendors = [_vendor("a", weight=1), _vendor("b", weight=5)]
    selection = select_vendors(_policy(vendors, strategy="parallel"), _order(), default_fanout=1)
    assert [p.id for p in selection.dispatch] == ["b"]


# ─── Round robin ──────────────────────────────────────────────────────────────

@pytest.mark.parametrize("calls, size", [(10, 3), (7, 7), (5, 4), (12, 5)])
def test_round_robin_distributes_floor_or_ceil(calls, size):
    vendors = [_vendor(f"v{i}") for i in range(size)]
    policy = _policy(vendors, strategy="round_robin")
    counter = RoundRobinCounter()

    picks = Counter(select_vendors(policy, _order(), counter=counter).primary.id for _ in range(calls))

    low, high = calls // size, -(-calls // size)
    for vendor in vendors:
        assert low <= picks.get(vendor.id, 0) <= high


def test_round_robin_counter_is_per_policy():
    counter = RoundRobinCounter()
    assert [counter.next_index("p1", 3) for _ in range(4)] == [0, 1, 2, 0]
    assert counter.next_index("p2", 3) == 0
    counter.reset("p1")
    assert counter.next_index("p1", 3) == 0


# ─── Capacity / partial fulfillment ───────────────────────────────────────────

def test_quantity_beyond_every_vendor_rejected_without_partial():
    vendors = [_vendor("a", capacity_per_hour=10), _vendor("b", capacity_per_hour=10)]
    with pytest.raises(NoEligibleVendor) as exc_info:
        select_vendors(_policy(vendors), _order(quantity=15))
    assert exc_info.value.reasons["a"] == ["insufficient_capacity"]


def test_partial_fulfillment_splits_across_vendors():
    vendors = [
        _vendor("a", capacity_per_hour=10, failover_priority=1),
        _vendor("b", capacity_per_hour=20, current_load_percent=50, failover_priority=2),
    ]
    selection = select_vendors(_policy(vendors, partial=True), _order(quantity=25))

    assert selection.partial is True
    assert [(a.vendor_profile_id, a.quantity) for a in selection.allocations] == [("a", 10.0), ("b", 10.0)]
    assert selection.unallocated_quantity == pytest.approx(5.0)


def test_vendor_with_room_preferred_over_split():
    vendors = [
        _vendor("small", capacity_per_hour=5, failover_priority=1),
        _vendor("big", capacity_per_hour=50, failover_priority=2),
    ]
    selection = select_vendors(_policy(vendors, partial=True), _order(quantity=20))
    assert selection.partial is False
    assert selection.primary.id == "big"


def test_round_robin_counter_hands_out_each_slot_evenly_under_concurrency():
    counter = RoundRobinCounter()
    size, rounds = 4, 250

    with ThreadPoolExecutor(max_workers=16) as pool:
        indexes = list(pool.map(lambda _: counter.next_index("p1", size), range(size * rounds)))

    assert Counter(indexes) == {i: rounds for i in range(size)}
