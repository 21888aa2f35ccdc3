"""Vendor Selector — picks the fulfilling vendor(s) for an order.

Steps:
1. Eligibility: region, specialization, health, auto-pause, effective weight.
2. Capacity: vendors that can take the whole quantity; otherwise split the
   order across vendors if the policy allows partial fulfillment.
3. Strategy ordering: cascading, parallel (top-N), or round robin.

Reads of load/health are whatever the snapshot holds; the selector never
writes vendor state. The only engine-local mutable state is the per-policy
round-robin counter.
"""
import logging
import random
import threading
from dataclasses import dataclass, field

from app.core.errors import NoEligibleVendor
from app.rules.rule_evaluator import NO_WEIGHTS, RuleWeights
from app.rules.snapshot import OrderDescriptor, PolicySnapshot, VendorProfile

logger = logging.getLogger(__name__)

CASCADING = "cascading"
PARALLEL = "parallel"
ROUND_ROBIN = "round_robin"
STRATEGIES = (CASCADING, PARALLEL, ROUND_ROBIN)

GLOBAL_REGIONS = frozenset({"*", "global", "any"})


# ─── Round-robin state ───

class RoundRobinCounter:
    """Per-policy cyclic counter. Thread-safe; one increment per selection."""

    def __init__(self):
        self._lock = threading.Lock()
        self._next: dict[str, int] = {}

    def next_index(self, key: str, size: int) -> int:
        if size <= 0:
            raise ValueError("size must be positive")
        with self._lock:
            current = self._next.get(key, 0)
            self._next[key] = current + 1
        return current % size

    def reset(self, key: str | None = None) -> None:
        with self._lock:
            if key is None:
                self._next.clear()
            else:
                self._next.pop(key, None)


# ─── Result types ───

@dataclass(frozen=True)
class Candidate:
    profile: VendorProfile
    weight: float  # effective weight (rule override or profile weight)

    @property
    def score(self) -> float:
        """Weight scaled by free capacity share; used for weighted picks."""
        return self.weight * max(0.0, 100.0 - self.profile.current_load_percent) / 100.0


@dataclass(frozen=True)
class Allocation:
    vendor_profile_id: str
    vendor_id: str
    quantity: float

    def to_dict(self) -> dict:
        return {
            "vendor_profile_id": self.vendor_profile_id,
            "vendor_id": self.vendor_id,
            "quantity": self.quantity,
        }


@dataclass
class Selection:
    strategy: str
    ordered: list[VendorProfile]  # full failover order, primary first
    dispatch: list[VendorProfile]  # vendors to contact right now
    allocations: list[Allocation]
    partial: bool = False
    unallocated_quantity: float = 0.0
    rejected: dict[str, list[str]] = field(default_factory=dict)

    @property
    def primary(self) -> VendorProfile:
        return self.ordered[0]


# ─── Eligibility ───

def _serves_region(profile: VendorProfile, region: str) -> bool:
    vendor_region = (profile.region or "").strip().casefold()
    return vendor_region in GLOBAL_REGIONS or vendor_region == region.strip().casefold()


def filter_eligible(
    vendors,
    order: OrderDescriptor,
    weights: RuleWeights = NO_WEIGHTS,
) -> tuple[list[Candidate], dict[str, list[str]]]:
    """Split vendor profiles into eligible candidates and rejection reasons."""
    eligible: list[Candidate] = []
    rejected: dict[str, list[str]] = {}
    required = set(order.required_specializations)

    for profile in vendors:
        reasons: list[str] = []
        if not _serves_region(profile, order.region):
            reasons.append("region_mismatch")
        if required and not required.issubset(profile.specializations):
            reasons.append("missing_specialization")
        if profile.health == "critical":
            reasons.append("health_critical")
        if profile.is_auto_paused:
            reasons.append("auto_paused")
        if profile.capacity_per_hour <= 0:
            reasons.append("no_capacity")

        override = weights.override_for(profile.id, profile.vendor_id)
        weight = profile.weight if override is None else override
        if weight <= 0:
            reasons.append("zero_weight")

        if reasons:
            rejected[profile.id] = reasons
        else:
            eligible.append(Candidate(profile=profile, weight=weight))
    return eligible, rejected


# ─── Ordering ───

def _cascade_key(c: Candidate) -> tuple:
    return (c.profile.failover_priority, -c.weight, c.profile.current_load_percent, c.profile.id)


def _weight_key(c: Candidate) -> tuple:
    return (-c.weight, c.profile.current_load_percent, c.profile.id)


def weighted_pick(candidates: list[Candidate], rng: random.Random | None = None) -> Candidate:
    """Pick one candidate with probability proportional to its score.

    Without an RNG the pick is deterministic: highest score, ties broken by
    lowest current load, then profile id.
    """
    if not candidates:
        raise ValueError("weighted_pick needs at least one candidate")
    if rng is None:
        return min(candidates, key=lambda c: (-c.score, c.profile.current_load_percent, c.profile.id))
    ordered = sorted(candidates, key=lambda c: c.profile.id)
    total = sum(c.score for c in ordered)
    if total <= 0:
        return min(ordered, key=lambda c: (c.profile.current_load_percent, c.profile.id))
    point = rng.uniform(0, total)
    running = 0.0
    for c in ordered:
        running += c.score
        if point <= running:
            return c
    return ordered[-1]


def rank_cascading(candidates: list[Candidate], rng: random.Random | None = None) -> list[Candidate]:
    """Failover priority ascending, then weight descending.

    The head of the list may be re-drawn by weighted pick among vendors that
    tie on both failover priority and weight; the order stays sorted by
    failover priority either way.
    """
    ranked = sorted(candidates, key=_cascade_key)
    if rng is None or len(ranked) < 2:
        return ranked
    head = ranked[0]
    peers = [
        c for c in ranked
        if c.profile.failover_priority == head.profile.failover_priority and c.weight == head.weight
    ]
    if len(peers) < 2:
        return ranked
    chosen = weighted_pick(peers, rng)
    return [chosen] + [c for c in ranked if c is not chosen]


def rank_parallel(candidates: list[Candidate]) -> list[Candidate]:
    return sorted(candidates, key=_weight_key)


def rank_round_robin(candidates: list[Candidate], start: int) -> list[Candidate]:
    """Stable cyclic order by profile id, rotated to start at `start`."""
    ring = sorted(candidates, key=lambda c: c.profile.id)
    return ring[start:] + ring[:start]


# ─── Selection ───

def _allocate_partial(ranked: list[Candidate], quantity: float) -> tuple[list[Allocation], float]:
    allocations: list[Allocation] = []
    remaining = quantity
    for c in ranked:
        if remaining <= 0:
            break
        take = min(remaining, c.profile.remaining_capacity)
        if take <= 0:
            continue
        allocations.append(Allocation(c.profile.id, c.profile.vendor_id, take))
        remaining -= take
    return allocations, max(0.0, remaining)


def _rank(
    strategy: str,
    candidates: list[Candidate],
    policy_id: str,
    counter: RoundRobinCounter,
    rng: random.Random | None,
) -> list[Candidate]:
    if strategy == ROUND_ROBIN:
        return rank_round_robin(candidates, counter.next_index(policy_id, len(candidates)))
    if strategy == PARALLEL:
        return rank_parallel(candidates)
    return rank_cascading(candidates, rng)


def select_vendors(
    policy: PolicySnapshot,
    order: OrderDescriptor,
    weights: RuleWeights = NO_WEIGHTS,
    counter: RoundRobinCounter | None = None,
    rng: random.Random | None = None,
    default_fanout: int = 1,
    vendors=None,
) -> Selection:
    """Select vendor(s) for `order` under `policy`'s failover strategy.

    Raises NoEligibleVendor when nothing passes the filters, or when no
    single vendor can take the full quantity and partial fulfillment is off.
    """
    strategy = policy.failover_strategy if policy.failover_strategy in STRATEGIES else CASCADING
    if strategy != policy.failover_strategy:
        logger.warning(
            "Policy %s has unknown failover strategy %r; using cascading",
            policy.id, policy.failover_strategy,
        )
    counter = counter or RoundRobinCounter()
    pool = policy.vendors if vendors is None else vendors

    eligible, rejected = filter_eligible(pool, order, weights)
    if not eligible:
        raise NoEligibleVendor(
            f"No eligible vendor for order {order.order_id} under policy {policy.id}",
            policy_id=policy.id,
            reasons=rejected,
        )

    full = [c for c in eligible if c.profile.remaining_capacity >= order.quantity]
    for c in eligible:
        if c not in full:
            rejected.setdefault(c.profile.id, []).append("insufficient_capacity")

    if full:
        ranked = _rank(strategy, full, policy.id, counter, rng)
        if strategy == PARALLEL:
            fanout = max(1, weights.fanout or default_fanout)
            dispatch = ranked[:fanout]
        else:
            dispatch = ranked[:1]
        return Selection(
            strategy=strategy,
            ordered=[c.profile for c in ranked],
            dispatch=[c.profile for c in dispatch],
            allocations=[Allocation(c.profile.id, c.profile.vendor_id, order.quantity) for c in dispatch],
            rejected=rejected,
        )

    if not policy.allow_partial_fulfillment:
        raise NoEligibleVendor(
            f"No single vendor can fulfil {order.quantity:g} units of order {order.order_id} "
            f"and policy {policy.id} does not allow partial fulfillment",
            policy_id=policy.id,
            reasons=rejected,
        )

    ranked = _rank(strategy, eligible, policy.id, counter, rng)
    allocations, unallocated = _allocate_partial(ranked, order.quantity)
    if not allocations:
        raise NoEligibleVendor(
            f"No remaining capacity for order {order.order_id} under policy {policy.id}",
            policy_id=policy.id,
            reasons=rejected,
        )
    allocated_ids = {a.vendor_profile_id for a in allocations}
    logger.info(
        "Order %s split across %d vendors (unallocated=%g)",
        order.order_id, len(allocations), unallocated,
    )
    return Selection(
        strategy=strategy,
        ordered=[c.profile for c in ranked],
        dispatch=[c.profile for c in ranked if c.profile.id in allocated_ids],
        allocations=allocations,
        partial=True,
        unallocated_quantity=unallocated,
        rejected=rejected,
    )
