"""Simulation Runner — replay a synthetic order set against a policy snapshot.

Pure function of (snapshot, scenario): vendor load is projected on private
copies, round-robin state and the RNG are private to the run, and results
serialise to byte-identical JSON for identical inputs.
"""
import json
import logging
import random
from collections import Counter, defaultdict, deque
from collections.abc import Mapping
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone

from app.core.config import settings
from app.core.errors import NoEligibleVendor
from app.rules.routing_engine import RoutingEngine
from app.rules.snapshot import OrderDescriptor, PolicySnapshot
from app.rules.vendor_selector import RoundRobinCounter

logger = logging.getLogger(__name__)

# Assignments occupy vendor capacity for one hour of simulated time.
LOAD_WINDOW_MINUTES = 60.0
SIMULATION_EPOCH = datetime(2000, 1, 1, tzinfo=timezone.utc)
_PRECISION = 4


@dataclass(frozen=True)
class ScenarioOrder:
    order: OrderDescriptor
    arrival_minute: float = 0.0


@dataclass(frozen=True)
class Scenario:
    name: str | None
    seed: int
    orders: tuple[ScenarioOrder, ...]

    @classmethod
    def from_dict(cls, raw: dict, max_orders: int | None = None) -> "Scenario":
        """Validate a scenario blob. Raises ValueError with a readable message."""
        if not isinstance(raw, dict):
            raise ValueError("scenario must be an object")
        orders_raw = raw.get("orders")
        if not isinstance(orders_raw, list) or not orders_raw:
            raise ValueError("scenario.orders must be a non-empty list")
        limit = max_orders or settings.SIMULATION_MAX_ORDERS
        if len(orders_raw) > limit:
            raise ValueError(f"scenario has {len(orders_raw)} orders; the limit is {limit}")
        seed = raw.get("seed", 0)
        if isinstance(seed, bool) or not isinstance(seed, int):
            raise ValueError("scenario.seed must be an integer")

        orders: list[ScenarioOrder] = []
        for index, item in enumerate(orders_raw):
            if not isinstance(item, dict):
                raise ValueError(f"scenario.orders[{index}] must be an object")
            item = dict(item)
            item.setdefault("order_id", f"sim-{index + 1}")
            arrival = item.pop("arrival_minute", 0)
            if isinstance(arrival, bool) or not isinstance(arrival, (int, float)) or arrival < 0:
                raise ValueError(f"scenario.orders[{index}].arrival_minute must be a non-negative number")
            try:
                order = OrderDescriptor.from_dict(item)
            except ValueError as exc:
                raise ValueError(f"scenario.orders[{index}]: {exc}") from exc
            orders.append(ScenarioOrder(order=order, arrival_minute=float(arrival)))
        return cls(name=raw.get("name"), seed=seed, orders=tuple(orders))

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "seed": self.seed,
            "orders": [
                {**o.order.to_dict(), "arrival_minute": o.arrival_minute} for o in self.orders
            ],
        }


@dataclass
class SimulationResults:
    policy_id: str
    policy_version: int
    total_orders: int = 0
    routed: int = 0
    unroutable: int = 0
    partial: int = 0
    fallback_routed: int = 0
    vendor_assignments: dict = field(default_factory=dict)
    average_projected_load: dict = field(default_factory=dict)
    peak_projected_load: dict = field(default_factory=dict)
    profile_average_load: dict = field(default_factory=dict)
    profile_peak_load: dict = field(default_factory=dict)
    rule_matches: dict = field(default_factory=dict)
    default_pool_orders: int = 0
    unmatched_rules: list = field(default_factory=list)
    invalid_rules: list = field(default_factory=list)
    unroutable_orders: list = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "policy_id": self.policy_id,
            "policy_version": self.policy_version,
            "total_orders": self.total_orders,
            "routed": self.routed,
            "unroutable": self.unroutable,
            "partial": self.partial,
            "fallback_routed": self.fallback_routed,
            "vendor_assignments": dict(sorted(self.vendor_assignments.items())),
            "average_projected_load": {k: round(v, _PRECISION) for k, v in sorted(self.average_projected_load.items())},
            "peak_projected_load": {k: round(v, _PRECISION) for k, v in sorted(self.peak_projected_load.items())},
            "profile_average_load": {k: round(v, _PRECISION) for k, v in sorted(self.profile_average_load.items())},
            "profile_peak_load": {k: round(v, _PRECISION) for k, v in sorted(self.profile_peak_load.items())},
            "rule_matches": dict(sorted(self.rule_matches.items())),
            "default_pool_orders": self.default_pool_orders,
            "unmatched_rules": list(self.unmatched_rules),
            "invalid_rules": list(self.invalid_rules),
            "unroutable_orders": list(self.unroutable_orders),
        }

    def results_json(self) -> str:
        return json.dumps(self.to_dict(), sort_keys=True, separators=(",", ":"))


def simulate(
    policy: PolicySnapshot,
    scenario: Scenario,
    fallbacks: Mapping[str, PolicySnapshot] | None = None,
    unmatched_behavior: str | None = None,
    default_fanout: int | None = None,
) -> SimulationResults:
    """Project routing outcomes of `scenario` under `policy` without side effects."""
    engine = RoutingEngine(
        counter=RoundRobinCounter(),
        rng=random.Random(scenario.seed),
        unmatched_behavior=unmatched_behavior,
        default_fanout=default_fanout,
    )
    evaluator = engine.evaluator_for(policy)
    results = SimulationResults(policy_id=policy.id, policy_version=policy.version)
    results.invalid_rules = list(evaluator.skipped_rule_ids)

    base_load = {v.id: v.current_load_percent for v in policy.vendors}
    capacity = {v.id: v.capacity_per_hour for v in policy.vendors}
    vendor_of = {v.id: v.vendor_id for v in policy.vendors}
    active: dict[str, deque] = defaultdict(deque)  # profile id -> (expires_at, added_load)
    added: dict[str, float] = defaultdict(float)
    samples: dict[str, list[float]] = defaultdict(list)
    assignments: Counter = Counter()
    rule_matches: Counter = Counter()

    timeline = sorted(enumerate(scenario.orders), key=lambda pair: (pair[1].arrival_minute, pair[0]))
    for _, item in timeline:
        minute = item.arrival_minute
        for profile_id, window in active.items():
            while window and window[0][0] <= minute:
                _, load = window.popleft()
                added[profile_id] -= load

        projected = {pid: min(100.0, base_load[pid] + max(0.0, added[pid])) for pid in base_load}
        for pid, load in projected.items():
            samples[pid].append(load)
        snapshot = replace(
            policy,
            vendors=tuple(replace(v, current_load_percent=projected[v.id]) for v in policy.vendors),
        )

        results.total_orders += 1
        evaluation = evaluator.evaluate(item.order)
        if evaluation.matched is not None:
            rule_matches[evaluation.matched.id] += 1

        try:
            decision = engine.route(
                item.order,
                snapshot,
                now=SIMULATION_EPOCH + timedelta(minutes=minute),
                fallbacks=fallbacks,
            )
        except NoEligibleVendor:
            results.unroutable += 1
            results.unroutable_orders.append(item.order.order_id)
            continue

        results.routed += 1
        if decision.partial:
            results.partial += 1
        if decision.fallback_from_policy_id is not None:
            results.fallback_routed += 1
        if decision.matched_rule_id is None and decision.fallback_from_policy_id is None:
            results.default_pool_orders += 1

        for allocation in decision.allocations:
            assignments[allocation.vendor_id] += 1
            pid = allocation.vendor_profile_id
            if pid in capacity and capacity[pid] > 0:
                load = allocation.quantity / capacity[pid] * 100.0
                added[pid] += load
                active[pid].append((minute + LOAD_WINDOW_MINUTES, load))

    results.vendor_assignments = {vid: assignments.get(vid, 0) for vid in sorted(set(vendor_of.values()) | set(assignments))}
    # A vendor may hold several profiles (e.g. one per region); pool their samples.
    pooled: dict[str, list[float]] = defaultdict(list)
    for pid, values in samples.items():
        pooled[vendor_of[pid]].extend(values)
        results.profile_average_load[pid] = sum(values) / len(values)
        results.profile_peak_load[pid] = max(values)
    for vid, values in pooled.items():
        results.average_projected_load[vid] = sum(values) / len(values)
        results.peak_projected_load[vid] = max(values)
    results.rule_matches = {rule.id: rule_matches.get(rule.id, 0) for rule in evaluator.rules}
    results.unmatched_rules = [rule.id for rule in evaluator.rules if rule_matches.get(rule.id, 0) == 0]

    logger.info(
        "simulate: policy=%s v%d orders=%d routed=%d unroutable=%d dead_rules=%d",
        policy.id, policy.version, results.total_orders, results.routed,
        results.unroutable, len(results.unmatched_rules),
    )
    return results
