"""Routing Decision Engine — order → matched rule → vendor selection → decision.

Pure with respect to its inputs: policy snapshots (and any fallback policy
snapshots) are pre-fetched by the caller. The engine does no I/O; its only
mutable state is the round-robin counter and a small cache holding the
compiled rule list of each policy's newest version.
"""
import logging
import random
import threading
import uuid
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone

from app.core.config import settings
from app.core.errors import NoEligibleVendor, NoMatchingRule
from app.rules.rule_evaluator import NO_WEIGHTS, RuleEvaluation, RuleEvaluator
from app.rules.snapshot import OrderDescriptor, PolicySnapshot, VendorProfile
from app.rules.vendor_selector import Allocation, RoundRobinCounter, select_vendors

logger = logging.getLogger(__name__)

UNMATCHED_DEFAULT_POOL = "default_pool"
UNMATCHED_REJECT = "reject"


@dataclass
class RoutingDecision:
    decision_id: str
    order_id: str
    policy_id: str
    policy_version: int
    strategy: str
    vendor_id: str
    vendor_profile_id: str
    vendor_ids: list[str]
    dispatch_vendor_ids: list[str]
    allocations: list[Allocation]
    decided_at: datetime
    sla_minutes: float
    max_lag_minutes: float
    matched_rule_id: str | None = None
    skipped_rule_ids: list[str] = field(default_factory=list)
    partial: bool = False
    unallocated_quantity: float = 0.0
    fallback_from_policy_id: str | None = None

    @property
    def sla_deadline(self) -> datetime | None:
        if self.sla_minutes <= 0:
            return None
        return self.decided_at + timedelta(minutes=self.sla_minutes)

    @property
    def max_lag_deadline(self) -> datetime | None:
        if self.max_lag_minutes <= 0:
            return None
        return self.decided_at + timedelta(minutes=self.max_lag_minutes)

    def to_dict(self) -> dict:
        deadline = self.sla_deadline
        lag_deadline = self.max_lag_deadline
        return {
            "decision_id": self.decision_id,
            "order_id": self.order_id,
            "policy_id": self.policy_id,
            "policy_version": self.policy_version,
            "strategy": self.strategy,
            "vendor_id": self.vendor_id,
            "vendor_profile_id": self.vendor_profile_id,
            "vendor_ids": list(self.vendor_ids),
            "dispatch_vendor_ids": list(self.dispatch_vendor_ids),
            "allocations": [a.to_dict() for a in self.allocations],
            "matched_rule_id": self.matched_rule_id,
            "skipped_rule_ids": list(self.skipped_rule_ids),
            "partial": self.partial,
            "unallocated_quantity": self.unallocated_quantity,
            "decided_at": self.decided_at.isoformat(),
            "sla_minutes": self.sla_minutes,
            "max_lag_minutes": self.max_lag_minutes,
            "sla_deadline": deadline.isoformat() if deadline else None,
            "max_lag_deadline": lag_deadline.isoformat() if lag_deadline else None,
            "fallback_from_policy_id": self.fallback_from_policy_id,
        }


def effective_sla_minutes(policy: PolicySnapshot, vendor: VendorProfile) -> float:
    """Tighter of the policy SLA and the vendor's own SLA (ignoring unset values)."""
    candidates = [m for m in (policy.sla_minutes, vendor.sla_minutes) if m and m > 0]
    return min(candidates) if candidates else 0.0


class RoutingEngine:
    def __init__(
        self,
        counter: RoundRobinCounter | None = None,
        rng: random.Random | None = None,
        unmatched_behavior: str | None = None,
        default_fanout: int | None = None,
        max_fallback_depth: int | None = None,
    ):
        self.counter = counter or RoundRobinCounter()
        self.rng = rng
        self.unmatched_behavior = unmatched_behavior or settings.ROUTING_UNMATCHED_BEHAVIOR
        self.default_fanout = default_fanout or settings.ROUTING_DEFAULT_FANOUT
        self.max_fallback_depth = (
            settings.ROUTING_MAX_FALLBACK_DEPTH if max_fallback_depth is None else max_fallback_depth
        )
        # policy id -> (version, evaluator); only the newest version is kept.
        self._evaluators: dict[str, tuple[int, RuleEvaluator]] = {}
        self._lock = threading.Lock()

    def evaluator_for(self, policy: PolicySnapshot) -> RuleEvaluator:
        with self._lock:
            cached = self._evaluators.get(policy.id)
            if cached is not None and cached[0] == policy.version:
                return cached[1]
            evaluator = RuleEvaluator(policy.rules)
            if cached is None or policy.version > cached[0]:
                self._evaluators[policy.id] = (policy.version, evaluator)
        return evaluator

    def cached_evaluators(self) -> int:
        with self._lock:
            return len(self._evaluators)

    def evaluate(self, order: OrderDescriptor, policy: PolicySnapshot) -> RuleEvaluation:
        return self.evaluator_for(policy).evaluate(order)

    def route(
        self,
        order: OrderDescriptor,
        policy: PolicySnapshot,
        now: datetime | None = None,
        fallbacks: Mapping[str, PolicySnapshot] | None = None,
    ) -> RoutingDecision:
        """Route `order` under `policy`.

        `fallbacks` maps a rule's fallback_policy reference (id or name) to a
        pre-fetched snapshot. Raises NoEligibleVendor (or NoMatchingRule)
        when the order cannot be placed.
        """
        now = now or datetime.now(timezone.utc)
        return self._route(order, policy, now, fallbacks or {}, (policy.id,))

    def _route(
        self,
        order: OrderDescriptor,
        policy: PolicySnapshot,
        now: datetime,
        fallbacks: Mapping[str, PolicySnapshot],
        chain: tuple[str, ...],
    ) -> RoutingDecision:
        evaluation = self.evaluate(order, policy)
        rule = evaluation.matched

        if rule is None and self.unmatched_behavior == UNMATCHED_REJECT:
            raise NoMatchingRule(
                f"No routing rule in policy {policy.id} matches order {order.order_id}",
                policy_id=policy.id,
            )
        if rule is None:
            logger.info("Order %s matched no rule in policy %s; using default pool", order.order_id, policy.id)

        try:
            selection = select_vendors(
                policy,
                order,
                weights=rule.weights if rule else NO_WEIGHTS,
                counter=self.counter,
                rng=self.rng,
                default_fanout=self.default_fanout,
            )
        except NoEligibleVendor as exc:
            ref = rule.spec.fallback_policy if rule else None
            fallback = self._resolve_fallback(ref, fallbacks, chain)
            if fallback is None:
                raise
            logger.info(
                "Order %s: no vendor under policy %s (%s); falling back to policy %s",
                order.order_id, policy.id, exc, fallback.id,
            )
            decision = self._route(order, fallback, now, fallbacks, chain + (fallback.id,))
            # Origin is the policy the order was first routed under.
            decision.fallback_from_policy_id = policy.id
            return decision

        primary = selection.primary
        return RoutingDecision(
            decision_id=str(uuid.uuid4()),
            order_id=order.order_id,
            policy_id=policy.id,
            policy_version=policy.version,
            strategy=selection.strategy,
            vendor_id=primary.vendor_id,
            vendor_profile_id=primary.id,
            vendor_ids=[p.vendor_id for p in selection.ordered],
            dispatch_vendor_ids=[p.vendor_id for p in selection.dispatch],
            allocations=selection.allocations,
            decided_at=now,
            sla_minutes=effective_sla_minutes(policy, primary),
            max_lag_minutes=policy.max_lag_minutes,
            matched_rule_id=evaluation.matched_rule_id,
            skipped_rule_ids=list(evaluation.skipped_rule_ids),
            partial=selection.partial,
            unallocated_quantity=selection.unallocated_quantity,
        )

    def _resolve_fallback(
        self,
        ref: str | None,
        fallbacks: Mapping[str, PolicySnapshot],
        chain: tuple[str, ...],
    ) -> PolicySnapshot | None:
        if not ref:
            return None
        if len(chain) > self.max_fallback_depth:
            logger.warning("Fallback depth %d exceeded at policy %s", self.max_fallback_depth, chain[-1])
            return None
        fallback = fallbacks.get(ref)
        if fallback is None:
            logger.warning("Fallback policy %r was not loaded; cannot fail over", ref)
            return None
        if fallback.id in chain:
            logger.warning("Fallback cycle detected: %s -> %s", " -> ".join(chain), fallback.id)
            return None
        return fallback


# Process-wide engine: keeps round-robin state shared across requests.
default_engine = RoutingEngine()


def route(
    order: OrderDescriptor,
    policy: PolicySnapshot,
    now: datetime | None = None,
    fallbacks: Mapping[str, PolicySnapshot] | None = None,
) -> RoutingDecision:
    return default_engine.route(order, policy, now=now, fallbacks=fallbacks)
