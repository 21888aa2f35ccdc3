"""Rule Evaluator — first-match evaluation of a policy's ordered rules.

Deterministic: rules are ordered by (priority, created_at, id), so the same
order against the same policy state always selects the same rule. A rule
whose criteria cannot be compiled is skipped with a warning; one bad rule
never blocks routing for the rest of the policy.
"""
import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from app.core.errors import InvalidCriteria
from app.rules.criteria import Predicate, parse_criteria
from app.rules.snapshot import OrderDescriptor, RuleSpec

logger = logging.getLogger(__name__)

_EPOCH = datetime.min.replace(tzinfo=timezone.utc)


@dataclass(frozen=True)
class RuleWeights:
    """Per-rule distribution hints: weight overrides keyed by vendor or profile id."""

    overrides: dict = field(default_factory=dict)
    fanout: int | None = None

    def override_for(self, profile_id: str, vendor_id: str) -> float | None:
        if profile_id in self.overrides:
            return self.overrides[profile_id]
        return self.overrides.get(vendor_id)


NO_WEIGHTS = RuleWeights()


def parse_weights(raw: Any) -> RuleWeights:
    """Parse a rule's weights blob.

    Accepts {"vendors": {id: weight}, "fanout": n} or a bare {id: weight}
    mapping (optionally with a "fanout" key).
    """
    if raw is None or raw == "":
        return NO_WEIGHTS
    if isinstance(raw, str):
        try:
            raw = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise InvalidCriteria(f"Weights are not valid JSON: {exc}") from exc
        if raw is None:
            return NO_WEIGHTS
    if not isinstance(raw, dict):
        raise InvalidCriteria("Weights must be an object")

    raw = dict(raw)
    fanout = raw.pop("fanout", None)
    if "vendors" in raw:
        vendors = raw.pop("vendors")
        if raw:
            raise InvalidCriteria(f"Unexpected keys in weights: {sorted(raw)}")
        raw = vendors
        if not isinstance(raw, dict):
            raise InvalidCriteria("weights.vendors must be an object")

    overrides: dict[str, float] = {}
    for key, value in raw.items():
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise InvalidCriteria(f"Weight for '{key}' must be a number")
        overrides[str(key)] = float(value)

    if fanout is not None:
        if isinstance(fanout, bool) or not isinstance(fanout, int) or fanout < 1:
            raise InvalidCriteria("fanout must be a positive integer")
    return RuleWeights(overrides=overrides, fanout=fanout)


@dataclass(frozen=True)
class CompiledRule:
    spec: RuleSpec
    predicate: Predicate
    weights: RuleWeights

    @property
    def id(self) -> str:
        return self.spec.id


@dataclass(frozen=True)
class RuleEvaluation:
    matched: CompiledRule | None
    skipped_rule_ids: tuple[str, ...] = ()

    @property
    def matched_rule_id(self) -> str | None:
        return self.matched.id if self.matched else None


def rule_sort_key(rule: RuleSpec) -> tuple:
    return (rule.priority, rule.created_at or _EPOCH, rule.id)


def compile_rule(rule: RuleSpec) -> CompiledRule:
    """Compile one rule; raises InvalidCriteria tagged with the rule id."""
    try:
        return CompiledRule(
            spec=rule,
            predicate=parse_criteria(rule.criteria),
            weights=parse_weights(rule.weights),
        )
    except InvalidCriteria as exc:
        raise InvalidCriteria(str(exc), rule_id=rule.id) from exc


class RuleEvaluator:
    """Compiled, ordered rule list for one policy snapshot."""

    def __init__(self, rules: tuple[RuleSpec, ...] | list[RuleSpec]):
        self.rules: list[CompiledRule] = []
        skipped: list[str] = []
        for rule in sorted(rules, key=rule_sort_key):
            try:
                self.rules.append(compile_rule(rule))
            except InvalidCriteria as exc:
                logger.warning("Skipping routing rule %s (priority %s): %s", rule.id, rule.priority, exc)
                skipped.append(rule.id)
        self.skipped_rule_ids: tuple[str, ...] = tuple(skipped)

    def evaluate(self, order: OrderDescriptor) -> RuleEvaluation:
        for rule in self.rules:
            if rule.predicate.matches(order):
                return RuleEvaluation(matched=rule, skipped_rule_ids=self.skipped_rule_ids)
        return RuleEvaluation(matched=None, skipped_rule_ids=self.skipped_rule_ids)


def evaluate_rules(order: OrderDescriptor, rules) -> RuleEvaluation:
    """One-shot helper: compile `rules` and return the first match for `order`."""
    return RuleEvaluator(rules).evaluate(order)
