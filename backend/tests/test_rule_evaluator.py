"""Unit tests for first-match rule evaluation and rule weight parsing."""
from datetime import datetime, timedelta, timezone

import pytest

from app.core.errors import InvalidCriteria
from app.rules.rule_evaluator import NO_WEIGHTS, RuleEvaluator, evaluate_rules, parse_weights
from app.rules.snapshot import OrderDescriptor, RuleSpec

T0 = datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)


def _order(region: str = "US", **attributes) -> OrderDescriptor:
    return OrderDescriptor(order_id="ord-1", channel="shopify", region=region, attributes=attributes)


def _rule(rule_id: str, priority: int, criteria=None, weights=None, created_at=T0) -> RuleSpec:
    return RuleSpec(id=rule_id, priority=priority, criteria=criteria, weights=weights, created_at=created_at)


# ─── First match ──────────────────────────────────────────────────────────────

def test_us_order_matches_region_rule_and_ca_falls_through_to_default():
    rules = [
        _rule("default", 2, criteria="default"),
        _rule("us-only", 1, criteria={"field": "region", "op": "eq", "value": "US"}),
    ]
    evaluator = RuleEvaluator(rules)

    assert evaluator.evaluate(_order("US")).matched_rule_id == "us-only"
    assert evaluator.evaluate(_order("CA")).matched_rule_id == "default"


def test_equal_priorities_fall_back_to_creation_order():
    rules = [
        _rule("newer", 1, created_at=T0 + timedelta(minutes=5)),
        _rule("older", 1, created_at=T0),
    ]
    assert evaluate_rules(_order(), rules).matched_rule_id == "older"


def test_no_rule_matches_returns_none():
    rules = [_rule("eu", 1, criteria={"region": "EU"})]
    evaluation = evaluate_rules(_order("US"), rules)
    assert evaluation.matched is None
    assert evaluation.matched_rule_id is None


def test_evaluation_is_deterministic():
    rules = [_rule(f"r{i}", i % 3, criteria={"tier": {"lte": i}}) for i in range(6)]
    evaluator = RuleEvaluator(rules)
    order = _order(tier=3)
    matched = {evaluator.evaluate(order).matched_rule_id for _ in range(20)}
    assert matched == {"r3"}


# ─── Malformed rules ──────────────────────────────────────────────────────────

def test_malformed_rule_is_skipped_and_reported():
    rules = [
        _rule("broken", 1, criteria="{not json"),
        _rule("bad-weights", 2, criteria="default", weights={"v1": "heavy"}),
        _rule("fallback", 3, criteria=None),
    ]
    evaluation = evaluate_rules(_order(), rules)

    assert evaluation.matched_rule_id == "fallback"
    assert evaluation.skipped_rule_ids == ("broken", "bad-weights")


def test_all_rules_malformed_yields_no_match():
    evaluation = evaluate_rules(_order(), [_rule("broken", 1, criteria={"field": "x", "op": "??", "value": 1})])
    assert evaluation.matched is None
    assert evaluation.skipped_rule_ids == ("broken",)


# ─── Weights ──────────────────────────────────────────────────────────────────

def test_parse_weights_structured_form():
    weights = parse_weights({"vendors": {"v1": 5, "v2": 0.5}, "fanout": 2})
    assert weights.overrides == {"v1": 5.0, "v2": 0.5}
    assert weights.fanout == 2


def test_parse_weights_bare_mapping_and_text():
    weights = parse_weights('{"v1": 3}')
    assert weights.override_for("profile-x", "v1") == 3.0
    assert weights.fanout is None


def test_profile_override_beats_vendor_override():
    weights = parse_weights({"p1": 7, "v1": 2})
    assert weights.override_for("p1", "v1") == 7.0
    assert weights.override_for("p2", "v1") == 2.0
    assert weights.override_for("p3", "v3") is None


@pytest.mark.parametrize("raw", [None, "", "null"])
def test_empty_weights(raw):
    assert parse_weights(raw) == NO_WEIGHTS


@pytest.mark.parametrize("raw", [
    [1, 2],
    {"vendors": [1]},
    {"vendors": {}, "extra": 1},
    {"v1": True},
    {"fanout": 0},
    "{oops",
])
def test_invalid_weights(raw):
    with pytest.raises(InvalidCriteria):
        parse_weights(raw)
