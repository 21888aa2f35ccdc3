"""Unit tests for the routing rule criteria language."""
import pytest

from app.core.errors import InvalidCriteria
from app.rules.criteria import AllOf, AnyOf, Condition, MatchAll, Not, parse_criteria
from app.rules.snapshot import OrderDescriptor


def _order(**overrides) -> OrderDescriptor:
    base = {
        "order_id": "ord-1",
        "channel": "shopify",
        "region": "US",
        "attributes": {"product": {"type": "poster", "size": "A2"}, "rush": True, "pages": 24},
        "quantity": 10,
        "required_specializations": ["large_format"],
    }
    base.update(overrides)
    return OrderDescriptor.from_dict(base)


# ─── Parsing ──────────────────────────────────────────────────────────────────

@pytest.mark.parametrize("raw", [None, {}, "", "default", "DEFAULT", '"default"', "null"])
def test_empty_criteria_match_everything(raw):
    predicate = parse_criteria(raw)
    assert isinstance(predicate, MatchAll)
    assert predicate.matches(_order())


def test_leaf_condition_from_json_text():
    predicate = parse_criteria('{"field": "region", "op": "eq", "value": "US"}')
    assert predicate == Condition(field="region", op="eq", value="US")


def test_shorthand_builds_conjunction():
    predicate = parse_criteria({"region": "US", "quantity": {"gte": 5, "lt": 100}})
    assert isinstance(predicate, AllOf)
    assert len(predicate.clauses) == 3


def test_shorthand_list_means_in():
    predicate = parse_criteria({"channel": ["shopify", "etsy"]})
    assert predicate == Condition(field="channel", op="in", value=("shopify", "etsy"))


def test_combinators_compile():
    predicate = parse_criteria({
        "any": [
            {"field": "region", "op": "eq", "value": "CA"},
            {"not": {"field": "rush", "op": "eq", "value": False}},
        ]
    })
    assert isinstance(predicate, AnyOf)
    assert isinstance(predicate.clauses[1], Not)


@pytest.mark.parametrize("raw, message", [
    ("{not json", "not valid JSON"),
    ({"field": "region", "op": "like", "value": "U%"}, "Unknown operator"),
    ({"field": "region", "op": "eq"}, "has no value"),
    ({"field": "quantity", "op": "between", "value": [10, 1]}, "low > high"),
    ({"field": "quantity", "op": "in", "value": []}, "non-empty list"),
    ({"all": []}, "non-empty list"),
    ({"all": [], "any": []}, "only key"),
    ({"field": "rush", "op": "exists", "value": "yes"}, "true/false"),
    (42, "must be an object"),
])
def test_invalid_criteria_raise(raw, message):
    with pytest.raises(InvalidCriteria) as exc_info:
        parse_criteria(raw)
    assert message in str(exc_info.value)


# ─── Matching ─────────────────────────────────────────────────────────────────

def test_string_equality_is_case_insensitive():
    assert parse_criteria({"region": "us"}).matches(_order())


def test_numeric_comparisons():
    order = _order(quantity=10)
    assert parse_criteria({"quantity": {"gte": 10}}).matches(order)
    assert not parse_criteria({"quantity": {"gt": 10}}).matches(order)
    assert parse_criteria({"quantity": {"between": [5, 15]}}).matches(order)


def test_nested_attribute_paths():
    order = _order()
    assert parse_criteria({"product.type": "poster"}).matches(order)
    assert parse_criteria({"attributes.product.size": {"in": ["A1", "A2"]}}).matches(order)


def test_missing_field_only_satisfies_exists_false():
    order = _order()
    assert not parse_criteria({"gift_wrap": "yes"}).matches(order)
    assert not parse_criteria({"gift_wrap": {"ne": "yes"}}).matches(order)
    assert parse_criteria({"field": "gift_wrap", "op": "exists", "value": False}).matches(order)
    assert parse_criteria({"field": "rush", "op": "exists"}).matches(order)


def test_contains_on_lists_and_strings():
    order = _order(attributes={"tags": ["Holiday", "bulk"], "note": "Deliver before FRIDAY"})
    assert parse_criteria({"tags": {"contains": "holiday"}}).matches(order)
    assert parse_criteria({"note": {"contains": "friday"}}).matches(order)
    assert parse_criteria({"required_specializations": {"contains": "large_format"}}).matches(_order())


def test_mismatched_types_never_match_ordered_ops():
    assert not parse_criteria({"pages": {"gt": "10"}}).matches(_order())
