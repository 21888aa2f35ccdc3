"""Routing rule criteria — a small tagged predicate language.

Accepted shapes:

    {"field": "region", "op": "eq", "value": "US"}          leaf condition
    {"all": [...]} / {"any": [...]} / {"not": {...}}        combinators
    {"region": "US", "quantity": {"gte": 10}}               shorthand (AND of fields)
    None / {} / "default"                                   match everything

Criteria are compiled once into frozen predicate objects; anything that
cannot be compiled raises InvalidCriteria so malformed rules are caught at
save time instead of at routing time.
"""
import json
from dataclasses import dataclass
from typing import Any, Union

from app.core.errors import InvalidCriteria
from app.rules.snapshot import OrderDescriptor

OPERATORS = frozenset({
    "eq", "ne", "in", "not_in", "gt", "gte", "lt", "lte", "between", "contains", "exists",
})
COMBINATORS = frozenset({"all", "any", "not"})

# Order-level fields; anything else is looked up in order.attributes.
ORDER_FIELDS = frozenset({"order_id", "channel", "region", "quantity", "required_specializations"})

_MISSING = object()


# ─── Value helpers ───

def _is_number(v: Any) -> bool:
    return isinstance(v, (int, float)) and not isinstance(v, bool)


def _norm(v: Any) -> Any:
    return v.casefold() if isinstance(v, str) else v


def _equals(actual: Any, expected: Any) -> bool:
    if _is_number(actual) and _is_number(expected):
        return float(actual) == float(expected)
    return _norm(actual) == _norm(expected)


def _compare(actual: Any, expected: Any, op: str) -> bool:
    """Ordered comparison; mismatched types never match."""
    if _is_number(actual) and _is_number(expected):
        a, b = float(actual), float(expected)
    elif isinstance(actual, str) and isinstance(expected, str):
        a, b = actual, expected  # ISO dates / codes compare lexicographically
    else:
        return False
    if op == "gt":
        return a > b
    if op == "gte":
        return a >= b
    if op == "lt":
        return a < b
    return a <= b


def resolve_field(order: OrderDescriptor, path: str) -> Any:
    """Look up a (possibly dotted) field path on an order. Returns _MISSING if absent."""
    if path in ORDER_FIELDS:
        return getattr(order, path)
    if path.startswith("attributes."):
        path = path[len("attributes."):]
    current: Any = order.attributes
    for part in path.split("."):
        if not isinstance(current, dict) or part not in current:
            return _MISSING
        current = current[part]
    return current


# ─── Predicates ───

@dataclass(frozen=True)
class Condition:
    field: str
    op: str
    value: Any

    def matches(self, order: OrderDescriptor) -> bool:
        actual = resolve_field(order, self.field)
        if self.op == "exists":
            return (actual is not _MISSING and actual is not None) == bool(self.value)
        if actual is _MISSING:
            return False
        if self.op == "eq":
            return _equals(actual, self.value)
        if self.op == "ne":
            return not _equals(actual, self.value)
        if self.op == "in":
            return any(_equals(actual, v) for v in self.value)
        if self.op == "not_in":
            return not any(_equals(actual, v) for v in self.value)
        if self.op == "between":
            lo, hi = self.value
            return _compare(actual, lo, "gte") and _compare(actual, hi, "lte")
        if self.op == "contains":
            if isinstance(actual, str):
                return isinstance(self.value, str) and self.value.casefold() in actual.casefold()
            if isinstance(actual, (list, tuple, set)):
                return any(_equals(item, self.value) for item in actual)
            return False
        return _compare(actual, self.value, self.op)


@dataclass(frozen=True)
class AllOf:
    clauses: tuple

    def matches(self, order: OrderDescriptor) -> bool:
        return all(c.matches(order) for c in self.clauses)


@dataclass(frozen=True)
class AnyOf:
    clauses: tuple

    def matches(self, order: OrderDescriptor) -> bool:
        return any(c.matches(order) for c in self.clauses)


@dataclass(frozen=True)
class Not:
    clause: Any

    def matches(self, order: OrderDescriptor) -> bool:
        return not self.clause.matches(order)


@dataclass(frozen=True)
class MatchAll:
    def matches(self, order: OrderDescriptor) -> bool:
        return True


Predicate = Union[Condition, AllOf, AnyOf, Not, MatchAll]


# ─── Parsing ───

def _validate_value(field: str, op: str, value: Any) -> Any:
    if op in ("in", "not_in"):
        if not isinstance(value, (list, tuple)) or not value:
            raise InvalidCriteria(f"'{op}' on '{field}' needs a non-empty list")
        return tuple(value)
    if op == "between":
        if not isinstance(value, (list, tuple)) or len(value) != 2:
            raise InvalidCriteria(f"'between' on '{field}' needs [low, high]")
        lo, hi = value
        same_kind = (_is_number(lo) and _is_number(hi)) or (isinstance(lo, str) and isinstance(hi, str))
        if not same_kind:
            raise InvalidCriteria(f"'between' bounds on '{field}' must both be numbers or strings")
        if lo > hi:
            raise InvalidCriteria(f"'between' on '{field}' has low > high")
        return (lo, hi)
    if op in ("gt", "gte", "lt", "lte"):
        if not (_is_number(value) or isinstance(value, str)):
            raise InvalidCriteria(f"'{op}' on '{field}' needs a number or string")
        return value
    if op == "exists":
        if not isinstance(value, bool):
            raise InvalidCriteria(f"'exists' on '{field}' needs true/false")
        return value
    if isinstance(value, (dict, list)):
        raise InvalidCriteria(f"'{op}' on '{field}' needs a scalar value")
    return value


def _condition(field: Any, op: Any, value: Any) -> Condition:
    if not isinstance(field, str) or not field.strip():
        raise InvalidCriteria("Condition field must be a non-empty string")
    if op not in OPERATORS:
        raise InvalidCriteria(f"Unknown operator '{op}' on field '{field}'")
    return Condition(field=field.strip(), op=op, value=_validate_value(field, op, value))


def _parse_shorthand(raw: dict) -> Predicate:
    clauses: list = []
    for field, spec in raw.items():
        if isinstance(spec, dict):
            if not spec:
                raise InvalidCriteria(f"Empty operator map for field '{field}'")
            for op, value in spec.items():
                clauses.append(_condition(field, op, value))
        elif isinstance(spec, list):
            clauses.append(_condition(field, "in", spec))
        else:
            clauses.append(_condition(field, "eq", spec))
    return clauses[0] if len(clauses) == 1 else AllOf(tuple(clauses))


def _parse_node(raw: Any) -> Predicate:
    if isinstance(raw, list):
        if not raw:
            raise InvalidCriteria("Empty criteria list")
        return AllOf(tuple(_parse_node(item) for item in raw))
    if not isinstance(raw, dict):
        raise InvalidCriteria(f"Criteria node must be an object, got {type(raw).__name__}")

    tagged = COMBINATORS & raw.keys()
    if "field" in raw:
        extra = set(raw) - {"field", "op", "value"}
        if extra:
            raise InvalidCriteria(f"Unexpected keys in condition: {sorted(extra)}")
        op = raw.get("op", "eq")
        if op != "exists" and "value" not in raw:
            raise InvalidCriteria(f"Condition on '{raw['field']}' has no value")
        return _condition(raw["field"], op, raw.get("value", True))
    if tagged:
        if len(raw) != 1:
            raise InvalidCriteria(f"Combinator must be the only key, got {sorted(raw)}")
        key = next(iter(tagged))
        body = raw[key]
        if key == "not":
            return Not(_parse_node(body))
        if not isinstance(body, list) or not body:
            raise InvalidCriteria(f"'{key}' needs a non-empty list")
        children = tuple(_parse_node(item) for item in body)
        return AllOf(children) if key == "all" else AnyOf(children)
    return _parse_shorthand(raw)


def parse_criteria(raw: Any) -> Predicate:
    """Compile a criteria blob (object or JSON text) into a predicate."""
    if raw is None:
        return MatchAll()
    if isinstance(raw, str):
        text = raw.strip()
        if text == "" or text.lower() == "default":
            return MatchAll()
        try:
            raw = json.loads(text)
        except json.JSONDecodeError as exc:
            raise InvalidCriteria(f"Criteria is not valid JSON: {exc}") from exc
        if isinstance(raw, str):
            return parse_criteria(raw) if raw.strip().lower() in ("", "default") else _parse_node(raw)
        if raw is None:
            return MatchAll()
    if isinstance(raw, dict) and not raw:
        return MatchAll()
    return _parse_node(raw)
