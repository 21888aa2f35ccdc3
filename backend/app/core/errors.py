"""Domain errors raised by the routing engine and policy services.

API handlers translate these into HTTP responses; Celery tasks log them.
"""
import uuid


class RoutingError(Exception):
    """Base class for all routing-domain errors."""


class InvalidCriteria(RoutingError):
    """A rule's criteria (or weights) blob cannot be parsed."""

    def __init__(self, message: str, rule_id: uuid.UUID | str | None = None):
        self.rule_id = rule_id
        super().__init__(message)


class NoEligibleVendor(RoutingError):
    """No vendor passed the health/capacity/specialization filters.

    `reasons` maps vendor-profile id -> list of rejection reasons so the
    caller can show why manual assignment is needed.
    """

    def __init__(
        self,
        message: str = "No eligible vendor for order",
        policy_id: uuid.UUID | str | None = None,
        reasons: dict[str, list[str]] | None = None,
    ):
        self.policy_id = policy_id
        self.reasons = reasons or {}
        super().__init__(message)


class NoMatchingRule(NoEligibleVendor):
    """No rule matched and the policy is configured to reject unmatched orders."""


class PolicyNotFound(RoutingError):
    """Referenced routing policy does not exist (or is not active)."""


class ConflictError(RoutingError):
    """A concurrent edit won the race; retry against the latest revision."""

    def __init__(self, message: str, current_version: int | None = None):
        self.current_version = current_version
        super().__init__(message)


class AuditWriteFailed(RoutingError):
    """The audit entry could not be written; the mutation was rolled back."""


class PolicyChangeRejected(RoutingError):
    """The requested change is not valid for the policy's current state."""

    def __init__(self, message: str, audit_entry_id: uuid.UUID | None = None):
        self.audit_entry_id = audit_entry_id
        super().__init__(message)
