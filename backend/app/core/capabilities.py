"""Role -> capability mapping.

The role claim is parsed once per request into a frozen capability set;
endpoint guards check set membership instead of matching role names.
"""
import enum
from dataclasses import dataclass


class Role(str, enum.Enum):
    SUPER_ADMIN = "super_admin"
    VENDOR = "vendor"
    SELLER = "seller"
    SYSTEM = "system"  # integrations and the health-reporting collaborator


class Capability(str, enum.Enum):
    ROUTE_ORDERS = "route_orders"
    VIEW_POLICIES = "view_policies"
    EDIT_POLICIES = "edit_policies"
    APPROVE_POLICIES = "approve_policies"
    RUN_SIMULATIONS = "run_simulations"
    REPORT_VENDOR_HEALTH = "report_vendor_health"


ROLE_CAPABILITIES: dict[Role, frozenset[Capability]] = {
    Role.SUPER_ADMIN: frozenset(Capability),
    Role.VENDOR: frozenset({Capability.VIEW_POLICIES, Capability.REPORT_VENDOR_HEALTH}),
    Role.SELLER: frozenset({Capability.ROUTE_ORDERS, Capability.VIEW_POLICIES}),
    Role.SYSTEM: frozenset({Capability.ROUTE_ORDERS, Capability.REPORT_VENDOR_HEALTH}),
}

# Display names used by the dashboard ("Super Admin", "Vendor", "Seller").
_ROLE_ALIASES = {
    "super admin": Role.SUPER_ADMIN,
    "super_admin": Role.SUPER_ADMIN,
    "superadmin": Role.SUPER_ADMIN,
    "admin": Role.SUPER_ADMIN,
    "vendor": Role.VENDOR,
    "seller": Role.SELLER,
    "system": Role.SYSTEM,
}


def parse_role(raw: str | None) -> Role | None:
    """Map a role claim to a Role, or None if it is not recognised."""
    if not raw:
        return None
    return _ROLE_ALIASES.get(raw.strip().lower().replace("-", " "))


def capabilities_for(role: Role | None) -> frozenset[Capability]:
    if role is None:
        return frozenset()
    return ROLE_CAPABILITIES[role]


@dataclass(frozen=True)
class Actor:
    """Authenticated caller, resolved once per request from the token."""

    subject: str
    role: Role
    capabilities: frozenset[Capability]
    vendor_id: str | None = None

    def can(self, capability: Capability) -> bool:
        return capability in self.capabilities

    @classmethod
    def for_role(cls, subject: str, role: Role, vendor_id: str | None = None) -> "Actor":
        return cls(subject=subject, role=role, capabilities=capabilities_for(role), vendor_id=vendor_id)
