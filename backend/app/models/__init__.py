from app.models.vendor import Vendor
from app.models.routing_policy import RoutingPolicy
from app.models.routing_rule import RoutingRule
from app.models.routing_policy_vendor import RoutingPolicyVendor
from app.models.sla_target import SlaTarget
from app.models.routing_simulation import RoutingSimulation
from app.models.routing_policy_audit import RoutingPolicyAudit
from app.models.routing_decision import RoutingDecisionRecord

__all__ = [
    "Vendor",
    "RoutingPolicy",
    "RoutingRule",
    "RoutingPolicyVendor",
    "SlaTarget",
    "RoutingSimulation",
    "RoutingPolicyAudit",
    "RoutingDecisionRecord",
]
