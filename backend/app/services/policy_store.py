"""Policy Store — async data access for routing policies and their children.

Implements the collaborator contract the routing engine consumes:
get_active_policy, get_rules, get_vendor_profiles, get_sla_targets,
record_audit, save_simulation. Also builds immutable PolicySnapshots.
"""
import json
import logging
import uuid
from datetime import datetime, timezone

from sqlalchemy import func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from app.models.routing_decision import RoutingDecisionRecord
from app.models.routing_policy import RoutingPolicy
from app.models.routing_policy_audit import RoutingPolicyAudit
from app.models.routing_policy_vendor import RoutingPolicyVendor
from app.models.routing_rule import RoutingRule
from app.models.routing_simulation import RoutingSimulation
from app.models.sla_target import SlaTarget
from app.rules.routing_engine import RoutingDecision
from app.rules.snapshot import PolicySnapshot
from app.services import audit as audit_svc

logger = logging.getLogger(__name__)


def _as_uuid(value) -> uuid.UUID | None:
    if isinstance(value, uuid.UUID):
        return value
    try:
        return uuid.UUID(str(value))
    except (TypeError, ValueError):
        return None


class PolicyStore:
    def __init__(self, db: AsyncSession):
        self.db = db

    # ─── Policies ───

    async def get_policy(self, policy_id: uuid.UUID, with_children: bool = False) -> RoutingPolicy | None:
        if not with_children:
            return await self.db.get(RoutingPolicy, policy_id)
        stmt = (
            select(RoutingPolicy)
            .where(RoutingPolicy.id == policy_id)
            .options(
                selectinload(RoutingPolicy.rules),
                selectinload(RoutingPolicy.vendor_profiles),
                selectinload(RoutingPolicy.sla_targets),
            )
        )
        return (await self.db.execute(stmt)).scalars().first()

    async def list_policies(
        self,
        status: str | None = None,
        channel: str | None = None,
        region: str | None = None,
        skip: int = 0,
        limit: int = 50,
    ) -> tuple[list[RoutingPolicy], int]:
        filters = []
        if status:
            filters.append(RoutingPolicy.status == status)
        if channel:
            filters.append(func.lower(RoutingPolicy.channel) == channel.lower())
        if region:
            filters.append(func.lower(RoutingPolicy.region) == region.lower())
        total = (
            await self.db.execute(select(func.count()).select_from(RoutingPolicy).where(*filters))
        ).scalar_one()
        rows = (
            await self.db.execute(
                select(RoutingPolicy)
                .where(*filters)
                .order_by(RoutingPolicy.created_at.desc())
                .offset(skip)
                .limit(limit)
            )
        ).scalars().all()
        return list(rows), total

    async def get_active_policy(
        self, channel: str, region: str, now: datetime | None = None
    ) -> RoutingPolicy | None:
        """Active, already-effective policy for a channel/region pair.

        The partial unique index keeps this to one row; if legacy data holds
        several, the most recently effective one wins.
        """
        now = now or datetime.now(timezone.utc)
        stmt = (
            select(RoutingPolicy)
            .where(
                func.lower(RoutingPolicy.channel) == channel.lower(),
                func.lower(RoutingPolicy.region) == region.lower(),
                RoutingPolicy.status == "active",
                or_(RoutingPolicy.effective_at.is_(None), RoutingPolicy.effective_at <= now),
            )
            .order_by(RoutingPolicy.effective_at.desc().nulls_last(), RoutingPolicy.updated_at.desc())
        )
        policies = (await self.db.execute(stmt)).scalars().all()
        if len(policies) > 1:
            logger.warning(
                "%d active routing policies for channel=%s region=%s; using %s",
                len(policies), channel, region, policies[0].id,
            )
        return policies[0] if policies else None

    async def get_active_policies_for(self, channel: str, region: str) -> list[RoutingPolicy]:
        """Every active policy for the pair regardless of effective time (for supersede)."""
        stmt = select(RoutingPolicy).where(
            func.lower(RoutingPolicy.channel) == channel.lower(),
            func.lower(RoutingPolicy.region) == region.lower(),
            RoutingPolicy.status == "active",
        )
        return list((await self.db.execute(stmt)).scalars().all())

    async def resolve_policy_reference(self, ref: str) -> RoutingPolicy | None:
        """Resolve a rule's fallback_policy (policy id, or name preferring active)."""
        policy_id = _as_uuid(ref)
        if policy_id is not None:
            return await self.db.get(RoutingPolicy, policy_id)
        stmt = (
            select(RoutingPolicy)
            .where(RoutingPolicy.name == ref, RoutingPolicy.status != "retired")
            .order_by((RoutingPolicy.status == "active").desc(), RoutingPolicy.updated_at.desc())
        )
        return (await self.db.execute(stmt)).scalars().first()

    # ─── Children ───

    async def get_rules(self, policy_id: uuid.UUID) -> list[RoutingRule]:
        stmt = (
            select(RoutingRule)
            .where(RoutingRule.policy_id == policy_id)
            .order_by(RoutingRule.priority, RoutingRule.created_at, RoutingRule.id)
        )
        return list((await self.db.execute(stmt)).scalars().all())

    async def get_vendor_profiles(self, policy_id: uuid.UUID) -> list[RoutingPolicyVendor]:
        stmt = (
            select(RoutingPolicyVendor)
            .where(RoutingPolicyVendor.policy_id == policy_id)
            .order_by(RoutingPolicyVendor.failover_priority, RoutingPolicyVendor.id)
        )
        return list((await self.db.execute(stmt)).scalars().all())

    async def get_vendor_profile(self, policy_id: uuid.UUID, profile_id: uuid.UUID) -> RoutingPolicyVendor | None:
        profile = await self.db.get(RoutingPolicyVendor, profile_id)
        if profile is None or profile.policy_id != policy_id:
            return None
        return profile

    async def get_sla_targets(self, policy_id: uuid.UUID) -> list[SlaTarget]:
        stmt = select(SlaTarget).where(SlaTarget.policy_id == policy_id).order_by(SlaTarget.metric)
        return list((await self.db.execute(stmt)).scalars().all())

    # ─── Snapshots ───

    async def load_snapshot(self, policy: RoutingPolicy) -> PolicySnapshot:
        return PolicySnapshot.from_models(
            policy,
            await self.get_rules(policy.id),
            await self.get_vendor_profiles(policy.id),
            await self.get_sla_targets(policy.id),
        )

    async def load_fallback_snapshots(self, snapshot: PolicySnapshot, max_depth: int) -> dict[str, PolicySnapshot]:
        """Pre-fetch every policy reachable through rule fallback references."""
        loaded: dict[str, PolicySnapshot] = {}
        seen = {snapshot.id}
        frontier = [snapshot]
        for _ in range(max_depth):
            refs = {r.fallback_policy for s in frontier for r in s.rules if r.fallback_policy}
            frontier = []
            for ref in sorted(refs - loaded.keys()):
                policy = await self.resolve_policy_reference(ref)
                if policy is None:
                    logger.warning("Fallback policy reference %r does not resolve", ref)
                    continue
                if policy.status == "retired":
                    logger.warning("Fallback policy %s is retired; ignoring", policy.id)
                    continue
                fallback = await self.load_snapshot(policy)
                loaded[ref] = fallback
                if fallback.id not in seen:
                    seen.add(fallback.id)
                    frontier.append(fallback)
            if not frontier:
                break
        return loaded

    # ─── Writes ───

    async def record_audit(self, **entry) -> RoutingPolicyAudit:
        return await audit_svc.record_audit(self.db, **entry)

    async def list_audit(self, policy_id: uuid.UUID, skip: int = 0, limit: int = 100) -> tuple[list[RoutingPolicyAudit], int]:
        total = (
            await self.db.execute(
                select(func.count()).select_from(RoutingPolicyAudit).where(RoutingPolicyAudit.policy_id == policy_id)
            )
        ).scalar_one()
        rows = (
            await self.db.execute(
                select(RoutingPolicyAudit)
                .where(RoutingPolicyAudit.policy_id == policy_id)
                .order_by(RoutingPolicyAudit.timestamp.desc())
                .offset(skip)
                .limit(limit)
            )
        ).scalars().all()
        return list(rows), total

    async def save_simulation(
        self,
        policy_id: uuid.UUID,
        scenario: dict,
        results_json: str,
        policy_version: int,
        name: str | None = None,
        created_by: str | None = None,
    ) -> RoutingSimulation:
        simulation = RoutingSimulation(
            policy_id=policy_id,
            name=name,
            policy_version=policy_version,
            scenario_json=json.dumps(scenario, sort_keys=True),
            results_json=results_json,
            created_by=created_by,
        )
        self.db.add(simulation)
        await self.db.flush()
        return simulation

    async def list_simulations(self, policy_id: uuid.UUID, skip: int = 0, limit: int = 50) -> tuple[list[RoutingSimulation], int]:
        total = (
            await self.db.execute(
                select(func.count()).select_from(RoutingSimulation).where(RoutingSimulation.policy_id == policy_id)
            )
        ).scalar_one()
        rows = (
            await self.db.execute(
                select(RoutingSimulation)
                .where(RoutingSimulation.policy_id == policy_id)
                .order_by(RoutingSimulation.created_at.desc())
                .offset(skip)
                .limit(limit)
            )
        ).scalars().all()
        return list(rows), total

    async def save_decision(self, decision: RoutingDecision) -> RoutingDecisionRecord:
        record = RoutingDecisionRecord(
            id=uuid.UUID(decision.decision_id),
            policy_id=uuid.UUID(decision.policy_id),
            policy_version=decision.policy_version,
            order_ref=decision.order_id,
            strategy=decision.strategy,
            vendor_id=_as_uuid(decision.vendor_id),
            vendor_ids_json=json.dumps(decision.vendor_ids),
            matched_rule_id=_as_uuid(decision.matched_rule_id) if decision.matched_rule_id else None,
            partial=decision.partial,
            decided_at=decision.decided_at,
            sla_deadline=decision.sla_deadline,
            sla_minutes=decision.sla_minutes,
            max_lag_minutes=decision.max_lag_minutes,
            sla_state="on_track",
            payload_json=json.dumps(decision.to_dict()),
        )
        self.db.add(record)
        await self.db.flush()
        return record

    async def get_decision(self, decision_id: uuid.UUID) -> RoutingDecisionRecord | None:
        return await self.db.get(RoutingDecisionRecord, decision_id)
