"""Seed script — creates demo print vendors and a draft routing policy for dev.

Idempotent: checks for existing records before inserting.
Run: docker exec routing-backend-1 python scripts/seed.py
"""
import asyncio
import json
import sys
import os

sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from app.core.config import settings
from app.models.routing_policy import RoutingPolicy
from app.models.routing_policy_vendor import RoutingPolicyVendor
from app.models.routing_rule import RoutingRule
from app.models.sla_target import SlaTarget
from app.models.vendor import Vendor
from app.services.audit import record_audit

SEED_ACTOR = "seed@printco.example"

VENDORS = [
    # (name, email, country, weight, capacity_per_hour, failover_priority, region, specializations)
    ("Inkwell Print Co", "ops@inkwell.example", "US", 3.0, 120.0, 1, "US", ["poster", "canvas"]),
    ("Paperpress West", "dispatch@paperpress.example", "US", 1.0, 60.0, 2, "US", ["poster"]),
    ("GlobalFab Printing", "orders@globalfab.example", "DE", 1.0, 200.0, 3, "*", ["apparel", "poster"]),
]


# ─── Upsert helpers ───────────────────────────────────────────────────────────

async def _upsert_vendor(db: AsyncSession, name: str, email: str, country: str) -> Vendor:
    result = await db.execute(select(Vendor).where(Vendor.name == name))
    vendor = result.scalars().first()
    if vendor:
        print(f"  [skip] Vendor {name}")
        return vendor
    vendor = Vendor(name=name, email=email, country=country, is_active=True)
    db.add(vendor)
    await db.flush()
    print(f"  [new]  Vendor {name}")
    return vendor


async def _upsert_policy(db: AsyncSession, name: str, channel: str, region: str) -> tuple[RoutingPolicy, bool]:
    result = await db.execute(select(RoutingPolicy).where(RoutingPolicy.name == name))
    policy = result.scalars().first()
    if policy:
        print(f"  [skip] Policy {name}")
        return policy, False
    policy = RoutingPolicy(
        name=name,
        channel=channel,
        region=region,
        status="draft",
        failover_strategy="cascading",
        allow_partial_fulfillment=False,
        sla_minutes=240,
        max_lag_minutes=30,
        created_by=SEED_ACTOR,
        orchestration_status="pending",
    )
    db.add(policy)
    await db.flush()
    print(f"  [new]  Policy {name} ({channel}/{region})")
    return policy, True


# ─── Main ─────────────────────────────────────────────────────────────────────

async def seed():
    engine = create_async_engine(settings.DATABASE_URL, echo=False)
    SessionLocal = async_sessionmaker(engine, expire_on_commit=False)

    async with SessionLocal() as db:
        print("Vendors:")
        vendors = []
        for name, email, country, *profile in VENDORS:
            vendors.append((await _upsert_vendor(db, name, email, country), profile))

        print("Policies:")
        policy, created = await _upsert_policy(db, "Shopify US posters", "shopify", "US")
        if created:
            for vendor, (weight, capacity, failover, region, specs) in vendors:
                db.add(RoutingPolicyVendor(
                    policy_id=policy.id,
                    vendor_id=vendor.id,
                    weight=weight,
                    capacity_per_hour=capacity,
                    current_load_percent=0.0,
                    failover_priority=failover,
                    health="healthy",
                    auto_pause_threshold=90.0,
                    specializations_json=json.dumps(specs),
                    region=region,
                ))
            db.add(RoutingRule(
                policy_id=policy.id,
                name="Rush orders",
                priority=1,
                criteria_json=json.dumps({"field": "attributes.rush", "op": "eq", "value": True}),
                weights_json=json.dumps({"fanout": 2}),
            ))
            db.add(RoutingRule(
                policy_id=policy.id,
                name="Everything else",
                priority=100,
                criteria_json=json.dumps("default"),
            ))
            db.add(SlaTarget(
                policy_id=policy.id,
                metric="time_to_accept",
                threshold=4,
                warning_threshold=3,
                unit="hours",
            ))
            await db.flush()
            await record_audit(
                db,
                policy_id=policy.id,
                actor=SEED_ACTOR,
                role="system",
                status="approved",
                change_type="created",
                summary=f"Seeded draft policy '{policy.name}'",
                new_status="draft",
                policy_version=policy.version,
            )

        await db.commit()
        print("Done.")

    await engine.dispose()


if __name__ == "__main__":
    asyncio.run(seed())
