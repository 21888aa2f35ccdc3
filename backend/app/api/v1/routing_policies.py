"""Routing policy management API.

Endpoints:
  GET  /routing-policies                                   — list policies
  POST /routing-policies                                   — create a draft policy
  GET  /routing-policies/{id}                              — policy with rules, vendors, SLA targets
  POST /routing-policies/{id}/changes                      — apply a versioned, audited change
  GET  /routing-policies/{id}/audit                        — audit ledger
  POST /routing-policies/{id}/simulations                  — run and store a what-if simulation
  GET  /routing-policies/{id}/simulations                  — stored simulations
  POST /routing-policies/{id}/vendors/{profile_id}/health  — apply a vendor health report
"""
import json
import logging
import uuid
from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.capabilities import Actor, Capability, Role
from app.core.config import settings
from app.core.deps import require_capability
from app.core.errors import AuditWriteFailed, ConflictError, PolicyChangeRejected, PolicyNotFound
from app.db.session import get_session
from app.models.routing_policy import POLICY_STATUSES, RoutingPolicy
from app.models.routing_simulation import RoutingSimulation
from app.schemas.policy_change import PolicyChangeRequest, PolicyChangeResultOut
from app.schemas.routing import SimulationListResponse, SimulationOut, SimulationRequest
from app.schemas.routing_policy import (
    AuditEntryListResponse,
    AuditEntryOut,
    RoutingPolicyCreate,
    RoutingPolicyDetail,
    RoutingPolicyListResponse,
    RoutingPolicyOut,
    VendorHealthIn,
    VendorProfileOut,
)
from app.services.health_tracker import HealthReport, apply_health_report
from app.services.policy_changes import apply_policy_change, create_policy
from app.services.policy_store import PolicyStore
from app.services.simulation import Scenario, simulate

logger = logging.getLogger(__name__)

router = APIRouter()

_LIFECYCLE_CHANGES = {"activate", "retire"}


# ─── List / create ───

@router.get(
    "",
    response_model=RoutingPolicyListResponse,
    summary="List routing policies with optional filters",
)
async def list_policies(
    db: Annotated[AsyncSession, Depends(get_session)],
    actor: Annotated[Actor, Depends(require_capability(Capability.VIEW_POLICIES))],
    status_filter: str | None = Query(default=None, alias="status"),
    channel: str | None = Query(default=None),
    region: str | None = Query(default=None),
    page: int = Query(default=1, ge=1),
    page_size: int = Query(default=20, ge=1, le=100),
):
    if status_filter is not None and status_filter not in POLICY_STATUSES:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=f"status must be one of {', '.join(POLICY_STATUSES)}.",
        )
    policies, total = await PolicyStore(db).list_policies(
        status=status_filter,
        channel=channel,
        region=region,
        skip=(page - 1) * page_size,
        limit=page_size,
    )
    return RoutingPolicyListResponse(
        items=[RoutingPolicyOut.model_validate(p) for p in policies],
        total=total,
    )


@router.post(
    "",
    response_model=RoutingPolicyOut,
    status_code=status.HTTP_201_CREATED,
    summary="Create a draft routing policy",
)
async def create_routing_policy(
    body: RoutingPolicyCreate,
    db: Annotated[AsyncSession, Depends(get_session)],
    actor: Annotated[Actor, Depends(require_capability(Capability.EDIT_POLICIES))],
):
    try:
        policy = await create_policy(PolicyStore(db), body, actor)
    except AuditWriteFailed as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc))
    return RoutingPolicyOut.model_validate(policy)


@router.get(
    "/{policy_id}",
    response_model=RoutingPolicyDetail,
    summary="Routing policy detail with rules, vendor profiles and SLA targets",
)
async def get_routing_policy(
    policy_id: uuid.UUID,
    db: Annotated[AsyncSession, Depends(get_session)],
    actor: Annotated[Actor, Depends(require_capability(Capability.VIEW_POLICIES))],
):
    policy = await PolicyStore(db).get_policy(policy_id, with_children=True)
    if policy is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Routing policy not found.")
    return RoutingPolicyDetail.model_validate(policy)


# ─── Changes ───

@router.post(
    "/{policy_id}/changes",
    response_model=PolicyChangeResultOut,
    summary="Apply a change to a routing policy (optimistic concurrency, audited)",
)
async def change_routing_policy(
    policy_id: uuid.UUID,
    body: PolicyChangeRequest,
    db: Annotated[AsyncSession, Depends(get_session)],
    actor: Annotated[Actor, Depends(require_capability(Capability.EDIT_POLICIES))],
):
    change = body.root
    if change.type in _LIFECYCLE_CHANGES and not actor.can(Capability.APPROVE_POLICIES):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail=f"Role '{actor.role.value}' is not permitted to {change.type} policies.",
        )

    try:
        result = await apply_policy_change(PolicyStore(db), policy_id, change, actor)
    except PolicyNotFound:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Routing policy not found.")
    except ConflictError as exc:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail={"message": str(exc), "current_version": exc.current_version},
        )
    except PolicyChangeRejected as exc:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail={
                "message": str(exc),
                "audit_entry_id": str(exc.audit_entry_id) if exc.audit_entry_id else None,
            },
        )
    except AuditWriteFailed as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc))

    return PolicyChangeResultOut(
        policy_id=policy_id,
        new_version=result.new_version,
        audit_entry_id=result.audit_entry_id,
    )


@router.get(
    "/{policy_id}/audit",
    response_model=AuditEntryListResponse,
    summary="Audit ledger for a routing policy (newest first)",
)
async def list_policy_audit(
    policy_id: uuid.UUID,
    db: Annotated[AsyncSession, Depends(get_session)],
    actor: Annotated[Actor, Depends(require_capability(Capability.VIEW_POLICIES))],
    page: int = Query(default=1, ge=1),
    page_size: int = Query(default=50, ge=1, le=200),
):
    store = PolicyStore(db)
    await _get_policy_or_404(store, policy_id)
    entries, total = await store.list_audit(policy_id, skip=(page - 1) * page_size, limit=page_size)
    return AuditEntryListResponse(items=[AuditEntryOut.model_validate(e) for e in entries], total=total)


# ─── Simulations ───

@router.post(
    "/{policy_id}/simulations",
    response_model=SimulationOut,
    status_code=status.HTTP_201_CREATED,
    summary="Replay a synthetic order set against the policy and store the results",
)
async def run_simulation(
    policy_id: uuid.UUID,
    body: SimulationRequest,
    db: Annotated[AsyncSession, Depends(get_session)],
    actor: Annotated[Actor, Depends(require_capability(Capability.RUN_SIMULATIONS))],
):
    store = PolicyStore(db)
    policy = await _get_policy_or_404(store, policy_id)
    try:
        scenario = Scenario.from_dict(body.scenario, max_orders=settings.SIMULATION_MAX_ORDERS)
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc))

    snapshot = await store.load_snapshot(policy)
    fallbacks = await store.load_fallback_snapshots(snapshot, settings.ROUTING_MAX_FALLBACK_DEPTH)
    results = simulate(snapshot, scenario, fallbacks=fallbacks)

    simulation = await store.save_simulation(
        policy_id=policy.id,
        scenario=scenario.to_dict(),
        results_json=results.results_json(),
        policy_version=snapshot.version,
        name=body.name or scenario.name,
        created_by=actor.subject,
    )
    await db.commit()
    await db.refresh(simulation)
    return _simulation_out(simulation)


@router.get(
    "/{policy_id}/simulations",
    response_model=SimulationListResponse,
    summary="Stored simulations for a routing policy (newest first)",
)
async def list_simulations(
    policy_id: uuid.UUID,
    db: Annotated[AsyncSession, Depends(get_session)],
    actor: Annotated[Actor, Depends(require_capability(Capability.VIEW_POLICIES))],
    page: int = Query(default=1, ge=1),
    page_size: int = Query(default=20, ge=1, le=100),
):
    store = PolicyStore(db)
    await _get_policy_or_404(store, policy_id)
    simulations, total = await store.list_simulations(policy_id, skip=(page - 1) * page_size, limit=page_size)
    return SimulationListResponse(items=[_simulation_out(s) for s in simulations], total=total)


# ─── Vendor health ───

@router.post(
    "/{policy_id}/vendors/{profile_id}/health",
    response_model=VendorProfileOut,
    summary="Apply a load/health report to a vendor profile",
)
async def report_vendor_health(
    policy_id: uuid.UUID,
    profile_id: uuid.UUID,
    body: VendorHealthIn,
    db: Annotated[AsyncSession, Depends(get_session)],
    actor: Annotated[Actor, Depends(require_capability(Capability.REPORT_VENDOR_HEALTH))],
):
    store = PolicyStore(db)
    profile = await store.get_vendor_profile(policy_id, profile_id)
    if profile is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Vendor profile not found.")
    # Vendors may only report on their own profiles.
    if actor.role == Role.VENDOR and str(profile.vendor_id) != str(actor.vendor_id):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Vendors can only report health for their own profiles.",
        )

    update = apply_health_report(
        profile,
        HealthReport(
            current_load_percent=body.current_load_percent,
            health=body.health,
            incident=body.incident,
            reported_at=body.reported_at,
        ),
    )
    if update.applied:
        await db.commit()
        await db.refresh(profile)
    return VendorProfileOut.model_validate(profile)


# ─── Helpers ───

async def _get_policy_or_404(store: PolicyStore, policy_id: uuid.UUID) -> RoutingPolicy:
    policy = await store.get_policy(policy_id)
    if policy is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Routing policy not found.")
    return policy


def _simulation_out(simulation: RoutingSimulation) -> SimulationOut:
    return SimulationOut(
        id=simulation.id,
        policy_id=simulation.policy_id,
        name=simulation.name,
        policy_version=simulation.policy_version,
        scenario=json.loads(simulation.scenario_json),
        results=json.loads(simulation.results_json),
        created_by=simulation.created_by,
        created_at=simulation.created_at,
    )
