"""Order routing API.

Endpoints:
  POST /routing/route                   — route an order, persist the decision
  GET  /routing/decisions/{id}/sla      — evaluate a decision's SLA state now
"""
import logging
import uuid
from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.capabilities import Actor, Capability
from app.core.config import settings
from app.core.deps import require_capability
from app.core.errors import NoEligibleVendor, NoMatchingRule
from app.core.limiter import limiter
from app.db.session import get_session
from app.rules.routing_engine import default_engine
from app.rules.snapshot import OrderDescriptor, SlaTargetSpec
from app.schemas.routing import RouteRequest, RoutingDecisionOut, SlaEvaluationOut
from app.services.policy_store import PolicyStore
from app.services.sla_monitor import SlaMonitor, SlaState, evaluate_sla, furthest_state

logger = logging.getLogger(__name__)

router = APIRouter()

sla_monitor = SlaMonitor()


# ─── POST /routing/route ───

@router.post(
    "/route",
    response_model=RoutingDecisionOut,
    status_code=status.HTTP_201_CREATED,
    summary="Route an order to vendor(s) under the active policy",
)
@limiter.limit(settings.ROUTE_RATE_LIMIT)
async def route_order(
    request: Request,
    body: RouteRequest,
    db: Annotated[AsyncSession, Depends(get_session)],
    actor: Annotated[Actor, Depends(require_capability(Capability.ROUTE_ORDERS))],
):
    store = PolicyStore(db)
    order = OrderDescriptor.from_dict(body.order.model_dump())

    if body.policy_id is not None:
        policy = await store.get_policy(body.policy_id)
        if policy is None or policy.status == "retired":
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Routing policy not found.")
    else:
        policy = await store.get_active_policy(order.channel, order.region)
        if policy is None:
            raise HTTPException(
                status_code=status.HTTP_404_NOT_FOUND,
                detail=f"No active routing policy for channel '{order.channel}' region '{order.region}'.",
            )

    snapshot = await store.load_snapshot(policy)
    fallbacks = await store.load_fallback_snapshots(snapshot, settings.ROUTING_MAX_FALLBACK_DEPTH)

    try:
        decision = default_engine.route(order, snapshot, fallbacks=fallbacks)
    except NoEligibleVendor as exc:
        logger.info("route_order: order %s unroutable under policy %s: %s", order.order_id, policy.id, exc)
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail={
                "message": str(exc),
                "code": "no_matching_rule" if isinstance(exc, NoMatchingRule) else "no_eligible_vendor",
                "policy_id": str(exc.policy_id) if exc.policy_id else str(policy.id),
                "reasons": exc.reasons,
            },
        )

    await store.save_decision(decision)
    await db.commit()
    logger.info(
        "route_order: order %s -> vendor %s (policy %s v%d, %s) by %s",
        order.order_id, decision.vendor_id, decision.policy_id, decision.policy_version,
        decision.strategy, actor.subject,
    )
    return RoutingDecisionOut(**decision.to_dict())


# ─── GET /routing/decisions/{id}/sla ───

@router.get(
    "/decisions/{decision_id}/sla",
    response_model=SlaEvaluationOut,
    summary="Evaluate the SLA state of a routing decision",
)
async def decision_sla(
    decision_id: uuid.UUID,
    db: Annotated[AsyncSession, Depends(get_session)],
    actor: Annotated[Actor, Depends(require_capability(Capability.VIEW_POLICIES))],
):
    store = PolicyStore(db)
    record = await store.get_decision(decision_id)
    if record is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Routing decision not found.")

    targets = [SlaTargetSpec.from_model(t) for t in await store.get_sla_targets(record.policy_id)]
    evaluation = evaluate_sla(record, targets=targets, warning_ratio=settings.SLA_DEFAULT_WARNING_RATIO)

    if evaluation.state != SlaState.UNKNOWN:
        transition = sla_monitor.observe(str(record.id), evaluation, previous=SlaState(record.sla_state))
        if transition is not None:
            record.sla_state = transition.current.value
            record.sla_state_changed_at = transition.occurred_at
            await db.commit()

    # Persisted state never moves backwards, even if targets were relaxed since.
    state = furthest_state(evaluation.state, SlaState(record.sla_state))
    return SlaEvaluationOut(
        decision_id=record.id,
        state=state.value,
        elapsed_minutes=round(evaluation.elapsed_minutes, 3),
        threshold_minutes=evaluation.threshold_minutes,
        warning_minutes=evaluation.warning_minutes,
        metric=evaluation.metric,
        deadline=evaluation.deadline,
    )
