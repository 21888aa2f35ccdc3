"""Audit Recorder — append-only writes to routing_policy_audits.

A policy mutation is only committed after its audit entry has been
flushed; if the write fails the caller rolls the whole change back.
"""
import logging
import uuid
from datetime import datetime, timezone

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.errors import AuditWriteFailed
from app.models.routing_policy_audit import RoutingPolicyAudit

logger = logging.getLogger(__name__)

AUDIT_STATUSES = ("approved", "pending", "rejected")


async def record_audit(
    db: AsyncSession,
    policy_id: uuid.UUID,
    actor: str,
    role: str,
    status: str,
    change_type: str,
    summary: str,
    prior_status: str | None = None,
    new_status: str | None = None,
    policy_version: int | None = None,
    notes: str | None = None,
) -> RoutingPolicyAudit:
    """Write a single audit entry and flush it (caller controls the transaction).

    Args:
        db: Async SQLAlchemy session holding the pending policy mutation.
        policy_id: Policy the entry belongs to.
        actor: Subject of the authenticated caller.
        role: Caller's role at the time of the change.
        status: approved, pending or rejected.
        change_type: e.g. 'activate', 'rule_add', 'vendor_profile_update'.
        summary: Human-readable diff of what changed.
        prior_status / new_status: Policy lifecycle status before and after.
        policy_version: Policy revision produced by the change.
        notes: Free-text annotation from the caller.

    Raises:
        AuditWriteFailed: the entry could not be persisted.
    """
    if status not in AUDIT_STATUSES:
        raise ValueError(f"Unknown audit status '{status}'")

    entry = RoutingPolicyAudit(
        id=uuid.uuid4(),
        policy_id=policy_id,
        actor=actor,
        role=role,
        status=status,
        change_type=change_type,
        summary=summary,
        prior_status=prior_status,
        new_status=new_status,
        policy_version=policy_version,
        notes=notes,
        timestamp=datetime.now(timezone.utc),
    )
    try:
        db.add(entry)
        await db.flush()
    except SQLAlchemyError as exc:
        logger.error("Audit write failed for policy %s (%s): %s", policy_id, change_type, exc)
        raise AuditWriteFailed(f"Could not record audit entry for policy {policy_id}") from exc
    logger.debug("Audit: %s policy/%s by %s -> %s", change_type, policy_id, actor, status)
    return entry
