import uuid
from datetime import datetime, timezone

from sqlalchemy import DateTime, ForeignKey, Integer, String, Text, event
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.db.base import Base, UUIDMixin


class RoutingPolicyAudit(Base, UUIDMixin):
    """Append-only approval/change ledger for a routing policy."""

    __tablename__ = "routing_policy_audits"

    policy_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("routing_policies.id", ondelete="CASCADE"), nullable=False, index=True
    )
    actor: Mapped[str] = mapped_column(String(255), nullable=False)
    role: Mapped[str] = mapped_column(String(50), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False)  # approved, pending, rejected
    change_type: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    prior_status: Mapped[str | None] = mapped_column(String(20), nullable=True)
    new_status: Mapped[str | None] = mapped_column(String(20), nullable=True)
    policy_version: Mapped[int | None] = mapped_column(Integer, nullable=True)
    summary: Mapped[str] = mapped_column(Text, nullable=False)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    timestamp: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )

    policy: Mapped["RoutingPolicy"] = relationship("RoutingPolicy", back_populates="audit_entries")


@event.listens_for(RoutingPolicyAudit, "before_update")
def _refuse_audit_update(mapper, connection, target):
    raise ValueError(f"Audit entry {target.id} is immutable")
