import uuid
from datetime import datetime

from sqlalchemy import DateTime, Float, ForeignKey, Integer, String, Text
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from app.db.base import Base, TimestampMixin, UUIDMixin


class RoutingDecisionRecord(Base, UUIDMixin, TimestampMixin):
    """Persisted routing decision, swept periodically for SLA state."""

    __tablename__ = "routing_decisions"

    policy_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("routing_policies.id", ondelete="CASCADE"), nullable=False, index=True
    )
    policy_version: Mapped[int] = mapped_column(Integer, nullable=False)
    order_ref: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    strategy: Mapped[str] = mapped_column(String(20), nullable=False)
    vendor_id: Mapped[uuid.UUID | None] = mapped_column(UUID(as_uuid=True), nullable=True, index=True)
    vendor_ids_json: Mapped[str] = mapped_column(Text, nullable=False, default="[]")
    matched_rule_id: Mapped[uuid.UUID | None] = mapped_column(UUID(as_uuid=True), nullable=True)
    partial: Mapped[bool] = mapped_column(nullable=False, default=False)
    decided_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)
    sla_deadline: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    sla_minutes: Mapped[float | None] = mapped_column(Float, nullable=True)
    max_lag_minutes: Mapped[float | None] = mapped_column(Float, nullable=True)
    sla_state: Mapped[str] = mapped_column(
        String(20), nullable=False, default="on_track"
    )  # on_track, warning, breached, unknown
    sla_state_changed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    payload_json: Mapped[str] = mapped_column(Text, nullable=False)  # full RoutingDecision.to_dict()
