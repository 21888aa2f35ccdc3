import uuid
from datetime import datetime

from sqlalchemy import CheckConstraint, DateTime, Float, ForeignKey, Integer, String, Text
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.db.base import Base, TimestampMixin, UUIDMixin


class RoutingPolicyVendor(Base, UUIDMixin, TimestampMixin):
    """Policy-scoped view of a vendor: weight, capacity, health, failover order.

    `current_load_percent` and `health` are written by the external
    health-reporting collaborator (see app.services.health_tracker).
    """

    __tablename__ = "routing_policy_vendors"
    __table_args__ = (
        CheckConstraint(
            "current_load_percent >= 0 AND current_load_percent <= 100",
            name="load_percent_range",
        ),
    )

    policy_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("routing_policies.id", ondelete="CASCADE"), nullable=False, index=True
    )
    vendor_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("vendors.id"), nullable=False, index=True
    )
    weight: Mapped[float] = mapped_column(Float, nullable=False, default=1.0)
    capacity_per_hour: Mapped[float] = mapped_column(Float, nullable=False)
    current_load_percent: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    failover_priority: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    health: Mapped[str] = mapped_column(String(20), nullable=False, default="healthy")  # healthy, warning, critical
    auto_pause_threshold: Mapped[float] = mapped_column(Float, nullable=False, default=90.0)
    specializations_json: Mapped[str] = mapped_column(Text, nullable=False, default="[]")
    region: Mapped[str] = mapped_column(String(100), nullable=False)
    sla_minutes: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_incident_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    policy: Mapped["RoutingPolicy"] = relationship("RoutingPolicy", back_populates="vendor_profiles")
    vendor: Mapped["Vendor"] = relationship("Vendor")
