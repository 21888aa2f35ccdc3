import uuid

from sqlalchemy import Float, ForeignKey, String
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.db.base import Base, TimestampMixin, UUIDMixin


class SlaTarget(Base, UUIDMixin, TimestampMixin):
    """Named SLA metric threshold attached to a routing policy."""

    __tablename__ = "sla_targets"

    policy_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("routing_policies.id", ondelete="CASCADE"), nullable=False, index=True
    )
    metric: Mapped[str] = mapped_column(String(100), nullable=False)  # e.g. time_to_accept, fulfillment_time
    target_value: Mapped[float | None] = mapped_column(Float, nullable=True)
    threshold: Mapped[float | None] = mapped_column(Float, nullable=True)
    warning_threshold: Mapped[float | None] = mapped_column(Float, nullable=True)
    unit: Mapped[str | None] = mapped_column(String(20), nullable=True)  # minutes, hours, seconds, percent

    policy: Mapped["RoutingPolicy"] = relationship("RoutingPolicy", back_populates="sla_targets")
