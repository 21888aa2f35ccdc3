import uuid

from sqlalchemy import ForeignKey, Integer, String, Text
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.db.base import Base, TimestampMixin, UUIDMixin


class RoutingSimulation(Base, UUIDMixin, TimestampMixin):
    """Dry-run of a policy snapshot against a synthetic order set. Immutable once computed."""

    __tablename__ = "routing_simulations"

    policy_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("routing_policies.id", ondelete="CASCADE"), nullable=False, index=True
    )
    name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    policy_version: Mapped[int] = mapped_column(Integer, nullable=False)
    scenario_json: Mapped[str] = mapped_column(Text, nullable=False)
    results_json: Mapped[str] = mapped_column(Text, nullable=False)
    created_by: Mapped[str | None] = mapped_column(String(255), nullable=True)

    policy: Mapped["RoutingPolicy"] = relationship("RoutingPolicy", back_populates="simulations")
