import uuid

from sqlalchemy import ForeignKey, Integer, String, Text
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.db.base import Base, TimestampMixin, UUIDMixin


class RoutingRule(Base, UUIDMixin, TimestampMixin):
    """Ordered predicate → routing behaviour mapping inside a policy.

    Lower priority is evaluated first; ties fall back to creation order.
    """

    __tablename__ = "routing_rules"

    policy_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("routing_policies.id", ondelete="CASCADE"), nullable=False, index=True
    )
    name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    priority: Mapped[int] = mapped_column(Integer, nullable=False)
    criteria_json: Mapped[str | None] = mapped_column(Text, nullable=True)  # predicate, see app.rules.criteria
    weights_json: Mapped[str | None] = mapped_column(Text, nullable=True)  # {"vendors": {...}, "fanout": n}
    fallback_policy: Mapped[str | None] = mapped_column(String(255), nullable=True)  # policy id or name

    policy: Mapped["RoutingPolicy"] = relationship("RoutingPolicy", back_populates="rules")
