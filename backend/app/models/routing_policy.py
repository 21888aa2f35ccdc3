import uuid
from datetime import datetime

from sqlalchemy import Boolean, DateTime, Index, Integer, String, Text, text
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.db.base import Base, TimestampMixin, UUIDMixin

POLICY_STATUSES = ("draft", "active", "retired")
FAILOVER_STRATEGIES = ("cascading", "parallel", "round_robin")
ORCHESTRATION_STATUSES = ("synced", "pending", "error")


class RoutingPolicy(Base, UUIDMixin, TimestampMixin):
    """Versioned routing configuration for one channel/region.

    Lifecycle: draft → active → retired. `version` is the optimistic
    concurrency counter; SQLAlchemy bumps it on every UPDATE of the row.
    """

    __tablename__ = "routing_policies"
    __table_args__ = (
        Index(
            "uq_routing_policies_active_channel_region",
            "channel",
            "region",
            unique=True,
            postgresql_where=text("status = 'active'"),
        ),
    )

    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    channel: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    region: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="draft")  # draft, active, retired
    allow_partial_fulfillment: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    failover_strategy: Mapped[str] = mapped_column(
        String(20), nullable=False, default="cascading"
    )  # cascading, parallel, round_robin
    sla_minutes: Mapped[int] = mapped_column(Integer, nullable=False)
    max_lag_minutes: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    effective_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    organization_id: Mapped[uuid.UUID | None] = mapped_column(UUID(as_uuid=True), nullable=True, index=True)
    created_by: Mapped[str | None] = mapped_column(String(255), nullable=True)
    updated_by: Mapped[str | None] = mapped_column(String(255), nullable=True)
    orchestration_status: Mapped[str] = mapped_column(
        String(20), nullable=False, default="pending"
    )  # synced, pending, error
    orchestration_last_sync: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    __mapper_args__ = {"version_id_col": version}

    rules: Mapped[list["RoutingRule"]] = relationship(
        "RoutingRule",
        back_populates="policy",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="RoutingRule.priority",
    )
    vendor_profiles: Mapped[list["RoutingPolicyVendor"]] = relationship(
        "RoutingPolicyVendor",
        back_populates="policy",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )
    sla_targets: Mapped[list["SlaTarget"]] = relationship(
        "SlaTarget",
        back_populates="policy",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )
    simulations: Mapped[list["RoutingSimulation"]] = relationship(
        "RoutingSimulation",
        back_populates="policy",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )
    audit_entries: Mapped[list["RoutingPolicyAudit"]] = relationship(
        "RoutingPolicyAudit",
        back_populates="policy",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="RoutingPolicyAudit.timestamp",
    )
