"""
Module: quote_kernel.models.estimate
Responsibility: ORM persistence for estimates and their append-only pricing
    snapshots.
Architecture position: Kernel > Models.  May import from db/base.py only.

Invariants enforced:
    - EstimateSnapshot is append-only (ORM listener in db/immutability.py).
    - (estimate_id, snapshot_version) is unique; snapshot versions start at 1
      and come from a per-estimate locked counter (SequenceService), so they
      are never reused.
    - Change-order lineage: a child estimate has ``parent_estimate_id`` set
      and ``version = parent.version + 1``.

Audit relevance:
    EstimateSnapshot is the system of record for "what was actually priced
    when": work items, the full pricing breakdown, the status change, the
    actor (user or customer) and request provenance.
"""

from datetime import date, datetime
from decimal import Decimal
from uuid import UUID

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    Date,
    ForeignKey,
    Index,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from quote_kernel.db.base import Base, TrackedBase, UTCDateTime, UUIDString, utc_now


class Estimate(TrackedBase):
    """
    Mutable estimate header.

    Contract:
        Customer-facing fields are editable only while ``status == "draft"``
        (EstimateService.update_draft).  Status changes go through the
        estimate workflow guard.
    """

    __tablename__ = "estimates"

    __table_args__ = (
        UniqueConstraint("company_id", "estimate_number", name="uq_estimate_number"),
        Index("idx_estimate_company", "company_id"),
        Index("idx_estimate_status", "status"),
        Index("idx_estimate_parent", "parent_estimate_id"),
    )

    company_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    customer_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    estimate_number: Mapped[str] = mapped_column(String(30), nullable=False)

    title: Mapped[str | None] = mapped_column(String(200), nullable=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    job_address: Mapped[str | None] = mapped_column(String(300), nullable=True)
    valid_until: Mapped[date | None] = mapped_column(Date, nullable=True)

    status: Mapped[str] = mapped_column(String(20), nullable=False, default="draft")

    work_items: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    tax_rate: Mapped[Decimal] = mapped_column(Numeric(38, 9), nullable=False, default=Decimal("0"))

    # Change-order lineage
    version: Mapped[int] = mapped_column(BigInteger, nullable=False, default=1)
    parent_estimate_id: Mapped[UUID | None] = mapped_column(
        UUIDString(),
        ForeignKey("estimates.id"),
        nullable=True,
    )
    superseded_by_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)

    # Latest pricing pointer and cached totals
    latest_snapshot_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)
    subtotal: Mapped[Decimal | None] = mapped_column(Numeric(38, 9), nullable=True)
    tax_amount: Mapped[Decimal | None] = mapped_column(Numeric(38, 9), nullable=True)
    total: Mapped[Decimal | None] = mapped_column(Numeric(38, 9), nullable=True)

    # Rule-engine state
    pricing_profile_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)
    input_snapshot: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    pricing_snapshot: Mapped[dict | None] = mapped_column(JSON, nullable=True)

    sent_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    approved_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    rejected_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    rejection_reason: Mapped[str | None] = mapped_column(Text, nullable=True)

    snapshots: Mapped[list["EstimateSnapshot"]] = relationship(
        back_populates="estimate",
        order_by="EstimateSnapshot.snapshot_version",
        lazy="selectin",
    )

    def __repr__(self) -> str:
        return f"<Estimate {self.estimate_number} v{self.version} [{self.status}]>"

    @property
    def is_draft(self) -> bool:
        return self.status == "draft"


class EstimateSnapshot(Base):
    """
    Immutable record of an estimate's pricing at one lifecycle event.

    Contract:
        Written once per pricing- or status-affecting action; never updated
        or deleted.
    """

    __tablename__ = "estimate_snapshots"

    __table_args__ = (
        UniqueConstraint("estimate_id", "snapshot_version", name="uq_estimate_snapshot_version"),
        Index("idx_estimate_snapshot_estimate", "estimate_id"),
    )

    estimate_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("estimates.id"),
        nullable=False,
    )
    company_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)

    snapshot_version: Mapped[int] = mapped_column(BigInteger, nullable=False)
    trigger_action: Mapped[str] = mapped_column(String(20), nullable=False)

    cost_profile_snapshot_id: Mapped[UUID | None] = mapped_column(
        UUIDString(),
        ForeignKey("cost_profile_snapshots.id"),
        nullable=True,
    )

    work_items_snapshot: Mapped[list] = mapped_column(JSON, nullable=False)
    pricing_breakdown: Mapped[dict] = mapped_column(JSON, nullable=False)

    subtotal: Mapped[Decimal] = mapped_column(Numeric(38, 9), nullable=False)
    tax_rate: Mapped[Decimal] = mapped_column(Numeric(38, 9), nullable=False)
    tax_amount: Mapped[Decimal] = mapped_column(Numeric(38, 9), nullable=False)
    total: Mapped[Decimal] = mapped_column(Numeric(38, 9), nullable=False)
    margin_percentage: Mapped[Decimal | None] = mapped_column(Numeric(38, 9), nullable=True)

    is_override: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    override_multiplier: Mapped[Decimal | None] = mapped_column(Numeric(38, 9), nullable=True)
    override_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    floor_violation: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    previous_status: Mapped[str | None] = mapped_column(String(20), nullable=True)
    new_status: Mapped[str] = mapped_column(String(20), nullable=False)

    actor_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)
    actor_type: Mapped[str] = mapped_column(String(20), nullable=False)
    ip_address: Mapped[str | None] = mapped_column(String(64), nullable=True)
    user_agent: Mapped[str | None] = mapped_column(String(500), nullable=True)

    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False, default=utc_now)

    estimate: Mapped[Estimate] = relationship(back_populates="snapshots")

    def __repr__(self) -> str:
        return (
            f"<EstimateSnapshot estimate={self.estimate_id} "
            f"v{self.snapshot_version} {self.trigger_action}>"
        )

    def pricing_fields(self) -> dict:
        """Monetary fields, for carrying pricing forward to a new snapshot."""
        return {
            "work_items_snapshot": list(self.work_items_snapshot),
            "pricing_breakdown": dict(self.pricing_breakdown),
            "subtotal": self.subtotal,
            "tax_rate": self.tax_rate,
            "tax_amount": self.tax_amount,
            "total": self.total,
            "margin_percentage": self.margin_percentage,
            "is_override": self.is_override,
            "override_multiplier": self.override_multiplier,
            "override_reason": self.override_reason,
            "floor_violation": self.floor_violation,
            "cost_profile_snapshot_id": self.cost_profile_snapshot_id,
        }
