"""
Module: quote_kernel.models.cost_profile
Responsibility: ORM persistence for versioned, immutable cost profile snapshots.
Architecture position: Kernel > Models.  May import from db/base.py only.

Invariants enforced:
    - Append-only: a snapshot is never updated or deleted (ORM listener in
      db/immutability.py).  A new assumption set is a new version.
    - (company_id, version) is unique; versions increase by one per tenant.

Audit relevance:
    Every EstimateSnapshot references the CostProfileSnapshot it was priced
    against, so the assumptions behind any historic price are recoverable.
"""

from datetime import datetime
from uuid import UUID

from sqlalchemy import JSON, BigInteger, Index, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from quote_kernel.db.base import Base, UTCDateTime, UUIDString, utc_now


class CostProfileSnapshot(Base):
    """
    One saved set of cost assumptions with its calculated outputs.

    Contract:
        ``snapshot_data`` is CostProfileInput.to_dict(); ``calculated_outputs``
        is CostCalculationOutput.to_dict() computed at save time.
    """

    __tablename__ = "cost_profile_snapshots"

    __table_args__ = (
        UniqueConstraint("company_id", "version", name="uq_cost_profile_version"),
        Index("idx_cost_profile_company", "company_id"),
    )

    company_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)

    version: Mapped[int] = mapped_column(BigInteger, nullable=False)

    snapshot_data: Mapped[dict] = mapped_column(JSON, nullable=False)

    calculated_outputs: Mapped[dict] = mapped_column(JSON, nullable=False)

    created_by_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime(),
        nullable=False,
        default=utc_now,
    )

    def __repr__(self) -> str:
        return f"<CostProfileSnapshot company={self.company_id} v{self.version}>"
