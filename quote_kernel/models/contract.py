"""
Module: quote_kernel.models.contract
Responsibility: ORM persistence for service contracts and the immutable
    copy taken at signing.
Architecture position: Kernel > Models.  May import from db/base.py only.

Invariants enforced:
    - Once ``locked_at`` is set, the four content sections and the
      estimate snapshot are frozen (db/immutability.py).
    - SignedContractSnapshot is append-only and written before the contract
      is marked signed, in the same transaction.

Audit relevance:
    SignedContractSnapshot is what the customer actually agreed to.
    ``content_hash`` lets an auditor verify the live contract still matches.
"""

from datetime import datetime
from uuid import UUID

from sqlalchemy import JSON, ForeignKey, Index, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from quote_kernel.db.base import Base, TrackedBase, UTCDateTime, UUIDString, utc_now

CONTENT_FIELDS = (
    "header_content",
    "work_items_content",
    "terms_content",
    "footer_content",
    "estimate_snapshot",
)


class Contract(TrackedBase):
    """Service agreement generated from an estimate snapshot."""

    __tablename__ = "contracts"

    __table_args__ = (
        UniqueConstraint("company_id", "contract_number", name="uq_contract_number"),
        Index("idx_contract_estimate", "estimate_id"),
    )

    company_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    customer_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    estimate_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("estimates.id"),
        nullable=False,
    )
    estimate_snapshot_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)

    contract_number: Mapped[str] = mapped_column(String(30), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="draft")

    header_content: Mapped[str] = mapped_column(Text, nullable=False)
    work_items_content: Mapped[str] = mapped_column(Text, nullable=False)
    terms_content: Mapped[str] = mapped_column(Text, nullable=False)
    footer_content: Mapped[str] = mapped_column(Text, nullable=False)
    estimate_snapshot: Mapped[dict] = mapped_column(JSON, nullable=False)

    sent_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    signed_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    locked_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    voided_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    void_reason: Mapped[str | None] = mapped_column(Text, nullable=True)

    signer_name: Mapped[str | None] = mapped_column(String(200), nullable=True)
    signature_data: Mapped[str | None] = mapped_column(Text, nullable=True)
    signer_initials: Mapped[str | None] = mapped_column(String(20), nullable=True)
    signer_ip: Mapped[str | None] = mapped_column(String(64), nullable=True)
    signer_user_agent: Mapped[str | None] = mapped_column(String(500), nullable=True)

    def __repr__(self) -> str:
        return f"<Contract {self.contract_number} [{self.status}]>"

    @property
    def is_locked(self) -> bool:
        return self.locked_at is not None


class SignedContractSnapshot(Base):
    """Frozen copy of a contract's content and signature at signing."""

    __tablename__ = "signed_contract_snapshots"

    __table_args__ = (
        UniqueConstraint("contract_id", name="uq_signed_contract_snapshot"),
    )

    contract_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("contracts.id"),
        nullable=False,
    )
    company_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    contract_number: Mapped[str] = mapped_column(String(30), nullable=False)

    header_content: Mapped[str] = mapped_column(Text, nullable=False)
    work_items_content: Mapped[str] = mapped_column(Text, nullable=False)
    terms_content: Mapped[str] = mapped_column(Text, nullable=False)
    footer_content: Mapped[str] = mapped_column(Text, nullable=False)
    estimate_snapshot: Mapped[dict] = mapped_column(JSON, nullable=False)
    content_hash: Mapped[str] = mapped_column(String(64), nullable=False)

    signer_name: Mapped[str] = mapped_column(String(200), nullable=False)
    signature_data: Mapped[str | None] = mapped_column(Text, nullable=True)
    signer_initials: Mapped[str | None] = mapped_column(String(20), nullable=True)
    signer_ip: Mapped[str | None] = mapped_column(String(64), nullable=True)
    signer_user_agent: Mapped[str | None] = mapped_column(String(500), nullable=True)

    signed_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False, default=utc_now)

    def __repr__(self) -> str:
        return f"<SignedContractSnapshot {self.contract_number} by {self.signer_name}>"
