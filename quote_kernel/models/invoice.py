"""
Module: quote_kernel.models.invoice
Responsibility: ORM persistence for invoices and the append-only payment
    ledger.
Architecture position: Kernel > Models.  May import from db/base.py only.

Invariants enforced:
    - ``amount_due == total - amount_paid`` after every ledger write.
    - ``version`` increments on every write to the invoice row.  Payment
      writes are conditional on the caller's expected version
      (PaymentLedgerService), so concurrent writers cannot both succeed.
    - Payment rows are append-only (db/immutability.py).  Refunds are
      negative rows, never edits.
    - ``gateway_reference`` is unique: a gateway callback replayed with the
      same reference records nothing new.

Failure modes:
    - IntegrityError on duplicate invoice_number or gateway_reference.
"""

from datetime import date, datetime
from decimal import Decimal
from uuid import UUID

from sqlalchemy import (
    BigInteger,
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


class Invoice(TrackedBase):
    """
    Customer invoice.

    Contract:
        ``status``, ``amount_paid``, ``amount_due`` and ``version`` are
        written only by InvoiceService and PaymentLedgerService.  Statuses
        ``paid`` and ``partially_paid`` are reachable only through the
        payment ledger.
    """

    __tablename__ = "invoices"

    __table_args__ = (
        UniqueConstraint("company_id", "invoice_number", name="uq_invoice_number"),
        Index("idx_invoice_company_status", "company_id", "status"),
        Index("idx_invoice_job", "job_id"),
    )

    company_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    customer_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    job_id: Mapped[UUID | None] = mapped_column(
        UUIDString(),
        ForeignKey("jobs.id"),
        nullable=True,
    )
    estimate_id: Mapped[UUID | None] = mapped_column(
        UUIDString(),
        ForeignKey("estimates.id"),
        nullable=True,
    )
    estimate_snapshot_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)

    invoice_number: Mapped[str] = mapped_column(String(30), nullable=False)
    invoice_type: Mapped[str] = mapped_column(String(20), nullable=False, default="full")
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="draft")

    subtotal: Mapped[Decimal] = mapped_column(Numeric(38, 9), nullable=False)
    tax_rate: Mapped[Decimal] = mapped_column(Numeric(38, 9), nullable=False, default=Decimal("0"))
    tax_amount: Mapped[Decimal] = mapped_column(Numeric(38, 9), nullable=False)
    total: Mapped[Decimal] = mapped_column(Numeric(38, 9), nullable=False)
    amount_paid: Mapped[Decimal] = mapped_column(Numeric(38, 9), nullable=False, default=Decimal("0"))
    amount_due: Mapped[Decimal] = mapped_column(Numeric(38, 9), nullable=False)

    version: Mapped[int] = mapped_column(BigInteger, nullable=False, default=1)

    due_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    sent_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    viewed_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    paid_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    voided_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    void_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    disputed_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    dispute_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    written_off_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    write_off_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    written_off_by_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)

    payments: Mapped[list["Payment"]] = relationship(
        back_populates="invoice",
        order_by="Payment.created_at",
        lazy="selectin",
    )

    def __repr__(self) -> str:
        return (
            f"<Invoice {self.invoice_number} {self.invoice_type} [{self.status}] "
            f"paid={self.amount_paid}/{self.total} v{self.version}>"
        )


class Payment(Base):
    """
    One ledger movement against an invoice.

    Positive amounts are payments; negative amounts are refunds.
    ``invoice_version`` records the invoice version this write produced.
    """

    __tablename__ = "payments"

    __table_args__ = (
        UniqueConstraint("gateway_reference", name="uq_payment_gateway_reference"),
        Index("idx_payment_invoice", "invoice_id"),
    )

    company_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    invoice_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("invoices.id"),
        nullable=False,
    )

    amount: Mapped[Decimal] = mapped_column(Numeric(38, 9), nullable=False)
    method: Mapped[str] = mapped_column(String(20), nullable=False)
    reference: Mapped[str | None] = mapped_column(String(100), nullable=True)
    gateway_reference: Mapped[str | None] = mapped_column(String(200), nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    invoice_version: Mapped[int] = mapped_column(BigInteger, nullable=False)
    recorded_by_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False, default=utc_now)

    invoice: Mapped[Invoice] = relationship(back_populates="payments")

    def __repr__(self) -> str:
        return f"<Payment {self.amount} {self.method} invoice={self.invoice_id}>"

    @property
    def is_refund(self) -> bool:
        return self.amount < 0
