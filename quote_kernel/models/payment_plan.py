"""
Module: quote_kernel.models.payment_plan
Responsibility: ORM persistence for installment payment plans offered to a
    customer through the portal.
Architecture position: Kernel > Models.  May import from db/base.py only.

Invariants enforced:
    - Installment amounts sum to the plan's ``total_amount``.
    - ``amount_due == total_amount - amount_paid``.
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
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from quote_kernel.db.base import Base, TrackedBase, UTCDateTime, UUIDString


class PaymentPlan(TrackedBase):
    """An invoice balance split into scheduled installments."""

    __tablename__ = "payment_plans"

    __table_args__ = (
        UniqueConstraint("company_id", "plan_number", name="uq_payment_plan_number"),
        Index("idx_payment_plan_invoice", "invoice_id"),
    )

    company_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    customer_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    invoice_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("invoices.id"),
        nullable=False,
    )

    plan_number: Mapped[str] = mapped_column(String(30), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="active")

    total_amount: Mapped[Decimal] = mapped_column(Numeric(38, 9), nullable=False)
    amount_paid: Mapped[Decimal] = mapped_column(Numeric(38, 9), nullable=False, default=Decimal("0"))
    amount_due: Mapped[Decimal] = mapped_column(Numeric(38, 9), nullable=False)

    installments: Mapped[list["PaymentPlanInstallment"]] = relationship(
        back_populates="plan",
        order_by="PaymentPlanInstallment.position",
        lazy="selectin",
    )

    def __repr__(self) -> str:
        return f"<PaymentPlan {self.plan_number} [{self.status}]>"

    def next_pending(self) -> "PaymentPlanInstallment | None":
        for installment in self.installments:
            if installment.status == "pending":
                return installment
        return None


class PaymentPlanInstallment(Base):
    __tablename__ = "payment_plan_installments"

    __table_args__ = (
        UniqueConstraint("plan_id", "position", name="uq_installment_position"),
    )

    plan_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("payment_plans.id"),
        nullable=False,
    )
    position: Mapped[int] = mapped_column(BigInteger, nullable=False)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    amount: Mapped[Decimal] = mapped_column(Numeric(38, 9), nullable=False)
    due_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="pending")
    paid_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    checkout_reference: Mapped[str | None] = mapped_column(String(200), nullable=True)

    plan: Mapped[PaymentPlan] = relationship(back_populates="installments")

    def __repr__(self) -> str:
        return f"<PaymentPlanInstallment #{self.position} {self.name} {self.amount} [{self.status}]>"
