"""
Module: quote_kernel.domain.billing
Responsibility: Pure billing-authority decisions: invoice payment status
    derivation from the ledger balance, deposit gating, close-out gating and
    AR aging.
Architecture position: Kernel > Domain.  Operates on InvoiceSummary values;
    services load the rows and act on the decisions.

Invariants enforced:
    - A job may be scheduled only when deposits are not required or a
      deposit invoice exists and is ``paid``.
    - A job may be closed only when every one of its invoices is in a
      settled status (paid, written_off, voided, refunded).
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Iterable, Sequence

from quote_kernel.db.types import ZERO
from quote_kernel.domain.statuses import (
    DepositPolicy,
    InvoiceStatus,
    InvoiceType,
    status_value,
)

SETTLED_INVOICE_STATUSES = frozenset({
    InvoiceStatus.PAID,
    InvoiceStatus.WRITTEN_OFF,
    InvoiceStatus.VOIDED,
    InvoiceStatus.REFUNDED,
})

UNPAID_OPEN_STATUSES = frozenset({
    InvoiceStatus.SENT,
    InvoiceStatus.VIEWED,
    InvoiceStatus.PARTIALLY_PAID,
    InvoiceStatus.OVERDUE,
})

AGING_BUCKETS = ("0-7", "8-30", "31-60", "60+")


@dataclass(frozen=True)
class InvoiceSummary:
    id: Any
    invoice_number: str
    status: str
    invoice_type: str
    total: Decimal
    amount_paid: Decimal
    amount_due: Decimal
    customer_id: Any = None
    sent_at: datetime | None = None
    due_date: date | None = None


def derive_payment_status(
    total: Decimal,
    amount_paid: Decimal,
    refunded: bool,
) -> InvoiceStatus | None:
    """
    Status implied by the ledger balance after a payment-ledger write.

    ``refunded`` is True when the write was a refund.  Returns None when
    the balance implies no payment status (nothing paid, no refund).
    """
    if amount_paid <= ZERO:
        return InvoiceStatus.REFUNDED if refunded else None
    if amount_paid >= total:
        return InvoiceStatus.PAID
    return InvoiceStatus.PARTIALLY_PAID


@dataclass(frozen=True)
class DepositGate:
    deposit_required: bool
    deposit_paid: bool
    scheduling_allowed: bool
    deposit_invoice_id: Any = None
    deposit_invoice_status: str | None = None
    deposit_amount: Decimal | None = None
    reason: str | None = None


def evaluate_deposit_gate(
    deposit_policy: str,
    deposit_invoices: Sequence[InvoiceSummary],
) -> DepositGate:
    """
    Decide whether scheduling is allowed.

    ``deposit_invoices`` are the job's deposit-type invoices, oldest first;
    the first one is authoritative.
    """
    if deposit_policy != DepositPolicy.REQUIRED:
        return DepositGate(deposit_required=False, deposit_paid=True, scheduling_allowed=True)

    if not deposit_invoices:
        return DepositGate(
            deposit_required=True,
            deposit_paid=False,
            scheduling_allowed=False,
            reason="Deposit invoice must be paid before scheduling. No deposit invoice exists.",
        )

    deposit = deposit_invoices[0]
    paid = deposit.status == InvoiceStatus.PAID
    return DepositGate(
        deposit_required=True,
        deposit_paid=paid,
        scheduling_allowed=paid,
        deposit_invoice_id=deposit.id,
        deposit_invoice_status=status_value(deposit.status),
        deposit_amount=deposit.total,
        reason=None if paid else (
            "Deposit invoice must be paid before scheduling. "
            f"Current status: {status_value(deposit.status)}"
        ),
    )


@dataclass(frozen=True)
class CloseOutCheck:
    can_close: bool
    unpaid_invoices: tuple[dict[str, Any], ...] = ()
    total_outstanding: Decimal = ZERO
    reason: str | None = None


def summarize_close_out(invoices: Iterable[InvoiceSummary]) -> CloseOutCheck:
    unpaid = [inv for inv in invoices if inv.status not in SETTLED_INVOICE_STATUSES]
    if not unpaid:
        return CloseOutCheck(can_close=True)

    entries = tuple(
        {
            "id": str(inv.id),
            "invoice_number": inv.invoice_number,
            "status": status_value(inv.status),
            "amount_due": inv.total - inv.amount_paid,
        }
        for inv in unpaid
    )
    total = sum((e["amount_due"] for e in entries), ZERO)
    return CloseOutCheck(
        can_close=False,
        unpaid_invoices=entries,
        total_outstanding=total,
        reason=f"{len(entries)} invoice(s) still outstanding. Total due: ${total:.2f}",
    )


def days_outstanding(sent_at: datetime | None, due_date: date | None, today: date) -> int:
    """Whole days past the due date (or send date when undated); 0 if unsent."""
    if sent_at is None:
        return 0
    reference = due_date if due_date is not None else sent_at.date()
    return max(0, (today - reference).days)


def aging_bucket(days: int) -> str:
    if days <= 7:
        return "0-7"
    if days <= 30:
        return "8-30"
    if days <= 60:
        return "31-60"
    return "60+"


@dataclass
class AgingBucket:
    bucket: str
    count: int = 0
    total_amount: Decimal = ZERO
    invoices: list[dict[str, Any]] = field(default_factory=list)


def build_aging_report(invoices: Iterable[InvoiceSummary], today: date) -> list[AgingBucket]:
    """Group open, unpaid invoices into aging buckets (all four always present)."""
    buckets = {name: AgingBucket(bucket=name) for name in AGING_BUCKETS}
    for inv in invoices:
        if inv.status not in UNPAID_OPEN_STATUSES:
            continue
        days = days_outstanding(inv.sent_at, inv.due_date, today)
        bucket = buckets[aging_bucket(days)]
        bucket.count += 1
        bucket.total_amount += inv.amount_due
        bucket.invoices.append({
            "id": str(inv.id),
            "invoice_number": inv.invoice_number,
            "days_outstanding": days,
            "amount_due": inv.amount_due,
            "customer_id": str(inv.customer_id) if inv.customer_id is not None else None,
        })
    return [buckets[name] for name in AGING_BUCKETS]


def is_deposit(invoice_type: str) -> bool:
    return invoice_type == InvoiceType.DEPOSIT
