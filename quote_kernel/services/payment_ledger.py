"""
PaymentLedgerService -- optimistic-concurrency payment and refund posting.

Responsibility:
    Records offline payments, gateway-confirmed payments and refunds as
    append-only Payment rows and re-derives the invoice balance and status
    from the ledger.  This is the only code that sets an invoice to
    ``paid`` or ``partially_paid``.

Architecture position:
    Kernel > Services -- called by the host for offline payments and
    refunds, and by the gateway callback handler for online payments.

Invariants enforced:
    - The invoice write is ``UPDATE invoices ... WHERE id = :id AND
      version = :expected``.  Of two writers that read version N, exactly
      one sees rowcount 1 and advances the invoice to N + 1; the other
      raises OptimisticLockError carrying the current version and writes
      nothing.
    - The Payment row is inserted only after the conditional update
      succeeded, in the same transaction.
    - Status changes go through INVOICE_WORKFLOW via the PAYMENT_LEDGER
      path.
    - Refunds are negative rows bounded by ``amount_paid``; earlier rows
      are never touched.
    - A gateway reference is recorded at most once.

Failure modes:
    - ValidationError: non-positive amount, amount above the balance,
      unknown method, missing refund reason.
    - StateConflictError: invoice status does not accept the movement
      (audited first).
    - OptimisticLockError: stale ``expected_version``.

Audit relevance:
    invoice.offline_payment_recorded, invoice.gateway_payment_recorded,
    invoice.refunded, job.deposit_refunded, invoice.payment_rejected.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import Any

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from quote_kernel.db.types import ZERO, round_money, to_decimal
from quote_kernel.domain.actor import Actor
from quote_kernel.domain.billing import derive_payment_status, is_deposit
from quote_kernel.domain.clock import Clock
from quote_kernel.domain.statuses import (
    OFFLINE_PAYMENT_METHODS,
    InvoiceStatus,
    PaymentMethod,
    status_value,
)
from quote_kernel.domain.workflow import (
    INVOICE_WORKFLOW,
    TransitionPath,
    check_transition,
)
from quote_kernel.exceptions import (
    OptimisticLockError,
    StateConflictError,
    ValidationError,
)
from quote_kernel.logging_config import get_logger
from quote_kernel.models.invoice import Invoice, Payment
from quote_kernel.services.audit_service import AuditorService
from quote_kernel.services.base import BaseService

logger = get_logger("services.payment_ledger")

PAYMENT_REFUSED_STATUSES = frozenset({
    InvoiceStatus.DRAFT.value,
    InvoiceStatus.PAID.value,
    InvoiceStatus.VOIDED.value,
    InvoiceStatus.REFUNDED.value,
    InvoiceStatus.WRITTEN_OFF.value,
})

REFUND_REFUSED_STATUSES = frozenset({
    InvoiceStatus.DRAFT.value,
    InvoiceStatus.VOIDED.value,
    InvoiceStatus.REFUNDED.value,
    InvoiceStatus.WRITTEN_OFF.value,
})


@dataclass(frozen=True)
class PaymentResult:
    """Outcome of one ledger write."""

    invoice: Invoice
    payment: Payment
    previous_status: str
    new_status: str
    version: int
    duplicate: bool = False


class PaymentLedgerService(BaseService):
    """
    Append-only payment ledger with version-checked invoice updates.

    Contract:
        Callers pass the invoice ``version`` they read.  On
        OptimisticLockError they re-fetch and retry; the ledger never
        applies a stale balance.

    Non-goals:
        - Does NOT talk to a payment gateway.  Gateway callbacks arrive
          here already confirmed.
    """

    def __init__(self, session: Session, clock: Clock | None = None):
        super().__init__(session, clock)
        self._auditor = AuditorService(session, self.clock)

    def payments_for(self, invoice_id: Any) -> list[Payment]:
        return list(
            self.session.execute(
                select(Payment)
                .where(Payment.invoice_id == invoice_id)
                .order_by(Payment.created_at, Payment.invoice_version)
            ).scalars().all()
        )

    def find_gateway_payment(self, gateway_reference: str) -> Payment | None:
        return self.session.execute(
            select(Payment).where(Payment.gateway_reference == gateway_reference)
        ).scalar_one_or_none()

    def ledger_balance(self, invoice_id: Any) -> Decimal:
        """Sum of every ledger row; equals ``amount_paid`` when consistent."""
        return sum((p.amount for p in self.payments_for(invoice_id)), ZERO)

    # Payments

    def record_payment(
        self,
        company_id: Any,
        invoice_id: Any,
        expected_version: int,
        amount: Any,
        method: PaymentMethod | str,
        actor: Actor,
        *,
        reference: str | None = None,
        notes: str | None = None,
    ) -> PaymentResult:
        """
        Record an offline payment (check, cash, bank transfer, other).

        Raises:
            ValidationError: bad amount or method.
            StateConflictError: invoice does not accept payments.
            OptimisticLockError: ``expected_version`` is stale.
        """
        method_value = status_value(method)
        if method_value not in {m.value for m in OFFLINE_PAYMENT_METHODS}:
            raise ValidationError(
                "Invalid payment method",
                [f"method must be one of: {', '.join(sorted(m.value for m in OFFLINE_PAYMENT_METHODS))}"],
            )
        return self._post_payment(
            company_id,
            invoice_id,
            expected_version,
            self._positive_amount(amount),
            method_value,
            actor,
            action="invoice.offline_payment_recorded",
            reference=reference,
            notes=notes,
        )

    def record_gateway_payment(
        self,
        company_id: Any,
        invoice_id: Any,
        amount: Any,
        gateway_reference: str,
        actor: Actor | None = None,
        *,
        expected_version: int | None = None,
    ) -> PaymentResult:
        """
        Record a payment confirmed by the checkout gateway.

        Replaying a callback with a known ``gateway_reference`` returns the
        original row with ``duplicate=True`` and writes nothing.  Without
        ``expected_version`` the version read here is used, so a
        concurrent offline payment still makes one of the two fail.
        """
        if not gateway_reference or not gateway_reference.strip():
            raise ValidationError("Gateway reference is required", ["gateway_reference"])
        actor = actor or Actor.system()

        existing = self.find_gateway_payment(gateway_reference)
        if existing is not None:
            invoice = self._get_scoped(Invoice, "invoice", company_id, existing.invoice_id)
            logger.info(
                "gateway_payment_duplicate",
                extra={"invoice_id": str(invoice.id), "gateway_reference": gateway_reference},
            )
            return PaymentResult(
                invoice=invoice,
                payment=existing,
                previous_status=invoice.status,
                new_status=invoice.status,
                version=invoice.version,
                duplicate=True,
            )

        if expected_version is None:
            expected_version = self._get_scoped(Invoice, "invoice", company_id, invoice_id).version
        return self._post_payment(
            company_id,
            invoice_id,
            expected_version,
            self._positive_amount(amount),
            PaymentMethod.GATEWAY.value,
            actor,
            action="invoice.gateway_payment_recorded",
            gateway_reference=gateway_reference,
        )

    # Refunds

    def record_refund(
        self,
        company_id: Any,
        invoice_id: Any,
        expected_version: int,
        actor: Actor,
        reason: str,
        *,
        amount: Any = None,
        method: PaymentMethod | str = PaymentMethod.OTHER,
        reference: str | None = None,
    ) -> PaymentResult:
        """
        Refund part or all of what was paid.

        ``amount`` defaults to everything paid.  The invoice moves to
        ``refunded`` once nothing remains paid, otherwise to
        ``partially_paid``.  A full refund of a job's deposit invoice
        re-locks scheduling and is audited against the job.
        """
        if not reason or not reason.strip():
            raise ValidationError("Refund reason is required", ["reason is required"])

        invoice = self._get_scoped(Invoice, "invoice", company_id, invoice_id)
        if invoice.status in REFUND_REFUSED_STATUSES or invoice.amount_paid <= ZERO:
            message = (
                "No payments to refund" if invoice.status not in REFUND_REFUSED_STATUSES
                else f"Cannot refund {invoice.status} invoice"
            )
            self._reject(invoice, "refund", actor, message)
        self._require_version(invoice, expected_version)

        refund = invoice.amount_paid if amount is None else self._positive_amount(amount)
        if refund > invoice.amount_paid:
            raise ValidationError(
                "Invalid refund",
                [f"Refund amount (${refund}) exceeds amount paid (${invoice.amount_paid})"],
            )

        new_paid = invoice.amount_paid - refund
        new_status = derive_payment_status(invoice.total, new_paid, refunded=True)
        result = self._write(
            invoice,
            expected_version,
            -refund,
            status_value(method),
            actor,
            new_paid=new_paid,
            new_status=new_status.value,
            reference=reference,
            notes=f"Refund: {reason.strip()}",
        )

        self._auditor.record(
            "invoice",
            invoice.id,
            "invoice.refunded",
            actor,
            company_id=company_id,
            previous_state={"status": result.previous_status, "amount_paid": new_paid + refund},
            new_state={
                "status": result.new_status,
                "amount_paid": new_paid,
                "refund_amount": refund,
                "version": result.version,
            },
            reason=reason.strip(),
        )
        logger.info(
            "refund_recorded",
            extra={
                "invoice_id": str(invoice.id),
                "amount": str(refund),
                "status": result.new_status,
                "version": result.version,
            },
        )

        if (
            result.new_status == InvoiceStatus.REFUNDED.value
            and is_deposit(invoice.invoice_type)
            and invoice.job_id is not None
        ):
            self._auditor.record(
                "job",
                invoice.job_id,
                "job.deposit_refunded",
                actor,
                company_id=company_id,
                new_state={"deposit_invoice_status": result.new_status, "scheduling_allowed": False},
                reason=reason.strip(),
                related_entity_type="invoice",
                related_entity_id=invoice.id,
            )
            logger.warning(
                "deposit_refunded_scheduling_locked",
                extra={"job_id": str(invoice.job_id), "invoice_id": str(invoice.id)},
            )
        return result

    # Internals

    def _post_payment(
        self,
        company_id: Any,
        invoice_id: Any,
        expected_version: int,
        amount: Decimal,
        method: str,
        actor: Actor,
        *,
        action: str,
        reference: str | None = None,
        gateway_reference: str | None = None,
        notes: str | None = None,
    ) -> PaymentResult:
        invoice = self._get_scoped(Invoice, "invoice", company_id, invoice_id)
        if invoice.status in PAYMENT_REFUSED_STATUSES:
            self._reject(invoice, "payment", actor, f"Cannot record payment for {invoice.status} invoice")
        self._require_version(invoice, expected_version)

        if amount > invoice.amount_due:
            raise ValidationError(
                "Invalid payment",
                [f"Payment amount (${amount}) exceeds amount due (${invoice.amount_due})"],
            )

        new_paid = invoice.amount_paid + amount
        new_status = derive_payment_status(invoice.total, new_paid, refunded=False)
        result = self._write(
            invoice,
            expected_version,
            amount,
            method,
            actor,
            new_paid=new_paid,
            new_status=new_status.value,
            reference=reference,
            gateway_reference=gateway_reference,
            notes=notes,
        )

        self._auditor.record(
            "invoice",
            invoice.id,
            action,
            actor,
            company_id=company_id,
            previous_state={"status": result.previous_status, "amount_paid": new_paid - amount},
            new_state={
                "status": result.new_status,
                "amount_paid": new_paid,
                "payment_amount": amount,
                "method": method,
                "version": result.version,
            },
        )
        logger.info(
            "payment_recorded",
            extra={
                "invoice_id": str(invoice.id),
                "amount": str(amount),
                "method": method,
                "status": result.new_status,
                "version": result.version,
            },
        )
        return result

    def _write(
        self,
        invoice: Invoice,
        expected_version: int,
        amount: Decimal,
        method: str,
        actor: Actor,
        *,
        new_paid: Decimal,
        new_status: str,
        reference: str | None = None,
        gateway_reference: str | None = None,
        notes: str | None = None,
    ) -> PaymentResult:
        """Guard the status change, apply the conditional update, append the row."""
        previous_status = invoice.status
        if new_status != previous_status:
            decision = check_transition(
                INVOICE_WORKFLOW, previous_status, new_status, TransitionPath.PAYMENT_LEDGER,
            )
            if not decision.allowed:
                self._auditor.record_denial(
                    "invoice", invoice.id, decision, actor, company_id=invoice.company_id,
                )
                decision.raise_if_denied("invoice", invoice.id)

        now = self.clock.now()
        values: dict[str, Any] = {
            "amount_paid": new_paid,
            "amount_due": invoice.total - new_paid,
            "status": new_status,
            "version": expected_version + 1,
            "updated_at": now,
        }
        if new_status == InvoiceStatus.PAID.value:
            values["paid_at"] = now

        outcome = self.session.execute(
            update(Invoice)
            .where(Invoice.id == invoice.id, Invoice.version == expected_version)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if outcome.rowcount != 1:
            current = self.session.execute(
                select(Invoice.version).where(Invoice.id == invoice.id)
            ).scalar_one_or_none()
            logger.warning(
                "payment_version_conflict",
                extra={
                    "invoice_id": str(invoice.id),
                    "expected_version": expected_version,
                    "current_version": current,
                },
            )
            raise OptimisticLockError("invoice", invoice.id, expected_version, current)

        payment = Payment(
            company_id=invoice.company_id,
            invoice_id=invoice.id,
            amount=round_money(amount),
            method=method,
            reference=reference,
            gateway_reference=gateway_reference,
            notes=notes,
            invoice_version=expected_version + 1,
            recorded_by_id=actor.actor_id,
            created_at=now,
        )
        self.session.add(payment)
        self.session.flush()
        self.session.refresh(invoice)

        return PaymentResult(
            invoice=invoice,
            payment=payment,
            previous_status=previous_status,
            new_status=invoice.status,
            version=invoice.version,
        )

    def _reject(self, invoice: Invoice, movement: str, actor: Actor, message: str) -> None:
        self._auditor.record(
            "invoice",
            invoice.id,
            f"invoice.{movement}_rejected",
            actor,
            company_id=invoice.company_id,
            previous_state={"status": invoice.status, "amount_paid": invoice.amount_paid},
            reason=message,
        )
        raise StateConflictError(
            entity_type="invoice",
            entity_id=invoice.id,
            current_status=invoice.status,
            requested_status=None,
            allowed=(),
            reason=message,
        )

    @staticmethod
    def _require_version(invoice: Invoice, expected_version: int) -> None:
        if invoice.version != expected_version:
            raise OptimisticLockError("invoice", invoice.id, expected_version, invoice.version)

    @staticmethod
    def _positive_amount(value: Any) -> Decimal:
        amount = to_decimal(value, "amount")
        if amount <= ZERO:
            raise ValidationError("Invalid amount", ["amount must be greater than 0"])
        return round_money(amount)
