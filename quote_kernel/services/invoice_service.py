"""
InvoiceService -- invoice creation from estimate snapshots and the
non-payment half of the invoice lifecycle.

Responsibility:
    Builds full, deposit and final invoices from an approved estimate's
    latest snapshot, sends them (portal link + notification), and applies
    the user-initiated status changes: viewed, voided, disputed,
    written_off and overdue.  Answers AR aging queries.

Architecture position:
    Kernel > Services -- paired with PaymentLedgerService, which owns
    every write to ``amount_paid`` and the ledger-gated statuses.

Invariants enforced:
    - Every status change is checked against INVOICE_WORKFLOW through the
      DIRECT path, so ``paid`` and ``partially_paid`` can never be set
      here.
    - Every write to an invoice row bumps ``version``; a concurrent
      payment holding the old version then fails its conditional update.
    - Invoices are priced from a snapshot, never from live estimate
      fields.

Failure modes:
    - ValidationError: estimate not approved, no snapshot, nothing left to
      bill, write-off reason too short.
    - StateConflictError: refused transition (audited first).
    - PolicyDeniedError: voiding an invoice that has payments.

Audit relevance:
    invoice.created_from_estimate, invoice.sent, invoice.viewed,
    invoice.voided, invoice.disputed, invoice.written_off,
    invoice.marked_overdue and invoice.transition_rejected.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, timedelta
from decimal import Decimal
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from quote_kernel.db.types import HUNDRED, ZERO, round_money, to_decimal
from quote_kernel.domain.actor import Actor
from quote_kernel.domain.billing import AgingBucket, build_aging_report
from quote_kernel.domain.clock import Clock
from quote_kernel.domain.policy import DEFAULT_POLICY, QuotePolicy
from quote_kernel.domain.statuses import (
    DocumentType,
    EstimateStatus,
    InvoiceStatus,
    InvoiceType,
    status_value,
)
from quote_kernel.domain.tokens import IssuedToken
from quote_kernel.domain.workflow import (
    INVOICE_WORKFLOW,
    TransitionPath,
    check_transition,
)
from quote_kernel.exceptions import PolicyDeniedError, ValidationError
from quote_kernel.logging_config import get_logger
from quote_kernel.models.estimate import Estimate
from quote_kernel.models.invoice import Invoice
from quote_kernel.services.audit_service import AuditorService
from quote_kernel.services.base import BaseService
from quote_kernel.services.billing_policy import BillingPolicyService, summarize
from quote_kernel.services.notifications import NullNotifier, Notifier, notify_safely
from quote_kernel.services.sequence_service import SequenceService
from quote_kernel.services.snapshot_service import SnapshotService
from quote_kernel.services.token_service import TokenService

logger = get_logger("services.invoice")

INVOICE_NUMBER_PREFIX = "INV"

# Open statuses that age into "overdue" once past the due date.
OVERDUE_CANDIDATE_STATUSES = (
    InvoiceStatus.SENT.value,
    InvoiceStatus.VIEWED.value,
    InvoiceStatus.PARTIALLY_PAID.value,
)

# Statuses in which money has actually been received against an estimate.
_PAID_STATUSES = (InvoiceStatus.PAID.value, InvoiceStatus.PARTIALLY_PAID.value)


@dataclass(frozen=True)
class SentInvoice:
    invoice: Invoice
    token: IssuedToken


class InvoiceService(BaseService):
    """
    Invoice authoring and non-ledger lifecycle operations.

    Contract:
        Methods take ``company_id`` and load rows tenant-scoped and
        row-locked.  Writes are flushed, never committed.

    Non-goals:
        - Does NOT record payments or refunds (PaymentLedgerService).
    """

    def __init__(
        self,
        session: Session,
        clock: Clock | None = None,
        policy: QuotePolicy | None = None,
        notifier: Notifier | None = None,
    ):
        super().__init__(session, clock)
        self.policy = policy or DEFAULT_POLICY
        self.notifier = notifier or NullNotifier()
        self._auditor = AuditorService(session, self.clock)
        self._snapshots = SnapshotService(session, self.clock)
        self._tokens = TokenService(session, self.clock, self.policy)
        self._billing = BillingPolicyService(session, self.clock, self.policy)

    def get_invoice(self, company_id: Any, invoice_id: Any, *, for_update: bool = False) -> Invoice:
        return self._get_scoped(Invoice, "invoice", company_id, invoice_id, for_update=for_update)

    def list_for_estimate(self, company_id: Any, estimate_id: Any) -> list[Invoice]:
        return list(
            self.session.execute(
                select(Invoice)
                .where(Invoice.company_id == company_id, Invoice.estimate_id == estimate_id)
                .order_by(Invoice.invoice_number)
            ).scalars().all()
        )

    def get_valid_transitions(self, company_id: Any, invoice_id: Any) -> tuple[str, ...]:
        """Statuses a user may move this invoice to directly."""
        invoice = self.get_invoice(company_id, invoice_id)
        if invoice.status in INVOICE_WORKFLOW.terminal_states:
            return ()
        return INVOICE_WORKFLOW.targets_from(invoice.status, TransitionPath.DIRECT)

    # Creation

    def create_invoice_from_snapshot(
        self,
        company_id: Any,
        estimate_id: Any,
        actor: Actor,
        *,
        invoice_type: InvoiceType | str = InvoiceType.FULL,
        deposit_percentage: Any = None,
        job_id: Any = None,
        due_date: date | None = None,
        notes: str | None = None,
    ) -> Invoice:
        """
        Create a draft invoice priced from the estimate's latest snapshot.

        Full invoices bill the snapshot total.  Deposit invoices bill
        ``deposit_percentage`` of it (tenant default when omitted), split
        back into subtotal and tax at the snapshot's tax rate.  Final
        invoices bill what remains after payments already received on the
        estimate's other invoices.

        Raises:
            ValidationError: estimate not approved, no snapshot, bad
                percentage, or nothing left to bill.
        """
        estimate = self._get_scoped(Estimate, "estimate", company_id, estimate_id)
        if estimate.status != EstimateStatus.APPROVED:
            raise ValidationError(
                "Invoices can only be created from approved estimates",
                [f"estimate status is '{estimate.status}'"],
            )
        snapshot = self._snapshots.latest_snapshot(estimate.id)
        if snapshot is None:
            raise ValidationError("Estimate has no pricing snapshot", ["estimate_snapshot"])

        kind = InvoiceType(status_value(invoice_type))
        tax_rate = snapshot.tax_rate
        percentage: Decimal | None = None

        if kind == InvoiceType.DEPOSIT:
            percentage = (
                self._billing.deposit_percentage(company_id)
                if deposit_percentage is None
                else to_decimal(deposit_percentage, "deposit_percentage")
            )
            if percentage <= ZERO or percentage > HUNDRED:
                raise ValidationError(
                    "Invalid deposit percentage",
                    ["deposit_percentage must be greater than 0 and at most 100"],
                )
            total = round_money(snapshot.total * percentage / HUNDRED)
            subtotal = round_money(total / (1 + tax_rate))
            tax_amount = total - subtotal
        elif kind == InvoiceType.FINAL:
            already_paid = sum(
                (inv.amount_paid for inv in self.list_for_estimate(company_id, estimate.id)
                 if inv.status in _PAID_STATUSES),
                ZERO,
            )
            total = round_money(snapshot.total - already_paid)
            if total <= ZERO:
                raise ValidationError("No remaining balance to invoice", ["amount"])
            subtotal = round_money(total / (1 + tax_rate))
            tax_amount = total - subtotal
        else:
            subtotal = snapshot.subtotal
            tax_amount = snapshot.tax_amount
            total = snapshot.total

        invoice_number = SequenceService(self.session).next_document_number(
            INVOICE_NUMBER_PREFIX, company_id,
        )
        invoice = Invoice(
            company_id=company_id,
            customer_id=estimate.customer_id,
            job_id=job_id,
            estimate_id=estimate.id,
            estimate_snapshot_id=snapshot.id,
            invoice_number=invoice_number,
            invoice_type=kind.value,
            status=InvoiceStatus.DRAFT.value,
            subtotal=subtotal,
            tax_rate=tax_rate,
            tax_amount=tax_amount,
            total=total,
            amount_paid=round_money(ZERO),
            amount_due=total,
            version=1,
            due_date=due_date or self.clock.today() + timedelta(days=self.policy.billing.invoice_due_days),
            notes=notes,
            created_by_id=actor.actor_id,
        )
        self.session.add(invoice)
        self.session.flush()

        self._auditor.record(
            "invoice",
            invoice.id,
            "invoice.created_from_estimate",
            actor,
            company_id=company_id,
            new_state={
                "status": invoice.status,
                "invoice_number": invoice_number,
                "invoice_type": kind.value,
                "total": total,
                "deposit_percentage": percentage,
                "snapshot_version": snapshot.snapshot_version,
            },
            related_entity_type="estimate",
            related_entity_id=estimate.id,
        )
        logger.info(
            "invoice_created",
            extra={
                "invoice_id": str(invoice.id),
                "invoice_number": invoice_number,
                "invoice_type": kind.value,
                "total": str(total),
            },
        )
        return invoice

    # Lifecycle

    def send_invoice(self, company_id: Any, invoice_id: Any, actor: Actor) -> SentInvoice:
        """draft -> sent, with a 30-day portal link and a notification."""
        invoice = self.get_invoice(company_id, invoice_id, for_update=True)
        previous_status = invoice.status
        self._check(invoice, InvoiceStatus.SENT, actor)

        invoice.status = InvoiceStatus.SENT.value
        invoice.sent_at = self.clock.now()
        invoice.version += 1
        self.session.flush()

        token = self._tokens.issue_token(
            company_id, DocumentType.INVOICE, invoice.id, issued_by_id=actor.actor_id,
        )
        self._auditor.record_transition(
            "invoice", invoice.id, "invoice.sent", actor, previous_status, invoice.status,
            company_id=company_id,
        )
        notify_safely(
            self.notifier.send_invoice_link,
            invoice,
            token.raw_token,
            channel="invoice_link",
            document_id=invoice.id,
        )
        return SentInvoice(invoice=invoice, token=token)

    def mark_viewed(self, invoice: Invoice, actor: Actor) -> bool:
        """
        Record a customer viewing the invoice.

        Only ``sent`` and ``overdue`` invoices move to ``viewed``; any
        other status is left alone and False is returned.
        """
        if invoice.status not in (InvoiceStatus.SENT.value, InvoiceStatus.OVERDUE.value):
            return False
        previous_status = invoice.status
        invoice.status = InvoiceStatus.VIEWED.value
        invoice.viewed_at = self.clock.now()
        invoice.version += 1
        self.session.flush()
        self._auditor.record_transition(
            "invoice", invoice.id, "invoice.viewed", actor, previous_status, invoice.status,
            company_id=invoice.company_id,
        )
        return True

    def void_invoice(self, company_id: Any, invoice_id: Any, actor: Actor, reason: str) -> Invoice:
        """
        Void an unpaid invoice.

        Raises:
            ValidationError: no reason.
            PolicyDeniedError: payments exist; refund them instead.
        """
        if not reason or not reason.strip():
            raise ValidationError("Void reason is required", ["reason is required"])
        invoice = self.get_invoice(company_id, invoice_id, for_update=True)
        self._check(invoice, InvoiceStatus.VOIDED, actor)
        if invoice.amount_paid > ZERO:
            self._auditor.record(
                "invoice",
                invoice.id,
                "invoice.void_rejected",
                actor,
                company_id=company_id,
                previous_state={"status": invoice.status, "amount_paid": invoice.amount_paid},
                reason="Cannot void invoice with payments. Use refund instead.",
            )
            raise PolicyDeniedError(
                "Cannot void invoice with payments. Use refund instead.",
                {"invoice_id": str(invoice.id), "amount_paid": str(invoice.amount_paid)},
            )
        return self._apply(
            invoice,
            InvoiceStatus.VOIDED,
            actor,
            "invoice.voided",
            reason=reason,
            voided_at=self.clock.now(),
            void_reason=reason,
        )

    def dispute_invoice(self, company_id: Any, invoice_id: Any, actor: Actor, reason: str) -> Invoice:
        if not reason or not reason.strip():
            raise ValidationError("Dispute reason is required", ["reason is required"])
        invoice = self.get_invoice(company_id, invoice_id, for_update=True)
        self._check(invoice, InvoiceStatus.DISPUTED, actor)
        return self._apply(
            invoice,
            InvoiceStatus.DISPUTED,
            actor,
            "invoice.disputed",
            reason=reason,
            disputed_at=self.clock.now(),
            dispute_reason=reason,
        )

    def write_off_invoice(self, company_id: Any, invoice_id: Any, actor: Actor, reason: str) -> Invoice:
        """
        Write off an overdue or disputed balance.

        Raises:
            ValidationError: reason shorter than the configured minimum, or
                no recording user.
        """
        minimum = self.policy.billing.minimum_write_off_reason_length
        errors = []
        if not reason or len(reason.strip()) < minimum:
            errors.append(f"reason must be at least {minimum} characters")
        if actor.actor_id is None:
            errors.append("write-off must be recorded by a user")
        if errors:
            raise ValidationError("Invalid write-off", errors)

        invoice = self.get_invoice(company_id, invoice_id, for_update=True)
        self._check(invoice, InvoiceStatus.WRITTEN_OFF, actor)
        outstanding = invoice.amount_due
        return self._apply(
            invoice,
            InvoiceStatus.WRITTEN_OFF,
            actor,
            "invoice.written_off",
            reason=reason.strip(),
            extra_state={"amount_written_off": outstanding},
            written_off_at=self.clock.now(),
            write_off_reason=reason.strip(),
            written_off_by_id=actor.actor_id,
        )

    def process_overdue_invoices(self, company_id: Any, today: date | None = None) -> list[Invoice]:
        """Move open invoices whose due date has passed to ``overdue``."""
        today = today or self.clock.today()
        candidates = self.session.execute(
            select(Invoice)
            .where(
                Invoice.company_id == company_id,
                Invoice.status.in_(OVERDUE_CANDIDATE_STATUSES),
                Invoice.due_date.is_not(None),
                Invoice.due_date < today,
            )
            .order_by(Invoice.invoice_number)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).scalars().all()

        actor = Actor.system()
        updated = [
            self._apply(invoice, InvoiceStatus.OVERDUE, actor, "invoice.marked_overdue")
            for invoice in candidates
        ]
        if updated:
            logger.info(
                "overdue_invoices_processed",
                extra={"company_id": str(company_id), "count": len(updated)},
            )
        return updated

    def ar_aging_report(self, company_id: Any, today: date | None = None) -> list[AgingBucket]:
        invoices = self.session.execute(
            select(Invoice).where(Invoice.company_id == company_id)
        ).scalars().all()
        return build_aging_report(
            (summarize(invoice) for invoice in invoices),
            today or self.clock.today(),
        )

    # Helpers

    def _check(self, invoice: Invoice, requested: InvoiceStatus, actor: Actor) -> None:
        decision = check_transition(INVOICE_WORKFLOW, invoice.status, requested)
        if not decision.allowed:
            self._auditor.record_denial(
                "invoice", invoice.id, decision, actor, company_id=invoice.company_id,
            )
            decision.raise_if_denied("invoice", invoice.id)

    def _apply(
        self,
        invoice: Invoice,
        new_status: InvoiceStatus,
        actor: Actor,
        action: str,
        *,
        reason: str | None = None,
        extra_state: dict[str, Any] | None = None,
        **fields: Any,
    ) -> Invoice:
        previous_status = invoice.status
        invoice.status = new_status.value
        for name, value in fields.items():
            setattr(invoice, name, value)
        invoice.version += 1
        self.session.flush()

        self._auditor.record(
            "invoice",
            invoice.id,
            action,
            actor,
            company_id=invoice.company_id,
            previous_state={"status": previous_status},
            new_state={"status": invoice.status, "version": invoice.version, **(extra_state or {})},
            reason=reason,
        )
        logger.info(
            "invoice_status_changed",
            extra={
                "invoice_id": str(invoice.id),
                "from_status": previous_status,
                "to_status": invoice.status,
            },
        )
        return invoice
