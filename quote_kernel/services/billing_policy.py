"""
BillingPolicyService -- deposit gating and job close-out gating.

Responsibility:
    Loads a job's invoices and the tenant's billing settings and asks the
    pure decisions in domain/billing.py whether the job may be scheduled
    or closed.

Architecture position:
    Kernel > Services -- called by JobService (status changes, crew
    assignments, equipment reservations).  Every one of those paths calls
    ``require_schedulable`` itself; there is no single choke point.

Invariants enforced:
    - Scheduling requires ``deposit_policy == "not_required"`` or the
      job's first deposit invoice to be ``paid``.
    - Closing requires every invoice of the job to be settled (paid,
      written_off, voided or refunded).

Failure modes:
    - DepositRequiredError / CloseOutBlockedError from the ``require_*``
      variants.  ``can_*`` never raise for a denial.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from quote_kernel.domain.billing import (
    CloseOutCheck,
    DepositGate,
    InvoiceSummary,
    evaluate_deposit_gate,
    summarize_close_out,
)
from quote_kernel.domain.clock import Clock
from quote_kernel.domain.policy import DEFAULT_POLICY, QuotePolicy
from quote_kernel.domain.statuses import InvoiceType, status_value
from quote_kernel.exceptions import CloseOutBlockedError, DepositRequiredError
from quote_kernel.logging_config import get_logger
from quote_kernel.models.invoice import Invoice
from quote_kernel.models.job import CompanySettings, Job
from quote_kernel.services.base import BaseService

logger = get_logger("services.billing_policy")


def summarize(invoice: Invoice) -> InvoiceSummary:
    return InvoiceSummary(
        id=invoice.id,
        invoice_number=invoice.invoice_number,
        status=invoice.status,
        invoice_type=invoice.invoice_type,
        total=invoice.total,
        amount_paid=invoice.amount_paid,
        amount_due=invoice.amount_due,
        customer_id=invoice.customer_id,
        sent_at=invoice.sent_at,
        due_date=invoice.due_date,
    )


@dataclass(frozen=True)
class Decision:
    """Allowed/denied answer for canSchedule / canClose style queries."""

    allowed: bool
    reason: str | None = None
    outstanding_invoices: tuple[dict[str, Any], ...] = ()
    total_outstanding: Decimal | None = None


class BillingPolicyService(BaseService):
    def __init__(
        self,
        session: Session,
        clock: Clock | None = None,
        policy: QuotePolicy | None = None,
    ):
        super().__init__(session, clock)
        self.policy = policy or DEFAULT_POLICY

    # Settings

    def get_settings(self, company_id: Any) -> CompanySettings | None:
        return self.session.execute(
            select(CompanySettings).where(CompanySettings.company_id == company_id)
        ).scalar_one_or_none()

    def deposit_policy(self, company_id: Any) -> str:
        settings = self.get_settings(company_id)
        if settings is None or not settings.deposit_policy:
            return status_value(self.policy.billing.default_deposit_policy)
        return settings.deposit_policy

    def deposit_percentage(self, company_id: Any) -> Decimal:
        settings = self.get_settings(company_id)
        if settings is None or settings.default_deposit_percentage is None:
            return self.policy.billing.default_deposit_percentage
        return settings.default_deposit_percentage

    # Deposit gate

    def deposit_gate(self, company_id: Any, job_id: Any) -> DepositGate:
        self._get_scoped(Job, "job", company_id, job_id)
        deposits = self.session.execute(
            select(Invoice)
            .where(
                Invoice.company_id == company_id,
                Invoice.job_id == job_id,
                Invoice.invoice_type == InvoiceType.DEPOSIT.value,
            )
            .order_by(Invoice.created_at, Invoice.invoice_number)
            .execution_options(populate_existing=True)
        ).scalars().all()
        return evaluate_deposit_gate(
            self.deposit_policy(company_id),
            [summarize(invoice) for invoice in deposits],
        )

    def can_schedule(self, company_id: Any, job_id: Any) -> Decision:
        gate = self.deposit_gate(company_id, job_id)
        return Decision(allowed=gate.scheduling_allowed, reason=gate.reason)

    def require_schedulable(self, company_id: Any, job_id: Any) -> DepositGate:
        """
        Raise unless the job may be scheduled.

        Raises:
            DepositRequiredError: deposit required and not paid.
        """
        gate = self.deposit_gate(company_id, job_id)
        if not gate.scheduling_allowed:
            logger.warning(
                "scheduling_blocked",
                extra={
                    "job_id": str(job_id),
                    "deposit_invoice_id": str(gate.deposit_invoice_id) if gate.deposit_invoice_id else None,
                    "deposit_invoice_status": gate.deposit_invoice_status,
                },
            )
            raise DepositRequiredError(
                job_id=job_id,
                reason=gate.reason,
                deposit_invoice_id=gate.deposit_invoice_id,
                deposit_invoice_status=gate.deposit_invoice_status,
            )
        return gate

    # Close-out gate

    def close_out_check(self, company_id: Any, job_id: Any) -> CloseOutCheck:
        self._get_scoped(Job, "job", company_id, job_id)
        invoices = self.session.execute(
            select(Invoice)
            .where(Invoice.company_id == company_id, Invoice.job_id == job_id)
            .order_by(Invoice.invoice_number)
            .execution_options(populate_existing=True)
        ).scalars().all()
        return summarize_close_out(summarize(invoice) for invoice in invoices)

    def can_close(self, company_id: Any, job_id: Any) -> Decision:
        check = self.close_out_check(company_id, job_id)
        return Decision(
            allowed=check.can_close,
            reason=check.reason,
            outstanding_invoices=check.unpaid_invoices,
            total_outstanding=check.total_outstanding,
        )

    def require_closable(self, company_id: Any, job_id: Any) -> CloseOutCheck:
        """
        Raise unless every invoice of the job is settled.

        Raises:
            CloseOutBlockedError: lists the blocking invoices and the total.
        """
        check = self.close_out_check(company_id, job_id)
        if not check.can_close:
            logger.warning(
                "close_out_blocked",
                extra={
                    "job_id": str(job_id),
                    "outstanding_count": len(check.unpaid_invoices),
                    "total_outstanding": str(check.total_outstanding),
                },
            )
            raise CloseOutBlockedError(
                job_id=job_id,
                reason=check.reason,
                outstanding_invoices=list(check.unpaid_invoices),
                total_outstanding=check.total_outstanding,
            )
        return check
