"""
PaymentPlanService -- invoice balances split into portal-payable installments.

Responsibility:
    Creates installment plans against an open invoice, starts gateway
    checkouts for one installment, and applies confirmed installment
    payments through the payment ledger.

Architecture position:
    Kernel > Services -- called by the host (create, cancel), by
    PortalService (checkout) and by the gateway callback handler
    (installment paid).

Invariants enforced:
    - Installment amounts sum to the plan's ``total_amount``, which never
      exceeds the invoice's ``amount_due`` at creation.
    - An installment payment posts a gateway Payment on the invoice via
      PaymentLedgerService; the plan only mirrors it.  A replayed gateway
      reference changes nothing.
    - The plan completes when no installment is left pending.

Failure modes:
    - ValidationError: empty schedule, non-positive amounts, total above
      the invoice balance, nothing left to pay.
    - StateConflictError: plan completed or cancelled.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from typing import Any, Mapping, Sequence

from sqlalchemy.orm import Session

from quote_kernel.db.types import ZERO, round_money, to_decimal
from quote_kernel.domain.actor import Actor
from quote_kernel.domain.clock import Clock
from quote_kernel.domain.policy import DEFAULT_POLICY, QuotePolicy
from quote_kernel.domain.statuses import (
    DocumentType,
    InstallmentStatus,
    InvoiceStatus,
    PaymentPlanStatus,
)
from quote_kernel.domain.tokens import IssuedToken
from quote_kernel.exceptions import StateConflictError, ValidationError
from quote_kernel.logging_config import get_logger
from quote_kernel.models.invoice import Invoice
from quote_kernel.models.payment_plan import PaymentPlan, PaymentPlanInstallment
from quote_kernel.services.audit_service import AuditorService
from quote_kernel.services.base import BaseService
from quote_kernel.services.notifications import CheckoutGateway, CheckoutSession
from quote_kernel.services.payment_ledger import PaymentLedgerService, PaymentResult
from quote_kernel.services.sequence_service import SequenceService
from quote_kernel.services.token_service import TokenService

logger = get_logger("services.payment_plan")

PAYMENT_PLAN_NUMBER_PREFIX = "PP"

CLOSED_PLAN_STATUSES = (PaymentPlanStatus.COMPLETED.value, PaymentPlanStatus.CANCELLED.value)
PAYABLE_INSTALLMENT_STATUSES = (InstallmentStatus.PENDING.value, InstallmentStatus.OVERDUE.value)
PLAN_INVOICE_REFUSED_STATUSES = (
    InvoiceStatus.DRAFT.value,
    InvoiceStatus.PAID.value,
    InvoiceStatus.VOIDED.value,
    InvoiceStatus.REFUNDED.value,
    InvoiceStatus.WRITTEN_OFF.value,
)


@dataclass(frozen=True)
class CreatedPlan:
    plan: PaymentPlan
    token: IssuedToken


@dataclass(frozen=True)
class InstallmentCheckout:
    plan: PaymentPlan
    installment: PaymentPlanInstallment
    session: CheckoutSession


class PaymentPlanService(BaseService):
    def __init__(
        self,
        session: Session,
        clock: Clock | None = None,
        policy: QuotePolicy | None = None,
    ):
        super().__init__(session, clock)
        self.policy = policy or DEFAULT_POLICY
        self._auditor = AuditorService(session, self.clock)
        self._tokens = TokenService(session, self.clock, self.policy)
        self._ledger = PaymentLedgerService(session, self.clock)

    def get_plan(self, company_id: Any, plan_id: Any, *, for_update: bool = False) -> PaymentPlan:
        return self._get_scoped(PaymentPlan, "payment_plan", company_id, plan_id, for_update=for_update)

    def create_plan(
        self,
        company_id: Any,
        invoice_id: Any,
        schedule: Sequence[Mapping[str, Any]],
        actor: Actor,
    ) -> CreatedPlan:
        """
        Split an open invoice balance into installments.

        Each schedule entry carries ``amount`` and optionally ``name`` and
        ``due_date``.  Issues a one-year portal link.
        """
        invoice = self._get_scoped(Invoice, "invoice", company_id, invoice_id)
        if invoice.status in PLAN_INVOICE_REFUSED_STATUSES:
            raise ValidationError(
                "Invoice cannot be put on a payment plan",
                [f"invoice status is '{invoice.status}'"],
            )
        installments = self._parse_schedule(schedule)
        total = sum((amount for _, amount, _ in installments), ZERO)
        if total > invoice.amount_due:
            raise ValidationError(
                "Invalid payment plan",
                [f"Installments total (${total}) exceeds amount due (${invoice.amount_due})"],
            )

        plan = PaymentPlan(
            company_id=company_id,
            customer_id=invoice.customer_id,
            invoice_id=invoice.id,
            plan_number=SequenceService(self.session).next_document_number(
                PAYMENT_PLAN_NUMBER_PREFIX, company_id, year=self.clock.today(),
            ),
            status=PaymentPlanStatus.ACTIVE.value,
            total_amount=total,
            amount_paid=round_money(ZERO),
            amount_due=total,
            created_by_id=actor.actor_id,
        )
        self.session.add(plan)
        self.session.flush()
        for position, (name, amount, due_date) in enumerate(installments, start=1):
            self.session.add(PaymentPlanInstallment(
                plan_id=plan.id,
                position=position,
                name=name or f"Payment {position}",
                amount=amount,
                due_date=due_date,
                status=InstallmentStatus.PENDING.value,
            ))
        self.session.flush()
        self.session.refresh(plan)

        token = self._tokens.issue_token(
            company_id, DocumentType.PAYMENT_PLAN, plan.id, issued_by_id=actor.actor_id,
        )
        self._auditor.record(
            "payment_plan",
            plan.id,
            "payment_plan.created",
            actor,
            company_id=company_id,
            new_state={
                "plan_number": plan.plan_number,
                "total_amount": total,
                "installments": len(installments),
            },
            related_entity_type="invoice",
            related_entity_id=invoice.id,
        )
        logger.info(
            "payment_plan_created",
            extra={"plan_id": str(plan.id), "plan_number": plan.plan_number, "total": str(total)},
        )
        return CreatedPlan(plan=plan, token=token)

    def cancel_plan(self, company_id: Any, plan_id: Any, actor: Actor, reason: str | None = None) -> PaymentPlan:
        plan = self.get_plan(company_id, plan_id, for_update=True)
        self._require_open(plan, actor)
        previous_status = plan.status
        plan.status = PaymentPlanStatus.CANCELLED.value
        for installment in plan.installments:
            if installment.status in PAYABLE_INSTALLMENT_STATUSES:
                installment.status = InstallmentStatus.CANCELLED.value
        self.session.flush()
        self._tokens.revoke_tokens(DocumentType.PAYMENT_PLAN, plan.id)
        self._auditor.record_transition(
            "payment_plan", plan.id, "payment_plan.cancelled", actor, previous_status, plan.status,
            company_id=company_id, reason=reason,
        )
        return plan

    # Gateway

    def start_checkout(
        self,
        plan: PaymentPlan,
        gateway: CheckoutGateway,
        actor: Actor,
        installment_id: Any = None,
    ) -> InstallmentCheckout:
        """Open a gateway checkout for the requested (or next payable) installment."""
        self._require_open(plan, actor)
        installment = self._select_installment(plan, installment_id)

        session = gateway.create_checkout_session(
            amount=installment.amount,
            description=f"{installment.name} - {plan.plan_number}",
            reference=plan.plan_number,
            metadata={
                "type": "payment_plan_installment",
                "payment_plan_id": str(plan.id),
                "installment_id": str(installment.id),
                "company_id": str(plan.company_id),
            },
        )
        installment.checkout_reference = session.session_id
        self.session.flush()

        self._auditor.record(
            "payment_plan",
            plan.id,
            "payment_plan.checkout_created",
            actor,
            company_id=plan.company_id,
            new_state={
                "installment_id": installment.id,
                "amount": installment.amount,
                "checkout_session_id": session.session_id,
            },
        )
        return InstallmentCheckout(plan=plan, installment=installment, session=session)

    def record_installment_payment(
        self,
        company_id: Any,
        plan_id: Any,
        installment_id: Any,
        gateway_reference: str,
        actor: Actor | None = None,
    ) -> PaymentResult:
        """
        Apply a gateway-confirmed installment payment.

        The invoice ledger is written first; a duplicate gateway reference
        leaves the plan untouched.
        """
        actor = actor or Actor.system()
        plan = self.get_plan(company_id, plan_id, for_update=True)
        installment = self._find_installment(plan, installment_id)
        if (
            installment.status not in PAYABLE_INSTALLMENT_STATUSES
            and self._ledger.find_gateway_payment(gateway_reference) is None
        ):
            raise ValidationError(
                "Installment is not payable",
                [f"installment status is '{installment.status}'"],
            )

        result = self._ledger.record_gateway_payment(
            company_id, plan.invoice_id, installment.amount, gateway_reference, actor,
        )
        if result.duplicate:
            return result

        installment.status = InstallmentStatus.PAID.value
        installment.paid_at = self.clock.now()
        plan.amount_paid = plan.amount_paid + installment.amount
        plan.amount_due = plan.total_amount - plan.amount_paid
        if not any(i.status in PAYABLE_INSTALLMENT_STATUSES for i in plan.installments):
            plan.status = PaymentPlanStatus.COMPLETED.value
        self.session.flush()

        self._auditor.record(
            "payment_plan",
            plan.id,
            "payment_plan.installment_paid",
            actor,
            company_id=company_id,
            new_state={
                "installment_id": installment.id,
                "amount": installment.amount,
                "amount_paid": plan.amount_paid,
                "amount_due": plan.amount_due,
                "status": plan.status,
            },
            related_entity_type="invoice",
            related_entity_id=plan.invoice_id,
        )
        return result

    # Helpers

    def _require_open(self, plan: PaymentPlan, actor: Actor) -> None:
        if plan.status in CLOSED_PLAN_STATUSES:
            message = f"Cannot change {plan.status} payment plan"
            self._auditor.record(
                "payment_plan",
                plan.id,
                "payment_plan.action_rejected",
                actor,
                company_id=plan.company_id,
                previous_state={"status": plan.status},
                reason=message,
            )
            raise StateConflictError(
                entity_type="payment_plan",
                entity_id=plan.id,
                current_status=plan.status,
                requested_status=None,
                reason=message,
            )

    def _select_installment(self, plan: PaymentPlan, installment_id: Any) -> PaymentPlanInstallment:
        if installment_id is None:
            for installment in plan.installments:
                if installment.status in PAYABLE_INSTALLMENT_STATUSES:
                    return installment
            raise ValidationError("No pending payment found", ["installment"])
        installment = self._find_installment(plan, installment_id)
        if installment.status not in PAYABLE_INSTALLMENT_STATUSES:
            raise ValidationError(
                "Installment is not payable",
                [f"installment status is '{installment.status}'"],
            )
        return installment

    @staticmethod
    def _find_installment(plan: PaymentPlan, installment_id: Any) -> PaymentPlanInstallment:
        for installment in plan.installments:
            if str(installment.id) == str(installment_id):
                return installment
        raise ValidationError("Unknown installment", [f"installment {installment_id} is not part of this plan"])

    @staticmethod
    def _parse_schedule(
        schedule: Sequence[Mapping[str, Any]],
    ) -> list[tuple[str | None, Decimal, date | None]]:
        if not schedule:
            raise ValidationError("Payment plan needs at least one installment", ["schedule"])
        parsed = []
        errors = []
        for index, item in enumerate(schedule):
            try:
                amount = round_money(to_decimal(item.get("amount"), f"schedule[{index}].amount"))
            except ValidationError as exc:
                errors.extend(exc.field_errors)
                continue
            if amount <= ZERO:
                errors.append(f"schedule[{index}].amount must be greater than 0")
                continue
            parsed.append((item.get("name"), amount, item.get("due_date")))
        if errors:
            raise ValidationError("Invalid payment plan schedule", errors)
        return parsed
