"""
PortalService -- unauthenticated customer actions authorized by magic links.

Responsibility:
    Serves every customer-facing entry point: estimate view, approve and
    reject; invoice view; contract view and sign; payment-plan view and
    pay.  Each request is rate limited by client IP, then authorized by
    its portal token, then handed to the owning service.

Architecture position:
    Kernel > Services -- the outermost service; a web layer maps
    InvalidAccessTokenError to ``to_response()`` and
    RateLimitExceededError to HTTP 429.

Invariants enforced:
    - Validation order: rate limit, token hash resolves (to the right
      document type), not revoked, not expired, not used (one-shot
      actions), document status permits the action, then the single
      conditional "mark used" write.
    - Every token failure raises the same InvalidAccessTokenError.  The
      real reason goes only to the audit ledger
      (``portal.<action>.<reason>``) and the log.
    - Losing the "mark used" race is reported exactly like an already
      used token.
    - Automatic contract generation on approval runs in a savepoint; its
      failure never undoes the approval.

Failure modes:
    - InvalidAccessTokenError: any token or status problem.
    - RateLimitExceededError: too many requests from one client.
    - ValidationError: malformed signature on sign.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any
from uuid import UUID

from sqlalchemy.orm import Session

from quote_kernel.domain.actor import Actor
from quote_kernel.domain.clock import Clock
from quote_kernel.domain.policy import DEFAULT_POLICY, QuotePolicy
from quote_kernel.domain.rate_limit import FixedWindowRateLimiter, InMemoryRateLimitStore
from quote_kernel.domain.statuses import (
    ContractStatus,
    EstimateStatus,
    InvoiceStatus,
    PaymentPlanStatus,
)
from quote_kernel.domain.tokens import IssuedToken, PortalAction, TokenRejection, hash_prefix
from quote_kernel.exceptions import InvalidAccessTokenError, QuoteKernelError
from quote_kernel.logging_config import LogContext, get_logger
from quote_kernel.models.contract import Contract, SignedContractSnapshot
from quote_kernel.models.estimate import Estimate, EstimateSnapshot
from quote_kernel.models.invoice import Invoice
from quote_kernel.models.payment_plan import PaymentPlan
from quote_kernel.models.portal_token import PortalToken
from quote_kernel.services.audit_service import AuditorService
from quote_kernel.services.base import BaseService
from quote_kernel.services.contract_service import ContractService, PartyDirectory
from quote_kernel.services.estimate_service import EstimateService
from quote_kernel.services.invoice_service import InvoiceService
from quote_kernel.services.notifications import CheckoutGateway, Notifier
from quote_kernel.services.payment_plan_service import InstallmentCheckout, PaymentPlanService
from quote_kernel.services.snapshot_service import SnapshotService
from quote_kernel.services.token_service import TokenService

logger = get_logger("services.portal")

# Audit rows for tokens that resolve to no document use this entity id.
UNKNOWN_DOCUMENT_ID = UUID(int=0)

# Client windows outlive any one PortalService; every default limiter counts here.
_client_windows = InMemoryRateLimitStore()

_ALLOWED_STATUSES: dict[PortalAction, frozenset[str]] = {
    PortalAction.ESTIMATE_VIEW: frozenset({
        EstimateStatus.SENT.value,
        EstimateStatus.APPROVED.value,
        EstimateStatus.REJECTED.value,
    }),
    PortalAction.ESTIMATE_APPROVE: frozenset({EstimateStatus.SENT.value}),
    PortalAction.ESTIMATE_REJECT: frozenset({EstimateStatus.SENT.value}),
    PortalAction.INVOICE_VIEW: frozenset({
        InvoiceStatus.SENT.value,
        InvoiceStatus.VIEWED.value,
        InvoiceStatus.PARTIALLY_PAID.value,
        InvoiceStatus.PAID.value,
        InvoiceStatus.OVERDUE.value,
        InvoiceStatus.DISPUTED.value,
        InvoiceStatus.REFUNDED.value,
        InvoiceStatus.WRITTEN_OFF.value,
    }),
    PortalAction.CONTRACT_VIEW: frozenset({ContractStatus.SENT.value, ContractStatus.SIGNED.value}),
    PortalAction.CONTRACT_SIGN: frozenset({ContractStatus.SENT.value}),
    PortalAction.PAYMENT_PLAN_VIEW: frozenset(s.value for s in PaymentPlanStatus),
    PortalAction.PAYMENT_PLAN_PAY: frozenset({
        PaymentPlanStatus.ACTIVE.value,
        PaymentPlanStatus.OVERDUE.value,
    }),
}

_MODELS = {
    "estimate": Estimate,
    "invoice": Invoice,
    "contract": Contract,
    "payment_plan": PaymentPlan,
}


@dataclass(frozen=True)
class PortalRequest:
    """One public request: the presented token and where it came from."""

    raw_token: str | None
    client_ip: str
    user_agent: str | None = None

    @property
    def actor(self) -> Actor:
        return Actor.customer(self.client_ip, self.user_agent)


@dataclass(frozen=True)
class EstimateView:
    estimate: Estimate
    snapshot: EstimateSnapshot | None


@dataclass(frozen=True)
class ApprovalResult:
    estimate: Estimate
    contract: Contract | None = None
    contract_token: IssuedToken | None = None


@dataclass(frozen=True)
class ContractView:
    contract: Contract
    signed_snapshot: SignedContractSnapshot | None


class PortalService(BaseService):
    """
    Token-gated customer actions.

    Contract:
        Every public method takes a PortalRequest.  Callers never learn
        why a link was refused.

    Non-goals:
        - Does NOT render pages or deliver links.
    """

    def __init__(
        self,
        session: Session,
        clock: Clock | None = None,
        policy: QuotePolicy | None = None,
        *,
        rate_limiter: FixedWindowRateLimiter | None = None,
        notifier: Notifier | None = None,
        gateway: CheckoutGateway | None = None,
        parties: PartyDirectory | None = None,
    ):
        super().__init__(session, clock)
        self.policy = policy or DEFAULT_POLICY
        self.rate_limiter = rate_limiter or FixedWindowRateLimiter(
            self.policy.portal.rate_limit_requests,
            self.policy.portal.rate_limit_window_seconds,
            self.clock,
            _client_windows,
        )
        self.gateway = gateway
        self._auditor = AuditorService(session, self.clock)
        self._tokens = TokenService(session, self.clock, self.policy)
        self._snapshots = SnapshotService(session, self.clock)
        self._estimates = EstimateService(session, self.clock, self.policy, notifier)
        self._invoices = InvoiceService(session, self.clock, self.policy, notifier)
        self._contracts = ContractService(session, self.clock, self.policy, notifier, parties)
        self._plans = PaymentPlanService(session, self.clock, self.policy)

    # Estimates

    def view_estimate(self, request: PortalRequest) -> EstimateView:
        _, estimate = self._authorize(PortalAction.ESTIMATE_VIEW, request)
        self._auditor.record(
            "estimate",
            estimate.id,
            "portal.estimate.viewed",
            request.actor,
            company_id=estimate.company_id,
            new_state={"status": estimate.status},
        )
        return EstimateView(estimate=estimate, snapshot=self._snapshots.latest_snapshot(estimate.id))

    def approve_estimate(self, request: PortalRequest) -> ApprovalResult:
        """
        sent -> approved by the customer.

        Consumes the token, writes the "approve" snapshot and, when the
        policy says so, generates and sends the contract.
        """
        _, estimate = self._authorize(PortalAction.ESTIMATE_APPROVE, request)
        estimate = self._estimates.transition_estimate(
            estimate.company_id,
            estimate.id,
            EstimateStatus.APPROVED,
            request.actor,
            audit_action="portal.estimate.approved",
        )
        if not self.policy.portal.auto_generate_contract_on_approval:
            return ApprovalResult(estimate=estimate)
        return self._auto_generate_contract(estimate, request)

    def reject_estimate(self, request: PortalRequest, reason: str | None = None) -> Estimate:
        _, estimate = self._authorize(PortalAction.ESTIMATE_REJECT, request)
        return self._estimates.transition_estimate(
            estimate.company_id,
            estimate.id,
            EstimateStatus.REJECTED,
            request.actor,
            reason=reason,
            audit_action="portal.estimate.rejected",
        )

    # Invoices

    def view_invoice(self, request: PortalRequest) -> Invoice:
        """Show an invoice; a sent or overdue invoice becomes ``viewed``."""
        _, invoice = self._authorize(PortalAction.INVOICE_VIEW, request)
        self._invoices.mark_viewed(invoice, request.actor)
        self._auditor.record(
            "invoice",
            invoice.id,
            "portal.invoice.viewed",
            request.actor,
            company_id=invoice.company_id,
            new_state={"status": invoice.status},
        )
        return invoice

    # Contracts

    def view_contract(self, request: PortalRequest) -> ContractView:
        _, contract = self._authorize(PortalAction.CONTRACT_VIEW, request)
        self._auditor.record(
            "contract",
            contract.id,
            "portal.contract.viewed",
            request.actor,
            company_id=contract.company_id,
            new_state={"status": contract.status},
        )
        return ContractView(
            contract=contract,
            signed_snapshot=self._snapshots.get_signed_contract_snapshot(contract.id),
        )

    def sign_contract(
        self,
        request: PortalRequest,
        signer_name: str,
        *,
        signature_data: str | None = None,
        signer_initials: str | None = None,
    ) -> Contract:
        # A malformed signature must not burn the link.
        ContractService.validate_signature(signer_name, signature_data, signer_initials)
        _, contract = self._authorize(PortalAction.CONTRACT_SIGN, request)
        return self._contracts.sign_contract(
            contract,
            signer_name,
            request.actor,
            signature_data=signature_data,
            signer_initials=signer_initials,
        ).contract

    # Payment plans

    def view_payment_plan(self, request: PortalRequest) -> PaymentPlan:
        _, plan = self._authorize(PortalAction.PAYMENT_PLAN_VIEW, request)
        self._auditor.record(
            "payment_plan",
            plan.id,
            "portal.payment_plan.viewed",
            request.actor,
            company_id=plan.company_id,
            new_state={"status": plan.status, "amount_due": plan.amount_due},
        )
        return plan

    def pay_installment(self, request: PortalRequest, installment_id: Any = None) -> InstallmentCheckout:
        """Start a gateway checkout for the chosen or next pending installment."""
        if self.gateway is None:
            raise QuoteKernelError("No checkout gateway configured")
        _, plan = self._authorize(PortalAction.PAYMENT_PLAN_PAY, request)
        return self._plans.start_checkout(plan, self.gateway, request.actor, installment_id)

    # Authorization

    def _authorize(self, action: PortalAction, request: PortalRequest) -> tuple[PortalToken, Any]:
        """
        Run the full validation order for one request.

        Returns the token and its (tenant-checked) document.  Raises
        InvalidAccessTokenError for every refusal after auditing the
        real reason.
        """
        self.rate_limiter.check(request.client_ip)
        LogContext.set(client_ip=request.client_ip)

        resolution = self._tokens.resolve_token(
            request.raw_token, action.document_type, one_shot=action.one_shot,
        )
        if not resolution.ok:
            self._refuse(action, request, resolution.rejection, resolution.token)

        token = resolution.token
        LogContext.set(company_id=token.company_id, entity_id=token.document_id)
        document = self._load_document(token)
        if document is None or document.company_id != token.company_id:
            self._refuse(action, request, TokenRejection.INVALID, token)

        if document.status not in _ALLOWED_STATUSES[action]:
            self._refuse(
                action,
                request,
                TokenRejection.INVALID_STATUS,
                token,
                detail=f"Cannot {action.value} {token.document_type} in status: {document.status}",
            )

        if action.one_shot and not self._tokens.mark_token_used(token):
            self._refuse(action, request, TokenRejection.RACE_CONDITION, token)

        logger.info(
            "portal_access_granted",
            extra={
                "action": action.value,
                "document_type": token.document_type,
                "document_id": str(token.document_id),
                "token_hash_prefix": hash_prefix(token.token_hash),
            },
        )
        return token, document

    def _load_document(self, token: PortalToken) -> Any:
        model = _MODELS[token.document_type]
        return self.session.get(
            model, token.document_id, populate_existing=True, with_for_update=True,
        )

    def _refuse(
        self,
        action: PortalAction,
        request: PortalRequest,
        rejection: TokenRejection,
        token: PortalToken | None,
        detail: str | None = None,
    ) -> None:
        entity_id = token.document_id if token is not None else UNKNOWN_DOCUMENT_ID
        self._auditor.record(
            action.document_type.value,
            entity_id,
            action.audit_action(rejection.value),
            request.actor,
            company_id=token.company_id if token is not None else None,
            new_state={
                "token_hash_prefix": hash_prefix(token.token_hash) if token is not None else None,
            },
            reason=detail or _REJECTION_REASONS[rejection],
        )
        logger.warning(
            "portal_token_rejected",
            extra={
                "action": action.value,
                "rejection": rejection.value,
                "document_id": str(entity_id),
            },
        )
        raise InvalidAccessTokenError()

    def _auto_generate_contract(self, estimate: Estimate, request: PortalRequest) -> ApprovalResult:
        """Generate and send the contract inside a savepoint; failures are logged."""
        try:
            with self.session.begin_nested():
                contract = self._contracts.generate_contract(
                    estimate.company_id, estimate.id, Actor.system(),
                )
                sent = self._contracts.send_contract(estimate.company_id, contract.id, Actor.system())
                self._auditor.record(
                    "contract",
                    contract.id,
                    "contract.auto_generated_on_approval",
                    request.actor,
                    company_id=estimate.company_id,
                    new_state={
                        "estimate_id": estimate.id,
                        "contract_number": contract.contract_number,
                    },
                    related_entity_type="estimate",
                    related_entity_id=estimate.id,
                )
        except QuoteKernelError:
            logger.warning(
                "contract_auto_generation_failed",
                extra={"estimate_id": str(estimate.id)},
                exc_info=True,
            )
            return ApprovalResult(estimate=estimate)
        return ApprovalResult(estimate=estimate, contract=sent.contract, contract_token=sent.token)


_REJECTION_REASONS: dict[TokenRejection, str] = {
    TokenRejection.INVALID: "Unknown token",
    TokenRejection.EXPIRED: "Token expired",
    TokenRejection.USED: "Token already used",
    TokenRejection.REVOKED: "Token revoked",
    TokenRejection.INVALID_STATUS: "Document status does not permit this action",
    TokenRejection.RACE_CONDITION: "Token marked used by concurrent request",
}


def reset_portal_rate_limits() -> None:
    """Forget every client window.  FOR TESTING ONLY."""
    _client_windows.clear()


__all__: list[str] = [
    "ApprovalResult",
    "ContractView",
    "EstimateView",
    "PortalRequest",
    "PortalService",
    "UNKNOWN_DOCUMENT_ID",
    "reset_portal_rate_limits",
]

