"""
ContractService -- service agreements generated from approved estimates.

Responsibility:
    Renders a contract from an approved estimate's latest snapshot, sends
    it (portal link + notification), voids or expires it, and signs it
    on behalf of the portal.

Architecture position:
    Kernel > Services -- called by the host (generate, send, void,
    expire) and by PortalService (auto-generation on approval, signing).

Invariants enforced:
    - Signing writes the SignedContractSnapshot before the contract row
      is marked signed and locked, in the same transaction.
    - ``signed`` is reachable only through ``sign_contract`` (SIGN path).
    - Re-sending is refused from signed, voided and expired.
    - Content edits are refused once the contract has left draft
      (ContractLockedError) and blocked at the ORM once it is locked.

Failure modes:
    - ValidationError: estimate not approved or never priced, missing
      signer name or signature, missing void reason.
    - StateConflictError / ContractLockedError: refused transition or edit.

Audit relevance:
    contract.generated, contract.sent, contract.voided, contract.expired,
    contract.signed (portal.contract.signed when the customer signs),
    contract.updated and the refusals.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Mapping, Protocol

from sqlalchemy import select
from sqlalchemy.orm import Session

from quote_kernel.domain.actor import Actor
from quote_kernel.domain.clock import Clock
from quote_kernel.domain.contract_content import (
    ContractParties,
    ContractTemplate,
    render_contract,
)
from quote_kernel.domain.policy import DEFAULT_POLICY, QuotePolicy
from quote_kernel.domain.statuses import (
    ContractStatus,
    DocumentType,
    EstimateStatus,
)
from quote_kernel.domain.tokens import IssuedToken
from quote_kernel.domain.workflow import (
    CONTRACT_WORKFLOW,
    TransitionPath,
    check_transition,
)
from quote_kernel.exceptions import ContractLockedError, ValidationError
from quote_kernel.logging_config import get_logger
from quote_kernel.models.contract import Contract, SignedContractSnapshot
from quote_kernel.models.estimate import Estimate
from quote_kernel.models.job import CompanySettings
from quote_kernel.services.audit_service import AuditorService
from quote_kernel.services.base import BaseService
from quote_kernel.services.notifications import NullNotifier, Notifier, notify_safely
from quote_kernel.services.sequence_service import SequenceService
from quote_kernel.services.snapshot_service import SnapshotService
from quote_kernel.services.token_service import TokenService

logger = get_logger("services.contract")

CONTRACT_NUMBER_PREFIX = "C"

EDITABLE_SECTIONS = ("header_content", "terms_content", "footer_content")


class PartyDirectory(Protocol):
    """Source of the customer and company details printed on a contract."""

    def parties_for(self, estimate: Estimate) -> ContractParties: ...


class SettingsPartyDirectory:
    """Company name from CompanySettings; customer details left generic."""

    def __init__(self, session: Session):
        self._session = session

    def parties_for(self, estimate: Estimate) -> ContractParties:
        settings = self._session.execute(
            select(CompanySettings).where(CompanySettings.company_id == estimate.company_id)
        ).scalar_one_or_none()
        return ContractParties(
            company_name=settings.company_name if settings is not None and settings.company_name else "Your Contractor",
            customer_name="Customer",
            property_address=estimate.job_address,
        )


@dataclass(frozen=True)
class SentContract:
    contract: Contract
    token: IssuedToken


@dataclass(frozen=True)
class SignedContract:
    contract: Contract
    snapshot: SignedContractSnapshot


class ContractService(BaseService):
    """
    Contract generation, delivery and signing.

    Contract:
        Methods take ``company_id`` (or an already-loaded, tenant-checked
        contract) and flush without committing.

    Non-goals:
        - Token validation for signing happens in PortalService.
    """

    def __init__(
        self,
        session: Session,
        clock: Clock | None = None,
        policy: QuotePolicy | None = None,
        notifier: Notifier | None = None,
        parties: PartyDirectory | None = None,
    ):
        super().__init__(session, clock)
        self.policy = policy or DEFAULT_POLICY
        self.notifier = notifier or NullNotifier()
        self.parties = parties or SettingsPartyDirectory(session)
        self._auditor = AuditorService(session, self.clock)
        self._snapshots = SnapshotService(session, self.clock)
        self._tokens = TokenService(session, self.clock, self.policy)

    def get_contract(self, company_id: Any, contract_id: Any, *, for_update: bool = False) -> Contract:
        return self._get_scoped(Contract, "contract", company_id, contract_id, for_update=for_update)

    def contracts_for_estimate(self, company_id: Any, estimate_id: Any) -> list[Contract]:
        return list(
            self.session.execute(
                select(Contract)
                .where(Contract.company_id == company_id, Contract.estimate_id == estimate_id)
                .order_by(Contract.contract_number)
            ).scalars().all()
        )

    def get_signed_snapshot(self, company_id: Any, contract_id: Any) -> SignedContractSnapshot:
        contract = self.get_contract(company_id, contract_id)
        if contract.status != ContractStatus.SIGNED and contract.locked_at is None:
            raise ValidationError("Contract has not been signed", ["status"])
        snapshot = self._snapshots.get_signed_contract_snapshot(contract.id)
        if snapshot is None:
            raise ValidationError("Signed snapshot not found", ["signed_snapshot"])
        return snapshot

    # Generation

    def generate_contract(
        self,
        company_id: Any,
        estimate_id: Any,
        actor: Actor,
        *,
        template: ContractTemplate | None = None,
        parties: ContractParties | None = None,
    ) -> Contract:
        """
        Render a draft contract from the estimate's latest snapshot.

        Raises:
            ValidationError: estimate is not approved or has no snapshot.
        """
        estimate = self._get_scoped(Estimate, "estimate", company_id, estimate_id)
        if estimate.status != EstimateStatus.APPROVED:
            raise ValidationError(
                "Contracts can only be generated from approved estimates",
                [f"estimate status is '{estimate.status}'"],
            )
        snapshot = self._snapshots.latest_snapshot(estimate.id)
        if snapshot is None:
            raise ValidationError("Estimate has no pricing snapshot", ["estimate_snapshot"])

        today = self.clock.today()
        contract_number = SequenceService(self.session).next_document_number(
            CONTRACT_NUMBER_PREFIX, company_id, year=today,
        )
        estimate_data = {
            "estimate_id": str(estimate.id),
            "estimate_number": estimate.estimate_number,
            "snapshot_version": snapshot.snapshot_version,
            "subtotal": str(snapshot.subtotal),
            "tax_rate": str(snapshot.tax_rate),
            "tax_amount": str(snapshot.tax_amount),
            "total": str(snapshot.total),
            "work_items": list(snapshot.work_items_snapshot),
            "approved_at": estimate.approved_at.isoformat() if estimate.approved_at else None,
        }
        content = render_contract(
            parties or self.parties.parties_for(estimate),
            estimate.estimate_number,
            contract_number,
            snapshot.work_items_snapshot,
            estimate_data,
            today,
            template,
        )

        contract = Contract(
            company_id=company_id,
            customer_id=estimate.customer_id,
            estimate_id=estimate.id,
            estimate_snapshot_id=snapshot.id,
            contract_number=contract_number,
            status=ContractStatus.DRAFT.value,
            header_content=content.header,
            work_items_content=content.work_items,
            terms_content=content.terms,
            footer_content=content.footer,
            estimate_snapshot=estimate_data,
            created_by_id=actor.actor_id,
        )
        self.session.add(contract)
        self.session.flush()

        self._auditor.record(
            "contract",
            contract.id,
            "contract.generated",
            actor,
            company_id=company_id,
            new_state={
                "status": contract.status,
                "contract_number": contract_number,
                "snapshot_version": snapshot.snapshot_version,
            },
            related_entity_type="estimate",
            related_entity_id=estimate.id,
        )
        logger.info(
            "contract_generated",
            extra={
                "contract_id": str(contract.id),
                "contract_number": contract_number,
                "estimate_id": str(estimate.id),
            },
        )
        return contract

    def update_content(
        self,
        company_id: Any,
        contract_id: Any,
        sections: Mapping[str, str],
        actor: Actor,
    ) -> Contract:
        """Edit header, terms or footer text while the contract is a draft."""
        unknown = sorted(set(sections) - set(EDITABLE_SECTIONS))
        if unknown:
            raise ValidationError("Unknown contract sections", [f"{key} cannot be edited" for key in unknown])

        contract = self.get_contract(company_id, contract_id, for_update=True)
        if contract.status != ContractStatus.DRAFT or contract.is_locked:
            self._auditor.record(
                "contract",
                contract.id,
                "contract.update_rejected",
                actor,
                company_id=company_id,
                previous_state={"status": contract.status},
                new_state={"fields": sorted(sections)},
                reason=f"Contract is '{contract.status}'",
            )
            raise ContractLockedError(contract.id, contract.status)

        previous = {key: getattr(contract, key) for key in sections}
        for key, value in sections.items():
            setattr(contract, key, value)
        self.session.flush()
        self._auditor.record(
            "contract",
            contract.id,
            "contract.updated",
            actor,
            company_id=company_id,
            previous_state=previous,
            new_state=dict(sections),
        )
        return contract

    # Lifecycle

    def send_contract(self, company_id: Any, contract_id: Any, actor: Actor) -> SentContract:
        """
        draft -> sent, or re-send a sent contract with a fresh link.

        Re-sending revokes the earlier link.
        """
        contract = self.get_contract(company_id, contract_id, for_update=True)
        previous_status = contract.status
        if contract.status != ContractStatus.SENT:
            self._check(contract, ContractStatus.SENT, actor)
            contract.status = ContractStatus.SENT.value
            contract.sent_at = self.clock.now()
            self.session.flush()

        token = self._tokens.issue_token(
            company_id, DocumentType.CONTRACT, contract.id, issued_by_id=actor.actor_id,
        )
        self._auditor.record(
            "contract",
            contract.id,
            "contract.sent",
            actor,
            company_id=company_id,
            previous_state={"status": previous_status},
            new_state={"status": contract.status, "resent": previous_status == ContractStatus.SENT.value},
        )
        notify_safely(
            self.notifier.send_contract_link,
            contract,
            token.raw_token,
            channel="contract_link",
            document_id=contract.id,
        )
        return SentContract(contract=contract, token=token)

    def void_contract(self, company_id: Any, contract_id: Any, actor: Actor, reason: str) -> Contract:
        if not reason or not reason.strip():
            raise ValidationError("Void reason is required", ["reason is required"])
        contract = self.get_contract(company_id, contract_id, for_update=True)
        previous_status = contract.status
        self._check(contract, ContractStatus.VOIDED, actor)

        contract.status = ContractStatus.VOIDED.value
        contract.voided_at = self.clock.now()
        contract.void_reason = reason.strip()
        self.session.flush()
        self._tokens.revoke_tokens(DocumentType.CONTRACT, contract.id)

        self._auditor.record_transition(
            "contract", contract.id, "contract.voided", actor, previous_status, contract.status,
            company_id=company_id, reason=reason.strip(),
        )
        return contract

    def expire_contracts(self, company_id: Any) -> list[Contract]:
        """Expire sent contracts whose signing window has elapsed."""
        cutoff = self.clock.now() - self.policy.tokens.for_document(DocumentType.CONTRACT)
        stale = self.session.execute(
            select(Contract)
            .where(
                Contract.company_id == company_id,
                Contract.status == ContractStatus.SENT.value,
                Contract.sent_at.is_not(None),
                Contract.sent_at <= cutoff,
            )
            .order_by(Contract.contract_number)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).scalars().all()

        actor = Actor.system()
        for contract in stale:
            self._check(contract, ContractStatus.EXPIRED, actor)
            contract.status = ContractStatus.EXPIRED.value
            self.session.flush()
            self._tokens.revoke_tokens(DocumentType.CONTRACT, contract.id)
            self._auditor.record_transition(
                "contract", contract.id, "contract.expired", actor,
                ContractStatus.SENT.value, contract.status, company_id=company_id,
            )
        if stale:
            logger.info("contracts_expired", extra={"company_id": str(company_id), "count": len(stale)})
        return list(stale)

    def sign_contract(
        self,
        contract: Contract,
        signer_name: str,
        actor: Actor,
        *,
        signature_data: str | None = None,
        signer_initials: str | None = None,
    ) -> SignedContract:
        """
        sent -> signed.

        The signed snapshot is written first; the contract row is then
        marked signed and locked.

        Raises:
            ValidationError: no signer name, or neither a drawn signature
                nor typed initials.
            StateConflictError: contract is not ``sent``.
        """
        self.validate_signature(signer_name, signature_data, signer_initials)
        previous_status = contract.status
        self._check(contract, ContractStatus.SIGNED, actor, via=TransitionPath.SIGN)

        signed_at = self.clock.now()
        snapshot = self._snapshots.create_signed_contract_snapshot(
            contract,
            signer_name.strip(),
            signed_at,
            actor,
            signature_data=signature_data or None,
            signer_initials=signer_initials or None,
        )

        contract.status = ContractStatus.SIGNED.value
        contract.signed_at = signed_at
        contract.locked_at = signed_at
        contract.signer_name = signer_name.strip()
        contract.signature_data = signature_data or None
        contract.signer_initials = signer_initials or None
        contract.signer_ip = actor.ip_address
        contract.signer_user_agent = actor.user_agent
        self.session.flush()

        self._auditor.record(
            "contract",
            contract.id,
            "portal.contract.signed" if actor.is_customer else "contract.signed",
            actor,
            company_id=contract.company_id,
            previous_state={"status": previous_status},
            new_state={
                "status": contract.status,
                "signer_name": contract.signer_name,
                "signer_initials": contract.signer_initials,
                "content_hash": snapshot.content_hash,
            },
        )
        logger.info(
            "contract_signed",
            extra={
                "contract_id": str(contract.id),
                "contract_number": contract.contract_number,
                "content_hash": snapshot.content_hash,
            },
        )
        return SignedContract(contract=contract, snapshot=snapshot)

    @staticmethod
    def validate_signature(
        signer_name: str | None,
        signature_data: str | None,
        signer_initials: str | None,
    ) -> None:
        errors = []
        if not signer_name or not signer_name.strip():
            errors.append("Signer name is required")
        if not (signature_data or (signer_initials and signer_initials.strip())):
            errors.append("A signature (drawn or typed initials) is required")
        if errors:
            raise ValidationError("Invalid signature", errors)

    def _check(
        self,
        contract: Contract,
        requested: ContractStatus,
        actor: Actor,
        via: TransitionPath = TransitionPath.DIRECT,
    ) -> None:
        decision = check_transition(CONTRACT_WORKFLOW, contract.status, requested, via)
        if not decision.allowed:
            self._auditor.record_denial(
                "contract", contract.id, decision, actor, company_id=contract.company_id,
            )
            decision.raise_if_denied("contract", contract.id)
