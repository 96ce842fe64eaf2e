"""
SnapshotService -- append-only pricing and legal snapshots.

Responsibility:
    Writes EstimateSnapshot rows (one per pricing- or status-affecting
    estimate event) and the SignedContractSnapshot taken at signing.
    Nothing here ever updates an existing snapshot.

Architecture position:
    Kernel > Services -- called by EstimateService, RuleEngineService,
    PortalService and ContractService.

Invariants enforced:
    - ``snapshot_version`` strictly increases per estimate and is never
      reused (per-estimate locked counter).
    - A "supersede" snapshot carries the parent's last-known pricing
      forward unchanged (``SnapshotPricing.from_snapshot``).
    - The signed-contract snapshot copies the four content sections
      verbatim and records their hash.

Audit relevance:
    Snapshots are the system of record for what was priced and signed.
    AuditLogEntry rows reference the same transitions.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Sequence

from sqlalchemy import select

from quote_kernel.db.types import HUNDRED, ZERO, round_money, round_rate, to_decimal
from quote_kernel.domain.actor import Actor
from quote_kernel.domain.pricing_engine import PricingResult, SimpleTotals
from quote_kernel.domain.rules import RulePricing
from quote_kernel.domain.statuses import SnapshotTrigger, status_value
from quote_kernel.logging_config import get_logger
from quote_kernel.models.contract import Contract, SignedContractSnapshot
from quote_kernel.models.estimate import Estimate, EstimateSnapshot
from quote_kernel.services.base import BaseService
from quote_kernel.services.sequence_service import SequenceService
from quote_kernel.utils.hashing import hash_contract_content, to_jsonable

logger = get_logger("services.snapshot")


@dataclass(frozen=True)
class SnapshotPricing:
    """Pricing figures in the shape an EstimateSnapshot stores them."""

    subtotal: Decimal
    tax_rate: Decimal
    tax_amount: Decimal
    total: Decimal
    breakdown: dict[str, Any] = field(default_factory=dict)
    margin_percentage: Decimal | None = None
    floor_violation: bool = False
    is_override: bool = False
    override_multiplier: Decimal | None = None
    override_reason: str | None = None

    @classmethod
    def from_pricing_result(cls, result: PricingResult) -> SnapshotPricing:
        return cls(
            subtotal=result.subtotal,
            tax_rate=result.tax_rate,
            tax_amount=result.tax_amount,
            total=result.total,
            breakdown=result.to_dict(),
            margin_percentage=result.margin_percentage,
            floor_violation=result.floor_violation,
            is_override=result.is_override,
            override_multiplier=result.override_multiplier,
            override_reason=result.override_reason,
        )

    @classmethod
    def from_rule_pricing(cls, pricing: RulePricing) -> SnapshotPricing:
        return cls(
            subtotal=pricing.subtotal_after_adjustments,
            tax_rate=round_rate(pricing.tax_percentage / HUNDRED),
            tax_amount=pricing.tax_amount,
            total=pricing.total,
            breakdown=pricing.to_dict(),
            margin_percentage=pricing.margin_percentage,
            floor_violation=pricing.floor_violation,
        )

    @classmethod
    def from_simple_totals(cls, totals: SimpleTotals, tax_rate: Any) -> SnapshotPricing:
        return cls(
            subtotal=totals.subtotal,
            tax_rate=round_rate(to_decimal(tax_rate, "tax_rate")),
            tax_amount=totals.tax_amount,
            total=totals.total,
            breakdown={
                "subtotal": str(totals.subtotal),
                "tax_amount": str(totals.tax_amount),
                "total": str(totals.total),
            },
        )

    @classmethod
    def from_snapshot(cls, snapshot: EstimateSnapshot) -> SnapshotPricing:
        return cls(
            subtotal=snapshot.subtotal,
            tax_rate=snapshot.tax_rate,
            tax_amount=snapshot.tax_amount,
            total=snapshot.total,
            breakdown=dict(snapshot.pricing_breakdown),
            margin_percentage=snapshot.margin_percentage,
            floor_violation=snapshot.floor_violation,
            is_override=snapshot.is_override,
            override_multiplier=snapshot.override_multiplier,
            override_reason=snapshot.override_reason,
        )

    @classmethod
    def empty(cls, tax_rate: Any = ZERO) -> SnapshotPricing:
        return cls(
            subtotal=round_money(ZERO),
            tax_rate=round_rate(to_decimal(tax_rate, "tax_rate")),
            tax_amount=round_money(ZERO),
            total=round_money(ZERO),
        )


class SnapshotService(BaseService):
    """
    Append-only snapshot writer.

    Non-goals:
        - Does NOT check transitions.  Callers decide the status change
          and pass both sides in.
    """

    def create_snapshot(
        self,
        estimate: Estimate,
        trigger_action: SnapshotTrigger,
        pricing: SnapshotPricing,
        actor: Actor,
        *,
        previous_status: str | None,
        new_status: str,
        work_items: Sequence[dict[str, Any]] | None = None,
        cost_profile_snapshot_id: Any = None,
    ) -> EstimateSnapshot:
        """
        Append one EstimateSnapshot and point the estimate at it.

        Postconditions:
            - The new row's ``snapshot_version`` is one more than the
              previous snapshot of this estimate (1 for the first).
            - ``estimate.latest_snapshot_id`` and the cached totals refer
              to the new snapshot.
        """
        version = SequenceService(self.session).next_value(f"estimate_snapshot:{estimate.id}")

        snapshot = EstimateSnapshot(
            estimate_id=estimate.id,
            company_id=estimate.company_id,
            snapshot_version=version,
            trigger_action=status_value(trigger_action),
            cost_profile_snapshot_id=cost_profile_snapshot_id,
            work_items_snapshot=to_jsonable(list(work_items if work_items is not None else estimate.work_items)),
            pricing_breakdown=to_jsonable(pricing.breakdown),
            subtotal=pricing.subtotal,
            tax_rate=pricing.tax_rate,
            tax_amount=pricing.tax_amount,
            total=pricing.total,
            margin_percentage=pricing.margin_percentage,
            is_override=pricing.is_override,
            override_multiplier=pricing.override_multiplier,
            override_reason=pricing.override_reason,
            floor_violation=pricing.floor_violation,
            previous_status=None if previous_status is None else status_value(previous_status),
            new_status=status_value(new_status),
            actor_id=actor.actor_id,
            actor_type=status_value(actor.actor_type),
            ip_address=actor.ip_address,
            user_agent=actor.user_agent,
            created_at=self.clock.now(),
        )
        self.session.add(snapshot)
        self.session.flush()

        estimate.latest_snapshot_id = snapshot.id
        estimate.subtotal = pricing.subtotal
        estimate.tax_amount = pricing.tax_amount
        estimate.total = pricing.total
        self.session.flush()

        logger.info(
            "estimate_snapshot_created",
            extra={
                "estimate_id": str(estimate.id),
                "snapshot_version": version,
                "trigger_action": snapshot.trigger_action,
                "floor_violation": snapshot.floor_violation,
                "is_override": snapshot.is_override,
            },
        )
        return snapshot

    def latest_snapshot(self, estimate_id: Any) -> EstimateSnapshot | None:
        return self.session.execute(
            select(EstimateSnapshot)
            .where(EstimateSnapshot.estimate_id == estimate_id)
            .order_by(EstimateSnapshot.snapshot_version.desc())
            .limit(1)
        ).scalar_one_or_none()

    def list_snapshots(self, estimate_id: Any) -> list[EstimateSnapshot]:
        return list(
            self.session.execute(
                select(EstimateSnapshot)
                .where(EstimateSnapshot.estimate_id == estimate_id)
                .order_by(EstimateSnapshot.snapshot_version)
            ).scalars().all()
        )

    def create_signed_contract_snapshot(
        self,
        contract: Contract,
        signer_name: str,
        signed_at: datetime,
        actor: Actor,
        *,
        signature_data: str | None = None,
        signer_initials: str | None = None,
    ) -> SignedContractSnapshot:
        """
        Freeze a contract's content and signature.

        Must run before the contract row is marked signed.
        """
        snapshot = SignedContractSnapshot(
            contract_id=contract.id,
            company_id=contract.company_id,
            contract_number=contract.contract_number,
            header_content=contract.header_content,
            work_items_content=contract.work_items_content,
            terms_content=contract.terms_content,
            footer_content=contract.footer_content,
            estimate_snapshot=to_jsonable(contract.estimate_snapshot),
            content_hash=hash_contract_content(
                contract.header_content,
                contract.work_items_content,
                contract.terms_content,
                contract.footer_content,
            ),
            signer_name=signer_name,
            signature_data=signature_data,
            signer_initials=signer_initials,
            signer_ip=actor.ip_address,
            signer_user_agent=actor.user_agent,
            signed_at=signed_at,
            created_at=self.clock.now(),
        )
        self.session.add(snapshot)
        self.session.flush()

        logger.info(
            "signed_contract_snapshot_created",
            extra={
                "contract_id": str(contract.id),
                "contract_number": contract.contract_number,
                "content_hash": snapshot.content_hash,
            },
        )
        return snapshot

    def get_signed_contract_snapshot(self, contract_id: Any) -> SignedContractSnapshot | None:
        return self.session.execute(
            select(SignedContractSnapshot)
            .where(SignedContractSnapshot.contract_id == contract_id)
        ).scalar_one_or_none()
