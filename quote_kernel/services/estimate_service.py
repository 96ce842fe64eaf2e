"""
EstimateService -- estimate authoring, sending and change orders.

Responsibility:
    Creates draft estimates, applies PATCH-style edits while the estimate
    is still a draft, prices work items against the tenant's latest cost
    profile, sends estimates (snapshot + portal link + notification) and
    creates change orders that supersede their parent.

Architecture position:
    Kernel > Services -- orchestrates the pricing engine, the estimate
    workflow guard, SnapshotService, TokenService and AuditorService.

Invariants enforced:
    - Customer-facing fields change only while ``status == "draft"``; any
      other status raises EstimateLockedError after auditing the attempt.
    - Every status change is checked against ESTIMATE_WORKFLOW first.
    - ``superseded`` is reached only through ``create_change_order``.
    - Sending and change orders each write exactly one snapshot per
      estimate they touch.

Failure modes:
    - ValidationError: malformed work items, no cost profile, an override
      without a reason.
    - StateConflictError / EstimateLockedError: refused transition or edit.
    - NotFoundError: estimate absent or owned by another tenant.

Audit relevance:
    estimate.created, estimate.updated, estimate.sent,
    estimate.change_order.created, estimate.superseded and the refusals
    (estimate.update_rejected, estimate.transition_rejected).
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from typing import Any, Mapping, Sequence

from sqlalchemy import select
from sqlalchemy.orm import Session

from quote_kernel.db.types import ZERO, round_rate, to_decimal
from quote_kernel.domain.actor import Actor
from quote_kernel.domain.changes import FieldChanges
from quote_kernel.domain.clock import Clock
from quote_kernel.domain.policy import DEFAULT_POLICY, QuotePolicy
from quote_kernel.domain.pricing_engine import (
    ONE,
    PricingResult,
    parse_work_items,
    price_estimate,
)
from quote_kernel.domain.statuses import (
    DocumentType,
    EstimateStatus,
    SnapshotTrigger,
    status_value,
)
from quote_kernel.domain.tokens import IssuedToken
from quote_kernel.domain.workflow import (
    ESTIMATE_WORKFLOW,
    TransitionPath,
    check_transition,
)
from quote_kernel.exceptions import EstimateLockedError, ValidationError
from quote_kernel.logging_config import get_logger
from quote_kernel.models.cost_profile import CostProfileSnapshot
from quote_kernel.models.estimate import Estimate, EstimateSnapshot
from quote_kernel.services.audit_service import AuditorService
from quote_kernel.services.base import BaseService
from quote_kernel.services.cost_profile_service import CostProfileService
from quote_kernel.services.notifications import NullNotifier, Notifier, notify_safely
from quote_kernel.services.sequence_service import SequenceService
from quote_kernel.services.snapshot_service import SnapshotPricing, SnapshotService
from quote_kernel.services.token_service import TokenService

logger = get_logger("services.estimate")

ESTIMATE_NUMBER_PREFIX = "EST"

EDITABLE_FIELDS = (
    "customer_id",
    "title",
    "description",
    "job_address",
    "valid_until",
    "work_items",
    "tax_rate",
)
NON_NULL_FIELDS = ("customer_id", "work_items", "tax_rate")


@dataclass(frozen=True)
class SentEstimate:
    estimate: Estimate
    snapshot: EstimateSnapshot
    token: IssuedToken
    pricing: PricingResult


@dataclass(frozen=True)
class ChangeOrderResult:
    change_order: Estimate
    parent: Estimate
    snapshot: EstimateSnapshot
    parent_snapshot: EstimateSnapshot
    token: IssuedToken
    pricing: PricingResult


def _normalize_override(override_multiplier: Any, override_reason: str | None) -> str | None:
    if override_multiplier is None:
        return override_reason
    if not override_reason or not override_reason.strip():
        raise ValidationError(
            "Override reason is required when using override multiplier",
            ["override_reason is required"],
        )
    return override_reason


class EstimateService(BaseService):
    """
    Internal (authenticated user) estimate operations.

    Contract:
        Methods take ``company_id`` and load rows tenant-scoped.  All
        writes are flushed, never committed.

    Non-goals:
        - Customer-side approve/reject lives in PortalService.
        - Rule-engine pricing lives in RuleEngineService.
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
        self._cost_profiles = CostProfileService(session, self.clock, self.policy)

    # Lookups

    def get_estimate(self, company_id: Any, estimate_id: Any, *, for_update: bool = False) -> Estimate:
        return self._get_scoped(Estimate, "estimate", company_id, estimate_id, for_update=for_update)

    def list_change_orders(self, company_id: Any, estimate_id: Any) -> list[Estimate]:
        return list(
            self.session.execute(
                select(Estimate)
                .where(
                    Estimate.company_id == company_id,
                    Estimate.parent_estimate_id == estimate_id,
                )
                .order_by(Estimate.version)
            ).scalars().all()
        )

    # Authoring

    def create_estimate(
        self,
        company_id: Any,
        customer_id: Any,
        actor: Actor,
        *,
        title: str | None = None,
        description: str | None = None,
        job_address: str | None = None,
        valid_until: date | None = None,
        work_items: Sequence[Mapping[str, Any]] = (),
        tax_rate: Any = 0,
    ) -> Estimate:
        """
        Create a draft estimate with a fresh EST number.

        Raises:
            ValidationError: malformed work items or tax rate.
        """
        items = parse_work_items(list(work_items))
        estimate = Estimate(
            company_id=company_id,
            customer_id=customer_id,
            estimate_number=SequenceService(self.session).next_document_number(
                ESTIMATE_NUMBER_PREFIX, company_id,
            ),
            title=title,
            description=description,
            job_address=job_address,
            valid_until=valid_until,
            status=EstimateStatus.DRAFT.value,
            work_items=[item.to_dict() for item in items],
            tax_rate=self._tax_rate(tax_rate),
            version=1,
            created_by_id=actor.actor_id,
        )
        self.session.add(estimate)
        self.session.flush()

        self._auditor.record(
            "estimate",
            estimate.id,
            "estimate.created",
            actor,
            company_id=company_id,
            new_state={"status": estimate.status, "estimate_number": estimate.estimate_number},
        )
        logger.info(
            "estimate_created",
            extra={
                "estimate_id": str(estimate.id),
                "estimate_number": estimate.estimate_number,
                "work_item_count": len(items),
            },
        )
        return estimate

    def update_draft(
        self,
        company_id: Any,
        estimate_id: Any,
        changes: FieldChanges | Mapping[str, Any],
        actor: Actor,
    ) -> Estimate:
        """
        Apply a PATCH to a draft estimate.

        Only the fields present in ``changes`` are touched.  A field mapped
        to None is cleared (refused for NON_NULL_FIELDS).

        Raises:
            EstimateLockedError: the estimate is not a draft.  The attempt
                is audited first.
            ValidationError: unknown field, bad work items or tax rate.
        """
        payload = changes.values if isinstance(changes, FieldChanges) else changes
        changes = FieldChanges.from_payload(payload, EDITABLE_FIELDS, NON_NULL_FIELDS)

        estimate = self.get_estimate(company_id, estimate_id, for_update=True)
        if not estimate.is_draft:
            self._auditor.record(
                "estimate",
                estimate.id,
                "estimate.update_rejected",
                actor,
                company_id=company_id,
                previous_state={"status": estimate.status},
                new_state={"fields": sorted(changes)},
                reason="Only draft estimates can be edited",
            )
            logger.warning(
                "estimate_update_rejected",
                extra={"estimate_id": str(estimate.id), "status": estimate.status},
            )
            raise EstimateLockedError(estimate.id, estimate.status)

        normalized = dict(changes.values)
        if "work_items" in changes:
            normalized["work_items"] = [
                item.to_dict() for item in parse_work_items(changes.get("work_items"))
            ]
        if "tax_rate" in changes:
            normalized["tax_rate"] = self._tax_rate(changes.get("tax_rate"))

        diff = FieldChanges(normalized).apply_to(estimate)
        if not diff:
            return estimate
        self.session.flush()

        self._auditor.record(
            "estimate",
            estimate.id,
            "estimate.updated",
            actor,
            company_id=company_id,
            previous_state={name: change["old"] for name, change in diff.items()},
            new_state={name: change["new"] for name, change in diff.items()},
        )
        logger.info(
            "estimate_updated",
            extra={"estimate_id": str(estimate.id), "fields": sorted(diff)},
        )
        return estimate

    # Pricing

    def preview_price(
        self,
        company_id: Any,
        work_items: Sequence[Mapping[str, Any]],
        tax_rate: Any,
        override_multiplier: Any = None,
        override_reason: str | None = None,
    ) -> PricingResult:
        """
        Price work items against the tenant's latest cost profile.

        Writes nothing.

        Raises:
            ValidationError: no cost profile, bad work items, bad override.
        """
        _normalize_override(override_multiplier, override_reason)
        cost_profile = self._require_cost_profile(company_id)
        return price_estimate(
            parse_work_items(list(work_items)),
            CostProfileService.cost_basis(cost_profile),
            tax_rate,
            override_multiplier,
            override_reason,
        )

    # Lifecycle

    def send_estimate(
        self,
        company_id: Any,
        estimate_id: Any,
        actor: Actor,
        *,
        override_multiplier: Any = None,
        override_reason: str | None = None,
    ) -> SentEstimate:
        """
        draft -> sent.

        Postconditions:
            - A "send" snapshot holds the priced work items and references
              the cost profile version used.
            - A 14-day portal link is issued (earlier links revoked).
            - The notifier was asked to deliver the link; a delivery
              failure does not undo the send.
        """
        estimate = self.get_estimate(company_id, estimate_id, for_update=True)
        previous_status = estimate.status
        self._check(estimate, EstimateStatus.SENT, actor)

        override_reason = _normalize_override(override_multiplier, override_reason)
        cost_profile = self._require_cost_profile(company_id)
        pricing = price_estimate(
            parse_work_items(estimate.work_items),
            CostProfileService.cost_basis(cost_profile),
            estimate.tax_rate,
            override_multiplier,
            override_reason,
        )

        snapshot = self._snapshots.create_snapshot(
            estimate,
            SnapshotTrigger.SEND,
            SnapshotPricing.from_pricing_result(pricing),
            actor,
            previous_status=previous_status,
            new_status=EstimateStatus.SENT,
            cost_profile_snapshot_id=cost_profile.id,
        )
        estimate.status = EstimateStatus.SENT.value
        estimate.sent_at = self.clock.now()
        self.session.flush()

        token = self._tokens.issue_token(
            company_id,
            DocumentType.ESTIMATE,
            estimate.id,
            issued_by_id=actor.actor_id,
        )

        self._auditor.record(
            "estimate",
            estimate.id,
            "estimate.sent",
            actor,
            company_id=company_id,
            previous_state={"status": previous_status},
            new_state={
                "status": estimate.status,
                "snapshot_version": snapshot.snapshot_version,
                "is_override": pricing.is_override,
                "floor_violation": pricing.floor_violation,
            },
            reason=pricing.override_reason,
        )
        logger.info(
            "estimate_sent",
            extra={
                "estimate_id": str(estimate.id),
                "snapshot_version": snapshot.snapshot_version,
                "total": str(pricing.total),
                "floor_violation": pricing.floor_violation,
            },
        )

        notify_safely(
            self.notifier.send_estimate_link,
            estimate,
            token.raw_token,
            channel="estimate_link",
            document_id=estimate.id,
        )
        return SentEstimate(estimate=estimate, snapshot=snapshot, token=token, pricing=pricing)

    def create_change_order(
        self,
        company_id: Any,
        estimate_id: Any,
        actor: Actor,
        *,
        work_items: Sequence[Mapping[str, Any]] | None = None,
        title: str | None = None,
        description: str | None = None,
        override_multiplier: Any = None,
        override_reason: str | None = None,
    ) -> ChangeOrderResult:
        """
        Replace a sent or approved estimate with a re-priced child.

        Postconditions:
            - A new estimate (status sent, ``version = parent.version + 1``,
              ``parent_estimate_id`` set) with a "change_order" snapshot.
            - The parent is superseded, with a "supersede" snapshot that
              carries its last pricing forward unchanged.
            - Two audit rows, each naming the other estimate.

        Raises:
            StateConflictError: parent is not sent or approved.
            ValidationError: no cost profile, bad work items, bad override.
        """
        parent = self.get_estimate(company_id, estimate_id, for_update=True)
        parent_status = parent.status
        self._check(parent, EstimateStatus.SUPERSEDED, actor, via=TransitionPath.CHANGE_ORDER)

        override_reason = _normalize_override(override_multiplier, override_reason)
        cost_profile = self._require_cost_profile(company_id)

        parent_snapshot = self._snapshots.latest_snapshot(parent.id)
        if work_items is not None:
            items = parse_work_items(list(work_items))
        elif parent_snapshot is not None:
            items = parse_work_items(parent_snapshot.work_items_snapshot)
        else:
            items = parse_work_items(parent.work_items)

        pricing = price_estimate(
            items,
            CostProfileService.cost_basis(cost_profile),
            parent.tax_rate,
            override_multiplier,
            override_reason,
        )

        now = self.clock.now()
        child = Estimate(
            company_id=company_id,
            customer_id=parent.customer_id,
            estimate_number=SequenceService(self.session).next_document_number(
                ESTIMATE_NUMBER_PREFIX, company_id,
            ),
            title=title or parent.title,
            description=description or parent.description,
            job_address=parent.job_address,
            valid_until=parent.valid_until,
            status=EstimateStatus.SENT.value,
            work_items=[item.to_dict() for item in items],
            tax_rate=parent.tax_rate,
            version=(parent.version or 1) + 1,
            parent_estimate_id=parent.id,
            sent_at=now,
            created_by_id=actor.actor_id,
        )
        self.session.add(child)
        self.session.flush()

        child_snapshot = self._snapshots.create_snapshot(
            child,
            SnapshotTrigger.CHANGE_ORDER,
            SnapshotPricing.from_pricing_result(pricing),
            actor,
            previous_status=None,
            new_status=EstimateStatus.SENT,
            cost_profile_snapshot_id=cost_profile.id,
        )

        if parent_snapshot is not None:
            carried = SnapshotPricing.from_snapshot(parent_snapshot)
            carried_items = parent_snapshot.work_items_snapshot
            carried_profile_id = parent_snapshot.cost_profile_snapshot_id or cost_profile.id
        else:
            carried = SnapshotPricing.empty(parent.tax_rate)
            carried_items = []
            carried_profile_id = cost_profile.id

        parent.status = EstimateStatus.SUPERSEDED.value
        parent.superseded_by_id = child.id
        superseded_snapshot = self._snapshots.create_snapshot(
            parent,
            SnapshotTrigger.SUPERSEDE,
            carried,
            actor,
            previous_status=parent_status,
            new_status=EstimateStatus.SUPERSEDED,
            work_items=carried_items,
            cost_profile_snapshot_id=carried_profile_id,
        )
        self.session.flush()

        token = self._tokens.issue_token(
            company_id,
            DocumentType.ESTIMATE,
            child.id,
            issued_by_id=actor.actor_id,
            lifetime=self.policy.tokens.change_order_lifetime,
        )
        self._tokens.revoke_tokens(DocumentType.ESTIMATE, parent.id)

        self._auditor.record(
            "estimate",
            child.id,
            "estimate.change_order.created",
            actor,
            company_id=company_id,
            previous_state={"parent_estimate_id": parent.id, "parent_status": parent_status},
            new_state={
                "status": child.status,
                "version": child.version,
                "parent_estimate_id": parent.id,
                "is_override": pricing.is_override,
            },
            reason=pricing.override_reason,
            related_entity_type="estimate",
            related_entity_id=parent.id,
        )
        self._auditor.record(
            "estimate",
            parent.id,
            "estimate.superseded",
            actor,
            company_id=company_id,
            previous_state={"status": parent_status},
            new_state={"status": parent.status, "superseded_by_estimate_id": child.id},
            related_entity_type="estimate",
            related_entity_id=child.id,
        )
        logger.info(
            "change_order_created",
            extra={
                "estimate_id": str(child.id),
                "parent_estimate_id": str(parent.id),
                "version": child.version,
                "total": str(pricing.total),
            },
        )

        notify_safely(
            self.notifier.send_estimate_link,
            child,
            token.raw_token,
            channel="estimate_link",
            document_id=child.id,
        )
        return ChangeOrderResult(
            change_order=child,
            parent=parent,
            snapshot=child_snapshot,
            parent_snapshot=superseded_snapshot,
            token=token,
            pricing=pricing,
        )

    def transition_estimate(
        self,
        company_id: Any,
        estimate_id: Any,
        new_status: EstimateStatus | str,
        actor: Actor,
        *,
        reason: str | None = None,
        audit_action: str | None = None,
    ) -> Estimate:
        """
        Approve or reject a sent estimate.

        Used for internal moves (a user recording a verbal approval) and by
        the portal, which passes its own ``audit_action``.

        Sending goes through ``send_estimate`` and superseding through
        ``create_change_order``; both are refused here.
        """
        estimate = self.get_estimate(company_id, estimate_id, for_update=True)
        previous_status = estimate.status
        requested = status_value(new_status)
        if requested == EstimateStatus.SENT.value:
            raise ValidationError("Use send_estimate to send an estimate", ["status"])
        self._check(estimate, requested, actor)

        trigger = {
            EstimateStatus.APPROVED.value: SnapshotTrigger.APPROVE,
            EstimateStatus.REJECTED.value: SnapshotTrigger.REJECT,
        }[requested]
        latest = self._snapshots.latest_snapshot(estimate.id)
        pricing = (
            SnapshotPricing.from_snapshot(latest) if latest is not None
            else SnapshotPricing.empty(estimate.tax_rate)
        )

        now = self.clock.now()
        estimate.status = requested
        if requested == EstimateStatus.APPROVED.value:
            estimate.approved_at = now
        else:
            estimate.rejected_at = now
            estimate.rejection_reason = reason
        self._snapshots.create_snapshot(
            estimate,
            trigger,
            pricing,
            actor,
            previous_status=previous_status,
            new_status=requested,
            work_items=latest.work_items_snapshot if latest is not None else None,
            cost_profile_snapshot_id=latest.cost_profile_snapshot_id if latest is not None else None,
        )

        self._auditor.record_transition(
            "estimate",
            estimate.id,
            audit_action or f"estimate.{requested}",
            actor,
            previous_status,
            requested,
            company_id=company_id,
            reason=reason,
        )
        logger.info(
            "estimate_status_changed",
            extra={
                "estimate_id": str(estimate.id),
                "from_status": previous_status,
                "to_status": requested,
            },
        )
        return estimate

    # Helpers

    def _check(
        self,
        estimate: Estimate,
        requested: EstimateStatus | str,
        actor: Actor,
        via: TransitionPath = TransitionPath.DIRECT,
    ) -> None:
        decision = check_transition(ESTIMATE_WORKFLOW, estimate.status, requested, via)
        if not decision.allowed:
            self._auditor.record_denial(
                "estimate", estimate.id, decision, actor, company_id=estimate.company_id,
            )
            decision.raise_if_denied("estimate", estimate.id)

    def _require_cost_profile(self, company_id: Any) -> CostProfileSnapshot:
        cost_profile = self._cost_profiles.get_latest(company_id)
        if cost_profile is None:
            raise ValidationError("No cost profile configured", ["cost_profile"])
        return cost_profile

    @staticmethod
    def _tax_rate(value: Any) -> Decimal:
        rate = to_decimal(value, "tax_rate")
        if rate < ZERO or rate > ONE:
            raise ValidationError("Invalid tax rate", ["tax_rate must be a fraction between 0 and 1"])
        return round_rate(rate)
