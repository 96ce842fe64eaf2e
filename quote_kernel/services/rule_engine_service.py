"""
RuleEngineService -- tenant-configurable pricing rules.

Responsibility:
    Stores estimate input fields, pricing profiles and pricing rules,
    evaluates the active rules against an input bag (preview, with
    optional priced alternatives) and persists a finalized result as an
    EstimateSnapshot.

Architecture position:
    Kernel > Services -- loads rows and hands parsed RuleDefinitions to
    the pure evaluator in domain/rules.py.

Invariants enforced:
    - Rules are stored only after their condition and effect parse, so an
      unknown operator can never reach evaluation.
    - Rules evaluate in creation order (``sort_order`` from a per-tenant
      counter).
    - ``preview`` writes nothing.  ``finalize`` is valid only for drafts
      and writes exactly one "finalize" snapshot.
    - At most one default pricing profile per tenant.

Failure modes:
    - ValidationError: malformed rule, field or input.
    - StateConflictError: finalize on a non-draft estimate.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from decimal import Decimal
from enum import Enum
from typing import Any, Mapping, Sequence

from sqlalchemy import or_, select, update
from sqlalchemy.orm import Session

from quote_kernel.db.types import ZERO, to_decimal
from quote_kernel.domain.actor import Actor
from quote_kernel.domain.clock import Clock
from quote_kernel.domain.policy import DEFAULT_POLICY, QuotePolicy
from quote_kernel.domain.pricing_engine import parse_work_items
from quote_kernel.domain.rules import (
    ProfileTerms,
    RuleDefinition,
    RulePricing,
    evaluate_rules,
    parse_condition,
    parse_effect,
)
from quote_kernel.domain.statuses import EstimateStatus, SnapshotTrigger
from quote_kernel.exceptions import StateConflictError, ValidationError
from quote_kernel.logging_config import get_logger
from quote_kernel.models.estimate import Estimate, EstimateSnapshot
from quote_kernel.models.pricing_rules import EstimateField, PricingProfile, PricingRule
from quote_kernel.services.audit_service import AuditorService
from quote_kernel.services.base import BaseService
from quote_kernel.services.cost_profile_service import CostProfileService
from quote_kernel.services.estimate_service import EstimateService
from quote_kernel.services.sequence_service import SequenceService
from quote_kernel.services.snapshot_service import SnapshotPricing, SnapshotService
from quote_kernel.utils.hashing import to_jsonable

logger = get_logger("services.rule_engine")

FIELD_TYPES = ("number", "boolean", "text", "select")


class PreviewMode(str, Enum):
    INTERNAL = "internal"
    MARKETING = "marketing"


@dataclass(frozen=True)
class OptionInput:
    """An alternative priced alongside the base preview."""

    name: str
    inputs: Mapping[str, Any] = field(default_factory=dict)
    work_items: Sequence[Mapping[str, Any]] | None = None


@dataclass(frozen=True)
class OptionPreview:
    name: str
    inputs: dict[str, Any]
    pricing: RulePricing
    work_items: list[dict[str, Any]]


@dataclass(frozen=True)
class RulePreview:
    """Side-effect-free evaluation result."""

    mode: PreviewMode
    inputs: dict[str, Any]
    fields_used: tuple[str, ...]
    pricing_profile_id: Any
    pricing: RulePricing
    work_items: list[dict[str, Any]]
    options: tuple[OptionPreview, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        return {
            "mode": self.mode.value,
            "inputs": to_jsonable(self.inputs),
            "fields_used": list(self.fields_used),
            "pricing_profile_id": str(self.pricing_profile_id) if self.pricing_profile_id else None,
            "pricing": self.pricing.to_dict(),
            "work_items": to_jsonable(self.work_items),
            "options": [
                {
                    "name": option.name,
                    "inputs": to_jsonable(option.inputs),
                    "pricing": option.pricing.to_dict(),
                    "work_items": to_jsonable(option.work_items),
                }
                for option in self.options
            ],
        }


class RuleEngineService(BaseService):
    """
    Rule-engine configuration and evaluation.

    Non-goals:
        - Does NOT replace the cost-model pricing engine.  Margin here is
          measured against ``base_subtotal * rule_engine_cost_ratio``
          unless the caller supplies real direct costs.
    """

    def __init__(
        self,
        session: Session,
        clock: Clock | None = None,
        policy: QuotePolicy | None = None,
    ):
        super().__init__(session, clock)
        self.policy = policy or DEFAULT_POLICY
        self._auditor = AuditorService(session, self.clock)
        self._snapshots = SnapshotService(session, self.clock)

    # -------------------------------------------------------------------------
    # Fields
    # -------------------------------------------------------------------------

    def create_field(
        self,
        company_id: Any,
        field_key: str,
        label: str,
        *,
        field_type: str = "number",
        applies_to: Sequence[str] = (PreviewMode.INTERNAL.value,),
        sort_order: int = 0,
    ) -> EstimateField:
        errors = []
        if not field_key or not field_key.strip():
            errors.append("field_key is required")
        if field_type not in FIELD_TYPES:
            errors.append(f"field_type must be one of {', '.join(FIELD_TYPES)}")
        modes = {m.value for m in PreviewMode}
        errors.extend(f"unknown mode '{mode}'" for mode in applies_to if mode not in modes)
        if not errors and self._field_by_key(company_id, field_key) is not None:
            errors.append(f"field_key '{field_key}' already exists")
        if errors:
            raise ValidationError("Invalid estimate field", errors)

        estimate_field = EstimateField(
            company_id=company_id,
            field_key=field_key,
            label=label,
            field_type=field_type,
            applies_to=list(applies_to),
            is_active=True,
            sort_order=sort_order,
        )
        self.session.add(estimate_field)
        self.session.flush()
        logger.info(
            "estimate_field_created",
            extra={"company_id": str(company_id), "field_key": field_key},
        )
        return estimate_field

    def set_field_active(self, company_id: Any, field_id: Any, is_active: bool) -> EstimateField:
        estimate_field = self._get_scoped(EstimateField, "estimate_field", company_id, field_id)
        estimate_field.is_active = is_active
        self.session.flush()
        return estimate_field

    def list_fields(
        self,
        company_id: Any,
        mode: PreviewMode | None = None,
        *,
        active_only: bool = False,
    ) -> list[EstimateField]:
        fields = self.session.execute(
            select(EstimateField)
            .where(EstimateField.company_id == company_id)
            .order_by(EstimateField.sort_order, EstimateField.field_key)
        ).scalars().all()
        result = []
        for f in fields:
            if active_only and not f.is_active:
                continue
            if mode is not None and mode.value not in (f.applies_to or ()):
                continue
            result.append(f)
        return result

    # -------------------------------------------------------------------------
    # Pricing profiles
    # -------------------------------------------------------------------------

    def save_profile(
        self,
        company_id: Any,
        name: str,
        actor: Actor,
        *,
        tax_percentage: Any = 0,
        deposit_percentage: Any = 0,
        commission_percentage: Any = 0,
        minimum_floor_percentage: Any = None,
        is_default: bool = False,
    ) -> PricingProfile:
        """Create a pricing profile; a new default clears the previous one."""
        percentages = {
            "tax_percentage": to_decimal(tax_percentage, "tax_percentage"),
            "deposit_percentage": to_decimal(deposit_percentage, "deposit_percentage"),
            "commission_percentage": to_decimal(commission_percentage, "commission_percentage"),
            "minimum_floor_percentage": to_decimal(
                minimum_floor_percentage
                if minimum_floor_percentage is not None
                else self.policy.pricing.rule_engine_floor_percentage,
                "minimum_floor_percentage",
            ),
        }
        errors = [
            f"{key} must be between 0 and 100"
            for key, value in percentages.items()
            if value < ZERO or value > Decimal("100")
        ]
        if not name or not name.strip():
            errors.append("name is required")
        if errors:
            raise ValidationError("Invalid pricing profile", errors)

        if is_default:
            self.session.execute(
                update(PricingProfile)
                .where(PricingProfile.company_id == company_id, PricingProfile.is_default.is_(True))
                .values(is_default=False)
                .execution_options(synchronize_session="fetch")
            )

        profile = PricingProfile(
            company_id=company_id,
            name=name,
            is_default=is_default,
            is_active=True,
            created_by_id=actor.actor_id,
            **percentages,
        )
        self.session.add(profile)
        self.session.flush()

        self._auditor.record(
            "pricing_profile",
            profile.id,
            "pricing_profile.created",
            actor,
            company_id=company_id,
            new_state={"name": name, "is_default": is_default, **percentages},
        )
        return profile

    def get_profile(self, company_id: Any, profile_id: Any) -> PricingProfile:
        return self._get_scoped(PricingProfile, "pricing_profile", company_id, profile_id)

    def default_profile(self, company_id: Any) -> PricingProfile | None:
        return self.session.execute(
            select(PricingProfile).where(
                PricingProfile.company_id == company_id,
                PricingProfile.is_default.is_(True),
                PricingProfile.is_active.is_(True),
            )
        ).scalars().first()

    # -------------------------------------------------------------------------
    # Rules
    # -------------------------------------------------------------------------

    def create_rule(
        self,
        company_id: Any,
        rule_name: str,
        effect_type: str,
        effect_value: Any,
        actor: Actor,
        *,
        pricing_profile_id: Any = None,
        field_id: Any = None,
        applies_when: Mapping[str, Any] | None = None,
    ) -> PricingRule:
        """
        Store a rule after parsing its effect and condition.

        Raises:
            ValidationError: unknown effect or operator, bad value, or a
                profile/field that does not belong to the tenant.
        """
        effect = parse_effect(effect_type, effect_value)
        parse_condition(applies_when)
        if not rule_name or not rule_name.strip():
            raise ValidationError("Invalid pricing rule", ["rule_name is required"])
        if pricing_profile_id is not None:
            self.get_profile(company_id, pricing_profile_id)
        if field_id is not None:
            self._get_scoped(EstimateField, "estimate_field", company_id, field_id)

        rule = PricingRule(
            company_id=company_id,
            pricing_profile_id=pricing_profile_id,
            field_id=field_id,
            rule_name=rule_name,
            applies_when=dict(applies_when) if applies_when else None,
            effect_type=effect.effect_type,
            effect_value=effect.value,
            is_active=True,
            sort_order=SequenceService(self.session).next_value(f"pricing_rule:{company_id}"),
            created_at=self.clock.now(),
        )
        self.session.add(rule)
        self.session.flush()

        self._auditor.record(
            "pricing_rule",
            rule.id,
            "pricing_rule.created",
            actor,
            company_id=company_id,
            new_state={
                "rule_name": rule_name,
                "effect_type": rule.effect_type,
                "effect_value": rule.effect_value,
                "applies_when": rule.applies_when,
            },
        )
        logger.info(
            "pricing_rule_created",
            extra={
                "rule_id": str(rule.id),
                "effect_type": rule.effect_type,
                "sort_order": rule.sort_order,
            },
        )
        return rule

    def set_rule_active(self, company_id: Any, rule_id: Any, is_active: bool, actor: Actor) -> PricingRule:
        rule = self._get_scoped(PricingRule, "pricing_rule", company_id, rule_id)
        previous = rule.is_active
        rule.is_active = is_active
        self.session.flush()
        if previous != is_active:
            self._auditor.record(
                "pricing_rule",
                rule.id,
                "pricing_rule.activated" if is_active else "pricing_rule.deactivated",
                actor,
                company_id=company_id,
                previous_state={"is_active": previous},
                new_state={"is_active": is_active},
            )
        return rule

    def list_rules(self, company_id: Any, pricing_profile_id: Any = None) -> list[PricingRule]:
        stmt = select(PricingRule).where(PricingRule.company_id == company_id)
        if pricing_profile_id is not None:
            stmt = stmt.where(
                or_(
                    PricingRule.pricing_profile_id == pricing_profile_id,
                    PricingRule.pricing_profile_id.is_(None),
                )
            )
        return list(self.session.execute(stmt.order_by(PricingRule.sort_order)).scalars().all())

    # -------------------------------------------------------------------------
    # Evaluation
    # -------------------------------------------------------------------------

    def preview(
        self,
        company_id: Any,
        inputs: Mapping[str, Any],
        work_items: Sequence[Mapping[str, Any]] = (),
        *,
        mode: PreviewMode = PreviewMode.INTERNAL,
        pricing_profile_id: Any = None,
        options: Sequence[OptionInput] = (),
        direct_costs: Decimal | None = None,
    ) -> RulePreview:
        """
        Evaluate active rules for ``inputs`` and each option.

        An option's inputs are merged over the base inputs; its work items
        replace the base work items when given.  Writes nothing.
        """
        profile = (
            self.get_profile(company_id, pricing_profile_id)
            if pricing_profile_id is not None
            else self.default_profile(company_id)
        )
        fields = self.list_fields(company_id, mode, active_only=True)
        definitions = self._rule_definitions(company_id, profile, fields)
        terms = self._terms(profile)

        base_items = [item.to_dict() for item in parse_work_items(list(work_items))]
        pricing = self._evaluate(base_items, inputs, definitions, terms, direct_costs)

        previews = []
        for option in options:
            option_inputs = {**inputs, **option.inputs}
            option_items = (
                [item.to_dict() for item in parse_work_items(list(option.work_items))]
                if option.work_items is not None
                else base_items
            )
            previews.append(OptionPreview(
                name=option.name,
                inputs=option_inputs,
                pricing=self._evaluate(option_items, option_inputs, definitions, terms, direct_costs),
                work_items=option_items,
            ))

        logger.info(
            "rule_preview_evaluated",
            extra={
                "company_id": str(company_id),
                "mode": mode.value,
                "rule_count": len(definitions),
                "option_count": len(previews),
                "floor_violation": pricing.floor_violation,
            },
        )
        return RulePreview(
            mode=mode,
            inputs=dict(inputs),
            fields_used=tuple(f.field_key for f in fields),
            pricing_profile_id=profile.id if profile is not None else None,
            pricing=pricing,
            work_items=base_items,
            options=tuple(previews),
        )

    def create_with_engine(
        self,
        company_id: Any,
        customer_id: Any,
        actor: Actor,
        *,
        inputs: Mapping[str, Any],
        work_items: Sequence[Mapping[str, Any]],
        pricing_profile_id: Any = None,
        title: str | None = None,
        description: str | None = None,
        job_address: str | None = None,
    ) -> tuple[Estimate, RulePreview]:
        """Create a draft estimate carrying a rule-engine preview."""
        result = self.preview(
            company_id,
            inputs,
            work_items,
            pricing_profile_id=pricing_profile_id,
        )
        estimate = EstimateService(self.session, self.clock, self.policy).create_estimate(
            company_id,
            customer_id,
            actor,
            title=title,
            description=description,
            job_address=job_address,
            work_items=result.work_items,
            tax_rate=SnapshotPricing.from_rule_pricing(result.pricing).tax_rate,
        )
        estimate.pricing_profile_id = result.pricing_profile_id
        estimate.input_snapshot = to_jsonable(result.inputs)
        estimate.pricing_snapshot = result.pricing.to_dict()
        self.session.flush()
        return estimate, result

    def finalize(
        self,
        company_id: Any,
        estimate_id: Any,
        actor: Actor,
        result: RulePreview,
    ) -> EstimateSnapshot:
        """
        Persist a preview against a draft estimate.

        Postconditions:
            - One "finalize" snapshot (status stays draft) referencing the
              latest cost profile.
            - The estimate's work items, inputs and pricing are replaced
              by the preview's.

        Raises:
            StateConflictError: the estimate is not a draft.
            ValidationError: the tenant has no cost profile.
        """
        estimate = self._get_scoped(Estimate, "estimate", company_id, estimate_id, for_update=True)
        if not estimate.is_draft:
            self._auditor.record(
                "estimate",
                estimate.id,
                "estimate.finalize_rejected",
                actor,
                company_id=company_id,
                previous_state={"status": estimate.status},
                reason="Only draft estimates can be finalized",
            )
            raise StateConflictError(
                entity_type="estimate",
                entity_id=estimate.id,
                current_status=estimate.status,
                requested_status=EstimateStatus.DRAFT.value,
                allowed=(),
                reason="Only draft estimates can be finalized",
            )

        cost_profile = CostProfileService(self.session, self.clock, self.policy).get_latest(company_id)
        if cost_profile is None:
            raise ValidationError("No cost profile configured", ["cost_profile"])

        estimate.work_items = result.work_items
        estimate.pricing_profile_id = result.pricing_profile_id
        estimate.input_snapshot = to_jsonable(result.inputs)
        estimate.pricing_snapshot = result.pricing.to_dict()

        pricing = SnapshotPricing.from_rule_pricing(result.pricing)
        estimate.tax_rate = pricing.tax_rate
        breakdown = dict(pricing.breakdown, cost_profile_version=cost_profile.version)
        snapshot = self._snapshots.create_snapshot(
            estimate,
            SnapshotTrigger.FINALIZE,
            replace(pricing, breakdown=breakdown),
            actor,
            previous_status=estimate.status,
            new_status=estimate.status,
            work_items=result.work_items,
            cost_profile_snapshot_id=cost_profile.id,
        )

        self._auditor.record(
            "estimate",
            estimate.id,
            "estimate.finalized",
            actor,
            company_id=company_id,
            new_state={
                "snapshot_version": snapshot.snapshot_version,
                "total": snapshot.total,
                "floor_violation": snapshot.floor_violation,
            },
        )
        logger.info(
            "estimate_finalized",
            extra={
                "estimate_id": str(estimate.id),
                "snapshot_version": snapshot.snapshot_version,
                "total": str(snapshot.total),
            },
        )
        return snapshot

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    def _field_by_key(self, company_id: Any, field_key: str) -> EstimateField | None:
        return self.session.execute(
            select(EstimateField).where(
                EstimateField.company_id == company_id,
                EstimateField.field_key == field_key,
            )
        ).scalar_one_or_none()

    def _rule_definitions(
        self,
        company_id: Any,
        profile: PricingProfile | None,
        fields: Sequence[EstimateField],
    ) -> list[RuleDefinition]:
        keys_by_id = {f.id: f.field_key for f in fields}
        definitions = []
        for rule in self.list_rules(company_id, profile.id if profile is not None else None):
            if not rule.is_active:
                continue
            # Bound to a field that is inactive or not offered in this mode.
            if rule.field_id is not None and rule.field_id not in keys_by_id:
                continue
            definitions.append(RuleDefinition(
                rule_id=str(rule.id),
                name=rule.rule_name,
                effect=parse_effect(rule.effect_type, rule.effect_value),
                field_key=keys_by_id.get(rule.field_id),
                condition=parse_condition(rule.applies_when),
            ))
        return definitions

    def _terms(self, profile: PricingProfile | None) -> ProfileTerms:
        if profile is None:
            return ProfileTerms(
                minimum_floor_percentage=self.policy.pricing.rule_engine_floor_percentage,
            )
        return ProfileTerms(
            tax_percentage=profile.tax_percentage,
            deposit_percentage=profile.deposit_percentage,
            commission_percentage=profile.commission_percentage,
            minimum_floor_percentage=profile.minimum_floor_percentage,
        )

    def _evaluate(
        self,
        work_items: Sequence[Mapping[str, Any]],
        inputs: Mapping[str, Any],
        definitions: Sequence[RuleDefinition],
        terms: ProfileTerms,
        direct_costs: Decimal | None,
    ) -> RulePricing:
        base_subtotal = sum(
            (item.line_total for item in parse_work_items(list(work_items))),
            ZERO,
        )
        return evaluate_rules(
            base_subtotal,
            inputs,
            definitions,
            terms,
            direct_costs=direct_costs,
            estimated_cost_ratio=self.policy.pricing.rule_engine_cost_ratio,
        )
