"""
Module: quote_kernel.domain.pricing_engine
Responsibility: Price a set of work items against a cost profile snapshot:
    direct costs, target price, floor price, optional override, margin,
    tax and total.
Architecture position: Kernel > Domain.  Pure functions, no I/O.

Invariants enforced:
    - Margin floor: ``floor_violation`` is True whenever the final price is
      below the floor price, compared both exactly and at cent precision.
      It is computed regardless of override status.
    - Override visibility: an override multiplier always sets
      ``is_override`` and carries its reason verbatim; a multiplier without
      a reason, or a non-positive multiplier, is a ValidationError.
    - Tax arithmetic: ``tax_amount == round(subtotal * tax_rate)`` and
      ``total == subtotal + tax_amount`` exactly.
    - Monotonicity: more quantity or labor hours never lowers the price.

Failure modes:
    - ValidationError for malformed work items, tax rate outside [0, 1], or
      an override without a reason.

Audit relevance:
    PricingResult.to_dict() is the pricing breakdown stored on every
    EstimateSnapshot; ``cost_profile_version`` ties it to the exact cost
    assumptions used.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Iterable, Mapping, Sequence

from quote_kernel.db.types import HUNDRED, ZERO, round_money, round_rate, to_decimal
from quote_kernel.domain.cost_calculator import (
    CostCalculationOutput,
    CostProfileInput,
    margin_multiplier,
)
from quote_kernel.exceptions import ValidationError

ONE = Decimal("1")


@dataclass(frozen=True)
class WorkItem:
    """One priced line of an estimate."""

    id: str
    description: str
    quantity: Decimal
    unit: str
    unit_price: Decimal
    labor_hours: Decimal = ZERO
    equipment_ids: tuple[str, ...] = ()

    @property
    def line_total(self) -> Decimal:
        return self.quantity * self.unit_price

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> WorkItem:
        return cls(
            id=str(data["id"]),
            description=str(data["description"]),
            quantity=to_decimal(data["quantity"], "quantity"),
            unit=str(data["unit"]),
            unit_price=to_decimal(data["unit_price"], "unit_price"),
            labor_hours=to_decimal(data.get("labor_hours") or 0, "labor_hours"),
            equipment_ids=tuple(str(e) for e in data.get("equipment_ids") or ()),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "description": self.description,
            "quantity": str(self.quantity),
            "unit": self.unit,
            "unit_price": str(self.unit_price),
            "labor_hours": str(self.labor_hours),
            "equipment_ids": list(self.equipment_ids),
        }


def _is_number(value: Any) -> bool:
    if isinstance(value, bool) or value is None:
        return False
    try:
        to_decimal(value)
    except ValidationError:
        return False
    return True


def validate_work_items(raw_items: Any) -> list[str]:
    """Return field-level errors for raw work-item payloads (empty when valid)."""
    if not isinstance(raw_items, (list, tuple)):
        return ["Work items must be an array"]

    errors: list[str] = []
    for index, item in enumerate(raw_items):
        if not isinstance(item, Mapping):
            errors.append(f"Item {index}: must be an object")
            continue
        if not item.get("id"):
            errors.append(f"Item {index}: missing id")
        if not item.get("description"):
            errors.append(f"Item {index}: missing description")
        quantity = item.get("quantity")
        if not _is_number(quantity) or to_decimal(quantity) <= ZERO:
            errors.append(f"Item {index}: quantity must be a positive number")
        if not item.get("unit"):
            errors.append(f"Item {index}: missing unit")
        unit_price = item.get("unit_price")
        if not _is_number(unit_price) or to_decimal(unit_price) < ZERO:
            errors.append(f"Item {index}: unit_price must be a non-negative number")
        labor_hours = item.get("labor_hours")
        if labor_hours is not None and (
            not _is_number(labor_hours) or to_decimal(labor_hours) < ZERO
        ):
            errors.append(f"Item {index}: labor_hours must be a non-negative number")
    return errors


def parse_work_items(raw_items: Any) -> tuple[WorkItem, ...]:
    """Validate and convert raw payloads.  Raises ValidationError."""
    errors = validate_work_items(raw_items)
    if errors:
        raise ValidationError("Invalid work items", errors)
    return tuple(WorkItem.from_dict(item) for item in raw_items)


@dataclass(frozen=True)
class CostBasis:
    """The parts of a CostProfileSnapshot the pricing engine reads."""

    profile: CostProfileInput
    outputs: CostCalculationOutput
    version: int

    @classmethod
    def from_snapshot_data(
        cls,
        snapshot_data: Mapping[str, Any],
        calculated_outputs: Mapping[str, Any],
        version: int,
    ) -> CostBasis:
        return cls(
            profile=CostProfileInput.from_dict(snapshot_data),
            outputs=CostCalculationOutput.from_dict(calculated_outputs),
            version=version,
        )


@dataclass(frozen=True)
class PricingBreakdown:
    labor_cost: Decimal
    equipment_cost: Decimal
    overhead_allocation: Decimal
    material_cost: Decimal
    direct_costs: Decimal
    margin_amount: Decimal
    floor_price: Decimal
    calculated_price: Decimal
    final_price: Decimal
    cost_profile_version: int | None


@dataclass(frozen=True)
class PricingResult:
    breakdown: PricingBreakdown
    subtotal: Decimal
    tax_rate: Decimal
    tax_amount: Decimal
    total: Decimal
    margin_percentage: Decimal
    floor_violation: bool
    is_override: bool
    override_multiplier: Decimal | None = None
    override_reason: str | None = None

    def to_dict(self) -> dict[str, Any]:
        b = self.breakdown
        return {
            "labor_cost": str(b.labor_cost),
            "equipment_cost": str(b.equipment_cost),
            "overhead_allocation": str(b.overhead_allocation),
            "material_cost": str(b.material_cost),
            "direct_costs": str(b.direct_costs),
            "margin_amount": str(b.margin_amount),
            "floor_price": str(b.floor_price),
            "calculated_price": str(b.calculated_price),
            "final_price": str(b.final_price),
            "cost_profile_version": b.cost_profile_version,
            "subtotal": str(self.subtotal),
            "tax_rate": str(self.tax_rate),
            "tax_amount": str(self.tax_amount),
            "total": str(self.total),
            "margin_percentage": str(self.margin_percentage),
            "floor_violation": self.floor_violation,
            "is_override": self.is_override,
            "override_multiplier": (
                str(self.override_multiplier) if self.override_multiplier is not None else None
            ),
            "override_reason": self.override_reason,
        }


def _validate_tax_rate(tax_rate: Any) -> Decimal:
    rate = to_decimal(tax_rate, "tax_rate")
    if rate < ZERO or rate > ONE:
        raise ValidationError("Invalid tax rate", ["tax_rate must be a fraction between 0 and 1"])
    return round_rate(rate)


def _referenced_equipment_daily_cost(
    work_items: Iterable[WorkItem],
    profile: CostProfileInput,
) -> Decimal:
    referenced = {eid for item in work_items for eid in item.equipment_ids}
    return sum(
        (
            equipment.daily_cost
            for index, equipment in enumerate(profile.equipment)
            if str(index) in referenced or equipment.name in referenced
        ),
        ZERO,
    )


def price_estimate(
    work_items: Sequence[WorkItem],
    cost_basis: CostBasis,
    tax_rate: Any,
    override_multiplier: Any = None,
    override_reason: str | None = None,
) -> PricingResult:
    """
    Compute a margin-protected price.

    Preconditions: work items already validated (parse_work_items).
    Postconditions: see module invariants.

    Raises:
        ValidationError: bad tax rate, non-positive override multiplier or
            an override without a reason.
    """
    rate = _validate_tax_rate(tax_rate)

    multiplier: Decimal | None = None
    if override_multiplier is not None:
        multiplier = to_decimal(override_multiplier, "override_multiplier")
        problems = []
        if multiplier <= ZERO:
            problems.append("override_multiplier must be greater than 0")
        if not override_reason or not override_reason.strip():
            problems.append("override_reason is required when overriding the price")
        if problems:
            raise ValidationError("Invalid price override", problems)

    profile = cost_basis.profile
    outputs = cost_basis.outputs

    total_labor_hours = sum((item.labor_hours for item in work_items), ZERO)
    crew_hours_per_day = profile.crew_hours_per_day
    labor_days = total_labor_hours / crew_hours_per_day if crew_hours_per_day > ZERO else ZERO

    labor_cost = labor_days * outputs.daily_labor_cost_per_crew
    equipment_cost = _referenced_equipment_daily_cost(work_items, profile) * math.ceil(labor_days)
    overhead_allocation = labor_days * outputs.daily_overhead_allocation
    material_cost = sum((item.line_total for item in work_items), ZERO)
    direct_costs = labor_cost + equipment_cost + overhead_allocation + material_cost

    calculated_price = direct_costs * margin_multiplier(profile.margin.target_margin_percentage)
    floor_price = direct_costs * margin_multiplier(profile.margin.minimum_floor_percentage)

    final_price = calculated_price
    is_override = multiplier is not None
    if is_override:
        final_price = calculated_price * multiplier

    floor_violation = (
        final_price < floor_price
        or round_money(final_price) < round_money(floor_price)
    )

    margin_amount = final_price - direct_costs
    margin_percentage = margin_amount / final_price * HUNDRED if final_price > ZERO else ZERO

    subtotal = round_money(final_price)
    tax_amount = round_money(subtotal * rate)

    return PricingResult(
        breakdown=PricingBreakdown(
            labor_cost=round_money(labor_cost),
            equipment_cost=round_money(equipment_cost),
            overhead_allocation=round_money(overhead_allocation),
            material_cost=round_money(material_cost),
            direct_costs=round_money(direct_costs),
            margin_amount=round_money(margin_amount),
            floor_price=round_money(floor_price),
            calculated_price=round_money(calculated_price),
            final_price=subtotal,
            cost_profile_version=cost_basis.version,
        ),
        subtotal=subtotal,
        tax_rate=rate,
        tax_amount=tax_amount,
        total=subtotal + tax_amount,
        margin_percentage=round_money(margin_percentage),
        floor_violation=floor_violation,
        is_override=is_override,
        override_multiplier=multiplier,
        override_reason=override_reason if is_override else None,
    )


@dataclass(frozen=True)
class SimpleTotals:
    subtotal: Decimal
    tax_amount: Decimal
    total: Decimal


def calculate_from_work_items_only(
    work_items: Sequence[WorkItem],
    tax_rate: Any,
) -> SimpleTotals:
    """Quantity x unit price totals, for tenants without a cost profile."""
    rate = _validate_tax_rate(tax_rate)
    subtotal = round_money(sum((item.line_total for item in work_items), ZERO))
    tax_amount = round_money(subtotal * rate)
    return SimpleTotals(subtotal=subtotal, tax_amount=tax_amount, total=subtotal + tax_amount)
