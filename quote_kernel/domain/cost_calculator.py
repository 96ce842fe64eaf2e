"""
Module: quote_kernel.domain.cost_calculator
Responsibility: Turn a tenant's raw cost assumptions (labor roles, equipment,
    overhead buckets, margin targets) into daily cost, minimum revenue and
    hourly rate figures.
Architecture position: Kernel > Domain.  Pure functions, no I/O.

Invariants enforced:
    - Half-day ratio: minimum_revenue_per_half_day / minimum_revenue_per_crew_day
      equals half_day_factor exactly.  The half-day figure is derived from the
      ROUNDED crew-day figure and is not re-quantized.
    - Every output is a finite Decimal.  Zero billable days, zero utilization
      and zero hours per day are guarded; margin percentages outside [0, 100)
      are rejected as input errors.

Failure modes:
    - ValidationError from CostProfileInput.from_dict() on malformed
      assumptions (field-level messages).

Audit relevance:
    CostCalculationOutput.to_dict() is stored verbatim as the snapshot's
    calculated outputs; the pricing engine reads those stored figures, so
    a price can always be traced to the numbers the tenant saw.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Mapping

from quote_kernel.db.types import HUNDRED, ZERO, round_money, to_decimal
from quote_kernel.exceptions import ValidationError

DEFAULT_HALF_DAY_FACTOR = Decimal("0.60")
DEFAULT_LOW_MARGIN_WARNING_PERCENTAGE = Decimal("15")
DEFAULT_LOW_UTILIZATION_WARNING_PERCENTAGE = Decimal("60")
DEFAULT_MINIMUM_JOB_CHARGE_FACTOR = Decimal("0.75")

WARNING_BELOW_SURVIVAL = "Minimum revenue is below survival threshold"
WARNING_LOW_TARGET_MARGIN = "Target margin below 15% may not be sustainable"
WARNING_LOW_UTILIZATION = "Low utilization rate increases effective costs"

OVERHEAD_BUCKETS = (
    "insurance",
    "admin",
    "yard_shop",
    "fuel_baseline",
    "marketing_baseline",
    "tools_consumables",
)


@dataclass(frozen=True)
class LaborRole:
    name: str
    hourly_wage: Decimal
    burden_percentage: Decimal
    hours_per_day: Decimal
    count: int


@dataclass(frozen=True)
class EquipmentItem:
    name: str
    monthly_cost: Decimal
    usable_workdays_per_month: Decimal

    @property
    def daily_cost(self) -> Decimal:
        if self.usable_workdays_per_month <= ZERO:
            return ZERO
        return self.monthly_cost / self.usable_workdays_per_month


@dataclass(frozen=True)
class MarginTargets:
    target_margin_percentage: Decimal
    minimum_floor_percentage: Decimal
    survival_mode_threshold: Decimal = ZERO
    half_day_factor: Decimal = DEFAULT_HALF_DAY_FACTOR


@dataclass(frozen=True)
class CostProfileInput:
    """
    A tenant's cost assumptions.

    Contract:
        Built through ``from_dict`` for external data; all numbers Decimal.
    Guarantees:
        ``to_dict()`` round-trips through ``from_dict()``.
    """

    roles: tuple[LaborRole, ...]
    billable_days_per_month: Decimal
    utilization_percentage: Decimal
    equipment: tuple[EquipmentItem, ...]
    overhead: Mapping[str, Decimal]
    margin: MarginTargets

    @property
    def crew_hours_per_day(self) -> Decimal:
        return sum((r.hours_per_day * r.count for r in self.roles), ZERO)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> CostProfileInput:
        """
        Parse and validate raw assumptions.

        Raises:
            ValidationError: listing every offending field.
        """
        errors: list[str] = []

        def number(value: Any, path: str, *, minimum: Decimal | None = ZERO) -> Decimal:
            try:
                result = to_decimal(value, path)
            except ValidationError:
                errors.append(f"{path} must be a number")
                return ZERO
            if minimum is not None and result < minimum:
                errors.append(f"{path} must be at least {minimum}")
            return result

        labor = data.get("labor") or {}
        roles: list[LaborRole] = []
        for i, raw in enumerate(labor.get("roles") or []):
            count = raw.get("count", 1)
            if isinstance(count, bool) or not isinstance(count, int) or count < 0:
                errors.append(f"labor.roles[{i}].count must be a non-negative integer")
                count = 0
            roles.append(LaborRole(
                name=str(raw.get("name") or f"Role {i + 1}"),
                hourly_wage=number(raw.get("hourly_wage"), f"labor.roles[{i}].hourly_wage"),
                burden_percentage=number(raw.get("burden_percentage", 0), f"labor.roles[{i}].burden_percentage"),
                hours_per_day=number(raw.get("hours_per_day"), f"labor.roles[{i}].hours_per_day"),
                count=count,
            ))
        if not roles:
            errors.append("labor.roles must contain at least one role")

        equipment = tuple(
            EquipmentItem(
                name=str(raw.get("name") or f"Equipment {i + 1}"),
                monthly_cost=number(raw.get("monthly_cost"), f"equipment[{i}].monthly_cost"),
                usable_workdays_per_month=number(
                    raw.get("usable_workdays_per_month", 0),
                    f"equipment[{i}].usable_workdays_per_month",
                ),
            )
            for i, raw in enumerate(data.get("equipment") or [])
        )

        overhead = {
            key: number(value, f"overhead.{key}")
            for key, value in (data.get("overhead") or {}).items()
        }

        margin_raw = data.get("margin") or {}
        target = number(margin_raw.get("target_margin_percentage"), "margin.target_margin_percentage")
        floor = number(margin_raw.get("minimum_floor_percentage"), "margin.minimum_floor_percentage")
        for path, pct in (
            ("margin.target_margin_percentage", target),
            ("margin.minimum_floor_percentage", floor),
        ):
            if pct >= HUNDRED:
                errors.append(f"{path} must be below 100")
        half_day = number(
            margin_raw.get("half_day_factor", DEFAULT_HALF_DAY_FACTOR),
            "margin.half_day_factor",
        )
        if half_day > Decimal("1"):
            errors.append("margin.half_day_factor must be between 0 and 1")

        profile = cls(
            roles=tuple(roles),
            billable_days_per_month=number(labor.get("billable_days_per_month"), "labor.billable_days_per_month"),
            utilization_percentage=number(labor.get("utilization_percentage"), "labor.utilization_percentage"),
            equipment=equipment,
            overhead=overhead,
            margin=MarginTargets(
                target_margin_percentage=target,
                minimum_floor_percentage=floor,
                survival_mode_threshold=number(
                    margin_raw.get("survival_mode_threshold", 0),
                    "margin.survival_mode_threshold",
                ),
                half_day_factor=half_day,
            ),
        )
        if errors:
            raise ValidationError("Invalid cost profile", errors)
        return profile

    def to_dict(self) -> dict[str, Any]:
        return {
            "labor": {
                "roles": [
                    {
                        "name": r.name,
                        "hourly_wage": str(r.hourly_wage),
                        "burden_percentage": str(r.burden_percentage),
                        "hours_per_day": str(r.hours_per_day),
                        "count": r.count,
                    }
                    for r in self.roles
                ],
                "billable_days_per_month": str(self.billable_days_per_month),
                "utilization_percentage": str(self.utilization_percentage),
            },
            "equipment": [
                {
                    "name": e.name,
                    "monthly_cost": str(e.monthly_cost),
                    "usable_workdays_per_month": str(e.usable_workdays_per_month),
                }
                for e in self.equipment
            ],
            "overhead": {k: str(v) for k, v in self.overhead.items()},
            "margin": {
                "target_margin_percentage": str(self.margin.target_margin_percentage),
                "minimum_floor_percentage": str(self.margin.minimum_floor_percentage),
                "survival_mode_threshold": str(self.margin.survival_mode_threshold),
                "half_day_factor": str(self.margin.half_day_factor),
            },
        }


@dataclass(frozen=True)
class CostCalculationOutput:
    daily_labor_cost_per_crew: Decimal
    daily_equipment_cost: Decimal
    daily_overhead_allocation: Decimal
    total_daily_cost: Decimal
    adjusted_daily_cost: Decimal
    minimum_revenue_per_crew_day: Decimal
    target_revenue_per_crew_day: Decimal
    minimum_revenue_per_half_day: Decimal
    suggested_minimum_job_charge: Decimal
    break_even_hourly_rate: Decimal
    target_hourly_rate: Decimal
    warnings: tuple[str, ...] = field(default_factory=tuple)

    def to_dict(self) -> dict[str, Any]:
        return {
            "daily_labor_cost_per_crew": str(self.daily_labor_cost_per_crew),
            "daily_equipment_cost": str(self.daily_equipment_cost),
            "daily_overhead_allocation": str(self.daily_overhead_allocation),
            "total_daily_cost": str(self.total_daily_cost),
            "adjusted_daily_cost": str(self.adjusted_daily_cost),
            "minimum_revenue_per_crew_day": str(self.minimum_revenue_per_crew_day),
            "target_revenue_per_crew_day": str(self.target_revenue_per_crew_day),
            "minimum_revenue_per_half_day": str(self.minimum_revenue_per_half_day),
            "suggested_minimum_job_charge": str(self.suggested_minimum_job_charge),
            "break_even_hourly_rate": str(self.break_even_hourly_rate),
            "target_hourly_rate": str(self.target_hourly_rate),
            "warnings": list(self.warnings),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> CostCalculationOutput:
        kwargs = {
            name: to_decimal(data[name], name)
            for name in cls.__dataclass_fields__
            if name != "warnings"
        }
        return cls(**kwargs, warnings=tuple(data.get("warnings") or ()))


def margin_multiplier(percentage: Decimal) -> Decimal:
    """1 / (1 - pct/100).  Rejects percentages outside [0, 100)."""
    if percentage < ZERO or percentage >= HUNDRED:
        raise ValidationError(
            "Invalid margin percentage",
            [f"margin percentage must be in [0, 100), got {percentage}"],
        )
    return HUNDRED / (HUNDRED - percentage)


def calculate_costs(
    profile: CostProfileInput,
    *,
    low_margin_warning_percentage: Decimal = DEFAULT_LOW_MARGIN_WARNING_PERCENTAGE,
    low_utilization_warning_percentage: Decimal = DEFAULT_LOW_UTILIZATION_WARNING_PERCENTAGE,
    minimum_job_charge_factor: Decimal = DEFAULT_MINIMUM_JOB_CHARGE_FACTOR,
) -> CostCalculationOutput:
    """
    Compute daily cost and revenue figures for one crew.

    Preconditions: profile was produced by CostProfileInput.from_dict() or
        built with finite Decimals.
    Postconditions: all monetary outputs rounded to 2 places (except the
        half-day minimum, see module docstring); warnings are advisory and
        never block.
    """
    daily_labor = sum(
        (
            r.hourly_wage * (1 + r.burden_percentage / HUNDRED) * r.hours_per_day * r.count
            for r in profile.roles
        ),
        ZERO,
    )

    billable_days = profile.billable_days_per_month
    monthly_equipment = sum((e.monthly_cost for e in profile.equipment), ZERO)
    monthly_overhead = sum(profile.overhead.values(), ZERO)
    if billable_days > ZERO:
        daily_equipment = monthly_equipment / billable_days
        daily_overhead = monthly_overhead / billable_days
    else:
        daily_equipment = ZERO
        daily_overhead = ZERO

    total_daily = daily_labor + daily_equipment + daily_overhead

    utilization = profile.utilization_percentage / HUNDRED
    adjusted_daily = total_daily / utilization if utilization > ZERO else total_daily

    minimum_per_day = adjusted_daily * margin_multiplier(profile.margin.minimum_floor_percentage)
    target_per_day = adjusted_daily * margin_multiplier(profile.margin.target_margin_percentage)

    minimum_per_day_rounded = round_money(minimum_per_day)
    half_day = minimum_per_day_rounded * profile.margin.half_day_factor

    head_count = sum((r.count for r in profile.roles), 0)
    avg_hours = (
        sum((r.hours_per_day * r.count for r in profile.roles), ZERO)
        / max(head_count, 1)
    )
    if avg_hours > ZERO:
        break_even_hourly = adjusted_daily / avg_hours
        target_hourly = target_per_day / avg_hours
    else:
        break_even_hourly = ZERO
        target_hourly = ZERO

    warnings: list[str] = []
    if minimum_per_day < profile.margin.survival_mode_threshold:
        warnings.append(WARNING_BELOW_SURVIVAL)
    if profile.margin.target_margin_percentage < low_margin_warning_percentage:
        warnings.append(WARNING_LOW_TARGET_MARGIN)
    if profile.utilization_percentage < low_utilization_warning_percentage:
        warnings.append(WARNING_LOW_UTILIZATION)

    return CostCalculationOutput(
        daily_labor_cost_per_crew=round_money(daily_labor),
        daily_equipment_cost=round_money(daily_equipment),
        daily_overhead_allocation=round_money(daily_overhead),
        total_daily_cost=round_money(total_daily),
        adjusted_daily_cost=round_money(adjusted_daily),
        minimum_revenue_per_crew_day=minimum_per_day_rounded,
        target_revenue_per_crew_day=round_money(target_per_day),
        minimum_revenue_per_half_day=half_day,
        suggested_minimum_job_charge=round_money(half_day * minimum_job_charge_factor),
        break_even_hourly_rate=round_money(break_even_hourly),
        target_hourly_rate=round_money(target_hourly),
        warnings=tuple(warnings),
    )
