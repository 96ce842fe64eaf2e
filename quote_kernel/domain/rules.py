"""
Module: quote_kernel.domain.rules
Responsibility: Tenant-configurable pricing rules.  Conditions and effects
    are parsed from their stored JSON into a closed set of frozen dataclasses,
    then evaluated in creation order against a keyed input bag.
Architecture position: Kernel > Domain.  Pure functions, no I/O.

Invariants enforced:
    - Unknown condition operators and effect types are rejected when a rule
      is parsed, never silently evaluated as "does not apply".
    - Every effect is computed from the base subtotal, so the adjustments
      total does not depend on rule order.
    - ``total == subtotal_after_adjustments + tax_amount`` exactly.

Failure modes:
    - ValidationError for an unknown operator/effect, a malformed condition,
      or a non-numeric input feeding a per-unit rule.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Mapping, Sequence, Union

from quote_kernel.db.types import HUNDRED, ZERO, round_money, to_decimal
from quote_kernel.exceptions import ValidationError

DEFAULT_MINIMUM_FLOOR_PERCENTAGE = Decimal("15")
DEFAULT_ESTIMATED_COST_RATIO = Decimal("0.60")


class _Missing:
    """Marker for a key absent from the input bag."""

    def __repr__(self) -> str:
        return "<missing>"


MISSING = _Missing()


def _strict_equals(left: Any, right: Any) -> bool:
    if isinstance(left, bool) or isinstance(right, bool):
        return type(left) is type(right) and left == right
    if left is MISSING or right is MISSING:
        return left is right
    return left == right


def _as_text(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def _as_number(value: Any) -> Decimal | None:
    if value is MISSING or value is None:
        return None
    if isinstance(value, bool):
        return Decimal(int(value))
    try:
        return to_decimal(value)
    except ValidationError:
        return None


# -----------------------------------------------------------------------------
# Conditions
# -----------------------------------------------------------------------------


@dataclass(frozen=True)
class Equals:
    key: str
    value: Any

    def matches(self, actual: Any) -> bool:
        return _strict_equals(actual, self.value)


@dataclass(frozen=True)
class NotEquals:
    key: str
    value: Any

    def matches(self, actual: Any) -> bool:
        return not _strict_equals(actual, self.value)


@dataclass(frozen=True)
class GreaterThan:
    key: str
    value: Decimal

    def matches(self, actual: Any) -> bool:
        number = _as_number(actual)
        return number is not None and number > self.value


@dataclass(frozen=True)
class LessThan:
    key: str
    value: Decimal

    def matches(self, actual: Any) -> bool:
        number = _as_number(actual)
        return number is not None and number < self.value


@dataclass(frozen=True)
class Contains:
    """Membership for list inputs, otherwise a substring match on the input as text."""

    key: str
    value: Any

    def matches(self, actual: Any) -> bool:
        if actual is MISSING or actual is None:
            return False
        if isinstance(actual, (list, tuple, set, frozenset)):
            return any(_strict_equals(item, self.value) for item in actual)
        return _as_text(self.value) in _as_text(actual)


@dataclass(frozen=True)
class IsTrue:
    key: str

    def matches(self, actual: Any) -> bool:
        return actual is True


@dataclass(frozen=True)
class IsFalse:
    key: str

    def matches(self, actual: Any) -> bool:
        return actual is False


Condition = Union[Equals, NotEquals, GreaterThan, LessThan, Contains, IsTrue, IsFalse]

_OPERATORS = ("equals", "notEquals", "greaterThan", "lessThan", "contains", "isTrue", "isFalse")


def parse_condition(raw: Mapping[str, Any] | None) -> Condition | None:
    """
    Parse a stored ``applies_when`` object.

    ``None`` or an object without a ``condition`` key means "no condition".
    The operator defaults to ``equals``.

    Raises:
        ValidationError: unknown operator, or a non-numeric comparison value.
    """
    if not raw or not raw.get("condition"):
        return None

    key = str(raw["condition"])
    operator = raw.get("operator") or "equals"
    value = raw.get("value")

    if operator == "equals":
        return Equals(key, value)
    if operator == "notEquals":
        return NotEquals(key, value)
    if operator in ("greaterThan", "lessThan"):
        number = _as_number(value)
        if number is None:
            raise ValidationError(
                "Invalid rule condition",
                [f"{operator} on '{key}' needs a numeric value"],
            )
        return GreaterThan(key, number) if operator == "greaterThan" else LessThan(key, number)
    if operator == "contains":
        return Contains(key, value)
    if operator == "isTrue":
        return IsTrue(key)
    if operator == "isFalse":
        return IsFalse(key)
    raise ValidationError(
        "Invalid rule condition",
        [f"unknown operator '{operator}'; expected one of {', '.join(_OPERATORS)}"],
    )


def condition_matches(condition: Condition, inputs: Mapping[str, Any]) -> bool:
    actual = inputs.get(condition.key, MISSING)
    if isinstance(
        condition, (Equals, NotEquals, GreaterThan, LessThan, Contains, IsTrue, IsFalse)
    ):
        return condition.matches(actual)
    raise TypeError(f"Unhandled condition type: {type(condition).__name__}")


# -----------------------------------------------------------------------------
# Effects
# -----------------------------------------------------------------------------


@dataclass(frozen=True)
class FlatEffect:
    value: Decimal
    effect_type: str = "flat"


@dataclass(frozen=True)
class PercentageEffect:
    value: Decimal
    effect_type: str = "percentage"


@dataclass(frozen=True)
class MultiplierEffect:
    value: Decimal
    effect_type: str = "multiplier"


@dataclass(frozen=True)
class PerUnitEffect:
    value: Decimal
    effect_type: str = "perUnit"


Effect = Union[FlatEffect, PercentageEffect, MultiplierEffect, PerUnitEffect]

_EFFECTS = {
    "flat": FlatEffect,
    "percentage": PercentageEffect,
    "multiplier": MultiplierEffect,
    "perUnit": PerUnitEffect,
}


def parse_effect(effect_type: str, effect_value: Any) -> Effect:
    try:
        effect_cls = _EFFECTS[effect_type]
    except KeyError:
        raise ValidationError(
            "Invalid rule effect",
            [f"unknown effect type '{effect_type}'; expected one of {', '.join(_EFFECTS)}"],
        ) from None
    return effect_cls(to_decimal(effect_value, "effect_value"))


def effect_amount(
    effect: Effect,
    base_subtotal: Decimal,
    inputs: Mapping[str, Any],
    field_key: str | None,
) -> Decimal:
    if isinstance(effect, FlatEffect):
        return effect.value
    if isinstance(effect, PercentageEffect):
        return base_subtotal * effect.value / HUNDRED
    if isinstance(effect, MultiplierEffect):
        return base_subtotal * (effect.value - 1)
    if isinstance(effect, PerUnitEffect):
        if field_key is None:
            return ZERO
        raw = inputs.get(field_key) or 0
        units = _as_number(raw)
        if units is None:
            raise ValidationError(
                "Invalid input",
                [f"'{field_key}' must be numeric for a per-unit price rule"],
            )
        return units * effect.value
    raise TypeError(f"Unhandled effect type: {type(effect).__name__}")


# -----------------------------------------------------------------------------
# Evaluation
# -----------------------------------------------------------------------------


@dataclass(frozen=True)
class RuleDefinition:
    """A parsed, active rule.  ``field_key`` is the bound input, if any."""

    rule_id: str
    name: str
    effect: Effect
    field_key: str | None = None
    condition: Condition | None = None


@dataclass(frozen=True)
class ProfileTerms:
    """Percentages drawn from the tenant's pricing profile."""

    tax_percentage: Decimal = ZERO
    deposit_percentage: Decimal = ZERO
    commission_percentage: Decimal = ZERO
    minimum_floor_percentage: Decimal = DEFAULT_MINIMUM_FLOOR_PERCENTAGE


@dataclass(frozen=True)
class Adjustment:
    rule_id: str
    rule_name: str
    field_key: str | None
    effect_type: str
    effect_value: Decimal
    applied_amount: Decimal


@dataclass(frozen=True)
class RulePricing:
    base_subtotal: Decimal
    adjustments: tuple[Adjustment, ...]
    adjustments_total: Decimal
    subtotal_after_adjustments: Decimal
    tax_percentage: Decimal
    tax_amount: Decimal
    total: Decimal
    deposit_percentage: Decimal
    deposit_amount: Decimal
    commission_percentage: Decimal
    commission_amount: Decimal
    margin_percentage: Decimal
    margin_basis: str
    floor_violation: bool
    warnings: tuple[str, ...] = field(default_factory=tuple)

    def to_dict(self) -> dict[str, Any]:
        return {
            "base_subtotal": str(self.base_subtotal),
            "adjustments": [
                {
                    "rule_id": a.rule_id,
                    "rule_name": a.rule_name,
                    "field_key": a.field_key,
                    "effect_type": a.effect_type,
                    "effect_value": str(a.effect_value),
                    "applied_amount": str(a.applied_amount),
                }
                for a in self.adjustments
            ],
            "adjustments_total": str(self.adjustments_total),
            "subtotal_after_adjustments": str(self.subtotal_after_adjustments),
            "tax_percentage": str(self.tax_percentage),
            "tax_amount": str(self.tax_amount),
            "total": str(self.total),
            "deposit_percentage": str(self.deposit_percentage),
            "deposit_amount": str(self.deposit_amount),
            "commission_percentage": str(self.commission_percentage),
            "commission_amount": str(self.commission_amount),
            "margin_percentage": str(self.margin_percentage),
            "margin_basis": self.margin_basis,
            "floor_violation": self.floor_violation,
            "warnings": list(self.warnings),
        }


def rule_applies(rule: RuleDefinition, inputs: Mapping[str, Any]) -> bool:
    """Conditioned rules test their condition; bound rules need a truthy input."""
    if rule.condition is not None:
        return condition_matches(rule.condition, inputs)
    if rule.field_key is not None:
        value = inputs.get(rule.field_key, MISSING)
        if value is MISSING or value is None or value is False or value == "":
            return False
        if not isinstance(value, bool) and isinstance(value, (int, float, Decimal)) and value == 0:
            return False
        return True
    return True


def _format_percent(value: Decimal) -> str:
    normalized = value.normalize()
    return format(normalized, "f")


def evaluate_rules(
    base_subtotal: Decimal,
    inputs: Mapping[str, Any],
    rules: Sequence[RuleDefinition],
    terms: ProfileTerms,
    *,
    direct_costs: Decimal | None = None,
    estimated_cost_ratio: Decimal = DEFAULT_ESTIMATED_COST_RATIO,
) -> RulePricing:
    """
    Apply ``rules`` (in the given order) on top of ``base_subtotal``.

    Margin is measured against ``direct_costs`` when the caller has real
    costs from the pricing engine, otherwise against
    ``base_subtotal * estimated_cost_ratio``.

    Postconditions: side-effect free.
    """
    adjustments: list[Adjustment] = []
    adjustments_total = ZERO

    for rule in rules:
        if not rule_applies(rule, inputs):
            continue
        amount = effect_amount(rule.effect, base_subtotal, inputs, rule.field_key)
        if amount != ZERO:
            adjustments.append(Adjustment(
                rule_id=rule.rule_id,
                rule_name=rule.name,
                field_key=rule.field_key,
                effect_type=rule.effect.effect_type,
                effect_value=rule.effect.value,
                applied_amount=round_money(amount),
            ))
            adjustments_total += amount

    subtotal_exact = base_subtotal + adjustments_total
    subtotal = round_money(subtotal_exact)
    tax_amount = round_money(subtotal * terms.tax_percentage / HUNDRED)
    total = subtotal + tax_amount
    deposit_amount = round_money(total * terms.deposit_percentage / HUNDRED)
    commission_amount = round_money(subtotal * terms.commission_percentage / HUNDRED)

    if direct_costs is not None:
        cost, basis = direct_costs, "cost_profile"
    else:
        cost, basis = base_subtotal * estimated_cost_ratio, "estimated"
    margin = (subtotal_exact - cost) / subtotal_exact * HUNDRED if subtotal_exact > ZERO else ZERO

    floor = terms.minimum_floor_percentage
    floor_violation = margin < floor
    warnings: list[str] = []
    if floor_violation:
        warnings.append(f"Margin {margin:.1f}% is below floor of {_format_percent(floor)}%")

    return RulePricing(
        base_subtotal=round_money(base_subtotal),
        adjustments=tuple(adjustments),
        adjustments_total=round_money(adjustments_total),
        subtotal_after_adjustments=subtotal,
        tax_percentage=terms.tax_percentage,
        tax_amount=tax_amount,
        total=total,
        deposit_percentage=terms.deposit_percentage,
        deposit_amount=deposit_amount,
        commission_percentage=terms.commission_percentage,
        commission_amount=commission_amount,
        margin_percentage=round_money(margin),
        margin_basis=basis,
        floor_violation=floor_violation,
        warnings=tuple(warnings),
    )
