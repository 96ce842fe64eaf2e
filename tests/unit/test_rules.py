"""
Unit tests for the pricing rule engine.

Verifies:
- Condition parsing and matching for every operator
- Effect amounts (flat, percentage, multiplier, per unit)
- Tax, deposit and commission derived from profile terms
- Estimated versus cost-profile margin basis and the floor warning
"""

from decimal import Decimal

import pytest

from quote_kernel.domain.rules import (
    MISSING,
    Equals,
    GreaterThan,
    ProfileTerms,
    RuleDefinition,
    condition_matches,
    evaluate_rules,
    parse_condition,
    parse_effect,
    rule_applies,
)
from quote_kernel.exceptions import ValidationError


def _rule(rule_id, effect_type, value, *, field_key=None, when=None):
    return RuleDefinition(
        rule_id=rule_id,
        name=f"Rule {rule_id}",
        effect=parse_effect(effect_type, value),
        field_key=field_key,
        condition=parse_condition(when),
    )


class TestParseCondition:
    def test_none_means_no_condition(self):
        assert parse_condition(None) is None
        assert parse_condition({}) is None
        assert parse_condition({"operator": "equals", "value": 1}) is None

    def test_operator_defaults_to_equals(self):
        assert parse_condition({"condition": "slope", "value": "steep"}) == Equals("slope", "steep")

    def test_numeric_comparison_value_is_decimal(self):
        cond = parse_condition({"condition": "acres", "operator": "greaterThan", "value": "2.5"})
        assert cond == GreaterThan("acres", Decimal("2.5"))

    def test_numeric_comparison_needs_number(self):
        with pytest.raises(ValidationError):
            parse_condition({"condition": "acres", "operator": "lessThan", "value": "many"})

    def test_unknown_operator_rejected(self):
        with pytest.raises(ValidationError) as exc_info:
            parse_condition({"condition": "acres", "operator": "between", "value": 1})
        assert "unknown operator 'between'" in exc_info.value.field_errors[0]


class TestConditionMatching:
    @pytest.mark.parametrize(
        "operator, expected, actual, matches",
        [
            ("equals", "steep", "steep", True),
            ("equals", "steep", "flat", False),
            ("equals", 1, True, False),
            ("notEquals", "flat", "steep", True),
            ("greaterThan", "2", "3", True),
            ("greaterThan", "2", 2, False),
            ("lessThan", "2", 1.5, True),
            ("lessThan", "2", "n/a", False),
            ("contains", "oak", "red oak", True),
            ("contains", "oak", ["maple", "oak"], True),
            ("contains", "oak", 7, False),
            ("contains", "27", 1275, True),
            ("contains", "true", True, True),
            ("contains", "8", 7, False),
            ("isTrue", None, True, True),
            ("isTrue", None, "true", False),
            ("isFalse", None, False, True),
        ],
    )
    def test_operator(self, operator, expected, actual, matches):
        cond = parse_condition({"condition": "k", "operator": operator, "value": expected})
        assert condition_matches(cond, {"k": actual}) is matches

    def test_absent_input_never_equals_a_value(self):
        cond = parse_condition({"condition": "k", "value": None})
        assert condition_matches(cond, {}) is False
        assert cond.matches(MISSING) is False

    def test_absent_input_fails_comparisons(self):
        cond = parse_condition({"condition": "k", "operator": "greaterThan", "value": 0})
        assert condition_matches(cond, {}) is False

    def test_absent_input_contains_nothing(self):
        cond = parse_condition({"condition": "k", "operator": "contains", "value": "miss"})
        assert condition_matches(cond, {}) is False
        assert condition_matches(cond, {"k": None}) is False


class TestParseEffect:
    def test_unknown_effect_rejected(self):
        with pytest.raises(ValidationError):
            parse_effect("discountCode", "5")

    def test_bad_value_rejected(self):
        with pytest.raises(ValidationError):
            parse_effect("flat", "ten")


class TestRuleApplies:
    def test_unbound_unconditioned_rule_always_applies(self):
        assert rule_applies(_rule("r", "flat", "10"), {}) is True

    @pytest.mark.parametrize("value", [None, False, "", 0])
    def test_bound_rule_needs_truthy_input(self, value):
        rule = _rule("r", "perUnit", "5", field_key="trees")
        assert rule_applies(rule, {"trees": value}) is False

    def test_bound_rule_missing_input(self):
        assert rule_applies(_rule("r", "flat", "10", field_key="trees"), {}) is False

    def test_condition_takes_precedence_over_binding(self):
        rule = _rule("r", "flat", "10", field_key="trees", when={"condition": "slope", "value": "steep"})
        assert rule_applies(rule, {"slope": "steep"}) is True


class TestEvaluateRules:
    """Adjustments are all computed against the base subtotal."""

    def test_no_rules(self):
        pricing = evaluate_rules(Decimal("1000"), {}, [], ProfileTerms())
        assert pricing.adjustments == ()
        assert pricing.subtotal_after_adjustments == Decimal("1000.00")
        assert pricing.total == Decimal("1000.00")
        assert pricing.margin_basis == "estimated"
        assert pricing.margin_percentage == Decimal("40.00")

    def test_each_effect_type(self):
        rules = [
            _rule("flat", "flat", "50"),
            _rule("pct", "percentage", "10"),
            _rule("mult", "multiplier", "1.2"),
            _rule("unit", "perUnit", "25", field_key="trees"),
        ]
        pricing = evaluate_rules(Decimal("1000"), {"trees": 4}, rules, ProfileTerms())
        amounts = {a.rule_id: a.applied_amount for a in pricing.adjustments}
        assert amounts == {
            "flat": Decimal("50.00"),
            "pct": Decimal("100.00"),
            "mult": Decimal("200.00"),
            "unit": Decimal("100.00"),
        }
        assert pricing.adjustments_total == Decimal("450.00")
        assert pricing.subtotal_after_adjustments == Decimal("1450.00")

    def test_zero_adjustments_are_not_listed(self):
        rules = [_rule("noop", "multiplier", "1")]
        pricing = evaluate_rules(Decimal("500"), {}, rules, ProfileTerms())
        assert pricing.adjustments == ()

    def test_non_numeric_per_unit_input_rejected(self):
        rules = [_rule("unit", "perUnit", "25", field_key="trees")]
        with pytest.raises(ValidationError):
            evaluate_rules(Decimal("100"), {"trees": "lots"}, rules, ProfileTerms())

    def test_profile_terms(self):
        terms = ProfileTerms(
            tax_percentage=Decimal("8"),
            deposit_percentage=Decimal("30"),
            commission_percentage=Decimal("5"),
        )
        pricing = evaluate_rules(Decimal("1000"), {}, [], terms)
        assert pricing.tax_amount == Decimal("80.00")
        assert pricing.total == Decimal("1080.00")
        assert pricing.deposit_amount == Decimal("324.00")
        assert pricing.commission_amount == Decimal("50.00")

    def test_discount_below_floor_warns(self):
        rules = [_rule("disc", "percentage", "-40")]
        pricing = evaluate_rules(Decimal("1000"), {}, rules, ProfileTerms())
        # cost 600 against a 600 subtotal
        assert pricing.margin_percentage == Decimal("0.00")
        assert pricing.floor_violation is True
        assert pricing.warnings == ("Margin 0.0% is below floor of 15%",)

    def test_direct_costs_switch_margin_basis(self):
        pricing = evaluate_rules(
            Decimal("1000"), {}, [], ProfileTerms(), direct_costs=Decimal("900"),
        )
        assert pricing.margin_basis == "cost_profile"
        assert pricing.margin_percentage == Decimal("10.00")
        assert pricing.floor_violation is True

    def test_cost_ratio_is_configurable(self):
        pricing = evaluate_rules(
            Decimal("1000"), {}, [], ProfileTerms(), estimated_cost_ratio=Decimal("0.5"),
        )
        assert pricing.margin_percentage == Decimal("50.00")

    def test_zero_subtotal_has_zero_margin(self):
        pricing = evaluate_rules(Decimal("0"), {}, [], ProfileTerms())
        assert pricing.margin_percentage == Decimal("0.00")
        assert pricing.floor_violation is True

    def test_result_serializes(self):
        rules = [_rule("flat", "flat", "50")]
        data = evaluate_rules(Decimal("100"), {}, rules, ProfileTerms()).to_dict()
        assert data["adjustments"][0]["applied_amount"] == "50.00"
        assert data["margin_basis"] == "estimated"
