"""
Property-based tests for pricing arithmetic.

Hypothesis generates work items, overrides and rule sets and checks the
money identities every priced quote must satisfy.

Properties covered:
- total == subtotal + tax, with tax rounded half-up from the subtotal
- pricing at or above target margin never trips the floor
- deep discounts always trip the floor
- margin multipliers grow with the margin percentage
- additive rule effects do not depend on evaluation order
- ledger-derived invoice status follows the paid amount
"""

from decimal import Decimal

from hypothesis import given, settings
from hypothesis import strategies as st

from tests.conftest import COST_PROFILE_ASSUMPTIONS

from quote_kernel.db.types import round_money
from quote_kernel.domain.billing import derive_payment_status
from quote_kernel.domain.cost_calculator import CostProfileInput, calculate_costs, margin_multiplier
from quote_kernel.domain.pricing_engine import (
    CostBasis,
    WorkItem,
    calculate_from_work_items_only,
    price_estimate,
)
from quote_kernel.domain.rules import (
    FlatEffect,
    PercentageEffect,
    ProfileTerms,
    RuleDefinition,
    evaluate_rules,
)
from quote_kernel.domain.statuses import InvoiceStatus

_PROFILE = CostProfileInput.from_dict(COST_PROFILE_ASSUMPTIONS)
COST_BASIS = CostBasis(profile=_PROFILE, outputs=calculate_costs(_PROFILE), version=1)

money = st.decimals(min_value=Decimal("0"), max_value=Decimal("50000"), places=2)
positive_money = st.decimals(min_value=Decimal("1"), max_value=Decimal("50000"), places=2)
quantities = st.decimals(min_value=Decimal("0.25"), max_value=Decimal("500"), places=2)
hours = st.decimals(min_value=Decimal("0"), max_value=Decimal("200"), places=1)
tax_rates = st.decimals(min_value=Decimal("0"), max_value=Decimal("0.25"), places=4)
percentages = st.decimals(min_value=Decimal("0"), max_value=Decimal("99.99"), places=2)


@st.composite
def work_items(draw, min_size=1):
    count = draw(st.integers(min_value=min_size, max_value=6))
    return [
        WorkItem(
            id=str(index),
            description=f"Line {index}",
            quantity=draw(quantities),
            unit="ea",
            unit_price=draw(positive_money),
            labor_hours=draw(hours),
        )
        for index in range(count)
    ]


class TestPriceIdentities:
    @given(items=work_items(), rate=tax_rates)
    @settings(max_examples=200)
    def test_total_is_subtotal_plus_tax(self, items, rate):
        result = price_estimate(items, COST_BASIS, rate)
        assert result.total == result.subtotal + result.tax_amount
        assert result.tax_amount == round_money(result.subtotal * rate)
        assert result.subtotal == result.breakdown.final_price

    @given(items=work_items(), rate=tax_rates)
    def test_target_price_respects_floor(self, items, rate):
        result = price_estimate(items, COST_BASIS, rate)
        assert result.floor_violation is False
        assert result.subtotal >= result.breakdown.floor_price

    @given(
        items=work_items(),
        multiplier=st.decimals(min_value=Decimal("1"), max_value=Decimal("3"), places=2),
    )
    def test_markup_never_trips_floor(self, items, multiplier):
        result = price_estimate(items, COST_BASIS, "0.08", multiplier, "Premium client")
        assert result.is_override is True
        assert result.floor_violation is False

    @given(
        items=work_items(),
        multiplier=st.decimals(min_value=Decimal("0.05"), max_value=Decimal("0.80"), places=2),
    )
    def test_deep_discount_trips_floor(self, items, multiplier):
        result = price_estimate(items, COST_BASIS, "0.08", multiplier, "Loss leader")
        assert result.floor_violation is True

    @given(items=work_items(), rate=tax_rates)
    def test_simple_totals_identity(self, items, rate):
        totals = calculate_from_work_items_only(items, rate)
        assert totals.total == totals.subtotal + totals.tax_amount
        assert totals.subtotal == round_money(sum(i.quantity * i.unit_price for i in items))


class TestMarginMultiplier:
    @given(low=percentages, high=percentages)
    def test_monotonic(self, low, high):
        if low < high:
            assert margin_multiplier(low) < margin_multiplier(high)
        elif low == high:
            assert margin_multiplier(low) == margin_multiplier(high)

    @given(pct=percentages)
    def test_price_keeps_requested_margin(self, pct):
        price = Decimal("1000") * margin_multiplier(pct)
        margin = (price - Decimal("1000")) / price * Decimal("100")
        assert round_money(margin) == round_money(pct)


class TestRuleEvaluation:
    @given(
        base=money,
        flats=st.lists(st.decimals(min_value=Decimal("-500"), max_value=Decimal("500"), places=2), max_size=4),
        pcts=st.lists(st.decimals(min_value=Decimal("0"), max_value=Decimal("50"), places=1), max_size=4),
        data=st.data(),
    )
    def test_additive_effects_order_free(self, base, flats, pcts, data):
        rules = [RuleDefinition(f"f{i}", "Flat", FlatEffect(v)) for i, v in enumerate(flats)]
        rules += [RuleDefinition(f"p{i}", "Pct", PercentageEffect(v)) for i, v in enumerate(pcts)]
        shuffled = data.draw(st.permutations(rules))
        terms = ProfileTerms(tax_percentage=Decimal("8"))

        first = evaluate_rules(base, {}, rules, terms)
        second = evaluate_rules(base, {}, shuffled, terms)
        assert first.subtotal_after_adjustments == second.subtotal_after_adjustments
        assert first.total == second.total

    @given(
        base=positive_money,
        tax=st.decimals(min_value=Decimal("0"), max_value=Decimal("25"), places=2),
        deposit=st.decimals(min_value=Decimal("0"), max_value=Decimal("100"), places=2),
    )
    def test_terms_identities(self, base, tax, deposit):
        terms = ProfileTerms(tax_percentage=tax, deposit_percentage=deposit)
        result = evaluate_rules(base, {}, [], terms)
        assert result.subtotal_after_adjustments == round_money(base)
        assert result.total == result.subtotal_after_adjustments + result.tax_amount
        assert result.deposit_amount <= result.total
        assert result.margin_basis == "estimated"


class TestDerivedPaymentStatus:
    @given(total=positive_money, paid=money)
    def test_status_follows_balance(self, total, paid):
        status = derive_payment_status(total, paid, refunded=False)
        if paid == 0:
            assert status is None
        elif paid >= total:
            assert status is InvoiceStatus.PAID
        else:
            assert status is InvoiceStatus.PARTIALLY_PAID

    @given(total=positive_money)
    def test_refund_to_zero_is_refunded(self, total):
        assert derive_payment_status(total, Decimal("0"), refunded=True) is InvoiceStatus.REFUNDED
