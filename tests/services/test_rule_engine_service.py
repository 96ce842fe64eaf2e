"""
Tests for tenant-configured pricing rules.

Verifies:
- Rules are validated before they are stored
- Only active rules on active, in-mode fields are evaluated
- Profile terms supply tax, deposit and commission
- Preview writes nothing; finalize writes one snapshot on a draft
"""

from decimal import Decimal

import pytest

from quote_kernel.exceptions import StateConflictError, ValidationError
from quote_kernel.services.rule_engine_service import OptionInput, PreviewMode

TEN_HOURS = [
    {"id": "1", "description": "Brush clearing", "quantity": "10", "unit": "hr", "unit_price": "100"},
]


@pytest.fixture
def trees_field(rule_engine, company_id):
    return rule_engine.create_field(company_id, "trees", "Trees to remove")


class TestFields:
    def test_create(self, trees_field):
        assert trees_field.field_type == "number"
        assert trees_field.applies_to == ["internal"]
        assert trees_field.is_active is True

    def test_duplicate_key_rejected(self, trees_field, rule_engine, company_id):
        with pytest.raises(ValidationError) as exc_info:
            rule_engine.create_field(company_id, "trees", "Again")
        assert exc_info.value.field_errors == ["field_key 'trees' already exists"]

    def test_bad_type_and_mode(self, rule_engine, company_id):
        with pytest.raises(ValidationError) as exc_info:
            rule_engine.create_field(company_id, "x", "X", field_type="date", applies_to=["kiosk"])
        assert len(exc_info.value.field_errors) == 2

    def test_list_by_mode(self, trees_field, rule_engine, company_id):
        rule_engine.create_field(company_id, "promo", "Promo", field_type="boolean", applies_to=["marketing"])
        assert [f.field_key for f in rule_engine.list_fields(company_id, PreviewMode.INTERNAL)] == ["trees"]
        assert [f.field_key for f in rule_engine.list_fields(company_id, PreviewMode.MARKETING)] == ["promo"]


class TestRules:
    def test_rules_keep_creation_order(self, rule_engine, company_id, user):
        first = rule_engine.create_rule(company_id, "Travel", "flat", "50", user)
        second = rule_engine.create_rule(company_id, "Rush", "multiplier", "1.1", user)
        assert first.sort_order < second.sort_order
        assert rule_engine.list_rules(company_id) == [first, second]

    def test_unknown_operator_never_stored(self, rule_engine, company_id, user):
        with pytest.raises(ValidationError):
            rule_engine.create_rule(
                company_id, "Odd", "flat", "10", user,
                applies_when={"condition": "acres", "operator": "between", "value": 1},
            )
        assert rule_engine.list_rules(company_id) == []

    def test_unknown_effect_rejected(self, rule_engine, company_id, user):
        with pytest.raises(ValidationError):
            rule_engine.create_rule(company_id, "Odd", "coupon", "10", user)

    def test_creation_audited(self, rule_engine, auditor, company_id, user):
        rule = rule_engine.create_rule(company_id, "Travel", "flat", "50", user)
        entry = auditor.find_by_action("pricing_rule.created", rule.id)[0]
        assert entry.new_state["effect_type"] == "flat"

    def test_deactivation_audited_once(self, rule_engine, auditor, company_id, user):
        rule = rule_engine.create_rule(company_id, "Travel", "flat", "50", user)
        rule_engine.set_rule_active(company_id, rule.id, False, user)
        rule_engine.set_rule_active(company_id, rule.id, False, user)
        assert len(auditor.find_by_action("pricing_rule.deactivated", rule.id)) == 1


class TestProfiles:
    def test_new_default_replaces_old(self, rule_engine, company_id, user):
        old = rule_engine.save_profile(company_id, "Standard", user, is_default=True)
        new = rule_engine.save_profile(company_id, "Premium", user, is_default=True)
        assert old.is_default is False
        assert rule_engine.default_profile(company_id) == new

    def test_floor_defaults_from_policy(self, rule_engine, company_id, user):
        profile = rule_engine.save_profile(company_id, "Standard", user)
        assert profile.minimum_floor_percentage == Decimal("15")

    def test_percentages_bounded(self, rule_engine, company_id, user):
        with pytest.raises(ValidationError):
            rule_engine.save_profile(company_id, "Bad", user, tax_percentage="101")


class TestPreview:
    def test_no_rules(self, rule_engine, company_id):
        result = rule_engine.preview(company_id, {}, TEN_HOURS)
        assert result.pricing.base_subtotal == Decimal("1000")
        assert result.pricing.total == Decimal("1000.00")
        assert result.pricing.margin_percentage == Decimal("40.00")
        assert result.pricing_profile_id is None

    def test_field_bound_rule(self, trees_field, rule_engine, company_id, user):
        rule_engine.create_rule(company_id, "Tree removal", "perUnit", "25", user, field_id=trees_field.id)
        result = rule_engine.preview(company_id, {"trees": 4}, TEN_HOURS)
        assert result.fields_used == ("trees",)
        assert result.pricing.adjustments[0].field_key == "trees"
        assert result.pricing.subtotal_after_adjustments == Decimal("1100.00")

    def test_rule_on_inactive_field_skipped(self, trees_field, rule_engine, company_id, user):
        rule_engine.create_rule(company_id, "Tree removal", "perUnit", "25", user, field_id=trees_field.id)
        rule_engine.set_field_active(company_id, trees_field.id, False)
        result = rule_engine.preview(company_id, {"trees": 4}, TEN_HOURS)
        assert result.pricing.adjustments == ()

    def test_rule_on_other_mode_field_skipped(self, trees_field, rule_engine, company_id, user):
        rule_engine.create_rule(company_id, "Tree removal", "perUnit", "25", user, field_id=trees_field.id)
        result = rule_engine.preview(company_id, {"trees": 4}, TEN_HOURS, mode=PreviewMode.MARKETING)
        assert result.pricing.adjustments == ()

    def test_inactive_rule_skipped(self, rule_engine, company_id, user):
        rule = rule_engine.create_rule(company_id, "Travel", "flat", "50", user)
        rule_engine.set_rule_active(company_id, rule.id, False, user)
        assert rule_engine.preview(company_id, {}, TEN_HOURS).pricing.adjustments == ()

    def test_conditional_rule(self, rule_engine, company_id, user):
        rule_engine.create_rule(
            company_id, "Steep slope", "percentage", "20", user,
            applies_when={"condition": "slope", "value": "steep"},
        )
        assert rule_engine.preview(company_id, {"slope": "flat"}, TEN_HOURS).pricing.adjustments == ()
        steep = rule_engine.preview(company_id, {"slope": "steep"}, TEN_HOURS)
        assert steep.pricing.adjustments_total == Decimal("200.00")

    def test_default_profile_terms(self, rule_engine, company_id, user):
        profile = rule_engine.save_profile(
            company_id, "Standard", user, tax_percentage="8", deposit_percentage="30", is_default=True,
        )
        result = rule_engine.preview(company_id, {}, TEN_HOURS)
        assert result.pricing_profile_id == profile.id
        assert result.pricing.tax_amount == Decimal("80.00")
        assert result.pricing.deposit_amount == Decimal("324.00")

    def test_rules_of_other_profiles_ignored(self, rule_engine, company_id, user):
        standard = rule_engine.save_profile(company_id, "Standard", user, is_default=True)
        premium = rule_engine.save_profile(company_id, "Premium", user)
        rule_engine.create_rule(company_id, "Premium fee", "flat", "300", user, pricing_profile_id=premium.id)
        rule_engine.create_rule(company_id, "Travel", "flat", "50", user)
        assert rule_engine.preview(company_id, {}, TEN_HOURS).pricing.adjustments_total == Decimal("50.00")
        chosen = rule_engine.preview(company_id, {}, TEN_HOURS, pricing_profile_id=premium.id)
        assert chosen.pricing.adjustments_total == Decimal("350.00")
        assert standard.is_default is True

    def test_options_priced_alongside(self, trees_field, rule_engine, company_id, user):
        rule_engine.create_rule(company_id, "Tree removal", "perUnit", "25", user, field_id=trees_field.id)
        result = rule_engine.preview(
            company_id,
            {"trees": 2},
            TEN_HOURS,
            options=[
                OptionInput("More trees", {"trees": 6}),
                OptionInput("Half day", work_items=[dict(TEN_HOURS[0], quantity="5")]),
            ],
        )
        more, half = result.options
        assert more.inputs == {"trees": 6}
        assert more.pricing.subtotal_after_adjustments == Decimal("1150.00")
        assert half.pricing.subtotal_after_adjustments == Decimal("550.00")

    def test_preview_writes_nothing(self, rule_engine, auditor, company_id, user):
        rule_engine.create_rule(company_id, "Travel", "flat", "50", user)
        before = len(auditor.get_recent_entries(1000))
        rule_engine.preview(company_id, {}, TEN_HOURS)
        assert len(auditor.get_recent_entries(1000)) == before

    def test_preview_serializes(self, rule_engine, company_id):
        data = rule_engine.preview(company_id, {"slope": "flat"}, TEN_HOURS).to_dict()
        assert data["mode"] == "internal"
        assert data["inputs"] == {"slope": "flat"}
        assert data["pricing_profile_id"] is None


class TestFinalize:
    def test_finalize_snapshot(self, cost_profile, draft_estimate, rule_engine, company_id, user):
        rule_engine.save_profile(company_id, "Standard", user, tax_percentage="8", is_default=True)
        estimate = draft_estimate()
        result = rule_engine.preview(company_id, {}, TEN_HOURS)
        snapshot = rule_engine.finalize(company_id, estimate.id, user, result)
        assert snapshot.trigger_action == "finalize"
        assert snapshot.snapshot_version == 1
        assert snapshot.total == Decimal("1080.00")
        assert snapshot.cost_profile_snapshot_id == cost_profile.id
        assert snapshot.pricing_breakdown["cost_profile_version"] == 1
        assert estimate.status == "draft"
        assert estimate.tax_rate == Decimal("0.0800")
        assert estimate.work_items[0]["description"] == "Brush clearing"

    def test_finalize_audited(self, cost_profile, draft_estimate, rule_engine, auditor, company_id, user):
        estimate = draft_estimate()
        rule_engine.finalize(company_id, estimate.id, user, rule_engine.preview(company_id, {}, TEN_HOURS))
        assert auditor.find_by_action("estimate.finalized", estimate.id)

    def test_sent_estimate_refused(self, sent_estimate, rule_engine, auditor, company_id, user):
        estimate = sent_estimate().estimate
        with pytest.raises(StateConflictError):
            rule_engine.finalize(company_id, estimate.id, user, rule_engine.preview(company_id, {}, TEN_HOURS))
        assert auditor.find_by_action("estimate.finalize_rejected", estimate.id)

    def test_requires_cost_profile(self, draft_estimate, rule_engine, company_id, user):
        estimate = draft_estimate()
        with pytest.raises(ValidationError):
            rule_engine.finalize(company_id, estimate.id, user, rule_engine.preview(company_id, {}, TEN_HOURS))

    def test_create_with_engine(self, rule_engine, company_id, customer_id, user):
        profile = rule_engine.save_profile(company_id, "Standard", user, tax_percentage="5", is_default=True)
        estimate, result = rule_engine.create_with_engine(
            company_id, customer_id, user, inputs={"slope": "flat"}, work_items=TEN_HOURS, title="Lot clearing",
        )
        assert estimate.status == "draft"
        assert estimate.pricing_profile_id == profile.id
        assert estimate.input_snapshot == {"slope": "flat"}
        assert estimate.pricing_snapshot["total"] == str(result.pricing.total)
        assert estimate.tax_rate == Decimal("0.0500")
