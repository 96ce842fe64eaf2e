"""
Tests for EstimateService.

Verifies:
- Draft creation, numbering and PATCH semantics
- Sending prices against the latest cost profile and snapshots the result
- Approval and rejection snapshots
- Change orders supersede their parent and move the portal link
- Refused edits and transitions are audited before raising
"""

from datetime import date
from decimal import Decimal
from uuid import uuid4

import pytest

from quote_kernel.domain.changes import FieldChanges
from quote_kernel.domain.statuses import DocumentType, EstimateStatus
from quote_kernel.domain.tokens import TokenRejection
from quote_kernel.exceptions import (
    EstimateLockedError,
    NotFoundError,
    StateConflictError,
    ValidationError,
)
from quote_kernel.services.snapshot_service import SnapshotService


class TestCreateEstimate:
    def test_draft_with_sequential_numbers(self, draft_estimate):
        first = draft_estimate()
        second = draft_estimate()
        assert first.status == EstimateStatus.DRAFT
        assert first.estimate_number == "EST-00001"
        assert second.estimate_number == "EST-00002"
        assert first.version == 1

    def test_tax_rate_is_stored_as_rate(self, draft_estimate):
        assert draft_estimate(tax_rate="0.08").tax_rate == Decimal("0.0800")

    def test_tax_rate_out_of_range(self, draft_estimate):
        with pytest.raises(ValidationError):
            draft_estimate(tax_rate="8")

    def test_bad_work_items_rejected(self, draft_estimate):
        with pytest.raises(ValidationError):
            draft_estimate(work_items=[{"id": "1"}])

    def test_creation_is_audited(self, draft_estimate, auditor):
        estimate = draft_estimate()
        assert auditor.get_trace("estimate", estimate.id).actions == ("estimate.created",)

    def test_other_tenant_cannot_load(self, draft_estimate, estimate_service):
        estimate = draft_estimate()
        with pytest.raises(NotFoundError):
            estimate_service.get_estimate(uuid4(), estimate.id)


class TestUpdateDraft:
    def test_only_sent_fields_change(self, draft_estimate, estimate_service, company_id, user):
        estimate = draft_estimate(description="Front beds")
        estimate_service.update_draft(company_id, estimate.id, {"title": "Fall cleanup"}, user)
        assert estimate.title == "Fall cleanup"
        assert estimate.description == "Front beds"

    def test_null_clears_optional_field(self, draft_estimate, estimate_service, company_id, user):
        estimate = draft_estimate(valid_until=date(2024, 7, 1))
        estimate_service.update_draft(
            company_id, estimate.id, FieldChanges({"valid_until": None}), user,
        )
        assert estimate.valid_until is None

    def test_required_field_cannot_be_cleared(self, draft_estimate, estimate_service, company_id, user):
        estimate = draft_estimate()
        with pytest.raises(ValidationError):
            estimate_service.update_draft(company_id, estimate.id, {"work_items": None}, user)

    def test_status_is_not_editable(self, draft_estimate, estimate_service, company_id, user):
        estimate = draft_estimate()
        with pytest.raises(ValidationError):
            estimate_service.update_draft(company_id, estimate.id, {"status": "approved"}, user)

    def test_change_is_audited_with_diff(self, draft_estimate, estimate_service, auditor, company_id, user):
        estimate = draft_estimate()
        estimate_service.update_draft(company_id, estimate.id, {"title": "Fall cleanup"}, user)
        entry = auditor.find_by_action("estimate.updated", estimate.id)[0]
        assert entry.previous_state == {"title": "Spring cleanup"}
        assert entry.new_state == {"title": "Fall cleanup"}

    def test_noop_update_writes_nothing(self, draft_estimate, estimate_service, auditor, company_id, user):
        estimate = draft_estimate()
        estimate_service.update_draft(company_id, estimate.id, {"title": "Spring cleanup"}, user)
        assert auditor.find_by_action("estimate.updated", estimate.id) == []

    def test_sent_estimate_is_locked(self, sent_estimate, estimate_service, auditor, company_id, user):
        estimate = sent_estimate().estimate
        with pytest.raises(EstimateLockedError) as exc_info:
            estimate_service.update_draft(company_id, estimate.id, {"title": "Sneaky"}, user)
        assert exc_info.value.code == "ESTIMATE_LOCKED"
        assert estimate.title == "Spring cleanup"
        assert auditor.find_by_action("estimate.update_rejected", estimate.id)


class TestSendEstimate:
    def test_send_prices_and_snapshots(self, sent_estimate, cost_profile):
        sent = sent_estimate()
        estimate = sent.estimate
        assert estimate.status == EstimateStatus.SENT
        assert estimate.total == Decimal("1937.83")
        assert sent.snapshot.snapshot_version == 1
        assert sent.snapshot.trigger_action == "send"
        assert sent.snapshot.cost_profile_snapshot_id == cost_profile.id
        assert sent.snapshot.previous_status == "draft"
        assert estimate.latest_snapshot_id == sent.snapshot.id

    def test_send_issues_link_and_notifies(self, sent_estimate, notifier):
        sent = sent_estimate()
        assert notifier.sent == [("estimate", sent.estimate.id, sent.token.raw_token)]
        assert sent.token.document_type is DocumentType.ESTIMATE

    def test_link_expires_after_fourteen_days(self, sent_estimate, clock):
        sent = sent_estimate()
        assert (sent.token.expires_at - clock.now()).days == 14

    def test_send_requires_cost_profile(self, draft_estimate, estimate_service, company_id, user):
        estimate = draft_estimate()
        with pytest.raises(ValidationError) as exc_info:
            estimate_service.send_estimate(company_id, estimate.id, user)
        assert "No cost profile configured" in str(exc_info.value)
        assert estimate.status == EstimateStatus.DRAFT

    def test_override_is_snapshotted(self, cost_profile, draft_estimate, estimate_service, company_id, user):
        estimate = draft_estimate()
        sent = estimate_service.send_estimate(
            company_id, estimate.id, user,
            override_multiplier="0.8", override_reason="Repeat customer",
        )
        assert sent.snapshot.is_override is True
        assert sent.snapshot.override_reason == "Repeat customer"
        assert sent.snapshot.floor_violation is True

    def test_override_without_reason(self, cost_profile, draft_estimate, estimate_service, company_id, user):
        estimate = draft_estimate()
        with pytest.raises(ValidationError):
            estimate_service.send_estimate(company_id, estimate.id, user, override_multiplier="0.9")

    def test_notifier_failure_does_not_undo_send(
        self, cost_profile, draft_estimate, estimate_service, notifier, company_id, user,
    ):
        notifier.fail = True
        sent = estimate_service.send_estimate(company_id, draft_estimate().id, user)
        assert sent.estimate.status == EstimateStatus.SENT

    def test_resend_is_refused_and_audited(self, sent_estimate, estimate_service, auditor, company_id, user):
        estimate = sent_estimate().estimate
        with pytest.raises(StateConflictError):
            estimate_service.send_estimate(company_id, estimate.id, user)
        denial = auditor.find_by_action("estimate.transition_rejected", estimate.id)[0]
        assert denial.previous_state == {"status": "sent"}
        assert denial.new_state["requested_status"] == "sent"

    def test_preview_writes_nothing(self, cost_profile, estimate_service, auditor, company_id, work_items):
        result = estimate_service.preview_price(company_id, work_items, "0.08")
        assert result.total == Decimal("1937.83")
        assert auditor.get_recent_entries(1)[0].action == "cost_profile.created"


class TestTransitions:
    def test_approve_snapshots_the_sent_pricing(self, approved_estimate, session, clock):
        estimate = approved_estimate()
        assert estimate.status == EstimateStatus.APPROVED
        assert estimate.approved_at == clock.now()
        snapshots = SnapshotService(session, clock).list_snapshots(estimate.id)
        assert [s.trigger_action for s in snapshots] == ["send", "approve"]
        assert snapshots[1].total == snapshots[0].total

    def test_reject_records_reason(self, sent_estimate, estimate_service, auditor, company_id, user):
        estimate = sent_estimate().estimate
        estimate_service.transition_estimate(
            company_id, estimate.id, "rejected", user, reason="Too expensive",
        )
        assert estimate.rejection_reason == "Too expensive"
        entry = auditor.find_by_action("estimate.rejected", estimate.id)[0]
        assert entry.new_state == {"status": "rejected"}

    def test_draft_cannot_be_approved(self, draft_estimate, estimate_service, company_id, user):
        estimate = draft_estimate()
        with pytest.raises(StateConflictError) as exc_info:
            estimate_service.transition_estimate(company_id, estimate.id, "approved", user)
        assert exc_info.value.allowed == ("sent",)

    def test_send_is_not_a_plain_transition(self, draft_estimate, estimate_service, company_id, user):
        with pytest.raises(ValidationError):
            estimate_service.transition_estimate(company_id, draft_estimate().id, "sent", user)

    def test_supersede_is_not_a_plain_transition(self, approved_estimate, estimate_service, company_id, user):
        estimate = approved_estimate()
        with pytest.raises(StateConflictError) as exc_info:
            estimate_service.transition_estimate(company_id, estimate.id, "superseded", user)
        assert "change order" in exc_info.value.reason


class TestChangeOrders:
    def test_change_order_supersedes_parent(self, approved_estimate, estimate_service, company_id, user):
        parent = approved_estimate()
        result = estimate_service.create_change_order(company_id, parent.id, user)
        child = result.change_order
        assert child.status == EstimateStatus.SENT
        assert child.version == 2
        assert child.parent_estimate_id == parent.id
        assert parent.status == EstimateStatus.SUPERSEDED
        assert parent.superseded_by_id == child.id
        assert result.snapshot.trigger_action == "change_order"
        assert result.parent_snapshot.trigger_action == "supersede"

    def test_supersede_snapshot_carries_parent_pricing(self, approved_estimate, estimate_service, company_id, user, work_items):
        parent = approved_estimate()
        work_items[0]["unit_price"] = "400"
        result = estimate_service.create_change_order(company_id, parent.id, user, work_items=work_items)
        assert result.parent_snapshot.total == Decimal("1937.83")
        assert result.snapshot.total > result.parent_snapshot.total

    def test_parent_link_is_revoked(self, sent_estimate, estimate_service, token_service, company_id, user):
        sent = sent_estimate()
        result = estimate_service.create_change_order(company_id, sent.estimate.id, user)
        old = token_service.resolve_token(sent.token.raw_token, DocumentType.ESTIMATE)
        new = token_service.resolve_token(result.token.raw_token, DocumentType.ESTIMATE)
        assert old.rejection is TokenRejection.REVOKED
        assert new.ok
        assert new.token.document_id == result.change_order.id

    def test_both_sides_audited(self, approved_estimate, estimate_service, auditor, company_id, user):
        parent = approved_estimate()
        child = estimate_service.create_change_order(company_id, parent.id, user).change_order
        assert auditor.get_trace("estimate", parent.id).last_action == "estimate.superseded"
        created = auditor.find_by_action("estimate.change_order.created", child.id)[0]
        assert created.related_entity_id == parent.id

    def test_listed_under_parent(self, approved_estimate, estimate_service, company_id, user):
        parent = approved_estimate()
        child = estimate_service.create_change_order(company_id, parent.id, user).change_order
        assert estimate_service.list_change_orders(company_id, parent.id) == [child]

    def test_draft_cannot_take_change_order(self, cost_profile, draft_estimate, estimate_service, company_id, user):
        with pytest.raises(StateConflictError):
            estimate_service.create_change_order(company_id, draft_estimate().id, user)

    def test_superseded_is_terminal(self, approved_estimate, estimate_service, company_id, user):
        parent = approved_estimate()
        estimate_service.create_change_order(company_id, parent.id, user)
        with pytest.raises(StateConflictError):
            estimate_service.create_change_order(company_id, parent.id, user)
