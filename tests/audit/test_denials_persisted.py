"""
Tests that refusals leave a committed audit trail.

session_scope() commits when a BusinessRuleError escapes, so the audit
row written just before the refusal survives; any other error rolls the
whole unit of work back.

These tests commit for real; pg_session_factory empties every table at
teardown.
"""

import pytest

from tests.conftest import COST_PROFILE_ASSUMPTIONS, TAX_RATE, WORK_ITEMS

from quote_kernel.db.engine import session_scope
from quote_kernel.domain.actor import Actor
from quote_kernel.exceptions import (
    EstimateLockedError,
    InvalidAccessTokenError,
    StateConflictError,
    ValidationError,
)
from quote_kernel.logging_config import LogContext
from quote_kernel.services.audit_service import AuditorService
from quote_kernel.services.cost_profile_service import CostProfileService
from quote_kernel.services.estimate_service import EstimateService
from quote_kernel.services.portal_service import UNKNOWN_DOCUMENT_ID, PortalRequest, PortalService


@pytest.fixture
def committed_estimate(pg_session_factory, clock, company_id, customer_id, user):
    """A sent estimate committed to the database."""
    with session_scope() as session:
        CostProfileService(session, clock).save_cost_profile(company_id, COST_PROFILE_ASSUMPTIONS, user)
        estimates = EstimateService(session, clock)
        estimate = estimates.create_estimate(
            company_id, customer_id, user,
            title="Spring cleanup", work_items=WORK_ITEMS, tax_rate=TAX_RATE,
        )
        sent = estimates.send_estimate(company_id, estimate.id, user)
    return sent


def _audited(action, entity_id=None):
    with session_scope() as session:
        return len(AuditorService(session).find_by_action(action, entity_id))


class TestDenialsSurvive:
    def test_refused_transition_committed(self, committed_estimate, clock, company_id, user):
        with pytest.raises(StateConflictError):
            with session_scope() as session:
                EstimateService(session, clock).transition_estimate(
                    company_id, committed_estimate.estimate.id, "superseded", user,
                )
        assert _audited("estimate.transition_rejected", committed_estimate.estimate.id) == 1

    def test_locked_edit_committed(self, committed_estimate, clock, company_id, user):
        with pytest.raises(EstimateLockedError):
            with session_scope() as session:
                EstimateService(session, clock).update_draft(
                    company_id, committed_estimate.estimate.id, {"title": "Changed"}, user,
                )
        assert _audited("estimate.update_rejected", committed_estimate.estimate.id) == 1

    def test_refused_portal_token_committed(self, committed_estimate, clock):
        with pytest.raises(InvalidAccessTokenError):
            with session_scope() as session:
                PortalService(session, clock).approve_estimate(
                    PortalRequest(raw_token="forged", client_ip="203.0.113.7"),
                )
        assert _audited("portal.approve.token_invalid", UNKNOWN_DOCUMENT_ID) == 1

    def test_chain_still_valid_after_denials(self, committed_estimate, clock):
        with pytest.raises(InvalidAccessTokenError):
            with session_scope() as session:
                PortalService(session, clock).view_estimate(
                    PortalRequest(raw_token="forged", client_ip="203.0.113.7"),
                )
        with session_scope() as session:
            assert AuditorService(session).validate_chain() is True


class TestOtherErrorsRollBack:
    def test_validation_error_rolls_back(self, committed_estimate, clock, company_id, customer_id, user):
        with pytest.raises(ValidationError):
            with session_scope() as session:
                estimates = EstimateService(session, clock)
                estimates.create_estimate(company_id, customer_id, user, title="Kept?", work_items=WORK_ITEMS)
                estimates.create_estimate(company_id, customer_id, user, work_items=[{"id": "broken"}])
        assert _audited("estimate.created") == 1

    def test_unexpected_error_rolls_back(self, pg_session_factory, clock, company_id):
        with pytest.raises(RuntimeError):
            with session_scope() as session:
                AuditorService(session, clock).record("job", company_id, "job.created", Actor.system())
                raise RuntimeError("worker crashed")
        assert _audited("job.created") == 0


class TestCorrelation:
    def test_scope_tags_its_log_lines(self, pg_session_factory, captured_logs, clock, company_id):
        with session_scope("req-42") as session:
            AuditorService(session, clock).record("job", company_id, "job.created", Actor.system())
        record = next(r for r in captured_logs() if r["message"] == "audit_entry_created")
        assert record["correlation_id"] == "req-42"
        assert "correlation_id" not in LogContext.get_all()
