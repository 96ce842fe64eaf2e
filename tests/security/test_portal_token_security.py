"""
Security tests for portal magic links.

Verifies:
- Every refusal looks identical to the caller
- The real reason is audited as portal.<action>.<reason>
- One-shot actions consume the link exactly once
- Links are scoped to one document type and one tenant
- Raw tokens are never persisted
- Requests are rate limited per client
"""

from uuid import uuid4

import pytest
from sqlalchemy import update

from quote_kernel.domain.rate_limit import FixedWindowRateLimiter
from quote_kernel.domain.tokens import hash_token
from quote_kernel.exceptions import InvalidAccessTokenError, RateLimitExceededError
from quote_kernel.models.portal_token import PortalToken
from quote_kernel.services.portal_service import UNKNOWN_DOCUMENT_ID, PortalService

EXPECTED_RESPONSE = (404, {"code": "INVALID_ACCESS_TOKEN", "message": "This link is no longer valid."})


@pytest.fixture
def sent(sent_estimate):
    return sent_estimate()


def _refusal(call):
    with pytest.raises(InvalidAccessTokenError) as exc_info:
        call()
    return exc_info.value


def _consume_elsewhere(session, token, clock):
    """Mark a token used through a separate statement, as a concurrent request would."""
    session.execute(
        update(PortalToken)
        .where(PortalToken.id == token.id)
        .values(used_at=clock.now())
        .execution_options(synchronize_session=False)
    )


class TestUniformRefusal:
    def test_unknown_token(self, portal, portal_request, auditor):
        err = _refusal(lambda: portal.approve_estimate(portal_request("not-a-real-token")))
        assert err.to_response() == EXPECTED_RESPONSE
        entry = auditor.find_by_action("portal.approve.token_invalid", UNKNOWN_DOCUMENT_ID)[0]
        assert entry.reason == "Unknown token"
        assert entry.company_id is None

    @pytest.mark.parametrize("raw", [None, "", "x" * 500])
    def test_malformed_token(self, portal, portal_request, raw):
        err = _refusal(lambda: portal.view_estimate(portal_request(raw)))
        assert err.to_response() == EXPECTED_RESPONSE

    def test_expired_token(self, sent, portal, portal_request, auditor, clock):
        clock.advance(days=15)
        err = _refusal(lambda: portal.view_estimate(portal_request(sent.token.raw_token)))
        assert err.to_response() == EXPECTED_RESPONSE
        assert auditor.find_by_action("portal.estimate.view.token_expired", sent.estimate.id)

    def test_revoked_token(self, sent, portal, portal_request, token_service, auditor):
        token_service.revoke_tokens("estimate", sent.estimate.id)
        err = _refusal(lambda: portal.approve_estimate(portal_request(sent.token.raw_token)))
        assert err.to_response() == EXPECTED_RESPONSE
        assert auditor.find_by_action("portal.approve.token_revoked", sent.estimate.id)

    def test_message_carries_no_detail(self, sent, portal, portal_request, clock):
        clock.advance(days=15)
        err = _refusal(lambda: portal.approve_estimate(portal_request(sent.token.raw_token)))
        assert str(err) == "This link is no longer valid."
        assert str(sent.estimate.id) not in str(err)


class TestOneShotLinks:
    def test_second_approval_refused(self, sent, portal, portal_request, auditor):
        request = portal_request(sent.token.raw_token)
        portal.approve_estimate(request)
        err = _refusal(lambda: portal.approve_estimate(request))
        assert err.to_response() == EXPECTED_RESPONSE
        assert auditor.find_by_action("portal.approve.token_used", sent.estimate.id)

    def test_reject_after_approve_refused(self, sent, portal, portal_request):
        request = portal_request(sent.token.raw_token)
        portal.approve_estimate(request)
        _refusal(lambda: portal.reject_estimate(request))
        assert sent.estimate.status == "approved"

    def test_status_refusal_does_not_burn_link(
        self, sent, portal, portal_request, estimate_service, token_service, auditor, company_id, user,
    ):
        estimate_service.transition_estimate(company_id, sent.estimate.id, "rejected", user)
        _refusal(lambda: portal.approve_estimate(portal_request(sent.token.raw_token)))
        entry = auditor.find_by_action("portal.approve.invalid_status", sent.estimate.id)[0]
        assert entry.reason == "Cannot approve estimate in status: rejected"
        assert token_service.tokens_for("estimate", sent.estimate.id)[0].used_at is None

    def test_lost_race_reported_as_refusal(self, sent, portal, portal_request, auditor, monkeypatch):
        monkeypatch.setattr(portal._tokens, "mark_token_used", lambda token: False)
        err = _refusal(lambda: portal.approve_estimate(portal_request(sent.token.raw_token)))
        assert err.to_response() == EXPECTED_RESPONSE
        assert auditor.find_by_action("portal.approve.race_condition", sent.estimate.id)
        assert sent.estimate.status == "sent"

    def test_mark_used_succeeds_once(self, sent, token_service):
        token = token_service.resolve_token(sent.token.raw_token, "estimate").token
        assert token_service.mark_token_used(token) is True
        assert token_service.mark_token_used(token) is False
        assert token_service.resolve_token(sent.token.raw_token, "estimate", one_shot=True).rejection.value == "token_used"

    def test_rival_consumes_between_resolve_and_mark(
        self, sent, portal, portal_request, session, auditor, clock, monkeypatch,
    ):
        resolve = portal._tokens.resolve_token

        def resolve_then_rival_consumes(*args, **kwargs):
            resolution = resolve(*args, **kwargs)
            _consume_elsewhere(session, resolution.token, clock)
            return resolution

        monkeypatch.setattr(portal._tokens, "resolve_token", resolve_then_rival_consumes)
        err = _refusal(lambda: portal.approve_estimate(portal_request(sent.token.raw_token)))
        assert err.to_response() == EXPECTED_RESPONSE
        entry = auditor.find_by_action("portal.approve.race_condition", sent.estimate.id)[0]
        assert entry.reason == "Token marked used by concurrent request"
        assert sent.estimate.status == "sent"
        assert auditor.find_by_action("portal.estimate.approved", sent.estimate.id) == []

    def test_conditional_mark_loses_to_rival(self, sent, token_service, session, clock):
        token = token_service.resolve_token(sent.token.raw_token, "estimate", one_shot=True).token
        _consume_elsewhere(session, token, clock)
        assert token_service.mark_token_used(token) is False
        assert token.used_at == clock.now()


class TestScoping:
    def test_token_bound_to_document_type(
        self, approved_estimate, make_invoice, portal, portal_request, notifier,
    ):
        make_invoice(approved_estimate())
        invoice_token = notifier.last_token("invoice")
        err = _refusal(lambda: portal.view_estimate(portal_request(invoice_token)))
        assert err.to_response() == EXPECTED_RESPONSE

    def test_token_from_other_tenant(self, sent, portal, portal_request, token_service, auditor):
        foreign = token_service.issue_token(uuid4(), "estimate", sent.estimate.id, revoke_existing=False)
        _refusal(lambda: portal.view_estimate(portal_request(foreign.raw_token)))
        assert auditor.find_by_action("portal.estimate.view.token_invalid", sent.estimate.id)

    def test_superseded_estimate_link_dead(self, sent, portal, portal_request, estimate_service, company_id, user):
        estimate_service.create_change_order(
            company_id, sent.estimate.id, user, work_items=sent.estimate.work_items,
        )
        _refusal(lambda: portal.approve_estimate(portal_request(sent.token.raw_token)))


class TestStorage:
    def test_only_hash_persisted(self, sent, session):
        row = session.query(PortalToken).filter_by(document_id=sent.estimate.id).one()
        assert row.token_hash == hash_token(sent.token.raw_token)
        assert row.token_hash != sent.token.raw_token
        assert sent.token.raw_token not in repr(row.__dict__)

    def test_lookup_confirmed_by_digest_compare(self, sent, token_service, monkeypatch):
        monkeypatch.setattr("quote_kernel.services.token_service.hashes_match", lambda left, right: False)
        resolution = token_service.resolve_token(sent.token.raw_token, "estimate")
        assert resolution.token is None
        assert resolution.rejection.value == "token_invalid"

    def test_raw_token_never_audited(self, sent, portal, portal_request, auditor):
        portal.approve_estimate(portal_request(sent.token.raw_token))
        for entry in auditor.get_recent_entries(1000):
            assert sent.token.raw_token not in repr((entry.previous_state, entry.new_state, entry.reason))


class TestRateLimit:
    @pytest.fixture
    def strict_portal(self, session, clock):
        limiter = FixedWindowRateLimiter(limit=2, window_seconds=60, clock=clock)
        return PortalService(session, clock, rate_limiter=limiter)

    def test_limit_applies_before_token_checks(self, strict_portal, portal_request, auditor):
        for _ in range(2):
            _refusal(lambda: strict_portal.view_estimate(portal_request("bogus")))
        with pytest.raises(RateLimitExceededError) as exc_info:
            strict_portal.view_estimate(portal_request("bogus"))
        assert exc_info.value.retry_after_seconds == 60
        assert len(auditor.find_by_action("portal.estimate.view.token_invalid")) == 2

    def test_limit_is_per_client(self, sent, strict_portal, portal_request):
        for _ in range(2):
            strict_portal.view_estimate(portal_request(sent.token.raw_token))
        view = strict_portal.view_estimate(portal_request(sent.token.raw_token, client_ip="198.51.100.9"))
        assert view.estimate.id == sent.estimate.id

    def test_window_reopens(self, sent, strict_portal, portal_request, clock):
        for _ in range(2):
            strict_portal.view_estimate(portal_request(sent.token.raw_token))
        clock.advance(61)
        assert strict_portal.view_estimate(portal_request(sent.token.raw_token)).estimate.id == sent.estimate.id

    def test_limit_spans_service_instances(self, session, clock, portal_request, auditor, captured_logs):
        for _ in range(10):
            _refusal(lambda: PortalService(session, clock).view_estimate(portal_request("f" * 64, "198.51.100.9")))
        with pytest.raises(RateLimitExceededError) as exc_info:
            PortalService(session, clock).view_estimate(portal_request("f" * 64, "198.51.100.9"))
        assert exc_info.value.retry_after_seconds == 60
        assert len(auditor.find_by_action("portal.estimate.view.token_invalid")) == 10
        limited = [r for r in captured_logs() if r["message"] == "rate_limit_exceeded"]
        assert limited[0]["client_key"] == "198.51.100.9"
        assert limited[0]["limit"] == 10

    def test_other_clients_unaffected_across_instances(self, sent, session, clock, portal_request):
        for _ in range(10):
            PortalService(session, clock).view_estimate(portal_request(sent.token.raw_token))
        view = PortalService(session, clock).view_estimate(portal_request(sent.token.raw_token, "198.51.100.10"))
        assert view.estimate.id == sent.estimate.id
