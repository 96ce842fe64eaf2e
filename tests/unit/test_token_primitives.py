"""
Unit tests for portal token primitives.

Verifies:
- Generated tokens are 256-bit hex strings and unique
- Only the SHA-256 hash is suitable for storage
- Each portal action maps to one document type
- Only state-changing actions consume their token
"""

import hashlib

import pytest

from quote_kernel.domain.statuses import DocumentType
from quote_kernel.domain.tokens import (
    PortalAction,
    TokenRejection,
    generate_token,
    hash_prefix,
    hash_token,
    hashes_match,
)


class TestGeneration:
    def test_token_is_64_hex_characters(self):
        token = generate_token()
        assert len(token) == 64
        int(token, 16)

    def test_tokens_are_unique(self):
        assert len({generate_token() for _ in range(200)}) == 200


class TestHashing:
    def test_hash_is_sha256_of_raw_token(self):
        token = generate_token()
        assert hash_token(token) == hashlib.sha256(token.encode()).hexdigest()

    def test_hash_differs_from_token(self):
        token = generate_token()
        assert hash_token(token) != token

    def test_hashes_match(self):
        digest = hash_token("abc")
        assert hashes_match(digest, hash_token("abc"))
        assert not hashes_match(digest, hash_token("abd"))

    def test_prefix_is_short(self):
        digest = hash_token("abc")
        assert hash_prefix(digest) == digest[:12]


class TestPortalAction:
    @pytest.mark.parametrize(
        "action, document_type",
        [
            (PortalAction.ESTIMATE_VIEW, DocumentType.ESTIMATE),
            (PortalAction.ESTIMATE_APPROVE, DocumentType.ESTIMATE),
            (PortalAction.ESTIMATE_REJECT, DocumentType.ESTIMATE),
            (PortalAction.INVOICE_VIEW, DocumentType.INVOICE),
            (PortalAction.CONTRACT_VIEW, DocumentType.CONTRACT),
            (PortalAction.CONTRACT_SIGN, DocumentType.CONTRACT),
            (PortalAction.PAYMENT_PLAN_VIEW, DocumentType.PAYMENT_PLAN),
            (PortalAction.PAYMENT_PLAN_PAY, DocumentType.PAYMENT_PLAN),
        ],
    )
    def test_document_type(self, action, document_type):
        assert action.document_type is document_type

    def test_one_shot_actions(self):
        one_shot = {a for a in PortalAction if a.one_shot}
        assert one_shot == {
            PortalAction.ESTIMATE_APPROVE,
            PortalAction.ESTIMATE_REJECT,
            PortalAction.CONTRACT_SIGN,
        }

    def test_audit_action_tag(self):
        assert (
            PortalAction.ESTIMATE_APPROVE.audit_action(TokenRejection.USED.value)
            == "portal.approve.token_used"
        )
        assert (
            PortalAction.INVOICE_VIEW.audit_action(TokenRejection.EXPIRED.value)
            == "portal.invoice.view.token_expired"
        )
