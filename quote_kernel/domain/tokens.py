"""
Module: quote_kernel.domain.tokens
Responsibility: Magic-link token primitives: generation, hashing, and the
    catalogue of portal actions a token can authorize.
Architecture position: Kernel > Domain.  ``secrets`` is the only source of
    randomness; no other I/O.

Invariants enforced:
    - A raw token is 32 random bytes, hex-encoded (64 characters).
    - Only SHA-256(token) (64 hex characters) is ever persisted or logged.
"""

import hashlib
import hmac
import secrets
from dataclasses import dataclass
from datetime import datetime
from enum import Enum

from quote_kernel.domain.statuses import DocumentType

TOKEN_BYTES = 32


def generate_token() -> str:
    """Return a fresh 256-bit token as 64 hex characters."""
    return secrets.token_hex(TOKEN_BYTES)


def hash_token(raw_token: str) -> str:
    """SHA-256 hex digest of the raw token."""
    return hashlib.sha256(raw_token.encode("utf-8")).hexdigest()


def hashes_match(left: str, right: str) -> bool:
    return hmac.compare_digest(left, right)


def hash_prefix(token_hash: str) -> str:
    """Short, non-reversible identifier safe for log lines."""
    return token_hash[:12]


class PortalAction(str, Enum):
    """Customer-facing entry points gated by a portal token."""

    ESTIMATE_VIEW = "estimate.view"
    ESTIMATE_APPROVE = "approve"
    ESTIMATE_REJECT = "reject"
    INVOICE_VIEW = "invoice.view"
    CONTRACT_VIEW = "contract.view"
    CONTRACT_SIGN = "contract.sign"
    PAYMENT_PLAN_VIEW = "payment_plan.view"
    PAYMENT_PLAN_PAY = "payment_plan.pay"

    @property
    def document_type(self) -> DocumentType:
        return _DOCUMENT_TYPES[self]

    @property
    def one_shot(self) -> bool:
        """Whether performing the action consumes the token."""
        return self in _ONE_SHOT

    def audit_action(self, outcome: str) -> str:
        """Audit tag for a rejection, e.g. ``portal.approve.token_expired``."""
        return f"portal.{self.value}.{outcome}"


_DOCUMENT_TYPES = {
    PortalAction.ESTIMATE_VIEW: DocumentType.ESTIMATE,
    PortalAction.ESTIMATE_APPROVE: DocumentType.ESTIMATE,
    PortalAction.ESTIMATE_REJECT: DocumentType.ESTIMATE,
    PortalAction.INVOICE_VIEW: DocumentType.INVOICE,
    PortalAction.CONTRACT_VIEW: DocumentType.CONTRACT,
    PortalAction.CONTRACT_SIGN: DocumentType.CONTRACT,
    PortalAction.PAYMENT_PLAN_VIEW: DocumentType.PAYMENT_PLAN,
    PortalAction.PAYMENT_PLAN_PAY: DocumentType.PAYMENT_PLAN,
}

_ONE_SHOT = frozenset({
    PortalAction.ESTIMATE_APPROVE,
    PortalAction.ESTIMATE_REJECT,
    PortalAction.CONTRACT_SIGN,
})


class TokenRejection(str, Enum):
    """Internal reason a token was refused.  Never shown to the caller."""

    INVALID = "token_invalid"
    EXPIRED = "token_expired"
    USED = "token_used"
    REVOKED = "token_revoked"
    INVALID_STATUS = "invalid_status"
    RACE_CONDITION = "race_condition"


@dataclass(frozen=True)
class IssuedToken:
    """Returned once by issue_token; ``raw_token`` is never stored."""

    raw_token: str
    token_hash: str
    document_type: DocumentType
    expires_at: datetime
