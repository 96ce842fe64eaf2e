"""
TokenService -- single-use, hash-stored portal link credentials.

Responsibility:
    Issues opaque 256-bit tokens scoped to one document, resolves a
    presented token by its SHA-256 hash, and consumes one-shot tokens with
    a single conditional write.

Architecture position:
    Kernel > Services -- called by EstimateService / InvoiceService /
    ContractService (issue) and PortalService (resolve, consume).

Invariants enforced:
    - Only ``sha256(token)`` is persisted.  The raw token is returned once
      from ``issue_token`` and never logged (log lines carry a 12-char hash
      prefix).
    - ``mark_token_used`` is ``UPDATE ... SET used_at = now WHERE id = :id
      AND used_at IS NULL``.  Of two concurrent callers exactly one sees
      rowcount 1.
    - Re-issuing a link for a document revokes the document's earlier
      links.

Failure modes:
    - ``resolve_token`` never raises for a bad token; it reports the
      rejection so the caller can audit the real reason and still answer
      generically.  ``require_token`` raises InvalidAccessTokenError.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta
from typing import Any

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from quote_kernel.domain.clock import Clock
from quote_kernel.domain.policy import DEFAULT_POLICY, QuotePolicy
from quote_kernel.domain.statuses import DocumentType, status_value
from quote_kernel.domain.tokens import (
    IssuedToken,
    TokenRejection,
    generate_token,
    hash_prefix,
    hash_token,
    hashes_match,
)
from quote_kernel.exceptions import InvalidAccessTokenError
from quote_kernel.logging_config import get_logger
from quote_kernel.models.portal_token import PortalToken
from quote_kernel.services.base import BaseService

logger = get_logger("services.token")

MAX_TOKEN_LENGTH = 256


@dataclass(frozen=True)
class TokenResolution:
    """Outcome of looking up a presented token."""

    token: PortalToken | None
    rejection: TokenRejection | None = None

    @property
    def ok(self) -> bool:
        return self.rejection is None


class TokenService(BaseService):
    def __init__(
        self,
        session: Session,
        clock: Clock | None = None,
        policy: QuotePolicy | None = None,
    ):
        super().__init__(session, clock)
        self.policy = policy or DEFAULT_POLICY

    def issue_token(
        self,
        company_id: Any,
        document_type: DocumentType,
        document_id: Any,
        *,
        issued_by_id: Any = None,
        lifetime: timedelta | None = None,
        revoke_existing: bool = True,
    ) -> IssuedToken:
        """
        Create a new link for one document.

        Postconditions:
            - A PortalToken row holding only the hash exists.
            - When ``revoke_existing``, earlier live links for the same
              document are revoked.
        """
        now = self.clock.now()
        if revoke_existing:
            self.revoke_tokens(document_type, document_id)

        raw = generate_token()
        token_hash = hash_token(raw)
        expires_at = now + (lifetime or self.policy.tokens.for_document(document_type))

        self.session.add(PortalToken(
            company_id=company_id,
            document_type=status_value(document_type),
            document_id=document_id,
            token_hash=token_hash,
            expires_at=expires_at,
            issued_by_id=issued_by_id,
            created_at=now,
        ))
        self.session.flush()

        logger.info(
            "portal_token_issued",
            extra={
                "document_type": status_value(document_type),
                "document_id": str(document_id),
                "token_hash_prefix": hash_prefix(token_hash),
                "expires_at": expires_at.isoformat(),
            },
        )
        return IssuedToken(
            raw_token=raw,
            token_hash=token_hash,
            document_type=DocumentType(status_value(document_type)),
            expires_at=expires_at,
        )

    def resolve_token(
        self,
        raw_token: str | None,
        document_type: DocumentType | None = None,
        *,
        one_shot: bool = False,
    ) -> TokenResolution:
        """
        Look a presented token up by hash and check it is still usable.

        Checks, in order: the hash resolves (to the expected document type),
        the link was not revoked, it has not expired, and for one-shot
        actions it has not been used.
        """
        if not raw_token or len(raw_token) > MAX_TOKEN_LENGTH:
            return TokenResolution(None, TokenRejection.INVALID)

        digest = hash_token(raw_token)
        token = self.session.execute(
            select(PortalToken)
            .where(PortalToken.token_hash == digest)
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()

        # collation-insensitive backends can match a differently cased digest
        if token is None or not hashes_match(token.token_hash, digest):
            return TokenResolution(None, TokenRejection.INVALID)
        if document_type is not None and token.document_type != status_value(document_type):
            return TokenResolution(None, TokenRejection.INVALID)
        if token.revoked_at is not None:
            return TokenResolution(token, TokenRejection.REVOKED)
        if token.is_expired(self.clock.now()):
            return TokenResolution(token, TokenRejection.EXPIRED)
        if one_shot and token.used_at is not None:
            return TokenResolution(token, TokenRejection.USED)
        return TokenResolution(token)

    def require_token(
        self,
        raw_token: str | None,
        document_type: DocumentType | None = None,
        *,
        one_shot: bool = False,
    ) -> PortalToken:
        """``resolve_token`` that raises the generic error on any rejection."""
        resolution = self.resolve_token(raw_token, document_type, one_shot=one_shot)
        if not resolution.ok:
            raise InvalidAccessTokenError()
        return resolution.token

    def mark_token_used(self, token: PortalToken) -> bool:
        """
        Consume a one-shot token.

        Returns:
            True for the single caller that flipped ``used_at`` from NULL;
            False when it was already used (including by a concurrent
            request that won the race).
        """
        result = self.session.execute(
            update(PortalToken)
            .where(PortalToken.id == token.id, PortalToken.used_at.is_(None))
            .values(used_at=self.clock.now())
            .execution_options(synchronize_session=False)
        )
        self.session.expire(token, ["used_at"])
        won = result.rowcount == 1

        logger.info(
            "portal_token_consumed" if won else "portal_token_consume_lost",
            extra={
                "document_type": token.document_type,
                "document_id": str(token.document_id),
                "token_hash_prefix": hash_prefix(token.token_hash),
            },
        )
        return won

    def revoke_tokens(self, document_type: DocumentType, document_id: Any) -> int:
        """Revoke every live link for a document.  Returns the number revoked."""
        result = self.session.execute(
            update(PortalToken)
            .where(
                PortalToken.document_type == status_value(document_type),
                PortalToken.document_id == document_id,
                PortalToken.revoked_at.is_(None),
                PortalToken.used_at.is_(None),
            )
            .values(revoked_at=self.clock.now())
            .execution_options(synchronize_session="fetch")
        )
        if result.rowcount:
            logger.info(
                "portal_tokens_revoked",
                extra={
                    "document_type": status_value(document_type),
                    "document_id": str(document_id),
                    "count": result.rowcount,
                },
            )
        return result.rowcount

    def tokens_for(self, document_type: DocumentType, document_id: Any) -> list[PortalToken]:
        return list(
            self.session.execute(
                select(PortalToken)
                .where(
                    PortalToken.document_type == status_value(document_type),
                    PortalToken.document_id == document_id,
                )
                .order_by(PortalToken.created_at)
            ).scalars().all()
        )
