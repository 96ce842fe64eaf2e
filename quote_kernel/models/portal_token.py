"""
Module: quote_kernel.models.portal_token
Responsibility: ORM persistence for customer portal access tokens.
Architecture position: Kernel > Models.  May import from db/base.py only.

Invariants enforced:
    - Only the SHA-256 hash of a token is stored; the raw token exists
      solely in the link sent to the customer.
    - ``token_hash`` is unique.
    - ``used_at`` transitions from NULL exactly once, via a conditional
      UPDATE ... WHERE used_at IS NULL (PortalService).
"""

from datetime import datetime
from uuid import UUID

from sqlalchemy import Index, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from quote_kernel.db.base import Base, UTCDateTime, UUIDString, utc_now


class PortalToken(Base):
    """A link credential scoped to one document."""

    __tablename__ = "portal_tokens"

    __table_args__ = (
        UniqueConstraint("token_hash", name="uq_portal_token_hash"),
        Index("idx_portal_token_document", "document_type", "document_id"),
    )

    company_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    document_type: Mapped[str] = mapped_column(String(20), nullable=False)
    document_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)

    token_hash: Mapped[str] = mapped_column(String(64), nullable=False)

    expires_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    used_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    revoked_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)

    issued_by_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False, default=utc_now)

    def __repr__(self) -> str:
        return f"<PortalToken {self.document_type}:{self.document_id} {self.token_hash[:12]}>"

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at
