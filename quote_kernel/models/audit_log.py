"""
Module: quote_kernel.models.audit_log
Responsibility: ORM persistence for the append-only, hash-chained audit log.
Architecture position: Kernel > Models.  May import from db/base.py only.

Invariants enforced:
    - Append-only: no UPDATE or DELETE (db/immutability.py).
    - ``seq`` is globally unique and monotonic (sequence service).
    - Each entry's ``hash`` covers its own payload hash and the previous
      entry's hash, so any edit or removal breaks the chain.

Failure modes:
    - ImmutabilityViolationError on any attempted modification.
    - AuditChainBrokenError from AuditorService.validate_chain when a hash
      does not recompute.

Audit relevance:
    Every state change, every refused transition, and every portal access
    attempt (including failures) lands here with actor and provenance.
"""

from datetime import datetime
from uuid import UUID

from sqlalchemy import JSON, BigInteger, Index, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from quote_kernel.db.base import Base, UTCDateTime, UUIDString


class AuditLogEntry(Base):
    """
    One audit record.

    Contract:
        Created only through AuditorService; never modified.
    """

    __tablename__ = "audit_log"

    __table_args__ = (
        UniqueConstraint("seq", name="uq_audit_seq"),
        Index("idx_audit_entity", "entity_type", "entity_id"),
        Index("idx_audit_company", "company_id"),
        Index("idx_audit_action", "action"),
    )

    seq: Mapped[int] = mapped_column(BigInteger, nullable=False)

    company_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)

    entity_type: Mapped[str] = mapped_column(String(50), nullable=False)
    entity_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    action: Mapped[str] = mapped_column(String(100), nullable=False)

    actor_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)
    actor_type: Mapped[str] = mapped_column(String(20), nullable=False)

    previous_state: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    new_state: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    reason: Mapped[str | None] = mapped_column(Text, nullable=True)

    ip_address: Mapped[str | None] = mapped_column(String(64), nullable=True)
    user_agent: Mapped[str | None] = mapped_column(String(500), nullable=True)

    related_entity_type: Mapped[str | None] = mapped_column(String(50), nullable=True)
    related_entity_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)

    occurred_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)

    payload_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    prev_hash: Mapped[str | None] = mapped_column(String(64), nullable=True)
    hash: Mapped[str] = mapped_column(String(64), nullable=False)

    def __repr__(self) -> str:
        return f"<AuditLogEntry #{self.seq} {self.entity_type}:{self.action}>"

    @property
    def is_genesis(self) -> bool:
        return self.prev_hash is None
