"""
AuditorService -- tamper-evident audit trail and hash chain maintenance.

Responsibility:
    Creates immutable, hash-chained audit log entries for every state
    change in the kernel, including refused transitions and failed portal
    access attempts.  Provides chain validation for tamper detection and
    trace queries for forensic review.

Architecture position:
    Kernel > Services -- imperative shell, called by every service that
    changes state.

Invariants enforced:
    - Sequence monotonicity via SequenceService (never max+1).
    - Chain integrity: ``hash = H(entity_type|entity_id|action|payload_hash|prev_hash)``.
    - Append-only: entries are never modified or deleted (ORM listener on
      AuditLogEntry).

Failure modes:
    - AuditChainBrokenError: a stored hash or payload hash does not
      recompute, or a ``prev_hash`` does not match its predecessor.

Audit relevance:
    This IS the audit service.  Every entry flows through ``record()``,
    which enforces hash chain linkage before persisting.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session

from quote_kernel.domain.actor import Actor
from quote_kernel.domain.clock import Clock, SystemClock
from quote_kernel.domain.statuses import status_value
from quote_kernel.domain.workflow import TransitionDecision
from quote_kernel.exceptions import AuditChainBrokenError
from quote_kernel.logging_config import get_logger
from quote_kernel.models.audit_log import AuditLogEntry
from quote_kernel.services.sequence_service import SequenceService
from quote_kernel.utils.hashing import hash_audit_entry, hash_payload, to_jsonable

logger = get_logger("services.auditor")


@dataclass(frozen=True)
class AuditTraceEntry:
    """A single entry in an audit trace."""

    seq: int
    action: str
    occurred_at: datetime
    actor_type: str
    actor_id: UUID | None
    previous_state: dict[str, Any] | None
    new_state: dict[str, Any] | None
    reason: str | None
    related_entity_type: str | None
    related_entity_id: UUID | None
    hash: str


@dataclass(frozen=True)
class AuditTrace:
    """Complete audit trace for an entity, in chronological order."""

    entity_type: str
    entity_id: UUID
    entries: tuple[AuditTraceEntry, ...]

    @property
    def is_empty(self) -> bool:
        return len(self.entries) == 0

    @property
    def actions(self) -> tuple[str, ...]:
        return tuple(entry.action for entry in self.entries)

    @property
    def last_action(self) -> str | None:
        return self.entries[-1].action if self.entries else None


def _payload_for(entry: AuditLogEntry) -> dict[str, Any]:
    """Fields covered by ``payload_hash``, read back from a stored entry."""
    return {
        "company_id": entry.company_id,
        "actor_type": entry.actor_type,
        "actor_id": entry.actor_id,
        "previous_state": entry.previous_state,
        "new_state": entry.new_state,
        "reason": entry.reason,
        "ip_address": entry.ip_address,
        "user_agent": entry.user_agent,
        "related_entity_type": entry.related_entity_type,
        "related_entity_id": entry.related_entity_id,
        "occurred_at": entry.occurred_at,
    }


class AuditorService:
    """
    Service for creating and validating tamper-evident audit entries.

    Guarantees:
        - Every entry's ``hash`` is a deterministic function of
          ``(entity_type, entity_id, action, payload_hash, prev_hash)``.
          Tampering with any field is detectable by ``validate_chain()``.

    Non-goals:
        - Does NOT call ``session.commit()`` -- caller controls boundaries.
    """

    def __init__(
        self,
        session: Session,
        clock: Clock | None = None,
    ):
        self._session = session
        self._clock = clock or SystemClock()
        self._sequence_service = SequenceService(session)

    def _get_last_hash(self) -> str | None:
        last_entry = self._session.execute(
            select(AuditLogEntry)
            .order_by(AuditLogEntry.seq.desc())
            .limit(1)
        ).scalar_one_or_none()

        return last_entry.hash if last_entry else None

    def record(
        self,
        entity_type: str,
        entity_id: Any,
        action: str,
        actor: Actor,
        *,
        company_id: Any = None,
        previous_state: dict[str, Any] | None = None,
        new_state: dict[str, Any] | None = None,
        reason: str | None = None,
        related_entity_type: str | None = None,
        related_entity_id: Any = None,
    ) -> AuditLogEntry:
        """
        Append one audit entry with hash chain linkage.

        Preconditions:
            - ``action`` is a dotted tag such as ``estimate.sent``.

        Postconditions:
            - A new AuditLogEntry is flushed with a monotonically
              increasing ``seq`` and a valid chain link.
        """
        # Serializes chain extension: the counter row stays locked until commit.
        seq = self._sequence_service.next_value(SequenceService.AUDIT_LOG)
        prev_hash = self._get_last_hash()

        entry = AuditLogEntry(
            seq=seq,
            company_id=company_id,
            entity_type=entity_type,
            entity_id=entity_id,
            action=action,
            actor_id=actor.actor_id,
            actor_type=status_value(actor.actor_type),
            previous_state=to_jsonable(previous_state),
            new_state=to_jsonable(new_state),
            reason=reason,
            ip_address=actor.ip_address,
            user_agent=actor.user_agent,
            related_entity_type=related_entity_type,
            related_entity_id=related_entity_id,
            occurred_at=self._clock.now().astimezone(timezone.utc),
        )
        entry.payload_hash = hash_payload(_payload_for(entry))
        entry.prev_hash = prev_hash
        entry.hash = hash_audit_entry(
            entity_type=entity_type,
            entity_id=str(entity_id),
            action=action,
            payload_hash=entry.payload_hash,
            prev_hash=prev_hash,
        )

        self._session.add(entry)
        self._session.flush()

        logger.info(
            "audit_entry_created",
            extra={
                "entity_type": entity_type,
                "entity_id": str(entity_id),
                "action": action,
                "seq": seq,
            },
        )
        return entry

    def record_transition(
        self,
        entity_type: str,
        entity_id: Any,
        action: str,
        actor: Actor,
        previous_status: str | None,
        new_status: str | None,
        **kwargs: Any,
    ) -> AuditLogEntry:
        """Convenience wrapper recording a status change."""
        return self.record(
            entity_type,
            entity_id,
            action,
            actor,
            previous_state=None if previous_status is None else {"status": status_value(previous_status)},
            new_state=None if new_status is None else {"status": status_value(new_status)},
            **kwargs,
        )

    def record_denial(
        self,
        entity_type: str,
        entity_id: Any,
        decision: TransitionDecision,
        actor: Actor,
        *,
        company_id: Any = None,
        action: str | None = None,
    ) -> AuditLogEntry:
        """
        Record a refused status change.

        The caller raises afterwards; ``session_scope`` keeps this row
        because the escaping error is a BusinessRuleError.
        """
        entry = self.record(
            entity_type,
            entity_id,
            action or f"{entity_type}.transition_rejected",
            actor,
            company_id=company_id,
            previous_state={"status": decision.current_status},
            new_state={
                "requested_status": decision.requested_status,
                "allowed": list(decision.allowed_targets),
            },
            reason=decision.reason,
        )
        logger.warning(
            "transition_rejected",
            extra={
                "entity_type": entity_type,
                "entity_id": str(entity_id),
                "current_status": decision.current_status,
                "requested_status": decision.requested_status,
            },
        )
        return entry

    # Chain validation

    def validate_chain(self) -> bool:
        """
        Validate the entire audit chain.

        Postconditions:
            - Returns ``True`` only if every entry's payload hash and chain
              hash recompute, and every ``prev_hash`` matches its
              predecessor's ``hash``.

        Raises:
            AuditChainBrokenError: If validation fails at any point.
        """
        entries = self._session.execute(
            select(AuditLogEntry).order_by(AuditLogEntry.seq)
        ).scalars().all()

        if not entries:
            return True

        if entries[0].prev_hash is not None:
            logger.critical("audit_chain_broken", extra={"entry_id": str(entries[0].id)})
            raise AuditChainBrokenError(str(entries[0].id), "None", entries[0].prev_hash)

        for i, entry in enumerate(entries):
            expected_payload_hash = hash_payload(_payload_for(entry))
            if entry.payload_hash != expected_payload_hash:
                logger.critical("audit_chain_broken", extra={"entry_id": str(entry.id)})
                raise AuditChainBrokenError(str(entry.id), expected_payload_hash, entry.payload_hash)

            expected_hash = hash_audit_entry(
                entity_type=entry.entity_type,
                entity_id=str(entry.entity_id),
                action=entry.action,
                payload_hash=entry.payload_hash,
                prev_hash=entry.prev_hash,
            )
            if entry.hash != expected_hash:
                logger.critical("audit_chain_broken", extra={"entry_id": str(entry.id)})
                raise AuditChainBrokenError(str(entry.id), expected_hash, entry.hash)

            if i > 0:
                expected_prev = entries[i - 1].hash
                if entry.prev_hash != expected_prev:
                    logger.critical("audit_chain_broken", extra={"entry_id": str(entry.id)})
                    raise AuditChainBrokenError(str(entry.id), expected_prev, entry.prev_hash or "None")

        logger.info("audit_chain_valid", extra={"entry_count": len(entries)})
        return True

    # Trace and query methods

    def get_trace(self, entity_type: str, entity_id: UUID) -> AuditTrace:
        """Complete audit trace for an entity, oldest first."""
        entries = self._session.execute(
            select(AuditLogEntry)
            .where(
                AuditLogEntry.entity_type == entity_type,
                AuditLogEntry.entity_id == entity_id,
            )
            .order_by(AuditLogEntry.seq)
        ).scalars().all()

        return AuditTrace(
            entity_type=entity_type,
            entity_id=entity_id,
            entries=tuple(
                AuditTraceEntry(
                    seq=entry.seq,
                    action=entry.action,
                    occurred_at=entry.occurred_at,
                    actor_type=entry.actor_type,
                    actor_id=entry.actor_id,
                    previous_state=entry.previous_state,
                    new_state=entry.new_state,
                    reason=entry.reason,
                    related_entity_type=entry.related_entity_type,
                    related_entity_id=entry.related_entity_id,
                    hash=entry.hash,
                )
                for entry in entries
            ),
        )

    def find_by_action(self, action: str, entity_id: Any = None) -> list[AuditLogEntry]:
        stmt = select(AuditLogEntry).where(AuditLogEntry.action == action)
        if entity_id is not None:
            stmt = stmt.where(AuditLogEntry.entity_id == entity_id)
        return list(self._session.execute(stmt.order_by(AuditLogEntry.seq)).scalars().all())

    def get_recent_entries(self, limit: int = 100) -> list[AuditLogEntry]:
        """Most recent entries, newest first."""
        return list(
            self._session.execute(
                select(AuditLogEntry)
                .order_by(AuditLogEntry.seq.desc())
                .limit(limit)
            ).scalars().all()
        )
