"""
ORM-level immutability enforcement.

Snapshots and ledgers must be tamper-proof.  A price that was sent to a
customer, a contract they signed, a payment they made and the audit trail
of all of it can only ever be added to; corrections are new rows.

SQLAlchemy fires mapper events before UPDATE/DELETE statements reach the
database.  The listeners registered here check the invariants and raise
ImmutabilityViolationError, aborting the flush:

    session.flush()
         |
         v
    [before_update] --> _check_*_immutability() --> ImmutabilityViolationError
         |
    [before_delete] --> _check_*_delete() -------> ImmutabilityViolationError
         |
         v
    SQL sent to database (only if checks pass)

Protected entities:

Entity                  | When immutable                  | Scope
------------------------|---------------------------------|--------------------------
EstimateSnapshot        | Always                          | Every field, and delete
SignedContractSnapshot  | Always                          | Every field, and delete
AuditLogEntry           | Always                          | Every field, and delete
Payment                 | Always                          | Every field, and delete
CostProfileSnapshot     | Always                          | Every field, and delete
Contract                | Once ``locked_at`` is set       | Content fields, and delete

Core-level ``update()`` statements bypass mapper events.  Only the payment
ledger and the token service issue them, against invoices, plans and
portal tokens, none of which are protected here.

Usage:

    from quote_kernel.db.immutability import register_immutability_listeners
    register_immutability_listeners()  # once at startup

To temporarily disable (tests only):

    unregister_immutability_listeners()
"""

from sqlalchemy import event, inspect
from sqlalchemy.orm.attributes import get_history

from quote_kernel.exceptions import ImmutabilityViolationError
from quote_kernel.logging_config import get_logger

logger = get_logger("db.immutability")


def _block(target, entity_type: str, operation: str, reason: str, field: str | None = None):
    extra = {
        "entity_type": entity_type,
        "entity_id": str(target.id),
        "operation": operation,
    }
    if field is not None:
        extra["field"] = field
    logger.error("immutability_violation_blocked", extra=extra)
    raise ImmutabilityViolationError(
        entity_type=entity_type,
        entity_id=str(target.id),
        reason=reason,
    )


def _check_estimate_snapshot_immutability(mapper, connection, target):
    _block(target, "EstimateSnapshot", "UPDATE", "Estimate snapshots are immutable")


def _check_estimate_snapshot_delete(mapper, connection, target):
    _block(target, "EstimateSnapshot", "DELETE", "Estimate snapshots cannot be deleted")


def _check_signed_contract_snapshot_immutability(mapper, connection, target):
    _block(
        target, "SignedContractSnapshot", "UPDATE",
        "Signed contract snapshots are immutable",
    )


def _check_signed_contract_snapshot_delete(mapper, connection, target):
    _block(
        target, "SignedContractSnapshot", "DELETE",
        "Signed contract snapshots cannot be deleted",
    )


def _check_audit_log_immutability(mapper, connection, target):
    _block(target, "AuditLogEntry", "UPDATE", "Audit log entries are immutable")


def _check_audit_log_delete(mapper, connection, target):
    _block(target, "AuditLogEntry", "DELETE", "Audit log entries cannot be deleted")


def _check_payment_immutability(mapper, connection, target):
    _block(
        target, "Payment", "UPDATE",
        "Payments are immutable; record a refund instead",
    )


def _check_payment_delete(mapper, connection, target):
    _block(
        target, "Payment", "DELETE",
        "Payments cannot be deleted; record a refund instead",
    )


def _check_cost_profile_immutability(mapper, connection, target):
    _block(
        target, "CostProfileSnapshot", "UPDATE",
        "Cost profile snapshots are immutable; save a new version instead",
    )


def _check_cost_profile_delete(mapper, connection, target):
    _block(target, "CostProfileSnapshot", "DELETE", "Cost profile snapshots cannot be deleted")


def _contract_was_locked(target) -> bool:
    """
    True when the contract was already locked before this flush.

    The signing flush itself sets ``locked_at`` from None, which is allowed.
    """
    history = get_history(target, "locked_at")
    if history.deleted:
        return history.deleted[0] is not None
    if history.added:
        return False
    return target.locked_at is not None


def _check_contract_immutability(mapper, connection, target):
    """Freeze content fields and the lock timestamp once a contract is locked."""
    from quote_kernel.models.contract import CONTENT_FIELDS

    if not _contract_was_locked(target):
        return

    insp = inspect(target)
    for key in (*CONTENT_FIELDS, "locked_at", "signed_at", "signer_name", "signature_data"):
        if insp.attrs[key].history.has_changes():
            _block(
                target, "Contract", "UPDATE",
                f"Cannot modify field '{key}' on a locked contract",
                field=key,
            )


def _check_contract_delete(mapper, connection, target):
    if target.locked_at is not None:
        _block(target, "Contract", "DELETE", "Locked contracts cannot be deleted")


def _listeners():
    from quote_kernel.models.audit_log import AuditLogEntry
    from quote_kernel.models.contract import Contract, SignedContractSnapshot
    from quote_kernel.models.cost_profile import CostProfileSnapshot
    from quote_kernel.models.estimate import EstimateSnapshot
    from quote_kernel.models.invoice import Payment

    return (
        (EstimateSnapshot, "before_update", _check_estimate_snapshot_immutability),
        (EstimateSnapshot, "before_delete", _check_estimate_snapshot_delete),
        (SignedContractSnapshot, "before_update", _check_signed_contract_snapshot_immutability),
        (SignedContractSnapshot, "before_delete", _check_signed_contract_snapshot_delete),
        (AuditLogEntry, "before_update", _check_audit_log_immutability),
        (AuditLogEntry, "before_delete", _check_audit_log_delete),
        (Payment, "before_update", _check_payment_immutability),
        (Payment, "before_delete", _check_payment_delete),
        (CostProfileSnapshot, "before_update", _check_cost_profile_immutability),
        (CostProfileSnapshot, "before_delete", _check_cost_profile_delete),
        (Contract, "before_update", _check_contract_immutability),
        (Contract, "before_delete", _check_contract_delete),
    )


def register_immutability_listeners():
    """
    Register all immutability enforcement event listeners.

    Idempotent: listeners already registered are left alone.
    """
    for target, event_name, listener_fn in _listeners():
        if not event.contains(target, event_name, listener_fn):
            event.listen(target, event_name, listener_fn)
    logger.info("immutability_listeners_registered")


def _safe_remove_listener(target, event_name, listener_fn):
    if event.contains(target, event_name, listener_fn):
        event.remove(target, event_name, listener_fn)


def unregister_immutability_listeners():
    """
    Remove immutability enforcement event listeners.

    WARNING: Only use this in tests that need to write a tampered row to
    verify detection.
    """
    for target, event_name, listener_fn in _listeners():
        _safe_remove_listener(target, event_name, listener_fn)
