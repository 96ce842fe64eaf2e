"""
Typed Exception Hierarchy for the Quote Kernel.

===============================================================================
WHY TYPED EXCEPTIONS
===============================================================================

Pricing, document transitions and money movement fail in a small number of
well-understood ways. Callers (route handlers, background jobs, tests) must
be able to tell them apart without parsing messages:

  1. Every error has a TYPED exception class (catch by type, not message)
  2. Every exception has a CODE attribute (machine-readable, API-safe)
  3. Exceptions carry structured DATA (current status, allowed transitions,
     expected/current version, outstanding invoices, ...)

Example:
    try:
        ledger.record_payment(invoice_id, expected_version=3, ...)
    except OptimisticLockError as e:
        refetch_and_retry(current_version=e.current_version)
    except StateConflictError as e:
        api_response(409, code=e.code, status=e.current_status, allowed=e.allowed)

===============================================================================
EXCEPTION HIERARCHY
===============================================================================

    QuoteKernelError (base)
    |
    +-- ValidationError
    |
    +-- NotFoundError
    |
    +-- BusinessRuleError               (expected, audited)
    |   +-- StateConflictError
    |   |   +-- EstimateLockedError
    |   |   +-- ContractLockedError
    |   +-- PolicyDeniedError
    |   |   +-- DepositRequiredError
    |   |   +-- CloseOutBlockedError
    |   +-- InvalidAccessTokenError
    |
    +-- ConcurrencyError
    |   +-- OptimisticLockError
    |
    +-- ImmutabilityError
    |   +-- ImmutabilityViolationError
    |
    +-- AuditError
    |   +-- AuditChainBrokenError
    |
    +-- RateLimitExceededError
    |
    +-- ConfigurationError

===============================================================================
ERROR CODES - QUICK REFERENCE
===============================================================================

Category     | Code                     | When Raised
-------------|--------------------------|--------------------------------------
Validation   | VALIDATION_ERROR         | Malformed / out-of-range input
Lookup       | NOT_FOUND                | Absent, or owned by another tenant
State        | STATE_CONFLICT           | Transition not in the allowed set
             | ESTIMATE_LOCKED          | PATCH on a non-draft estimate
             | CONTRACT_LOCKED          | Edit of a signed / locked contract
Policy       | DEPOSIT_REQUIRED         | Scheduling before the deposit is paid
             | CLOSE_OUT_BLOCKED        | Closing a job with unpaid invoices
Portal       | INVALID_ACCESS_TOKEN     | Any token validation failure
Concurrency  | OPTIMISTIC_LOCK_CONFLICT | Invoice version mismatch
Immutability | IMMUTABILITY_VIOLATION   | Update/delete of an append-only row
Audit        | AUDIT_CHAIN_BROKEN       | Hash chain verification failed
Portal       | RATE_LIMITED             | Too many public requests from one IP
Config       | CONFIGURATION_ERROR      | Invalid configuration file

===============================================================================
DESIGN DECISIONS
===============================================================================

1. WHY A BusinessRuleError BASE?
   State conflicts, policy denials and token rejections are EXPECTED.  They
   are recorded in the audit ledger before being raised, and raised before
   any other state is written.  ``session_scope()`` commits when one of
   them escapes so the rejection audit row survives; every other exception
   rolls the transaction back.

2. WHY IS InvalidAccessTokenError INFORMATION-POOR?
   An unauthenticated caller must not be able to distinguish "wrong token"
   from "expired" from "already used" from "wrong status".  The real reason
   goes to the audit ledger only; the exception carries a fixed message and
   a fixed response body.

3. WHY NotFoundError FOR CROSS-TENANT ACCESS?
   A tenant-scoping failure must look exactly like true absence.

===============================================================================
"""

from decimal import Decimal
from typing import Any


class QuoteKernelError(Exception):
    """
    Base exception for all quote kernel errors.

    All subclasses must have a `code` class attribute for machine-readable
    error identification.
    """

    code: str = "QUOTE_KERNEL_ERROR"


# Input validation


class ValidationError(QuoteKernelError):
    """Malformed or out-of-range input, with field-level detail."""

    code: str = "VALIDATION_ERROR"

    def __init__(self, message: str, field_errors: list[str] | None = None):
        self.field_errors = list(field_errors or [])
        if self.field_errors:
            message = f"{message}: " + "; ".join(self.field_errors)
        super().__init__(message)


class NotFoundError(QuoteKernelError):
    """
    Entity absent or not owned by the caller's tenant.

    The message never says which of the two happened.
    """

    code: str = "NOT_FOUND"

    def __init__(self, entity_type: str, entity_id: Any):
        self.entity_type = entity_type
        self.entity_id = str(entity_id)
        super().__init__(f"{entity_type} not found: {entity_id}")


# Business-rule failures (expected, audited)


class BusinessRuleError(QuoteKernelError):
    """Base for expected failures that are written to the audit ledger."""

    code: str = "BUSINESS_RULE_ERROR"


class StateConflictError(BusinessRuleError):
    """Requested transition is not in the allowed set for the current status."""

    code: str = "STATE_CONFLICT"

    def __init__(
        self,
        entity_type: str,
        entity_id: Any,
        current_status: str,
        requested_status: str | None,
        allowed: tuple[str, ...] | list[str] = (),
        reason: str | None = None,
    ):
        self.entity_type = entity_type
        self.entity_id = str(entity_id)
        self.current_status = current_status
        self.requested_status = requested_status
        self.allowed = tuple(allowed)
        self.reason = reason or (
            f"Cannot transition {entity_type} from '{current_status}' "
            f"to '{requested_status}'. Allowed: {', '.join(self.allowed) or 'none'}"
        )
        super().__init__(self.reason)


class EstimateLockedError(StateConflictError):
    """Field edits on an estimate are only allowed while it is a draft."""

    code: str = "ESTIMATE_LOCKED"

    def __init__(self, estimate_id: Any, current_status: str):
        super().__init__(
            entity_type="estimate",
            entity_id=estimate_id,
            current_status=current_status,
            requested_status=None,
            allowed=(),
            reason=(
                f"Estimate {estimate_id} is '{current_status}' and can no "
                "longer be edited. Create a change order instead."
            ),
        )


class ContractLockedError(StateConflictError):
    """Contract content is frozen once the contract is signed or terminal."""

    code: str = "CONTRACT_LOCKED"

    def __init__(self, contract_id: Any, current_status: str):
        super().__init__(
            entity_type="contract",
            entity_id=contract_id,
            current_status=current_status,
            requested_status=None,
            allowed=(),
            reason=f"Contract {contract_id} is '{current_status}' and locked",
        )


class PolicyDeniedError(BusinessRuleError):
    """A cross-entity policy (deposit gating, close-out gating) refused the action."""

    code: str = "POLICY_DENIED"

    def __init__(self, reason: str, details: dict[str, Any] | None = None):
        self.reason = reason
        self.details = dict(details or {})
        super().__init__(reason)


class DepositRequiredError(PolicyDeniedError):
    """Job cannot be scheduled until its deposit invoice is paid."""

    code: str = "DEPOSIT_REQUIRED"

    def __init__(
        self,
        job_id: Any,
        reason: str,
        deposit_invoice_id: Any = None,
        deposit_invoice_status: str | None = None,
    ):
        self.job_id = str(job_id)
        self.deposit_invoice_id = (
            str(deposit_invoice_id) if deposit_invoice_id is not None else None
        )
        self.deposit_invoice_status = deposit_invoice_status
        super().__init__(
            reason,
            details={
                "job_id": self.job_id,
                "deposit_invoice_id": self.deposit_invoice_id,
                "deposit_invoice_status": deposit_invoice_status,
            },
        )


class CloseOutBlockedError(PolicyDeniedError):
    """Job cannot be closed while any of its invoices is unpaid."""

    code: str = "CLOSE_OUT_BLOCKED"

    def __init__(
        self,
        job_id: Any,
        reason: str,
        outstanding_invoices: list[dict[str, Any]],
        total_outstanding: Decimal,
    ):
        self.job_id = str(job_id)
        self.outstanding_invoices = list(outstanding_invoices)
        self.total_outstanding = total_outstanding
        super().__init__(
            reason,
            details={
                "job_id": self.job_id,
                "outstanding_invoices": self.outstanding_invoices,
                "total_outstanding": str(total_outstanding),
            },
        )


PORTAL_TOKEN_ERROR_STATUS = 404
PORTAL_TOKEN_ERROR_MESSAGE = "This link is no longer valid."


class InvalidAccessTokenError(BusinessRuleError):
    """
    Generic "link no longer valid" failure for portal tokens.

    Deliberately carries no reason, entity or token data.  Every instance
    renders identically whatever the underlying cause was.
    """

    code: str = "INVALID_ACCESS_TOKEN"

    def __init__(self) -> None:
        super().__init__(PORTAL_TOKEN_ERROR_MESSAGE)

    def to_response(self) -> tuple[int, dict[str, str]]:
        """Return the (status, body) pair sent to the external caller."""
        return PORTAL_TOKEN_ERROR_STATUS, {
            "code": self.code,
            "message": PORTAL_TOKEN_ERROR_MESSAGE,
        }


# Concurrency


class ConcurrencyError(QuoteKernelError):
    """Base exception for concurrency-related errors."""

    code: str = "CONCURRENCY_ERROR"


class OptimisticLockError(ConcurrencyError):
    """Optimistic locking conflict detected."""

    code: str = "OPTIMISTIC_LOCK_CONFLICT"

    def __init__(
        self,
        entity_type: str,
        entity_id: Any,
        expected_version: int,
        current_version: int | None,
    ):
        self.entity_type = entity_type
        self.entity_id = str(entity_id)
        self.expected_version = expected_version
        self.current_version = current_version
        super().__init__(
            f"Optimistic lock conflict on {entity_type} {entity_id}: "
            f"expected version {expected_version}, current version {current_version}"
        )


# Immutability


class ImmutabilityError(QuoteKernelError):
    """Base exception for immutability-related errors."""

    code: str = "IMMUTABILITY_ERROR"


class ImmutabilityViolationError(ImmutabilityError):
    """
    Attempted to modify or delete an immutable record.

    Snapshots, payments, audit log entries and cost profile snapshots are
    append-only; a contract's content is frozen once it is locked.
    """

    code: str = "IMMUTABILITY_VIOLATION"

    def __init__(self, entity_type: str, entity_id: str, reason: str):
        self.entity_type = entity_type
        self.entity_id = entity_id
        self.reason = reason
        super().__init__(
            f"Immutability violation on {entity_type} {entity_id}: {reason}"
        )


# Audit


class AuditError(QuoteKernelError):
    """Base exception for audit-related errors."""

    code: str = "AUDIT_ERROR"


class AuditChainBrokenError(AuditError):
    """Audit hash chain validation failed."""

    code: str = "AUDIT_CHAIN_BROKEN"

    def __init__(self, entry_id: str, expected_hash: str, actual_hash: str):
        self.entry_id = entry_id
        self.expected_hash = expected_hash
        self.actual_hash = actual_hash
        super().__init__(
            f"Audit chain broken at entry {entry_id}: "
            f"expected {expected_hash}, got {actual_hash}"
        )


# Portal throttling


class RateLimitExceededError(QuoteKernelError):
    """Too many public requests from one client key inside the window."""

    code: str = "RATE_LIMITED"

    def __init__(self, key: str, limit: int, retry_after_seconds: int):
        self.key = key
        self.limit = limit
        self.retry_after_seconds = retry_after_seconds
        super().__init__("Too many requests. Please try again later.")


# Configuration


class ConfigurationError(QuoteKernelError):
    """Configuration file is missing required values or holds invalid ones."""

    code: str = "CONFIGURATION_ERROR"

    def __init__(self, message: str, path: str | None = None):
        self.path = path
        super().__init__(message if path is None else f"{path}: {message}")
