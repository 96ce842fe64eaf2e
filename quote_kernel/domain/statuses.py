"""
Status and classification enums shared by models, domain and services.

Stored as plain strings (``String(n)`` columns); ``str`` mixin keeps
``estimate.status == EstimateStatus.SENT`` true for loaded rows.
"""

from enum import Enum


class EstimateStatus(str, Enum):
    """Estimate lifecycle.

    Contract: draft -> sent -> approved | rejected | superseded;
        approved -> superseded.  rejected and superseded are terminal.
    """

    DRAFT = "draft"
    SENT = "sent"
    APPROVED = "approved"
    REJECTED = "rejected"
    SUPERSEDED = "superseded"


class InvoiceStatus(str, Enum):
    """Invoice lifecycle.  PAID and PARTIALLY_PAID are set only by the payment ledger."""

    DRAFT = "draft"
    SENT = "sent"
    VIEWED = "viewed"
    PARTIALLY_PAID = "partially_paid"
    PAID = "paid"
    OVERDUE = "overdue"
    DISPUTED = "disputed"
    VOIDED = "voided"
    REFUNDED = "refunded"
    WRITTEN_OFF = "written_off"


class ContractStatus(str, Enum):
    DRAFT = "draft"
    SENT = "sent"
    SIGNED = "signed"
    VOIDED = "voided"
    EXPIRED = "expired"


class JobStatus(str, Enum):
    PENDING = "pending"
    SCHEDULED = "scheduled"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CLOSED = "closed"
    CANCELLED = "cancelled"


class InvoiceType(str, Enum):
    DEPOSIT = "deposit"
    PROGRESS = "progress"
    FINAL = "final"
    FULL = "full"


class PaymentMethod(str, Enum):
    """How money arrived.  GATEWAY rows carry a gateway reference."""

    CHECK = "check"
    CASH = "cash"
    BANK_TRANSFER = "bank_transfer"
    OTHER = "other"
    GATEWAY = "gateway"


OFFLINE_PAYMENT_METHODS = frozenset({
    PaymentMethod.CHECK,
    PaymentMethod.CASH,
    PaymentMethod.BANK_TRANSFER,
    PaymentMethod.OTHER,
})


class ActorType(str, Enum):
    USER = "user"
    CUSTOMER = "customer"
    SYSTEM = "system"


class SnapshotTrigger(str, Enum):
    """Lifecycle event that produced an EstimateSnapshot."""

    SEND = "send"
    APPROVE = "approve"
    REJECT = "reject"
    CHANGE_ORDER = "change_order"
    SUPERSEDE = "supersede"
    FINALIZE = "finalize"


class DepositPolicy(str, Enum):
    REQUIRED = "required"
    NOT_REQUIRED = "not_required"


class PaymentPlanStatus(str, Enum):
    ACTIVE = "active"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    OVERDUE = "overdue"


class InstallmentStatus(str, Enum):
    PENDING = "pending"
    PAID = "paid"
    OVERDUE = "overdue"
    CANCELLED = "cancelled"


class DocumentType(str, Enum):
    """Document kinds a portal token can be scoped to."""

    ESTIMATE = "estimate"
    INVOICE = "invoice"
    CONTRACT = "contract"
    PAYMENT_PLAN = "payment_plan"


def status_value(status) -> str:
    """Plain string for a status given as an enum member or a loaded column value."""
    return status.value if isinstance(status, Enum) else str(status)
