"""
Document state machines (``quote_kernel.domain.workflow``).

Responsibility
--------------
Pure value objects describing the Estimate, Invoice, Contract and Job
lifecycles, plus ``check_transition``, the guard every service calls
before it writes a status.

Architecture position
---------------------
**Kernel domain layer** -- pure value objects.  ZERO I/O.  No imports
from ``db/``, ``models/`` or ``services/``.

Invariants enforced
-------------------
* Transitions reference only states in ``Workflow.states``.
* Terminal states have no outgoing transitions.
* A transition with ``gated_by`` set is only allowed when the caller
  arrives through that path: invoice ``paid``/``partially_paid`` only
  through the payment ledger, contract ``signed`` only through the sign
  operation, estimate ``superseded`` only through a change order.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any

from quote_kernel.domain.statuses import status_value
from quote_kernel.exceptions import StateConflictError
from quote_kernel.logging_config import get_logger

logger = get_logger("domain.workflow")


class TransitionPath(str, Enum):
    """Code path through which a status change is requested."""

    DIRECT = "direct"
    PAYMENT_LEDGER = "payment_ledger"
    SIGN = "sign"
    CHANGE_ORDER = "change_order"


@dataclass(frozen=True)
class Guard:
    """A condition that must be satisfied before a transition fires.

    Contract: frozen, descriptive only.
    Non-goals: does not evaluate the condition -- the owning service does.
    """
    name: str
    description: str


@dataclass(frozen=True)
class Transition:
    """A valid state transition in a workflow.

    Contract: frozen.  ``gated_by`` restricts the transition to one
    TransitionPath; ``None`` means any path may request it.
    """
    from_state: str
    to_state: str
    action: str
    guard: Guard | None = None
    gated_by: TransitionPath | None = None


@dataclass(frozen=True)
class Workflow:
    """A state machine definition for a document lifecycle.

    Contract: frozen; ``transitions`` reference only states in ``states``.
    Guarantees: ``initial_state`` is a member of ``states``.
    """
    name: str
    description: str
    initial_state: str
    states: tuple[str, ...]
    transitions: tuple[Transition, ...]
    terminal_states: tuple[str, ...] = ()

    def __post_init__(self) -> None:
        if self.initial_state not in self.states:
            raise ValueError(
                f"Workflow {self.name}: initial state {self.initial_state!r} not in states"
            )
        for t in self.transitions:
            if t.from_state not in self.states or t.to_state not in self.states:
                raise ValueError(
                    f"Workflow {self.name}: transition {t.from_state}->{t.to_state} "
                    "references an unknown state"
                )
            if t.from_state in self.terminal_states:
                raise ValueError(
                    f"Workflow {self.name}: terminal state {t.from_state!r} has an outgoing transition"
                )

    def find(self, from_state: str, to_state: str) -> Transition | None:
        for t in self.transitions:
            if t.from_state == from_state and t.to_state == to_state:
                return t
        return None

    def targets_from(
        self,
        from_state: str,
        via: TransitionPath | None = None,
    ) -> tuple[str, ...]:
        """Target states reachable from ``from_state``.

        With ``via`` given, gated transitions belonging to other paths are
        excluded.
        """
        targets: list[str] = []
        for t in self.transitions:
            if t.from_state != from_state:
                continue
            if via is not None and t.gated_by is not None and t.gated_by != via:
                continue
            if t.to_state not in targets:
                targets.append(t.to_state)
        return tuple(targets)


@dataclass(frozen=True)
class TransitionDecision:
    """Result of a guard check.  Denials carry the diagnostic data callers surface."""

    allowed: bool
    current_status: str
    requested_status: str
    allowed_targets: tuple[str, ...]
    reason: str | None = None
    transition: Transition | None = None

    def raise_if_denied(self, entity_type: str, entity_id: Any) -> None:
        if not self.allowed:
            raise StateConflictError(
                entity_type=entity_type,
                entity_id=entity_id,
                current_status=self.current_status,
                requested_status=self.requested_status,
                allowed=self.allowed_targets,
                reason=self.reason,
            )


def check_transition(
    workflow: Workflow,
    current_status: Any,
    requested_status: Any,
    via: TransitionPath = TransitionPath.DIRECT,
) -> TransitionDecision:
    """
    Decide whether ``current_status -> requested_status`` is permitted.

    Preconditions: statuses are strings or str-valued enums.
    Postconditions: never raises and never performs I/O.  A denial carries a
        human-readable reason and the targets reachable from the current
        status through ``via``.
    """
    current = status_value(current_status)
    requested = status_value(requested_status)
    targets = workflow.targets_from(current, via)

    if requested not in workflow.states:
        return TransitionDecision(
            allowed=False,
            current_status=current,
            requested_status=requested,
            allowed_targets=targets,
            reason=f"Unknown {workflow.name} status '{requested}'",
        )

    if current in workflow.terminal_states:
        return TransitionDecision(
            allowed=False,
            current_status=current,
            requested_status=requested,
            allowed_targets=(),
            reason=f"Cannot change {workflow.name} in terminal status '{current}'",
        )

    transition = workflow.find(current, requested)
    if transition is None:
        return TransitionDecision(
            allowed=False,
            current_status=current,
            requested_status=requested,
            allowed_targets=targets,
            reason=(
                f"Cannot transition {workflow.name} from '{current}' to "
                f"'{requested}'. Allowed: {', '.join(targets) or 'none'}"
            ),
        )

    if transition.gated_by is not None and transition.gated_by != via:
        return TransitionDecision(
            allowed=False,
            current_status=current,
            requested_status=requested,
            allowed_targets=targets,
            reason=(
                f"Status '{requested}' can only be set through "
                f"{transition.gated_by.value.replace('_', ' ')}"
            ),
            transition=transition,
        )

    return TransitionDecision(
        allowed=True,
        current_status=current,
        requested_status=requested,
        allowed_targets=targets,
        transition=transition,
    )


# -----------------------------------------------------------------------------
# Guards
# -----------------------------------------------------------------------------

OVERRIDE_REASON_PRESENT = Guard(
    name="override_reason_present",
    description="Price override carries a non-empty reason",
)

PAYMENT_RECORDED = Guard(
    name="payment_recorded",
    description="A payment ledger row backs the new balance",
)

WRITE_OFF_REASON_RECORDED = Guard(
    name="write_off_reason_recorded",
    description="Write-off has a reason of minimum length and a recording actor",
)

SIGNATURE_CAPTURED = Guard(
    name="signature_captured",
    description="Signer name plus drawn signature or typed initials",
)

DEPOSIT_PAID = Guard(
    name="deposit_paid",
    description="Deposit invoice is paid or the tenant does not require deposits",
)

INVOICES_SETTLED = Guard(
    name="invoices_settled",
    description="No invoice of the job is in a non-terminal unpaid status",
)


# -----------------------------------------------------------------------------
# Estimate Workflow
# -----------------------------------------------------------------------------

ESTIMATE_WORKFLOW = Workflow(
    name="estimate",
    description="Customer price quote lifecycle",
    initial_state="draft",
    states=("draft", "sent", "approved", "rejected", "superseded"),
    transitions=(
        Transition("draft", "sent", action="send"),
        Transition("sent", "approved", action="approve"),
        Transition("sent", "rejected", action="reject"),
        Transition("sent", "superseded", action="supersede", gated_by=TransitionPath.CHANGE_ORDER),
        Transition("approved", "superseded", action="supersede", gated_by=TransitionPath.CHANGE_ORDER),
    ),
    terminal_states=("rejected", "superseded"),
)

logger.info(
    "estimate_workflow_registered",
    extra={
        "workflow_name": ESTIMATE_WORKFLOW.name,
        "state_count": len(ESTIMATE_WORKFLOW.states),
        "transition_count": len(ESTIMATE_WORKFLOW.transitions),
    },
)


# -----------------------------------------------------------------------------
# Invoice Workflow
# -----------------------------------------------------------------------------

_LEDGER = TransitionPath.PAYMENT_LEDGER

INVOICE_WORKFLOW = Workflow(
    name="invoice",
    description="Customer invoice lifecycle",
    initial_state="draft",
    states=(
        "draft",
        "sent",
        "viewed",
        "partially_paid",
        "paid",
        "overdue",
        "disputed",
        "voided",
        "refunded",
        "written_off",
    ),
    transitions=(
        Transition("draft", "sent", action="send"),
        Transition("draft", "voided", action="void"),
        Transition("sent", "viewed", action="view"),
        Transition("sent", "partially_paid", action="apply_payment", guard=PAYMENT_RECORDED, gated_by=_LEDGER),
        Transition("sent", "paid", action="apply_payment", guard=PAYMENT_RECORDED, gated_by=_LEDGER),
        Transition("sent", "overdue", action="mark_overdue"),
        Transition("sent", "voided", action="void"),
        Transition("sent", "disputed", action="dispute"),
        Transition("viewed", "partially_paid", action="apply_payment", guard=PAYMENT_RECORDED, gated_by=_LEDGER),
        Transition("viewed", "paid", action="apply_payment", guard=PAYMENT_RECORDED, gated_by=_LEDGER),
        Transition("viewed", "overdue", action="mark_overdue"),
        Transition("viewed", "voided", action="void"),
        Transition("viewed", "disputed", action="dispute"),
        Transition("partially_paid", "paid", action="apply_payment", guard=PAYMENT_RECORDED, gated_by=_LEDGER),
        Transition("partially_paid", "overdue", action="mark_overdue"),
        Transition("partially_paid", "voided", action="void"),
        Transition("partially_paid", "disputed", action="dispute"),
        Transition("partially_paid", "refunded", action="apply_refund", gated_by=_LEDGER),
        Transition("paid", "refunded", action="apply_refund", gated_by=_LEDGER),
        Transition("paid", "disputed", action="dispute"),
        Transition("paid", "partially_paid", action="apply_refund", guard=PAYMENT_RECORDED, gated_by=_LEDGER),
        Transition("overdue", "viewed", action="view"),
        Transition("overdue", "partially_paid", action="apply_payment", guard=PAYMENT_RECORDED, gated_by=_LEDGER),
        Transition("overdue", "paid", action="apply_payment", guard=PAYMENT_RECORDED, gated_by=_LEDGER),
        Transition("overdue", "voided", action="void"),
        Transition("overdue", "written_off", action="write_off", guard=WRITE_OFF_REASON_RECORDED),
        Transition("overdue", "disputed", action="dispute"),
        Transition("disputed", "paid", action="apply_payment", guard=PAYMENT_RECORDED, gated_by=_LEDGER),
        Transition("disputed", "refunded", action="apply_refund", gated_by=_LEDGER),
        Transition("disputed", "written_off", action="write_off", guard=WRITE_OFF_REASON_RECORDED),
    ),
    terminal_states=("voided", "refunded", "written_off"),
)

logger.info(
    "invoice_workflow_registered",
    extra={
        "workflow_name": INVOICE_WORKFLOW.name,
        "state_count": len(INVOICE_WORKFLOW.states),
        "transition_count": len(INVOICE_WORKFLOW.transitions),
    },
)


# -----------------------------------------------------------------------------
# Contract Workflow
# -----------------------------------------------------------------------------

CONTRACT_WORKFLOW = Workflow(
    name="contract",
    description="Customer contract lifecycle",
    initial_state="draft",
    states=("draft", "sent", "signed", "voided", "expired"),
    transitions=(
        Transition("draft", "sent", action="send"),
        Transition("sent", "signed", action="sign", guard=SIGNATURE_CAPTURED, gated_by=TransitionPath.SIGN),
        Transition("sent", "voided", action="void"),
        Transition("sent", "expired", action="expire"),
    ),
    terminal_states=("signed", "voided", "expired"),
)

logger.info(
    "contract_workflow_registered",
    extra={
        "workflow_name": CONTRACT_WORKFLOW.name,
        "state_count": len(CONTRACT_WORKFLOW.states),
        "transition_count": len(CONTRACT_WORKFLOW.transitions),
    },
)


# -----------------------------------------------------------------------------
# Job Workflow
# -----------------------------------------------------------------------------

JOB_WORKFLOW = Workflow(
    name="job",
    description="Production job lifecycle",
    initial_state="pending",
    states=("pending", "scheduled", "in_progress", "completed", "closed", "cancelled"),
    transitions=(
        Transition("pending", "scheduled", action="schedule", guard=DEPOSIT_PAID),
        Transition("pending", "cancelled", action="cancel"),
        Transition("scheduled", "pending", action="unschedule"),
        Transition("scheduled", "in_progress", action="start"),
        Transition("scheduled", "cancelled", action="cancel"),
        Transition("in_progress", "completed", action="complete"),
        Transition("in_progress", "cancelled", action="cancel"),
        Transition("completed", "closed", action="close", guard=INVOICES_SETTLED),
    ),
    terminal_states=("closed", "cancelled"),
)

logger.info(
    "job_workflow_registered",
    extra={
        "workflow_name": JOB_WORKFLOW.name,
        "state_count": len(JOB_WORKFLOW.states),
        "transition_count": len(JOB_WORKFLOW.transitions),
    },
)
