"""
External collaborators the kernel consumes through narrow contracts.

Notifier (SMS/email delivery), CheckoutGateway (hosted payment sessions)
and ConflictChecker (crew/equipment calendar overlaps) are owned by other
systems.  The kernel depends only on these protocols; hosts inject real
implementations and tests inject fakes.

Delivery failures never roll back the state change that triggered them:
``notify_safely`` logs the failure and returns False.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any, Callable, Protocol

from quote_kernel.logging_config import get_logger

logger = get_logger("services.notifications")


class Notifier(Protocol):
    def send_estimate_link(self, estimate: Any, raw_token: str) -> None: ...

    def send_invoice_link(self, invoice: Any, raw_token: str) -> None: ...

    def send_contract_link(self, contract: Any, raw_token: str) -> None: ...


class NullNotifier:
    """Notifier that delivers nothing."""

    def send_estimate_link(self, estimate: Any, raw_token: str) -> None:
        return None

    def send_invoice_link(self, invoice: Any, raw_token: str) -> None:
        return None

    def send_contract_link(self, contract: Any, raw_token: str) -> None:
        return None


@dataclass(frozen=True)
class CheckoutSession:
    session_id: str
    url: str


class CheckoutGateway(Protocol):
    def create_checkout_session(
        self,
        *,
        amount: Decimal,
        description: str,
        reference: str,
        metadata: dict[str, str],
    ) -> CheckoutSession: ...


@dataclass(frozen=True)
class ScheduleConflict:
    resource_id: Any
    starts_at: datetime
    ends_at: datetime
    description: str


class ConflictChecker(Protocol):
    def crew_conflicts(
        self, crew_id: Any, starts_at: datetime, ends_at: datetime,
    ) -> list[ScheduleConflict]: ...

    def equipment_conflicts(
        self, equipment_id: Any, starts_at: datetime, ends_at: datetime,
    ) -> list[ScheduleConflict]: ...


class NoConflicts:
    """ConflictChecker that never reports a conflict."""

    def crew_conflicts(self, crew_id, starts_at, ends_at):
        return []

    def equipment_conflicts(self, equipment_id, starts_at, ends_at):
        return []


def notify_safely(send: Callable[..., None], *args: Any, channel: str, document_id: Any) -> bool:
    """
    Fire-and-forget delivery.

    Any exception from the provider is logged with its traceback and
    swallowed so the caller's transaction still commits.
    """
    try:
        send(*args)
    except Exception:
        logger.warning(
            "notification_failed",
            extra={"channel": channel, "document_id": str(document_id)},
            exc_info=True,
        )
        return False
    logger.info(
        "notification_sent",
        extra={"channel": channel, "document_id": str(document_id)},
    )
    return True
