"""
Clock -- injectable time source.

Responsibility:
    Token expiry, rate-limit windows, overdue processing, snapshot and audit
    timestamps all read time through a Clock passed in by the caller.  Domain
    and service code never call ``datetime.now()`` directly.

Architecture position:
    Kernel > Domain.  SystemClock is the one sanctioned I/O boundary for time.

Audit relevance:
    Every ``created_at`` on a snapshot, payment or audit entry written by a
    service comes from the injected clock, so tests can reproduce an exact
    ledger.
"""

from abc import ABC, abstractmethod
from datetime import date, datetime, timedelta, timezone


class Clock(ABC):
    """
    Abstract clock interface.

    Contract:
        Services receive a Clock via constructor injection and default to
        SystemClock when none is supplied.

    Guarantees:
        - ``now()`` returns a timezone-aware UTC ``datetime``.
        - ``today()`` is the UTC calendar date of ``now()``.
    """

    @abstractmethod
    def now(self) -> datetime:
        """Get the current time (aware, UTC)."""
        ...

    def today(self) -> date:
        return self.now().date()

    def monotonic(self) -> float:
        """Seconds since the epoch, used for rate-limit windows."""
        return self.now().timestamp()


class SystemClock(Clock):
    """
    Production clock that returns actual system time.

    Non-goals:
        Not suitable for deterministic tests.
    """

    def now(self) -> datetime:
        return datetime.now(timezone.utc)


class DeterministicClock(Clock):
    """
    Test clock with controlled time.

    Contract:
        ``now()`` returns the same value on repeated calls until ``advance()``
        or ``set_time()`` is called.
    """

    def __init__(self, fixed_time: datetime | None = None):
        self._fixed_time = fixed_time or datetime(
            2024, 1, 1, 12, 0, 0, tzinfo=timezone.utc
        )
        self._advance_seconds = 0

    def now(self) -> datetime:
        return self._fixed_time + timedelta(seconds=self._advance_seconds)

    def set_time(self, time: datetime) -> None:
        """Set the clock to a specific time."""
        self._fixed_time = time
        self._advance_seconds = 0

    def advance(self, seconds: int = 1, *, days: int = 0) -> None:
        """Advance the clock by the given seconds (and days)."""
        self._advance_seconds += seconds + days * 86400

    def tick(self) -> datetime:
        """Advance by 1 second and return new time."""
        self.advance(1)
        return self.now()
