"""Who performed an action, and from where."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from quote_kernel.domain.statuses import ActorType


@dataclass(frozen=True)
class Actor:
    """
    Identity and request provenance attached to snapshots and audit rows.

    Customers acting through the portal have no ``actor_id``; their
    provenance is the IP address and user agent of the request.
    """

    actor_type: ActorType
    actor_id: Any = None
    ip_address: str | None = None
    user_agent: str | None = None

    @classmethod
    def user(
        cls,
        actor_id: Any,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> Actor:
        return cls(ActorType.USER, actor_id, ip_address, user_agent)

    @classmethod
    def customer(cls, ip_address: str | None = None, user_agent: str | None = None) -> Actor:
        return cls(ActorType.CUSTOMER, None, ip_address, user_agent)

    @classmethod
    def system(cls) -> Actor:
        return cls(ActorType.SYSTEM)

    @property
    def is_customer(self) -> bool:
        return self.actor_type == ActorType.CUSTOMER
