"""
BaseService -- abstract base for all kernel services.

Responsibility:
    Provides the common constructor, the clock, and tenant-scoped lookups
    for every service in the kernel layer.  Services receive a SQLAlchemy
    ``Session`` that they use via ``session.flush()`` -- never
    ``session.commit()``.

Architecture position:
    Kernel > Services -- imperative shell infrastructure.

Invariants enforced:
    - Transaction boundaries: services flush within the caller's
      transaction and never commit or roll back themselves.  The caller
      (``session_scope()`` or the test harness) owns commit/rollback.
    - Tenant scoping: ``_get_scoped`` treats a row owned by another tenant
      exactly like a missing row.
"""

from abc import ABC
from typing import Any, TypeVar

from sqlalchemy import select
from sqlalchemy.orm import Session

from quote_kernel.db.base import Base
from quote_kernel.domain.clock import Clock, SystemClock
from quote_kernel.exceptions import NotFoundError

ModelType = TypeVar("ModelType", bound=Base)


class BaseService(ABC):
    """
    Abstract base class for all kernel services.

    Guarantees:
        - The service never calls ``session.commit()`` or
          ``session.rollback()``.

    Non-goals:
        - Does NOT manage transaction lifecycle (commit/rollback).
    """

    def __init__(self, session: Session, clock: Clock | None = None):
        self.session = session
        self.clock = clock or SystemClock()

    def _get_scoped(
        self,
        model: type[ModelType],
        entity_type: str,
        company_id: Any,
        entity_id: Any,
        *,
        for_update: bool = False,
    ) -> ModelType:
        """
        Load one row owned by ``company_id``.

        Raises:
            NotFoundError: Row absent or owned by another tenant.
        """
        stmt = select(model).where(
            model.id == entity_id,
            model.company_id == company_id,
        )
        if for_update:
            stmt = stmt.with_for_update()
        row = self.session.execute(
            stmt.execution_options(populate_existing=True)
        ).scalar_one_or_none()
        if row is None:
            raise NotFoundError(entity_type, entity_id)
        return row
