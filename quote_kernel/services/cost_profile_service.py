"""
CostProfileService -- versioned cost assumptions.

Responsibility:
    Validates a tenant's raw cost assumptions, runs the cost calculator
    and appends a new CostProfileSnapshot with the calculated outputs.
    Supplies the pricing engine with the latest snapshot as a CostBasis.

Architecture position:
    Kernel > Services -- wraps domain/cost_calculator.py.

Invariants enforced:
    - Snapshots are never updated; every save is a new version.
    - Versions per tenant come from a locked counter: 1, 2, 3, ...
"""

from __future__ import annotations

from typing import Any, Mapping

from sqlalchemy import select
from sqlalchemy.orm import Session

from quote_kernel.domain.actor import Actor
from quote_kernel.domain.clock import Clock
from quote_kernel.domain.cost_calculator import (
    CostCalculationOutput,
    CostProfileInput,
    calculate_costs,
)
from quote_kernel.domain.policy import DEFAULT_POLICY, QuotePolicy
from quote_kernel.domain.pricing_engine import CostBasis
from quote_kernel.logging_config import get_logger
from quote_kernel.models.cost_profile import CostProfileSnapshot
from quote_kernel.services.audit_service import AuditorService
from quote_kernel.services.base import BaseService
from quote_kernel.services.sequence_service import SequenceService

logger = get_logger("services.cost_profile")


class CostProfileService(BaseService):
    def __init__(
        self,
        session: Session,
        clock: Clock | None = None,
        policy: QuotePolicy | None = None,
    ):
        super().__init__(session, clock)
        self.policy = policy or DEFAULT_POLICY
        self._auditor = AuditorService(session, self.clock)

    def calculate(self, profile: CostProfileInput) -> CostCalculationOutput:
        pricing = self.policy.pricing
        return calculate_costs(
            profile,
            low_margin_warning_percentage=pricing.low_margin_warning_percentage,
            low_utilization_warning_percentage=pricing.low_utilization_warning_percentage,
            minimum_job_charge_factor=pricing.minimum_job_charge_factor,
        )

    def preview(self, assumptions: Mapping[str, Any]) -> CostCalculationOutput:
        """Calculator outputs for unsaved assumptions.  Writes nothing."""
        return self.calculate(self._parse(assumptions))

    def save_cost_profile(
        self,
        company_id: Any,
        assumptions: Mapping[str, Any],
        actor: Actor,
    ) -> CostProfileSnapshot:
        """
        Validate, calculate and append a new cost profile version.

        Raises:
            ValidationError: assumptions are malformed (nothing is written).
        """
        profile = self._parse(assumptions)
        outputs = self.calculate(profile)

        version = SequenceService(self.session).next_value(f"cost_profile:{company_id}")
        snapshot = CostProfileSnapshot(
            company_id=company_id,
            version=version,
            snapshot_data=profile.to_dict(),
            calculated_outputs=outputs.to_dict(),
            created_by_id=actor.actor_id,
            created_at=self.clock.now(),
        )
        self.session.add(snapshot)
        self.session.flush()

        self._auditor.record(
            "cost_profile",
            snapshot.id,
            "cost_profile.created",
            actor,
            company_id=company_id,
            new_state={"version": version, "warnings": list(outputs.warnings)},
        )
        logger.info(
            "cost_profile_saved",
            extra={
                "company_id": str(company_id),
                "version": version,
                "warning_count": len(outputs.warnings),
            },
        )
        return snapshot

    def get_latest(self, company_id: Any) -> CostProfileSnapshot | None:
        return self.session.execute(
            select(CostProfileSnapshot)
            .where(CostProfileSnapshot.company_id == company_id)
            .order_by(CostProfileSnapshot.version.desc())
            .limit(1)
        ).scalar_one_or_none()

    def get_version(self, company_id: Any, version: int) -> CostProfileSnapshot | None:
        return self.session.execute(
            select(CostProfileSnapshot).where(
                CostProfileSnapshot.company_id == company_id,
                CostProfileSnapshot.version == version,
            )
        ).scalar_one_or_none()

    def list_versions(self, company_id: Any) -> list[CostProfileSnapshot]:
        return list(
            self.session.execute(
                select(CostProfileSnapshot)
                .where(CostProfileSnapshot.company_id == company_id)
                .order_by(CostProfileSnapshot.version)
            ).scalars().all()
        )

    @staticmethod
    def cost_basis(snapshot: CostProfileSnapshot) -> CostBasis:
        return CostBasis.from_snapshot_data(
            snapshot.snapshot_data,
            snapshot.calculated_outputs,
            snapshot.version,
        )

    def _parse(self, assumptions: Mapping[str, Any]) -> CostProfileInput:
        data = dict(assumptions)
        margin = dict(data.get("margin") or {})
        margin.setdefault("half_day_factor", str(self.policy.pricing.default_half_day_factor))
        data["margin"] = margin
        return CostProfileInput.from_dict(data)
