"""
JobService -- job status changes and scheduling resources behind the
deposit and close-out gates.

Responsibility:
    Creates jobs for approved estimates, moves them through JOB_WORKFLOW,
    and books crews and equipment onto them.

Architecture position:
    Kernel > Services -- every path that can put a job on the calendar
    (status change to ``scheduled``, crew assignment, equipment
    reservation) asks BillingPolicyService itself.

Invariants enforced:
    - ``scheduled`` requires the deposit gate to pass at the moment of the
      change.
    - Crew assignments and equipment reservations re-check the deposit
      gate and then the injected ConflictChecker before inserting.
    - ``closed`` requires every invoice of the job to be settled.

Failure modes:
    - DepositRequiredError / CloseOutBlockedError (audited first).
    - StateConflictError: transition not in JOB_WORKFLOW.
    - ValidationError: bad time window or a calendar conflict.
"""

from __future__ import annotations

from datetime import date, datetime
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from quote_kernel.domain.actor import Actor
from quote_kernel.domain.clock import Clock
from quote_kernel.domain.policy import DEFAULT_POLICY, QuotePolicy
from quote_kernel.domain.statuses import EstimateStatus, JobStatus, status_value
from quote_kernel.domain.workflow import JOB_WORKFLOW, check_transition
from quote_kernel.exceptions import (
    CloseOutBlockedError,
    DepositRequiredError,
    ValidationError,
)
from quote_kernel.logging_config import get_logger
from quote_kernel.models.estimate import Estimate
from quote_kernel.models.job import CrewAssignment, EquipmentReservation, Job
from quote_kernel.services.audit_service import AuditorService
from quote_kernel.services.base import BaseService
from quote_kernel.services.billing_policy import BillingPolicyService
from quote_kernel.services.notifications import ConflictChecker, NoConflicts

logger = get_logger("services.job")


class JobService(BaseService):
    def __init__(
        self,
        session: Session,
        clock: Clock | None = None,
        policy: QuotePolicy | None = None,
        conflicts: ConflictChecker | None = None,
    ):
        super().__init__(session, clock)
        self.policy = policy or DEFAULT_POLICY
        self.conflicts = conflicts or NoConflicts()
        self._auditor = AuditorService(session, self.clock)
        self._billing = BillingPolicyService(session, self.clock, self.policy)

    def get_job(self, company_id: Any, job_id: Any, *, for_update: bool = False) -> Job:
        return self._get_scoped(Job, "job", company_id, job_id, for_update=for_update)

    def create_job(
        self,
        company_id: Any,
        estimate_id: Any,
        actor: Actor,
        *,
        title: str | None = None,
        notes: str | None = None,
    ) -> Job:
        estimate = self._get_scoped(Estimate, "estimate", company_id, estimate_id)
        if estimate.status != EstimateStatus.APPROVED:
            raise ValidationError(
                "Jobs can only be created from approved estimates",
                [f"estimate status is '{estimate.status}'"],
            )
        job = Job(
            company_id=company_id,
            customer_id=estimate.customer_id,
            estimate_id=estimate.id,
            title=title or estimate.title or estimate.estimate_number,
            status=JobStatus.PENDING.value,
            notes=notes,
            created_by_id=actor.actor_id,
        )
        self.session.add(job)
        self.session.flush()
        self._auditor.record(
            "job",
            job.id,
            "job.created",
            actor,
            company_id=company_id,
            new_state={"status": job.status, "title": job.title},
            related_entity_type="estimate",
            related_entity_id=estimate.id,
        )
        return job

    def update_status(
        self,
        company_id: Any,
        job_id: Any,
        new_status: JobStatus | str,
        actor: Actor,
        *,
        scheduled_date: date | None = None,
        reason: str | None = None,
    ) -> Job:
        """
        Move a job along JOB_WORKFLOW.

        Entering ``scheduled`` consults the deposit gate; entering
        ``closed`` consults the close-out gate.
        """
        job = self.get_job(company_id, job_id, for_update=True)
        previous_status = job.status
        requested = status_value(new_status)

        decision = check_transition(JOB_WORKFLOW, job.status, requested)
        if not decision.allowed:
            self._auditor.record_denial("job", job.id, decision, actor, company_id=company_id)
            decision.raise_if_denied("job", job.id)

        if requested == JobStatus.SCHEDULED.value:
            self._require_schedulable(job, actor, "job.schedule_blocked")
        elif requested == JobStatus.CLOSED.value:
            self._require_closable(job, actor)

        now = self.clock.now()
        job.status = requested
        if requested == JobStatus.SCHEDULED.value and scheduled_date is not None:
            job.scheduled_date = scheduled_date
        elif requested == JobStatus.IN_PROGRESS.value:
            job.started_at = now
        elif requested == JobStatus.COMPLETED.value:
            job.completed_at = now
        elif requested == JobStatus.CLOSED.value:
            job.closed_at = now
        self.session.flush()

        self._auditor.record_transition(
            "job", job.id, f"job.{requested}", actor, previous_status, requested,
            company_id=company_id, reason=reason,
        )
        logger.info(
            "job_status_changed",
            extra={"job_id": str(job.id), "from_status": previous_status, "to_status": requested},
        )
        return job

    def assign_crew(
        self,
        company_id: Any,
        job_id: Any,
        crew_id: Any,
        starts_at: datetime,
        ends_at: datetime,
        actor: Actor,
    ) -> CrewAssignment:
        job = self.get_job(company_id, job_id, for_update=True)
        self._require_window(starts_at, ends_at)
        self._require_schedulable(job, actor, "job.crew_assignment_blocked")
        conflicts = self.conflicts.crew_conflicts(crew_id, starts_at, ends_at)
        if conflicts:
            raise ValidationError(
                "Crew is already booked",
                [conflict.description for conflict in conflicts],
            )

        assignment = CrewAssignment(
            company_id=company_id,
            job_id=job.id,
            crew_id=crew_id,
            starts_at=starts_at,
            ends_at=ends_at,
            created_by_id=actor.actor_id,
        )
        self.session.add(assignment)
        self.session.flush()
        self._auditor.record(
            "job",
            job.id,
            "job.crew_assigned",
            actor,
            company_id=company_id,
            new_state={"crew_id": crew_id, "starts_at": starts_at, "ends_at": ends_at},
        )
        return assignment

    def reserve_equipment(
        self,
        company_id: Any,
        job_id: Any,
        equipment_id: Any,
        starts_at: datetime,
        ends_at: datetime,
        actor: Actor,
    ) -> EquipmentReservation:
        job = self.get_job(company_id, job_id, for_update=True)
        self._require_window(starts_at, ends_at)
        self._require_schedulable(job, actor, "job.equipment_reservation_blocked")
        conflicts = self.conflicts.equipment_conflicts(equipment_id, starts_at, ends_at)
        if conflicts:
            raise ValidationError(
                "Equipment is already reserved",
                [conflict.description for conflict in conflicts],
            )

        reservation = EquipmentReservation(
            company_id=company_id,
            job_id=job.id,
            equipment_id=equipment_id,
            starts_at=starts_at,
            ends_at=ends_at,
            created_by_id=actor.actor_id,
        )
        self.session.add(reservation)
        self.session.flush()
        self._auditor.record(
            "job",
            job.id,
            "job.equipment_reserved",
            actor,
            company_id=company_id,
            new_state={"equipment_id": equipment_id, "starts_at": starts_at, "ends_at": ends_at},
        )
        return reservation

    def crew_assignments(self, company_id: Any, job_id: Any) -> list[CrewAssignment]:
        return list(
            self.session.execute(
                select(CrewAssignment)
                .where(CrewAssignment.company_id == company_id, CrewAssignment.job_id == job_id)
                .order_by(CrewAssignment.starts_at)
            ).scalars().all()
        )

    # Gates

    def _require_schedulable(self, job: Job, actor: Actor, action: str) -> None:
        try:
            self._billing.require_schedulable(job.company_id, job.id)
        except DepositRequiredError as exc:
            self._auditor.record(
                "job",
                job.id,
                action,
                actor,
                company_id=job.company_id,
                previous_state={"status": job.status},
                new_state={
                    "deposit_invoice_id": exc.deposit_invoice_id,
                    "deposit_invoice_status": exc.deposit_invoice_status,
                },
                reason=exc.reason,
            )
            raise

    def _require_closable(self, job: Job, actor: Actor) -> None:
        try:
            self._billing.require_closable(job.company_id, job.id)
        except CloseOutBlockedError as exc:
            self._auditor.record(
                "job",
                job.id,
                "job.close_blocked",
                actor,
                company_id=job.company_id,
                previous_state={"status": job.status},
                new_state={
                    "outstanding_invoices": exc.outstanding_invoices,
                    "total_outstanding": exc.total_outstanding,
                },
                reason=exc.reason,
            )
            raise

    @staticmethod
    def _require_window(starts_at: datetime, ends_at: datetime) -> None:
        if ends_at <= starts_at:
            raise ValidationError("Invalid time window", ["ends_at must be after starts_at"])
