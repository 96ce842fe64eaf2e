"""
Tests for job scheduling and close-out gates.

Verifies:
- Every path that puts a job on the calendar checks the deposit gate
- The tenant's deposit policy switches the gate off
- A refunded deposit locks scheduling again
- Closing requires every invoice of the job to be settled
- Blocked attempts are audited against the job
"""

from datetime import date, datetime, timedelta, timezone
from decimal import Decimal
from uuid import uuid4

import pytest

from quote_kernel.domain.statuses import DepositPolicy, InvoiceType, JobStatus
from quote_kernel.exceptions import (
    CloseOutBlockedError,
    DepositRequiredError,
    NotFoundError,
    StateConflictError,
    ValidationError,
)

MONDAY_8AM = datetime(2024, 6, 10, 8, 0, tzinfo=timezone.utc)
MONDAY_4PM = MONDAY_8AM + timedelta(hours=8)


@pytest.fixture
def estimate(approved_estimate):
    return approved_estimate()


@pytest.fixture
def job(estimate, make_job):
    return make_job(estimate)


@pytest.fixture
def deposit(estimate, job, make_invoice):
    return make_invoice(estimate, invoice_type=InvoiceType.DEPOSIT, job_id=job.id)


@pytest.fixture
def paid_deposit(deposit, ledger, company_id, user):
    ledger.record_payment(company_id, deposit.id, deposit.version, deposit.total, "check", user)
    return deposit


class TestCreateJob:
    def test_created_pending(self, job, estimate, auditor):
        assert job.status == "pending"
        assert job.title == "Spring cleanup"
        assert job.customer_id == estimate.customer_id
        assert auditor.find_by_action("job.created", job.id)[0].related_entity_id == estimate.id

    def test_requires_approved_estimate(self, sent_estimate, job_service, company_id, user):
        with pytest.raises(ValidationError):
            job_service.create_job(company_id, sent_estimate().estimate.id, user)


class TestDepositGate:
    def test_no_deposit_invoice(self, job, billing_policy, company_id):
        decision = billing_policy.can_schedule(company_id, job.id)
        assert decision.allowed is False
        assert decision.reason == "Deposit invoice must be paid before scheduling. No deposit invoice exists."

    def test_unpaid_deposit_blocks_scheduling(self, job, deposit, job_service, auditor, company_id, user):
        with pytest.raises(DepositRequiredError) as exc_info:
            job_service.update_status(company_id, job.id, JobStatus.SCHEDULED, user)
        err = exc_info.value
        assert err.code == "DEPOSIT_REQUIRED"
        assert err.deposit_invoice_id == str(deposit.id)
        assert err.deposit_invoice_status == "sent"
        assert job.status == "pending"
        entry = auditor.find_by_action("job.schedule_blocked", job.id)[0]
        assert entry.new_state["deposit_invoice_status"] == "sent"

    def test_partially_paid_deposit_still_blocks(self, job, deposit, job_service, ledger, company_id, user):
        ledger.record_payment(company_id, deposit.id, deposit.version, "100", "cash", user)
        with pytest.raises(DepositRequiredError) as exc_info:
            job_service.update_status(company_id, job.id, JobStatus.SCHEDULED, user)
        assert exc_info.value.reason.endswith("Current status: partially_paid")

    def test_paid_deposit_allows_scheduling(self, job, paid_deposit, job_service, company_id, user):
        job_service.update_status(company_id, job.id, "scheduled", user, scheduled_date=date(2024, 6, 10))
        assert job.status == "scheduled"
        assert job.scheduled_date == date(2024, 6, 10)

    def test_gate_details(self, job, paid_deposit, billing_policy, company_id):
        gate = billing_policy.deposit_gate(company_id, job.id)
        assert gate.deposit_required is True
        assert gate.deposit_paid is True
        assert gate.deposit_amount == Decimal("968.92")

    def test_not_required_policy(self, company_settings, job, job_service, company_id, user):
        company_settings(deposit_policy=DepositPolicy.NOT_REQUIRED)
        job_service.update_status(company_id, job.id, JobStatus.SCHEDULED, user)
        assert job.status == "scheduled"

    def test_refunded_deposit_locks_scheduling(self, job, paid_deposit, ledger, billing_policy, company_id, user):
        assert billing_policy.can_schedule(company_id, job.id).allowed is True
        ledger.record_refund(company_id, paid_deposit.id, paid_deposit.version, user, "Customer postponed")
        decision = billing_policy.can_schedule(company_id, job.id)
        assert decision.allowed is False
        assert decision.reason.endswith("Current status: refunded")

    def test_other_tenant_cannot_query(self, job, billing_policy):
        with pytest.raises(NotFoundError):
            billing_policy.can_schedule(uuid4(), job.id)


class TestCrewAndEquipment:
    def test_crew_assignment_requires_deposit(self, job, deposit, job_service, auditor, company_id, user):
        with pytest.raises(DepositRequiredError):
            job_service.assign_crew(company_id, job.id, uuid4(), MONDAY_8AM, MONDAY_4PM, user)
        assert auditor.find_by_action("job.crew_assignment_blocked", job.id)
        assert job_service.crew_assignments(company_id, job.id) == []

    def test_equipment_reservation_requires_deposit(self, job, job_service, auditor, company_id, user):
        with pytest.raises(DepositRequiredError):
            job_service.reserve_equipment(company_id, job.id, uuid4(), MONDAY_8AM, MONDAY_4PM, user)
        assert auditor.find_by_action("job.equipment_reservation_blocked", job.id)

    def test_assign_crew(self, job, paid_deposit, job_service, auditor, company_id, user):
        crew_id = uuid4()
        assignment = job_service.assign_crew(company_id, job.id, crew_id, MONDAY_8AM, MONDAY_4PM, user)
        assert assignment.crew_id == crew_id
        assert job_service.crew_assignments(company_id, job.id) == [assignment]
        assert auditor.find_by_action("job.crew_assigned", job.id)

    def test_reserve_equipment(self, job, paid_deposit, job_service, company_id, user):
        equipment_id = uuid4()
        reservation = job_service.reserve_equipment(company_id, job.id, equipment_id, MONDAY_8AM, MONDAY_4PM, user)
        assert reservation.equipment_id == equipment_id

    def test_crew_conflict(self, job, paid_deposit, job_service, conflicts, company_id, user):
        crew_id = uuid4()
        conflicts.busy.add(crew_id)
        with pytest.raises(ValidationError) as exc_info:
            job_service.assign_crew(company_id, job.id, crew_id, MONDAY_8AM, MONDAY_4PM, user)
        assert exc_info.value.field_errors == [f"Crew {crew_id} is booked"]

    def test_equipment_conflict(self, job, paid_deposit, job_service, conflicts, company_id, user):
        equipment_id = uuid4()
        conflicts.busy.add(equipment_id)
        with pytest.raises(ValidationError):
            job_service.reserve_equipment(company_id, job.id, equipment_id, MONDAY_8AM, MONDAY_4PM, user)

    def test_window_must_be_positive(self, job, paid_deposit, job_service, company_id, user):
        with pytest.raises(ValidationError):
            job_service.assign_crew(company_id, job.id, uuid4(), MONDAY_4PM, MONDAY_8AM, user)


class TestCloseOut:
    @pytest.fixture
    def completed_job(self, job, paid_deposit, job_service, company_id, user):
        for status in ("scheduled", "in_progress", "completed"):
            job_service.update_status(company_id, job.id, status, user)
        return job

    def test_lifecycle_timestamps(self, completed_job, clock):
        assert completed_job.started_at == clock.now()
        assert completed_job.completed_at == clock.now()

    def test_close_when_settled(self, completed_job, job_service, company_id, user, clock):
        job_service.update_status(company_id, completed_job.id, JobStatus.CLOSED, user)
        assert completed_job.status == "closed"
        assert completed_job.closed_at == clock.now()

    def test_outstanding_final_invoice_blocks(
        self, completed_job, estimate, make_invoice, job_service, auditor, company_id, user,
    ):
        final = make_invoice(estimate, invoice_type=InvoiceType.FINAL, job_id=completed_job.id)
        with pytest.raises(CloseOutBlockedError) as exc_info:
            job_service.update_status(company_id, completed_job.id, JobStatus.CLOSED, user)
        err = exc_info.value
        assert err.code == "CLOSE_OUT_BLOCKED"
        assert err.total_outstanding == Decimal("968.91")
        assert [i["invoice_number"] for i in err.outstanding_invoices] == [final.invoice_number]
        assert err.reason == "1 invoice(s) still outstanding. Total due: $968.91"
        assert auditor.find_by_action("job.close_blocked", completed_job.id)

    def test_paying_final_invoice_unblocks(
        self, completed_job, estimate, make_invoice, ledger, billing_policy, company_id, user,
    ):
        final = make_invoice(estimate, invoice_type=InvoiceType.FINAL, job_id=completed_job.id)
        assert billing_policy.can_close(company_id, completed_job.id).allowed is False
        ledger.record_payment(company_id, final.id, final.version, final.total, "check", user)
        decision = billing_policy.can_close(company_id, completed_job.id)
        assert decision.allowed is True
        assert decision.outstanding_invoices == ()

    def test_voided_invoice_does_not_block(
        self, completed_job, estimate, make_invoice, invoice_service, billing_policy, company_id, user,
    ):
        final = make_invoice(estimate, invoice_type=InvoiceType.FINAL, job_id=completed_job.id)
        invoice_service.void_invoice(company_id, final.id, user, "Issued in error")
        assert billing_policy.can_close(company_id, completed_job.id).allowed is True

    def test_cannot_close_unfinished_job(self, job, job_service, company_id, user):
        with pytest.raises(StateConflictError):
            job_service.update_status(company_id, job.id, JobStatus.CLOSED, user)

    def test_cancelled_job_is_terminal(self, job, job_service, company_id, user):
        job_service.update_status(company_id, job.id, JobStatus.CANCELLED, user, reason="Customer moved")
        with pytest.raises(StateConflictError) as exc_info:
            job_service.update_status(company_id, job.id, JobStatus.PENDING, user)
        assert exc_info.value.reason == "Cannot change job in terminal status 'cancelled'"
