"""
Module: quote_kernel.models.job
Responsibility: ORM persistence for jobs, their scheduling resources and the
    per-tenant billing settings that gate them.
Architecture position: Kernel > Models.  May import from db/base.py only.

Invariants enforced:
    - A job reaches ``scheduled`` only through JobService, which consults the
      deposit gate.  It reaches ``closed`` only when the close-out gate
      passes.
"""

from datetime import date, datetime
from decimal import Decimal
from uuid import UUID

from sqlalchemy import Date, ForeignKey, Index, Numeric, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from quote_kernel.db.base import Base, TrackedBase, UTCDateTime, UUIDString


class CompanySettings(Base):
    """Tenant billing settings."""

    __tablename__ = "company_settings"

    __table_args__ = (
        UniqueConstraint("company_id", name="uq_company_settings_company"),
    )

    company_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    company_name: Mapped[str] = mapped_column(String(200), nullable=False, default="")
    deposit_policy: Mapped[str] = mapped_column(String(20), nullable=False, default="required")
    default_deposit_percentage: Mapped[Decimal | None] = mapped_column(
        Numeric(38, 9), nullable=True,
    )

    def __repr__(self) -> str:
        return f"<CompanySettings {self.company_id} deposit={self.deposit_policy}>"


class Job(TrackedBase):
    """Work to be performed for an approved estimate."""

    __tablename__ = "jobs"

    __table_args__ = (
        Index("idx_job_company_status", "company_id", "status"),
    )

    company_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    customer_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    estimate_id: Mapped[UUID | None] = mapped_column(
        UUIDString(),
        ForeignKey("estimates.id"),
        nullable=True,
    )

    title: Mapped[str] = mapped_column(String(200), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="pending")
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    scheduled_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    started_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    closed_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)

    def __repr__(self) -> str:
        return f"<Job {self.title!r} [{self.status}]>"


class CrewAssignment(Base):
    """A crew booked onto a job for a time window."""

    __tablename__ = "crew_assignments"

    __table_args__ = (
        Index("idx_crew_assignment_job", "job_id"),
    )

    company_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    job_id: Mapped[UUID] = mapped_column(UUIDString(), ForeignKey("jobs.id"), nullable=False)
    crew_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    starts_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    ends_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    created_by_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)


class EquipmentReservation(Base):
    """A piece of equipment held for a job over a date range."""

    __tablename__ = "equipment_reservations"

    __table_args__ = (
        Index("idx_equipment_reservation_job", "job_id"),
    )

    company_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    job_id: Mapped[UUID] = mapped_column(UUIDString(), ForeignKey("jobs.id"), nullable=False)
    equipment_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    starts_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    ends_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    created_by_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)
