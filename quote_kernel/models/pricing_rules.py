"""
Module: quote_kernel.models.pricing_rules
Responsibility: ORM persistence for the configurable rule engine: estimate
    input fields, pricing profiles (tax/deposit/commission terms) and the
    pricing rules bound to them.
Architecture position: Kernel > Models.  May import from db/base.py only.

Invariants enforced:
    - At most one default pricing profile per tenant (enforced by
      RuleEngineService.save_profile, which clears the previous default).
    - Rules evaluate in creation order; ``sort_order`` is allocated from the
      sequence service at creation and never changes.
"""

from datetime import datetime
from decimal import Decimal
from uuid import UUID

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    ForeignKey,
    Index,
    Numeric,
    String,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column

from quote_kernel.db.base import Base, TrackedBase, UTCDateTime, UUIDString, utc_now


class EstimateField(Base):
    """
    A tenant-defined estimate input (e.g. ``lot_size``, ``has_slope``).

    ``applies_to`` lists the preview modes (``internal``, ``marketing``)
    the field is offered in.
    """

    __tablename__ = "estimate_fields"

    __table_args__ = (
        UniqueConstraint("company_id", "field_key", name="uq_estimate_field_key"),
    )

    company_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    field_key: Mapped[str] = mapped_column(String(100), nullable=False)
    label: Mapped[str] = mapped_column(String(200), nullable=False)
    field_type: Mapped[str] = mapped_column(String(20), nullable=False, default="number")
    applies_to: Mapped[list | None] = mapped_column(JSON, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    sort_order: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)

    def __repr__(self) -> str:
        return f"<EstimateField {self.field_key}>"


class PricingProfile(TrackedBase):
    """Commercial terms a rule-engine estimate is priced under."""

    __tablename__ = "pricing_profiles"

    __table_args__ = (
        Index("idx_pricing_profile_company", "company_id"),
    )

    company_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    is_default: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    tax_percentage: Mapped[Decimal] = mapped_column(Numeric(38, 9), nullable=False, default=Decimal("0"))
    deposit_percentage: Mapped[Decimal] = mapped_column(Numeric(38, 9), nullable=False, default=Decimal("0"))
    commission_percentage: Mapped[Decimal] = mapped_column(Numeric(38, 9), nullable=False, default=Decimal("0"))
    minimum_floor_percentage: Mapped[Decimal] = mapped_column(
        Numeric(38, 9), nullable=False, default=Decimal("15"),
    )

    def __repr__(self) -> str:
        return f"<PricingProfile {self.name}{' (default)' if self.is_default else ''}>"


class PricingRule(Base):
    """
    One pricing adjustment: an effect, optionally bound to an input field
    and gated by a condition on that field's value.
    """

    __tablename__ = "pricing_rules"

    __table_args__ = (
        Index("idx_pricing_rule_profile", "company_id", "pricing_profile_id"),
    )

    company_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    pricing_profile_id: Mapped[UUID | None] = mapped_column(
        UUIDString(),
        ForeignKey("pricing_profiles.id"),
        nullable=True,
    )
    field_id: Mapped[UUID | None] = mapped_column(
        UUIDString(),
        ForeignKey("estimate_fields.id"),
        nullable=True,
    )

    rule_name: Mapped[str] = mapped_column(String(200), nullable=False)
    applies_when: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    effect_type: Mapped[str] = mapped_column(String(20), nullable=False)
    effect_value: Mapped[Decimal] = mapped_column(Numeric(38, 9), nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    sort_order: Mapped[int] = mapped_column(BigInteger, nullable=False)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False, default=utc_now)

    def __repr__(self) -> str:
        return f"<PricingRule {self.rule_name} {self.effect_type}={self.effect_value}>"
