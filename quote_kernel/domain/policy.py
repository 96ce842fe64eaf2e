"""
Module: quote_kernel.domain.policy
Responsibility: Typed, frozen policy values the kernel runs under (token
    lifetimes, portal throttling, billing thresholds, pricing advisories).
Architecture position: Kernel > Domain.  The kernel never reads
    configuration files; ``quote_config`` builds a QuotePolicy from YAML
    and callers hand it to services.  Defaults here match
    ``quote_config/sets/default.yaml``.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import timedelta
from decimal import Decimal

from quote_kernel.domain.statuses import DepositPolicy, DocumentType, status_value


@dataclass(frozen=True)
class TokenLifetimes:
    """Portal link lifetimes per document type, in days."""

    estimate_days: int = 14
    invoice_days: int = 30
    contract_days: int = 30
    payment_plan_days: int = 365
    change_order_days: int = 14

    def for_document(self, document_type: DocumentType | str) -> timedelta:
        days = {
            DocumentType.ESTIMATE.value: self.estimate_days,
            DocumentType.INVOICE.value: self.invoice_days,
            DocumentType.CONTRACT.value: self.contract_days,
            DocumentType.PAYMENT_PLAN.value: self.payment_plan_days,
        }[status_value(document_type)]
        return timedelta(days=days)

    @property
    def change_order_lifetime(self) -> timedelta:
        return timedelta(days=self.change_order_days)


@dataclass(frozen=True)
class PortalPolicy:
    rate_limit_requests: int = 10
    rate_limit_window_seconds: int = 60
    auto_generate_contract_on_approval: bool = True


@dataclass(frozen=True)
class BillingPolicy:
    default_deposit_policy: DepositPolicy = DepositPolicy.REQUIRED
    default_deposit_percentage: Decimal = Decimal("50")
    minimum_write_off_reason_length: int = 10
    invoice_due_days: int = 30


@dataclass(frozen=True)
class PricingPolicy:
    low_margin_warning_percentage: Decimal = Decimal("15")
    low_utilization_warning_percentage: Decimal = Decimal("60")
    default_half_day_factor: Decimal = Decimal("0.60")
    minimum_job_charge_factor: Decimal = Decimal("0.75")
    rule_engine_floor_percentage: Decimal = Decimal("15")
    rule_engine_cost_ratio: Decimal = Decimal("0.60")


@dataclass(frozen=True)
class QuotePolicy:
    tokens: TokenLifetimes = field(default_factory=TokenLifetimes)
    portal: PortalPolicy = field(default_factory=PortalPolicy)
    billing: BillingPolicy = field(default_factory=BillingPolicy)
    pricing: PricingPolicy = field(default_factory=PricingPolicy)


DEFAULT_POLICY = QuotePolicy()
