"""ORM models for the quote-to-cash kernel."""

from quote_kernel.models.audit_log import AuditLogEntry
from quote_kernel.models.contract import CONTENT_FIELDS, Contract, SignedContractSnapshot
from quote_kernel.models.cost_profile import CostProfileSnapshot
from quote_kernel.models.estimate import Estimate, EstimateSnapshot
from quote_kernel.models.invoice import Invoice, Payment
from quote_kernel.models.job import (
    CompanySettings,
    CrewAssignment,
    EquipmentReservation,
    Job,
)
from quote_kernel.models.payment_plan import PaymentPlan, PaymentPlanInstallment
from quote_kernel.models.portal_token import PortalToken
from quote_kernel.models.pricing_rules import EstimateField, PricingProfile, PricingRule
from quote_kernel.models.sequence import SequenceCounter

__all__ = [
    "AuditLogEntry",
    "CONTENT_FIELDS",
    "CompanySettings",
    "Contract",
    "CostProfileSnapshot",
    "CrewAssignment",
    "EquipmentReservation",
    "Estimate",
    "EstimateField",
    "EstimateSnapshot",
    "Invoice",
    "Job",
    "Payment",
    "PaymentPlan",
    "PaymentPlanInstallment",
    "PortalToken",
    "PricingProfile",
    "PricingRule",
    "SequenceCounter",
    "SignedContractSnapshot",
]
