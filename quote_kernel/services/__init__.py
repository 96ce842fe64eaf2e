"""
quote_kernel.services -- Package init and public API.

Responsibility:
    Stateful services that compose the pure domain core with database
    sessions, the audit ledger and the injected clock.  This is the only
    layer that holds sessions or reads the clock.

Architecture position:
    Services -- outermost layer of the kernel.

    Dependency direction:
        quote_kernel.services -> quote_kernel.domain  (allowed)
        quote_kernel.services -> quote_kernel.models  (allowed)
        quote_kernel.domain   -> quote_kernel.services (FORBIDDEN)

Invariants enforced:
    - Services flush but never commit; the caller owns the transaction
      (see ``quote_kernel.db.engine.session_scope``).

Audit relevance:
    - This package is the canonical import surface for host applications.
"""

from quote_kernel.logging_config import get_logger

logger = get_logger("services")

from quote_kernel.services.audit_service import AuditorService, AuditTrace
from quote_kernel.services.billing_policy import BillingPolicyService
from quote_kernel.services.contract_service import ContractService, SettingsPartyDirectory
from quote_kernel.services.cost_profile_service import CostProfileService
from quote_kernel.services.estimate_service import EstimateService
from quote_kernel.services.invoice_service import InvoiceService
from quote_kernel.services.job_service import JobService
from quote_kernel.services.notifications import NoConflicts, NullNotifier
from quote_kernel.services.payment_ledger import PaymentLedgerService
from quote_kernel.services.payment_plan_service import PaymentPlanService
from quote_kernel.services.portal_service import PortalRequest, PortalService
from quote_kernel.services.rule_engine_service import RuleEngineService
from quote_kernel.services.sequence_service import SequenceService
from quote_kernel.services.snapshot_service import SnapshotService
from quote_kernel.services.token_service import TokenService

__all__ = [
    "AuditTrace",
    "AuditorService",
    "BillingPolicyService",
    "ContractService",
    "CostProfileService",
    "EstimateService",
    "InvoiceService",
    "JobService",
    "NoConflicts",
    "NullNotifier",
    "PaymentLedgerService",
    "PaymentPlanService",
    "PortalRequest",
    "PortalService",
    "RuleEngineService",
    "SequenceService",
    "SettingsPartyDirectory",
    "SnapshotService",
    "TokenService",
]
