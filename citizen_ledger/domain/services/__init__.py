"""
Domain Services
"""
from citizen_ledger.domain.services.ledger_service import LedgerService
from citizen_ledger.domain.services.restriction_service import RestrictionService
from citizen_ledger.domain.services.debt_service import DebtManagementService
from citizen_ledger.domain.services.outbox_service import OutboxService
from citizen_ledger.domain.services.reconciliation_service import PaymentReconciliationService

__all__ = [
    "LedgerService",
    "RestrictionService",
    "DebtManagementService",
    "OutboxService",
    "PaymentReconciliationService",
]
