# Services module
from app.services.ledger_repository import LedgerRepository, SqlAlchemyLedgerRepository
from app.services.distribution_workflow import ApprovalWorkflow
from app.services.settlement_executor import SettlementExecutor, SettlementResult
from app.services.notification_service import DistributionNotifier

__all__ = [
    "LedgerRepository",
    "SqlAlchemyLedgerRepository",
    # Distribution Engine
    "ApprovalWorkflow",
    "SettlementExecutor",
    "SettlementResult",
    "DistributionNotifier",
]
