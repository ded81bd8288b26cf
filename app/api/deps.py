from typing import Annotated
import uuid
import logging

from fastapi import Depends, Header, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.database import get_db
from app.services.distribution_workflow import ApprovalWorkflow
from app.services.ledger_repository import LedgerRepository, SqlAlchemyLedgerRepository
from app.services.notification_service import DistributionNotifier
from app.services.settlement_executor import SettlementExecutor


logger = logging.getLogger(__name__)


async def get_actor_id(
    x_user_id: Annotated[str, Header(description="Authenticated partner/admin id, set by the gateway")],
) -> uuid.UUID:
    """
    Dependency to get the acting user's id.

    Authentication happens upstream; the gateway forwards the verified
    user id in the X-User-Id header.
    """
    try:
        return uuid.UUID(x_user_id)
    except ValueError:
        logger.warning(f"Invalid X-User-Id header: {x_user_id}")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Could not validate caller identity",
        )


def get_ledger_repository(db: Annotated[AsyncSession, Depends(get_db)]) -> LedgerRepository:
    return SqlAlchemyLedgerRepository(db)


def get_notifier() -> DistributionNotifier:
    return DistributionNotifier()


def get_workflow(
    repo: Annotated[LedgerRepository, Depends(get_ledger_repository)],
    notifier: Annotated[DistributionNotifier, Depends(get_notifier)],
) -> ApprovalWorkflow:
    return ApprovalWorkflow(repo, notifier)


def get_settlement_executor(
    repo: Annotated[LedgerRepository, Depends(get_ledger_repository)],
    notifier: Annotated[DistributionNotifier, Depends(get_notifier)],
) -> SettlementExecutor:
    return SettlementExecutor(repo, notifier)


# Type aliases for cleaner dependency injection
ActorId = Annotated[uuid.UUID, Depends(get_actor_id)]
Repo = Annotated[LedgerRepository, Depends(get_ledger_repository)]
Workflow = Annotated[ApprovalWorkflow, Depends(get_workflow)]
Executor = Annotated[SettlementExecutor, Depends(get_settlement_executor)]
