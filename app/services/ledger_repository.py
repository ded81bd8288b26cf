"""
Ledger Repository

Explicit storage interface for the distribution engine. Services receive
a repository instead of reaching for a module-level database handle, so
the SQLAlchemy store can be swapped for an in-memory one in tests.

All mutating engine operations run inside `transaction()`: either every
write inside the block commits, or none of them do.
"""
import logging
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from decimal import Decimal
from typing import AsyncIterator, List, Optional
from uuid import UUID

from sqlalchemy import select, func, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.deal import Deal, Investment, InvestmentStatus
from app.models.distribution import (
    DistributionRequest,
    DistributionRecord,
    DistributionRequestHistory,
    DistributionRequestSequence,
    PlatformLedgerEntry,
    OPEN_REQUEST_INDEX,
    OPEN_REQUEST_STATUSES,
)
from app.models.wallet import InvestorWallet
from app.services.distribution_errors import ConcurrentRequestError, SettlementFailure

logger = logging.getLogger(__name__)


def _is_open_request_conflict(error: IntegrityError) -> bool:
    """
    True only for a violation of the open-request index.

    PostgreSQL names the index; SQLite names the indexed column. Other
    failures on deal_id, such as its foreign key, do not match.
    """
    message = str(error.orig)
    return (
        OPEN_REQUEST_INDEX in message
        or "UNIQUE constraint failed: distribution_requests.deal_id" in message
    )


class LedgerRepository(ABC):
    """Storage operations used by DealAccount, ApprovalWorkflow and SettlementExecutor."""

    @abstractmethod
    def transaction(self):
        """Async context manager: commit on success, roll back on any exception."""

    # ==================== Deals & Investments ====================

    @abstractmethod
    async def get_deal(self, deal_id: UUID, for_update: bool = False) -> Optional[Deal]:
        ...

    @abstractmethod
    async def list_investments(self, deal_id: UUID) -> List[Investment]:
        """Active investments of a deal."""

    @abstractmethod
    async def set_deal_status(self, deal_id: UUID, status: str) -> None:
        ...

    @abstractmethod
    async def add_deal(self, deal: Deal) -> Deal:
        """Funding-side write, used by seed scripts and tests."""

    @abstractmethod
    async def add_investment(self, investment: Investment) -> Investment:
        """Funding-side write, used by seed scripts and tests."""

    # ==================== Requests ====================

    @abstractmethod
    async def get_request(self, request_id: UUID, for_update: bool = False) -> Optional[DistributionRequest]:
        ...

    @abstractmethod
    async def find_open_request(self, deal_id: UUID) -> Optional[DistributionRequest]:
        """The PENDING or APPROVED request of a deal, if any."""

    @abstractmethod
    async def list_requests(
        self,
        deal_id: Optional[UUID] = None,
        status: Optional[str] = None,
    ) -> List[DistributionRequest]:
        ...

    @abstractmethod
    async def next_request_sequence(self, prefix: str) -> int:
        """Take the next number of the `prefix` sequence; numbers are never handed out twice."""

    @abstractmethod
    async def add_request(self, request: DistributionRequest) -> DistributionRequest:
        """
        Insert a new request.

        Raises:
            ConcurrentRequestError: another open request exists for the deal
        """

    @abstractmethod
    async def save_request(self, request: DistributionRequest) -> DistributionRequest:
        """Persist status and review/settlement fields of an existing request."""

    @abstractmethod
    async def add_history(self, entry: DistributionRequestHistory) -> None:
        ...

    @abstractmethod
    async def list_history(self, request_id: UUID) -> List[DistributionRequestHistory]:
        ...

    # ==================== Ledger ====================

    @abstractmethod
    async def list_records(self, deal_id: UUID) -> List[DistributionRecord]:
        ...

    @abstractmethod
    async def append_distribution_record(self, record: DistributionRecord) -> None:
        ...

    @abstractmethod
    async def list_platform_entries(self, deal_id: UUID) -> List[PlatformLedgerEntry]:
        ...

    @abstractmethod
    async def append_platform_entry(self, entry: PlatformLedgerEntry) -> None:
        ...

    @abstractmethod
    async def increment_wallet_balance(self, investor_id: UUID, amount: Decimal) -> None:
        ...

    @abstractmethod
    async def increment_lifetime_returns(self, investor_id: UUID, amount: Decimal) -> None:
        ...

    @abstractmethod
    async def get_wallet(self, investor_id: UUID) -> Optional[InvestorWallet]:
        ...


class SqlAlchemyLedgerRepository(LedgerRepository):
    """LedgerRepository over a SQLAlchemy AsyncSession."""

    def __init__(self, db: AsyncSession):
        self.db = db

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator["SqlAlchemyLedgerRepository"]:
        try:
            yield self
            await self.db.commit()
        except SQLAlchemyError as e:
            await self.db.rollback()
            logger.warning(f"Ledger transaction rolled back: {type(e).__name__}: {e}")
            raise SettlementFailure(
                "Ledger store write failed; nothing was applied",
                {"error": type(e).__name__},
            ) from e
        except BaseException:
            # Includes task cancellation: nothing may be left half-applied
            await self.db.rollback()
            raise

    # ==================== Deals & Investments ====================

    async def get_deal(self, deal_id: UUID, for_update: bool = False) -> Optional[Deal]:
        stmt = select(Deal).where(Deal.id == deal_id)
        if for_update:
            stmt = stmt.with_for_update()
        result = await self.db.execute(stmt)
        return result.scalar_one_or_none()

    async def list_investments(self, deal_id: UUID) -> List[Investment]:
        result = await self.db.execute(
            select(Investment)
            .where(
                Investment.deal_id == deal_id,
                Investment.status == InvestmentStatus.ACTIVE.value,
            )
            .order_by(Investment.created_at, Investment.id)
        )
        return list(result.scalars().all())

    async def set_deal_status(self, deal_id: UUID, status: str) -> None:
        await self.db.execute(
            update(Deal)
            .where(Deal.id == deal_id)
            .values(status=status, updated_at=datetime.now(timezone.utc))
        )

    async def add_deal(self, deal: Deal) -> Deal:
        self.db.add(deal)
        await self.db.flush()
        return deal

    async def add_investment(self, investment: Investment) -> Investment:
        self.db.add(investment)
        await self.db.flush()
        return investment

    # ==================== Requests ====================

    async def get_request(self, request_id: UUID, for_update: bool = False) -> Optional[DistributionRequest]:
        stmt = select(DistributionRequest).where(DistributionRequest.id == request_id)
        if for_update:
            stmt = stmt.with_for_update()
        result = await self.db.execute(stmt)
        return result.scalar_one_or_none()

    async def find_open_request(self, deal_id: UUID) -> Optional[DistributionRequest]:
        result = await self.db.execute(
            select(DistributionRequest).where(
                DistributionRequest.deal_id == deal_id,
                DistributionRequest.status.in_(OPEN_REQUEST_STATUSES),
            )
        )
        return result.scalar_one_or_none()

    async def list_requests(
        self,
        deal_id: Optional[UUID] = None,
        status: Optional[str] = None,
    ) -> List[DistributionRequest]:
        stmt = select(DistributionRequest)
        if deal_id is not None:
            stmt = stmt.where(DistributionRequest.deal_id == deal_id)
        if status is not None:
            stmt = stmt.where(DistributionRequest.status == status)
        stmt = stmt.order_by(DistributionRequest.requested_at, DistributionRequest.request_number)
        result = await self.db.execute(stmt)
        return list(result.scalars().all())

    async def next_request_sequence(self, prefix: str) -> int:
        sequence = await self._get_or_create_sequence(prefix)
        sequence.current_number += 1
        await self.db.flush()
        return sequence.current_number

    async def _get_or_create_sequence(self, prefix: str) -> DistributionRequestSequence:
        """Sequence row for `prefix`, locked until the transaction ends."""
        stmt = (
            select(DistributionRequestSequence)
            .where(DistributionRequestSequence.prefix == prefix)
            .with_for_update()
        )
        result = await self.db.execute(stmt)
        sequence = result.scalar_one_or_none()
        if sequence:
            return sequence

        # Start after any numbers issued before the counter existed
        last = await self.db.execute(
            select(func.max(DistributionRequest.request_number))
            .where(DistributionRequest.request_number.like(f"{prefix}-%"))
        )
        last_number = last.scalar()
        start = int(last_number.rsplit("-", 1)[-1]) if last_number else 0

        # Two first requests of the day may both get here; only one row is inserted
        insert = sqlite_insert if self.db.get_bind().dialect.name == "sqlite" else pg_insert
        await self.db.execute(
            insert(DistributionRequestSequence)
            .values(prefix=prefix, current_number=start)
            .on_conflict_do_nothing(index_elements=["prefix"])
        )

        result = await self.db.execute(stmt)
        return result.scalar_one()

    async def add_request(self, request: DistributionRequest) -> DistributionRequest:
        self.db.add(request)
        try:
            await self.db.flush()
        except IntegrityError as e:
            if _is_open_request_conflict(e):
                raise ConcurrentRequestError(
                    "Another distribution request is already in progress for this deal",
                    {"deal_id": str(request.deal_id)},
                ) from e
            raise
        return request

    async def save_request(self, request: DistributionRequest) -> DistributionRequest:
        self.db.add(request)
        await self.db.flush()
        return request

    async def add_history(self, entry: DistributionRequestHistory) -> None:
        self.db.add(entry)
        await self.db.flush()

    async def list_history(self, request_id: UUID) -> List[DistributionRequestHistory]:
        result = await self.db.execute(
            select(DistributionRequestHistory)
            .where(DistributionRequestHistory.request_id == request_id)
            .order_by(DistributionRequestHistory.created_at)
        )
        return list(result.scalars().all())

    # ==================== Ledger ====================

    async def list_records(self, deal_id: UUID) -> List[DistributionRecord]:
        result = await self.db.execute(
            select(DistributionRecord)
            .where(DistributionRecord.deal_id == deal_id)
            .order_by(DistributionRecord.created_at)
        )
        return list(result.scalars().all())

    async def append_distribution_record(self, record: DistributionRecord) -> None:
        self.db.add(record)
        await self.db.flush()

    async def list_platform_entries(self, deal_id: UUID) -> List[PlatformLedgerEntry]:
        result = await self.db.execute(
            select(PlatformLedgerEntry)
            .where(PlatformLedgerEntry.deal_id == deal_id)
            .order_by(PlatformLedgerEntry.created_at)
        )
        return list(result.scalars().all())

    async def append_platform_entry(self, entry: PlatformLedgerEntry) -> None:
        self.db.add(entry)
        await self.db.flush()

    async def _get_or_create_wallet(self, investor_id: UUID) -> InvestorWallet:
        result = await self.db.execute(
            select(InvestorWallet)
            .where(InvestorWallet.investor_id == investor_id)
            .with_for_update()
        )
        wallet = result.scalar_one_or_none()
        if wallet is None:
            wallet = InvestorWallet(
                investor_id=investor_id,
                wallet_balance=Decimal("0"),
                total_returns=Decimal("0"),
            )
            self.db.add(wallet)
            await self.db.flush()
        return wallet

    async def increment_wallet_balance(self, investor_id: UUID, amount: Decimal) -> None:
        wallet = await self._get_or_create_wallet(investor_id)
        wallet.wallet_balance = (wallet.wallet_balance or Decimal("0")) + amount
        await self.db.flush()

    async def increment_lifetime_returns(self, investor_id: UUID, amount: Decimal) -> None:
        wallet = await self._get_or_create_wallet(investor_id)
        wallet.total_returns = (wallet.total_returns or Decimal("0")) + amount
        await self.db.flush()

    async def get_wallet(self, investor_id: UUID) -> Optional[InvestorWallet]:
        result = await self.db.execute(
            select(InvestorWallet)
            .where(InvestorWallet.investor_id == investor_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()
