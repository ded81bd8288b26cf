"""
Deal Account snapshot.

A point-in-time view of a deal built only from Investment rows and
DistributionRecord / PlatformLedgerEntry history. Nothing here reads a
cached balance field, so the snapshot cannot drift from the ledger.
"""
import logging
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Dict, List, Optional, Tuple
from uuid import UUID

from app.config import settings
from app.core.enum_utils import is_status
from app.models.distribution import DistributionType, PlatformEntryType
from app.services.distribution_errors import InconsistentLedgerError, NotFoundError
from app.services.ledger_repository import LedgerRepository

logger = logging.getLogger(__name__)

ZERO = Decimal("0")


@dataclass(frozen=True)
class InvestorPosition:
    """One investor's stake and what they have received so far."""
    investor_id: UUID
    investment_amount: Decimal
    capital_paid: Decimal = ZERO
    profit_paid: Decimal = ZERO
    distribution_count: int = 0
    distribution_dates: Tuple[datetime, ...] = ()


@dataclass(frozen=True)
class DealAccount:
    """Immutable per-calculation snapshot of a deal's capital and payout history."""
    deal_id: UUID
    deal_status: str
    total_capital: Decimal
    positions: Dict[UUID, InvestorPosition]
    partial_capital_paid: Decimal = ZERO
    commission_taken: Decimal = ZERO
    reserve_held: Decimal = ZERO
    settled_request_ids: Tuple[UUID, ...] = field(default_factory=tuple)

    @property
    def investments(self) -> Dict[UUID, Decimal]:
        return {i: p.investment_amount for i, p in self.positions.items()}

    @property
    def profit_already_paid(self) -> Dict[UUID, Decimal]:
        return {i: p.profit_paid for i, p in self.positions.items()}

    @property
    def capital_already_paid(self) -> Decimal:
        return sum((p.capital_paid for p in self.positions.values()), ZERO)

    @property
    def remaining_capital(self) -> Decimal:
        """Principal not yet returned to investors."""
        return self.total_capital - self.capital_already_paid

    @property
    def remaining_partial_capacity(self) -> Decimal:
        """Upper bound for the next PARTIAL request's total amount."""
        return self.total_capital - self.partial_capital_paid

    def stake_ratio(self, investor_id: UUID) -> Decimal:
        """Investment amount / total capital, recomputed on demand."""
        if self.total_capital <= 0:
            return ZERO
        return self.positions[investor_id].investment_amount / self.total_capital

    def investors_by_stake(self) -> List[InvestorPosition]:
        """Largest stake first; ties broken by investor id so ordering is deterministic."""
        return sorted(
            self.positions.values(),
            key=lambda p: (-p.investment_amount, str(p.investor_id)),
        )


async def load_deal_account(
    repo: LedgerRepository,
    deal_id: UUID,
    tolerance: Optional[Decimal] = None,
) -> DealAccount:
    """
    Build a DealAccount from the ledger.

    Raises:
        NotFoundError: deal does not exist
        InconsistentLedgerError: investment sum differs from deal capital by
            more than `tolerance`, or the ledger holds payouts to investors
            who have no investment in the deal
    """
    tolerance = settings.LEDGER_TOLERANCE if tolerance is None else tolerance

    deal = await repo.get_deal(deal_id)
    if not deal:
        raise NotFoundError(f"Deal {deal_id} not found", {"deal_id": str(deal_id)})

    investments = await repo.list_investments(deal_id)
    invested: Dict[UUID, Decimal] = defaultdict(lambda: ZERO)
    for investment in investments:
        invested[investment.investor_id] += Decimal(investment.amount)

    total_capital = Decimal(deal.total_capital or 0)
    investment_sum = sum(invested.values(), ZERO)
    if abs(investment_sum - total_capital) > tolerance:
        logger.error(
            f"Deal {deal_id}: investments sum to {investment_sum} but total capital is {total_capital}"
        )
        raise InconsistentLedgerError(
            "Sum of investments does not match the deal's total capital",
            {
                "deal_id": str(deal_id),
                "investment_sum": str(investment_sum),
                "total_capital": str(total_capital),
            },
        )

    capital_paid: Dict[UUID, Decimal] = defaultdict(lambda: ZERO)
    profit_paid: Dict[UUID, Decimal] = defaultdict(lambda: ZERO)
    counts: Dict[UUID, int] = defaultdict(int)
    dates: Dict[UUID, List[datetime]] = defaultdict(list)
    partial_capital_paid = ZERO
    request_ids = []

    for record in await repo.list_records(deal_id):
        if record.investor_id not in invested:
            raise InconsistentLedgerError(
                "Distribution record references an investor with no investment in the deal",
                {"deal_id": str(deal_id), "investor_id": str(record.investor_id)},
            )
        capital_paid[record.investor_id] += Decimal(record.capital_amount)
        profit_paid[record.investor_id] += Decimal(record.profit_amount)
        counts[record.investor_id] += 1
        dates[record.investor_id].append(record.created_at)
        if is_status(record.distribution_type, DistributionType.PARTIAL):
            partial_capital_paid += Decimal(record.capital_amount)
        if record.request_id not in request_ids:
            request_ids.append(record.request_id)

    commission_taken = ZERO
    reserve_held = ZERO
    for entry in await repo.list_platform_entries(deal_id):
        amount = Decimal(entry.amount)
        if is_status(entry.entry_type, PlatformEntryType.COMMISSION):
            commission_taken += amount
        elif is_status(entry.entry_type, PlatformEntryType.RESERVE):
            reserve_held += amount
        elif is_status(entry.entry_type, PlatformEntryType.RESERVE_RELEASE):
            reserve_held -= amount

    positions = {
        investor_id: InvestorPosition(
            investor_id=investor_id,
            investment_amount=amount,
            capital_paid=capital_paid[investor_id],
            profit_paid=profit_paid[investor_id],
            distribution_count=counts[investor_id],
            distribution_dates=tuple(dates[investor_id]),
        )
        for investor_id, amount in invested.items()
    }

    return DealAccount(
        deal_id=deal.id,
        deal_status=deal.status,
        total_capital=total_capital,
        positions=positions,
        partial_capital_paid=partial_capital_paid,
        commission_taken=commission_taken,
        reserve_held=reserve_held,
        settled_request_ids=tuple(request_ids),
    )
