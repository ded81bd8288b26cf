"""
Read-only ledger audit for a deal.

Re-derives every settled distribution from DistributionRecord and
PlatformLedgerEntry rows and reports anything that does not balance.
The audit never writes: a finding is for a person to reconcile.
"""
import logging
from collections import defaultdict
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Dict, List, Optional
from uuid import UUID

from app.core.enum_utils import is_status
from app.models.deal import DealStatus
from app.models.distribution import (
    DistributionRequestStatus,
    DistributionType,
    PlatformEntryType,
)
from app.services.deal_account import DealAccount, load_deal_account, ZERO
from app.services.distribution_errors import InconsistentLedgerError, NotFoundError
from app.services.distribution_state_machine import is_open
from app.services.ledger_repository import LedgerRepository

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AuditFinding:
    code: str
    message: str
    details: Dict[str, Any] = field(default_factory=dict)


@dataclass
class LedgerAuditReport:
    deal_id: UUID
    deal_status: Optional[str] = None
    total_capital: Decimal = ZERO
    capital_returned: Decimal = ZERO
    profit_paid: Decimal = ZERO
    commission_taken: Decimal = ZERO
    reserve_held: Decimal = ZERO
    settled_requests: int = 0
    findings: List[AuditFinding] = field(default_factory=list)

    @property
    def is_consistent(self) -> bool:
        return not self.findings

    def add(self, code: str, message: str, **details) -> None:
        self.findings.append(AuditFinding(code=code, message=message, details=details))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "deal_id": str(self.deal_id),
            "deal_status": self.deal_status,
            "total_capital": str(self.total_capital),
            "capital_returned": str(self.capital_returned),
            "profit_paid": str(self.profit_paid),
            "commission_taken": str(self.commission_taken),
            "reserve_held": str(self.reserve_held),
            "settled_requests": self.settled_requests,
            "is_consistent": self.is_consistent,
            "findings": [
                {"code": f.code, "message": f.message, "details": f.details}
                for f in self.findings
            ],
        }


async def audit_deal_ledger(repo: LedgerRepository, deal_id: UUID) -> LedgerAuditReport:
    """
    Audit one deal's distribution ledger.

    Raises:
        NotFoundError: deal does not exist
    """
    report = LedgerAuditReport(deal_id=deal_id)

    async with repo.transaction():
        deal = await repo.get_deal(deal_id)
        if not deal:
            raise NotFoundError(f"Deal {deal_id} not found", {"deal_id": str(deal_id)})
        report.deal_status = deal.status
        report.total_capital = Decimal(deal.total_capital or 0)

        account: Optional[DealAccount] = None
        try:
            account = await load_deal_account(repo, deal_id)
        except InconsistentLedgerError as e:
            report.add("INCONSISTENT_LEDGER", e.message, **e.details)

        requests = await repo.list_requests(deal_id=deal_id)
        records = await repo.list_records(deal_id)
        entries = await repo.list_platform_entries(deal_id)

        wallets = {}
        for investor_id in {r.investor_id for r in records}:
            wallets[investor_id] = await repo.get_wallet(investor_id)

    requests_by_id = {r.id: r for r in requests}
    records_by_request = defaultdict(list)
    for record in records:
        records_by_request[record.request_id].append(record)
    entries_by_request = defaultdict(dict)
    for entry in entries:
        if entry.entry_type in entries_by_request[entry.request_id]:
            report.add(
                "DUPLICATE_PLATFORM_ENTRY",
                "More than one platform entry of the same type for a request",
                request_id=str(entry.request_id),
                entry_type=entry.entry_type,
            )
        entries_by_request[entry.request_id][entry.entry_type] = Decimal(entry.amount)

    _check_requests(report, requests, requests_by_id, records_by_request, entries_by_request)
    _check_deal_status(report, deal.status, requests)
    _check_lifetime(report, requests, records, entries)

    if account is not None:
        report.capital_returned = account.capital_already_paid
        report.profit_paid = sum(account.profit_already_paid.values(), ZERO)
        report.commission_taken = account.commission_taken
        report.reserve_held = account.reserve_held

        if account.capital_already_paid > account.total_capital:
            report.add(
                "CAPITAL_OVERPAID",
                "More capital was returned than was invested",
                capital_returned=str(account.capital_already_paid),
                total_capital=str(account.total_capital),
            )
        if account.reserve_held < ZERO:
            report.add(
                "NEGATIVE_RESERVE",
                "Reserve released exceeds reserve held",
                reserve_held=str(account.reserve_held),
            )
        if is_status(deal.status, DealStatus.COMPLETED) and account.reserve_held != ZERO:
            report.add(
                "RESERVE_NOT_RELEASED",
                "Completed deal still holds reserve",
                reserve_held=str(account.reserve_held),
            )

        # Wallets span deals, so only a lower bound can be checked here
        for investor_id, wallet in wallets.items():
            position = account.positions.get(investor_id)
            if position is None:
                continue
            if wallet is None:
                report.add(
                    "WALLET_MISSING",
                    "Investor received distributions but has no wallet",
                    investor_id=str(investor_id),
                )
            elif Decimal(wallet.total_returns or 0) < position.profit_paid:
                report.add(
                    "WALLET_RETURNS_BELOW_LEDGER",
                    "Wallet lifetime returns are lower than profit recorded for this deal",
                    investor_id=str(investor_id),
                    total_returns=str(wallet.total_returns),
                    profit_paid=str(position.profit_paid),
                )

    if report.is_consistent:
        logger.info(f"Ledger audit for deal {deal_id}: consistent ({report.settled_requests} settlements)")
    else:
        logger.warning(f"Ledger audit for deal {deal_id}: {len(report.findings)} finding(s)")
    return report


def _check_requests(report, requests, requests_by_id, records_by_request, entries_by_request) -> None:
    open_requests = [r for r in requests if is_open(r.status)]
    if len(open_requests) > 1:
        report.add(
            "MULTIPLE_OPEN_REQUESTS",
            "More than one PENDING/APPROVED request for the deal",
            request_numbers=[r.request_number for r in open_requests],
        )

    for request_id in set(records_by_request) | set(entries_by_request):
        request = requests_by_id.get(request_id)
        if request is None or not is_status(request.status, DistributionRequestStatus.COMPLETED):
            report.add(
                "LEDGER_WITHOUT_SETTLEMENT",
                "Ledger rows belong to a request that is not COMPLETED",
                request_id=str(request_id),
                status=request.status if request else None,
            )

    for request in requests:
        if not is_status(request.status, DistributionRequestStatus.COMPLETED):
            continue
        report.settled_requests += 1
        rows = records_by_request.get(request.id, [])
        platform = entries_by_request.get(request.id, {})

        investor_ids = [r.investor_id for r in rows]
        if len(investor_ids) != len(set(investor_ids)):
            report.add(
                "DUPLICATE_RECORDS",
                "An investor was paid more than once by the same request",
                request_number=request.request_number,
            )

        investor_total = sum((Decimal(r.capital_amount) + Decimal(r.profit_amount) for r in rows), ZERO)
        commission = platform.get(PlatformEntryType.COMMISSION.value, ZERO)
        reserve = platform.get(PlatformEntryType.RESERVE.value, ZERO)
        released = platform.get(PlatformEntryType.RESERVE_RELEASE.value, ZERO)

        plan = (request.settlement_result or {}).get("plan") or {}
        prior_profit_credit = Decimal(plan.get("prior_profit_credit", "0"))
        accounted = investor_total + commission + reserve + prior_profit_credit - released
        if accounted != Decimal(request.total_amount):
            report.add(
                "CONSERVATION_MISMATCH",
                "Ledger rows do not account for the request's total amount",
                request_number=request.request_number,
                total_amount=str(request.total_amount),
                accounted=str(accounted),
            )

        if is_status(request.distribution_type, DistributionType.FINAL) and reserve != ZERO:
            report.add(
                "RESERVE_ON_FINAL",
                "A FINAL distribution recorded a reserve hold-back",
                request_number=request.request_number,
            )


def _check_deal_status(report, deal_status, requests) -> None:
    final_settled = [
        r for r in requests
        if is_status(r.distribution_type, DistributionType.FINAL)
        and is_status(r.status, DistributionRequestStatus.COMPLETED)
    ]
    if len(final_settled) > 1:
        report.add(
            "MULTIPLE_FINAL_SETTLEMENTS",
            "More than one FINAL distribution was settled",
            request_numbers=[r.request_number for r in final_settled],
        )
    if final_settled and not is_status(deal_status, DealStatus.COMPLETED):
        report.add(
            "DEAL_NOT_COMPLETED",
            "FINAL distribution settled but deal is not COMPLETED",
            deal_status=deal_status,
        )
    if is_status(deal_status, DealStatus.COMPLETED) and not final_settled:
        report.add(
            "COMPLETED_WITHOUT_FINAL",
            "Deal is COMPLETED without a settled FINAL distribution",
        )


def _check_lifetime(report, requests, records, entries) -> None:
    """
    After a profitable FINAL, every payout the deal ever made must add up
    to its capital plus the lifetime profit the FINAL declared.

    Uses only ledger rows and the FINAL's own total, never a stored credit.
    """
    final = next(
        (
            r for r in requests
            if is_status(r.distribution_type, DistributionType.FINAL)
            and is_status(r.status, DistributionRequestStatus.COMPLETED)
        ),
        None,
    )
    plan = ((final.settlement_result or {}).get("plan") or {}) if final else {}
    if not plan or plan.get("is_loss"):
        return

    expected = report.total_capital + Decimal(plan["total_profit"])
    paid_out = sum((Decimal(r.capital_amount) + Decimal(r.profit_amount) for r in records), ZERO)
    for entry in entries:
        amount = Decimal(entry.amount)
        if is_status(entry.entry_type, PlatformEntryType.RESERVE_RELEASE):
            paid_out -= amount
        else:
            paid_out += amount

    if paid_out != expected:
        report.add(
            "LIFETIME_CONSERVATION_MISMATCH",
            "Lifetime payouts do not equal capital plus lifetime profit",
            paid_out=str(paid_out),
            expected=str(expected),
            request_number=final.request_number,
        )
