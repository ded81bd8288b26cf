"""
Distribution Approval Workflow Service.

Takes a DistributionRequest from partner submission to admin decision:

    create  -> PENDING   (validated against the current DealAccount)
    approve -> APPROVED  (plan recomputed and snapshotted for review)
    reject  -> REJECTED  (PENDING, or APPROVED before settlement starts)

Settlement (APPROVED -> COMPLETED) lives in SettlementExecutor.
At most one PENDING/APPROVED request may exist per deal.
"""
import logging
import uuid
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Dict, List, Optional, Tuple
from uuid import UUID

from app.core.enum_utils import get_enum_value, status_in, to_enum
from app.models.distribution import (
    DistributionRequest,
    DistributionRequestHistory,
    DistributionRequestStatus,
    DistributionType,
)
from app.services.deal_account import load_deal_account, ZERO
from app.services.distribution_calculator import (
    DistributionProposal,
    ProfitabilityAnalysis,
    SettlementPlan,
    analyze_profitability,
    compute_plan,
)
from app.services.distribution_errors import (
    ConcurrentRequestError,
    InvalidTransitionError,
    NotFoundError,
    ValidationError,
)
from app.services.distribution_state_machine import (
    can_receive_distributions,
    transition_request,
)
from app.services.ledger_repository import LedgerRepository
from app.services.notification_service import DistributionNotifier

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DistributionHistoryItem:
    """One settled distribution of a deal."""
    request_id: UUID
    request_number: str
    distribution_type: str
    date: Optional[datetime]
    amount: Decimal
    capital_amount: Decimal
    profit_amount: Decimal
    investor_count: int


@dataclass(frozen=True)
class InvestorHistorySummary:
    """What one investor has received from a deal so far."""
    investor_id: UUID
    total_investment: Decimal
    distribution_count: int
    total_capital: Decimal
    total_profit: Decimal
    dates: Tuple[str, ...] = field(default_factory=tuple)


class ApprovalWorkflow:
    """Service for managing the distribution request lifecycle."""

    def __init__(self, repo: LedgerRepository, notifier: Optional[DistributionNotifier] = None):
        self.repo = repo
        self.notifier = notifier or DistributionNotifier()

    async def generate_request_number(self) -> str:
        """
        Generate unique request number: PDR-YYYYMMDD-XXXX.

        Must run inside the creating transaction: the day's sequence row
        stays locked until the request is committed.
        """
        prefix = f"PDR-{date.today().strftime('%Y%m%d')}"
        seq = await self.repo.next_request_sequence(prefix)
        return f"{prefix}-{seq:04d}"

    # ==================== Partner actions ====================

    async def create_request(
        self,
        deal_id: UUID,
        distribution_type: DistributionType,
        total_amount: Decimal,
        requested_by: UUID,
        estimated_gain_percent: Decimal = ZERO,
        commission_percent: Decimal = ZERO,
        reserve_percent: Decimal = ZERO,
        description: Optional[str] = None,
    ) -> DistributionRequest:
        """
        Submit a new distribution request.

        Raises:
            NotFoundError: unknown deal
            InvalidTransitionError: deal is not accepting distributions
            ConcurrentRequestError: deal already has a PENDING/APPROVED request
            ValidationError: proposal is malformed or over-withdraws capital
            InconsistentLedgerError: deal ledger does not reconcile
        """
        proposal_type = to_enum(get_enum_value(distribution_type), DistributionType)
        if proposal_type is None:
            raise ValidationError(
                f"Unknown distribution type '{get_enum_value(distribution_type)}'",
                {"field": "distribution_type"},
            )
        proposal = DistributionProposal(
            distribution_type=proposal_type,
            total_amount=Decimal(total_amount),
            estimated_gain_percent=Decimal(estimated_gain_percent),
            commission_percent=Decimal(commission_percent),
            reserve_percent=Decimal(reserve_percent),
        )

        async with self.repo.transaction():
            # Row lock serializes concurrent submissions for the same deal
            deal = await self.repo.get_deal(deal_id, for_update=True)
            if not deal:
                raise NotFoundError(f"Deal {deal_id} not found", {"deal_id": str(deal_id)})
            if not can_receive_distributions(deal.status):
                raise InvalidTransitionError(
                    f"Deal in '{deal.status}' status cannot receive distributions",
                    {"deal_id": str(deal_id), "deal_status": deal.status},
                )

            existing = await self.repo.find_open_request(deal_id)
            if existing:
                logger.warning(
                    f"Rejected new request for deal {deal_id}: {existing.request_number} is {existing.status}"
                )
                raise ConcurrentRequestError(
                    f"Distribution request {existing.request_number} is already {existing.status} for this deal",
                    {"deal_id": str(deal_id), "existing_request_id": str(existing.id)},
                )

            account = await load_deal_account(self.repo, deal_id)
            compute_plan(account, proposal)

            now = datetime.now(timezone.utc)
            request = DistributionRequest(
                id=uuid.uuid4(),
                request_number=await self.generate_request_number(),
                deal_id=deal_id,
                distribution_type=proposal.distribution_type.value,
                total_amount=proposal.total_amount,
                estimated_gain_percent=proposal.estimated_gain_percent,
                commission_percent=proposal.commission_percent,
                reserve_percent=proposal.reserve_percent,
                description=description,
                status=DistributionRequestStatus.PENDING.value,
                requested_by=requested_by,
                requested_at=now,
            )
            await self.repo.add_request(request)
            await self.repo.add_history(DistributionRequestHistory(
                id=uuid.uuid4(),
                request_id=request.id,
                action="SUBMITTED",
                from_status=None,
                to_status=DistributionRequestStatus.PENDING.value,
                performed_by=requested_by,
                comments="Submitted for approval",
                created_at=now,
            ))

        logger.info(
            f"Distribution request {request.request_number} submitted: "
            f"{request.distribution_type} {request.total_amount} for deal {deal_id}"
        )
        return request

    # ==================== Admin actions ====================

    async def approve(
        self,
        request_id: UUID,
        approved_by: UUID,
        comments: Optional[str] = None,
    ) -> Tuple[DistributionRequest, SettlementPlan]:
        """
        Approve a PENDING request.

        The plan is recomputed against the current ledger and stored on the
        request for display; settlement recomputes it again.
        """
        async with self.repo.transaction():
            request = await self._get_request(request_id, for_update=True)
            account = await load_deal_account(self.repo, request.deal_id)
            plan = compute_plan(account, DistributionProposal.from_request(request))

            from_status = request.status
            action = transition_request(request, DistributionRequestStatus.APPROVED, user_id=approved_by)
            request.approved_plan = plan.to_dict()
            await self.repo.save_request(request)
            await self._add_history(request, action, from_status, approved_by, comments)

        logger.info(f"Distribution request {request.request_number} approved by {approved_by}")
        return request, plan

    async def reject(
        self,
        request_id: UUID,
        rejected_by: UUID,
        reason: str,
    ) -> DistributionRequest:
        """Reject a PENDING request, or an APPROVED one that has not been settled."""
        async with self.repo.transaction():
            request = await self._get_request(request_id, for_update=True)
            from_status = request.status
            action = transition_request(
                request, DistributionRequestStatus.REJECTED, user_id=rejected_by, reason=reason
            )
            await self.repo.save_request(request)
            await self._add_history(request, action, from_status, rejected_by, reason)

        logger.info(f"Distribution request {request.request_number} rejected by {rejected_by}")
        await self.notifier.notify_rejected(request)
        return request

    # ==================== Queries ====================

    async def get_request(self, request_id: UUID) -> DistributionRequest:
        async with self.repo.transaction():
            return await self._get_request(request_id)

    async def list_pending(self) -> List[DistributionRequest]:
        """Requests waiting for an admin decision."""
        async with self.repo.transaction():
            return await self.repo.list_requests(status=DistributionRequestStatus.PENDING.value)

    async def list_requests(
        self,
        deal_id: Optional[UUID] = None,
        status: Optional[DistributionRequestStatus] = None,
    ) -> List[DistributionRequest]:
        async with self.repo.transaction():
            return await self.repo.list_requests(deal_id=deal_id, status=get_enum_value(status))

    async def get_request_history(self, request_id: UUID) -> List[DistributionRequestHistory]:
        async with self.repo.transaction():
            await self._get_request(request_id)
            return await self.repo.list_history(request_id)

    async def preview_request(
        self, request_id: UUID
    ) -> Tuple[DistributionRequest, SettlementPlan, ProfitabilityAnalysis]:
        """Plan for an existing request against the current ledger. Writes nothing."""
        async with self.repo.transaction():
            request = await self._get_request(request_id)
            if status_in(request.status, DistributionRequestStatus.COMPLETED, DistributionRequestStatus.REJECTED):
                raise InvalidTransitionError(
                    f"Distribution request in '{request.status}' status has no open plan",
                    {"request_id": str(request_id), "status": request.status},
                )
            account = await load_deal_account(self.repo, request.deal_id)
            proposal = DistributionProposal.from_request(request)
            plan = compute_plan(account, proposal)
        return request, plan, analyze_profitability(account, proposal, plan)

    async def preview_proposal(
        self, deal_id: UUID, proposal: DistributionProposal
    ) -> Tuple[SettlementPlan, ProfitabilityAnalysis]:
        """Plan for an unsaved proposal. Writes nothing."""
        async with self.repo.transaction():
            account = await load_deal_account(self.repo, deal_id)
            plan = compute_plan(account, proposal)
        return plan, analyze_profitability(account, proposal, plan)

    async def get_deal_history(
        self, deal_id: UUID
    ) -> Tuple[List[DistributionHistoryItem], List[InvestorHistorySummary]]:
        """Settled distributions of a deal and per-investor totals."""
        async with self.repo.transaction():
            account = await load_deal_account(self.repo, deal_id)
            records = await self.repo.list_records(deal_id)
            requests = {
                r.id: r for r in await self.repo.list_requests(
                    deal_id=deal_id, status=DistributionRequestStatus.COMPLETED.value
                )
            }

        grouped: Dict[UUID, list] = {}
        for record in records:
            grouped.setdefault(record.request_id, []).append(record)

        items = []
        for request_id, rows in grouped.items():
            request = requests.get(request_id)
            capital = sum((Decimal(r.capital_amount) for r in rows), ZERO)
            profit = sum((Decimal(r.profit_amount) for r in rows), ZERO)
            items.append(DistributionHistoryItem(
                request_id=request_id,
                request_number=request.request_number if request else "",
                distribution_type=rows[0].distribution_type,
                date=request.completed_at if request else rows[0].created_at,
                amount=Decimal(request.total_amount) if request else capital + profit,
                capital_amount=capital,
                profit_amount=profit,
                investor_count=len(rows),
            ))

        summaries = [
            InvestorHistorySummary(
                investor_id=p.investor_id,
                total_investment=p.investment_amount,
                distribution_count=p.distribution_count,
                total_capital=p.capital_paid,
                total_profit=p.profit_paid,
                dates=tuple(sorted({d.date().isoformat() for d in p.distribution_dates if d})),
            )
            for p in account.investors_by_stake()
        ]
        return items, summaries

    # ==================== Helpers ====================

    async def _get_request(self, request_id: UUID, for_update: bool = False) -> DistributionRequest:
        request = await self.repo.get_request(request_id, for_update=for_update)
        if not request:
            raise NotFoundError(
                f"Distribution request {request_id} not found",
                {"request_id": str(request_id)},
            )
        return request

    async def _add_history(
        self,
        request: DistributionRequest,
        action: str,
        from_status: str,
        performed_by: Optional[UUID],
        comments: Optional[str],
    ) -> None:
        await self.repo.add_history(DistributionRequestHistory(
            id=uuid.uuid4(),
            request_id=request.id,
            action=action,
            from_status=from_status,
            to_status=request.status,
            performed_by=performed_by,
            comments=comments,
            created_at=datetime.now(timezone.utc),
        ))
