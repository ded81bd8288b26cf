"""
Settlement Executor.

Applies an APPROVED distribution request to the ledger in one transaction:

1. Recompute the plan against the current DealAccount (the plan stored at
   approval is never trusted)
2. Append one DistributionRecord per investor with a non-zero amount
3. Credit wallet balance with capital + profit, lifetime returns with profit
4. Append COMMISSION / RESERVE / RESERVE_RELEASE platform entries
5. Move the request to COMPLETED (and the deal to COMPLETED for FINAL)

Everything commits together or nothing does. Settling a request that is
already COMPLETED returns the stored result and writes nothing.
"""
import asyncio
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Optional
from uuid import UUID

from app.config import settings
from app.core.enum_utils import is_status
from app.models.deal import DealStatus
from app.models.distribution import (
    DistributionRecord,
    DistributionRequest,
    DistributionRequestHistory,
    DistributionRequestStatus,
    DistributionType,
    PlatformEntryType,
    PlatformLedgerEntry,
)
from app.services.deal_account import load_deal_account, ZERO
from app.services.distribution_calculator import (
    DistributionProposal,
    SettlementPlan,
    compute_plan,
)
from app.services.distribution_errors import (
    InvalidTransitionError,
    NotFoundError,
    SettlementFailure,
)
from app.services.distribution_state_machine import (
    can_receive_distributions,
    can_settle,
    transition_request,
    validate_deal_transition,
)
from app.services.ledger_repository import LedgerRepository
from app.services.notification_service import DistributionNotifier

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SettlementResult:
    """Outcome of settling one request."""
    request_id: UUID
    request_number: str
    deal_id: UUID
    distribution_type: str
    plan: Dict[str, Any]
    records_written: int
    deal_completed: bool
    already_settled: bool = False
    settled_at: Optional[str] = None
    attempts: int = 1

    def to_dict(self) -> Dict[str, Any]:
        return {
            "request_id": str(self.request_id),
            "request_number": self.request_number,
            "deal_id": str(self.deal_id),
            "distribution_type": self.distribution_type,
            "plan": self.plan,
            "records_written": self.records_written,
            "deal_completed": self.deal_completed,
            "settled_at": self.settled_at,
        }

    @classmethod
    def from_stored(cls, request: DistributionRequest) -> "SettlementResult":
        stored = request.settlement_result or {}
        return cls(
            request_id=request.id,
            request_number=request.request_number,
            deal_id=request.deal_id,
            distribution_type=request.distribution_type,
            plan=stored.get("plan", {}),
            records_written=stored.get("records_written", 0),
            deal_completed=stored.get("deal_completed", False),
            already_settled=True,
            settled_at=stored.get("settled_at"),
            attempts=0,
        )


@dataclass
class _Applied:
    result: SettlementResult
    request: DistributionRequest
    plan: Optional[SettlementPlan] = None
    notify: bool = True


class SettlementExecutor:
    """Commits approved distribution requests to the ledger."""

    def __init__(
        self,
        repo: LedgerRepository,
        notifier: Optional[DistributionNotifier] = None,
        max_retries: Optional[int] = None,
    ):
        self.repo = repo
        self.notifier = notifier or DistributionNotifier()
        self.max_retries = settings.SETTLEMENT_MAX_RETRIES if max_retries is None else max_retries

    async def settle(self, request_id: UUID, performed_by: Optional[UUID] = None) -> SettlementResult:
        """
        Settle an APPROVED request.

        A SettlementFailure (store write failed, whole transaction rolled
        back) is retried up to `max_retries` times; every other error is
        raised on the first attempt. Once started, an attempt is shielded
        from caller cancellation so it always commits or rolls back.

        Raises:
            NotFoundError: unknown request
            InvalidTransitionError: request is not APPROVED, or the deal can
                no longer receive this distribution
            ValidationError / ConservationViolationError /
            InconsistentLedgerError: recomputed plan is not executable
            SettlementFailure: every attempt failed
        """
        attempts = max(1, self.max_retries)
        last_error: Optional[SettlementFailure] = None

        for attempt in range(1, attempts + 1):
            try:
                applied = await asyncio.shield(self._apply(request_id, performed_by, attempt))
            except SettlementFailure as e:
                last_error = e
                logger.warning(
                    f"Settlement of request {request_id} failed on attempt {attempt}/{attempts}: {e.message}"
                )
                continue

            if applied.notify and applied.plan is not None:
                await self.notifier.notify_settled(applied.request, applied.plan)
            return applied.result

        logger.error(f"Settlement of request {request_id} failed after {attempts} attempts")
        raise SettlementFailure(
            f"Settlement failed after {attempts} attempts; request remains APPROVED",
            {"request_id": str(request_id), "attempts": attempts, **(last_error.details if last_error else {})},
        )

    async def _apply(self, request_id: UUID, performed_by: Optional[UUID], attempt: int) -> _Applied:
        async with self.repo.transaction():
            request = await self.repo.get_request(request_id, for_update=True)
            if not request:
                raise NotFoundError(
                    f"Distribution request {request_id} not found",
                    {"request_id": str(request_id)},
                )

            if is_status(request.status, DistributionRequestStatus.COMPLETED):
                logger.info(f"Distribution request {request.request_number} already settled; returning stored result")
                return _Applied(result=SettlementResult.from_stored(request), request=request, notify=False)

            if not can_settle(request.status):
                raise InvalidTransitionError(
                    f"Only APPROVED requests can be settled; request is {request.status}",
                    {"request_id": str(request_id), "status": request.status},
                )

            deal = await self.repo.get_deal(request.deal_id, for_update=True)
            if not deal:
                raise NotFoundError(f"Deal {request.deal_id} not found", {"deal_id": str(request.deal_id)})
            if not can_receive_distributions(deal.status):
                raise InvalidTransitionError(
                    f"Deal in '{deal.status}' status cannot receive distributions",
                    {"deal_id": str(deal.id), "deal_status": deal.status},
                )
            is_final = is_status(request.distribution_type, DistributionType.FINAL)
            if is_final:
                validate_deal_transition(deal.status, DealStatus.COMPLETED)

            account = await load_deal_account(self.repo, request.deal_id)
            plan = compute_plan(account, DistributionProposal.from_request(request))

            now = datetime.now(timezone.utc)
            records_written = 0
            for allocation in plan.allocations:
                if allocation.total_amount == ZERO:
                    continue
                await self.repo.append_distribution_record(DistributionRecord(
                    id=uuid.uuid4(),
                    request_id=request.id,
                    deal_id=request.deal_id,
                    investor_id=allocation.investor_id,
                    distribution_type=request.distribution_type,
                    capital_amount=allocation.capital_amount,
                    profit_amount=allocation.profit_amount,
                    created_at=now,
                ))
                await self.repo.increment_wallet_balance(allocation.investor_id, allocation.total_amount)
                if allocation.profit_amount > ZERO:
                    await self.repo.increment_lifetime_returns(allocation.investor_id, allocation.profit_amount)
                records_written += 1

            for entry_type, amount in (
                (PlatformEntryType.COMMISSION, plan.platform_commission),
                (PlatformEntryType.RESERVE, plan.platform_reserve),
                (PlatformEntryType.RESERVE_RELEASE, plan.reserve_released),
            ):
                if amount > ZERO:
                    await self.repo.append_platform_entry(PlatformLedgerEntry(
                        id=uuid.uuid4(),
                        request_id=request.id,
                        deal_id=request.deal_id,
                        entry_type=entry_type.value,
                        amount=amount,
                        created_at=now,
                    ))

            from_status = request.status
            action = transition_request(request, DistributionRequestStatus.COMPLETED, user_id=performed_by)
            result = SettlementResult(
                request_id=request.id,
                request_number=request.request_number,
                deal_id=request.deal_id,
                distribution_type=request.distribution_type,
                plan=plan.to_dict(),
                records_written=records_written,
                deal_completed=is_final,
                settled_at=now.isoformat(),
                attempts=attempt,
            )
            request.settlement_result = result.to_dict()
            await self.repo.save_request(request)
            await self.repo.add_history(DistributionRequestHistory(
                id=uuid.uuid4(),
                request_id=request.id,
                action=action,
                from_status=from_status,
                to_status=request.status,
                performed_by=performed_by,
                comments=f"{records_written} investor records written",
                created_at=now,
            ))

            if is_final:
                await self.repo.set_deal_status(request.deal_id, DealStatus.COMPLETED.value)

        logger.info(
            f"Distribution request {request.request_number} settled: {plan.total_amount} to "
            f"{records_written} investors, commission {plan.platform_commission}, "
            f"reserve {plan.platform_reserve}"
            + (", deal completed" if is_final else "")
        )
        return _Applied(result=result, request=request, plan=plan)
