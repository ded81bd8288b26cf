"""
Distribution Request API Endpoints.

Provides:
- Partner submission of PARTIAL / FINAL distribution requests
- Admin queue of pending requests
- Approve / Reject with audit history
- Settlement of approved requests
- Plan preview before approval

Engine errors propagate to the DistributionError handler in app.main,
which maps them to HTTP status codes.
"""
from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Query, status

from app.api.deps import ActorId, Executor, Workflow
from app.models.distribution import DistributionRequestStatus
from app.schemas.distribution import (
    ApproveDistributionRequest,
    ApproveDistributionResponse,
    DistributionHistoryEntryResponse,
    DistributionPreviewResponse,
    DistributionRequestCreate,
    DistributionRequestListResponse,
    DistributionRequestResponse,
    InvestorAllocationResponse,
    ProfitabilityResponse,
    RejectDistributionRequest,
    SettlementPlanResponse,
    SettlementResponse,
)
from app.services.distribution_calculator import ProfitabilityAnalysis, SettlementPlan

router = APIRouter(prefix="/distributions", tags=["Distributions"])


# ============== Helper Functions ==============

def build_plan_response(plan: SettlementPlan) -> SettlementPlanResponse:
    """Build settlement plan response."""
    return SettlementPlanResponse(
        deal_id=plan.deal_id,
        distribution_type=plan.distribution_type.value,
        total_amount=plan.total_amount,
        is_loss=plan.is_loss,
        remaining_capital=plan.remaining_capital,
        capital_to_investors=plan.capital_to_investors,
        total_profit=plan.total_profit,
        profit_to_investors=plan.profit_to_investors,
        platform_commission=plan.platform_commission,
        platform_reserve=plan.platform_reserve,
        prior_profit_credit=plan.prior_profit_credit,
        reserve_released=plan.reserve_released,
        grand_total=plan.grand_total,
        allocations=[
            InvestorAllocationResponse(
                investor_id=a.investor_id,
                stake_ratio=a.stake_ratio,
                capital_amount=a.capital_amount,
                profit_amount=a.profit_amount,
                total_amount=a.total_amount,
                entitled_profit=a.entitled_profit,
                profit_already_paid=a.profit_already_paid,
            )
            for a in plan.allocations
        ],
    )


def build_profitability_response(analysis: ProfitabilityAnalysis) -> ProfitabilityResponse:
    return ProfitabilityResponse.model_validate(analysis)


# ============== Partner Endpoints ==============

@router.post("", response_model=DistributionRequestResponse, status_code=status.HTTP_201_CREATED)
async def create_distribution_request(
    data: DistributionRequestCreate,
    workflow: Workflow,
    actor_id: ActorId,
):
    """
    Submit a distribution request for a deal.

    Only one PENDING or APPROVED request may exist per deal; a second
    submission returns 409.
    """
    request = await workflow.create_request(
        deal_id=data.deal_id,
        distribution_type=data.distribution_type,
        total_amount=data.total_amount,
        requested_by=actor_id,
        estimated_gain_percent=data.estimated_gain_percent,
        commission_percent=data.commission_percent,
        reserve_percent=data.reserve_percent,
        description=data.description,
    )
    return DistributionRequestResponse.model_validate(request)


# ============== Admin Queue ==============

@router.get("/pending", response_model=DistributionRequestListResponse)
async def list_pending_requests(workflow: Workflow):
    """Requests waiting for an admin decision, oldest first."""
    requests = await workflow.list_pending()
    return DistributionRequestListResponse(
        items=[DistributionRequestResponse.model_validate(r) for r in requests],
        total=len(requests),
    )


@router.get("", response_model=DistributionRequestListResponse)
async def list_distribution_requests(
    workflow: Workflow,
    deal_id: Optional[UUID] = Query(None),
    status_filter: Optional[DistributionRequestStatus] = Query(None, alias="status"),
):
    requests = await workflow.list_requests(deal_id=deal_id, status=status_filter)
    return DistributionRequestListResponse(
        items=[DistributionRequestResponse.model_validate(r) for r in requests],
        total=len(requests),
    )


@router.get("/{request_id}", response_model=DistributionRequestResponse)
async def get_distribution_request(request_id: UUID, workflow: Workflow):
    request = await workflow.get_request(request_id)
    return DistributionRequestResponse.model_validate(request)


@router.get("/{request_id}/history", response_model=list[DistributionHistoryEntryResponse])
async def get_distribution_request_history(request_id: UUID, workflow: Workflow):
    """Audit trail of every status change of the request."""
    history = await workflow.get_request_history(request_id)
    return [DistributionHistoryEntryResponse.model_validate(h) for h in history]


@router.get("/{request_id}/preview", response_model=DistributionPreviewResponse)
async def preview_distribution_request(request_id: UUID, workflow: Workflow):
    """
    Per-investor breakdown of an open request against the current ledger.

    Nothing is written; settlement recomputes the plan again.
    """
    request, plan, analysis = await workflow.preview_request(request_id)
    return DistributionPreviewResponse(
        request=DistributionRequestResponse.model_validate(request),
        plan=build_plan_response(plan),
        profitability=build_profitability_response(analysis),
    )


# ============== Admin Actions ==============

@router.post("/{request_id}/approve", response_model=ApproveDistributionResponse)
async def approve_distribution_request(
    request_id: UUID,
    data: ApproveDistributionRequest,
    workflow: Workflow,
    actor_id: ActorId,
):
    request, plan = await workflow.approve(request_id, approved_by=actor_id, comments=data.comments)
    return ApproveDistributionResponse(
        request=DistributionRequestResponse.model_validate(request),
        plan=build_plan_response(plan),
    )


@router.post("/{request_id}/reject", response_model=DistributionRequestResponse)
async def reject_distribution_request(
    request_id: UUID,
    data: RejectDistributionRequest,
    workflow: Workflow,
    actor_id: ActorId,
):
    request = await workflow.reject(request_id, rejected_by=actor_id, reason=data.reason)
    return DistributionRequestResponse.model_validate(request)


@router.post("/{request_id}/settle", response_model=SettlementResponse)
async def settle_distribution_request(
    request_id: UUID,
    executor: Executor,
    actor_id: ActorId,
):
    """
    Apply an APPROVED request to investor wallets and the ledger.

    Safe to repeat: settling a COMPLETED request returns the stored
    result without writing anything.
    """
    result = await executor.settle(request_id, performed_by=actor_id)
    return SettlementResponse.model_validate(result)
