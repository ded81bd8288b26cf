"""Deal-level distribution endpoints: account snapshot, history, preview and ledger audit."""
from uuid import UUID

from fastapi import APIRouter

from app.api.deps import Repo, Workflow
from app.api.v1.endpoints.distributions import build_plan_response, build_profitability_response
from app.schemas.distribution import (
    DealAccountResponse,
    DealDistributionHistoryResponse,
    DistributionHistoryItemResponse,
    DistributionPreviewRequest,
    DistributionPreviewResponse,
    InvestorHistorySummaryResponse,
    InvestorPositionResponse,
    LedgerAuditResponse,
)
from app.services.deal_account import load_deal_account
from app.services.distribution_calculator import DistributionProposal
from app.services.ledger_audit import audit_deal_ledger

router = APIRouter(prefix="/deals", tags=["Deals"])


@router.get("/{deal_id}/account", response_model=DealAccountResponse)
async def get_deal_account(deal_id: UUID, repo: Repo):
    """Capital invested, returned and still outstanding, per investor."""
    async with repo.transaction():
        account = await load_deal_account(repo, deal_id)

    return DealAccountResponse(
        deal_id=account.deal_id,
        deal_status=account.deal_status,
        total_capital=account.total_capital,
        capital_already_paid=account.capital_already_paid,
        remaining_capital=account.remaining_capital,
        remaining_partial_capacity=account.remaining_partial_capacity,
        commission_taken=account.commission_taken,
        reserve_held=account.reserve_held,
        positions=[InvestorPositionResponse.model_validate(p) for p in account.investors_by_stake()],
    )


@router.get("/{deal_id}/distributions/history", response_model=DealDistributionHistoryResponse)
async def get_deal_distribution_history(deal_id: UUID, workflow: Workflow):
    items, investors = await workflow.get_deal_history(deal_id)
    return DealDistributionHistoryResponse(
        deal_id=deal_id,
        distributions=[DistributionHistoryItemResponse.model_validate(i) for i in items],
        investors=[
            InvestorHistorySummaryResponse(
                investor_id=s.investor_id,
                total_investment=s.total_investment,
                distribution_count=s.distribution_count,
                total_capital=s.total_capital,
                total_profit=s.total_profit,
                dates=list(s.dates),
            )
            for s in investors
        ],
    )


@router.post("/{deal_id}/distributions/preview", response_model=DistributionPreviewResponse)
async def preview_deal_distribution(
    deal_id: UUID,
    data: DistributionPreviewRequest,
    workflow: Workflow,
):
    """Compute the plan for an unsaved proposal. Nothing is written."""
    proposal = DistributionProposal(
        distribution_type=data.distribution_type,
        total_amount=data.total_amount,
        estimated_gain_percent=data.estimated_gain_percent,
        commission_percent=data.commission_percent,
        reserve_percent=data.reserve_percent,
    )
    plan, analysis = await workflow.preview_proposal(deal_id, proposal)
    return DistributionPreviewResponse(
        plan=build_plan_response(plan),
        profitability=build_profitability_response(analysis),
    )


@router.get("/{deal_id}/ledger-audit", response_model=LedgerAuditResponse)
async def audit_deal(deal_id: UUID, repo: Repo):
    """Read-only reconciliation of the deal's distribution ledger."""
    report = await audit_deal_ledger(repo, deal_id)
    return LedgerAuditResponse.model_validate(report.to_dict())
