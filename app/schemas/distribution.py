"""
Distribution Request Schemas.

Pydantic schemas for the partner submission, admin review and
settlement endpoints.
"""
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional
from uuid import UUID

from pydantic import BaseModel, Field, field_validator

from app.core.enum_utils import normalize_to_uppercase, VALID_DISTRIBUTION_TYPES
from app.models.distribution import DistributionType
from app.schemas.base import BaseCreateSchema, BaseResponseSchema


# ============== Create Schemas ==============

class DistributionProposalBase(BaseCreateSchema):
    """Numeric part of a payout proposal."""
    distribution_type: DistributionType
    total_amount: Decimal = Field(..., gt=0, description="Gross amount of this payout")
    estimated_gain_percent: Decimal = Field(
        Decimal("0"), ge=-100, le=Decimal("999.9999"), description="Signed; negative means the deal made a loss"
    )
    commission_percent: Decimal = Field(Decimal("0"), ge=0, le=100)
    reserve_percent: Decimal = Field(Decimal("0"), ge=0, le=100, description="PARTIAL only")

    @field_validator("distribution_type", mode="before")
    @classmethod
    def normalize_distribution_type(cls, v):
        return normalize_to_uppercase(v, VALID_DISTRIBUTION_TYPES)


class DistributionRequestCreate(DistributionProposalBase):
    """Schema for a partner submitting a distribution request."""
    deal_id: UUID
    description: Optional[str] = Field(None, max_length=2000)


class DistributionPreviewRequest(DistributionProposalBase):
    """Schema for previewing an unsaved proposal against a deal."""


# ============== Action Schemas ==============

class ApproveDistributionRequest(BaseModel):
    """Schema for approving a request."""
    comments: Optional[str] = Field(None, description="Approval comments")


class RejectDistributionRequest(BaseModel):
    """Schema for rejecting a request."""
    reason: str = Field(..., min_length=3, description="Rejection reason is required")


# ============== Response Schemas ==============

class DistributionRequestResponse(BaseResponseSchema):
    """Response schema for distribution request."""
    id: UUID
    request_number: str
    deal_id: UUID
    distribution_type: str  # VARCHAR in DB
    total_amount: Decimal
    estimated_gain_percent: Decimal
    commission_percent: Decimal
    reserve_percent: Decimal
    description: Optional[str] = None
    status: str

    # Requester info
    requested_by: UUID
    requested_at: datetime

    # Review info
    reviewed_by: Optional[UUID] = None
    reviewed_at: Optional[datetime] = None
    rejection_reason: Optional[str] = None

    # Settlement
    completed_at: Optional[datetime] = None
    approved_plan: Optional[Dict[str, Any]] = None


class DistributionRequestListResponse(BaseModel):
    items: List[DistributionRequestResponse]
    total: int


class DistributionHistoryEntryResponse(BaseResponseSchema):
    """One state transition of a request."""
    id: UUID
    action: str
    from_status: Optional[str] = None
    to_status: str
    performed_by: Optional[UUID] = None
    comments: Optional[str] = None
    created_at: datetime


class InvestorAllocationResponse(BaseResponseSchema):
    investor_id: UUID
    stake_ratio: Decimal
    capital_amount: Decimal
    profit_amount: Decimal
    total_amount: Decimal
    entitled_profit: Decimal = Decimal("0")
    profit_already_paid: Decimal = Decimal("0")


class SettlementPlanResponse(BaseResponseSchema):
    """Plan as computed against the current ledger."""
    deal_id: UUID
    distribution_type: str
    total_amount: Decimal
    is_loss: bool
    remaining_capital: Decimal
    capital_to_investors: Decimal
    total_profit: Decimal
    profit_to_investors: Decimal
    platform_commission: Decimal
    platform_reserve: Decimal
    prior_profit_credit: Decimal
    reserve_released: Decimal
    grand_total: Decimal
    allocations: List[InvestorAllocationResponse]


class ProfitabilityResponse(BaseResponseSchema):
    is_profitable: bool
    profit_or_loss_amount: Decimal
    profit_or_loss_percent: Decimal
    commissions_paid: Decimal
    investor_recovery: Decimal
    message: str


class DistributionPreviewResponse(BaseModel):
    request: Optional[DistributionRequestResponse] = None
    plan: SettlementPlanResponse
    profitability: ProfitabilityResponse


class ApproveDistributionResponse(BaseModel):
    request: DistributionRequestResponse
    plan: SettlementPlanResponse


class SettlementResponse(BaseResponseSchema):
    request_id: UUID
    request_number: str
    deal_id: UUID
    distribution_type: str
    records_written: int
    deal_completed: bool
    already_settled: bool
    settled_at: Optional[str] = None
    plan: Dict[str, Any]


# ============== Deal Schemas ==============

class InvestorPositionResponse(BaseResponseSchema):
    investor_id: UUID
    investment_amount: Decimal
    capital_paid: Decimal
    profit_paid: Decimal
    distribution_count: int


class DealAccountResponse(BaseModel):
    """Current capital and payout position of a deal."""
    deal_id: UUID
    deal_status: str
    total_capital: Decimal
    capital_already_paid: Decimal
    remaining_capital: Decimal
    remaining_partial_capacity: Decimal
    commission_taken: Decimal
    reserve_held: Decimal
    positions: List[InvestorPositionResponse]


class DistributionHistoryItemResponse(BaseResponseSchema):
    request_id: UUID
    request_number: str
    distribution_type: str
    date: Optional[datetime] = None
    amount: Decimal
    capital_amount: Decimal
    profit_amount: Decimal
    investor_count: int


class InvestorHistorySummaryResponse(BaseResponseSchema):
    investor_id: UUID
    total_investment: Decimal
    distribution_count: int
    total_capital: Decimal
    total_profit: Decimal
    dates: List[str]


class DealDistributionHistoryResponse(BaseModel):
    deal_id: UUID
    distributions: List[DistributionHistoryItemResponse]
    investors: List[InvestorHistorySummaryResponse]


class AuditFindingResponse(BaseResponseSchema):
    code: str
    message: str
    details: Dict[str, Any]


class LedgerAuditResponse(BaseResponseSchema):
    deal_id: UUID
    deal_status: Optional[str] = None
    total_capital: Decimal
    capital_returned: Decimal
    profit_paid: Decimal
    commission_taken: Decimal
    reserve_held: Decimal
    settled_requests: int
    is_consistent: bool
    findings: List[AuditFindingResponse]
