"""
Distribution Calculator

Pure function that turns a DealAccount snapshot plus a proposed payout
into a SettlementPlan. No I/O.

Money rules:
- All arithmetic in Decimal, results in the minimal currency unit (0.01)
- Commission and reserve are charged on profit only, never on capital
- A loss is never charged: no commission, no reserve, no profit
- Per-investor shares are rounded down; the leftover cents go to the
  largest stake so the plan sums exactly to the money coming in

PARTIAL:
    profit  = total_amount × gain% / 100     (gain ≥ 0)
    capital = total_amount − profit
    commission = profit × commission% / 100
    reserve    = profit × reserve% / 100
    Σ capital + Σ profit + commission + reserve == total_amount

FINAL:
    remaining_capital = total_capital − capital already returned
    total_profit      = total_amount − remaining_capital   (lifetime profit)
    commission  = max(0, total_profit × commission% / 100 − commission_taken)
    entitled[i] = stake[i] × (total_profit − commission_taken − commission)
    profit[i]   = max(0, entitled[i] − already_paid[i])
    prior_profit_credit = profit partials already moved out of total_profit
                          (investor profit, commission and held reserve)
    Σ capital + Σ profit + commission + prior_profit_credit
        − reserve_released == total_amount

The held reserve is released into the investors' lifetime profit, so
across a deal's life investor payouts plus commission equal capital plus
lifetime profit. On a loss it is released as capital, up to the shortfall.
"""
import logging
from dataclasses import dataclass, field
from decimal import Decimal, ROUND_DOWN, ROUND_HALF_UP
from typing import Any, Dict, List, Optional, Tuple
from uuid import UUID

from app.config import settings
from app.core.enum_utils import to_enum
from app.models.distribution import DistributionType
from app.services.deal_account import DealAccount, ZERO
from app.services.distribution_errors import ConservationViolationError, ValidationError

logger = logging.getLogger(__name__)

HUNDRED = Decimal("100")
# Widest value the percent columns hold
MAX_GAIN_PERCENT = Decimal("999.9999")


@dataclass(frozen=True)
class DistributionProposal:
    """The numeric part of a distribution request."""
    distribution_type: DistributionType
    total_amount: Decimal
    estimated_gain_percent: Decimal = ZERO
    commission_percent: Decimal = ZERO
    reserve_percent: Decimal = ZERO

    @classmethod
    def from_request(cls, request) -> "DistributionProposal":
        distribution_type = to_enum(request.distribution_type, DistributionType)
        if distribution_type is None:
            raise ValidationError(
                f"Unknown distribution type '{request.distribution_type}'",
                {"field": "distribution_type"},
            )
        return cls(
            distribution_type=distribution_type,
            total_amount=Decimal(request.total_amount),
            estimated_gain_percent=Decimal(request.estimated_gain_percent or 0),
            commission_percent=Decimal(request.commission_percent or 0),
            reserve_percent=Decimal(request.reserve_percent or 0),
        )


@dataclass(frozen=True)
class InvestorAllocation:
    investor_id: UUID
    stake_ratio: Decimal
    capital_amount: Decimal
    profit_amount: Decimal
    # FINAL only: lifetime profit share and what earlier partials already paid
    entitled_profit: Decimal = ZERO
    profit_already_paid: Decimal = ZERO

    @property
    def total_amount(self) -> Decimal:
        return self.capital_amount + self.profit_amount


@dataclass(frozen=True)
class SettlementPlan:
    """Calculator output. Not persisted until executed."""
    deal_id: UUID
    distribution_type: DistributionType
    total_amount: Decimal
    is_loss: bool
    remaining_capital: Decimal
    capital_to_investors: Decimal
    total_profit: Decimal
    profit_to_investors: Decimal
    platform_commission: Decimal
    platform_reserve: Decimal
    allocations: Tuple[InvestorAllocation, ...] = field(default_factory=tuple)
    prior_profit_credit: Decimal = ZERO
    reserve_released: Decimal = ZERO

    @property
    def investor_capital_total(self) -> Decimal:
        return sum((a.capital_amount for a in self.allocations), ZERO)

    @property
    def investor_profit_total(self) -> Decimal:
        return sum((a.profit_amount for a in self.allocations), ZERO)

    @property
    def investor_total(self) -> Decimal:
        return self.investor_capital_total + self.investor_profit_total

    @property
    def grand_total(self) -> Decimal:
        """Everything the plan accounts for; equals total_amount for a valid plan."""
        return (
            self.investor_total
            + self.platform_commission
            + self.platform_reserve
            + self.prior_profit_credit
            - self.reserve_released
        )

    def allocation_for(self, investor_id: UUID) -> Optional[InvestorAllocation]:
        for allocation in self.allocations:
            if allocation.investor_id == investor_id:
                return allocation
        return None

    def to_dict(self) -> Dict[str, Any]:
        """JSON-safe snapshot (amounts as strings) for storage on the request."""
        return {
            "deal_id": str(self.deal_id),
            "distribution_type": self.distribution_type.value,
            "total_amount": str(self.total_amount),
            "is_loss": self.is_loss,
            "remaining_capital": str(self.remaining_capital),
            "capital_to_investors": str(self.capital_to_investors),
            "total_profit": str(self.total_profit),
            "profit_to_investors": str(self.profit_to_investors),
            "platform_commission": str(self.platform_commission),
            "platform_reserve": str(self.platform_reserve),
            "prior_profit_credit": str(self.prior_profit_credit),
            "reserve_released": str(self.reserve_released),
            "grand_total": str(self.grand_total),
            "allocations": [
                {
                    "investor_id": str(a.investor_id),
                    "stake_ratio": str(a.stake_ratio),
                    "capital_amount": str(a.capital_amount),
                    "profit_amount": str(a.profit_amount),
                    "entitled_profit": str(a.entitled_profit),
                    "profit_already_paid": str(a.profit_already_paid),
                }
                for a in self.allocations
            ],
        }


# ==================== Helpers ====================

def _quantize(amount: Decimal, quantum: Decimal, rounding=ROUND_HALF_UP) -> Decimal:
    return amount.quantize(quantum, rounding=rounding)


def allocate_by_stake(account: DealAccount, amount: Decimal, quantum: Decimal) -> Dict[UUID, Decimal]:
    """
    Split `amount` across investors in proportion to their stakes.

    Each share is rounded down to the currency unit; the residual goes to
    the largest stake (lowest investor id on ties).
    """
    investors = account.investors_by_stake()
    if amount == ZERO:
        return {p.investor_id: ZERO for p in investors}

    shares = {
        p.investor_id: _quantize(amount * p.investment_amount / account.total_capital, quantum, ROUND_DOWN)
        for p in investors
    }
    residual = amount - sum(shares.values(), ZERO)
    shares[investors[0].investor_id] += residual
    return shares


def _check_percent(name: str, value: Decimal) -> None:
    if value < ZERO or value > HUNDRED:
        raise ValidationError(
            f"{name} must be between 0 and 100",
            {"field": name, "value": str(value)},
        )


def validate_proposal(account: DealAccount, proposal: DistributionProposal, quantum: Decimal) -> None:
    """Reject malformed proposals before any money is computed."""
    if proposal.distribution_type not in (DistributionType.PARTIAL, DistributionType.FINAL):
        raise ValidationError("Distribution type must be PARTIAL or FINAL", {"field": "distribution_type"})

    total_amount = proposal.total_amount
    if total_amount <= ZERO:
        raise ValidationError("Total amount must be greater than zero", {"field": "total_amount"})
    if total_amount != _quantize(total_amount, quantum):
        raise ValidationError(
            f"Total amount must be a whole number of {quantum}",
            {"field": "total_amount", "value": str(total_amount)},
        )

    _check_percent("commission_percent", proposal.commission_percent)
    _check_percent("reserve_percent", proposal.reserve_percent)
    if proposal.estimated_gain_percent < -HUNDRED:
        raise ValidationError(
            "Estimated gain percent cannot be below -100",
            {"field": "estimated_gain_percent", "value": str(proposal.estimated_gain_percent)},
        )
    if proposal.estimated_gain_percent > MAX_GAIN_PERCENT:
        raise ValidationError(
            f"Estimated gain percent cannot exceed {MAX_GAIN_PERCENT}",
            {"field": "estimated_gain_percent", "value": str(proposal.estimated_gain_percent)},
        )

    if not account.positions or account.total_capital <= ZERO:
        raise ValidationError(
            "This deal has no investments to distribute to",
            {"deal_id": str(account.deal_id)},
        )

    if proposal.distribution_type == DistributionType.PARTIAL:
        if proposal.estimated_gain_percent > HUNDRED:
            raise ValidationError(
                "Estimated gain percent of a partial distribution cannot exceed 100",
                {"field": "estimated_gain_percent", "value": str(proposal.estimated_gain_percent)},
            )
        if proposal.commission_percent + proposal.reserve_percent > HUNDRED:
            raise ValidationError(
                "Commission and reserve together cannot exceed 100% of profit",
                {"field": "reserve_percent"},
            )
        capacity = account.remaining_partial_capacity
        if total_amount > capacity:
            raise ValidationError(
                "Partial distribution exceeds the capital remaining in the deal",
                {
                    "field": "total_amount",
                    "value": str(total_amount),
                    "remaining_capital": str(capacity),
                },
            )
    elif proposal.reserve_percent != ZERO:
        raise ValidationError(
            "Reserve applies only to partial distributions",
            {"field": "reserve_percent", "value": str(proposal.reserve_percent)},
        )


def assert_conservation(plan: SettlementPlan) -> None:
    """
    Raises:
        ConservationViolationError: the plan does not account for exactly
            the money coming in, or moves negative amounts
    """
    violations = []
    if plan.grand_total != plan.total_amount:
        violations.append(f"plan sums to {plan.grand_total}, expected {plan.total_amount}")
    if plan.investor_capital_total != plan.capital_to_investors:
        violations.append(
            f"investor capital sums to {plan.investor_capital_total}, expected {plan.capital_to_investors}"
        )
    if plan.is_loss and (plan.platform_commission or plan.platform_reserve or plan.investor_profit_total):
        violations.append("loss plan charges commission, reserve or pays profit")
    if any(a.capital_amount < ZERO or a.profit_amount < ZERO for a in plan.allocations):
        violations.append("negative investor amount")
    if plan.platform_commission < ZERO or plan.platform_reserve < ZERO:
        violations.append("negative platform amount")

    if violations:
        logger.error(f"Conservation violation for deal {plan.deal_id}: {'; '.join(violations)}")
        raise ConservationViolationError(
            "Settlement plan failed the conservation check",
            {"deal_id": str(plan.deal_id), "violations": violations, "plan": plan.to_dict()},
        )


# ==================== Calculator ====================

def compute_plan(
    account: DealAccount,
    proposal: DistributionProposal,
    quantum: Optional[Decimal] = None,
) -> SettlementPlan:
    """
    Compute the settlement plan for a proposed distribution.

    Raises:
        ValidationError: malformed proposal or over-withdrawal of capital
        ConservationViolationError: computed plan does not balance
    """
    quantum = quantum or settings.currency_quantum
    validate_proposal(account, proposal, quantum)

    if proposal.distribution_type == DistributionType.PARTIAL:
        plan = _compute_partial(account, proposal, quantum)
    else:
        plan = _compute_final(account, proposal, quantum)

    assert_conservation(plan)
    return plan


def _compute_partial(account: DealAccount, proposal: DistributionProposal, quantum: Decimal) -> SettlementPlan:
    total_amount = proposal.total_amount
    gain = proposal.estimated_gain_percent
    is_loss = gain < ZERO

    if is_loss:
        total_profit = ZERO
    else:
        total_profit = _quantize(total_amount * gain / HUNDRED, quantum)

    if total_profit > ZERO:
        commission = _quantize(total_profit * proposal.commission_percent / HUNDRED, quantum)
        reserve = _quantize(total_profit * proposal.reserve_percent / HUNDRED, quantum)
        # Half-up rounding of both parts may overshoot the profit by a unit
        reserve = min(reserve, total_profit - commission)
    else:
        commission = reserve = ZERO

    capital_to_investors = total_amount - total_profit
    profit_to_investors = total_profit - commission - reserve

    capital_shares = allocate_by_stake(account, capital_to_investors, quantum)
    profit_shares = allocate_by_stake(account, profit_to_investors, quantum)

    allocations = tuple(
        InvestorAllocation(
            investor_id=p.investor_id,
            stake_ratio=account.stake_ratio(p.investor_id),
            capital_amount=capital_shares[p.investor_id],
            profit_amount=profit_shares[p.investor_id],
            profit_already_paid=p.profit_paid,
        )
        for p in account.investors_by_stake()
    )

    return SettlementPlan(
        deal_id=account.deal_id,
        distribution_type=DistributionType.PARTIAL,
        total_amount=total_amount,
        is_loss=is_loss,
        remaining_capital=account.remaining_capital,
        capital_to_investors=capital_to_investors,
        total_profit=total_profit,
        profit_to_investors=profit_to_investors,
        platform_commission=commission,
        platform_reserve=reserve,
        allocations=allocations,
    )


def _compute_final(account: DealAccount, proposal: DistributionProposal, quantum: Decimal) -> SettlementPlan:
    total_amount = proposal.total_amount
    remaining_capital = account.remaining_capital
    total_profit = total_amount - remaining_capital
    is_loss = proposal.estimated_gain_percent < ZERO or total_profit <= ZERO
    reserve_held = max(account.reserve_held, ZERO)

    if is_loss:
        if total_amount > remaining_capital:
            raise ValidationError(
                "A loss distribution cannot return more than the remaining capital",
                {
                    "field": "total_amount",
                    "value": str(total_amount),
                    "remaining_capital": str(remaining_capital),
                },
            )
        # Held reserve covers part of the shortfall; it never lifts capital above what was invested
        reserve_released = min(reserve_held, remaining_capital - total_amount)
        capital_to_investors = total_amount + reserve_released
        capital_shares = allocate_by_stake(account, capital_to_investors, quantum)
        allocations = tuple(
            InvestorAllocation(
                investor_id=p.investor_id,
                stake_ratio=account.stake_ratio(p.investor_id),
                capital_amount=capital_shares[p.investor_id],
                profit_amount=ZERO,
                profit_already_paid=p.profit_paid,
            )
            for p in account.investors_by_stake()
        )
        return SettlementPlan(
            deal_id=account.deal_id,
            distribution_type=DistributionType.FINAL,
            total_amount=total_amount,
            is_loss=True,
            remaining_capital=remaining_capital,
            capital_to_investors=capital_to_investors,
            total_profit=total_profit,
            profit_to_investors=ZERO,
            platform_commission=ZERO,
            platform_reserve=ZERO,
            allocations=allocations,
            reserve_released=reserve_released,
        )

    if total_profit < account.commission_taken:
        raise ValidationError(
            "Lifetime profit is lower than the commission already taken by partial distributions",
            {
                "field": "total_amount",
                "total_profit": str(total_profit),
                "commission_taken": str(account.commission_taken),
            },
        )

    lifetime_commission = _quantize(total_profit * proposal.commission_percent / HUNDRED, quantum)
    commission = max(ZERO, lifetime_commission - account.commission_taken)
    # The held reserve is part of this pool, so releasing it pays it to investors
    lifetime_profit_to_investors = total_profit - account.commission_taken - commission

    capital_shares = allocate_by_stake(account, remaining_capital, quantum)
    entitled_shares = allocate_by_stake(account, lifetime_profit_to_investors, quantum)

    allocations: List[InvestorAllocation] = []
    profit_credit = ZERO
    for p in account.investors_by_stake():
        entitled = entitled_shares[p.investor_id]
        final_profit = max(ZERO, entitled - p.profit_paid)
        profit_credit += entitled - final_profit
        allocations.append(
            InvestorAllocation(
                investor_id=p.investor_id,
                stake_ratio=account.stake_ratio(p.investor_id),
                capital_amount=capital_shares[p.investor_id],
                profit_amount=final_profit,
                entitled_profit=entitled,
                profit_already_paid=p.profit_paid,
            )
        )

    return SettlementPlan(
        deal_id=account.deal_id,
        distribution_type=DistributionType.FINAL,
        total_amount=total_amount,
        is_loss=False,
        remaining_capital=remaining_capital,
        capital_to_investors=remaining_capital,
        total_profit=total_profit,
        profit_to_investors=lifetime_profit_to_investors - profit_credit,
        platform_commission=commission,
        platform_reserve=ZERO,
        allocations=tuple(allocations),
        prior_profit_credit=profit_credit + account.commission_taken + reserve_held,
        reserve_released=reserve_held,
    )


# ==================== Profitability ====================

@dataclass(frozen=True)
class ProfitabilityAnalysis:
    is_profitable: bool
    profit_or_loss_amount: Decimal
    profit_or_loss_percent: Decimal
    commissions_paid: Decimal
    investor_recovery: Decimal
    message: str


def analyze_profitability(
    account: DealAccount,
    proposal: DistributionProposal,
    plan: SettlementPlan,
) -> ProfitabilityAnalysis:
    """Summarize whether a plan realizes a profit or a loss for investors."""
    commissions = plan.platform_commission + plan.platform_reserve
    recovery = plan.investor_total

    if plan.distribution_type == DistributionType.FINAL:
        amount = plan.total_profit
        percent = amount / account.total_capital * HUNDRED if account.total_capital else ZERO
    elif plan.is_loss:
        amount = _quantize(
            proposal.total_amount * proposal.estimated_gain_percent / HUNDRED, settings.currency_quantum
        )
        percent = proposal.estimated_gain_percent
    else:
        amount = plan.total_profit
        percent = proposal.estimated_gain_percent
    percent = _quantize(Decimal(percent), Decimal("0.01"))

    if plan.is_loss:
        message = (
            f"Loss of {abs(amount)} ({abs(percent)}%). Investors recover {recovery} "
            f"of capital with no commission charged."
        )
    else:
        message = (
            f"Profit of {amount} ({percent}%). Investors receive {plan.investor_capital_total} capital "
            f"and {plan.investor_profit_total} profit."
        )

    return ProfitabilityAnalysis(
        is_profitable=not plan.is_loss and amount > ZERO,
        profit_or_loss_amount=amount,
        profit_or_loss_percent=percent,
        commissions_paid=commissions,
        investor_recovery=recovery,
        message=message,
    )
