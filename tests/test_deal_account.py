"""Tests for building DealAccount snapshots from the ledger."""
import uuid

import pytest

from app.models.deal import InvestmentStatus
from app.models.distribution import DistributionRecord, PlatformLedgerEntry
from app.services.deal_account import load_deal_account
from app.services.distribution_errors import InconsistentLedgerError, NotFoundError
from tests.conftest import D, INVESTOR_A, INVESTOR_B, run


def add_record(repo, deal, investor_id, capital, profit, distribution_type="PARTIAL", request_id=None):
    repo.records.append(DistributionRecord(
        id=uuid.uuid4(),
        request_id=request_id or uuid.uuid4(),
        deal_id=deal.id,
        investor_id=investor_id,
        distribution_type=distribution_type,
        capital_amount=D(capital),
        profit_amount=D(profit),
        created_at=repo.tick(),
    ))


def add_entry(repo, deal, entry_type, amount):
    repo.platform_entries.append(PlatformLedgerEntry(
        id=uuid.uuid4(),
        request_id=uuid.uuid4(),
        deal_id=deal.id,
        entry_type=entry_type,
        amount=D(amount),
        created_at=repo.tick(),
    ))


class TestLoadDealAccount:

    def test_fresh_deal(self, repo, deal):
        account = run(load_deal_account(repo, deal.id))

        assert account.total_capital == D(10000)
        assert account.investments == {INVESTOR_A: D(6000), INVESTOR_B: D(4000)}
        assert account.capital_already_paid == D(0)
        assert account.remaining_capital == D(10000)
        assert account.stake_ratio(INVESTOR_A) == D("0.6")

    def test_history_is_aggregated_from_records(self, repo, deal):
        request_id = uuid.uuid4()
        add_record(repo, deal, INVESTOR_A, 1620, 162, request_id=request_id)
        add_record(repo, deal, INVESTOR_B, 1080, 108, request_id=request_id)
        add_entry(repo, deal, "COMMISSION", 15)
        add_entry(repo, deal, "RESERVE", 15)

        account = run(load_deal_account(repo, deal.id))

        assert account.positions[INVESTOR_A].capital_paid == D(1620)
        assert account.profit_already_paid == {INVESTOR_A: D(162), INVESTOR_B: D(108)}
        assert account.partial_capital_paid == D(2700)
        assert account.remaining_partial_capacity == D(7300)
        assert account.commission_taken == D(15)
        assert account.reserve_held == D(15)
        assert account.settled_request_ids == (request_id,)
        assert account.positions[INVESTOR_B].distribution_count == 1

    def test_reserve_release_reduces_reserve_held(self, repo, deal):
        add_entry(repo, deal, "RESERVE", 15)
        add_entry(repo, deal, "RESERVE_RELEASE", 15)

        assert run(load_deal_account(repo, deal.id)).reserve_held == D(0)

    def test_final_capital_does_not_count_as_partial(self, repo, deal):
        add_record(repo, deal, INVESTOR_A, 6000, 0, distribution_type="FINAL")

        account = run(load_deal_account(repo, deal.id))
        assert account.capital_already_paid == D(6000)
        assert account.partial_capital_paid == D(0)

    def test_unknown_deal(self, repo):
        with pytest.raises(NotFoundError):
            run(load_deal_account(repo, uuid.uuid4()))

    def test_investment_sum_mismatch_blocks_the_deal(self, repo):
        deal = repo.seed_deal({INVESTOR_A: D(6000), INVESTOR_B: D(3000)}, total_capital=D(10000))

        with pytest.raises(InconsistentLedgerError) as exc_info:
            run(load_deal_account(repo, deal.id))
        assert exc_info.value.details["investment_sum"] == "9000"

    def test_mismatch_within_tolerance_is_accepted(self, repo):
        deal = repo.seed_deal({INVESTOR_A: D("6000.00"), INVESTOR_B: D("3999.99")}, total_capital=D(10000))

        account = run(load_deal_account(repo, deal.id))
        assert account.total_capital == D(10000)

    def test_cancelled_investments_are_ignored(self, repo, deal):
        repo.investments[1].status = InvestmentStatus.CANCELLED.value

        with pytest.raises(InconsistentLedgerError):
            run(load_deal_account(repo, deal.id))

    def test_payout_to_stranger_is_inconsistent(self, repo, deal):
        add_record(repo, deal, uuid.uuid4(), 100, 0)

        with pytest.raises(InconsistentLedgerError):
            run(load_deal_account(repo, deal.id))

    def test_investors_by_stake_breaks_ties_by_id(self, repo):
        first = uuid.UUID("00000000-0000-0000-0000-000000000001")
        second = uuid.UUID("00000000-0000-0000-0000-000000000002")
        deal = repo.seed_deal({second: D(5000), first: D(5000)})

        account = run(load_deal_account(repo, deal.id))
        assert [p.investor_id for p in account.investors_by_stake()] == [first, second]
