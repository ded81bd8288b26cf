"""
Tests for settling approved distribution requests.

The 60/40 deal receives a PARTIAL of 3,000 (10% gain, 5% commission,
5% reserve) and then a FINAL of 8,800 (10% commission):

    PARTIAL  A 1,620 + 162   B 1,080 + 108   commission 15, reserve 15
    FINAL    A 4,380 + 648   B 2,920 + 432   commission 135, reserve 15 released

Over the deal's life that is 10,000 capital plus 1,500 profit: investors
11,350, commission 150 (10% of 1,500, 15 of it taken by the PARTIAL).
"""
import asyncio
import uuid

import pytest

from app.models.distribution import DistributionType
from app.services.distribution_errors import (
    InconsistentLedgerError,
    InvalidTransitionError,
    NotFoundError,
    SettlementFailure,
)
from app.services.ledger_audit import audit_deal_ledger
from app.services.settlement_executor import SettlementExecutor
from tests.conftest import ADMIN, D, INVESTOR_A, INVESTOR_B, PARTNER, run
from tests.fakes import FailingNotifier

PARTIAL = dict(estimated_gain_percent=10, commission_percent=5, reserve_percent=5)
FINAL = dict(estimated_gain_percent=10, commission_percent=10)


def approved_request(workflow, deal_id, distribution_type=DistributionType.PARTIAL, total=3000, **percents):
    async def _run():
        request = await workflow.create_request(
            deal_id=deal_id,
            distribution_type=distribution_type,
            total_amount=D(total),
            requested_by=PARTNER,
            **{k: D(v) for k, v in (percents or PARTIAL).items()},
        )
        await workflow.approve(request.id, approved_by=ADMIN)
        return request

    return run(_run())


def wallet(repo, investor_id):
    w = repo.wallets[investor_id]
    return w.wallet_balance, w.total_returns


def entries(repo):
    return {e.entry_type: e.amount for e in repo.platform_entries}


class TestPartialSettlement:

    def test_settles_records_wallets_and_platform_entries(self, repo, deal, settle_flow):
        result = settle_flow(deal.id, DistributionType.PARTIAL, 3000, **PARTIAL)

        assert result.records_written == 2
        assert not result.already_settled
        assert not result.deal_completed

        records = {r.investor_id: (r.capital_amount, r.profit_amount) for r in repo.records}
        assert records == {INVESTOR_A: (D(1620), D(162)), INVESTOR_B: (D(1080), D(108))}
        assert wallet(repo, INVESTOR_A) == (D(1782), D(162))
        assert wallet(repo, INVESTOR_B) == (D(1188), D(108))
        assert entries(repo) == {"COMMISSION": D(15), "RESERVE": D(15)}

        request = repo.requests[result.request_id]
        assert request.status == "COMPLETED"
        assert request.completed_at is not None
        assert repo.deals[deal.id].status == "FUNDED"

    def test_history_records_settlement(self, repo, deal, workflow, settle_flow):
        result = settle_flow(deal.id, DistributionType.PARTIAL, 3000, **PARTIAL)

        history = run(workflow.get_request_history(result.request_id))
        assert [(h.action, h.to_status) for h in history] == [
            ("SUBMITTED", "PENDING"),
            ("APPROVED", "APPROVED"),
            ("SETTLED", "COMPLETED"),
        ]

    def test_notifies_partner_and_investors(self, deal, settle_flow, notifier):
        settle_flow(deal.id, DistributionType.PARTIAL, 3000, **PARTIAL)

        sent = [(recipient, subject) for recipient, subject, _ in notifier.sent]
        assert sent == [
            (PARTNER, "distribution_completed"),
            (INVESTOR_A, "profit_received"),
            (INVESTOR_B, "profit_received"),
        ]

    def test_zero_allocations_write_no_records(self, repo, settle_flow):
        tiny = repo.seed_deal({INVESTOR_A: D(9999), INVESTOR_B: D(1)})

        result = settle_flow(tiny.id, DistributionType.PARTIAL, "0.01", estimated_gain_percent=0)

        assert result.records_written == 1
        assert [r.investor_id for r in repo.records] == [INVESTOR_A]
        assert INVESTOR_B not in repo.wallets


class TestFinalSettlement:

    def test_partial_then_final(self, repo, deal, settle_flow):
        settle_flow(deal.id, DistributionType.PARTIAL, 3000, **PARTIAL)
        result = settle_flow(deal.id, DistributionType.FINAL, 8800, **FINAL)

        assert result.deal_completed
        assert repo.deals[deal.id].status == "COMPLETED"

        final = {r.investor_id: (r.capital_amount, r.profit_amount) for r in repo.records if r.request_id == result.request_id}
        assert final == {INVESTOR_A: (D(4380), D(648)), INVESTOR_B: (D(2920), D(432))}

        # Lifetime: all capital back, 90% of 1,500 profit, minus nothing twice
        assert wallet(repo, INVESTOR_A) == (D(6810), D(810))
        assert wallet(repo, INVESTOR_B) == (D(4540), D(540))
        assert sum(r.capital_amount for r in repo.records) == D(10000)

        final_entries = {e.entry_type: e.amount for e in repo.platform_entries if e.request_id == result.request_id}
        assert final_entries == {"COMMISSION": D(135), "RESERVE_RELEASE": D(15)}
        assert D(result.plan["prior_profit_credit"]) == D(300)

        report = run(audit_deal_ledger(repo, deal.id))
        assert report.is_consistent, report.findings
        assert report.reserve_held == D(0)

    def test_lifetime_payouts_equal_capital_plus_profit(self, repo, deal, settle_flow):
        settle_flow(deal.id, DistributionType.PARTIAL, 3000, **PARTIAL)
        result = settle_flow(deal.id, DistributionType.FINAL, 8800, **FINAL)
        lifetime_profit = D(result.plan["total_profit"])

        investors = sum(r.capital_amount + r.profit_amount for r in repo.records)
        by_type = {}
        for e in repo.platform_entries:
            by_type[e.entry_type] = by_type.get(e.entry_type, D(0)) + e.amount

        assert lifetime_profit == D(1500)
        assert investors == D(11350)
        assert by_type["COMMISSION"] == D(150)
        assert by_type["RESERVE"] == by_type["RESERVE_RELEASE"]
        assert investors + by_type["COMMISSION"] == D(10000) + lifetime_profit

    def test_lower_final_commission_does_not_refund_partial_commission(self, repo, deal, settle_flow):
        settle_flow(deal.id, DistributionType.PARTIAL, 3000, estimated_gain_percent=10, commission_percent=50)
        result = settle_flow(deal.id, DistributionType.FINAL, 8900, estimated_gain_percent=16, commission_percent=5)

        # 150 taken on the PARTIAL already exceeds 5% of the 1,600 lifetime profit
        assert D(result.plan["platform_commission"]) == D(0)
        final = {r.investor_id: r.profit_amount for r in repo.records if r.request_id == result.request_id}
        assert final == {INVESTOR_A: D(780), INVESTOR_B: D(520)}
        investors = sum(r.capital_amount + r.profit_amount for r in repo.records)
        assert investors + sum(e.amount for e in repo.platform_entries) == D(11600)
        assert run(audit_deal_ledger(repo, deal.id)).is_consistent

    def test_final_loss_releases_reserve_to_investors(self, repo, deal, settle_flow):
        settle_flow(deal.id, DistributionType.PARTIAL, 3000, **PARTIAL)
        result = settle_flow(deal.id, DistributionType.FINAL, 7000, estimated_gain_percent=-5, commission_percent=10)

        final = {r.investor_id: (r.capital_amount, r.profit_amount) for r in repo.records if r.request_id == result.request_id}
        assert final == {INVESTOR_A: (D(4209), D(0)), INVESTOR_B: (D(2806), D(0))}
        final_entries = {e.entry_type: e.amount for e in repo.platform_entries if e.request_id == result.request_id}
        assert final_entries == {"RESERVE_RELEASE": D(15)}
        report = run(audit_deal_ledger(repo, deal.id))
        assert report.is_consistent, report.findings

    def test_final_loss_charges_nothing(self, repo, deal, settle_flow, notifier):
        result = settle_flow(deal.id, DistributionType.FINAL, 7000, estimated_gain_percent=-30, commission_percent=10)

        assert result.plan["is_loss"] is True
        assert wallet(repo, INVESTOR_A) == (D(4200), D(0))
        assert wallet(repo, INVESTOR_B) == (D(2800), D(0))
        assert repo.platform_entries == []
        assert repo.deals[deal.id].status == "COMPLETED"
        assert {subject for _, subject, _ in notifier.sent} == {"distribution_completed", "capital_recovered"}

    def test_completed_deal_accepts_no_more_requests(self, deal, workflow, settle_flow):
        settle_flow(deal.id, DistributionType.FINAL, 11000, **FINAL)

        with pytest.raises(InvalidTransitionError):
            approved_request(workflow, deal.id)


class TestIdempotency:

    def test_settling_twice_changes_nothing(self, repo, deal, workflow, executor, notifier):
        request = approved_request(workflow, deal.id)
        first = run(executor.settle(request.id, performed_by=ADMIN))
        balances = {i: wallet(repo, i) for i in (INVESTOR_A, INVESTOR_B)}
        sent = len(notifier.sent)

        second = run(executor.settle(request.id, performed_by=ADMIN))

        assert second.already_settled
        assert second.plan == first.plan
        assert second.records_written == first.records_written
        assert len(repo.records) == 2
        assert len(repo.platform_entries) == 2
        assert {i: wallet(repo, i) for i in (INVESTOR_A, INVESTOR_B)} == balances
        assert len(notifier.sent) == sent

    def test_concurrent_settlements_apply_once(self, repo, deal, workflow, executor):
        request = approved_request(workflow, deal.id)

        async def race():
            return await asyncio.gather(
                executor.settle(request.id, performed_by=ADMIN),
                executor.settle(request.id, performed_by=ADMIN),
            )

        results = run(race())

        assert sorted(r.already_settled for r in results) == [False, True]
        assert len(repo.records) == 2
        assert wallet(repo, INVESTOR_A) == (D(1782), D(162))


class TestFailures:

    def test_transient_failure_is_retried(self, repo, deal, workflow, executor):
        request = approved_request(workflow, deal.id)
        repo.fail_wallet_credits = 1

        result = run(executor.settle(request.id, performed_by=ADMIN))

        assert result.attempts == 2
        assert len(repo.records) == 2
        assert wallet(repo, INVESTOR_A) == (D(1782), D(162))
        assert repo.requests[request.id].status == "COMPLETED"

    def test_exhausted_retries_leave_request_approved(self, repo, deal, workflow, executor):
        request = approved_request(workflow, deal.id)
        repo.fail_wallet_credits = 10

        with pytest.raises(SettlementFailure) as exc_info:
            run(executor.settle(request.id, performed_by=ADMIN))

        assert exc_info.value.retryable
        assert exc_info.value.details["attempts"] == 3
        assert repo.requests[request.id].status == "APPROVED"
        assert repo.requests[request.id].completed_at is None
        assert repo.records == []
        assert repo.platform_entries == []
        assert repo.wallets == {}

        # Store is back: the same request settles cleanly
        repo.fail_wallet_credits = 0
        result = run(executor.settle(request.id, performed_by=ADMIN))
        assert result.records_written == 2

    def test_ledger_drift_since_approval_blocks_settlement(self, repo, deal, workflow, executor):
        request = approved_request(workflow, deal.id)
        repo.investments[1].status = "CANCELLED"

        with pytest.raises(InconsistentLedgerError):
            run(executor.settle(request.id, performed_by=ADMIN))

        assert repo.requests[request.id].status == "APPROVED"
        assert repo.records == []

    def test_notification_failure_does_not_undo_settlement(self, repo, deal, workflow):
        request = approved_request(workflow, deal.id)
        executor = SettlementExecutor(repo, FailingNotifier())

        result = run(executor.settle(request.id, performed_by=ADMIN))

        assert result.records_written == 2
        assert repo.requests[request.id].status == "COMPLETED"

    def test_pending_request_cannot_be_settled(self, deal, workflow, executor):
        request = run(workflow.create_request(
            deal_id=deal.id,
            distribution_type=DistributionType.PARTIAL,
            total_amount=D(1000),
            requested_by=PARTNER,
        ))

        with pytest.raises(InvalidTransitionError):
            run(executor.settle(request.id, performed_by=ADMIN))

    def test_rejected_request_cannot_be_settled(self, deal, workflow, executor):
        request = approved_request(workflow, deal.id)
        run(workflow.reject(request.id, rejected_by=ADMIN, reason="partner withdrew"))

        with pytest.raises(InvalidTransitionError):
            run(executor.settle(request.id, performed_by=ADMIN))

    def test_unknown_request(self, executor):
        with pytest.raises(NotFoundError):
            run(executor.settle(uuid.uuid4()))


class TestDealHistory:

    def test_history_after_two_settlements(self, deal, workflow, settle_flow):
        settle_flow(deal.id, DistributionType.PARTIAL, 3000, **PARTIAL)
        settle_flow(deal.id, DistributionType.FINAL, 8800, **FINAL)

        items, investors = run(workflow.get_deal_history(deal.id))

        assert [(i.distribution_type, i.amount, i.investor_count) for i in items] == [
            ("PARTIAL", D(3000), 2),
            ("FINAL", D(8800), 2),
        ]
        assert items[0].capital_amount == D(2700)
        assert items[1].profit_amount == D(1080)

        a = investors[0]
        assert a.investor_id == INVESTOR_A
        assert a.distribution_count == 2
        assert a.total_capital == D(6000)
        assert a.total_profit == D(810)
        assert len(a.dates) == 1
