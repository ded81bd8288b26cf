"""Tests for the read-only deal ledger audit."""
import uuid

import pytest

from app.models.distribution import DistributionRecord, DistributionType, PlatformLedgerEntry
from app.services.distribution_errors import NotFoundError
from app.services.ledger_audit import audit_deal_ledger
from tests.conftest import D, INVESTOR_A, INVESTOR_B, run

PARTIAL = dict(estimated_gain_percent=10, commission_percent=5, reserve_percent=5)


def codes(report):
    return {f.code for f in report.findings}


class TestLedgerAudit:

    def test_fresh_deal_is_consistent(self, repo, deal):
        report = run(audit_deal_ledger(repo, deal.id))

        assert report.is_consistent
        assert report.settled_requests == 0
        assert report.to_dict()["is_consistent"] is True

    def test_settled_partial_is_consistent(self, repo, deal, settle_flow):
        settle_flow(deal.id, DistributionType.PARTIAL, 3000, **PARTIAL)

        report = run(audit_deal_ledger(repo, deal.id))

        assert report.is_consistent, report.findings
        assert report.settled_requests == 1
        assert report.capital_returned == D(2700)
        assert report.profit_paid == D(270)
        assert report.commission_taken == D(15)
        assert report.reserve_held == D(15)

    def test_partial_then_final_is_consistent(self, repo, deal, settle_flow):
        settle_flow(deal.id, DistributionType.PARTIAL, 3000, **PARTIAL)
        settle_flow(deal.id, DistributionType.FINAL, 8800, estimated_gain_percent=10, commission_percent=10)

        report = run(audit_deal_ledger(repo, deal.id))

        assert report.is_consistent, report.findings
        assert report.commission_taken == D(150)

    def test_lifetime_check_does_not_trust_stored_credit(self, repo, deal, settle_flow):
        settle_flow(deal.id, DistributionType.PARTIAL, 3000, **PARTIAL)
        result = settle_flow(deal.id, DistributionType.FINAL, 8800, estimated_gain_percent=10, commission_percent=10)
        # Overcharge the FINAL and shrink its stored credit so the request alone still balances
        commission = next(
            e for e in repo.platform_entries
            if e.request_id == result.request_id and e.entry_type == "COMMISSION"
        )
        commission.amount += D(15)
        request = repo.requests[result.request_id]
        stored = dict(request.settlement_result)
        stored["plan"] = dict(stored["plan"], prior_profit_credit="285.00")
        request.settlement_result = stored

        report = run(audit_deal_ledger(repo, deal.id))

        assert codes(report) == {"LIFETIME_CONSERVATION_MISMATCH"}
        assert report.findings[0].details["paid_out"] == "11515.00"

    def test_audit_writes_nothing(self, repo, deal, settle_flow):
        settle_flow(deal.id, DistributionType.PARTIAL, 3000, **PARTIAL)
        before = (len(repo.records), len(repo.platform_entries), len(repo.history))

        run(audit_deal_ledger(repo, deal.id))

        assert (len(repo.records), len(repo.platform_entries), len(repo.history)) == before

    def test_missing_record_breaks_conservation(self, repo, deal, settle_flow):
        settle_flow(deal.id, DistributionType.PARTIAL, 3000, **PARTIAL)
        repo.records.pop()

        report = run(audit_deal_ledger(repo, deal.id))

        assert "CONSERVATION_MISMATCH" in codes(report)

    def test_duplicate_rows_are_reported(self, repo, deal, settle_flow):
        result = settle_flow(deal.id, DistributionType.PARTIAL, 3000, **PARTIAL)
        original = repo.records[0]
        repo.records.append(DistributionRecord(
            id=uuid.uuid4(),
            request_id=result.request_id,
            deal_id=deal.id,
            investor_id=original.investor_id,
            distribution_type=original.distribution_type,
            capital_amount=original.capital_amount,
            profit_amount=original.profit_amount,
            created_at=repo.tick(),
        ))
        repo.platform_entries.append(PlatformLedgerEntry(
            id=uuid.uuid4(),
            request_id=result.request_id,
            deal_id=deal.id,
            entry_type="COMMISSION",
            amount=D(15),
            created_at=repo.tick(),
        ))

        found = codes(run(audit_deal_ledger(repo, deal.id)))

        assert {"DUPLICATE_RECORDS", "DUPLICATE_PLATFORM_ENTRY", "CONSERVATION_MISMATCH"} <= found

    def test_rows_without_completed_request(self, repo, deal):
        repo.records.append(DistributionRecord(
            id=uuid.uuid4(),
            request_id=uuid.uuid4(),
            deal_id=deal.id,
            investor_id=INVESTOR_A,
            distribution_type="PARTIAL",
            capital_amount=D(100),
            profit_amount=D(0),
            created_at=repo.tick(),
        ))

        found = codes(run(audit_deal_ledger(repo, deal.id)))

        assert "LEDGER_WITHOUT_SETTLEMENT" in found
        assert "WALLET_MISSING" in found

    def test_wallet_below_ledger(self, repo, deal, settle_flow):
        settle_flow(deal.id, DistributionType.PARTIAL, 3000, **PARTIAL)
        repo.wallets[INVESTOR_B].total_returns = D(0)

        report = run(audit_deal_ledger(repo, deal.id))

        assert codes(report) == {"WALLET_RETURNS_BELOW_LEDGER"}
        assert report.findings[0].details["investor_id"] == str(INVESTOR_B)

    def test_deal_status_must_follow_final(self, repo, deal, settle_flow):
        settle_flow(deal.id, DistributionType.FINAL, 11000, estimated_gain_percent=10, commission_percent=10)
        repo.deals[deal.id].status = "FUNDED"

        assert "DEAL_NOT_COMPLETED" in codes(run(audit_deal_ledger(repo, deal.id)))

    def test_completed_deal_without_final(self, repo):
        deal = repo.seed_deal({INVESTOR_A: D(1000)}, status="COMPLETED")

        assert codes(run(audit_deal_ledger(repo, deal.id))) == {"COMPLETED_WITHOUT_FINAL"}

    def test_broken_capital_invariant_is_reported_not_raised(self, repo):
        deal = repo.seed_deal({INVESTOR_A: D(600), INVESTOR_B: D(300)}, total_capital=D(1000))

        report = run(audit_deal_ledger(repo, deal.id))

        assert codes(report) == {"INCONSISTENT_LEDGER"}

    def test_unknown_deal(self, repo):
        with pytest.raises(NotFoundError):
            run(audit_deal_ledger(repo, uuid.uuid4()))
