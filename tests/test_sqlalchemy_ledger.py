"""
End-to-end tests against the SQLAlchemy ledger store on SQLite.

Every operation opens its own session, the way API requests do, so
what is asserted is what was committed.
"""
import uuid
from datetime import date, datetime, timezone

import pytest
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import async_sessionmaker

from app.database import build_engine, init_db
from app.models.deal import Deal, Investment
from app.models.distribution import DistributionRequest, DistributionRequestSequence, DistributionType
from app.services.distribution_errors import ConcurrentRequestError
from app.services.distribution_workflow import ApprovalWorkflow
from app.services.ledger_audit import audit_deal_ledger
from app.services.ledger_repository import SqlAlchemyLedgerRepository, _is_open_request_conflict
from app.services.notification_service import DistributionNotifier
from app.services.settlement_executor import SettlementExecutor
from tests.conftest import ADMIN, D, INVESTOR_A, INVESTOR_B, PARTNER, run


class Store:
    """Fresh SQLite database with one 60/40 deal of 10,000."""

    def __init__(self, path):
        self.url = f"sqlite+aiosqlite:///{path}"
        self.engine = None
        self.sessions = None
        self.deal_id = uuid.uuid4()

    async def __aenter__(self):
        self.engine = build_engine(self.url)
        await init_db(self.engine)
        self.sessions = async_sessionmaker(self.engine, expire_on_commit=False)
        await self.seed_deal(self.deal_id)
        return self

    async def seed_deal(self, deal_id):
        async with self.sessions() as session:
            repo = SqlAlchemyLedgerRepository(session)
            async with repo.transaction():
                await repo.add_deal(Deal(
                    id=deal_id,
                    title="Warehouse Refit",
                    partner_id=PARTNER,
                    total_capital=D("10000.00"),
                    status="FUNDED",
                ))
                for investor_id, amount in ((INVESTOR_A, "6000.00"), (INVESTOR_B, "4000.00")):
                    await repo.add_investment(Investment(
                        deal_id=deal_id,
                        investor_id=investor_id,
                        amount=D(amount),
                        status="ACTIVE",
                    ))
        return deal_id

    async def __aexit__(self, *exc):
        await self.engine.dispose()

    async def call(self, fn):
        """Run fn(repo) in a new session."""
        async with self.sessions() as session:
            return await fn(SqlAlchemyLedgerRepository(session))


def workflow(repo):
    return ApprovalWorkflow(repo, DistributionNotifier(enabled=False))


def executor(repo):
    return SettlementExecutor(repo, DistributionNotifier(enabled=False), max_retries=2)


async def submit_and_approve(store, distribution_type, total, **percents):
    request = await store.call(lambda repo: workflow(repo).create_request(
        deal_id=store.deal_id,
        distribution_type=distribution_type,
        total_amount=D(total),
        requested_by=PARTNER,
        **{k: D(v) for k, v in percents.items()},
    ))
    await store.call(lambda repo: workflow(repo).approve(request.id, approved_by=ADMIN))
    return request


class TestSqlAlchemyLedger:

    def test_partial_then_final(self, tmp_path):
        async def scenario():
            async with Store(tmp_path / "ledger.db") as store:
                partial = await submit_and_approve(
                    store, DistributionType.PARTIAL, 3000,
                    estimated_gain_percent=10, commission_percent=5, reserve_percent=5,
                )
                await store.call(lambda repo: executor(repo).settle(partial.id, performed_by=ADMIN))

                final = await submit_and_approve(
                    store, DistributionType.FINAL, 8800,
                    estimated_gain_percent=10, commission_percent=10,
                )
                result = await store.call(lambda repo: executor(repo).settle(final.id, performed_by=ADMIN))
                again = await store.call(lambda repo: executor(repo).settle(final.id, performed_by=ADMIN))

                async def snapshot(repo):
                    async with repo.transaction():
                        return {
                            "deal": await repo.get_deal(store.deal_id),
                            "records": await repo.list_records(store.deal_id),
                            "entries": await repo.list_platform_entries(store.deal_id),
                            "wallet_a": await repo.get_wallet(INVESTOR_A),
                            "wallet_b": await repo.get_wallet(INVESTOR_B),
                            "history": await repo.list_history(final.id),
                        }

                state = await store.call(snapshot)
                report = await store.call(lambda repo: audit_deal_ledger(repo, store.deal_id))
                return result, again, state, report

        result, again, state, report = run(scenario())

        assert result.deal_completed
        assert again.already_settled
        assert again.plan == result.plan
        assert state["deal"].status == "COMPLETED"
        assert len(state["records"]) == 4
        assert sorted((e.entry_type, e.amount) for e in state["entries"]) == [
            ("COMMISSION", D(15)),
            ("COMMISSION", D(135)),
            ("RESERVE", D(15)),
            ("RESERVE_RELEASE", D(15)),
        ]
        assert (state["wallet_a"].wallet_balance, state["wallet_a"].total_returns) == (D(6810), D(810))
        assert (state["wallet_b"].wallet_balance, state["wallet_b"].total_returns) == (D(4540), D(540))
        assert [h.action for h in state["history"]] == ["SUBMITTED", "APPROVED", "SETTLED"]
        assert report.is_consistent, report.findings

    def test_open_request_index_blocks_second_insert(self, tmp_path):
        async def scenario():
            async with Store(tmp_path / "ledger.db") as store:
                await store.call(lambda repo: workflow(repo).create_request(
                    deal_id=store.deal_id,
                    distribution_type=DistributionType.PARTIAL,
                    total_amount=D(1000),
                    requested_by=PARTNER,
                ))

                async def insert_directly(repo):
                    async with repo.transaction():
                        await repo.add_request(DistributionRequest(
                            id=uuid.uuid4(),
                            request_number="PDR-20260101-9999",
                            deal_id=store.deal_id,
                            distribution_type="PARTIAL",
                            total_amount=D(500),
                            status="PENDING",
                            requested_by=PARTNER,
                            requested_at=datetime.now(timezone.utc),
                        ))

                with pytest.raises(ConcurrentRequestError):
                    await store.call(insert_directly)

                return await store.call(lambda repo: workflow(repo).list_requests(deal_id=store.deal_id))

        requests = run(scenario())
        assert len(requests) == 1

    def test_rejected_requests_do_not_block(self, tmp_path):
        async def scenario():
            async with Store(tmp_path / "ledger.db") as store:
                first = await submit_and_approve(store, DistributionType.PARTIAL, 1000)
                await store.call(lambda repo: workflow(repo).reject(first.id, rejected_by=ADMIN, reason="resubmit"))
                second = await store.call(lambda repo: workflow(repo).create_request(
                    deal_id=store.deal_id,
                    distribution_type=DistributionType.PARTIAL,
                    total_amount=D(1200),
                    requested_by=PARTNER,
                ))
                pending = await store.call(lambda repo: workflow(repo).list_pending())
                return first, second, pending

        first, second, pending = run(scenario())
        assert [r.id for r in pending] == [second.id]
        assert second.request_number != first.request_number

    def test_request_numbers_are_unique_across_deals(self, tmp_path):
        prefix = f"PDR-{date.today():%Y%m%d}"

        async def scenario():
            async with Store(tmp_path / "ledger.db") as store:
                other_deal = await store.seed_deal(uuid.uuid4())
                third_deal = await store.seed_deal(uuid.uuid4())

                # A number issued before the day's counter row existed
                async def insert_directly(repo):
                    async with repo.transaction():
                        await repo.add_request(DistributionRequest(
                            id=uuid.uuid4(),
                            request_number=f"{prefix}-0005",
                            deal_id=third_deal,
                            distribution_type="PARTIAL",
                            total_amount=D(500),
                            status="REJECTED",
                            requested_by=PARTNER,
                            requested_at=datetime.now(timezone.utc),
                        ))

                await store.call(insert_directly)

                numbers = []
                for deal_id in (store.deal_id, other_deal, third_deal):
                    request = await store.call(lambda repo: workflow(repo).create_request(
                        deal_id=deal_id,
                        distribution_type=DistributionType.PARTIAL,
                        total_amount=D(1000),
                        requested_by=PARTNER,
                    ))
                    numbers.append(request.request_number)

                async def counter(repo):
                    result = await repo.db.execute(
                        select(DistributionRequestSequence.current_number)
                        .where(DistributionRequestSequence.prefix == prefix)
                    )
                    return result.scalar_one()

                return numbers, await store.call(counter)

        numbers, current = run(scenario())
        assert numbers == [f"{prefix}-0006", f"{prefix}-0007", f"{prefix}-0008"]
        assert current == 8


class TestOpenRequestConflict:

    @pytest.mark.parametrize("message", [
        'duplicate key value violates unique constraint "uq_distribution_requests_open_per_deal"',
        "UNIQUE constraint failed: distribution_requests.deal_id",
    ])
    def test_open_request_index_violation(self, message):
        assert _is_open_request_conflict(IntegrityError("INSERT", {}, Exception(message)))

    @pytest.mark.parametrize("message", [
        'insert or update on table "distribution_requests" violates foreign key constraint '
        '"distribution_requests_deal_id_fkey"\nDETAIL:  Key (deal_id)=(42) is not present in table "deals".',
        'duplicate key value violates unique constraint "distribution_requests_request_number_key"',
        "UNIQUE constraint failed: distribution_requests.request_number",
    ])
    def test_other_integrity_errors_do_not_match(self, message):
        assert not _is_open_request_conflict(IntegrityError("INSERT", {}, Exception(message)))
