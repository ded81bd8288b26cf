"""
Shared fixtures for the distribution engine tests.

Async services are driven with asyncio.run from plain synchronous tests.
The standard deal is 10,000 of capital split 60/40 between investor A
and investor B; A's id sorts before B's so tie-breaks are predictable.
"""
import asyncio
import uuid
from decimal import Decimal

import pytest

from tests.fakes import InMemoryLedgerRepository, RecordingNotifier
from app.services.distribution_workflow import ApprovalWorkflow
from app.services.settlement_executor import SettlementExecutor


INVESTOR_A = uuid.UUID("00000000-0000-0000-0000-00000000000a")
INVESTOR_B = uuid.UUID("00000000-0000-0000-0000-00000000000b")
PARTNER = uuid.UUID("00000000-0000-0000-0000-0000000000f0")
ADMIN = uuid.UUID("00000000-0000-0000-0000-0000000000ad")


def D(value) -> Decimal:
    """Shorthand for Decimal money literals."""
    return Decimal(str(value))


def run(coro):
    return asyncio.run(coro)


@pytest.fixture
def repo():
    return InMemoryLedgerRepository()


@pytest.fixture
def deal(repo):
    return repo.seed_deal({INVESTOR_A: D("6000.00"), INVESTOR_B: D("4000.00")}, partner_id=PARTNER)


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def workflow(repo, notifier):
    return ApprovalWorkflow(repo, notifier)


@pytest.fixture
def executor(repo, notifier):
    return SettlementExecutor(repo, notifier, max_retries=3)


@pytest.fixture
def settle_flow(workflow, executor):
    """Create, approve and settle one request; returns the SettlementResult."""

    def _settle(deal_id, distribution_type, total_amount, **percents):
        async def _run():
            request = await workflow.create_request(
                deal_id=deal_id,
                distribution_type=distribution_type,
                total_amount=D(total_amount),
                requested_by=PARTNER,
                **{k: D(v) for k, v in percents.items()},
            )
            await workflow.approve(request.id, approved_by=ADMIN)
            return await executor.settle(request.id, performed_by=ADMIN)

        return run(_run())

    return _settle
