"""Seed a funded demo deal for trying the distribution endpoints locally."""
import asyncio
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent))

from decimal import Decimal
import uuid

from app.database import async_session_factory, init_db
from app.models.deal import Deal, DealStatus, Investment
from app.services.ledger_repository import SqlAlchemyLedgerRepository


async def seed():
    """Seed a 10,000 deal split 60/40 between two investors."""
    await init_db()

    async with async_session_factory() as db:
        repo = SqlAlchemyLedgerRepository(db)
        print("Seeding data...")

        partner_id = uuid.uuid4()
        investors = [
            (uuid.uuid4(), Decimal("6000.00")),
            (uuid.uuid4(), Decimal("4000.00")),
        ]

        async with repo.transaction():
            deal = await repo.add_deal(Deal(
                id=uuid.uuid4(),
                title="Demo Warehouse Deal",
                partner_id=partner_id,
                total_capital=sum(amount for _, amount in investors),
                status=DealStatus.FUNDED.value,
            ))
            for investor_id, amount in investors:
                await repo.add_investment(Investment(
                    id=uuid.uuid4(),
                    deal_id=deal.id,
                    investor_id=investor_id,
                    amount=amount,
                ))

        print(f"Deal:     {deal.id} ({deal.total_capital})")
        print(f"Partner:  {partner_id}")
        for investor_id, amount in investors:
            print(f"Investor: {investor_id} ({amount})")
        print("Seeding completed successfully!")


if __name__ == "__main__":
    asyncio.run(seed())
