"""Investor wallet balances credited by settlements."""
import uuid
from datetime import datetime, timezone
from decimal import Decimal

from sqlalchemy import DateTime
from sqlalchemy.orm import Mapped, mapped_column

from app.database import Base
from app.db_types import UUIDType, MoneyType


class InvestorWallet(Base):
    """
    Cached wallet totals for an investor.

    These are display balances only. The distribution engine never reads
    them to decide anything; "already paid" is always derived from
    distribution_records.
    """
    __tablename__ = "investor_wallets"

    investor_id: Mapped[uuid.UUID] = mapped_column(UUIDType, primary_key=True)
    wallet_balance: Mapped[Decimal] = mapped_column(
        MoneyType,
        nullable=False,
        default=Decimal("0"),
        comment="Capital + profit credited, less withdrawals"
    )
    total_returns: Mapped[Decimal] = mapped_column(
        MoneyType,
        nullable=False,
        default=Decimal("0"),
        comment="Lifetime profit received (capital is not a return)"
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
        nullable=False
    )
