"""
Deal and Investment models.

A deal's capital is the sum of its active investments once funding
closes. The distribution engine only ever reads these rows; the funding
subsystem owns writes to `total_capital` and `investments`, and the
settlement executor owns the final `status` transition.
"""
import uuid
from datetime import datetime, timezone
from enum import Enum
from decimal import Decimal

from sqlalchemy import String, DateTime, ForeignKey, Index
from sqlalchemy.orm import Mapped, mapped_column

from app.database import Base
from app.db_types import UUIDType, MoneyType


class DealStatus(str, Enum):
    """Lifecycle status of a deal."""
    DRAFT = "DRAFT"
    ACTIVE = "ACTIVE"          # Open for funding
    FUNDED = "FUNDED"          # Funding closed, capital fixed
    COMPLETED = "COMPLETED"    # FINAL distribution settled
    CANCELLED = "CANCELLED"


class InvestmentStatus(str, Enum):
    """Status of a single investment."""
    ACTIVE = "ACTIVE"
    CANCELLED = "CANCELLED"


class Deal(Base):
    """
    Investment deal raised by a partner.

    `total_capital` is fixed once funding closes and must always equal the
    sum of ACTIVE investments (checked, never repaired, by DealAccount).
    """
    __tablename__ = "deals"

    id: Mapped[uuid.UUID] = mapped_column(
        UUIDType,
        primary_key=True,
        default=uuid.uuid4
    )
    title: Mapped[str] = mapped_column(String(200), nullable=False)
    partner_id: Mapped[uuid.UUID] = mapped_column(
        UUIDType,
        nullable=False,
        index=True,
        comment="Partner who owns the deal"
    )
    total_capital: Mapped[Decimal] = mapped_column(
        MoneyType,
        nullable=False,
        default=Decimal("0"),
        comment="Sum of active investments once funding closes"
    )
    status: Mapped[str] = mapped_column(
        String(50),
        default="ACTIVE",
        nullable=False,
        index=True,
        comment="DRAFT, ACTIVE, FUNDED, COMPLETED, CANCELLED"
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
        nullable=False
    )

    def __repr__(self) -> str:
        return f"<Deal(title='{self.title}', capital={self.total_capital}, status='{self.status}')>"


class Investment(Base):
    """Capital contributed by one investor to one deal. Immutable after creation."""
    __tablename__ = "investments"
    __table_args__ = (
        Index("ix_investments_deal_investor", "deal_id", "investor_id"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUIDType,
        primary_key=True,
        default=uuid.uuid4
    )
    deal_id: Mapped[uuid.UUID] = mapped_column(
        UUIDType,
        ForeignKey("deals.id", ondelete="RESTRICT"),
        nullable=False,
        index=True
    )
    investor_id: Mapped[uuid.UUID] = mapped_column(
        UUIDType,
        nullable=False,
        index=True
    )
    amount: Mapped[Decimal] = mapped_column(
        MoneyType,
        nullable=False,
        comment="Capital contributed"
    )
    status: Mapped[str] = mapped_column(
        String(50),
        default="ACTIVE",
        nullable=False,
        comment="ACTIVE, CANCELLED"
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False
    )

    def __repr__(self) -> str:
        return f"<Investment(deal_id={self.deal_id}, investor_id={self.investor_id}, amount={self.amount})>"
