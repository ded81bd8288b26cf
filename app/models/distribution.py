"""
Profit & Capital Distribution models.

- DistributionRequest: a partner's payout proposal and its approval state
- DistributionRecord: per-investor money movement (append-only)
- PlatformLedgerEntry: platform-side commission / reserve movements
- DistributionRequestHistory: audit trail of every status transition
- DistributionRequestSequence: locked per-day counter for request numbers

Only one non-terminal (PENDING or APPROVED) request may exist per deal.
This is enforced by a partial unique index, so two admins or partners
racing each other are stopped by the database itself.
"""
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Optional
from decimal import Decimal

from sqlalchemy import String, DateTime, ForeignKey, Integer, Text, UniqueConstraint, Index, text
from sqlalchemy.orm import Mapped, mapped_column

from app.database import Base
from app.db_types import UUIDType, MoneyType, PercentType, JSONType


class DistributionType(str, Enum):
    """Kind of payout."""
    PARTIAL = "PARTIAL"  # Interim payout, may repeat
    FINAL = "FINAL"      # Returns remaining capital, reconciles profit, closes deal


class DistributionRequestStatus(str, Enum):
    """Status of a distribution request."""
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    COMPLETED = "COMPLETED"


class PlatformEntryType(str, Enum):
    """Platform-side ledger movements."""
    COMMISSION = "COMMISSION"
    RESERVE = "RESERVE"                  # Profit held back from a PARTIAL payout
    RESERVE_RELEASE = "RESERVE_RELEASE"  # Held reserve paid back to investors by the FINAL payout


OPEN_REQUEST_STATUSES = ("PENDING", "APPROVED")
OPEN_REQUEST_INDEX = "uq_distribution_requests_open_per_deal"
_OPEN_REQUEST_WHERE = text("status IN ('PENDING', 'APPROVED')")


class DistributionRequest(Base):
    """
    Partner-initiated payout proposal.

    Created PENDING, moved to APPROVED or REJECTED by an admin, and to
    COMPLETED only by the settlement executor.
    """
    __tablename__ = "distribution_requests"
    __table_args__ = (
        Index(
            OPEN_REQUEST_INDEX,
            "deal_id",
            unique=True,
            postgresql_where=_OPEN_REQUEST_WHERE,
            sqlite_where=_OPEN_REQUEST_WHERE,
        ),
        Index("ix_distribution_requests_deal_status", "deal_id", "status"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUIDType,
        primary_key=True,
        default=uuid.uuid4
    )

    # Request Number (auto-generated)
    request_number: Mapped[str] = mapped_column(
        String(30),
        unique=True,
        nullable=False,
        index=True,
        comment="Auto-generated: PDR-YYYYMMDD-XXXX"
    )

    deal_id: Mapped[uuid.UUID] = mapped_column(
        UUIDType,
        ForeignKey("deals.id", ondelete="RESTRICT"),
        nullable=False,
        index=True
    )
    distribution_type: Mapped[str] = mapped_column(
        String(50),
        nullable=False,
        comment="PARTIAL, FINAL"
    )

    # Proposal
    total_amount: Mapped[Decimal] = mapped_column(
        MoneyType,
        nullable=False,
        comment="Gross amount of this payout"
    )
    estimated_gain_percent: Mapped[Decimal] = mapped_column(
        PercentType,
        nullable=False,
        default=Decimal("0"),
        comment="Signed; negative means loss"
    )
    commission_percent: Mapped[Decimal] = mapped_column(
        PercentType,
        nullable=False,
        default=Decimal("0"),
        comment="Platform commission, charged on profit only"
    )
    reserve_percent: Mapped[Decimal] = mapped_column(
        PercentType,
        nullable=False,
        default=Decimal("0"),
        comment="Profit hold-back, PARTIAL only"
    )
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    status: Mapped[str] = mapped_column(
        String(50),
        default="PENDING",
        nullable=False,
        index=True,
        comment="PENDING, APPROVED, REJECTED, COMPLETED"
    )

    # Requester
    requested_by: Mapped[uuid.UUID] = mapped_column(
        UUIDType,
        nullable=False,
        comment="Partner who submitted the request"
    )
    requested_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False
    )

    # Review
    reviewed_by: Mapped[Optional[uuid.UUID]] = mapped_column(UUIDType, nullable=True)
    reviewed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    rejection_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Settlement
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    approved_plan: Mapped[Optional[dict]] = mapped_column(
        JSONType,
        nullable=True,
        comment="Plan as shown at approval time (informational, settlement recomputes)"
    )
    settlement_result: Mapped[Optional[dict]] = mapped_column(
        JSONType,
        nullable=True,
        comment="Plan actually applied; returned on repeated settlement calls"
    )

    def __repr__(self) -> str:
        return f"<DistributionRequest(number='{self.request_number}', type='{self.distribution_type}', status='{self.status}')>"


class DistributionRecord(Base):
    """
    Per-investor money movement produced by a settlement.

    Append-only: never updated or deleted. These rows are the only source
    of truth for what an investor has already received from a deal.
    """
    __tablename__ = "distribution_records"
    __table_args__ = (
        UniqueConstraint("request_id", "investor_id", name="uq_distribution_record_request_investor"),
        Index("ix_distribution_records_deal_investor", "deal_id", "investor_id"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUIDType,
        primary_key=True,
        default=uuid.uuid4
    )
    request_id: Mapped[uuid.UUID] = mapped_column(
        UUIDType,
        ForeignKey("distribution_requests.id", ondelete="RESTRICT"),
        nullable=False,
        index=True
    )
    deal_id: Mapped[uuid.UUID] = mapped_column(
        UUIDType,
        ForeignKey("deals.id", ondelete="RESTRICT"),
        nullable=False
    )
    investor_id: Mapped[uuid.UUID] = mapped_column(UUIDType, nullable=False, index=True)
    distribution_type: Mapped[str] = mapped_column(String(50), nullable=False)
    capital_amount: Mapped[Decimal] = mapped_column(MoneyType, nullable=False, default=Decimal("0"))
    profit_amount: Mapped[Decimal] = mapped_column(MoneyType, nullable=False, default=Decimal("0"))
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False
    )

    def __repr__(self) -> str:
        return f"<DistributionRecord(investor_id={self.investor_id}, capital={self.capital_amount}, profit={self.profit_amount})>"


class PlatformLedgerEntry(Base):
    """Platform-side commission and reserve movements for a settled request."""
    __tablename__ = "platform_ledger_entries"
    __table_args__ = (
        UniqueConstraint("request_id", "entry_type", name="uq_platform_entry_request_type"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUIDType,
        primary_key=True,
        default=uuid.uuid4
    )
    request_id: Mapped[uuid.UUID] = mapped_column(
        UUIDType,
        ForeignKey("distribution_requests.id", ondelete="RESTRICT"),
        nullable=False,
        index=True
    )
    deal_id: Mapped[uuid.UUID] = mapped_column(
        UUIDType,
        ForeignKey("deals.id", ondelete="RESTRICT"),
        nullable=False,
        index=True
    )
    entry_type: Mapped[str] = mapped_column(
        String(50),
        nullable=False,
        comment="COMMISSION, RESERVE, RESERVE_RELEASE"
    )
    amount: Mapped[Decimal] = mapped_column(MoneyType, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False
    )


class DistributionRequestHistory(Base):
    """Audit trail of distribution request transitions."""
    __tablename__ = "distribution_request_history"

    id: Mapped[uuid.UUID] = mapped_column(
        UUIDType,
        primary_key=True,
        default=uuid.uuid4
    )
    request_id: Mapped[uuid.UUID] = mapped_column(
        UUIDType,
        ForeignKey("distribution_requests.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    action: Mapped[str] = mapped_column(
        String(50),
        nullable=False,
        comment="SUBMITTED, APPROVED, REJECTED, SETTLED"
    )
    from_status: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    to_status: Mapped[str] = mapped_column(String(50), nullable=False)
    performed_by: Mapped[Optional[uuid.UUID]] = mapped_column(UUIDType, nullable=True)
    comments: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False
    )


class DistributionRequestSequence(Base):
    """
    Per-day counter behind request numbers.

    Example:
        prefix = "PDR-20261018"
        current_number = 7
        → next request number: PDR-20261018-0008

    The row is locked while a number is taken, so requests created for
    different deals at the same moment still get distinct numbers.
    """
    __tablename__ = "distribution_request_sequences"
    __table_args__ = (
        UniqueConstraint("prefix", name="uq_distribution_request_sequences_prefix"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUIDType,
        primary_key=True,
        default=uuid.uuid4
    )
    prefix: Mapped[str] = mapped_column(String(20), nullable=False)
    current_number: Mapped[int] = mapped_column(
        Integer,
        default=0,
        nullable=False,
        comment="Last used sequence number"
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
        nullable=False
    )
