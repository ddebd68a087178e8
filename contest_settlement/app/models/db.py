from __future__ import annotations
from datetime import datetime, UTC
from decimal import Decimal
from enum import Enum
from typing import Any, Optional
from uuid import UUID, uuid4
from sqlalchemy import JSON, Column
from sqlmodel import Field, SQLModel


def _utcnow() -> datetime:
    return datetime.now(UTC)


class ContestType(str, Enum):
    FIXED_POOL = "fixed-pool"
    TIERED_POOL = "tiered-pool"


class ContestStatus(str, Enum):
    OPEN = "open"
    CLOSED = "closed"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    SETTLED = "settled"
    CANCELLED = "cancelled"


class EntryStatus(str, Enum):
    PENDING = "pending"
    DRAFTING = "drafting"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class LedgerCategory(str, Enum):
    ENTRY_FEE = "entry_fee"
    ENTRY_REFUND = "entry_refund"
    CONTEST_WINNINGS = "contest_winnings"
    DEPOSIT = "deposit"
    WITHDRAWAL = "withdrawal"
    ADJUSTMENT = "adjustment"
    PROMO_CREDIT = "promo_credit"


class Account(SQLModel, table=True):
    id: UUID = Field(default_factory=uuid4, primary_key=True, index=True)
    username: str = Field(index=True, unique=True)
    created_at: datetime = Field(default_factory=_utcnow)
    # written only by services.ledger, see _guard_balance_writes
    balance: Decimal = Field(default=Decimal("0.00"), max_digits=12, decimal_places=2)

class LedgerEntry(SQLModel, table=True):
    id: UUID = Field(default_factory=uuid4, primary_key=True, index=True)
    created_at: datetime = Field(default_factory=_utcnow, index=True)
    account_id: UUID = Field(foreign_key="account.id", index=True)
    amount: Decimal = Field(max_digits=12, decimal_places=2)
    balance_before: Decimal = Field(max_digits=12, decimal_places=2)
    balance_after: Decimal = Field(max_digits=12, decimal_places=2)
    category: LedgerCategory = Field(index=True)
    reference_type: Optional[str] = Field(default=None, index=True)
    reference_id: Optional[str] = Field(default=None, index=True)
    description: Optional[str] = None
    admin_account_id: Optional[UUID] = None
    idempotency_key: Optional[str] = Field(default=None, unique=True, index=True)
    details: Optional[dict[str, Any]] = Field(default=None, sa_column=Column(JSON))

class Contest(SQLModel, table=True):
    id: UUID = Field(default_factory=uuid4, primary_key=True, index=True)
    name: str
    # kept as text so an unrecognized type surfaces as UnknownContestTypeError
    contest_type: str = Field(index=True)
    status: ContestStatus = Field(default=ContestStatus.OPEN, index=True)
    prize_pool: Decimal = Field(default=Decimal("0.00"), max_digits=12, decimal_places=2)
    payout_table: Optional[list[dict[str, Any]]] = Field(default=None, sa_column=Column(JSON))
    entry_fee: Decimal = Field(default=Decimal("0.00"), max_digits=12, decimal_places=2)
    max_entries: int = 0
    current_entries: int = 0
    created_at: datetime = Field(default_factory=_utcnow)
    settled_at: Optional[datetime] = None

class Entry(SQLModel, table=True):
    id: UUID = Field(default_factory=uuid4, primary_key=True, index=True)
    contest_id: UUID = Field(foreign_key="contest.id", index=True)
    account_id: UUID = Field(foreign_key="account.id", index=True)
    room_id: Optional[str] = Field(default=None, index=True)
    status: EntryStatus = Field(default=EntryStatus.PENDING)
    total_score: Decimal = Field(default=Decimal("0"), max_digits=14, decimal_places=4)
    created_at: datetime = Field(default_factory=_utcnow)
    final_rank: Optional[int] = None
    prize_won: Optional[Decimal] = Field(default=None, max_digits=12, decimal_places=2)

class ContestResult(SQLModel, table=True):
    id: UUID = Field(default_factory=uuid4, primary_key=True, index=True)
    contest_id: UUID = Field(foreign_key="contest.id", index=True)
    entry_id: UUID = Field(foreign_key="entry.id", unique=True)
    account_id: UUID = Field(foreign_key="account.id", index=True)
    room_id: Optional[str] = None
    final_rank: int
    total_score: Decimal = Field(max_digits=14, decimal_places=4)
    payout: Decimal = Field(max_digits=12, decimal_places=2)
    settled_at: datetime = Field(default_factory=_utcnow)
