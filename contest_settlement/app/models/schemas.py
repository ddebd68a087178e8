from datetime import datetime
from decimal import Decimal
from typing import Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, model_validator

from .db import ContestStatus, ContestType, LedgerCategory


class AccountCreate(BaseModel):
    username: str = Field(..., min_length=1, description="Unique handle of the account holder")

class AccountResponse(BaseModel):
    id: UUID
    username: str
    created_at: datetime
    balance: Decimal = Field(..., ge=0)

    model_config = ConfigDict(from_attributes=True)

class LedgerEntryResponse(BaseModel):
    id: UUID
    created_at: datetime
    account_id: UUID
    amount: Decimal
    balance_before: Decimal
    balance_after: Decimal
    category: LedgerCategory
    reference_type: Optional[str] = None
    reference_id: Optional[str] = None
    description: Optional[str] = Field(default=None, description="Human-readable memo")
    idempotency_key: Optional[str] = None

    model_config = ConfigDict(from_attributes=True)

class LedgerRecord(BaseModel):
    """Outcome of one Ledger.record call."""

    entry: LedgerEntryResponse
    balance_before: Decimal
    balance_after: Decimal
    duplicate: bool = False

class MoneyMovementRequest(BaseModel):
    amount: Decimal = Field(..., gt=0, decimal_places=2)
    reference: str = Field(..., min_length=1, description="Provider payment or withdrawal id")

class StatementResponse(BaseModel):
    items: list[LedgerEntryResponse]
    next_cursor: Optional[str] = None

class ReconciliationReport(BaseModel):
    account_id: UUID
    username: str
    current_balance: Decimal
    ledger_sum: Decimal
    entry_count: int
    last_recorded_balance: Decimal
    discrepancy: Decimal
    is_reconciled: bool
    last_entry_at: Optional[datetime] = None

class ReconciliationSummary(BaseModel):
    total: int
    reconciled: int
    discrepancies: list[ReconciliationReport]

# ----------------------------------------------------------------------
# Payouts
# ----------------------------------------------------------------------
class PayoutRecipient(BaseModel):
    account_id: UUID
    amount: Decimal
    rank: int
    entry_id: UUID

class PayoutSummary(BaseModel):
    contest_id: UUID
    credited: int
    duplicates: int
    total_paid: Decimal

class ContestPayoutSummary(BaseModel):
    contest_id: UUID
    total_entries: int
    winners_count: int
    total_prizes: Decimal
    total_ledger_credits: Decimal
    ledger_entry_count: int
    discrepancy: bool

# ----------------------------------------------------------------------
# Settlement
# ----------------------------------------------------------------------
class PayoutTier(BaseModel):
    """One row of a tiered payout table: a single rank or an inclusive rank range."""

    rank: Optional[int] = Field(default=None, ge=1)
    rank_start: Optional[int] = Field(default=None, ge=1)
    rank_end: Optional[int] = Field(default=None, ge=1)
    amount: Decimal = Field(..., ge=0)

    @model_validator(mode="after")
    def _check_span(self) -> "PayoutTier":
        if self.rank is not None:
            if self.rank_start is not None or self.rank_end is not None:
                raise ValueError("A tier takes either rank or rank_start/rank_end")
        elif self.rank_start is None or self.rank_end is None:
            raise ValueError("A range tier needs both rank_start and rank_end")
        elif self.rank_end < self.rank_start:
            raise ValueError("rank_end must not precede rank_start")
        return self

    @property
    def first(self) -> int:
        return self.rank if self.rank is not None else self.rank_start

    @property
    def last(self) -> int:
        return self.rank if self.rank is not None else self.rank_end

    def covers(self, rank: int) -> bool:
        return self.first <= rank <= self.last

class RankedEntry(BaseModel):
    entry_id: UUID
    account_id: UUID
    room_id: Optional[str] = None
    total_score: Decimal
    created_at: datetime
    rank: int

class EntryResult(BaseModel):
    entry_id: UUID
    account_id: UUID
    room_id: Optional[str] = None
    rank: int
    total_score: Decimal
    payout: Decimal

class SettlementResult(BaseModel):
    settled: bool
    contest_id: UUID
    contest_name: str
    contest_type: ContestType
    total_entries: int
    rooms_settled: int = 0
    rooms_skipped: list[str] = Field(default_factory=list)
    total_paid: Decimal
    winners: list[EntryResult]
    results: list[EntryResult]

class BatchItem(BaseModel):
    contest_id: UUID
    success: bool
    result: Optional[SettlementResult] = None
    error: Optional[str] = None

class BatchSettlementResult(BaseModel):
    total: int
    successful: int
    failed: int
    results: list[BatchItem]

class ProjectedPrize(BaseModel):
    entry_id: UUID
    account_id: UUID
    room_id: Optional[str] = None
    rank: int
    total_score: Decimal
    projected_prize: Decimal

class SettlementPreview(BaseModel):
    contest_id: UUID
    contest_name: str
    contest_type: ContestType
    status: ContestStatus
    total_entries: int
    total_projected: Decimal
    declared_pool: Decimal
    difference: Decimal
    rooms_skipped: list[str] = Field(default_factory=list)
    entries: list[ProjectedPrize]

class ReadinessResponse(BaseModel):
    contest_id: UUID
    ready: bool
    reason: Optional[str] = None

class SettlementSummary(BaseModel):
    contest_id: UUID
    contest_name: str
    contest_type: str
    status: ContestStatus
    settled_at: Optional[datetime] = None
    total_entries: int
    winners_count: int
    total_prizes_paid: Decimal
    top_results: list[EntryResult]
