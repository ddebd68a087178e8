from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Any, Optional
from uuid import UUID

from sqlalchemy import func
from sqlmodel import Session, select

from ..models import (
    AccountModel,
    ContestModel,
    ContestResultModel,
    ContestStatus,
    EntryModel,
    EntryStatus,
    LedgerCategory,
    LedgerEntryModel,
)


class LedgerRepository:
    """Thin data access layer for accounts and ledger entries."""

    def __init__(self, session: Session) -> None:
        self.session = session

    # Account operations -------------------------------------------------
    def add_account(self, username: str) -> AccountModel:
        account = AccountModel(username=username)
        self.session.add(account)
        self.session.flush()
        self.session.refresh(account)
        return account

    def get_account(self, account_id: UUID) -> Optional[AccountModel]:
        return self.session.get(AccountModel, account_id)

    def lock_account(self, account_id: UUID) -> Optional[AccountModel]:
        stmt = (
            select(AccountModel)
            .where(AccountModel.id == account_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        return self.session.exec(stmt).first()

    def list_account_ids(self) -> list[UUID]:
        stmt = select(AccountModel.id).order_by(AccountModel.created_at)
        return list(self.session.exec(stmt))

    # Ledger entries -----------------------------------------------------
    def add_entry(
        self,
        *,
        account_id: UUID,
        amount: Decimal,
        balance_before: Decimal,
        balance_after: Decimal,
        category: LedgerCategory,
        reference_type: Optional[str],
        reference_id: Optional[str],
        description: Optional[str],
        admin_account_id: Optional[UUID],
        idempotency_key: Optional[str],
        details: Optional[dict[str, Any]],
    ) -> LedgerEntryModel:
        entry = LedgerEntryModel(
            account_id=account_id,
            amount=amount,
            balance_before=balance_before,
            balance_after=balance_after,
            category=category,
            reference_type=reference_type,
            reference_id=reference_id,
            description=description,
            admin_account_id=admin_account_id,
            idempotency_key=idempotency_key,
            details=details,
        )
        self.session.add(entry)
        self.session.flush()
        self.session.refresh(entry)
        return entry

    def find_by_idempotency_key(self, key: str) -> Optional[LedgerEntryModel]:
        stmt = select(LedgerEntryModel).where(LedgerEntryModel.idempotency_key == key)
        return self.session.exec(stmt).first()

    def list_entries(
        self,
        account_id: UUID,
        category: Optional[LedgerCategory] = None,
    ) -> list[LedgerEntryModel]:
        stmt = select(LedgerEntryModel).where(LedgerEntryModel.account_id == account_id)
        if category is not None:
            stmt = stmt.where(LedgerEntryModel.category == category)
        stmt = stmt.order_by(LedgerEntryModel.created_at.desc())
        return list(self.session.exec(stmt))

    def list_reference_entries(
        self,
        reference_type: str,
        reference_id: str,
        category: Optional[LedgerCategory] = None,
    ) -> list[LedgerEntryModel]:
        stmt = (
            select(LedgerEntryModel)
            .where(LedgerEntryModel.reference_type == reference_type)
            .where(LedgerEntryModel.reference_id == reference_id)
        )
        if category is not None:
            stmt = stmt.where(LedgerEntryModel.category == category)
        return list(self.session.exec(stmt.order_by(LedgerEntryModel.created_at)))

    def sum_entries(self, account_id: UUID) -> tuple[Any, int]:
        stmt = select(
            func.sum(LedgerEntryModel.amount), func.count(LedgerEntryModel.id)
        ).where(LedgerEntryModel.account_id == account_id)
        total, count = self.session.exec(stmt).one()
        return total, count

    def latest_entry(self, account_id: UUID) -> Optional[LedgerEntryModel]:
        stmt = (
            select(LedgerEntryModel)
            .where(LedgerEntryModel.account_id == account_id)
            .order_by(LedgerEntryModel.created_at.desc())
            .limit(1)
        )
        return self.session.exec(stmt).first()


class ContestRepository:
    """Reads and writes contest, entry and result rows for settlement."""

    def __init__(self, session: Session) -> None:
        self.session = session

    # Contests -----------------------------------------------------------
    def get_contest(self, contest_id: UUID) -> Optional[ContestModel]:
        return self.session.get(ContestModel, contest_id)

    def lock_contest(self, contest_id: UUID) -> Optional[ContestModel]:
        stmt = (
            select(ContestModel)
            .where(ContestModel.id == contest_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        return self.session.exec(stmt).first()

    def list_contest_ids(self, status: ContestStatus) -> list[UUID]:
        stmt = (
            select(ContestModel.id)
            .where(ContestModel.status == status)
            .order_by(ContestModel.created_at)
        )
        return list(self.session.exec(stmt))

    def mark_settled(self, contest: ContestModel, settled_at: datetime) -> None:
        contest.status = ContestStatus.SETTLED
        contest.settled_at = settled_at
        self.session.add(contest)
        self.session.flush()

    # Entries ------------------------------------------------------------
    def ranked_entries(
        self,
        contest_id: UUID,
        room_id: Optional[str] = None,
        *,
        by_room: bool = False,
    ) -> list[EntryModel]:
        stmt = (
            select(EntryModel)
            .where(EntryModel.contest_id == contest_id)
            .where(EntryModel.status == EntryStatus.COMPLETED)
        )
        if by_room:
            stmt = stmt.where(EntryModel.room_id == room_id)
        stmt = stmt.order_by(
            EntryModel.total_score.desc(),
            EntryModel.created_at.asc(),
            EntryModel.id.asc(),
        )
        return list(self.session.exec(stmt))

    def room_ids(self, contest_id: UUID) -> list[Optional[str]]:
        stmt = (
            select(EntryModel.room_id)
            .where(EntryModel.contest_id == contest_id)
            .where(EntryModel.status == EntryStatus.COMPLETED)
            .distinct()
            .order_by(EntryModel.room_id)
        )
        return list(self.session.exec(stmt))

    def list_entries(self, contest_id: UUID) -> list[EntryModel]:
        stmt = select(EntryModel).where(EntryModel.contest_id == contest_id)
        return list(self.session.exec(stmt))

    def count_unfinished_entries(self, contest_id: UUID) -> int:
        stmt = (
            select(func.count(EntryModel.id))
            .where(EntryModel.contest_id == contest_id)
            .where(EntryModel.status.in_([EntryStatus.PENDING, EntryStatus.DRAFTING]))
        )
        return self.session.exec(stmt).one()

    def save_entry_result(
        self, entry_id: UUID, rank: int, prize: Decimal
    ) -> EntryModel:
        entry = self.session.get(EntryModel, entry_id)
        entry.final_rank = rank
        entry.prize_won = prize
        self.session.add(entry)
        return entry

    # Results ------------------------------------------------------------
    def add_result(
        self,
        *,
        contest_id: UUID,
        entry_id: UUID,
        account_id: UUID,
        room_id: Optional[str],
        rank: int,
        total_score: Decimal,
        payout: Decimal,
        settled_at: datetime,
    ) -> ContestResultModel:
        result = ContestResultModel(
            contest_id=contest_id,
            entry_id=entry_id,
            account_id=account_id,
            room_id=room_id,
            final_rank=rank,
            total_score=total_score,
            payout=payout,
            settled_at=settled_at,
        )
        self.session.add(result)
        return result

    def list_results(
        self, contest_id: UUID, limit: Optional[int] = None
    ) -> list[ContestResultModel]:
        stmt = (
            select(ContestResultModel)
            .where(ContestResultModel.contest_id == contest_id)
            .order_by(ContestResultModel.final_rank, ContestResultModel.room_id)
        )
        if limit is not None:
            stmt = stmt.limit(limit)
        return list(self.session.exec(stmt))
