from datetime import UTC, datetime, timedelta
from decimal import Decimal
from typing import Optional
from uuid import UUID, uuid4

import pytest
from sqlmodel import Session, SQLModel, select

from ..core.config import Settings
from ..core.db import create_engine_for_url
from ..models import (
    AccountCreate,
    ContestModel,
    ContestStatus,
    ContestType,
    EntryModel,
    EntryStatus,
    LedgerCategory,
    LedgerEntryModel,
)
from ..services import (
    LedgerService,
    PayoutDistributor,
    SettlementOrchestrator,
    build_strategies,
)

MARKET_TABLE = [
    {"rank": 1, "amount": "25000"},
    {"rank": 2, "amount": "15000"},
    {"rank": 3, "amount": "10000"},
    {"rank_start": 4, "rank_end": 5, "amount": "5000"},
    {"rank_start": 6, "rank_end": 10, "amount": "1000"},
]


@pytest.fixture
def engine(tmp_path):
    engine = create_engine_for_url(f"sqlite:///{tmp_path / 'test.db'}")
    SQLModel.metadata.drop_all(engine)
    SQLModel.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    def _factory() -> Session:
        return Session(engine)

    return _factory


@pytest.fixture
def settings() -> Settings:
    return Settings(_env_file=None)


@pytest.fixture
def ledger(session_factory, settings) -> LedgerService:
    return LedgerService(session_factory, settings)


@pytest.fixture
def distributor(ledger) -> PayoutDistributor:
    return PayoutDistributor(ledger)


@pytest.fixture
def orchestrator(session_factory, ledger, distributor, settings) -> SettlementOrchestrator:
    return SettlementOrchestrator(
        session_factory,
        ledger,
        distributor,
        build_strategies(distributor, settings),
        settings,
    )


@pytest.fixture
def make_account(ledger):
    def _make(username: Optional[str] = None, balance: Optional[str] = None) -> UUID:
        account = ledger.create_account(
            AccountCreate(username=username or f"user-{uuid4().hex[:10]}")
        )
        if balance is not None:
            ledger.record_deposit(account.id, Decimal(balance), f"seed-{uuid4()}")
        return account.id

    return _make


@pytest.fixture
def make_contest(session_factory):
    def _make(
        contest_type: ContestType | str = ContestType.FIXED_POOL,
        status: ContestStatus = ContestStatus.COMPLETED,
        **fields,
    ) -> UUID:
        contest_type = getattr(contest_type, "value", contest_type)
        fields.setdefault("name", f"{contest_type} contest")
        if contest_type == ContestType.FIXED_POOL.value:
            fields.setdefault("prize_pool", Decimal("24.00"))
        with session_factory() as session:
            contest = ContestModel(contest_type=contest_type, status=status, **fields)
            contest_id = contest.id
            session.add(contest)
            session.commit()
        return contest_id

    return _make


@pytest.fixture
def add_entries(session_factory, make_account):
    """Add one entry per score, in entry-time order; returns (entry_id, account_id) pairs."""

    def _add(
        contest_id: UUID,
        scores,
        room_id: Optional[str] = "room-1",
        status: EntryStatus = EntryStatus.COMPLETED,
        started: datetime = datetime(2024, 9, 8, 13, 0, 0, tzinfo=UTC),
    ) -> list[tuple[UUID, UUID]]:
        accounts = [make_account() for _ in scores]
        created: list[tuple[UUID, UUID]] = []
        with session_factory() as session:
            for offset, (score, account_id) in enumerate(zip(scores, accounts)):
                entry = EntryModel(
                    contest_id=contest_id,
                    account_id=account_id,
                    room_id=room_id,
                    status=status,
                    total_score=Decimal(str(score)),
                    created_at=started + timedelta(seconds=offset),
                )
                created.append((entry.id, account_id))
                session.add(entry)
            session.commit()
        return created

    return _add


@pytest.fixture
def winnings_entries(session_factory):
    def _list() -> list[LedgerEntryModel]:
        with session_factory() as session:
            stmt = select(LedgerEntryModel).where(
                LedgerEntryModel.category == LedgerCategory.CONTEST_WINNINGS
            )
            return list(session.exec(stmt))

    return _list
