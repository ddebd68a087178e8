import threading
from concurrent.futures import ThreadPoolExecutor
from decimal import Decimal
from uuid import uuid4

import pytest
from sqlmodel import select

from ..core.errors import (
    AlreadySettledError,
    ContestNotFoundError,
    NotReadyError,
    UnknownContestTypeError,
)
from ..models import (
    ContestModel,
    ContestResultModel,
    ContestStatus,
    ContestType,
    EntryModel,
    EntryStatus,
)
from ..services import (
    FixedPoolSettlement,
    LedgerService,
    PayoutDistributor,
    SettlementOrchestrator,
    build_strategies,
)
from .conftest import MARKET_TABLE


def _contest(session_factory, contest_id) -> ContestModel:
    with session_factory() as session:
        return session.get(ContestModel, contest_id)


def _entry(session_factory, entry_id) -> EntryModel:
    with session_factory() as session:
        return session.get(EntryModel, entry_id)


def _results(session_factory, contest_id) -> list[ContestResultModel]:
    with session_factory() as session:
        stmt = select(ContestResultModel).where(ContestResultModel.contest_id == contest_id)
        return list(session.exec(stmt))


def test_fixed_pool_contest_pays_room_winner(
    orchestrator, ledger, make_contest, add_entries, session_factory
) -> None:
    contest_id = make_contest()
    entries = add_entries(contest_id, [150, 120, 90, 80, 70])

    result = orchestrator.settle_contest(contest_id)

    assert result.settled is True
    assert result.total_entries == 5
    assert result.rooms_settled == 1
    assert result.total_paid == Decimal("24.00")
    assert [winner.entry_id for winner in result.winners] == [entries[0][0]]

    balances = [ledger.get_account(account_id).balance for _, account_id in entries]
    assert balances == [Decimal("24.00")] + [Decimal("0.00")] * 4

    winner = _entry(session_factory, entries[0][0])
    assert (winner.final_rank, winner.prize_won) == (1, Decimal("24.00"))
    assert _entry(session_factory, entries[4][0]).final_rank == 5

    contest = _contest(session_factory, contest_id)
    assert contest.status == ContestStatus.SETTLED
    assert contest.settled_at is not None
    assert len(_results(session_factory, contest_id)) == 5


def test_rooms_settle_independently_and_wrong_sized_rooms_are_skipped(
    orchestrator, ledger, make_contest, add_entries, session_factory
) -> None:
    contest_id = make_contest()
    room_a = add_entries(contest_id, [150, 150, 90, 80, 70], room_id="room-a")
    room_b = add_entries(contest_id, [100, 100, 100, 100, 100], room_id="room-b")
    short = add_entries(contest_id, [300, 10, 5, 1], room_id="room-c")

    result = orchestrator.settle_contest(contest_id)

    assert result.rooms_settled == 2
    assert result.rooms_skipped == ["room-c"]
    assert result.total_entries == 10
    assert result.total_paid == Decimal("48.00")
    assert ledger.get_account(room_a[0][1]).balance == Decimal("12.00")
    assert ledger.get_account(room_a[1][1]).balance == Decimal("12.00")
    assert ledger.get_account(room_b[3][1]).balance == Decimal("4.80")
    assert ledger.get_account(short[0][1]).balance == Decimal("0.00")
    assert _entry(session_factory, short[0][0]).final_rank is None
    assert _contest(session_factory, contest_id).status == ContestStatus.SETTLED


def test_tiered_contest_pays_table_and_splits_ties(
    orchestrator, ledger, make_contest, add_entries, distributor
) -> None:
    contest_id = make_contest(ContestType.TIERED_POOL, payout_table=MARKET_TABLE)
    entries = add_entries(contest_id, [300, 300, 250, 200, 150, 100, 90, 80, 70, 60, 50, 40])

    result = orchestrator.settle_contest(contest_id)

    balances = [ledger.get_account(account_id).balance for _, account_id in entries]
    assert balances[:4] == [Decimal("20000.00"), Decimal("20000.00"), Decimal("10000.00"), Decimal("5000.00")]
    assert balances[9:] == [Decimal("1000.00"), Decimal("0.00"), Decimal("0.00")]
    assert result.total_paid == Decimal("65000.00")
    assert len(result.winners) == 10

    summary = distributor.payout_summary(contest_id)
    assert summary.discrepancy is False
    assert summary.ledger_entry_count == 10
    assert summary.total_ledger_credits == Decimal("65000.00")


def test_tiered_contest_without_entries_still_settles(orchestrator, make_contest, session_factory) -> None:
    contest_id = make_contest(ContestType.TIERED_POOL, payout_table=MARKET_TABLE)

    result = orchestrator.settle_contest(contest_id)

    assert result.total_entries == 0
    assert result.total_paid == Decimal("0.00")
    assert _contest(session_factory, contest_id).status == ContestStatus.SETTLED


def test_second_settlement_is_rejected_without_paying_again(
    orchestrator, ledger, make_contest, add_entries, winnings_entries
) -> None:
    contest_id = make_contest()
    entries = add_entries(contest_id, [5, 4, 3, 2, 1])
    orchestrator.settle_contest(contest_id)

    with pytest.raises(AlreadySettledError):
        orchestrator.settle_contest(contest_id)

    assert ledger.get_account(entries[0][1]).balance == Decimal("24.00")
    assert len(winnings_entries()) == 1


@pytest.mark.parametrize(
    "status", [ContestStatus.OPEN, ContestStatus.CANCELLED]
)
def test_contest_that_is_not_finished_cannot_settle(
    orchestrator, make_contest, add_entries, session_factory, winnings_entries, status
) -> None:
    contest_id = make_contest(status=status)
    add_entries(contest_id, [5, 4, 3, 2, 1])

    with pytest.raises(NotReadyError):
        orchestrator.settle_contest(contest_id)

    assert _contest(session_factory, contest_id).status == status
    assert winnings_entries() == []


def test_full_open_contest_is_closed_then_settled(
    orchestrator, make_contest, add_entries, session_factory
) -> None:
    contest_id = make_contest(status=ContestStatus.OPEN, max_entries=5, current_entries=5)
    add_entries(contest_id, [5, 4, 3, 2, 1])

    result = orchestrator.settle_contest(contest_id)

    assert result.settled is True
    assert _contest(session_factory, contest_id).status == ContestStatus.SETTLED


def test_missing_contest(orchestrator) -> None:
    with pytest.raises(ContestNotFoundError):
        orchestrator.settle_contest(uuid4())


def test_contest_type_without_strategy_is_rejected(
    orchestrator, make_contest, add_entries, session_factory
) -> None:
    contest_id = make_contest("head-to-head")
    add_entries(contest_id, [5, 4])

    with pytest.raises(UnknownContestTypeError):
        orchestrator.settle_contest(contest_id)

    assert _contest(session_factory, contest_id).status == ContestStatus.COMPLETED


def test_orchestrator_needs_a_strategy_for_every_contest_type(
    session_factory, ledger, distributor, settings
) -> None:
    with pytest.raises(UnknownContestTypeError, match="tiered-pool"):
        SettlementOrchestrator(
            session_factory,
            ledger,
            distributor,
            {ContestType.FIXED_POOL: FixedPoolSettlement(distributor, settings)},
            settings,
        )


class FlakyLedger(LedgerService):
    """Fails the n-th winnings credit once, as a dropped connection would."""

    def __init__(self, *args, fail_on: int, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self.fail_on = fail_on
        self.calls = 0

    def credit_winnings(self, *args, **kwargs):
        self.calls += 1
        if self.calls == self.fail_on:
            raise RuntimeError("connection reset while crediting winnings")
        return super().credit_winnings(*args, **kwargs)


def test_failure_mid_payout_rolls_back_everything_and_retry_succeeds(
    session_factory, settings, orchestrator, ledger, make_contest, add_entries, winnings_entries
) -> None:
    contest_id = make_contest()
    entries = add_entries(contest_id, [100, 100, 100, 100, 100])

    flaky = FlakyLedger(session_factory, settings, fail_on=2)
    flaky_distributor = PayoutDistributor(flaky)
    flaky_orchestrator = SettlementOrchestrator(
        session_factory, flaky, flaky_distributor, build_strategies(flaky_distributor, settings), settings
    )

    with pytest.raises(RuntimeError):
        flaky_orchestrator.settle_contest(contest_id)

    assert winnings_entries() == []
    assert all(ledger.get_account(account_id).balance == Decimal("0.00") for _, account_id in entries)
    assert _results(session_factory, contest_id) == []
    assert _entry(session_factory, entries[0][0]).final_rank is None
    assert _contest(session_factory, contest_id).status == ContestStatus.COMPLETED

    result = orchestrator.settle_contest(contest_id)

    assert result.total_paid == Decimal("24.00")
    assert all(ledger.get_account(account_id).balance == Decimal("4.80") for _, account_id in entries)


def test_concurrent_settlements_pay_exactly_once(
    orchestrator, ledger, make_contest, add_entries, winnings_entries
) -> None:
    contest_id = make_contest()
    entries = add_entries(contest_id, [150, 150, 90, 80, 70])
    barrier = threading.Barrier(2)

    def _attempt():
        barrier.wait()
        try:
            return orchestrator.settle_contest(contest_id)
        except AlreadySettledError as exc:
            return exc

    with ThreadPoolExecutor(max_workers=2) as pool:
        outcomes = list(pool.map(lambda _: _attempt(), range(2)))

    assert sum(isinstance(outcome, AlreadySettledError) for outcome in outcomes) == 1
    assert sum(not isinstance(outcome, Exception) for outcome in outcomes) == 1
    assert len(winnings_entries()) == 2
    assert ledger.get_account(entries[0][1]).balance == Decimal("12.00")
    assert ledger.get_account(entries[1][1]).balance == Decimal("12.00")


def test_settle_all_ready_isolates_failures(
    orchestrator, make_contest, add_entries, session_factory
) -> None:
    good = make_contest()
    add_entries(good, [5, 4, 3, 2, 1])
    bad = make_contest("head-to-head")
    add_entries(bad, [5, 4])
    not_done = make_contest(status=ContestStatus.IN_PROGRESS)

    batch = orchestrator.settle_all_ready()

    assert (batch.total, batch.successful, batch.failed) == (2, 1, 1)
    by_contest = {item.contest_id: item for item in batch.results}
    assert by_contest[good].success is True
    assert by_contest[bad].success is False
    assert "head-to-head" in by_contest[bad].error
    assert not_done not in by_contest
    assert _contest(session_factory, good).status == ContestStatus.SETTLED
    assert _contest(session_factory, bad).status == ContestStatus.COMPLETED


def test_preview_projects_prizes_and_writes_nothing(
    orchestrator, ledger, make_contest, add_entries, session_factory, winnings_entries
) -> None:
    contest_id = make_contest()
    entries = add_entries(contest_id, [150, 150, 90, 80, 70])
    add_entries(contest_id, [1, 2, 3], room_id="room-short")

    preview = orchestrator.preview_settlement(contest_id)

    assert preview.total_entries == 5
    assert preview.total_projected == Decimal("24.00")
    assert preview.declared_pool == Decimal("24.00")
    assert preview.difference == Decimal("0.00")
    assert preview.rooms_skipped == ["room-short"]
    assert [p.projected_prize for p in preview.entries[:2]] == [Decimal("12.00"), Decimal("12.00")]

    assert winnings_entries() == []
    assert ledger.get_account(entries[0][1]).balance == Decimal("0.00")
    assert _entry(session_factory, entries[0][0]).prize_won is None
    assert _contest(session_factory, contest_id).status == ContestStatus.COMPLETED


def test_readiness(orchestrator, make_contest, add_entries) -> None:
    ready = make_contest()
    add_entries(ready, [5, 4, 3, 2, 1])
    drafting = make_contest()
    add_entries(drafting, [0, 0], status=EntryStatus.DRAFTING)
    open_full = make_contest(status=ContestStatus.OPEN, max_entries=2, current_entries=2)
    open_filling = make_contest(status=ContestStatus.OPEN, max_entries=10, current_entries=2)

    assert orchestrator.readiness(ready).ready is True
    assert orchestrator.readiness(drafting).reason == "2 entries still pending/drafting"
    assert orchestrator.readiness(open_full).ready is True
    assert orchestrator.readiness(open_filling).reason == "Status is open"
    assert orchestrator.readiness(uuid4()).reason == "Contest not found"

    orchestrator.settle_contest(ready)
    assert orchestrator.readiness(ready).reason == "Already settled"


def test_summary_and_reconciliation_after_settlement(
    orchestrator, ledger, make_contest, add_entries, make_account
) -> None:
    contest_id = make_contest()
    add_entries(contest_id, [150, 150, 90, 80, 70])
    make_account(balance="50.00")

    orchestrator.settle_contest(contest_id)
    summary = orchestrator.settlement_summary(contest_id)

    assert summary.status == ContestStatus.SETTLED
    assert summary.total_entries == 5
    assert summary.winners_count == 2
    assert summary.total_prizes_paid == Decimal("24.00")
    assert [r.rank for r in summary.top_results] == [1, 1, 3, 4, 5]

    report = ledger.reconcile_all_accounts()
    assert report.total == 6
    assert report.reconciled == 6
    assert report.discrepancies == []


def test_tiered_table_above_prize_pool_is_not_settled(
    orchestrator, make_contest, add_entries, session_factory, winnings_entries
) -> None:
    contest_id = make_contest(
        ContestType.TIERED_POOL, prize_pool=Decimal("62000"), payout_table=MARKET_TABLE
    )
    add_entries(contest_id, [300, 250, 200, 150, 100])

    with pytest.raises(NotReadyError):
        orchestrator.settle_contest(contest_id)

    assert winnings_entries() == []
    assert _results(session_factory, contest_id) == []
    assert _contest(session_factory, contest_id).status == ContestStatus.COMPLETED


def test_fractional_scores_rank_exactly_after_storage(
    orchestrator, ledger, make_contest, add_entries, session_factory
) -> None:
    contest_id = make_contest()
    entries = add_entries(contest_id, ["100.0004", "100.0001", 90, 80, 70])

    result = orchestrator.settle_contest(contest_id)

    assert [winner.entry_id for winner in result.winners] == [entries[0][0]]
    assert ledger.get_account(entries[0][1]).balance == Decimal("24.00")
    assert ledger.get_account(entries[1][1]).balance == Decimal("0.00")
    assert _entry(session_factory, entries[1][0]).final_rank == 2
