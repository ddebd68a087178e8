from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime
from decimal import Decimal
from itertools import groupby
from typing import Optional
from uuid import UUID

from pydantic import ValidationError
from sqlmodel import Session

from ..core.config import Settings, get_settings
from ..core.errors import NotReadyError, RoomSizeMismatch
from ..core.money import ZERO, floor_money, to_money, to_score
from ..models import (
    ContestModel,
    ContestType,
    EntryModel,
    EntryResult,
    PayoutRecipient,
    PayoutTier,
    ProjectedPrize,
    RankedEntry,
)
from .payouts import PayoutDistributor
from .repository import ContestRepository


logger = logging.getLogger(__name__)


@dataclass
class StrategyOutcome:
    total_entries: int = 0
    rooms_settled: int = 0
    rooms_skipped: list[str] = field(default_factory=list)
    results: list[EntryResult] = field(default_factory=list)
    total_paid: Decimal = ZERO

    def extend(self, results: list[EntryResult]) -> None:
        self.results.extend(results)
        self.total_entries += len(results)
        self.total_paid += sum((r.payout for r in results), ZERO)


def sort_entries(entries: Sequence[EntryModel]) -> list[EntryModel]:
    """Highest score first; equal scores by earliest entry, then id."""
    return sorted(entries, key=lambda e: (-to_score(e.total_score), e.created_at, e.id))


def assign_ranks(entries: Sequence[EntryModel]) -> list[RankedEntry]:
    """Standard competition ranking (1, 2, 2, 4) over score-sorted entries."""
    ranked: list[RankedEntry] = []
    current_rank = 0
    previous_score: Optional[Decimal] = None
    for position, entry in enumerate(sort_entries(entries), start=1):
        score = to_score(entry.total_score)
        if previous_score is None or score != previous_score:
            current_rank = position
        previous_score = score
        ranked.append(
            RankedEntry(
                entry_id=entry.id,
                account_id=entry.account_id,
                room_id=entry.room_id,
                total_score=score,
                created_at=entry.created_at,
                rank=current_rank,
            )
        )
    return ranked


class SettlementStrategy(ABC):
    """Ranking and result persistence shared by every contest type."""

    contest_type: ContestType

    def __init__(
        self,
        distributor: PayoutDistributor,
        settings: Optional[Settings] = None,
    ) -> None:
        self.distributor = distributor
        self.settings = settings or get_settings()

    def rank(
        self,
        session: Session,
        contest: ContestModel,
        room_id: Optional[str] = None,
        *,
        by_room: bool = False,
    ) -> list[RankedEntry]:
        entries = ContestRepository(session).ranked_entries(
            contest.id, room_id, by_room=by_room
        )
        return assign_ranks(entries)

    @abstractmethod
    def compute_prizes(
        self, ranked: Sequence[RankedEntry], contest: ContestModel
    ) -> dict[UUID, Decimal]:
        """Map every ranked entry id to the prize it is owed."""

    @abstractmethod
    def settle(self, session: Session, contest: ContestModel) -> StrategyOutcome:
        """Rank, price and pay the contest inside the caller's transaction."""

    @abstractmethod
    def preview(
        self, session: Session, contest: ContestModel
    ) -> tuple[list[ProjectedPrize], list[str]]:
        """Projected prizes and skipped rooms, without writing anything."""

    @abstractmethod
    def declared_pool(self, contest: ContestModel, rooms: int) -> Decimal:
        """Total the contest publishes as payable."""

    def apply_results(
        self,
        session: Session,
        contest: ContestModel,
        ranked: Sequence[RankedEntry],
        prizes: dict[UUID, Decimal],
    ) -> list[EntryResult]:
        """Store rank and prize on each entry, write its result row, pay winners."""
        repository = ContestRepository(session)
        settled_at = datetime.now(UTC)
        results: list[EntryResult] = []
        recipients: list[PayoutRecipient] = []

        for entry in ranked:
            prize = prizes.get(entry.entry_id, ZERO)
            repository.save_entry_result(entry.entry_id, entry.rank, prize)
            repository.add_result(
                contest_id=contest.id,
                entry_id=entry.entry_id,
                account_id=entry.account_id,
                room_id=entry.room_id,
                rank=entry.rank,
                total_score=entry.total_score,
                payout=prize,
                settled_at=settled_at,
            )
            results.append(
                EntryResult(
                    entry_id=entry.entry_id,
                    account_id=entry.account_id,
                    room_id=entry.room_id,
                    rank=entry.rank,
                    total_score=entry.total_score,
                    payout=prize,
                )
            )
            if prize > 0:
                recipients.append(
                    PayoutRecipient(
                        account_id=entry.account_id,
                        amount=prize,
                        rank=entry.rank,
                        entry_id=entry.entry_id,
                    )
                )

        session.flush()
        if recipients:
            self.distributor.payout(recipients, contest.id, session=session)
        return results

    def _project(
        self, ranked: Sequence[RankedEntry], prizes: dict[UUID, Decimal]
    ) -> list[ProjectedPrize]:
        return [
            ProjectedPrize(
                entry_id=entry.entry_id,
                account_id=entry.account_id,
                room_id=entry.room_id,
                rank=entry.rank,
                total_score=entry.total_score,
                projected_prize=prizes.get(entry.entry_id, ZERO),
            )
            for entry in ranked
        ]


class FixedPoolSettlement(SettlementStrategy):
    """Small rooms, one flat pool per room, winner(s) take all.

    Every entry tied on the room's top score splits the pool evenly;
    everyone else gets nothing. Rooms settle independently and a room
    with the wrong number of completed entries is skipped, not guessed at.
    """

    contest_type = ContestType.FIXED_POOL

    def room_pool(self, contest: ContestModel) -> Decimal:
        pool = to_money(contest.prize_pool)
        return pool if pool > 0 else self.settings.default_fixed_pool_prize

    def compute_prizes(
        self, ranked: Sequence[RankedEntry], contest: ContestModel
    ) -> dict[UUID, Decimal]:
        if not ranked:
            return {}
        top_score = max(entry.total_score for entry in ranked)
        winners = [entry for entry in ranked if entry.total_score == top_score]
        share = floor_money(self.room_pool(contest) / len(winners))
        return {
            entry.entry_id: share if entry.total_score == top_score else ZERO
            for entry in ranked
        }

    def check_room(self, room_id: Optional[str], ranked: Sequence[RankedEntry]) -> None:
        expected = self.settings.fixed_pool_room_size
        if len(ranked) != expected:
            raise RoomSizeMismatch(room_id, len(ranked), expected)

    def _rooms(self, session: Session, contest: ContestModel):
        for room_id in ContestRepository(session).room_ids(contest.id):
            ranked = self.rank(session, contest, room_id, by_room=True)
            try:
                self.check_room(room_id, ranked)
            except RoomSizeMismatch as mismatch:
                logger.warning(
                    "settlement.room_skipped",
                    extra={
                        "contest_id": str(contest.id),
                        "room_id": room_id,
                        "found": mismatch.found,
                        "expected": mismatch.expected,
                    },
                )
                yield room_id, None
                continue
            yield room_id, ranked

    def settle(self, session: Session, contest: ContestModel) -> StrategyOutcome:
        outcome = StrategyOutcome()
        for room_id, ranked in self._rooms(session, contest):
            if ranked is None:
                outcome.rooms_skipped.append(room_id or "unassigned")
                continue
            prizes = self.compute_prizes(ranked, contest)
            outcome.extend(self.apply_results(session, contest, ranked, prizes))
            outcome.rooms_settled += 1
        return outcome

    def preview(
        self, session: Session, contest: ContestModel
    ) -> tuple[list[ProjectedPrize], list[str]]:
        projected: list[ProjectedPrize] = []
        skipped: list[str] = []
        for room_id, ranked in self._rooms(session, contest):
            if ranked is None:
                skipped.append(room_id or "unassigned")
                continue
            projected.extend(self._project(ranked, self.compute_prizes(ranked, contest)))
        return projected, skipped

    def declared_pool(self, contest: ContestModel, rooms: int) -> Decimal:
        return self.room_pool(contest) * rooms


class TieredPoolSettlement(SettlementStrategy):
    """Large tournaments paid from a rank-indexed payout table.

    A group of entries tied on one score occupies a contiguous span of
    ranks. The group splits the table value of every rank in that span,
    ranks past the last paid one counting as zero, so ties that straddle
    the cash line never pay out more than the table publishes. A table
    that overlaps itself or publishes more than the prize pool is refused.
    """

    contest_type = ContestType.TIERED_POOL

    def payout_tiers(self, contest: ContestModel) -> list[PayoutTier]:
        if not contest.payout_table:
            raise NotReadyError(f"Contest {contest.id} has no payout table")
        try:
            tiers = [PayoutTier.model_validate(tier) for tier in contest.payout_table]
        except ValidationError as exc:
            raise NotReadyError(f"Contest {contest.id} has an invalid payout table: {exc}") from exc

        ordered = sorted(tiers, key=lambda tier: tier.first)
        for previous, tier in zip(ordered, ordered[1:]):
            if tier.first <= previous.last:
                raise NotReadyError(
                    f"Contest {contest.id} payout table overlaps at rank {tier.first}"
                )

        pool = to_money(contest.prize_pool)
        published = self.table_total(tiers)
        if pool > 0 and published > pool:
            raise NotReadyError(
                f"Contest {contest.id} payout table totals {published}, above its prize pool of {pool}"
            )
        return tiers

    @staticmethod
    def table_total(tiers: Sequence[PayoutTier]) -> Decimal:
        return sum(
            (to_money(tier.amount) * (tier.last - tier.first + 1) for tier in tiers),
            ZERO,
        )

    @staticmethod
    def prize_for_rank(rank: int, tiers: Sequence[PayoutTier]) -> Decimal:
        for tier in tiers:
            if tier.covers(rank):
                return to_money(tier.amount)
        return ZERO

    @staticmethod
    def last_paid_rank(tiers: Sequence[PayoutTier]) -> int:
        return max((tier.last for tier in tiers), default=0)

    def compute_prizes(
        self, ranked: Sequence[RankedEntry], contest: ContestModel
    ) -> dict[UUID, Decimal]:
        tiers = self.payout_tiers(contest)
        last_paid = self.last_paid_rank(tiers)
        prizes: dict[UUID, Decimal] = {}

        # ranked is score-descending, so equal scores are adjacent
        for score, group in groupby(ranked, key=lambda entry: entry.total_score):
            tied = list(group)
            first_rank = tied[0].rank
            last_rank = min(first_rank + len(tied) - 1, last_paid)
            span_total = sum(
                (self.prize_for_rank(rank, tiers) for rank in range(first_rank, last_rank + 1)),
                ZERO,
            )
            share = floor_money(span_total / len(tied))
            for entry in tied:
                prizes[entry.entry_id] = share

            if len(tied) > 1 and span_total > 0:
                logger.info(
                    "settlement.tie_split",
                    extra={
                        "contest_id": str(contest.id),
                        "rank": first_rank,
                        "tied": len(tied),
                        "span_total": str(span_total),
                        "share": str(share),
                    },
                )
        return prizes

    def settle(self, session: Session, contest: ContestModel) -> StrategyOutcome:
        outcome = StrategyOutcome()
        ranked = self.rank(session, contest)
        if not ranked:
            logger.warning("settlement.no_entries", extra={"contest_id": str(contest.id)})
            return outcome
        prizes = self.compute_prizes(ranked, contest)
        outcome.extend(self.apply_results(session, contest, ranked, prizes))
        return outcome

    def preview(
        self, session: Session, contest: ContestModel
    ) -> tuple[list[ProjectedPrize], list[str]]:
        ranked = self.rank(session, contest)
        return self._project(ranked, self.compute_prizes(ranked, contest)), []

    def declared_pool(self, contest: ContestModel, rooms: int) -> Decimal:
        pool = to_money(contest.prize_pool)
        if pool > 0:
            return pool
        return self.table_total(self.payout_tiers(contest))


def build_strategies(
    distributor: PayoutDistributor,
    settings: Optional[Settings] = None,
) -> dict[ContestType, SettlementStrategy]:
    strategies: list[SettlementStrategy] = [
        FixedPoolSettlement(distributor, settings),
        TieredPoolSettlement(distributor, settings),
    ]
    return {strategy.contest_type: strategy for strategy in strategies}
