from __future__ import annotations

import logging
from collections.abc import Mapping
from datetime import UTC, datetime
from typing import Optional
from uuid import UUID

from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session

from ..core.config import Settings, get_settings
from ..core.db import SessionFactory, begin_serializable
from ..core.errors import (
    AlreadySettledError,
    ContestNotFoundError,
    NotReadyError,
    TransactionFailureError,
    UnknownContestTypeError,
)
from ..core.money import ZERO, to_money, to_score
from ..models import (
    BatchItem,
    BatchSettlementResult,
    ContestModel,
    ContestStatus,
    ContestType,
    EntryResult,
    ReadinessResponse,
    SettlementPreview,
    SettlementResult,
    SettlementSummary,
)
from .ledger import LedgerService
from .payouts import PayoutDistributor
from .repository import ContestRepository
from .strategies import SettlementStrategy, StrategyOutcome


logger = logging.getLogger(__name__)

SETTLEABLE_STATUSES = frozenset(
    {ContestStatus.COMPLETED, ContestStatus.IN_PROGRESS, ContestStatus.CLOSED}
)


class SettlementOrchestrator:
    """Settles each contest exactly once.

    The contest row is read under a row lock inside a serializable
    transaction, so concurrent attempts on one contest are totally ordered:
    the loser sees the winner's committed ``settled`` status. Every write of
    a settlement (results, entry prizes, ledger credits, status) commits
    together or not at all.
    """

    def __init__(
        self,
        session_factory: SessionFactory,
        ledger: LedgerService,
        distributor: PayoutDistributor,
        strategies: Mapping[ContestType, SettlementStrategy],
        settings: Optional[Settings] = None,
    ) -> None:
        missing = [contest_type.value for contest_type in ContestType if contest_type not in strategies]
        if missing:
            raise UnknownContestTypeError(
                f"No settlement strategy for contest type(s): {', '.join(missing)}"
            )
        for contest_type, strategy in strategies.items():
            if strategy.contest_type != contest_type:
                raise ValueError(
                    f"{type(strategy).__name__} cannot settle {contest_type.value} contests"
                )

        self.session_factory = session_factory
        self.ledger = ledger
        self.distributor = distributor
        self.strategies = dict(strategies)
        self.settings = settings or get_settings()

    # ------------------------------------------------------------------
    # Helper utilities
    # ------------------------------------------------------------------
    def resolve_strategy(self, contest_type: str) -> SettlementStrategy:
        try:
            return self.strategies[ContestType(contest_type)]
        except ValueError as exc:
            raise UnknownContestTypeError(
                f"No settlement strategy for contest type: {contest_type}"
            ) from exc

    def _get_contest(self, session: Session, contest_id: UUID) -> ContestModel:
        contest = ContestRepository(session).get_contest(contest_id)
        if contest is None:
            raise ContestNotFoundError(f"Contest {contest_id} not found")
        return contest

    def _close_if_full(self, session: Session, contest: ContestModel) -> None:
        # Repairs an upstream race that leaves full contests open; belongs in
        # the contest lifecycle, not here.
        if (
            contest.status == ContestStatus.OPEN
            and contest.max_entries > 0
            and contest.current_entries >= contest.max_entries
        ):
            logger.warning(
                "settlement.auto_closed",
                extra={
                    "contest_id": str(contest.id),
                    "current_entries": contest.current_entries,
                    "max_entries": contest.max_entries,
                },
            )
            contest.status = ContestStatus.CLOSED
            session.add(contest)
            session.flush()

    def _to_result(
        self, contest: ContestModel, outcome: StrategyOutcome
    ) -> SettlementResult:
        return SettlementResult(
            settled=True,
            contest_id=contest.id,
            contest_name=contest.name,
            contest_type=ContestType(contest.contest_type),
            total_entries=outcome.total_entries,
            rooms_settled=outcome.rooms_settled,
            rooms_skipped=outcome.rooms_skipped,
            total_paid=outcome.total_paid,
            winners=[result for result in outcome.results if result.payout > 0],
            results=outcome.results,
        )

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    def settle_contest(self, contest_id: UUID) -> SettlementResult:
        logger.info("settlement.started", extra={"contest_id": str(contest_id)})
        with self.session_factory() as session:
            try:
                begin_serializable(session)
                repository = ContestRepository(session)
                contest = repository.lock_contest(contest_id)
                if contest is None:
                    raise ContestNotFoundError(f"Contest {contest_id} not found")
                if contest.status == ContestStatus.SETTLED:
                    raise AlreadySettledError(f"Contest {contest_id} is already settled")

                self._close_if_full(session, contest)
                if contest.status not in SETTLEABLE_STATUSES:
                    raise NotReadyError(
                        f"Contest {contest_id} cannot be settled - status is {contest.status.value}"
                    )

                strategy = self.resolve_strategy(contest.contest_type)
                outcome = strategy.settle(session, contest)
                repository.mark_settled(contest, datetime.now(UTC))
                result = self._to_result(contest, outcome)
                session.commit()
            except SQLAlchemyError as exc:
                session.rollback()
                logger.error(
                    "settlement.failed",
                    extra={"contest_id": str(contest_id), "error": str(exc)},
                )
                raise TransactionFailureError(f"Settlement of {contest_id} failed: {exc}") from exc
            except Exception as exc:
                session.rollback()
                logger.error(
                    "settlement.failed",
                    extra={"contest_id": str(contest_id), "error": str(exc)},
                )
                raise

        logger.info(
            "settlement.completed",
            extra={
                "contest_id": str(contest_id),
                "total_entries": result.total_entries,
                "winners": len(result.winners),
                "total_paid": str(result.total_paid),
            },
        )
        return result

    def settle_all_ready(self) -> BatchSettlementResult:
        with self.session_factory() as session:
            contest_ids = ContestRepository(session).list_contest_ids(ContestStatus.COMPLETED)

        logger.info("settlement.batch_started", extra={"contests": len(contest_ids)})
        items: list[BatchItem] = []
        for contest_id in contest_ids:
            try:
                result = self.settle_contest(contest_id)
            except Exception as exc:
                logger.exception(
                    "settlement.batch_item_failed", extra={"contest_id": str(contest_id)}
                )
                items.append(BatchItem(contest_id=contest_id, success=False, error=str(exc)))
                continue
            items.append(BatchItem(contest_id=contest_id, success=True, result=result))

        successful = sum(1 for item in items if item.success)
        logger.info(
            "settlement.batch_completed",
            extra={"successful": successful, "failed": len(items) - successful},
        )
        return BatchSettlementResult(
            total=len(contest_ids),
            successful=successful,
            failed=len(items) - successful,
            results=items,
        )

    def preview_settlement(self, contest_id: UUID) -> SettlementPreview:
        """Project ranks and prizes for operator review. Writes nothing."""
        with self.session_factory() as session:
            contest = self._get_contest(session, contest_id)
            strategy = self.resolve_strategy(contest.contest_type)
            projected, skipped = strategy.preview(session, contest)
            rooms = len({entry.room_id for entry in projected})
            declared = strategy.declared_pool(contest, rooms)
            total = sum((entry.projected_prize for entry in projected), ZERO)
            return SettlementPreview(
                contest_id=contest.id,
                contest_name=contest.name,
                contest_type=ContestType(contest.contest_type),
                status=contest.status,
                total_entries=len(projected),
                total_projected=total,
                declared_pool=declared,
                difference=declared - total,
                rooms_skipped=skipped,
                entries=projected[: self.settings.preview_limit],
            )

    def readiness(self, contest_id: UUID) -> ReadinessResponse:
        with self.session_factory() as session:
            contest = ContestRepository(session).get_contest(contest_id)
            if contest is None:
                return ReadinessResponse(contest_id=contest_id, ready=False, reason="Contest not found")
            if contest.status == ContestStatus.SETTLED:
                return ReadinessResponse(contest_id=contest_id, ready=False, reason="Already settled")

            unfinished = ContestRepository(session).count_unfinished_entries(contest_id)
            if unfinished > 0:
                return ReadinessResponse(
                    contest_id=contest_id,
                    ready=False,
                    reason=f"{unfinished} entries still pending/drafting",
                )

            full = contest.max_entries > 0 and contest.current_entries >= contest.max_entries
            if contest.status not in SETTLEABLE_STATUSES and not (
                contest.status == ContestStatus.OPEN and full
            ):
                return ReadinessResponse(
                    contest_id=contest_id,
                    ready=False,
                    reason=f"Status is {contest.status.value}",
                )
            return ReadinessResponse(contest_id=contest_id, ready=True)

    def settlement_summary(self, contest_id: UUID) -> SettlementSummary:
        with self.session_factory() as session:
            contest = self._get_contest(session, contest_id)
            repository = ContestRepository(session)
            entries = repository.list_entries(contest_id)
            top = repository.list_results(contest_id, limit=self.settings.summary_limit)

            prizes = [to_money(entry.prize_won) for entry in entries]
            return SettlementSummary(
                contest_id=contest.id,
                contest_name=contest.name,
                contest_type=contest.contest_type,
                status=contest.status,
                settled_at=contest.settled_at,
                total_entries=len(entries),
                winners_count=sum(1 for prize in prizes if prize > 0),
                total_prizes_paid=sum(prizes, ZERO),
                top_results=[
                    EntryResult(
                        entry_id=row.entry_id,
                        account_id=row.account_id,
                        room_id=row.room_id,
                        rank=row.final_rank,
                        total_score=to_score(row.total_score),
                        payout=to_money(row.payout),
                    )
                    for row in top
                ],
            )
