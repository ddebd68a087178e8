from __future__ import annotations

import logging
from collections.abc import Iterable
from decimal import Decimal
from typing import Optional
from uuid import UUID

from sqlmodel import Session

from ..core.db import SessionFactory, begin_serializable
from ..core.money import ZERO, to_money
from ..models import (
    ContestPayoutSummary,
    LedgerCategory,
    PayoutRecipient,
    PayoutSummary,
)
from .ledger import LedgerService
from .repository import ContestRepository, LedgerRepository


logger = logging.getLogger(__name__)


def payout_key(contest_id: UUID, entry_id: UUID) -> str:
    """Idempotency key of the winnings credit for one contest entry."""
    return f"contest_{contest_id}_entry_{entry_id}"


class PayoutDistributor:
    """Credits a contest's prize winners through the ledger, all or nothing."""

    def __init__(
        self,
        ledger: LedgerService,
        session_factory: Optional[SessionFactory] = None,
    ) -> None:
        self.ledger = ledger
        self.session_factory = session_factory or ledger.session_factory

    def _credit_all(
        self,
        session: Session,
        recipients: list[PayoutRecipient],
        contest_id: UUID,
    ) -> PayoutSummary:
        credited = 0
        duplicates = 0
        total_paid = ZERO
        for recipient in recipients:
            record = self.ledger.credit_winnings(
                recipient.account_id,
                recipient.amount,
                contest_id,
                recipient.rank,
                session=session,
                idempotency_key=payout_key(contest_id, recipient.entry_id),
                details={"entry_id": str(recipient.entry_id)},
            )
            if record.duplicate:
                duplicates += 1
                logger.warning(
                    "payout.duplicate_blocked",
                    extra={
                        "contest_id": str(contest_id),
                        "entry_id": str(recipient.entry_id),
                        "account_id": str(recipient.account_id),
                    },
                )
                continue
            credited += 1
            total_paid += to_money(recipient.amount)
        return PayoutSummary(
            contest_id=contest_id,
            credited=credited,
            duplicates=duplicates,
            total_paid=total_paid,
        )

    def payout(
        self,
        recipients: Iterable[PayoutRecipient],
        contest_id: UUID,
        *,
        session: Optional[Session] = None,
    ) -> PayoutSummary:
        """Credit every recipient with a positive amount in one unit of work.

        Inside a caller's session the credits join the caller's transaction.
        Standalone, the batch commits once at the end; any failure rolls the
        whole batch back and is re-raised.
        """
        payable: list[PayoutRecipient] = []
        for recipient in recipients:
            if recipient.amount <= 0:
                logger.info(
                    "payout.skipped",
                    extra={
                        "contest_id": str(contest_id),
                        "entry_id": str(recipient.entry_id),
                        "amount": str(recipient.amount),
                    },
                )
                continue
            payable.append(recipient)

        if session is not None:
            return self._credit_all(session, payable, contest_id)

        with self.session_factory() as owned:
            begin_serializable(owned)
            try:
                summary = self._credit_all(owned, payable, contest_id)
                owned.commit()
            except Exception:
                owned.rollback()
                logger.error(
                    "payout.batch_failed",
                    extra={"contest_id": str(contest_id), "recipients": len(payable)},
                )
                raise

        logger.info(
            "payout.batch_completed",
            extra={
                "contest_id": str(contest_id),
                "credited": summary.credited,
                "duplicates": summary.duplicates,
                "total_paid": str(summary.total_paid),
            },
        )
        return summary

    def payout_summary(self, contest_id: UUID) -> ContestPayoutSummary:
        """Cross-check prizes stored on entries against the winnings ledger."""
        with self.session_factory() as session:
            entries = ContestRepository(session).list_entries(contest_id)
            credits = LedgerRepository(session).list_reference_entries(
                "contest", str(contest_id), LedgerCategory.CONTEST_WINNINGS
            )

        total_prizes = sum((to_money(e.prize_won) for e in entries), ZERO)
        total_credits = sum((to_money(c.amount) for c in credits), ZERO)
        discrepancy = abs(total_prizes - total_credits) > self.ledger.settings.reconciliation_tolerance
        if discrepancy:
            logger.warning(
                "payout.discrepancy",
                extra={
                    "contest_id": str(contest_id),
                    "entries_total": str(total_prizes),
                    "ledger_total": str(total_credits),
                },
            )
        return ContestPayoutSummary(
            contest_id=contest_id,
            total_entries=len(entries),
            winners_count=sum(1 for e in entries if to_money(e.prize_won) > Decimal("0")),
            total_prizes=total_prizes,
            total_ledger_credits=total_credits,
            ledger_entry_count=len(credits),
            discrepancy=discrepancy,
        )
