from __future__ import annotations

import logging
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Optional
from uuid import UUID

from sqlalchemy import event, inspect
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session as OrmSession
from sqlmodel import Session

from ..core.config import Settings, get_settings
from ..core.db import SessionFactory
from ..core.errors import (
    AccountNotFoundError,
    DuplicateIdempotencyKeyError,
    InsufficientFundsError,
    InvalidAmountError,
    ReconciliationMismatch,
    TransactionFailureError,
)
from ..core.money import ZERO, is_whole_cents, to_money
from ..models import (
    AccountCreate,
    AccountModel,
    AccountResponse,
    LedgerCategory,
    LedgerEntryModel,
    LedgerEntryResponse,
    LedgerRecord,
    ReconciliationReport,
    ReconciliationSummary,
    StatementResponse,
)
from .repository import LedgerRepository


logger = logging.getLogger(__name__)

_AUTHORIZED_ACCOUNTS = "ledger.authorized_accounts"


@event.listens_for(OrmSession, "before_flush")
def _guard_balance_writes(session, flush_context, instances) -> None:
    """Reject any balance change that did not come from LedgerService.record."""
    authorized = session.info.get(_AUTHORIZED_ACCOUNTS, set())
    for obj in session.new:
        if isinstance(obj, AccountModel) and to_money(obj.balance) != ZERO:
            raise TransactionFailureError("Accounts must open with a zero balance")
    for obj in session.dirty:
        if not isinstance(obj, AccountModel) or obj.id in authorized:
            continue
        if inspect(obj).attrs.balance.history.has_changes():
            raise TransactionFailureError(
                f"Balance of account {obj.id} may only change through the ledger"
            )


class LedgerService:
    """The only path that changes an account balance.

    Every change appends one immutable LedgerEntry and updates the locked
    account row in the same unit of work. Callers that already hold a
    session (settlement, batch payouts) pass it in and own the commit;
    otherwise the ledger opens, commits and rolls back its own session.
    """

    def __init__(
        self,
        session_factory: SessionFactory,
        settings: Optional[Settings] = None,
    ) -> None:
        self.session_factory = session_factory
        self.settings = settings or get_settings()

    # ------------------------------------------------------------------
    # Helper utilities
    # ------------------------------------------------------------------
    @contextmanager
    def _unit_of_work(self, session: Optional[Session]) -> Iterator[Session]:
        if session is not None:
            yield session
            return
        with self.session_factory() as owned:
            try:
                yield owned
                owned.commit()
            except Exception:
                owned.rollback()
                raise

    def _validate_amount(self, amount: Any) -> Decimal:
        try:
            value = Decimal(str(amount))
        except InvalidOperation as exc:
            raise InvalidAmountError(f"Invalid amount: {amount!r}") from exc
        if not value.is_finite() or value == 0:
            raise InvalidAmountError("Transaction amount must be a non-zero number")
        if not is_whole_cents(value):
            raise InvalidAmountError(f"Amount {value} has sub-cent precision")
        return to_money(value)

    def _require_positive(self, amount: Any, what: str) -> Decimal:
        value = self._validate_amount(amount)
        if value <= 0:
            raise InvalidAmountError(f"{what} must be positive")
        return value

    def _check_replay(
        self, existing: LedgerEntryModel, account_id: UUID, amount: Decimal
    ) -> LedgerRecord:
        if existing.account_id != account_id or to_money(existing.amount) != amount:
            raise DuplicateIdempotencyKeyError(
                "Idempotency key was previously used with different parameters"
            )
        return self._to_record(existing, duplicate=True)

    def _to_record(self, entry: LedgerEntryModel, duplicate: bool) -> LedgerRecord:
        return LedgerRecord(
            entry=LedgerEntryResponse.model_validate(entry),
            balance_before=to_money(entry.balance_before),
            balance_after=to_money(entry.balance_after),
            duplicate=duplicate,
        )

    def _apply(
        self,
        session: Session,
        repository: LedgerRepository,
        account_id: UUID,
        amount: Decimal,
        category: LedgerCategory,
        **fields: Any,
    ) -> LedgerRecord:
        account = repository.lock_account(account_id)
        if account is None:
            raise AccountNotFoundError(f"Account {account_id} not found")

        before = to_money(account.balance)
        after = before + amount
        if after < ZERO:
            raise InsufficientFundsError(
                f"Insufficient balance. Current: {before}, attempted: {abs(amount)}"
            )

        idempotency_key = fields.get("idempotency_key")
        authorized = session.info.setdefault(_AUTHORIZED_ACCOUNTS, set())
        try:
            with session.begin_nested():
                authorized.add(account.id)
                try:
                    account.balance = after
                    session.add(account)
                    entry = repository.add_entry(
                        account_id=account_id,
                        amount=amount,
                        balance_before=before,
                        balance_after=after,
                        category=category,
                        **fields,
                    )
                finally:
                    authorized.discard(account.id)
        except IntegrityError:
            # a concurrent writer committed the same idempotency key first
            existing = (
                repository.find_by_idempotency_key(idempotency_key)
                if idempotency_key
                else None
            )
            if existing is None:
                raise
            return self._check_replay(existing, account_id, amount)

        logger.info(
            "ledger.recorded",
            extra={
                "account_id": str(account_id),
                "category": category.value,
                "amount": str(amount),
                "balance_before": str(before),
                "balance_after": str(after),
            },
        )
        return self._to_record(entry, duplicate=False)

    # ------------------------------------------------------------------
    # Core operation
    # ------------------------------------------------------------------
    def record(
        self,
        account_id: UUID,
        amount: Any,
        category: LedgerCategory | str,
        *,
        session: Optional[Session] = None,
        reference_type: Optional[str] = None,
        reference_id: Optional[str] = None,
        description: Optional[str] = None,
        admin_account_id: Optional[UUID] = None,
        details: Optional[dict[str, Any]] = None,
        idempotency_key: Optional[str] = None,
    ) -> LedgerRecord:
        """Apply one signed balance change and append its ledger entry.

        A repeated idempotency_key returns the original entry with
        duplicate=True and changes nothing; replaying it for another
        account or amount raises DuplicateIdempotencyKeyError.
        """
        value = self._validate_amount(amount)
        try:
            category = LedgerCategory(category)
        except ValueError as exc:
            raise ValueError(f"Invalid ledger category: {category}") from exc

        try:
            with self._unit_of_work(session) as uow:
                repository = LedgerRepository(uow)
                if idempotency_key:
                    existing = repository.find_by_idempotency_key(idempotency_key)
                    if existing is not None:
                        logger.info(
                            "ledger.duplicate",
                            extra={
                                "account_id": str(account_id),
                                "idempotency_key": idempotency_key,
                            },
                        )
                        return self._check_replay(existing, account_id, value)
                return self._apply(
                    uow,
                    repository,
                    account_id,
                    value,
                    category,
                    reference_type=reference_type,
                    reference_id=reference_id,
                    description=description,
                    admin_account_id=admin_account_id,
                    idempotency_key=idempotency_key,
                    details=details,
                )
        except SQLAlchemyError as exc:
            logger.error(
                "ledger.failed",
                extra={"account_id": str(account_id), "error": str(exc)},
            )
            raise TransactionFailureError(f"Ledger write failed: {exc}") from exc

    # ------------------------------------------------------------------
    # Convenience wrappers
    # ------------------------------------------------------------------
    def deduct_entry_fee(
        self, account_id: UUID, amount: Any, contest_id: UUID, contest_name: str, **options: Any
    ) -> LedgerRecord:
        value = self._require_positive(amount, "Entry fee")
        return self.record(
            account_id,
            -value,
            LedgerCategory.ENTRY_FEE,
            reference_type="contest",
            reference_id=str(contest_id),
            description=f"Entry fee for {contest_name}",
            details={"contest_name": contest_name},
            **options,
        )

    def refund_entry_fee(
        self, account_id: UUID, amount: Any, contest_id: UUID, contest_name: str, **options: Any
    ) -> LedgerRecord:
        value = self._require_positive(amount, "Refund amount")
        return self.record(
            account_id,
            value,
            LedgerCategory.ENTRY_REFUND,
            reference_type="contest",
            reference_id=str(contest_id),
            description=f"Refund for {contest_name} withdrawal",
            details={"contest_name": contest_name},
            **options,
        )

    def credit_winnings(
        self, account_id: UUID, amount: Any, contest_id: UUID, rank: int, **options: Any
    ) -> LedgerRecord:
        value = self._require_positive(amount, "Winnings")
        details = {"rank": rank, **options.pop("details", {})}
        return self.record(
            account_id,
            value,
            LedgerCategory.CONTEST_WINNINGS,
            reference_type="contest",
            reference_id=str(contest_id),
            description=f"Contest winnings - Rank #{rank}",
            details=details,
            **options,
        )

    def record_deposit(
        self, account_id: UUID, amount: Any, payment_id: str, **options: Any
    ) -> LedgerRecord:
        value = self._require_positive(amount, "Deposit amount")
        return self.record(
            account_id,
            value,
            LedgerCategory.DEPOSIT,
            reference_type="payment",
            reference_id=payment_id,
            description="Deposit",
            idempotency_key=f"deposit_{payment_id}",
            details={"payment_id": payment_id},
            **options,
        )

    def record_withdrawal(
        self, account_id: UUID, amount: Any, withdrawal_id: str, **options: Any
    ) -> LedgerRecord:
        value = self._require_positive(amount, "Withdrawal amount")
        return self.record(
            account_id,
            -value,
            LedgerCategory.WITHDRAWAL,
            reference_type="withdrawal",
            reference_id=withdrawal_id,
            description="Withdrawal to bank",
            idempotency_key=f"withdrawal_{withdrawal_id}",
            **options,
        )

    def add_promo_credit(
        self,
        account_id: UUID,
        amount: Any,
        reason: Optional[str],
        admin_account_id: Optional[UUID],
        **options: Any,
    ) -> LedgerRecord:
        value = self._require_positive(amount, "Promo credit")
        if not admin_account_id:
            raise ValueError("Admin account id required for promo credits")
        return self.record(
            account_id,
            value,
            LedgerCategory.PROMO_CREDIT,
            reference_type="admin_action",
            reference_id=str(admin_account_id),
            description=reason or "Promotional credit",
            admin_account_id=admin_account_id,
            **options,
        )

    def adjust_balance(
        self,
        account_id: UUID,
        amount: Any,
        reason: str,
        admin_account_id: Optional[UUID],
        **options: Any,
    ) -> LedgerRecord:
        if not admin_account_id:
            raise ValueError("Admin account id required for adjustments")
        if not reason or len(reason) < 10:
            raise ValueError("Adjustment requires a detailed reason (min 10 chars)")
        return self.record(
            account_id,
            amount,
            LedgerCategory.ADJUSTMENT,
            reference_type="admin_action",
            reference_id=str(admin_account_id),
            description=f"ADJUSTMENT: {reason}",
            admin_account_id=admin_account_id,
            **options,
        )

    # ------------------------------------------------------------------
    # Accounts and history
    # ------------------------------------------------------------------
    def create_account(self, payload: AccountCreate) -> AccountResponse:
        with self.session_factory() as session:
            try:
                account = LedgerRepository(session).add_account(payload.username)
                session.commit()
            except IntegrityError as exc:
                session.rollback()
                raise ValueError(f"Username {payload.username} is already taken") from exc
            logger.info(
                "account.created",
                extra={"account_id": str(account.id), "username": account.username},
            )
            return AccountResponse.model_validate(account)

    def get_account(self, account_id: UUID) -> AccountResponse:
        with self.session_factory() as session:
            account = LedgerRepository(session).get_account(account_id)
            if account is None:
                raise AccountNotFoundError(f"Account {account_id} not found")
            return AccountResponse.model_validate(account)

    def get_statement(
        self,
        account_id: UUID,
        limit: int = 50,
        cursor: Optional[str] = None,
        category: Optional[LedgerCategory] = None,
    ) -> StatementResponse:
        with self.session_factory() as session:
            repository = LedgerRepository(session)
            if repository.get_account(account_id) is None:
                raise AccountNotFoundError(f"Account {account_id} not found")

            entries = repository.list_entries(account_id, category)

            start_index = 0
            if cursor:
                try:
                    cursor_ts = datetime.fromisoformat(cursor)
                except ValueError as exc:
                    raise ValueError("Invalid cursor") from exc
                for idx, entry in enumerate(entries):
                    if entry.created_at.isoformat() == cursor_ts.isoformat():
                        start_index = idx + 1
                        break

            slice_entries = entries[start_index : start_index + limit]
            next_cursor = None
            if start_index + limit < len(entries):
                next_cursor = slice_entries[-1].created_at.isoformat()

            items = [LedgerEntryResponse.model_validate(entry) for entry in slice_entries]
            return StatementResponse(items=items, next_cursor=next_cursor)

    def get_reference_entries(
        self,
        reference_type: str,
        reference_id: str,
        category: Optional[LedgerCategory] = None,
    ) -> list[LedgerEntryResponse]:
        with self.session_factory() as session:
            entries = LedgerRepository(session).list_reference_entries(
                reference_type, reference_id, category
            )
            return [LedgerEntryResponse.model_validate(entry) for entry in entries]

    # ------------------------------------------------------------------
    # Reconciliation
    # ------------------------------------------------------------------
    def reconcile_account(
        self, account_id: UUID, *, strict: bool = False
    ) -> ReconciliationReport:
        """Compare the stored balance with the sum of the account's ledger.

        Read-only: a mismatch is logged and reported, never corrected. With
        strict=True it is raised as ReconciliationMismatch instead.
        """
        with self.session_factory() as session:
            repository = LedgerRepository(session)
            account = repository.get_account(account_id)
            if account is None:
                raise AccountNotFoundError(f"Account {account_id} not found")

            total, count = repository.sum_entries(account_id)
            latest = repository.latest_entry(account_id)

            ledger_sum = to_money(total)
            current_balance = to_money(account.balance)
            last_recorded = to_money(latest.balance_after) if latest else ZERO
            difference = current_balance - ledger_sum
            tolerance = self.settings.reconciliation_tolerance

            is_reconciled = (
                abs(difference) < tolerance
                and abs(current_balance - last_recorded) < tolerance
            )
            report = ReconciliationReport(
                account_id=account.id,
                username=account.username,
                current_balance=current_balance,
                ledger_sum=ledger_sum,
                entry_count=count,
                last_recorded_balance=last_recorded,
                discrepancy=ZERO if abs(difference) < tolerance else difference,
                is_reconciled=is_reconciled,
                last_entry_at=latest.created_at if latest else None,
            )

        if not is_reconciled:
            mismatch = ReconciliationMismatch(report.account_id, difference)
            logger.warning(
                "reconciliation.mismatch",
                extra={
                    "account_id": str(report.account_id),
                    "balance": str(current_balance),
                    "ledger_sum": str(ledger_sum),
                    "last_recorded_balance": str(last_recorded),
                },
            )
            if strict:
                raise mismatch
        return report

    def reconcile_all_accounts(self) -> ReconciliationSummary:
        with self.session_factory() as session:
            account_ids = LedgerRepository(session).list_account_ids()

        reports = [self.reconcile_account(account_id) for account_id in account_ids]
        discrepancies = [report for report in reports if not report.is_reconciled]
        logger.info(
            "reconciliation.report",
            extra={
                "total": len(reports),
                "reconciled": len(reports) - len(discrepancies),
                "discrepancies": len(discrepancies),
            },
        )
        return ReconciliationSummary(
            total=len(reports),
            reconciled=len(reports) - len(discrepancies),
            discrepancies=discrepancies,
        )
