from __future__ import annotations

from decimal import Decimal
from typing import Optional
from uuid import UUID


class SettlementEngineError(Exception):
    """Base class for every error raised by the settlement services."""


class AccountNotFoundError(SettlementEngineError):
    """Raised when an account id is missing from the store."""


class ContestNotFoundError(SettlementEngineError):
    """Raised when a contest id is missing from the store."""


class AlreadySettledError(SettlementEngineError):
    """Raised when settlement is attempted on a contest that is already settled."""


class NotReadyError(SettlementEngineError):
    """Raised when a contest's status does not allow settlement yet."""


class UnknownContestTypeError(SettlementEngineError):
    """Raised when a contest type has no settlement strategy."""


class InsufficientFundsError(SettlementEngineError):
    """Raised when a debit would drop a balance below zero."""


class InvalidAmountError(SettlementEngineError, ValueError):
    """Raised for zero, sub-cent or wrongly signed money amounts."""


class TransactionFailureError(SettlementEngineError):
    """Raised when the database rejects or aborts a unit of work."""


class DuplicateIdempotencyKeyError(SettlementEngineError):
    """Raised when an idempotency key is replayed for a different account or amount."""


class ReconciliationMismatch(SettlementEngineError):
    """Balance and ledger sum disagree. Raised only by strict reconciliation."""

    def __init__(self, account_id: UUID, discrepancy: Decimal) -> None:
        super().__init__(
            f"Account {account_id} balance is off its ledger by {discrepancy}"
        )
        self.account_id = account_id
        self.discrepancy = discrepancy


class RoomSizeMismatch(SettlementEngineError):
    """A fixed-pool room does not hold the expected number of entries. Non-fatal."""

    def __init__(self, room_id: Optional[str], found: int, expected: int) -> None:
        super().__init__(
            f"Room {room_id} has {found} entries, expected {expected}"
        )
        self.room_id = room_id
        self.found = found
        self.expected = expected
