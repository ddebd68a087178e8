from .db import Account as AccountModel
from .db import Contest as ContestModel
from .db import ContestResult as ContestResultModel
from .db import ContestStatus, ContestType, EntryStatus, LedgerCategory
from .db import Entry as EntryModel
from .db import LedgerEntry as LedgerEntryModel
from .schemas import (
    AccountCreate,
    AccountResponse,
    BatchItem,
    BatchSettlementResult,
    ContestPayoutSummary,
    EntryResult,
    LedgerEntryResponse,
    LedgerRecord,
    MoneyMovementRequest,
    PayoutRecipient,
    PayoutSummary,
    PayoutTier,
    ProjectedPrize,
    RankedEntry,
    ReadinessResponse,
    ReconciliationReport,
    ReconciliationSummary,
    SettlementPreview,
    SettlementResult,
    SettlementSummary,
    StatementResponse,
)

__all__ = [
    "AccountCreate",
    "AccountResponse",
    "BatchItem",
    "BatchSettlementResult",
    "ContestPayoutSummary",
    "EntryResult",
    "LedgerEntryResponse",
    "LedgerRecord",
    "MoneyMovementRequest",
    "PayoutRecipient",
    "PayoutSummary",
    "PayoutTier",
    "ProjectedPrize",
    "RankedEntry",
    "ReadinessResponse",
    "ReconciliationReport",
    "ReconciliationSummary",
    "SettlementPreview",
    "SettlementResult",
    "SettlementSummary",
    "StatementResponse",
    "ContestStatus",
    "ContestType",
    "EntryStatus",
    "LedgerCategory",
    "AccountModel",
    "ContestModel",
    "ContestResultModel",
    "EntryModel",
    "LedgerEntryModel",
]
