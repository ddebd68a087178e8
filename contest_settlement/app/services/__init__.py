from .ledger import LedgerService
from .payouts import PayoutDistributor, payout_key
from .repository import ContestRepository, LedgerRepository
from .settlement import SettlementOrchestrator
from .strategies import (
    FixedPoolSettlement,
    SettlementStrategy,
    TieredPoolSettlement,
    assign_ranks,
    build_strategies,
)

__all__ = [
    "ContestRepository",
    "FixedPoolSettlement",
    "LedgerRepository",
    "LedgerService",
    "PayoutDistributor",
    "SettlementOrchestrator",
    "SettlementStrategy",
    "TieredPoolSettlement",
    "assign_ranks",
    "build_strategies",
    "payout_key",
]
