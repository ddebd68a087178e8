from fastapi import Depends

from ..services import (
    LedgerService,
    PayoutDistributor,
    SettlementOrchestrator,
    build_strategies,
)
from .config import Settings, get_settings
from .db import SessionFactory, get_session_factory


def get_ledger_service(
    session_factory: SessionFactory = Depends(get_session_factory),
    settings: Settings = Depends(get_settings),
) -> LedgerService:
    return LedgerService(session_factory, settings)


def get_payout_distributor(
    ledger: LedgerService = Depends(get_ledger_service),
) -> PayoutDistributor:
    return PayoutDistributor(ledger)


def get_settlement_orchestrator(
    session_factory: SessionFactory = Depends(get_session_factory),
    ledger: LedgerService = Depends(get_ledger_service),
    distributor: PayoutDistributor = Depends(get_payout_distributor),
    settings: Settings = Depends(get_settings),
) -> SettlementOrchestrator:
    return SettlementOrchestrator(
        session_factory,
        ledger,
        distributor,
        build_strategies(distributor, settings),
        settings,
    )
