from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Header, status

from ..core.dependencies import get_ledger_service, get_settlement_orchestrator
from ..models import (
    AccountCreate,
    AccountResponse,
    BatchSettlementResult,
    LedgerCategory,
    LedgerRecord,
    MoneyMovementRequest,
    ReadinessResponse,
    ReconciliationReport,
    ReconciliationSummary,
    SettlementPreview,
    SettlementResult,
    SettlementSummary,
    StatementResponse,
)
from ..services import LedgerService, SettlementOrchestrator


router = APIRouter(prefix="/accounts", tags=["accounts"])

@router.post("", response_model=AccountResponse, status_code=status.HTTP_201_CREATED)
def create_account(
    payload: AccountCreate,
    service: LedgerService = Depends(get_ledger_service),
) -> AccountResponse:
    return service.create_account(payload)

@router.get("/{account_id}", response_model=AccountResponse)
def get_account(
    account_id: UUID,
    service: LedgerService = Depends(get_ledger_service),
) -> AccountResponse:
    return service.get_account(account_id)

@router.post("/{account_id}/deposit", response_model=LedgerRecord)
def deposit(
    account_id: UUID,
    payload: MoneyMovementRequest,
    service: LedgerService = Depends(get_ledger_service),
    idempotency_key: str = Header(..., convert_underscores=False, alias="Idempotency-Key"),
) -> LedgerRecord:
    return service.record(
        account_id,
        payload.amount,
        LedgerCategory.DEPOSIT,
        reference_type="payment",
        reference_id=payload.reference,
        description="Deposit",
        idempotency_key=idempotency_key,
    )

@router.post("/{account_id}/withdraw", response_model=LedgerRecord)
def withdraw(
    account_id: UUID,
    payload: MoneyMovementRequest,
    service: LedgerService = Depends(get_ledger_service),
    idempotency_key: str = Header(..., convert_underscores=False, alias="Idempotency-Key"),
) -> LedgerRecord:
    return service.record(
        account_id,
        -payload.amount,
        LedgerCategory.WITHDRAWAL,
        reference_type="withdrawal",
        reference_id=payload.reference,
        description="Withdrawal to bank",
        idempotency_key=idempotency_key,
    )

@router.get("/{account_id}/statement", response_model=StatementResponse)
def get_statement(
    account_id: UUID,
    limit: int = 50,
    cursor: str | None = None,
    category: Optional[LedgerCategory] = None,
    service: LedgerService = Depends(get_ledger_service),
) -> StatementResponse:
    return service.get_statement(account_id, limit=limit, cursor=cursor, category=category)

@router.get("/{account_id}/reconciliation", response_model=ReconciliationReport)
def reconcile_account(
    account_id: UUID,
    service: LedgerService = Depends(get_ledger_service),
) -> ReconciliationReport:
    return service.reconcile_account(account_id)

admin_router = APIRouter(prefix="/admin", tags=["admin"])

@admin_router.get("/settlement/status/{contest_id}", response_model=ReadinessResponse)
def settlement_status(
    contest_id: UUID,
    orchestrator: SettlementOrchestrator = Depends(get_settlement_orchestrator),
) -> ReadinessResponse:
    return orchestrator.readiness(contest_id)

@admin_router.get("/settlement/preview/{contest_id}", response_model=SettlementPreview)
def preview_settlement(
    contest_id: UUID,
    orchestrator: SettlementOrchestrator = Depends(get_settlement_orchestrator),
) -> SettlementPreview:
    return orchestrator.preview_settlement(contest_id)

@admin_router.post("/settlement/settle/{contest_id}", response_model=SettlementResult)
def settle_contest(
    contest_id: UUID,
    orchestrator: SettlementOrchestrator = Depends(get_settlement_orchestrator),
) -> SettlementResult:
    return orchestrator.settle_contest(contest_id)

@admin_router.post("/settlement/settle-all", response_model=BatchSettlementResult)
def settle_all_ready(
    orchestrator: SettlementOrchestrator = Depends(get_settlement_orchestrator),
) -> BatchSettlementResult:
    return orchestrator.settle_all_ready()

@admin_router.get("/settlement/summary/{contest_id}", response_model=SettlementSummary)
def settlement_summary(
    contest_id: UUID,
    orchestrator: SettlementOrchestrator = Depends(get_settlement_orchestrator),
) -> SettlementSummary:
    return orchestrator.settlement_summary(contest_id)

@admin_router.get("/reconciliation", response_model=ReconciliationSummary)
def reconcile_all_accounts(
    service: LedgerService = Depends(get_ledger_service),
) -> ReconciliationSummary:
    return service.reconcile_all_accounts()

__all__ = ["router", "admin_router"]
