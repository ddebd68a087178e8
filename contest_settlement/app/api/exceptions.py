from __future__ import annotations

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from ..core.errors import (
    AccountNotFoundError,
    AlreadySettledError,
    ContestNotFoundError,
    DuplicateIdempotencyKeyError,
    InsufficientFundsError,
    InvalidAmountError,
    NotReadyError,
    ReconciliationMismatch,
    TransactionFailureError,
    UnknownContestTypeError,
)


def register_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(AccountNotFoundError)
    @app.exception_handler(ContestNotFoundError)
    async def not_found_handler(request: Request, exc: Exception) -> JSONResponse:
        return JSONResponse(status_code=404, content={"detail": str(exc)})

    @app.exception_handler(InsufficientFundsError)
    @app.exception_handler(AlreadySettledError)
    @app.exception_handler(DuplicateIdempotencyKeyError)
    @app.exception_handler(ReconciliationMismatch)
    async def conflict_handler(request: Request, exc: Exception) -> JSONResponse:
        return JSONResponse(status_code=409, content={"detail": str(exc)})

    @app.exception_handler(NotReadyError)
    @app.exception_handler(UnknownContestTypeError)
    async def unprocessable_handler(request: Request, exc: Exception) -> JSONResponse:
        return JSONResponse(status_code=422, content={"detail": str(exc)})

    @app.exception_handler(TransactionFailureError)
    async def transaction_failure_handler(
        request: Request, exc: TransactionFailureError
    ) -> JSONResponse:
        return JSONResponse(status_code=500, content={"detail": str(exc)})

    @app.exception_handler(InvalidAmountError)
    @app.exception_handler(ValueError)
    async def value_error_handler(request: Request, exc: Exception) -> JSONResponse:
        return JSONResponse(status_code=400, content={"detail": str(exc)})
