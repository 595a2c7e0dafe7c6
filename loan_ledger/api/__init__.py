"""
Loan Ledger API Application Factory
"""

from typing import Optional

from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
import uvicorn

from .loans import router as loans_router
from .system import LedgerSystem
from .. import __version__
from ..config import get_config
from ..exceptions import (
    ConcurrencyConflict, DuplicateLoanId, InvalidPayment, InvalidTerms,
    LedgerError, NotFound, StorageError
)
from ..loans import LoanLedger
from ..logging_config import get_logger, setup_logging


# Checked in order; NotFound first so a missing installment maps to 404
ERROR_STATUS = [
    (NotFound, status.HTTP_404_NOT_FOUND),
    (InvalidTerms, status.HTTP_400_BAD_REQUEST),
    (InvalidPayment, status.HTTP_400_BAD_REQUEST),
    (DuplicateLoanId, status.HTTP_409_CONFLICT),
    (ConcurrencyConflict, status.HTTP_409_CONFLICT),
    (StorageError, status.HTTP_503_SERVICE_UNAVAILABLE),
]


def status_for(error: LedgerError) -> int:
    """HTTP status code for a ledger error"""
    for error_type, status_code in ERROR_STATUS:
        if isinstance(error, error_type):
            return status_code
    return status.HTTP_500_INTERNAL_SERVER_ERROR


def create_app(ledger: Optional[LoanLedger] = None) -> FastAPI:
    """
    Create and configure the FastAPI application

    Args:
        ledger: Ledger to serve; built from configuration when omitted
    """
    app = FastAPI(
        title="Loan Ledger API",
        description="Loans and salary advances with installment schedules and payment tracking",
        version=__version__,
        docs_url="/docs",
        redoc_url="/redoc"
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    if ledger is None:
        ledger = LedgerSystem().ledger
    app.state.ledger = ledger

    logger = get_logger("loan_ledger.api")

    @app.exception_handler(LedgerError)
    async def ledger_error_handler(request: Request, exc: LedgerError):
        status_code = status_for(exc)
        if status_code >= 500:
            logger.error(f"{request.method} {request.url.path} failed: {exc}")
        return JSONResponse(
            status_code=status_code,
            content={"error": type(exc).__name__, "detail": str(exc)}
        )

    app.include_router(loans_router, prefix="/loans", tags=["Loans"])

    @app.get("/health")
    async def health_check():
        """Health check endpoint"""
        return {
            "status": "healthy",
            "service": "loan_ledger_api",
            "version": __version__
        }

    return app


def run_server(host: Optional[str] = None, port: Optional[int] = None, debug: bool = False):
    """Run the FastAPI server with configured logging"""
    config = get_config()
    setup_logging(config.log_level, log_format=config.log_format, log_file=config.log_file)
    uvicorn.run(
        "loan_ledger.api:create_app",
        factory=True,
        host=host or config.api_host,
        port=port or config.api_port,
        reload=debug,
        log_level=config.log_level.lower()
    )
