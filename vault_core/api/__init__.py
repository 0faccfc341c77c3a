"""
Vault Core API Application Factory
"""

import uvicorn
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .applications import router as applications_router
from .transactions import router as transactions_router
from .admin import router as admin_router
from .joint_accounts import router as joint_accounts_router
from .repair import router as repair_router
from .. import __version__
from ..config import get_config
from ..errors import (
    ConcurrencyConflictError, InsufficientFundsError, NotFoundError,
    StateConflictError, TransactionBlockedError, ValidationError, VaultError
)
from ..logging_config import get_logger, log_action, setup_logging


# Most specific first
ERROR_STATUS = [
    (ValidationError, 422),
    (NotFoundError, 404),
    (TransactionBlockedError, 403),
    (StateConflictError, 409),
    (ConcurrencyConflictError, 409),
    (InsufficientFundsError, 400),
]

logger = get_logger("vault.api")


def status_for(error: VaultError) -> int:
    for error_class, status_code in ERROR_STATUS:
        if isinstance(error, error_class):
            return status_code
    return 400


def create_app() -> FastAPI:
    """Create and configure the FastAPI application"""
    config = get_config()
    app = FastAPI(
        title="Vault Core API",
        description="Account lifecycle, transaction settlement and consistency repair",
        version=__version__,
        docs_url="/docs",
        redoc_url="/redoc"
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(VaultError)
    async def vault_error_handler(request: Request, exc: VaultError):
        status_code = status_for(exc)
        log_action(
            logger, "warning" if status_code < 500 else "error", exc.message,
            action=request.url.path, resource=exc.entity_id,
            extra={"error_type": exc.error_type, "status_code": status_code}
        )
        content = {"error_type": exc.error_type, "detail": exc.message}
        if isinstance(exc, TransactionBlockedError):
            content["reason"] = exc.reason.name
        return JSONResponse(status_code=status_code, content=content)

    # Include routers
    app.include_router(applications_router, prefix="/applications", tags=["Applications"])
    app.include_router(transactions_router, prefix="/transactions", tags=["Transactions"])
    app.include_router(admin_router, prefix="/admin", tags=["Admin"])
    app.include_router(joint_accounts_router, prefix="/joint-accounts", tags=["Joint Accounts"])
    app.include_router(repair_router, prefix="/repair", tags=["Repair"])

    @app.get("/health")
    async def health_check():
        """Health check endpoint"""
        return {
            "status": "healthy",
            "service": "vault_core_api",
            "version": __version__
        }

    @app.get("/")
    async def get_api_info():
        return {
            "name": "Vault Core API",
            "version": __version__,
            "endpoints": {
                "docs": "/docs",
                "health": "/health",
                "applications": "/applications",
                "transactions": "/transactions",
                "admin": "/admin",
                "joint-accounts": "/joint-accounts",
                "repair": "/repair",
            }
        }

    return app


app = create_app()


def run_server(host: str = None, port: int = None, debug: bool = False):
    """Run the FastAPI server"""
    config = get_config()
    setup_logging(level=config.log_level, log_format=config.log_format, log_file=config.log_file)
    uvicorn.run(
        "vault_core.api:app",
        host=host or config.api_host,
        port=port or config.api_port,
        reload=debug,
        log_level=config.log_level.lower()
    )
