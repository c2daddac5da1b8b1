"""
funds_core API Application Factory
"""

from typing import Optional
import uuid

from fastapi import Depends, FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware

from .. import __version__
from ..config import FundsCoreConfig, get_config
from ..logging_config import bind_correlation_id, reset_correlation_id
from ..system import BankingSystem
from .accounts import router as accounts_router
from .admin import router as admin_router
from .authorizations import router as authorizations_router
from .deps import get_banking_system, get_current_user
from .errors import register_error_handlers
from .otp import router as otp_router
from .schemas import TransactionResponse
from .security import router as security_router
from .transfers import router as transfers_router


def create_app(
    config: Optional[FundsCoreConfig] = None,
    banking_system: Optional[BankingSystem] = None
) -> FastAPI:
    """
    Create and configure the FastAPI application

    Args:
        config: Settings; defaults to the environment-loaded config
        banking_system: Pre-built system (tests); built lazily otherwise
    """
    config = config or (banking_system.config if banking_system else get_config())

    app = FastAPI(
        title="funds_core API",
        description="Atomic funds transfers with step-up authorization",
        version=__version__,
        docs_url="/docs",
        redoc_url="/redoc"
    )
    app.state.config = config
    app.state.banking_system = banking_system

    app.add_middleware(
        CORSMiddleware,
        allow_origins=[origin.strip() for origin in config.cors_origins.split(",")],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    register_error_handlers(app)

    @app.middleware("http")
    async def correlation_id_middleware(request: Request, call_next):
        """Tag every log line of a request with its X-Request-Id"""
        correlation_id = request.headers.get("X-Request-Id") or str(uuid.uuid4())
        token = bind_correlation_id(correlation_id)
        try:
            response = await call_next(request)
        finally:
            reset_correlation_id(token)
        response.headers["X-Request-Id"] = correlation_id
        return response

    app.include_router(transfers_router, prefix="/transfers", tags=["Transfers"])
    app.include_router(otp_router, prefix="/otp", tags=["OTP"])
    app.include_router(authorizations_router, prefix="/authorizations", tags=["Authorizations"])
    app.include_router(admin_router, prefix="/admin", tags=["Admin"])
    app.include_router(security_router, prefix="/security", tags=["Security"])
    app.include_router(accounts_router, prefix="/accounts", tags=["Accounts"])

    @app.get("/transactions")
    def list_my_transactions(
        limit: int = 50,
        user_id: str = Depends(get_current_user),
        system: BankingSystem = Depends(get_banking_system)
    ):
        """Ledger entries across all of the caller's accounts"""
        entries = system.list_user_transactions(user_id, limit=limit)
        return {"transactions": [TransactionResponse.from_entry(e) for e in entries]}

    @app.get("/health")
    async def health_check():
        """Health check endpoint"""
        return {
            "status": "healthy",
            "service": "funds_core_api",
            "version": __version__
        }

    @app.get("/")
    async def get_api_info():
        """Get API information"""
        return {
            "name": "funds_core API",
            "version": __version__,
            "endpoints": {
                "docs": "/docs",
                "health": "/health",
                "transfers": "/transfers",
                "otp": "/otp",
                "authorizations": "/authorizations",
                "accounts": "/accounts",
                "transactions": "/transactions",
                "security": "/security",
                "admin": "/admin",
            }
        }

    return app


def run_server(host: Optional[str] = None, port: Optional[int] = None) -> None:
    """Start uvicorn with settings from the environment"""
    import uvicorn

    from ..logging_config import setup_logging

    config = get_config()
    setup_logging(config.log_level, log_format=config.log_format)
    uvicorn.run(create_app(config), host=host or config.api_host, port=port or config.api_port)
