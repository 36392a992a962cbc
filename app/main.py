"""
CreditFlow - FastAPI Application

Main entry point for the billing API.
Provides endpoints for accounts, plans, subscriptions, credits and payments.
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from app.config.settings import settings
from app.infrastructure.db.database import Database
from app.infrastructure.exceptions import (
    AuthenticationError,
    ConcurrencyConflictError,
    ConfigurationError,
    CreditFlowError,
    DuplicateOperationError,
    GatewayError,
    InsufficientCreditsError,
    InvalidStateTransitionError,
    NotFoundError,
    ValidationError,
    WebhookSignatureError,
)
from app.infrastructure.payments.stripe_service import StripeGateway

# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.log_level.upper()),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler for startup/shutdown."""
    # Startup
    logger.info(f"CreditFlow backend starting in {settings.environment} mode...")

    # Tests install their own handles before startup
    owns_db = getattr(app.state, "db", None) is None
    if owns_db:
        app.state.db = Database.from_settings(settings)
        await app.state.db.init()
        logger.info("Database connection pool initialized")

    if getattr(app.state, "gateway", None) is None:
        app.state.gateway = StripeGateway.from_settings(settings)

    yield

    # Shutdown
    if owns_db:
        await app.state.db.close()
        app.state.db = None
        logger.info("Database connection pool closed")

    logger.info("CreditFlow backend shutting down...")


app = FastAPI(
    title="CreditFlow",
    description="Subscription billing, credit ledger and payments",
    version="1.0.0",
    lifespan=lifespan,
    debug=settings.debug,
)

# CORS configuration from Settings
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.allowed_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ============================================================================
# Exception Handlers
# ============================================================================

# Most specific first; lookup walks the exception's MRO
ERROR_STATUS = {
    InvalidStateTransitionError: 409,
    ValidationError: 400,
    NotFoundError: 404,
    InsufficientCreditsError: 402,
    DuplicateOperationError: 409,
    ConcurrencyConflictError: 503,
    WebhookSignatureError: 400,
    GatewayError: 502,
    AuthenticationError: 401,
    ConfigurationError: 500,
}


def status_for(exc: CreditFlowError) -> int:
    for cls in type(exc).__mro__:
        if cls in ERROR_STATUS:
            return ERROR_STATUS[cls]
    return 500


@app.exception_handler(CreditFlowError)
async def creditflow_error_handler(request: Request, exc: CreditFlowError):
    """Render every application error as ``{error, code, message, details}``."""
    status_code = status_for(exc)
    if status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.code}: {exc.message}")
    headers = {"WWW-Authenticate": "Bearer"} if status_code == 401 else None
    return JSONResponse(
        status_code=status_code,
        content=exc.to_dict(),
        headers=headers,
    )


# ============================================================================
# Health Check
# ============================================================================

@app.get("/health")
async def health_check():
    """Health check endpoint."""
    return {"status": "healthy", "service": "creditflow"}


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "message": "CreditFlow API",
        "version": "1.0.0",
        "docs": "/docs",
    }


# ============================================================================
# Import and register routers
# ============================================================================

from app.api.routes import admin, auth, credits, payments, plans, subscriptions, webhooks  # noqa: E402

app.include_router(auth.router, prefix="/api", tags=["Auth"])
app.include_router(plans.router, prefix="/api", tags=["Plans"])
app.include_router(credits.router, prefix="/api", tags=["Credits"])
app.include_router(subscriptions.router, prefix="/api", tags=["Subscriptions"])
app.include_router(payments.router, prefix="/api", tags=["Payments"])
app.include_router(webhooks.router, prefix="/api", tags=["Webhooks"])
app.include_router(admin.router, prefix="/api")
