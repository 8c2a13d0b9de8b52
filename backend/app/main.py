"""
carlOS Finance Backend - Main FastAPI Application.

Serves the personal finance features of the carlOS web app: subscriptions
and their bills, and credit card invoice closing, on top of Supabase.

Run with:
    uvicorn app.main:app --reload
"""

from contextlib import asynccontextmanager
from typing import AsyncGenerator

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from supabase import acreate_client
from supabase._async.client import AsyncClient as AsyncSupabaseClient

from app.api.v1.cards import router as cards_router
from app.api.v1.subscriptions import router as subscriptions_router
from app.config import get_settings
from app.constants import API_TITLE, API_VERSION
from app.logging_config import setup_logging
from app.middleware import RequestContextMiddleware
from app.services.finance_calculator import today_in
from app.services.invoice_service import InvoiceService
from app.services.ledger_repository import (
    InMemoryLedgerRepository,
    LedgerRepository,
    SupabaseLedgerRepository,
)
from app.services.subscription_service import SubscriptionService
from app.services.subscription_sync import SubscriptionBillSync

# Get settings before logging setup so we know the debug flag
settings = get_settings()

setup_logging(settings.debug)

logger = structlog.get_logger(__name__)


@asynccontextmanager
async def lifespan(_app: FastAPI) -> AsyncGenerator[None, None]:
    """Lifespan event handler for startup and shutdown."""
    logger.info("api_startup", cors_origins=settings.cors_origins)

    supabase_client: AsyncSupabaseClient | None = None
    if settings.supabase_url and settings.supabase_secret_key:
        try:
            supabase_client = await acreate_client(
                settings.supabase_url,
                settings.supabase_secret_key,
            )
            logger.info("supabase_configured")
        except Exception as e:
            logger.warning("supabase_init_failed", error=str(e))
    else:
        logger.warning("supabase_not_configured", detail="Auth endpoints will return 503")

    _app.state.supabase = supabase_client

    def today():
        return today_in(settings.finance.timezone)

    repository: LedgerRepository
    if supabase_client is not None:
        repository = SupabaseLedgerRepository(supabase_client)
    else:
        repository = InMemoryLedgerRepository(today_provider=today)
        logger.warning("ledger_store_in_memory", detail="Data is not persisted")

    # Create services once at startup
    subscription_sync = SubscriptionBillSync(repository)
    subscription_service = SubscriptionService(
        repository, subscription_sync, settings.finance, today_provider=today
    )
    invoice_service = InvoiceService(repository, today_provider=today)

    _app.state.ledger_repository = repository
    _app.state.subscription_sync = subscription_sync
    _app.state.subscription_service = subscription_service
    _app.state.invoice_service = invoice_service

    logger.info("services_initialized", store=type(repository).__name__)

    yield

    await subscription_service.background_sync.cancel()
    logger.info("api_shutdown")


# Create FastAPI app
app = FastAPI(
    title=API_TITLE,
    description=(
        "API de finanças pessoais do carlOS: assinaturas, contas a pagar "
        "geradas a partir delas e fechamento de faturas de cartão de crédito."
    ),
    version=API_VERSION,
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan,
)

# Request context middleware must come before CORS so every response gets
# the X-Request-ID header (including preflight OPTIONS responses).
app.add_middleware(RequestContextMiddleware)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# Include routers
app.include_router(subscriptions_router, prefix="/api/v1")
app.include_router(cards_router, prefix="/api/v1")


@app.get("/")
async def root() -> dict:
    """Root endpoint with API info."""
    return {
        "name": API_TITLE,
        "version": API_VERSION,
        "description": "API de finanças pessoais do carlOS",
        "docs": "/docs",
    }


@app.get("/health")
async def health() -> dict:
    """Health check endpoint."""
    return {"status": "healthy"}
