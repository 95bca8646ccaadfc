"""Main FastAPI application."""
from contextlib import asynccontextmanager
import logging

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from bookkeeping.config import settings
from bookkeeping.errors import register_exception_handlers
from bookkeeping.logging_config import configure_logging
from bookkeeping.middleware.rate_limit import setup_rate_limiting
from bookkeeping.middleware.request_logging import RequestLoggingMiddleware
from bookkeeping.redis_client import close_redis
from bookkeeping.scheduler import setup_apscheduler
from bookkeeping.cashflow import routes as cashflow_routes
from bookkeeping.health import routes as health_routes
from bookkeeping.ledger import routes as ledger_routes
from bookkeeping.sync import routes as sync_routes
from bookkeeping.xero import routes as xero_routes
from bookkeeping.xero import webhooks as webhook_routes

configure_logging()
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    scheduler = None
    if settings.SCHEDULER_ENABLED:
        scheduler = AsyncIOScheduler(timezone="UTC")
        setup_apscheduler(scheduler)
        scheduler.start()
        logger.info("Background scheduler started")

    yield

    if scheduler is not None:
        scheduler.shutdown(wait=False)
    await close_redis()


# Create FastAPI app
app = FastAPI(
    title="Bookkeeping API",
    description="Xero bookkeeping sync - accounts, transactions, invoices and cash flow",
    version="0.1.0",
    lifespan=lifespan,
)

# Configure CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.add_middleware(RequestLoggingMiddleware)

setup_rate_limiting(app)
register_exception_handlers(app)

# Include routers
app.include_router(xero_routes.router, prefix=f"{settings.API_V1_PREFIX}/xero", tags=["Xero"])
app.include_router(sync_routes.router, prefix=f"{settings.API_V1_PREFIX}/xero", tags=["Sync"])
app.include_router(webhook_routes.router, prefix=f"{settings.API_V1_PREFIX}/xero", tags=["Webhooks"])
app.include_router(ledger_routes.router, prefix=f"{settings.API_V1_PREFIX}/ledger", tags=["Ledger"])
app.include_router(cashflow_routes.router, prefix=f"{settings.API_V1_PREFIX}/cashflow", tags=["Cash Flow"])
app.include_router(health_routes.router)


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "message": "Bookkeeping API",
        "version": "0.1.0",
        "docs": "/docs",
    }


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "bookkeeping.main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.is_development,
    )
