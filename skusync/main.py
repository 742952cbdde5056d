"""
SKU Sync — inventory and price reconciliation between Naver Commerce and Shopify.

The app lifespan builds every service once and stores it on app.state:
platform clients, mapping directory, rate provider, ledger, coordinator,
broadcaster, sync engine, webhook pipeline and report service. The
scheduler and the webhook consumer start with the app and stop with it.
"""

import asyncio
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from loguru import logger

from .config import settings
from .connectors import NaverClient, ShopifyClient
from .database import SessionLocal, engine
from .errors import SkuSyncError
from .http_client import close_clients
from .logging_config import setup_logging
from .models import Base
from .routers import exchange_rates, mappings, sync, webhooks, ws
from .services.broadcaster import Broadcaster
from .services.coordinator import SyncCoordinator
from .services.exchange_rate_service import ExchangeRateProvider
from .services.job_ledger import JobLedger
from .services.mapping_service import MappingDirectory
from .services.report_service import ReportService
from .services.sync_engine import SyncEngine
from .services.webhook_service import WebhookPipeline


def build_services(state, session_factory=SessionLocal, marketplace=None, storefront=None) -> None:
    """Wire all services onto `state` (app.state in production, a namespace in tests)."""
    state.marketplace = marketplace or NaverClient.from_settings(settings)
    state.storefront = storefront or ShopifyClient.from_settings(settings)
    state.mappings = MappingDirectory(session_factory)
    state.rates = ExchangeRateProvider(session_factory)
    state.ledger = JobLedger(session_factory)
    state.coordinator = SyncCoordinator()
    state.broadcaster = Broadcaster()
    state.sync_engine = SyncEngine(
        marketplace=state.marketplace,
        storefront=state.storefront,
        mappings=state.mappings,
        rates=state.rates,
        ledger=state.ledger,
        coordinator=state.coordinator,
        broadcaster=state.broadcaster,
    )
    state.webhooks = WebhookPipeline(state.sync_engine, state.mappings, session_factory)
    state.reports = ReportService(state.marketplace, state.storefront, state.mappings, state.rates)


@asynccontextmanager
async def lifespan(app: FastAPI):
    from .scheduler import configure_scheduler, scheduler

    setup_logging()
    Base.metadata.create_all(bind=engine)
    build_services(app.state)
    orphaned = app.state.ledger.fail_orphaned_jobs()
    if not settings.naver_configured or not settings.shopify_configured:
        logger.warning(
            "Platform credentials incomplete",
            naver=settings.naver_configured,
            shopify=settings.shopify_configured,
        )

    consumer = asyncio.create_task(app.state.webhooks.run())
    configure_scheduler(app.state.sync_engine, app.state.rates, app.state.ledger)
    scheduler.start()
    logger.info("SKU sync started", orphaned_jobs=orphaned)
    yield
    scheduler.shutdown(wait=False)
    app.state.webhooks.stop()
    consumer.cancel()
    await close_clients()
    logger.info("SKU sync stopped")


app = FastAPI(title="SKU Sync", version="1.0.0", lifespan=lifespan)


@app.exception_handler(SkuSyncError)
async def skusync_error_handler(request: Request, exc: SkuSyncError):
    if exc.status_code >= 500:
        logger.warning("Request failed", path=request.url.path, code=exc.code, error=exc.message)
    return JSONResponse(exc.to_dict(), status_code=exc.status_code)


app.include_router(sync.router)
app.include_router(mappings.router)
app.include_router(exchange_rates.router)
app.include_router(webhooks.router)
app.include_router(ws.router)


@app.get("/health")
async def health(request: Request):
    state = request.app.state
    coordinator = getattr(state, "coordinator", None)
    return {
        "status": "ok",
        "version": app.version,
        "syncRunning": bool(coordinator and coordinator.is_running),
        "naverConfigured": settings.naver_configured,
        "shopifyConfigured": settings.shopify_configured,
    }
