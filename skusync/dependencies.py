"""
dependencies.py — Shared FastAPI Dependencies

Services are built once in the app lifespan and stored on app.state;
routers reach them through these helpers so tests can swap in fakes by
assigning app.state attributes.

Called by: all routers
Depends on: services
"""

from fastapi import Request

from .connectors.base import PlatformClient
from .services.exchange_rate_service import ExchangeRateProvider
from .services.job_ledger import JobLedger
from .services.mapping_service import MappingDirectory
from .services.report_service import ReportService
from .services.sync_engine import SyncEngine
from .services.webhook_service import WebhookPipeline


def get_engine(request: Request) -> SyncEngine:
    return request.app.state.sync_engine


def get_ledger(request: Request) -> JobLedger:
    return request.app.state.ledger


def get_mappings(request: Request) -> MappingDirectory:
    return request.app.state.mappings


def get_rates(request: Request) -> ExchangeRateProvider:
    return request.app.state.rates


def get_pipeline(request: Request) -> WebhookPipeline:
    return request.app.state.webhooks


def get_reports(request: Request) -> ReportService:
    return request.app.state.reports


def get_marketplace(request: Request) -> PlatformClient:
    return request.app.state.marketplace


def get_storefront(request: Request) -> PlatformClient:
    return request.app.state.storefront
