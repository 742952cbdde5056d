"""
conftest.py — Shared Test Fixtures for SKU Sync

Provides an in-memory SQLite database, service fixtures bound to it, and
fake in-memory platform clients for engine, webhook and router tests.

Business Rules:
- All tests run against an isolated in-memory DB (no prod data risk)
- Platform clients are fakes; connector tests use httpx.MockTransport
- Each test function gets freshly created tables

Called by: all test files via pytest autodiscovery
Depends on: skusync.models (Base), skusync.services, skusync.connectors.base
"""

import os

os.environ["DATABASE_URL"] = "sqlite://"  # Must be set before importing skusync modules

import asyncio
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from skusync import dependencies
from skusync.config import Settings
from skusync.connectors.base import MARKETPLACE, STOREFRONT, InventorySnapshot, PlatformState
from skusync.errors import PlatformNotFound
from skusync.main import app
from skusync.models import Base, ExchangeRate
from skusync.services.broadcaster import Broadcaster
from skusync.services.coordinator import SyncCoordinator
from skusync.services.exchange_rate_service import ExchangeRateProvider
from skusync.services.job_ledger import JobLedger
from skusync.services.mapping_service import MappingDirectory
from skusync.services.report_service import ReportService
from skusync.services.sync_engine import SyncEngine
from skusync.services.webhook_service import WebhookPipeline

# ── In-memory SQLite engine ──────────────────────────────────────────

engine = create_engine(
    "sqlite://",
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)
TestSessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


@pytest.fixture(autouse=True)
def db_session():
    """Create all tables, yield a session, then tear down."""
    Base.metadata.create_all(bind=engine)
    session = TestSessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture()
def session_factory():
    return TestSessionLocal


# ── Fake platforms ───────────────────────────────────────────────────


class FakePlatform:
    """In-memory stand-in for a PlatformClient.

    inventory[ref] = (quantity, committed); writes are recorded in order.
    Storefront writes set *available*, so quantity = written + committed.
    """

    def __init__(self, role: str):
        self.role = role
        self.inventory: dict[str, tuple[int, int]] = {}
        self.prices: dict[str, Decimal] = {}
        self.as_of: dict[str, datetime] = {}
        self.read_errors: dict[str, Exception] = {}
        self.write_errors: dict[str, Exception] = {}
        self.writes: list[tuple] = []
        self.reads = 0
        self.read_delay = 0.0

    def add(self, ref: str, quantity: int, price=None, committed: int = 0):
        self.inventory[ref] = (quantity, committed)
        if price is not None:
            self.prices[ref] = Decimal(str(price))

    async def read_state(self, ref, deadline=None):
        self.reads += 1
        if self.read_delay:
            await asyncio.sleep(self.read_delay)
        if ref in self.read_errors:
            raise self.read_errors[ref]
        if ref not in self.inventory:
            raise PlatformNotFound(self.role, f"{ref} not found")
        qty, committed = self.inventory[ref]
        snapshot = InventorySnapshot(
            platform=self.role,
            quantity=qty,
            committed=committed,
            as_of=self.as_of.get(ref, datetime.now(timezone.utc)),
        )
        return PlatformState(inventory=snapshot, price=self.prices.get(ref))

    async def read_inventory(self, ref, deadline=None):
        return (await self.read_state(ref, deadline)).inventory

    async def read_price(self, ref, deadline=None):
        return (await self.read_state(ref, deadline)).price

    async def write_inventory(self, ref, quantity, deadline=None):
        if ref in self.write_errors:
            raise self.write_errors[ref]
        self.writes.append(("inventory", ref, quantity))
        _, committed = self.inventory.get(ref, (0, 0))
        if self.role == STOREFRONT:
            self.inventory[ref] = (quantity + committed, committed)
        else:
            self.inventory[ref] = (quantity, 0)

    async def write_price(self, ref, amount, deadline=None):
        if ref in self.write_errors:
            raise self.write_errors[ref]
        self.writes.append(("price", ref, amount))
        self.prices[ref] = amount


# ── Services ─────────────────────────────────────────────────────────


@pytest.fixture()
def test_settings():
    return Settings(
        sync_worker_count=3,
        pass_timeout_seconds=30,
        inventory_stale_after_seconds=900,
        inventory_tolerance=0,
        price_tolerance=Decimal("0.00"),
        shopify_webhook_secret="shpss_test_secret",
        naver_webhook_secret="naver_test_secret",
        shopify_location_id="gid://shopify/Location/777",
    )


@pytest.fixture()
def mappings(session_factory):
    return MappingDirectory(session_factory)


@pytest.fixture()
def rates(session_factory):
    return ExchangeRateProvider(session_factory)


@pytest.fixture()
def ledger(session_factory):
    return JobLedger(session_factory)


@pytest.fixture()
def marketplace():
    return FakePlatform(MARKETPLACE)


@pytest.fixture()
def storefront():
    return FakePlatform(STOREFRONT)


@pytest.fixture()
def broadcaster():
    return Broadcaster()


@pytest.fixture()
def sync_engine(marketplace, storefront, mappings, rates, ledger, broadcaster, test_settings):
    return SyncEngine(
        marketplace=marketplace,
        storefront=storefront,
        mappings=mappings,
        rates=rates,
        ledger=ledger,
        coordinator=SyncCoordinator(),
        broadcaster=broadcaster,
        config=test_settings,
    )


# ── Factories ────────────────────────────────────────────────────────


@pytest.fixture()
def make_mapping(mappings):
    """Create a mapping whose refs are derived from the SKU."""

    def _make(sku: str, margin="1.15", inventory_item_ref=None):
        return mappings.create_mapping(
            sku=sku,
            marketplace_product_ref=f"N-{sku}",
            storefront_product_ref=f"P-{sku}",
            variant_ref=f"V-{sku}",
            product_name=f"Product {sku}",
            price_margin=Decimal(margin),
            storefront_inventory_item_ref=inventory_item_ref,
        )

    return _make


@pytest.fixture()
def quoted_rate(db_session):
    """Store a currently valid quoted KRW/USD rate."""

    def _add(rate="0.00075", base="KRW", target="USD", hours_valid=24):
        now = datetime.now(timezone.utc)
        record = ExchangeRate(
            base_currency=base,
            target_currency=target,
            rate=Decimal(rate),
            source="quoted",
            valid_from=now - timedelta(minutes=1),
            valid_until=now + timedelta(hours=hours_valid),
            created_at=now,
        )
        db_session.add(record)
        db_session.commit()
        return record

    return _add


# ── API client ───────────────────────────────────────────────────────


@pytest.fixture()
def client(sync_engine, mappings, rates, ledger, marketplace, storefront, session_factory, test_settings):
    """TestClient with every service dependency overridden; the lifespan is not run."""
    pipeline = WebhookPipeline(sync_engine, mappings, session_factory, config=test_settings)
    reports = ReportService(marketplace, storefront, mappings, rates, config=test_settings)
    app.dependency_overrides[dependencies.get_engine] = lambda: sync_engine
    app.dependency_overrides[dependencies.get_ledger] = lambda: ledger
    app.dependency_overrides[dependencies.get_mappings] = lambda: mappings
    app.dependency_overrides[dependencies.get_rates] = lambda: rates
    app.dependency_overrides[dependencies.get_pipeline] = lambda: pipeline
    app.dependency_overrides[dependencies.get_reports] = lambda: reports
    app.dependency_overrides[dependencies.get_marketplace] = lambda: marketplace
    app.dependency_overrides[dependencies.get_storefront] = lambda: storefront
    app.state.coordinator = sync_engine.coordinator
    app.state.broadcaster = sync_engine.broadcaster
    app.state.webhooks = pipeline
    c = TestClient(app)
    yield c
    app.dependency_overrides.clear()
