"""
Pytest configuration and fixtures
SQLite file stores under tmp_path, scripted provider adapters, TestClient wired to a test container
"""
import asyncio
import sys
from datetime import date
from pathlib import Path
from typing import Dict, Generator, List, Optional

import httpx
import pytest
from fastapi.testclient import TestClient

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from config import Settings
from database import create_store_manager
from services.backfill_queue import BackfillQueue
from services.cache_service import CacheService
from services.container import build_container
from services.errors import TransientProviderError
from services.instrument_store import InstrumentStore
from services.providers.base import InstrumentData, ProviderAdapter
from services.resolver import TieredFundResolver


class FakeProvider(ProviderAdapter):
    """Scripted adapter: answers from `catalog` (query -> items) or raises `error`"""

    def __init__(self, name: str, catalog: Optional[Dict[str, List[InstrumentData]]] = None, error: Optional[Exception] = None, priority: int = 0, delay: float = 0.0):
        super().__init__(priority=priority, timeout=1.0)
        self.name = name
        self.catalog = catalog or {}
        self.error = error
        self.delay = delay
        self.calls: List[str] = []
        self.healthy = True

    async def lookup(self, query: str) -> List[InstrumentData]:
        self.calls.append(query)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return list(self.catalog.get(query, []))

    async def health_check(self) -> bool:
        return self.healthy


def make_fund(code: str = "119551", name: str = "XYZ Bluechip Fund - Direct Growth", source: str = "fake", **kwargs) -> InstrumentData:
    kwargs.setdefault("value", 23.45)
    kwargs.setdefault("value_date", date(2025, 11, 17))
    kwargs.setdefault("category", "Equity")
    kwargs.setdefault("amc", "XYZ Mutual Fund")
    kwargs.setdefault("isin_growth", "INF209K01157")
    kwargs.setdefault("isin_reinvest", "INF209K01165")
    return InstrumentData(scheme_code=code, name=name, data_source=source, **kwargs)


def offline_transport() -> httpx.MockTransport:
    """Every outbound request answers 503"""
    return httpx.MockTransport(lambda request: httpx.Response(503, text="offline"))


@pytest.fixture
def fund_factory():
    return make_fund


@pytest.fixture
def provider_factory():
    return FakeProvider


@pytest.fixture
def db_url(tmp_path) -> str:
    return f"sqlite:///{tmp_path / 'funds.db'}"


@pytest.fixture
def store(db_url) -> Generator[InstrumentStore, None, None]:
    manager = create_store_manager(db_url)
    yield InstrumentStore(manager, op_timeout=10.0)
    if manager.handle is not None:
        manager.handle.engine.dispose()


@pytest.fixture
def broken_store(tmp_path) -> InstrumentStore:
    """Store whose database file can never be opened"""
    manager = create_store_manager(f"sqlite:///{tmp_path / 'missing' / 'funds.db'}")
    return InstrumentStore(manager, op_timeout=2.0)


@pytest.fixture
def cache() -> CacheService:
    return CacheService(redis_url=None, default_ttl=900)


@pytest.fixture
def backfill(store) -> BackfillQueue:
    return BackfillQueue(store, max_attempts=2, retry_delay_seconds=0)


@pytest.fixture
def make_resolver(cache, store, backfill):
    def _make(providers, **kwargs):
        kwargs.setdefault("backfill", backfill)
        kwargs.setdefault("provider_timeout", 1.0)
        return TieredFundResolver(cache, store, providers, **kwargs)
    return _make


@pytest.fixture
def test_settings(db_url) -> Settings:
    return Settings(
        DATABASE_URL=db_url,
        REDIS_URL=None,
        ENABLE_SCHEDULER=False,
        ENABLE_BACKFILL_WORKER=False,
        PROVIDER_TIMEOUT_SECONDS=1.0,
        STORE_OP_TIMEOUT_SECONDS=10.0,
    )


@pytest.fixture
def api_providers() -> List[FakeProvider]:
    """[A(fails), B(answers 119551)]"""
    return [
        FakeProvider("fake-a", error=TransientProviderError("fake-a", "upstream error: HTTP 502", "provider_upstream"), priority=0),
        FakeProvider("fake-b", catalog={"119551": [make_fund(source="fake-b")]}, priority=1),
    ]


def _client_for(container) -> Generator[TestClient, None, None]:
    from main import app

    app.state.container = container
    try:
        with TestClient(app) as test_client:
            yield test_client
    finally:
        del app.state.container


@pytest.fixture
def client(test_settings, api_providers) -> Generator[TestClient, None, None]:
    """TestClient over a container with a tmp SQLite store, memory cache and fake providers"""
    container = build_container(test_settings, providers=api_providers, transport=offline_transport())
    yield from _client_for(container)


@pytest.fixture
def store_down_client(tmp_path, api_providers) -> Generator[TestClient, None, None]:
    """TestClient whose store can never be reached"""
    settings = Settings(
        DATABASE_URL=f"sqlite:///{tmp_path / 'missing' / 'funds.db'}",
        REDIS_URL=None,
        ENABLE_SCHEDULER=False,
        ENABLE_BACKFILL_WORKER=False,
        STORE_OP_TIMEOUT_SECONDS=2.0,
    )
    container = build_container(settings, providers=api_providers, transport=offline_transport())
    yield from _client_for(container)
