"""
Shared pytest fixtures for the snapshot service tests

Provides a connected in-memory document store, a codec, the storage and query
services built on them, and scriptable fake market data sources.
"""

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List

import pytest
import pytest_asyncio

from market_snapshot_service.codec import Codec
from market_snapshot_service.collector import SnapshotCollector
from market_snapshot_service.errors import SourceUnavailableError
from market_snapshot_service.memory_store import InMemoryDocumentStore
from market_snapshot_service.models import EntityDescriptor
from market_snapshot_service.query import SnapshotQueryService
from market_snapshot_service.sources.base import MarketDataSource
from market_snapshot_service.storage import SnapshotStorage

COLLECTION = "market_data"


def pytest_configure(config):
    """Configure pytest markers"""
    config.addinivalue_line("markers", "slow: mark test as slow running")


# ============================================================================
# Fake sources
# ============================================================================

class FakeSource(MarketDataSource):
    """
    Scriptable market data source

    details maps entity key -> payload, or an Exception instance to raise.
    delay makes every fetch_detail call sleep first.
    """

    def __init__(
        self,
        details: Dict[str, Any],
        source_tag: str = "drift",
        delay: float = 0.0,
    ):
        super().__init__(source_tag)
        self.details = details
        self.delay = delay
        self.fetched: List[str] = []

    async def list_entities(self) -> List[EntityDescriptor]:
        return [EntityDescriptor(key=key) for key in self.details]

    async def fetch_detail(self, key: str):
        if self.delay:
            await asyncio.sleep(self.delay)
        self.fetched.append(key)
        detail = self.details[key]
        if isinstance(detail, Exception):
            raise detail
        return detail


# ============================================================================
# Helpers
# ============================================================================

def at(minutes: int) -> datetime:
    """Fixed UTC timestamp, `minutes` after a reference point."""
    return datetime(2024, 1, 1, tzinfo=timezone.utc) + timedelta(minutes=minutes)


def snapshot(key: str, captured_at: datetime, source_tag: str = "drift", **fields) -> Dict[str, Any]:
    document = {"entityKey": key, "sourceTag": source_tag, "capturedAt": captured_at}
    document.update(fields)
    return document


# ============================================================================
# Fixtures
# ============================================================================

@pytest.fixture
def codec():
    return Codec()


@pytest_asyncio.fixture
async def memory_store():
    store = InMemoryDocumentStore()
    await store.connect()
    yield store
    await store.close()


@pytest.fixture
def storage(memory_store, codec):
    return SnapshotStorage(memory_store, codec, timeout=5.0)


@pytest.fixture
def query(memory_store, codec):
    return SnapshotQueryService(memory_store, codec, timeout=5.0)


@pytest.fixture
def collector(storage):
    return SnapshotCollector(storage, COLLECTION, fetch_timeout=1.0)


@pytest.fixture
def three_markets():
    return FakeSource({
        "SOL-PERP": {"fundingRate": 5, "marketIndex": 0},
        "BTC-PERP": {"fundingRate": -3, "marketIndex": 1},
        "ETH-PERP": {"fundingRate": 2, "marketIndex": 2},
    })


@pytest.fixture
def outage_source():
    return FakeSource({"SOL-PERP": SourceUnavailableError("upstream down", "SOL-PERP")})
