"""Market data sources consumed by the collector"""

from market_snapshot_service.sources.base import DetailPayload, MarketDataSource
from market_snapshot_service.sources.http_source import HttpMarketDataSource

__all__ = ["DetailPayload", "MarketDataSource", "HttpMarketDataSource"]
