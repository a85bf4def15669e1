"""
Generic REST market data source

Lists entities from one JSON endpoint and fetches each entity's detail from a
second, templated endpoint. Requests are retried with exponential backoff;
once retries are exhausted SourceUnavailableError is raised.

Example (Drift data API):
    HttpMarketDataSource(
        source_tag="drift",
        base_url="https://data.api.drift.trade",
        entities_path="/contracts",
        entities_field="contracts",
        entity_key_field="ticker_id",
        detail_path="/fundingRates?marketName={key}",
        detail_field="fundingRates",
    )
"""

import asyncio
from typing import Any, Dict, List, Optional
from urllib.parse import quote

import aiohttp
import structlog

from market_snapshot_service.errors import SourceUnavailableError
from market_snapshot_service.models import EntityDescriptor
from market_snapshot_service.sources.base import DetailPayload, MarketDataSource

logger = structlog.get_logger(__name__)

# Statuses worth retrying; anything else in 4xx fails immediately
RETRYABLE_STATUSES = {429, 500, 502, 503, 504}


class HttpMarketDataSource(MarketDataSource):
    """Market data source backed by a JSON REST API"""

    def __init__(
        self,
        source_tag: str,
        base_url: str,
        entities_path: str,
        detail_path: str,
        entities_field: Optional[str] = None,
        entity_key_field: str = "key",
        detail_field: Optional[str] = None,
        max_retries: int = 3,
        retry_delay: float = 1.0,
        request_timeout: float = 10.0,
        session: Optional[aiohttp.ClientSession] = None,
    ):
        super().__init__(source_tag)
        if "{key}" not in detail_path:
            raise ValueError("detail_path must contain a '{key}' placeholder")
        if max_retries < 1:
            raise ValueError("max_retries must be at least 1")

        self.base_url = base_url.rstrip("/")
        self.entities_path = entities_path
        self.entities_field = entities_field
        self.entity_key_field = entity_key_field
        self.detail_path = detail_path
        self.detail_field = detail_field
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self.timeout = aiohttp.ClientTimeout(total=request_timeout)
        self.session = session
        self._owns_session = session is None

        self.stats = {
            "total_requests": 0,
            "successful_requests": 0,
            "failed_requests": 0,
        }

    async def connect(self) -> None:
        if self.session is None:
            self.session = aiohttp.ClientSession(timeout=self.timeout)
            self._owns_session = True
            logger.info("Market data source connected", source=self.source_tag, api_url=self.base_url)

    async def close(self) -> None:
        if self.session is not None and self._owns_session:
            await self.session.close()
            logger.info("Market data source disconnected", source=self.source_tag)
        if self._owns_session:
            self.session = None

    def _url(self, path: str) -> str:
        if path.startswith("http"):
            return path
        return f"{self.base_url}/{path.lstrip('/')}"

    async def _get_json(self, path: str, entity_key: Optional[str] = None) -> Any:
        """GET a JSON document, retrying transient failures with exponential backoff."""
        if self.session is None:
            await self.connect()

        url = self._url(path)
        last_error = "no attempt made"

        for attempt in range(self.max_retries):
            try:
                self.stats["total_requests"] += 1
                async with self.session.get(url) as response:
                    if response.status in RETRYABLE_STATUSES:
                        last_error = f"HTTP {response.status}"
                        logger.warning(
                            "Retryable response from source",
                            source=self.source_tag,
                            url=url,
                            status=response.status,
                            attempt=attempt + 1
                        )
                    else:
                        response.raise_for_status()
                        data = await response.json(content_type=None)
                        self.stats["successful_requests"] += 1
                        return data

            except aiohttp.ClientResponseError as e:
                # Non-retryable HTTP error
                self.stats["failed_requests"] += 1
                raise SourceUnavailableError(
                    f"{self.source_tag} request to {url} failed: HTTP {e.status}", entity_key
                ) from e

            except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
                last_error = str(e) or type(e).__name__
                logger.warning(
                    "Request failed",
                    source=self.source_tag,
                    url=url,
                    attempt=attempt + 1,
                    error=last_error
                )

            if attempt < self.max_retries - 1:
                await asyncio.sleep(self.retry_delay * (2 ** attempt))

        self.stats["failed_requests"] += 1
        raise SourceUnavailableError(
            f"{self.source_tag} request to {url} failed after {self.max_retries} attempts: {last_error}",
            entity_key
        )

    def _unwrap(self, data: Any, field: Optional[str], url_hint: str, entity_key: Optional[str] = None) -> Any:
        if field is None:
            return data
        if not isinstance(data, dict) or field not in data:
            raise SourceUnavailableError(
                f"{self.source_tag} response from {url_hint} has no '{field}' field", entity_key
            )
        return data[field]

    async def list_entities(self) -> List[EntityDescriptor]:
        data = await self._get_json(self.entities_path)
        items = self._unwrap(data, self.entities_field, self.entities_path)
        if not isinstance(items, list):
            raise SourceUnavailableError(f"{self.source_tag} entity listing is not a list")

        entities: List[EntityDescriptor] = []
        seen = set()
        for item in items:
            if isinstance(item, str):
                key, metadata = item, {}
            elif isinstance(item, dict) and item.get(self.entity_key_field):
                key, metadata = str(item[self.entity_key_field]), item
            else:
                logger.debug("Skipping entity without key", source=self.source_tag, item=str(item)[:200])
                continue
            if key in seen:
                continue
            seen.add(key)
            entities.append(EntityDescriptor(key=key, metadata=metadata))

        logger.info("Listed entities", source=self.source_tag, count=len(entities))
        return entities

    async def fetch_detail(self, key: str) -> DetailPayload:
        path = self.detail_path.format(key=quote(key, safe=""))
        data = await self._get_json(path, entity_key=key)
        detail = self._unwrap(data, self.detail_field, path, entity_key=key)
        if not isinstance(detail, (dict, list)):
            raise SourceUnavailableError(
                f"{self.source_tag} detail for {key} is not an object or list", key
            )
        return detail

    def describe(self) -> Dict[str, Any]:
        info = super().describe()
        info.update({"api_url": self.base_url, "statistics": self.stats})
        return info
