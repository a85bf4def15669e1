"""
Market Snapshot Service - entrypoint

Wires the document store, codec, storage and query services, market data
source, collector and scheduler together, then serves the API with uvicorn.
The collection scheduler runs in the same event loop as the API.
"""

import asyncio
import sys
from typing import Optional

import structlog
import uvicorn
import uvloop

from market_snapshot_service.api import create_app
from market_snapshot_service.codec import Codec
from market_snapshot_service.collector import SnapshotCollector
from market_snapshot_service.config import Settings, settings
from market_snapshot_service.document_store import DocumentStore, PostgresDocumentStore
from market_snapshot_service.logging_config import configure_logging
from market_snapshot_service.memory_store import InMemoryDocumentStore
from market_snapshot_service.models import CollectionMode
from market_snapshot_service.query import SnapshotQueryService
from market_snapshot_service.scheduler import CollectionScheduler
from market_snapshot_service.sources.http_source import HttpMarketDataSource
from market_snapshot_service.storage import SnapshotStorage, funding_rate_dedup_key, snapshot_dedup_key

logger = structlog.get_logger(__name__)


class MarketSnapshotService:
    """Owns the long-lived components and their lifecycle"""

    def __init__(self, config: Settings = settings):
        self.config = config
        self.store: Optional[DocumentStore] = None
        self.source: Optional[HttpMarketDataSource] = None
        self.storage: Optional[SnapshotStorage] = None
        self.query: Optional[SnapshotQueryService] = None
        self.collector: Optional[SnapshotCollector] = None
        self.scheduler: Optional[CollectionScheduler] = None

    def _create_store(self) -> DocumentStore:
        if self.config.USE_MEMORY_STORE:
            logger.warning("Using in-memory document store; snapshots are not persisted")
            return InMemoryDocumentStore()
        return PostgresDocumentStore(
            self.config.POSTGRES_DSN,
            min_size=self.config.POSTGRES_POOL_MIN_SIZE,
            max_size=self.config.POSTGRES_POOL_MAX_SIZE,
            connect_retries=self.config.POSTGRES_CONNECT_RETRIES,
        )

    def _target(self):
        """Collection name and dedup key function for the configured source kind."""
        kind = self.config.SOURCE_KIND.lower()
        if kind == "funding_rates":
            return self.config.FUNDING_RATE_COLLECTION, funding_rate_dedup_key
        if kind == "market":
            return self.config.MARKET_COLLECTION, snapshot_dedup_key
        raise ValueError(f"Unknown SOURCE_KIND: {self.config.SOURCE_KIND}")

    async def initialize(self):
        """Connect the store and the source and build the pipeline"""
        try:
            collection, dedup_key_fn = self._target()
            default_mode = CollectionMode(self.config.COLLECTION_MODE.lower())

            self.store = self._create_store()
            await self.store.connect()

            codec = Codec(
                safe_integer_limit=self.config.CODEC_SAFE_INTEGER_LIMIT,
                strict=self.config.CODEC_STRICT,
            )
            self.storage = SnapshotStorage(self.store, codec, timeout=self.config.STORAGE_TIMEOUT_SECONDS)
            self.query = SnapshotQueryService(self.store, codec, timeout=self.config.STORAGE_TIMEOUT_SECONDS)

            self.source = HttpMarketDataSource(
                source_tag=self.config.SOURCE_TAG,
                base_url=self.config.SOURCE_API_URL,
                entities_path=self.config.SOURCE_ENTITIES_PATH,
                entities_field=self.config.SOURCE_ENTITIES_FIELD or None,
                entity_key_field=self.config.SOURCE_ENTITY_KEY_FIELD,
                detail_path=self.config.SOURCE_DETAIL_PATH,
                detail_field=self.config.SOURCE_DETAIL_FIELD or None,
                max_retries=self.config.SOURCE_MAX_RETRIES,
                retry_delay=self.config.SOURCE_RETRY_DELAY,
                request_timeout=self.config.FETCH_TIMEOUT_SECONDS,
            )
            await self.source.connect()

            self.collector = SnapshotCollector(
                self.storage,
                collection,
                dedup_key_fn=dedup_key_fn,
                fetch_timeout=self.config.FETCH_TIMEOUT_SECONDS,
            )

            async def run_collection(mode: CollectionMode = default_mode):
                return await self.collector.run_once(self.source, mode)

            self.scheduler = CollectionScheduler(
                run_collection,
                interval=self.config.COLLECTION_INTERVAL_SECONDS,
                run_immediately=self.config.COLLECT_ON_STARTUP,
                name=f"{self.config.SOURCE_TAG}:{collection}",
            )

            logger.info(
                "Market snapshot service initialized",
                source=self.config.SOURCE_TAG,
                collection=collection,
                mode=default_mode.value,
                memory_store=self.config.USE_MEMORY_STORE
            )

        except Exception as e:
            logger.error("Failed to initialize market snapshot service", error=str(e))
            await self.cleanup()
            raise

    def start(self):
        if self.config.SCHEDULER_ENABLED:
            self.scheduler.start()
        else:
            logger.info("Collection scheduler disabled; collect via POST /collect")

    async def cleanup(self):
        """Stop the scheduler, letting an in-flight run finish, then release resources"""
        if self.scheduler:
            await self.scheduler.stop(wait=True)
        if self.source:
            await self.source.close()
        if self.store:
            await self.store.close()
        logger.info("Market snapshot service stopped")

    def create_app(self):
        return create_app(
            self.query,
            self.collector,
            self.source,
            scheduler=self.scheduler,
            service_name=self.config.SERVICE_NAME,
        )


async def main():
    """Main application entry point"""
    configure_logging(settings.LOG_LEVEL, settings.LOG_JSON)
    service = MarketSnapshotService(settings)

    try:
        await service.initialize()
        service.start()

        server = uvicorn.Server(
            uvicorn.Config(
                service.create_app(),
                host=settings.API_HOST,
                port=settings.API_PORT,
                log_config=None,
            )
        )
        logger.info("Serving market snapshot API", host=settings.API_HOST, port=settings.API_PORT)
        await server.serve()

    except Exception as e:
        logger.error("Service error", error=str(e), exc_info=True)
        sys.exit(1)
    finally:
        await service.cleanup()


def run():
    # Use uvloop for better performance
    uvloop.install()
    asyncio.run(main())


if __name__ == "__main__":
    run()
