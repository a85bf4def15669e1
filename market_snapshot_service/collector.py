"""
Snapshot collector

One collection cycle:
1. list the source's entities (an empty listing aborts the cycle)
2. fetch every entity's detail concurrently, each bounded by the fetch timeout
3. stamp each document with entityKey, sourceTag and the cycle's capturedAt
4. write all documents in one bulk call (upsert or historical append)

Failures of a single entity are recorded in the CollectionRun and never stop
the other entities. Listing and storage failures propagate to the caller.
"""

import asyncio
import time
from typing import Any, Dict, List, Mapping, Optional, Tuple, Union

import structlog

from market_snapshot_service.errors import EmptyFetchError, SourceUnavailableError, StorageError
from market_snapshot_service.metrics import (
    collection_duration_seconds,
    collection_entities_total,
    collection_runs_total,
)
from market_snapshot_service.models import (
    CAPTURED_AT_FIELD,
    ENTITY_KEY_FIELD,
    SOURCE_TAG_FIELD,
    CollectionMode,
    CollectionRun,
    EntityDescriptor,
    EntityOutcome,
    WriteResult,
    utc_now,
)
from market_snapshot_service.sources.base import MarketDataSource
from market_snapshot_service.storage import DedupKeyFn, SnapshotStorage, snapshot_dedup_key

logger = structlog.get_logger(__name__)


class SnapshotCollector:
    """Fetches snapshots from a market data source and stores them"""

    def __init__(
        self,
        storage: SnapshotStorage,
        collection: str,
        dedup_key_fn: DedupKeyFn = snapshot_dedup_key,
        fetch_timeout: float = 10.0,
    ):
        self.storage = storage
        self.collection = collection
        self.dedup_key_fn = dedup_key_fn
        self.fetch_timeout = fetch_timeout
        self.last_run: Optional[CollectionRun] = None

    async def run_once(
        self,
        source: MarketDataSource,
        mode: Union[CollectionMode, str] = CollectionMode.UPSERT,
    ) -> CollectionRun:
        """
        Execute one collection cycle against a source

        Raises:
            ValueError: unknown mode
            EmptyFetchError: the source listed no entities
            SourceUnavailableError: the entity listing could not be fetched
            StorageError: the bulk write failed
        """
        mode = CollectionMode(mode)
        run = CollectionRun(source_tag=source.source_tag, mode=mode, collection=self.collection)
        started = time.perf_counter()
        status = "error"

        logger.info(
            "Starting collection run",
            source=source.source_tag,
            mode=mode.value,
            collection=self.collection
        )

        try:
            entities = await self._list_entities(source)
            if not entities:
                status = "empty"
                raise EmptyFetchError(source.source_tag)

            entities = self._unique(entities)
            captured_at = utc_now()
            fetched = await asyncio.gather(*(self._fetch(source, entity) for entity in entities))

            entries: List[Dict[str, Any]] = []
            owners: List[str] = []
            outcomes: Dict[str, EntityOutcome] = {}
            for entity, detail, error in fetched:
                if error is not None:
                    outcomes[entity.key] = EntityOutcome(
                        entity_key=entity.key,
                        success=False,
                        error=str(error),
                        error_type=type(error).__name__
                    )
                    continue
                try:
                    documents = self._stamp(detail, entity.key, source.source_tag, captured_at)
                except TypeError as e:
                    outcomes[entity.key] = EntityOutcome(
                        entity_key=entity.key, success=False, error=str(e), error_type=type(e).__name__
                    )
                    continue
                entries.extend(documents)
                owners.extend([entity.key] * len(documents))
                outcomes[entity.key] = EntityOutcome(
                    entity_key=entity.key, success=True, documents=len(documents)
                )

            result = await self._write(mode, entries)
            self._apply_write_errors(result, owners, outcomes)

            run.outcomes = [outcomes[entity.key] for entity in entities]
            run.matched = result.matched
            run.modified = result.modified
            run.upserted = result.upserted
            run.inserted = result.inserted
            status = "success" if not run.failed else "partial"

        except (EmptyFetchError, SourceUnavailableError, StorageError) as e:
            logger.error(
                "Collection run failed",
                source=source.source_tag,
                mode=mode.value,
                error=str(e),
                error_type=type(e).__name__
            )
            raise

        finally:
            run.finished_at = utc_now()
            collection_runs_total.labels(source=source.source_tag, mode=mode.value, status=status).inc()
            collection_duration_seconds.labels(source=source.source_tag, mode=mode.value).observe(
                time.perf_counter() - started
            )

        collection_entities_total.labels(source=source.source_tag, outcome="success").inc(len(run.succeeded))
        collection_entities_total.labels(source=source.source_tag, outcome="failed").inc(len(run.failed))
        self.last_run = run

        logger.info("Collection run completed", **run.summary())
        if run.failed:
            logger.warning("Entities failed during collection", source=source.source_tag, failed=run.failed)
        return run

    async def _list_entities(self, source: MarketDataSource) -> List[EntityDescriptor]:
        try:
            return await asyncio.wait_for(source.list_entities(), timeout=self.fetch_timeout)
        except asyncio.TimeoutError as e:
            raise SourceUnavailableError(
                f"Listing entities from '{source.source_tag}' timed out after {self.fetch_timeout}s"
            ) from e

    @staticmethod
    def _unique(entities: List[EntityDescriptor]) -> List[EntityDescriptor]:
        """Drop repeated keys, keeping the first descriptor of each."""
        seen: Dict[str, EntityDescriptor] = {}
        for entity in entities:
            seen.setdefault(entity.key, entity)
        if len(seen) < len(entities):
            logger.warning("Source listed duplicate entity keys", duplicates=len(entities) - len(seen))
        return list(seen.values())

    async def _fetch(
        self,
        source: MarketDataSource,
        entity: EntityDescriptor,
    ) -> Tuple[EntityDescriptor, Any, Optional[Exception]]:
        """Fetch one entity's detail; failures are returned, not raised."""
        try:
            detail = await asyncio.wait_for(source.fetch_detail(entity.key), timeout=self.fetch_timeout)
            return entity, detail, None
        except asyncio.TimeoutError:
            error = SourceUnavailableError(
                f"Fetching '{entity.key}' timed out after {self.fetch_timeout}s", entity.key
            )
        except Exception as e:
            error = e

        logger.warning(
            "Failed to fetch entity",
            source=source.source_tag,
            entity=entity.key,
            error=str(error),
            error_type=type(error).__name__
        )
        return entity, None, error

    @staticmethod
    def _stamp(detail: Any, entity_key: str, source_tag: str, captured_at) -> List[Dict[str, Any]]:
        items = detail if isinstance(detail, list) else [detail]
        documents = []
        for item in items:
            if not isinstance(item, Mapping):
                raise TypeError(f"Detail for '{entity_key}' must be a mapping, got {type(item).__name__}")
            document = dict(item)
            document[ENTITY_KEY_FIELD] = entity_key
            document[SOURCE_TAG_FIELD] = source_tag
            document[CAPTURED_AT_FIELD] = captured_at
            documents.append(document)
        return documents

    async def _write(self, mode: CollectionMode, entries: List[Dict[str, Any]]) -> WriteResult:
        if mode is CollectionMode.HISTORICAL:
            return await self.storage.write_historical(self.collection, entries)
        return await self.storage.write_current(self.collection, entries, self.dedup_key_fn)

    @staticmethod
    def _apply_write_errors(
        result: WriteResult,
        owners: List[str],
        outcomes: Dict[str, EntityOutcome],
    ) -> None:
        for write_error in result.errors:
            key = owners[write_error.index]
            outcome = outcomes[key]
            outcome.documents = max(outcome.documents - 1, 0)
            if outcome.success:
                outcome.success = False
                outcome.error = write_error.message
                outcome.error_type = "WriteError"
