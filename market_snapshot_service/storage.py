"""
Snapshot storage engine

Two write disciplines over a named collection:

- write_current: replace-or-insert each entry by its dedup key, keeping at
  most one "current" document per key. Re-applying an unchanged batch is a
  no-op (modified = 0).
- write_historical: append every entry as a new point-in-time document.

Entries are encoded with the codec before they reach the document store. An
entry that cannot be encoded, has no dedup key or cannot be serialised is
reported in WriteResult.errors; the rest of the batch is still written.
Backend failures and timeouts raise StorageError.
"""

import asyncio
import time
from typing import Any, Callable, Dict, List, Sequence, Tuple

import structlog

from market_snapshot_service.codec import Codec
from market_snapshot_service.document_store import DocumentStore, UpsertOperation
from market_snapshot_service.errors import CodecError, StorageError
from market_snapshot_service.metrics import (
    documents_written_total,
    storage_errors_total,
    storage_operation_duration_seconds,
)
from market_snapshot_service.models import (
    ENTITY_KEY_FIELD,
    SOURCE_TAG_FIELD,
    WriteError,
    WriteResult,
)

logger = structlog.get_logger(__name__)

DedupKeyFn = Callable[[Dict[str, Any]], Tuple[Any, ...]]


def _require_fields(document: Dict[str, Any], fields: Sequence[str]) -> Tuple[Any, ...]:
    missing = [name for name in fields if document.get(name) in (None, "")]
    if missing:
        raise KeyError(f"Document is missing dedup key field(s): {', '.join(missing)}")
    return tuple(document[name] for name in fields)


def snapshot_dedup_key(document: Dict[str, Any]) -> Tuple[Any, ...]:
    """Price/market snapshots: one current document per (entityKey, sourceTag)."""
    return _require_fields(document, (ENTITY_KEY_FIELD, SOURCE_TAG_FIELD))


def funding_rate_dedup_key(document: Dict[str, Any]) -> Tuple[Any, ...]:
    """Funding-rate entries: one document per (recordId, entityKey)."""
    return _require_fields(document, ("recordId", ENTITY_KEY_FIELD))


class SnapshotStorage:
    """Writes encoded snapshot documents through a DocumentStore"""

    def __init__(self, store: DocumentStore, codec: Codec, timeout: float = 30.0):
        self.store = store
        self.codec = codec
        self.timeout = timeout

    async def write_current(
        self,
        collection: str,
        entries: List[Dict[str, Any]],
        dedup_key_fn: DedupKeyFn = snapshot_dedup_key,
    ) -> WriteResult:
        """
        Upsert every entry by its dedup key

        Returns:
            WriteResult with matched/modified/upserted counts and entry errors
        """
        if not entries:
            return WriteResult()

        operations: List[UpsertOperation] = []
        positions: List[int] = []
        errors: List[WriteError] = []

        for index, entry in enumerate(entries):
            try:
                encoded = self.codec.encode(entry)
                operations.append(UpsertOperation(dedup_key=dedup_key_fn(encoded), document=encoded))
                positions.append(index)
            except (CodecError, KeyError, TypeError, ValueError) as e:
                errors.append(WriteError(index=index, message=str(e)))

        result = await self._run("bulk_upsert", collection, self.store.bulk_upsert, operations)
        result = self._merge(result, positions, errors)

        documents_written_total.labels(collection=collection, operation="upserted").inc(result.upserted)
        documents_written_total.labels(collection=collection, operation="modified").inc(result.modified)
        logger.info(
            "Upserted current snapshots",
            collection=collection,
            matched=result.matched,
            modified=result.modified,
            upserted=result.upserted,
            failed=result.failed
        )
        return result

    async def write_historical(self, collection: str, entries: List[Dict[str, Any]]) -> WriteResult:
        """
        Append every entry as a new document regardless of existing keys

        Returns:
            WriteResult with the inserted count and entry errors
        """
        if not entries:
            return WriteResult()

        documents: List[Dict[str, Any]] = []
        positions: List[int] = []
        errors: List[WriteError] = []

        for index, entry in enumerate(entries):
            try:
                documents.append(self.codec.encode(entry))
                positions.append(index)
            except CodecError as e:
                errors.append(WriteError(index=index, message=str(e)))

        result = await self._run("bulk_insert", collection, self.store.bulk_insert, documents)
        result = self._merge(result, positions, errors)

        documents_written_total.labels(collection=collection, operation="inserted").inc(result.inserted)
        logger.info(
            "Inserted historical snapshots",
            collection=collection,
            inserted=result.inserted,
            failed=result.failed
        )
        return result

    async def _run(self, operation: str, collection: str, call, batch: List[Any]) -> WriteResult:
        if not batch:
            return WriteResult()

        started = time.perf_counter()
        try:
            return await asyncio.wait_for(call(collection, batch), timeout=self.timeout)
        except asyncio.TimeoutError as e:
            storage_errors_total.labels(operation=operation, error_type="timeout").inc()
            logger.error("Storage call timed out", operation=operation, collection=collection, timeout=self.timeout)
            raise StorageError(f"{operation} on '{collection}' timed out after {self.timeout}s") from e
        except StorageError as e:
            storage_errors_total.labels(operation=operation, error_type="backend").inc()
            logger.error("Storage call failed", operation=operation, collection=collection, error=str(e))
            raise
        finally:
            storage_operation_duration_seconds.labels(operation=operation).observe(time.perf_counter() - started)

    @staticmethod
    def _merge(result: WriteResult, positions: List[int], errors: List[WriteError]) -> WriteResult:
        """Map store-level entry indexes back onto the caller's batch and add pre-store errors."""
        remapped = [WriteError(index=positions[e.index], message=e.message) for e in result.errors]
        merged = sorted(errors + remapped, key=lambda e: e.index)
        return result.model_copy(update={"errors": merged})

