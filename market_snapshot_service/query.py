"""
Read side of the snapshot store

Latest-per-key, bounded history and grouped listings over a collection, plus
projection views that pick a subset of fields out of the stored documents.
Every document returned has been passed through Codec.decode, so encoded big
integers come back as BigInt.
"""

import asyncio
import time
from typing import Any, Dict, List, Optional, Sequence

import structlog

from market_snapshot_service.codec import BigInt, Codec
from market_snapshot_service.document_store import DocumentStore
from market_snapshot_service.errors import StorageError
from market_snapshot_service.metrics import storage_errors_total, storage_operation_duration_seconds
from market_snapshot_service.models import CAPTURED_AT_FIELD, ENTITY_KEY_FIELD, SOURCE_TAG_FIELD

logger = structlog.get_logger(__name__)

_MISSING = object()

FUNDING_RATE_FIELDS = (ENTITY_KEY_FIELD, SOURCE_TAG_FIELD, CAPTURED_AT_FIELD, "fundingRate", "lastFundingRateTs")
TWAP_PRICE_FIELDS = (ENTITY_KEY_FIELD, SOURCE_TAG_FIELD, CAPTURED_AT_FIELD, "twapPrice")


def _lookup(document: Dict[str, Any], path: str) -> Any:
    node: Any = document
    for part in path.split("."):
        if not isinstance(node, dict) or part not in node:
            return _MISSING
        node = node[part]
    return node


def _assign(target: Dict[str, Any], path: str, value: Any) -> None:
    parts = path.split(".")
    for part in parts[:-1]:
        target = target.setdefault(part, {})
    target[parts[-1]] = value


def project(
    documents: List[Dict[str, Any]],
    fields: Sequence[str],
    bigint_fields: Sequence[str] = (),
) -> List[Dict[str, Any]]:
    """
    Keep only the named (optionally dotted) fields of each document

    Fields listed in bigint_fields are always present in the output and
    default to BigInt(0) when the document lacks them. Other missing fields
    are omitted.
    """
    projected = []
    for document in documents:
        view: Dict[str, Any] = {}
        for path in fields:
            value = _lookup(document, path)
            if value is _MISSING or value is None:
                if path not in bigint_fields:
                    continue
                value = BigInt(0)
            _assign(view, path, value)
        projected.append(view)
    return projected


class SnapshotQueryService:
    """Queries over stored snapshot documents"""

    def __init__(self, store: DocumentStore, codec: Codec, timeout: float = 30.0):
        self.store = store
        self.codec = codec
        self.timeout = timeout

    async def _call(self, operation: str, coro) -> List[Dict[str, Any]]:
        started = time.perf_counter()
        try:
            documents = await asyncio.wait_for(coro, timeout=self.timeout)
        except asyncio.TimeoutError as e:
            storage_errors_total.labels(operation=operation, error_type="timeout").inc()
            raise StorageError(f"{operation} timed out after {self.timeout}s") from e
        except StorageError as e:
            storage_errors_total.labels(operation=operation, error_type="backend").inc()
            logger.error("Query failed", operation=operation, error=str(e))
            raise
        finally:
            storage_operation_duration_seconds.labels(operation=operation).observe(time.perf_counter() - started)
        return [self.codec.decode(document) for document in documents]

    async def latest(self, collection: str, source_tag: Optional[str] = None) -> List[Dict[str, Any]]:
        """One document per (entityKey, sourceTag), the newest capturedAt winning."""
        filter = {SOURCE_TAG_FIELD: source_tag} if source_tag else None
        return await self._call(
            "latest_per_group",
            self.store.latest_per_group(collection, (ENTITY_KEY_FIELD, SOURCE_TAG_FIELD), filter),
        )

    async def latest_for(
        self,
        collection: str,
        entity_key: str,
        source_tag: Optional[str] = None,
    ) -> Optional[Dict[str, Any]]:
        """Latest document for one entity, or None when nothing has been stored."""
        documents = await self.history(collection, entity_key, limit=1, source_tag=source_tag)
        return documents[0] if documents else None

    async def history(
        self,
        collection: str,
        entity_key: str,
        limit: int,
        source_tag: Optional[str] = None,
    ) -> List[Dict[str, Any]]:
        """
        Up to `limit` documents for one entity, newest first

        Raises:
            ValueError: if limit is not positive
        """
        if limit <= 0:
            raise ValueError(f"limit must be positive, got {limit}")

        filter = {ENTITY_KEY_FIELD: entity_key}
        if source_tag:
            filter[SOURCE_TAG_FIELD] = source_tag
        return await self._call("find", self.store.find(collection, filter, limit))

    async def latest_grouped(self, collection: str) -> Dict[str, List[Dict[str, Any]]]:
        """Latest document per source, grouped by entity key."""
        grouped: Dict[str, List[Dict[str, Any]]] = {}
        for document in await self.latest(collection):
            grouped.setdefault(document.get(ENTITY_KEY_FIELD), []).append(document)
        return grouped

    async def funding_rate_history(
        self,
        collection: str,
        entity_key: str,
        limit: int,
        source_tag: Optional[str] = None,
    ) -> List[Dict[str, Any]]:
        documents = await self.history(collection, entity_key, limit, source_tag)
        return project(documents, FUNDING_RATE_FIELDS, bigint_fields=("fundingRate",))

    async def twap_price_history(
        self,
        collection: str,
        entity_key: str,
        limit: int,
        source_tag: Optional[str] = None,
    ) -> List[Dict[str, Any]]:
        documents = await self.history(collection, entity_key, limit, source_tag)
        return project(documents, TWAP_PRICE_FIELDS, bigint_fields=("twapPrice",))
