"""
In-process document store for development and tests

Implements the DocumentStore contract without a database. Documents are
serialised exactly as the PostgreSQL backend would serialise them, so
malformed entries fail here the same way they fail in production.
"""

import copy
import json
from typing import Any, Dict, List, Optional, Sequence

import structlog

from market_snapshot_service.document_store import (
    DocumentStore,
    UpsertOperation,
    check_field_name,
    dedup_key_text,
    prepare_document,
)
from market_snapshot_service.errors import StorageError
from market_snapshot_service.models import (
    CAPTURED_AT_FIELD,
    DOCUMENT_ID_FIELD,
    WriteError,
    WriteResult,
)

logger = structlog.get_logger(__name__)


class InMemoryDocumentStore(DocumentStore):
    """Document store that keeps every collection in a list of records"""

    def __init__(self):
        self.collections: Dict[str, List[Dict[str, Any]]] = {}
        self.connected = False
        self._next_id = 1

    async def connect(self) -> None:
        logger.info("Connected to in-memory document store")
        self.connected = True

    async def close(self) -> None:
        logger.info("Closed in-memory document store")
        self.connected = False

    def _records(self, collection: str) -> List[Dict[str, Any]]:
        if not self.connected:
            raise StorageError("In-memory document store is not connected")
        return self.collections.setdefault(collection, [])

    def _new_record(self, dedup_key: Optional[str], prepared) -> Dict[str, Any]:
        record = {
            "id": self._next_id,
            "dedup_key": dedup_key,
            "captured_at": prepared.captured_at,
            "data": json.loads(prepared.payload),
        }
        self._next_id += 1
        return record

    @staticmethod
    def _to_document(record: Dict[str, Any]) -> Dict[str, Any]:
        document = copy.deepcopy(record["data"])
        document[CAPTURED_AT_FIELD] = record["captured_at"]
        document[DOCUMENT_ID_FIELD] = record["id"]
        return document

    @staticmethod
    def _matches(record: Dict[str, Any], filter: Optional[Dict[str, Any]]) -> bool:
        if not filter:
            return True
        data = record["data"]
        return all(key in data and data[key] == value for key, value in filter.items())

    @staticmethod
    def _newest_first(records: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        return sorted(records, key=lambda r: (r["captured_at"], r["id"]), reverse=True)

    async def find(
        self,
        collection: str,
        filter: Optional[Dict[str, Any]] = None,
        limit: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        matching = [r for r in self._records(collection) if self._matches(r, filter)]
        ordered = self._newest_first(matching)
        if limit is not None:
            ordered = ordered[:limit]
        return [self._to_document(r) for r in ordered]

    async def latest_per_group(
        self,
        collection: str,
        group_fields: Sequence[str],
        filter: Optional[Dict[str, Any]] = None,
    ) -> List[Dict[str, Any]]:
        if not group_fields:
            raise ValueError("latest_per_group requires at least one group field")
        fields = [check_field_name(name) for name in group_fields]

        latest: Dict[tuple, Dict[str, Any]] = {}
        for record in self._newest_first(self._records(collection)):
            if not self._matches(record, filter):
                continue
            group = tuple(_group_value(record["data"].get(name)) for name in fields)
            latest.setdefault(group, record)

        return [self._to_document(latest[group]) for group in sorted(latest, key=_group_sort_key)]

    async def bulk_upsert(self, collection: str, operations: List[UpsertOperation]) -> WriteResult:
        result = WriteResult()
        if not operations:
            return result

        records = self._records(collection)
        for index, operation in enumerate(operations):
            try:
                prepared = prepare_document(operation.document)
            except (TypeError, ValueError) as error:
                result.errors.append(WriteError(index=index, message=str(error)))
                continue

            key = dedup_key_text(operation.dedup_key)
            existing = next((r for r in records if r["dedup_key"] == key), None)
            if existing is None:
                records.append(self._new_record(key, prepared))
                result.upserted += 1
                continue

            result.matched += 1
            replacement = json.loads(prepared.payload)
            if replacement != existing["data"]:
                existing["data"] = replacement
                existing["captured_at"] = prepared.captured_at
                result.modified += 1

        return result

    async def bulk_insert(self, collection: str, documents: List[Dict[str, Any]]) -> WriteResult:
        result = WriteResult()
        if not documents:
            return result

        records = self._records(collection)
        for index, document in enumerate(documents):
            try:
                prepared = prepare_document(document)
            except (TypeError, ValueError) as error:
                result.errors.append(WriteError(index=index, message=str(error)))
                continue
            records.append(self._new_record(None, prepared))
            result.inserted += 1

        return result


def _group_value(value: Any) -> Optional[str]:
    """Text form of a grouping field, mirroring PostgreSQL's ->> operator."""
    if value is None:
        return None
    if isinstance(value, str):
        return value
    return json.dumps(value, sort_keys=True)


def _group_sort_key(group: tuple) -> tuple:
    # NULL groups sort last, as in PostgreSQL ascending order
    return tuple((part is None, part or "") for part in group)
