"""
Document persistence for snapshot collections

A DocumentStore keeps JSON documents in named collections and offers the
primitives the storage and query layers are built on:

- find: documents matching an equality filter, newest capturedAt first
- bulk_upsert: replace-or-insert by dedup key, reporting matched/modified/upserted
- bulk_insert: unconditional append
- latest_per_group: one document per distinct group, the newest capturedAt wins

Ties on capturedAt are broken by store identifier: the most recently inserted
document is considered newer.

PostgresDocumentStore is the production backend (asyncpg, JSONB column).
InMemoryDocumentStore in memory_store.py implements the same contract for
local development and tests.
"""

import asyncio
import json
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional, Sequence, Tuple

import asyncpg
import structlog

from market_snapshot_service.errors import StorageError
from market_snapshot_service.models import (
    CAPTURED_AT_FIELD,
    DOCUMENT_ID_FIELD,
    WriteError,
    WriteResult,
)

logger = structlog.get_logger(__name__)

_FIELD_NAME_PATTERN = re.compile(r"[A-Za-z_][A-Za-z0-9_]*")


@dataclass
class UpsertOperation:
    """Replace-or-insert of one document targeted by its dedup key"""
    dedup_key: Tuple[Any, ...]
    document: Dict[str, Any]


@dataclass
class PreparedDocument:
    """Document validated and serialised for the backend"""
    captured_at: datetime
    payload: str


def _json_default(value: Any) -> Any:
    if isinstance(value, datetime):
        return _as_utc(value).isoformat()
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, Decimal):
        return str(value)
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def parse_captured_at(value: Any) -> datetime:
    """Accept a datetime or ISO-8601 string and return an aware UTC datetime."""
    if isinstance(value, datetime):
        return _as_utc(value)
    if isinstance(value, str):
        return _as_utc(datetime.fromisoformat(value.replace("Z", "+00:00")))
    raise ValueError(f"Document is missing a valid '{CAPTURED_AT_FIELD}' timestamp")


def prepare_document(document: Dict[str, Any]) -> PreparedDocument:
    """
    Validate and serialise a document for storage

    Raises:
        ValueError / TypeError: the document is malformed (no capturedAt,
            not JSON-serialisable, cyclic)
    """
    if not isinstance(document, dict):
        raise TypeError(f"Document must be a mapping, got {type(document).__name__}")

    body = {key: value for key, value in document.items() if key != DOCUMENT_ID_FIELD}
    captured_at = parse_captured_at(body.get(CAPTURED_AT_FIELD))
    body[CAPTURED_AT_FIELD] = captured_at
    return PreparedDocument(
        captured_at=captured_at,
        payload=json.dumps(body, default=_json_default, sort_keys=True, allow_nan=False),
    )


def dedup_key_text(dedup_key: Sequence[Any]) -> str:
    """Stable text form of a dedup key tuple."""
    return json.dumps(list(dedup_key), default=_json_default)


def check_field_name(name: str) -> str:
    if not _FIELD_NAME_PATTERN.fullmatch(name):
        raise ValueError(f"Invalid document field name: {name!r}")
    return name


class DocumentStore(ABC):
    """Collection-scoped document persistence"""

    @abstractmethod
    async def connect(self) -> None:
        """Open the backend; must be called before any other operation"""

    @abstractmethod
    async def close(self) -> None:
        """Release backend resources"""

    @abstractmethod
    async def find(
        self,
        collection: str,
        filter: Optional[Dict[str, Any]] = None,
        limit: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        """Documents matching an equality filter, newest first"""

    @abstractmethod
    async def bulk_upsert(self, collection: str, operations: List[UpsertOperation]) -> WriteResult:
        """Replace-or-insert every operation; entry failures are reported, not raised"""

    @abstractmethod
    async def bulk_insert(self, collection: str, documents: List[Dict[str, Any]]) -> WriteResult:
        """Insert every document; entry failures are reported, not raised"""

    @abstractmethod
    async def latest_per_group(
        self,
        collection: str,
        group_fields: Sequence[str],
        filter: Optional[Dict[str, Any]] = None,
    ) -> List[Dict[str, Any]]:
        """Newest document of each distinct group, ordered by group key"""

    async def __aenter__(self):
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()


class PostgresDocumentStore(DocumentStore):
    """PostgreSQL-backed document store (one JSONB row per document)."""

    TABLE = "snapshot_documents"

    # Errors caused by the entry itself rather than the backend
    ENTRY_ERRORS = (
        asyncpg.exceptions.DataError,
        asyncpg.exceptions.IntegrityConstraintViolationError,
    )

    def __init__(
        self,
        dsn: str,
        *,
        min_size: int = 1,
        max_size: int = 10,
        connect_retries: int = 5,
        retry_delay: float = 1.0,
    ) -> None:
        self._dsn = dsn
        self._min_size = min_size
        self._max_size = max_size
        self._connect_retries = connect_retries
        self._retry_delay = retry_delay
        self._pool: Optional[asyncpg.pool.Pool] = None

    async def connect(self) -> None:
        """Create the connection pool (retrying while PostgreSQL boots) and the schema."""
        if self._pool is not None:
            return

        delay = self._retry_delay
        for attempt in range(1, self._connect_retries + 1):
            try:
                logger.info(
                    "Initializing PostgreSQL connection pool",
                    min_size=self._min_size,
                    max_size=self._max_size,
                    attempt=attempt,
                )
                self._pool = await asyncpg.create_pool(
                    dsn=self._dsn,
                    min_size=self._min_size,
                    max_size=self._max_size,
                    statement_cache_size=0,
                )
                break
            except (OSError, asyncpg.PostgresError, asyncpg.InterfaceError) as error:
                logger.warning(
                    "PostgreSQL connection attempt failed",
                    attempt=attempt,
                    retries=self._connect_retries,
                    error=str(error),
                )
                if attempt == self._connect_retries:
                    raise StorageError(f"PostgreSQL unavailable: {error}") from error
                await asyncio.sleep(delay)
                delay *= 2

        await self._create_tables()

    async def close(self) -> None:
        if self._pool is None:
            return
        await self._pool.close()
        self._pool = None
        logger.info("Closed PostgreSQL connection pool")

    @property
    def pool(self) -> asyncpg.pool.Pool:
        if self._pool is None:
            raise StorageError("PostgresDocumentStore not connected; call connect() first")
        return self._pool

    async def _create_tables(self) -> None:
        statements = [
            f"""
            CREATE TABLE IF NOT EXISTS {self.TABLE} (
                id BIGSERIAL PRIMARY KEY,
                collection TEXT NOT NULL,
                dedup_key TEXT,
                captured_at TIMESTAMPTZ NOT NULL,
                data JSONB NOT NULL,
                created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
                updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
            )
            """,
            f"""
            CREATE UNIQUE INDEX IF NOT EXISTS idx_{self.TABLE}_dedup
                ON {self.TABLE} (collection, dedup_key)
                WHERE dedup_key IS NOT NULL
            """,
            f"""
            CREATE INDEX IF NOT EXISTS idx_{self.TABLE}_entity_time
                ON {self.TABLE} (collection, (data->>'entityKey'), (data->>'sourceTag'), captured_at DESC, id DESC)
            """,
            f"""
            CREATE INDEX IF NOT EXISTS idx_{self.TABLE}_data
                ON {self.TABLE} USING GIN (data jsonb_path_ops)
            """,
        ]
        try:
            async with self.pool.acquire() as conn:
                for statement in statements:
                    await conn.execute(statement)
        except (OSError, asyncpg.PostgresError, asyncpg.InterfaceError) as error:
            raise StorageError(f"Failed to create snapshot schema: {error}") from error
        logger.info("PostgreSQL schema ready for snapshot documents")

    @staticmethod
    def _row_to_document(row: Any) -> Dict[str, Any]:
        data = row["data"]
        if isinstance(data, str):
            data = json.loads(data)
        data[CAPTURED_AT_FIELD] = row["captured_at"]
        data[DOCUMENT_ID_FIELD] = row["id"]
        return data

    async def find(
        self,
        collection: str,
        filter: Optional[Dict[str, Any]] = None,
        limit: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        query = f"""
            SELECT id, captured_at, data
            FROM {self.TABLE}
            WHERE collection = $1 AND data @> $2::jsonb
            ORDER BY captured_at DESC, id DESC
            LIMIT $3
        """
        try:
            rows = await self.pool.fetch(
                query, collection, json.dumps(filter or {}, default=_json_default), limit
            )
        except (OSError, asyncpg.PostgresError, asyncpg.InterfaceError) as error:
            raise StorageError(f"find on '{collection}' failed: {error}") from error
        return [self._row_to_document(row) for row in rows]

    async def latest_per_group(
        self,
        collection: str,
        group_fields: Sequence[str],
        filter: Optional[Dict[str, Any]] = None,
    ) -> List[Dict[str, Any]]:
        if not group_fields:
            raise ValueError("latest_per_group requires at least one group field")
        group_exprs = ", ".join(f"data->>'{check_field_name(name)}'" for name in group_fields)
        query = f"""
            SELECT DISTINCT ON ({group_exprs}) id, captured_at, data
            FROM {self.TABLE}
            WHERE collection = $1 AND data @> $2::jsonb
            ORDER BY {group_exprs}, captured_at DESC, id DESC
        """
        try:
            rows = await self.pool.fetch(
                query, collection, json.dumps(filter or {}, default=_json_default)
            )
        except (OSError, asyncpg.PostgresError, asyncpg.InterfaceError) as error:
            raise StorageError(f"latest_per_group on '{collection}' failed: {error}") from error
        return [self._row_to_document(row) for row in rows]

    async def bulk_upsert(self, collection: str, operations: List[UpsertOperation]) -> WriteResult:
        result = WriteResult()
        if not operations:
            return result

        # Report matched rows even when the replace is a no-op
        query = f"""
            WITH existing AS (
                SELECT id FROM {self.TABLE}
                WHERE collection = $1 AND dedup_key = $2
            ), written AS (
                INSERT INTO {self.TABLE} AS d (collection, dedup_key, captured_at, data)
                VALUES ($1, $2, $3, $4::jsonb)
                ON CONFLICT (collection, dedup_key) WHERE dedup_key IS NOT NULL
                DO UPDATE SET data = EXCLUDED.data,
                              captured_at = EXCLUDED.captured_at,
                              updated_at = NOW()
                WHERE d.data IS DISTINCT FROM EXCLUDED.data
                RETURNING (xmax = 0) AS inserted
            )
            SELECT
                (SELECT COUNT(*) FROM existing) AS matched,
                (SELECT COUNT(*) FROM written WHERE inserted) AS upserted,
                (SELECT COUNT(*) FROM written WHERE NOT inserted) AS modified
        """
        try:
            async with self.pool.acquire() as conn:
                for index, operation in enumerate(operations):
                    try:
                        prepared = prepare_document(operation.document)
                    except (TypeError, ValueError) as error:
                        result.errors.append(WriteError(index=index, message=str(error)))
                        continue
                    try:
                        row = await conn.fetchrow(
                            query,
                            collection,
                            dedup_key_text(operation.dedup_key),
                            prepared.captured_at,
                            prepared.payload,
                        )
                    except self.ENTRY_ERRORS as error:
                        result.errors.append(WriteError(index=index, message=str(error)))
                        continue
                    result.matched += row["matched"]
                    result.upserted += row["upserted"]
                    result.modified += row["modified"]
        except (OSError, asyncpg.PostgresError, asyncpg.InterfaceError) as error:
            raise StorageError(f"bulk_upsert on '{collection}' failed: {error}") from error
        return result

    async def bulk_insert(self, collection: str, documents: List[Dict[str, Any]]) -> WriteResult:
        result = WriteResult()
        if not documents:
            return result

        query = f"""
            INSERT INTO {self.TABLE} (collection, dedup_key, captured_at, data)
            VALUES ($1, NULL, $2, $3::jsonb)
        """
        try:
            async with self.pool.acquire() as conn:
                for index, document in enumerate(documents):
                    try:
                        prepared = prepare_document(document)
                    except (TypeError, ValueError) as error:
                        result.errors.append(WriteError(index=index, message=str(error)))
                        continue
                    try:
                        await conn.execute(query, collection, prepared.captured_at, prepared.payload)
                    except self.ENTRY_ERRORS as error:
                        result.errors.append(WriteError(index=index, message=str(error)))
                        continue
                    result.inserted += 1
        except (OSError, asyncpg.PostgresError, asyncpg.InterfaceError) as error:
            raise StorageError(f"bulk_insert on '{collection}' failed: {error}") from error
        return result
