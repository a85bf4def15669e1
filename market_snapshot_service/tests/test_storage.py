"""
Unit tests for the snapshot storage engine

Tests:
- Upsert idempotence and change detection
- Historical append
- Empty batches never reach the store
- Entry-level failures and index mapping
- Big integers persisted in tagged form
- Backend failures and timeouts
- Dedup key helpers
"""

import asyncio
from unittest.mock import AsyncMock, Mock

import pytest

from conftest import at, snapshot
from market_snapshot_service.codec import BigInt, Codec
from market_snapshot_service.document_store import DocumentStore
from market_snapshot_service.errors import StorageError
from market_snapshot_service.storage import SnapshotStorage, funding_rate_dedup_key, snapshot_dedup_key

COLLECTION = "market_data"


@pytest.fixture
def mock_store():
    store = Mock(spec=DocumentStore)
    store.bulk_upsert = AsyncMock()
    store.bulk_insert = AsyncMock()
    return store


class TestWriteCurrent:

    @pytest.mark.asyncio
    async def test_unchanged_batch_is_idempotent(self, storage):
        entries = [snapshot("SOL-PERP", at(1), fundingRate=5), snapshot("BTC-PERP", at(1), fundingRate=2)]

        first = await storage.write_current(COLLECTION, entries)
        second = await storage.write_current(COLLECTION, entries)

        assert (first.matched, first.modified, first.upserted) == (0, 0, 2)
        assert (second.matched, second.modified, second.upserted) == (2, 0, 0)

    @pytest.mark.asyncio
    async def test_one_changed_field_modifies_one_entry(self, storage):
        entries = [snapshot("SOL-PERP", at(1), fundingRate=5), snapshot("BTC-PERP", at(1), fundingRate=2)]
        await storage.write_current(COLLECTION, entries)

        changed = [snapshot("SOL-PERP", at(1), fundingRate=6), snapshot("BTC-PERP", at(1), fundingRate=2)]
        result = await storage.write_current(COLLECTION, changed)

        assert (result.matched, result.modified, result.upserted) == (2, 1, 0)

    @pytest.mark.asyncio
    async def test_one_current_document_per_key(self, storage, memory_store):
        await storage.write_current(COLLECTION, [snapshot("SOL-PERP", at(1), fundingRate=5)])
        await storage.write_current(COLLECTION, [snapshot("SOL-PERP", at(2), fundingRate=7)])

        documents = await memory_store.find(COLLECTION)

        assert len(documents) == 1
        assert documents[0]["fundingRate"] == 7

    @pytest.mark.asyncio
    async def test_big_integers_stored_tagged(self, storage, memory_store):
        await storage.write_current(COLLECTION, [snapshot("SOL-PERP", at(1), sqrtK=BigInt(10**25))])

        raw = memory_store.collections[COLLECTION][0]["data"]

        assert raw["sqrtK"] == {"kind": "bigint", "digits": str(10**25)}

    @pytest.mark.asyncio
    async def test_missing_dedup_key_is_entry_error(self, storage):
        entries = [
            snapshot("SOL-PERP", at(1)),
            {"sourceTag": "drift", "capturedAt": at(1)},
            snapshot("BTC-PERP", at(1)),
        ]

        result = await storage.write_current(COLLECTION, entries)

        assert result.upserted == 2
        assert [e.index for e in result.errors] == [1]
        assert "entityKey" in result.errors[0].message

    @pytest.mark.asyncio
    async def test_store_errors_mapped_to_batch_positions(self, storage):
        entries = [
            snapshot("SOL-PERP", at(1)),
            {"capturedAt": at(1)},
            snapshot("BTC-PERP", at(1), bad=float("inf")),
            snapshot("ETH-PERP", at(1)),
        ]

        result = await storage.write_current(COLLECTION, entries)

        assert result.upserted == 2
        assert [e.index for e in result.errors] == [1, 2]

    @pytest.mark.asyncio
    async def test_cyclic_document_is_entry_error(self, storage):
        cyclic = snapshot("BTC-PERP", at(1))
        cyclic["self"] = cyclic

        result = await storage.write_current(COLLECTION, [snapshot("SOL-PERP", at(1)), cyclic])

        assert result.upserted == 1
        assert [e.index for e in result.errors] == [1]

    @pytest.mark.asyncio
    async def test_empty_batch_does_not_touch_store(self, mock_store):
        storage = SnapshotStorage(mock_store, Codec())

        result = await storage.write_current(COLLECTION, [])

        assert (result.matched, result.modified, result.upserted, result.failed) == (0, 0, 0, 0)
        mock_store.bulk_upsert.assert_not_called()

    @pytest.mark.asyncio
    async def test_backend_failure_propagates(self, mock_store):
        mock_store.bulk_upsert.side_effect = StorageError("connection refused")
        storage = SnapshotStorage(mock_store, Codec())

        with pytest.raises(StorageError):
            await storage.write_current(COLLECTION, [snapshot("SOL-PERP", at(1))])

    @pytest.mark.asyncio
    async def test_timeout_raises_storage_error(self, mock_store):
        async def hang(*args, **kwargs):
            await asyncio.sleep(10)

        mock_store.bulk_upsert.side_effect = hang
        storage = SnapshotStorage(mock_store, Codec(), timeout=0.05)

        with pytest.raises(StorageError, match="timed out"):
            await storage.write_current(COLLECTION, [snapshot("SOL-PERP", at(1))])


class TestWriteHistorical:

    @pytest.mark.asyncio
    async def test_every_call_appends(self, storage, memory_store):
        for minute in (1, 2, 3):
            result = await storage.write_historical(COLLECTION, [snapshot("SOL-PERP", at(minute), rate=minute)])
            assert result.inserted == 1

        assert len(await memory_store.find(COLLECTION)) == 3

    @pytest.mark.asyncio
    async def test_empty_batch_does_not_touch_store(self, mock_store):
        storage = SnapshotStorage(mock_store, Codec())

        result = await storage.write_historical(COLLECTION, [])

        assert result.inserted == 0
        mock_store.bulk_insert.assert_not_called()

    @pytest.mark.asyncio
    async def test_malformed_entry_reported(self, storage):
        result = await storage.write_historical(COLLECTION, [{"entityKey": "SOL-PERP"}, snapshot("BTC-PERP", at(1))])

        assert result.inserted == 1
        assert [e.index for e in result.errors] == [0]


class TestDedupKeys:

    def test_snapshot_key(self):
        assert snapshot_dedup_key(snapshot("SOL-PERP", at(1))) == ("SOL-PERP", "drift")

    def test_funding_rate_key(self):
        assert funding_rate_dedup_key({"recordId": "77", "entityKey": "SOL-PERP"}) == ("77", "SOL-PERP")

    def test_missing_component(self):
        with pytest.raises(KeyError):
            funding_rate_dedup_key({"entityKey": "SOL-PERP"})

    @pytest.mark.asyncio
    async def test_funding_records_keyed_by_record(self, storage, memory_store):
        entries = [
            snapshot("SOL-PERP", at(1), recordId=1, fundingRate=5),
            snapshot("SOL-PERP", at(1), recordId=2, fundingRate=6),
        ]

        await storage.write_current(COLLECTION, entries, funding_rate_dedup_key)
        result = await storage.write_current(COLLECTION, entries, funding_rate_dedup_key)

        assert result.matched == 2 and result.modified == 0
        assert len(await memory_store.find(COLLECTION)) == 2
