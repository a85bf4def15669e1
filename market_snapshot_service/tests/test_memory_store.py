"""
Unit tests for the in-memory document store

Tests:
- Connection guard
- find ordering, filtering and limits
- latest_per_group selection and tie-breaking
- bulk_upsert matched/modified/upserted counting
- bulk_insert append semantics
- Entry-level failures for malformed documents
"""

import pytest

from conftest import at, snapshot
from market_snapshot_service.document_store import UpsertOperation
from market_snapshot_service.errors import StorageError
from market_snapshot_service.memory_store import InMemoryDocumentStore

COLLECTION = "market_data"


def upsert(document):
    return UpsertOperation(dedup_key=(document["entityKey"], document["sourceTag"]), document=document)


class TestConnection:

    @pytest.mark.asyncio
    async def test_calls_before_connect_fail(self):
        store = InMemoryDocumentStore()
        with pytest.raises(StorageError):
            await store.find(COLLECTION)

    @pytest.mark.asyncio
    async def test_async_context_manager(self):
        async with InMemoryDocumentStore() as store:
            assert store.connected
        assert not store.connected


class TestFind:

    @pytest.mark.asyncio
    async def test_newest_first_with_limit(self, memory_store):
        await memory_store.bulk_insert(COLLECTION, [
            snapshot("SOL-PERP", at(1), price=1),
            snapshot("SOL-PERP", at(3), price=3),
            snapshot("SOL-PERP", at(2), price=2),
        ])

        documents = await memory_store.find(COLLECTION, {"entityKey": "SOL-PERP"}, limit=2)

        assert [d["price"] for d in documents] == [3, 2]
        assert documents[0]["capturedAt"] == at(3)
        assert "_id" in documents[0]

    @pytest.mark.asyncio
    async def test_equal_timestamps_newest_insert_first(self, memory_store):
        await memory_store.bulk_insert(COLLECTION, [snapshot("SOL-PERP", at(1), seq=1)])
        await memory_store.bulk_insert(COLLECTION, [snapshot("SOL-PERP", at(1), seq=2)])

        documents = await memory_store.find(COLLECTION)

        assert [d["seq"] for d in documents] == [2, 1]

    @pytest.mark.asyncio
    async def test_filter_and_missing_collection(self, memory_store):
        await memory_store.bulk_insert(COLLECTION, [
            snapshot("SOL-PERP", at(1)),
            snapshot("BTC-PERP", at(1)),
        ])

        assert len(await memory_store.find(COLLECTION, {"entityKey": "BTC-PERP"})) == 1
        assert await memory_store.find(COLLECTION, {"entityKey": "ETH-PERP"}) == []
        assert await memory_store.find("unknown") == []

    @pytest.mark.asyncio
    async def test_returned_documents_are_copies(self, memory_store):
        await memory_store.bulk_insert(COLLECTION, [snapshot("SOL-PERP", at(1), amm={"k": 1})])

        first = await memory_store.find(COLLECTION)
        first[0]["amm"]["k"] = 99

        assert (await memory_store.find(COLLECTION))[0]["amm"]["k"] == 1


class TestLatestPerGroup:

    @pytest.mark.asyncio
    async def test_one_document_per_group(self, memory_store):
        await memory_store.bulk_insert(COLLECTION, [
            snapshot("SOL-PERP", at(1), price=1),
            snapshot("SOL-PERP", at(3), price=3),
            snapshot("SOL-PERP", at(2), price=2),
            snapshot("BTC-PERP", at(1), price=10),
            snapshot("SOL-PERP", at(5), source_tag="mango", price=50),
        ])

        latest = await memory_store.latest_per_group(COLLECTION, ["entityKey", "sourceTag"])

        assert [(d["entityKey"], d["sourceTag"], d["price"]) for d in latest] == [
            ("BTC-PERP", "drift", 10),
            ("SOL-PERP", "drift", 3),
            ("SOL-PERP", "mango", 50),
        ]

    @pytest.mark.asyncio
    async def test_filter_applies_before_grouping(self, memory_store):
        await memory_store.bulk_insert(COLLECTION, [
            snapshot("SOL-PERP", at(1), price=1),
            snapshot("SOL-PERP", at(5), source_tag="mango", price=50),
        ])

        latest = await memory_store.latest_per_group(
            COLLECTION, ["entityKey", "sourceTag"], {"sourceTag": "drift"}
        )

        assert [d["price"] for d in latest] == [1]

    @pytest.mark.asyncio
    async def test_empty_collection(self, memory_store):
        assert await memory_store.latest_per_group(COLLECTION, ["entityKey"]) == []

    @pytest.mark.asyncio
    async def test_requires_valid_group_fields(self, memory_store):
        with pytest.raises(ValueError):
            await memory_store.latest_per_group(COLLECTION, [])
        with pytest.raises(ValueError):
            await memory_store.latest_per_group(COLLECTION, ["entityKey'; DROP TABLE"])


class TestBulkUpsert:

    @pytest.mark.asyncio
    async def test_insert_then_unchanged(self, memory_store):
        operations = [upsert(snapshot("SOL-PERP", at(1), rate=5)), upsert(snapshot("BTC-PERP", at(1), rate=1))]

        first = await memory_store.bulk_upsert(COLLECTION, operations)
        second = await memory_store.bulk_upsert(COLLECTION, operations)

        assert (first.matched, first.modified, first.upserted) == (0, 0, 2)
        assert (second.matched, second.modified, second.upserted) == (2, 0, 0)
        assert len(await memory_store.find(COLLECTION)) == 2

    @pytest.mark.asyncio
    async def test_changed_payload_replaces_document(self, memory_store):
        await memory_store.bulk_upsert(COLLECTION, [upsert(snapshot("SOL-PERP", at(1), rate=5))])

        result = await memory_store.bulk_upsert(COLLECTION, [upsert(snapshot("SOL-PERP", at(2), rate=7))])

        assert (result.matched, result.modified, result.upserted) == (1, 1, 0)
        documents = await memory_store.find(COLLECTION)
        assert len(documents) == 1
        assert documents[0]["rate"] == 7
        assert documents[0]["capturedAt"] == at(2)

    @pytest.mark.asyncio
    async def test_malformed_entry_does_not_abort_batch(self, memory_store):
        operations = [
            upsert(snapshot("SOL-PERP", at(1))),
            upsert(snapshot("BTC-PERP", at(1), bad=float("nan"))),
            upsert(snapshot("ETH-PERP", at(1))),
        ]

        result = await memory_store.bulk_upsert(COLLECTION, operations)

        assert result.upserted == 2
        assert [e.index for e in result.errors] == [1]

    @pytest.mark.asyncio
    async def test_empty_batch(self, memory_store):
        result = await memory_store.bulk_upsert(COLLECTION, [])
        assert result.upserted == 0 and result.errors == []


class TestBulkInsert:

    @pytest.mark.asyncio
    async def test_appends_even_with_equal_keys(self, memory_store):
        document = snapshot("SOL-PERP", at(1))
        await memory_store.bulk_insert(COLLECTION, [document])
        result = await memory_store.bulk_insert(COLLECTION, [document])

        assert result.inserted == 1
        assert len(await memory_store.find(COLLECTION)) == 2

    @pytest.mark.asyncio
    async def test_document_without_timestamp_is_entry_error(self, memory_store):
        result = await memory_store.bulk_insert(COLLECTION, [{"entityKey": "SOL-PERP"}, snapshot("BTC-PERP", at(1))])

        assert result.inserted == 1
        assert result.errors[0].index == 0

    @pytest.mark.asyncio
    async def test_id_is_ignored_on_write(self, memory_store):
        document = snapshot("SOL-PERP", at(1))
        document["_id"] = 12345

        await memory_store.bulk_insert(COLLECTION, [document])

        stored = (await memory_store.find(COLLECTION))[0]
        assert stored["_id"] != 12345
