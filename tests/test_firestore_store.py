"""
Tests for the Firestore recipe store against a mocked AsyncClient.
"""

from unittest.mock import AsyncMock, MagicMock

import pytest
from google.api_core import exceptions as gcloud_exceptions

from mealcache.adapters.firestore import FirestoreRecipeStore
from mealcache.errors import StoreWriteError
from conftest import make_detail, make_summary


def _snapshot(doc_id, data, exists=True):
    snapshot = MagicMock()
    snapshot.id = str(doc_id)
    snapshot.exists = exists
    snapshot.to_dict.return_value = data
    return snapshot


def _batch(commit_error=None):
    batch = MagicMock()
    batch.commit = AsyncMock(side_effect=commit_error)
    return batch


async def _stream(snapshots):
    for snapshot in snapshots:
        yield snapshot


@pytest.fixture
def client():
    return MagicMock()


@pytest.fixture
def fs_store(client):
    return FirestoreRecipeStore(client=client, max_batch_size=500)


@pytest.mark.asyncio
async def test_put_batch_commits_three_chunks(client, fs_store):
    """1200 entries with a 500 write limit produce exactly 3 commits (500, 500, 200)"""
    batches = [_batch(), _batch(), _batch()]
    client.batch.side_effect = batches
    documents = [make_summary(i).summary_fields() for i in range(1, 1201)]

    report = await fs_store.put_batch(documents)

    assert client.batch.call_count == 3
    assert [b.set.call_count for b in batches] == [500, 500, 200]
    for b in batches:
        b.commit.assert_awaited_once()
    assert [c.size for c in report.chunks] == [500, 500, 200]
    assert report.written == 1200


@pytest.mark.asyncio
async def test_put_batch_uses_merge_writes(client, fs_store):
    batch = _batch()
    client.batch.return_value = batch

    await fs_store.put_batch([make_summary(42).summary_fields()])

    args, kwargs = batch.set.call_args
    assert kwargs == {"merge": True}
    assert args[1]["id"] == 42
    assert "has_details" not in args[1]
    fs_store._collection.document.assert_called_with("42")


@pytest.mark.asyncio
async def test_put_batch_failed_chunk_keeps_going(client):
    fs_store = FirestoreRecipeStore(client=client, max_batch_size=2)
    batches = [
        _batch(),
        _batch(commit_error=gcloud_exceptions.ServiceUnavailable("backend down")),
        _batch(),
    ]
    client.batch.side_effect = batches
    documents = [make_summary(i).summary_fields() for i in range(1, 6)]

    report = await fs_store.put_batch(documents)

    assert [c.committed for c in report.chunks] == [True, False, True]
    assert report.failed_ids == [3, 4]
    assert report.written == 3
    batches[2].commit.assert_awaited_once()


@pytest.mark.asyncio
async def test_put_marks_full_details(fs_store):
    doc = fs_store._collection.document.return_value
    doc.set = AsyncMock()

    await fs_store.put(7, make_detail(7).detail_fields())

    data = doc.set.await_args.args[0]
    assert data["has_details"] is True
    assert "detail_cached_at" in data
    assert doc.set.await_args.kwargs == {"merge": True}


@pytest.mark.asyncio
async def test_put_wraps_api_errors(fs_store):
    doc = fs_store._collection.document.return_value
    doc.set = AsyncMock(side_effect=gcloud_exceptions.DeadlineExceeded("slow"))

    with pytest.raises(StoreWriteError):
        await fs_store.put(7, {"title": "x"})


@pytest.mark.asyncio
async def test_get_normalizes_legacy_document(fs_store):
    doc = fs_store._collection.document.return_value
    doc.get = AsyncMock(
        return_value=_snapshot(
            "42",
            {
                "id": "42",
                "title": "Soup",
                "readyInMinutes": 20,
                "ingredients": [{"name": "water", "amount": "1"}],
                "instructions": "<ol><li>Boil the water.</li></ol>",
                "has_details": True,
            },
        )
    )

    entry = await fs_store.get("42")

    assert entry.id == 42
    assert entry.ready_in_minutes == 20
    assert entry.instructions[0].step == "Boil the water."
    assert entry.has_full_details


@pytest.mark.asyncio
async def test_get_missing_document(fs_store):
    doc = fs_store._collection.document.return_value
    doc.get = AsyncMock(return_value=_snapshot("1", None, exists=False))

    assert await fs_store.get(1) is None
    assert await fs_store.exists(1) is False


@pytest.mark.asyncio
async def test_counts_use_aggregation_queries(fs_store):
    def count_query(value):
        result = MagicMock()
        result.value = value
        query = MagicMock()
        query.get = AsyncMock(return_value=[[result]])
        return query

    fs_store._collection.count.return_value = count_query(10)
    fs_store._collection.where.return_value.count.return_value = count_query(4)

    assert await fs_store.count() == 10
    assert await fs_store.count_with_details() == 4
    fs_store._collection.where.assert_called_with("has_details", "==", True)


@pytest.mark.asyncio
async def test_ids_missing_details(client, fs_store):
    detailed = _snapshot(2, make_detail(2).detail_fields())
    snapshots = [
        _snapshot(1, {"id": 1, "title": "Summary only"}),
        detailed,
        _snapshot(3, {"id": 3, "title": "Another"}),
    ]
    fs_store._collection.limit.return_value.stream = lambda: _stream(snapshots)
    batch = _batch()
    client.batch.return_value = batch

    assert await fs_store.ids_missing_details(limit=10) == [1, 3]
    # Details stored without the has_details flag get the flag so counts see them
    batch.set.assert_called_once_with(detailed.reference, {"has_details": True}, merge=True)
    batch.commit.assert_awaited_once()


@pytest.mark.asyncio
async def test_ids_missing_details_pages_past_detailed_documents(client, fs_store):
    """Summary-only entries beyond the first page are still found"""
    detailed = [_snapshot(i, {**make_detail(i).detail_fields(), "has_details": True}) for i in range(1, 61)]
    first_page, second_page = detailed[:50], detailed[50:] + [_snapshot(100, {"id": 100, "title": "Late"})]
    fs_store._collection.limit.return_value.stream = lambda: _stream(first_page)
    fs_store._collection.start_after.return_value.limit.return_value.stream = lambda: _stream(second_page)

    assert await fs_store.ids_missing_details(limit=10) == [100]
    fs_store._collection.limit.assert_called_with(50)
    fs_store._collection.start_after.assert_called_once_with(first_page[-1])
    client.batch.assert_not_called()


@pytest.mark.asyncio
async def test_query_filters_by_keyword(fs_store):
    snapshots = [
        _snapshot(1, {"id": 1, "title": "Chocolate Cake"}),
        _snapshot(2, {"id": 2, "title": "Bean Soup"}),
    ]
    fs_store._collection.limit.return_value.stream = lambda: _stream(snapshots)

    entries = await fs_store.query("soup", limit=5)
    assert [e.id for e in entries] == [2]


@pytest.mark.asyncio
async def test_delete_older_than_skips_full_details(client, fs_store):
    stale = _snapshot(1, {"id": 1, "title": "Old summary"})
    detailed = _snapshot(2, make_detail(2).detail_fields())
    fs_store._collection.where.return_value.stream = lambda: _stream([stale, detailed])
    batch = _batch()
    client.batch.return_value = batch

    deleted = await fs_store.delete_older_than(MagicMock())

    assert deleted == 1
    batch.delete.assert_called_once_with(stale.reference)


@pytest.mark.asyncio
async def test_remove_favorite_missing(fs_store):
    ref = fs_store._users.document.return_value.collection.return_value.document.return_value
    ref.get = AsyncMock(return_value=_snapshot("42", None, exists=False))
    ref.delete = AsyncMock()

    assert await fs_store.remove_favorite("u1", 42) is False
    ref.delete.assert_not_awaited()
