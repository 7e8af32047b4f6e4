"""
Tests for the store access interface, using the in-memory store.
"""

import pytest

from denormsync.errors import DocumentNotFoundError, PartialBatchFailure, StateConflictError, TransientIOError
from denormsync.store import (
    LOOKUP_CHUNK_SIZE,
    DocumentRef,
    InMemoryDocumentStore,
    PendingUpdate,
)

from conftest import make_docs


def _updates(store, collection, now, **fields):
    return [
        PendingUpdate(ref=DocumentRef(collection, doc_id), fields=dict(fields), timestamp=now)
        for doc_id in sorted(store.collections[collection])
    ]


class TestPaging:
    """Test id-ordered paging."""

    def test_pages_cover_collection_in_order(self):
        """Consecutive pages are disjoint, ordered, and cover every document."""
        store = InMemoryDocumentStore(collections={"shares": make_docs(7, prefix="share")})

        seen = []
        cursor = None
        while True:
            page = store.page("shares", cursor, 3)
            seen.extend(doc.id for doc in page.documents)
            if not page.has_more:
                assert page.next_cursor is None
                break
            assert page.next_cursor == page.documents[-1].id
            cursor = page.next_cursor

        assert seen == sorted(store.collections["shares"])

    def test_exact_multiple_has_no_empty_trailing_page(self):
        """A collection of exactly page_size documents finishes in one page."""
        store = InMemoryDocumentStore(collections={"shares": make_docs(3, prefix="share")})

        page = store.page("shares", None, 3)

        assert len(page.documents) == 3
        assert page.has_more is False
        assert page.next_cursor is None

    def test_empty_collection(self):
        store = InMemoryDocumentStore()

        page = store.page("shares", None, 10)

        assert page.documents == []
        assert page.has_more is False
        assert page.next_cursor is None

    def test_cursor_past_deleted_document(self):
        """A cursor whose document was deleted still resumes after it."""
        store = InMemoryDocumentStore(collections={"shares": make_docs(4, prefix="share")})
        del store.collections["shares"]["share-0002"]

        page = store.page("shares", "share-0002", 10)

        assert [d.id for d in page.documents] == ["share-0003", "share-0004"]


class TestApplyUpdates:
    """Test chunked batch commits."""

    def test_chunk_count_is_ceiling(self, now):
        """N updates with limit K take ceil(N/K) commits."""
        store = InMemoryDocumentStore(collections={"shares": make_docs(10, prefix="share")})

        applied = store.apply_updates(_updates(store, "shares", now, ownerName="X"), batch_limit=4)

        assert applied == 10
        assert [len(chunk) for chunk in store.commits] == [4, 4, 2]

    def test_empty_updates_issue_no_commit(self):
        store = InMemoryDocumentStore()

        assert store.apply_updates([]) == 0
        assert store.commits == []

    def test_updates_stamp_updated_at(self, now):
        store = InMemoryDocumentStore(collections={"shares": {"s1": {"ownerName": "Old", "ownerId": "u1"}}})

        store.apply_updates(_updates(store, "shares", now, ownerName="New"))

        assert store.get("shares", "s1") == {"ownerName": "New", "ownerId": "u1", "updatedAt": now}

    def test_first_chunk_failure_propagates_unchanged(self, now):
        """Nothing committed, so the original error surfaces."""
        def fail(chunk):
            raise TransientIOError("store unavailable")

        store = InMemoryDocumentStore(
            collections={"shares": make_docs(5, prefix="share")}, fail_commit=fail
        )

        with pytest.raises(TransientIOError) as exc_info:
            store.apply_updates(_updates(store, "shares", now, ownerName="X"), batch_limit=2)

        assert not isinstance(exc_info.value, PartialBatchFailure)
        assert store.commits == []

    def test_later_chunk_failure_is_partial(self, now):
        """Earlier chunks stay committed and the failure reports how many."""
        calls = [0]

        def fail_second(chunk):
            calls[0] += 1
            if calls[0] == 2:
                raise TransientIOError("commit failed")

        store = InMemoryDocumentStore(
            collections={"shares": make_docs(5, prefix="share")}, fail_commit=fail_second
        )

        with pytest.raises(PartialBatchFailure) as exc_info:
            store.apply_updates(_updates(store, "shares", now, ownerName="X"), batch_limit=2)

        assert exc_info.value.committed == 2
        assert exc_info.value.total == 5
        assert isinstance(exc_info.value.cause, TransientIOError)
        assert store.get("shares", "share-0001")["ownerName"] == "X"
        assert "ownerName" not in store.get("shares", "share-0003")

    def test_missing_target_fails_whole_chunk(self, now):
        """A deleted target aborts its chunk before anything is applied."""
        store = InMemoryDocumentStore(collections={"shares": {"s1": {}, "s2": {}}})
        updates = _updates(store, "shares", now, ownerName="X")
        del store.collections["shares"]["s2"]

        with pytest.raises(DocumentNotFoundError):
            store.apply_updates(updates)

        assert store.get("shares", "s1") == {}


class TestGetMany:
    """Test sparse multi-get."""

    def test_sparse_result(self, memory_store):
        users = memory_store.get_many("users", ["owner-1", "ghost", "owner-1", "", None])

        assert set(users) == {"owner-1"}

    def test_large_lookups_are_chunked(self):
        """Ids are fetched in bounded chunks."""
        store = InMemoryDocumentStore(collections={"users": make_docs(600, prefix="user")})
        chunks = []
        original = store._get_many

        def recording(collection, ids):
            chunks.append(len(ids))
            return original(collection, ids)

        store._get_many = recording

        result = store.get_many("users", list(store.collections["users"]))

        assert len(result) == 600
        assert chunks == [LOOKUP_CHUNK_SIZE, LOOKUP_CHUNK_SIZE, 100]


class TestVersionedWrites:
    """Test optimistic concurrency."""

    def test_create_then_update(self):
        store = InMemoryDocumentStore()

        assert store.get_versioned("systemMaintenance", "job") is None
        assert store.put_if_version("systemMaintenance", "job", {"a": 1}, None) == 1
        assert store.put_if_version("systemMaintenance", "job", {"a": 2}, 1) == 2
        assert store.get_versioned("systemMaintenance", "job").data == {"a": 2}

    def test_stale_version_conflicts(self):
        store = InMemoryDocumentStore()
        store.put_if_version("systemMaintenance", "job", {"a": 1}, None)
        store.put("systemMaintenance", "job", {"a": "concurrent"})

        with pytest.raises(StateConflictError):
            store.put_if_version("systemMaintenance", "job", {"a": 2}, 1)

    def test_create_conflicts_when_present(self):
        store = InMemoryDocumentStore(collections={"systemMaintenance": {"job": {}}})

        with pytest.raises(StateConflictError):
            store.put_if_version("systemMaintenance", "job", {"a": 1}, None)

    def test_seeded_documents_advance_version_on_put(self):
        store = InMemoryDocumentStore(collections={"systemMaintenance": {"job": {}}})

        store.put("systemMaintenance", "job", {"a": 1})

        assert store.get_versioned("systemMaintenance", "job").version == 2
