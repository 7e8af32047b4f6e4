"""
Tests for the resumable backfill engine.
"""

import pytest
from datetime import datetime, timedelta, timezone

from denormsync.backfill import (
    DENORMALIZATION_JOB,
    LIST_QUERY_CONTRACT_JOB,
    build_list_query_contract_updates,
    clamp_page_size,
    run_backfill,
    scan_drift,
)
from denormsync.errors import StateConflictError
from denormsync.state import STATE_COLLECTION, BackfillStateStore
from denormsync.store import InMemoryDocumentStore

from conftest import make_docs


def _state(store, job=DENORMALIZATION_JOB):
    return store.get(STATE_COLLECTION, job.job_id)


class TestDenormalizationBackfill:
    """Owner, caregiver and reminder fields."""

    def test_first_run_corrects_drift(self, memory_store, now):
        result = run_backfill(memory_store, DENORMALIZATION_JOB, now)

        assert result.processed == {"shares": 2, "shareInvites": 1, "medicationReminders": 2}
        assert result.updated == {"shares": 1, "shareInvites": 1, "medicationReminders": 1}
        assert result.has_more is False
        assert memory_store.get("shares", "share-b")["ownerName"] == "New Name"
        assert memory_store.get("shareInvites", "invite-a")["ownerName"] == "Ada Lovelace"
        assert memory_store.get("medicationReminders", "rem-1")["medicationDose"] == "1mg"

    def test_second_pass_converges_to_zero(self, memory_store, now):
        """With no source changes in between, the next pass writes nothing."""
        run_backfill(memory_store, DENORMALIZATION_JOB, now)
        commits_after_first = len(memory_store.commits)

        result = run_backfill(memory_store, DENORMALIZATION_JOB, now + timedelta(minutes=10))

        assert result.updated == {"shares": 0, "shareInvites": 0, "medicationReminders": 0}
        assert result.processed == {"shares": 2, "shareInvites": 1, "medicationReminders": 2}
        assert len(memory_store.commits) == commits_after_first

    def test_resumes_across_invocations(self, now):
        """300 documents at page size 250 take two invocations."""
        store = InMemoryDocumentStore(collections={
            "users": {"owner-1": {"displayName": "New Name", "email": "owner@example.com"}},
            "shares": make_docs(300, prefix="share", ownerId="owner-1", ownerName="Old Name"),
        })

        first = run_backfill(store, DENORMALIZATION_JOB, now, page_size=250)

        assert first.processed["shares"] == 250
        assert first.updated["shares"] == 250
        assert first.has_more is True
        assert first.cursors["shares"] == "share-0250"
        state = _state(store)
        assert state["sharesCursorId"] == "share-0250"
        assert state["completedAt"] is None
        assert state["lastRun"]["processedShares"] == 250

        second = run_backfill(store, DENORMALIZATION_JOB, now, page_size=250)

        assert second.processed["shares"] == 50
        assert second.has_more is False
        assert second.cursors["shares"] is None
        state = _state(store)
        assert state["sharesCursorId"] is None
        assert state["completedAt"] == now
        assert all(doc["ownerName"] == "New Name" for doc in store.collections["shares"].values())

    def test_missing_source_leaves_dependent_untouched(self, now):
        store = InMemoryDocumentStore(collections={
            "shares": {"s1": {"ownerId": "ghost", "ownerName": "Whoever"}},
            "medicationReminders": {"r1": {"medicationId": "gone", "medicationName": "X"}},
        })

        result = run_backfill(store, DENORMALIZATION_JOB, now)

        assert result.updated == {"shares": 0, "shareInvites": 0, "medicationReminders": 0}
        assert store.get("shares", "s1") == {"ownerId": "ghost", "ownerName": "Whoever"}

    def test_nameless_medication_is_skipped(self, now):
        store = InMemoryDocumentStore(collections={
            "medications": {"m1": {"name": "  ", "dose": "1mg"}},
            "medicationReminders": {"r1": {"medicationId": "m1", "medicationName": "Old"}},
        })

        result = run_backfill(store, DENORMALIZATION_JOB, now)

        assert result.updated["medicationReminders"] == 0

    def test_dry_run_writes_nothing(self, memory_store, now):
        """Dry run counts drift but neither writes nor saves progress."""
        result = run_backfill(memory_store, DENORMALIZATION_JOB, now, dry_run=True)

        assert result.dry_run is True
        assert result.updated == {"shares": 1, "shareInvites": 1, "medicationReminders": 1}
        assert result.state_version is None
        assert memory_store.commits == []
        assert _state(memory_store) is None
        assert memory_store.get("shares", "share-b")["ownerName"] == "Old Name"

    def test_dry_run_does_not_advance_cursors(self, now):
        store = InMemoryDocumentStore(collections={
            "shares": make_docs(5, prefix="share", ownerId="nobody"),
        })

        first = run_backfill(store, DENORMALIZATION_JOB, now, page_size=2, dry_run=True)
        second = run_backfill(store, DENORMALIZATION_JOB, now, page_size=2, dry_run=True)

        assert first.cursors["shares"] == "share-0002"
        assert second.cursors["shares"] == "share-0002"

    def test_page_size_is_clamped(self, memory_store, now):
        assert run_backfill(memory_store, DENORMALIZATION_JOB, now, page_size=10_000).page_size == 500
        assert run_backfill(memory_store, DENORMALIZATION_JOB, now, page_size=0).page_size == 1
        assert run_backfill(memory_store, DENORMALIZATION_JOB, now).page_size == 250

    def test_state_merge_keeps_unrelated_keys(self, memory_store, now):
        memory_store.put(STATE_COLLECTION, DENORMALIZATION_JOB.job_id, {
            "owner": "ops",
            "lastRun": {"note": "manual"},
        })

        run_backfill(memory_store, DENORMALIZATION_JOB, now)

        state = _state(memory_store)
        assert state["owner"] == "ops"
        assert state["lastRun"]["note"] == "manual"
        assert state["lastRun"]["updatedShareInvites"] == 1
        assert state["pageSize"] == 250
        assert state["lastProcessedAt"] == now

    def test_concurrent_save_conflicts(self, memory_store, now):
        """A state write between load and save makes this run's save fail."""
        original = memory_store.scan

        def scan_then_interfere(collection, after, limit):
            if collection == "shares":
                memory_store.put(STATE_COLLECTION, DENORMALIZATION_JOB.job_id, {"sharesCursorId": "x"})
            return original(collection, after, limit)

        memory_store.scan = scan_then_interfere

        with pytest.raises(StateConflictError):
            run_backfill(memory_store, DENORMALIZATION_JOB, now)

        assert _state(memory_store) == {"sharesCursorId": "x"}

    def test_result_to_dict_shape(self, memory_store, now):
        data = run_backfill(memory_store, DENORMALIZATION_JOB, now).to_dict()

        assert data["processedShares"] == 2
        assert data["updatedMedicationReminders"] == 1
        assert data["processedPerCollection"]["shareInvites"] == 1
        assert data["hasMore"] is False
        assert data["dryRun"] is False
        assert data["pageSize"] == 250

    def test_runs_against_sql_store(self, sql_store, now):
        first = run_backfill(sql_store, DENORMALIZATION_JOB, now)
        second = run_backfill(sql_store, DENORMALIZATION_JOB, now)

        assert first.updated == {"shares": 1, "shareInvites": 1, "medicationReminders": 1}
        assert second.updated == {"shares": 0, "shareInvites": 0, "medicationReminders": 0}
        state = sql_store.get_versioned(STATE_COLLECTION, DENORMALIZATION_JOB.job_id)
        assert state.version == 2
        assert state.data["completedAt"] == now


class TestListQueryContract:
    """Default fields for list queries."""

    def test_defaults_are_filled(self, now):
        visit_date = datetime(2024, 5, 1, tzinfo=timezone.utc)

        updates = build_list_query_contract_updates("visits", {"visitDate": visit_date}, now)

        assert updates == {"deletedAt": None, "deletedBy": None, "createdAt": visit_date}

    def test_created_at_falls_back_to_now(self, now):
        updates = build_list_query_contract_updates("actions", {"deletedAt": None, "deletedBy": None}, now)

        assert updates == {"createdAt": now}

    def test_non_timestamp_candidates_are_ignored(self, now):
        updates = build_list_query_contract_updates(
            "actions", {"deletedAt": None, "deletedBy": None, "createdAt": "2024-01-01"}, now
        )

        assert updates == {"createdAt": now}

    def test_medication_name_is_canonical(self, now):
        data = {"deletedAt": None, "deletedBy": None, "createdAt": now, "drugName": "Lisinopril"}

        assert build_list_query_contract_updates("medications", data, now) == {"name": "Lisinopril"}

    def test_complete_document_needs_nothing(self, now):
        data = {"deletedAt": None, "deletedBy": "u1", "createdAt": now}

        assert build_list_query_contract_updates("visits", data, now) == {}

    def test_job_converges(self, now):
        store = InMemoryDocumentStore(collections={
            "visits": make_docs(3, prefix="visit"),
            "medications": {"m1": {"medicationName": "Metformin"}},
        })

        first = run_backfill(store, LIST_QUERY_CONTRACT_JOB, now)
        second = run_backfill(store, LIST_QUERY_CONTRACT_JOB, now)

        assert first.updated == {"visits": 3, "actions": 0, "medications": 1}
        assert second.updated == {"visits": 0, "actions": 0, "medications": 0}
        assert store.get("medications", "m1")["name"] == "Metformin"
        assert store.get(STATE_COLLECTION, "listQueryContractBackfill")["visitsCursorId"] is None

    def test_list_query_page_size_bound(self, now):
        store = InMemoryDocumentStore()

        assert run_backfill(store, LIST_QUERY_CONTRACT_JOB, now, page_size=5000).page_size == 1000


class TestDriftScan:
    """Full dry pass for operators."""

    def test_scan_counts_every_page_without_writing(self, now):
        store = InMemoryDocumentStore(collections={
            "users": {"owner-1": {"displayName": "New Name"}},
            "shares": make_docs(7, prefix="share", ownerId="owner-1", ownerName="Old Name"),
        })

        totals = scan_drift(store, DENORMALIZATION_JOB, now, page_size=3)

        assert totals["shares"] == {"processed": 7, "drifted": 7}
        assert totals["medicationReminders"] == {"processed": 0, "drifted": 0}
        assert store.commits == []
        assert _state(store) is None

    def test_scan_after_backfill_is_clean(self, memory_store, now):
        run_backfill(memory_store, DENORMALIZATION_JOB, now)

        totals = scan_drift(memory_store, DENORMALIZATION_JOB, now)

        assert sum(t["drifted"] for t in totals.values()) == 0


def test_clamp_page_size():
    assert clamp_page_size(None, 250, 500) == 250
    assert clamp_page_size(-3, 250, 500) == 1
    assert clamp_page_size(900, 250, 500) == 500


def test_reset_restarts_pass(now):
    store = InMemoryDocumentStore(collections={"shares": make_docs(5, prefix="share")})
    run_backfill(store, DENORMALIZATION_JOB, now, page_size=2)

    BackfillStateStore(store, DENORMALIZATION_JOB.job_id, DENORMALIZATION_JOB.collections).reset()
    result = run_backfill(store, DENORMALIZATION_JOB, now, page_size=2)

    assert result.cursors["shares"] == "share-0002"
