"""
Pytest configuration and shared fixtures.
"""

import pytest
from datetime import datetime, timezone
from typing import Dict, Any

from denormsync.database import SqlDocumentStore
from denormsync.store import InMemoryDocumentStore


@pytest.fixture
def now() -> datetime:
    """Fixed write timestamp."""
    return datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def users() -> Dict[str, Dict[str, Any]]:
    """Source user profiles."""
    return {
        "owner-1": {"displayName": "New Name", "email": "Owner@Example.com"},
        "owner-2": {"firstName": "Ada", "lastName": "Lovelace", "email": "ada@example.com"},
        "caregiver-1": {"displayName": "Care Giver", "email": "  Care@Example.com "},
    }


@pytest.fixture
def medications() -> Dict[str, Dict[str, Any]]:
    """Source medication records."""
    return {
        "med-1": {"userId": "owner-1", "name": "Tacrolimus", "dose": "1mg"},
        "med-2": {"userId": "owner-2", "name": "Metformin", "dose": None},
    }


@pytest.fixture
def seeded_collections(users, medications) -> Dict[str, Dict[str, Dict[str, Any]]]:
    """Sources plus dependents with a mix of fresh and stale denormalized copies."""
    return {
        "users": users,
        "medications": medications,
        "shares": {
            "share-a": {
                "ownerId": "owner-1",
                "caregiverUserId": "caregiver-1",
                "ownerName": "New Name",
                "ownerEmail": "owner@example.com",
                "caregiverEmail": "care@example.com",
            },
            "share-b": {
                "ownerId": "owner-1",
                "caregiverUserId": "caregiver-1",
                "ownerName": "Old Name",
                "ownerEmail": "owner@example.com",
                "caregiverEmail": "care@example.com",
            },
        },
        "shareInvites": {
            "invite-a": {
                "ownerId": "owner-2",
                "caregiverUserId": None,
                "ownerName": None,
                "ownerEmail": None,
            },
        },
        "medicationReminders": {
            "rem-1": {
                "userId": "owner-1",
                "medicationId": "med-1",
                "medicationName": "Tacrolimus",
                "medicationDose": "0.5mg",
            },
            "rem-2": {
                "userId": "owner-2",
                "medicationId": "med-2",
                "medicationName": "Metformin",
                "medicationDose": None,
            },
        },
    }


@pytest.fixture
def memory_store(seeded_collections) -> InMemoryDocumentStore:
    """In-memory store seeded with sources and dependents."""
    return InMemoryDocumentStore(collections=seeded_collections)


@pytest.fixture
def sql_store(tmp_path, seeded_collections) -> SqlDocumentStore:
    """SQLite-backed store seeded with the same data."""
    store = SqlDocumentStore(tmp_path / "denormsync.db")
    for collection, docs in seeded_collections.items():
        for doc_id, data in docs.items():
            store.put(collection, doc_id, data)
    return store


def make_docs(count: int, prefix: str = "doc", **fields) -> Dict[str, Dict[str, Any]]:
    """Build ``count`` documents with zero-padded ids so id order is numeric order."""
    return {f"{prefix}-{i:04d}": dict(fields) for i in range(1, count + 1)}
