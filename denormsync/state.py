"""
Backfill State Store.

Responsibilities:
- Load and persist resumable cursors, page size and run statistics for
  one backfill job.
- Guard the read-modify-write with a version check.

Non-Responsibilities:
- No paging or reconciliation.

Invariant:
Saves merge into the persisted document, so collections not touched by a
run keep their progress.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Iterable, Optional

from .normalize import normalize_text
from .store import DocumentStore

STATE_COLLECTION = "systemMaintenance"
DENORMALIZATION_BACKFILL_STATE_DOC_ID = "denormalizationFieldBackfill"
LIST_QUERY_CONTRACT_BACKFILL_STATE_DOC_ID = "listQueryContractBackfill"


def cursor_field(collection: str) -> str:
    return f"{collection}CursorId"


def stat_key(prefix: str, collection: str) -> str:
    """stat_key("processed", "shareInvites") -> "processedShareInvites"."""
    return f"{prefix}{collection[:1].upper()}{collection[1:]}"


def deep_merge(base: Dict[str, Any], changes: Dict[str, Any]) -> Dict[str, Any]:
    merged = dict(base)
    for key, value in changes.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


@dataclass
class BackfillState:
    cursors: Dict[str, Optional[str]]
    version: Optional[int] = None
    data: Dict[str, Any] = field(default_factory=dict)

    @property
    def completed_at(self) -> Optional[datetime]:
        return self.data.get("completedAt")


class BackfillStateStore:
    """Persisted progress document for one backfill job."""

    def __init__(
        self,
        store: DocumentStore,
        job_id: str,
        collections: Iterable[str],
        state_collection: str = STATE_COLLECTION,
    ):
        self.store = store
        self.job_id = job_id
        self.collections = list(collections)
        self.state_collection = state_collection

    def load(self) -> BackfillState:
        snapshot = self.store.get_versioned(self.state_collection, self.job_id)
        data = snapshot.data if snapshot else {}
        cursors = {c: normalize_text(data.get(cursor_field(c))) for c in self.collections}
        return BackfillState(
            cursors=cursors,
            version=snapshot.version if snapshot else None,
            data=data,
        )

    def save(
        self,
        loaded: BackfillState,
        *,
        cursors: Dict[str, Optional[str]],
        page_size: int,
        now: datetime,
        processed: Dict[str, int],
        updated: Dict[str, int],
        has_more: bool,
    ) -> int:
        """
        Merge one run's progress into the state loaded earlier.

        Raises:
            StateConflictError: If the document changed since ``loaded`` was read
        """
        last_run: Dict[str, int] = {}
        for collection in self.collections:
            last_run[stat_key("processed", collection)] = processed.get(collection, 0)
            last_run[stat_key("updated", collection)] = updated.get(collection, 0)

        changes: Dict[str, Any] = {cursor_field(c): cursors.get(c) for c in self.collections}
        changes.update(
            {
                "pageSize": page_size,
                "lastProcessedAt": now,
                "lastRun": last_run,
                "completedAt": None if has_more else now,
            }
        )
        merged = deep_merge(loaded.data, changes)
        return self.store.put_if_version(self.state_collection, self.job_id, merged, loaded.version)

    def reset(self) -> int:
        """Return every collection to NotStarted; other keys are kept."""
        loaded = self.load()
        changes: Dict[str, Any] = {cursor_field(c): None for c in self.collections}
        changes["completedAt"] = None
        merged = deep_merge(loaded.data, changes)
        return self.store.put_if_version(self.state_collection, self.job_id, merged, loaded.version)
