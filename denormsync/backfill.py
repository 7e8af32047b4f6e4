"""
Backfill Engine.

Responsibilities:
- Page through whole collections in document-id order, one page per
  collection per invocation.
- Recompute desired denormalized/default fields from current data and
  correct any drift.
- Persist resumable progress after every invocation.

Non-Responsibilities:
- No scheduling and no retries (see scheduler.py).
- No handling of deleted source entities; dependents of a missing source
  are left untouched.

Invariant:
Running the engine again with no source mutations in between converges to
zero updates.
"""

from abc import ABC, abstractmethod
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence, Tuple

from .logger import get_logger
from .normalize import (
    build_owner_display_name,
    diff_fields,
    normalize_email,
    normalize_text,
    resolve_medication_name,
)
from .propagation import (
    MEDICATION_REMINDERS,
    MEDICATIONS,
    SHARE_INVITES,
    SHARES,
    USERS,
    caregiver_fields_current,
    owner_fields_current,
    reminder_fields_current,
)
from .state import (
    DENORMALIZATION_BACKFILL_STATE_DOC_ID,
    LIST_QUERY_CONTRACT_BACKFILL_STATE_DOC_ID,
    BackfillStateStore,
    stat_key,
)
from .store import DEFAULT_BATCH_LIMIT, Document, DocumentStore, PendingUpdate

logger = get_logger()

DEFAULT_BACKFILL_PAGE_SIZE = 250
MAX_BACKFILL_PAGE_SIZE = 500
MAX_LIST_QUERY_PAGE_SIZE = 1000
LIST_QUERY_BATCH_LIMIT = 400

Fields = Dict[str, Any]


def clamp_page_size(page_size: Optional[int], default: int, maximum: int) -> int:
    if page_size is None:
        return default
    return max(1, min(maximum, int(page_size)))


class Reconciler(ABC):
    """Computes corrective field updates for one page of one collection."""

    collection: str
    batch_limit: int = DEFAULT_BATCH_LIMIT

    @abstractmethod
    def plan(self, store: DocumentStore, docs: List[Document], now: datetime) -> List[Tuple[Document, Fields]]:
        """Return (document, fields) pairs for documents that need writing."""


class OwnerFieldReconciler(Reconciler):
    """Owner name/email and caregiver email on shares and invites, looked up from users."""

    def __init__(self, collection: str):
        self.collection = collection

    def plan(self, store, docs, now):
        user_ids = set()
        for doc in docs:
            for key in ("ownerId", "caregiverUserId"):
                user_id = normalize_text(doc.data.get(key))
                if user_id:
                    user_ids.add(user_id)

        users = store.get_many(USERS, sorted(user_ids))
        planned = []
        for doc in docs:
            owner_id = normalize_text(doc.data.get("ownerId"))
            caregiver_id = normalize_text(doc.data.get("caregiverUserId"))
            owner = users.get(owner_id) if owner_id else None
            caregiver = users.get(caregiver_id) if caregiver_id else None

            fields: Fields = {}
            if owner is not None:
                desired = {
                    "ownerName": build_owner_display_name(owner),
                    "ownerEmail": normalize_email(owner.get("email")),
                }
                if owner_fields_current(doc.data) != desired:
                    fields.update(desired)
            if caregiver is not None:
                desired = {"caregiverEmail": normalize_email(caregiver.get("email"))}
                if caregiver_fields_current(doc.data) != desired:
                    fields.update(desired)

            if fields:
                planned.append((doc, fields))
        return planned


class ReminderFieldReconciler(Reconciler):
    """Medication name/dose on reminders, looked up from medications."""

    collection = MEDICATION_REMINDERS

    def plan(self, store, docs, now):
        medication_ids = [normalize_text(doc.data.get("medicationId")) for doc in docs]
        medications = store.get_many(MEDICATIONS, [m for m in medication_ids if m])

        planned = []
        for doc, medication_id in zip(docs, medication_ids):
            medication = medications.get(medication_id) if medication_id else None
            if medication is None:
                continue
            medication_name = normalize_text(medication.get("name"))
            if not medication_name:
                continue
            desired = {
                "medicationName": medication_name,
                "medicationDose": normalize_text(medication.get("dose")),
            }
            if reminder_fields_current(doc.data) != desired:
                planned.append((doc, desired))
        return planned


CREATED_AT_CANDIDATES = {
    "visits": ("createdAt", "visitDate", "updatedAt", "summarizedAt", "transcriptionCompletedAt"),
    "actions": ("createdAt", "dueAt", "updatedAt", "completedAt"),
    "medications": ("createdAt", "startedAt", "changedAt", "updatedAt", "stoppedAt"),
}


def build_list_query_contract_updates(collection: str, data: Dict[str, Any], now: datetime) -> Fields:
    """
    Default fields list queries rely on, computed from the document alone.

    Soft-delete markers are added as null when absent, ``createdAt`` is
    recovered from the first timestamp among historical fields (else
    ``now``), and medications get a canonical ``name``.
    """
    updates: Fields = {}
    if "deletedAt" not in data:
        updates["deletedAt"] = None
    if "deletedBy" not in data:
        updates["deletedBy"] = None

    if not isinstance(data.get("createdAt"), datetime):
        candidates = CREATED_AT_CANDIDATES.get(collection, ("createdAt",))
        recovered = next(
            (data[name] for name in candidates if isinstance(data.get(name), datetime)), None
        )
        updates["createdAt"] = recovered or now

    if collection == "medications":
        canonical_name = resolve_medication_name(data)
        if data.get("name") != canonical_name:
            updates["name"] = canonical_name

    return updates


class ListQueryContractReconciler(Reconciler):
    """Self-contained default filling for visits, actions and medications."""

    batch_limit = LIST_QUERY_BATCH_LIMIT

    def __init__(self, collection: str):
        self.collection = collection

    def plan(self, store, docs, now):
        planned = []
        for doc in docs:
            updates = build_list_query_contract_updates(self.collection, doc.data, now)
            if updates:
                planned.append((doc, updates))
        return planned


@dataclass
class BackfillJob:
    job_id: str
    reconcilers: Sequence[Reconciler]
    default_page_size: int = DEFAULT_BACKFILL_PAGE_SIZE
    max_page_size: int = MAX_BACKFILL_PAGE_SIZE

    @property
    def collections(self) -> List[str]:
        return [r.collection for r in self.reconcilers]


DENORMALIZATION_JOB = BackfillJob(
    job_id=DENORMALIZATION_BACKFILL_STATE_DOC_ID,
    reconcilers=(
        OwnerFieldReconciler(SHARES),
        OwnerFieldReconciler(SHARE_INVITES),
        ReminderFieldReconciler(),
    ),
)

LIST_QUERY_CONTRACT_JOB = BackfillJob(
    job_id=LIST_QUERY_CONTRACT_BACKFILL_STATE_DOC_ID,
    reconcilers=(
        ListQueryContractReconciler("visits"),
        ListQueryContractReconciler("actions"),
        ListQueryContractReconciler("medications"),
    ),
    max_page_size=MAX_LIST_QUERY_PAGE_SIZE,
)

JOBS = {
    "denormalized": DENORMALIZATION_JOB,
    "list-query": LIST_QUERY_CONTRACT_JOB,
}


@dataclass
class PageResult:
    collection: str
    processed: int
    updated: int
    next_cursor: Optional[str]
    has_more: bool


@dataclass
class BackfillResult:
    processed: Dict[str, int]
    updated: Dict[str, int]
    has_more: bool
    cursors: Dict[str, Optional[str]]
    dry_run: bool
    page_size: int
    state_version: Optional[int] = None
    pages: List[PageResult] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {}
        for collection in self.processed:
            result[stat_key("processed", collection)] = self.processed[collection]
            result[stat_key("updated", collection)] = self.updated[collection]
        result.update(
            {
                "processedPerCollection": dict(self.processed),
                "updatedPerCollection": dict(self.updated),
                "hasMore": self.has_more,
                "cursors": dict(self.cursors),
                "dryRun": self.dry_run,
                "pageSize": self.page_size,
            }
        )
        return result


def run_page(
    store: DocumentStore,
    reconciler: Reconciler,
    cursor: Optional[str],
    page_size: int,
    now: datetime,
    dry_run: bool,
) -> PageResult:
    """Process one page of one collection; all I/O here is sequential."""
    page = store.page(reconciler.collection, cursor, page_size)
    if not page.documents:
        return PageResult(reconciler.collection, 0, 0, None, False)

    planned = reconciler.plan(store, page.documents, now)
    if dry_run:
        for doc, fields in planned:
            logger.debug(
                "Drift found",
                collection=reconciler.collection,
                doc_id=doc.id,
                changes=diff_fields(doc.data, fields),
            )
    else:
        pending = [PendingUpdate(ref=doc.ref, fields=fields, timestamp=now) for doc, fields in planned]
        store.apply_updates(pending, batch_limit=reconciler.batch_limit)

    return PageResult(
        collection=reconciler.collection,
        processed=len(page.documents),
        updated=len(planned),
        next_cursor=page.next_cursor,
        has_more=page.has_more,
    )


def _run_pages(
    store: DocumentStore,
    job: BackfillJob,
    cursors: Dict[str, Optional[str]],
    page_size: int,
    now: datetime,
    dry_run: bool,
) -> List[PageResult]:
    # Collections are independent, so their pages run side by side.
    with ThreadPoolExecutor(max_workers=max(1, len(job.reconcilers))) as pool:
        futures = [
            pool.submit(run_page, store, reconciler, cursors.get(reconciler.collection), page_size, now, dry_run)
            for reconciler in job.reconcilers
        ]
        return [future.result() for future in futures]


def run_backfill(
    store: DocumentStore,
    job: BackfillJob,
    now: datetime,
    page_size: Optional[int] = None,
    dry_run: bool = False,
) -> BackfillResult:
    """
    Advance every collection of ``job`` by one page.

    Args:
        store: Document store to read and correct
        job: Which collections and reconcilers to run
        now: Timestamp stamped on writes and on the persisted state
        page_size: Requested page size, clamped to the job's bounds
        dry_run: Count what would change without writing documents or
            advancing persisted progress

    Returns:
        BackfillResult with per-collection counts and the next cursors

    Raises:
        TransientIOError: If a store operation fails
        PartialBatchFailure: If a commit failed part-way
        StateConflictError: If another invocation saved state first
    """
    size = clamp_page_size(page_size, job.default_page_size, job.max_page_size)
    state_store = BackfillStateStore(store, job.job_id, job.collections)
    state = state_store.load()

    logger.info(
        "Running backfill page",
        job=job.job_id,
        page_size=size,
        dry_run=dry_run,
        cursors=state.cursors,
    )

    pages = _run_pages(store, job, state.cursors, size, now, dry_run)

    processed = {p.collection: p.processed for p in pages}
    updated = {p.collection: p.updated for p in pages}
    cursors = {p.collection: p.next_cursor for p in pages}
    has_more = any(p.has_more for p in pages)

    version = None
    if not dry_run:
        version = state_store.save(
            state,
            cursors=cursors,
            page_size=size,
            now=now,
            processed=processed,
            updated=updated,
            has_more=has_more,
        )

    for page in pages:
        logger.record_documents(page.collection, processed=page.processed, updated=page.updated)

    logger.info(
        "Backfill page complete",
        job=job.job_id,
        processed=processed,
        updated=updated,
        has_more=has_more,
        dry_run=dry_run,
    )

    return BackfillResult(
        processed=processed,
        updated=updated,
        has_more=has_more,
        cursors=cursors,
        dry_run=dry_run,
        page_size=size,
        state_version=version,
        pages=pages,
    )


def scan_drift(
    store: DocumentStore,
    job: BackfillJob,
    now: datetime,
    page_size: Optional[int] = None,
) -> Dict[str, Dict[str, int]]:
    """
    Dry-run a complete pass over every collection, ignoring persisted cursors.

    Returns:
        {collection: {"processed": n, "drifted": m}}
    """
    size = clamp_page_size(page_size, job.default_page_size, job.max_page_size)
    totals: Dict[str, Dict[str, int]] = {}
    for reconciler in job.reconcilers:
        cursor = None
        counts = {"processed": 0, "drifted": 0}
        while True:
            page = run_page(store, reconciler, cursor, size, now, dry_run=True)
            counts["processed"] += page.processed
            counts["drifted"] += page.updated
            if not page.has_more:
                break
            cursor = page.next_cursor
        totals[reconciler.collection] = counts
    return totals
