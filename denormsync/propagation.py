"""
Live Sync Propagators.

Responsibilities:
- Push one resolved source change out to every dependent that references it.
- Write only dependents whose stored values differ from the desired ones.

Non-Responsibilities:
- No retries, no error absorption; store failures reach the caller as-is.
- No wall-clock reads; the caller supplies the write timestamp.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from .normalize import normalize_email, normalize_text
from .resolvers import (
    CaregiverUpdate,
    OwnerUpdate,
    ReminderUpdate,
    resolve_caregiver_email_update,
    resolve_medication_reminder_update,
    resolve_owner_update,
)
from .store import DEFAULT_BATCH_LIMIT, Document, DocumentStore, PendingUpdate

SHARES = "shares"
SHARE_INVITES = "shareInvites"
MEDICATION_REMINDERS = "medicationReminders"
USERS = "users"
MEDICATIONS = "medications"

SHARE_COLLECTIONS = (SHARES, SHARE_INVITES)


@dataclass
class ChangeEvent:
    """One source-entity write: ``after`` is None when the entity was removed."""

    entity_id: str
    before: Optional[Dict[str, Any]] = None
    after: Optional[Dict[str, Any]] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ChangeEvent":
        return cls(
            entity_id=data["entityId"],
            before=data.get("before"),
            after=data.get("after"),
        )


def owner_fields_current(data: Dict[str, Any]) -> Dict[str, Optional[str]]:
    return {
        "ownerName": normalize_text(data.get("ownerName")),
        "ownerEmail": normalize_email(data.get("ownerEmail")),
    }


def caregiver_fields_current(data: Dict[str, Any]) -> Dict[str, Optional[str]]:
    return {"caregiverEmail": normalize_email(data.get("caregiverEmail"))}


def reminder_fields_current(data: Dict[str, Any]) -> Dict[str, Optional[str]]:
    return {
        "medicationName": normalize_text(data.get("medicationName")),
        "medicationDose": normalize_text(data.get("medicationDose")),
    }


def _queue_mismatches(
    docs: List[Document],
    desired: Dict[str, Any],
    current_of: Callable[[Dict[str, Any]], Dict[str, Any]],
    now: datetime,
) -> List[PendingUpdate]:
    pending = []
    for doc in docs:
        if current_of(doc.data) == desired:
            continue
        pending.append(PendingUpdate(ref=doc.ref, fields=dict(desired), timestamp=now))
    return pending


def _sync_collections(
    store: DocumentStore,
    collections,
    filters: Dict[str, Any],
    desired: Dict[str, Any],
    current_of: Callable[[Dict[str, Any]], Dict[str, Any]],
    now: datetime,
    batch_limit: int,
) -> Dict[str, int]:
    counts: Dict[str, int] = {}
    pending: List[PendingUpdate] = []
    for collection in collections:
        queued = _queue_mismatches(store.query(collection, filters), desired, current_of, now)
        counts[collection] = len(queued)
        pending.extend(queued)

    store.apply_updates(pending, batch_limit=batch_limit)
    return counts


def sync_share_owner_fields(
    store: DocumentStore,
    user_id: str,
    update: OwnerUpdate,
    now: datetime,
    batch_limit: int = DEFAULT_BATCH_LIMIT,
) -> Dict[str, int]:
    """
    Write owner name/email onto shares and invites owned by ``user_id``.

    Returns:
        Number of documents updated per collection
    """
    return _sync_collections(
        store,
        SHARE_COLLECTIONS,
        {"ownerId": user_id},
        update.fields(),
        owner_fields_current,
        now,
        batch_limit,
    )


def sync_share_caregiver_fields(
    store: DocumentStore,
    user_id: str,
    update: CaregiverUpdate,
    now: datetime,
    batch_limit: int = DEFAULT_BATCH_LIMIT,
) -> Dict[str, int]:
    """Write caregiver email onto shares and invites where ``user_id`` is the caregiver."""
    return _sync_collections(
        store,
        SHARE_COLLECTIONS,
        {"caregiverUserId": user_id},
        update.fields(),
        caregiver_fields_current,
        now,
        batch_limit,
    )


def sync_medication_reminder_fields(
    store: DocumentStore,
    user_id: str,
    medication_id: str,
    update: ReminderUpdate,
    now: datetime,
    batch_limit: int = DEFAULT_BATCH_LIMIT,
) -> Dict[str, int]:
    """Write medication name/dose onto the user's reminders for one medication."""
    return _sync_collections(
        store,
        (MEDICATION_REMINDERS,),
        {"userId": user_id, "medicationId": medication_id},
        update.fields(),
        reminder_fields_current,
        now,
        batch_limit,
    )


def _merge_counts(total: Dict[str, int], counts: Dict[str, int]) -> None:
    for collection, count in counts.items():
        total[collection] = total.get(collection, 0) + count


def propagate_user_change(
    store: DocumentStore,
    event: ChangeEvent,
    now: datetime,
    batch_limit: int = DEFAULT_BATCH_LIMIT,
) -> Dict[str, int]:
    """
    Propagate a user profile write to shares and invites.

    The owner and caregiver relationships are resolved independently; a user
    can be both. Returns an empty dict when nothing needed syncing.
    """
    owner_update = resolve_owner_update(event.before, event.after)
    caregiver_update = resolve_caregiver_email_update(event.before, event.after)
    if owner_update is None and caregiver_update is None:
        return {}

    counts: Dict[str, int] = {}
    if owner_update is not None:
        _merge_counts(
            counts, sync_share_owner_fields(store, event.entity_id, owner_update, now, batch_limit)
        )
    if caregiver_update is not None:
        _merge_counts(
            counts,
            sync_share_caregiver_fields(store, event.entity_id, caregiver_update, now, batch_limit),
        )
    return counts


def propagate_medication_change(
    store: DocumentStore,
    event: ChangeEvent,
    now: datetime,
    batch_limit: int = DEFAULT_BATCH_LIMIT,
) -> Dict[str, int]:
    """Propagate a medication write to the owning user's reminders."""
    if event.after is None:
        return {}

    user_id = event.after.get("userId")
    if not isinstance(user_id, str) or not user_id:
        return {}

    reminder_update = resolve_medication_reminder_update(event.before, event.after)
    if reminder_update is None:
        return {}

    return sync_medication_reminder_fields(
        store, user_id, event.entity_id, reminder_update, now, batch_limit
    )
