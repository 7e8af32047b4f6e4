"""
Hosting trigger layer for source-entity write events.

Wraps the propagators with the kill switch, a clock, logging and an
explicit outcome so a supervising scheduler can decide on retries.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional

from .config import Settings
from .errors import DenormSyncError
from .logger import get_logger
from .propagation import ChangeEvent, propagate_medication_change, propagate_user_change
from .store import DocumentStore

logger = get_logger()

SYNCED = "synced"
SKIPPED = "skipped"
FAILED = "failed"

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class SyncOutcome:
    status: str
    counts: Dict[str, int] = field(default_factory=dict)
    reason: Optional[str] = None
    error: Optional[DenormSyncError] = None

    @property
    def failed(self) -> bool:
        return self.status == FAILED

    @property
    def retryable(self) -> bool:
        return self.error is not None and self.error.retryable

    @property
    def total_updated(self) -> int:
        return sum(self.counts.values())


def _handle(
    kind: str,
    propagate,
    store: DocumentStore,
    event: ChangeEvent,
    settings: Settings,
    clock: Clock,
    context: Dict[str, Any],
) -> SyncOutcome:
    logger.record_event()

    if not settings.sync_enabled:
        logger.record_event_skipped()
        return SyncOutcome(SKIPPED, reason="sync disabled")

    if event.after is None:
        # Deletions are not propagated; dependents keep their last values.
        logger.record_event_skipped()
        logger.debug(f"Ignoring {kind} removal", **context)
        return SyncOutcome(SKIPPED, reason="source removed")

    try:
        counts = propagate(store, event, clock(), settings.batch_limit)
    except DenormSyncError as exc:
        logger.record_event_failure(type(exc).__name__)
        logger.error(f"Failed syncing denormalized fields for {kind}", error=exc.to_dict(), **context)
        return SyncOutcome(FAILED, reason=str(exc), error=exc)

    if not counts:
        logger.record_event_skipped()
        return SyncOutcome(SKIPPED, reason="no relevant change")

    for collection, updated in counts.items():
        logger.record_documents(collection, updated=updated)
    if any(counts.values()):
        logger.info(f"Synced denormalized fields from {kind} update", counts=counts, **context)
    return SyncOutcome(SYNCED, counts=counts)


def handle_user_write(
    store: DocumentStore,
    event: ChangeEvent,
    settings: Optional[Settings] = None,
    clock: Clock = utc_now,
) -> SyncOutcome:
    """React to a write on ``users/{userId}``."""
    return _handle(
        "user profile",
        propagate_user_change,
        store,
        event,
        settings or Settings.from_env(),
        clock,
        {"user_id": event.entity_id},
    )


def handle_medication_write(
    store: DocumentStore,
    event: ChangeEvent,
    settings: Optional[Settings] = None,
    clock: Clock = utc_now,
) -> SyncOutcome:
    """React to a write on ``medications/{medicationId}``."""
    context = {"medication_id": event.entity_id}
    user_id = (event.after or {}).get("userId")
    if user_id is not None:
        context["user_id"] = user_id
    return _handle(
        "medication",
        propagate_medication_change,
        store,
        event,
        settings or Settings.from_env(),
        clock,
        context,
    )
