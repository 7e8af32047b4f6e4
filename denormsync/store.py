"""
Store Access Interface.

Responsibilities:
- Equality-filter queries, id-ordered paging, sparse multi-get.
- Bounded atomic batch commits of pending updates.
- Versioned reads and conditional writes for job state.

Non-Responsibilities:
- No resolution or comparison logic.
- No retries.

Invariant:
Each commit chunk is atomic; chunks are independent of each other.
"""

import copy
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, List, Optional

from .errors import (
    DocumentNotFoundError,
    PartialBatchFailure,
    StateConflictError,
)

DEFAULT_BATCH_LIMIT = 450
LOOKUP_CHUNK_SIZE = 250
UPDATED_AT_FIELD = "updatedAt"


@dataclass(frozen=True)
class DocumentRef:
    collection: str
    id: str


@dataclass
class Document:
    ref: DocumentRef
    data: Dict[str, Any]

    @property
    def id(self) -> str:
        return self.ref.id


@dataclass
class PendingUpdate:
    """Field diff queued for one document, stamped with the caller's timestamp."""

    ref: DocumentRef
    fields: Dict[str, Any]
    timestamp: datetime

    def as_write(self) -> Dict[str, Any]:
        return {**self.fields, UPDATED_AT_FIELD: self.timestamp}


@dataclass
class Page:
    documents: List[Document]
    has_more: bool
    next_cursor: Optional[str]


@dataclass
class VersionedDocument:
    data: Dict[str, Any]
    version: int


def _clean_ids(ids: Iterable[str]) -> List[str]:
    seen = []
    for doc_id in ids:
        if isinstance(doc_id, str) and doc_id.strip() and doc_id not in seen:
            seen.append(doc_id)
    return seen


class DocumentStore(ABC):
    """Document store contract consumed by propagation and backfill."""

    @abstractmethod
    def query(self, collection: str, filters: Dict[str, Any]) -> List[Document]:
        """Return every document whose fields equal all filter values."""

    @abstractmethod
    def scan(self, collection: str, after: Optional[str], limit: int) -> List[Document]:
        """Return up to ``limit`` documents ordered by id, strictly after ``after``."""

    @abstractmethod
    def _get_many(self, collection: str, ids: List[str]) -> Dict[str, Dict[str, Any]]:
        """Fetch one chunk of ids; missing ids are omitted."""

    @abstractmethod
    def commit(self, updates: List[PendingUpdate]) -> None:
        """Apply updates atomically: all land or none do."""

    @abstractmethod
    def put(self, collection: str, doc_id: str, data: Dict[str, Any]) -> None:
        """Create or replace a document."""

    @abstractmethod
    def get_versioned(self, collection: str, doc_id: str) -> Optional[VersionedDocument]:
        """Read a document along with its write version."""

    @abstractmethod
    def put_if_version(
        self,
        collection: str,
        doc_id: str,
        data: Dict[str, Any],
        expected_version: Optional[int],
    ) -> int:
        """
        Replace a document only if its version still matches.

        Args:
            expected_version: Version read earlier, or None if the document
                was absent

        Returns:
            The new version

        Raises:
            StateConflictError: If another writer got there first
        """

    def get_many(self, collection: str, ids: Iterable[str]) -> Dict[str, Dict[str, Any]]:
        """Multi-get by id in chunks, returning a sparse map."""
        unique_ids = _clean_ids(ids)
        result: Dict[str, Dict[str, Any]] = {}
        for start in range(0, len(unique_ids), LOOKUP_CHUNK_SIZE):
            result.update(self._get_many(collection, unique_ids[start:start + LOOKUP_CHUNK_SIZE]))
        return result

    def page(self, collection: str, cursor: Optional[str], page_size: int) -> Page:
        """
        Fetch one page after ``cursor``.

        One extra document is requested to learn whether more remain; it is
        dropped from the page and picked up by the next call.
        """
        page_size = max(1, int(page_size))
        docs = self.scan(collection, cursor or None, page_size + 1)
        has_more = len(docs) > page_size
        page_docs = docs[:page_size]
        next_cursor = page_docs[-1].id if has_more and page_docs else None
        return Page(documents=page_docs, has_more=has_more, next_cursor=next_cursor)

    def apply_updates(
        self, updates: List[PendingUpdate], batch_limit: int = DEFAULT_BATCH_LIMIT
    ) -> int:
        """
        Commit updates in chunks of at most ``batch_limit`` operations.

        Returns:
            Number of updates applied

        Raises:
            PartialBatchFailure: If a chunk fails after earlier chunks committed.
                A failure of the first chunk propagates unchanged.
        """
        if not updates:
            return 0

        batch_limit = max(1, int(batch_limit))
        applied = 0
        for start in range(0, len(updates), batch_limit):
            chunk = updates[start:start + batch_limit]
            try:
                self.commit(chunk)
            except Exception as exc:
                if applied == 0:
                    raise
                raise PartialBatchFailure(applied, len(updates), exc) from exc
            applied += len(chunk)
        return applied


def _matches(data: Dict[str, Any], filters: Dict[str, Any]) -> bool:
    return all(data.get(key) == value for key, value in filters.items())


@dataclass
class InMemoryDocumentStore(DocumentStore):
    """
    Dict-backed store for tests and dry experiments.

    ``fail_commit`` is called with each chunk before it is applied; raising
    from it simulates a failed commit.
    """

    collections: Dict[str, Dict[str, Dict[str, Any]]] = field(default_factory=dict)
    fail_commit: Optional[Callable[[List[PendingUpdate]], None]] = None

    def __post_init__(self):
        self._lock = threading.RLock()
        self._versions: Dict[DocumentRef, int] = {}
        self.commits: List[List[PendingUpdate]] = []
        self.queries: List[Dict[str, Any]] = []

    def _collection(self, name: str) -> Dict[str, Dict[str, Any]]:
        return self.collections.setdefault(name, {})

    def query(self, collection: str, filters: Dict[str, Any]) -> List[Document]:
        with self._lock:
            self.queries.append({"collection": collection, "filters": dict(filters)})
            rows = self._collection(collection)
            return [
                Document(DocumentRef(collection, doc_id), copy.deepcopy(data))
                for doc_id, data in sorted(rows.items())
                if _matches(data, filters)
            ]

    def scan(self, collection: str, after: Optional[str], limit: int) -> List[Document]:
        with self._lock:
            rows = self._collection(collection)
            ids = sorted(doc_id for doc_id in rows if after is None or doc_id > after)
            return [
                Document(DocumentRef(collection, doc_id), copy.deepcopy(rows[doc_id]))
                for doc_id in ids[:limit]
            ]

    def _get_many(self, collection: str, ids: List[str]) -> Dict[str, Dict[str, Any]]:
        with self._lock:
            rows = self._collection(collection)
            return {doc_id: copy.deepcopy(rows[doc_id]) for doc_id in ids if doc_id in rows}

    def commit(self, updates: List[PendingUpdate]) -> None:
        with self._lock:
            if self.fail_commit is not None:
                self.fail_commit(updates)
            for update in updates:
                if update.ref.id not in self._collection(update.ref.collection):
                    raise DocumentNotFoundError(update.ref.collection, update.ref.id)
            for update in updates:
                self._collection(update.ref.collection)[update.ref.id].update(update.as_write())
            self.commits.append(list(updates))

    def put(self, collection: str, doc_id: str, data: Dict[str, Any]) -> None:
        with self._lock:
            ref = DocumentRef(collection, doc_id)
            rows = self._collection(collection)
            # Seeded documents start at version 1 without an entry in _versions.
            previous = self._versions.get(ref, 1 if doc_id in rows else 0)
            rows[doc_id] = copy.deepcopy(data)
            self._versions[ref] = previous + 1

    def get_versioned(self, collection: str, doc_id: str) -> Optional[VersionedDocument]:
        with self._lock:
            rows = self._collection(collection)
            if doc_id not in rows:
                return None
            version = self._versions.get(DocumentRef(collection, doc_id), 1)
            return VersionedDocument(copy.deepcopy(rows[doc_id]), version)

    def put_if_version(
        self,
        collection: str,
        doc_id: str,
        data: Dict[str, Any],
        expected_version: Optional[int],
    ) -> int:
        with self._lock:
            current = self.get_versioned(collection, doc_id)
            current_version = current.version if current else None
            if current_version != expected_version:
                raise StateConflictError(
                    f"{collection}/{doc_id} changed concurrently",
                    details={"expected": expected_version, "actual": current_version},
                )
            self.put(collection, doc_id, data)
            return self._versions[DocumentRef(collection, doc_id)]

    def get(self, collection: str, doc_id: str) -> Optional[Dict[str, Any]]:
        """Convenience read used by tests and snapshot export."""
        with self._lock:
            data = self._collection(collection).get(doc_id)
            return copy.deepcopy(data) if data is not None else None
