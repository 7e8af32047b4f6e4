"""
Error taxonomy for the denormalization engine.

Store adapters translate driver failures into these types; the engine
itself never retries or absorbs them. Hosting layers decide whether a
failure is worth another attempt via ``retryable``.
"""

from typing import Any, Dict, Optional


class DenormSyncError(Exception):
    """Base exception for denormalization sync errors."""

    retryable = False

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        """Convert error to dictionary."""
        return {
            "error_type": type(self).__name__,
            "message": self.message,
            "retryable": self.retryable,
            "details": self.details,
        }


class ConfigurationError(DenormSyncError):
    """A collaborator is misconfigured (bad store URL, malformed setting)."""


class TransientIOError(DenormSyncError):
    """A query or commit against the document store failed."""

    retryable = True


class StateConflictError(TransientIOError):
    """A versioned write lost a race with a concurrent writer."""


class DocumentNotFoundError(TransientIOError):
    """An update targeted a document that no longer exists."""

    def __init__(self, collection: str, doc_id: str):
        super().__init__(
            f"Document {collection}/{doc_id} does not exist",
            details={"collection": collection, "doc_id": doc_id},
        )
        self.collection = collection
        self.doc_id = doc_id


class PartialBatchFailure(DenormSyncError):
    """A later chunk of a multi-chunk commit failed after earlier chunks landed."""

    retryable = True

    def __init__(self, committed: int, total: int, cause: Exception):
        super().__init__(
            f"Batch commit failed after {committed}/{total} updates were applied: {cause}",
            details={"committed": committed, "total": total},
        )
        self.committed = committed
        self.total = total
        self.cause = cause
