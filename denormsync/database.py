"""
Database schema and connection management.

Stores every collection as JSON documents in one SQLAlchemy table, keyed by
(collection, doc_id). Works against SQLite by default.
"""

import json
import threading
from contextlib import nullcontext
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

from sqlalchemy import Column, DateTime, Integer, JSON, String, create_engine, select, update
from sqlalchemy.engine import Engine, make_url
from sqlalchemy.exc import ArgumentError, DBAPIError, IntegrityError, SQLAlchemyError
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

from .errors import ConfigurationError, DocumentNotFoundError, StateConflictError, TransientIOError
from .store import Document, DocumentRef, DocumentStore, PendingUpdate, VersionedDocument

Base = declarative_base()

_DATETIME_TAG = "$datetime"


class DocumentRow(Base):
    """One document of one collection."""

    __tablename__ = "documents"

    collection = Column(String, primary_key=True)
    doc_id = Column(String, primary_key=True)
    data = Column(JSON, nullable=False)
    version = Column(Integer, nullable=False, default=1)
    created_at = Column(DateTime, nullable=False, default=datetime.now)
    updated_at = Column(DateTime, nullable=False, default=datetime.now, onupdate=datetime.now)


def _encode_value(value: Any) -> Any:
    if isinstance(value, datetime):
        return {_DATETIME_TAG: value.isoformat()}
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


def _decode_object(obj: Dict[str, Any]) -> Any:
    if len(obj) == 1 and _DATETIME_TAG in obj:
        return datetime.fromisoformat(obj[_DATETIME_TAG])
    return obj


def json_serializer(value: Any) -> str:
    return json.dumps(value, default=_encode_value)


def json_deserializer(raw: str) -> Any:
    return json.loads(raw, object_hook=_decode_object)


def database_url(db: Any) -> str:
    """Accept either a SQLAlchemy URL string or a path to a SQLite file."""
    if isinstance(db, Path):
        return f"sqlite:///{db}"
    if isinstance(db, str) and "://" in db:
        return db
    if isinstance(db, str) and db.strip():
        return f"sqlite:///{db}"
    raise ConfigurationError(f"Unusable database location: {db!r}")


def create_db_engine(db: Any) -> Engine:
    """
    Build an engine that round-trips datetimes through JSON columns.

    Raises:
        ConfigurationError: If the URL cannot be parsed or has no driver
    """
    url = database_url(db)
    try:
        parsed = make_url(url)
        options = {}
        if parsed.get_backend_name() == "sqlite":
            if parsed.database in (None, "", ":memory:"):
                # One shared connection, or each thread sees its own empty database.
                options = {"poolclass": StaticPool, "connect_args": {"check_same_thread": False}}
            else:
                Path(parsed.database).parent.mkdir(parents=True, exist_ok=True)
        return create_engine(
            url,
            json_serializer=json_serializer,
            json_deserializer=json_deserializer,
            **options,
        )
    except (ArgumentError, ImportError, ValueError) as exc:
        raise ConfigurationError(f"Cannot open document store at {url}: {exc}") from exc


def init_database(db: Any) -> Engine:
    """
    Initialize database and create tables.

    Args:
        db: SQLAlchemy URL or path to SQLite database file

    Returns:
        The engine the tables were created on
    """
    engine = create_db_engine(db)
    try:
        Base.metadata.create_all(engine)
    except SQLAlchemyError as exc:
        raise ConfigurationError(f"Cannot initialize document store: {exc}") from exc
    return engine


def get_session(db: Any):
    """
    Get database session.

    Args:
        db: SQLAlchemy URL or path to SQLite database file

    Returns:
        SQLAlchemy session
    """
    engine = create_db_engine(db)
    Session = sessionmaker(bind=engine)
    return Session()


class SqlDocumentStore(DocumentStore):
    """DocumentStore backed by the ``documents`` table."""

    def __init__(self, db: Any, engine: Optional[Engine] = None):
        self.engine = engine or init_database(db)
        self._Session = sessionmaker(bind=self.engine, expire_on_commit=False)
        # SQLite allows a single writer at a time.
        self._lock = threading.RLock() if self.engine.dialect.name == "sqlite" else None

    def _run(self, operation: str, fn):
        """Run fn(session) in one transaction, translating driver failures."""
        try:
            with self._lock or nullcontext():
                with self._Session.begin() as session:
                    return fn(session)
        except (DocumentNotFoundError, StateConflictError):
            raise
        except IntegrityError as exc:
            raise StateConflictError(f"{operation} conflicted: {exc}") from exc
        except (DBAPIError, SQLAlchemyError) as exc:
            raise TransientIOError(f"{operation} failed: {exc}", details={"operation": operation}) from exc

    def query(self, collection: str, filters: Dict[str, Any]) -> List[Document]:
        def _query(session):
            stmt = select(DocumentRow).where(DocumentRow.collection == collection)
            for key, value in filters.items():
                if isinstance(value, str):
                    stmt = stmt.where(DocumentRow.data[key].as_string() == value)
            rows = session.execute(stmt.order_by(DocumentRow.doc_id)).scalars().all()
            return [
                Document(DocumentRef(collection, row.doc_id), dict(row.data))
                for row in rows
                if all(row.data.get(key) == value for key, value in filters.items())
            ]

        return self._run("query", _query)

    def scan(self, collection: str, after: Optional[str], limit: int) -> List[Document]:
        def _scan(session):
            stmt = select(DocumentRow).where(DocumentRow.collection == collection)
            if after is not None:
                stmt = stmt.where(DocumentRow.doc_id > after)
            stmt = stmt.order_by(DocumentRow.doc_id).limit(limit)
            return [
                Document(DocumentRef(collection, row.doc_id), dict(row.data))
                for row in session.execute(stmt).scalars()
            ]

        return self._run("scan", _scan)

    def _get_many(self, collection: str, ids: List[str]) -> Dict[str, Dict[str, Any]]:
        def _get(session):
            stmt = select(DocumentRow).where(
                DocumentRow.collection == collection, DocumentRow.doc_id.in_(ids)
            )
            return {row.doc_id: dict(row.data) for row in session.execute(stmt).scalars()}

        return self._run("get_many", _get)

    def commit(self, updates: List[PendingUpdate]) -> None:
        def _commit(session):
            for pending in updates:
                row = session.get(DocumentRow, (pending.ref.collection, pending.ref.id))
                if row is None:
                    raise DocumentNotFoundError(pending.ref.collection, pending.ref.id)
                # Reassign so the JSON column is flagged dirty.
                row.data = {**row.data, **pending.as_write()}
                row.version = row.version + 1

        self._run("commit", _commit)

    def put(self, collection: str, doc_id: str, data: Dict[str, Any]) -> None:
        def _put(session):
            row = session.get(DocumentRow, (collection, doc_id))
            if row is None:
                session.add(DocumentRow(collection=collection, doc_id=doc_id, data=dict(data), version=1))
            else:
                row.data = dict(data)
                row.version = row.version + 1

        self._run("put", _put)

    def get_versioned(self, collection: str, doc_id: str) -> Optional[VersionedDocument]:
        def _get(session):
            row = session.get(DocumentRow, (collection, doc_id))
            if row is None:
                return None
            return VersionedDocument(dict(row.data), row.version)

        return self._run("get_versioned", _get)

    def put_if_version(
        self,
        collection: str,
        doc_id: str,
        data: Dict[str, Any],
        expected_version: Optional[int],
    ) -> int:
        def _put(session):
            if expected_version is None:
                # Primary key collision surfaces as IntegrityError -> StateConflictError.
                session.add(DocumentRow(collection=collection, doc_id=doc_id, data=dict(data), version=1))
                session.flush()
                return 1
            result = session.execute(
                update(DocumentRow)
                .where(
                    DocumentRow.collection == collection,
                    DocumentRow.doc_id == doc_id,
                    DocumentRow.version == expected_version,
                )
                .values(data=dict(data), version=expected_version + 1, updated_at=datetime.now())
            )
            if result.rowcount != 1:
                raise StateConflictError(
                    f"{collection}/{doc_id} changed concurrently",
                    details={"expected": expected_version},
                )
            return expected_version + 1

        return self._run("put_if_version", _put)
