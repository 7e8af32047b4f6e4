import json
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterable, Optional

from .database import json_deserializer, json_serializer
from .store import DocumentStore

EXPORT_PAGE_SIZE = 500


def load_snapshot(path: Path) -> Dict[str, Any]:
    """Read a {"collections": {name: {id: data}}} fixture; missing or empty files are empty."""
    if not path.exists():
        return {"collections": {}}
    with path.open("r", encoding="utf-8") as f:
        content = f.read().strip()
    if not content:
        return {"collections": {}}
    snapshot = json_deserializer(content)
    snapshot.setdefault("collections", {})
    return snapshot


def save_snapshot(path: Path, snapshot: Dict[str, Any]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("w", encoding="utf-8") as f:
        f.write(json.dumps(json.loads(json_serializer(snapshot)), indent=2, ensure_ascii=False))


def import_snapshot(store: DocumentStore, snapshot: Dict[str, Any]) -> Dict[str, int]:
    """Write every document of a snapshot into the store, replacing existing ones."""
    counts = {}
    for collection, docs in snapshot.get("collections", {}).items():
        for doc_id, data in docs.items():
            store.put(collection, doc_id, data)
        counts[collection] = len(docs)
    return counts


def export_snapshot(store: DocumentStore, collections: Iterable[str]) -> Dict[str, Any]:
    """Page through collections in id order and collect them into a snapshot."""
    exported: Dict[str, Dict[str, Any]] = {}
    for collection in collections:
        docs: Dict[str, Any] = {}
        cursor: Optional[str] = None
        while True:
            page = store.page(collection, cursor, EXPORT_PAGE_SIZE)
            for doc in page.documents:
                docs[doc.id] = doc.data
            if not page.has_more:
                break
            cursor = page.next_cursor
        exported[collection] = docs
    return {"exportedAt": datetime.now().isoformat(), "collections": exported}
