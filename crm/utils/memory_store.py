"""
In-Memory Document Store

Implements the DocumentStore contract on nested dicts. Used for local
development and tests; mirrors the PostgreSQL store's transaction semantics
(writes staged per transaction and applied together on commit).
"""

import copy
import threading
from contextlib import contextmanager
from typing import Any, Dict, Iterator, List, Optional

from crm.utils.document_store import (
    DocumentStore,
    Filter,
    Transaction,
    _strip_id,
    _with_id,
    deep_merge,
    matches,
    order_and_limit,
    split_path,
)

_DELETED = object()


class MemoryTransaction(Transaction):
    def __init__(self, store: "InMemoryDocumentStore"):
        super().__init__()
        self.store = store
        self._staged: Dict[tuple, Any] = {}

    def get(self, path: str) -> Optional[Dict[str, Any]]:
        key = split_path(path)
        if key in self._staged:
            staged = self._staged[key]
            return None if staged is _DELETED else _with_id(key[1], staged)
        data = self.store._collections.get(key[0], {}).get(key[1])
        return _with_id(key[1], data) if data is not None else None

    def set(self, path: str, data: Dict[str, Any], merge: bool = False) -> None:
        key = split_path(path)
        payload = _strip_id(data)
        if merge:
            existing = self.get(path)
            if existing is not None:
                payload = deep_merge(_strip_id(existing), payload)
        self._staged[key] = copy.deepcopy(payload)
        self.touched.add(key[0])

    def delete(self, path: str) -> None:
        key = split_path(path)
        self._staged[key] = _DELETED
        self.touched.add(key[0])

    def commit(self):
        for (collection, doc_id), data in self._staged.items():
            documents = self.store._collections.setdefault(collection, {})
            if data is _DELETED:
                documents.pop(doc_id, None)
            else:
                documents[doc_id] = data
        self._staged.clear()


class InMemoryDocumentStore(DocumentStore):
    """Process-local store; one re-entrant lock serializes transactions."""

    def __init__(self):
        super().__init__()
        self._collections: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self._lock = threading.RLock()

    @contextmanager
    def transaction(self) -> Iterator[MemoryTransaction]:
        with self._lock:
            tx = MemoryTransaction(self)
            yield tx
            tx.commit()
        self._publish(tx.touched)

    def query(
        self,
        collection: str,
        where: Optional[List[Filter]] = None,
        order_by: Optional[str] = None,
        descending: bool = False,
        limit: Optional[int] = None
    ) -> List[Dict[str, Any]]:
        with self._lock:
            documents = [
                _with_id(doc_id, data)
                for doc_id, data in self._collections.get(collection, {}).items()
            ]
        documents = [d for d in documents if matches(d, where)]
        return order_and_limit(documents, order_by, descending, limit)

    def collections(self) -> List[str]:
        """Collection paths currently holding at least one document"""
        with self._lock:
            return sorted(c for c, docs in self._collections.items() if docs)
