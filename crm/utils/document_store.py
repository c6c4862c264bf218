"""
Document Store

A narrow document-database contract (get / add / set / update / delete,
equality and array-contains queries, transactions, live subscriptions) and
its PostgreSQL implementation on a single JSONB table.

Documents are addressed by slash-separated paths with an even number of
segments ("projects/p1", "projects/p1/quotes/q1"); collections by the odd
prefix ("projects", "projects/p1/quotes"). Returned documents are plain dicts
with the document id injected under "id".
"""

import copy
import json
import logging
import threading
import uuid
from abc import ABC, abstractmethod
from contextlib import contextmanager
from dataclasses import dataclass
from functools import partial
from typing import Any, Callable, Dict, Iterator, List, Optional, Set, Tuple

from psycopg2.extras import Json

from crm.utils.config import settings
from crm.utils.database import Database, db
from crm.utils.errors import NotFoundError

logger = logging.getLogger(__name__)

Filter = Tuple[str, str, Any]

SUPPORTED_OPERATORS = ("==", "array-contains")

# Marker value for update(): removes the field instead of setting it
DELETE_FIELD = object()

_MISSING = object()


# ============================================================================
# Path and field helpers
# ============================================================================

def join_path(*parts: Any) -> str:
    return "/".join(str(p).strip("/") for p in parts)


def split_path(path: str) -> Tuple[str, str]:
    """Split a document path into (collection path, document id)."""
    segments = [s for s in path.strip("/").split("/") if s]
    if len(segments) < 2 or len(segments) % 2 != 0:
        raise ValueError(f"Not a document path: {path!r}")
    return "/".join(segments[:-1]), segments[-1]


def new_document_id() -> str:
    return uuid.uuid4().hex


def get_field(data: Dict[str, Any], dotted: str, default: Any = None) -> Any:
    current: Any = data
    for key in dotted.split("."):
        if not isinstance(current, dict) or key not in current:
            return default
        current = current[key]
    return current


def apply_update(data: Dict[str, Any], fields: Dict[str, Any]) -> Dict[str, Any]:
    """Return a copy of data with dotted field paths set (or removed)."""
    result = copy.deepcopy(data)
    for dotted, value in fields.items():
        keys = dotted.split(".")
        target = result
        for key in keys[:-1]:
            if not isinstance(target.get(key), dict):
                target[key] = {}
            target = target[key]
        if value is DELETE_FIELD:
            target.pop(keys[-1], None)
        else:
            target[keys[-1]] = copy.deepcopy(value)
    return result


def deep_merge(base: Dict[str, Any], overlay: Dict[str, Any]) -> Dict[str, Any]:
    result = copy.deepcopy(base)
    for key, value in overlay.items():
        if isinstance(value, dict) and isinstance(result.get(key), dict):
            result[key] = deep_merge(result[key], value)
        else:
            result[key] = copy.deepcopy(value)
    return result


def matches(document: Dict[str, Any], where: Optional[List[Filter]]) -> bool:
    for field, op, value in where or []:
        actual = get_field(document, field, _MISSING)
        if op == "==":
            if actual is _MISSING or actual != value:
                return False
        elif op == "array-contains":
            if not isinstance(actual, list) or value not in actual:
                return False
        else:
            raise ValueError(f"Unsupported query operator: {op}")
    return True


def order_and_limit(
    documents: List[Dict[str, Any]],
    order_by: Optional[str] = None,
    descending: bool = False,
    limit: Optional[int] = None
) -> List[Dict[str, Any]]:
    if order_by:
        # Documents missing the field sort last in either direction
        present = [d for d in documents if get_field(d, order_by) is not None]
        missing = [d for d in documents if get_field(d, order_by) is None]
        present.sort(key=lambda d: get_field(d, order_by), reverse=descending)
        documents = present + missing
    if limit is not None:
        documents = documents[:limit]
    return documents


def _with_id(doc_id: str, data: Dict[str, Any]) -> Dict[str, Any]:
    document = copy.deepcopy(data)
    document["id"] = doc_id
    return document


def _strip_id(data: Dict[str, Any]) -> Dict[str, Any]:
    return {k: v for k, v in data.items() if k != "id"}


# ============================================================================
# Contract
# ============================================================================

class Transaction(ABC):
    """
    A unit of work against the store.

    Reads inside a transaction observe the transaction's own writes. Writes
    become visible to others only when the transaction commits; if the
    enclosing block raises, none of them are applied.
    """

    def __init__(self):
        self.touched: Set[str] = set()

    @abstractmethod
    def get(self, path: str) -> Optional[Dict[str, Any]]:
        ...

    @abstractmethod
    def set(self, path: str, data: Dict[str, Any], merge: bool = False) -> None:
        ...

    @abstractmethod
    def delete(self, path: str) -> None:
        ...

    def add(self, collection: str, data: Dict[str, Any]) -> str:
        doc_id = new_document_id()
        self.set(join_path(collection, doc_id), data)
        return doc_id

    def update(self, path: str, fields: Dict[str, Any]) -> None:
        existing = self.get(path)
        if existing is None:
            raise NotFoundError(f"Document not found: {path}")
        self.set(path, apply_update(_strip_id(existing), fields))


@dataclass
class Subscription:
    collection: str
    where: List[Filter]
    callback: Callable[[List[Dict[str, Any]]], None]


class DocumentStore(ABC):
    """Generic document database consumed by the workflow services."""

    def __init__(self):
        self._subscriptions: Dict[str, Subscription] = {}
        self._subscription_lock = threading.Lock()

    @abstractmethod
    def transaction(self) -> Iterator[Transaction]:
        """Context manager yielding a Transaction committed on exit."""

    @abstractmethod
    def query(
        self,
        collection: str,
        where: Optional[List[Filter]] = None,
        order_by: Optional[str] = None,
        descending: bool = False,
        limit: Optional[int] = None
    ) -> List[Dict[str, Any]]:
        ...

    def get(self, path: str) -> Optional[Dict[str, Any]]:
        with self.transaction() as tx:
            return tx.get(path)

    def add(self, collection: str, data: Dict[str, Any]) -> str:
        with self.transaction() as tx:
            return tx.add(collection, data)

    def set(self, path: str, data: Dict[str, Any], merge: bool = False) -> None:
        with self.transaction() as tx:
            tx.set(path, data, merge=merge)

    def update(self, path: str, fields: Dict[str, Any]) -> None:
        with self.transaction() as tx:
            tx.update(path, fields)

    def delete(self, path: str) -> None:
        with self.transaction() as tx:
            tx.delete(path)

    def subscribe(
        self,
        collection: str,
        where: Optional[List[Filter]],
        callback: Callable[[List[Dict[str, Any]]], None]
    ) -> Callable[[], None]:
        """
        Push the current query result to callback now and after every
        committed write touching the collection.

        Returns:
            A callable that cancels the subscription
        """
        token = new_document_id()
        with self._subscription_lock:
            self._subscriptions[token] = Subscription(collection, list(where or []), callback)
        callback(self.query(collection, where))

        def unsubscribe():
            with self._subscription_lock:
                self._subscriptions.pop(token, None)

        return unsubscribe

    def _publish(self, collections: Set[str]):
        if not collections:
            return
        with self._subscription_lock:
            targets = [s for s in self._subscriptions.values() if s.collection in collections]
        for subscription in targets:
            try:
                subscription.callback(self.query(subscription.collection, subscription.where))
            except Exception as e:
                logger.error(f"Subscriber for {subscription.collection} failed: {e}", exc_info=True)


# ============================================================================
# PostgreSQL implementation
# ============================================================================

_json_dumps = partial(json.dumps, default=str)


def _containment(field: str, value: Any) -> Dict[str, Any]:
    """Build the nested JSON object used with the @> operator."""
    node: Any = value
    for key in reversed(field.split(".")):
        node = {key: node}
    return node


class PostgresTransaction(Transaction):
    """Transaction bound to one pooled connection; rows read are locked."""

    def __init__(self, cursor, table: str):
        super().__init__()
        self.cursor = cursor
        self.table = table

    def get(self, path: str) -> Optional[Dict[str, Any]]:
        collection, doc_id = split_path(path)
        self.cursor.execute(
            f"SELECT data FROM {self.table} WHERE collection = %s AND doc_id = %s FOR UPDATE",
            (collection, doc_id)
        )
        row = self.cursor.fetchone()
        return _with_id(doc_id, row["data"]) if row else None

    def set(self, path: str, data: Dict[str, Any], merge: bool = False) -> None:
        collection, doc_id = split_path(path)
        payload = _strip_id(data)
        if merge:
            existing = self.get(path)
            if existing is not None:
                payload = deep_merge(_strip_id(existing), payload)
        self.cursor.execute(
            f"""
            INSERT INTO {self.table} (collection, doc_id, data, created_at, updated_at)
            VALUES (%s, %s, %s, now(), now())
            ON CONFLICT (collection, doc_id)
            DO UPDATE SET data = EXCLUDED.data, updated_at = now()
            """,
            (collection, doc_id, Json(payload, dumps=_json_dumps))
        )
        self.touched.add(collection)

    def delete(self, path: str) -> None:
        collection, doc_id = split_path(path)
        self.cursor.execute(
            f"DELETE FROM {self.table} WHERE collection = %s AND doc_id = %s",
            (collection, doc_id)
        )
        self.touched.add(collection)


class PostgresDocumentStore(DocumentStore):
    """Document store on a JSONB table, one row per document."""

    def __init__(self, database: Optional[Database] = None, table: Optional[str] = None):
        super().__init__()
        self.db = database or db
        self.table = table or settings.DOCUMENT_TABLE

    def ensure_schema(self):
        """Create the backing table and its containment index if missing"""
        if "." in self.table:
            schema = self.table.split(".", 1)[0]
            self.db.execute_update(f"CREATE SCHEMA IF NOT EXISTS {schema}")
        self.db.execute_update(f"""
            CREATE TABLE IF NOT EXISTS {self.table} (
                collection TEXT NOT NULL,
                doc_id TEXT NOT NULL,
                data JSONB NOT NULL DEFAULT '{{}}'::jsonb,
                created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
                updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
                PRIMARY KEY (collection, doc_id)
            )
        """)
        index_name = self.table.replace(".", "_") + "_data_gin"
        self.db.execute_update(
            f"CREATE INDEX IF NOT EXISTS {index_name} ON {self.table} USING GIN (data jsonb_path_ops)"
        )
        logger.info(f"Document table {self.table} ready")

    def close(self):
        """Release pooled connections"""
        self.db.close()

    @contextmanager
    def transaction(self) -> Iterator[PostgresTransaction]:
        with self.db.get_cursor() as cursor:
            tx = PostgresTransaction(cursor, self.table)
            yield tx
        self._publish(tx.touched)

    def query(
        self,
        collection: str,
        where: Optional[List[Filter]] = None,
        order_by: Optional[str] = None,
        descending: bool = False,
        limit: Optional[int] = None
    ) -> List[Dict[str, Any]]:
        clauses = ["collection = %s"]
        params: List[Any] = [collection]
        for field, op, value in where or []:
            if op not in SUPPORTED_OPERATORS:
                raise ValueError(f"Unsupported query operator: {op}")
            contained = value if op == "==" else [value]
            clauses.append("data @> %s")
            params.append(Json(_containment(field, contained), dumps=_json_dumps))

        sql = f"SELECT doc_id, data FROM {self.table} WHERE " + " AND ".join(clauses)
        rows = self.db.execute_query(sql, tuple(params))
        documents = [_with_id(row["doc_id"], row["data"]) for row in rows]
        return order_and_limit(documents, order_by, descending, limit)
