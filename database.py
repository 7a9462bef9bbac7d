"""
Document store access for Swapskill

The store is a black box with durable per-collection documents, equality /
range / array-membership filters, ordering, limits, atomic array-union /
array-remove / increment field transforms and snapshot subscriptions.

Two backends share the ``DocumentStore`` interface:

- ``MongoDocumentStore`` talks to MongoDB through pymongo and pushes
  snapshots from change streams.
- ``MemoryDocumentStore`` keeps everything in process. Tests and local runs
  without ``DATABASE_URL`` use it.

All store calls are coroutines so callers suspend while the remote call is in
flight. Snapshot callbacks are plain callables receiving the full ordered
result list of their query.
"""
import asyncio
import copy
import logging
import os
import threading
import time
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

from bson import ObjectId
from pymongo import ASCENDING, DESCENDING, MongoClient
from pymongo.errors import PyMongoError

from errors import NotFoundError

logger = logging.getLogger(__name__)

# Upper bound used to turn a prefix into a range filter
PREFIX_UPPER_BOUND = "\uf8ff"

Unsubscribe = Callable[[], None]
SnapshotCallback = Callable[[List[Dict[str, Any]]], None]


# ---------- Field transforms ----------

class _ServerTimestamp:
    def __repr__(self):
        return "SERVER_TIMESTAMP"


SERVER_TIMESTAMP = _ServerTimestamp()


class ArrayUnion:
    """Append values to an array field, skipping ones already present"""

    def __init__(self, *values):
        self.values = list(values)


class ArrayRemove:
    """Remove every occurrence of the values from an array field"""

    def __init__(self, *values):
        self.values = list(values)


class Increment:
    def __init__(self, amount=1):
        self.amount = amount


def get_path(doc: Dict[str, Any], path: str, default=None):
    current: Any = doc
    for part in path.split("."):
        if not isinstance(current, dict) or part not in current:
            return default
        current = current[part]
    return current


def _has_path(doc, path):
    marker = object()
    return get_path(doc, path, marker) is not marker


def _set_path(doc, path, value):
    parts = path.split(".")
    current = doc
    for part in parts[:-1]:
        if not isinstance(current.get(part), dict):
            current[part] = {}
        current = current[part]
    current[parts[-1]] = value


# ---------- Queries ----------

FILTER_OPS = ("==", "!=", "<", "<=", ">", ">=", "array-contains", "in")


class Query:
    """Immutable query description: filters, ordering and a result limit"""

    def __init__(self, collection: str, filters: Tuple = (), order: Tuple = (), limit: Optional[int] = None):
        self.collection = collection
        self.filters = tuple(filters)
        self.order = tuple(order)
        self.limit_count = limit

    def where(self, field: str, op: str, value: Any) -> "Query":
        if op not in FILTER_OPS:
            raise ValueError(f"Unsupported filter operator: {op}")
        return Query(self.collection, self.filters + ((field, op, value),), self.order, self.limit_count)

    def where_prefix(self, field: str, prefix: str) -> "Query":
        return self.where(field, ">=", prefix).where(field, "<=", prefix + PREFIX_UPPER_BOUND)

    def order_by(self, field: str, direction: str = "asc") -> "Query":
        if direction not in ("asc", "desc"):
            raise ValueError(f"Unsupported direction: {direction}")
        return Query(self.collection, self.filters, self.order + ((field, direction),), self.limit_count)

    def limit(self, count: int) -> "Query":
        return Query(self.collection, self.filters, self.order, count)

    def matches(self, doc: Dict[str, Any]) -> bool:
        for field, op, value in self.filters:
            # Documents missing a filtered field never match, even for "!="
            if not _has_path(doc, field):
                return False
            actual = get_path(doc, field)
            try:
                if op == "==":
                    ok = actual == value
                elif op == "!=":
                    ok = actual != value
                elif op == "<":
                    ok = actual < value
                elif op == "<=":
                    ok = actual <= value
                elif op == ">":
                    ok = actual > value
                elif op == ">=":
                    ok = actual >= value
                elif op == "array-contains":
                    ok = isinstance(actual, list) and value in actual
                else:
                    ok = actual in value
            except TypeError:
                ok = False
            if not ok:
                return False
        return True

    def apply(self, docs: Iterable[Dict[str, Any]]) -> List[Dict[str, Any]]:
        results = [d for d in docs if self.matches(d)]
        # Sort by the last key first so earlier keys take precedence
        for field, direction in reversed(self.order):
            present = [d for d in results if get_path(d, field) is not None]
            missing = [d for d in results if get_path(d, field) is None]
            present.sort(key=lambda d: get_path(d, field), reverse=direction == "desc")
            results = present + missing
        if self.limit_count is not None:
            results = results[: self.limit_count]
        return results

    def __repr__(self):
        return f"Query({self.collection!r}, filters={self.filters!r}, order={self.order!r}, limit={self.limit_count!r})"


# ---------- Store interface ----------

class DocumentStore:
    """Interface every backend implements"""

    name = "documents"

    async def add(self, collection: str, data: Dict[str, Any]) -> str:
        raise NotImplementedError

    async def set(self, collection: str, doc_id: str, data: Dict[str, Any]) -> None:
        raise NotImplementedError

    async def get(self, collection: str, doc_id: str) -> Optional[Dict[str, Any]]:
        raise NotImplementedError

    async def update(self, collection: str, doc_id: str, updates: Dict[str, Any]) -> None:
        raise NotImplementedError

    async def delete(self, collection: str, doc_id: str) -> None:
        raise NotImplementedError

    async def query(self, query: Query) -> List[Dict[str, Any]]:
        raise NotImplementedError

    def on_snapshot(self, query: Query, callback: SnapshotCallback) -> Unsubscribe:
        raise NotImplementedError

    def list_collection_names(self) -> List[str]:
        raise NotImplementedError

    def collection(self, name: str) -> Query:
        return Query(name)


class MemoryDocumentStore(DocumentStore):
    """
    In-process document store.

    Every call yields to the event loop once before touching data so that
    concurrent actions interleave the way they would against a remote store.
    Listeners fire synchronously after each write whose collection they watch,
    and only when their query result changed.
    """

    name = "memory"

    def __init__(self):
        self._collections: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self._listeners: Dict[int, Tuple[Query, SnapshotCallback, List]] = {}
        self._next_listener = 0
        self._last_timestamp = 0

    def now(self) -> int:
        # Strictly increasing so server-assigned ordering is total
        ts = int(time.time() * 1000)
        if ts <= self._last_timestamp:
            ts = self._last_timestamp + 1
        self._last_timestamp = ts
        return ts

    def _resolve(self, value):
        if value is SERVER_TIMESTAMP:
            return self.now()
        if isinstance(value, dict):
            return {k: self._resolve(v) for k, v in value.items()}
        if isinstance(value, list):
            return [self._resolve(v) for v in value]
        return copy.deepcopy(value)

    def _check_plain(self, data):
        for key, value in data.items():
            if isinstance(value, (ArrayUnion, ArrayRemove, Increment)):
                raise ValueError(f"Field transform on {key!r} is only valid in update()")

    async def add(self, collection, data):
        await asyncio.sleep(0)
        self._check_plain(data)
        doc_id = str(ObjectId())
        doc = self._resolve({k: v for k, v in data.items() if k != "id"})
        self._collections.setdefault(collection, {})[doc_id] = doc
        self._notify(collection)
        return doc_id

    async def set(self, collection, doc_id, data):
        await asyncio.sleep(0)
        self._check_plain(data)
        doc = self._resolve({k: v for k, v in data.items() if k != "id"})
        self._collections.setdefault(collection, {})[doc_id] = doc
        self._notify(collection)

    async def get(self, collection, doc_id):
        await asyncio.sleep(0)
        doc = self._collections.get(collection, {}).get(doc_id)
        if doc is None:
            return None
        return {"id": doc_id, **copy.deepcopy(doc)}

    async def update(self, collection, doc_id, updates):
        await asyncio.sleep(0)
        doc = self._collections.get(collection, {}).get(doc_id)
        if doc is None:
            raise NotFoundError(f"No document to update: {collection}/{doc_id}")
        for path, value in updates.items():
            if isinstance(value, ArrayUnion):
                current = list(get_path(doc, path) or [])
                for item in value.values:
                    if item not in current:
                        current.append(copy.deepcopy(item))
                _set_path(doc, path, current)
            elif isinstance(value, ArrayRemove):
                current = get_path(doc, path) or []
                _set_path(doc, path, [item for item in current if item not in value.values])
            elif isinstance(value, Increment):
                _set_path(doc, path, (get_path(doc, path) or 0) + value.amount)
            else:
                _set_path(doc, path, self._resolve(value))
        self._notify(collection)

    async def delete(self, collection, doc_id):
        await asyncio.sleep(0)
        docs = self._collections.get(collection, {})
        if docs.pop(doc_id, None) is not None:
            self._notify(collection)

    def _run(self, query):
        docs = ({"id": doc_id, **doc} for doc_id, doc in self._collections.get(query.collection, {}).items())
        return copy.deepcopy(query.apply(docs))

    async def query(self, query):
        await asyncio.sleep(0)
        return self._run(query)

    def on_snapshot(self, query, callback):
        listener_id = self._next_listener
        self._next_listener += 1
        snapshot = self._run(query)
        self._listeners[listener_id] = (query, callback, [snapshot])
        logger.debug(f"Listener {listener_id} attached to {query!r}")
        callback(copy.deepcopy(snapshot))

        def unsubscribe():
            if self._listeners.pop(listener_id, None) is not None:
                logger.debug(f"Listener {listener_id} detached")

        return unsubscribe

    def _notify(self, collection):
        for listener_id, (query, callback, last) in list(self._listeners.items()):
            if query.collection != collection or listener_id not in self._listeners:
                continue
            snapshot = self._run(query)
            if snapshot == last[0]:
                continue
            last[0] = snapshot
            try:
                callback(copy.deepcopy(snapshot))
            except Exception:
                logger.exception(f"Snapshot listener {listener_id} failed")

    def list_collection_names(self):
        return sorted(name for name, docs in self._collections.items() if docs)

    @property
    def listener_count(self):
        return len(self._listeners)


class MongoDocumentStore(DocumentStore):
    """
    MongoDB backend. Document ids are stored as strings in ``_id`` so ids
    handed out by authentication and ids minted here share one format.
    pymongo is synchronous, so every call runs in a worker thread and the
    calling coroutine suspends until it resolves.
    """

    name = "mongodb"

    def __init__(self, database):
        self._db = database

    @property
    def database_name(self):
        return self._db.name

    @staticmethod
    def _out(doc):
        if doc is None:
            return None
        doc = dict(doc)
        doc["id"] = str(doc.pop("_id"))
        return doc

    @staticmethod
    def _now():
        return int(time.time() * 1000)

    def _resolve(self, value):
        if value is SERVER_TIMESTAMP:
            return self._now()
        if isinstance(value, dict):
            return {k: self._resolve(v) for k, v in value.items()}
        if isinstance(value, list):
            return [self._resolve(v) for v in value]
        return value

    def _document(self, data):
        return {k: self._resolve(v) for k, v in data.items() if k != "id"}

    async def add(self, collection, data):
        doc = self._document(data)
        doc["_id"] = str(ObjectId())
        await asyncio.to_thread(self._db[collection].insert_one, doc)
        return doc["_id"]

    async def set(self, collection, doc_id, data):
        doc = self._document(data)
        await asyncio.to_thread(self._db[collection].replace_one, {"_id": doc_id}, doc, upsert=True)

    async def get(self, collection, doc_id):
        doc = await asyncio.to_thread(self._db[collection].find_one, {"_id": doc_id})
        return self._out(doc)

    def _update_spec(self, updates):
        spec: Dict[str, Dict[str, Any]] = {}
        for path, value in updates.items():
            if isinstance(value, ArrayUnion):
                spec.setdefault("$addToSet", {})[path] = {"$each": value.values}
            elif isinstance(value, ArrayRemove):
                spec.setdefault("$pullAll", {})[path] = value.values
            elif isinstance(value, Increment):
                spec.setdefault("$inc", {})[path] = value.amount
            else:
                spec.setdefault("$set", {})[path] = self._resolve(value)
        return spec

    async def update(self, collection, doc_id, updates):
        result = await asyncio.to_thread(
            self._db[collection].update_one, {"_id": doc_id}, self._update_spec(updates)
        )
        if result.matched_count == 0:
            raise NotFoundError(f"No document to update: {collection}/{doc_id}")

    async def delete(self, collection, doc_id):
        await asyncio.to_thread(self._db[collection].delete_one, {"_id": doc_id})

    @staticmethod
    def _filter_spec(query):
        spec: Dict[str, Dict[str, Any]] = {}
        mongo_ops = {"!=": "$ne", "<": "$lt", "<=": "$lte", ">": "$gt", ">=": "$gte", "in": "$in"}
        for field, op, value in query.filters:
            key = "_id" if field == "id" else field
            clause = spec.setdefault(key, {"$exists": True})
            if op in ("==", "array-contains"):
                # Mongo matches scalars against array members, which is array-contains
                clause["$eq"] = value
            else:
                clause[mongo_ops[op]] = value
        return spec

    def _find(self, query):
        cursor = self._db[query.collection].find(self._filter_spec(query))
        if query.order:
            cursor = cursor.sort([
                ("_id" if f == "id" else f, DESCENDING if d == "desc" else ASCENDING)
                for f, d in query.order
            ])
        if query.limit_count is not None:
            cursor = cursor.limit(query.limit_count)
        return [self._out(doc) for doc in cursor]

    async def query(self, query):
        return await asyncio.to_thread(self._find, query)

    def on_snapshot(self, query, callback):
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            loop = None
        stop = threading.Event()

        def deliver(snapshot):
            if stop.is_set():
                return
            if loop is not None:
                loop.call_soon_threadsafe(lambda: None if stop.is_set() else callback(snapshot))
            else:
                callback(snapshot)

        def watch():
            last = None
            try:
                with self._db[query.collection].watch(full_document="updateLookup") as stream:
                    # The initial snapshot is read after the stream opens so no change is missed
                    last = self._find(query)
                    deliver(last)
                    while not stop.is_set():
                        change = stream.try_next()
                        if change is None:
                            stop.wait(0.2)
                            continue
                        snapshot = self._find(query)
                        if snapshot != last:
                            last = snapshot
                            deliver(snapshot)
            except PyMongoError as e:
                logger.error(f"Change stream on {query.collection} stopped: {e}")

        thread = threading.Thread(target=watch, name=f"snapshot-{query.collection}", daemon=True)
        thread.start()

        def unsubscribe():
            stop.set()

        return unsubscribe

    def list_collection_names(self):
        return self._db.list_collection_names()


# ---------- Module-level connection ----------

def connect(database_url: Optional[str] = None, database_name: Optional[str] = None) -> DocumentStore:
    """Build the store from DATABASE_URL / DATABASE_NAME; no URL means in-memory"""
    database_url = database_url or os.getenv("DATABASE_URL")
    database_name = database_name or os.getenv("DATABASE_NAME", "swapskill")
    if not database_url:
        logger.info("DATABASE_URL not set, using in-memory document store")
        return MemoryDocumentStore()
    client = MongoClient(database_url, tz_aware=True)
    logger.info(f"Using MongoDB database {database_name}")
    return MongoDocumentStore(client[database_name])


db = connect()


async def create_document(collection_name: str, data: Dict[str, Any], store: Optional[DocumentStore] = None) -> str:
    """Insert a document stamped with created_at/updated_at, return its id"""
    store = store or db
    payload = dict(data)
    payload.setdefault("created_at", SERVER_TIMESTAMP)
    payload.setdefault("updated_at", SERVER_TIMESTAMP)
    return await store.add(collection_name, payload)


async def get_documents(
    collection_name: str,
    filter_dict: Optional[Dict[str, Any]] = None,
    limit: Optional[int] = None,
    order_by: Optional[Tuple[str, str]] = None,
    store: Optional[DocumentStore] = None,
) -> List[Dict[str, Any]]:
    """Fetch documents matching equality filters"""
    store = store or db
    q = store.collection(collection_name)
    for field, value in (filter_dict or {}).items():
        q = q.where(field, "==", value)
    if order_by:
        q = q.order_by(*order_by)
    if limit:
        q = q.limit(limit)
    return await store.query(q)
