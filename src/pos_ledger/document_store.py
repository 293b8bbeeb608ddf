"""Workbook-backed document store used by the business logic layer.

The store exposes the five primitives every transaction is written against:

* point lookup by an equality predicate (:meth:`DocumentStore.find_one`),
* ordered, inclusive range queries (:meth:`DocumentStore.query_range`),
* atomic multi-document transactions (:meth:`DocumentStore.transaction`),
* server-assigned ``created_at``/``updated_at`` timestamps applied at commit,
* change subscriptions per collection (:meth:`DocumentStore.subscribe`).

Transactions are optimistic. Reads happen outside the store lock, the same way
a remote client reads before it commits. Every product read records the
version it saw and every lookup records which committed documents matched it.
``commit`` re-checks both under the lock and refuses to write if anything
moved, so two sales racing on the same product cannot both succeed against
the same stale quantity.

File-backed stores may be shared by several processes. A commit holds the
workbook's lock file for its whole duration and reloads the workbook from
disk before checking, so the comparison runs against whatever the last
process saved and its history rows are kept.
"""

from __future__ import annotations

import threading
import uuid
from contextlib import contextmanager, nullcontext
from dataclasses import dataclass, replace
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Callable, ContextManager, Dict, FrozenSet, Iterator, List, Optional, Tuple

from openpyxl.workbook import Workbook

from . import data_manager, log
from .constants import DEFAULT_LOCK_TIMEOUT, CollectionName
from .data_manager import Record, record_id
from .errors import StaleWriteError, StoreError, StoreWriteError


Listener = Callable[[List[Record]], None]
Clock = Callable[[], datetime]

# History collections are append-only.
MUTABLE_COLLECTIONS = frozenset({CollectionName.PRODUCTS})

ID_PREFIXES: Dict[CollectionName, str] = {
    CollectionName.PRODUCTS: "P",
    CollectionName.PURCHASES: "PU",
    CollectionName.SALES: "S",
    CollectionName.RETURNS: "R",
}


def _utc_now() -> datetime:
    return datetime.now(UTC)


def generate_document_id(collection: CollectionName) -> str:
    """Return a fresh opaque identifier for a document in ``collection``."""

    return f"{ID_PREFIXES[collection]}-{uuid.uuid4().hex[:16].upper()}"


@dataclass
class Subscription:
    """Handle returned by :meth:`DocumentStore.subscribe`."""

    store: "DocumentStore"
    collection: CollectionName
    listener: Listener
    order_by: Optional[str] = None
    descending: bool = False
    active: bool = True

    def cancel(self) -> None:
        """Stop delivering snapshots to the listener. Safe to call twice."""

        if self.active:
            self.store._unsubscribe(self)
            self.active = False


class Transaction:
    """Staged reads and writes that commit together or not at all.

    Obtain instances through :meth:`DocumentStore.transaction`. Reads see the
    transaction's own staged writes so that a product appearing on two lines
    of the same sale is decremented twice, not once.
    """

    def __init__(self, store: "DocumentStore") -> None:
        self._store = store
        self._read_versions: Dict[Tuple[CollectionName, str], int] = {}
        self._predicates: Dict[Tuple[CollectionName, str, Any], FrozenSet[str]] = {}
        self._inserts: Dict[CollectionName, Dict[str, Record]] = {}
        self._updates: Dict[CollectionName, Dict[str, Record]] = {}
        self._results: Dict[Tuple[CollectionName, str], Record] = {}
        self.committed = False

    @property
    def store(self) -> "DocumentStore":
        return self._store

    @property
    def touched_collections(self) -> List[CollectionName]:
        return [
            collection
            for collection in CollectionName
            if self._inserts.get(collection) or self._updates.get(collection)
        ]

    def get(self, collection: CollectionName, doc_id: str) -> Optional[Record]:
        """Return the document with ``doc_id`` as this transaction sees it."""

        staged = self._staged(collection, doc_id)
        if staged is not None:
            return staged
        record = self._store.get(collection, doc_id)
        self._predicates.setdefault(
            (collection, data_manager.ID_FIELDS[collection], doc_id),
            frozenset() if record is None else frozenset({doc_id}),
        )
        if record is not None:
            self._track_version(collection, record)
        return record

    def find_one(self, collection: CollectionName, field: str, value: Any) -> Optional[Record]:
        """Return the first document whose ``field`` equals ``value``."""

        matches = self.find_all(collection, field, value)
        return matches[0] if matches else None

    def find_all(self, collection: CollectionName, field: str, value: Any) -> List[Record]:
        """Return every document whose ``field`` equals ``value``, in store order."""

        committed = [record for record in self._store.list(collection) if getattr(record, field) == value]
        self._predicates.setdefault(
            (collection, field, value),
            frozenset(record_id(collection, record) for record in committed),
        )
        for record in committed:
            self._track_version(collection, record)
        return [record for record in self._view(collection) if getattr(record, field) == value]

    def insert(self, collection: CollectionName, record: Record) -> Record:
        """Stage a new document; timestamps are assigned when the commit lands."""

        doc_id = record_id(collection, record)
        if self._store.get(collection, doc_id) is not None or doc_id in self._inserts.get(collection, {}):
            raise StoreError(f"Document '{doc_id}' already exists in '{collection.value}'")
        self._inserts.setdefault(collection, {})[doc_id] = record
        return record

    def update(self, collection: CollectionName, record: Record) -> Record:
        """Stage a replacement for an existing mutable document."""

        if collection not in MUTABLE_COLLECTIONS:
            raise StoreError(f"Collection '{collection.value}' is append-only")
        doc_id = record_id(collection, record)
        inserts = self._inserts.get(collection, {})
        if doc_id in inserts:
            inserts[doc_id] = record
            return record
        current = self._store.get(collection, doc_id)
        if current is None:
            raise StoreError(f"Document '{doc_id}' does not exist in '{collection.value}'")
        self._track_version(collection, current)
        self._updates.setdefault(collection, {})[doc_id] = record
        return record

    def result(self, collection: CollectionName, doc_id: str) -> Record:
        """Return the stamped document written by a committed transaction."""

        if not self.committed:
            raise StoreError("Transaction has not been committed")
        return self._results[(collection, doc_id)]

    def commit(self) -> None:
        """Verify the read snapshot and apply every staged write atomically."""

        if self.committed:
            raise StoreError("Transaction already committed")
        self._store._commit(self)

    def _view(self, collection: CollectionName) -> List[Record]:
        updates = self._updates.get(collection, {})
        view = [updates.get(record_id(collection, record), record) for record in self._store.list(collection)]
        view.extend(self._inserts.get(collection, {}).values())
        return view

    def _staged(self, collection: CollectionName, doc_id: str) -> Optional[Record]:
        return self._inserts.get(collection, {}).get(doc_id) or self._updates.get(collection, {}).get(doc_id)

    def _track_version(self, collection: CollectionName, record: Record) -> None:
        version = getattr(record, "version", None)
        if version is None:
            return
        self._read_versions.setdefault((collection, record_id(collection, record)), version)

    def _stamp(self, now: datetime) -> List[Tuple[str, CollectionName, Record]]:
        """Assign server timestamps and versions to every staged write."""

        writes: List[Tuple[str, CollectionName, Record]] = []
        for collection in CollectionName:
            for doc_id, record in self._updates.get(collection, {}).items():
                base_version = self._read_versions[(collection, doc_id)]
                stamped = replace(record, updated_at=now, version=base_version + 1)
                writes.append(("update", collection, stamped))
            for doc_id, record in self._inserts.get(collection, {}).items():
                changes: Dict[str, Any] = {"created_at": now}
                if hasattr(record, "updated_at"):
                    changes["updated_at"] = now
                if hasattr(record, "version"):
                    changes["version"] = 1
                writes.append(("insert", collection, replace(record, **changes)))
        return writes


class DocumentStore:
    """Collection-oriented facade over the store workbook."""

    def __init__(
        self,
        workbook: Workbook,
        *,
        data_file: Optional[Path] = None,
        clock: Optional[Clock] = None,
        lock_timeout: float = DEFAULT_LOCK_TIMEOUT,
    ) -> None:
        self.workbook = workbook
        self.data_file = Path(data_file) if data_file is not None else None
        self.lock_timeout = lock_timeout
        self._clock = clock or _utc_now
        self._lock = threading.RLock()
        self._cache: Dict[CollectionName, Dict[str, Any]] = {}
        self._subscriptions: List[Subscription] = []
        self._disk_stamp = self._read_disk_stamp()

    @classmethod
    def open(
        cls,
        data_file: Path,
        *,
        clock: Optional[Clock] = None,
        lock_timeout: float = DEFAULT_LOCK_TIMEOUT,
    ) -> "DocumentStore":
        """Open a file-backed store; every commit is saved to ``data_file``."""

        workbook = data_manager.open_workbook(data_file)
        log.info("Opened document store '%s'", data_file)
        return cls(workbook, data_file=data_file, clock=clock, lock_timeout=lock_timeout)

    @classmethod
    def in_memory(cls, *, clock: Optional[Clock] = None) -> "DocumentStore":
        """Create a store over a blank workbook that is never written to disk."""

        return cls(data_manager.new_workbook(), clock=clock)

    def now(self) -> datetime:
        return self._clock()

    def list(self, collection: CollectionName) -> List[Record]:
        """Return a copy of every committed document in ``collection``."""

        return list(self._ensure_cache(collection)["all"])

    def get(self, collection: CollectionName, doc_id: str) -> Optional[Record]:
        return self._ensure_cache(collection)["by_id"].get(doc_id)

    def find_one(self, collection: CollectionName, field: str, value: Any) -> Optional[Record]:
        """Point lookup: first committed document whose ``field`` equals ``value``."""

        for record in self._ensure_cache(collection)["all"]:
            if getattr(record, field) == value:
                return record
        return None

    def query_range(
        self,
        collection: CollectionName,
        field: str,
        *,
        start: Any = None,
        end: Any = None,
        descending: bool = False,
    ) -> List[Record]:
        """Return documents with ``start <= field <= end`` ordered by ``field``.

        Either bound may be ``None`` to leave that side open. The sort is
        stable, so documents sharing a value keep their insertion order.
        """

        matches = [
            record
            for record in self._ensure_cache(collection)["all"]
            if (start is None or getattr(record, field) >= start)
            and (end is None or getattr(record, field) <= end)
        ]
        return sorted(matches, key=lambda record: getattr(record, field), reverse=descending)

    @contextmanager
    def transaction(self) -> Iterator[Transaction]:
        """Yield a :class:`Transaction` and commit it when the block exits cleanly.

        Raising inside the block discards every staged write. A file-backed
        store first picks up anything another process saved since the last
        read.
        """

        self._refresh_if_stale()
        txn = Transaction(self)
        yield txn
        if not txn.committed:
            txn.commit()

    def subscribe(
        self,
        collection: CollectionName,
        listener: Listener,
        *,
        order_by: Optional[str] = None,
        descending: bool = False,
    ) -> Subscription:
        """Register ``listener`` for snapshots of ``collection``.

        The current snapshot is delivered immediately and again after every
        commit that writes to the collection.
        """

        subscription = Subscription(
            store=self,
            collection=collection,
            listener=listener,
            order_by=order_by,
            descending=descending,
        )
        with self._lock:
            self._subscriptions.append(subscription)
        log.debug("Registered subscription on '%s'", collection.value)
        self._deliver(subscription)
        return subscription

    def _unsubscribe(self, subscription: Subscription) -> None:
        with self._lock:
            if subscription in self._subscriptions:
                self._subscriptions.remove(subscription)
        log.debug("Cancelled subscription on '%s'", subscription.collection.value)

    def _deliver(self, subscription: Subscription) -> None:
        if subscription.order_by is not None:
            snapshot = self.query_range(
                subscription.collection,
                subscription.order_by,
                descending=subscription.descending,
            )
        else:
            snapshot = self.list(subscription.collection)
        try:
            subscription.listener(snapshot)
        except Exception:
            log.exception("Listener on '%s' raised while handling a snapshot", subscription.collection.value)

    def _notify(self, collections: List[CollectionName]) -> None:
        with self._lock:
            targets = [sub for sub in self._subscriptions if sub.collection in collections]
        for subscription in targets:
            if subscription.active:
                self._deliver(subscription)

    def _commit(self, txn: Transaction) -> None:
        touched = txn.touched_collections
        with self._lock, self._file_guard():
            if self.data_file is not None:
                if self._read_disk_stamp() != self._disk_stamp:
                    touched = list(CollectionName)
                self._reload()
            self._verify(txn)
            writes = txn._stamp(self._clock())
            for operation, collection, record in writes:
                if operation == "insert":
                    data_manager.append_record(self.workbook, collection, record)
                else:
                    data_manager.update_product(
                        self.workbook,
                        record_id(collection, record),
                        field_values=data_manager.product_field_values(record),
                    )
            self._invalidate_cache(*touched)
            if self.data_file is not None and writes:
                self._save()
            for _, collection, record in writes:
                txn._results[(collection, record_id(collection, record))] = record
            txn.committed = True
        log.debug("Committed %d writes across %s", len(writes), [c.value for c in touched])
        self._notify(touched)

    def _verify(self, txn: Transaction) -> None:
        for (collection, doc_id), version in txn._read_versions.items():
            current = self.get(collection, doc_id)
            current_version = getattr(current, "version", None)
            if current_version != version:
                log.warning(
                    "Stale read on %s '%s': read version %s, current %s",
                    collection.value,
                    doc_id,
                    version,
                    current_version,
                )
                raise StaleWriteError(
                    f"{collection.value} '{doc_id}' changed since it was read; retry the transaction"
                )
        for (collection, field, value), seen_ids in txn._predicates.items():
            current_ids = frozenset(
                record_id(collection, record)
                for record in self._ensure_cache(collection)["all"]
                if getattr(record, field) == value
            )
            if current_ids != seen_ids:
                log.warning("Lookup %s.%s == %r changed since it was read", collection.value, field, value)
                raise StaleWriteError(
                    f"Documents matching {collection.value}.{field} == {value!r} changed; retry the transaction"
                )

    def _save(self) -> None:
        try:
            data_manager.save_workbook(self.workbook, self.data_file)
        except OSError as exc:
            log.error("Failed to persist '%s': %s", self.data_file, exc)
            self._reload()
            raise StoreWriteError(f"Unable to save store '{self.data_file}': {exc}") from exc
        self._disk_stamp = self._read_disk_stamp()

    def _file_guard(self) -> ContextManager[Any]:
        if self.data_file is None:
            return nullcontext()
        return data_manager.lock_workbook(self.data_file, timeout=self.lock_timeout)

    def _read_disk_stamp(self) -> Optional[Tuple[int, int]]:
        if self.data_file is None:
            return None
        try:
            return data_manager.file_stamp(self.data_file)
        except FileNotFoundError:
            return None

    def _reload(self) -> None:
        """Replace the in-memory workbook with the one on disk."""

        try:
            self.workbook = data_manager.refresh_workbook(self.data_file)
        except (OSError, KeyError) as exc:
            raise StoreError(f"Unable to reload store '{self.data_file}': {exc}") from exc
        self._invalidate_cache(*CollectionName)
        self._disk_stamp = self._read_disk_stamp()

    def _refresh_if_stale(self) -> None:
        if self.data_file is None:
            return
        with self._lock:
            if self._read_disk_stamp() == self._disk_stamp:
                return
            log.info("Store '%s' changed on disk; reloading", self.data_file)
            self._reload()
        self._notify(list(CollectionName))

    def _ensure_cache(self, collection: CollectionName) -> Dict[str, Any]:
        """Populate the cache bucket for ``collection`` on demand."""

        with self._lock:
            bucket = self._cache.get(collection)
            if bucket is None:
                records = list(data_manager.iter_collection(self.workbook, collection))
                bucket = {
                    "all": records,
                    "by_id": {record_id(collection, record): record for record in records},
                }
                self._cache[collection] = bucket
                log.debug("Populated '%s' cache with %d entries", collection.value, len(records))
            return bucket

    def _invalidate_cache(self, *collections: CollectionName) -> None:
        if not collections:
            return
        log.debug("Invalidating cache buckets: %s", ", ".join(c.value for c in collections))
        for collection in collections:
            self._cache.pop(collection, None)
