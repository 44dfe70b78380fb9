from __future__ import annotations

import copy
import itertools
import logging
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Sequence, Set, Tuple

import psycopg
from psycopg import sql
from psycopg.rows import dict_row
from psycopg.types.json import Jsonb

LOGGER = logging.getLogger("chatsync.store")

Record = Dict[str, Any]
Snapshot = Tuple[Record, ...]
SnapshotCallback = Callable[[Snapshot], None]


# =========================
# Errors
# =========================
class StoreError(Exception):
    pass


class StoreReadFailed(StoreError):
    pass


class StoreWriteFailed(StoreError):
    pass


class UniqueConstraintError(StoreError):
    def __init__(self, collection: str, field: str, value: Any = None):
        self.collection = collection
        self.field = field
        self.value = value
        super().__init__(f"{collection}.{field} must be unique (value={value!r})")


# =========================
# Queries / writes
# =========================
@dataclass(frozen=True)
class Query:
    collection: str
    where: Tuple[Tuple[str, Any], ...] = ()
    limit: Optional[int] = None

    @classmethod
    def on(cls, collection: str, limit: Optional[int] = None, **where: Any) -> "Query":
        return cls(collection=collection, where=tuple(sorted(where.items())), limit=limit)

    def matches(self, record: Mapping[str, Any]) -> bool:
        return all(record.get(key) == value for key, value in self.where)


@dataclass(frozen=True)
class Upsert:
    """Merge-update of a single record. Fields passed as None are stored as None."""

    collection: str
    id: str
    fields: Mapping[str, Any]


class Subscription:
    def __init__(self, store: "RealtimeStore", sub_id: int, query: Query, callback: SnapshotCallback):
        self.id = sub_id
        self.query = query
        self.closed = False
        self._store = store
        self._callback = callback
        self._last: Optional[Snapshot] = None

    def deliver(self, snapshot: Snapshot) -> None:
        if self.closed or snapshot == self._last:
            return
        self._last = snapshot
        self._callback(copy.deepcopy(snapshot))

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        self._store._unsubscribe(self.id)


# =========================
# Store contract
# =========================
class RealtimeStore(ABC):
    """
    subscribe(query) -> live snapshots, transact(upserts) -> all-or-nothing.
    Subscribers (the writer included) get the committed state on their next snapshot.
    """

    def __init__(self, unique: Optional[Mapping[str, Sequence[str]]] = None):
        self.unique: Dict[str, Tuple[str, ...]] = {c: tuple(f) for c, f in (unique or {}).items()}
        self._subscriptions: Dict[int, Subscription] = {}
        self._sub_ids = itertools.count(1)
        self._sub_lock = threading.Lock()

    @abstractmethod
    def _fetch(self, query: Query) -> Snapshot:
        ...

    @abstractmethod
    def _apply(self, upserts: Sequence[Upsert]) -> None:
        ...

    def query_once(self, query: Query) -> Snapshot:
        return self._fetch(query)

    def subscribe(self, query: Query, callback: SnapshotCallback) -> Subscription:
        sub = Subscription(self, next(self._sub_ids), query, callback)
        with self._sub_lock:
            self._subscriptions[sub.id] = sub
        try:
            sub.deliver(self._fetch(query))
        except StoreError:
            sub.close()
            raise
        return sub

    def transact(self, upserts: Iterable[Upsert]) -> None:
        batch = list(upserts)
        if not batch:
            return
        self._apply(batch)
        LOGGER.info("transact ok records=%s", ",".join(f"{u.collection}/{u.id}" for u in batch))
        self._publish({u.collection for u in batch})

    def _unsubscribe(self, sub_id: int) -> None:
        with self._sub_lock:
            self._subscriptions.pop(sub_id, None)

    def _publish(self, collections: Set[str]) -> None:
        with self._sub_lock:
            targets = [s for s in self._subscriptions.values() if s.query.collection in collections]
        for sub in targets:
            # an earlier callback in this loop may have closed it
            if sub.closed:
                continue
            try:
                sub.deliver(self._fetch(sub.query))
            except Exception:
                LOGGER.exception("subscription delivery failed collection=%s sub=%s", sub.query.collection, sub.id)


# =========================
# In-process store
# =========================
class MemoryStore(RealtimeStore):
    def __init__(self, unique: Optional[Mapping[str, Sequence[str]]] = None):
        super().__init__(unique)
        self._collections: Dict[str, Dict[str, Record]] = {}
        self._lock = threading.RLock()

    def _fetch(self, query: Query) -> Snapshot:
        with self._lock:
            records = self._collections.get(query.collection, {})
            rows = [copy.deepcopy(records[rid]) for rid in sorted(records) if query.matches(records[rid])]
        if query.limit is not None:
            rows = rows[: query.limit]
        return tuple(rows)

    def _apply(self, upserts: Sequence[Upsert]) -> None:
        with self._lock:
            staged = {name: dict(records) for name, records in self._collections.items()}
            for upsert in upserts:
                records = staged.setdefault(upsert.collection, {})
                merged = dict(records.get(upsert.id, {}))
                merged.update(copy.deepcopy(dict(upsert.fields)))
                merged["id"] = upsert.id
                records[upsert.id] = merged
            self._check_unique(staged, {u.collection for u in upserts})
            self._collections = staged

    def _check_unique(self, staged: Dict[str, Dict[str, Record]], touched: Set[str]) -> None:
        for collection in touched:
            for field in self.unique.get(collection, ()):
                owners: Dict[Any, str] = {}
                for rid, record in staged.get(collection, {}).items():
                    value = record.get(field)
                    if value is None:
                        continue
                    if value in owners and owners[value] != rid:
                        raise UniqueConstraintError(collection, field, value)
                    owners[value] = rid


# =========================
# Postgres store
# =========================
class PostgresStore(RealtimeStore):
    """
    All collections share one JSONB table. Upserts merge into the stored document,
    equality filters use JSONB containment and unique fields get a partial unique index.
    """

    def __init__(self, dsn: str, unique: Optional[Mapping[str, Sequence[str]]] = None):
        super().__init__(unique)
        self.dsn = dsn
        self._unique_indexes: Dict[str, Tuple[str, str]] = {
            f"records_{collection}_{field}_key": (collection, field)
            for collection, fields in self.unique.items()
            for field in fields
        }

    def db(self):
        # new connection per action
        return psycopg.connect(self.dsn, row_factory=dict_row)

    def init_schema(self) -> None:
        with self.db() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    CREATE TABLE IF NOT EXISTS records (
                        collection TEXT NOT NULL,
                        id TEXT NOT NULL,
                        data JSONB NOT NULL,
                        updated_at BIGINT NOT NULL,
                        PRIMARY KEY(collection, id)
                    );
                    """
                )
                cur.execute(
                    "CREATE INDEX IF NOT EXISTS idx_records_data ON records USING GIN (data jsonb_path_ops);"
                )
                for index_name, (collection, field) in self._unique_indexes.items():
                    cur.execute(
                        sql.SQL(
                            "CREATE UNIQUE INDEX IF NOT EXISTS {} ON records ((data->>{})) WHERE collection = {}"
                        ).format(sql.Identifier(index_name), sql.Literal(field), sql.Literal(collection))
                    )
            conn.commit()

    def _fetch(self, query: Query) -> Snapshot:
        statement = "SELECT data FROM records WHERE collection=%s"
        params: List[Any] = [query.collection]
        if query.where:
            statement += " AND data @> %s"
            params.append(Jsonb(dict(query.where)))
        statement += " ORDER BY id ASC"
        if query.limit is not None:
            statement += " LIMIT %s"
            params.append(query.limit)

        try:
            with self.db() as conn:
                with conn.cursor() as cur:
                    cur.execute(statement, params)
                    rows = cur.fetchall()
        except psycopg.Error as e:
            raise StoreReadFailed(str(e)) from e
        return tuple(row["data"] for row in rows)

    def _apply(self, upserts: Sequence[Upsert]) -> None:
        ts = int(time.time() * 1000)
        try:
            with self.db() as conn:
                with conn.cursor() as cur:
                    for upsert in upserts:
                        data = dict(upsert.fields)
                        data["id"] = upsert.id
                        cur.execute(
                            """
                            INSERT INTO records(collection, id, data, updated_at)
                            VALUES (%s,%s,%s,%s)
                            ON CONFLICT (collection, id)
                            DO UPDATE SET data = records.data || EXCLUDED.data,
                                          updated_at = EXCLUDED.updated_at
                            """,
                            (upsert.collection, upsert.id, Jsonb(data), ts),
                        )
                conn.commit()
        except psycopg.errors.UniqueViolation as e:
            collection, field = self._unique_indexes.get(e.diag.constraint_name or "", ("records", "id"))
            raise UniqueConstraintError(collection, field) from e
        except psycopg.Error as e:
            raise StoreWriteFailed(str(e)) from e
