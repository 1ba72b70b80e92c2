"""
Persistent storage for scraped events.

Two logical tables:

    snapshot   -> everything seen on a given day, fully replaced per run date
    cumulative -> lectures/tutorials ever seen, append-only, deduplicated

Neither table is mutated in place: a run deletes its own date from the
snapshot and inserts, or inserts previously unseen occurrences into the
cumulative table. The two operations are separately consistent but not
jointly atomic; a crash between them leaves a fresh snapshot next to a
cumulative table that still misses that run's new occurrences (the next run
adds them).
"""

from __future__ import annotations

import json
import re
import sqlite3
from datetime import date
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple, Type

from pymongo import ASCENDING, MongoClient
from pymongo.errors import BulkWriteError, ConnectionFailure, PyMongoError

from roomschedule.config import Settings
from roomschedule.errors import PartialInsertError, StoreError, StoreUnavailable
from roomschedule.logging import get_logger
from roomschedule.model import LOCATION_FIELDS, Record, Weekday, matches_loosely

log = get_logger(__name__)

SNAPSHOT_INDEXES = ("title", "room", "campus", "snapshot_date")
CUMULATIVE_INDEXES = ("title", "kind", "start_time", "end_time", "snapshot_date")


class ReconcilingStore:
    """
    Store interface used by the pipeline.

    Subclasses implement the snapshot replacement and the two primitives of
    the cumulative append (existence check, single insert). The append loop
    itself lives here so every backend checks before it writes.
    """

    write_errors: Tuple[Type[BaseException], ...] = ()

    def replace_snapshot(self, records: Sequence[Record], run_date: date) -> int:
        """
        Remove all snapshot rows of run_date and insert `records`.

        Returns the number of inserted rows.
        """
        raise NotImplementedError

    def append_deduplicated(self, records: Iterable[Record], run_date: date, weekday: Weekday) -> int:
        """
        Insert lectures/tutorials whose natural key is not stored yet.

        Returns the number of inserted rows. Raises PartialInsertError when a
        write fails midway; rows inserted before the failure stay. A failing
        existence check raises StoreError (StoreUnavailable on a lost
        connection).
        """
        candidates = [r for r in records if r.is_cumulative]
        self._prepare_cumulative()

        inserted = 0
        for i, record in enumerate(candidates):
            # a failed existence check is a store failure, not a partial insert
            if self._has_cumulative(record):
                continue
            try:
                self._insert_cumulative(record.cumulative_row(run_date, weekday))
            except self.write_errors as e:
                log.error("cumulative_insert_failed", title=record.title, inserted=inserted, error=str(e))
                raise PartialInsertError(inserted, len(candidates) - i, str(e)) from e
            inserted += 1

        log.info(
            "cumulative_appended",
            run_date=run_date.isoformat(),
            candidates=len(candidates),
            inserted=inserted,
        )
        return inserted

    def snapshot(self, run_date: date) -> List[Dict[str, Any]]:
        raise NotImplementedError

    def cumulative(self) -> List[Dict[str, Any]]:
        raise NotImplementedError

    def close(self) -> None:
        pass

    def _prepare_cumulative(self) -> None:
        pass

    def _has_cumulative(self, record: Record) -> bool:
        raise NotImplementedError

    def _insert_cumulative(self, row: Dict[str, Any]) -> None:
        raise NotImplementedError

    def __enter__(self) -> "ReconcilingStore":
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()


# ---------------------------------------------------------------------------
# In-memory store (tests, dry runs)
# ---------------------------------------------------------------------------


class MemoryStore(ReconcilingStore):
    def __init__(self) -> None:
        self.snapshot_rows: List[Dict[str, Any]] = []
        self.cumulative_rows: List[Dict[str, Any]] = []

    def replace_snapshot(self, records: Sequence[Record], run_date: date) -> int:
        day = run_date.isoformat()
        self.snapshot_rows = [r for r in self.snapshot_rows if r["snapshot_date"] != day]
        self.snapshot_rows.extend(r.snapshot_row() for r in records)
        log.info("snapshot_replaced", run_date=day, inserted=len(records))
        return len(records)

    def snapshot(self, run_date: date) -> List[Dict[str, Any]]:
        day = run_date.isoformat()
        return [dict(r) for r in self.snapshot_rows if r["snapshot_date"] == day]

    def cumulative(self) -> List[Dict[str, Any]]:
        return [dict(r) for r in self.cumulative_rows]

    def _has_cumulative(self, record: Record) -> bool:
        return any(matches_loosely(row, record) for row in self.cumulative_rows)

    def _insert_cumulative(self, row: Dict[str, Any]) -> None:
        self.cumulative_rows.append(row)


# ---------------------------------------------------------------------------
# SQLite store
# ---------------------------------------------------------------------------

_IDENTIFIER = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")

_KEY_COLUMNS = ("kind", "title", "start_time", "end_time")


def _table_name(name: str) -> str:
    if not _IDENTIFIER.match(name):
        raise ValueError(f"Invalid table name: {name!r}")
    return name


class SqliteStore(ReconcilingStore):
    """
    Snapshot and cumulative tables in one SQLite file.

    The snapshot replacement runs in a single transaction; cumulative
    inserts are committed one by one.
    """

    write_errors = (sqlite3.Error,)

    def __init__(self, path: str, snapshot_table: str = "eventos", cumulative_table: str = "all_eventos") -> None:
        self.path = path
        self.snapshot_table = _table_name(snapshot_table)
        self.cumulative_table = _table_name(cumulative_table)
        self._conn: Optional[sqlite3.Connection] = None

    def _connection(self) -> sqlite3.Connection:
        if self._conn is not None:
            return self._conn
        try:
            conn = sqlite3.connect(self.path)
            conn.row_factory = sqlite3.Row
            conn.executescript(self._schema())
            conn.commit()
        except sqlite3.Error as e:
            raise StoreUnavailable(f"Cannot open SQLite database {self.path}: {e}") from e
        self._conn = conn
        return conn

    def _schema(self) -> str:
        snap, cum = self.snapshot_table, self.cumulative_table
        lines = [
            f"""
            CREATE TABLE IF NOT EXISTS {snap} (
              id            INTEGER PRIMARY KEY AUTOINCREMENT,
              snapshot_date TEXT NOT NULL,
              kind          TEXT NOT NULL,
              title         TEXT NOT NULL,
              start_time    TEXT NOT NULL,
              end_time      TEXT NOT NULL,
              room          TEXT,
              building      TEXT,
              campus        TEXT,
              kind_label    TEXT,
              extra         TEXT NOT NULL DEFAULT '{{}}'
            );
            CREATE TABLE IF NOT EXISTS {cum} (
              id            INTEGER PRIMARY KEY AUTOINCREMENT,
              kind          TEXT NOT NULL,
              title         TEXT NOT NULL,
              start_time    TEXT NOT NULL,
              end_time      TEXT NOT NULL,
              room          TEXT,
              building      TEXT,
              campus        TEXT,
              snapshot_date TEXT NOT NULL,
              weekday       TEXT NOT NULL
            );
            """
        ]
        for col in SNAPSHOT_INDEXES:
            lines.append(f"CREATE INDEX IF NOT EXISTS idx_{snap}_{col} ON {snap}({col});")
        for col in CUMULATIVE_INDEXES:
            lines.append(f"CREATE INDEX IF NOT EXISTS idx_{cum}_{col} ON {cum}({col});")
        return "\n".join(lines)

    def replace_snapshot(self, records: Sequence[Record], run_date: date) -> int:
        conn = self._connection()
        day = run_date.isoformat()
        rows = [
            (
                day,
                r.kind.value,
                r.title,
                r.start_time,
                r.end_time,
                r.room,
                r.building,
                r.campus,
                r.kind_label,
                json.dumps(dict(r.extra), ensure_ascii=False),
            )
            for r in records
        ]
        try:
            with conn:
                conn.execute(f"DELETE FROM {self.snapshot_table} WHERE snapshot_date = ?", (day,))
                conn.executemany(
                    f"INSERT INTO {self.snapshot_table} "
                    "(snapshot_date, kind, title, start_time, end_time, room, building, campus, kind_label, extra) "
                    "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                    rows,
                )
        except sqlite3.Error as e:
            raise StoreError(f"Snapshot replace failed for {day}: {e}") from e

        log.info("snapshot_replaced", run_date=day, inserted=len(rows))
        return len(rows)

    def snapshot(self, run_date: date) -> List[Dict[str, Any]]:
        cur = self._connection().execute(
            f"SELECT * FROM {self.snapshot_table} WHERE snapshot_date = ? ORDER BY id",
            (run_date.isoformat(),),
        )
        out: List[Dict[str, Any]] = []
        for row in cur.fetchall():
            data: Dict[str, Any] = json.loads(row["extra"] or "{}")
            for col in ("kind", "title", "start_time", "end_time", "snapshot_date"):
                data[col] = row[col]
            for col in (*LOCATION_FIELDS, "kind_label"):
                if row[col] is not None:
                    data[col] = row[col]
            out.append(data)
        return out

    def cumulative(self) -> List[Dict[str, Any]]:
        cur = self._connection().execute(f"SELECT * FROM {self.cumulative_table} ORDER BY id")
        out: List[Dict[str, Any]] = []
        for row in cur.fetchall():
            data = {k: row[k] for k in row.keys() if k != "id" and row[k] is not None}
            out.append(data)
        return out

    def _prepare_cumulative(self) -> None:
        self._connection()

    def _has_cumulative(self, record: Record) -> bool:
        clauses = [f"{col} = ?" for col in _KEY_COLUMNS]
        params: List[Any] = [record.kind.value, record.title, record.start_time, record.end_time]
        for col, value in record.locations().items():
            clauses.append(f"({col} IS NULL OR {col} = ?)")
            params.append(value)
        sql = f"SELECT 1 FROM {self.cumulative_table} WHERE {' AND '.join(clauses)} LIMIT 1"
        conn = self._connection()
        try:
            return conn.execute(sql, params).fetchone() is not None
        except sqlite3.Error as e:
            raise StoreError(f"Existence check failed on {self.cumulative_table}: {e}") from e

    def _insert_cumulative(self, row: Dict[str, Any]) -> None:
        cols = list(row.keys())
        conn = self._connection()
        with conn:
            conn.execute(
                f"INSERT INTO {self.cumulative_table} ({', '.join(cols)}) VALUES ({', '.join('?' for _ in cols)})",
                [row[c] for c in cols],
            )

    def close(self) -> None:
        if self._conn is not None:
            self._conn.close()
            self._conn = None


# ---------------------------------------------------------------------------
# MongoDB store
# ---------------------------------------------------------------------------


def cumulative_filter(record: Record) -> Dict[str, Any]:
    """
    Query for stored occurrences matching the record's loose natural key.

    {field: {"$in": [value, None]}} also matches documents lacking the field.
    """
    query: Dict[str, Any] = {
        "kind": record.kind.value,
        "title": record.title,
        "start_time": record.start_time,
        "end_time": record.end_time,
    }
    for name, value in record.locations().items():
        query[name] = {"$in": [value, None]}
    return query


class MongoStore(ReconcilingStore):
    """
    Snapshot and cumulative collections in one MongoDB database.

    The client is created lazily; an unreachable server surfaces as
    StoreUnavailable on the first operation.
    """

    write_errors = (PyMongoError,)

    def __init__(
        self,
        uri: str,
        database: str = "uai-salas",
        snapshot_collection: str = "eventos",
        cumulative_collection: str = "all_eventos",
        timeout_ms: int = 5000,
        client: Optional[MongoClient] = None,
    ) -> None:
        self.uri = uri
        self.database = database
        self.snapshot_collection = snapshot_collection
        self.cumulative_collection = cumulative_collection
        self.timeout_ms = timeout_ms
        self._client = client
        self._connected = False
        self._indexed: set[str] = set()

    def _db(self) -> Any:
        if not self._connected:
            try:
                if self._client is None:
                    self._client = MongoClient(self.uri, serverSelectionTimeoutMS=self.timeout_ms)
                self._client.admin.command("ping")
            except PyMongoError as e:
                raise StoreUnavailable(f"Cannot connect to MongoDB: {e}") from e
            self._connected = True
            log.info("mongo_connected", database=self.database)
        return self._client[self.database]

    def _collection(self, name: str, indexes: Sequence[str]) -> Any:
        coll = self._db()[name]
        if name not in self._indexed:
            try:
                for field in indexes:
                    coll.create_index([(field, ASCENDING)])
            except PyMongoError as e:
                raise StoreError(f"Index creation failed on {name}: {e}") from e
            self._indexed.add(name)
        return coll

    def replace_snapshot(self, records: Sequence[Record], run_date: date) -> int:
        coll = self._collection(self.snapshot_collection, SNAPSHOT_INDEXES)
        day = run_date.isoformat()
        try:
            deleted = coll.delete_many({"snapshot_date": day}).deleted_count
            inserted = 0
            if records:
                result = coll.insert_many([r.snapshot_row() for r in records], ordered=True)
                inserted = len(result.inserted_ids)
        except BulkWriteError as e:
            inserted = e.details.get("nInserted", 0)
            raise PartialInsertError(inserted, len(records) - inserted, str(e)) from e
        except ConnectionFailure as e:
            raise StoreUnavailable(f"Lost MongoDB connection during snapshot replace: {e}") from e
        except PyMongoError as e:
            raise StoreError(f"Snapshot replace failed for {day}: {e}") from e

        log.info("snapshot_replaced", run_date=day, deleted=deleted, inserted=inserted)
        return inserted

    def snapshot(self, run_date: date) -> List[Dict[str, Any]]:
        coll = self._db()[self.snapshot_collection]
        return list(coll.find({"snapshot_date": run_date.isoformat()}, {"_id": 0}))

    def cumulative(self) -> List[Dict[str, Any]]:
        coll = self._db()[self.cumulative_collection]
        return list(coll.find({}, {"_id": 0}))

    def _prepare_cumulative(self) -> None:
        self._collection(self.cumulative_collection, CUMULATIVE_INDEXES)

    def _has_cumulative(self, record: Record) -> bool:
        coll = self._db()[self.cumulative_collection]
        try:
            return coll.find_one(cumulative_filter(record), {"_id": 1}) is not None
        except ConnectionFailure as e:
            raise StoreUnavailable(f"Lost MongoDB connection during existence check: {e}") from e
        except PyMongoError as e:
            raise StoreError(f"Existence check failed on {self.cumulative_collection}: {e}") from e

    def _insert_cumulative(self, row: Dict[str, Any]) -> None:
        self._db()[self.cumulative_collection].insert_one(dict(row))

    def close(self) -> None:
        if self._client is not None:
            self._client.close()
            self._client = None
            self._connected = False


# ---------------------------------------------------------------------------
# Store selection
# ---------------------------------------------------------------------------


def open_store(uri: str, settings: Optional[Settings] = None) -> ReconcilingStore:
    """
    Pick a store implementation from the URI scheme.

        memory://                 -> MemoryStore
        sqlite:///relative.db     -> SqliteStore
        mongodb://, mongodb+srv:// -> MongoStore
    """
    settings = settings or Settings()
    if uri.startswith("memory://"):
        return MemoryStore()
    if uri.startswith("sqlite:///"):
        return SqliteStore(
            uri[len("sqlite:///"):],
            snapshot_table=settings.snapshot_table,
            cumulative_table=settings.cumulative_table,
        )
    if uri.startswith(("mongodb://", "mongodb+srv://")):
        return MongoStore(
            uri,
            database=settings.database_name,
            snapshot_collection=settings.snapshot_table,
            cumulative_collection=settings.cumulative_table,
            timeout_ms=settings.connect_timeout_ms,
        )
    raise ValueError(f"Unsupported store URI: {uri!r}")
