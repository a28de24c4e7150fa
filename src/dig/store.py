"""EventStore — append-only SQLite persistence with WAL mode and reference indexes."""

import logging
import sqlite3
import threading
from collections.abc import Iterable, Iterator
from contextlib import contextmanager
from dataclasses import replace
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from dig.codec import canonical_json, event_from_dict, event_from_json, event_to_dict
from dig.errors import (
    DuplicateIdError,
    IdentityCollisionError,
    NotFoundError,
    StoreError,
    ValidationError,
)
from dig.ids import new_id
from dig.links import change_key, references
from dig.models import BaseEvent, BatchFailure, BatchResult, EventFilter, EventType
from dig.validation import parse_timestamp, validate

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 1
PAGE_SIZE = 200
MAX_ID_ATTEMPTS = 5

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS events (
    seq          INTEGER PRIMARY KEY AUTOINCREMENT,
    id           TEXT NOT NULL UNIQUE,
    type         TEXT NOT NULL,
    version      TEXT NOT NULL,
    created_at   TEXT NOT NULL,
    created_utc  TEXT NOT NULL,
    change_id    TEXT,
    ingested_at  TEXT NOT NULL,
    record       TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_events_type    ON events(type, created_utc, seq);
CREATE INDEX IF NOT EXISTS idx_events_change  ON events(change_id, created_utc);

CREATE TABLE IF NOT EXISTS refs (
    source_seq  INTEGER NOT NULL REFERENCES events(seq),
    field       TEXT NOT NULL,
    target_id   TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_refs_target ON refs(target_id);

CREATE TABLE IF NOT EXISTS tags (
    event_seq  INTEGER NOT NULL REFERENCES events(seq),
    key        TEXT NOT NULL,
    value      TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_tags_kv ON tags(key, value);

CREATE TRIGGER IF NOT EXISTS events_no_update BEFORE UPDATE ON events BEGIN
    SELECT RAISE(ABORT, 'events are append-only');
END;

CREATE TRIGGER IF NOT EXISTS events_no_delete BEFORE DELETE ON events BEGIN
    SELECT RAISE(ABORT, 'events are append-only');
END;

CREATE TRIGGER IF NOT EXISTS refs_no_update BEFORE UPDATE ON refs BEGIN
    SELECT RAISE(ABORT, 'refs are append-only');
END;

CREATE TRIGGER IF NOT EXISTS refs_no_delete BEFORE DELETE ON refs BEGIN
    SELECT RAISE(ABORT, 'refs are append-only');
END;

CREATE TRIGGER IF NOT EXISTS tags_no_update BEFORE UPDATE ON tags BEGIN
    SELECT RAISE(ABORT, 'tags are append-only');
END;

CREATE TRIGGER IF NOT EXISTS tags_no_delete BEFORE DELETE ON tags BEGIN
    SELECT RAISE(ABORT, 'tags are append-only');
END;

CREATE TABLE IF NOT EXISTS meta (
    key   TEXT PRIMARY KEY,
    value TEXT
);
"""


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def utc_key(ts: str, field: str = "created_at") -> str:
    """Normalise a timezone-aware timestamp to a sortable UTC string."""
    return parse_timestamp(ts, field).astimezone(timezone.utc).isoformat(timespec="microseconds")


def _type_value(event_type: EventType | str) -> str:
    return event_type.value if isinstance(event_type, EventType) else event_type


class EventQuery:
    """Lazy, finite, restartable view over the events of one type.

    Each iteration re-runs a paged cursor bounded by the ingestion
    sequence observed when that iteration started.
    """

    def __init__(self, store: "EventStore", event_type: EventType | str,
                 filters: EventFilter | None = None, page_size: int = PAGE_SIZE):
        self.store = store
        self.event_type = _type_value(event_type)
        self.filters = filters or EventFilter()
        self.page_size = page_size

    def _conditions(self, snapshot: int) -> tuple[list[str], list[Any]]:
        f = self.filters
        conditions = ["e.type = ?", "e.seq <= ?"]
        params: list[Any] = [self.event_type, snapshot]

        for key, value in f.tags.items():
            conditions.append(
                "EXISTS (SELECT 1 FROM tags t WHERE t.event_seq = e.seq "
                "AND t.key = ? AND t.value = ?)"
            )
            params.extend([key, value])

        if f.window is not None:
            if f.window.since:
                conditions.append("e.created_utc >= ?")
                params.append(utc_key(f.window.since, "since"))
            if f.window.until:
                conditions.append("e.created_utc <= ?")
                params.append(utc_key(f.window.until, "until"))

        if f.change_id:
            conditions.append("e.change_id = ?")
            params.append(f.change_id)

        return conditions, params

    def __iter__(self) -> Iterator[BaseEvent]:
        snapshot = self.filters.max_seq
        if snapshot is None:
            snapshot = self.store.latest_seq()
        conditions, params = self._conditions(snapshot)
        where = " AND ".join(conditions)
        sql = (
            f"SELECT e.* FROM events e WHERE {where} "
            "AND (e.created_utc, e.seq) > (?, ?) "
            "ORDER BY e.created_utc, e.seq LIMIT ?"
        )

        emitted = 0
        cursor = ("", 0)
        while True:
            rows = self.store.conn.execute(sql, [*params, *cursor, self.page_size]).fetchall()
            if not rows:
                return
            for row in rows:
                cursor = (row["created_utc"], row["seq"])
                event = self.store._row_to_event(row)
                if self.filters.where is not None and not self.filters.where(event):
                    continue
                yield event
                emitted += 1
                if self.filters.limit is not None and emitted >= self.filters.limit:
                    return

    def __repr__(self) -> str:
        return f"EventQuery(type={self.event_type!r}, filters={self.filters!r})"


class EventStore:
    """SQLite-backed append-only event store.

    One connection per thread; each append is a single IMMEDIATE
    transaction, so a duplicate id is decided by whichever writer commits
    first.
    """

    def __init__(self, db_path: Path, busy_timeout: float = 5.0):
        self.db_path = db_path
        self.busy_timeout = busy_timeout
        self._local = threading.local()
        self._connections: list[sqlite3.Connection] = []
        self._lock = threading.Lock()

    @property
    def conn(self) -> sqlite3.Connection:
        conn = getattr(self._local, "conn", None)
        if conn is None:
            conn = sqlite3.connect(
                str(self.db_path),
                timeout=self.busy_timeout,
                isolation_level=None,
                check_same_thread=False,
            )
            conn.execute("PRAGMA journal_mode=WAL")
            conn.row_factory = sqlite3.Row
            self._local.conn = conn
            with self._lock:
                self._connections.append(conn)
        return conn

    def close(self):
        with self._lock:
            for conn in self._connections:
                conn.close()
            self._connections.clear()
        self._local = threading.local()

    def initialize(self) -> None:
        """Create tables, indexes, and append-only triggers."""
        self.conn.executescript(SCHEMA_SQL)
        if self.get_meta("schema_version") is None:
            self.set_meta("schema_version", str(SCHEMA_VERSION))

    @contextmanager
    def _transaction(self):
        conn = self.conn
        conn.execute("BEGIN IMMEDIATE")
        try:
            yield conn
        except BaseException:
            conn.execute("ROLLBACK")
            raise
        else:
            conn.execute("COMMIT")

    def _row_to_event(self, row: sqlite3.Row) -> BaseEvent:
        event = event_from_json(row["record"])
        event.seq = row["seq"]
        event.ingested_at = row["ingested_at"]
        return event

    @staticmethod
    def with_defaults(event: BaseEvent) -> BaseEvent:
        """Fill id and created_at the way append would, without validating."""
        if not event.id:
            event = replace(event, id=new_id(event.event_type))
        if not event.created_at:
            event = replace(event, created_at=_now_iso())
        return event

    @classmethod
    def _prepare(cls, event: BaseEvent) -> BaseEvent:
        """Fill id/timestamp if unset, normalise through the codec, validate."""
        normalized = event_from_dict(event_to_dict(cls.with_defaults(event)))
        validate(normalized)
        return normalized

    def _insert(self, event: BaseEvent) -> BaseEvent:
        record = canonical_json(event)
        ingested_at = _now_iso()
        try:
            with self._transaction() as conn:
                cur = conn.execute(
                    "INSERT INTO events (id, type, version, created_at, created_utc, "
                    "change_id, ingested_at, record) VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
                    (event.id, event.event_type, event.version, event.created_at,
                     utc_key(event.created_at), change_key(event), ingested_at, record),
                )
                seq = cur.lastrowid
                conn.executemany(
                    "INSERT INTO refs (source_seq, field, target_id) VALUES (?, ?, ?)",
                    [(seq, r.field, r.target_id) for r in references(event)],
                )
                conn.executemany(
                    "INSERT INTO tags (event_seq, key, value) VALUES (?, ?, ?)",
                    [(seq, key, v) for key, value in event.tags.items()
                     for v in (value if isinstance(value, list) else [value])],
                )
        except sqlite3.IntegrityError as e:
            if "events.id" in str(e):
                raise DuplicateIdError(event.id) from e
            raise StoreError(f"Could not write {event.id}: {e}") from e
        except sqlite3.Error as e:
            raise StoreError(f"Could not write {event.id}: {e}") from e

        stored = event_from_json(record)
        stored.seq = seq
        stored.ingested_at = ingested_at
        return stored

    def append(self, event: BaseEvent) -> BaseEvent:
        """Validate and write one immutable event.

        Returns the stored event with its ingestion sequence number.
        Raises ValidationError or DuplicateIdError; nothing is written on failure.
        """
        generated = not event.id
        prepared = self._prepare(event)
        for _ in range(MAX_ID_ATTEMPTS):
            try:
                return self._insert(prepared)
            except DuplicateIdError:
                if not generated:
                    logger.info("Duplicate id rejected: %s", prepared.id)
                    raise
                logger.warning("Generated id collided, regenerating: %s", prepared.id)
                prepared = replace(prepared, id=new_id(prepared.event_type))
        raise IdentityCollisionError(
            f"Could not generate a unique {prepared.event_type} id after {MAX_ID_ATTEMPTS} attempts"
        )

    def append_idempotent(self, event: BaseEvent) -> BaseEvent:
        """Append, treating a duplicate with identical content as already done.

        Intended for retries: the caller pre-generates the id. A duplicate
        id with different content is a real conflict and re-raises.
        """
        try:
            return self.append(event)
        except DuplicateIdError:
            existing = self.get(event.id)
            candidate = event if event.created_at else replace(event, created_at=existing.created_at)
            if canonical_json(self._prepare(candidate)) == canonical_json(existing):
                logger.info("Retry of already-stored event treated as success: %s", event.id)
                return existing
            raise

    def append_batch(self, events: Iterable[BaseEvent | dict]) -> BatchResult:
        """Append each event independently. Failures are isolated and reported."""
        result = BatchResult()
        for index, item in enumerate(events):
            event_id = item.get("id") if isinstance(item, dict) else getattr(item, "id", None)
            try:
                if isinstance(item, dict):
                    event = event_from_dict(item)
                elif isinstance(item, BaseEvent):
                    event = item
                else:
                    raise ValidationError("event", f"expected an event or a mapping, got {type(item).__name__}")
                result.accepted.append(self.append(event))
            except (ValidationError, DuplicateIdError, IdentityCollisionError, StoreError) as e:
                logger.warning("Rejected event #%d (%s): %s", index, event_id or "new", e)
                result.rejected.append(BatchFailure(
                    index=index,
                    event_id=event_id or None,
                    error=str(e),
                    duplicate=isinstance(e, DuplicateIdError),
                ))
        return result

    def get(self, event_id: str) -> BaseEvent:
        row = self.conn.execute("SELECT * FROM events WHERE id = ?", (event_id,)).fetchone()
        if row is None:
            raise NotFoundError(event_id)
        return self._row_to_event(row)

    def get_raw(self, event_id: str) -> str:
        """The stored record text, exactly as written."""
        row = self.conn.execute("SELECT record FROM events WHERE id = ?", (event_id,)).fetchone()
        if row is None:
            raise NotFoundError(event_id)
        return row["record"]

    def exists(self, event_id: str, max_seq: int | None = None) -> bool:
        if max_seq is None:
            row = self.conn.execute("SELECT 1 FROM events WHERE id = ?", (event_id,)).fetchone()
        else:
            row = self.conn.execute(
                "SELECT 1 FROM events WHERE id = ? AND seq <= ?", (event_id, max_seq)
            ).fetchone()
        return row is not None

    def get_many(self, event_ids: Iterable[str], max_seq: int | None = None) -> dict[str, BaseEvent]:
        """Fetch several events by id. Missing ids are simply absent from the result."""
        wanted = list(dict.fromkeys(event_ids))
        found: dict[str, BaseEvent] = {}
        bound = max_seq if max_seq is not None else self.latest_seq()
        for start in range(0, len(wanted), 500):
            chunk = wanted[start:start + 500]
            placeholders = ",".join("?" for _ in chunk)
            rows = self.conn.execute(
                f"SELECT * FROM events WHERE id IN ({placeholders}) AND seq <= ?",
                [*chunk, bound],
            ).fetchall()
            for row in rows:
                found[row["id"]] = self._row_to_event(row)
        return found

    def query_by_change(self, change_id: str, max_seq: int | None = None) -> list[BaseEvent]:
        """All events keyed to a change (the change itself included), oldest first."""
        sql = "SELECT * FROM events WHERE change_id = ?"
        params: list[Any] = [change_id]
        if max_seq is not None:
            sql += " AND seq <= ?"
            params.append(max_seq)
        sql += " ORDER BY created_utc, seq"
        rows = self.conn.execute(sql, params).fetchall()
        return [self._row_to_event(r) for r in rows]

    def query_by_type(self, event_type: EventType | str,
                      filters: EventFilter | None = None) -> EventQuery:
        return EventQuery(self, event_type, filters)

    def referencing(self, target_id: str, max_seq: int | None = None) -> list[BaseEvent]:
        """Events with any reference field pointing at target_id, oldest first."""
        sql = (
            "SELECT e.* FROM events e WHERE e.seq IN "
            "(SELECT r.source_seq FROM refs r WHERE r.target_id = ?)"
        )
        params: list[Any] = [target_id]
        if max_seq is not None:
            sql += " AND e.seq <= ?"
            params.append(max_seq)
        sql += " ORDER BY e.created_utc, e.seq"
        rows = self.conn.execute(sql, params).fetchall()
        return [self._row_to_event(r) for r in rows]

    def latest_seq(self) -> int:
        """Highest ingestion sequence number written so far (0 when empty)."""
        row = self.conn.execute("SELECT COALESCE(MAX(seq), 0) AS seq FROM events").fetchone()
        return row["seq"]

    def count(self, event_type: EventType | str | None = None) -> int:
        if event_type is None:
            row = self.conn.execute("SELECT COUNT(*) AS cnt FROM events").fetchone()
        else:
            row = self.conn.execute(
                "SELECT COUNT(*) AS cnt FROM events WHERE type = ?", (_type_value(event_type),)
            ).fetchone()
        return row["cnt"]

    def count_by_type(self) -> dict[str, int]:
        rows = self.conn.execute(
            "SELECT type, COUNT(*) AS cnt FROM events GROUP BY type ORDER BY type"
        ).fetchall()
        return {r["type"]: r["cnt"] for r in rows}

    def last_activity(self) -> str | None:
        """created_at of the most recent event."""
        row = self.conn.execute(
            "SELECT created_at FROM events ORDER BY created_utc DESC, seq DESC LIMIT 1"
        ).fetchone()
        return row["created_at"] if row else None

    def get_meta(self, key: str) -> str | None:
        row = self.conn.execute("SELECT value FROM meta WHERE key = ?", (key,)).fetchone()
        return row["value"] if row else None

    def set_meta(self, key: str, value: str) -> None:
        """Write to meta table (upsert). Meta is store bookkeeping, not event data."""
        with self._transaction() as conn:
            conn.execute(
                "INSERT INTO meta (key, value) VALUES (?, ?) "
                "ON CONFLICT(key) DO UPDATE SET value = excluded.value",
                (key, value),
            )

