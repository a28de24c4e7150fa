"""Tests for the EventStore."""

import sqlite3
import threading

import pytest

from conftest import ts
from dig.codec import canonical_json
from dig.errors import (
    DuplicateIdError,
    IdentityCollisionError,
    NotFoundError,
    StoreError,
    ValidationError,
)
from dig.models import (
    Change,
    CustomEvent,
    EventFilter,
    EventType,
    Outcome,
    Session,
    SourceControl,
    Survival,
    TimeWindow,
)
from dig.store import EventQuery


def new_change(id="", created_at="", **kw):
    return Change(
        id=id, created_at=created_at,
        source_control=SourceControl(repository="acme/api", commit_sha="abc1234"),
        **kw,
    )


class TestAppend:

    def test_initialize_creates_tables(self, store):
        tables = store.conn.execute(
            "SELECT name FROM sqlite_master WHERE type='table' ORDER BY name"
        ).fetchall()
        names = {r["name"] for r in tables}
        assert {"events", "refs", "tags", "meta"} <= names
        assert store.get_meta("schema_version") == "1"

    def test_initialize_is_idempotent(self, store):
        store.initialize()
        assert store.count() == 0

    def test_append_assigns_id_and_timestamp(self, store):
        stored = store.append(new_change())
        assert stored.id.startswith("change_")
        assert stored.created_at != ""
        assert stored.seq == 1
        assert stored.ingested_at is not None
        assert store.count() == 1

    def test_append_keeps_supplied_id(self, store):
        stored = store.append(new_change(id="change_abc123", created_at=ts()))
        assert stored.id == "change_abc123"
        assert store.get("change_abc123") == stored

    def test_sequence_increases(self, store):
        first = store.append(new_change())
        second = store.append(new_change())
        assert second.seq > first.seq
        assert store.latest_seq() == second.seq

    def test_invalid_event_writes_nothing(self, store):
        with pytest.raises(ValidationError):
            store.append(new_change(id="rollout_1"))
        assert store.count() == 0
        assert store.latest_seq() == 0

    def test_dangling_reference_may_be_written(self, store):
        stored = store.append(Outcome(
            id="outcome_1", created_at=ts(), change_id="change_later", rollout_id="rollout_later",
        ))
        assert store.get(stored.id).change_id == "change_later"

    def test_custom_event_pass_through(self, store):
        stored = store.append(CustomEvent(
            created_at=ts(), custom_type="x-acme.flag_flip",
            change_id="change_abc123", payload={"flag": "new-checkout", "on": True},
        ))
        assert stored.id.startswith("evt_")
        assert store.query_by_change("change_abc123") == [stored]
        assert list(store.query_by_type("x-acme.flag_flip")) == [stored]


class TestImmutability:

    def test_get_returns_byte_identical_record(self, store):
        stored = store.append(new_change(id="change_abc123", created_at=ts(), tags={"domain": "ml"}))
        raw = store.get_raw("change_abc123")
        assert raw == canonical_json(stored)
        store.append(new_change())
        assert store.get_raw("change_abc123") == raw

    def test_sql_update_rejected(self, store):
        store.append(new_change(id="change_abc123", created_at=ts()))
        with pytest.raises(sqlite3.DatabaseError, match="append-only"):
            store.conn.execute("UPDATE events SET record = '{}' WHERE id = 'change_abc123'")
        assert store.get("change_abc123").source_control.repository == "acme/api"

    def test_sql_delete_rejected(self, store):
        store.append(new_change(id="change_abc123", created_at=ts()))
        with pytest.raises(sqlite3.DatabaseError, match="append-only"):
            store.conn.execute("DELETE FROM events")
        assert store.count() == 1

    def test_sql_tag_delete_rejected(self, store):
        store.append(new_change(id="change_abc123", created_at=ts(), tags={"domain": "ml"}))
        with pytest.raises(sqlite3.DatabaseError, match="append-only"):
            store.conn.execute("DELETE FROM tags")
        with pytest.raises(sqlite3.DatabaseError, match="append-only"):
            store.conn.execute("UPDATE tags SET value = 'web'")
        matched = store.query_by_type(EventType.CHANGE, EventFilter(tags={"domain": "ml"}))
        assert [e.id for e in matched] == ["change_abc123"]

    def test_returned_event_is_a_copy(self, store):
        stored = store.append(new_change(id="change_abc123", created_at=ts(), tags={"domain": "ml"}))
        stored.tags["domain"] = "web"
        assert store.get("change_abc123").tags == {"domain": "ml"}


class TestDuplicates:

    def test_duplicate_id_rejected(self, store):
        store.append(new_change(id="change_abc123", created_at=ts(), tags={"v": "1"}))
        raw = store.get_raw("change_abc123")
        with pytest.raises(DuplicateIdError) as exc:
            store.append(new_change(id="change_abc123", created_at=ts(5), tags={"v": "2"}))
        assert exc.value.event_id == "change_abc123"
        assert store.get_raw("change_abc123") == raw
        assert store.count() == 1

    def test_idempotent_retry_is_success(self, store):
        event = new_change(id="change_retry1", created_at=ts())
        first = store.append_idempotent(event)
        second = store.append_idempotent(event)
        assert second == first
        assert second.seq == first.seq
        assert store.count() == 1

    def test_idempotent_retry_with_different_content_conflicts(self, store):
        store.append_idempotent(new_change(id="change_retry1", created_at=ts()))
        with pytest.raises(DuplicateIdError):
            store.append_idempotent(new_change(id="change_retry1", created_at=ts(), tags={"x": "y"}))

    def test_generated_id_collision_regenerates(self, store, monkeypatch):
        store.append(new_change(id="change_taken", created_at=ts()))
        ids = iter(["change_taken", "change_fresh"])
        monkeypatch.setattr("dig.store.new_id", lambda event_type: next(ids))
        stored = store.append(new_change(created_at=ts()))
        assert stored.id == "change_fresh"

    def test_persistent_collision_raises(self, store, monkeypatch):
        store.append(new_change(id="change_taken", created_at=ts()))
        monkeypatch.setattr("dig.store.new_id", lambda event_type: "change_taken")
        with pytest.raises(IdentityCollisionError):
            store.append(new_change(created_at=ts()))
        assert store.count() == 1

    def test_concurrent_same_id_first_writer_wins(self, store):
        results = []

        def writer(tag):
            try:
                store.append(new_change(id="change_race", created_at=ts(), tags={"writer": tag}))
                results.append(("ok", tag))
            except DuplicateIdError:
                results.append(("dup", tag))

        threads = [threading.Thread(target=writer, args=(str(i),)) for i in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert sorted(r[0] for r in results) == ["dup", "dup", "dup", "ok"]
        winner = next(tag for status, tag in results if status == "ok")
        assert store.get("change_race").tags == {"writer": winner}


class TestBatch:

    def test_batch_isolates_failures(self, store):
        store.append(new_change(id="change_existing", created_at=ts()))
        result = store.append_batch([
            new_change(created_at=ts(1)),
            {"type": "change", "created_at": ts(2)},
            new_change(id="change_existing", created_at=ts(3)),
            {"type": "session", "id": "session_ok", "created_at": ts(4)},
        ])
        assert [e.event_type for e in result.accepted] == ["change", "session"]
        assert [(f.index, f.duplicate) for f in result.rejected] == [(1, False), (2, True)]
        assert "source_control" in result.rejected[0].error
        assert result.rejected[1].event_id == "change_existing"
        assert store.count() == 3

    def test_batch_rejects_non_events(self, store):
        result = store.append_batch([42, new_change(created_at=ts())])
        assert len(result.accepted) == 1
        [failure] = result.rejected
        assert (failure.index, failure.event_id) == (0, None)
        assert "expected an event" in failure.error

    def test_database_errors_are_typed(self, store, monkeypatch):
        def locked(event):
            raise sqlite3.OperationalError("database is locked")

        monkeypatch.setattr("dig.store.change_key", locked)
        with pytest.raises(StoreError, match="database is locked"):
            store.append(new_change(id="change_abc123", created_at=ts()))
        result = store.append_batch([new_change(created_at=ts())])
        assert result.accepted == []
        assert "locked" in result.rejected[0].error
        monkeypatch.undo()
        assert store.count() == 0

    def test_empty_batch(self, store):
        result = store.append_batch([])
        assert result.accepted == [] and result.rejected == []


class TestReads:

    def test_get_missing(self, store):
        with pytest.raises(NotFoundError) as exc:
            store.get("change_nope")
        assert isinstance(exc.value, LookupError)

    def test_exists_respects_snapshot(self, store):
        first = store.append(new_change(id="change_a", created_at=ts()))
        store.append(new_change(id="change_b", created_at=ts()))
        assert store.exists("change_b")
        assert not store.exists("change_b", max_seq=first.seq)

    def test_get_many_omits_missing(self, store):
        store.append(new_change(id="change_a", created_at=ts()))
        found = store.get_many(["change_a", "change_missing", "change_a"])
        assert list(found) == ["change_a"]

    def test_query_by_change_reference_direction(self, store):
        store.append(Outcome(
            id="outcome_xyz789", created_at=ts(30),
            change_id="change_abc123", rollout_id="rollout_def456",
            survival=Survival(survived=False, rolled_back=True),
        ))
        store.append(new_change(
            id="change_abc123", created_at=ts(),
            tags={"domain": "ml", "work_type": "refactoring"},
        ))
        results = store.query_by_change("change_abc123")
        assert [e.id for e in results] == ["change_abc123", "outcome_xyz789"]
        assert store.query_by_change("outcome_xyz789") == []

    def test_query_by_change_snapshot(self, store):
        change = store.append(new_change(id="change_a", created_at=ts()))
        store.append(Outcome(id="outcome_1", created_at=ts(5), change_id="change_a", rollout_id="rollout_1"))
        assert [e.id for e in store.query_by_change("change_a", max_seq=change.seq)] == ["change_a"]

    def test_referencing(self, store):
        store.append(Session(id="session_1", created_at=ts()))
        change = store.append(new_change(created_at=ts(5), session_ids=["session_1"]))
        assert store.referencing("session_1") == [change]
        assert store.referencing("session_unknown") == []

    def test_count_and_activity(self, store):
        store.append(Session(id="session_1", created_at=ts(10)))
        store.append(new_change(created_at=ts()))
        assert store.count() == 2
        assert store.count(EventType.SESSION) == 1
        assert store.count_by_type() == {"change": 1, "session": 1}
        assert store.last_activity() == ts(10)

    def test_meta(self, store):
        store.set_meta("k", "v1")
        store.set_meta("k", "v2")
        assert store.get_meta("k") == "v2"
        assert store.get_meta("missing") is None


class TestQueryByType:

    def test_ordered_by_created_at_across_offsets(self, store):
        store.append(new_change(id="change_late", created_at="2026-03-01T10:30:00+00:00"))
        store.append(new_change(id="change_early", created_at="2026-03-01T12:00:00+02:00"))
        assert [e.id for e in store.query_by_type(EventType.CHANGE)] == ["change_early", "change_late"]

    def test_lazy_and_restartable(self, store):
        for i in range(3):
            store.append(new_change(created_at=ts(i)))
        query = store.query_by_type(EventType.CHANGE)
        assert isinstance(query, EventQuery)
        assert len(list(query)) == 3
        store.append(new_change(created_at=ts(10)))
        assert len(list(query)) == 4

    def test_pages_through_results(self, store):
        for i in range(7):
            store.append(new_change(created_at=ts(i)))
        query = EventQuery(store, EventType.CHANGE, page_size=2)
        assert len({e.id for e in query}) == 7

    def test_snapshot_bound(self, store):
        first = store.append(new_change(created_at=ts()))
        store.append(new_change(created_at=ts(1)))
        results = list(store.query_by_type(EventType.CHANGE, EventFilter(max_seq=first.seq)))
        assert [e.id for e in results] == [first.id]

    def test_tag_filter_exact_and_list(self, store):
        store.append(new_change(id="change_ml", created_at=ts(), tags={"domain": "ml"}))
        store.append(new_change(id="change_both", created_at=ts(1), tags={"domain": ["ml", "web"]}))
        store.append(new_change(id="change_web", created_at=ts(2), tags={"domain": "web"}))
        results = store.query_by_type(EventType.CHANGE, EventFilter(tags={"domain": "ml"}))
        assert [e.id for e in results] == ["change_ml", "change_both"]

    def test_window_filter(self, store):
        for i in range(5):
            store.append(new_change(id=f"change_{i}", created_at=ts(i * 10)))
        window = TimeWindow(since=ts(10), until=ts(30))
        results = store.query_by_type(EventType.CHANGE, EventFilter(window=window))
        assert [e.id for e in results] == ["change_1", "change_2", "change_3"]

    def test_change_id_filter_and_limit(self, store):
        for i in range(3):
            store.append(Outcome(created_at=ts(i), change_id="change_a", rollout_id="rollout_1"))
        store.append(Outcome(created_at=ts(5), change_id="change_b", rollout_id="rollout_2"))
        results = list(store.query_by_type(
            EventType.OUTCOME, EventFilter(change_id="change_a", limit=2)))
        assert len(results) == 2
        assert all(e.change_id == "change_a" for e in results)

    def test_where_predicate(self, store):
        store.append(Outcome(created_at=ts(), change_id="change_a", rollout_id="rollout_1",
                             survival=Survival(survived=True)))
        store.append(Outcome(created_at=ts(1), change_id="change_a", rollout_id="rollout_1"))
        unlabeled = store.query_by_type(
            EventType.OUTCOME, EventFilter(where=lambda e: e.survival.survived is None))
        assert len(list(unlabeled)) == 1
