"""Tests for the SQLite store."""

import pytest

from tabtime.db import SQLiteStore
from tabtime.models import AccumulationDelta, Event, EventType


def make_event(
    *,
    timestamp: int = 1_737_763_200_000,
    event_type: str = "open_time_start",
    visit_id: str = "visit-1",
    activity_id: str | None = None,
    url: str = "https://example.com/",
    resolution: str | None = None,
) -> Event:
    """Helper to create an Event for testing."""
    return Event(
        timestamp=timestamp,
        event_type=event_type,
        tab_id=7,
        url=url,
        visit_id=visit_id,
        activity_id=activity_id,
        resolution=resolution,
    )


def make_delta(host: str, *, open_ms: int = 0, active_ms: int = 0) -> AccumulationDelta:
    return AccumulationDelta(
        date="2025-01-25",
        url=f"https://{host}/",
        hostname=host,
        parent_domain=host,
        open_time_to_add=open_ms,
        active_time_to_add=active_ms,
    )


class TestEvents:
    """Tests for the event log."""

    def test_insert_assigns_increasing_ids(self):
        """Verify IDs are assigned in insertion order."""
        store = SQLiteStore.open_in_memory()
        first = store.insert_event(make_event())
        second = store.insert_event(make_event())
        assert second > first

    def test_round_trip_fields(self):
        """Insert and retrieve a single event with every optional field."""
        store = SQLiteStore.open_in_memory()
        store.insert_event(
            make_event(event_type="checkpoint", activity_id="act", resolution="crash_recovery")
        )

        (event,) = store.fetch_unprocessed_events()

        assert event.event_type is EventType.CHECKPOINT
        assert event.activity_id == "act"
        assert event.resolution == "crash_recovery"
        assert event.tab_id == 7
        assert event.is_processed is False

    def test_insert_ignores_incoming_processed_flag(self):
        """New events always start unprocessed."""
        store = SQLiteStore.open_in_memory()
        event = make_event()
        event.is_processed = True
        store.insert_event(event)

        assert len(store.fetch_unprocessed_events()) == 1

    def test_fetch_unprocessed_in_id_order(self):
        """Unprocessed events come back in insertion order, not timestamp order."""
        store = SQLiteStore.open_in_memory()
        store.insert_event(make_event(timestamp=300))
        store.insert_event(make_event(timestamp=100))

        events = store.fetch_unprocessed_events()

        assert [e.timestamp for e in events] == [300, 100]

    def test_mark_processed(self):
        """Marking returns the rows changed and is idempotent."""
        store = SQLiteStore.open_in_memory()
        ids = [store.insert_event(make_event()) for _ in range(3)]

        assert store.mark_processed(ids[:2]) == 2
        assert store.mark_processed(ids[:2]) == 0  # already processed
        assert [e.id for e in store.fetch_unprocessed_events()] == [ids[2]]

    def test_mark_processed_batches_large_id_lists(self):
        """ID lists past the parameter limit are split into batches."""
        store = SQLiteStore.open_in_memory()
        ids = [store.insert_event(make_event()) for _ in range(1200)]

        assert store.mark_processed(ids) == 1200
        assert store.fetch_unprocessed_events() == []

    def test_mark_processed_empty_list(self):
        assert SQLiteStore.open_in_memory().mark_processed([]) == 0

    def test_processed_events_older_than(self):
        """Only processed events strictly before the cutoff are returned."""
        store = SQLiteStore.open_in_memory()
        old = store.insert_event(make_event(timestamp=100))
        store.insert_event(make_event(timestamp=100))  # unprocessed
        newer = store.insert_event(make_event(timestamp=500))
        store.mark_processed([old, newer])

        events = store.get_processed_events_older_than(500)

        assert [e.id for e in events] == [old]

    def test_delete_events_by_ids(self):
        """Unknown IDs are ignored when deleting."""
        store = SQLiteStore.open_in_memory()
        ids = [store.insert_event(make_event()) for _ in range(3)]

        assert store.delete_events_by_ids([ids[0], ids[2], 999]) == 2
        assert [e.id for e in store.get_events()] == [ids[1]]

    def test_get_events_filters(self):
        """Filter events by visit and processed flag."""
        store = SQLiteStore.open_in_memory()
        a = store.insert_event(make_event(visit_id="a"))
        store.insert_event(make_event(visit_id="b"))
        store.mark_processed([a])

        assert [e.visit_id for e in store.get_events(visit_id="b")] == ["b"]
        assert [e.id for e in store.get_events(processed=True)] == [a]
        assert len(store.get_events(limit=1)) == 1


class TestAccumulations:
    """Tests for upsert_accumulation."""

    def test_creates_record(self):
        """Verify the first upsert creates the record with its domain fields."""
        store = SQLiteStore.open_in_memory()

        key = store.upsert_accumulation(
            "2025-01-25", "https://a.example.com/", "a.example.com", "example.com", 1000, 500
        )

        assert key == "2025-01-25:https://a.example.com/"
        (record,) = store.get_stats()
        assert record["key"] == key
        assert record["hostname"] == "a.example.com"
        assert record["parent_domain"] == "example.com"
        assert record["total_open_time"] == 1000
        assert record["total_active_time"] == 500
        assert record["last_updated"] > 0

    def test_updates_by_addition(self):
        """Later upserts add to the totals instead of replacing them."""
        store = SQLiteStore.open_in_memory()
        args = ("2025-01-25", "https://example.com/", "example.com", "example.com")

        store.upsert_accumulation(*args, 1000, 0)
        store.upsert_accumulation(*args, 250, 40)

        (record,) = store.get_stats()
        assert record["total_open_time"] == 1250
        assert record["total_active_time"] == 40

    def test_rejects_negative_deltas(self):
        """Negative deltas raise and write nothing."""
        store = SQLiteStore.open_in_memory()
        with pytest.raises(ValueError):
            store.upsert_accumulation("2025-01-25", "https://e.com/", "e.com", "e.com", -1, 0)
        assert store.get_stats() == []

    def test_stats_by_date(self):
        """Filter accumulation records by UTC date."""
        store = SQLiteStore.open_in_memory()
        store.upsert_accumulation("2025-01-25", "https://e.com/", "e.com", "e.com", 1, 0)
        store.upsert_accumulation("2025-01-26", "https://e.com/", "e.com", "e.com", 2, 0)

        assert [r["total_open_time"] for r in store.get_stats(date="2025-01-26")] == [2]

    def test_domain_totals(self):
        """Records are summed per parent domain, busiest first."""
        store = SQLiteStore.open_in_memory()
        store.upsert_accumulation("2025-01-25", "https://a.example.com/", "a.example.com", "example.com", 100, 10)
        store.upsert_accumulation("2025-01-25", "https://example.com/x", "example.com", "example.com", 200, 20)
        store.upsert_accumulation("2025-01-25", "https://other.org/", "other.org", "other.org", 50, 0)

        totals = store.get_domain_totals(date="2025-01-25")

        assert totals == [
            {"parent_domain": "example.com", "open_ms": 300, "active_ms": 30, "url_count": 2},
            {"parent_domain": "other.org", "open_ms": 50, "active_ms": 0, "url_count": 1},
        ]


    def test_commit_aggregation_applies_upserts_and_marks(self):
        """Upserts and processed flags from one run are committed together."""
        store = SQLiteStore.open_in_memory()
        ids = [store.insert_event(make_event()) for _ in range(2)]
        deltas = [make_delta("a.com", open_ms=100), make_delta("b.com", active_ms=50)]

        assert store.commit_aggregation(deltas, ids) == 2

        rows = [(r["url"], r["total_open_time"], r["total_active_time"]) for r in store.get_stats()]
        assert rows == [("https://a.com/", 100, 0), ("https://b.com/", 0, 50)]
        assert store.fetch_unprocessed_events() == []

    def test_commit_aggregation_is_all_or_nothing(self):
        """A failing delta undoes the deltas before it and leaves events unprocessed."""
        store = SQLiteStore.open_in_memory()
        ids = [store.insert_event(make_event()) for _ in range(2)]
        deltas = [make_delta("a.com", open_ms=100), make_delta("b.com", open_ms=-1)]

        with pytest.raises(ValueError):
            store.commit_aggregation(deltas, ids)

        assert store.get_stats() == []
        assert len(store.fetch_unprocessed_events()) == 2


class TestKeyValue:
    """Tests for the key-value table."""

    def test_get_missing(self):
        assert SQLiteStore.open_in_memory().get("nope") is None

    def test_set_get_overwrite(self):
        """Setting an existing key replaces its value."""
        store = SQLiteStore.open_in_memory()
        store.set("sync:scheduler_period", 15)
        store.set("sync:scheduler_period", 30)
        assert store.get("sync:scheduler_period") == 30

    def test_structured_values(self):
        """Dicts survive the JSON round trip."""
        store = SQLiteStore.open_in_memory()
        store.set("local:aggregation_lock", {"timestamp": 123})
        assert store.get("local:aggregation_lock") == {"timestamp": 123}

    def test_delete(self):
        """Delete reports whether the key existed."""
        store = SQLiteStore.open_in_memory()
        store.set("k", 1)
        assert store.delete("k") is True
        assert store.delete("k") is False
        assert store.get("k") is None


class TestFileDatabase:
    """Tests for on-disk databases."""

    def test_data_persists_across_opens(self, tmp_path):
        """Events and settings survive reopening the file."""
        db_path = tmp_path / "events.db"
        with SQLiteStore.open(db_path) as store:
            store.insert_event(make_event())
            store.set("sync:pruner_retention_days", 7)

        with SQLiteStore.open(db_path) as store:
            assert len(store.fetch_unprocessed_events()) == 1
            assert store.get("sync:pruner_retention_days") == 7
