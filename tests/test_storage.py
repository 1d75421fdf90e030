"""
Unit tests for storage layer.

Tests schema creation, event persistence, grouped sums, the
fired-threshold log and failure reporting for both ledger stores.
"""

import os
import tempfile
from datetime import datetime, timezone

import pytest

from api_cost_tracker.storage.db import get_connection
from api_cost_tracker.storage.models import LedgerFilter, UsageEvent
from api_cost_tracker.storage.repository import (
    InMemoryLedgerStore,
    ServiceUnavailable,
    SQLiteLedgerStore,
    initialize_schema,
)


UTC = timezone.utc


def _event(event_id, timestamp, provider="acme", endpoint="search", cost=1.0, **kwargs):
    return UsageEvent(
        event_id=event_id,
        timestamp=timestamp,
        provider=provider,
        endpoint=endpoint,
        quantity=kwargs.pop("quantity", 1),
        cost=cost,
        **kwargs
    )


@pytest.fixture(params=["memory", "sqlite"])
def store(request):
    if request.param == "memory":
        yield InMemoryLedgerStore()
    else:
        with tempfile.TemporaryDirectory() as temp_dir:
            yield SQLiteLedgerStore(os.path.join(temp_dir, "test.db"))


class TestStorageSchema:
    """Test database schema creation and structure."""

    def test_schema_creation(self):
        """Verify tables are created correctly."""
        with tempfile.TemporaryDirectory() as temp_dir:
            db_path = os.path.join(temp_dir, "test.db")
            initialize_schema(db_path)

            conn = get_connection(db_path)
            try:
                cursor = conn.execute(
                    "SELECT name FROM sqlite_master WHERE type='table' ORDER BY name"
                )
                tables = [row[0] for row in cursor.fetchall()]
                assert "usage_event" in tables
                assert "budget_threshold" in tables
                assert "subscription" in tables
            finally:
                conn.close()

    def test_schema_creation_is_idempotent(self):
        with tempfile.TemporaryDirectory() as temp_dir:
            db_path = os.path.join(temp_dir, "test.db")
            initialize_schema(db_path)
            initialize_schema(db_path)


class TestLedgerStores:
    """Behavior shared by the in-memory and SQLite ledgers."""

    def test_round_trip_preserves_fields(self, store):
        event = _event(
            "e1",
            datetime(2024, 6, 1, 12, 30, 15, 123456, tzinfo=UTC),
            cost=0.75,
            quantity=1000,
            status_code=200,
            response_time=321.5,
            metadata={"test": True},
            business_id="biz-1",
        )
        store.append(event)

        [stored] = list(store.iter_events())
        assert stored == event

    def test_filters_are_half_open(self, store):
        store.append(_event("a", datetime(2024, 5, 31, 23, 59, tzinfo=UTC)))
        store.append(_event("b", datetime(2024, 6, 1, tzinfo=UTC)))
        store.append(_event("c", datetime(2024, 7, 1, tzinfo=UTC)))

        filters = LedgerFilter(
            start=datetime(2024, 6, 1, tzinfo=UTC),
            end=datetime(2024, 7, 1, tzinfo=UTC),
        )
        assert [e.event_id for e in store.iter_events(filters)] == ["b"]

    def test_provider_filters(self, store):
        store.append(_event("a", datetime(2024, 6, 1, tzinfo=UTC), provider="acme"))
        store.append(_event("b", datetime(2024, 6, 2, tzinfo=UTC), provider="google"))
        store.append(_event("c", datetime(2024, 6, 3, tzinfo=UTC), provider="facebook"))

        assert [e.event_id for e in store.iter_events(LedgerFilter(provider="google"))] == ["b"]
        selected = store.iter_events(LedgerFilter(providers=("acme", "facebook")))
        assert [e.event_id for e in selected] == ["a", "c"]

    def test_newest_first(self, store):
        for i, day in enumerate([3, 1, 2]):
            store.append(_event(f"e{i}", datetime(2024, 6, day, tzinfo=UTC)))
        timestamps = [e.timestamp.day for e in store.iter_events(newest_first=True)]
        assert timestamps == [3, 2, 1]

    def test_sum_by_groups_and_sorts(self, store):
        store.append(_event("a", datetime(2024, 6, 1, tzinfo=UTC), endpoint="search", cost=0.1))
        store.append(_event("b", datetime(2024, 6, 1, tzinfo=UTC), endpoint="search", cost=0.2,
                            success=False, response_time=100.0))
        store.append(_event("c", datetime(2024, 6, 2, tzinfo=UTC), endpoint="bulk", cost=5.0,
                            response_time=300.0))

        totals = store.sum_by(("provider", "endpoint"))
        assert [t.key for t in totals] == [("acme", "bulk"), ("acme", "search")]
        search = totals[1]
        assert search.count == 2
        assert search.cost == pytest.approx(0.3)
        assert search.success_rate == 0.5
        assert search.avg_response_time == 100.0

    def test_sum_by_time_bucket(self, store):
        store.append(_event("a", datetime(2024, 6, 1, tzinfo=UTC)))
        store.append(_event("b", datetime(2024, 6, 2, tzinfo=UTC)))
        store.append(_event("c", datetime(2024, 6, 2, 18, tzinfo=UTC)))

        totals = store.sum_by(("provider",), time_bucket="day")
        assert [(t.bucket, t.count) for t in totals] == [("2024-06-01", 1), ("2024-06-02", 2)]

    def test_sum_by_rejects_unknown_keys(self, store):
        with pytest.raises(ValueError, match="Unknown group keys"):
            store.sum_by(("feature",))

    def test_threshold_log_claims_once(self, store):
        assert store.record_threshold("2024-06", 50.0) is True
        assert store.record_threshold("2024-06", 50.0) is False
        assert store.record_threshold("2024-07", 50.0) is True
        assert store.fired_thresholds("2024-06") == {50.0}

    def test_total_cost_and_count(self, store):
        for i in range(10):
            store.append(_event(f"e{i}", datetime(2024, 6, 1, tzinfo=UTC), cost=0.1))
        assert store.total_cost() == 1.0
        assert store.count() == 10


class TestSQLiteLedgerStore:
    """SQLite-specific behavior."""

    def test_events_survive_reopen(self):
        with tempfile.TemporaryDirectory() as temp_dir:
            db_path = os.path.join(temp_dir, "test.db")
            SQLiteLedgerStore(db_path).append(_event("e1", datetime(2024, 6, 1, tzinfo=UTC)))
            assert SQLiteLedgerStore(db_path).count() == 1

    def test_append_many(self):
        with tempfile.TemporaryDirectory() as temp_dir:
            store = SQLiteLedgerStore(os.path.join(temp_dir, "test.db"))
            store.append_many([
                _event(f"e{i}", datetime(2024, 6, 1, tzinfo=UTC)) for i in range(5)
            ])
            assert store.count() == 5

    def test_append_many_is_atomic(self):
        with tempfile.TemporaryDirectory() as temp_dir:
            store = SQLiteLedgerStore(os.path.join(temp_dir, "test.db"))
            duplicate = _event("same", datetime(2024, 6, 1, tzinfo=UTC))
            with pytest.raises(ServiceUnavailable):
                store.append_many([duplicate, duplicate])
            assert store.count() == 0

    def test_missing_schema_is_service_unavailable(self):
        with tempfile.TemporaryDirectory() as temp_dir:
            store = SQLiteLedgerStore(os.path.join(temp_dir, "empty.db"), initialize=False)
            with pytest.raises(ServiceUnavailable):
                list(store.iter_events())
