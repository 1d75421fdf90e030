"""
Repository pattern for data access.

The usage ledger is append-only: events are inserted and read, never
updated or deleted. Any storage engine that can filter by time range and
stream events can back the ledger; grouped sums are derived from that.
"""

import json
import logging
import sqlite3
import threading
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from math import fsum
from typing import Dict, Iterator, List, Optional, Sequence, Set, Tuple

from ..core.periods import bucket_label, utcnow
from ..core.subscriptions import Subscription
from .db import DEFAULT_DB_PATH, get_connection
from .models import GroupTotals, LedgerFilter, UsageEvent

logger = logging.getLogger(__name__)

GROUP_KEYS = frozenset({"provider", "endpoint", "path", "category", "success", "unrecognized"})

_TIMESTAMP_FORMAT = "%Y-%m-%dT%H:%M:%S.%f"


class ServiceUnavailable(RuntimeError):
    """Raised when the ledger store cannot be read or written."""


class LedgerStore(ABC):
    """Storage interface for the usage ledger.

    Implementations must provide appends and filtered, time-ordered event
    streams. ``sum_by`` is computed from the stream by default; engines with
    native grouped sums may override it.
    """

    @abstractmethod
    def append(self, event: UsageEvent) -> None:
        """Append an event to the ledger."""

    @abstractmethod
    def iter_events(
        self,
        filters: Optional[LedgerFilter] = None,
        newest_first: bool = False
    ) -> Iterator[UsageEvent]:
        """Stream matching events ordered by timestamp."""

    @abstractmethod
    def record_threshold(self, period_key: str, threshold: float) -> bool:
        """Persist a fired budget threshold.

        Returns:
            True if this call recorded it, False if it was already recorded
        """

    @abstractmethod
    def fired_thresholds(self, period_key: str) -> Set[float]:
        """Thresholds already fired in a period."""

    @abstractmethod
    def save_subscription(self, subscription: Subscription) -> None:
        """Insert or replace the subscription of a provider."""

    @abstractmethod
    def get_subscription(self, provider: str) -> Optional[Subscription]:
        """Subscription of a provider, if any."""

    @abstractmethod
    def list_subscriptions(self) -> List[Subscription]:
        """All subscriptions, ordered by provider."""

    def sum_by(
        self,
        group_keys: Sequence[str],
        filters: Optional[LedgerFilter] = None,
        time_bucket: Optional[str] = None
    ) -> List[GroupTotals]:
        """Grouped sums over matching events.

        Args:
            group_keys: Event attributes to group by (see GROUP_KEYS)
            filters: Optional event selection
            time_bucket: Optional "day", "week" or "month" bucketing

        Returns:
            One GroupTotals per (bucket, key), sorted by bucket then key.
            Costs are summed with fsum, so the result does not depend on
            the order events were appended in.
        """
        group_keys = tuple(group_keys)
        unknown = set(group_keys) - GROUP_KEYS
        if unknown:
            raise ValueError(f"Unknown group keys: {sorted(unknown)}")

        groups: Dict[Tuple, GroupTotals] = {}
        costs: Dict[Tuple, List[float]] = {}
        response_times: Dict[Tuple, List[float]] = {}
        for event in self.iter_events(filters):
            key = tuple(getattr(event, name) for name in group_keys)
            bucket = bucket_label(event.timestamp, time_bucket) if time_bucket else None
            slot = (bucket, key)
            totals = groups.get(slot)
            if totals is None:
                totals = groups[slot] = GroupTotals(key=key, bucket=bucket)
                costs[slot] = []
                response_times[slot] = []
            totals.count += 1
            totals.quantity += event.quantity
            totals.successes += 1 if event.success else 0
            costs[slot].append(event.cost)
            if event.response_time is not None:
                response_times[slot].append(event.response_time)

        for slot, totals in groups.items():
            totals.cost = fsum(costs[slot])
            totals.response_time_total = fsum(response_times[slot])
            totals.response_time_count = len(response_times[slot])

        return [groups[slot] for slot in sorted(groups, key=_slot_sort_key)]

    def total_cost(self, filters: Optional[LedgerFilter] = None) -> float:
        return fsum(event.cost for event in self.iter_events(filters))

    def count(self, filters: Optional[LedgerFilter] = None) -> int:
        return sum(1 for _ in self.iter_events(filters))


def _slot_sort_key(slot: Tuple) -> Tuple:
    bucket, key = slot
    return (bucket or "", tuple("" if value is None else str(value) for value in key))


class InMemoryLedgerStore(LedgerStore):
    """Process-local ledger.

    The lock guards only the list append and the snapshot taken by readers;
    iteration happens outside it.
    """

    def __init__(self, events: Optional[Sequence[UsageEvent]] = None):
        self._events: List[UsageEvent] = list(events or [])
        self._thresholds: Dict[str, Set[float]] = {}
        self._subscriptions: Dict[str, Subscription] = {}
        self._lock = threading.Lock()

    def append(self, event: UsageEvent) -> None:
        with self._lock:
            self._events.append(event)

    def iter_events(
        self,
        filters: Optional[LedgerFilter] = None,
        newest_first: bool = False
    ) -> Iterator[UsageEvent]:
        with self._lock:
            snapshot = list(self._events)
        # Stable sort keeps append order for equal timestamps.
        snapshot.sort(key=lambda e: e.timestamp, reverse=newest_first)
        for event in snapshot:
            if filters is None or filters.matches(event):
                yield event

    def record_threshold(self, period_key: str, threshold: float) -> bool:
        with self._lock:
            fired = self._thresholds.setdefault(period_key, set())
            if threshold in fired:
                return False
            fired.add(threshold)
            return True

    def fired_thresholds(self, period_key: str) -> Set[float]:
        with self._lock:
            return set(self._thresholds.get(period_key, set()))

    def save_subscription(self, subscription: Subscription) -> None:
        with self._lock:
            self._subscriptions[subscription.provider] = subscription

    def get_subscription(self, provider: str) -> Optional[Subscription]:
        with self._lock:
            return self._subscriptions.get(provider)

    def list_subscriptions(self) -> List[Subscription]:
        with self._lock:
            return [self._subscriptions[p] for p in sorted(self._subscriptions)]

    def __len__(self) -> int:
        with self._lock:
            return len(self._events)


def initialize_schema(db_path: str = DEFAULT_DB_PATH) -> None:
    """Create the ledger tables if they don't exist.

    ``usage_event`` is an append-only ledger of immutable events.
    No UPDATE or DELETE operations should ever be performed on it.

    Args:
        db_path: Path to SQLite database file
    """
    conn = get_connection(db_path)
    try:
        conn.execute("""
            CREATE TABLE IF NOT EXISTS usage_event (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                event_id TEXT NOT NULL UNIQUE,
                timestamp TEXT NOT NULL,
                provider TEXT NOT NULL,
                endpoint TEXT NOT NULL,
                quantity INTEGER NOT NULL,
                cost REAL NOT NULL,
                unit TEXT,
                category TEXT,
                method TEXT,
                path TEXT,
                status_code INTEGER,
                success INTEGER NOT NULL,
                response_time REAL,
                request_size INTEGER,
                response_size INTEGER,
                business_id TEXT,
                client_id TEXT,
                user_id TEXT,
                error TEXT,
                metadata TEXT NOT NULL DEFAULT '{}',
                unrecognized INTEGER NOT NULL DEFAULT 0
            )
        """)
        conn.execute(
            "CREATE INDEX IF NOT EXISTS idx_usage_event_time ON usage_event (timestamp)"
        )
        conn.execute(
            "CREATE INDEX IF NOT EXISTS idx_usage_event_provider_time "
            "ON usage_event (provider, timestamp)"
        )
        conn.execute("""
            CREATE TABLE IF NOT EXISTS budget_threshold (
                period TEXT NOT NULL,
                threshold REAL NOT NULL,
                fired_at TEXT NOT NULL,
                PRIMARY KEY (period, threshold)
            )
        """)
        conn.execute("""
            CREATE TABLE IF NOT EXISTS subscription (
                provider TEXT PRIMARY KEY,
                data TEXT NOT NULL
            )
        """)
        conn.commit()
    finally:
        conn.close()


_EVENT_COLUMNS = (
    "event_id", "timestamp", "provider", "endpoint", "quantity", "cost",
    "unit", "category", "method", "path", "status_code", "success",
    "response_time", "request_size", "response_size", "business_id",
    "client_id", "user_id", "error", "metadata", "unrecognized",
)


def _format_timestamp(value: datetime) -> str:
    return value.astimezone(timezone.utc).strftime(_TIMESTAMP_FORMAT)


def _parse_timestamp(value: str) -> datetime:
    return datetime.strptime(value, _TIMESTAMP_FORMAT).replace(tzinfo=timezone.utc)


def _event_to_row(event: UsageEvent) -> Tuple:
    return (
        event.event_id,
        _format_timestamp(event.timestamp),
        event.provider,
        event.endpoint,
        event.quantity,
        event.cost,
        event.unit,
        event.category,
        event.method,
        event.path,
        event.status_code,
        int(event.success),
        event.response_time,
        event.request_size,
        event.response_size,
        event.business_id,
        event.client_id,
        event.user_id,
        event.error,
        json.dumps(event.metadata, sort_keys=True, default=str),
        int(event.unrecognized),
    )


def _row_to_event(row: Sequence) -> UsageEvent:
    return UsageEvent(
        event_id=row[0],
        timestamp=_parse_timestamp(row[1]),
        provider=row[2],
        endpoint=row[3],
        quantity=row[4],
        cost=row[5],
        unit=row[6],
        category=row[7],
        method=row[8],
        path=row[9],
        status_code=row[10],
        success=bool(row[11]),
        response_time=row[12],
        request_size=row[13],
        response_size=row[14],
        business_id=row[15],
        client_id=row[16],
        user_id=row[17],
        error=row[18],
        metadata=json.loads(row[19] or "{}"),
        unrecognized=bool(row[20]),
    )


class SQLiteLedgerStore(LedgerStore):
    """Ledger persisted in a SQLite database.

    Each operation opens its own connection, so the store can be shared by
    collector threads. Failures surface as ServiceUnavailable.
    """

    def __init__(self, db_path: str = DEFAULT_DB_PATH, initialize: bool = True):
        """Initialize the store with a database path.

        Args:
            db_path: Path to SQLite database file
            initialize: Create the schema if missing
        """
        self.db_path = db_path
        if initialize:
            try:
                initialize_schema(db_path)
            except sqlite3.Error as e:
                raise ServiceUnavailable(f"Cannot initialize ledger at {db_path}: {e}") from e
            logger.debug("Ledger ready at %s", db_path)

    def append(self, event: UsageEvent) -> None:
        placeholders = ", ".join("?" for _ in _EVENT_COLUMNS)
        try:
            conn = get_connection(self.db_path)
            try:
                conn.execute(
                    f"INSERT INTO usage_event ({', '.join(_EVENT_COLUMNS)}) VALUES ({placeholders})",
                    _event_to_row(event)
                )
                conn.commit()
            finally:
                conn.close()
        except sqlite3.Error as e:
            raise ServiceUnavailable(f"Ledger write failed: {e}") from e

    def append_many(self, events: Sequence[UsageEvent]) -> None:
        """Insert multiple events atomically."""
        if not events:
            return
        placeholders = ", ".join("?" for _ in _EVENT_COLUMNS)
        try:
            conn = get_connection(self.db_path)
            try:
                conn.execute("BEGIN TRANSACTION")
                conn.executemany(
                    f"INSERT INTO usage_event ({', '.join(_EVENT_COLUMNS)}) VALUES ({placeholders})",
                    [_event_to_row(event) for event in events]
                )
                conn.commit()
                logger.debug("Appended %d usage events", len(events))
            except Exception:
                conn.rollback()
                raise
            finally:
                conn.close()
        except sqlite3.Error as e:
            raise ServiceUnavailable(f"Ledger write failed: {e}") from e

    def iter_events(
        self,
        filters: Optional[LedgerFilter] = None,
        newest_first: bool = False
    ) -> Iterator[UsageEvent]:
        query = f"SELECT {', '.join(_EVENT_COLUMNS)} FROM usage_event"
        conditions = []
        params: List = []
        if filters is not None:
            if filters.provider is not None:
                conditions.append("provider = ?")
                params.append(filters.provider)
            if filters.providers is not None:
                if not filters.providers:
                    return
                conditions.append(
                    f"provider IN ({', '.join('?' for _ in filters.providers)})"
                )
                params.extend(filters.providers)
            if filters.start is not None:
                conditions.append("timestamp >= ?")
                params.append(_format_timestamp(filters.start))
            if filters.end is not None:
                conditions.append("timestamp < ?")
                params.append(_format_timestamp(filters.end))
        if conditions:
            query += " WHERE " + " AND ".join(conditions)
        order = "DESC" if newest_first else "ASC"
        query += f" ORDER BY timestamp {order}, id {order}"

        try:
            conn = get_connection(self.db_path)
        except sqlite3.Error as e:
            raise ServiceUnavailable(f"Ledger unavailable: {e}") from e
        try:
            cursor = conn.execute(query, params)
            for row in cursor:
                yield _row_to_event(row)
        except sqlite3.Error as e:
            raise ServiceUnavailable(f"Ledger query failed: {e}") from e
        finally:
            conn.close()

    def record_threshold(self, period_key: str, threshold: float) -> bool:
        try:
            conn = get_connection(self.db_path)
            try:
                cursor = conn.execute(
                    "INSERT OR IGNORE INTO budget_threshold (period, threshold, fired_at) "
                    "VALUES (?, ?, ?)",
                    (period_key, float(threshold), _format_timestamp(utcnow()))
                )
                conn.commit()
                return cursor.rowcount == 1
            finally:
                conn.close()
        except sqlite3.Error as e:
            raise ServiceUnavailable(f"Threshold write failed: {e}") from e

    def fired_thresholds(self, period_key: str) -> Set[float]:
        try:
            conn = get_connection(self.db_path)
            try:
                cursor = conn.execute(
                    "SELECT threshold FROM budget_threshold WHERE period = ?",
                    (period_key,)
                )
                return {row[0] for row in cursor.fetchall()}
            finally:
                conn.close()
        except sqlite3.Error as e:
            raise ServiceUnavailable(f"Ledger query failed: {e}") from e

    def save_subscription(self, subscription: Subscription) -> None:
        try:
            conn = get_connection(self.db_path)
            try:
                conn.execute(
                    "INSERT OR REPLACE INTO subscription (provider, data) VALUES (?, ?)",
                    (subscription.provider, json.dumps(subscription.to_dict(), sort_keys=True))
                )
                conn.commit()
            finally:
                conn.close()
        except sqlite3.Error as e:
            raise ServiceUnavailable(f"Subscription write failed: {e}") from e

    def get_subscription(self, provider: str) -> Optional[Subscription]:
        rows = self._query_subscriptions("SELECT data FROM subscription WHERE provider = ?", (provider,))
        return rows[0] if rows else None

    def list_subscriptions(self) -> List[Subscription]:
        return self._query_subscriptions("SELECT data FROM subscription ORDER BY provider", ())

    def _query_subscriptions(self, query: str, params: Tuple) -> List[Subscription]:
        try:
            conn = get_connection(self.db_path)
            try:
                cursor = conn.execute(query, params)
                return [Subscription.from_dict(json.loads(row[0])) for row in cursor.fetchall()]
            finally:
                conn.close()
        except sqlite3.Error as e:
            raise ServiceUnavailable(f"Ledger query failed: {e}") from e
