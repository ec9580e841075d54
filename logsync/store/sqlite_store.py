"""SQLite-backed log store.

Each event is one row keyed by ``(owner, log, id)``. Rows are never updated;
they are only inserted by :meth:`SQLiteLogStore.put` / :meth:`append` and
removed by retention (:meth:`clean`, :meth:`set_lowest_id`).
"""

import json
import logging
import sqlite3
import threading
import time as _time
import weakref
from collections import defaultdict
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Iterator

from ..errors import InconsistentLogError, StorageError
from ..feedback import Descriptor, Event, LowestID, codec
from ..ranges import SortedRangeSet
from .base import LogStore

logger = logging.getLogger(__name__)

# Owners are stored codec-encoded so that a None owner gets a key of its own
SCHEMA = """
-- Events: append-only, one row per (owner, log, id)
CREATE TABLE IF NOT EXISTS events (
    owner_key TEXT NOT NULL,
    log_id INTEGER NOT NULL,
    id INTEGER NOT NULL,
    time INTEGER NOT NULL,
    type INTEGER NOT NULL,
    properties TEXT NOT NULL,
    stored_at TEXT NOT NULL,
    PRIMARY KEY (owner_key, log_id, id)
);

-- Retention floor per log
CREATE TABLE IF NOT EXISTS lowest_ids (
    owner_key TEXT NOT NULL,
    log_id INTEGER NOT NULL,
    lowest_id INTEGER NOT NULL,
    PRIMARY KEY (owner_key, log_id)
);
"""

# Islands of consecutive ids, one row per range
RANGES_QUERY = """
SELECT MIN(id) AS low, MAX(id) AS high
FROM (
    SELECT id, id - ROW_NUMBER() OVER (ORDER BY id) AS grp
    FROM events
    WHERE owner_key = ? AND log_id = ? AND id >= ?
)
GROUP BY grp
ORDER BY low
"""


class SQLiteLogStore(LogStore):
    """Log store persisting events in a single SQLite database."""

    def __init__(
        self,
        db_path: str | Path,
        max_events: int = 0,
        lock_timeout: float = 10.0,
    ):
        """Initialize the store.

        Args:
            db_path: Path to SQLite database file, or ":memory:".
            max_events: Events kept per log by :meth:`clean` (0 keeps all).
            lock_timeout: Seconds to wait for a per-log lock.
        """
        self.db_path = Path(db_path).expanduser()
        self.max_events = max_events
        self.lock_timeout = lock_timeout
        self._conn: sqlite3.Connection | None = None
        self._conn_lock = threading.RLock()
        # Entries live only while some thread holds or waits for the lock
        self._log_locks: weakref.WeakValueDictionary[tuple[str, int], threading.Lock] = (
            weakref.WeakValueDictionary()
        )
        self._log_locks_guard = threading.Lock()

    def connect(self) -> None:
        """Initialize database connection and schema."""
        try:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
            self._conn = sqlite3.connect(str(self.db_path), check_same_thread=False)
            self._conn.row_factory = sqlite3.Row
            self._conn.executescript(SCHEMA)
            self._conn.commit()
        except (OSError, sqlite3.Error) as e:
            raise StorageError(f"Unable to open log store {self.db_path}: {e}") from e

        logger.info(f"SQLiteLogStore connected to {self.db_path}")

    def close(self) -> None:
        """Close database connection."""
        with self._conn_lock:
            if self._conn:
                self._conn.close()
                self._conn = None

    def _ensure_connected(self) -> sqlite3.Connection:
        if self._conn is None:
            self.connect()
        return self._conn

    @contextmanager
    def _db(self) -> Iterator[sqlite3.Connection]:
        """Serialize connection use and turn SQLite errors into StorageError."""
        with self._conn_lock:
            conn = self._ensure_connected()
            try:
                yield conn
            except sqlite3.Error as e:
                conn.rollback()
                raise StorageError(f"Log store failure: {e}") from e

    @contextmanager
    def _lock_log(self, key: str, log_id: int) -> Iterator[None]:
        with self._log_locks_guard:
            lock = self._log_locks.setdefault((key, log_id), threading.Lock())
        if not lock.acquire(timeout=self.lock_timeout):
            raise StorageError(
                f"Could not obtain a lock for log {log_id} of {codec.decode(key)!r}"
            )
        try:
            yield
        finally:
            lock.release()

    @staticmethod
    def _lowest(conn: sqlite3.Connection, key: str, log_id: int) -> int:
        row = conn.execute(
            "SELECT lowest_id FROM lowest_ids WHERE owner_key = ? AND log_id = ?",
            (key, log_id),
        ).fetchone()
        return row[0] if row else 0

    @staticmethod
    def _raise_lowest(
        conn: sqlite3.Connection, key: str, log_id: int, lowest_id: int
    ) -> int | None:
        """Record a higher floor and drop the events below it. Caller commits.

        Returns:
            Number of events dropped, or None if the floor was not raised.
        """
        if lowest_id <= SQLiteLogStore._lowest(conn, key, log_id):
            return None
        conn.execute(
            "INSERT OR REPLACE INTO lowest_ids (owner_key, log_id, lowest_id) "
            "VALUES (?, ?, ?)",
            (key, log_id, lowest_id),
        )
        cursor = conn.execute(
            "DELETE FROM events WHERE owner_key = ? AND log_id = ? AND id < ?",
            (key, log_id, lowest_id),
        )
        return cursor.rowcount

    @staticmethod
    def _insert(conn: sqlite3.Connection, key: str, event: Event) -> None:
        conn.execute(
            """
            INSERT INTO events (
                owner_key, log_id, id, time, type, properties, stored_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (
                key,
                event.log_id,
                event.id,
                event.time,
                event.type,
                json.dumps(event.properties),
                _time.strftime("%Y-%m-%dT%H:%M:%S"),
            ),
        )

    # ==================== Descriptors ====================

    def get_log_ids(self, owner_id: str | None) -> list[int]:
        """Return the ids of all logs holding events of ``owner_id``."""
        with self._db() as conn:
            rows = conn.execute(
                "SELECT DISTINCT log_id FROM events WHERE owner_key = ? ORDER BY log_id",
                (codec.encode(owner_id),),
            ).fetchall()
        return [row[0] for row in rows]

    def find_descriptor(self, owner_id: str | None, log_id: int) -> Descriptor | None:
        key = codec.encode(owner_id)
        with self._db() as conn:
            lowest = self._lowest(conn, key, log_id)
            rows = conn.execute(RANGES_QUERY, (key, log_id, lowest)).fetchall()

        if not rows:
            return None
        return Descriptor(
            owner_id,
            log_id,
            SortedRangeSet((row["low"], row["high"]) for row in rows),
        )

    def get_descriptors(self, owner_id: str | None = None) -> list[Descriptor]:
        with self._db() as conn:
            if owner_id is None:
                rows = conn.execute(
                    "SELECT DISTINCT owner_key, log_id FROM events "
                    "ORDER BY owner_key, log_id"
                ).fetchall()
            else:
                rows = conn.execute(
                    "SELECT DISTINCT owner_key, log_id FROM events "
                    "WHERE owner_key = ? ORDER BY log_id",
                    (codec.encode(owner_id),),
                ).fetchall()

        result = []
        for row in rows:
            descriptor = self.find_descriptor(codec.decode(row["owner_key"]), row["log_id"])
            if descriptor is not None:
                result.append(descriptor)
        return result

    # ==================== Events ====================

    def get(self, descriptor: Descriptor) -> list[Event]:
        key = codec.encode(descriptor.owner_id)
        events = []
        with self._db() as conn:
            lowest = self._lowest(conn, key, descriptor.log_id)
            for r in descriptor.range_set.ranges():
                low = max(r.low, lowest)
                if low > r.high:
                    continue
                cursor = conn.execute(
                    """
                    SELECT id, time, type, properties
                    FROM events
                    WHERE owner_key = ? AND log_id = ? AND id BETWEEN ? AND ?
                    ORDER BY id
                    """,
                    (key, descriptor.log_id, low, r.high),
                )
                for row in cursor:
                    events.append(
                        Event(
                            owner_id=descriptor.owner_id,
                            log_id=descriptor.log_id,
                            id=row["id"],
                            time=row["time"],
                            type=row["type"],
                            properties=json.loads(row["properties"]),
                        )
                    )
        return events

    def put(self, events: list[Event]) -> int:
        """Store events that already carry their ids.

        Events are grouped per log and written in ascending id order, one
        commit per event. Re-sending an event that is already stored is a
        no-op. An event that reuses a stored id with different content is
        rejected; the rest of the list is still written, after which
        InconsistentLogError reports the rejected events.

        Returns:
            Number of new events stored.
        """
        groups: dict[tuple[str, int], list[Event]] = defaultdict(list)
        for event in events:
            groups[(codec.encode(event.owner_id), event.log_id)].append(event)

        added = 0
        rejected: list[Event] = []
        for (key, log_id), group in groups.items():
            group.sort(key=lambda e: e.id)
            with self._lock_log(key, log_id):
                group_added, group_rejected = self._put_group(key, log_id, group)
            added += group_added
            rejected.extend(group_rejected)

        if added:
            logger.debug(f"Stored {added} new event(s) in {len(groups)} log(s)")
        if rejected:
            raise InconsistentLogError(
                f"Rejected {len(rejected)} conflicting event(s), stored {added}",
                rejected,
            )
        return added

    def _put_group(
        self, key: str, log_id: int, group: list[Event]
    ) -> tuple[int, list[Event]]:
        added = 0
        rejected = []
        with self._db() as conn:
            lowest = self._lowest(conn, key, log_id)
            for event in group:
                if event.id < 1:
                    logger.warning(f"Rejecting event with invalid id {event.key}")
                    rejected.append(event)
                    continue
                if event.id < lowest:
                    # purged by retention, do not resurrect it
                    continue

                row = conn.execute(
                    "SELECT time, type, properties FROM events "
                    "WHERE owner_key = ? AND log_id = ? AND id = ?",
                    (key, log_id, event.id),
                ).fetchone()
                if row is not None:
                    stored = (row["time"], row["type"], json.loads(row["properties"]))
                    if stored != (event.time, event.type, event.properties):
                        logger.warning(f"Rejecting conflicting duplicate of {event.key}")
                        rejected.append(event)
                    continue

                self._insert(conn, key, event)
                conn.commit()
                added += 1
        return added, rejected

    def append(
        self,
        owner_id: str,
        event_type: int,
        properties: dict[str, str] | None = None,
        log_id: int | None = None,
        time: int | None = None,
    ) -> Event:
        """Record a new event with the next id of its log.

        Args:
            owner_id: Owner (target) of the log.
            event_type: Application-defined event type.
            properties: String key/value payload.
            log_id: Log to append to. Defaults to the owner's newest log, or
                a new log numbered by the current time in milliseconds.
            time: Event time in milliseconds, defaults to now.

        Returns:
            The stored Event.
        """
        now = int(_time.time() * 1000)
        if log_id is None:
            log_ids = self.get_log_ids(owner_id)
            log_id = log_ids[-1] if log_ids else now

        key = codec.encode(owner_id)
        with self._lock_log(key, log_id):
            with self._db() as conn:
                row = conn.execute(
                    "SELECT MAX(id) FROM events WHERE owner_key = ? AND log_id = ?",
                    (key, log_id),
                ).fetchone()
                high = max(row[0] or 0, self._lowest(conn, key, log_id) - 1)
                event = Event(
                    owner_id=owner_id,
                    log_id=log_id,
                    id=high + 1,
                    time=time if time is not None else now,
                    type=event_type,
                    properties=properties or {},
                )
                self._insert(conn, key, event)
                conn.commit()

        logger.debug(f"Appended event {event.key}")
        return event

    # ==================== Retention ====================

    def get_lowest_id(self, owner_id: str | None, log_id: int) -> int:
        with self._db() as conn:
            return self._lowest(conn, codec.encode(owner_id), log_id)

    def get_lowest_ids(self, owner_id: str | None = None) -> list[LowestID]:
        """Return every recorded retention floor, optionally for one owner."""
        with self._db() as conn:
            if owner_id is None:
                rows = conn.execute(
                    "SELECT owner_key, log_id, lowest_id FROM lowest_ids "
                    "ORDER BY owner_key, log_id"
                ).fetchall()
            else:
                rows = conn.execute(
                    "SELECT owner_key, log_id, lowest_id FROM lowest_ids "
                    "WHERE owner_key = ? ORDER BY log_id",
                    (codec.encode(owner_id),),
                ).fetchall()
        return [
            LowestID(codec.decode(row["owner_key"]), row["log_id"], row["lowest_id"])
            for row in rows
        ]

    def set_lowest_id(self, owner_id: str | None, log_id: int, lowest_id: int) -> None:
        key = codec.encode(owner_id)
        with self._lock_log(key, log_id):
            with self._db() as conn:
                if self._raise_lowest(conn, key, log_id, lowest_id) is not None:
                    conn.commit()
                    logger.debug(f"Lowest id of {(owner_id, log_id)} raised to {lowest_id}")

    def clean(self) -> int:
        """Keep only the newest ``max_events`` events of every log.

        The floor of each trimmed log is raised to its oldest kept id, so the
        purged events are not accepted again from a peer.

        Returns:
            Number of events removed.
        """
        if self.max_events <= 0:
            return 0

        removed = 0
        for descriptor in self.get_descriptors():
            key = codec.encode(descriptor.owner_id)
            with self._lock_log(key, descriptor.log_id):
                with self._db() as conn:
                    row = conn.execute(
                        "SELECT id FROM events WHERE owner_key = ? AND log_id = ? "
                        "ORDER BY id DESC LIMIT 1 OFFSET ?",
                        (key, descriptor.log_id, self.max_events - 1),
                    ).fetchone()
                    if row is None:
                        continue
                    dropped = self._raise_lowest(conn, key, descriptor.log_id, row["id"])
                    conn.commit()
                    removed += dropped or 0

        if removed:
            logger.info(f"Cleaned up {removed} event(s) beyond {self.max_events} per log")
        return removed

    def get_stats(self) -> dict[str, Any]:
        """Get store statistics."""
        with self._db() as conn:
            stats = {
                "total_events": conn.execute("SELECT COUNT(*) FROM events").fetchone()[0],
                "logs": conn.execute(
                    "SELECT COUNT(*) FROM (SELECT DISTINCT owner_key, log_id FROM events)"
                ).fetchone()[0],
                "owners": conn.execute(
                    "SELECT COUNT(DISTINCT owner_key) FROM events"
                ).fetchone()[0],
            }

        if self.db_path.exists():
            stats["db_size_mb"] = round(self.db_path.stat().st_size / (1024 * 1024), 2)

        return stats
