"""
SQLite persistence: integration registry, local event store, sync mappings
and the conflict audit trail.
"""

import datetime
import json
import logging
import sqlite3
import threading
from pathlib import Path

from calendar_sync_engine.mapper import EventMapper
from calendar_sync_engine.models import CalendarIntegration
from calendar_sync_engine.models import ConflictStatus
from calendar_sync_engine.models import ConflictType
from calendar_sync_engine.models import HistoryStatus
from calendar_sync_engine.models import LocalEvent
from calendar_sync_engine.models import NotFoundError
from calendar_sync_engine.models import Provider
from calendar_sync_engine.models import RecurringSeries
from calendar_sync_engine.models import Resolution
from calendar_sync_engine.models import SyncConflict
from calendar_sync_engine.models import SyncDirection
from calendar_sync_engine.models import SyncHistoryEntry
from calendar_sync_engine.models import SyncMapping
from calendar_sync_engine.models import SyncResult
from calendar_sync_engine.models import SyncStatus
from calendar_sync_engine.models import utcnow

logger = logging.getLogger(__name__)

_SCHEMA = """
CREATE TABLE IF NOT EXISTS calendar_integrations (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    provider TEXT NOT NULL,
    calendar_id TEXT NOT NULL DEFAULT 'primary',
    sync_enabled INTEGER NOT NULL DEFAULT 1,
    sync_direction TEXT NOT NULL DEFAULT 'bidirectional',
    sync_status TEXT NOT NULL DEFAULT 'idle',
    sync_past_days INTEGER NOT NULL DEFAULT 30,
    sync_future_days INTEGER NOT NULL DEFAULT 365,
    last_sync_at TEXT,
    last_successful_sync_at TEXT,
    sync_error_message TEXT,
    sync_started_at TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS schedule_events (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    start_time TEXT NOT NULL,
    end_time TEXT NOT NULL,
    parent_event_id TEXT,
    is_recurring INTEGER NOT NULL DEFAULT 0,
    data TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_schedule_events_user_time
    ON schedule_events (user_id, start_time, end_time);

CREATE TABLE IF NOT EXISTS event_sync_mappings (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    integration_id TEXT NOT NULL,
    local_event_id TEXT NOT NULL,
    external_event_id TEXT NOT NULL,
    local_hash TEXT NOT NULL,
    external_hash TEXT NOT NULL,
    created_at TEXT NOT NULL,
    last_sync_at TEXT NOT NULL,
    UNIQUE(integration_id, local_event_id),
    UNIQUE(integration_id, external_event_id)
);

CREATE TABLE IF NOT EXISTS sync_conflicts (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    integration_id TEXT NOT NULL,
    conflict_type TEXT NOT NULL,
    description TEXT NOT NULL,
    local_event_id TEXT,
    external_event_id TEXT,
    local_event_data TEXT,
    external_event_data TEXT,
    status TEXT NOT NULL DEFAULT 'pending',
    resolution TEXT,
    resolved_by TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    resolved_at TEXT
);
CREATE INDEX IF NOT EXISTS idx_sync_conflicts_user_status
    ON sync_conflicts (user_id, status);

CREATE TABLE IF NOT EXISTS sync_history (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id TEXT NOT NULL,
    integration_id TEXT NOT NULL,
    sync_direction TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'started',
    events_processed INTEGER NOT NULL DEFAULT 0,
    events_created INTEGER NOT NULL DEFAULT 0,
    events_updated INTEGER NOT NULL DEFAULT 0,
    events_deleted INTEGER NOT NULL DEFAULT 0,
    conflicts_detected INTEGER NOT NULL DEFAULT 0,
    error_message TEXT,
    started_at TEXT NOT NULL,
    completed_at TEXT,
    duration_seconds REAL
);
CREATE INDEX IF NOT EXISTS idx_sync_history_integration_started
    ON sync_history (integration_id, started_at);
"""


def _ts(value: datetime.datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def _utc_ts(value: datetime.datetime) -> str:
    # Indexed columns hold UTC text so window queries compare lexically.
    return value.astimezone(datetime.timezone.utc).isoformat()


def _parse_ts(value: str | None) -> datetime.datetime | None:
    return datetime.datetime.fromisoformat(value) if value else None


def _json_or_none(value: dict | None) -> str | None:
    return json.dumps(value) if value is not None else None


class StateDatabase:
    """Manages the SQLite state database.

    One connection is shared by every sync thread; all access goes through
    ``self._lock``.
    """

    def __init__(self, db_path: Path):
        self.db_path = db_path
        self.conn: sqlite3.Connection | None = None
        self._lock = threading.RLock()

    def __enter__(self):
        self.connect()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

    def connect(self):
        """Initialize and connect to the state database."""
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self.conn = sqlite3.connect(str(self.db_path), check_same_thread=False)
        self.conn.row_factory = sqlite3.Row  # Enable column access by name
        self._init_schema()

    def _init_schema(self):
        with self._lock:
            self.conn.executescript(_SCHEMA)
            self.conn.commit()

    def _execute(self, sql: str, params: tuple = ()) -> sqlite3.Cursor:
        with self._lock:
            return self.conn.execute(sql, params)

    def _fetchone(self, sql: str, params: tuple = ()) -> sqlite3.Row | None:
        with self._lock:
            return self.conn.execute(sql, params).fetchone()

    def _fetchall(self, sql: str, params: tuple = ()) -> list[sqlite3.Row]:
        with self._lock:
            return self.conn.execute(sql, params).fetchall()

    # ------------------------------------------------------------------ #
    # Integration registry                                                 #
    # ------------------------------------------------------------------ #

    @staticmethod
    def _row_to_integration(row: sqlite3.Row) -> CalendarIntegration:
        return CalendarIntegration(
            id=row["id"],
            user_id=row["user_id"],
            provider=Provider(row["provider"]),
            calendar_id=row["calendar_id"],
            sync_enabled=bool(row["sync_enabled"]),
            sync_direction=SyncDirection(row["sync_direction"]),
            sync_status=SyncStatus(row["sync_status"]),
            sync_past_days=row["sync_past_days"],
            sync_future_days=row["sync_future_days"],
            last_sync_at=_parse_ts(row["last_sync_at"]),
            last_successful_sync_at=_parse_ts(row["last_successful_sync_at"]),
            sync_error_message=row["sync_error_message"],
            sync_started_at=_parse_ts(row["sync_started_at"]),
            created_at=_parse_ts(row["created_at"]),
            updated_at=_parse_ts(row["updated_at"]),
        )

    def create_integration(self, integration: CalendarIntegration) -> CalendarIntegration:
        now = utcnow()
        integration.created_at = integration.created_at or now
        integration.updated_at = now
        self._execute(
            "INSERT INTO calendar_integrations "
            "(id, user_id, provider, calendar_id, sync_enabled, sync_direction, "
            " sync_status, sync_past_days, sync_future_days, last_sync_at, "
            " last_successful_sync_at, sync_error_message, created_at, updated_at) "
            "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
            (
                integration.id,
                integration.user_id,
                integration.provider.value,
                integration.calendar_id,
                int(integration.sync_enabled),
                integration.sync_direction.value,
                integration.sync_status.value,
                integration.sync_past_days,
                integration.sync_future_days,
                _ts(integration.last_sync_at),
                _ts(integration.last_successful_sync_at),
                integration.sync_error_message,
                _ts(integration.created_at),
                _ts(integration.updated_at),
            ),
        )
        return integration

    def get_integration(self, integration_id: str) -> CalendarIntegration | None:
        row = self._fetchone("SELECT * FROM calendar_integrations WHERE id = ?", (integration_id,))
        return self._row_to_integration(row) if row else None

    def list_integrations(
        self, user_id: str | None = None, enabled_only: bool = False
    ) -> list[CalendarIntegration]:
        sql = "SELECT * FROM calendar_integrations WHERE 1 = 1"
        params: list = []
        if user_id is not None:
            sql += " AND user_id = ?"
            params.append(user_id)
        if enabled_only:
            sql += " AND sync_enabled = 1"
        sql += " ORDER BY created_at, id"
        return [self._row_to_integration(r) for r in self._fetchall(sql, tuple(params))]

    def update_integration_preferences(
        self,
        integration_id: str,
        sync_enabled: bool | None = None,
        sync_direction: SyncDirection | None = None,
        calendar_id: str | None = None,
        sync_past_days: int | None = None,
        sync_future_days: int | None = None,
    ) -> CalendarIntegration:
        """Apply explicit user preference changes; unset arguments are kept."""
        current = self.get_integration(integration_id)
        if current is None:
            raise NotFoundError(f"Calendar integration {integration_id} not found")
        if sync_enabled is not None:
            current.sync_enabled = sync_enabled
        if sync_direction is not None:
            current.sync_direction = sync_direction
        if calendar_id is not None:
            current.calendar_id = calendar_id
        if sync_past_days is not None:
            current.sync_past_days = sync_past_days
        if sync_future_days is not None:
            current.sync_future_days = sync_future_days
        current.updated_at = utcnow()
        self._execute(
            "UPDATE calendar_integrations SET sync_enabled = ?, sync_direction = ?, "
            "calendar_id = ?, sync_past_days = ?, sync_future_days = ?, updated_at = ? "
            "WHERE id = ?",
            (
                int(current.sync_enabled),
                current.sync_direction.value,
                current.calendar_id,
                current.sync_past_days,
                current.sync_future_days,
                _ts(current.updated_at),
                integration_id,
            ),
        )
        return current

    def delete_integration(self, integration_id: str):
        """Remove an integration and its event mappings.

        Conflicts are kept as an audit trail.
        """
        self._execute("DELETE FROM event_sync_mappings WHERE integration_id = ?", (integration_id,))
        self._execute("DELETE FROM calendar_integrations WHERE id = ?", (integration_id,))

    def claim_integration(
        self,
        integration_id: str,
        now: datetime.datetime,
        stale_before: datetime.datetime,
    ) -> bool:
        """Atomically move an integration into ``syncing``.

        Returns False when another pass holds it.  A claim whose
        ``sync_started_at`` is older than ``stale_before`` is considered
        abandoned (the process that took it died) and may be taken over.
        """
        with self._lock:
            cursor = self.conn.execute(
                "UPDATE calendar_integrations "
                "SET sync_status = 'syncing', sync_started_at = ?, updated_at = ? "
                "WHERE id = ? AND (sync_status != 'syncing' "
                "OR sync_started_at IS NULL OR sync_started_at < ?)",
                (_ts(now), _ts(now), integration_id, _ts(stale_before)),
            )
            self.conn.commit()
            return cursor.rowcount == 1

    def finish_sync(
        self,
        integration_id: str,
        status: SyncStatus,
        now: datetime.datetime,
        error_message: str | None = None,
    ):
        """Record the end state of a pass and release its claim."""
        if status == SyncStatus.SUCCESS:
            self._execute(
                "UPDATE calendar_integrations SET sync_status = ?, last_sync_at = ?, "
                "last_successful_sync_at = ?, sync_error_message = NULL, "
                "sync_started_at = NULL, updated_at = ? WHERE id = ?",
                (status.value, _ts(now), _ts(now), _ts(now), integration_id),
            )
        else:
            self._execute(
                "UPDATE calendar_integrations SET sync_status = ?, last_sync_at = ?, "
                "sync_error_message = ?, sync_started_at = NULL, updated_at = ? WHERE id = ?",
                (status.value, _ts(now), error_message, _ts(now), integration_id),
            )
        self.commit()

    # ------------------------------------------------------------------ #
    # Sync history                                                         #
    # ------------------------------------------------------------------ #

    @staticmethod
    def _row_to_history(row: sqlite3.Row) -> SyncHistoryEntry:
        return SyncHistoryEntry(
            id=row["id"],
            user_id=row["user_id"],
            integration_id=row["integration_id"],
            sync_direction=SyncDirection(row["sync_direction"]),
            status=HistoryStatus(row["status"]),
            started_at=_parse_ts(row["started_at"]),
            completed_at=_parse_ts(row["completed_at"]),
            duration_seconds=row["duration_seconds"],
            events_processed=row["events_processed"],
            events_created=row["events_created"],
            events_updated=row["events_updated"],
            events_deleted=row["events_deleted"],
            conflicts_detected=row["conflicts_detected"],
            error_message=row["error_message"],
        )

    def start_sync_history(
        self, integration: CalendarIntegration, now: datetime.datetime
    ) -> int:
        cursor = self._execute(
            "INSERT INTO sync_history (user_id, integration_id, sync_direction, status, started_at) "
            "VALUES (?, ?, ?, 'started', ?)",
            (integration.user_id, integration.id, integration.sync_direction.value, _ts(now)),
        )
        self.commit()
        return cursor.lastrowid

    def complete_sync_history(
        self,
        history_id: int,
        status: HistoryStatus,
        result: SyncResult,
        now: datetime.datetime,
    ):
        """Close a history row with the pass's counters and duration."""
        row = self._fetchone("SELECT started_at FROM sync_history WHERE id = ?", (history_id,))
        if row is None:
            raise NotFoundError(f"Sync history {history_id} not found")
        duration = (now - _parse_ts(row["started_at"])).total_seconds()
        self._execute(
            "UPDATE sync_history SET status = ?, events_processed = ?, events_created = ?, "
            "events_updated = ?, events_deleted = ?, conflicts_detected = ?, error_message = ?, "
            "completed_at = ?, duration_seconds = ? WHERE id = ?",
            (
                status.value,
                result.events_processed,
                result.events_created,
                result.events_updated,
                result.events_deleted,
                result.conflicts_detected,
                "; ".join(result.errors) or None,
                _ts(now),
                max(duration, 0.0),
                history_id,
            ),
        )
        self.commit()

    def list_sync_history(
        self,
        integration_id: str | None = None,
        user_id: str | None = None,
        limit: int = 20,
    ) -> list[SyncHistoryEntry]:
        """Most recent passes first."""
        sql = "SELECT * FROM sync_history WHERE 1 = 1"
        params: list = []
        if integration_id is not None:
            sql += " AND integration_id = ?"
            params.append(integration_id)
        if user_id is not None:
            sql += " AND user_id = ?"
            params.append(user_id)
        sql += " ORDER BY started_at DESC, id DESC LIMIT ?"
        params.append(limit)
        return [self._row_to_history(r) for r in self._fetchall(sql, tuple(params))]

    # ------------------------------------------------------------------ #
    # Local event store                                                    #
    # ------------------------------------------------------------------ #

    def insert_local_event(self, event: LocalEvent) -> LocalEvent:
        now = utcnow()
        event.created_at = event.created_at or now
        event.updated_at = event.updated_at or now
        self._execute(
            "INSERT INTO schedule_events "
            "(id, user_id, start_time, end_time, parent_event_id, is_recurring, data) "
            "VALUES (?, ?, ?, ?, ?, ?, ?)",
            (
                event.id,
                event.user_id,
                _utc_ts(event.start),
                _utc_ts(event.end),
                event.parent_event_id,
                int(event.recurrence_pattern is not None),
                json.dumps(EventMapper.local_to_dict(event)),
            ),
        )
        return event

    def update_local_event(self, event: LocalEvent) -> LocalEvent:
        event.updated_at = utcnow()
        cursor = self._execute(
            "UPDATE schedule_events SET start_time = ?, end_time = ?, parent_event_id = ?, "
            "is_recurring = ?, data = ? WHERE id = ?",
            (
                _utc_ts(event.start),
                _utc_ts(event.end),
                event.parent_event_id,
                int(event.recurrence_pattern is not None),
                json.dumps(EventMapper.local_to_dict(event)),
                event.id,
            ),
        )
        if cursor.rowcount == 0:
            raise NotFoundError(f"Local event {event.id} not found")
        return event

    def delete_local_event(self, event_id: str):
        self._execute("DELETE FROM schedule_events WHERE id = ?", (event_id,))

    def get_local_event(self, event_id: str) -> LocalEvent | None:
        row = self._fetchone("SELECT data FROM schedule_events WHERE id = ?", (event_id,))
        return EventMapper.local_from_dict(json.loads(row["data"])) if row else None

    def list_local_events(
        self, user_id: str, start: datetime.datetime, end: datetime.datetime
    ) -> list[LocalEvent]:
        """Events overlapping ``[start, end)`` plus every recurring master that
        begins before ``end`` (its occurrences may fall inside the window).
        """
        rows = self._fetchall(
            "SELECT data FROM schedule_events WHERE user_id = ? AND ("
            "  (is_recurring = 0 AND start_time < ? AND end_time > ?)"
            "  OR (is_recurring = 1 AND start_time < ?)"
            ") ORDER BY start_time, id",
            (user_id, _utc_ts(end), _utc_ts(start), _utc_ts(end)),
        )
        return [EventMapper.local_from_dict(json.loads(r["data"])) for r in rows]

    def list_exception_events(self, master_event_id: str) -> list[LocalEvent]:
        rows = self._fetchall(
            "SELECT data FROM schedule_events WHERE parent_event_id = ? ORDER BY start_time, id",
            (master_event_id,),
        )
        events = [EventMapper.local_from_dict(json.loads(r["data"])) for r in rows]
        return [e for e in events if e.is_exception]

    def get_series(self, master_event_id: str) -> RecurringSeries | None:
        """The series rooted at a recurring master, with its exception ids."""
        master = self.get_local_event(master_event_id)
        if master is None or master.recurrence_pattern is None:
            return None
        return RecurringSeries(
            series_id=master.id,
            master_event_id=master.id,
            pattern=master.recurrence_pattern,
            exceptions=[e.id for e in self.list_exception_events(master.id)],
        )

    # ------------------------------------------------------------------ #
    # Event sync mappings                                                  #
    # ------------------------------------------------------------------ #

    @staticmethod
    def _row_to_mapping(row: sqlite3.Row) -> SyncMapping:
        return SyncMapping(
            id=row["id"],
            integration_id=row["integration_id"],
            local_event_id=row["local_event_id"],
            external_event_id=row["external_event_id"],
            local_hash=row["local_hash"],
            external_hash=row["external_hash"],
            created_at=_parse_ts(row["created_at"]),
            last_sync_at=_parse_ts(row["last_sync_at"]),
        )

    def get_mappings(self, integration_id: str) -> list[SyncMapping]:
        rows = self._fetchall(
            "SELECT * FROM event_sync_mappings WHERE integration_id = ? ORDER BY id",
            (integration_id,),
        )
        return [self._row_to_mapping(r) for r in rows]

    def get_mapping_by_local(self, integration_id: str, local_event_id: str) -> SyncMapping | None:
        row = self._fetchone(
            "SELECT * FROM event_sync_mappings WHERE integration_id = ? AND local_event_id = ?",
            (integration_id, local_event_id),
        )
        return self._row_to_mapping(row) if row else None

    def get_mapping_by_external(
        self, integration_id: str, external_event_id: str
    ) -> SyncMapping | None:
        row = self._fetchone(
            "SELECT * FROM event_sync_mappings WHERE integration_id = ? AND external_event_id = ?",
            (integration_id, external_event_id),
        )
        return self._row_to_mapping(row) if row else None

    def upsert_mapping(
        self,
        integration_id: str,
        local_event_id: str,
        external_event_id: str,
        local_hash: str,
        external_hash: str,
    ):
        """Insert a mapping, or refresh the one already held by the local id.

        ``created_at`` survives the upsert.
        """
        now = _ts(utcnow())
        self._execute(
            "INSERT INTO event_sync_mappings "
            "(integration_id, local_event_id, external_event_id, local_hash, external_hash, "
            " created_at, last_sync_at) "
            "VALUES (?, ?, ?, ?, ?, ?, ?) "
            "ON CONFLICT(integration_id, local_event_id) DO UPDATE SET "
            "external_event_id = excluded.external_event_id, "
            "local_hash = excluded.local_hash, "
            "external_hash = excluded.external_hash, "
            "last_sync_at = excluded.last_sync_at",
            (integration_id, local_event_id, external_event_id, local_hash, external_hash, now, now),
        )

    def update_mapping_hashes(
        self, integration_id: str, local_event_id: str, local_hash: str, external_hash: str
    ):
        self._execute(
            "UPDATE event_sync_mappings SET local_hash = ?, external_hash = ?, last_sync_at = ? "
            "WHERE integration_id = ? AND local_event_id = ?",
            (local_hash, external_hash, _ts(utcnow()), integration_id, local_event_id),
        )

    def remap_local_event(self, integration_id: str, old_local_id: str, new_local_id: str):
        """Point a mapping at a different local event (occurrence → exception)."""
        self._execute(
            "UPDATE event_sync_mappings SET local_event_id = ? "
            "WHERE integration_id = ? AND local_event_id = ?",
            (new_local_id, integration_id, old_local_id),
        )

    def delete_mapping(self, integration_id: str, local_event_id: str):
        self._execute(
            "DELETE FROM event_sync_mappings WHERE integration_id = ? AND local_event_id = ?",
            (integration_id, local_event_id),
        )

    # ------------------------------------------------------------------ #
    # Conflict store                                                       #
    # ------------------------------------------------------------------ #

    @staticmethod
    def _row_to_conflict(row: sqlite3.Row) -> SyncConflict:
        return SyncConflict(
            id=row["id"],
            user_id=row["user_id"],
            integration_id=row["integration_id"],
            conflict_type=ConflictType(row["conflict_type"]),
            description=row["description"],
            local_event_id=row["local_event_id"],
            external_event_id=row["external_event_id"],
            local_event_data=(
                json.loads(row["local_event_data"]) if row["local_event_data"] else None
            ),
            external_event_data=(
                json.loads(row["external_event_data"]) if row["external_event_data"] else None
            ),
            status=ConflictStatus(row["status"]),
            resolution=Resolution(row["resolution"]) if row["resolution"] else None,
            resolved_by=row["resolved_by"],
            created_at=_parse_ts(row["created_at"]),
            updated_at=_parse_ts(row["updated_at"]),
            resolved_at=_parse_ts(row["resolved_at"]),
        )

    def insert_conflict(self, conflict: SyncConflict) -> SyncConflict:
        now = utcnow()
        conflict.created_at = conflict.created_at or now
        conflict.updated_at = now
        self._execute(
            "INSERT INTO sync_conflicts "
            "(id, user_id, integration_id, conflict_type, description, "
            " local_event_id, external_event_id, local_event_data, external_event_data, "
            " status, resolution, resolved_by, created_at, updated_at, resolved_at) "
            "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
            (
                conflict.id,
                conflict.user_id,
                conflict.integration_id,
                conflict.conflict_type.value,
                conflict.description,
                conflict.local_event_id,
                conflict.external_event_id,
                _json_or_none(conflict.local_event_data),
                _json_or_none(conflict.external_event_data),
                conflict.status.value,
                conflict.resolution.value if conflict.resolution else None,
                conflict.resolved_by,
                _ts(conflict.created_at),
                _ts(conflict.updated_at),
                _ts(conflict.resolved_at),
            ),
        )
        return conflict

    def get_conflict(self, conflict_id: str) -> SyncConflict | None:
        row = self._fetchone("SELECT * FROM sync_conflicts WHERE id = ?", (conflict_id,))
        return self._row_to_conflict(row) if row else None

    def list_conflicts(
        self, user_id: str, status: ConflictStatus | None = None
    ) -> list[SyncConflict]:
        """Conflicts for a user, oldest first."""
        if status is None:
            rows = self._fetchall(
                "SELECT * FROM sync_conflicts WHERE user_id = ? ORDER BY created_at, rowid",
                (user_id,),
            )
        else:
            rows = self._fetchall(
                "SELECT * FROM sync_conflicts WHERE user_id = ? AND status = ? "
                "ORDER BY created_at, rowid",
                (user_id, status.value),
            )
        return [self._row_to_conflict(r) for r in rows]

    def has_pending_conflict(
        self,
        integration_id: str,
        local_event_id: str | None,
        external_event_id: str | None,
    ) -> bool:
        """True if an unresolved conflict already covers either event."""
        row = self._fetchone(
            "SELECT 1 FROM sync_conflicts WHERE integration_id = ? "
            "AND status IN ('pending', 'resolving') "
            "AND (local_event_id = ? OR external_event_id = ?) LIMIT 1",
            (integration_id, local_event_id, external_event_id),
        )
        return row is not None

    def claim_conflict(
        self,
        conflict_id: str,
        now: datetime.datetime,
        stale_before: datetime.datetime,
    ) -> bool:
        """Atomically move a pending conflict into ``resolving``.

        Returns False when the conflict is resolved or another resolution
        holds it.  A ``resolving`` claim last touched before ``stale_before``
        was abandoned and may be taken over.
        """
        with self._lock:
            cursor = self.conn.execute(
                "UPDATE sync_conflicts SET status = 'resolving', updated_at = ? "
                "WHERE id = ? AND (status = 'pending' "
                "OR (status = 'resolving' AND updated_at < ?))",
                (_ts(now), conflict_id, _ts(stale_before)),
            )
            self.conn.commit()
            return cursor.rowcount == 1

    def release_conflict(self, conflict_id: str, now: datetime.datetime):
        """Return a claimed conflict to ``pending`` after a failed resolution."""
        self._execute(
            "UPDATE sync_conflicts SET status = 'pending', updated_at = ? "
            "WHERE id = ? AND status = 'resolving'",
            (_ts(now), conflict_id),
        )
        self.commit()

    def mark_conflict_resolved(
        self,
        conflict_id: str,
        resolution: Resolution,
        resolved_by: str,
        now: datetime.datetime,
    ) -> bool:
        """Flip an unresolved conflict to resolved; False if it already was."""
        cursor = self._execute(
            "UPDATE sync_conflicts SET status = 'resolved', resolution = ?, resolved_by = ?, "
            "resolved_at = ?, updated_at = ? WHERE id = ? AND status IN ('pending', 'resolving')",
            (resolution.value, resolved_by, _ts(now), _ts(now), conflict_id),
        )
        return cursor.rowcount == 1

    def conflict_counts(self, user_id: str) -> list[sqlite3.Row]:
        """Rows of (conflict_type, status, resolution, count) for a user."""
        return self._fetchall(
            "SELECT conflict_type, status, resolution, COUNT(*) AS count "
            "FROM sync_conflicts WHERE user_id = ? "
            "GROUP BY conflict_type, status, resolution",
            (user_id,),
        )

    def commit(self):
        """Commit pending transactions."""
        with self._lock:
            if self.conn:
                self.conn.commit()

    def close(self):
        """Close the database connection."""
        with self._lock:
            if self.conn:
                self.conn.close()
                self.conn = None


def query_status_all_integrations(db_path: Path) -> list:
    """
    Return one row per integration with its mapping and pending-conflict counts.

    Returns an empty list when the DB file does not exist or has no
    calendar_integrations table yet.
    """
    if not db_path.exists():
        return []
    conn = sqlite3.connect(db_path)
    conn.row_factory = sqlite3.Row
    try:
        tables = {
            row["name"]
            for row in conn.execute("SELECT name FROM sqlite_master WHERE type = 'table'")
        }
        if "calendar_integrations" not in tables:
            return []
        cursor = conn.execute("""
            SELECT
                i.id, i.user_id, i.provider, i.calendar_id, i.sync_enabled,
                i.sync_direction, i.sync_status, i.last_sync_at,
                i.last_successful_sync_at, i.sync_error_message,
                (SELECT COUNT(*) FROM event_sync_mappings m
                  WHERE m.integration_id = i.id) AS mapped_events,
                (SELECT COUNT(*) FROM sync_conflicts c
                  WHERE c.integration_id = i.id AND c.status = 'pending') AS pending_conflicts
            FROM calendar_integrations i
            ORDER BY i.user_id, i.created_at
        """)
        return cursor.fetchall()
    finally:
        conn.close()
