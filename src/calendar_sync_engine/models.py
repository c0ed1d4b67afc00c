"""
Pure data models; no sqlite or provider imports.
"""

import datetime
from dataclasses import dataclass
from dataclasses import field
from enum import Enum
from enum import IntEnum
from pathlib import Path

DEFAULT_STATE_DB = Path.home() / ".local/share/calendar-sync-engine-state.db"
DEFAULT_CONFIG = Path.home() / ".config/calendar-sync-engine.conf"


def utcnow() -> datetime.datetime:
    return datetime.datetime.now(datetime.timezone.utc)


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------


class CalendarSyncError(Exception):
    """Base exception for calendar sync errors."""

    pass


class AuthExpiredError(CalendarSyncError):
    """Provider credentials need re-consent. Never retried."""


class TransientError(CalendarSyncError):
    """Failure that may succeed on retry."""


class RateLimitError(TransientError):
    """Provider throttled the request."""


class TransientNetworkError(TransientError):
    """Network failure or provider call timeout."""


class ValidationError(CalendarSyncError):
    """Malformed recurrence pattern or resolution request."""


class ForbiddenError(CalendarSyncError):
    """Caller does not own the record it tried to act on."""


class NotFoundError(CalendarSyncError):
    """Referenced integration, event or conflict does not exist."""


class SyncInProgressError(CalendarSyncError):
    """Another pass already holds the integration."""


class SyncCancelledError(CalendarSyncError):
    """The pass was cancelled at an I/O boundary."""


# ---------------------------------------------------------------------------
# Recurrence
# ---------------------------------------------------------------------------


class RecurrenceType(str, Enum):
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"
    YEARLY = "yearly"


class WeekDay(IntEnum):
    SUNDAY = 0
    MONDAY = 1
    TUESDAY = 2
    WEDNESDAY = 3
    THURSDAY = 4
    FRIDAY = 5
    SATURDAY = 6

    @classmethod
    def of(cls, day: datetime.date) -> "WeekDay":
        # date.weekday() is Monday=0
        return cls((day.weekday() + 1) % 7)


class MonthlyBy(str, Enum):
    DAY_OF_MONTH = "day_of_month"
    DAY_OF_WEEK = "day_of_week"


LAST_WEEK_OF_MONTH = -1
WEEKS_OF_MONTH = (1, 2, 3, 4, LAST_WEEK_OF_MONTH)


@dataclass
class RecurrencePattern:
    """How a recurring event repeats.

    At most one of ``end_date`` / ``occurrences`` may be set; with neither the
    series is unbounded and generation is capped by ``max_occurrences``.
    """

    type: RecurrenceType
    interval: int = 1
    days_of_week: list[WeekDay] | None = None  # weekly only
    monthly_by: MonthlyBy | None = None  # monthly and yearly
    day_of_month: int | None = None
    week_of_month: int | None = None  # 1..4 or LAST_WEEK_OF_MONTH
    week_day: WeekDay | None = None
    month: int | None = None  # yearly only, 1..12
    end_date: datetime.date | None = None
    occurrences: int | None = None
    workdays_only: bool = False  # daily only


@dataclass
class RecurringEventInstance:
    date: datetime.date
    start_time: datetime.datetime
    end_time: datetime.datetime
    is_modified: bool = False
    is_skipped: bool = False


@dataclass
class RecurringSeries:
    series_id: str
    master_event_id: str
    pattern: RecurrencePattern
    instances: list[RecurringEventInstance] = field(default_factory=list)
    exceptions: list[str] = field(default_factory=list)


@dataclass
class SeriesPreview:
    next_occurrences: list[RecurringEventInstance]
    total_count: int | None  # None for unbounded series
    end_date: datetime.date | None


@dataclass
class ValidationReport:
    valid: bool
    errors: list[str] = field(default_factory=list)


# ---------------------------------------------------------------------------
# Events
# ---------------------------------------------------------------------------


class Provider(str, Enum):
    GOOGLE = "google"
    MICROSOFT = "microsoft"


EVENT_CONFIRMED = "confirmed"
EVENT_CANCELLED = "cancelled"


@dataclass
class LocalEvent:
    """An event owned by the local schedule."""

    id: str
    user_id: str
    title: str
    start: datetime.datetime
    end: datetime.datetime
    description: str = ""
    location: str = ""
    timezone: str = "UTC"
    is_all_day: bool = False
    status: str = EVENT_CONFIRMED
    parent_event_id: str | None = None
    is_exception: bool = False
    original_date: datetime.date | None = None
    recurrence_pattern: RecurrencePattern | None = None
    reminder_minutes: int | None = None
    color: str | None = None
    created_at: datetime.datetime | None = None
    updated_at: datetime.datetime | None = None

    @property
    def is_cancelled(self) -> bool:
        return self.status == EVENT_CANCELLED


@dataclass
class ExternalEvent:
    """Provider-neutral shape of an event held by an external calendar."""

    provider: Provider
    external_id: str | None
    title: str
    start: datetime.datetime
    end: datetime.datetime
    description: str = ""
    location: str = ""
    calendar_id: str = "primary"
    is_all_day: bool = False
    reminder_minutes: int | None = None
    color: str | None = None
    etag: str | None = None
    updated: datetime.datetime | None = None


# ---------------------------------------------------------------------------
# Integrations, mappings and conflicts
# ---------------------------------------------------------------------------


class SyncDirection(str, Enum):
    IMPORT_ONLY = "import_only"
    EXPORT_ONLY = "export_only"
    BIDIRECTIONAL = "bidirectional"

    @property
    def imports(self) -> bool:
        return self != SyncDirection.EXPORT_ONLY

    @property
    def exports(self) -> bool:
        return self != SyncDirection.IMPORT_ONLY


class SyncStatus(str, Enum):
    IDLE = "idle"
    SYNCING = "syncing"
    SUCCESS = "success"
    ERROR = "error"


@dataclass
class CalendarIntegration:
    """A user's connection to one external calendar account."""

    id: str
    user_id: str
    provider: Provider
    calendar_id: str = "primary"
    sync_enabled: bool = True
    sync_direction: SyncDirection = SyncDirection.BIDIRECTIONAL
    sync_status: SyncStatus = SyncStatus.IDLE
    sync_past_days: int = 30
    sync_future_days: int = 365
    last_sync_at: datetime.datetime | None = None
    last_successful_sync_at: datetime.datetime | None = None
    sync_error_message: str | None = None
    sync_started_at: datetime.datetime | None = None  # claim time of the current pass
    created_at: datetime.datetime | None = None
    updated_at: datetime.datetime | None = None


@dataclass
class SyncMapping:
    """Pairing of a local event with its external copy at the last sync."""

    integration_id: str
    local_event_id: str
    external_event_id: str
    local_hash: str
    external_hash: str
    id: int | None = None
    created_at: datetime.datetime | None = None
    last_sync_at: datetime.datetime | None = None


class ConflictType(str, Enum):
    TIME_MISMATCH = "time_mismatch"
    CONTENT_MISMATCH = "content_mismatch"
    DELETION_CONFLICT = "deletion_conflict"
    CREATION_CONFLICT = "creation_conflict"


class ConflictStatus(str, Enum):
    PENDING = "pending"
    RESOLVING = "resolving"  # claimed by a resolution in flight
    RESOLVED = "resolved"


class Resolution(str, Enum):
    KEEP_LOCAL = "keep_local"
    KEEP_EXTERNAL = "keep_external"
    MERGE = "merge"
    IGNORE = "ignore"


class AutoResolutionRule(str, Enum):
    LOCAL_WINS = "local_wins"
    EXTERNAL_WINS = "external_wins"
    NEWEST_WINS = "newest_wins"
    LONGEST_WINS = "longest_wins"


class FieldSource(str, Enum):
    """Which side a smart merge takes a field group from."""

    LOCAL = "local"
    EXTERNAL = "external"
    NEWEST = "newest"


# Smart-merge field groups; "time" moves start and end together.
MERGE_FIELD_GROUPS: dict[str, tuple[str, ...]] = {
    "title": ("title",),
    "description": ("description",),
    "time": ("start", "end"),
    "location": ("location",),
}


class Severity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


@dataclass
class SyncConflict:
    id: str
    user_id: str
    integration_id: str
    conflict_type: ConflictType
    description: str
    local_event_id: str | None = None
    external_event_id: str | None = None
    local_event_data: dict | None = None
    external_event_data: dict | None = None
    status: ConflictStatus = ConflictStatus.PENDING
    resolution: Resolution | None = None
    resolved_by: str | None = None
    created_at: datetime.datetime | None = None
    updated_at: datetime.datetime | None = None
    resolved_at: datetime.datetime | None = None


@dataclass
class ResolutionResult:
    success: bool
    error: str | None = None
    applied_changes: list[str] = field(default_factory=list)
    already_resolved: bool = False


@dataclass
class ConflictAnalysis:
    affected_fields: list[str]
    severity: Severity
    auto_resolvable: bool
    suggested_resolution: Resolution | None = None


@dataclass
class ResolutionStrategy:
    """How a batch resolves its conflicts.

    ``auto_rule`` picks a whole side per conflict; otherwise
    ``field_priorities`` (keys of ``MERGE_FIELD_GROUPS``) drive a smart
    merge.  Unlisted field groups keep the local value.
    """

    auto_rule: AutoResolutionRule | None = None
    field_priorities: dict[str, FieldSource] | None = None


@dataclass
class BatchResolutionResult:
    resolved: int = 0
    failed: int = 0
    errors: list[str] = field(default_factory=list)


# ---------------------------------------------------------------------------
# Sync configuration and results
# ---------------------------------------------------------------------------


@dataclass
class SyncConfig:
    """Configuration for the sync engine."""

    state_db_path: Path = DEFAULT_STATE_DB
    dry_run: bool = False
    verbose: bool = False
    provider_timeout_seconds: float = 30.0
    max_retries: int = 3
    backoff_multiplier: float = 1.0
    backoff_max_seconds: float = 30.0
    time_tolerance_seconds: int = 5
    creation_match_window_minutes: int = 30
    title_similarity_threshold: float = 0.8
    # Per-series cap in a pass; covers a daily series across the default
    # 30 + 365 day window.
    max_occurrences: int = 1000
    max_workers: int = 4
    stale_sync_minutes: int = 60


@dataclass
class SyncResult:
    """Outcome of one sync pass."""

    integration_id: str
    success: bool = False
    events_processed: int = 0
    events_created: int = 0
    events_updated: int = 0
    events_deleted: int = 0
    conflicts_detected: int = 0
    errors: list[str] = field(default_factory=list)


class HistoryStatus(str, Enum):
    STARTED = "started"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass
class SyncHistoryEntry:
    """Audit record of one sync pass."""

    id: int
    user_id: str
    integration_id: str
    sync_direction: SyncDirection
    status: HistoryStatus
    started_at: datetime.datetime
    completed_at: datetime.datetime | None = None
    duration_seconds: float | None = None
    events_processed: int = 0
    events_created: int = 0
    events_updated: int = 0
    events_deleted: int = 0
    conflicts_detected: int = 0
    error_message: str | None = None
