"""Data models for task/calendar synchronization."""

from datetime import datetime, timedelta
from enum import Enum
from typing import Dict, List, Optional, Set
from uuid import UUID, uuid4

from pydantic import BaseModel, Field, field_validator
import pytz

from .signature import strip_signature


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Return a timezone-aware datetime, assuming UTC for naive values."""
    if value is None:
        return None
    if value.tzinfo is None or value.tzinfo.utcoffset(value) is None:
        return value.replace(tzinfo=pytz.UTC)
    return value


class CalendarSyncMode(str, Enum):
    """How synced tasks are spread over calendars."""

    SINGLE = "single"
    PER_PROJECT = "per_project"

    @property
    def display_name(self) -> str:
        if self is CalendarSyncMode.SINGLE:
            return "Single Calendar"
        return "Calendar per Project"

    @property
    def description(self) -> str:
        if self is CalendarSyncMode.SINGLE:
            return 'All tasks in one "Kuna" calendar'
        return "Separate calendar for each project"


class DisableDisposition(str, Enum):
    """What happens to managed calendars when sync is switched off."""

    KEEP_EVERYTHING = "keep_everything"
    DELETE_MANAGED_EVENTS = "delete_managed_events"


class EngineState(str, Enum):
    """Lifecycle states of the sync engine."""

    DISABLED = "disabled"
    ONBOARDING = "onboarding"
    ENABLED = "enabled"
    SYNCING_PULL = "syncing_pull"
    SYNCING_PUSH = "syncing_push"
    ERROR = "error"


class SyncDirection(str, Enum):
    """Direction of a sync pass."""

    PULL = "pull"  # tasks -> calendar
    PUSH = "push"  # calendar -> tasks


class SyncOperation(str, Enum):
    """Sync operation types."""

    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"
    PATCH = "patch"
    SKIP = "skip"


class Task(BaseModel):
    """Snapshot of a remote task as seen by the sync engine."""

    model_config = {"frozen": True}

    id: str = Field(..., description="Task ID in the task service")
    project_id: str = Field("", description="Owning project ID")
    title: str = Field("", description="Task title")
    notes: Optional[str] = Field(None, description="Free-form task description")
    due_date: Optional[datetime] = Field(None, description="Due instant")
    is_all_day: bool = Field(False, description="Whether the due date is a whole day")
    reminders: List[float] = Field(
        default_factory=list,
        description="Reminder offsets in seconds relative to the due date",
    )
    updated_at: datetime = Field(default_factory=lambda: datetime.now(pytz.UTC))
    deleted: bool = Field(False, description="Task is deleted or done")

    @field_validator("due_date", "updated_at", mode="before")
    @classmethod
    def ensure_timezone_aware(cls, v):
        """Ensure datetime objects are timezone-aware."""
        if isinstance(v, datetime):
            return ensure_utc(v)
        return v


class CalendarEvent(BaseModel):
    """Calendar store event, mutable so the mapper can write into it."""

    id: Optional[str] = Field(None, description="Store-assigned event identifier")
    calendar_id: str = Field(..., description="Calendar holding the event")
    title: str = Field("", description="Event title")
    start: Optional[datetime] = Field(None)
    end: Optional[datetime] = Field(None)
    all_day: bool = Field(False)
    alarms: List[float] = Field(
        default_factory=list,
        description="Alarm offsets in seconds relative to the event start",
    )
    notes: Optional[str] = Field(None, description="Notes, carrying the embedded signature")
    url: Optional[str] = Field(None, description="Identity marker linking back to a task")
    last_modified: Optional[datetime] = Field(None)

    model_config = {"validate_assignment": True}

    @field_validator("start", "end", "last_modified", mode="before")
    @classmethod
    def ensure_timezone_aware(cls, v):
        """Ensure datetime objects are timezone-aware."""
        if isinstance(v, datetime):
            return ensure_utc(v)
        return v


class EventSnapshot(BaseModel):
    """Semantic fields of an event as the engine last wrote it."""

    title: str = ""
    start: Optional[datetime] = None
    end: Optional[datetime] = None
    all_day: bool = False
    alarms: List[float] = Field(default_factory=list)
    notes: str = ""

    @classmethod
    def capture(cls, event: CalendarEvent) -> "EventSnapshot":
        return cls(
            title=event.title or "",
            start=ensure_utc(event.start),
            end=ensure_utc(event.end),
            all_day=event.all_day,
            alarms=sorted(float(a) for a in event.alarms),
            notes=strip_signature(event.notes),
        )

    def same_timing(self, other: "EventSnapshot") -> bool:
        return (
            self.start == other.start
            and self.end == other.end
            and self.all_day == other.all_day
        )


class TaskPatch(BaseModel):
    """Partial task update derived from a calendar edit. None means unchanged."""

    id: str
    title: Optional[str] = None
    notes: Optional[str] = None
    due_date: Optional[datetime] = None
    is_all_day: Optional[bool] = None
    reminders: Optional[List[float]] = None

    def changed_fields(self) -> Set[str]:
        return {
            name for name in ("title", "notes", "due_date", "is_all_day", "reminders")
            if getattr(self, name) is not None
        }


class Project(BaseModel):
    """Task service project."""

    id: str
    title: str = ""


class CalendarSource(BaseModel):
    """Account or container in which calendars can be created."""

    id: str
    title: str = ""
    writable: bool = True


class CalendarInfo(BaseModel):
    """Calendar information model."""

    id: str = Field(..., description="Calendar ID")
    name: str = Field(..., description="Calendar name")
    source_id: Optional[str] = Field(None)
    writable: bool = Field(True)


class KunaCalendarRef(BaseModel):
    """Persisted reference to a calendar created or adopted by the engine."""

    model_config = {"frozen": True}

    name: str
    identifier: str


class CalendarSyncPrefs(BaseModel):
    """Onboarding choices persisted between runs."""

    is_enabled: bool = False
    mode: CalendarSyncMode = CalendarSyncMode.SINGLE
    selected_project_ids: List[str] = Field(default_factory=list)
    single_calendar: Optional[KunaCalendarRef] = None
    version: int = 1

    def is_valid(self, project_calendars: Optional[Dict[str, str]] = None) -> bool:
        """Check the prefs describe a usable configuration."""
        if self.mode == CalendarSyncMode.SINGLE:
            return self.single_calendar is not None
        if not self.selected_project_ids:
            return False
        project_calendars = project_calendars or {}
        return all(pid in project_calendars for pid in self.selected_project_ids)


class SyncState(BaseModel):
    """Cursor pair persisted between passes."""

    remote_cursor: Optional[datetime] = Field(
        None, description="Newest task update already processed"
    )
    last_local_scan_at: Optional[datetime] = Field(
        None, description="When calendar events were last scanned for edits"
    )
    version: int = 1

    @field_validator("remote_cursor", "last_local_scan_at", mode="before")
    @classmethod
    def ensure_timezone_aware(cls, v):
        if isinstance(v, datetime):
            return ensure_utc(v)
        return v


class TimeWindow(BaseModel):
    """Closed time interval [start, end]."""

    model_config = {"frozen": True}

    start: datetime
    end: datetime

    @classmethod
    def around(cls, now: datetime, back: timedelta, forward: timedelta) -> "TimeWindow":
        now = ensure_utc(now)
        return cls(start=now - back, end=now + forward)

    def contains(self, moment: Optional[datetime]) -> bool:
        if moment is None:
            return False
        return self.start <= ensure_utc(moment) <= self.end


class SyncResult(BaseModel):
    """Result of a single item within a pass."""

    operation: SyncOperation
    task_id: Optional[str] = None
    event_id: Optional[str] = None
    success: bool = True
    error_message: Optional[str] = None
    title: Optional[str] = None


class SyncReport(BaseModel):
    """Record of one pull or push pass."""

    sync_id: UUID = Field(default_factory=uuid4)
    direction: SyncDirection
    started_at: datetime = Field(default_factory=lambda: datetime.now(pytz.UTC))
    completed_at: Optional[datetime] = Field(None)
    cursor_advanced: bool = Field(False)

    created: int = Field(0)
    updated: int = Field(0)
    deleted: int = Field(0)
    patched: int = Field(0)
    skipped: int = Field(0)

    results: List[SyncResult] = Field(default_factory=list)
    errors: List[str] = Field(default_factory=list)

    @property
    def total_operations(self) -> int:
        """Total number of operations performed."""
        return len(self.results)

    @property
    def success_rate(self) -> float:
        """Success rate of operations."""
        if not self.results:
            return 1.0
        successful = sum(1 for r in self.results if r.success)
        return successful / len(self.results)

    def record(self, result: SyncResult) -> None:
        self.results.append(result)
        if not result.success:
            return
        if result.operation == SyncOperation.CREATE:
            self.created += 1
        elif result.operation == SyncOperation.UPDATE:
            self.updated += 1
        elif result.operation == SyncOperation.DELETE:
            self.deleted += 1
        elif result.operation == SyncOperation.PATCH:
            self.patched += 1
        else:
            self.skipped += 1


class SyncConfiguration(BaseModel):
    """Sync configuration model."""

    calendar_title: str = Field("Kuna", description="Calendar name in single mode")
    per_project_prefix: str = Field("Kuna: ", description="Calendar name prefix in per-project mode")
    per_project_soft_cap: int = Field(25, ge=1, description="Warn above this many project calendars")

    pull_window_back_days: int = Field(56, ge=0)
    pull_window_forward_days: int = Field(365, ge=0)
    push_window_back_days: int = Field(183, ge=0)
    push_window_forward_days: int = Field(183, ge=0)

    debounce_seconds: float = Field(2.0, ge=0)
    max_errors: int = Field(50, ge=1)
    two_way: bool = Field(True, description="Push calendar edits back to tasks")
    event_timezone: str = Field("UTC", description="Timezone used for all-day boundaries")
    poll_interval_seconds: int = Field(300, ge=5)
    retry_attempts: int = Field(3, ge=1)

    @field_validator("event_timezone")
    @classmethod
    def validate_timezone(cls, v):
        try:
            pytz.timezone(v)
        except pytz.UnknownTimeZoneError:
            raise ValueError(f"Unknown timezone: {v}")
        return v

    @property
    def tz(self):
        return pytz.timezone(self.event_timezone)

    def pull_window(self, now: datetime) -> TimeWindow:
        return TimeWindow.around(
            now,
            timedelta(days=self.pull_window_back_days),
            timedelta(days=self.pull_window_forward_days),
        )

    def push_window(self, now: datetime) -> TimeWindow:
        return TimeWindow.around(
            now,
            timedelta(days=self.push_window_back_days),
            timedelta(days=self.push_window_forward_days),
        )
