"""Shared fixtures: in-memory collaborators and a fixed clock."""

import itertools
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Sequence, Set

import pytest
import pytz
from pydantic_settings import SettingsConfigDict

from kuna_calsync.config import Settings
from kuna_calsync.models import (
    CalendarEvent,
    CalendarInfo,
    CalendarSource,
    Project,
    SyncConfiguration,
    Task,
    TaskPatch,
    TimeWindow,
)
from kuna_calsync.services.base import (
    CalendarStore,
    CalendarStoreError,
    InvalidTaskId,
    TaskNotFound,
    TaskService,
    TransportError,
)
from kuna_calsync.state_store import MemoryKeyValueStore, SyncStateStore
from kuna_calsync.sync_engine import SyncEngine

NOW = datetime(2024, 2, 15, 12, 0, tzinfo=pytz.UTC)


class TestSettings(Settings):
    """Test-specific settings that don't read from .env files."""
    model_config = SettingsConfigDict(
        env_file=None,  # Don't read from .env files
        case_sensitive=False,
        extra="ignore",
        env_nested_delimiter="__",
        secrets_dir=None  # Don't read from secrets directory
    )


def make_settings(tmp_path, **overrides):
    values = dict(
        vikunja_url='https://tasks.example.com/api/v1',
        vikunja_token='token',
        caldav_url='https://caldav.example.com',
        caldav_username='user@example.com',
        caldav_password='secret',
        data_dir=str(tmp_path),
        database_url=f'sqlite:///{tmp_path}/test.db',
    )
    values.update(overrides)
    return TestSettings(**values)


class FakeClock:
    def __init__(self, now: datetime = NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


class InMemoryTaskService(TaskService):
    """Task service holding tasks in a dict."""

    def __init__(self, clock: FakeClock):
        self.clock = clock
        self.tasks: Dict[str, Task] = {}
        self.projects: List[Project] = []
        self.failing_projects: Set[str] = set()
        self.patches: List[TaskPatch] = []
        self.fetch_calls = 0

    def put(self, **fields) -> Task:
        fields.setdefault('updated_at', self.clock())
        task = Task(**fields)
        self.tasks[task.id] = task
        return task

    async def fetch_tasks(self, updated_since, project_ids: Sequence[str], window: TimeWindow) -> List[Task]:
        self.fetch_calls += 1
        for project_id in project_ids:
            if project_id in self.failing_projects:
                raise TransportError(f"project {project_id} unavailable", status_code=503)
        return [
            task for task in self.tasks.values()
            if (not project_ids or task.project_id in project_ids)
            and (updated_since is None or task.updated_at > updated_since)
        ]

    async def patch_task(self, patch: TaskPatch) -> Task:
        if not patch.id.isdigit():
            raise InvalidTaskId(patch.id)
        if patch.id not in self.tasks:
            raise TaskNotFound(patch.id)
        self.patches.append(patch)

        update = {
            name: getattr(patch, name)
            for name in patch.changed_fields()
        }
        update['updated_at'] = self.clock()
        task = self.tasks[patch.id].model_copy(update=update)
        self.tasks[patch.id] = task
        return task

    async def fetch_projects(self) -> List[Project]:
        return list(self.projects)


def _overlaps(event: CalendarEvent, start: datetime, end: datetime) -> bool:
    # CalDAV time-range matching: ranges are half-open
    if event.end > event.start:
        return start < event.end and event.start < end
    return start <= event.start < end


class InMemoryCalendarStore(CalendarStore):
    """Calendar store keeping deep copies of events, stamped by the fake clock."""

    def __init__(self, clock: FakeClock):
        self.clock = clock
        self.access = True
        self.sources = [CalendarSource(id='local', title='On My Device')]
        self.calendars: Dict[str, CalendarInfo] = {}
        self.events: Dict[str, CalendarEvent] = {}
        self.fail_create = False
        self.fail_list = False
        self.saves = 0
        self.commits = 0
        self._ids = itertools.count(1)

    async def request_access(self) -> bool:
        return self.access

    async def writable_sources(self) -> List[CalendarSource]:
        return list(self.sources)

    async def find_or_create_calendar(self, name: str, source: CalendarSource) -> CalendarInfo:
        for info in self.calendars.values():
            if info.name == name:
                return info
        if self.fail_create:
            raise CalendarStoreError("calendar creation refused")
        info = CalendarInfo(id=f"cal-{next(self._ids)}", name=name, source_id=source.id)
        self.calendars[info.id] = info
        return info

    async def list_calendars(self) -> List[CalendarInfo]:
        return list(self.calendars.values())

    async def list_events(self, calendar_ids, start, end) -> List[CalendarEvent]:
        if self.fail_list:
            raise CalendarStoreError("listing failed")
        return [
            event.model_copy(deep=True) for event in self.events.values()
            if event.calendar_id in calendar_ids and _overlaps(event, start, end)
        ]

    async def save_event(self, event: CalendarEvent) -> CalendarEvent:
        if event.calendar_id not in self.calendars:
            raise CalendarStoreError(f"no calendar {event.calendar_id}")
        saved = event.model_copy(deep=True)
        if not saved.id:
            saved.id = f"evt-{next(self._ids)}"
        saved.last_modified = self.clock()
        self.events[saved.id] = saved
        self.saves += 1
        return saved.model_copy(deep=True)

    async def delete_event(self, event: CalendarEvent) -> None:
        self.events.pop(event.id, None)

    async def delete_calendar(self, calendar_id: str) -> None:
        self.calendars.pop(calendar_id, None)
        for event_id in [e.id for e in self.events.values() if e.calendar_id == calendar_id]:
            del self.events[event_id]

    async def commit(self) -> None:
        self.commits += 1

    def edit(self, event_id: str, **changes) -> CalendarEvent:
        """Simulate a user edit in a calendar app."""
        event = self.events[event_id].model_copy(update=changes, deep=True)
        event.last_modified = self.clock()
        self.events[event_id] = event
        return event

    def rekey(self, event_id: str, new_id: str) -> None:
        """Simulate the store reassigning an event identifier."""
        event = self.events.pop(event_id)
        event.id = new_id
        self.events[new_id] = event


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def task_service(clock):
    return InMemoryTaskService(clock)


@pytest.fixture
def calendar_store(clock):
    return InMemoryCalendarStore(clock)


@pytest.fixture
def kv():
    return MemoryKeyValueStore()


@pytest.fixture
def state_store(kv):
    return SyncStateStore(kv)


@pytest.fixture
def sync_config():
    return SyncConfiguration(debounce_seconds=0.01, max_errors=5)


@pytest.fixture
def engine(task_service, calendar_store, state_store, sync_config, clock):
    return SyncEngine(task_service, calendar_store, state_store, config=sync_config, clock=clock)
