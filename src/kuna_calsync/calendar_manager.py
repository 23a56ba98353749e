"""Provisioning and housekeeping of the calendars the engine manages."""

import logging
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Sequence, Tuple

from .identity import is_identity_marker
from .models import (
    CalendarEvent,
    CalendarInfo,
    CalendarSource,
    Project,
    SyncConfiguration,
    TimeWindow,
)
from .services.base import (
    AccessDenied,
    CalendarCreationError,
    CalendarStore,
    CalendarSyncError,
)

logger = logging.getLogger(__name__)

TIDY_RANGE = timedelta(days=3652)


class CalendarManager:
    """Finds, creates and removes managed calendars in a calendar store."""

    def __init__(self, store: CalendarStore, config: SyncConfiguration):
        """Initialize calendar manager.

        Args:
            store: Calendar store holding the managed calendars
            config: Naming and soft cap settings
        """
        self.store = store
        self.config = config
        self.logger = logger.getChild('calendar_manager')

    async def ensure_access(self) -> None:
        """Request store access.

        Raises:
            AccessDenied: If the store refuses access
        """
        if not await self.store.request_access():
            raise AccessDenied("Calendar access denied")

    async def default_source(self) -> CalendarSource:
        """First writable source.

        Raises:
            CalendarCreationError: If no writable source exists
        """
        sources = [s for s in await self.store.writable_sources() if s.writable]
        if not sources:
            raise CalendarCreationError("No available calendar source found")
        return sources[0]

    def project_calendar_name(self, project_id: str, project: Optional[Project] = None) -> str:
        title = project.title if project is not None and project.title else f"Project {project_id}"
        return f"{self.config.per_project_prefix}{title}"

    def is_managed_name(self, name: str) -> bool:
        return name == self.config.calendar_title or name.startswith(self.config.per_project_prefix)

    async def _find_or_create(self, name: str, source: CalendarSource) -> CalendarInfo:
        try:
            return await self.store.find_or_create_calendar(name, source)
        except CalendarCreationError:
            raise
        except CalendarSyncError as e:
            raise CalendarCreationError(f"Could not create calendar {name!r}: {e}")

    async def ensure_kuna_calendar(self, source: CalendarSource) -> CalendarInfo:
        """Find or create the single managed calendar."""
        calendar = await self._find_or_create(self.config.calendar_title, source)
        self.logger.info(f"Using calendar {calendar.name!r} ({calendar.id})")
        return calendar

    async def ensure_project_calendars(
        self,
        project_ids: Sequence[str],
        projects: Sequence[Project],
        source: CalendarSource,
    ) -> Dict[str, CalendarInfo]:
        """Find or create one calendar per project, keyed by project id."""
        if len(project_ids) > self.config.per_project_soft_cap:
            self.logger.warning(
                f"Syncing {len(project_ids)} projects creates more than "
                f"{self.config.per_project_soft_cap} calendars"
            )

        by_id = {p.id: p for p in projects}
        calendars: Dict[str, CalendarInfo] = {}
        for project_id in project_ids:
            name = self.project_calendar_name(project_id, by_id.get(project_id))
            calendars[project_id] = await self._find_or_create(name, source)
        return calendars

    async def managed_calendars(self) -> List[CalendarInfo]:
        """Writable calendars whose name marks them as ours."""
        return [
            c for c in await self.store.list_calendars()
            if c.writable and self.is_managed_name(c.name)
        ]

    async def events_changed_since(
        self,
        calendar_ids: Sequence[str],
        since: Optional[datetime],
        window: TimeWindow,
    ) -> List[CalendarEvent]:
        """Marked events in the window modified after ``since``.

        Events without a modification time are always included.
        """
        events = await self.store.list_events(calendar_ids, window.start, window.end)
        changed = []
        for event in events:
            if not is_identity_marker(event.url):
                continue
            if since is None or event.last_modified is None or event.last_modified > since:
                changed.append(event)
        return changed

    async def remove_calendar_if_empty(self, calendar_id: str, window: TimeWindow) -> bool:
        events = await self.store.list_events([calendar_id], window.start, window.end)
        if events:
            return False
        await self.store.delete_calendar(calendar_id)
        self.logger.info(f"Removed empty calendar {calendar_id}")
        return True

    async def remove_managed_events(
        self,
        calendar_ids: Sequence[str],
        now: datetime,
    ) -> Tuple[int, List[str]]:
        """Delete every marked event within ten years of now.

        Returns:
            Tuple of (deleted count, error messages)
        """
        deleted = 0
        errors: List[str] = []
        try:
            events = await self.store.list_events(calendar_ids, now - TIDY_RANGE, now + TIDY_RANGE)
        except CalendarSyncError as e:
            return 0, [f"Failed to list managed events: {e}"]

        for event in events:
            if not is_identity_marker(event.url):
                continue
            try:
                await self.store.delete_event(event)
                deleted += 1
            except CalendarSyncError as e:
                errors.append(f"Failed to delete event {event.id}: {e}")

        try:
            await self.store.commit()
        except CalendarSyncError as e:
            errors.append(f"Failed to commit deletions: {e}")
        return deleted, errors

    async def delete_calendars(self, calendar_ids: Sequence[str]) -> List[str]:
        errors: List[str] = []
        for calendar_id in calendar_ids:
            try:
                await self.store.delete_calendar(calendar_id)
            except CalendarSyncError as e:
                errors.append(f"Failed to delete calendar {calendar_id}: {e}")
        return errors
