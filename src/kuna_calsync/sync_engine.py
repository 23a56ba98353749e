"""Bidirectional task <-> calendar synchronization engine."""

import asyncio
import logging
from collections import deque
from datetime import datetime, timedelta
from typing import Any, Callable, Deque, Dict, Iterable, List, Optional, Tuple

import pytz

from .calendar_manager import CalendarManager
from .debouncer import Debouncer
from .identity import IdentityMap, ProjectCalendarMap
from .mapper import TaskEventMapper
from .models import (
    CalendarEvent,
    CalendarSyncMode,
    CalendarSyncPrefs,
    DisableDisposition,
    EngineState,
    EventSnapshot,
    KunaCalendarRef,
    Project,
    SyncConfiguration,
    SyncDirection,
    SyncOperation,
    SyncReport,
    SyncResult,
    SyncState,
    Task,
    TimeWindow,
    ensure_utc,
)
from .services.base import (
    AccessDenied,
    CalendarCreationError,
    CalendarStore,
    CalendarStoreError,
    CalendarSyncError,
    InvalidTaskId,
    TaskService,
)
from .state_store import SyncStateStore

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]

# CalDAV range queries only match events overlapping the range strictly
LISTING_MARGIN = timedelta(days=1)


def utc_now() -> datetime:
    return datetime.now(pytz.UTC)


class SyncEngine:
    """Keeps a task service and a calendar store consistent.

    Pull passes write tasks into calendar events, push passes send user edits
    made on those events back as task patches. Our own writes are recognised
    by the signature embedded in the event notes, so a pass never mistakes
    them for user edits.
    """

    def __init__(
        self,
        task_service: TaskService,
        calendar_store: CalendarStore,
        state_store: SyncStateStore,
        config: Optional[SyncConfiguration] = None,
        clock: Optional[Clock] = None,
        debouncer: Optional[Debouncer] = None,
    ):
        """Initialize sync engine.

        Args:
            task_service: Remote task list
            calendar_store: Calendar store holding the managed events
            state_store: Persistence for cursors, maps and prefs
            config: Sync configuration
            clock: Callable returning the current UTC time
            debouncer: Debouncer used for local change triggers
        """
        self.task_service = task_service
        self.calendar_store = calendar_store
        self.state_store = state_store
        self.config = config or SyncConfiguration()
        self.clock = clock or utc_now
        self.debouncer = debouncer or Debouncer()
        self.calendar_manager = CalendarManager(calendar_store, self.config)
        self.mapper = TaskEventMapper(self.config.tz)
        self.logger = logger.getChild('engine')

        self.prefs = state_store.load_prefs()
        self.sync_state = state_store.load_state()
        self.identity_map = state_store.load_identity_map()
        self.project_calendars = state_store.load_project_calendars()
        self.two_way = self.config.two_way

        self.sync_errors: Deque[str] = deque(maxlen=self.config.max_errors)
        self.last_reports: Deque[SyncReport] = deque(maxlen=10)

        if self.prefs.is_enabled and self.prefs.is_valid(self.project_calendars.as_dict()):
            self._base_state = EngineState.ENABLED
        else:
            self._base_state = EngineState.DISABLED
        self._onboarding = False
        self._generation = 0
        self._pull_running = False
        self._push_running = False

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def close(self) -> None:
        """Cancel pending triggers and release collaborator resources."""
        self.debouncer.cancel()
        await self.task_service.close()
        await self.calendar_store.close()

    # State

    @property
    def state(self) -> EngineState:
        if self._pull_running:
            return EngineState.SYNCING_PULL
        if self._push_running:
            return EngineState.SYNCING_PUSH
        if self._onboarding:
            return EngineState.ONBOARDING
        return self._base_state

    @property
    def is_enabled(self) -> bool:
        return self._base_state == EngineState.ENABLED

    def clear_errors(self) -> None:
        self.sync_errors.clear()

    def set_two_way(self, enabled: bool) -> None:
        self.two_way = enabled
        if not enabled:
            self.debouncer.cancel()

    def status(self) -> Dict[str, Any]:
        """Snapshot of engine state for display."""
        return {
            'state': self.state.value,
            'enabled': self.is_enabled,
            'mode': self.prefs.mode.value,
            'two_way': self.two_way,
            'selected_project_ids': list(self.prefs.selected_project_ids),
            'calendar_ids': self._calendar_ids(),
            'remote_cursor': self.sync_state.remote_cursor,
            'last_local_scan_at': self.sync_state.last_local_scan_at,
            'mapped_tasks': len(self.identity_map),
            'errors': list(self.sync_errors),
            'push_pending': self.debouncer.pending,
        }

    # Onboarding

    def onboarding_begin(self) -> None:
        """Clear transient errors and start onboarding.

        Persisted prefs are untouched and an enabled engine keeps syncing until
        onboarding completes or fails.
        """
        self.sync_errors.clear()
        self._onboarding = True
        if self._base_state == EngineState.ERROR:
            self._base_state = EngineState.DISABLED

    async def onboarding_complete(
        self,
        mode: CalendarSyncMode,
        project_ids: Iterable[str] = (),
    ) -> CalendarSyncPrefs:
        """Provision calendars and enable sync.

        Any failure leaves the engine in ERROR with the error recorded.

        Raises:
            AccessDenied: If calendar access is refused
            CalendarCreationError: If a managed calendar cannot be created
            CalendarSyncError: If the calendar store or task service fails
            ValueError: If per-project mode is requested without projects
        """
        project_map = ProjectCalendarMap()
        single_calendar = None
        try:
            mode = CalendarSyncMode(mode)
            project_ids = [str(p) for p in project_ids]
            if mode == CalendarSyncMode.PER_PROJECT and not project_ids:
                raise ValueError("Calendar per project mode needs at least one project")

            await self.calendar_manager.ensure_access()
            source = await self.calendar_manager.default_source()
            if mode == CalendarSyncMode.SINGLE:
                calendar = await self.calendar_manager.ensure_kuna_calendar(source)
                single_calendar = KunaCalendarRef(name=calendar.name, identifier=calendar.id)
            else:
                projects = await self._fetch_projects()
                calendars = await self.calendar_manager.ensure_project_calendars(
                    project_ids, projects, source
                )
                for project_id, calendar in calendars.items():
                    project_map.set(project_id, calendar.id)
        except (CalendarSyncError, ValueError) as e:
            self._onboarding = False
            self._base_state = EngineState.ERROR
            self.sync_errors.append(str(e))
            self.logger.error(f"Onboarding failed: {e}")
            raise

        self.prefs = CalendarSyncPrefs(
            is_enabled=True,
            mode=mode,
            selected_project_ids=project_ids,
            single_calendar=single_calendar,
        )
        self.project_calendars = project_map
        self.sync_state = SyncState()
        self.identity_map = IdentityMap()

        self.state_store.save_prefs(self.prefs)
        self.state_store.save_project_calendars(self.project_calendars)
        self.state_store.save_state(self.sync_state)
        self.state_store.save_identity_map(self.identity_map)

        self._generation += 1
        self._onboarding = False
        self._base_state = EngineState.ENABLED
        self.logger.info(
            f"Calendar sync enabled ({mode.display_name}, {len(self._calendar_ids())} calendars)"
        )
        return self.prefs

    async def _fetch_projects(self) -> List[Project]:
        try:
            return await self.task_service.fetch_projects()
        except CalendarSyncError as e:
            self.logger.warning(f"Could not fetch project titles, using ids: {e}")
            return []

    async def set_enabled_projects(self, project_ids: Iterable[str]) -> None:
        """Change the synced projects.

        In per-project mode calendars are provisioned for new projects and
        calendars of dropped projects are removed once empty.
        """
        project_ids = [str(p) for p in project_ids]
        previous = set(self.prefs.selected_project_ids)

        if self.is_enabled and self.prefs.mode == CalendarSyncMode.PER_PROJECT:
            if not project_ids:
                raise ValueError("Calendar per project mode needs at least one project")

            added = [p for p in project_ids if p not in self.project_calendars]
            if added:
                source = await self.calendar_manager.default_source()
                calendars = await self.calendar_manager.ensure_project_calendars(
                    added, await self._fetch_projects(), source
                )
                for project_id, calendar in calendars.items():
                    self.project_calendars.set(project_id, calendar.id)

            window = self.config.pull_window(self.clock())
            for project_id in previous - set(project_ids):
                calendar_id = self.project_calendars.remove(project_id)
                if calendar_id is None or calendar_id in self.project_calendars.calendar_ids:
                    continue
                try:
                    await self.calendar_manager.remove_calendar_if_empty(calendar_id, window)
                except CalendarSyncError as e:
                    self._record_error(None, f"Failed to remove calendar {calendar_id}: {e}")

            self.state_store.save_project_calendars(self.project_calendars)

        self.prefs = self.prefs.model_copy(update={'selected_project_ids': project_ids})
        self.state_store.save_prefs(self.prefs)

    # Calendars

    def _calendar_ids(self) -> List[str]:
        if self.prefs.mode == CalendarSyncMode.SINGLE:
            return [self.prefs.single_calendar.identifier] if self.prefs.single_calendar else []
        return self.project_calendars.calendar_ids

    def _calendar_for_task(self, task: Task) -> str:
        if self.prefs.mode == CalendarSyncMode.SINGLE:
            if self.prefs.single_calendar is None:
                raise CalendarStoreError("No calendar configured")
            return self.prefs.single_calendar.identifier
        calendar_id = self.project_calendars.calendar_for(task.project_id)
        if calendar_id is None:
            raise CalendarStoreError(f"No calendar for project {task.project_id}")
        return calendar_id

    # Error bookkeeping

    def _record_error(self, report: Optional[SyncReport], message: str) -> None:
        self.logger.warning(message)
        self.sync_errors.append(message)
        if report is not None:
            report.errors.append(message)

    def _record_failure(
        self,
        report: SyncReport,
        operation: SyncOperation,
        message: str,
        task_id: Optional[str] = None,
        event_id: Optional[str] = None,
    ) -> None:
        self._record_error(report, message)
        report.record(SyncResult(
            operation=operation,
            task_id=task_id,
            event_id=event_id,
            success=False,
            error_message=message,
        ))

    def _finish(self, report: SyncReport) -> None:
        report.completed_at = self.clock()
        self.last_reports.append(report)
        self.logger.info(
            f"{report.direction.value} pass {report.sync_id}: "
            f"{report.created} created, {report.updated} updated, {report.deleted} deleted, "
            f"{report.patched} patched, {len(report.errors)} errors"
        )

    # Pull: tasks -> calendar

    async def pull_sync(self) -> Optional[SyncReport]:
        """Write task changes into calendar events.

        Returns:
            The pass report, or None when sync is off or a pull is already running
        """
        if not self.is_enabled:
            self.logger.debug("Pull skipped: sync is not enabled")
            return None
        if self._pull_running:
            self.logger.debug("Pull skipped: a pull pass is already running")
            return None

        self._pull_running = True
        generation = self._generation
        report = SyncReport(direction=SyncDirection.PULL, started_at=self.clock())
        try:
            await self._pull(generation, report)
        finally:
            self._pull_running = False
            if generation == self._generation:
                self.state_store.save_identity_map(self.identity_map)
            self._finish(report)
        return report

    async def _fetch_tasks(
        self,
        since: Optional[datetime],
        window: TimeWindow,
        report: SyncReport,
    ) -> Tuple[List[Task], bool]:
        """Fetch tasks per project concurrently.

        With no project selection every project is fetched, one branch each,
        so a failing project does not hide the others.

        Returns:
            Tuple of (tasks, whether every branch succeeded)
        """
        project_ids = list(self.prefs.selected_project_ids)
        if not project_ids:
            try:
                project_ids = [p.id for p in await self.task_service.fetch_projects()]
            except CalendarSyncError as e:
                self._record_error(report, f"Fetching projects failed: {e}")
                return [], False
        branches = [[project_id] for project_id in project_ids] or [[]]
        results = await asyncio.gather(
            *(self.task_service.fetch_tasks(since, branch, window) for branch in branches),
            return_exceptions=True,
        )

        clean = True
        latest: Dict[str, Task] = {}
        for branch, result in zip(branches, results):
            if isinstance(result, BaseException):
                if not isinstance(result, Exception):
                    raise result
                clean = False
                label = branch[0] if branch else "all"
                self._record_error(report, f"Fetching tasks for project {label} failed: {result}")
                continue
            for task in result:
                current = latest.get(task.id)
                if current is None or task.updated_at >= current.updated_at:
                    latest[task.id] = task
        return list(latest.values()), clean

    async def _pull(self, generation: int, report: SyncReport) -> None:
        window = self.config.pull_window(self.clock())
        since = self.sync_state.remote_cursor
        tasks, clean = await self._fetch_tasks(since, window, report)

        try:
            existing = await self.calendar_store.list_events(
                self._calendar_ids(),
                window.start - LISTING_MARGIN,
                window.end + LISTING_MARGIN,
            )
        except CalendarSyncError as e:
            self._record_error(report, f"Failed to list calendar events: {e}")
            return

        by_id = {e.id: e for e in existing if e.id}
        by_task: Dict[str, CalendarEvent] = {}
        for event in existing:
            try:
                task_id = self.mapper.task_id_for(event)
            except InvalidTaskId:
                continue
            if task_id is not None:
                by_task.setdefault(task_id, event)

        newest = since
        for task in tasks:
            if newest is None or task.updated_at > newest:
                newest = task.updated_at
            try:
                await self._upsert(task, window, by_id, by_task, report)
            except CalendarSyncError as e:
                clean = False
                self._record_failure(
                    report, SyncOperation.UPDATE,
                    f"Failed to sync task {task.id}: {e}", task_id=task.id,
                )

        try:
            await self.calendar_store.commit()
        except CalendarSyncError as e:
            clean = False
            self._record_error(report, f"Failed to commit calendar changes: {e}")

        if generation != self._generation:
            self.logger.info("Sync was reset during the pull; cursor not saved")
            return
        if clean and newest is not None and (since is None or newest > since):
            self.sync_state.remote_cursor = newest
            self.state_store.save_state(self.sync_state)
            report.cursor_advanced = True

    def _find_event(
        self,
        task_id: str,
        by_id: Dict[str, CalendarEvent],
        by_task: Dict[str, CalendarEvent],
    ) -> Optional[CalendarEvent]:
        event_id = self.identity_map.event_for_task(task_id)
        if event_id is not None and event_id in by_id:
            return by_id[event_id]

        # event identifiers can churn; the identity marker cannot
        event = by_task.get(task_id)
        if event is not None and event.id:
            self.identity_map.add_mapping(task_id, event.id)
        return event

    async def _upsert(
        self,
        task: Task,
        window: TimeWindow,
        by_id: Dict[str, CalendarEvent],
        by_task: Dict[str, CalendarEvent],
        report: SyncReport,
    ) -> None:
        event = self._find_event(task.id, by_id, by_task)

        if task.deleted or not window.contains(task.due_date):
            if event is not None:
                await self.calendar_store.delete_event(event)
                report.record(SyncResult(
                    operation=SyncOperation.DELETE,
                    task_id=task.id,
                    event_id=event.id,
                    title=task.title,
                ))
            if task.deleted or event is not None:
                self.identity_map.remove_mapping(task_id=task.id)
            return

        calendar_id = self._calendar_for_task(task)
        if event is not None and event.calendar_id != calendar_id:
            # project moved to another calendar
            await self.calendar_store.delete_event(event)
            self.identity_map.remove_mapping(task_id=task.id)
            event = None

        if event is None:
            operation = SyncOperation.CREATE
            candidate = CalendarEvent(calendar_id=calendar_id)
        else:
            operation = SyncOperation.UPDATE
            candidate = event.model_copy(deep=True)

        if not self.mapper.apply(task, candidate):
            return

        if (
            event is not None
            and candidate.notes == event.notes
            and candidate.url == event.url
            and EventSnapshot.capture(candidate) == EventSnapshot.capture(event)
        ):
            self.identity_map.add_mapping(task.id, event.id, EventSnapshot.capture(event))
            report.record(SyncResult(
                operation=SyncOperation.SKIP, task_id=task.id, event_id=event.id, title=task.title,
            ))
            return

        saved = await self.calendar_store.save_event(candidate)
        self.identity_map.add_mapping(task.id, saved.id, EventSnapshot.capture(saved))
        report.record(SyncResult(
            operation=operation, task_id=task.id, event_id=saved.id, title=task.title,
        ))

    # Push: calendar -> tasks

    async def push_sync(self) -> Optional[SyncReport]:
        """Send user edits made on managed events back to the task service.

        The scan timestamp advances to the pass start even when some events
        failed; those events are only retried once they change again.

        Returns:
            The pass report, or None when sync is off or a push is already running
        """
        if not self.is_enabled:
            self.logger.debug("Push skipped: sync is not enabled")
            return None
        if self._push_running:
            self.logger.debug("Push skipped: a push pass is already running")
            return None

        self._push_running = True
        generation = self._generation
        started = self.clock()
        report = SyncReport(direction=SyncDirection.PUSH, started_at=started)
        try:
            await self._push(generation, started, report)
        finally:
            self._push_running = False
            if generation == self._generation:
                self.state_store.save_identity_map(self.identity_map)
            self._finish(report)
        return report

    async def _push(self, generation: int, started: datetime, report: SyncReport) -> None:
        window = self.config.push_window(started)
        last_scan = self.sync_state.last_local_scan_at
        try:
            events = await self.calendar_manager.events_changed_since(
                self._calendar_ids(), last_scan, window
            )
        except CalendarSyncError as e:
            self._record_error(report, f"Failed to scan calendar events: {e}")
            return

        for event in events:
            await self._push_event(event, report)

        try:
            await self.calendar_store.commit()
        except CalendarSyncError as e:
            self._record_error(report, f"Failed to commit calendar changes: {e}")

        if generation != self._generation:
            self.logger.info("Sync was reset during the push; scan time not saved")
            return
        started = ensure_utc(started)
        if last_scan is None or started > last_scan:
            self.sync_state.last_local_scan_at = started
            self.state_store.save_state(self.sync_state)
            report.cursor_advanced = True

    async def _push_event(self, event: CalendarEvent, report: SyncReport) -> None:
        baseline = self.identity_map.snapshot_for(event.id) if event.id else None
        try:
            patch = self.mapper.extract_edits(event, baseline)
        except InvalidTaskId as e:
            self._record_failure(
                report, SyncOperation.PATCH, f"Event {event.id}: {e}", event_id=event.id,
            )
            return
        if patch is None:
            return

        try:
            task = await self.task_service.patch_task(patch)
        except CalendarSyncError as e:
            self._record_failure(
                report, SyncOperation.PATCH,
                f"Failed to patch task {patch.id}: {e}", task_id=patch.id, event_id=event.id,
            )
            return

        refreshed = event.model_copy(deep=True)
        if not self.mapper.apply(task, refreshed):
            refreshed = event.model_copy(deep=True)
            self.mapper.stamp(refreshed)

        try:
            saved = await self.calendar_store.save_event(refreshed)
        except CalendarSyncError as e:
            self._record_failure(
                report, SyncOperation.PATCH,
                f"Patched task {task.id} but could not refresh its event: {e}",
                task_id=task.id, event_id=event.id,
            )
            return

        self.identity_map.add_mapping(task.id, saved.id, EventSnapshot.capture(saved))
        report.record(SyncResult(
            operation=SyncOperation.PATCH, task_id=task.id, event_id=saved.id, title=task.title,
        ))

    # Triggers

    async def resync_now(self) -> Tuple[Optional[SyncReport], Optional[SyncReport]]:
        """Pull, then push when two-way sync is on."""
        pull_report = await self.pull_sync()
        push_report = await self.push_sync() if self.two_way else None
        return pull_report, push_report

    def trigger_from_local_change(self) -> bool:
        """Debounce a push pass after a calendar change notification.

        Returns:
            True if a push was scheduled
        """
        if not self.is_enabled or not self.two_way:
            return False
        self.debouncer.schedule(self.config.debounce_seconds, self.push_sync)
        return True

    # Teardown

    async def disable_sync(
        self,
        disposition: DisableDisposition = DisableDisposition.KEEP_EVERYTHING,
    ) -> None:
        """Turn sync off, optionally deleting managed events and calendars."""
        disposition = DisableDisposition(disposition)
        self.debouncer.cancel()

        if disposition == DisableDisposition.DELETE_MANAGED_EVENTS:
            calendar_ids = list(self._calendar_ids())
            try:
                for calendar in await self.calendar_manager.managed_calendars():
                    if calendar.id not in calendar_ids:
                        calendar_ids.append(calendar.id)
            except CalendarSyncError as e:
                self._record_error(None, f"Failed to list managed calendars: {e}")

            deleted, errors = await self.calendar_manager.remove_managed_events(
                calendar_ids, self.clock()
            )
            errors.extend(await self.calendar_manager.delete_calendars(calendar_ids))
            for message in errors:
                self._record_error(None, message)
            self.logger.info(
                f"Removed {deleted} events and {len(calendar_ids)} managed calendars"
            )

        self._generation += 1
        self.state_store.clear()
        self.prefs = CalendarSyncPrefs()
        self.sync_state = SyncState()
        self.identity_map = IdentityMap()
        self.project_calendars = ProjectCalendarMap()
        self._base_state = EngineState.DISABLED
        self.logger.info(f"Calendar sync disabled ({disposition.value})")
