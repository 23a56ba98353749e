"""CalDAV calendar store with async support."""

import asyncio
from datetime import date, datetime, time, timedelta
from typing import List, Optional, Sequence
from uuid import uuid4
import logging

import caldav
from caldav import DAVClient
from caldav.lib import error as caldav_error
import pytz
from icalendar import Alarm, Calendar, Event as ICalEvent

from .base import AccessDenied, CalendarCreationError, CalendarStore, CalendarStoreError
from ..models import CalendarEvent, CalendarInfo, CalendarSource, ensure_utc

logger = logging.getLogger(__name__)

PRODID = '-//Kuna CalSync//Kuna CalSync 1.0//EN'


def _run(func):
    return asyncio.get_event_loop().run_in_executor(None, func)


def event_to_ical(event: CalendarEvent, uid: str, now: datetime, tz=pytz.UTC) -> str:
    """Render an event as a VCALENDAR document."""
    cal = Calendar()
    cal.add('prodid', PRODID)
    cal.add('version', '2.0')

    vevent = ICalEvent()
    vevent.add('uid', uid)
    vevent.add('summary', event.title)

    if event.all_day:
        vevent.add('dtstart', ensure_utc(event.start).astimezone(tz).date())
        vevent.add('dtend', ensure_utc(event.end).astimezone(tz).date())
    else:
        vevent.add('dtstart', ensure_utc(event.start).astimezone(pytz.UTC))
        vevent.add('dtend', ensure_utc(event.end).astimezone(pytz.UTC))

    if event.notes:
        vevent.add('description', event.notes)
    if event.url:
        vevent.add('url', event.url)

    vevent.add('dtstamp', now)
    vevent.add('last-modified', now)

    for offset in event.alarms:
        alarm = Alarm()
        alarm.add('action', 'DISPLAY')
        alarm.add('description', event.title or 'Reminder')
        alarm.add('trigger', timedelta(seconds=offset))
        vevent.add_component(alarm)

    cal.add_component(vevent)
    return cal.to_ical().decode('utf-8')


def _as_datetime(value, tz) -> datetime:
    if isinstance(value, datetime):
        return ensure_utc(value).astimezone(pytz.UTC)
    return tz.localize(datetime.combine(value, time.min)).astimezone(pytz.UTC)


def event_from_ical(data, calendar_id: str, tz=pytz.UTC) -> Optional[CalendarEvent]:
    """Parse the first VEVENT of a VCALENDAR document. Returns None if there is none."""
    cal = Calendar.from_ical(data)
    vevent = None
    for component in cal.walk('VEVENT'):
        vevent = component
        break
    if vevent is None or vevent.get('dtstart') is None:
        return None

    start_value = vevent.get('dtstart').dt
    all_day = isinstance(start_value, date) and not isinstance(start_value, datetime)
    start = _as_datetime(start_value, tz)

    dtend = vevent.get('dtend')
    if dtend is not None:
        end = _as_datetime(dtend.dt, tz)
    elif all_day:
        end = start + timedelta(days=1)
    else:
        end = start

    alarms: List[float] = []
    for alarm in vevent.walk('VALARM'):
        trigger = alarm.get('trigger')
        if trigger is None:
            continue
        value = trigger.dt
        if isinstance(value, timedelta):
            alarms.append(value.total_seconds())
        elif isinstance(value, datetime):
            alarms.append((ensure_utc(value) - start).total_seconds())

    last_modified = vevent.get('last-modified')
    description = vevent.get('description')
    url = vevent.get('url')

    return CalendarEvent(
        id=str(vevent.get('uid')) if vevent.get('uid') else None,
        calendar_id=calendar_id,
        title=str(vevent.get('summary', '')),
        start=start,
        end=end,
        all_day=all_day,
        alarms=alarms,
        notes=str(description) if description is not None else None,
        url=str(url) if url is not None else None,
        last_modified=ensure_utc(last_modified.dt) if last_modified is not None else None,
    )


class CalDAVCalendarStore(CalendarStore):
    """Calendar store on a CalDAV server. Blocking caldav calls run in the default executor."""

    def __init__(self, url: str, username: str, password: str, tz=pytz.UTC):
        self.url = url
        self.username = username
        self.password = password
        self.tz = tz
        self.client = None
        self.principal = None
        self.logger = logger.getChild('caldav')

    @classmethod
    def from_settings(cls, settings) -> "CalDAVCalendarStore":
        return cls(
            settings.caldav_url,
            settings.caldav_username,
            settings.caldav_password,
            tz=settings.sync_config.tz,
        )

    async def _connect(self) -> None:
        if self.principal is not None:
            return
        self.client = await _run(
            lambda: DAVClient(url=self.url, username=self.username, password=self.password)
        )
        try:
            self.principal = await _run(lambda: self.client.principal())
        except caldav_error.AuthorizationError as e:
            raise AccessDenied(f"CalDAV server refused access: {e}")
        except caldav_error.DAVError as e:
            raise CalendarStoreError(f"Failed to connect to CalDAV server: {e}")
        self.logger.info(f"Connected to CalDAV server {self.url}")

    async def request_access(self) -> bool:
        try:
            await self._connect()
        except AccessDenied as e:
            self.logger.warning(str(e))
            return False
        return True

    async def writable_sources(self) -> List[CalendarSource]:
        await self._connect()
        return [CalendarSource(id=str(self.principal.url), title=self.username or self.url)]

    async def _calendars(self):
        await self._connect()
        try:
            return await _run(lambda: self.principal.calendars())
        except caldav_error.DAVError as e:
            raise CalendarStoreError(f"Failed to list calendars: {e}")

    async def _calendar_name(self, calendar) -> str:
        props = await _run(lambda: calendar.get_properties([caldav.dav.DisplayName()]))
        return props.get(caldav.dav.DisplayName.tag) or str(calendar.url)

    async def _find_calendar(self, calendar_id: str):
        for calendar in await self._calendars():
            if str(calendar.url) == calendar_id:
                return calendar
        raise CalendarStoreError(f"Calendar {calendar_id} not found")

    async def list_calendars(self) -> List[CalendarInfo]:
        infos = []
        for calendar in await self._calendars():
            infos.append(CalendarInfo(
                id=str(calendar.url),
                name=await self._calendar_name(calendar),
                source_id=str(self.principal.url),
            ))
        return infos

    async def find_or_create_calendar(self, name: str, source: CalendarSource) -> CalendarInfo:
        for info in await self.list_calendars():
            if info.name == name:
                return info

        try:
            calendar = await _run(lambda: self.principal.make_calendar(name=name))
        except caldav_error.DAVError as e:
            raise CalendarCreationError(f"Failed to create calendar {name!r}: {e}")
        self.logger.info(f"Created calendar {name!r}")
        return CalendarInfo(id=str(calendar.url), name=name, source_id=source.id)

    async def list_events(
        self,
        calendar_ids: Sequence[str],
        start: datetime,
        end: datetime,
    ) -> List[CalendarEvent]:
        events: List[CalendarEvent] = []
        for calendar_id in calendar_ids:
            calendar = await self._find_calendar(calendar_id)
            try:
                resources = await _run(
                    lambda: calendar.search(start=start, end=end, event=True, expand=False)
                )
            except caldav_error.DAVError as e:
                raise CalendarStoreError(f"Failed to list events in {calendar_id}: {e}")

            for resource in resources:
                parsed = event_from_ical(resource.data, calendar_id, self.tz)
                if parsed is not None:
                    events.append(parsed)
        return events

    async def save_event(self, event: CalendarEvent) -> CalendarEvent:
        calendar = await self._find_calendar(event.calendar_id)
        now = datetime.now(pytz.UTC).replace(microsecond=0)
        uid = event.id or f"{uuid4()}@kuna-calsync"
        ical = event_to_ical(event, uid, now, self.tz)

        existing = None
        if event.id:
            try:
                existing = await _run(lambda: calendar.event_by_uid(uid))
            except caldav_error.NotFoundError:
                existing = None

        try:
            if existing is not None:
                existing.data = ical
                await _run(existing.save)
            else:
                await _run(lambda: calendar.save_event(ical))
        except caldav_error.DAVError as e:
            raise CalendarStoreError(f"Failed to save event {event.title!r}: {e}")

        saved = event.model_copy(deep=True)
        saved.id = uid
        saved.last_modified = now
        return saved

    async def delete_event(self, event: CalendarEvent) -> None:
        if not event.id:
            return
        calendar = await self._find_calendar(event.calendar_id)
        try:
            resource = await _run(lambda: calendar.event_by_uid(event.id))
        except caldav_error.NotFoundError:
            self.logger.debug(f"Event {event.id} already gone")
            return
        try:
            await _run(resource.delete)
        except caldav_error.DAVError as e:
            raise CalendarStoreError(f"Failed to delete event {event.id}: {e}")

    async def delete_calendar(self, calendar_id: str) -> None:
        calendar = await self._find_calendar(calendar_id)
        try:
            await _run(calendar.delete)
        except caldav_error.DAVError as e:
            raise CalendarStoreError(f"Failed to delete calendar {calendar_id}: {e}")
