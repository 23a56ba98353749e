"""Translation between tasks and calendar events."""

from datetime import datetime, timedelta
from typing import List, Optional
import logging

import pytz

from .identity import build_identity_marker, parse_identity_marker
from .models import CalendarEvent, EventSnapshot, Task, TaskPatch, ensure_utc
from .signature import EventSignature, extract_signature, strip_signature

logger = logging.getLogger(__name__)

TIMED_BLOCK = timedelta(hours=1)
ALL_DAY_SPAN = timedelta(hours=24)
ALARM_SHIFT_SECONDS = 3600.0


class TaskEventMapper:
    """Maps tasks onto events and detects user edits on mapped events.

    Timed tasks become a one hour block ending at the due instant, so alarm
    offsets (relative to the due date on the task) are shifted by an hour to
    stay relative to the event start. All-day tasks span the whole day in the
    configured timezone and keep their offsets unchanged.
    """

    def __init__(self, tz=None):
        self.tz = tz or pytz.UTC
        self.logger = logger.getChild('mapper')

    def start_of_day(self, moment: datetime) -> datetime:
        local = ensure_utc(moment).astimezone(self.tz)
        midnight = self.tz.localize(datetime(local.year, local.month, local.day))
        return midnight.astimezone(pytz.UTC)

    def apply(self, task: Task, event: CalendarEvent) -> bool:
        """Write the task into the event.

        Returns:
            False, leaving the event untouched, when the task has no due date
        """
        if task.due_date is None:
            return False

        due = ensure_utc(task.due_date)
        event.title = task.title
        if task.is_all_day:
            start = self.start_of_day(due)
            event.all_day = True
            event.start = start
            event.end = start + ALL_DAY_SPAN
        else:
            event.all_day = False
            event.start = due - TIMED_BLOCK
            event.end = due

        event.alarms = [self._alarm_from_reminder(r, task.is_all_day) for r in task.reminders]
        event.url = build_identity_marker(task.id, task.project_id)
        event.notes = strip_signature(task.notes)
        self.stamp(event)
        return True

    def stamp(self, event: CalendarEvent) -> None:
        """Embed the signature of the event's current content into its notes."""
        event.notes = EventSignature.append(event.notes, EventSignature.of_event(event))

    def is_own_write(self, event: CalendarEvent) -> bool:
        """True when the event still carries the signature of its current content."""
        embedded = extract_signature(event.notes)
        return embedded is not None and embedded == EventSignature.of_event(event)

    def task_id_for(self, event: CalendarEvent) -> Optional[str]:
        """Task id from the identity marker, None for foreign events.

        Raises:
            InvalidTaskId: If the marker uses our scheme but is malformed
        """
        parsed = parse_identity_marker(event.url)
        return parsed[0] if parsed else None

    def extract_edits(
        self,
        event: CalendarEvent,
        baseline: Optional[EventSnapshot] = None,
    ) -> Optional[TaskPatch]:
        """Return the task patch for a user edit, or None when there is none.

        Without a baseline every field is reported. With the snapshot of the
        engine's last write only the fields that differ are set; the due date
        and all-day flag are reported together whenever the timing changed.

        Raises:
            InvalidTaskId: If the marker uses our scheme but is malformed
        """
        task_id = self.task_id_for(event)
        if task_id is None:
            return None
        if self.is_own_write(event):
            return None

        if baseline is None:
            return TaskPatch(
                id=task_id,
                title=event.title,
                notes=strip_signature(event.notes),
                due_date=self._due_from_event(event),
                is_all_day=event.all_day,
                reminders=self._reminders_from_event(event) or None,
            )

        current = EventSnapshot.capture(event)
        patch = TaskPatch(id=task_id)
        if current.title != baseline.title:
            patch.title = current.title
        if current.notes != baseline.notes:
            patch.notes = current.notes
        if not current.same_timing(baseline):
            patch.due_date = self._due_from_event(event)
            patch.is_all_day = event.all_day
        if current.alarms != baseline.alarms or current.all_day != baseline.all_day:
            patch.reminders = self._reminders_from_event(event)

        if not patch.changed_fields():
            self.logger.debug(f"Event {event.id} changed outside of tracked fields")
            return None
        return patch

    def _alarm_from_reminder(self, offset: float, all_day: bool) -> float:
        return float(offset) if all_day else float(offset) + ALARM_SHIFT_SECONDS

    def _reminders_from_event(self, event: CalendarEvent) -> List[float]:
        if event.all_day:
            return [float(a) for a in event.alarms]
        return [float(a) - ALARM_SHIFT_SECONDS for a in event.alarms]

    def _due_from_event(self, event: CalendarEvent) -> Optional[datetime]:
        if event.all_day:
            return self.start_of_day(event.start) if event.start else None
        if event.end is not None:
            return event.end
        if event.start is not None:
            return ensure_utc(event.start) + TIMED_BLOCK
        return None
