"""Tests for iCalendar conversion used by the CalDAV store."""

from datetime import datetime, timedelta

import pytz
from icalendar import Calendar

from kuna_calsync.models import CalendarEvent
from kuna_calsync.services.caldav_store import event_from_ical, event_to_ical

NOW = datetime(2024, 2, 15, 12, 0, tzinfo=pytz.UTC)
START = datetime(2024, 3, 1, 16, 0, tzinfo=pytz.UTC)


def test_timed_event_conversion():
    event = CalendarEvent(
        calendar_id="cal",
        title="Call Bob",
        start=START,
        end=START + timedelta(hours=1),
        alarms=[2700.0],
        notes="agenda",
        url="kuna://task/42?project=7",
    )

    ical = event_to_ical(event, "uid-1@kuna-calsync", NOW)
    parsed = event_from_ical(ical, "cal")

    assert parsed.id == "uid-1@kuna-calsync"
    assert parsed.title == "Call Bob"
    assert parsed.start == START
    assert parsed.end == START + timedelta(hours=1)
    assert not parsed.all_day
    assert parsed.alarms == [2700.0]
    assert parsed.notes == "agenda"
    assert parsed.url == "kuna://task/42?project=7"
    assert parsed.last_modified == NOW


def test_all_day_event_uses_dates():
    berlin = pytz.timezone("Europe/Berlin")
    start = berlin.localize(datetime(2024, 3, 1)).astimezone(pytz.UTC)
    event = CalendarEvent(
        calendar_id="cal", title="Holiday", all_day=True,
        start=start, end=start + timedelta(days=1), alarms=[-3600.0],
    )

    ical = event_to_ical(event, "uid-2", NOW, berlin)
    vevent = next(iter(Calendar.from_ical(ical).walk('VEVENT')))
    assert "DTSTART;VALUE=DATE:20240301" in ical.replace("\r\n", "\n")
    assert vevent.get('dtend').dt.isoformat() == "2024-03-02"

    parsed = event_from_ical(ical, "cal", berlin)
    assert parsed.all_day
    assert parsed.start == start
    assert parsed.end == start + timedelta(days=1)
    assert parsed.alarms == [-3600.0]


def test_missing_dtend_defaults():
    ical = (
        "BEGIN:VCALENDAR\r\nVERSION:2.0\r\nPRODID:test\r\n"
        "BEGIN:VEVENT\r\nUID:x\r\nSUMMARY:Day\r\nDTSTART;VALUE=DATE:20240301\r\n"
        "END:VEVENT\r\nEND:VCALENDAR\r\n"
    )
    parsed = event_from_ical(ical, "cal")
    assert parsed.all_day
    assert parsed.end - parsed.start == timedelta(days=1)
    assert parsed.url is None


def test_calendar_without_event():
    ical = "BEGIN:VCALENDAR\r\nVERSION:2.0\r\nPRODID:test\r\nEND:VCALENDAR\r\n"
    assert event_from_ical(ical, "cal") is None
