"""Tests for data models."""

import pytest
from datetime import datetime, timedelta

import pytz
from pydantic import ValidationError

from kuna_calsync.models import (
    CalendarEvent, CalendarSyncMode, CalendarSyncPrefs, KunaCalendarRef,
    SyncConfiguration, SyncDirection, SyncOperation, SyncReport, SyncResult,
    Task, TaskPatch, TimeWindow,
)


class TestTask:
    """Tests for Task model."""

    def test_timezone_validation(self):
        """Naive datetimes are taken as UTC."""
        task = Task(id="1", due_date=datetime(2024, 1, 1, 9, 0))
        assert task.due_date.tzinfo is not None
        assert task.due_date == datetime(2024, 1, 1, 9, 0, tzinfo=pytz.UTC)

    def test_task_is_immutable(self):
        task = Task(id="1", title="a")
        with pytest.raises(ValidationError):
            task.title = "b"


class TestCalendarEvent:

    def test_mutable_with_validation(self):
        event = CalendarEvent(calendar_id="c")
        event.start = datetime(2024, 1, 1)
        assert event.start.tzinfo is not None


def test_task_patch_changed_fields():
    assert TaskPatch(id="1").changed_fields() == set()
    assert TaskPatch(id="1", title="x", reminders=[]).changed_fields() == {"title", "reminders"}


class TestTimeWindow:

    def test_contains_is_inclusive(self):
        now = datetime(2024, 1, 1, tzinfo=pytz.UTC)
        window = TimeWindow.around(now, timedelta(days=1), timedelta(days=2))
        assert window.contains(now - timedelta(days=1))
        assert window.contains(now + timedelta(days=2))
        assert not window.contains(now + timedelta(days=2, microseconds=1))
        assert not window.contains(None)

    def test_configured_windows(self):
        now = datetime(2024, 1, 1, tzinfo=pytz.UTC)
        config = SyncConfiguration()
        assert config.pull_window(now).start == now - timedelta(days=56)
        assert config.pull_window(now).end == now + timedelta(days=365)
        assert config.push_window(now).start == now - timedelta(days=183)


class TestCalendarSyncPrefs:

    def test_single_needs_calendar(self):
        assert not CalendarSyncPrefs(mode=CalendarSyncMode.SINGLE).is_valid()
        prefs = CalendarSyncPrefs(single_calendar=KunaCalendarRef(name="Kuna", identifier="c"))
        assert prefs.is_valid()

    def test_per_project_needs_every_calendar(self):
        prefs = CalendarSyncPrefs(mode=CalendarSyncMode.PER_PROJECT, selected_project_ids=["1", "2"])
        assert not prefs.is_valid({"1": "a"})
        assert prefs.is_valid({"1": "a", "2": "b"})
        assert not CalendarSyncPrefs(mode=CalendarSyncMode.PER_PROJECT).is_valid({})


class TestSyncReport:
    """Tests for SyncReport model."""

    def test_counters_and_success_rate(self):
        report = SyncReport(direction=SyncDirection.PUSH)
        assert report.success_rate == 1.0

        report.record(SyncResult(operation=SyncOperation.PATCH))
        report.record(SyncResult(operation=SyncOperation.SKIP))
        report.record(SyncResult(operation=SyncOperation.PATCH, success=False, error_message="x"))

        assert report.patched == 1
        assert report.skipped == 1
        assert report.total_operations == 3
        assert report.success_rate == pytest.approx(2 / 3)


def test_unknown_timezone_rejected():
    with pytest.raises(ValidationError):
        SyncConfiguration(event_timezone="Mars/Olympus")
