"""Tests for managed calendar provisioning and housekeeping."""

from datetime import timedelta

import pytest

from conftest import NOW
from kuna_calsync.calendar_manager import CalendarManager
from kuna_calsync.models import CalendarEvent, Project, SyncConfiguration
from kuna_calsync.services.base import AccessDenied, CalendarCreationError


@pytest.fixture
def manager(calendar_store):
    return CalendarManager(calendar_store, SyncConfiguration(per_project_soft_cap=2))


def test_project_calendar_names(manager):
    assert manager.project_calendar_name("5", Project(id="5", title="Garden")) == "Kuna: Garden"
    assert manager.project_calendar_name("5") == "Kuna: Project 5"
    assert manager.is_managed_name("Kuna")
    assert manager.is_managed_name("Kuna: Garden")
    assert not manager.is_managed_name("Kunafa recipes")


@pytest.mark.asyncio
async def test_ensure_access(manager, calendar_store):
    await manager.ensure_access()
    calendar_store.access = False
    with pytest.raises(AccessDenied):
        await manager.ensure_access()


@pytest.mark.asyncio
async def test_creation_errors_are_wrapped(manager, calendar_store):
    calendar_store.fail_create = True
    with pytest.raises(CalendarCreationError):
        await manager.ensure_kuna_calendar(calendar_store.sources[0])


@pytest.mark.asyncio
async def test_soft_cap_only_warns(manager, calendar_store, caplog):
    calendars = await manager.ensure_project_calendars(
        ["1", "2", "3"], [], calendar_store.sources[0]
    )
    assert len(calendars) == 3
    assert "more than 2 calendars" in caplog.text


@pytest.mark.asyncio
async def test_events_changed_since(manager, calendar_store, clock):
    info = await manager.ensure_kuna_calendar(calendar_store.sources[0])
    window = SyncConfiguration().push_window(NOW)
    calendar_store.events["old"] = CalendarEvent(
        id="old", calendar_id=info.id, start=NOW, end=NOW, url="kuna://task/1",
        last_modified=NOW - timedelta(hours=1),
    )
    calendar_store.events["new"] = CalendarEvent(
        id="new", calendar_id=info.id, start=NOW, end=NOW, url="kuna://task/2",
        last_modified=NOW + timedelta(hours=1),
    )
    calendar_store.events["foreign"] = CalendarEvent(
        id="foreign", calendar_id=info.id, start=NOW, end=NOW,
        last_modified=NOW + timedelta(hours=1),
    )

    changed = await manager.events_changed_since([info.id], NOW, window)
    assert [e.id for e in changed] == ["new"]

    everything = await manager.events_changed_since([info.id], None, window)
    assert sorted(e.id for e in everything) == ["new", "old"]


@pytest.mark.asyncio
async def test_remove_calendar_if_empty(manager, calendar_store):
    info = await manager.ensure_kuna_calendar(calendar_store.sources[0])
    window = SyncConfiguration().pull_window(NOW)
    calendar_store.events["e"] = CalendarEvent(id="e", calendar_id=info.id, start=NOW, end=NOW)

    assert not await manager.remove_calendar_if_empty(info.id, window)
    del calendar_store.events["e"]
    assert await manager.remove_calendar_if_empty(info.id, window)
    assert calendar_store.calendars == {}
