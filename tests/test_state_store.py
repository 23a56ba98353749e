"""Tests for the sync state store."""

from datetime import datetime

import pytz

from kuna_calsync.identity import IdentityMap, ProjectCalendarMap
from kuna_calsync.models import CalendarSyncMode, CalendarSyncPrefs, KunaCalendarRef, SyncState
from kuna_calsync.state_store import (
    ALL_KEYS,
    IDENTITY_MAP_KEY,
    PREFS_KEY,
    STATE_KEY,
    MemoryKeyValueStore,
    SyncStateStore,
)


def test_defaults_when_empty(state_store):
    assert state_store.load_state() == SyncState()
    assert len(state_store.load_identity_map()) == 0
    assert not state_store.load_prefs().is_enabled


def test_round_trip(state_store):
    cursor = datetime(2024, 1, 1, 8, 30, tzinfo=pytz.UTC)
    state_store.save_state(SyncState(remote_cursor=cursor))

    identity_map = IdentityMap()
    identity_map.add_mapping("1", "evt-1")
    state_store.save_identity_map(identity_map)

    project_map = ProjectCalendarMap()
    project_map.set("7", "cal-7")
    state_store.save_project_calendars(project_map)

    prefs = CalendarSyncPrefs(
        is_enabled=True,
        mode=CalendarSyncMode.SINGLE,
        single_calendar=KunaCalendarRef(name="Kuna", identifier="cal-1"),
    )
    state_store.save_prefs(prefs)

    assert state_store.load_state().remote_cursor == cursor
    assert state_store.load_identity_map().event_for_task("1") == "evt-1"
    assert state_store.load_project_calendars().calendar_for("7") == "cal-7"
    assert state_store.load_prefs() == prefs


def test_corrupt_blob_reads_as_default():
    kv = MemoryKeyValueStore({
        STATE_KEY: b"{not json",
        IDENTITY_MAP_KEY: b"\xff\xfe",
        PREFS_KEY: b'{"mode": "sideways"}',
    })
    store = SyncStateStore(kv)

    assert store.load_state() == SyncState()
    assert len(store.load_identity_map()) == 0
    assert store.load_prefs() == CalendarSyncPrefs()


def test_clear_removes_every_document(kv, state_store):
    state_store.save_state(SyncState())
    state_store.save_prefs(CalendarSyncPrefs(is_enabled=True))
    state_store.clear()

    assert not any(key in kv.keys() for key in ALL_KEYS)
