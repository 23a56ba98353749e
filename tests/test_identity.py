"""Tests for identity markers and the identity map."""

import pytest

from kuna_calsync.identity import (
    IdentityMap,
    IdentityMapDocument,
    ProjectCalendarMap,
    build_identity_marker,
    is_identity_marker,
    parse_identity_marker,
)
from kuna_calsync.models import EventSnapshot
from kuna_calsync.services.base import InvalidTaskId


class TestIdentityMarker:

    def test_build_and_parse(self):
        url = build_identity_marker("123", "45")
        assert url == "kuna://task/123?project=45"
        assert parse_identity_marker(url) == ("123", "45")

    def test_missing_project(self):
        assert parse_identity_marker("kuna://task/123") == ("123", "")

    def test_foreign_urls(self):
        assert parse_identity_marker("https://example.com/task/1") is None
        assert parse_identity_marker("kuna://other/1") is None
        assert parse_identity_marker(None) is None
        assert not is_identity_marker("https://example.com")

    def test_malformed_task_id(self):
        assert is_identity_marker("kuna://task/")
        with pytest.raises(InvalidTaskId):
            parse_identity_marker("kuna://task/")
        with pytest.raises(InvalidTaskId):
            parse_identity_marker("kuna://task/a/b")

    def test_build_rejects_bad_ids(self):
        with pytest.raises(InvalidTaskId):
            build_identity_marker("")
        with pytest.raises(InvalidTaskId):
            build_identity_marker("a b")


class TestIdentityMap:

    def test_one_to_one(self):
        identity_map = IdentityMap()
        identity_map.add_mapping("t1", "e1")
        identity_map.add_mapping("t1", "e2")

        assert identity_map.event_for_task("t1") == "e2"
        assert identity_map.task_for_event("e1") is None
        assert len(identity_map) == 1

    def test_event_reassigned_to_other_task(self):
        identity_map = IdentityMap()
        identity_map.add_mapping("t1", "e1")
        identity_map.add_mapping("t2", "e1")

        assert identity_map.event_for_task("t1") is None
        assert identity_map.task_for_event("e1") == "t2"

    def test_snapshot_follows_event(self):
        identity_map = IdentityMap()
        snapshot = EventSnapshot(title="x")
        identity_map.add_mapping("t1", "e1", snapshot)
        assert identity_map.snapshot_for("e1") == snapshot

        identity_map.add_mapping("t1", "e2")
        assert identity_map.snapshot_for("e1") is None

    def test_remove_by_either_side(self):
        identity_map = IdentityMap()
        identity_map.add_mapping("t1", "e1")
        identity_map.add_mapping("t2", "e2")

        assert identity_map.remove_mapping(task_id="t1")
        assert identity_map.remove_mapping(event_id="e2")
        assert not identity_map.remove_mapping(task_id="t1")
        assert len(identity_map) == 0

    def test_remove_requires_exactly_one_key(self):
        with pytest.raises(ValueError):
            IdentityMap().remove_mapping()

    def test_document_round_trip_repairs(self):
        document = IdentityMapDocument(
            task_to_event={"t1": "e1", "t2": "e1"},
            event_to_task={"e1": "t2", "e3": "t3"},
        )
        identity_map = IdentityMap.from_document(document)

        assert identity_map.task_for_event("e1") == "t2"
        assert identity_map.event_for_task("t1") is None
        assert identity_map.event_for_task("t3") == "e3"


def test_project_calendar_map_dedupes_calendar_ids():
    project_map = ProjectCalendarMap()
    project_map.set("1", "cal-a")
    project_map.set("2", "cal-a")
    project_map.set("3", "cal-b")

    assert project_map.calendar_ids == ["cal-a", "cal-b"]
    assert project_map.remove("1") == "cal-a"
    assert project_map.project_ids == ["2", "3"]
