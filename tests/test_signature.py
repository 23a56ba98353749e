"""Tests for content signatures."""

from datetime import datetime, timedelta

import pytz

from kuna_calsync.models import CalendarEvent
from kuna_calsync.signature import (
    SIGNATURE_MARKER,
    EventSignature,
    append_signature,
    compute_signature,
    extract_signature,
    strip_signature,
)

START = datetime(2024, 3, 1, 9, 0, tzinfo=pytz.UTC)


def test_signature_is_sixteen_hex_chars():
    sig = compute_signature("Title", START, START + timedelta(hours=1), False, [], "notes")
    assert len(sig) == 16
    assert all(c in "0123456789abcdef" for c in sig)


def test_signature_is_deterministic_and_ignores_alarm_order():
    a = compute_signature("T", START, START, False, [300, -600], "n")
    b = compute_signature("T", START, START, False, [-600.0, 300.0], "n")
    assert a == b


def test_signature_ignores_embedded_signature_and_whitespace():
    plain = compute_signature("T", START, START, False, [], "notes")
    signed = compute_signature("T", START, START, False, [], "  notes \n" + SIGNATURE_MARKER + "0123456789abcdef")
    assert plain == signed


def test_signature_changes_with_each_field():
    base = compute_signature("T", START, START, False, [0], "n")
    assert compute_signature("U", START, START, False, [0], "n") != base
    assert compute_signature("T", START + timedelta(minutes=1), START, False, [0], "n") != base
    assert compute_signature("T", START, START, True, [0], "n") != base
    assert compute_signature("T", START, START, False, [60], "n") != base
    assert compute_signature("T", START, START, False, [0], "m") != base


def test_millisecond_precision_only():
    a = compute_signature("T", START.replace(microsecond=1000), None, False, [], "")
    b = compute_signature("T", START.replace(microsecond=1999), None, False, [], "")
    assert a == b


def test_extract_and_strip():
    notes = append_signature("Buy milk", "0123456789abcdef")
    assert notes == "Buy milk" + SIGNATURE_MARKER + "0123456789abcdef"
    assert extract_signature(notes) == "0123456789abcdef"
    assert strip_signature(notes) == "Buy milk"


def test_extract_rejects_malformed_tail():
    assert extract_signature("x" + SIGNATURE_MARKER + "not-hex") is None
    assert extract_signature("no marker here") is None
    assert extract_signature(None) is None


def test_append_replaces_existing_signature():
    notes = append_signature(append_signature("a", "0" * 16), "f" * 16)
    assert notes.count(SIGNATURE_MARKER) == 1
    assert extract_signature(notes) == "f" * 16


def test_of_event_matches_fields():
    event = CalendarEvent(
        calendar_id="c", title="T", start=START, end=START + timedelta(hours=1),
        alarms=[3600.0], notes="n",
    )
    assert EventSignature.of_event(event) == compute_signature(
        "T", START, START + timedelta(hours=1), False, [3600.0], "n"
    )
