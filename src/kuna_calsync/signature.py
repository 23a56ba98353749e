"""Content fingerprints used to tell our own calendar writes from user edits.

An event is "our own last write, unmodified since" exactly when the signature
embedded in its notes equals a freshly computed signature of its current
content. The check is a pure function of the event fields, so it holds across
restarts and arbitrary notification delays.
"""

import hashlib
import re
from datetime import datetime
from typing import Iterable, Optional

import pytz

SIGNATURE_MARKER = "\n\n— KunaSig:"
SIGNATURE_LENGTH = 16

_SIGNATURE_RE = re.compile(r"^[0-9a-f]{%d}$" % SIGNATURE_LENGTH)


def _canonical_datetime(value: Optional[datetime]) -> str:
    if value is None:
        return ""
    if value.tzinfo is None:
        value = value.replace(tzinfo=pytz.UTC)
    value = value.astimezone(pytz.UTC)
    return value.strftime("%Y-%m-%dT%H:%M:%S.") + "%03dZ" % (value.microsecond // 1000)


def _canonical_offsets(offsets: Optional[Iterable[float]]) -> str:
    return ",".join(repr(float(o)) for o in sorted(float(o) for o in (offsets or [])))


def strip_signature(notes: Optional[str]) -> str:
    """Return notes without the embedded signature, whitespace-trimmed."""
    if not notes:
        return ""
    head, _, _ = notes.partition(SIGNATURE_MARKER)
    return head.strip()


def compute_signature(
    title: Optional[str],
    start: Optional[datetime],
    end: Optional[datetime],
    is_all_day: bool,
    alarm_offsets: Optional[Iterable[float]],
    notes: Optional[str],
) -> str:
    """Compute the 16 hex char fingerprint of the given event content."""
    parts = [
        title or "",
        _canonical_datetime(start),
        _canonical_datetime(end),
        "A1" if is_all_day else "A0",
        _canonical_offsets(alarm_offsets),
        strip_signature(notes),
    ]
    digest = hashlib.sha256("|".join(parts).encode("utf-8")).hexdigest()
    return digest[:SIGNATURE_LENGTH]


def extract_signature(notes: Optional[str]) -> Optional[str]:
    """Return the signature embedded in notes, or None if there is none."""
    if not notes:
        return None
    _, marker, tail = notes.partition(SIGNATURE_MARKER)
    if not marker:
        return None
    candidate = tail.strip()
    if not _SIGNATURE_RE.match(candidate):
        return None
    return candidate


def append_signature(notes: Optional[str], signature: str) -> str:
    """Replace any existing signature in notes with the given one."""
    return strip_signature(notes) + SIGNATURE_MARKER + signature


class EventSignature:
    """Namespace wrapper kept for call sites that prefer a class handle."""

    marker = SIGNATURE_MARKER
    compute = staticmethod(compute_signature)
    extract = staticmethod(extract_signature)
    strip = staticmethod(strip_signature)
    append = staticmethod(append_signature)

    @staticmethod
    def of_event(event) -> str:
        """Signature of an event's current content."""
        return compute_signature(
            event.title,
            event.start,
            event.end,
            event.all_day,
            event.alarms,
            event.notes,
        )
