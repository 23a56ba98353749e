"""Task/event associations and the identity marker stored on events."""

import logging
import re
from typing import Dict, List, Optional, Tuple
from urllib.parse import parse_qs, urlencode, urlsplit

from pydantic import BaseModel, Field

from .models import EventSnapshot
from .services.base import InvalidTaskId

logger = logging.getLogger(__name__)

IDENTITY_SCHEME = "kuna"
IDENTITY_HOST = "task"

_TASK_ID_RE = re.compile(r"^[A-Za-z0-9_.-]+$")


def build_identity_marker(task_id: str, project_id: Optional[str] = None) -> str:
    """Build ``kuna://task/<taskId>?project=<projectId>``."""
    if not task_id or not _TASK_ID_RE.match(str(task_id)):
        raise InvalidTaskId(f"Cannot build identity marker for task id {task_id!r}")
    query = urlencode({"project": project_id or ""})
    return f"{IDENTITY_SCHEME}://{IDENTITY_HOST}/{task_id}?{query}"


def is_identity_marker(url: Optional[str]) -> bool:
    """True when the URL uses our scheme, whether or not it is well formed."""
    if not url:
        return False
    try:
        parts = urlsplit(url.strip())
    except ValueError:
        return False
    return parts.scheme == IDENTITY_SCHEME and parts.netloc == IDENTITY_HOST


def parse_identity_marker(url: Optional[str]) -> Optional[Tuple[str, str]]:
    """Return (task_id, project_id) for our markers, None for foreign URLs.

    Raises:
        InvalidTaskId: If the URL uses our scheme but the task id is malformed
    """
    if not url:
        return None
    try:
        parts = urlsplit(url.strip())
    except ValueError:
        return None
    if parts.scheme != IDENTITY_SCHEME or parts.netloc != IDENTITY_HOST:
        return None

    task_id = parts.path[1:] if parts.path.startswith("/") else parts.path
    if not task_id or not _TASK_ID_RE.match(task_id):
        raise InvalidTaskId(f"Malformed identity marker: {url}")

    project_id = parse_qs(parts.query).get("project", [""])[0]
    return task_id, project_id


class IdentityMapDocument(BaseModel):
    """Persisted form of the identity map."""

    version: int = 1
    task_to_event: Dict[str, str] = Field(default_factory=dict)
    event_to_task: Dict[str, str] = Field(default_factory=dict)
    snapshots: Dict[str, EventSnapshot] = Field(default_factory=dict)


class IdentityMap:
    """Bidirectional task id <-> event id association.

    At most one live association exists per task id and per event id. Each
    association may carry the snapshot of the event as the engine last wrote
    it, keyed by event id.
    """

    def __init__(self):
        self._task_to_event: Dict[str, str] = {}
        self._event_to_task: Dict[str, str] = {}
        self._snapshots: Dict[str, EventSnapshot] = {}

    def __len__(self) -> int:
        return len(self._task_to_event)

    def __contains__(self, task_id: str) -> bool:
        return task_id in self._task_to_event

    def add_mapping(
        self,
        task_id: str,
        event_id: str,
        snapshot: Optional[EventSnapshot] = None,
    ) -> None:
        """Associate task_id with event_id, dropping stale reverse entries."""
        old_event_id = self._task_to_event.get(task_id)
        if old_event_id is not None and old_event_id != event_id:
            self._event_to_task.pop(old_event_id, None)
            self._snapshots.pop(old_event_id, None)

        old_task_id = self._event_to_task.get(event_id)
        if old_task_id is not None and old_task_id != task_id:
            self._task_to_event.pop(old_task_id, None)

        self._task_to_event[task_id] = event_id
        self._event_to_task[event_id] = task_id
        if snapshot is not None:
            self._snapshots[event_id] = snapshot

    def remove_mapping(
        self,
        *,
        task_id: Optional[str] = None,
        event_id: Optional[str] = None,
    ) -> bool:
        """Remove an association by task id or event id. Returns True if one existed."""
        if (task_id is None) == (event_id is None):
            raise ValueError("Pass exactly one of task_id or event_id")

        if task_id is not None:
            event_id = self._task_to_event.pop(task_id, None)
            if event_id is None:
                return False
            self._event_to_task.pop(event_id, None)
        else:
            task_id = self._event_to_task.pop(event_id, None)
            if task_id is None:
                return False
            self._task_to_event.pop(task_id, None)

        self._snapshots.pop(event_id, None)
        return True

    def event_for_task(self, task_id: str) -> Optional[str]:
        return self._task_to_event.get(task_id)

    def task_for_event(self, event_id: str) -> Optional[str]:
        return self._event_to_task.get(event_id)

    def snapshot_for(self, event_id: str) -> Optional[EventSnapshot]:
        return self._snapshots.get(event_id)

    def items(self) -> List[Tuple[str, str]]:
        return list(self._task_to_event.items())

    def clear(self) -> None:
        self._task_to_event.clear()
        self._event_to_task.clear()
        self._snapshots.clear()

    def to_document(self) -> IdentityMapDocument:
        return IdentityMapDocument(
            task_to_event=dict(self._task_to_event),
            event_to_task=dict(self._event_to_task),
            snapshots=dict(self._snapshots),
        )

    @classmethod
    def from_document(cls, document: IdentityMapDocument) -> "IdentityMap":
        """Rebuild a map, repairing any inconsistency between the two directions."""
        identity_map = cls()
        for task_id, event_id in document.task_to_event.items():
            identity_map.add_mapping(task_id, event_id, document.snapshots.get(event_id))
        for event_id, task_id in document.event_to_task.items():
            if identity_map.event_for_task(task_id) is None and identity_map.task_for_event(event_id) is None:
                identity_map.add_mapping(task_id, event_id, document.snapshots.get(event_id))

        if len(identity_map) != len(document.task_to_event):
            logger.debug("Repaired identity map while loading: %d entries kept", len(identity_map))
        return identity_map


class ProjectCalendarDocument(BaseModel):
    """Persisted form of the project calendar map."""

    version: int = 1
    project_to_calendar: Dict[str, str] = Field(default_factory=dict)


class ProjectCalendarMap:
    """Project id -> calendar id, one live entry per project."""

    def __init__(self):
        self._project_to_calendar: Dict[str, str] = {}

    def __len__(self) -> int:
        return len(self._project_to_calendar)

    def __contains__(self, project_id: str) -> bool:
        return project_id in self._project_to_calendar

    def set(self, project_id: str, calendar_id: str) -> None:
        self._project_to_calendar[project_id] = calendar_id

    def calendar_for(self, project_id: str) -> Optional[str]:
        return self._project_to_calendar.get(project_id)

    def remove(self, project_id: str) -> Optional[str]:
        return self._project_to_calendar.pop(project_id, None)

    @property
    def project_ids(self) -> List[str]:
        return list(self._project_to_calendar)

    @property
    def calendar_ids(self) -> List[str]:
        return list(dict.fromkeys(self._project_to_calendar.values()))

    def as_dict(self) -> Dict[str, str]:
        return dict(self._project_to_calendar)

    def clear(self) -> None:
        self._project_to_calendar.clear()

    def to_document(self) -> ProjectCalendarDocument:
        return ProjectCalendarDocument(project_to_calendar=dict(self._project_to_calendar))

    @classmethod
    def from_document(cls, document: ProjectCalendarDocument) -> "ProjectCalendarMap":
        project_map = cls()
        for project_id, calendar_id in document.project_to_calendar.items():
            project_map.set(project_id, calendar_id)
        return project_map
