"""Collaborator contracts consumed by the sync engine, and their errors."""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import List, Optional, Sequence
import logging

from ..models import (
    CalendarEvent,
    CalendarInfo,
    CalendarSource,
    Project,
    Task,
    TaskPatch,
    TimeWindow,
)

logger = logging.getLogger(__name__)


class CalendarSyncError(Exception):
    """Base exception for sync errors."""
    pass


class AccessDenied(CalendarSyncError):
    """Calendar store access was refused."""
    pass


class CalendarCreationError(CalendarSyncError):
    """A managed calendar could not be found or created."""
    pass


class InvalidTaskId(CalendarSyncError):
    """An identity marker or task id is malformed."""
    pass


class TaskNotFound(CalendarSyncError):
    """The task referenced by a patch no longer exists."""
    pass


class SyncConflict(CalendarSyncError):
    """Reserved for conflicting concurrent edits; not raised today."""
    pass


class TransportError(CalendarSyncError):
    """Network or service failure talking to a collaborator."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.message = message
        self.status_code = status_code


class CalendarStoreError(CalendarSyncError):
    """Calendar store operation failed."""
    pass


class TaskService(ABC):
    """Remote task list the engine reads from and patches."""

    @abstractmethod
    async def fetch_tasks(
        self,
        updated_since: Optional[datetime],
        project_ids: Sequence[str],
        window: TimeWindow,
    ) -> List[Task]:
        """Fetch tasks changed since a cursor.

        Args:
            updated_since: Only return tasks updated after this instant, or all when None
            project_ids: Restrict to these projects; empty means every project
            window: Rolling window the caller is interested in

        Returns:
            Task snapshots, including deleted or done tasks

        Raises:
            TransportError: If the service cannot be reached
        """
        pass

    @abstractmethod
    async def patch_task(self, patch: TaskPatch) -> Task:
        """Apply a partial update and return the resulting task.

        Raises:
            InvalidTaskId: If the id is not understood by the service
            TaskNotFound: If the task no longer exists
            TransportError: If the service cannot be reached
        """
        pass

    async def fetch_projects(self) -> List[Project]:
        """List projects, used to name per-project calendars."""
        return []

    async def close(self) -> None:
        """Release transport resources."""
        pass


class CalendarStore(ABC):
    """Calendar store holding the events the engine manages."""

    @abstractmethod
    async def request_access(self) -> bool:
        """Ask for read/write access. Returns False when refused."""
        pass

    @abstractmethod
    async def writable_sources(self) -> List[CalendarSource]:
        """Accounts or containers where calendars can be created."""
        pass

    @abstractmethod
    async def find_or_create_calendar(self, name: str, source: CalendarSource) -> CalendarInfo:
        """Return the calendar with this name in the source, creating it if missing.

        Raises:
            CalendarCreationError: If the calendar cannot be created
        """
        pass

    @abstractmethod
    async def list_calendars(self) -> List[CalendarInfo]:
        pass

    @abstractmethod
    async def list_events(
        self,
        calendar_ids: Sequence[str],
        start: datetime,
        end: datetime,
    ) -> List[CalendarEvent]:
        """Events in the given calendars overlapping [start, end].

        Raises:
            CalendarStoreError: If events cannot be listed
        """
        pass

    @abstractmethod
    async def save_event(self, event: CalendarEvent) -> CalendarEvent:
        """Create the event when it has no id, otherwise update it.

        Returns:
            The stored event with its (possibly new) id and last_modified

        Raises:
            CalendarStoreError: If the event cannot be saved
        """
        pass

    @abstractmethod
    async def delete_event(self, event: CalendarEvent) -> None:
        """Delete an event. Deleting a missing event is not an error."""
        pass

    @abstractmethod
    async def delete_calendar(self, calendar_id: str) -> None:
        pass

    async def commit(self) -> None:
        """Flush batched changes. Stores that write through need not override."""
        pass

    async def close(self) -> None:
        pass
