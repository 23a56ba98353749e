"""Task service and calendar store interfaces and implementations."""

from .base import (
    AccessDenied,
    CalendarCreationError,
    CalendarStore,
    CalendarStoreError,
    CalendarSyncError,
    InvalidTaskId,
    SyncConflict,
    TaskNotFound,
    TaskService,
    TransportError,
)
from .caldav_store import CalDAVCalendarStore
from .vikunja import VikunjaTaskService

__all__ = [
    'AccessDenied',
    'CalendarCreationError',
    'CalendarStore',
    'CalendarStoreError',
    'CalendarSyncError',
    'InvalidTaskId',
    'SyncConflict',
    'TaskNotFound',
    'TaskService',
    'TransportError',
    'CalDAVCalendarStore',
    'VikunjaTaskService',
]
