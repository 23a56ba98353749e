"""Persistence of cursors, identity maps and onboarding prefs."""

from abc import ABC, abstractmethod
from typing import Dict, Optional, Type, TypeVar
import logging

from pydantic import BaseModel, ValidationError

from .identity import (
    IdentityMap,
    IdentityMapDocument,
    ProjectCalendarDocument,
    ProjectCalendarMap,
)
from .models import CalendarSyncPrefs, SyncState

logger = logging.getLogger(__name__)

STATE_KEY = "calendar_sync.state"
IDENTITY_MAP_KEY = "calendar_sync.id_map"
PROJECT_CALENDARS_KEY = "calendar_sync.project_calendars"
PREFS_KEY = "calendar_sync.prefs"

ALL_KEYS = (STATE_KEY, IDENTITY_MAP_KEY, PROJECT_CALENDARS_KEY, PREFS_KEY)

DocumentT = TypeVar("DocumentT", bound=BaseModel)


class KeyValueStore(ABC):
    """Opaque durable key-value storage."""

    @abstractmethod
    def load(self, key: str) -> Optional[bytes]:
        pass

    @abstractmethod
    def save(self, key: str, value: bytes) -> None:
        pass

    @abstractmethod
    def delete(self, key: str) -> None:
        pass


class MemoryKeyValueStore(KeyValueStore):
    """Process-local store, handy for dry runs and tests."""

    def __init__(self, initial: Optional[Dict[str, bytes]] = None):
        self._data: Dict[str, bytes] = dict(initial or {})

    def load(self, key: str) -> Optional[bytes]:
        return self._data.get(key)

    def save(self, key: str, value: bytes) -> None:
        self._data[key] = bytes(value)

    def delete(self, key: str) -> None:
        self._data.pop(key, None)

    def keys(self):
        return list(self._data)


class SyncStateStore:
    """Load and save the four sync documents.

    Each document is stored as JSON under its own key. A missing or corrupt
    blob decodes to the document defaults, as if sync had never run.
    """

    def __init__(self, kv: KeyValueStore):
        self.kv = kv
        self.logger = logger.getChild('state')

    def _load(self, key: str, model: Type[DocumentT]) -> DocumentT:
        raw = self.kv.load(key)
        if raw is None:
            return model()
        try:
            return model.model_validate_json(raw)
        except (ValidationError, ValueError, UnicodeDecodeError) as e:
            self.logger.debug(f"Discarding undecodable {key}: {e}")
            return model()

    def _save(self, key: str, document: BaseModel) -> None:
        self.kv.save(key, document.model_dump_json().encode("utf-8"))

    def load_state(self) -> SyncState:
        return self._load(STATE_KEY, SyncState)

    def save_state(self, state: SyncState) -> None:
        self._save(STATE_KEY, state)

    def load_identity_map(self) -> IdentityMap:
        return IdentityMap.from_document(self._load(IDENTITY_MAP_KEY, IdentityMapDocument))

    def save_identity_map(self, identity_map: IdentityMap) -> None:
        self._save(IDENTITY_MAP_KEY, identity_map.to_document())

    def load_project_calendars(self) -> ProjectCalendarMap:
        return ProjectCalendarMap.from_document(
            self._load(PROJECT_CALENDARS_KEY, ProjectCalendarDocument)
        )

    def save_project_calendars(self, project_map: ProjectCalendarMap) -> None:
        self._save(PROJECT_CALENDARS_KEY, project_map.to_document())

    def load_prefs(self) -> CalendarSyncPrefs:
        return self._load(PREFS_KEY, CalendarSyncPrefs)

    def save_prefs(self, prefs: CalendarSyncPrefs) -> None:
        self._save(PREFS_KEY, prefs)

    def clear(self) -> None:
        """Wipe every sync document."""
        for key in ALL_KEYS:
            self.kv.delete(key)
