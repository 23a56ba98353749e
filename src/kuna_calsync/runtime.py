"""Wiring shared by the CLI and the daemon: logging setup and engine assembly."""

import logging
from typing import Optional

import structlog

from .config import Settings
from .database import DatabaseManager, SQLKeyValueStore
from .services import CalDAVCalendarStore, VikunjaTaskService
from .state_store import SyncStateStore
from .sync_engine import SyncEngine


def setup_logging(level: str, debug: bool = False) -> None:
    """Set up structured logging."""
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.dev.ConsoleRenderer() if debug else structlog.processors.JSONRenderer()
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )


def build_engine(settings: Settings, db_manager: Optional[DatabaseManager] = None) -> SyncEngine:
    """Assemble a sync engine over Vikunja, CalDAV and the SQL state store."""
    if db_manager is None:
        db_manager = DatabaseManager(settings)
    db_manager.init_db()

    return SyncEngine(
        VikunjaTaskService.from_settings(settings),
        CalDAVCalendarStore.from_settings(settings),
        SyncStateStore(SQLKeyValueStore(db_manager)),
        config=settings.sync_config,
    )
