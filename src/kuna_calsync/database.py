"""Database models and operations for sync state and history."""

from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional
from uuid import UUID, uuid4

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    LargeBinary,
    String,
    Text,
    create_engine,
)
from sqlalchemy.dialects.postgresql import UUID as PostgresUUID
from sqlalchemy.orm import Session, declarative_base, relationship, sessionmaker
from sqlalchemy.types import CHAR, TypeDecorator
import pytz

from .config import Settings
from .models import SyncReport
from .state_store import KeyValueStore

Base = declarative_base()


class GUID(TypeDecorator):
    """Platform-independent GUID type."""

    impl = CHAR
    cache_ok = True

    def load_dialect_impl(self, dialect):
        if dialect.name == 'postgresql':
            return dialect.type_descriptor(PostgresUUID())
        else:
            return dialect.type_descriptor(CHAR(32))

    def process_bind_param(self, value, dialect):
        if value is None:
            return value
        elif dialect.name == 'postgresql':
            return str(value)
        else:
            if not isinstance(value, UUID):
                return "%.32x" % UUID(value).int
            else:
                return "%.32x" % value.int

    def process_result_value(self, value, dialect):
        if value is None:
            return value
        else:
            if not isinstance(value, UUID):
                return UUID(value)
            return value


class KeyValueDB(Base):
    """Opaque blobs backing the sync state store."""

    __tablename__ = 'key_value'

    key = Column(String(200), primary_key=True)
    value = Column(LargeBinary, nullable=False)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=lambda: datetime.now(pytz.UTC))


class SyncSessionDB(Base):
    """Database model for sync passes."""

    __tablename__ = 'sync_sessions'

    id = Column(GUID(), primary_key=True, default=uuid4)
    direction = Column(String(10), nullable=False)  # 'pull', 'push'
    started_at = Column(DateTime(timezone=True), nullable=False, default=lambda: datetime.now(pytz.UTC))
    completed_at = Column(DateTime(timezone=True), nullable=True)

    # Counters
    created = Column(Integer, default=0)
    updated = Column(Integer, default=0)
    deleted = Column(Integer, default=0)
    patched = Column(Integer, default=0)
    skipped = Column(Integer, default=0)
    cursor_advanced = Column(Boolean, nullable=False, default=False)

    # Status
    status = Column(String(20), nullable=False, default='running')  # 'completed', 'partial', 'failed'
    error_message = Column(Text, nullable=True)

    sync_operations = relationship("SyncOperationDB", back_populates="sync_session")

    __table_args__ = (
        Index('idx_sync_session_started', 'started_at'),
        Index('idx_sync_session_status', 'status'),
    )


class SyncOperationDB(Base):
    """Database model for individual items of a pass."""

    __tablename__ = 'sync_operations'

    id = Column(GUID(), primary_key=True, default=uuid4)
    sync_session_id = Column(GUID(), ForeignKey('sync_sessions.id'), nullable=False)

    operation = Column(String(20), nullable=False)  # 'create', 'update', 'delete', 'patch', 'skip'
    task_id = Column(String(255), nullable=True)
    event_id = Column(String(500), nullable=True)
    title = Column(String(500), nullable=True)

    success = Column(Boolean, nullable=False)
    error_message = Column(Text, nullable=True)
    timestamp = Column(DateTime(timezone=True), nullable=False, default=lambda: datetime.now(pytz.UTC))

    sync_session = relationship("SyncSessionDB", back_populates="sync_operations")

    __table_args__ = (
        Index('idx_sync_operation_session', 'sync_session_id'),
        Index('idx_sync_operation_success', 'success'),
    )


class DatabaseManager:
    """Database manager for sync state and history."""

    def __init__(self, settings: Settings):
        """Initialize database manager.

        Args:
            settings: Application settings
        """
        self.settings = settings
        self.engine = create_engine(
            settings.database_url,
            echo=settings.debug,
            pool_pre_ping=True
        )
        self.SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=self.engine)

    def init_db(self) -> None:
        """Initialize database tables."""
        Base.metadata.create_all(bind=self.engine)

    def get_session(self) -> Session:
        """Get database session."""
        return self.SessionLocal()

    def record_sync_report(self, session: Session, report: SyncReport) -> SyncSessionDB:
        """Persist a finished pass and its per-item results.

        Args:
            session: Database session
            report: Report returned by the sync engine

        Returns:
            Created sync session
        """
        if report.errors and report.total_operations and report.success_rate == 0:
            status = 'failed'
        elif report.errors:
            status = 'partial'
        else:
            status = 'completed'

        sync_session = SyncSessionDB(
            id=report.sync_id,
            direction=report.direction.value,
            started_at=report.started_at,
            completed_at=report.completed_at,
            created=report.created,
            updated=report.updated,
            deleted=report.deleted,
            patched=report.patched,
            skipped=report.skipped,
            cursor_advanced=report.cursor_advanced,
            status=status,
            error_message="\n".join(report.errors) or None,
        )
        session.add(sync_session)

        for result in report.results:
            session.add(SyncOperationDB(
                sync_session_id=report.sync_id,
                operation=result.operation.value,
                task_id=result.task_id,
                event_id=result.event_id,
                title=result.title,
                success=result.success,
                error_message=result.error_message,
            ))

        session.commit()
        return sync_session

    def get_recent_sync_sessions(
        self,
        session: Session,
        limit: int = 10
    ) -> List[SyncSessionDB]:
        """Get recent sync sessions, newest first."""
        return session.query(SyncSessionDB).order_by(
            SyncSessionDB.started_at.desc()
        ).limit(limit).all()

    def get_sync_statistics(self, session: Session, days: int = 30) -> Dict[str, Any]:
        """Get synchronization statistics for the past N days."""
        cutoff_date = datetime.now(pytz.UTC) - timedelta(days=days)

        sessions = session.query(SyncSessionDB).filter(
            SyncSessionDB.started_at >= cutoff_date
        ).all()

        operations = session.query(SyncOperationDB).filter(
            SyncOperationDB.timestamp >= cutoff_date
        ).all()

        return {
            'period_days': days,
            'total_sessions': len(sessions),
            'successful_sessions': len([s for s in sessions if s.status == 'completed']),
            'failed_sessions': len([s for s in sessions if s.status == 'failed']),
            'total_operations': len(operations),
            'successful_operations': len([o for o in operations if o.success]),
            'failed_operations': len([o for o in operations if not o.success])
        }


class SQLKeyValueStore(KeyValueStore):
    """Key-value store on top of the ``key_value`` table."""

    def __init__(self, db_manager: DatabaseManager):
        self.db_manager = db_manager

    def load(self, key: str) -> Optional[bytes]:
        with self.db_manager.get_session() as session:
            row = session.get(KeyValueDB, key)
            return bytes(row.value) if row is not None else None

    def save(self, key: str, value: bytes) -> None:
        with self.db_manager.get_session() as session:
            row = session.get(KeyValueDB, key)
            if row is None:
                session.add(KeyValueDB(key=key, value=value))
            else:
                row.value = value
                row.updated_at = datetime.now(pytz.UTC)
            session.commit()

    def delete(self, key: str) -> None:
        with self.db_manager.get_session() as session:
            row = session.get(KeyValueDB, key)
            if row is not None:
                session.delete(row)
                session.commit()
