"""Database models and operations for sync configuration and state."""

import json
from datetime import datetime
from typing import Any, Dict, List, Optional
from uuid import UUID, uuid4

from sqlalchemy import (
    create_engine, Column, String, DateTime, Boolean, Text, Integer, ForeignKey, Index,
    UniqueConstraint, update,
)
from sqlalchemy.orm import declarative_base, sessionmaker, Session, relationship
from sqlalchemy.dialects.postgresql import UUID as PostgresUUID
from sqlalchemy.types import TypeDecorator, CHAR
import pytz

from .config import Settings
from .models import (
    LogDirection, ProviderConnection, RunStatus, SyncConfig, SyncDirection, SyncLogEntry,
    SyncResult,
)

Base = declarative_base()


def utcnow() -> datetime:
    return datetime.now(pytz.UTC)


class SyncConfigNotFoundError(LookupError):
    """Raised when a sync configuration id does not resolve."""
    pass


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


class ProviderConnectionDB(Base):
    """A user's connection to the calendar provider."""

    __tablename__ = 'provider_connections'

    id = Column(GUID(), primary_key=True, default=uuid4)
    user_id = Column(String(255), nullable=False)
    provider_email = Column(String(255), nullable=False)
    is_active = Column(Boolean, nullable=False, default=True)
    connected_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    last_sync_at = Column(DateTime(timezone=True), nullable=True)

    sync_configs = relationship("SyncConfigDB", back_populates="connection")

    __table_args__ = (
        UniqueConstraint('user_id', name='uq_provider_connection_user'),
        Index('idx_provider_connection_active', 'is_active'),
    )


class SyncConfigDB(Base):
    """Per-calendar sync configuration."""

    __tablename__ = 'sync_configs'

    id = Column(GUID(), primary_key=True, default=uuid4)
    connection_id = Column(GUID(), ForeignKey('provider_connections.id', ondelete='CASCADE'), nullable=False)
    provider_calendar_id = Column(String(500), nullable=False)
    provider_calendar_name = Column(String(255), nullable=False)
    target_schema_ref = Column(String(64), nullable=True)
    direction = Column(String(20), nullable=False, default=SyncDirection.BIDIRECTIONAL.value)
    enabled = Column(Boolean, nullable=False, default=True)
    display_color = Column(String(16), nullable=True)

    # Provider nextSyncToken; NULL forces a windowed full fetch
    cursor_token = Column(String(1000), nullable=True)
    last_run_at = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    connection = relationship("ProviderConnectionDB", back_populates="sync_configs")
    event_mappings = relationship("EventMappingDB", back_populates="sync_config")

    __table_args__ = (
        UniqueConstraint('connection_id', 'provider_calendar_id', name='uq_sync_config_connection_calendar'),
        Index('idx_sync_config_connection', 'connection_id'),
        Index('idx_sync_config_enabled', 'enabled'),
        Index('idx_sync_config_target_schema', 'target_schema_ref'),
    )


class EventMappingDB(Base):
    """Identity correlation between a provider event and a store row."""

    __tablename__ = 'event_mappings'

    id = Column(GUID(), primary_key=True, default=uuid4)
    sync_config_id = Column(GUID(), ForeignKey('sync_configs.id', ondelete='CASCADE'), nullable=False)

    target_schema_ref = Column(String(64), nullable=False)
    store_row_id = Column(String(64), nullable=False)
    provider_event_id = Column(String(1024), nullable=False)
    provider_calendar_id = Column(String(500), nullable=False)

    sync_status = Column(String(20), nullable=False, default='pending')
    provider_updated_at = Column(DateTime(timezone=True), nullable=True)
    store_updated_at = Column(DateTime(timezone=True), nullable=True)
    last_error = Column(Text, nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    sync_config = relationship("SyncConfigDB", back_populates="event_mappings")

    __table_args__ = (
        # The race-safety key: independent of which config last touched the event
        UniqueConstraint('provider_event_id', 'provider_calendar_id', name='uq_event_mapping_provider'),
        UniqueConstraint('target_schema_ref', 'store_row_id', name='uq_event_mapping_store_row'),
        Index('idx_event_mapping_sync_config', 'sync_config_id'),
        Index('idx_event_mapping_sync_status', 'sync_status'),
    )


class SyncLogDB(Base):
    """Append-only audit log, one row per run."""

    __tablename__ = 'sync_logs'

    id = Column(GUID(), primary_key=True, default=uuid4)
    sync_config_id = Column(GUID(), ForeignKey('sync_configs.id', ondelete='CASCADE'), nullable=False)
    sync_type = Column(String(20), nullable=False)  # 'full', 'incremental', 'push'
    direction = Column(String(20), nullable=False)  # 'to_provider', 'from_provider'
    events_created = Column(Integer, nullable=False, default=0)
    events_updated = Column(Integer, nullable=False, default=0)
    events_deleted = Column(Integer, nullable=False, default=0)
    events_skipped = Column(Integer, nullable=False, default=0)
    errors = Column(Text, nullable=False, default='[]')  # JSON
    status = Column(String(20), nullable=False)  # 'success', 'partial', 'error'
    started_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    completed_at = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index('idx_sync_log_sync_config', 'sync_config_id'),
        Index('idx_sync_log_status', 'status'),
        Index('idx_sync_log_started', 'started_at'),
    )


class SyncLeaseDB(Base):
    """Short-lived run lease keyed by sync config."""

    __tablename__ = 'sync_leases'

    sync_config_id = Column(GUID(), primary_key=True)
    holder = Column(String(100), nullable=False)
    acquired_at = Column(DateTime, nullable=False)
    expires_at = Column(DateTime, nullable=False)


def _to_connection(row: ProviderConnectionDB) -> ProviderConnection:
    return ProviderConnection(
        id=row.id,
        user_id=row.user_id,
        provider_email=row.provider_email,
        is_active=row.is_active,
        last_sync_at=row.last_sync_at,
    )


def _to_config(row: SyncConfigDB) -> SyncConfig:
    return SyncConfig(
        id=row.id,
        connection_id=row.connection_id,
        provider_calendar_id=row.provider_calendar_id,
        provider_calendar_name=row.provider_calendar_name,
        target_schema_ref=row.target_schema_ref,
        direction=SyncDirection(row.direction),
        cursor_token=row.cursor_token,
        last_run_at=row.last_run_at,
        display_color=row.display_color,
        enabled=row.enabled,
    )


def _to_log_entry(row: SyncLogDB) -> SyncLogEntry:
    return SyncLogEntry(
        id=row.id,
        sync_config_id=row.sync_config_id,
        sync_type=row.sync_type,
        direction=row.direction,
        created=row.events_created,
        updated=row.events_updated,
        deleted=row.events_deleted,
        skipped=row.events_skipped,
        errors=json.loads(row.errors or '[]'),
        status=row.status,
        started_at=row.started_at,
        completed_at=row.completed_at,
    )


class DatabaseManager:
    """Database manager for sync configuration, mappings and logs."""

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

    # -- connections -------------------------------------------------------

    def create_connection(self, user_id: str, provider_email: str) -> ProviderConnection:
        with self.get_session() as session:
            row = ProviderConnectionDB(user_id=user_id, provider_email=provider_email)
            session.add(row)
            session.commit()
            return _to_connection(row)

    def get_connection(self, connection_id: UUID) -> Optional[ProviderConnection]:
        with self.get_session() as session:
            row = session.get(ProviderConnectionDB, connection_id)
            return _to_connection(row) if row else None

    def get_connection_for_user(self, user_id: str) -> Optional[ProviderConnection]:
        with self.get_session() as session:
            row = session.query(ProviderConnectionDB).filter(ProviderConnectionDB.user_id == user_id).first()
            return _to_connection(row) if row else None

    def get_owner_id(self, connection_id: UUID) -> str:
        """Return the user owning a connection.

        Raises:
            SyncConfigNotFoundError: If the connection is gone
        """
        connection = self.get_connection(connection_id)
        if connection is None:
            raise SyncConfigNotFoundError(f"Connection {connection_id} not found")
        return connection.user_id

    def touch_connection(self, connection_id: UUID) -> None:
        with self.get_session() as session:
            session.execute(
                update(ProviderConnectionDB)
                .where(ProviderConnectionDB.id == connection_id)
                .values(last_sync_at=utcnow())
            )
            session.commit()

    # -- sync configs ------------------------------------------------------

    def create_sync_config(
        self,
        connection_id: UUID,
        provider_calendar_id: str,
        provider_calendar_name: str,
        direction: SyncDirection = SyncDirection.BIDIRECTIONAL,
        display_color: Optional[str] = None,
        enabled: bool = True,
        target_schema_ref: Optional[str] = None,
    ) -> SyncConfig:
        """Create a new sync configuration.

        Args:
            connection_id: Owning provider connection
            provider_calendar_id: Provider calendar ID
            provider_calendar_name: Provider calendar display name
            direction: Allowed sync direction
            display_color: Calendar color used when an event has none
            enabled: Whether the config takes part in syncs
            target_schema_ref: Pre-bound target schema, if any

        Returns:
            Created sync configuration
        """
        with self.get_session() as session:
            row = SyncConfigDB(
                connection_id=connection_id,
                provider_calendar_id=provider_calendar_id,
                provider_calendar_name=provider_calendar_name,
                direction=SyncDirection(direction).value,
                display_color=display_color,
                enabled=enabled,
                target_schema_ref=target_schema_ref,
            )
            session.add(row)
            session.commit()
            return _to_config(row)

    def get_sync_config(self, config_id: UUID) -> SyncConfig:
        """Load a sync configuration.

        Raises:
            SyncConfigNotFoundError: If no such configuration exists
        """
        with self.get_session() as session:
            row = session.get(SyncConfigDB, config_id)
            if row is None:
                raise SyncConfigNotFoundError(f"Sync configuration {config_id} not found")
            return _to_config(row)

    def list_sync_configs(self, enabled_only: bool = False) -> List[SyncConfig]:
        with self.get_session() as session:
            query = session.query(SyncConfigDB)
            if enabled_only:
                query = query.filter(SyncConfigDB.enabled == True)  # noqa: E712
            return [_to_config(row) for row in query.order_by(SyncConfigDB.created_at).all()]

    def list_configs_for_schema(self, schema_ref: str) -> List[SyncConfig]:
        with self.get_session() as session:
            rows = session.query(SyncConfigDB).filter(
                SyncConfigDB.target_schema_ref == schema_ref
            ).order_by(SyncConfigDB.created_at).all()
            return [_to_config(row) for row in rows]

    def update_sync_config(self, config_id: UUID, **fields: Any) -> SyncConfig:
        """Update arbitrary columns of a sync configuration."""
        with self.get_session() as session:
            row = session.get(SyncConfigDB, config_id)
            if row is None:
                raise SyncConfigNotFoundError(f"Sync configuration {config_id} not found")
            for key, value in fields.items():
                if hasattr(row, key):
                    setattr(row, key, value)
            session.commit()
            return _to_config(row)

    def bind_target_schema(self, config_id: UUID, schema_ref: str) -> bool:
        """Bind a target schema only if none is bound yet.

        Returns:
            True if this call performed the binding
        """
        with self.get_session() as session:
            outcome = session.execute(
                update(SyncConfigDB)
                .where(SyncConfigDB.id == config_id, SyncConfigDB.target_schema_ref.is_(None))
                .values(target_schema_ref=schema_ref, updated_at=utcnow())
            )
            session.commit()
            return outcome.rowcount == 1

    def save_checkpoint(self, config_id: UUID, cursor_token: Optional[str]) -> None:
        """Persist the new cursor token and run timestamp."""
        now = utcnow()
        with self.get_session() as session:
            session.execute(
                update(SyncConfigDB)
                .where(SyncConfigDB.id == config_id)
                .values(cursor_token=cursor_token, last_run_at=now, updated_at=now)
            )
            session.commit()

    def clear_cursor(self, config_id: UUID) -> None:
        with self.get_session() as session:
            session.execute(
                update(SyncConfigDB)
                .where(SyncConfigDB.id == config_id)
                .values(cursor_token=None, updated_at=utcnow())
            )
            session.commit()

    # -- sync log ----------------------------------------------------------

    def append_sync_log(
        self,
        config_id: UUID,
        result: SyncResult,
        direction: LogDirection,
    ) -> SyncLogEntry:
        """Append one audit row summarizing a run.

        Args:
            config_id: Sync configuration the run belongs to
            result: Run summary
            direction: Direction of the run

        Returns:
            The stored log entry
        """
        with self.get_session() as session:
            row = SyncLogDB(
                sync_config_id=config_id,
                sync_type=result.sync_type.value,
                direction=direction.value,
                events_created=result.created,
                events_updated=result.updated,
                events_deleted=result.deleted,
                events_skipped=result.skipped,
                errors=json.dumps([e.to_log_dict() for e in result.errors]),
                status=result.status.value,
                started_at=result.started_at,
                completed_at=result.completed_at or utcnow(),
            )
            session.add(row)
            session.commit()
            return _to_log_entry(row)

    def get_recent_sync_logs(
        self,
        config_id: Optional[UUID] = None,
        limit: int = 10
    ) -> List[SyncLogEntry]:
        """Get recent sync log rows, newest first."""
        with self.get_session() as session:
            query = session.query(SyncLogDB)
            if config_id is not None:
                query = query.filter(SyncLogDB.sync_config_id == config_id)
            rows = query.order_by(SyncLogDB.started_at.desc()).limit(limit).all()
            return [_to_log_entry(row) for row in rows]

    def get_sync_statistics(self, config_id: Optional[UUID] = None) -> Dict[str, Any]:
        """Aggregate counters over the sync log."""
        with self.get_session() as session:
            query = session.query(SyncLogDB)
            if config_id is not None:
                query = query.filter(SyncLogDB.sync_config_id == config_id)
            logs = query.all()
            return {
                'total_runs': len(logs),
                'successful_runs': len([log for log in logs if log.status == RunStatus.SUCCESS.value]),
                'partial_runs': len([log for log in logs if log.status == RunStatus.PARTIAL.value]),
                'failed_runs': len([log for log in logs if log.status == RunStatus.ERROR.value]),
                'total_mappings': session.query(EventMappingDB).count(),
            }
