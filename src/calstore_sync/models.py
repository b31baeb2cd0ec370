"""Data models for calendar ↔ store synchronization."""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional
from uuid import UUID

from pydantic import BaseModel, Field, validator
import pytz


FieldMap = Dict[str, Any]


class SyncDirection(str, Enum):
    """Which way a SyncConfig is allowed to move events."""

    TO_PROVIDER = "to_provider"
    FROM_PROVIDER = "from_provider"
    BIDIRECTIONAL = "bidirectional"

    @property
    def allows_inbound(self) -> bool:
        return self in (SyncDirection.FROM_PROVIDER, SyncDirection.BIDIRECTIONAL)

    @property
    def allows_outbound(self) -> bool:
        return self in (SyncDirection.TO_PROVIDER, SyncDirection.BIDIRECTIONAL)


class MappingStatus(str, Enum):
    """Status of an event mapping."""

    SYNCED = "synced"
    PENDING = "pending"
    CONFLICT = "conflict"
    ERROR = "error"


class RunStatus(str, Enum):
    """Overall status of a sync run."""

    SUCCESS = "success"
    PARTIAL = "partial"
    ERROR = "error"


class SyncType(str, Enum):
    FULL = "full"
    INCREMENTAL = "incremental"
    PUSH = "push"


class LogDirection(str, Enum):
    TO_PROVIDER = "to_provider"
    FROM_PROVIDER = "from_provider"


class ColumnType(str, Enum):
    """Logical column types understood by the row store."""

    TEXT = "text"
    URL = "url"
    SELECT = "select"
    DATE = "date"
    DATETIME = "datetime"
    CHECKBOX = "checkbox"
    NUMBER = "number"
    JSON = "json"


class ColumnDefinition(BaseModel):
    """One logical column of a target schema."""

    id: str = Field(..., description="Column UUID")
    name: str = Field(..., description="Display name, used as the field key")
    type: ColumnType = Field(ColumnType.TEXT)
    order: int = Field(0)
    visible: bool = Field(True)
    readonly: bool = Field(False)

    @property
    def physical_name(self) -> str:
        """Name of the backing column in the physical table."""
        return "col_" + self.id.replace('-', '_')


class TargetSchema(BaseModel):
    """The dynamic schema (a.k.a. resolved database) a SyncConfig writes into."""

    schema_id: str = Field(..., description="Container record id")
    logical_id: str = Field(..., description="Logical database id")
    owner_id: str = Field(..., description="Owning user")
    name: str = Field(..., description="Display name")
    physical_table_name: str = Field(...)
    column_definitions: List[ColumnDefinition] = Field(default_factory=list)

    def column(self, name: str) -> Optional[ColumnDefinition]:
        for column in self.column_definitions:
            if column.name == name:
                return column
        return None

    def has_column(self, name: str) -> bool:
        return self.column(name) is not None

    def next_column_order(self) -> int:
        if not self.column_definitions:
            return 0
        return max(c.order for c in self.column_definitions) + 1


class StoreRow(BaseModel):
    """A row read back from the store, with values keyed by column name."""

    row_id: str
    schema_id: str
    values: FieldMap = Field(default_factory=dict)
    row_order: int = Field(0)
    updated_at: Optional[datetime] = Field(None)
    deleted_at: Optional[datetime] = Field(None)

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None


class ProviderConnection(BaseModel):
    """A user's link to the calendar provider."""

    id: UUID
    user_id: str
    provider_email: str
    is_active: bool = Field(True)
    last_sync_at: Optional[datetime] = Field(None)


class SyncConfig(BaseModel):
    """Per-calendar synchronization configuration."""

    id: UUID
    connection_id: UUID
    provider_calendar_id: str
    provider_calendar_name: str
    target_schema_ref: Optional[str] = Field(None, description="Bound lazily on first run")
    direction: SyncDirection = Field(SyncDirection.BIDIRECTIONAL)
    cursor_token: Optional[str] = Field(None, description="Provider sync token")
    last_run_at: Optional[datetime] = Field(None)
    display_color: Optional[str] = Field(None)
    enabled: bool = Field(True)


class EventMapping(BaseModel):
    """Identity correlation between one provider event and one store row."""

    id: UUID
    sync_config_id: UUID
    target_schema_ref: str
    store_row_id: str
    provider_event_id: str
    provider_calendar_id: str
    sync_status: MappingStatus = Field(MappingStatus.PENDING)
    provider_updated_at: Optional[datetime] = Field(None)
    store_updated_at: Optional[datetime] = Field(None)
    last_error: Optional[str] = Field(None)


class EventError(BaseModel):
    """A single event's failure inside a run."""

    event_id: str
    message: str
    timestamp: datetime = Field(default_factory=lambda: datetime.now(pytz.UTC))

    def to_log_dict(self) -> Dict[str, str]:
        return {
            'event_id': self.event_id,
            'message': self.message,
            'timestamp': self.timestamp.isoformat(),
        }


class SyncResult(BaseModel):
    """Summary of one sync run."""

    created: int = Field(0)
    updated: int = Field(0)
    deleted: int = Field(0)
    skipped: int = Field(0)
    errors: List[EventError] = Field(default_factory=list)
    status: RunStatus = Field(RunStatus.SUCCESS)
    cursor_token: Optional[str] = Field(None)
    sync_type: SyncType = Field(SyncType.FULL)
    started_at: datetime = Field(default_factory=lambda: datetime.now(pytz.UTC))
    completed_at: Optional[datetime] = Field(None)

    def record_error(self, event_id: str, message: str) -> EventError:
        error = EventError(event_id=event_id, message=message)
        self.errors.append(error)
        return error

    @property
    def total_processed(self) -> int:
        return self.created + self.updated + self.deleted + self.skipped


class EventPage(BaseModel):
    """One page of raw provider events."""

    items: List[Dict[str, Any]] = Field(default_factory=list)
    next_page_token: Optional[str] = Field(None)
    next_sync_token: Optional[str] = Field(None)


class PushResult(BaseModel):
    """Outcome of pushing one store row to the provider."""

    provider_event_id: str
    sync_config_id: UUID
    created: bool = Field(False)
    meet_link: Optional[str] = Field(None)


class SyncLogEntry(BaseModel):
    """One row of the append-only sync log."""

    id: UUID
    sync_config_id: UUID
    sync_type: SyncType
    direction: LogDirection
    created: int = Field(0)
    updated: int = Field(0)
    deleted: int = Field(0)
    skipped: int = Field(0)
    errors: List[Dict[str, Any]] = Field(default_factory=list)
    status: RunStatus
    started_at: datetime
    completed_at: Optional[datetime] = Field(None)

    @validator('started_at', 'completed_at', pre=True)
    def ensure_timezone_aware(cls, v):
        """Ensure datetime objects are timezone-aware."""
        if isinstance(v, datetime) and v.tzinfo is None:
            return v.replace(tzinfo=pytz.UTC)
        return v
