"""Access to event mappings, keyed by provider event and calendar."""

import logging
from datetime import datetime
from typing import List, Optional
from uuid import UUID, uuid4

from sqlalchemy import delete, select, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import IntegrityError

from .database import DatabaseManager, EventMappingDB, utcnow
from .models import EventMapping, MappingStatus

logger = logging.getLogger(__name__)


def _to_mapping(row: EventMappingDB) -> EventMapping:
    return EventMapping(
        id=row.id,
        sync_config_id=row.sync_config_id,
        target_schema_ref=row.target_schema_ref,
        store_row_id=row.store_row_id,
        provider_event_id=row.provider_event_id,
        provider_calendar_id=row.provider_calendar_id,
        sync_status=MappingStatus(row.sync_status),
        provider_updated_at=row.provider_updated_at,
        store_updated_at=row.store_updated_at,
        last_error=row.last_error,
    )


class EventMappingStore:
    """CRUD over event mappings with a race-safe create."""

    def __init__(self, db_manager: DatabaseManager):
        self.db_manager = db_manager
        self.logger = logger.getChild('mappings')

    def find(self, provider_event_id: str, provider_calendar_id: str) -> Optional[EventMapping]:
        """Look up a mapping by provider identity, regardless of sync config."""
        with self.db_manager.get_session() as session:
            row = session.execute(
                select(EventMappingDB).where(
                    EventMappingDB.provider_event_id == provider_event_id,
                    EventMappingDB.provider_calendar_id == provider_calendar_id,
                )
            ).scalar_one_or_none()
            return _to_mapping(row) if row else None

    def find_by_row(self, target_schema_ref: str, store_row_id: str) -> Optional[EventMapping]:
        with self.db_manager.get_session() as session:
            row = session.execute(
                select(EventMappingDB).where(
                    EventMappingDB.target_schema_ref == target_schema_ref,
                    EventMappingDB.store_row_id == store_row_id,
                )
            ).scalar_one_or_none()
            return _to_mapping(row) if row else None

    def get(self, mapping_id: UUID) -> Optional[EventMapping]:
        with self.db_manager.get_session() as session:
            row = session.get(EventMappingDB, mapping_id)
            return _to_mapping(row) if row else None

    def list_for_config(self, sync_config_id: UUID) -> List[EventMapping]:
        with self.db_manager.get_session() as session:
            rows = session.execute(
                select(EventMappingDB)
                .where(EventMappingDB.sync_config_id == sync_config_id)
                .order_by(EventMappingDB.created_at)
            ).scalars().all()
            return [_to_mapping(row) for row in rows]

    def count(self) -> int:
        with self.db_manager.get_session() as session:
            return session.query(EventMappingDB).count()

    def rebind(self, mapping: EventMapping, sync_config_id: UUID) -> EventMapping:
        """Point a mapping at the active sync config; its target schema is kept."""
        if mapping.sync_config_id == sync_config_id:
            return mapping
        self.logger.info(
            f"Rebinding mapping {mapping.id} from config {mapping.sync_config_id} to {sync_config_id}"
        )
        self._update(mapping.id, sync_config_id=sync_config_id)
        return mapping.model_copy(update={'sync_config_id': sync_config_id})

    def upsert_created(
        self,
        sync_config_id: UUID,
        target_schema_ref: str,
        store_row_id: str,
        provider_event_id: str,
        provider_calendar_id: str,
        provider_updated_at: Optional[datetime] = None,
    ) -> EventMapping:
        """Create a synced mapping, or overwrite the one another run created.

        Keyed on (provider_event_id, provider_calendar_id).
        """
        now = utcnow()
        values = {
            'sync_config_id': sync_config_id,
            'target_schema_ref': target_schema_ref,
            'store_row_id': store_row_id,
            'provider_event_id': provider_event_id,
            'provider_calendar_id': provider_calendar_id,
            'sync_status': MappingStatus.SYNCED.value,
            'provider_updated_at': provider_updated_at or now,
            'store_updated_at': now,
            'last_error': None,
        }
        conflict_update = {
            key: values[key]
            for key in (
                'sync_config_id', 'target_schema_ref', 'store_row_id', 'sync_status',
                'provider_updated_at', 'store_updated_at', 'last_error',
            )
        }
        conflict_update['updated_at'] = now

        with self.db_manager.get_session() as session:
            dialect = session.get_bind().dialect.name
            if dialect in ('postgresql', 'sqlite'):
                insert = postgresql.insert if dialect == 'postgresql' else sqlite.insert
                statement = insert(EventMappingDB).values(
                    id=uuid4(), created_at=now, updated_at=now, **values
                ).on_conflict_do_update(
                    index_elements=['provider_event_id', 'provider_calendar_id'],
                    set_=conflict_update,
                )
                session.execute(statement)
                session.commit()
            else:
                try:
                    session.add(EventMappingDB(**values))
                    session.commit()
                except IntegrityError:
                    session.rollback()
                    session.execute(
                        update(EventMappingDB)
                        .where(
                            EventMappingDB.provider_event_id == provider_event_id,
                            EventMappingDB.provider_calendar_id == provider_calendar_id,
                        )
                        .values(**conflict_update)
                    )
                    session.commit()

        return self.find(provider_event_id, provider_calendar_id)

    def mark_updated(
        self,
        mapping_id: UUID,
        provider_updated_at: Optional[datetime] = None,
    ) -> None:
        now = utcnow()
        self._update(
            mapping_id,
            sync_status=MappingStatus.SYNCED.value,
            provider_updated_at=provider_updated_at or now,
            store_updated_at=now,
            last_error=None,
        )

    def mark_error(self, mapping_id: UUID, message: str) -> None:
        self._update(mapping_id, sync_status=MappingStatus.ERROR.value, last_error=message)

    def relink_row(self, mapping_id: UUID, target_schema_ref: str, store_row_id: str) -> None:
        """Point a mapping at a replacement row."""
        self._update(mapping_id, target_schema_ref=target_schema_ref, store_row_id=store_row_id)

    def delete(self, mapping_id: UUID) -> bool:
        with self.db_manager.get_session() as session:
            outcome = session.execute(delete(EventMappingDB).where(EventMappingDB.id == mapping_id))
            session.commit()
            return outcome.rowcount > 0

    def _update(self, mapping_id: UUID, **values) -> None:
        with self.db_manager.get_session() as session:
            session.execute(
                update(EventMappingDB)
                .where(EventMappingDB.id == mapping_id)
                .values(updated_at=utcnow(), **values)
            )
            session.commit()
