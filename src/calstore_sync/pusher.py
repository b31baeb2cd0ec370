"""Outbound push of store rows to provider events."""

import logging
from datetime import datetime
from typing import Any, Dict, Optional
from uuid import uuid4

import pytz

from .config import Settings
from .database import DatabaseManager, SyncConfigNotFoundError
from .mapper import MEET_LINK, extract_meet_link, to_provider_event
from .mapping_store import EventMappingStore
from .models import (
    LogDirection, PushResult, RunStatus, StoreRow, SyncConfig, SyncResult, SyncType,
)
from .services import EventNotFoundError, ProviderClient
from .store import RowStore

logger = logging.getLogger(__name__)

# Holidays, contacts' birthdays and week numbers
SPECIAL_CALENDAR_SUFFIX = "@group.v.calendar.google.com"


def is_special_calendar(calendar_id: str) -> bool:
    return '#' in calendar_id and calendar_id.endswith(SPECIAL_CALENDAR_SUFFIX)


def allows_writes(config: SyncConfig) -> bool:
    return (
        config.enabled
        and config.direction.allows_outbound
        and not is_special_calendar(config.provider_calendar_id)
    )


def is_writable(config: SyncConfig, schema_id: str) -> bool:
    return allows_writes(config) and config.target_schema_ref == schema_id


class OutboundPusher:
    """Creates or updates provider events from store rows."""

    def __init__(
        self,
        settings: Settings,
        db_manager: DatabaseManager,
        store: RowStore,
        provider_client: ProviderClient,
    ):
        self.settings = settings
        self.db_manager = db_manager
        self.store = store
        self.provider_client = provider_client
        self.mappings = EventMappingStore(db_manager)
        self.logger = logger.getChild('pusher')

    def resolve_target(self, schema_id: str, target_config: Optional[SyncConfig] = None) -> Optional[SyncConfig]:
        """Pick the writable config for a schema, preferring ``target_config``."""
        if target_config is not None:
            return target_config if is_writable(target_config, schema_id) else None
        for config in self.db_manager.list_configs_for_schema(schema_id):
            if is_writable(config, schema_id):
                return config
        return None

    async def push(
        self,
        store_row: StoreRow,
        target_config: Optional[SyncConfig] = None,
        add_meet: bool = False,
    ) -> Optional[PushResult]:
        """Push a row to the provider.

        A row that already has a mapping always goes back to the mapped
        config and event, and is left alone when that calendar no longer
        accepts writes. Returns None when there is nothing to push to.

        Raises:
            ValueError: If the row cannot be expressed as an event
            ProviderError: If the provider rejects the write
        """
        if store_row.is_deleted:
            self.logger.debug(f"Row {store_row.row_id} is deleted; not pushing")
            return None

        mapping = self.mappings.find_by_row(store_row.schema_id, store_row.row_id)
        config: Optional[SyncConfig] = None
        if mapping:
            try:
                config = self.db_manager.get_sync_config(mapping.sync_config_id)
            except SyncConfigNotFoundError:
                config = None
            if config is not None and not allows_writes(config):
                self.logger.info(
                    f"Row {store_row.row_id} is linked to read-only calendar {config.provider_calendar_id}; not pushed"
                )
                return None
        if config is None:
            config = self.resolve_target(store_row.schema_id, target_config)
        if config is None:
            self.logger.info(f"No writable calendar for schema {store_row.schema_id}; row {store_row.row_id} not pushed")
            return None

        result = SyncResult(sync_type=SyncType.PUSH)
        body = to_provider_event(store_row.values, self.settings.sync.default_timezone)
        wants_meet = add_meet and not store_row.values.get(MEET_LINK)
        # Invitations go out only when there are guests to notify
        send_updates = 'all' if body.get('attendees') else None

        event: Optional[Dict[str, Any]] = None
        if mapping and mapping.provider_calendar_id == config.provider_calendar_id:
            try:
                if wants_meet:
                    body['conferenceData'] = self._meet_request()
                event = await self.provider_client.patch_event(
                    config.provider_calendar_id, mapping.provider_event_id, body,
                    send_updates=send_updates,
                )
                result.updated = 1
            except EventNotFoundError:
                self.logger.info(f"Event {mapping.provider_event_id} is gone; creating a new one")
                event = None

        if event is None:
            if add_meet:
                body['conferenceData'] = self._meet_request()
            event = await self.provider_client.insert_event(
                config.provider_calendar_id, body, send_updates=send_updates
            )
            result.created = 1
            if mapping:
                self.mappings.delete(mapping.id)

        meet_link = extract_meet_link(event)
        if add_meet and not meet_link:
            meet_link = await self._refetch_meet_link(config.provider_calendar_id, event['id'])

        if result.created:
            self.mappings.upsert_created(
                sync_config_id=config.id,
                target_schema_ref=store_row.schema_id,
                store_row_id=store_row.row_id,
                provider_event_id=event['id'],
                provider_calendar_id=config.provider_calendar_id,
            )
        else:
            self.mappings.mark_updated(mapping.id)

        if meet_link and meet_link != store_row.values.get(MEET_LINK):
            await self._write_meet_link(store_row, meet_link)

        result.status = RunStatus.SUCCESS
        result.completed_at = datetime.now(pytz.UTC)
        self.db_manager.append_sync_log(config.id, result, LogDirection.TO_PROVIDER)

        self.logger.info(
            f"{'Created' if result.created else 'Updated'} event {event['id']} "
            f"in {config.provider_calendar_id} from row {store_row.row_id}"
        )
        return PushResult(
            provider_event_id=event['id'],
            sync_config_id=config.id,
            created=bool(result.created),
            meet_link=meet_link,
        )

    async def retract(self, schema_id: str, row_id: str) -> bool:
        """Delete the provider event of a row and forget its mapping.

        Returns:
            False if the row had no mapping
        """
        mapping = self.mappings.find_by_row(schema_id, row_id)
        if mapping is None:
            return False
        try:
            await self.provider_client.delete_event(mapping.provider_calendar_id, mapping.provider_event_id)
        except EventNotFoundError:
            self.logger.info(f"Event {mapping.provider_event_id} was already deleted")
        finally:
            self.mappings.delete(mapping.id)
        return True

    @staticmethod
    def _meet_request() -> Dict[str, Any]:
        return {
            'createRequest': {
                'requestId': uuid4().hex,
                'conferenceSolutionKey': {'type': 'hangoutsMeet'},
            }
        }

    async def _refetch_meet_link(self, calendar_id: str, event_id: str) -> Optional[str]:
        try:
            event = await self.provider_client.get_event(calendar_id, event_id)
        except EventNotFoundError:
            return None
        return extract_meet_link(event)

    async def _write_meet_link(self, store_row: StoreRow, meet_link: str) -> None:
        try:
            schema = await self.store.get_schema(store_row.schema_id)
            if schema.has_column(MEET_LINK):
                await self.store.update_row(schema, store_row.row_id, {MEET_LINK: meet_link})
        except Exception as e:
            self.logger.warning(f"Best-effort operation failed (write meet link of row {store_row.row_id}): {e}")

