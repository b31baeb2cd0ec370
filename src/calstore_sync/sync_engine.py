"""Inbound sync engine: provider calendar events into store rows."""

import inspect
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, Optional
from uuid import UUID

import pytz

from .config import Settings
from .database import DatabaseManager
from .errors import (
    CursorExpiredError, LeaseUnavailableError, SyncConfigurationError, SyncRunError,
)
from .fetcher import PageFetcher
from .lease import LeaseManager
from .mapper import parse_provider_timestamp, to_store_fields
from .mapping_store import EventMappingStore
from .models import (
    EventMapping, LogDirection, RunStatus, SyncConfig, SyncResult, SyncType, TargetSchema,
)
from .provisioner import SchemaProvisioner
from .services import CursorInvalidError, GoogleCalendarClient, ProviderClient
from .store import RowStore, SchemaNotFoundError, SqlRowStore

logger = logging.getLogger(__name__)

RUN_ERROR_ID = "run"


@dataclass
class _RunState:
    """Per-run context: the config and every schema resolved so far."""

    config: SyncConfig
    schema: TargetSchema
    schemas: Dict[str, TargetSchema] = field(default_factory=dict)

    def __post_init__(self):
        self.schemas[self.schema.schema_id] = self.schema


class SyncEngine:
    """Drives one-way synchronization from provider calendars into the row store."""

    def __init__(
        self,
        settings: Settings,
        db_manager: DatabaseManager,
        store: RowStore,
        provider_client: ProviderClient,
        lease_manager: Optional[LeaseManager] = None,
    ):
        """Initialize sync engine.

        Args:
            settings: Application settings
            db_manager: Sync configuration and mapping database
            store: Target row store
            provider_client: Calendar provider client
            lease_manager: Run lease manager (one is created when omitted)
        """
        self.settings = settings
        self.db_manager = db_manager
        self.store = store
        self.provider_client = provider_client
        self.mappings = EventMappingStore(db_manager)
        self.provisioner = SchemaProvisioner(settings, db_manager, store)
        self.fetcher = PageFetcher(settings, provider_client)
        self.leases = lease_manager or LeaseManager(db_manager, settings.sync.lease_ttl_seconds)
        self.logger = logger.getChild('sync_engine')

    @classmethod
    def from_settings(cls, settings: Settings) -> 'SyncEngine':
        """Build an engine with SQL storage and the Google client."""
        db_manager = DatabaseManager(settings)
        db_manager.init_db()
        store = SqlRowStore(settings.store_database_url, echo=settings.debug)
        store.init_store()
        return cls(settings, db_manager, store, GoogleCalendarClient.from_settings(settings))

    async def sync_calendar(self, config_id: UUID) -> SyncResult:
        """Run one inbound sync for a configuration.

        Args:
            config_id: Sync configuration to run

        Returns:
            Run summary with status success or partial

        Raises:
            SyncConfigNotFoundError: If the configuration does not exist
            SyncRunError: If the run aborted; ``result`` has status error
        """
        config = self.db_manager.get_sync_config(config_id)
        result = SyncResult(sync_type=SyncType.INCREMENTAL if config.cursor_token else SyncType.FULL)
        self._check_runnable(config, result)

        try:
            self.leases.acquire(config.id)
        except LeaseUnavailableError as e:
            self._fail(result, str(e))
            e.result = result
            raise

        try:
            # The previous holder may have moved the cursor or the bind
            config = self.db_manager.get_sync_config(config_id)
            result.sync_type = SyncType.INCREMENTAL if config.cursor_token else SyncType.FULL
            self._check_runnable(config, result)

            self.logger.info(
                f"Starting {result.sync_type.value} sync of '{config.provider_calendar_name}' ({config.id})"
            )
            try:
                schema = await self.provisioner.resolve_for_run(config)
                new_cursor = await self._page_loop(_RunState(config=config, schema=schema), result)
            except CursorInvalidError as e:
                self.db_manager.clear_cursor(config.id)
                message = f"Sync token of config {config.id} expired; run again for a full sync"
                self._abort(config, result, message)
                raise CursorExpiredError(message, result) from e
            except SyncRunError as e:
                self._abort(config, result, str(e))
                e.result = result
                raise
            except Exception as e:
                self._abort(config, result, str(e))
                raise SyncRunError(f"Sync of config {config.id} failed: {e}", result) from e

            self._complete(config, result, new_cursor or config.cursor_token)
        finally:
            self.leases.release(config.id)

        self.logger.info(
            f"Sync of {config.id} finished with status {result.status.value}: "
            f"{result.created} created, {result.updated} updated, {result.deleted} deleted, "
            f"{result.skipped} skipped, {len(result.errors)} errors"
        )
        return result

    async def _page_loop(self, run: _RunState, result: SyncResult) -> Optional[str]:
        new_cursor = None
        async for page in self.fetcher.pages(run.config.provider_calendar_id, run.config.cursor_token):
            for event in page.items:
                await self._process_event(run, event, result)
            if page.next_sync_token:
                new_cursor = page.next_sync_token
            if not self.leases.renew(run.config.id):
                raise LeaseUnavailableError(f"Lease for sync config {run.config.id} was lost mid-run")
        return new_cursor

    async def _process_event(self, run: _RunState, event: Dict[str, Any], result: SyncResult) -> None:
        event_id = event.get('id')
        if not event_id:
            result.skipped += 1
            return

        mapping: Optional[EventMapping] = None
        try:
            mapping = self.mappings.find(event_id, run.config.provider_calendar_id)

            if event.get('status') == 'cancelled':
                if mapping:
                    await self._apply_cancellation(run, mapping)
                    result.deleted += 1
                return

            if mapping:
                await self._apply_update(run, mapping, event)
                result.updated += 1
            else:
                await self._apply_create(run, event)
                result.created += 1

        except Exception as e:
            self.logger.error(f"Failed to sync event {event_id}: {e}")
            result.record_error(event_id, str(e))
            if mapping:
                await self._best_effort(
                    f"mark mapping {mapping.id} as failed", self.mappings.mark_error, mapping.id, str(e)
                )

    async def _schema_for(self, run: _RunState, schema_ref: str) -> TargetSchema:
        schema = run.schemas.get(schema_ref)
        if schema is None:
            # Older schemas may predate newer optional columns
            schema = await self.provisioner.ensure_event_columns(await self.store.get_schema(schema_ref))
            run.schemas[schema_ref] = schema
        return schema

    async def _apply_cancellation(self, run: _RunState, mapping: EventMapping) -> None:
        try:
            schema = await self._schema_for(run, mapping.target_schema_ref)
        except SchemaNotFoundError:
            self.logger.warning(f"Schema {mapping.target_schema_ref} of mapping {mapping.id} is gone")
        else:
            await self.store.delete_row(schema, mapping.store_row_id)
            await self._best_effort(
                f"delete documents of row {mapping.store_row_id}",
                self.store.delete_documents_for_row, schema.schema_id, mapping.store_row_id,
            )
        self.mappings.delete(mapping.id)

    async def _apply_update(self, run: _RunState, mapping: EventMapping, event: Dict[str, Any]) -> None:
        mapping = self.mappings.rebind(mapping, run.config.id)
        # The mapping's schema wins over the run's schema
        schema = await self._schema_for(run, mapping.target_schema_ref)
        fields = to_store_fields(event, schema, run.config.display_color)
        title = event.get('summary') or ''

        if await self.store.update_row(schema, mapping.store_row_id, fields):
            await self._best_effort(
                f"update document title of row {mapping.store_row_id}",
                self.store.update_document_title, schema.schema_id, mapping.store_row_id, title,
            )
        else:
            self.logger.info(f"Row {mapping.store_row_id} of mapping {mapping.id} is gone; recreating it")
            row_id = await self.store.insert_row(schema, fields, await self.store.next_row_order(schema))
            await self._best_effort(
                f"create document for row {row_id}",
                self.store.create_document, schema.owner_id, schema.schema_id, row_id, title,
            )
            self.mappings.relink_row(mapping.id, schema.schema_id, row_id)

        self.mappings.mark_updated(mapping.id, parse_provider_timestamp(event.get('updated')))

    async def _apply_create(self, run: _RunState, event: Dict[str, Any]) -> None:
        schema = run.schema
        fields = to_store_fields(event, schema, run.config.display_color)
        row_id = await self.store.insert_row(schema, fields, await self.store.next_row_order(schema))
        await self._best_effort(
            f"create document for row {row_id}",
            self.store.create_document, schema.owner_id, schema.schema_id, row_id, event.get('summary') or '',
        )
        self.mappings.upsert_created(
            sync_config_id=run.config.id,
            target_schema_ref=schema.schema_id,
            store_row_id=row_id,
            provider_event_id=event['id'],
            provider_calendar_id=run.config.provider_calendar_id,
            provider_updated_at=parse_provider_timestamp(event.get('updated')),
        )

    async def _best_effort(self, description: str, operation: Callable[..., Any], *args: Any) -> None:
        """Run a secondary write; failures are logged and never propagate."""
        try:
            outcome = operation(*args)
            if inspect.isawaitable(outcome):
                await outcome
        except Exception as e:
            self.logger.warning(f"Best-effort operation failed ({description}): {e}")

    # -- finalization ------------------------------------------------------

    def _complete(self, config: SyncConfig, result: SyncResult, cursor_token: Optional[str]) -> None:
        # The checkpoint advances even when individual events failed
        self.db_manager.save_checkpoint(config.id, cursor_token)
        result.cursor_token = cursor_token
        result.status = RunStatus.PARTIAL if result.errors else RunStatus.SUCCESS
        result.completed_at = datetime.now(pytz.UTC)
        self.db_manager.append_sync_log(config.id, result, LogDirection.FROM_PROVIDER)
        self.db_manager.touch_connection(config.connection_id)

    def _check_runnable(self, config: SyncConfig, result: SyncResult) -> None:
        if not config.enabled or not config.direction.allows_inbound:
            message = f"Sync config {config.id} is disabled or does not allow inbound sync"
            self._fail(result, message)
            raise SyncConfigurationError(message, result)

    def _fail(self, result: SyncResult, message: str) -> None:
        result.record_error(RUN_ERROR_ID, message)
        result.status = RunStatus.ERROR
        result.completed_at = datetime.now(pytz.UTC)

    def _abort(self, config: SyncConfig, result: SyncResult, message: str) -> None:
        self.logger.error(f"Sync of config {config.id} aborted: {message}")
        self._fail(result, message)
        try:
            self.db_manager.append_sync_log(config.id, result, LogDirection.FROM_PROVIDER)
        except Exception as e:
            self.logger.warning(f"Failed to record aborted run of {config.id}: {e}")

    # -- batch operations --------------------------------------------------

    async def sync_all(self) -> Dict[UUID, SyncResult]:
        """Sync every enabled inbound configuration, one after another."""
        results: Dict[UUID, SyncResult] = {}
        configs = [c for c in self.db_manager.list_sync_configs(enabled_only=True) if c.direction.allows_inbound]
        self.logger.info(f"Syncing {len(configs)} calendars")

        for config in configs:
            try:
                results[config.id] = await self.sync_calendar(config.id)
            except SyncRunError as e:
                self.logger.error(f"Sync of '{config.provider_calendar_name}' failed: {e}")
                results[config.id] = e.result
            except LookupError as e:
                self.logger.warning(f"Sync config {config.id} disappeared: {e}")

        return results

    def get_sync_status(self) -> Dict[str, Any]:
        """Get current sync status."""
        configs = self.db_manager.list_sync_configs()
        recent_logs = self.db_manager.get_recent_sync_logs(limit=5)
        return {
            'total_configs': len(configs),
            'enabled_configs': len([c for c in configs if c.enabled]),
            'total_mappings': self.mappings.count(),
            'last_run': recent_logs[0] if recent_logs else None,
            'recent_logs': recent_logs,
            'statistics': self.db_manager.get_sync_statistics(),
        }
