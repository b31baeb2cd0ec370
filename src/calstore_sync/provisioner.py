"""Target schema resolution, creation and additive column migration."""

import asyncio
import logging
from typing import List
from uuid import uuid4

from sqlalchemy.exc import SQLAlchemyError

from .config import Settings
from .database import DatabaseManager
from .errors import ProvisioningError
from .mapper import DESCRIPTIVE_COLUMNS, OPTIONAL_COLUMNS, REQUIRED_COLUMNS
from .models import ColumnDefinition, ColumnType, SyncConfig, TargetSchema
from .store import RowStore, SchemaNotFoundError, StoreError

logger = logging.getLogger(__name__)

SCHEMA_NAME_SUFFIX = " (Google Calendar)"


def schema_display_name(config: SyncConfig) -> str:
    return f"{config.provider_calendar_name}{SCHEMA_NAME_SUFFIX}"


def new_column(name: str, column_type: ColumnType, order: int) -> ColumnDefinition:
    return ColumnDefinition(id=str(uuid4()), name=name, type=column_type, order=order)


class SchemaProvisioner:
    """Ensures a sync configuration has a target schema with event columns."""

    def __init__(self, settings: Settings, db_manager: DatabaseManager, store: RowStore):
        self.settings = settings
        self.db_manager = db_manager
        self.store = store
        self.logger = logger.getChild('provisioner')

    async def resolve(self, config: SyncConfig) -> TargetSchema:
        """Load the bound schema, or create one when none is bound.

        Raises:
            ProvisioningError: If the bound schema no longer exists
        """
        if not config.target_schema_ref:
            return await self.auto_create(config)
        try:
            return await self.store.get_schema(config.target_schema_ref)
        except SchemaNotFoundError as e:
            raise ProvisioningError(
                f"Target schema {config.target_schema_ref} of sync config {config.id} no longer exists"
            ) from e
        except StoreError as e:
            raise ProvisioningError(f"Failed to load target schema: {e}") from e

    async def auto_create(self, config: SyncConfig) -> TargetSchema:
        """Find or create the target schema for an unbound configuration.

        Order: reuse a same-named schema of the owner, then re-read the
        config in case a concurrent run bound one, then create record,
        table and binding. A failed or lost binding removes what this call
        created.
        """
        try:
            owner_id = self.db_manager.get_owner_id(config.connection_id)
        except LookupError as e:
            raise ProvisioningError(str(e)) from e
        name = schema_display_name(config)

        try:
            existing = await self.store.find_schema_by_name(owner_id, name)
        except StoreError as e:
            raise ProvisioningError(f"Failed to look up existing schema '{name}': {e}") from e
        if existing:
            self.logger.info(f"Reusing existing schema '{name}' ({existing.schema_id}) for config {config.id}")
            if self.db_manager.bind_target_schema(config.id, existing.schema_id):
                return existing
            return await self._resolve_winner(config)

        fresh = self.db_manager.get_sync_config(config.id)
        if fresh.target_schema_ref:
            self.logger.info(f"Config {config.id} was bound concurrently to {fresh.target_schema_ref}")
            return await self.resolve(fresh)

        columns = self._initial_columns()
        try:
            schema = await self.store.create_schema_record(owner_id, name, columns)
        except StoreError as e:
            raise ProvisioningError(f"Failed to create schema record '{name}': {e}") from e

        try:
            await self.store.create_table(schema)
        except StoreError as e:
            await self._compensate(schema, table_created=False)
            raise ProvisioningError(f"Failed to create table for schema '{name}': {e}") from e

        try:
            bound = self.db_manager.bind_target_schema(config.id, schema.schema_id)
        except SQLAlchemyError as e:
            await self._compensate(schema, table_created=True)
            raise ProvisioningError(f"Failed to bind schema '{name}' to config {config.id}: {e}") from e

        if not bound:
            self.logger.warning(f"Lost binding race for config {config.id}; discarding schema {schema.schema_id}")
            await self._compensate(schema, table_created=True)
            return await self._resolve_winner(config)

        self.logger.info(f"Created schema '{name}' ({schema.schema_id}) for config {config.id}")
        return schema

    async def _resolve_winner(self, config: SyncConfig) -> TargetSchema:
        fresh = self.db_manager.get_sync_config(config.id)
        if not fresh.target_schema_ref:
            raise ProvisioningError(f"Config {config.id} has no target schema after binding attempt")
        return await self.resolve(fresh)

    async def _compensate(self, schema: TargetSchema, table_created: bool) -> None:
        if table_created:
            try:
                await self.store.drop_table(schema)
            except StoreError as e:
                self.logger.error(f"Failed to drop table {schema.physical_table_name}: {e}")
        try:
            await self.store.delete_schema_record(schema.schema_id)
        except StoreError as e:
            self.logger.error(f"Failed to delete schema record {schema.schema_id}: {e}")

    @staticmethod
    def _initial_columns() -> List[ColumnDefinition]:
        specs = REQUIRED_COLUMNS + DESCRIPTIVE_COLUMNS + OPTIONAL_COLUMNS
        return [new_column(name, column_type, order) for order, (name, column_type) in enumerate(specs)]

    async def ensure_column(self, schema: TargetSchema, name: str, column_type: ColumnType) -> TargetSchema:
        """Add a column if missing: physical first, then metadata.

        Returns the schema unchanged when the physical add fails; the
        column is retried on the next run.
        """
        if schema.has_column(name):
            return schema

        column = new_column(name, column_type, schema.next_column_order())
        try:
            await self.store.add_column(schema, column)
        except StoreError as e:
            self.logger.warning(f"Could not add column '{name}' to schema {schema.schema_id}: {e}")
            return schema

        await self.store.reload_schema_cache()
        await asyncio.sleep(self.settings.sync.schema_reload_delay_seconds)

        await self.store.update_column_definitions(schema.schema_id, schema.column_definitions + [column])
        refreshed = await self.store.get_schema(schema.schema_id)
        self.logger.info(f"Added column '{name}' to schema {schema.schema_id}")
        return refreshed

    async def ensure_event_columns(self, schema: TargetSchema) -> TargetSchema:
        """Heal required and optional event columns.

        Raises:
            ProvisioningError: If a required column is still missing
        """
        for name, column_type in REQUIRED_COLUMNS:
            schema = await self.ensure_column(schema, name, column_type)
            if not schema.has_column(name):
                raise ProvisioningError(f"Schema {schema.schema_id} is missing required column '{name}'")
        for name, column_type in OPTIONAL_COLUMNS:
            schema = await self.ensure_column(schema, name, column_type)
        return schema

    async def resolve_for_run(self, config: SyncConfig) -> TargetSchema:
        schema = await self.resolve(config)
        try:
            return await self.ensure_event_columns(schema)
        except StoreError as e:
            raise ProvisioningError(f"Failed to migrate schema {schema.schema_id}: {e}") from e
