"""SQLAlchemy Core implementation of the dynamic row store."""

import asyncio
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional
from uuid import uuid4

from sqlalchemy import (
    create_engine, Boolean, Column, DateTime, Float, Integer, JSON, MetaData, String, Table, Text,
    delete, func, inspect, select, text, update,
)
from sqlalchemy.exc import SQLAlchemyError
import pytz

from .base import RowStore, StoreError, SchemaNotFoundError, logger as base_logger
from ..models import ColumnDefinition, ColumnType, FieldMap, StoreRow, TargetSchema

_PHYSICAL_TYPES = {
    ColumnType.TEXT: Text,
    ColumnType.URL: Text,
    ColumnType.SELECT: Text,
    ColumnType.DATE: Text,
    ColumnType.DATETIME: Text,
    ColumnType.CHECKBOX: Boolean,
    ColumnType.NUMBER: Float,
    ColumnType.JSON: JSON,
}

metadata = MetaData()

document_databases = Table(
    'document_databases',
    metadata,
    Column('id', String(36), primary_key=True),
    Column('database_id', String(64), nullable=False, unique=True),
    Column('owner_id', String(255), nullable=False, index=True),
    Column('name', String(255), nullable=False),
    Column('table_name', String(63), nullable=False),
    Column('config', JSON, nullable=False),
    Column('created_at', DateTime(timezone=True), nullable=False),
    Column('deleted_at', DateTime(timezone=True), nullable=True),
)

documents = Table(
    'documents',
    metadata,
    Column('id', String(36), primary_key=True),
    Column('owner_id', String(255), nullable=False),
    Column('title', Text, nullable=False, default=''),
    Column('database_id', String(36), nullable=True, index=True),
    Column('row_id', String(36), nullable=True, index=True),
    Column('created_at', DateTime(timezone=True), nullable=False),
    Column('updated_at', DateTime(timezone=True), nullable=False),
)


def physical_type(column_type: ColumnType):
    return _PHYSICAL_TYPES.get(ColumnType(column_type), Text)


def _now() -> datetime:
    return datetime.now(pytz.UTC)


class SqlRowStore(RowStore):
    """Row store on a relational database.

    Physical tables are reflected on first use and cached. The cache is
    only invalidated by ``reload_schema_cache``, so a table altered by DDL
    keeps its old shape here until the reload signal.

    All blocking database calls run in the default executor.
    """

    def __init__(self, database_url: str, echo: bool = False):
        self.engine = create_engine(database_url, echo=echo, pool_pre_ping=True)
        self.logger = base_logger.getChild('sql')
        self._tables: Dict[str, Table] = {}

    def init_store(self) -> None:
        """Create the container and document tables."""
        metadata.create_all(bind=self.engine)

    async def _run(self, work: Callable[[], Any]) -> Any:
        loop = asyncio.get_event_loop()
        return await loop.run_in_executor(None, work)

    @contextmanager
    def _errors(self, what: str):
        try:
            yield
        except SQLAlchemyError as e:
            raise StoreError(f"Failed to {what}: {e}") from e

    def _table(self, schema: TargetSchema) -> Table:
        table = self._tables.get(schema.physical_table_name)
        if table is None:
            table = Table(schema.physical_table_name, MetaData(), autoload_with=self.engine)
            self._tables[schema.physical_table_name] = table
        return table

    @staticmethod
    def _schema_from_record(record) -> TargetSchema:
        config = record.config or {}
        return TargetSchema(
            schema_id=record.id,
            logical_id=record.database_id,
            owner_id=record.owner_id,
            name=record.name,
            physical_table_name=record.table_name,
            column_definitions=[ColumnDefinition(**c) for c in config.get('columns', [])],
        )

    # -- schema records ----------------------------------------------------

    async def get_schema(self, schema_id: str) -> TargetSchema:
        def load():
            with self._errors(f"load schema {schema_id}"):
                with self.engine.connect() as conn:
                    return conn.execute(
                        select(document_databases).where(
                            document_databases.c.id == schema_id,
                            document_databases.c.deleted_at.is_(None),
                        )
                    ).first()

        record = await self._run(load)
        if record is None:
            raise SchemaNotFoundError(f"Target schema {schema_id} not found")
        return self._schema_from_record(record)

    async def find_schema_by_name(self, owner_id: str, name: str) -> Optional[TargetSchema]:
        def lookup():
            with self._errors(f"look up schema '{name}'"):
                with self.engine.connect() as conn:
                    return conn.execute(
                        select(document_databases)
                        .where(
                            document_databases.c.owner_id == owner_id,
                            document_databases.c.name == name,
                            document_databases.c.deleted_at.is_(None),
                        )
                        .order_by(document_databases.c.created_at)
                        .limit(1)
                    ).first()

        record = await self._run(lookup)
        return self._schema_from_record(record) if record else None

    async def create_schema_record(
        self,
        owner_id: str,
        name: str,
        columns: List[ColumnDefinition],
    ) -> TargetSchema:
        schema_uuid = uuid4()
        schema = TargetSchema(
            schema_id=str(uuid4()),
            logical_id=f"db-{schema_uuid}",
            owner_id=owner_id,
            name=name,
            physical_table_name=f"dbt_{schema_uuid.hex}",
            column_definitions=columns,
        )

        def create():
            with self._errors(f"create schema record '{name}'"):
                with self.engine.begin() as conn:
                    conn.execute(
                        document_databases.insert().values(
                            id=schema.schema_id,
                            database_id=schema.logical_id,
                            owner_id=owner_id,
                            name=name,
                            table_name=schema.physical_table_name,
                            config=self._config_payload(columns),
                            created_at=_now(),
                        )
                    )

        await self._run(create)
        return schema

    async def delete_schema_record(self, schema_id: str) -> None:
        def remove():
            with self._errors(f"delete schema record {schema_id}"):
                with self.engine.begin() as conn:
                    conn.execute(delete(document_databases).where(document_databases.c.id == schema_id))

        await self._run(remove)

    async def update_column_definitions(self, schema_id: str, columns: List[ColumnDefinition]) -> None:
        def store_columns():
            with self._errors(f"update columns of schema {schema_id}"):
                with self.engine.begin() as conn:
                    conn.execute(
                        update(document_databases)
                        .where(document_databases.c.id == schema_id)
                        .values(config=self._config_payload(columns))
                    )

        await self._run(store_columns)

    @staticmethod
    def _config_payload(columns: List[ColumnDefinition]) -> Dict:
        return {'type': 'event', 'columns': [c.model_dump(mode='json') for c in columns]}

    # -- DDL ---------------------------------------------------------------

    async def create_table(self, schema: TargetSchema) -> None:
        table = Table(
            schema.physical_table_name,
            MetaData(),
            Column('id', String(36), primary_key=True),
            Column('row_order', Integer, nullable=False, default=0),
            Column('created_at', DateTime(timezone=True), nullable=False),
            Column('updated_at', DateTime(timezone=True), nullable=False),
            Column('deleted_at', DateTime(timezone=True), nullable=True),
            *[Column(c.physical_name, physical_type(c.type), nullable=True) for c in schema.column_definitions],
        )

        def create():
            with self._errors(f"create table {schema.physical_table_name}"):
                table.create(bind=self.engine)

        await self._run(create)
        self.logger.info(f"Created table {schema.physical_table_name} for schema {schema.schema_id}")

    async def drop_table(self, schema: TargetSchema) -> None:
        def drop():
            with self._errors(f"drop table {schema.physical_table_name}"):
                with self.engine.begin() as conn:
                    preparer = self.engine.dialect.identifier_preparer
                    conn.execute(text(f"DROP TABLE IF EXISTS {preparer.quote(schema.physical_table_name)}"))

        await self._run(drop)
        self._tables.pop(schema.physical_table_name, None)

    async def add_column(self, schema: TargetSchema, column: ColumnDefinition) -> None:
        def alter() -> bool:
            with self._errors(f"add column {column.name} to {schema.physical_table_name}"):
                existing = {c['name'] for c in inspect(self.engine).get_columns(schema.physical_table_name)}
                if column.physical_name in existing:
                    return False
                preparer = self.engine.dialect.identifier_preparer
                column_type = physical_type(column.type)().compile(dialect=self.engine.dialect)
                with self.engine.begin() as conn:
                    conn.execute(text(
                        f"ALTER TABLE {preparer.quote(schema.physical_table_name)} "
                        f"ADD COLUMN {preparer.quote(column.physical_name)} {column_type}"
                    ))
                return True

        if await self._run(alter):
            self.logger.info(f"Added column {column.name} ({column.physical_name}) to {schema.physical_table_name}")

    async def reload_schema_cache(self) -> None:
        self._tables.clear()
        if self.engine.dialect.name != 'postgresql':
            return

        def notify():
            with self._errors("signal schema reload"):
                with self.engine.begin() as conn:
                    conn.execute(text("NOTIFY pgrst, 'reload schema'"))

        await self._run(notify)

    # -- rows --------------------------------------------------------------

    async def get_row(self, schema: TargetSchema, row_id: str) -> Optional[StoreRow]:
        def read():
            with self._errors(f"read row {row_id}"):
                table = self._table(schema)
                with self.engine.connect() as conn:
                    return conn.execute(select(table).where(table.c.id == row_id)).mappings().first()

        record = await self._run(read)
        if record is None:
            return None
        return StoreRow(
            row_id=record['id'],
            schema_id=schema.schema_id,
            values=self.from_physical(schema, dict(record)),
            row_order=record['row_order'] or 0,
            updated_at=record['updated_at'],
            deleted_at=record['deleted_at'],
        )

    async def insert_row(self, schema: TargetSchema, values: FieldMap, row_order: int) -> str:
        physical = self.to_physical(schema, values)
        row_id = str(uuid4())
        now = _now()

        def insert():
            with self._errors(f"insert row into {schema.physical_table_name}"):
                table = self._table(schema)
                with self.engine.begin() as conn:
                    conn.execute(
                        table.insert().values(
                            id=row_id, row_order=row_order, created_at=now, updated_at=now, **physical
                        )
                    )

        await self._run(insert)
        return row_id

    async def update_row(self, schema: TargetSchema, row_id: str, values: FieldMap) -> bool:
        physical = self.to_physical(schema, values)

        def write() -> int:
            with self._errors(f"update row {row_id}"):
                table = self._table(schema)
                with self.engine.begin() as conn:
                    return conn.execute(
                        update(table).where(table.c.id == row_id).values(updated_at=_now(), **physical)
                    ).rowcount

        return await self._run(write) > 0

    async def delete_row(self, schema: TargetSchema, row_id: str) -> bool:
        def remove() -> int:
            with self._errors(f"delete row {row_id}"):
                table = self._table(schema)
                with self.engine.begin() as conn:
                    return conn.execute(delete(table).where(table.c.id == row_id)).rowcount

        return await self._run(remove) > 0

    async def next_row_order(self, schema: TargetSchema) -> int:
        def highest():
            with self._errors(f"compute next row order in {schema.physical_table_name}"):
                table = self._table(schema)
                with self.engine.connect() as conn:
                    return conn.execute(select(func.max(table.c.row_order))).scalar()

        current = await self._run(highest)
        return 0 if current is None else current + 1

    async def soft_delete_row(self, schema: TargetSchema, row_id: str) -> bool:
        """Stamp ``deleted_at`` on a row. Pushes skip rows marked this way."""
        def stamp() -> int:
            with self._errors(f"soft-delete row {row_id}"):
                table = self._table(schema)
                with self.engine.begin() as conn:
                    return conn.execute(
                        update(table).where(table.c.id == row_id).values(deleted_at=_now())
                    ).rowcount

        return await self._run(stamp) > 0

    # -- linked documents --------------------------------------------------

    async def create_document(self, owner_id: str, schema_id: str, row_id: str, title: str) -> str:
        document_id = str(uuid4())
        now = _now()

        def create():
            with self._errors(f"create document for row {row_id}"):
                with self.engine.begin() as conn:
                    conn.execute(
                        documents.insert().values(
                            id=document_id,
                            owner_id=owner_id,
                            title=title or '',
                            database_id=schema_id,
                            row_id=row_id,
                            created_at=now,
                            updated_at=now,
                        )
                    )

        await self._run(create)
        return document_id

    async def update_document_title(self, schema_id: str, row_id: str, title: str) -> int:
        def rename() -> int:
            with self._errors(f"update document title for row {row_id}"):
                with self.engine.begin() as conn:
                    return conn.execute(
                        update(documents)
                        .where(documents.c.database_id == schema_id, documents.c.row_id == row_id)
                        .values(title=title or '', updated_at=_now())
                    ).rowcount

        return await self._run(rename)

    async def delete_documents_for_row(self, schema_id: str, row_id: str) -> int:
        def remove() -> int:
            with self._errors(f"delete documents for row {row_id}"):
                with self.engine.begin() as conn:
                    return conn.execute(
                        delete(documents).where(documents.c.database_id == schema_id, documents.c.row_id == row_id)
                    ).rowcount

        return await self._run(remove)

    async def list_documents_for_row(self, schema_id: str, row_id: str) -> List[Dict]:
        """Documents linked to a row, as plain dicts."""
        def load():
            with self._errors(f"list documents for row {row_id}"):
                with self.engine.connect() as conn:
                    return conn.execute(
                        select(documents).where(documents.c.database_id == schema_id, documents.c.row_id == row_id)
                    ).mappings().all()

        return [dict(r) for r in await self._run(load)]
