"""Row store interface with async support."""

from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional
import logging

from ..models import ColumnDefinition, ColumnType, FieldMap, StoreRow, TargetSchema

logger = logging.getLogger(__name__)


class StoreError(Exception):
    """Base exception for row store errors."""
    pass


class SchemaNotFoundError(StoreError):
    """The referenced target schema does not exist."""
    pass


class SchemaValidationError(StoreError):
    """A field map names columns the schema does not have."""
    pass


class RowStore(ABC):
    """Abstract dynamic row store.

    Schemas are container records holding a logical column list; each
    schema owns one physical table. Field maps crossing this boundary are
    keyed by column name and validated against the schema.
    """

    # -- schema records ----------------------------------------------------

    @abstractmethod
    async def get_schema(self, schema_id: str) -> TargetSchema:
        """Load a schema.

        Raises:
            SchemaNotFoundError: If no live schema has this id
        """
        pass

    @abstractmethod
    async def find_schema_by_name(self, owner_id: str, name: str) -> Optional[TargetSchema]:
        """Return the oldest live schema owned by ``owner_id`` with this display name."""
        pass

    @abstractmethod
    async def create_schema_record(
        self,
        owner_id: str,
        name: str,
        columns: List[ColumnDefinition],
    ) -> TargetSchema:
        """Create the container record only; no physical table yet."""
        pass

    @abstractmethod
    async def delete_schema_record(self, schema_id: str) -> None:
        pass

    @abstractmethod
    async def update_column_definitions(self, schema_id: str, columns: List[ColumnDefinition]) -> None:
        """Replace the logical column list of a schema."""
        pass

    # -- DDL ---------------------------------------------------------------

    @abstractmethod
    async def create_table(self, schema: TargetSchema) -> None:
        """Create the physical table with one column per definition."""
        pass

    @abstractmethod
    async def drop_table(self, schema: TargetSchema) -> None:
        pass

    @abstractmethod
    async def add_column(self, schema: TargetSchema, column: ColumnDefinition) -> None:
        """Add one physical column. A no-op if it already exists."""
        pass

    @abstractmethod
    async def reload_schema_cache(self) -> None:
        """Signal that table shapes changed and cached shapes are stale."""
        pass

    # -- rows --------------------------------------------------------------

    @abstractmethod
    async def get_row(self, schema: TargetSchema, row_id: str) -> Optional[StoreRow]:
        pass

    @abstractmethod
    async def insert_row(self, schema: TargetSchema, values: FieldMap, row_order: int) -> str:
        """Insert a row and return its id."""
        pass

    @abstractmethod
    async def update_row(self, schema: TargetSchema, row_id: str, values: FieldMap) -> bool:
        """Update a row in place.

        Returns:
            False if the row does not exist
        """
        pass

    @abstractmethod
    async def delete_row(self, schema: TargetSchema, row_id: str) -> bool:
        pass

    @abstractmethod
    async def next_row_order(self, schema: TargetSchema) -> int:
        pass

    # -- linked documents --------------------------------------------------

    @abstractmethod
    async def create_document(self, owner_id: str, schema_id: str, row_id: str, title: str) -> str:
        pass

    @abstractmethod
    async def update_document_title(self, schema_id: str, row_id: str, title: str) -> int:
        pass

    @abstractmethod
    async def delete_documents_for_row(self, schema_id: str, row_id: str) -> int:
        pass

    # -- helpers -----------------------------------------------------------

    @staticmethod
    def to_physical(schema: TargetSchema, values: FieldMap) -> Dict[str, Any]:
        """Translate a name-keyed field map to physical column names.

        Raises:
            SchemaValidationError: If a name has no column in the schema
        """
        unknown = [name for name in values if not schema.has_column(name)]
        if unknown:
            raise SchemaValidationError(
                f"Unknown columns for schema {schema.schema_id}: {', '.join(sorted(unknown))}"
            )

        physical: Dict[str, Any] = {}
        for name, value in values.items():
            column = schema.column(name)
            if column.type == ColumnType.CHECKBOX and value is not None:
                value = bool(value)
            physical[column.physical_name] = value
        return physical

    @staticmethod
    def from_physical(schema: TargetSchema, record: Dict[str, Any]) -> FieldMap:
        """Translate a physical record back to a name-keyed field map."""
        values: FieldMap = {}
        for column in schema.column_definitions:
            if column.physical_name in record:
                values[column.name] = record[column.physical_name]
        return values
