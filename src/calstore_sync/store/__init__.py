"""Dynamic row store interfaces and implementations."""

from .base import RowStore, StoreError, SchemaNotFoundError, SchemaValidationError
from .sql import SqlRowStore

__all__ = [
    'RowStore',
    'StoreError',
    'SchemaNotFoundError',
    'SchemaValidationError',
    'SqlRowStore',
]
