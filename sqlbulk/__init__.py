"""SQLBULK - Staged bulk inserts into SQL Server with identity round-trip."""

__version__ = "0.3.0"

from sqlbulk.config import BulkCopySettings, ColumnDirection, IdentityColumn, load_config
from sqlbulk.connections import SqlServerConnection
from sqlbulk.exceptions import (
    ConfigurationError,
    IndexMaintenanceError,
    MergeError,
    SchemaMismatchError,
    SqlBulkException,
    TransferError,
)
from sqlbulk.operations import BulkInsert, bulk_insert

__all__ = [
    "BulkCopySettings",
    "BulkInsert",
    "ColumnDirection",
    "ConfigurationError",
    "IdentityColumn",
    "IndexMaintenanceError",
    "MergeError",
    "SchemaMismatchError",
    "SqlBulkException",
    "SqlServerConnection",
    "TransferError",
    "bulk_insert",
    "load_config",
    "__version__",
]
