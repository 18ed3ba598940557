"""Bulk insert execution: column resolution, transfer, staging and index maintenance."""

from sqlbulk.writers.bulk_copy import BulkCopy
from sqlbulk.writers.bulk_insert_writer import BulkInsertWriter, CommitState
from sqlbulk.writers.columns import ColumnSet, ResolvedColumns
from sqlbulk.writers.indexes import IndexMaintenanceController
from sqlbulk.writers.staging import StagingTableManager

__all__ = [
    "BulkCopy",
    "BulkInsertWriter",
    "ColumnSet",
    "CommitState",
    "IndexMaintenanceController",
    "ResolvedColumns",
    "StagingTableManager",
]
