"""Bulk operation configuration."""

from sqlbulk.operations.bulk_insert import BulkInsert, bulk_insert

__all__ = ["BulkInsert", "bulk_insert"]
