"""Custom exceptions for SQLBULK."""

from typing import List, Optional


class SqlBulkException(Exception):
    """Base exception for all SQLBULK errors."""

    pass


def _format_suggestions(suggestions: List[str]) -> str:
    if not suggestions:
        return ""
    parts = ["\n\n  Suggestions:"]
    for i, suggestion in enumerate(suggestions, 1):
        parts.append(f"\n    {i}. {suggestion}")
    return "".join(parts)


class ConfigurationError(SqlBulkException):
    """Bulk operation configuration is invalid. Raised before any store I/O."""

    def __init__(self, message: str, suggestions: Optional[List[str]] = None):
        self.message = message
        self.suggestions = suggestions or []
        super().__init__(self._format_error())

    def _format_error(self) -> str:
        return f"✗ Configuration error: {self.message}" + _format_suggestions(self.suggestions)


class ConnectionError(SqlBulkException):
    """Connection failed or invalid."""

    def __init__(self, connection_name: str, reason: str, suggestions: Optional[List[str]] = None):
        self.connection_name = connection_name
        self.reason = reason
        self.suggestions = suggestions or []
        super().__init__(self._format_error())

    def _format_error(self) -> str:
        """Format connection error with suggestions."""
        parts = [
            f"✗ Connection failed: {self.connection_name}",
            f"\n  Reason: {self.reason}",
        ]
        return "".join(parts) + _format_suggestions(self.suggestions)


class SchemaMismatchError(SqlBulkException):
    """Staging schema could not be derived from the destination table."""

    def __init__(
        self,
        table: str,
        reason: str,
        missing_columns: Optional[List[str]] = None,
        available_columns: Optional[List[str]] = None,
    ):
        self.table = table
        self.reason = reason
        self.missing_columns = missing_columns or []
        self.available_columns = available_columns or []
        super().__init__(self._format_error())

    def _format_error(self) -> str:
        parts = [f"✗ Schema mismatch for table: {self.table}", f"\n  Reason: {self.reason}"]
        if self.missing_columns:
            parts.append(f"\n  Missing columns: {self.missing_columns}")
        if self.available_columns:
            parts.append(f"\n  Available columns: {self.available_columns}")
        return "".join(parts)


class TransferError(SqlBulkException):
    """Bulk transfer into a destination table failed."""

    def __init__(
        self,
        destination: str,
        reason: str,
        rows_expected: Optional[int] = None,
        rows_transferred: Optional[int] = None,
    ):
        self.destination = destination
        self.reason = reason
        self.rows_expected = rows_expected
        self.rows_transferred = rows_transferred
        super().__init__(self._format_error())

    def _format_error(self) -> str:
        parts = [f"✗ Bulk transfer failed: {self.destination}", f"\n  Reason: {self.reason}"]
        if self.rows_expected is not None:
            parts.append(f"\n  Rows expected: {self.rows_expected}")
        if self.rows_transferred is not None:
            parts.append(f"\n  Rows transferred: {self.rows_transferred}")
        return "".join(parts)


class MergeError(SqlBulkException):
    """Merge from staging failed, or generated identities could not be correlated."""

    def __init__(
        self,
        table: str,
        reason: str,
        expected: Optional[int] = None,
        actual: Optional[int] = None,
    ):
        self.table = table
        self.reason = reason
        self.expected = expected
        self.actual = actual
        super().__init__(self._format_error())

    def _format_error(self) -> str:
        parts = [f"✗ Merge failed for table: {self.table}", f"\n  Reason: {self.reason}"]
        if self.expected is not None and self.actual is not None:
            parts.append(f"\n  Expected {self.expected} identity rows, got {self.actual}")
        return "".join(parts)


class IndexMaintenanceError(SqlBulkException):
    """Disabling or rebuilding non-clustered indexes failed."""

    def __init__(
        self,
        table: str,
        action: str,
        reason: str,
        rows_loaded: Optional[int] = None,
    ):
        self.table = table
        self.action = action
        self.reason = reason
        self.rows_loaded = rows_loaded
        super().__init__(self._format_error())

    def _format_error(self) -> str:
        parts = [
            f"✗ Index maintenance failed ({self.action}): {self.table}",
            f"\n  Reason: {self.reason}",
        ]
        suggestions = []
        if self.rows_loaded is not None:
            parts.append(f"\n  Rows loaded before failure: {self.rows_loaded}")
            suggestions.append(
                f"Indexes may still be disabled. Run: ALTER INDEX ALL ON {self.table} REBUILD"
            )
        return "".join(parts) + _format_suggestions(suggestions)
