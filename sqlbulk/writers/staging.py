"""Staging table path for identity round-trip.

When generated identities must be returned, rows are first bulk-copied into a
session-scoped temp table together with a correlation key. A single MERGE then
inserts them into the target and records (correlation key, generated identity)
pairs in a second temp table, which is read back and matched to the records.
"""

import threading
from contextlib import asynccontextmanager, contextmanager
from typing import Any, AsyncIterator, Dict, Iterator, List, Optional, Tuple

import pandas as pd

from sqlbulk.config import BulkCopySettings
from sqlbulk.exceptions import MergeError, SchemaMismatchError
from sqlbulk.utils.async_io import checkpoint, run_blocking
from sqlbulk.utils.logging_context import OperationType, get_logging_context
from sqlbulk.writers.buffer import CORRELATION_COLUMN
from sqlbulk.writers.bulk_copy import BulkCopy
from sqlbulk.writers.columns import ResolvedColumns
from sqlbulk.writers.identifiers import escape_column, escape_literal, get_escaped_table_name

STAGING_TABLE = "#TmpTable"
OUTPUT_TABLE = "#TmpOutput"

_LENGTH_TYPES = ("nvarchar", "varchar", "char", "nchar", "binary", "varbinary")
_PRECISION_SCALE_TYPES = ("decimal", "numeric")
_FRACTIONAL_SECONDS_TYPES = ("datetime2", "datetimeoffset", "time")


def build_full_type(
    data_type: str,
    char_len: Optional[int] = None,
    num_prec: Optional[int] = None,
    num_scale: Optional[int] = None,
    datetime_prec: Optional[int] = None,
) -> str:
    """Full SQL type with length/precision, e.g. 'nvarchar(255)' or 'decimal(18,2)'."""
    lowered = data_type.lower()
    if lowered in _LENGTH_TYPES:
        if char_len == -1 or not char_len:
            return f"{data_type}(MAX)"
        return f"{data_type}({char_len})"
    if lowered in _PRECISION_SCALE_TYPES:
        if num_prec and num_scale is not None:
            return f"{data_type}({num_prec},{num_scale})"
        return data_type
    if lowered in _FRACTIONAL_SECONDS_TYPES and datetime_prec is not None:
        return f"{data_type}({datetime_prec})"
    return data_type


class StagingTableManager:
    """
    Owns the staging and output temp tables of one commit.

    Usage:
        manager = StagingTableManager(connection, "dbo", "Books", resolved, settings)
        with manager.staging_table():
            manager.load(buffer)
            manager.merge()
            identities = manager.read_back(len(buffer))
    """

    def __init__(
        self,
        connection: Any,
        schema: str,
        table: str,
        columns: ResolvedColumns,
        settings: BulkCopySettings,
        ctx=None,
    ):
        self.connection = connection
        self.schema = schema
        self.table = table
        self.columns = columns
        self.settings = settings
        self.ctx = ctx or get_logging_context()
        self.target_table = get_escaped_table_name(
            schema, table, getattr(connection, "database", None)
        )

    def get_destination_schema(self) -> Dict[str, str]:
        """
        Column names and full types of the destination table, in ordinal order.

        Returns:
            Dictionary mapping column names to full SQL types (e.g., 'nvarchar(255)')
        """
        sql = f"""
        SELECT
            COLUMN_NAME,
            DATA_TYPE,
            CHARACTER_MAXIMUM_LENGTH,
            NUMERIC_PRECISION,
            NUMERIC_SCALE,
            DATETIME_PRECISION
        FROM INFORMATION_SCHEMA.COLUMNS
        WHERE TABLE_SCHEMA = {escape_literal(self.schema)}
            AND TABLE_NAME = {escape_literal(self.table)}
        ORDER BY ORDINAL_POSITION
        """
        result = self.connection.execute_sql(sql)
        columns = {}
        for row in result:
            padded = list(row) + [None] * (6 - len(row))
            col_name, data_type, char_len, num_prec, num_scale, dt_prec = padded[:6]
            columns[col_name] = build_full_type(data_type, char_len, num_prec, num_scale, dt_prec)
        return columns

    def build_staging_schema(
        self, destination_columns: Dict[str, str]
    ) -> Tuple[List[Tuple[str, str]], str]:
        """
        Restrict the destination schema to the transferred columns.

        Returns:
            ([(destination column, type), ...], identity column type)

        Raises:
            SchemaMismatchError: If the table, a column, or the identity column is missing
        """
        if not destination_columns:
            raise SchemaMismatchError(
                table=self.target_table,
                reason="Destination table does not exist or has no visible columns",
            )

        by_key = {name.lower(): (name, sql_type) for name, sql_type in destination_columns.items()}
        staging_columns = []
        missing = []
        for _, dest in self.columns.column_mappings():
            match = by_key.get(dest.lower())
            if match is None:
                missing.append(dest)
            else:
                staging_columns.append((dest, match[1]))

        identity_dest = self.columns.identity_destination
        identity_match = by_key.get(identity_dest.lower()) if identity_dest else None
        if identity_dest and identity_match is None:
            missing.append(identity_dest)

        if missing:
            raise SchemaMismatchError(
                table=self.target_table,
                reason="Columns are not present in the destination table",
                missing_columns=missing,
                available_columns=list(destination_columns),
            )
        return staging_columns, identity_match[1]

    def build_create_sql(self, staging_columns: List[Tuple[str, str]], identity_type: str) -> str:
        correlation = escape_column(CORRELATION_COLUMN)
        identity_col = escape_column(self.columns.identity_destination)
        col_defs = [f"{escape_column(name)} {sql_type} NULL" for name, sql_type in staging_columns]
        col_defs.append(f"{correlation} INT NOT NULL")
        return "\n".join(
            [
                self.build_drop_sql(),
                f"CREATE TABLE {STAGING_TABLE} ({', '.join(col_defs)});",
                f"CREATE TABLE {OUTPUT_TABLE} ("
                f"{correlation} INT NOT NULL, {identity_col} {identity_type});",
            ]
        )

    def build_merge_sql(self) -> str:
        """
        MERGE that inserts every staged row and captures its generated identity.

        ON 1 = 0 never matches, so every source row is inserted. Unlike
        INSERT ... OUTPUT, the OUTPUT clause of MERGE can reference source
        columns, which carries the correlation key across.
        """
        dest_cols = [escape_column(dest) for _, dest in self.columns.column_mappings()]
        source_cols = [f"Source.{c}" for c in dest_cols]
        correlation = escape_column(CORRELATION_COLUMN)
        identity_col = escape_column(self.columns.identity_destination)
        hint = " WITH (TABLOCK)" if self.settings.table_lock else ""

        sql_parts = [
            f"MERGE INTO {self.target_table}{hint} AS Target",
            f"USING {STAGING_TABLE} AS Source",
            "ON 1 = 0",
            "WHEN NOT MATCHED BY TARGET THEN",
            f"    INSERT ({', '.join(dest_cols)})",
            f"    VALUES ({', '.join(source_cols)})",
            f"OUTPUT Source.{correlation}, INSERTED.{identity_col}",
            f"INTO {OUTPUT_TABLE} ({correlation}, {identity_col});",
        ]
        return "\n".join(sql_parts)

    def build_read_back_sql(self) -> str:
        correlation = escape_column(CORRELATION_COLUMN)
        identity_col = escape_column(self.columns.identity_destination)
        return (
            f"SELECT {correlation}, {identity_col} FROM {OUTPUT_TABLE} "
            f"ORDER BY {correlation};"
        )

    def build_drop_sql(self) -> str:
        return (
            f"IF OBJECT_ID('tempdb..{OUTPUT_TABLE}') IS NOT NULL DROP TABLE {OUTPUT_TABLE};\n"
            f"IF OBJECT_ID('tempdb..{STAGING_TABLE}') IS NOT NULL DROP TABLE {STAGING_TABLE};"
        )

    def create(self) -> None:
        """Derive the staging schema from the destination and create the temp tables."""
        with self.ctx.operation(OperationType.STAGING, f"create {STAGING_TABLE}"):
            try:
                destination_columns = self.get_destination_schema()
            except Exception as e:
                raise SchemaMismatchError(
                    table=self.target_table,
                    reason=f"Could not read destination column metadata: {e}",
                ) from e

            staging_columns, identity_type = self.build_staging_schema(destination_columns)
            sql = self.build_create_sql(staging_columns, identity_type)
            self.ctx.log_sql("Creating staging tables", sql)
            try:
                self.connection.execute_sql(sql)
            except Exception as e:
                raise SchemaMismatchError(
                    table=self.target_table,
                    reason=f"Staging table could not be created: {e}",
                ) from e

    def load(self, buffer: pd.DataFrame, stop: Optional[threading.Event] = None) -> int:
        """Bulk-copy the buffer, correlation column included, into the staging table."""
        mappings = self.columns.column_mappings() + [(CORRELATION_COLUMN, CORRELATION_COLUMN)]
        bulk_copy = BulkCopy(self.connection, STAGING_TABLE, mappings, self.settings, ctx=self.ctx)
        return bulk_copy.write_to_server(buffer, stop=stop)

    async def load_async(self, buffer: pd.DataFrame) -> int:
        stop = threading.Event()
        return await run_blocking(self.load, buffer, stop, stop=stop)

    def merge(self) -> None:
        sql = self.build_merge_sql()
        with self.ctx.operation(OperationType.MERGE, self.target_table):
            self.ctx.log_sql("Executing MERGE", sql)
            try:
                self.connection.execute_sql(sql, timeout=self.settings.timeout)
            except Exception as e:
                raise MergeError(table=self.target_table, reason=str(e)) from e

    def read_back(self, expected_rows: int) -> Dict[int, Any]:
        """
        Read the generated identities keyed by correlation key.

        Raises:
            MergeError: If the number of entries differs from expected_rows or a key repeats
        """
        try:
            rows = self.connection.execute_sql(self.build_read_back_sql())
        except Exception as e:
            raise MergeError(table=self.target_table, reason=str(e)) from e

        identities: Dict[int, Any] = {}
        for correlation_key, generated in rows:
            if correlation_key in identities:
                raise MergeError(
                    table=self.target_table,
                    reason=f"Correlation key {correlation_key} was returned more than once",
                )
            identities[correlation_key] = generated

        if len(identities) != expected_rows:
            raise MergeError(
                table=self.target_table,
                reason="Generated identity count does not match the number of staged rows",
                expected=expected_rows,
                actual=len(identities),
            )
        self.ctx.debug("Generated identities read back", count=len(identities))
        return identities

    def drop(self) -> None:
        self.ctx.debug("Dropping staging tables", staging_table=STAGING_TABLE)
        self.connection.execute_sql(self.build_drop_sql())

    def _drop_after_failure(self) -> None:
        # The original failure is what the caller needs to see
        try:
            self.drop()
        except Exception as e:
            self.ctx.error(
                "Failed to drop staging tables after an earlier error",
                error_type=type(e).__name__,
                error_message=str(e),
            )

    @contextmanager
    def staging_table(self) -> Iterator["StagingTableManager"]:
        """Create the staging tables and drop them on every exit path."""
        try:
            self.create()
            yield self
        except BaseException:
            self._drop_after_failure()
            raise
        self.drop()

    @asynccontextmanager
    async def staging_table_async(self) -> AsyncIterator["StagingTableManager"]:
        """Async variant of staging_table. Cancellation still drops the tables."""
        try:
            await checkpoint()
            await run_blocking(self.create)
            yield self
        except BaseException:
            await run_blocking(self._drop_after_failure)
            raise
        await run_blocking(self.drop)
