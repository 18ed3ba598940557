"""Bulk transfer of a buffer into a SQL Server table.

Rows are sent as parameterized INSERT batches through pyodbc's
``fast_executemany``, which packs each batch into a single round trip.
"""

import threading
from typing import Any, Iterator, List, Optional, Sequence, Tuple

import pandas as pd

from sqlbulk.config import BulkCopySettings
from sqlbulk.exceptions import TransferError
from sqlbulk.utils.async_io import run_blocking
from sqlbulk.utils.logging_context import OperationType, get_logging_context
from sqlbulk.writers.buffer import buffer_rows
from sqlbulk.writers.identifiers import escape_column


class BulkCopy:
    """
    Copies a transfer buffer into one destination table.

    Settings:
    - batch_size: rows per executemany call (0 = one batch)
    - timeout: per-statement timeout in seconds
    - keep_identity: SET IDENTITY_INSERT ON for the duration of the transfer
    - table_lock: INSERT ... WITH (TABLOCK)
    - use_internal_transaction: commit after every batch instead of once at the end

    Row inserts always enforce FOREIGN KEY and CHECK constraints, so
    check_constraints has no effect on this path.
    """

    def __init__(
        self,
        connection: Any,
        destination_table: str,
        column_mappings: Sequence[Tuple[str, str]],
        settings: BulkCopySettings,
        ctx=None,
    ):
        """
        Args:
            connection: Open connection with execute_many/execute_sql/commit/rollback
            destination_table: Escaped destination table name
            column_mappings: (buffer column, destination column) pairs
            settings: Bulk copy settings
            ctx: Logging context (defaults to the global one)
        """
        self.connection = connection
        self.destination_table = destination_table
        self.column_mappings = list(column_mappings)
        self.settings = settings
        self.ctx = ctx or get_logging_context()

    def build_insert_sql(self) -> str:
        columns = ", ".join(escape_column(dest) for _, dest in self.column_mappings)
        placeholders = ", ".join("?" for _ in self.column_mappings)
        hint = " WITH (TABLOCK)" if self.settings.table_lock else ""
        return f"INSERT INTO {self.destination_table}{hint} ({columns}) VALUES ({placeholders})"

    def _batches(self, rows: List[tuple]) -> Iterator[List[tuple]]:
        size = self.settings.batch_size or len(rows)
        for start in range(0, len(rows), size):
            yield rows[start : start + size]

    def _set_identity_insert(self, enabled: bool) -> None:
        state = "ON" if enabled else "OFF"
        self.connection.execute_sql(f"SET IDENTITY_INSERT {self.destination_table} {state}")

    def _undo_failed_transfer(self) -> None:
        # Rollback must come first: the IDENTITY_INSERT OFF statement commits
        try:
            self.connection.rollback()
        except Exception as e:
            self.ctx.warning("Rollback after failed transfer also failed", error=str(e))
        if self.settings.keep_identity:
            try:
                self._set_identity_insert(False)
            except Exception as e:
                self.ctx.warning("Could not switch IDENTITY_INSERT off", error=str(e))

    def _cancelled(self, committed: int, expected: int) -> TransferError:
        return TransferError(
            destination=self.destination_table,
            reason="Transfer cancelled",
            rows_expected=expected,
            rows_transferred=committed,
        )

    def write_to_server(
        self, buffer: pd.DataFrame, stop: Optional[threading.Event] = None
    ) -> int:
        """
        Transfer every buffer row to the destination.

        Args:
            buffer: Transfer buffer
            stop: Checked before every batch; once set the transfer is rolled back

        Returns:
            Number of rows transferred (always len(buffer) on success)

        Raises:
            TransferError: On any store failure, cancellation or row-count mismatch
        """
        rows = buffer_rows(buffer, [source for source, _ in self.column_mappings])
        sql = self.build_insert_sql()
        transferred = 0
        committed = 0

        with self.ctx.operation(OperationType.BULK_COPY, self.destination_table) as metrics:
            metrics.rows_in = len(rows)
            self.ctx.log_sql("Bulk insert statement", sql)
            try:
                if self.settings.keep_identity:
                    self._set_identity_insert(True)
                try:
                    for batch in self._batches(rows):
                        if stop is not None and stop.is_set():
                            raise self._cancelled(committed, len(rows))
                        transferred += self.connection.execute_many(
                            sql, batch, timeout=self.settings.timeout
                        )
                        if self.settings.use_internal_transaction:
                            self.connection.commit()
                            committed = transferred
                    if not self.settings.use_internal_transaction:
                        self.connection.commit()
                        committed = transferred
                except BaseException:
                    self._undo_failed_transfer()
                    raise
                if self.settings.keep_identity:
                    self._set_identity_insert(False)
            except TransferError:
                raise
            except Exception as e:
                raise TransferError(
                    destination=self.destination_table,
                    reason=str(e),
                    rows_expected=len(rows),
                    rows_transferred=committed,
                ) from e

            metrics.rows_out = transferred

        if transferred != len(rows):
            raise TransferError(
                destination=self.destination_table,
                reason="Row count reported by the store does not match the buffer",
                rows_expected=len(rows),
                rows_transferred=transferred,
            )
        return transferred

    async def write_to_server_async(self, buffer: pd.DataFrame) -> int:
        """
        Same as write_to_server, with the round trips run off the event loop.

        Cancellation stops the transfer before its next batch and rolls back
        what is uncommitted; CancelledError is raised once the worker is done.
        """
        stop = threading.Event()
        return await run_blocking(self.write_to_server, buffer, stop, stop=stop)
