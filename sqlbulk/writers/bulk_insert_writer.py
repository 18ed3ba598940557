"""Commit engine for bulk inserts.

Runs one commit of a configured BulkInsert against one connection:

    resolve columns -> build buffer -> [disable indexes]
        -> direct transfer | staging (create, load, merge, read back, drop)
        -> [rebuild indexes] -> write back identities

Any failure moves the commit to ``aborted``; staging tables are dropped on
every exit path once created.
"""

from enum import Enum
from typing import TYPE_CHECKING, Any, Dict, List, Sequence

import pandas as pd

from sqlbulk.exceptions import MergeError
from sqlbulk.utils.async_io import checkpoint, run_blocking
from sqlbulk.utils.logging_context import OperationType, create_logging_context
from sqlbulk.writers.buffer import build_transfer_buffer
from sqlbulk.writers.bulk_copy import BulkCopy
from sqlbulk.writers.columns import (
    ResolvedColumns,
    find_record_field,
    resolve_columns,
    write_field,
)
from sqlbulk.writers.identifiers import get_escaped_table_name
from sqlbulk.writers.indexes import IndexMaintenanceController
from sqlbulk.writers.staging import StagingTableManager

if TYPE_CHECKING:
    from sqlbulk.operations.bulk_insert import BulkInsert


class CommitState(str, Enum):
    """States of a single commit."""

    IDLE = "idle"
    COLUMNS_RESOLVED = "columns_resolved"
    BUFFER_BUILT = "buffer_built"
    INDEXES_DISABLED = "indexes_disabled"
    DIRECT_TRANSFERRED = "direct_transferred"
    STAGING_CREATED = "staging_created"
    STAGED_DATA_LOADED = "staged_data_loaded"
    MERGED = "merged"
    IDENTITIES_READ_BACK = "identities_read_back"
    STAGING_DROPPED = "staging_dropped"
    INDEXES_REBUILT = "indexes_rebuilt"
    DONE = "done"
    ABORTED = "aborted"


def materialize_identities(
    records: Sequence[Any],
    identity_field: str,
    identities: Dict[int, Any],
    table: str = "",
) -> None:
    """
    Write generated identities back into records, in record order.

    Record i receives the value generated for correlation key i.

    Raises:
        MergeError: If a record has no generated identity
    """
    for position, record in enumerate(records):
        if position not in identities:
            raise MergeError(
                table=table,
                reason=f"No generated identity for record at position {position}",
                expected=len(records),
                actual=len(identities),
            )
        write_field(record, identity_field, identities[position])


class BulkInsertWriter:
    """Executes one commit of a BulkInsert configuration."""

    def __init__(self, operation: "BulkInsert", connection: Any, ctx=None):
        self.operation = operation
        self.connection = connection
        self.ctx = ctx or create_logging_context(table=f"{operation.schema}.{operation.table}")
        self.state = CommitState.IDLE
        self.history: List[CommitState] = [CommitState.IDLE]

    def _transition(self, state: CommitState) -> None:
        self.state = state
        self.history.append(state)
        self.ctx.debug("Commit state changed", state=state.value)

    def _resolve(self) -> ResolvedColumns:
        with self.ctx.operation(OperationType.RESOLVE, "columns"):
            resolved = resolve_columns(
                columns=self.operation.columns,
                custom_mappings=self.operation.custom_column_mappings,
                identity=self.operation.identity,
                settings=self.operation.settings,
                record_type=self.operation.resolved_record_type(),
                record_fields=self.operation.record_fields(),
            )
        self._transition(CommitState.COLUMNS_RESOLVED)
        return resolved

    def _build_buffer(self, resolved: ResolvedColumns) -> pd.DataFrame:
        with self.ctx.operation(OperationType.BUILD_BUFFER, "records") as metrics:
            buffer = build_transfer_buffer(
                self.operation.records, resolved.fields, correlation=resolved.requires_staging
            )
            metrics.rows_out = len(buffer)
        self._transition(CommitState.BUFFER_BUILT)
        return buffer

    def _indexes(self) -> IndexMaintenanceController:
        return IndexMaintenanceController(
            self.connection,
            self.operation.schema,
            self.operation.table,
            enabled=self.operation.disable_indexes,
            ctx=self.ctx,
        )

    def _direct_bulk_copy(self, resolved: ResolvedColumns) -> BulkCopy:
        destination = get_escaped_table_name(
            self.operation.schema,
            self.operation.table,
            getattr(self.connection, "database", None),
        )
        return BulkCopy(
            self.connection,
            destination,
            resolved.column_mappings(),
            self.operation.settings,
            ctx=self.ctx,
        )

    def _staging_manager(self, resolved: ResolvedColumns) -> StagingTableManager:
        return StagingTableManager(
            self.connection,
            self.operation.schema,
            self.operation.table,
            resolved,
            self.operation.settings,
            ctx=self.ctx,
        )

    def _write_back(self, resolved: ResolvedColumns, identities: Dict[int, Any]) -> None:
        record_fields = self.operation.record_fields() or []
        identity_field = (
            find_record_field(resolved.identity.field, record_fields) or resolved.identity.field
        )
        with self.ctx.operation(OperationType.WRITE_BACK, identity_field):
            materialize_identities(
                self.operation.records,
                identity_field,
                identities,
                table=f"{self.operation.schema}.{self.operation.table}",
            )

    def _log_start(self, resolved: ResolvedColumns, rows: int) -> None:
        self.ctx.info(
            "Starting bulk insert",
            rows=rows,
            columns=len(resolved.transfer_fields),
            staging=resolved.requires_staging,
            disable_indexes=self.operation.disable_indexes,
        )

    def commit(self) -> int:
        """
        Run the commit.

        Returns:
            Number of rows inserted (0 for an empty record sequence, without any I/O)
        """
        if not self.operation.records:
            self.ctx.info("No records to insert, skipping commit")
            self._transition(CommitState.DONE)
            return 0

        try:
            resolved = self._resolve()
            buffer = self._build_buffer(resolved)
            self._log_start(resolved, len(buffer))

            if not self.connection.is_open:
                self.connection.open()

            indexes = self._indexes()
            if indexes.enabled:
                indexes.disable()
                self._transition(CommitState.INDEXES_DISABLED)

            identities = None
            if resolved.requires_staging:
                manager = self._staging_manager(resolved)
                with manager.staging_table():
                    self._transition(CommitState.STAGING_CREATED)
                    manager.load(buffer)
                    self._transition(CommitState.STAGED_DATA_LOADED)
                    manager.merge()
                    self._transition(CommitState.MERGED)
                    identities = manager.read_back(len(buffer))
                    self._transition(CommitState.IDENTITIES_READ_BACK)
                self._transition(CommitState.STAGING_DROPPED)
            else:
                self._direct_bulk_copy(resolved).write_to_server(buffer)
                self._transition(CommitState.DIRECT_TRANSFERRED)

            if indexes.enabled:
                indexes.rebuild(rows_loaded=len(buffer))
                self._transition(CommitState.INDEXES_REBUILT)

            if identities is not None:
                self._write_back(resolved, identities)

            self._transition(CommitState.DONE)
            self.ctx.info("Bulk insert completed", rows_affected=len(buffer))
            return len(buffer)
        except BaseException:
            self._transition(CommitState.ABORTED)
            raise

    async def commit_async(self) -> int:
        """
        Run the commit without blocking the event loop.

        Each round trip runs in a worker thread. Cancellation is checked before
        every I/O step and between transfer batches. An in-flight round trip is
        allowed to finish before cleanup runs, and staging tables are still
        dropped.
        """
        if not self.operation.records:
            self.ctx.info("No records to insert, skipping commit")
            self._transition(CommitState.DONE)
            return 0

        try:
            resolved = self._resolve()
            buffer = self._build_buffer(resolved)
            self._log_start(resolved, len(buffer))

            if not self.connection.is_open:
                await checkpoint()
                await self.connection.open_async()

            indexes = self._indexes()
            if indexes.enabled:
                await checkpoint()
                await indexes.disable_async()
                self._transition(CommitState.INDEXES_DISABLED)

            identities = None
            if resolved.requires_staging:
                manager = self._staging_manager(resolved)
                async with manager.staging_table_async():
                    self._transition(CommitState.STAGING_CREATED)
                    await checkpoint()
                    await manager.load_async(buffer)
                    self._transition(CommitState.STAGED_DATA_LOADED)
                    await checkpoint()
                    await run_blocking(manager.merge)
                    self._transition(CommitState.MERGED)
                    await checkpoint()
                    identities = await run_blocking(manager.read_back, len(buffer))
                    self._transition(CommitState.IDENTITIES_READ_BACK)
                self._transition(CommitState.STAGING_DROPPED)
            else:
                await checkpoint()
                await self._direct_bulk_copy(resolved).write_to_server_async(buffer)
                self._transition(CommitState.DIRECT_TRANSFERRED)

            if indexes.enabled:
                await checkpoint()
                await indexes.rebuild_async(rows_loaded=len(buffer))
                self._transition(CommitState.INDEXES_REBUILT)

            if identities is not None:
                self._write_back(resolved, identities)

            self._transition(CommitState.DONE)
            self.ctx.info("Bulk insert completed", rows_affected=len(buffer))
            return len(buffer)
        except BaseException:
            self._transition(CommitState.ABORTED)
            raise
