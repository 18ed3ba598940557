"""Temporary suspension of non-clustered indexes around a bulk load."""

from typing import Any, Optional

from sqlbulk.exceptions import IndexMaintenanceError
from sqlbulk.utils.async_io import run_blocking
from sqlbulk.utils.logging_context import OperationType, get_logging_context
from sqlbulk.writers.identifiers import escape_literal, get_escaped_table_name

DISABLE = "DISABLE"
REBUILD = "REBUILD"


class IndexMaintenanceController:
    """
    Disables every non-clustered index of a table before a load and rebuilds
    all indexes afterwards.

    Only non-clustered indexes are disabled: disabling the clustered index
    would make the table unreadable and unwritable for the load itself.
    REBUILD re-enables the disabled indexes.
    """

    def __init__(self, connection: Any, schema: str, table: str, enabled: bool = True, ctx=None):
        self.connection = connection
        self.schema = schema
        self.table = table
        self.enabled = enabled
        self.ctx = ctx or get_logging_context()
        self.qualified_table = get_escaped_table_name(schema, table)

    def build_disable_sql(self) -> str:
        return "\n".join(
            [
                "DECLARE @sql NVARCHAR(MAX) = N'';",
                "SELECT @sql = @sql + N'ALTER INDEX ' + QUOTENAME(i.name) + N' ON '",
                f"    + N{escape_literal(self.qualified_table)} + N' {DISABLE};'",
                "FROM sys.indexes AS i",
                "JOIN sys.objects AS o ON i.object_id = o.object_id",
                "JOIN sys.schemas AS s ON o.schema_id = s.schema_id",
                "WHERE i.type_desc = 'NONCLUSTERED'",
                "    AND o.type_desc = 'USER_TABLE'",
                f"    AND s.name = {escape_literal(self.schema)}",
                f"    AND o.name = {escape_literal(self.table)};",
                "EXEC sp_executesql @sql;",
            ]
        )

    def build_rebuild_sql(self) -> str:
        return f"ALTER INDEX ALL ON {self.qualified_table} {REBUILD};"

    def _execute(self, action: str, sql: str, rows_loaded: Optional[int] = None) -> None:
        description = f"{action} {self.qualified_table}"
        with self.ctx.operation(OperationType.INDEX_MAINTENANCE, description):
            self.ctx.log_sql(f"Index {action.lower()} command", sql)
            try:
                self.connection.execute_sql(sql)
            except Exception as e:
                raise IndexMaintenanceError(
                    table=self.qualified_table,
                    action=action,
                    reason=str(e),
                    rows_loaded=rows_loaded,
                ) from e

    def disable(self) -> None:
        if self.enabled:
            self._execute(DISABLE, self.build_disable_sql())

    def rebuild(self, rows_loaded: Optional[int] = None) -> None:
        if self.enabled:
            self._execute(REBUILD, self.build_rebuild_sql(), rows_loaded=rows_loaded)

    async def disable_async(self) -> None:
        await run_blocking(self.disable)

    async def rebuild_async(self, rows_loaded: Optional[int] = None) -> None:
        await run_blocking(self.rebuild, rows_loaded)
