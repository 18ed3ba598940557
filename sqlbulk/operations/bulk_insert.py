"""Bulk insert configuration stages.

Each configuration method returns a new ``BulkInsert``; the stage it was
called on is left untouched. The final stage is handed to the commit engine
as a read-only description of the load.

Example:
    >>> books = [Book(title="Dune", isbn="9780441013593"), ...]
    >>> inserted = (
    ...     bulk_insert(books, "dbo.Books")
    ...     .add_all_columns()
    ...     .custom_column_mapping("isbn", "ISBN_13")
    ...     .set_identity_column("id", ColumnDirection.INPUT_OUTPUT)
    ...     .commit(connection)
    ... )
    >>> books[0].id
    1
"""

import dataclasses
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Tuple

from pydantic import ValidationError

from sqlbulk.config import BulkCopySettings, ColumnDirection, IdentityColumn
from sqlbulk.exceptions import ConfigurationError
from sqlbulk.writers.bulk_insert_writer import BulkInsertWriter
from sqlbulk.writers.columns import ColumnSet, find_record_field, get_record_fields
from sqlbulk.writers.identifiers import parse_table_name


@dataclass(frozen=True)
class BulkInsert:
    """Immutable description of one bulk insert."""

    records: Tuple[Any, ...]
    table: str
    schema: str = "dbo"
    record_type: Optional[type] = None
    columns: ColumnSet = field(default_factory=ColumnSet)
    custom_mappings: Tuple[Tuple[str, str], ...] = ()
    identity: Optional[IdentityColumn] = None
    disable_indexes: bool = False
    settings: BulkCopySettings = field(default_factory=BulkCopySettings)

    def resolved_record_type(self) -> Optional[type]:
        """Declared record type, or the type of the first record."""
        if self.record_type is not None:
            return self.record_type
        if self.records:
            return type(self.records[0])
        return None

    def record_fields(self) -> Optional[List[str]]:
        """Scalar fields of the records, or None when they cannot be determined."""
        record_type = self.resolved_record_type()
        if record_type is None:
            return None
        fields = get_record_fields(record_type, sample=self.records[0] if self.records else None)
        if not fields and not self.records:
            return None
        return fields

    @property
    def custom_column_mappings(self) -> Dict[str, str]:
        return dict(self.custom_mappings)

    def _canonical_field(self, name: str) -> str:
        fields = self.record_fields()
        if fields is None:
            return name
        match = find_record_field(name, fields)
        if match is None:
            raise ConfigurationError(
                f"Field '{name}' does not exist on the records or is not a value or string type",
                suggestions=[f"Available fields: {fields}"],
            )
        return match

    def add_column(self, name: str, destination: Optional[str] = None) -> "BulkInsert":
        """Include a record field. Optionally map it to a differently named column."""
        canonical = self._canonical_field(name)
        stage = dataclasses.replace(self, columns=self.columns.add(canonical))
        if destination is not None:
            stage = stage.custom_column_mapping(canonical, destination)
        return stage

    def add_all_columns(self) -> "BulkInsert":
        """Include every value and string type field of the record type."""
        fields = self.record_fields()
        if fields is None:
            raise ConfigurationError(
                "Cannot determine the record fields from an empty record sequence",
                suggestions=["Pass record_type to bulk_insert() or use add_column()"],
            )
        columns = self.columns
        for name in fields:
            columns = columns.add(name)
        return dataclasses.replace(self, columns=columns)

    def remove_column(self, name: str) -> "BulkInsert":
        """Exclude a field previously added. Raises ConfigurationError if absent."""
        return dataclasses.replace(self, columns=self.columns.remove(name))

    def custom_column_mapping(self, name: str, destination: str) -> "BulkInsert":
        """Map a record field to a destination column. A later mapping for the same field wins."""
        if not destination or not destination.strip():
            raise ConfigurationError(f"Destination column for field '{name}' must not be empty")
        key = name.lower()
        mappings = tuple((f, d) for f, d in self.custom_mappings if f.lower() != key)
        return dataclasses.replace(self, custom_mappings=mappings + ((name, destination),))

    def set_identity_column(
        self, name: str, direction: ColumnDirection = ColumnDirection.OUTPUT
    ) -> "BulkInsert":
        """
        Declare the identity column.

        Required when the table has an identity column and add_all_columns() was
        used. With ColumnDirection.INPUT_OUTPUT the generated values are written
        back into each record after the commit.
        """
        canonical = self._canonical_field(name)
        return dataclasses.replace(
            self, identity=IdentityColumn(field=canonical, direction=direction)
        )

    def tmp_disable_all_non_clustered_indexes(self) -> "BulkInsert":
        """
        Disable all non-clustered indexes before the load and rebuild them after.
        Only worth it for very large loads.
        """
        return dataclasses.replace(self, disable_indexes=True)

    def with_bulk_copy_settings(
        self, settings: Optional[BulkCopySettings] = None, **options: Any
    ) -> "BulkInsert":
        """Replace the bulk copy settings, or override individual options."""
        try:
            base = settings or self.settings
            merged = BulkCopySettings(**{**base.model_dump(), **options})
        except ValidationError as e:
            raise ConfigurationError(f"Invalid bulk copy settings: {e}") from e
        return dataclasses.replace(self, settings=merged)

    def commit(self, connection: Any) -> int:
        """
        Insert the records. Opens the connection if needed and never closes it.

        Returns:
            Number of rows inserted
        """
        return BulkInsertWriter(self, connection).commit()

    async def commit_async(self, connection: Any) -> int:
        """Insert the records without blocking the event loop."""
        return await BulkInsertWriter(self, connection).commit_async()


def bulk_insert(
    records: Iterable[Any],
    table: str,
    schema: Optional[str] = None,
    record_type: Optional[type] = None,
) -> BulkInsert:
    """
    Start configuring a bulk insert.

    Args:
        records: Records to insert. Kept by reference; identities are written into them.
        table: Destination table, optionally schema-qualified ('sales.orders')
        schema: Schema, when not part of table (default: dbo)
        record_type: Record type, needed for add_all_columns() on an empty sequence
    """
    if not table or not table.strip():
        raise ConfigurationError("Destination table name must not be empty")
    if schema is not None:
        schema_name, table_name = schema.strip("[]"), table.strip("[]")
    else:
        schema_name, table_name = parse_table_name(table)
    return BulkInsert(
        records=tuple(records),
        table=table_name,
        schema=schema_name,
        record_type=record_type,
    )
