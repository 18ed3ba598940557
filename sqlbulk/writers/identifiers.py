"""T-SQL identifier and literal quoting."""

from typing import Optional, Tuple


def escape_column(col: str) -> str:
    """Escape column name for SQL Server."""
    col = col.strip("[]").replace("]", "]]")
    return f"[{col}]"


def escape_literal(value: str) -> str:
    """Quote a string literal for SQL Server."""
    return "'" + value.replace("'", "''") + "'"


def get_escaped_table_name(schema: str, table: str, database: Optional[str] = None) -> str:
    """Schema-qualified (optionally database-qualified) escaped table name.

    Example:
        >>> get_escaped_table_name("dbo", "Books", "Library")
        '[Library].[dbo].[Books]'
    """
    parts = [escape_column(schema), escape_column(table)]
    if database:
        parts.insert(0, escape_column(database))
    return ".".join(parts)


def parse_table_name(table: str, default_schema: str = "dbo") -> Tuple[str, str]:
    """
    Parse table name into schema and table parts.

    Args:
        table: Table name (e.g., 'sales.fact_orders' or 'fact_orders')
        default_schema: Schema used when the name has none

    Returns:
        Tuple of (schema, table_name)
    """
    if "." in table:
        schema, table_name = table.split(".", 1)
    else:
        schema = default_schema
        table_name = table

    return schema.strip("[]"), table_name.strip("[]")
