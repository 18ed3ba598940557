"""Transfer buffer construction.

The buffer is a pandas DataFrame with object dtype so values reach the driver
as the Python objects the records hold (no numpy coercion of ints with NULLs,
Decimals or datetimes).
"""

import math
from enum import Enum
from typing import Any, Iterable, List, Sequence

import pandas as pd

from sqlbulk.writers.columns import read_field

CORRELATION_COLUMN = "_sqlbulk_row_id"


def build_transfer_buffer(
    records: Sequence[Any], fields: Iterable[str], correlation: bool = False
) -> pd.DataFrame:
    """
    Materialize records into a row/column buffer.

    Args:
        records: Ordered records. Row i of the buffer is records[i].
        fields: Record fields to read, in column order
        correlation: Append a correlation column holding 0..N-1

    Returns:
        DataFrame with one row per record
    """
    columns: List[str] = list(fields)
    data = {name: [read_field(record, name) for record in records] for name in columns}
    if correlation:
        columns.append(CORRELATION_COLUMN)
        data[CORRELATION_COLUMN] = list(range(len(records)))
    return pd.DataFrame(data, columns=columns, dtype=object)


def _to_db_value(value: Any) -> Any:
    if value is None:
        return None
    if isinstance(value, float) and math.isnan(value):
        return None
    if value is pd.NaT:
        return None
    if isinstance(value, pd.Timestamp):
        return value.to_pydatetime()
    if isinstance(value, Enum):
        return value.value
    # numpy scalars
    if hasattr(value, "item") and type(value).__module__ == "numpy":
        return value.item()
    return value


def buffer_rows(buffer: pd.DataFrame, columns: Sequence[str]) -> List[tuple]:
    """Rows of the selected buffer columns as driver-ready tuples, in buffer order."""
    subset = buffer.loc[:, list(columns)]
    return [
        tuple(_to_db_value(v) for v in row)
        for row in subset.itertuples(index=False, name=None)
    ]
