"""Column resolution for bulk operations.

Turns the declared column set, custom column mappings and identity declaration
into the effective columns of one commit. Field names are matched
case-insensitively everywhere; the spelling kept is the record's own.
"""

import dataclasses
import types
import typing
import uuid
from collections.abc import Mapping, MutableMapping
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Iterable, Iterator, List, Optional, Tuple

from pydantic import BaseModel

from sqlbulk.config import BulkCopySettings, ColumnDirection, IdentityColumn
from sqlbulk.exceptions import ConfigurationError

SCALAR_TYPES: Tuple[type, ...] = (
    bool,
    int,
    float,
    str,
    bytes,
    bytearray,
    Decimal,
    datetime,
    date,
    time,
    timedelta,
    uuid.UUID,
    Enum,
)


class ColumnSet:
    """Ordered set of field names with case-insensitive membership.

    Every mutating operation returns a new ColumnSet.
    """

    def __init__(self, names: Iterable[str] = ()):
        self._names: Dict[str, str] = {}
        for name in names:
            self._names.setdefault(name.lower(), name)

    def get(self, name: str) -> Optional[str]:
        """Return the stored spelling of name, or None."""
        return self._names.get(name.lower())

    def add(self, name: str) -> "ColumnSet":
        return ColumnSet([*self, name])

    def remove(self, name: str) -> "ColumnSet":
        if name not in self:
            raise ConfigurationError(
                f"Could not remove the column with name '{name}'. "
                "It is not part of the column set. Only value and string type "
                "fields are added by add_all_columns().",
                suggestions=[f"Available columns: {list(self)}"],
            )
        key = name.lower()
        return ColumnSet(n for n in self if n.lower() != key)

    def __contains__(self, name: object) -> bool:
        return isinstance(name, str) and name.lower() in self._names

    def __iter__(self) -> Iterator[str]:
        return iter(self._names.values())

    def __len__(self) -> int:
        return len(self._names)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, ColumnSet):
            return NotImplemented
        return list(self) == list(other)

    def __repr__(self) -> str:
        return f"ColumnSet({list(self)!r})"


def _is_scalar_annotation(annotation: Any) -> bool:
    origin = typing.get_origin(annotation)
    if origin is typing.Annotated:
        return _is_scalar_annotation(typing.get_args(annotation)[0])
    if origin is typing.Union or isinstance(annotation, types.UnionType):
        args = [a for a in typing.get_args(annotation) if a is not type(None)]
        return bool(args) and all(_is_scalar_annotation(a) for a in args)
    return isinstance(annotation, type) and issubclass(annotation, SCALAR_TYPES)


def _is_scalar_value(value: Any) -> bool:
    return value is None or isinstance(value, SCALAR_TYPES)


def get_record_fields(record_type: Optional[type], sample: Any = None) -> List[str]:
    """Return the scalar fields of a record type in declaration order.

    Dataclasses and pydantic models are inspected through their field
    declarations. Mappings and plain objects without annotations fall back to
    the keys or attributes of ``sample``.
    """
    if record_type is not None and dataclasses.is_dataclass(record_type):
        hints = typing.get_type_hints(record_type, include_extras=True)
        return [
            f.name
            for f in dataclasses.fields(record_type)
            if _is_scalar_annotation(hints[f.name])
        ]

    if record_type is not None and issubclass(record_type, BaseModel):
        return [
            name
            for name, info in record_type.model_fields.items()
            if _is_scalar_annotation(info.annotation)
        ]

    if record_type is not None and not issubclass(record_type, Mapping):
        hints = typing.get_type_hints(record_type)
        if hints:
            return [name for name, tp in hints.items() if _is_scalar_annotation(tp)]

    if sample is None:
        return []
    if isinstance(sample, Mapping):
        return [str(k) for k, v in sample.items() if _is_scalar_value(v)]
    return [k for k, v in vars(sample).items() if not k.startswith("_") and _is_scalar_value(v)]


def find_record_field(name: str, fields: Iterable[str]) -> Optional[str]:
    """Case-insensitive lookup of name among fields."""
    key = name.lower()
    for candidate in fields:
        if candidate.lower() == key:
            return candidate
    return None


def is_writable_record_type(record_type: Optional[type]) -> bool:
    """False for record types whose instances cannot take identity write-back."""
    if record_type is None:
        return True
    if dataclasses.is_dataclass(record_type):
        return not record_type.__dataclass_params__.frozen
    if issubclass(record_type, BaseModel):
        return not record_type.model_config.get("frozen", False)
    return not issubclass(record_type, tuple)


def read_field(record: Any, name: str) -> Any:
    if isinstance(record, Mapping):
        return record[name]
    return getattr(record, name)


def write_field(record: Any, name: str, value: Any) -> None:
    if isinstance(record, MutableMapping):
        record[name] = value
    else:
        setattr(record, name, value)


@dataclass(frozen=True)
class ResolvedColumns:
    """Effective columns of one commit."""

    fields: Tuple[str, ...]
    transfer_fields: Tuple[str, ...]
    mappings: Dict[str, str] = field(default_factory=dict)
    identity: Optional[IdentityColumn] = None

    @property
    def requires_staging(self) -> bool:
        return self.identity is not None and self.identity.direction == ColumnDirection.INPUT_OUTPUT

    def destination(self, field_name: str) -> str:
        """Destination column for a record field, after custom mappings."""
        return self.mappings.get(field_name.lower(), field_name)

    @property
    def identity_destination(self) -> Optional[str]:
        if self.identity is None:
            return None
        return self.destination(self.identity.field)

    def column_mappings(self) -> List[Tuple[str, str]]:
        """(buffer column, destination column) pairs for the transferred fields."""
        return [(f, self.destination(f)) for f in self.transfer_fields]


def resolve_columns(
    columns: ColumnSet,
    custom_mappings: Mapping,
    identity: Optional[IdentityColumn],
    settings: BulkCopySettings,
    record_type: Optional[type] = None,
    record_fields: Optional[List[str]] = None,
) -> ResolvedColumns:
    """
    Validate the configuration and produce the effective columns.

    Args:
        columns: Declared column set
        custom_mappings: Field name to destination column name
        identity: Optional identity declaration
        settings: Bulk copy settings (keep_identity changes what is transferred)
        record_type: Record type, when known
        record_fields: Fields available on the records, when known

    Raises:
        ConfigurationError: If the configuration cannot be committed
    """
    if len(columns) == 0:
        raise ConfigurationError(
            "No columns to insert. The column set is empty.",
            suggestions=["Use add_column() or add_all_columns() before commit()"],
        )

    identity_key = identity.field.lower() if identity else None

    if identity is not None:
        if identity.direction == ColumnDirection.NONE:
            raise ConfigurationError(
                f"Identity column '{identity.field}' was declared with direction 'none'",
                suggestions=["Use ColumnDirection.OUTPUT or ColumnDirection.INPUT_OUTPUT"],
            )
        if identity.direction == ColumnDirection.INPUT_OUTPUT:
            if settings.keep_identity:
                raise ConfigurationError(
                    "keep_identity cannot be combined with an input_output identity column; "
                    "identity values are either supplied or generated, not both."
                )
            known = record_fields is None or find_record_field(identity.field, record_fields)
            if not known:
                raise ConfigurationError(
                    f"Identity field '{identity.field}' does not exist on the records",
                    suggestions=[f"Available fields: {record_fields}"],
                )
            if not is_writable_record_type(record_type):
                raise ConfigurationError(
                    f"Records of type '{record_type.__name__}' are immutable; generated "
                    f"identities cannot be written back to '{identity.field}'."
                )

    fields = tuple(columns)
    transfer_fields = tuple(
        f for f in fields if settings.keep_identity or f.lower() != identity_key
    )
    if not transfer_fields:
        raise ConfigurationError(
            "The identity column is the only column. There is nothing to insert.",
            suggestions=["Add the non-identity columns to the column set"],
        )

    return ResolvedColumns(
        fields=fields,
        transfer_fields=transfer_fields,
        mappings={str(k).lower(): v for k, v in custom_mappings.items()},
        identity=identity,
    )
