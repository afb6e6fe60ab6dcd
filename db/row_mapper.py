"""
db/row_mapper.py
----------------
Converts between raw `guilds` rows and validated `Guild` domain objects.

Rows are mappings of column name to value, as returned by
psycopg2's RealDictCursor. Every conversion is checked against the
column definitions of the Schema Registry.
"""

from typing import Any, Mapping

from db.exceptions import (
    ImmutableField,
    InvalidField,
    MissingRequiredField,
    SchemaConflict,
    TypeMismatch,
    UnknownColumn,
    ValidationError,
)
from db.schema import ColumnSpec, SchemaRegistry, SemanticType
from models.guild import GUILD_FIELDS, Guild, validate_field

_INT_RANGES: dict[SemanticType, tuple[int, int]] = {
    SemanticType.SMALLINT: (-(2 ** 15), 2 ** 15 - 1),
    SemanticType.INTEGER: (-(2 ** 31), 2 ** 31 - 1),
    SemanticType.BIGINT: (-(2 ** 63), 2 ** 63 - 1),
}


def _convert_scalar(column: ColumnSpec, value: Any) -> Any:
    if column.type in _INT_RANGES:
        low, high = _INT_RANGES[column.type]
        if isinstance(value, bool) or not isinstance(value, int) or not low <= value <= high:
            raise TypeMismatch(column.name, column.type_name, value)
        return value
    if column.type is SemanticType.TEXT:
        if not isinstance(value, str):
            raise TypeMismatch(column.name, column.type_name, value)
        if column.max_length is not None and len(value) > column.max_length:
            raise TypeMismatch(column.name, column.type_name, value)
        return value
    if column.type is SemanticType.BOOLEAN:
        if not isinstance(value, bool):
            raise TypeMismatch(column.name, column.type_name, value)
        return value
    # the guilds table has no other types; psycopg2 already decoded them
    return value


def convert_value(column: ColumnSpec, value: Any) -> Any:
    """
    Convert a non-NULL stored value to the column's semantic type.

    Arrays become tuples.

    Raises:
        TypeMismatch: If the value cannot convert.
    """
    if not column.is_array:
        return _convert_scalar(column, value)
    if isinstance(value, (str, bytes)) or not isinstance(value, (list, tuple)):
        raise TypeMismatch(column.name, column.type_name, value)
    if any(item is None for item in value):
        raise TypeMismatch(column.name, column.type_name, value)
    return tuple(_convert_scalar(column, item) for item in value)


class GuildMapper:
    """
    Row mapper for the `guilds` table.

    Args:
        registry: Loaded schema registry.
        table: Name of the table holding guilds.

    Raises:
        SchemaConflict: If the `Guild` fields and the table's columns differ.
    """

    def __init__(self, registry: SchemaRegistry, table: str = "guilds"):
        self.table = table
        self.columns: tuple[ColumnSpec, ...] = registry.describe(table)
        self._by_name: dict[str, ColumnSpec] = {c.name: c for c in self.columns}

        unmapped = sorted(set(GUILD_FIELDS) - self._by_name.keys())
        if unmapped:
            raise SchemaConflict(table, f"Guild fields without a column: {unmapped}")
        extra = sorted(self._by_name.keys() - set(GUILD_FIELDS))
        if extra:
            raise SchemaConflict(table, f"columns not mapped by Guild: {extra}")

    @property
    def column_names(self) -> tuple[str, ...]:
        return tuple(c.name for c in self.columns)

    def column(self, name: str) -> ColumnSpec:
        """
        Raises:
            UnknownColumn: If the table has no such column.
        """
        try:
            return self._by_name[name]
        except KeyError:
            raise UnknownColumn(name, self.table) from None

    def to_domain(self, raw_row: Mapping[str, Any]) -> Guild:
        """
        Build a `Guild` from a raw row.

        Raises:
            MissingRequiredField: If a column the table or the domain requires is absent or NULL.
            TypeMismatch: If a value cannot convert to its column's type.
        """
        values: dict[str, Any] = {}
        for column in self.columns:
            value = raw_row.get(column.name)
            if value is None:
                if not column.nullable:
                    raise MissingRequiredField(column.name)
                values[column.name] = None
            else:
                values[column.name] = convert_value(column, value)
        try:
            return Guild(**values)
        except ValidationError as e:
            if values.get(e.field) is None:
                # nullable in the table, required by the domain
                raise MissingRequiredField(e.field) from e
            raise TypeMismatch(e.field, self._by_name[e.field].type_name, raw_row.get(e.field)) from e

    def to_row(self, guild: Guild) -> dict[str, Any]:
        """
        Raw row for `guild`, keyed by column in table order.

        Arrays are lists so psycopg2 adapts them to PostgreSQL arrays.
        """
        row: dict[str, Any] = {}
        for column in self.columns:
            value = getattr(guild, column.name)
            row[column.name] = list(value) if column.is_array else value
        return row

    def to_update(self, changes: Mapping[str, Any]) -> dict[str, Any]:
        """
        Validate a partial update.

        Returns:
            Column -> raw value, in table order.

        Raises:
            UnknownColumn: If a key is not a column of the table.
            ImmutableField: If a key is part of the primary key.
            ValidationError: If a value violates the field's invariant.
        """
        for name in changes:
            column = self.column(name)
            if column.primary_key:
                raise ImmutableField(name)

        row: dict[str, Any] = {}
        for column in self.columns:
            if column.name not in changes:
                continue
            value = validate_field(column.name, changes[column.name])
            if value is None and not column.nullable:
                raise InvalidField(column.name, "cannot be null")
            row[column.name] = list(value) if column.is_array else value
        return row
