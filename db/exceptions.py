"""
db/exceptions.py
----------------
Error taxonomy for the data-access layer.
Every error raised by this package derives from `BotanistDBError`.
"""

from typing import Any, Sequence


class BotanistDBError(Exception):
    """Base exception for all data-access errors."""
    pass


class ConfigurationError(BotanistDBError):
    """A required setting is missing from the environment."""
    pass


# ── Validation (domain construction) ──────────────────────


class ValidationError(BotanistDBError, ValueError):
    """A domain object was built with a value that violates an invariant."""

    def __init__(self, field: str, message: str):
        self.field = field
        super().__init__(f"Validation error on '{field}': {message}")


class MessageTooLong(ValidationError):
    """A message field exceeds the column width."""

    def __init__(self, field: str, length: int, limit: int):
        self.length = length
        self.limit = limit
        super().__init__(field, f"{length} characters, limit is {limit}")


class InvalidField(ValidationError):
    """A field holds a value of the wrong type or out of range."""
    pass


# ── Schema registry ───────────────────────────────────────


class SchemaError(BotanistDBError):
    """Base exception for schema registry errors."""
    pass


class SchemaConflict(SchemaError):
    """Two migrations (or a model and a migration) disagree on a table."""

    def __init__(self, table: str, message: str):
        self.table = table
        super().__init__(f"Schema conflict on table '{table}': {message}")


class UnknownTable(SchemaError):
    """The registry has no definition for the requested table."""

    def __init__(self, table: str):
        self.table = table
        super().__init__(f"Table '{table}' is not declared by any migration")


# ── Row mapping ───────────────────────────────────────────


class MappingError(BotanistDBError):
    """Base exception for row <-> domain conversion errors."""

    def __init__(self, column: str, message: str):
        self.column = column
        super().__init__(message)


class MissingRequiredField(MappingError):
    """A non-nullable column is absent or NULL."""

    def __init__(self, column: str):
        super().__init__(column, f"Required column '{column}' is missing")


class TypeMismatch(MappingError):
    """A stored value cannot convert to the column's semantic type."""

    def __init__(self, column: str, expected: str, value: Any):
        self.expected = expected
        self.value = value
        super().__init__(
            column,
            f"Column '{column}' expected {expected}, got {type(value).__name__} {value!r}",
        )


class UnknownColumn(MappingError):
    """A field name does not match any column of the table."""

    def __init__(self, column: str, table: str):
        self.table = table
        super().__init__(column, f"Table '{table}' has no column '{column}'")


class ImmutableField(MappingError):
    """An update attempted to change a field that never changes."""

    def __init__(self, column: str):
        super().__init__(column, f"Column '{column}' cannot be updated")


# ── Store (CRUD) ──────────────────────────────────────────


class StoreError(BotanistDBError):
    """Base exception for store operations."""
    pass


class DuplicateKey(StoreError):
    """A row with the same primary key already exists."""

    def __init__(self, entity_type: str, identifier: int):
        self.entity_type = entity_type
        self.identifier = identifier
        super().__init__(f"{entity_type} '{identifier}' already exists")


class NotFound(StoreError):
    """No row matches the requested primary key."""

    def __init__(self, entity_type: str, identifier: int):
        self.entity_type = entity_type
        self.identifier = identifier
        super().__init__(f"{entity_type} '{identifier}' not found")


class RoleNoPrivilege(StoreError):
    """A role was stripped of a privilege it never had."""

    def __init__(self, role_id: int, privilege: Any):
        self.role_id = role_id
        self.privilege = privilege
        super().__init__(f"Role {role_id} doesn't have privilege {privilege}")


class TransportError(StoreError):
    """The connection to the store failed. Not retried."""
    pass


# ── Drift ─────────────────────────────────────────────────


class DriftError(BotanistDBError):
    """The live schema differs from the migrations.

    Holds every discrepancy found, not only the first one.
    """

    def __init__(self, discrepancies: Sequence[Any]):
        self.discrepancies = tuple(discrepancies)
        lines = "\n".join(f"  - {d}" for d in self.discrepancies)
        super().__init__(
            f"Live schema drifted from migrations ({len(self.discrepancies)} discrepancies):\n{lines}"
        )
