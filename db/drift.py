"""
db/drift.py
-----------
Compares the live schema of the connected store with the Schema Registry.

Meant to run once at start-up or once per test session, not on the hot path.
Every discrepancy is collected so a single check reports all of them.
"""

from dataclasses import dataclass
from typing import Optional

import psycopg2

from db.connection import Database
from db.exceptions import DriftError, StoreError
from db.schema import ColumnSpec, SchemaRegistry, SemanticType
from utils.logger import get_logger

logger = get_logger(__name__)


# ── Discrepancies ─────────────────────────────────────────


@dataclass(frozen=True)
class Discrepancy:
    """Base class of every difference between registry and live schema."""
    table: str


@dataclass(frozen=True)
class MissingTable(Discrepancy):
    def __str__(self) -> str:
        return f"table '{self.table}' is missing"


@dataclass(frozen=True)
class MissingColumn(Discrepancy):
    column: str

    def __str__(self) -> str:
        return f"column '{self.table}.{self.column}' is missing"


@dataclass(frozen=True)
class ExtraColumn(Discrepancy):
    column: str

    def __str__(self) -> str:
        return f"column '{self.table}.{self.column}' is not declared by any migration"


@dataclass(frozen=True)
class NullabilityMismatch(Discrepancy):
    column: str
    expected_nullable: bool
    live_nullable: bool

    def __str__(self) -> str:
        def word(nullable: bool) -> str:
            return "null" if nullable else "not null"
        return (
            f"column '{self.table}.{self.column}' should be {word(self.expected_nullable)}, "
            f"is {word(self.live_nullable)}"
        )


@dataclass(frozen=True)
class ColumnTypeMismatch(Discrepancy):
    column: str
    expected: str
    live: str

    def __str__(self) -> str:
        return f"column '{self.table}.{self.column}' should be {self.expected}, is {self.live}"


# ── Live schema ───────────────────────────────────────────


_LIVE_COLUMNS_SQL = """
    SELECT column_name, udt_name, is_nullable, column_default, character_maximum_length
    FROM information_schema.columns
    WHERE table_schema = %s AND table_name = %s
    ORDER BY ordinal_position;
"""


def live_column(row: dict) -> ColumnSpec:
    """
    Build a ColumnSpec from an ``information_schema.columns`` row.

    Types the registry cannot declare keep their store name, so they show up
    in reports as e.g. ``interval`` rather than failing the whole check.
    """
    udt_name = row["udt_name"]
    semantic, is_array = SemanticType.from_udt_name(udt_name)
    max_length = row.get("character_maximum_length")
    return ColumnSpec(
        name=row["column_name"],
        type=semantic,
        nullable=row["is_nullable"] == "YES",
        default=row.get("column_default"),
        max_length=max_length if semantic is SemanticType.TEXT else None,
        is_array=is_array,
        native_type=(udt_name[1:] if is_array else udt_name) if semantic is SemanticType.OTHER else None,
    )


def compare(table: str, expected: tuple[ColumnSpec, ...], live: Optional[list[ColumnSpec]]) -> list[Discrepancy]:
    """
    Every difference between the expected and the live columns of `table`.

    Args:
        table: Table name, used in the reports.
        expected: Columns declared by the migrations.
        live: Columns found in the store, or None if the table does not exist.

    Defaults and column order are not compared.
    """
    if not live:
        return [MissingTable(table)]

    found: list[Discrepancy] = []
    live_by_name = {c.name: c for c in live}
    expected_names = {c.name for c in expected}

    for column in expected:
        actual = live_by_name.get(column.name)
        if actual is None:
            found.append(MissingColumn(table, column.name))
            continue
        if (column.type, column.is_array) != (actual.type, actual.is_array):
            found.append(ColumnTypeMismatch(table, column.name, column.type_name, actual.type_name))
        elif column.max_length is not None and column.max_length != actual.max_length:
            # varchar(n) without n shows no maximum in the store
            found.append(ColumnTypeMismatch(table, column.name, column.type_name, actual.type_name))
        if column.nullable != actual.nullable:
            found.append(NullabilityMismatch(table, column.name, column.nullable, actual.nullable))

    for column in live:
        if column.name not in expected_names:
            found.append(ExtraColumn(table, column.name))
    return found


class DriftDetector:
    """
    Checks the connected store against the migrations.

    Args:
        db: Open connection context.
        registry: Loaded schema registry.
        schema: PostgreSQL schema holding the tables.
    """

    def __init__(self, db: Database, registry: SchemaRegistry, schema: str = "public"):
        self.db = db
        self.registry = registry
        self.schema = schema

    def live_columns(self, table: str) -> list[ColumnSpec]:
        """
        Columns of `table` as found in the store, in ordinal order.

        Returns:
            An empty list if the table does not exist.
        """
        try:
            with self.db.cursor() as cur:
                cur.execute(_LIVE_COLUMNS_SQL, (self.schema, table))
                rows = cur.fetchall()
        except psycopg2.Error as e:
            logger.error(f"Failed to read live schema of '{table}': {e}")
            raise StoreError(f"Could not read live schema of '{table}': {e}") from e
        return [live_column(dict(row)) for row in rows]

    def discrepancies(self) -> list[Discrepancy]:
        """Every discrepancy over all tables declared by the migrations."""
        found: list[Discrepancy] = []
        for table in self.registry.tables():
            found.extend(compare(table, self.registry.describe(table), self.live_columns(table)))
        return found

    def check(self) -> None:
        """
        Raises:
            DriftError: If the live schema differs from the migrations,
                carrying every discrepancy found.
        """
        found = self.discrepancies()
        if found:
            for discrepancy in found:
                logger.warning(f"Schema drift: {discrepancy}")
            raise DriftError(found)
        logger.info(f"Live schema matches migrations ({len(self.registry.tables())} tables)")
