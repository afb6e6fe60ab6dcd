"""
db/schema.py
------------
Schema Registry: the expected structure of every table, rebuilt from the
ordered migration scripts under `migrations/`.

The registry is built once at start-up and never mutated afterwards, so a
single instance can be shared freely between repositories and threads.
"""

import re
from dataclasses import dataclass, replace
from enum import Enum
from pathlib import Path
from types import MappingProxyType
from typing import Iterable, Mapping, Optional

from db.exceptions import SchemaConflict, SchemaError, UnknownTable
from utils.logger import get_logger

logger = get_logger(__name__)


class SemanticType(str, Enum):
    """Column types as seen by the application, independent of SQL spelling."""
    SMALLINT = "smallint"
    INTEGER = "integer"
    BIGINT = "bigint"
    NUMERIC = "numeric"
    FLOAT = "float"
    TEXT = "text"
    BOOLEAN = "boolean"
    DATE = "date"
    TIMESTAMP = "timestamp"
    TIMESTAMPTZ = "timestamptz"
    UUID = "uuid"
    JSON = "json"
    # live types no migration can declare (bytea, interval, enums, ...)
    OTHER = "other"

    @classmethod
    def from_sql(cls, sql_type: str) -> tuple["SemanticType", bool, Optional[int]]:
        """
        Parse a type as written in a migration.

        Returns:
            (semantic type, is_array, max_length), e.g. ``varchar(2048)``
            gives ``(TEXT, False, 2048)`` and ``bigint[]`` gives
            ``(BIGINT, True, None)``.

        Raises:
            SchemaError: If the type is not supported.
        """
        text = " ".join(sql_type.lower().split())
        is_array = False
        if text.endswith("[]"):
            is_array, text = True, text[:-2].strip()
        elif text.endswith(" array"):
            is_array, text = True, text[:-6].strip()

        max_length = None
        match = re.fullmatch(r"(.+?)\s*\(\s*(\d+)(?:\s*,\s*\d+)?\s*\)", text)
        if match:
            text = match.group(1)
            max_length = int(match.group(2))

        semantic = _SQL_TYPES.get(text)
        if semantic is None:
            raise SchemaError(f"Unsupported column type '{sql_type}'")
        if semantic is not cls.TEXT:
            # precision/scale of numeric or timestamp is not a length
            max_length = None
        return semantic, is_array, max_length

    @classmethod
    def from_udt_name(cls, udt_name: str) -> tuple["SemanticType", bool]:
        """
        Parse a PostgreSQL ``information_schema.columns.udt_name``.

        Array types are prefixed with an underscore (``_int8`` is ``bigint[]``).
        Any type without a counterpart (``bytea``, ``interval``, enums) is
        `OTHER`, so the live schema can always be read.
        """
        is_array = udt_name.startswith("_")
        name = udt_name[1:] if is_array else udt_name
        return _UDT_NAMES.get(name, cls.OTHER), is_array


_SQL_TYPES: dict[str, SemanticType] = {
    "smallint": SemanticType.SMALLINT,
    "int2": SemanticType.SMALLINT,
    "smallserial": SemanticType.SMALLINT,
    "integer": SemanticType.INTEGER,
    "int": SemanticType.INTEGER,
    "int4": SemanticType.INTEGER,
    "serial": SemanticType.INTEGER,
    "bigint": SemanticType.BIGINT,
    "int8": SemanticType.BIGINT,
    "bigserial": SemanticType.BIGINT,
    "numeric": SemanticType.NUMERIC,
    "decimal": SemanticType.NUMERIC,
    "real": SemanticType.FLOAT,
    "float4": SemanticType.FLOAT,
    "double precision": SemanticType.FLOAT,
    "float8": SemanticType.FLOAT,
    "text": SemanticType.TEXT,
    "varchar": SemanticType.TEXT,
    "character varying": SemanticType.TEXT,
    "char": SemanticType.TEXT,
    "character": SemanticType.TEXT,
    "bool": SemanticType.BOOLEAN,
    "boolean": SemanticType.BOOLEAN,
    "date": SemanticType.DATE,
    "timestamp": SemanticType.TIMESTAMP,
    "timestamp without time zone": SemanticType.TIMESTAMP,
    "timestamptz": SemanticType.TIMESTAMPTZ,
    "timestamp with time zone": SemanticType.TIMESTAMPTZ,
    "uuid": SemanticType.UUID,
    "json": SemanticType.JSON,
    "jsonb": SemanticType.JSON,
}

_UDT_NAMES: dict[str, SemanticType] = {
    "int2": SemanticType.SMALLINT,
    "int4": SemanticType.INTEGER,
    "int8": SemanticType.BIGINT,
    "numeric": SemanticType.NUMERIC,
    "float4": SemanticType.FLOAT,
    "float8": SemanticType.FLOAT,
    "text": SemanticType.TEXT,
    "varchar": SemanticType.TEXT,
    "bpchar": SemanticType.TEXT,
    "bool": SemanticType.BOOLEAN,
    "date": SemanticType.DATE,
    "timestamp": SemanticType.TIMESTAMP,
    "timestamptz": SemanticType.TIMESTAMPTZ,
    "uuid": SemanticType.UUID,
    "json": SemanticType.JSON,
    "jsonb": SemanticType.JSON,
}


@dataclass(frozen=True)
class ColumnSpec:
    """
    Expected definition of a single column.

    Attributes:
        name: Column name (lower-case unless quoted in the migration).
        type: Semantic type of the column, or of its elements for arrays.
        nullable: Whether NULL may be stored.
        default: Default expression as written in the migration, if any.
        max_length: Width of ``varchar(n)`` columns.
        is_array: Whether the column is an array of ``type``.
        primary_key: Whether the column is (part of) the primary key.
        native_type: Store type name of an `OTHER` column, as reported live.
    """
    name: str
    type: SemanticType
    nullable: bool = True
    default: Optional[str] = None
    max_length: Optional[int] = None
    is_array: bool = False
    primary_key: bool = False
    native_type: Optional[str] = None

    @property
    def type_name(self) -> str:
        base = self.native_type or self.type.value
        if self.max_length is not None:
            base = f"{base}({self.max_length})"
        return f"{base}[]" if self.is_array else base

    def same_definition(self, other: "ColumnSpec") -> bool:
        """True if both specs declare the same type and nullability."""
        return (
            self.type == other.type
            and self.is_array == other.is_array
            and self.max_length == other.max_length
            and self.nullable == other.nullable
        )

    def __str__(self) -> str:
        null = "null" if self.nullable else "not null"
        return f"{self.name} {self.type_name} {null}"


@dataclass(frozen=True)
class Migration:
    """A versioned, append-only set of SQL statements."""
    version: int
    description: str
    statements: tuple[str, ...]

    @classmethod
    def from_sql(cls, version: int, description: str, sql: str) -> "Migration":
        return cls(version, description, tuple(split_statements(sql)))

    @classmethod
    def from_file(cls, path: Path) -> "Migration":
        """
        Load a ``<version>_<description>.sql`` file.

        Raises:
            SchemaError: If the file name does not carry a numeric version.
        """
        match = _MIGRATION_NAME.fullmatch(path.name)
        if not match:
            raise SchemaError(f"Migration file '{path.name}' is not named <version>_<description>.sql")
        return cls.from_sql(
            int(match.group("version")),
            match.group("description"),
            path.read_text(encoding="utf-8"),
        )


_MIGRATION_NAME = re.compile(r"(?P<version>\d+)_(?P<description>.+?)(?:\.up)?\.sql")


# ── SQL splitting ─────────────────────────────────────────


def split_statements(sql: str) -> list[str]:
    """
    Split a script on ``;`` and strip comments.

    Semicolons inside quoted strings or identifiers are kept.
    Empty statements are dropped.
    """
    statements: list[str] = []
    current: list[str] = []
    i, n = 0, len(sql)
    quote: Optional[str] = None

    while i < n:
        ch = sql[i]
        if quote:
            current.append(ch)
            if ch == quote:
                # doubled quote is an escaped quote
                if i + 1 < n and sql[i + 1] == quote:
                    current.append(sql[i + 1])
                    i += 1
                else:
                    quote = None
        elif ch in ("'", '"'):
            quote = ch
            current.append(ch)
        elif sql.startswith("--", i):
            end = sql.find("\n", i)
            i = n if end == -1 else end
            current.append(" ")
            continue
        elif sql.startswith("/*", i):
            end = sql.find("*/", i + 2)
            i = n if end == -1 else end + 2
            current.append(" ")
            continue
        elif ch == ";":
            statements.append("".join(current))
            current = []
        else:
            current.append(ch)
        i += 1

    statements.append("".join(current))
    return [" ".join(s.split()) for s in statements if s.strip()]


def _split_top_level(text: str, sep: str = ",") -> list[str]:
    """Split on `sep` outside parentheses and quotes."""
    parts: list[str] = []
    depth = 0
    quote: Optional[str] = None
    start = 0
    for i, ch in enumerate(text):
        if quote:
            if ch == quote:
                quote = None
        elif ch in ("'", '"'):
            quote = ch
        elif ch == "(":
            depth += 1
        elif ch == ")":
            depth -= 1
        elif ch == sep and depth == 0:
            parts.append(text[start:i].strip())
            start = i + 1
    parts.append(text[start:].strip())
    return [p for p in parts if p]


def _identifier(raw: str) -> str:
    """Normalize an identifier: unquote or fold to lower case, drop the schema."""
    raw = raw.strip()
    if "." in raw and not raw.startswith('"'):
        raw = raw.rsplit(".", 1)[1]
    elif raw.count('"') >= 4:
        # "schema"."table"
        raw = raw.rsplit(".", 1)[1]
    if raw.startswith('"') and raw.endswith('"'):
        return raw[1:-1].replace('""', '"')
    return raw.lower()


def _identifier_list(raw: str) -> list[str]:
    return [_identifier(part) for part in _split_top_level(raw)]


# ── Statement parsing ─────────────────────────────────────

_IDENT = r'(?:"(?:[^"]|"")+"|[\w$]+)(?:\.(?:"(?:[^"]|"")+"|[\w$]+))?'

_CREATE_TABLE = re.compile(
    rf"create\s+(?:(?:temp|temporary|unlogged)\s+)?table\s+(?P<if_not_exists>if\s+not\s+exists\s+)?"
    rf"(?P<name>{_IDENT})\s*\((?P<body>.*)\)\s*$",
    re.IGNORECASE | re.DOTALL,
)
_ALTER_TABLE = re.compile(
    rf"alter\s+table\s+(?:if\s+exists\s+)?(?:only\s+)?(?P<name>{_IDENT})\s+(?P<actions>.*)$",
    re.IGNORECASE | re.DOTALL,
)
_DROP_TABLE = re.compile(
    r"drop\s+table\s+(?P<if_exists>if\s+exists\s+)?(?P<names>.*?)(?:\s+(?:cascade|restrict))?$",
    re.IGNORECASE | re.DOTALL,
)
_TABLE_CONSTRAINT = re.compile(
    r"(?:constraint\s+\S+\s+)?(?P<kind>primary\s+key|unique|foreign\s+key|check|exclude)\b(?P<rest>.*)$",
    re.IGNORECASE | re.DOTALL,
)
_PRIMARY_KEY_COLUMNS = re.compile(r"primary\s+key\s*\((?P<cols>[^)]*)\)", re.IGNORECASE)
_COLUMN_CONSTRAINT = re.compile(
    r"\b(?:not\s+null|null|primary\s+key|default|unique|references|check|constraint|collate|generated)\b",
    re.IGNORECASE,
)
_DEFAULT = re.compile(
    r"\bdefault\s+(?P<expr>.+?)(?=\s+(?:not\s+null|null|primary\s+key|unique|references|check|constraint|collate)\b|$)",
    re.IGNORECASE | re.DOTALL,
)
_IGNORED = re.compile(
    r"(?:insert|update|delete|select|create\s+(?:unique\s+)?index|drop\s+index|comment|grant|revoke|"
    r"create\s+(?:or\s+replace\s+)?(?:function|trigger|view|extension|sequence)|truncate)\b",
    re.IGNORECASE,
)


def parse_column(definition: str) -> ColumnSpec:
    """
    Parse a single column definition, e.g. ``priv_admin bigint[] not null``.

    Raises:
        SchemaError: If the type is missing or not supported.
    """
    match = re.match(rf"\s*(?P<name>{_IDENT})\s+(?P<rest>.+)$", definition, re.DOTALL)
    if not match:
        raise SchemaError(f"Cannot parse column definition '{definition}'")
    name = _identifier(match.group("name"))
    rest = match.group("rest")

    constraint = _COLUMN_CONSTRAINT.search(rest)
    type_text = rest[: constraint.start()] if constraint else rest
    constraints = rest[constraint.start():] if constraint else ""
    if not type_text.strip():
        raise SchemaError(f"Column '{name}' has no type")

    semantic, is_array, max_length = SemanticType.from_sql(type_text)
    lowered = constraints.lower()
    primary_key = bool(re.search(r"\bprimary\s+key\b", lowered))
    nullable = not (primary_key or re.search(r"\bnot\s+null\b", lowered))
    default_match = _DEFAULT.search(constraints)
    default = default_match.group("expr").strip() if default_match else None

    return ColumnSpec(
        name=name,
        type=semantic,
        nullable=nullable,
        default=default,
        max_length=max_length,
        is_array=is_array,
        primary_key=primary_key,
    )


def _parse_table_body(table: str, body: str) -> dict[str, ColumnSpec]:
    columns: dict[str, ColumnSpec] = {}
    primary_keys: list[str] = []
    for element in _split_top_level(body):
        constraint = _TABLE_CONSTRAINT.match(element)
        if constraint:
            pk = _PRIMARY_KEY_COLUMNS.search(element)
            if pk:
                primary_keys.extend(_identifier_list(pk.group("cols")))
            continue
        column = parse_column(element)
        if column.name in columns:
            raise SchemaConflict(table, f"column '{column.name}' declared twice")
        columns[column.name] = column

    for key in primary_keys:
        if key not in columns:
            raise SchemaConflict(table, f"primary key on unknown column '{key}'")
        columns[key] = replace(columns[key], nullable=False, primary_key=True)
    return columns


# ── Registry ──────────────────────────────────────────────


class SchemaRegistry:
    """
    Expected table structure, replayed from migrations in version order.

    Args:
        migrations: Migrations in any order; they are applied by version.
        strict: When True, a ``create table`` that redefines an existing table
            differently raises `SchemaConflict`. When False the later
            definition wins and the discrepancy is logged and kept in
            `conflicts`.

    Raises:
        SchemaConflict: If migrations disagree (see `strict`) or alter
            something that does not exist.
        SchemaError: On duplicate versions or unparseable statements.
    """

    def __init__(self, migrations: Iterable[Migration], strict: bool = True):
        self.strict = strict
        self.migrations: tuple[Migration, ...] = tuple(sorted(migrations, key=lambda m: m.version))
        self._conflicts: list[str] = []

        versions = [m.version for m in self.migrations]
        duplicates = sorted({v for v in versions if versions.count(v) > 1})
        if duplicates:
            raise SchemaError(f"Duplicate migration versions: {duplicates}")

        tables: dict[str, dict[str, ColumnSpec]] = {}
        for migration in self.migrations:
            for statement in migration.statements:
                self._apply(tables, migration, statement)

        self._tables: Mapping[str, tuple[ColumnSpec, ...]] = MappingProxyType(
            {name: tuple(columns.values()) for name, columns in tables.items()}
        )
        self.conflicts: tuple[str, ...] = tuple(self._conflicts)
        logger.info(
            f"Schema registry loaded: {len(self.migrations)} migrations, "
            f"{len(self._tables)} tables"
        )

    @classmethod
    def from_directory(cls, path: Path | str, strict: bool = True) -> "SchemaRegistry":
        """Build the registry from every ``*.sql`` migration in `path`."""
        directory = Path(path)
        if not directory.is_dir():
            raise SchemaError(f"Migrations directory '{directory}' does not exist")
        files = [p for p in directory.glob("*.sql") if not p.name.endswith(".down.sql")]
        return cls((Migration.from_file(p) for p in files), strict=strict)

    # ── Queries ───────────────────────────────────────────

    def describe(self, table: str) -> tuple[ColumnSpec, ...]:
        """
        Columns of `table` in declared order.

        Raises:
            UnknownTable: If no migration declares the table.
        """
        try:
            return self._tables[table]
        except KeyError:
            raise UnknownTable(table) from None

    def tables(self) -> tuple[str, ...]:
        return tuple(self._tables)

    def column(self, table: str, name: str) -> Optional[ColumnSpec]:
        for column in self.describe(table):
            if column.name == name:
                return column
        return None

    def has_column(self, table: str, name: str) -> bool:
        return self.column(table, name) is not None

    def primary_key(self, table: str) -> tuple[str, ...]:
        """Names of the primary key columns of `table`, possibly empty."""
        return tuple(column.name for column in self.describe(table) if column.primary_key)

    # ── Replay ────────────────────────────────────────────

    def _apply(self, tables: dict, migration: Migration, statement: str) -> None:
        create = _CREATE_TABLE.match(statement)
        if create:
            self._create_table(tables, migration, create)
            return
        alter = _ALTER_TABLE.match(statement)
        if alter:
            table = _identifier(alter.group("name"))
            if table not in tables:
                raise SchemaConflict(table, f"migration {migration.version} alters a table that does not exist")
            for action in _split_top_level(alter.group("actions")):
                self._alter_table(tables, table, migration, action)
            return
        drop = _DROP_TABLE.match(statement)
        if drop:
            for table in _identifier_list(drop.group("names")):
                if table not in tables and not drop.group("if_exists"):
                    raise SchemaConflict(table, f"migration {migration.version} drops a table that does not exist")
                tables.pop(table, None)
            return
        if _IGNORED.match(statement):
            logger.debug(f"Migration {migration.version}: ignoring statement '{statement[:40]}'")
            return
        raise SchemaError(f"Migration {migration.version}: unsupported statement '{statement[:60]}'")

    def _create_table(self, tables: dict, migration: Migration, match: re.Match) -> None:
        table = _identifier(match.group("name"))
        columns = _parse_table_body(table, match.group("body"))
        previous = tables.get(table)
        if previous is None:
            tables[table] = columns
            return

        problems = _compare_definitions(previous, columns)
        if not problems and list(previous) != list(columns):
            logger.warning(
                f"Migration {migration.version} redeclares '{table}' with a different column order; "
                f"using the later order"
            )
        if not problems:
            tables[table] = columns
            return

        message = f"migration {migration.version} redeclares the table: " + "; ".join(problems)
        if self.strict:
            raise SchemaConflict(table, message)
        logger.warning(f"Schema conflict on '{table}' resolved by last migration: {message}")
        self._conflicts.append(f"{table}: {message}")
        tables[table] = columns

    def _alter_table(self, tables: dict, table: str, migration: Migration, action: str) -> None:
        columns: dict[str, ColumnSpec] = tables[table]
        lowered = action.lower()

        def require(name: str) -> ColumnSpec:
            if name not in columns:
                raise SchemaConflict(table, f"migration {migration.version} alters unknown column '{name}'")
            return columns[name]

        match = re.match(r"add\s+(?:column\s+)?(?P<ine>if\s+not\s+exists\s+)?(?P<def>.+)$", action, re.I | re.S)
        if match and not _TABLE_CONSTRAINT.match(match.group("def")):
            column = parse_column(match.group("def"))
            if column.name in columns:
                if match.group("ine"):
                    return
                raise SchemaConflict(table, f"migration {migration.version} adds existing column '{column.name}'")
            columns[column.name] = column
            return
        if match:
            pk = _PRIMARY_KEY_COLUMNS.search(action)
            if pk:
                for name in _identifier_list(pk.group("cols")):
                    columns[name] = replace(require(name), nullable=False, primary_key=True)
            return

        match = re.match(
            rf"drop\s+(?:column\s+)?(?P<ie>if\s+exists\s+)?(?P<name>{_IDENT})(?:\s+(?:cascade|restrict))?$",
            action,
            re.I,
        )
        if match and not lowered.startswith("drop constraint"):
            name = _identifier(match.group("name"))
            if name not in columns and match.group("ie"):
                return
            require(name)
            del columns[name]
            return

        match = re.match(rf"rename\s+(?:column\s+)?(?P<old>{_IDENT})\s+to\s+(?P<new>{_IDENT})$", action, re.I)
        if match and not lowered.startswith("rename to"):
            old, new = _identifier(match.group("old")), _identifier(match.group("new"))
            spec = require(old)
            if new in columns:
                raise SchemaConflict(table, f"migration {migration.version} renames onto existing column '{new}'")
            tables[table] = {
                (new if name == old else name): (replace(spec, name=new) if name == old else col)
                for name, col in columns.items()
            }
            return

        match = re.match(rf"rename\s+to\s+(?P<new>{_IDENT})$", action, re.I)
        if match:
            new = _identifier(match.group("new"))
            if new in tables:
                raise SchemaConflict(new, f"migration {migration.version} renames '{table}' onto an existing table")
            tables[new] = tables.pop(table)
            return

        match = re.match(rf"alter\s+(?:column\s+)?(?P<name>{_IDENT})\s+(?P<change>.+)$", action, re.I | re.S)
        if match:
            name = _identifier(match.group("name"))
            spec = require(name)
            change = match.group("change")
            if re.fullmatch(r"set\s+not\s+null", change, re.I):
                columns[name] = replace(spec, nullable=False)
            elif re.fullmatch(r"drop\s+not\s+null", change, re.I):
                columns[name] = replace(spec, nullable=True)
            elif re.fullmatch(r"drop\s+default", change, re.I):
                columns[name] = replace(spec, default=None)
            elif re.match(r"set\s+default\s+", change, re.I):
                columns[name] = replace(spec, default=re.sub(r"^set\s+default\s+", "", change, flags=re.I).strip())
            elif re.match(r"(?:set\s+data\s+)?type\s+", change, re.I):
                type_text = re.sub(r"^(?:set\s+data\s+)?type\s+", "", change, flags=re.I)
                type_text = re.split(r"\s+(?:using|collate)\s+", type_text, flags=re.I)[0]
                semantic, is_array, max_length = SemanticType.from_sql(type_text)
                columns[name] = replace(spec, type=semantic, is_array=is_array, max_length=max_length)
            else:
                raise SchemaError(f"Migration {migration.version}: unsupported column change '{change}'")
            return

        if re.match(r"(?:drop|validate|rename)\s+constraint\b", action, re.I):
            return
        raise SchemaError(f"Migration {migration.version}: unsupported alter action '{action}'")


def _compare_definitions(previous: dict[str, ColumnSpec], current: dict[str, ColumnSpec]) -> list[str]:
    problems: list[str] = []
    for name in previous.keys() - current.keys():
        problems.append(f"column '{name}' dropped")
    for name in current.keys() - previous.keys():
        problems.append(f"column '{name}' added")
    for name in previous.keys() & current.keys():
        if not previous[name].same_definition(current[name]):
            problems.append(f"'{previous[name]}' became '{current[name]}'")
    return sorted(problems)
