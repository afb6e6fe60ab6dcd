"""
repositories/guild_repo.py
--------------------------
Data access layer for guild preferences.
All SQL queries related to the `guilds` table live here.

Every statement is parameterised. Column identifiers come from the Schema
Registry only, so a query can never name a column the migrations do not
declare.
"""

from typing import Any, Iterable, Optional

import psycopg2
from psycopg2 import errors, sql

from db.connection import Database
from db.exceptions import (
    DuplicateKey,
    MissingRequiredField,
    NotFound,
    RoleNoPrivilege,
    SchemaConflict,
    StoreError,
)
from db.row_mapper import GuildMapper, convert_value
from db.schema import SchemaRegistry
from models.guild import Guild, Privilege, validate_field
from utils.logger import get_logger

logger = get_logger(__name__)


class GuildRepository:
    """
    Repository for CRUD operations on the guilds table.

    Each method runs one statement on one pooled connection and commits it
    before returning. Races on the same guild are settled by the store's
    row-level atomicity (primary key, single-statement updates).

    Args:
        db: Open connection context.
        registry: Loaded schema registry.
        table: Name of the guilds table.
    """

    ENTITY = "Guild"

    def __init__(self, db: Database, registry: SchemaRegistry, table: str = "guilds"):
        self.db = db
        self.mapper = GuildMapper(registry, table)
        if registry.primary_key(table) != ("id",):
            raise SchemaConflict(table, "expected 'id' as the only primary key column")

        self._table = sql.Identifier(table)
        self._key = sql.Identifier("id")
        self._columns = sql.SQL(", ").join(sql.Identifier(name) for name in self.mapper.column_names)

    # ── CREATE ────────────────────────────────────────────

    def create(self, guild: Guild) -> Guild:
        """
        Insert a new guild row.

        Args:
            guild: Validated guild preferences.

        Returns:
            The same guild.

        Raises:
            DuplicateKey: If a row with the same `id` already exists.
        """
        row = self.mapper.to_row(guild)
        query = sql.SQL("INSERT INTO {table} ({columns}) VALUES ({values});").format(
            table=self._table,
            columns=self._columns,
            values=sql.SQL(", ").join([sql.Placeholder()] * len(row)),
        )
        try:
            with self.db.cursor() as cur:
                cur.execute(query, tuple(row.values()))
        except errors.UniqueViolation as e:
            logger.warning(f"Guild {guild.id} already has a configuration entry")
            raise DuplicateKey(self.ENTITY, guild.id) from e
        except psycopg2.Error as e:
            logger.error(f"Failed to create guild {guild.id}: {e}")
            raise StoreError(f"Could not create guild {guild.id}: {e}") from e
        logger.info(f"Created configuration for guild {guild.id}")
        return guild

    # ── READ ──────────────────────────────────────────────

    def read(self, guild_id: int) -> Optional[Guild]:
        """
        Fetch a guild by ID.

        Returns:
            A Guild object or None if not found.

        Raises:
            MissingRequiredField, TypeMismatch: If the stored row breaks an invariant.
        """
        guild_id = validate_field("id", guild_id)
        query = sql.SQL("SELECT {columns} FROM {table} WHERE {key} = %s;").format(
            columns=self._columns, table=self._table, key=self._key
        )
        row = self._fetchone(query, (guild_id,), f"read guild {guild_id}")
        return self.mapper.to_domain(row) if row else None

    def exists(self, guild_id: int) -> bool:
        """`True` if the guild has a configuration entry."""
        guild_id = validate_field("id", guild_id)
        query = sql.SQL("SELECT 1 AS found FROM {table} WHERE {key} = %s;").format(
            table=self._table, key=self._key
        )
        return self._fetchone(query, (guild_id,), f"look up guild {guild_id}") is not None

    # ── UPDATE ────────────────────────────────────────────

    def update(self, guild_id: int, **changes: Any) -> Guild:
        """
        Change some fields of an existing guild. Never inserts.

        Args:
            guild_id: Guild to update.
            **changes: Column name -> new value, e.g. ``advertise=False``.

        Returns:
            The guild as stored after the update.

        Raises:
            NotFound: If no row matches `guild_id`.
            UnknownColumn, ImmutableField: If a key is not an updatable column.
            ValidationError: If a value violates an invariant; nothing is sent.
        """
        guild_id = validate_field("id", guild_id)
        values = self.mapper.to_update(changes)
        if not values:
            guild = self.read(guild_id)
            if guild is None:
                raise NotFound(self.ENTITY, guild_id)
            return guild

        assignments = sql.SQL(", ").join(
            sql.SQL("{} = %s").format(sql.Identifier(name)) for name in values
        )
        query = sql.SQL("UPDATE {table} SET {assignments} WHERE {key} = %s RETURNING {columns};").format(
            table=self._table, assignments=assignments, key=self._key, columns=self._columns
        )
        row = self._fetchone(query, (*values.values(), guild_id), f"update guild {guild_id}")
        if row is None:
            raise NotFound(self.ENTITY, guild_id)
        logger.info(f"Updated guild {guild_id}: {', '.join(values)}")
        return self.mapper.to_domain(row)

    # ── DELETE ────────────────────────────────────────────

    def delete(self, guild_id: int) -> bool:
        """
        Delete a guild. Deleting a missing guild is not an error.

        Returns:
            True if a row was removed.
        """
        guild_id = validate_field("id", guild_id)
        query = sql.SQL("DELETE FROM {table} WHERE {key} = %s;").format(table=self._table, key=self._key)
        try:
            with self.db.cursor() as cur:
                cur.execute(query, (guild_id,))
                deleted = cur.rowcount > 0
        except psycopg2.Error as e:
            logger.error(f"Failed to delete guild {guild_id}: {e}")
            raise StoreError(f"Could not delete guild {guild_id}: {e}") from e
        if deleted:
            logger.info(f"Deleted configuration for guild {guild_id}")
        return deleted

    # ── PRIVILEGES ────────────────────────────────────────

    def roles_with(self, guild_id: int, privilege: Privilege) -> tuple[int, ...]:
        """
        Roles holding `privilege` in a guild.

        Raises:
            NotFound: If the guild has no configuration entry.
        """
        guild_id = validate_field("id", guild_id)
        column = self.mapper.column(privilege.column)
        query = sql.SQL("SELECT {column} FROM {table} WHERE {key} = %s;").format(
            column=sql.Identifier(column.name), table=self._table, key=self._key
        )
        row = self._fetchone(query, (guild_id,), f"read {privilege} roles of guild {guild_id}")
        if row is None:
            raise NotFound(self.ENTITY, guild_id)
        value = row.get(column.name)
        if value is None:
            raise MissingRequiredField(column.name)
        return convert_value(column, value)

    def grant_privilege(self, guild_id: int, role_id: int, privilege: Privilege) -> Guild:
        """
        Give a role a privilege. Admin also grants manager.

        Granting a privilege the role already holds changes nothing.

        Raises:
            NotFound: If the guild has no configuration entry.
        """
        guild_id = validate_field("id", guild_id)
        role_id = validate_field("id", role_id)
        assignments = []
        params: list[int] = []
        for implied in privilege.implied:
            col = sql.Identifier(implied.column)
            assignments.append(
                sql.SQL(
                    "{col} = CASE WHEN %s::bigint = ANY({col}) THEN {col} ELSE array_append({col}, %s::bigint) END"
                ).format(col=col)
            )
            params.extend((role_id, role_id))
        query = sql.SQL("UPDATE {table} SET {assignments} WHERE {key} = %s RETURNING {columns};").format(
            table=self._table,
            assignments=sql.SQL(", ").join(assignments),
            key=self._key,
            columns=self._columns,
        )
        row = self._fetchone(query, (*params, guild_id), f"grant {privilege} to role {role_id}")
        if row is None:
            raise NotFound(self.ENTITY, guild_id)
        logger.info(f"Granted {privilege} to role {role_id} in guild {guild_id}")
        return self.mapper.to_domain(row)

    def deny_privilege(self, guild_id: int, role_id: int, privilege: Privilege) -> Guild:
        """
        Strip a role of a privilege. Denying admin also strips manager.

        Raises:
            RoleNoPrivilege: If the role doesn't hold `privilege`.
            NotFound: If the guild has no configuration entry.
        """
        guild_id = validate_field("id", guild_id)
        role_id = validate_field("id", role_id)
        assignments = sql.SQL(", ").join(
            sql.SQL("{col} = array_remove({col}, %s::bigint)").format(col=sql.Identifier(p.column))
            for p in privilege.implied
        )
        query = sql.SQL(
            "UPDATE {table} SET {assignments} WHERE {key} = %s AND %s::bigint = ANY({target}) "
            "RETURNING {columns};"
        ).format(
            table=self._table,
            assignments=assignments,
            key=self._key,
            target=sql.Identifier(privilege.column),
            columns=self._columns,
        )
        params = (*([role_id] * len(privilege.implied)), guild_id, role_id)
        row = self._fetchone(query, params, f"deny {privilege} to role {role_id}")
        if row is None:
            if not self.exists(guild_id):
                raise NotFound(self.ENTITY, guild_id)
            raise RoleNoPrivilege(role_id, privilege)
        logger.info(f"Denied {privilege} to role {role_id} in guild {guild_id}")
        return self.mapper.to_domain(row)

    def has_privilege(self, guild_id: int, role_id: int, privilege: Privilege) -> bool:
        """If a role has a privilege."""
        return role_id in self.roles_with(guild_id, privilege)

    def have_privilege(self, guild_id: int, role_ids: Iterable[int], privilege: Privilege) -> bool:
        """If *all* roles have a privilege."""
        roles = self.roles_with(guild_id, privilege)
        return all(role in roles for role in role_ids)

    def privileges_for(self, guild_id: int, role_id: int) -> list[Privilege]:
        """
        All privileges granted to a role.

        Raises:
            NotFound: If the guild has no configuration entry.
        """
        guild = self.read(guild_id)
        if guild is None:
            raise NotFound(self.ENTITY, guild_id)
        privileges: list[Privilege] = []
        if role_id in guild.priv_admin:
            privileges.extend(Privilege.ADMIN.implied)
        elif role_id in guild.priv_manager:
            privileges.append(Privilege.MANAGER)
        if role_id in guild.priv_event:
            privileges.append(Privilege.EVENT)
        return privileges

    def has_privileges(self, guild_id: int, role_id: int, privileges: Iterable[Privilege]) -> bool:
        """If a role has *all* specified privileges."""
        held = self.privileges_for(guild_id, role_id)
        return all(privilege in held for privilege in privileges)

    # ── Helpers ───────────────────────────────────────────

    def _fetchone(self, query: sql.Composable, params: tuple, action: str) -> Optional[dict]:
        try:
            with self.db.cursor() as cur:
                cur.execute(query, params)
                row = cur.fetchone()
        except psycopg2.Error as e:
            logger.error(f"Failed to {action}: {e}")
            raise StoreError(f"Could not {action}: {e}") from e
        return dict(row) if row is not None else None
