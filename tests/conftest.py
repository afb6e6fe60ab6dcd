"""Pytest configuration and fixtures.

This module provides fixtures for:
- The Schema Registry built from the shipped migrations
- Two sample guilds mirroring the rows seeded in the test database
- A fake connection context for repository tests without a server
- A throw-away PostgreSQL database for integration tests (needs TEST_DB_URL)
"""

import uuid
from contextlib import contextmanager
from pathlib import Path
from typing import Generator
from unittest.mock import MagicMock

import psycopg2
import pytest
from psycopg2 import sql

import config
from db.connection import Database
from db.schema import SchemaRegistry
from models.guild import Guild

PROJECT_ROOT = Path(__file__).parent.parent
MIGRATIONS_DIR = PROJECT_ROOT / "migrations"


@pytest.fixture(scope="session")
def registry() -> SchemaRegistry:
    return SchemaRegistry.from_directory(MIGRATIONS_DIR)


@pytest.fixture
def first_guild() -> Guild:
    return Guild(
        id=5844,
        welcome_message="hello",
        goodbye_message=None,
        advertise=True,
        admin_chan=87904,
        poll_chans=(2323, 664, 1212054),
        priv_admin=(22522, 44943544),
        priv_manager=(22522, 44943544, 4444444),
        priv_event=(48201365,),
    )


@pytest.fixture
def second_guild() -> Guild:
    return Guild(
        id=8750,
        welcome_message=None,
        goodbye_message="goodbye",
        advertise=False,
        admin_chan=None,
        poll_chans=(5406, 254102, 5455),
        priv_admin=(843934, 3504),
        priv_manager=(843934, 3504, 84304),
        priv_event=(984762,),
    )


class FakeDatabase:
    """Stands in for `Database`; every cursor is the same MagicMock."""

    __test__ = False

    def __init__(self):
        self.cur = MagicMock()
        self.cur.fetchone.return_value = None
        self.cur.fetchall.return_value = []
        self.cur.rowcount = 0

    @contextmanager
    def cursor(self, dict_rows: bool = True):
        yield self.cur


@pytest.fixture
def fake_db() -> FakeDatabase:
    return FakeDatabase()


# ── Integration database ──────────────────────────────────


def _server_connection():
    conn = psycopg2.connect(config.TEST_DB_URL)
    conn.autocommit = True
    return conn


def _apply_migrations(db: Database, registry: SchemaRegistry) -> None:
    with db.cursor(dict_rows=False) as cur:
        for migration in registry.migrations:
            for statement in migration.statements:
                cur.execute(statement)


def _seed(db: Database, guilds: list[Guild]) -> None:
    with db.cursor(dict_rows=False) as cur:
        for guild in guilds:
            cur.execute(
                "INSERT INTO guilds(id, welcome_message, goodbye_message, advertise, admin_chan, "
                "poll_chans, priv_admin, priv_manager, priv_event) "
                "VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s);",
                (
                    guild.id,
                    guild.welcome_message,
                    guild.goodbye_message,
                    guild.advertise,
                    guild.admin_chan,
                    list(guild.poll_chans),
                    list(guild.priv_admin),
                    list(guild.priv_manager),
                    list(guild.priv_event),
                ),
            )


@pytest.fixture
def test_db(registry, first_guild, second_guild) -> Generator[Database, None, None]:
    """A fresh database with the migrations applied and two guilds seeded.

    The database is created for a single test and dropped afterwards.
    """
    if not config.TEST_DB_URL:
        pytest.skip("TEST_DB_URL was not set")

    base_url = config.TEST_DB_URL.rstrip("/")
    db_name = f"botanist_test_{uuid.uuid4().hex}"

    server = _server_connection()
    with server.cursor() as cur:
        cur.execute(sql.SQL("CREATE DATABASE {};").format(sql.Identifier(db_name)))

    db = Database(f"{base_url}/{db_name}", min_conn=1, max_conn=2).open()
    try:
        _apply_migrations(db, registry)
        _seed(db, [first_guild, second_guild])
        yield db
    finally:
        db.close()
        with server.cursor() as cur:
            cur.execute(
                "SELECT pg_terminate_backend(pid) FROM pg_stat_activity "
                "WHERE datname = %s AND pid <> pg_backend_pid();",
                (db_name,),
            )
            cur.execute(sql.SQL("DROP DATABASE IF EXISTS {};").format(sql.Identifier(db_name)))
        server.close()
