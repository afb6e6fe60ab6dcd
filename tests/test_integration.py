"""End-to-end tests against a real PostgreSQL server.

Each test gets its own database (see the `test_db` fixture), created on the
server at TEST_DB_URL with every migration applied and two guilds seeded.
Skipped when TEST_DB_URL is not set.
"""

import pytest
from psycopg2 import sql

from db.drift import DriftDetector, MissingColumn
from db.exceptions import DriftError, DuplicateKey, NotFound, RoleNoPrivilege
from models.guild import Guild, Privilege
from repositories.guild_repo import GuildRepository

pytestmark = pytest.mark.integration


@pytest.fixture
def repo(test_db, registry) -> GuildRepository:
    return GuildRepository(test_db, registry)


def test_read_seeded_guilds(repo, first_guild, second_guild):
    assert repo.read(first_guild.id) == first_guild
    assert repo.read(second_guild.id) == second_guild
    assert repo.read(1) is None


def test_scenario(repo):
    guild = Guild(
        id=1,
        welcome_message=None,
        advertise=True,
        admin_chan=None,
        poll_chans=[],
        priv_admin=[10],
        priv_manager=[],
        priv_event=[],
    )
    repo.create(guild)
    assert repo.read(1) == guild

    repo.update(1, advertise=False)
    assert repo.read(1) == guild.with_changes(advertise=False)

    repo.delete(1)
    assert repo.read(1) is None


def test_create_duplicate(repo, first_guild):
    with pytest.raises(DuplicateKey):
        repo.create(first_guild)
    assert repo.read(first_guild.id) == first_guild


def test_update_never_creates(repo):
    with pytest.raises(NotFound):
        repo.update(42, welcome_message="hi")
    assert not repo.exists(42)


def test_update_several_fields(repo, second_guild):
    updated = repo.update(second_guild.id, welcome_message="welcome!", admin_chan=99, poll_chans=None)
    assert updated == second_guild.with_changes(welcome_message="welcome!", admin_chan=99, poll_chans=())
    assert repo.read(second_guild.id) == updated


def test_delete_is_idempotent(repo, first_guild):
    assert repo.delete(first_guild.id) is True
    assert repo.delete(first_guild.id) is False
    assert not repo.exists(first_guild.id)


def test_grant_and_deny_privileges(repo, first_guild):
    guild = repo.grant_privilege(first_guild.id, 1, Privilege.ADMIN)
    assert 1 in guild.priv_admin and 1 in guild.priv_manager
    assert repo.privileges_for(first_guild.id, 1) == [Privilege.ADMIN, Privilege.MANAGER]

    # granting twice keeps a single entry
    guild = repo.grant_privilege(first_guild.id, 1, Privilege.ADMIN)
    assert guild.priv_admin.count(1) == 1

    guild = repo.deny_privilege(first_guild.id, 1, Privilege.ADMIN)
    assert 1 not in guild.priv_admin and 1 not in guild.priv_manager
    with pytest.raises(RoleNoPrivilege):
        repo.deny_privilege(first_guild.id, 1, Privilege.ADMIN)


def test_event_privilege(repo, second_guild):
    repo.grant_privilege(second_guild.id, 5, Privilege.EVENT)
    assert repo.has_privilege(second_guild.id, 5, Privilege.EVENT)
    assert repo.have_privilege(second_guild.id, [5, 984762], Privilege.EVENT)
    assert not repo.has_privileges(second_guild.id, 5, [Privilege.EVENT, Privilege.MANAGER])


def test_no_drift_after_migrations(test_db, registry):
    DriftDetector(test_db, registry).check()


def test_dropped_column_is_reported(test_db, registry):
    with test_db.cursor() as cur:
        cur.execute(sql.SQL("ALTER TABLE guilds DROP COLUMN {};").format(sql.Identifier("priv_event")))
    with pytest.raises(DriftError) as exc:
        DriftDetector(test_db, registry).check()
    assert MissingColumn("guilds", "priv_event") in exc.value.discrepancies
