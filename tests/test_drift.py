"""Tests for the drift detector."""

import pytest

from db.drift import (
    ColumnTypeMismatch,
    DriftDetector,
    ExtraColumn,
    MissingColumn,
    MissingTable,
    NullabilityMismatch,
    compare,
    live_column,
)
from db.exceptions import DriftError
from db.schema import ColumnSpec, SemanticType

_UDT = {
    SemanticType.BIGINT: "int8",
    SemanticType.TEXT: "varchar",
    SemanticType.BOOLEAN: "bool",
}


def information_schema_rows(columns: tuple[ColumnSpec, ...]) -> list[dict]:
    """What PostgreSQL reports for a table created exactly as declared."""
    return [
        {
            "column_name": column.name,
            "udt_name": ("_" if column.is_array else "") + _UDT[column.type],
            "is_nullable": "YES" if column.nullable else "NO",
            "column_default": column.default,
            "character_maximum_length": column.max_length,
        }
        for column in columns
    ]


@pytest.fixture
def expected(registry) -> tuple[ColumnSpec, ...]:
    return registry.describe("guilds")


@pytest.fixture
def live(expected) -> list[ColumnSpec]:
    return [live_column(row) for row in information_schema_rows(expected)]


def test_live_column_from_information_schema():
    column = live_column(
        {
            "column_name": "priv_admin",
            "udt_name": "_int8",
            "is_nullable": "NO",
            "column_default": None,
            "character_maximum_length": None,
        }
    )
    assert column.type is SemanticType.BIGINT
    assert column.is_array and not column.nullable


def test_identical_schema_has_no_discrepancy(expected, live):
    assert compare("guilds", expected, live) == []


def test_removed_column_is_missing(expected, live):
    live = [c for c in live if c.name != "priv_event"]
    assert compare("guilds", expected, live) == [MissingColumn("guilds", "priv_event")]


def test_missing_table(expected):
    assert compare("guilds", expected, []) == [MissingTable("guilds")]


def test_all_discrepancies_are_reported(expected, live):
    by_name = {c.name: c for c in live}
    by_name["advertise"] = ColumnSpec("advertise", SemanticType.BOOLEAN, nullable=True)
    by_name["admin_chan"] = ColumnSpec("admin_chan", SemanticType.TEXT)
    by_name["welcome_message"] = ColumnSpec("welcome_message", SemanticType.TEXT, max_length=2000)
    del by_name["goodbye_message"]
    by_name["slap_count"] = ColumnSpec("slap_count", SemanticType.INTEGER)

    found = compare("guilds", expected, list(by_name.values()))
    assert set(found) == {
        NullabilityMismatch("guilds", "advertise", expected_nullable=False, live_nullable=True),
        ColumnTypeMismatch("guilds", "admin_chan", expected="bigint", live="text"),
        ColumnTypeMismatch("guilds", "welcome_message", expected="text(2048)", live="text(2000)"),
        MissingColumn("guilds", "goodbye_message"),
        ExtraColumn("guilds", "slap_count"),
    }


class TestDriftDetector:
    def test_check_passes_on_identical_schema(self, fake_db, registry, expected):
        fake_db.cur.fetchall.return_value = information_schema_rows(expected)
        DriftDetector(fake_db, registry).check()
        assert fake_db.cur.execute.call_args.args[1] == ("public", "guilds")

    def test_check_aggregates_discrepancies(self, fake_db, registry, expected):
        rows = information_schema_rows(expected)
        rows = [r for r in rows if r["column_name"] != "priv_event"]
        rows[3]["is_nullable"] = "YES"  # advertise
        fake_db.cur.fetchall.return_value = rows

        with pytest.raises(DriftError) as exc:
            DriftDetector(fake_db, registry).check()
        assert set(exc.value.discrepancies) == {
            MissingColumn("guilds", "priv_event"),
            NullabilityMismatch("guilds", "advertise", expected_nullable=False, live_nullable=True),
        }
        assert "priv_event" in str(exc.value)

    def test_missing_table(self, fake_db, registry):
        with pytest.raises(DriftError) as exc:
            DriftDetector(fake_db, registry, schema="botanist").check()
        assert exc.value.discrepancies == (MissingTable("guilds"),)

    def test_extra_column_of_unlisted_type(self, fake_db, registry, expected):
        rows = information_schema_rows(expected)
        rows.append(
            {
                "column_name": "avatar",
                "udt_name": "bytea",
                "is_nullable": "YES",
                "column_default": None,
                "character_maximum_length": None,
            }
        )
        fake_db.cur.fetchall.return_value = rows

        with pytest.raises(DriftError) as exc:
            DriftDetector(fake_db, registry).check()
        assert exc.value.discrepancies == (ExtraColumn("guilds", "avatar"),)

    def test_column_retyped_to_unlisted_type(self, fake_db, registry, expected):
        rows = information_schema_rows(expected)
        rows[4]["udt_name"] = "interval"  # admin_chan
        fake_db.cur.fetchall.return_value = rows

        with pytest.raises(DriftError) as exc:
            DriftDetector(fake_db, registry).check()
        assert exc.value.discrepancies == (
            ColumnTypeMismatch("guilds", "admin_chan", expected="bigint", live="interval"),
        )


def test_live_column_keeps_unlisted_type_name():
    column = live_column(
        {
            "column_name": "moods",
            "udt_name": "_mood",
            "is_nullable": "YES",
            "column_default": None,
            "character_maximum_length": None,
        }
    )
    assert column.type is SemanticType.OTHER
    assert column.type_name == "mood[]"
