"""Tests for row editing and the statements a commit issues."""

import asyncio
from datetime import date
from decimal import Decimal

import pytest
from sqlalchemy.dialects import postgresql

from postgis_tools.core.errors import EditNotPermittedError, ServerError, ValidationFailedError
from postgis_tools.services.edit_session import RowState, TableEditSession, coerce_value
from postgis_tools.services.metadata_loader import MetadataLoader


def render(statement):
    compiled = statement.compile(dialect=postgresql.dialect())
    return str(compiled), compiled.params


def seed(fake_db, primary_key=("id",)):
    catalog = fake_db.catalog
    catalog.add_table(
        "geo", "parcels",
        [("id", "integer"), ("name", "character varying", 80), ("area", "numeric")],
        primary_key=list(primary_key),
        rows=[
            {"id": 1, "name": "North", "area": Decimal("12.5")},
            {"id": 2, "name": "South", "area": None},
        ],
    )
    catalog.add_spatial_column("geo", "parcels", "geom")


def load(fake_db, row_limit=200):
    return asyncio.run(TableEditSession.load(fake_db, MetadataLoader(fake_db), "geo", "parcels", row_limit))


def test_load_reads_non_spatial_columns(fake_db):
    seed(fake_db)
    session = load(fake_db, row_limit=50)

    assert session.column_names == ["id", "name", "area"]
    assert session.primary_key == ["id"]
    assert session.has_primary_key
    assert [row.values["name"] for row in session.rows] == ["North", "South"]
    assert all(row.state == RowState.UNCHANGED for row in session.rows)

    sql, params = render(fake_db.statements[0])
    assert sql.startswith('SELECT "geo"."parcels"."id", "geo"."parcels"."name", "geo"."parcels"."area"')
    assert 'FROM "geo"."parcels"' in sql
    assert "LIMIT" in sql
    assert 50 in params.values()


def test_load_without_selectable_columns(fake_db):
    fake_db.catalog.add_table("geo", "shapes", primary_key=["geom"])
    fake_db.catalog.add_spatial_column("geo", "shapes", "geom")
    session = asyncio.run(TableEditSession.load(fake_db, MetadataLoader(fake_db), "geo", "shapes"))

    assert session.no_selectable_columns
    assert session.rows == []
    assert fake_db.statements == []
    with pytest.raises(EditNotPermittedError):
        session.add_row()


def test_without_primary_key_everything_is_rejected(fake_db):
    seed(fake_db, primary_key=())
    session = load(fake_db)
    before = [row.model_dump() for row in session.rows]

    assert session.has_primary_key is False
    with pytest.raises(EditNotPermittedError):
        session.add_row()
    with pytest.raises(EditNotPermittedError):
        session.delete_row(session.rows[0].row_id)
    with pytest.raises(EditNotPermittedError):
        session.set_value(session.rows[0].row_id, "name", "x")
    with pytest.raises(EditNotPermittedError):
        asyncio.run(session.commit(fake_db))

    assert [row.model_dump() for row in session.rows] == before
    assert fake_db.transactions == []


def test_set_value_marks_row_modified(fake_db):
    seed(fake_db)
    session = load(fake_db)
    row = session.set_value(session.rows[0].row_id, "area", "13.75")

    assert row.state == RowState.MODIFIED
    assert row.values["area"] == Decimal("13.75")
    assert row.original["area"] == Decimal("12.5")
    with pytest.raises(ValidationFailedError):
        session.set_value(row.row_id, "geom", "POINT(0 0)")
    with pytest.raises(ValidationFailedError):
        session.set_value(999, "name", "x")


def test_deleted_row_cannot_be_edited(fake_db):
    seed(fake_db)
    session = load(fake_db)
    row = session.delete_row(session.rows[1].row_id)

    assert row.state == RowState.DELETED
    assert len(session.rows) == 2
    with pytest.raises(EditNotPermittedError):
        session.set_value(row.row_id, "name", "x")


def test_build_statements(fake_db):
    seed(fake_db)
    session = load(fake_db)
    fake_db.statements.clear()

    new_row = session.add_row()
    session.set_value(new_row.row_id, "name", "East")
    session.set_value(session.rows[0].row_id, "name", "North 2")
    session.delete_row(session.rows[1].row_id)
    # Added then deleted rows never reach the server
    session.delete_row(session.add_row().row_id)

    assert session.pending_changes() == {"inserted": 1, "updated": 1, "deleted": 1}
    statements = session.build_statements()
    assert [pending.kind.value for pending in statements] == ["delete", "update", "insert"]

    sql, params = render(statements[0].statement)
    assert sql.startswith('DELETE FROM "geo"."parcels" WHERE')
    assert list(params.values()) == [2]

    sql, params = render(statements[1].statement)
    assert sql.startswith('UPDATE "geo"."parcels" SET "name"=')
    assert '"area"' not in sql
    assert sorted(params.values(), key=str) == [1, "North 2"]

    sql, params = render(statements[2].statement)
    assert sql.startswith('INSERT INTO "geo"."parcels" ("name")')
    assert "RETURNING" in sql
    assert list(params.values()) == ["East"]


def test_update_keys_on_original_primary_key(fake_db):
    seed(fake_db)
    session = load(fake_db)
    session.set_value(session.rows[0].row_id, "id", "10")

    sql, params = render(session.build_statements()[0].statement)
    assert sql.startswith('UPDATE "geo"."parcels" SET "id"=')
    assert sorted(params.values()) == [1, 10]


def test_commit_makes_values_the_new_baseline(fake_db):
    seed(fake_db)
    session = load(fake_db)
    fake_db.insert_returning.append({"id": 3})

    new_row = session.add_row()
    session.set_value(new_row.row_id, "name", "East")
    session.set_value(session.rows[0].row_id, "name", "North 2")
    session.delete_row(session.rows[1].row_id)

    counts = asyncio.run(session.commit(fake_db))

    assert counts == {"inserted": 1, "updated": 1, "deleted": 1}
    assert fake_db.transactions == ["commit"]
    assert [row.values["name"] for row in session.rows] == ["North 2", "East"]
    assert session.rows[1].values["id"] == 3
    assert all(row.state == RowState.UNCHANGED for row in session.rows)
    assert all(row.values == row.original for row in session.rows)
    assert session.build_statements() == []


def test_failed_commit_keeps_pending_edits(fake_db):
    seed(fake_db)
    session = load(fake_db)
    session.set_value(session.rows[0].row_id, "name", "North 2")
    fake_db.fail_on.append("UPDATE")

    with pytest.raises(ServerError):
        asyncio.run(session.commit(fake_db))

    assert fake_db.transactions == ["rollback"]
    assert session.rows[0].state == RowState.MODIFIED
    assert session.rows[0].original["name"] == "North"


def test_coerce_value():
    assert coerce_value("integer", " 42 ") == 42
    assert coerce_value("boolean", "yes") is True
    assert coerce_value("date", "2024-05-01") == date(2024, 5, 1)
    assert coerce_value("integer", "") is None
    assert coerce_value("text", "") == ""
    assert coerce_value("character varying", " padded ") == " padded "
    assert coerce_value("integer", 7) == 7
    with pytest.raises(ValidationFailedError):
        coerce_value("integer", "seven")
