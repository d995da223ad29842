"""
Tests for gantry.db.sql builders and gantry.db.schema DDL.
"""

import pytest

from gantry.db.schema import add_column_sql, create_table_sql, index_sql, sync_table
from gantry.db.sql import (
    DeleteBuilder,
    SelectBuilder,
    UpdateBuilder,
    UpsertBuilder,
    like_pattern,
    parse_order,
    quote,
)
from gantry.faults import InvalidParamFault
from gantry.models import CharField, IntegerField, Model

from sample_models import User


class Evolving(Model):
    title = CharField()

    class Meta:
        table = "evolving"


class EvolvingV2(Model):
    title = CharField()
    rank = IntegerField(db_index=True)
    code = CharField(unique=True)

    class Meta:
        table = "evolving"


class TestHelpers:
    def test_quote(self):
        assert quote("users") == '"users"'
        with pytest.raises(InvalidParamFault):
            quote('users"; DROP TABLE users; --')
        with pytest.raises(InvalidParamFault):
            quote("1abc")

    def test_like_pattern(self):
        assert like_pattern("50%_off") == "%50\\%\\_off%"

    def test_parse_order(self):
        cols = ["name", "age"]
        assert parse_order("name desc, age", cols) == [("name", True), ("age", False)]
        assert parse_order("NAME", ["NAME"]) == [("NAME", False)]

    @pytest.mark.parametrize("clause", ["password", "name sideways", "name desc extra"])
    def test_parse_order_rejects(self, clause):
        with pytest.raises(InvalidParamFault):
            parse_order(clause, ["name"])


class TestSelectBuilder:
    def test_full_query(self):
        sql, params = (
            SelectBuilder("users")
            .select("id", "name")
            .where('"deleted_at" IS NULL')
            .where_group(['"name" = ?', '"email" = ?'], ["u1", "x@y"], disjunctive=True)
            .order_by('"name" DESC')
            .limit(10)
            .offset(20)
            .build()
        )
        assert sql == (
            'SELECT "id", "name" FROM "users" WHERE ("deleted_at" IS NULL) '
            'AND (("name" = ?) OR ("email" = ?)) ORDER BY "name" DESC LIMIT 10 OFFSET 20'
        )
        assert params == ["u1", "x@y"]

    def test_defaults(self):
        assert SelectBuilder("users").build() == ('SELECT * FROM "users"', [])

    def test_unbounded_limit(self):
        sql, _ = SelectBuilder("users").limit(-1).offset(5).build()
        assert "LIMIT" not in sql and "OFFSET" not in sql

    def test_empty_in(self):
        sql, params = SelectBuilder("users").where_in("id", []).build()
        assert sql.endswith("WHERE (1 = 0)")
        assert params == []

    def test_index_hint_and_lock(self):
        sql, _ = SelectBuilder("users").indexed_by("idx_users_name").for_update("UPDATE").build()
        assert 'FROM "users" INDEXED BY "idx_users_name"' in sql
        assert sql.endswith("FOR UPDATE")

    def test_count(self):
        sql, params = SelectBuilder("users").where('"age" > ?', 3).order_by('"id" ASC').limit(5).build_count()
        assert sql == 'SELECT COUNT(*) FROM "users" WHERE ("age" > ?)'
        assert params == [3]


class TestWriteBuilders:
    def test_upsert_preserves_columns(self):
        sql, rows = (
            UpsertBuilder("users", preserve=("created_at", "created_by"))
            .rows([{"id": "1", "name": "a", "created_at": "t"}, {"id": "2", "name": "b", "created_at": "t"}])
            .build_many()
        )
        assert sql == (
            'INSERT INTO "users" ("id", "name", "created_at") VALUES (?, ?, ?) '
            'ON CONFLICT("id") DO UPDATE SET "name" = excluded."name"'
        )
        assert rows == [["1", "a", "t"], ["2", "b", "t"]]

    def test_upsert_nothing_to_update(self):
        sql, _ = UpsertBuilder("users").rows([{"id": "1"}]).build_many()
        assert sql.endswith('ON CONFLICT("id") DO NOTHING')

    def test_upsert_requires_rows(self):
        with pytest.raises(ValueError):
            UpsertBuilder("users").rows([])

    def test_update(self):
        sql, params = UpdateBuilder("users").set(name="a").where('"id" = ?', "1").build()
        assert sql == 'UPDATE "users" SET "name" = ? WHERE ("id" = ?)'
        assert params == ["a", "1"]
        with pytest.raises(ValueError):
            UpdateBuilder("users").build()

    def test_delete(self):
        sql, params = DeleteBuilder("users").where_in("id", ["1", "2"]).build()
        assert sql == 'DELETE FROM "users" WHERE ("id" IN (?, ?))'
        assert params == ["1", "2"]


class TestSchema:
    def test_create_table(self):
        sql = create_table_sql(User)
        assert sql.startswith('CREATE TABLE IF NOT EXISTS "users" (')
        assert '"id" VARCHAR(64) PRIMARY KEY' in sql
        assert '"deleted_at" DATETIME' in sql

    def test_indexes(self):
        assert index_sql(User) == [
            'CREATE INDEX IF NOT EXISTS "idx_users_deleted_at" ON "users" ("deleted_at")'
        ]

    def test_add_column(self):
        assert add_column_sql("t", '"x" INTEGER') == 'ALTER TABLE "t" ADD COLUMN "x" INTEGER'

    @pytest.mark.asyncio
    async def test_sync_adds_missing_columns(self, engine):
        await sync_table(engine, Evolving)
        statements = await sync_table(engine, EvolvingV2)
        assert any('ADD COLUMN "rank"' in s for s in statements)
        code_stmt = next(s for s in statements if 'ADD COLUMN "code"' in s)
        assert "UNIQUE" not in code_stmt

        columns = {c.name for c in await engine.get_columns("evolving")}
        assert {"title", "rank", "code"} <= columns
        assert "evolving" in await engine.get_tables()

    @pytest.mark.asyncio
    async def test_sync_is_idempotent(self, engine):
        await sync_table(engine, Evolving)
        statements = await sync_table(engine, Evolving)
        assert not any("CREATE TABLE" in s or "ADD COLUMN" in s for s in statements)
