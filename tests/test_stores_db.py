import os
import sys
import unittest
import uuid
from contextlib import contextmanager
from unittest import mock

ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
SRC = os.path.join(ROOT, "src")
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)
if SRC not in sys.path:
    sys.path.insert(0, SRC)

import psycopg2
import psycopg2.errors
import psycopg2.extras

from app import db, stores_db
from stratum.errors import DuplicateTemplateError, SchemaApplyError


def _fake_get_conn(conn):
    @contextmanager
    def _get_conn():
        yield conn

    return _get_conn


class TestDbTx(unittest.TestCase):
    def setUp(self) -> None:
        self.conn = mock.MagicMock()
        self.pool = mock.MagicMock()
        self.pool.getconn.return_value = self.conn
        patches = [
            mock.patch.object(stores_db, "init_pool"),
            mock.patch.object(stores_db, "get_pool", return_value=self.pool),
        ]
        for p in patches:
            p.start()
            self.addCleanup(p.stop)

    def test_nested_begin_shares_connection(self) -> None:
        mgr = stores_db.DbTxManager()
        outer = mgr.begin()
        inner = mgr.begin()
        self.assertIs(inner.conn, outer.conn)
        self.assertIs(db.get_active_conn(), self.conn)
        inner.commit()
        self.conn.commit.assert_not_called()
        outer.commit()
        self.conn.commit.assert_called_once()
        self.pool.putconn.assert_called_once_with(self.conn)
        self.assertIsNone(db.get_active_conn())
        self.assertIsNone(stores_db._TX_CONTEXT.get())

    def test_inner_rollback_poisons_outer_commit(self) -> None:
        mgr = stores_db.DbTxManager()
        outer = mgr.begin()
        inner = mgr.begin()
        inner.rollback()
        outer.commit()
        self.conn.commit.assert_not_called()
        self.conn.rollback.assert_called_once()
        self.pool.putconn.assert_called_once_with(self.conn)


class TestDbTemplateRepo(unittest.TestCase):
    def test_unique_violation_maps_to_duplicate(self) -> None:
        repo = stores_db.DbTemplateRepo()
        record = {
            "tenant_id": "t1",
            "name": "contact",
            "label": "Contact",
            "table_name": "baas_c09316_contact",
            "created_at": "2026-01-01T00:00:00Z",
            "updated_at": "2026-01-01T00:00:00Z",
        }
        with mock.patch.object(stores_db, "get_conn", _fake_get_conn(mock.MagicMock())), mock.patch.object(
            stores_db, "fetch_one", side_effect=psycopg2.errors.UniqueViolation("duplicate key")
        ):
            with self.assertRaises(DuplicateTemplateError):
                repo.insert_template(None, record)

    def test_row_mapping(self) -> None:
        row = {
            "id": 3,
            "tenant_id": "t1",
            "project_id": None,
            "name": "contact",
            "label": "Contact",
            "description": None,
            "status": 1,
            "settings": '{"label_field": "title"}',
            "table_name": "baas_c09316_contact",
            "created_at": None,
            "updated_at": None,
        }
        mapped = stores_db._template_row(row)
        self.assertEqual(mapped["settings"], {"label_field": "title"})
        self.assertEqual(mapped["description"], "")
        self.assertIsNone(stores_db._template_row(None))

    def test_update_builds_assignments(self) -> None:
        parts, params = stores_db._assignments({"label": "X", "settings": {"a": 1}, "name": "ignored"}, stores_db._TEMPLATE_COLUMNS)
        self.assertEqual(parts, ["label=%s", "settings=%s"])
        self.assertEqual(params, ["X", '{"a": 1}'])

    def test_non_numeric_ids_skip_queries(self) -> None:
        repo = stores_db.DbTemplateRepo()
        with mock.patch.object(stores_db, "fetch_one") as fetch:
            self.assertIsNone(repo.get_template("abc"))
            self.assertIsNone(repo.get_field(None))
        fetch.assert_not_called()


class TestDbSchema(unittest.TestCase):
    def test_driver_errors_become_schema_apply_errors(self) -> None:
        schema = stores_db.DbSchema()
        with mock.patch.object(stores_db, "get_conn", _fake_get_conn(mock.MagicMock())), mock.patch.object(
            stores_db, "execute", side_effect=psycopg2.ProgrammingError("column exists")
        ):
            with self.assertRaises(SchemaApplyError) as ctx:
                schema.add_column(None, "baas_c09316_contact", "title", {"db_type": "varchar", "length": 20})
        self.assertEqual(ctx.exception.table, "baas_c09316_contact")
        self.assertIn('add column "title" varchar(20)', ctx.exception.statement)

    def test_create_table_runs_table_and_index(self) -> None:
        schema = stores_db.DbSchema()
        with mock.patch.object(stores_db, "get_conn", _fake_get_conn(mock.MagicMock())), mock.patch.object(stores_db, "execute") as run:
            schema.create_table(None, "baas_c09316_contact")
        statements = [c.args[1] for c in run.call_args_list]
        self.assertTrue(statements[0].startswith('create table "baas_c09316_contact"'))
        self.assertTrue(statements[1].startswith("create index"))


class TestDbEntityStorage(unittest.TestCase):
    def test_jsonb_values_are_wrapped(self) -> None:
        storage = stores_db.DbEntityStorage()
        with mock.patch.object(stores_db, "fetch_all", return_value=[{"column_name": "tags"}]):
            adapted = storage._adapt(mock.MagicMock(), "baas_c09316_contact", {"tags": [1, 2], "title": "x", "empty": None})
        self.assertIsInstance(adapted["tags"], psycopg2.extras.Json)
        self.assertEqual(adapted["title"], "x")
        self.assertIsNone(adapted["empty"])

    def test_like_pattern_escapes_wildcards(self) -> None:
        self.assertEqual(stores_db._like_pattern("50%_off"), "%50\\%\\_off%")
        self.assertEqual(stores_db._like_pattern(""), "%%")

    def test_update_with_bad_id(self) -> None:
        storage = stores_db.DbEntityStorage()
        self.assertIsNone(storage.update("baas_c09316_contact", "t1", None, "x", {"title": "a"}))
        self.assertFalse(storage.delete("baas_c09316_contact", "t1", None, None))


class TestQueryLogging(unittest.TestCase):
    def test_redacts_long_values(self) -> None:
        redacted = db._redact_params(["short", "x" * 100, b"abc", 5])
        self.assertEqual(redacted[0], "short")
        self.assertTrue(redacted[1].startswith("x" * 40 + "..."))
        self.assertEqual(redacted[2], "<bytes:3>")
        self.assertEqual(redacted[3], 5)
        self.assertIsNone(db._redact_params(None))

    def test_stats_count_queries(self) -> None:
        db.reset_db_stats()
        db._log_query(query_name="q", params=None, elapsed_ms=1.5, rowcount=1)
        db._log_query(query_name=None, params=None, elapsed_ms=0.5, rowcount=0)
        stats = db.get_db_stats()
        self.assertEqual(stats["queries"], 2)
        self.assertAlmostEqual(stats["total_ms"], 2.0)


@unittest.skipUnless(os.getenv("USE_DB") == "1" and (os.getenv("STRATUM_DB_URL") or os.getenv("DATABASE_URL")), "postgres not configured")
class TestPostgresRoundTrip(unittest.TestCase):
    def test_failed_column_add_rolls_back_metadata(self) -> None:
        from field_types import FieldTypeRegistry
        from template_store import TemplateStore

        repo = stores_db.DbTemplateRepo()
        repo.ensure_tables()
        store = TemplateStore(repo, stores_db.DbSchema(), stores_db.DbTxManager(), FieldTypeRegistry.with_defaults())
        tenant = f"t_{uuid.uuid4().hex[:8]}"
        created = store.create_template(tenant, "contact", "Contact")
        self.assertTrue(created["ok"], created)
        template_id = created["template_id"]
        self.assertTrue(store.add_field(template_id, {"name": "title", "field_type": "string"})["ok"])

        table = store.table_name(created["template"])
        with stores_db.get_conn() as conn:
            stores_db.execute(conn, f'alter table "{table}" add column "code" text')
        result = store.add_field(template_id, {"name": "code", "field_type": "string"})
        self.assertEqual([e["code"] for e in result["errors"]], ["SCHEMA_APPLY_FAILED"])
        self.assertIsNone(store.get_field_by_name(template_id, "code"))

        self.assertTrue(store.delete_template(template_id)["ok"])
        self.assertFalse(stores_db.DbSchema().table_exists(table))


if __name__ == "__main__":
    unittest.main()
