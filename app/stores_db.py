"""Postgres-backed template metadata, dynamic table DDL and row storage."""

from __future__ import annotations

import json
import logging
import uuid
from contextvars import ContextVar
from typing import Any, Dict, List

import psycopg2
import psycopg2.extras

from stratum import ddl
from stratum.errors import DuplicateTemplateError, SchemaApplyError

from app.db import clear_active_conn, execute, fetch_all, fetch_one, get_conn, get_pool, init_pool, set_active_conn

logger = logging.getLogger("stratum.db")


class _TxContext:
    def __init__(self, conn, pool):
        self.conn = conn
        self.pool = pool
        self.depth = 1
        self.failed = False


_TX_CONTEXT: ContextVar[_TxContext | None] = ContextVar("stratum_tx_context", default=None)


class DbTx:
    def __init__(self, ctx: _TxContext):
        self._ctx = ctx

    @property
    def conn(self):
        return self._ctx.conn

    def commit(self) -> None:
        ctx = self._ctx
        if ctx.depth > 1:
            ctx.depth -= 1
            return
        try:
            if ctx.failed:
                ctx.conn.rollback()
            else:
                ctx.conn.commit()
        finally:
            ctx.pool.putconn(ctx.conn)
            _TX_CONTEXT.set(None)
            clear_active_conn()

    def rollback(self) -> None:
        ctx = self._ctx
        ctx.failed = True
        if ctx.depth > 1:
            ctx.depth -= 1
            return
        try:
            ctx.conn.rollback()
        finally:
            ctx.pool.putconn(ctx.conn)
            _TX_CONTEXT.set(None)
            clear_active_conn()


class DbTxManager:
    def begin(self) -> DbTx:
        ctx = _TX_CONTEXT.get()
        if ctx is not None:
            ctx.depth += 1
            return DbTx(ctx)
        init_pool()
        pool = get_pool()
        conn = pool.getconn()
        ctx = _TxContext(conn, pool)
        _TX_CONTEXT.set(ctx)
        set_active_conn(conn)
        return DbTx(ctx)


def _ensure_json(value):
    if isinstance(value, str):
        return json.loads(value)
    return value


def _to_iso(value):
    if hasattr(value, "strftime"):
        return value.strftime("%Y-%m-%dT%H:%M:%SZ")
    return value


def _int_id(value: Any) -> int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, str) and value.isdigit():
        return int(value)
    return None


def _template_row(row: dict | None) -> dict | None:
    if not row:
        return None
    return {
        "id": row["id"],
        "tenant_id": row["tenant_id"],
        "project_id": row.get("project_id"),
        "name": row["name"],
        "label": row.get("label"),
        "description": row.get("description") or "",
        "status": row.get("status", 1),
        "settings": _ensure_json(row.get("settings")) or {},
        "table_name": row.get("table_name"),
        "created_at": _to_iso(row.get("created_at")),
        "updated_at": _to_iso(row.get("updated_at")),
    }


def _field_row(row: dict | None) -> dict | None:
    if not row:
        return None
    return {
        "id": row["id"],
        "template_id": row["template_id"],
        "name": row["name"],
        "field_type": row["field_type"],
        "label": row.get("label"),
        "description": row.get("description") or "",
        "weight": row.get("weight", 0),
        "required": bool(row.get("required")),
        "settings": _ensure_json(row.get("settings")) or {},
        "created_at": _to_iso(row.get("created_at")),
        "updated_at": _to_iso(row.get("updated_at")),
    }


_TEMPLATE_COLUMNS = ("label", "description", "status", "settings", "updated_at")
_FIELD_COLUMNS = ("label", "description", "weight", "required", "settings", "updated_at")


def _assignments(values: dict, allowed: tuple) -> tuple[list[str], list[Any]]:
    parts: list[str] = []
    params: list[Any] = []
    for key in allowed:
        if key not in values:
            continue
        parts.append(f"{key}=%s")
        params.append(json.dumps(values[key]) if key == "settings" else values[key])
    return parts, params


class DbTemplateRepo:
    def ensure_tables(self) -> None:
        with get_conn() as conn:
            execute(
                conn,
                """
                create table if not exists stratum_entity_template (
                  id bigserial primary key,
                  tenant_id text not null,
                  project_id text null,
                  project_key text not null default '',
                  name text not null,
                  label text not null,
                  description text not null default '',
                  status smallint not null default 1,
                  settings jsonb not null default '{}'::jsonb,
                  table_name text not null,
                  created_at timestamptz not null default now(),
                  updated_at timestamptz not null default now(),
                  unique (tenant_id, project_key, name)
                );
                """,
                query_name="stratum_entity_template.ensure",
            )
            execute(
                conn,
                """
                create table if not exists stratum_entity_field (
                  id bigserial primary key,
                  template_id bigint not null references stratum_entity_template(id) on delete cascade,
                  name text not null,
                  field_type text not null,
                  label text not null,
                  description text not null default '',
                  weight integer not null default 0,
                  required boolean not null default false,
                  settings jsonb not null default '{}'::jsonb,
                  created_at timestamptz not null default now(),
                  updated_at timestamptz not null default now(),
                  unique (template_id, name)
                );
                """,
                query_name="stratum_entity_field.ensure",
            )
        logging.getLogger("stratum").info("auto_migration_applied tables=stratum_entity_template,stratum_entity_field")

    def insert_template(self, tx, record: dict) -> dict:
        try:
            with get_conn() as conn:
                row = fetch_one(
                    conn,
                    """
                    insert into stratum_entity_template
                      (tenant_id, project_id, project_key, name, label, description, status, settings, table_name, created_at, updated_at)
                    values (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    returning *
                    """,
                    [
                        record["tenant_id"],
                        record.get("project_id"),
                        record.get("project_id") or "",
                        record["name"],
                        record["label"],
                        record.get("description") or "",
                        record.get("status", 1),
                        json.dumps(record.get("settings") or {}),
                        record["table_name"],
                        record["created_at"],
                        record["updated_at"],
                    ],
                    query_name="stratum_entity_template.insert",
                )
        except psycopg2.errors.UniqueViolation as exc:
            raise DuplicateTemplateError(f"template already exists: {record['name']}") from exc
        return _template_row(row)

    def update_template(self, tx, template_id: int, values: dict) -> dict | None:
        parts, params = _assignments(values, _TEMPLATE_COLUMNS)
        if not parts:
            return self.get_template(template_id)
        with get_conn() as conn:
            row = fetch_one(
                conn,
                f"update stratum_entity_template set {', '.join(parts)} where id=%s returning *",
                params + [template_id],
                query_name="stratum_entity_template.update",
            )
        return _template_row(row)

    def delete_template(self, tx, template_id: int) -> bool:
        with get_conn() as conn:
            count = execute(conn, "delete from stratum_entity_template where id=%s", [template_id], query_name="stratum_entity_template.delete")
        return count > 0

    def get_template(self, template_id: Any) -> dict | None:
        template_id = _int_id(template_id)
        if template_id is None:
            return None
        with get_conn() as conn:
            row = fetch_one(conn, "select * from stratum_entity_template where id=%s", [template_id], query_name="stratum_entity_template.get")
        return _template_row(row)

    def find_template(self, tenant_id: str, project_id: str | None, name: str) -> dict | None:
        with get_conn() as conn:
            row = fetch_one(
                conn,
                "select * from stratum_entity_template where tenant_id=%s and project_key=%s and name=%s",
                [tenant_id, project_id or "", name],
                query_name="stratum_entity_template.find",
            )
        return _template_row(row)

    def list_templates(self, tenant_id: str | None = None, project_id: str | None = None, active_only: bool = False) -> list[dict]:
        clauses: List[str] = []
        params: List[Any] = []
        if tenant_id is not None:
            clauses.append("tenant_id=%s")
            params.append(tenant_id)
        if project_id is not None:
            clauses.append("project_key=%s")
            params.append(project_id)
        if active_only:
            clauses.append("status=1")
        where = f"where {' and '.join(clauses)}" if clauses else ""
        with get_conn() as conn:
            rows = fetch_all(
                conn,
                f"select * from stratum_entity_template {where} order by tenant_id, name, id",
                params,
                query_name="stratum_entity_template.list",
            )
        return [_template_row(r) for r in rows]

    def insert_field(self, tx, record: dict) -> dict:
        with get_conn() as conn:
            row = fetch_one(
                conn,
                """
                insert into stratum_entity_field
                  (template_id, name, field_type, label, description, weight, required, settings, created_at, updated_at)
                values (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                returning *
                """,
                [
                    record["template_id"],
                    record["name"],
                    record["field_type"],
                    record["label"],
                    record.get("description") or "",
                    record.get("weight", 0),
                    bool(record.get("required")),
                    json.dumps(record.get("settings") or {}),
                    record["created_at"],
                    record["updated_at"],
                ],
                query_name="stratum_entity_field.insert",
            )
        return _field_row(row)

    def update_field(self, tx, field_id: int, values: dict) -> dict | None:
        parts, params = _assignments(values, _FIELD_COLUMNS)
        if not parts:
            return self.get_field(field_id)
        with get_conn() as conn:
            row = fetch_one(
                conn,
                f"update stratum_entity_field set {', '.join(parts)} where id=%s returning *",
                params + [field_id],
                query_name="stratum_entity_field.update",
            )
        return _field_row(row)

    def delete_field(self, tx, field_id: int) -> bool:
        with get_conn() as conn:
            count = execute(conn, "delete from stratum_entity_field where id=%s", [field_id], query_name="stratum_entity_field.delete")
        return count > 0

    def get_field(self, field_id: Any) -> dict | None:
        field_id = _int_id(field_id)
        if field_id is None:
            return None
        with get_conn() as conn:
            row = fetch_one(conn, "select * from stratum_entity_field where id=%s", [field_id], query_name="stratum_entity_field.get")
        return _field_row(row)

    def find_field(self, template_id: int, name: str) -> dict | None:
        with get_conn() as conn:
            row = fetch_one(
                conn,
                "select * from stratum_entity_field where template_id=%s and name=%s",
                [template_id, name],
                query_name="stratum_entity_field.find",
            )
        return _field_row(row)

    def list_fields(self, template_id: int) -> list[dict]:
        with get_conn() as conn:
            rows = fetch_all(
                conn,
                "select * from stratum_entity_field where template_id=%s order by weight, name",
                [template_id],
                query_name="stratum_entity_field.list",
            )
        return [_field_row(r) for r in rows]

    def max_weight(self, template_id: int) -> int | None:
        with get_conn() as conn:
            row = fetch_one(
                conn,
                "select max(weight) as max_weight from stratum_entity_field where template_id=%s",
                [template_id],
                query_name="stratum_entity_field.max_weight",
            )
        return row.get("max_weight") if row else None


class DbSchema:
    """Applies dynamic table DDL on the active transaction's connection."""

    def _apply(self, table: str, statements: List[str], query_name: str) -> None:
        current = None
        try:
            with get_conn() as conn:
                for current in statements:
                    execute(conn, current, query_name=query_name)
        except psycopg2.Error as exc:
            raise SchemaApplyError(table, current or "", exc) from exc

    def table_exists(self, table: str) -> bool:
        with get_conn() as conn:
            row = fetch_one(conn, "select to_regclass(%s) as oid", [table], query_name="schema.table_exists")
        return bool(row and row.get("oid"))

    def columns(self, table: str) -> Dict[str, dict]:
        with get_conn() as conn:
            rows = fetch_all(
                conn,
                """
                select column_name, data_type, character_maximum_length, is_nullable
                from information_schema.columns
                where table_name=%s
                order by ordinal_position
                """,
                [table],
                query_name="schema.columns",
            )
        return {
            r["column_name"]: {
                "db_type": r["data_type"],
                "length": r.get("character_maximum_length"),
                "nullable": r.get("is_nullable") == "YES",
            }
            for r in rows
        }

    def create_table(self, tx, table: str) -> None:
        self._apply(table, [ddl.create_table_sql(table), ddl.tenant_index_sql(table)], "schema.create_table")

    def drop_table(self, tx, table: str) -> None:
        self._apply(table, [ddl.drop_table_sql(table)], "schema.drop_table")

    def add_column(self, tx, table: str, column: str, storage: dict) -> None:
        self._apply(table, [ddl.add_column_sql(table, column, storage)], "schema.add_column")

    def alter_column(self, tx, table: str, column: str, storage: dict) -> None:
        self._apply(table, [ddl.alter_column_type_sql(table, column, storage)], "schema.alter_column")

    def drop_column(self, tx, table: str, column: str) -> None:
        self._apply(table, [ddl.drop_column_sql(table, column)], "schema.drop_column")


def _entity_row(row: dict | None) -> dict | None:
    if not row:
        return None
    out = dict(row)
    for key in ("created_at", "updated_at"):
        out[key] = _to_iso(out.get(key))
    if out.get("uuid") is not None:
        out["uuid"] = str(out["uuid"])
    return out


def _like_pattern(text: str) -> str:
    escaped = (text or "").replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    return f"%{escaped}%"


class DbEntityStorage:
    def _jsonb_columns(self, conn, table: str) -> set[str]:
        rows = fetch_all(
            conn,
            "select column_name from information_schema.columns where table_name=%s and data_type='jsonb'",
            [table],
            query_name="entity.jsonb_columns",
        )
        return {r["column_name"] for r in rows}

    def _adapt(self, conn, table: str, values: dict) -> dict:
        jsonb = self._jsonb_columns(conn, table)
        return {k: psycopg2.extras.Json(v) if k in jsonb and v is not None else v for k, v in values.items()}

    def insert(self, table: str, tenant_id: str, project_id: str | None, values: dict) -> dict:
        with get_conn() as conn:
            adapted = self._adapt(conn, table, values)
            columns = ["uuid", "tenant_id", "project_id"] + list(adapted)
            params = [str(uuid.uuid4()), tenant_id, project_id] + list(adapted.values())
            column_sql = ", ".join(ddl.quote_ident(c) for c in columns)
            placeholders = ", ".join(["%s"] * len(columns))
            row = fetch_one(
                conn,
                f"insert into {ddl.quote_ident(table)} ({column_sql}) values ({placeholders}) returning *",
                params,
                query_name="entity.insert",
            )
        return _entity_row(row)

    def get(self, table: str, tenant_id: str, project_id: str | None, row_id: Any) -> dict | None:
        row_id = _int_id(row_id)
        if row_id is None:
            return None
        with get_conn() as conn:
            row = fetch_one(
                conn,
                f"select * from {ddl.quote_ident(table)} where id=%s and tenant_id=%s and project_id is not distinct from %s",
                [row_id, tenant_id, project_id],
                query_name="entity.get",
            )
        return _entity_row(row)

    def list(self, table: str, tenant_id: str, project_id: str | None, limit: int = 50, offset: int = 0) -> list[dict]:
        with get_conn() as conn:
            rows = fetch_all(
                conn,
                f"select * from {ddl.quote_ident(table)} where tenant_id=%s and project_id is not distinct from %s order by id limit %s offset %s",
                [tenant_id, project_id, limit, offset],
                query_name="entity.list",
            )
        return [_entity_row(r) for r in rows]

    def search(self, table: str, tenant_id: str, project_id: str | None, column: str, text: str, limit: int = 10) -> list[dict]:
        col = ddl.quote_ident(column)
        with get_conn() as conn:
            rows = fetch_all(
                conn,
                f"""
                select * from {ddl.quote_ident(table)}
                where tenant_id=%s and project_id is not distinct from %s
                  and coalesce({col}::text, '') ilike %s
                order by lower(coalesce({col}::text, '')), id
                limit %s
                """,
                [tenant_id, project_id, _like_pattern(text), limit],
                query_name="entity.search",
            )
        return [_entity_row(r) for r in rows]

    def update(self, table: str, tenant_id: str, project_id: str | None, row_id: Any, values: dict) -> dict | None:
        row_id = _int_id(row_id)
        if row_id is None:
            return None
        with get_conn() as conn:
            adapted = self._adapt(conn, table, values)
            parts = [f"{ddl.quote_ident(k)}=%s" for k in adapted] + ["updated_at=now()"]
            row = fetch_one(
                conn,
                f"update {ddl.quote_ident(table)} set {', '.join(parts)} where id=%s and tenant_id=%s and project_id is not distinct from %s returning *",
                list(adapted.values()) + [row_id, tenant_id, project_id],
                query_name="entity.update",
            )
        return _entity_row(row)

    def delete(self, table: str, tenant_id: str, project_id: str | None, row_id: Any) -> bool:
        row_id = _int_id(row_id)
        if row_id is None:
            return False
        with get_conn() as conn:
            count = execute(
                conn,
                f"delete from {ddl.quote_ident(table)} where id=%s and tenant_id=%s and project_id is not distinct from %s",
                [row_id, tenant_id, project_id],
                query_name="entity.delete",
            )
        return count > 0
