"""SQL text for dynamic table DDL.

Identifiers are never taken from user input without passing
``table_names.is_machine_name`` first; column definitions come from
field-type storage schemas.
"""

from __future__ import annotations

import hashlib
from typing import Any

from .table_names import MAX_IDENTIFIER_LENGTH

ENGINE_COLUMNS = ("id", "uuid", "tenant_id", "project_id", "created_at", "updated_at")

_ENGINE_COLUMN_SQL = [
    '"id" bigserial primary key',
    '"uuid" uuid not null',
    '"tenant_id" text not null',
    '"project_id" text null',
    '"created_at" timestamptz not null default now()',
    '"updated_at" timestamptz not null default now()',
]

_DB_TYPES = {
    "varchar": "varchar",
    "char": "char",
    "text": "text",
    "int": "integer",
    "integer": "integer",
    "bigint": "bigint",
    "float": "double precision",
    "numeric": "numeric",
    "boolean": "boolean",
    "jsonb": "jsonb",
    "timestamp": "timestamptz",
    "date": "date",
    "uuid": "uuid",
}


def quote_ident(name: str) -> str:
    if not isinstance(name, str) or not name or len(name) > MAX_IDENTIFIER_LENGTH or '"' in name:
        raise ValueError(f"invalid identifier: {name!r}")
    return f'"{name}"'


def column_type(storage: dict) -> str:
    db_type = str(storage.get("db_type") or "text").lower()
    sql_type = _DB_TYPES.get(db_type)
    if sql_type is None:
        raise ValueError(f"unsupported db_type: {db_type}")
    length = storage.get("length")
    if sql_type in {"varchar", "char"}:
        return f"{sql_type}({int(length or 255)})"
    return sql_type


def column_sql(column: str, storage: dict) -> str:
    sql = f"{quote_ident(column)} {column_type(storage)}"
    if storage.get("nullable", True):
        return f"{sql} null"
    default = storage.get("default")
    if default is None:
        # existing rows need a value before a NOT NULL column can be added
        return f"{sql} null"
    return f"{sql} not null default {_literal(default)}"


def _literal(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (int, float)):
        return repr(value)
    return "'" + str(value).replace("'", "''") + "'"


def create_table_sql(table: str) -> str:
    cols = ",\n  ".join(_ENGINE_COLUMN_SQL)
    return f"create table {quote_ident(table)} (\n  {cols}\n)"


def index_name(table: str, suffix: str = "_tix") -> str:
    """Index name for ``table``; long tables get a hash of the full table name so names stay unique."""
    name = f"{table}{suffix}"
    if len(name) <= MAX_IDENTIFIER_LENGTH:
        return name
    digest = hashlib.md5(table.encode("utf-8")).hexdigest()[:8]
    keep = MAX_IDENTIFIER_LENGTH - len(suffix) - len(digest) - 1
    return f"{table[:keep]}_{digest}{suffix}"


def tenant_index_sql(table: str) -> str:
    return f"create index {quote_ident(index_name(table))} on {quote_ident(table)} (tenant_id, project_id)"


def drop_table_sql(table: str) -> str:
    return f"drop table if exists {quote_ident(table)}"


def add_column_sql(table: str, column: str, storage: dict) -> str:
    return f"alter table {quote_ident(table)} add column {column_sql(column, storage)}"


def alter_column_type_sql(table: str, column: str, storage: dict) -> str:
    sql_type = column_type(storage)
    sql = f"alter table {quote_ident(table)} alter column {quote_ident(column)} type {sql_type}"
    if sql_type == "jsonb":
        return f"{sql} using to_jsonb({quote_ident(column)})"
    return sql


def drop_column_sql(table: str, column: str) -> str:
    return f"alter table {quote_ident(table)} drop column if exists {quote_ident(column)}"
