"""In-memory template metadata, schema and row stores with transaction stubs."""

from __future__ import annotations

import copy
import itertools
import threading
import uuid
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List

from stratum.ddl import ENGINE_COLUMNS
from stratum.errors import DuplicateTemplateError, SchemaApplyError


def _now() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


class InMemoryTx:
    """Collects undo callbacks; rollback replays them newest first."""

    def __init__(self) -> None:
        self.committed = False
        self.rolled_back = False
        self._undo: List[Callable[[], None]] = []

    def on_rollback(self, callback: Callable[[], None]) -> None:
        self._undo.append(callback)

    def commit(self) -> None:
        self.committed = True
        self._undo = []

    def rollback(self) -> None:
        self.rolled_back = True
        undo, self._undo = self._undo, []
        for callback in reversed(undo):
            callback()


class InMemoryTxManager:
    def begin(self) -> InMemoryTx:
        return InMemoryTx()


def _undo(tx, callback: Callable[[], None]) -> None:
    if tx is not None and hasattr(tx, "on_rollback"):
        tx.on_rollback(callback)


class MemoryTemplateRepo:
    def __init__(self) -> None:
        self._templates: Dict[int, dict] = {}
        self._fields: Dict[int, dict] = {}
        self._template_ids = itertools.count(1)
        self._field_ids = itertools.count(1)
        self._lock = threading.Lock()

    def _key(self, record: dict) -> tuple:
        return (record.get("tenant_id"), record.get("project_id") or None, record.get("name"))

    def insert_template(self, tx: InMemoryTx, record: dict) -> dict:
        with self._lock:
            key = self._key(record)
            for existing in self._templates.values():
                if self._key(existing) == key:
                    raise DuplicateTemplateError(f"template already exists: {record.get('name')}")
            template_id = next(self._template_ids)
            stored = copy.deepcopy(record)
            stored["id"] = template_id
            self._templates[template_id] = stored
        _undo(tx, lambda: self._templates.pop(template_id, None))
        return copy.deepcopy(stored)

    def update_template(self, tx: InMemoryTx, template_id: int, values: dict) -> dict | None:
        with self._lock:
            current = self._templates.get(template_id)
            if current is None:
                return None
            before = copy.deepcopy(current)
            current.update(copy.deepcopy(values))
        _undo(tx, lambda: self._templates.__setitem__(template_id, before))
        return copy.deepcopy(current)

    def delete_template(self, tx: InMemoryTx, template_id: int) -> bool:
        with self._lock:
            template = self._templates.pop(template_id, None)
            if template is None:
                return False
            fields = {fid: f for fid, f in self._fields.items() if f.get("template_id") == template_id}
            for fid in fields:
                del self._fields[fid]

        def restore() -> None:
            self._templates[template_id] = template
            self._fields.update(fields)

        _undo(tx, restore)
        return True

    def get_template(self, template_id: Any) -> dict | None:
        record = self._templates.get(template_id)
        if record is None and isinstance(template_id, str) and template_id.isdigit():
            record = self._templates.get(int(template_id))
        return copy.deepcopy(record) if record else None

    def find_template(self, tenant_id: str, project_id: str | None, name: str) -> dict | None:
        key = (tenant_id, project_id or None, name)
        for record in self._templates.values():
            if self._key(record) == key:
                return copy.deepcopy(record)
        return None

    def list_templates(self, tenant_id: str | None = None, project_id: str | None = None, active_only: bool = False) -> list[dict]:
        items = []
        for record in self._templates.values():
            if tenant_id is not None and record.get("tenant_id") != tenant_id:
                continue
            if project_id is not None and record.get("project_id") != project_id:
                continue
            if active_only and not record.get("status"):
                continue
            items.append(copy.deepcopy(record))
        return sorted(items, key=lambda r: (r.get("tenant_id") or "", r.get("name") or "", r.get("id")))

    def insert_field(self, tx: InMemoryTx, record: dict) -> dict:
        with self._lock:
            for existing in self._fields.values():
                if existing.get("template_id") == record.get("template_id") and existing.get("name") == record.get("name"):
                    raise ValueError(f"field already exists: {record.get('name')}")
            field_id = next(self._field_ids)
            stored = copy.deepcopy(record)
            stored["id"] = field_id
            self._fields[field_id] = stored
        _undo(tx, lambda: self._fields.pop(field_id, None))
        return copy.deepcopy(stored)

    def update_field(self, tx: InMemoryTx, field_id: int, values: dict) -> dict | None:
        with self._lock:
            current = self._fields.get(field_id)
            if current is None:
                return None
            before = copy.deepcopy(current)
            current.update(copy.deepcopy(values))
        _undo(tx, lambda: self._fields.__setitem__(field_id, before))
        return copy.deepcopy(current)

    def delete_field(self, tx: InMemoryTx, field_id: int) -> bool:
        with self._lock:
            field = self._fields.pop(field_id, None)
        if field is None:
            return False
        _undo(tx, lambda: self._fields.__setitem__(field_id, field))
        return True

    def get_field(self, field_id: Any) -> dict | None:
        record = self._fields.get(field_id)
        if record is None and isinstance(field_id, str) and field_id.isdigit():
            record = self._fields.get(int(field_id))
        return copy.deepcopy(record) if record else None

    def find_field(self, template_id: int, name: str) -> dict | None:
        for record in self._fields.values():
            if record.get("template_id") == template_id and record.get("name") == name:
                return copy.deepcopy(record)
        return None

    def list_fields(self, template_id: int) -> list[dict]:
        return [copy.deepcopy(f) for f in self._fields.values() if f.get("template_id") == template_id]

    def max_weight(self, template_id: int) -> int | None:
        weights = [f.get("weight", 0) for f in self._fields.values() if f.get("template_id") == template_id]
        return max(weights) if weights else None


class MemorySchema:
    """Tables as column maps plus their rows; DDL calls honour the tx undo log."""

    def __init__(self) -> None:
        self.tables: Dict[str, dict] = {}
        self.statements: List[str] = []

    def table_exists(self, table: str) -> bool:
        return table in self.tables

    def columns(self, table: str) -> Dict[str, dict]:
        info = self.tables.get(table)
        return copy.deepcopy(info["columns"]) if info else {}

    def create_table(self, tx, table: str) -> None:
        if table in self.tables:
            raise SchemaApplyError(table, f"create table {table}", ValueError("table already exists"))
        columns = {name: {"engine": True} for name in ENGINE_COLUMNS}
        self.tables[table] = {"columns": columns, "rows": {}, "seq": itertools.count(1)}
        self.statements.append(f"create table {table}")
        _undo(tx, lambda: self.tables.pop(table, None))

    def drop_table(self, tx, table: str) -> None:
        info = self.tables.pop(table, None)
        self.statements.append(f"drop table {table}")
        if info is not None:
            _undo(tx, lambda: self.tables.__setitem__(table, info))

    def add_column(self, tx, table: str, column: str, storage: dict) -> None:
        info = self.tables.get(table)
        if info is None:
            raise SchemaApplyError(table, f"alter table {table} add column {column}", KeyError("table not found"))
        if column in info["columns"]:
            raise SchemaApplyError(table, f"alter table {table} add column {column}", ValueError("column already exists"))
        info["columns"][column] = copy.deepcopy(storage)
        self.statements.append(f"alter table {table} add column {column}")
        _undo(tx, lambda: info["columns"].pop(column, None))

    def alter_column(self, tx, table: str, column: str, storage: dict) -> None:
        info = self.tables.get(table)
        if info is None or column not in info["columns"]:
            raise SchemaApplyError(table, f"alter table {table} alter column {column}", KeyError("column not found"))
        before = info["columns"][column]
        info["columns"][column] = copy.deepcopy(storage)
        self.statements.append(f"alter table {table} alter column {column}")
        _undo(tx, lambda: info["columns"].__setitem__(column, before))

    def drop_column(self, tx, table: str, column: str) -> None:
        info = self.tables.get(table)
        if info is None:
            raise SchemaApplyError(table, f"alter table {table} drop column {column}", KeyError("table not found"))
        before = info["columns"].pop(column, None)
        values = {rid: row.pop(column) for rid, row in info["rows"].items() if column in row}
        self.statements.append(f"alter table {table} drop column {column}")

        def restore() -> None:
            if before is not None:
                info["columns"][column] = before
            for rid, value in values.items():
                if rid in info["rows"]:
                    info["rows"][rid][column] = value

        _undo(tx, restore)


class MemoryEntityStorage:
    def __init__(self, schema: MemorySchema) -> None:
        self._schema = schema

    def _table(self, table: str) -> dict:
        info = self._schema.tables.get(table)
        if info is None:
            raise KeyError(f"table not found: {table}")
        return info

    def _scoped(self, info: dict, tenant_id: str, project_id: str | None) -> List[dict]:
        return [
            row
            for row in info["rows"].values()
            if row.get("tenant_id") == tenant_id and (row.get("project_id") or None) == (project_id or None)
        ]

    def insert(self, table: str, tenant_id: str, project_id: str | None, values: dict) -> dict:
        info = self._table(table)
        unknown = [k for k in values if k not in info["columns"]]
        if unknown:
            raise KeyError(f"unknown columns: {', '.join(sorted(unknown))}")
        row_id = next(info["seq"])
        now = _now()
        row = {column: None for column in info["columns"]}
        row.update(copy.deepcopy(values))
        row.update({"id": row_id, "uuid": str(uuid.uuid4()), "tenant_id": tenant_id, "project_id": project_id, "created_at": now, "updated_at": now})
        info["rows"][row_id] = row
        return copy.deepcopy(row)

    def get(self, table: str, tenant_id: str, project_id: str | None, row_id: Any) -> dict | None:
        info = self._schema.tables.get(table)
        if info is None:
            return None
        try:
            row = info["rows"].get(int(row_id))
        except (TypeError, ValueError):
            return None
        if row is None or row.get("tenant_id") != tenant_id or (row.get("project_id") or None) != (project_id or None):
            return None
        return copy.deepcopy(row)

    def list(self, table: str, tenant_id: str, project_id: str | None, limit: int = 50, offset: int = 0) -> list[dict]:
        info = self._schema.tables.get(table)
        if info is None:
            return []
        rows = sorted(self._scoped(info, tenant_id, project_id), key=lambda r: r["id"])
        return [copy.deepcopy(r) for r in rows[offset : offset + limit]]

    def search(self, table: str, tenant_id: str, project_id: str | None, column: str, text: str, limit: int = 10) -> list[dict]:
        info = self._schema.tables.get(table)
        if info is None or column not in info["columns"]:
            return []
        needle = (text or "").lower()
        rows = [
            r
            for r in self._scoped(info, tenant_id, project_id)
            if needle in str(r.get(column) if r.get(column) is not None else "").lower()
        ]
        rows.sort(key=lambda r: (str(r.get(column) or "").lower(), r["id"]))
        return [copy.deepcopy(r) for r in rows[:limit]]

    def update(self, table: str, tenant_id: str, project_id: str | None, row_id: Any, values: dict) -> dict | None:
        info = self._table(table)
        current = self.get(table, tenant_id, project_id, row_id)
        if current is None:
            return None
        unknown = [k for k in values if k not in info["columns"]]
        if unknown:
            raise KeyError(f"unknown columns: {', '.join(sorted(unknown))}")
        row = info["rows"][current["id"]]
        row.update(copy.deepcopy(values))
        row["updated_at"] = _now()
        return copy.deepcopy(row)

    def delete(self, table: str, tenant_id: str, project_id: str | None, row_id: Any) -> bool:
        current = self.get(table, tenant_id, project_id, row_id)
        if current is None:
            return False
        del self._table(table)["rows"][current["id"]]
        return True
