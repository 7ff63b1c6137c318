"""Template and field definitions with the DDL that keeps dynamic tables in step."""

from __future__ import annotations

import copy
import logging
import re
from datetime import datetime, timezone
from typing import Any, Dict, List

from field_types import FieldTypeRegistry
from stratum.ddl import ENGINE_COLUMNS
from stratum.errors import DuplicateTemplateError, Issue, SchemaApplyError, failed, issue
from stratum.table_names import DEFAULT_PREFIX, is_machine_name, table_name

logger = logging.getLogger("stratum.templates")

DEFAULT_TEMPLATE_SETTINGS = {"translatable": False, "revisionable": False, "publishable": False}
RESERVED_FIELD_NAMES = set(ENGINE_COLUMNS) | {"bundle", "type"}
_TEMPLATE_MUTABLE = ("label", "description", "status", "settings")
_FIELD_MUTABLE = ("label", "description", "weight", "required", "settings")


def _now() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def _status(value: Any) -> int | None:
    if isinstance(value, bool):
        return 1 if value else 0
    if isinstance(value, int):
        return 1 if value else 0
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in {"1", "enabled", "active", "true"}:
            return 1
        if lowered in {"0", "disabled", "inactive", "false"}:
            return 0
    return None


def _weight(value: Any) -> int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, str) and re.fullmatch(r"\s*-?\d+\s*", value):
        return int(value)
    return None


class TemplateStore:
    def __init__(self, repo, schema, tx_manager, registry: FieldTypeRegistry, table_prefix: str = DEFAULT_PREFIX) -> None:
        self._repo = repo
        self._schema = schema
        self._tx = tx_manager
        self._registry = registry
        self._prefix = table_prefix or DEFAULT_PREFIX

    @property
    def registry(self) -> FieldTypeRegistry:
        return self._registry

    def table_name(self, template: dict) -> str:
        return template.get("table_name") or table_name(
            template["tenant_id"], template.get("project_id"), template["name"], prefix=self._prefix
        )

    def _run(self, work, table: str, action: str, identifier: Any) -> Issue | None:
        """Run metadata writes and DDL in one transaction; return an issue on failure."""
        tx = self._tx.begin()
        try:
            work(tx)
        except SchemaApplyError as exc:
            tx.rollback()
            logger.error("schema_apply_failed action=%s id=%s table=%s error=%s", action, identifier, table, exc)
            return issue("SCHEMA_APPLY_FAILED", "Schema change could not be applied", None, {"table": table, "action": action})
        except Exception:
            tx.rollback()
            raise
        tx.commit()
        return None

    def _touch(self, tx, template_id: int) -> None:
        self._repo.update_template(tx, template_id, {"updated_at": _now()})

    # templates

    def create_template(
        self,
        tenant_id: str,
        name: str,
        label: str,
        description: str = "",
        settings: dict | None = None,
        project_id: str | None = None,
    ) -> dict:
        payload = {"template_id": None, "template": None}
        if not tenant_id:
            return failed(issue("TENANT_REQUIRED", "tenant_id is required", "tenant_id"), **payload)
        if not is_machine_name(name):
            return failed(
                issue("TEMPLATE_NAME_INVALID", "name must start with a letter and contain only lowercase letters, digits and underscores", "name"),
                **payload,
            )
        if settings is not None and not isinstance(settings, dict):
            return failed(issue("TEMPLATE_SETTINGS_INVALID", "settings must be an object", "settings"), **payload)
        project_id = project_id or None
        if self._repo.find_template(tenant_id, project_id, name) is not None:
            return failed(issue("TEMPLATE_EXISTS", f"A template named {name} already exists", "name"), **payload)
        table = table_name(tenant_id, project_id, name, prefix=self._prefix)
        now = _now()
        record = {
            "tenant_id": tenant_id,
            "project_id": project_id,
            "name": name,
            "label": label or name,
            "description": description or "",
            "status": 1,
            "settings": {**DEFAULT_TEMPLATE_SETTINGS, **(settings or {})},
            "table_name": table,
            "created_at": now,
            "updated_at": now,
        }
        created: Dict[str, dict] = {}

        def work(tx) -> None:
            created["template"] = self._repo.insert_template(tx, record)
            self._schema.create_table(tx, table)

        try:
            problem = self._run(work, table, "create_template", name)
        except DuplicateTemplateError:
            return failed(issue("TEMPLATE_EXISTS", f"A template named {name} already exists", "name"), **payload)
        if problem:
            return failed(problem, **payload)
        template = created["template"]
        logger.info("template_created template_id=%s tenant_id=%s table=%s", template["id"], tenant_id, table)
        return {"ok": True, "errors": [], "warnings": [], "template_id": template["id"], "template": template}

    def get_template(self, template_id: Any) -> dict | None:
        return self._repo.get_template(template_id)

    def get_template_by_name(self, tenant_id: str, name: str, project_id: str | None = None) -> dict | None:
        return self._repo.find_template(tenant_id, project_id or None, name)

    def list_templates(self, tenant_id: str, project_id: str | None = None, active_only: bool = False) -> list[dict]:
        tenant = None if tenant_id == "all" else tenant_id
        templates = self._repo.list_templates(tenant, project_id or None, active_only)
        return sorted(templates, key=lambda t: (t.get("name") or "", t.get("id")))

    def get_templates(self, tenant_id: str, project_id: str | None = None) -> Dict[Any, dict]:
        result: Dict[Any, dict] = {}
        for template in self.list_templates(tenant_id, project_id):
            template["fields"] = {f["name"]: f for f in self.get_template_fields(template["id"])}
            result[template["id"]] = template
        return result

    def update_template(self, template_id: Any, values: dict) -> dict:
        template = self.get_template(template_id)
        if template is None:
            return failed(issue("TEMPLATE_NOT_FOUND", "Template not found", "template_id"), template=None)
        warnings: List[Issue] = []
        if "name" in values and values["name"] != template["name"]:
            warnings.append(issue("TEMPLATE_NAME_IMMUTABLE", "Template name cannot be changed", "name"))
        changes: Dict[str, Any] = {}
        for key in _TEMPLATE_MUTABLE:
            if key not in values:
                continue
            value = values[key]
            if key == "status":
                value = _status(value)
                if value is None:
                    return failed(issue("TEMPLATE_STATUS_INVALID", "status must be enabled or disabled", "status"), template=None)
            if key == "settings":
                if not isinstance(value, dict):
                    return failed(issue("TEMPLATE_SETTINGS_INVALID", "settings must be an object", "settings"), template=None)
                value = {**DEFAULT_TEMPLATE_SETTINGS, **value}
            changes[key] = value
        if not changes:
            return {"ok": True, "errors": [], "warnings": warnings, "template": template}
        changes["updated_at"] = _now()
        tx = self._tx.begin()
        try:
            updated = self._repo.update_template(tx, template["id"], changes)
        except Exception:
            tx.rollback()
            raise
        tx.commit()
        logger.info("template_updated template_id=%s keys=%s", template["id"], ",".join(sorted(changes)))
        return {"ok": True, "errors": [], "warnings": warnings, "template": updated}

    def delete_template(self, template_id: Any) -> dict:
        template = self.get_template(template_id)
        if template is None:
            return failed(issue("TEMPLATE_NOT_FOUND", "Template not found", "template_id"))
        table = self.table_name(template)

        def work(tx) -> None:
            self._repo.delete_template(tx, template["id"])
            self._schema.drop_table(tx, table)

        problem = self._run(work, table, "delete_template", template["id"])
        if problem:
            return failed(problem)
        logger.info("template_deleted template_id=%s table=%s", template["id"], table)
        return {"ok": True, "errors": [], "warnings": []}

    # fields

    def get_template_fields(self, template_id: Any) -> list[dict]:
        template = self.get_template(template_id)
        if template is None:
            return []
        fields = self._repo.list_fields(template["id"])
        return sorted(fields, key=lambda f: (f.get("weight") or 0, f.get("name") or ""))

    def get_field(self, field_id: Any) -> dict | None:
        return self._repo.get_field(field_id)

    def get_field_by_name(self, template_id: Any, name: str) -> dict | None:
        template = self.get_template(template_id)
        if template is None:
            return None
        return self._repo.find_field(template["id"], name)

    def _field_settings(self, field_type: str, settings: Any) -> tuple[dict | None, Issue | None]:
        if settings is None:
            settings = {}
        if not isinstance(settings, dict):
            return None, issue("FIELD_SETTINGS_INVALID", "settings must be an object", "settings")
        plugin = self._registry.get_plugin(field_type)
        merged = {**plugin.get_default_settings(), **settings}
        problems = plugin.validate_settings(merged)
        if problems:
            key, message = next(iter(problems.items()))
            return None, issue("FIELD_SETTINGS_INVALID", message, f"settings.{key}", {"settings": problems})
        return merged, None

    def add_field(self, template_id: Any, field_spec: dict) -> dict:
        payload = {"field_id": None, "field": None}
        template = self.get_template(template_id)
        if template is None:
            return failed(issue("TEMPLATE_NOT_FOUND", "Template not found", "template_id"), **payload)
        spec = field_spec or {}
        name = spec.get("name")
        field_type = spec.get("field_type") or spec.get("type")
        if not is_machine_name(name):
            return failed(
                issue("FIELD_NAME_INVALID", "name must start with a letter and contain only lowercase letters, digits and underscores", "name"),
                **payload,
            )
        if name in RESERVED_FIELD_NAMES:
            return failed(issue("FIELD_NAME_RESERVED", f"{name} is reserved by the engine", "name"), **payload)
        if self._repo.find_field(template["id"], name) is not None:
            return failed(issue("FIELD_EXISTS", f"A field named {name} already exists", "name"), **payload)
        if not field_type or not self._registry.has_type(field_type):
            return failed(issue("FIELD_TYPE_UNKNOWN", f"Unknown field type: {field_type}", "field_type"), **payload)
        settings, problem = self._field_settings(field_type, spec.get("settings"))
        if problem:
            return failed(problem, **payload)
        if spec.get("weight") is None:
            current = self._repo.max_weight(template["id"])
            weight = 0 if current is None else current + 1
        else:
            weight = _weight(spec["weight"])
            if weight is None:
                return failed(issue("FIELD_WEIGHT_INVALID", "weight must be an integer", "weight"), **payload)
        required = bool(spec.get("required", settings.get("required", False)))
        settings["required"] = required
        now = _now()
        record = {
            "template_id": template["id"],
            "name": name,
            "field_type": field_type,
            "label": spec.get("label") or name,
            "description": spec.get("description") or "",
            "weight": weight,
            "required": required,
            "settings": settings,
            "created_at": now,
            "updated_at": now,
        }
        column = self._registry.get_column_schema(field_type, settings)
        table = self.table_name(template)
        created: Dict[str, dict] = {}

        def work(tx) -> None:
            created["field"] = self._repo.insert_field(tx, record)
            self._schema.add_column(tx, table, name, column)
            self._touch(tx, template["id"])

        problem = self._run(work, table, "add_field", f"{template['id']}.{name}")
        if problem:
            return failed(problem, **payload)
        field = created["field"]
        logger.info("field_added template_id=%s field=%s type=%s", template["id"], name, field_type)
        return {"ok": True, "errors": [], "warnings": [], "field_id": field["id"], "field": field}

    def update_field(self, field_id: Any, values: dict) -> dict:
        field = self.get_field(field_id)
        if field is None:
            return failed(issue("FIELD_NOT_FOUND", "Field not found", "field_id"), field=None)
        template = self.get_template(field["template_id"])
        if template is None:
            return failed(issue("TEMPLATE_NOT_FOUND", "Template not found", "template_id"), field=None)
        warnings: List[Issue] = []
        for key in ("name", "template_id", "field_type"):
            if key in values and values[key] != field.get(key):
                warnings.append(issue("FIELD_IMMUTABLE", f"{key} cannot be changed", key))
        changes: Dict[str, Any] = {}
        for key in _FIELD_MUTABLE:
            if key in values:
                changes[key] = values[key]
        if "settings" in changes:
            settings, problem = self._field_settings(field["field_type"], changes["settings"])
            if problem:
                return failed(problem, field=None)
            changes["settings"] = settings
        if "required" in changes:
            changes["required"] = bool(changes["required"])
            settings = changes.get("settings") or copy.deepcopy(field.get("settings") or {})
            settings["required"] = changes["required"]
            changes["settings"] = settings
        elif "settings" in changes:
            changes["required"] = bool(changes["settings"].get("required", field.get("required")))
        if "weight" in changes:
            changes["weight"] = _weight(changes["weight"])
            if changes["weight"] is None:
                return failed(issue("FIELD_WEIGHT_INVALID", "weight must be an integer", "weight"), field=None)
        if not changes:
            return {"ok": True, "errors": [], "warnings": warnings, "field": field}
        changes["updated_at"] = _now()
        table = self.table_name(template)
        old_column = self._registry.get_column_schema(field["field_type"], field.get("settings"))
        new_column = self._registry.get_column_schema(field["field_type"], changes.get("settings", field.get("settings")))
        updated: Dict[str, dict] = {}

        def work(tx) -> None:
            updated["field"] = self._repo.update_field(tx, field["id"], changes)
            if new_column != old_column:
                self._schema.alter_column(tx, table, field["name"], new_column)
            self._touch(tx, template["id"])

        problem = self._run(work, table, "update_field", field["id"])
        if problem:
            return failed(problem, field=None)
        logger.info("field_updated field_id=%s keys=%s", field["id"], ",".join(sorted(changes)))
        return {"ok": True, "errors": [], "warnings": warnings, "field": updated["field"]}

    def delete_field(self, field_id: Any) -> dict:
        field = self.get_field(field_id)
        if field is None:
            return failed(issue("FIELD_NOT_FOUND", "Field not found", "field_id"))
        template = self.get_template(field["template_id"])
        table = self.table_name(template) if template else ""

        def work(tx) -> None:
            self._repo.delete_field(tx, field["id"])
            if template is not None:
                self._schema.drop_column(tx, table, field["name"])
                self._touch(tx, template["id"])

        problem = self._run(work, table, "delete_field", field["id"])
        if problem:
            return failed(problem)
        logger.info("field_deleted field_id=%s template_id=%s", field["id"], field["template_id"])
        return {"ok": True, "errors": [], "warnings": []}
