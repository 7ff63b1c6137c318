"""Validated CRUD over the dynamic table of a template."""

from __future__ import annotations

import logging
from typing import Any, Dict, List

from field_types import ReferenceFieldType
from stratum.ddl import ENGINE_COLUMNS
from stratum.errors import AccessCheckerMissing, Issue, failed, issue

logger = logging.getLogger("stratum.entities")


class EntityDataService:
    def __init__(self, template_store, storage, access_checker=None, resolver=None) -> None:
        self._store = template_store
        self._storage = storage
        self.access_checker = access_checker
        self._resolver = resolver

    def _check(self, principal: dict | None, tenant_id: str, project_id: str | None, entity_name: str, operation: str) -> Issue | None:
        if self.access_checker is None:
            raise AccessCheckerMissing("no access checker configured for entity data operations")
        if self.access_checker.check_access(tenant_id, project_id, entity_name, operation, principal):
            return None
        return issue("ACCESS_DENIED", f"Not allowed to {operation} {entity_name}", None, {"operation": operation})

    def _template(self, tenant_id: str, entity_name: str, project_id: str | None) -> tuple[dict | None, Issue | None]:
        template = self._store.get_template_by_name(tenant_id, entity_name, project_id)
        if template is None:
            return None, issue("ENTITY_TYPE_NOT_FOUND", f"Unknown entity type: {entity_name}", "entity_name")
        if not template.get("status"):
            return None, issue("ENTITY_TYPE_DISABLED", f"Entity type {entity_name} is disabled", "entity_name")
        return template, None

    def _prepare(self, principal, tenant_id, entity_name, project_id, operation):
        denied = self._check(principal, tenant_id, project_id, entity_name, operation)
        if denied:
            logger.info("entity_access_denied tenant_id=%s entity=%s operation=%s", tenant_id, entity_name, operation)
            return None, None, denied
        template, problem = self._template(tenant_id, entity_name, project_id)
        if problem:
            return None, None, problem
        fields = {f["name"]: f for f in self._store.get_template_fields(template["id"])}
        return template, fields, None

    def _validate(self, tenant_id: str, project_id: str | None, fields: Dict[str, dict], values: Any, creating: bool) -> List[Issue]:
        if not isinstance(values, dict):
            return [issue("VALUES_INVALID", "values must be an object", None)]
        registry = self._store.registry
        errors: List[Issue] = []
        for key in values:
            if key in ENGINE_COLUMNS:
                errors.append(issue("FIELD_READ_ONLY", f"{key} is managed by the engine", key))
            elif key not in fields:
                errors.append(issue("FIELD_UNKNOWN", f"Unknown field: {key}", key))
        for name, f in fields.items():
            if not creating and name not in values:
                continue
            value = values.get(name)
            settings = f.get("settings") or {}
            for message in registry.validate_value(f["field_type"], value, settings, {"required": bool(f.get("required"))}):
                errors.append(issue("FIELD_INVALID", message, name))
            if f["field_type"] == "reference" and self._resolver is not None and value not in (None, "", []):
                ids = value if isinstance(value, (list, tuple)) else [value]
                for entity_id in ids:
                    if ReferenceFieldType.coerce_id(entity_id) is None:
                        continue
                    if not self._resolver.validate_entity_reference(settings.get("target_type"), entity_id, settings, tenant_id, project_id):
                        errors.append(issue("REFERENCE_INVALID", f'The referenced entity "{entity_id}" does not exist.', name))
        return errors

    def _process(self, fields: Dict[str, dict], values: dict, creating: bool) -> dict:
        registry = self._store.registry
        row: Dict[str, Any] = {}
        for name, f in fields.items():
            if not creating and name not in values:
                continue
            row[name] = registry.process_value(f["field_type"], values.get(name), f.get("settings") or {})
        return row

    def _public(self, tenant_id: str, project_id: str | None, template: dict, fields: Dict[str, dict], row: dict, resolve: bool) -> dict:
        registry = self._store.registry
        record = {k: v for k, v in row.items() if not (k in fields and registry.hidden_in_api(fields[k]["field_type"], fields[k].get("settings")))}
        if resolve and self._resolver is not None:
            record = self._resolver.resolve_entity_references(tenant_id, template["name"], record, project_id=project_id)
        return record

    def create(self, principal: dict | None, tenant_id: str, entity_name: str, values: dict, project_id: str | None = None) -> dict:
        template, fields, problem = self._prepare(principal, tenant_id, entity_name, project_id, "create")
        if problem:
            return failed(problem, record=None)
        errors = self._validate(tenant_id, project_id, fields, values, creating=True)
        if errors:
            return failed(*errors, record=None)
        row = self._storage.insert(self._store.table_name(template), tenant_id, project_id, self._process(fields, values, creating=True))
        logger.info("entity_created tenant_id=%s entity=%s id=%s", tenant_id, entity_name, row["id"])
        return {"ok": True, "errors": [], "warnings": [], "record": self._public(tenant_id, project_id, template, fields, row, False)}

    def get(self, principal: dict | None, tenant_id: str, entity_name: str, record_id: Any, project_id: str | None = None, resolve: bool = False) -> dict:
        template, fields, problem = self._prepare(principal, tenant_id, entity_name, project_id, "view")
        if problem:
            return failed(problem, record=None)
        row = self._storage.get(self._store.table_name(template), tenant_id, project_id, record_id)
        if row is None:
            return failed(issue("RECORD_NOT_FOUND", "Record not found", "id"), record=None)
        return {"ok": True, "errors": [], "warnings": [], "record": self._public(tenant_id, project_id, template, fields, row, resolve)}

    def list(
        self,
        principal: dict | None,
        tenant_id: str,
        entity_name: str,
        project_id: str | None = None,
        limit: int = 50,
        offset: int = 0,
        resolve: bool = False,
    ) -> dict:
        template, fields, problem = self._prepare(principal, tenant_id, entity_name, project_id, "view")
        if problem:
            return failed(problem, records=[])
        limit = max(1, min(int(limit), 500))
        offset = max(0, int(offset))
        rows = self._storage.list(self._store.table_name(template), tenant_id, project_id, limit=limit, offset=offset)
        records = [self._public(tenant_id, project_id, template, fields, r, resolve) for r in rows]
        return {"ok": True, "errors": [], "warnings": [], "records": records}

    def update(self, principal: dict | None, tenant_id: str, entity_name: str, record_id: Any, values: dict, project_id: str | None = None) -> dict:
        template, fields, problem = self._prepare(principal, tenant_id, entity_name, project_id, "update")
        if problem:
            return failed(problem, record=None)
        errors = self._validate(tenant_id, project_id, fields, values, creating=False)
        if errors:
            return failed(*errors, record=None)
        row = self._storage.update(self._store.table_name(template), tenant_id, project_id, record_id, self._process(fields, values, creating=False))
        if row is None:
            return failed(issue("RECORD_NOT_FOUND", "Record not found", "id"), record=None)
        logger.info("entity_updated tenant_id=%s entity=%s id=%s", tenant_id, entity_name, row["id"])
        return {"ok": True, "errors": [], "warnings": [], "record": self._public(tenant_id, project_id, template, fields, row, False)}

    def delete(self, principal: dict | None, tenant_id: str, entity_name: str, record_id: Any, project_id: str | None = None) -> dict:
        template, _fields, problem = self._prepare(principal, tenant_id, entity_name, project_id, "delete")
        if problem:
            return failed(problem)
        if not self._storage.delete(self._store.table_name(template), tenant_id, project_id, record_id):
            return failed(issue("RECORD_NOT_FOUND", "Record not found", "id"))
        logger.info("entity_deleted tenant_id=%s entity=%s id=%s", tenant_id, entity_name, record_id)
        return {"ok": True, "errors": [], "warnings": []}
