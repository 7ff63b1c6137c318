"""FastAPI host for the dynamic entity engine.

The principal is read from the ``X-Principal-Id``, ``X-Principal-Roles``,
``X-Principal-Tenants`` and ``X-Principal-Platform-Role`` request headers.
These headers are trusted as set by the upstream auth gateway, which must
authenticate the caller and strip any client-supplied copies.
``X-Principal-Platform-Role: superadmin`` grants every operation in every
tenant. Never expose this host directly to clients; bind it to a private
interface reachable only from the gateway.
"""

from __future__ import annotations

import os
import sys
from pathlib import Path
from typing import Any

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


def _load_env_file(path: Path) -> None:
    if not path.exists():
        return
    for line in path.read_text(encoding="utf-8").splitlines():
        line = line.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, value = line.split("=", 1)
        key = key.strip()
        value = value.strip().strip('"').strip("'")
        if key and key not in os.environ:
            os.environ[key] = value


_load_env_file(ROOT / "app" / ".env")

import logging
import time

from entity_data import EntityDataService
from field_types import FieldTypeRegistry
from reference_resolver import ReferenceResolver
from template_store import TemplateStore
from type_registrar import DynamicTypeRegistrar
from stratum.errors import AccessCheckerMissing
from stratum.table_names import DEFAULT_PREFIX

from app.access import AllowAllAccessChecker, RoleAccessChecker
from app.stores import InMemoryTxManager, MemoryEntityStorage, MemorySchema, MemoryTemplateRepo

app = FastAPI(title="stratum")
logger = logging.getLogger("stratum")
logging.basicConfig(level=logging.INFO)

USE_DB = os.getenv("USE_DB", "").strip() == "1"
DISABLE_AUTH = os.getenv("STRATUM_DISABLE_AUTH", "").strip().lower() in ("1", "true", "yes")
TABLE_PREFIX = os.getenv("STRATUM_TABLE_PREFIX", "").strip() or DEFAULT_PREFIX
FIELD_TYPE_PLUGINS = [s for s in os.getenv("STRATUM_FIELD_TYPE_PLUGINS", "").split(",") if s.strip()]
REQ_SLOW_MS = float(os.getenv("STRATUM_REQ_SLOW_MS", "250"))

field_registry = FieldTypeRegistry.with_defaults()
if FIELD_TYPE_PLUGINS:
    field_registry.load_plugins(FIELD_TYPE_PLUGINS)

if USE_DB:
    from app.db import get_db_stats, reset_db_stats
    from app.stores_db import DbEntityStorage, DbSchema, DbTemplateRepo, DbTxManager

    template_repo = DbTemplateRepo()
    template_repo.ensure_tables()
    schema = DbSchema()
    entity_storage = DbEntityStorage()
    tx_mgr = DbTxManager()
else:
    template_repo = MemoryTemplateRepo()
    schema = MemorySchema()
    entity_storage = MemoryEntityStorage(schema)
    tx_mgr = InMemoryTxManager()

if DISABLE_AUTH:
    logger.warning("auth_disabled access_checker=allow_all")
    access_checker = AllowAllAccessChecker()
else:
    access_checker = RoleAccessChecker()

templates = TemplateStore(template_repo, schema, tx_mgr, field_registry, table_prefix=TABLE_PREFIX)
registrar = DynamicTypeRegistrar(templates, table_prefix=TABLE_PREFIX)
resolver = ReferenceResolver(templates, entity_storage, field_registry)
entity_service = EntityDataService(templates, entity_storage, access_checker, resolver)
entity_types: dict[str, Any] = {}

_NOT_FOUND = {"TEMPLATE_NOT_FOUND", "FIELD_NOT_FOUND", "RECORD_NOT_FOUND", "ENTITY_TYPE_NOT_FOUND", "FIELD_TYPE_NOT_FOUND"}
_CONFLICT = {"TEMPLATE_EXISTS", "FIELD_EXISTS"}


@app.middleware("http")
async def timing_middleware(request: Request, call_next):
    if USE_DB:
        reset_db_stats()
    start = time.perf_counter()
    response = await call_next(request)
    total_ms = (time.perf_counter() - start) * 1000
    db_q = get_db_stats().get("queries", 0) if USE_DB else 0
    logger.info("%s %s %s total_ms=%.1f db_q=%s", request.method, request.url.path, response.status_code, total_ms, db_q)
    if total_ms >= REQ_SLOW_MS:
        logger.warning("slow_request method=%s path=%s total_ms=%.1f status=%s", request.method, request.url.path, total_ms, response.status_code)
    return response


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    logger.exception("unhandled_error path=%s", request.url.path)
    return _error_response("INTERNAL_ERROR", "Unexpected server error", status=500)


def _error_response(code: str, message: str, path: str | None = None, detail: dict | None = None, status: int = 400) -> JSONResponse:
    body = {
        "ok": False,
        "errors": [{"code": code, "message": message, "path": path, "detail": detail}],
        "warnings": [],
    }
    return JSONResponse(jsonable_encoder(body), status_code=status)


def _ok_response(payload: dict, warnings: list | None = None, status: int = 200) -> JSONResponse:
    body = {"ok": True, **payload, "errors": [], "warnings": warnings or []}
    return JSONResponse(jsonable_encoder(body), status_code=status)


def _result_response(result: dict, keys: tuple = (), status: int = 200) -> JSONResponse:
    if result.get("ok"):
        return _ok_response({k: result.get(k) for k in keys}, result.get("warnings"), status=status)
    codes = {e.get("code") for e in result.get("errors") or []}
    if "ACCESS_DENIED" in codes:
        code = 403
    elif codes & _NOT_FOUND:
        code = 404
    elif codes & _CONFLICT:
        code = 409
    elif "SCHEMA_APPLY_FAILED" in codes:
        code = 500
    else:
        code = 400
    body = {"ok": False, "errors": result.get("errors") or [], "warnings": result.get("warnings") or []}
    return JSONResponse(jsonable_encoder(body), status_code=code)


async def _safe_json(request: Request) -> dict:
    try:
        body = await request.json()
    except Exception:
        return {}
    return body if isinstance(body, dict) else {}


def _csv(value: str | None) -> list[str]:
    return [part.strip() for part in (value or "").split(",") if part.strip()]


def _principal(request: Request) -> dict | None:
    principal_id = (request.headers.get("X-Principal-Id") or "").strip()
    if not principal_id:
        return None
    tenants = request.headers.get("X-Principal-Tenants")
    return {
        "id": principal_id,
        "roles": _csv(request.headers.get("X-Principal-Roles")),
        "tenants": _csv(tenants) if tenants is not None else None,
        "platform_role": (request.headers.get("X-Principal-Platform-Role") or "").strip() or None,
    }


def _require(request: Request, tenant_id: str, project_id: str | None, entity_type: str, operation: str) -> JSONResponse | None:
    checker = entity_service.access_checker
    if checker is None:
        raise AccessCheckerMissing("no access checker configured")
    if not checker.check_access(tenant_id, project_id, entity_type, operation, _principal(request)):
        return _error_response("ACCESS_DENIED", f"Not allowed to {operation} {entity_type}", status=403)
    return None


def _require_manage(request: Request, tenant_id: str, project_id: str | None) -> JSONResponse | None:
    return _require(request, tenant_id, project_id, "template", "manage")


def _tenant_template(tenant_id: str, template_id: str) -> dict | None:
    template = templates.get_template(template_id)
    if template is None or template.get("tenant_id") != tenant_id:
        return None
    return template


def _flag(value: str | None) -> bool:
    return (value or "").strip().lower() in ("1", "true", "yes")


@app.get("/health")
async def health() -> dict:
    return {"ok": True}


@app.get("/field-types")
async def list_field_types() -> JSONResponse:
    types = [field_registry.get_type_info(key) for key in sorted(field_registry.get_available_types())]
    return _ok_response({"field_types": types})


@app.get("/field-types/{key}")
async def get_field_type(key: str) -> JSONResponse:
    info = field_registry.get_type_info(key)
    if info is None:
        return _error_response("FIELD_TYPE_NOT_FOUND", f"Unknown field type: {key}", "key", status=404)
    form = field_registry.get_settings_form(key, info["default_settings"], {"target_types": resolver.builtin_types()})
    return _ok_response({"field_type": info, "settings_form": form})


# templates


@app.get("/tenants/{tenant_id}/templates")
async def list_templates(tenant_id: str, request: Request, project_id: str | None = None, active_only: str | None = None) -> JSONResponse:
    denied = _require_manage(request, tenant_id, project_id)
    if denied:
        return denied
    return _ok_response({"templates": templates.list_templates(tenant_id, project_id, _flag(active_only))})


@app.post("/tenants/{tenant_id}/templates")
async def create_template(tenant_id: str, request: Request) -> JSONResponse:
    body = await _safe_json(request)
    project_id = body.get("project_id") or None
    denied = _require_manage(request, tenant_id, project_id)
    if denied:
        return denied
    result = templates.create_template(
        tenant_id,
        body.get("name"),
        body.get("label") or "",
        body.get("description") or "",
        body.get("settings"),
        project_id,
    )
    return _result_response(result, ("template_id", "template"), status=201)


@app.get("/tenants/{tenant_id}/templates/{template_id}")
async def get_template(tenant_id: str, template_id: str, request: Request) -> JSONResponse:
    template = _tenant_template(tenant_id, template_id)
    if template is None:
        return _error_response("TEMPLATE_NOT_FOUND", "Template not found", "template_id", status=404)
    denied = _require_manage(request, tenant_id, template.get("project_id"))
    if denied:
        return denied
    template["fields"] = templates.get_template_fields(template["id"])
    template["table_name"] = templates.table_name(template)
    return _ok_response({"template": template})


@app.patch("/tenants/{tenant_id}/templates/{template_id}")
async def update_template(tenant_id: str, template_id: str, request: Request) -> JSONResponse:
    template = _tenant_template(tenant_id, template_id)
    if template is None:
        return _error_response("TEMPLATE_NOT_FOUND", "Template not found", "template_id", status=404)
    denied = _require_manage(request, tenant_id, template.get("project_id"))
    if denied:
        return denied
    result = templates.update_template(template["id"], await _safe_json(request))
    if result.get("ok"):
        registrar.unregister(template["id"], entity_types)
    return _result_response(result, ("template",))


@app.delete("/tenants/{tenant_id}/templates/{template_id}")
async def delete_template(tenant_id: str, template_id: str, request: Request) -> JSONResponse:
    template = _tenant_template(tenant_id, template_id)
    if template is None:
        return _error_response("TEMPLATE_NOT_FOUND", "Template not found", "template_id", status=404)
    denied = _require_manage(request, tenant_id, template.get("project_id"))
    if denied:
        return denied
    result = templates.delete_template(template["id"])
    if result.get("ok"):
        registrar.unregister(template["id"], entity_types)
    return _result_response(result)


@app.get("/tenants/{tenant_id}/entity-types")
async def list_entity_types(tenant_id: str, request: Request) -> JSONResponse:
    denied = _require_manage(request, tenant_id, None)
    if denied:
        return denied
    registrar.register_entity_types(entity_types)
    return _ok_response({"entity_types": [d.to_dict() for d in registrar.get_tenant_entity_types(tenant_id)]})


# fields


def _template_for_fields(request: Request, template_id: str) -> tuple[dict | None, JSONResponse | None]:
    template = templates.get_template(template_id)
    if template is None:
        return None, _error_response("TEMPLATE_NOT_FOUND", "Template not found", "template_id", status=404)
    denied = _require_manage(request, template["tenant_id"], template.get("project_id"))
    if denied:
        return None, denied
    return template, None


def _field_for_template(template: dict, field_id: str) -> dict | None:
    field = templates.get_field(field_id)
    if field is None or field.get("template_id") != template["id"]:
        return None
    return field


@app.get("/templates/{template_id}/fields")
async def list_fields(template_id: str, request: Request) -> JSONResponse:
    template, denied = _template_for_fields(request, template_id)
    if denied:
        return denied
    return _ok_response({"fields": templates.get_template_fields(template["id"])})


@app.post("/templates/{template_id}/fields")
async def add_field(template_id: str, request: Request) -> JSONResponse:
    template, denied = _template_for_fields(request, template_id)
    if denied:
        return denied
    result = templates.add_field(template["id"], await _safe_json(request))
    if result.get("ok"):
        registrar.unregister(template["id"], entity_types)
    return _result_response(result, ("field_id", "field"), status=201)


@app.patch("/templates/{template_id}/fields/{field_id}")
async def update_field(template_id: str, field_id: str, request: Request) -> JSONResponse:
    template, denied = _template_for_fields(request, template_id)
    if denied:
        return denied
    field = _field_for_template(template, field_id)
    if field is None:
        return _error_response("FIELD_NOT_FOUND", "Field not found", "field_id", status=404)
    result = templates.update_field(field["id"], await _safe_json(request))
    if result.get("ok"):
        registrar.unregister(template["id"], entity_types)
    return _result_response(result, ("field",))


@app.delete("/templates/{template_id}/fields/{field_id}")
async def delete_field(template_id: str, field_id: str, request: Request) -> JSONResponse:
    template, denied = _template_for_fields(request, template_id)
    if denied:
        return denied
    field = _field_for_template(template, field_id)
    if field is None:
        return _error_response("FIELD_NOT_FOUND", "Field not found", "field_id", status=404)
    result = templates.delete_field(field["id"])
    if result.get("ok"):
        registrar.unregister(template["id"], entity_types)
    return _result_response(result)


# references


@app.get("/tenants/{tenant_id}/entities/{entity_name}/references")
async def reference_fields(tenant_id: str, entity_name: str, request: Request, project_id: str | None = None) -> JSONResponse:
    denied = _require(request, tenant_id, project_id, entity_name, "view")
    if denied:
        return denied
    return _ok_response({"reference_fields": resolver.get_entity_reference_fields(tenant_id, entity_name, project_id)})


@app.get("/tenants/{tenant_id}/references/search")
async def search_references(
    tenant_id: str,
    request: Request,
    target_type: str = "",
    q: str = "",
    limit: int = 10,
    entity: str | None = None,
    field: str | None = None,
    project_id: str | None = None,
) -> JSONResponse:
    settings: dict = {}
    if entity and field:
        settings = resolver.get_entity_reference_fields(tenant_id, entity, project_id).get(field) or {}
        if not settings:
            return _error_response("FIELD_NOT_FOUND", f"{entity}.{field} is not a reference field", "field", status=404)
        target_type = settings.get("target_type") or target_type
    if not target_type:
        return _error_response("TARGET_TYPE_REQUIRED", "target_type is required", "target_type", status=400)
    denied = _require(request, tenant_id, project_id, target_type, "view")
    if denied:
        return denied
    limit = max(1, min(limit, 50))
    matches = resolver.search_referencable_entities(target_type, q, settings, tenant_id, limit, project_id)
    return _ok_response({"results": matches})


# entity data


@app.get("/tenants/{tenant_id}/entities/{entity_name}/records")
async def list_records(
    tenant_id: str,
    entity_name: str,
    request: Request,
    project_id: str | None = None,
    limit: int = 50,
    offset: int = 0,
    resolve: str | None = None,
) -> JSONResponse:
    result = entity_service.list(_principal(request), tenant_id, entity_name, project_id, limit, offset, _flag(resolve))
    return _result_response(result, ("records",))


@app.post("/tenants/{tenant_id}/entities/{entity_name}/records")
async def create_record(tenant_id: str, entity_name: str, request: Request, project_id: str | None = None) -> JSONResponse:
    body = await _safe_json(request)
    values = body.get("values") if isinstance(body.get("values"), dict) else body
    result = entity_service.create(_principal(request), tenant_id, entity_name, values, project_id)
    return _result_response(result, ("record",), status=201)


@app.get("/tenants/{tenant_id}/entities/{entity_name}/records/{record_id}")
async def get_record(tenant_id: str, entity_name: str, record_id: str, request: Request, project_id: str | None = None, resolve: str | None = None) -> JSONResponse:
    result = entity_service.get(_principal(request), tenant_id, entity_name, record_id, project_id, _flag(resolve))
    return _result_response(result, ("record",))


@app.patch("/tenants/{tenant_id}/entities/{entity_name}/records/{record_id}")
async def update_record(tenant_id: str, entity_name: str, record_id: str, request: Request, project_id: str | None = None) -> JSONResponse:
    body = await _safe_json(request)
    values = body.get("values") if isinstance(body.get("values"), dict) else body
    result = entity_service.update(_principal(request), tenant_id, entity_name, record_id, values, project_id)
    return _result_response(result, ("record",))


@app.delete("/tenants/{tenant_id}/entities/{entity_name}/records/{record_id}")
async def delete_record(tenant_id: str, entity_name: str, record_id: str, request: Request, project_id: str | None = None) -> JSONResponse:
    result = entity_service.delete(_principal(request), tenant_id, entity_name, record_id, project_id)
    return _result_response(result)
