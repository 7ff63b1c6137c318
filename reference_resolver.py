"""Reference field introspection, lazy resolution and target search."""

from __future__ import annotations

import copy
import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, Iterable, List

from field_types import FieldTypeRegistry, ReferenceFieldType
from type_registrar import resolve_label_field

logger = logging.getLogger("stratum.references")


class BuiltinTypeLoader(ABC):
    """Host-supplied target type that does not live in a dynamic table (users, files, ...)."""

    @abstractmethod
    def load(self, entity_id: Any, tenant_id: str | None = None) -> dict | None:
        ...

    @abstractmethod
    def search(self, text: str, limit: int, tenant_id: str | None = None) -> list[dict]:
        ...


class StaticDirectoryLoader(BuiltinTypeLoader):
    """Loader over a fixed list of ``{id, label, tenant_id?, bundle?}`` entries."""

    def __init__(self, entries: Iterable[dict]) -> None:
        self._entries = {int(e["id"]): copy.deepcopy(e) for e in entries}

    def _visible(self, entry: dict, tenant_id: str | None) -> bool:
        owner = entry.get("tenant_id")
        return owner is None or tenant_id is None or owner == tenant_id

    def load(self, entity_id: Any, tenant_id: str | None = None) -> dict | None:
        entity_id = ReferenceFieldType.coerce_id(entity_id)
        entry = self._entries.get(entity_id) if entity_id is not None else None
        if entry is None or not self._visible(entry, tenant_id):
            return None
        return copy.deepcopy(entry)

    def search(self, text: str, limit: int, tenant_id: str | None = None) -> list[dict]:
        needle = (text or "").lower()
        hits = [
            {"id": e["id"], "label": e.get("label")}
            for e in self._entries.values()
            if self._visible(e, tenant_id) and needle in str(e.get("label") or "").lower()
        ]
        hits.sort(key=lambda h: (str(h["label"] or "").lower(), h["id"]))
        return hits[:limit]


class ReferenceResolver:
    def __init__(self, template_store, storage, registry: FieldTypeRegistry | None = None) -> None:
        self._store = template_store
        self._storage = storage
        self._registry = registry or template_store.registry
        self._builtins: Dict[str, BuiltinTypeLoader] = {}

    def register_builtin(self, key: str, loader: BuiltinTypeLoader) -> None:
        self._builtins[key] = loader

    def builtin_types(self) -> List[str]:
        return sorted(self._builtins)

    def _find_template(self, tenant_id: str, entity_name: str, project_id: str | None) -> dict | None:
        template = self._store.get_template_by_name(tenant_id, entity_name, project_id)
        if template is None and project_id:
            template = self._store.get_template_by_name(tenant_id, entity_name, None)
        return template

    def _target(self, target_type: Any, tenant_id: str, project_id: str | None = None):
        """Resolve a target type to ('builtin', loader) or ('template', template)."""
        key = str(target_type or "")
        if not key:
            return None
        if key in self._builtins:
            return "builtin", self._builtins[key]
        if key.isdigit():
            template = self._store.get_template(key)
            if template is not None and template.get("tenant_id") == tenant_id:
                return "template", template
            return None
        template = self._find_template(tenant_id, key, project_id)
        if template is not None:
            return "template", template
        return None

    def get_entity_reference_fields(self, tenant_id: str, entity_name: str, project_id: str | None = None) -> Dict[str, dict]:
        template = self._find_template(tenant_id, entity_name, project_id)
        if template is None:
            return {}
        result: Dict[str, dict] = {}
        for f in self._store.get_template_fields(template["id"]):
            if f.get("field_type") != "reference":
                continue
            settings = f.get("settings") or {}
            result[f["name"]] = {
                "target_type": settings.get("target_type"),
                "target_bundles": list(settings.get("target_bundles") or []),
                "multiple": bool(settings.get("multiple")),
                "required": bool(f.get("required")),
                "label": f.get("label"),
            }
        return result

    def _public_row(self, template: dict, row: dict) -> dict:
        hidden = {
            f["name"]
            for f in self._store.get_template_fields(template["id"])
            if self._registry.hidden_in_api(f.get("field_type"), f.get("settings"))
        }
        return {k: v for k, v in row.items() if k not in hidden}

    def _load_one(self, target, entity_id: Any, tenant_id: str, bundles: List[str]) -> dict | None:
        kind, source = target
        entity_id = ReferenceFieldType.coerce_id(entity_id)
        if entity_id is None:
            return None
        if kind == "builtin":
            row = source.load(entity_id, tenant_id)
            if row is None:
                return None
            if bundles and row.get("bundle") not in bundles:
                return None
            item = dict(row)
            item.update({"id": row.get("id", entity_id), "label": row.get("label")})
            return item
        template = source
        if bundles and template["name"] not in bundles:
            return None
        row = self._storage.get(self._store.table_name(template), template["tenant_id"], template.get("project_id"), entity_id)
        if row is None:
            return None
        fields = self._store.get_template_fields(template["id"])
        label_field = resolve_label_field(template, fields)
        item = self._public_row(template, row)
        label = row.get(label_field) if label_field else None
        item.update({"id": row["id"], "type": template["name"], "label": label if label not in (None, "") else str(row["id"])})
        return item

    def resolve_entity_references(
        self,
        tenant_id: str,
        entity_name: str,
        entity_data: dict,
        reference_fields: Dict[str, dict] | None = None,
        project_id: str | None = None,
    ) -> dict:
        """Return a copy of ``entity_data`` with reference ids replaced by the loaded targets."""
        if reference_fields is None:
            reference_fields = self.get_entity_reference_fields(tenant_id, entity_name, project_id)
        resolved = copy.deepcopy(entity_data)
        for name, settings in reference_fields.items():
            if name not in resolved:
                continue
            raw = resolved[name]
            multiple = bool(settings.get("multiple")) or isinstance(raw, (list, tuple))
            ids = list(raw) if isinstance(raw, (list, tuple)) else ([] if raw is None else [raw])
            target = self._target(settings.get("target_type"), tenant_id, project_id)
            items: List[dict] = []
            if target is not None:
                bundles = list(settings.get("target_bundles") or [])
                for entity_id in ids:
                    item = self._load_one(target, entity_id, tenant_id, bundles)
                    if item is None:
                        logger.debug("reference_unresolved field=%s target=%s id=%s", name, settings.get("target_type"), entity_id)
                        continue
                    if target[0] == "builtin":
                        item.setdefault("type", str(settings.get("target_type")))
                    items.append(item)
            else:
                logger.warning("reference_target_unknown field=%s target=%s tenant_id=%s", name, settings.get("target_type"), tenant_id)
            resolved[name] = items if multiple else (items[0] if items else None)
        return resolved

    def search_referencable_entities(
        self,
        target_type: str,
        search_string: str,
        field_settings: dict | None,
        tenant_id: str,
        limit: int = 10,
        project_id: str | None = None,
    ) -> list[dict]:
        if limit is None or limit <= 0:
            return []
        target = self._target(target_type, tenant_id, project_id)
        if target is None:
            return []
        bundles = list((field_settings or {}).get("target_bundles") or [])
        kind, source = target
        if kind == "builtin":
            hits = [h for h in source.search(search_string or "", limit, tenant_id) if not bundles or h.get("bundle") in bundles]
            results = [{"id": h["id"], "label": h.get("label")} for h in hits]
            results.sort(key=lambda r: (str(r["label"] or "").lower(), r["id"]))
            return results[:limit]
        template = source
        if bundles and template["name"] not in bundles:
            return []
        table = self._store.table_name(template)
        label_field = resolve_label_field(template, self._store.get_template_fields(template["id"]))
        scope = (template["tenant_id"], template.get("project_id"))
        if label_field is None:
            rows = [r for r in self._storage.list(table, *scope, limit=1000) if (search_string or "") in str(r["id"])]
            return [{"id": r["id"], "label": str(r["id"])} for r in rows[:limit]]
        rows = self._storage.search(table, *scope, label_field, search_string or "", limit)
        return [{"id": r["id"], "label": r.get(label_field)} for r in rows]

    def validate_entity_reference(
        self,
        target_type: str,
        entity_id: Any,
        field_settings: dict | None,
        tenant_id: str,
        project_id: str | None = None,
    ) -> bool:
        target = self._target(target_type, tenant_id, project_id)
        if target is None:
            return False
        bundles = list((field_settings or {}).get("target_bundles") or [])
        return self._load_one(target, entity_id, tenant_id, bundles) is not None
