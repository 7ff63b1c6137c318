"""Projects stored templates into runtime entity type descriptors."""

from __future__ import annotations

import copy
import importlib
import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Dict, List

from stratum.table_names import DEFAULT_PREFIX, class_name, data_table_name, revision_table_name, table_name

logger = logging.getLogger("stratum.registrar")

_LABEL_CANDIDATES = ("title", "name", "label")


def resolve_label_field(template: dict, fields: List[dict]) -> str | None:
    """Pick the column used as an entity's label."""
    names = {f["name"]: f for f in fields}
    configured = (template.get("settings") or {}).get("label_field")
    if configured and configured in names:
        return configured
    for candidate in _LABEL_CANDIDATES:
        if candidate in names:
            return candidate
    for f in fields:
        if f.get("field_type") == "string":
            return f["name"]
    return None


class DynamicEntity:
    """Base class for runtime entity types; subclasses carry the template binding."""

    entity_type_id: str = ""
    entity_name: str = ""
    tenant_id: str = ""
    project_id: str | None = None
    base_table: str = ""
    label_field: str | None = None
    field_names: tuple = ()

    def __init__(self, values: dict | None = None) -> None:
        if values is not None and not isinstance(values, dict):
            raise TypeError("entity values must be a mapping")
        self._values: Dict[str, Any] = copy.deepcopy(values or {})

    def id(self) -> Any:
        return self._values.get("id")

    def uuid(self) -> str | None:
        return self._values.get("uuid")

    def bundle(self) -> str:
        return self.entity_name

    def label(self) -> str | None:
        if self.label_field and self._values.get(self.label_field) not in (None, ""):
            return str(self._values[self.label_field])
        return None

    def get(self, name: str, default: Any = None) -> Any:
        return self._values.get(name, default)

    def set(self, name: str, value: Any) -> None:
        if name not in self.field_names:
            raise KeyError(f"unknown field: {name}")
        self._values[name] = value

    def to_dict(self) -> dict:
        return copy.deepcopy(self._values)

    def __repr__(self) -> str:
        return f"<{type(self).__name__} id={self.id()!r}>"


class EntityClassFactory:
    """Builds one DynamicEntity subclass per template, rebuilt when the template changes."""

    def __init__(self) -> None:
        self._classes: Dict[Any, tuple] = {}
        self._lock = threading.Lock()

    def build(self, template: dict, fields: List[dict], table: str) -> type:
        key = template["id"]
        stamp = (template.get("updated_at"), tuple(f["name"] for f in fields))
        with self._lock:
            cached = self._classes.get(key)
            if cached and cached[0] == stamp:
                return cached[1]
            attrs = {
                "entity_type_id": str(template["id"]),
                "entity_name": template["name"],
                "tenant_id": template["tenant_id"],
                "project_id": template.get("project_id"),
                "base_table": table,
                "label_field": resolve_label_field(template, fields),
                "field_names": tuple(f["name"] for f in fields),
                "__module__": __name__,
            }
            cls = type(class_name(template["tenant_id"], template.get("project_id"), template["name"]), (DynamicEntity,), attrs)
            self._classes[key] = (stamp, cls)
            return cls


@dataclass
class EntityTypeDescriptor:
    id: str
    label: str
    tenant_id: str
    project_id: str | None
    entity_name: str
    class_ref: str
    entity_class: type
    base_table: str
    data_table: str
    revision_table: str
    entity_keys: Dict[str, Any]
    fields: Dict[str, dict] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "label": self.label,
            "tenant_id": self.tenant_id,
            "project_id": self.project_id,
            "entity_name": self.entity_name,
            "class_ref": self.class_ref,
            "base_table": self.base_table,
            "data_table": self.data_table,
            "revision_table": self.revision_table,
            "entity_keys": dict(self.entity_keys),
            "fields": copy.deepcopy(self.fields),
        }


def _import_class(ref: str) -> type:
    module_name, _, attr = ref.partition(":")
    if not module_name or not attr:
        raise ImportError(f"entity class reference must be module:Class, got {ref!r}")
    cls = getattr(importlib.import_module(module_name), attr)
    if not isinstance(cls, type) or not issubclass(cls, DynamicEntity):
        raise TypeError(f"{ref} is not a DynamicEntity subclass")
    return cls


class DynamicTypeRegistrar:
    def __init__(self, template_store, class_factory: EntityClassFactory | None = None, table_prefix: str = DEFAULT_PREFIX) -> None:
        self._store = template_store
        self._factory = class_factory or EntityClassFactory()
        self._prefix = table_prefix or DEFAULT_PREFIX
        self._types: Dict[str, EntityTypeDescriptor] = {}
        self._lock = threading.RLock()
        self._active = False

    def register_entity_types(self, existing_types: Dict[str, Any]) -> Dict[str, Any]:
        """Add a descriptor for every enabled template missing from ``existing_types``."""
        with self._lock:
            if self._active:
                logger.info("entity_type_registration_reentrant skipped=1")
                return existing_types
            self._active = True
            try:
                added = 0
                for template in self._store.list_templates("all", active_only=True):
                    type_id = str(template["id"])
                    if type_id in existing_types:
                        continue
                    descriptor = self.build_descriptor(template)
                    if descriptor is None:
                        continue
                    existing_types[type_id] = descriptor
                    self._types[type_id] = descriptor
                    added += 1
                logger.info("entity_types_registered added=%s total=%s", added, len(existing_types))
            finally:
                self._active = False
        return existing_types

    def build_descriptor(self, template: dict) -> EntityTypeDescriptor | None:
        fields = self._store.get_template_fields(template["id"])
        tenant_id = template["tenant_id"]
        project_id = template.get("project_id")
        base_table = template.get("table_name") or table_name(tenant_id, project_id, template["name"], prefix=self._prefix)
        ref = (template.get("settings") or {}).get("entity_class")
        try:
            if ref:
                entity_class = _import_class(ref)
                class_ref = ref
            else:
                entity_class = self._factory.build(template, fields, base_table)
                class_ref = f"{entity_class.__module__}:{entity_class.__name__}"
        except Exception as exc:
            logger.error("entity_class_unavailable template_id=%s class=%s error=%s", template["id"], ref, exc)
            return None
        return EntityTypeDescriptor(
            id=str(template["id"]),
            label=template.get("label") or template["name"],
            tenant_id=tenant_id,
            project_id=project_id,
            entity_name=template["name"],
            class_ref=class_ref,
            entity_class=entity_class,
            base_table=base_table,
            data_table=data_table_name(tenant_id, project_id, template["name"], prefix=self._prefix),
            revision_table=revision_table_name(tenant_id, project_id, template["name"], prefix=self._prefix),
            entity_keys={"id": "id", "uuid": "uuid", "bundle": "bundle", "label": resolve_label_field(template, fields)},
            fields={f["name"]: f for f in fields},
        )

    def new_instance(self, descriptor: EntityTypeDescriptor, values: dict | None = None) -> DynamicEntity | None:
        try:
            return descriptor.entity_class(values or {})
        except Exception as exc:
            logger.error("entity_instance_failed entity_type=%s class=%s error=%s", descriptor.id, descriptor.class_ref, exc)
            return None

    def get_registered_entity_types(self) -> Dict[str, EntityTypeDescriptor]:
        with self._lock:
            return dict(self._types)

    def is_registered(self, entity_type_id: Any) -> bool:
        return str(entity_type_id) in self._types

    def unregister(self, entity_type_id: Any, existing_types: Dict[str, Any] | None = None) -> bool:
        type_id = str(entity_type_id)
        with self._lock:
            removed = self._types.pop(type_id, None) is not None
            if existing_types is not None and existing_types.pop(type_id, None) is not None:
                removed = True
        if removed:
            logger.info("entity_type_unregistered entity_type=%s", type_id)
        return removed

    def get_tenant_entity_types(self, tenant_id: str) -> List[EntityTypeDescriptor]:
        with self._lock:
            items = [d for d in self._types.values() if d.tenant_id == tenant_id]
        return sorted(items, key=lambda d: (d.entity_name, d.id))
