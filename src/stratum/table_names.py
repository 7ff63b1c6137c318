"""Deterministic physical names for tenant/project scoped dynamic tables."""

from __future__ import annotations

import hashlib
import re

MAX_IDENTIFIER_LENGTH = 63
DEFAULT_PREFIX = "baas"

_NAME_RE = re.compile(r"^[a-z][a-z0-9_]*$")
_TABLE_RE = re.compile(r"^([a-z][a-z0-9]*)_([a-f0-9]{6})_(.+)$")


def _md5(value: str) -> str:
    return hashlib.md5(value.encode("utf-8")).hexdigest()


def is_machine_name(value: object, max_length: int = 48) -> bool:
    """Return True for lowercase identifiers safe to embed in SQL names."""
    return isinstance(value, str) and 0 < len(value) <= max_length and bool(_NAME_RE.match(value))


def scope_hash(tenant_id: str, project_id: str | None = None) -> str:
    """Return the 6-char hash identifying a tenant (and optional project)."""
    return _md5(f"{tenant_id}_{project_id or ''}")[:6]


def _fit(prefix: str, combined: str, name: str, suffix: str = "") -> str:
    base = f"{prefix}_{combined}_{name}{suffix}"
    if len(base) <= MAX_IDENTIFIER_LENGTH:
        return base
    name_hash = _md5(name)[:4]
    tail = f"_h{name_hash}{suffix}"
    room = MAX_IDENTIFIER_LENGTH - len(f"{prefix}_{combined}_") - len(tail)
    if room > 0:
        return f"{prefix}_{combined}_{name[:room]}{tail}"
    return f"{prefix}_{combined}{tail}"[:MAX_IDENTIFIER_LENGTH]


def table_name(tenant_id: str, project_id: str | None, entity_name: str, prefix: str = DEFAULT_PREFIX) -> str:
    """Physical table backing a template.

    Format is ``{prefix}_{scope_hash}_{entity_name}``. Names longer than the
    Postgres identifier limit keep a truncated entity name plus ``_h`` and a
    4-char hash of the full entity name, so distinct long names stay distinct.
    """
    return _fit(prefix, scope_hash(tenant_id, project_id), entity_name)


def data_table_name(tenant_id: str, project_id: str | None, entity_name: str, prefix: str = DEFAULT_PREFIX) -> str:
    return _fit(prefix, scope_hash(tenant_id, project_id), entity_name, "_data")


def revision_table_name(tenant_id: str, project_id: str | None, entity_name: str, prefix: str = DEFAULT_PREFIX) -> str:
    return _fit(prefix, scope_hash(tenant_id, project_id), entity_name, "_revision")


def parse_table_name(name: str) -> dict | None:
    """Split a dynamic table name into prefix, scope hash and entity part."""
    if not isinstance(name, str):
        return None
    match = _TABLE_RE.match(name)
    if not match:
        return None
    return {"prefix": match.group(1), "scope_hash": match.group(2), "entity_name": match.group(3)}


def class_name(tenant_id: str, project_id: str | None, entity_name: str) -> str:
    """CamelCase class name for a generated entity class."""
    parts = [tenant_id]
    if project_id:
        parts.append(project_id)
    parts.append(entity_name)
    words: list[str] = []
    for part in parts:
        for chunk in re.split(r"[^A-Za-z0-9]+", str(part)):
            if chunk:
                words.append(chunk[:1].upper() + chunk[1:])
    name = "".join(words) or "Entity"
    if name[0].isdigit():
        name = f"E{name}"
    return name
