"""Exception types and issue helpers shared by the engine."""

from __future__ import annotations

from typing import Any, Dict

Issue = Dict[str, Any]


def issue(code: str, message: str, path: str | None = None, detail: dict | None = None) -> Issue:
    return {"code": code, "message": message, "path": path, "detail": detail}


def failed(*errors: Issue, **payload: Any) -> dict:
    return {"ok": False, "errors": list(errors), "warnings": [], **payload}


class SchemaApplyError(RuntimeError):
    """DDL for a dynamic table could not be applied."""

    def __init__(self, table: str, statement: str, cause: Exception | None = None) -> None:
        self.table = table
        self.statement = statement
        self.cause = cause
        super().__init__(f"schema apply failed for {table}: {cause}" if cause else f"schema apply failed for {table}")


class DuplicateTemplateError(ValueError):
    """The (tenant, project, name) slot was taken by a concurrent writer."""


class FieldTypeConflict(ValueError):
    pass


class AccessCheckerMissing(RuntimeError):
    """No access checker is wired; calls needing one fail instead of allowing."""
