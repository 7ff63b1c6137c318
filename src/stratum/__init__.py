"""stratum kernel utilities."""

from .errors import (
    AccessCheckerMissing,
    DuplicateTemplateError,
    FieldTypeConflict,
    SchemaApplyError,
    issue,
)
from .table_names import is_machine_name, scope_hash, table_name

__all__ = [
    "AccessCheckerMissing",
    "DuplicateTemplateError",
    "FieldTypeConflict",
    "SchemaApplyError",
    "issue",
    "is_machine_name",
    "scope_hash",
    "table_name",
]
