"""Field-type plugins and the string-keyed registry that dispatches to them."""

from __future__ import annotations

import base64
import copy
import importlib
import json
import logging
import math
import os
import re
import threading
import uuid
from datetime import date, datetime, timezone
from typing import Any, Dict, Iterable, List
from urllib.parse import urlparse

from cryptography.exceptions import InvalidKey
from cryptography.hazmat.primitives.kdf.scrypt import Scrypt

from stratum.errors import FieldTypeConflict

logger = logging.getLogger("stratum.field_types")

_TAG_RE = re.compile(r"<[^>]*>")


def _is_empty(value: Any) -> bool:
    return value is None or value == "" or value == [] or value == {}


def _is_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool) and math.isfinite(value)


def _truncate(text: str, settings: dict) -> str:
    display_length = settings.get("display_length", 50)
    if len(text) > display_length:
        return text[:display_length] + "..."
    return text


def _setting(name: str, title: str, kind: str = "textfield", default: Any = "", description: str = "", options: dict | None = None) -> dict:
    item = {"name": name, "title": title, "type": kind, "default_value": default, "description": description}
    if options is not None:
        item["options"] = options
    return item


class FieldTypePlugin:
    """Base plugin: text storage, pass-through values, required check only."""

    field_type = "base"
    label = "Base Field Type"
    description = "Base field type plugin."
    widget_type = "string_textfield"
    formatter_type = "string"
    supports_multiple = True
    needs_index = False
    weight = 0

    def get_storage_schema(self) -> dict:
        return {"db_type": "text", "nullable": True}

    def column_schema(self, settings: dict) -> dict:
        return self.get_storage_schema()

    def get_default_settings(self) -> dict:
        return {}

    def get_settings_form(self, settings: dict, context: dict | None = None) -> List[dict]:
        return []

    def validate_settings(self, settings: dict) -> Dict[str, str]:
        """Check field settings against the types of this plugin's defaults.

        Integer defaults must stay non-negative integers; ``max_length`` and
        ``display_length`` must be positive. Returns setting name -> message.
        """
        errors: Dict[str, str] = {}
        for key, default in self.get_default_settings().items():
            if key not in settings or not _is_int(default):
                continue
            value = settings[key]
            if not _is_int(value) or value < 0:
                errors[key] = f"{key} must be a non-negative integer"
            elif value == 0 and key in ("max_length", "display_length"):
                errors[key] = f"{key} must be a positive integer"
        return errors

    def validate_value(self, value: Any, settings: dict, context: dict | None = None) -> List[str]:
        context = context or {}
        if (settings.get("required") or context.get("required")) and _is_empty(value):
            return ["This field is required."]
        return []

    def process_value(self, value: Any, settings: dict) -> Any:
        return value

    def format_value(self, value: Any, settings: dict, format_mode: str = "default") -> str:
        return "" if value is None else str(value)

    def hidden_in_api(self, settings: dict) -> bool:
        return False


class StringFieldType(FieldTypePlugin):
    field_type = "string"
    label = "String"
    description = "A field for storing short text strings with a maximum length."
    needs_index = True

    def get_storage_schema(self) -> dict:
        return {"db_type": "varchar", "length": 255, "nullable": True}

    def column_schema(self, settings: dict) -> dict:
        schema = self.get_storage_schema()
        max_length = settings.get("max_length")
        if isinstance(max_length, int) and not isinstance(max_length, bool) and max_length > 0:
            schema["length"] = max_length
        return schema

    def get_default_settings(self) -> dict:
        return {"max_length": 255, "display_length": 50, "required": False, "default_value": "", "placeholder": ""}

    def get_settings_form(self, settings: dict, context: dict | None = None) -> List[dict]:
        return [
            _setting("max_length", "Maximum length", "number", settings.get("max_length", 255), "The maximum length of the string in characters."),
            _setting("required", "Required", "checkbox", settings.get("required", False), "Whether this field is required."),
            _setting("default_value", "Default value", "textfield", settings.get("default_value", ""), "The default value for this field."),
            _setting("placeholder", "Placeholder", "textfield", settings.get("placeholder", ""), "Placeholder text for the input field."),
        ]

    def validate_value(self, value: Any, settings: dict, context: dict | None = None) -> List[str]:
        errors = super().validate_value(value, settings, context)
        if _is_empty(value):
            return errors
        if isinstance(value, (list, dict)):
            errors.append("The value must be a string.")
            return errors
        max_length = settings.get("max_length", 255)
        if len(str(value)) > max_length:
            errors.append(f"The value cannot be longer than {max_length} characters.")
        return errors

    def process_value(self, value: Any, settings: dict) -> Any:
        text = "" if value is None else str(value).strip()
        if not text and settings.get("default_value"):
            text = str(settings["default_value"])
        max_length = settings.get("max_length", 255)
        if len(text) > max_length:
            text = text[:max_length]
        return text

    def format_value(self, value: Any, settings: dict, format_mode: str = "default") -> str:
        text = "" if value is None else str(value)
        if format_mode == "plain":
            return _TAG_RE.sub("", text)
        if format_mode == "truncated":
            return _truncate(text, settings)
        return text


class _ListFieldType(FieldTypePlugin):
    """Shared behaviour for fields restricted to an ordered allowed_values map."""

    widget_type = "options_select"
    formatter_type = "list_default"
    needs_index = True

    def _coerce(self, value: Any) -> Any:
        return value

    def _empty_single(self) -> Any:
        return ""

    def column_schema(self, settings: dict) -> dict:
        if settings.get("multiple"):
            return {"db_type": "jsonb", "nullable": True}
        return self.get_storage_schema()

    def allowed_values(self, settings: dict) -> Dict[Any, str]:
        raw = settings.get("allowed_values") or {}
        allowed: Dict[Any, str] = {}
        if isinstance(raw, dict):
            for key, label in raw.items():
                allowed[self._coerce(key)] = str(label)
        elif isinstance(raw, (list, tuple)):
            for item in raw:
                if isinstance(item, dict) and "value" in item:
                    allowed[self._coerce(item["value"])] = str(item.get("label", item["value"]))
                else:
                    allowed[self._coerce(item)] = str(item)
        return allowed

    def is_allowed(self, value: Any, allowed: Dict[Any, str]) -> bool:
        try:
            return self._coerce(value) in allowed
        except TypeError:
            return False

    def get_default_settings(self) -> dict:
        return {"allowed_values": {}, "multiple": False, "required": False}

    def validate_settings(self, settings: dict) -> Dict[str, str]:
        errors = super().validate_settings(settings)
        if not isinstance(settings.get("allowed_values"), (dict, list, tuple)):
            errors["allowed_values"] = "allowed_values must be a mapping or a list"
        return errors

    def get_settings_form(self, settings: dict, context: dict | None = None) -> List[dict]:
        allowed = self.allowed_values(settings)
        lines = [str(k) if str(k) == v else f"{k}|{v}" for k, v in allowed.items()]
        return [
            _setting("allowed_values", "Allowed values", "textarea", "\n".join(lines), "Enter allowed values, one per line. Format: key|label or just key if key and label are the same."),
            _setting("multiple", "Allow multiple values", "checkbox", settings.get("multiple", False), "Allow users to select multiple values."),
            _setting("required", "Required", "checkbox", settings.get("required", False), "Whether this field is required."),
        ]

    def validate_value(self, value: Any, settings: dict, context: dict | None = None) -> List[str]:
        errors = super().validate_value(value, settings, context)
        if _is_empty(value):
            return errors
        allowed = self.allowed_values(settings)
        items = value if isinstance(value, (list, tuple)) else [value]
        for item in items:
            if not self.is_allowed(item, allowed):
                errors.append(f'The value "{item}" is not allowed.')
        return errors

    def process_value(self, value: Any, settings: dict) -> Any:
        if _is_empty(value):
            return value
        allowed = self.allowed_values(settings)
        if isinstance(value, (list, tuple)):
            return [self._coerce(v) for v in value if self.is_allowed(v, allowed)]
        if self.is_allowed(value, allowed):
            return self._coerce(value)
        return self._empty_single()

    def format_value(self, value: Any, settings: dict, format_mode: str = "default") -> str:
        if _is_empty(value):
            return ""
        allowed = self.allowed_values(settings)
        items = value if isinstance(value, (list, tuple)) else [value]
        labels = []
        for item in items:
            try:
                key = self._coerce(item)
            except TypeError:
                key = item
            labels.append(allowed.get(key, str(key)))
        return ", ".join(labels)


class ListStringFieldType(_ListFieldType):
    field_type = "list_string"
    label = "String List"
    description = "A field for storing values from a predefined list of string options."

    def get_storage_schema(self) -> dict:
        return {"db_type": "varchar", "length": 255, "nullable": True}

    def _coerce(self, value: Any) -> Any:
        if isinstance(value, (list, dict)):
            raise TypeError("list value")
        return str(value)


class ListIntegerFieldType(_ListFieldType):
    field_type = "list_integer"
    label = "Integer List"
    description = "A field for storing values from a predefined list of integer options."

    def get_storage_schema(self) -> dict:
        return {"db_type": "int", "nullable": True}

    def _coerce(self, value: Any) -> Any:
        if isinstance(value, bool):
            raise TypeError("bool value")
        if isinstance(value, int):
            return value
        if isinstance(value, float) and value.is_integer():
            return int(value)
        if isinstance(value, str) and re.fullmatch(r"\s*-?\d+\s*", value):
            return int(value)
        raise TypeError("not an integer")

    def _empty_single(self) -> Any:
        return 0

    def allowed_values(self, settings: dict) -> Dict[Any, str]:
        raw = settings.get("allowed_values") or {}
        if not isinstance(raw, (dict, list, tuple)):
            return {}
        allowed: Dict[Any, str] = {}
        items = raw.items() if isinstance(raw, dict) else [
            (i.get("value"), i.get("label", i.get("value"))) if isinstance(i, dict) else (i, i) for i in raw
        ]
        for key, label in items:
            try:
                allowed[self._coerce(key)] = str(label)
            except TypeError:
                logger.warning("list_integer_allowed_value_skipped value=%s", key)
        return allowed


class ReferenceFieldType(FieldTypePlugin):
    field_type = "reference"
    label = "Entity Reference"
    description = "A field that points to another entity by id."
    widget_type = "entity_reference_autocomplete"
    formatter_type = "entity_reference_label"
    needs_index = True
    weight = 10

    def get_storage_schema(self) -> dict:
        return {"db_type": "jsonb", "nullable": True}

    def get_default_settings(self) -> dict:
        return {"target_type": "", "target_bundles": [], "multiple": False, "required": False}

    def get_settings_form(self, settings: dict, context: dict | None = None) -> List[dict]:
        target_options = (context or {}).get("target_types")
        return [
            _setting("target_type", "Target type", "select", settings.get("target_type", ""), "The entity type this field points to.", options=target_options or {}),
            _setting("target_bundles", "Target bundles", "textarea", "\n".join(settings.get("target_bundles") or []), "Restrict references to these bundles, one per line."),
            _setting("multiple", "Allow multiple values", "checkbox", settings.get("multiple", False), "Allow references to several entities."),
            _setting("required", "Required", "checkbox", settings.get("required", False), "Whether this field is required."),
        ]

    def validate_settings(self, settings: dict) -> Dict[str, str]:
        errors = super().validate_settings(settings)
        target = settings.get("target_type")
        if not target or not isinstance(target, (str, int)) or isinstance(target, bool):
            errors["target_type"] = "reference fields need a target_type"
        bundles = settings.get("target_bundles")
        if bundles is not None and not (isinstance(bundles, (list, tuple)) and all(isinstance(b, str) for b in bundles)):
            errors["target_bundles"] = "target_bundles must be a list of names"
        return errors

    @staticmethod
    def coerce_id(value: Any) -> int | None:
        if isinstance(value, bool):
            return None
        if isinstance(value, int):
            return value if value > 0 else None
        if isinstance(value, str) and value.strip().isdigit():
            parsed = int(value.strip())
            return parsed if parsed > 0 else None
        if isinstance(value, dict):
            return ReferenceFieldType.coerce_id(value.get("id"))
        return None

    def validate_value(self, value: Any, settings: dict, context: dict | None = None) -> List[str]:
        errors = super().validate_value(value, settings, context)
        if _is_empty(value):
            return errors
        if isinstance(value, (list, tuple)):
            if not settings.get("multiple"):
                errors.append("This field does not accept multiple references.")
            items = list(value)
        else:
            items = [value]
        for item in items:
            if self.coerce_id(item) is None:
                errors.append(f'The reference "{item}" is not a valid entity id.')
        return errors

    def process_value(self, value: Any, settings: dict) -> Any:
        if _is_empty(value):
            return [] if settings.get("multiple") else None
        items = value if isinstance(value, (list, tuple)) else [value]
        ids = [i for i in (self.coerce_id(v) for v in items) if i is not None]
        if settings.get("multiple"):
            return ids
        return ids[0] if ids else None

    def format_value(self, value: Any, settings: dict, format_mode: str = "default") -> str:
        if _is_empty(value):
            return ""
        items = value if isinstance(value, (list, tuple)) else [value]
        return ", ".join(str(item) for item in items)


class TextFieldType(FieldTypePlugin):
    field_type = "text"
    label = "Long Text"
    description = "A field for storing long, optionally formatted text."
    widget_type = "text_textarea"
    formatter_type = "text_default"

    def get_storage_schema(self) -> dict:
        return {"db_type": "text", "nullable": True}

    def get_default_settings(self) -> dict:
        return {"allowed_formats": ["basic_html"], "display_length": 50, "required": False, "default_value": ""}

    def get_settings_form(self, settings: dict, context: dict | None = None) -> List[dict]:
        return [
            _setting("allowed_formats", "Allowed formats", "textarea", "\n".join(settings.get("allowed_formats") or []), "Text formats accepted for this field, one per line."),
            _setting("display_length", "Display length", "number", settings.get("display_length", 50), "Characters shown by the truncated formatter."),
            _setting("required", "Required", "checkbox", settings.get("required", False), "Whether this field is required."),
            _setting("default_value", "Default value", "textarea", settings.get("default_value", ""), "The default value for this field."),
        ]

    def validate_settings(self, settings: dict) -> Dict[str, str]:
        errors = super().validate_settings(settings)
        formats = settings.get("allowed_formats")
        if not isinstance(formats, (list, tuple)) or not all(isinstance(f, str) for f in formats):
            errors["allowed_formats"] = "allowed_formats must be a list of names"
        return errors

    def validate_value(self, value: Any, settings: dict, context: dict | None = None) -> List[str]:
        errors = super().validate_value(value, settings, context)
        if not _is_empty(value) and isinstance(value, (list, dict)):
            errors.append("The value must be a string.")
        return errors

    def process_value(self, value: Any, settings: dict) -> Any:
        text = "" if value is None else str(value)
        if not text.strip() and settings.get("default_value"):
            return str(settings["default_value"])
        return text

    def format_value(self, value: Any, settings: dict, format_mode: str = "default") -> str:
        text = "" if value is None else str(value)
        if format_mode == "plain":
            return _TAG_RE.sub("", text)
        if format_mode == "truncated":
            return _truncate(_TAG_RE.sub("", text), settings)
        return text


class _NumberFieldType(FieldTypePlugin):
    """Shared min/max handling for numeric columns."""

    widget_type = "number"
    needs_index = True
    invalid_message = "The value must be a number."

    def get_default_settings(self) -> dict:
        return {"min": None, "max": None, "required": False}

    def get_settings_form(self, settings: dict, context: dict | None = None) -> List[dict]:
        return [
            _setting("min", "Minimum", "number", settings.get("min"), "The smallest value allowed. Leave blank for no limit."),
            _setting("max", "Maximum", "number", settings.get("max"), "The largest value allowed. Leave blank for no limit."),
            _setting("required", "Required", "checkbox", settings.get("required", False), "Whether this field is required."),
        ]

    def validate_settings(self, settings: dict) -> Dict[str, str]:
        errors = super().validate_settings(settings)
        for key in ("min", "max"):
            if settings.get(key) is not None and not _is_number(settings[key]):
                errors[key] = f"{key} must be a number"
        low, high = settings.get("min"), settings.get("max")
        if "min" not in errors and "max" not in errors and low is not None and high is not None and low > high:
            errors["min"] = "min cannot exceed max"
        return errors

    def validate_value(self, value: Any, settings: dict, context: dict | None = None) -> List[str]:
        errors = super().validate_value(value, settings, context)
        if _is_empty(value):
            return errors
        number = self._coerce(value)
        if number is None:
            errors.append(self.invalid_message)
            return errors
        low, high = settings.get("min"), settings.get("max")
        if _is_number(low) and number < low:
            errors.append(f"The value must be at least {low}.")
        if _is_number(high) and number > high:
            errors.append(f"The value cannot be greater than {high}.")
        return errors

    def process_value(self, value: Any, settings: dict) -> Any:
        if _is_empty(value):
            return None
        return self._coerce(value)

    def format_value(self, value: Any, settings: dict, format_mode: str = "default") -> str:
        if _is_empty(value):
            return ""
        number = self._coerce(value)
        return str(value) if number is None else str(number)


_INT_MIN = -(2**31)
_INT_MAX = 2**31 - 1


class IntegerFieldType(_NumberFieldType):
    field_type = "integer"
    label = "Integer"
    description = "A field for storing whole numbers."
    formatter_type = "number_integer"
    invalid_message = "The value must be an integer."

    def get_storage_schema(self) -> dict:
        return {"db_type": "integer", "nullable": True}

    def _coerce(self, value: Any) -> Any:
        if isinstance(value, bool):
            return None
        if isinstance(value, int):
            number = value
        elif isinstance(value, float) and value.is_integer():
            number = int(value)
        elif isinstance(value, str) and re.fullmatch(r"\s*[-+]?\d+\s*", value):
            number = int(value)
        else:
            return None
        return number if _INT_MIN <= number <= _INT_MAX else None


class FloatFieldType(_NumberFieldType):
    field_type = "float"
    label = "Decimal"
    description = "A field for storing decimal numbers."
    formatter_type = "number_decimal"

    def get_storage_schema(self) -> dict:
        return {"db_type": "float", "nullable": True}

    def get_default_settings(self) -> dict:
        return {"min": None, "max": None, "precision": 10, "scale": 2, "required": False}

    def get_settings_form(self, settings: dict, context: dict | None = None) -> List[dict]:
        return super().get_settings_form(settings, context) + [
            _setting("precision", "Precision", "number", settings.get("precision", 10), "The total number of significant digits."),
            _setting("scale", "Scale", "number", settings.get("scale", 2), "The number of digits shown after the decimal point."),
        ]

    def validate_settings(self, settings: dict) -> Dict[str, str]:
        errors = super().validate_settings(settings)
        if "precision" not in errors and "scale" not in errors and settings.get("scale", 2) > settings.get("precision", 10):
            errors["scale"] = "scale cannot exceed precision"
        return errors

    def _coerce(self, value: Any) -> Any:
        if isinstance(value, bool):
            return None
        if isinstance(value, (int, float)):
            number = float(value)
        elif isinstance(value, str):
            try:
                number = float(value.strip())
            except ValueError:
                return None
        else:
            return None
        return number if math.isfinite(number) else None

    def format_value(self, value: Any, settings: dict, format_mode: str = "default") -> str:
        if _is_empty(value):
            return ""
        number = self._coerce(value)
        if number is None:
            return str(value)
        scale = settings.get("scale", 2)
        return f"{number:.{scale}f}" if _is_int(scale) else str(number)


_TRUE_WORDS = {"1", "true", "yes", "on"}
_FALSE_WORDS = {"0", "false", "no", "off"}


class BooleanFieldType(FieldTypePlugin):
    field_type = "boolean"
    label = "Boolean"
    description = "A field for storing a true or false flag."
    widget_type = "boolean_checkbox"
    formatter_type = "boolean"
    supports_multiple = False

    def get_storage_schema(self) -> dict:
        return {"db_type": "boolean", "nullable": True}

    def get_default_settings(self) -> dict:
        return {"on_label": "On", "off_label": "Off", "required": False}

    def get_settings_form(self, settings: dict, context: dict | None = None) -> List[dict]:
        return [
            _setting("on_label", "On label", "textfield", settings.get("on_label", "On"), "Shown when the value is true."),
            _setting("off_label", "Off label", "textfield", settings.get("off_label", "Off"), "Shown when the value is false."),
            _setting("required", "Required", "checkbox", settings.get("required", False), "Whether this field is required."),
        ]

    @staticmethod
    def coerce(value: Any) -> bool | None:
        if isinstance(value, bool):
            return value
        if isinstance(value, int) and value in (0, 1):
            return bool(value)
        if isinstance(value, str):
            word = value.strip().lower()
            if word in _TRUE_WORDS:
                return True
            if word in _FALSE_WORDS:
                return False
        return None

    def validate_value(self, value: Any, settings: dict, context: dict | None = None) -> List[str]:
        errors = super().validate_value(value, settings, context)
        if not _is_empty(value) and self.coerce(value) is None:
            errors.append("The value must be true or false.")
        return errors

    def process_value(self, value: Any, settings: dict) -> Any:
        if _is_empty(value):
            return None
        return self.coerce(value)

    def format_value(self, value: Any, settings: dict, format_mode: str = "default") -> str:
        flag = self.coerce(value) if not _is_empty(value) else None
        if flag is None:
            return ""
        return str(settings.get("on_label", "On") if flag else settings.get("off_label", "Off"))


def _parse_datetime(value: Any) -> datetime | None:
    if isinstance(value, datetime):
        return value
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day)
    if not isinstance(value, str):
        return None
    text = value.strip()
    if text.endswith(("Z", "z")):
        text = text[:-1] + "+00:00"
    try:
        return datetime.fromisoformat(text)
    except ValueError:
        return None


class DatetimeFieldType(FieldTypePlugin):
    """ISO 8601 timestamps stored in UTC, or plain calendar dates."""

    field_type = "datetime"
    label = "Date"
    description = "A field for storing a date or a date and time."
    widget_type = "datetime_default"
    formatter_type = "datetime_default"
    needs_index = True

    def get_storage_schema(self) -> dict:
        return {"db_type": "timestamp", "nullable": True}

    def column_schema(self, settings: dict) -> dict:
        if settings.get("datetime_type") == "date":
            return {"db_type": "date", "nullable": True}
        return self.get_storage_schema()

    def get_default_settings(self) -> dict:
        return {"datetime_type": "datetime", "required": False}

    def get_settings_form(self, settings: dict, context: dict | None = None) -> List[dict]:
        return [
            _setting("datetime_type", "Date type", "select", settings.get("datetime_type", "datetime"), "Store a date only or a date and time.", options={"datetime": "Date and time", "date": "Date only"}),
            _setting("required", "Required", "checkbox", settings.get("required", False), "Whether this field is required."),
        ]

    def validate_settings(self, settings: dict) -> Dict[str, str]:
        errors = super().validate_settings(settings)
        if settings.get("datetime_type") not in ("datetime", "date"):
            errors["datetime_type"] = "datetime_type must be datetime or date"
        return errors

    def validate_value(self, value: Any, settings: dict, context: dict | None = None) -> List[str]:
        errors = super().validate_value(value, settings, context)
        if not _is_empty(value) and _parse_datetime(value) is None:
            errors.append(f'The value "{value}" is not a valid ISO 8601 date.')
        return errors

    def process_value(self, value: Any, settings: dict) -> Any:
        if _is_empty(value):
            return None
        parsed = _parse_datetime(value)
        if parsed is None:
            return None
        if settings.get("datetime_type") == "date":
            return parsed.date().isoformat()
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=timezone.utc)
        return parsed.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")

    def format_value(self, value: Any, settings: dict, format_mode: str = "default") -> str:
        if _is_empty(value):
            return ""
        processed = self.process_value(value, settings)
        if processed is None:
            return str(value)
        if format_mode == "date":
            return processed[:10]
        return processed


_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s.]+$")


class EmailFieldType(FieldTypePlugin):
    field_type = "email"
    label = "Email"
    description = "A field for storing an email address."
    widget_type = "email_default"
    formatter_type = "email_mailto"
    needs_index = True

    def get_storage_schema(self) -> dict:
        return {"db_type": "varchar", "length": 254, "nullable": True}

    def get_default_settings(self) -> dict:
        return {"required": False}

    def get_settings_form(self, settings: dict, context: dict | None = None) -> List[dict]:
        return [_setting("required", "Required", "checkbox", settings.get("required", False), "Whether this field is required.")]

    def validate_value(self, value: Any, settings: dict, context: dict | None = None) -> List[str]:
        errors = super().validate_value(value, settings, context)
        if _is_empty(value):
            return errors
        if not isinstance(value, str):
            errors.append("The email address must be a string.")
        elif len(value.strip()) > 254 or not _EMAIL_RE.match(value.strip()):
            errors.append(f'The email address "{value}" is not valid.')
        return errors

    def process_value(self, value: Any, settings: dict) -> Any:
        if _is_empty(value):
            return None
        local, _, domain = str(value).strip().rpartition("@")
        return f"{local}@{domain.lower()}" if local else str(value).strip()


class UrlFieldType(FieldTypePlugin):
    field_type = "url"
    label = "URL"
    description = "A field for storing a web link."
    widget_type = "link_default"
    formatter_type = "link"

    def get_storage_schema(self) -> dict:
        return {"db_type": "varchar", "length": 2048, "nullable": True}

    def get_default_settings(self) -> dict:
        return {"allowed_schemes": ["http", "https"], "required": False}

    def get_settings_form(self, settings: dict, context: dict | None = None) -> List[dict]:
        return [
            _setting("allowed_schemes", "Allowed schemes", "textarea", "\n".join(settings.get("allowed_schemes") or []), "URL schemes accepted for this field, one per line."),
            _setting("required", "Required", "checkbox", settings.get("required", False), "Whether this field is required."),
        ]

    def validate_settings(self, settings: dict) -> Dict[str, str]:
        errors = super().validate_settings(settings)
        schemes = settings.get("allowed_schemes")
        if not isinstance(schemes, (list, tuple)) or not schemes or not all(isinstance(s, str) for s in schemes):
            errors["allowed_schemes"] = "allowed_schemes must be a non-empty list"
        return errors

    def validate_value(self, value: Any, settings: dict, context: dict | None = None) -> List[str]:
        errors = super().validate_value(value, settings, context)
        if _is_empty(value):
            return errors
        if not isinstance(value, str):
            errors.append("The URL must be a string.")
            return errors
        schemes = [s.lower() for s in settings.get("allowed_schemes") or ["http", "https"]]
        parsed = urlparse(value.strip())
        if len(value.strip()) > 2048 or parsed.scheme.lower() not in schemes or not parsed.netloc:
            errors.append(f'The URL "{value}" is not valid.')
        return errors

    def process_value(self, value: Any, settings: dict) -> Any:
        if _is_empty(value):
            return None
        return str(value).strip()


_JSON_TYPES = {"object": dict, "array": list, "string": str, "boolean": bool}


class JsonFieldType(FieldTypePlugin):
    """Free-form JSON; an optional ``schema`` restricts the top-level type and object keys."""

    field_type = "json"
    label = "JSON"
    description = "A field for storing structured JSON data."
    widget_type = "json_textarea"
    formatter_type = "json"
    supports_multiple = False

    def get_storage_schema(self) -> dict:
        return {"db_type": "jsonb", "nullable": True}

    def get_default_settings(self) -> dict:
        return {"schema": None, "required": False}

    def get_settings_form(self, settings: dict, context: dict | None = None) -> List[dict]:
        schema = settings.get("schema")
        return [
            _setting("schema", "Schema", "textarea", json.dumps(schema) if schema else "", 'Optional constraints, e.g. {"type": "object", "required": ["key"]}.'),
            _setting("required", "Required", "checkbox", settings.get("required", False), "Whether this field is required."),
        ]

    def validate_settings(self, settings: dict) -> Dict[str, str]:
        errors = super().validate_settings(settings)
        schema = settings.get("schema")
        if schema is None:
            return errors
        if not isinstance(schema, dict):
            errors["schema"] = "schema must be an object"
        elif schema.get("type") is not None and schema["type"] not in (*_JSON_TYPES, "number"):
            errors["schema"] = f"unsupported schema type: {schema['type']}"
        elif not isinstance(schema.get("required", []), list):
            errors["schema"] = "schema.required must be a list of keys"
        return errors

    def validate_value(self, value: Any, settings: dict, context: dict | None = None) -> List[str]:
        errors = super().validate_value(value, settings, context)
        if value is None:
            return errors
        try:
            json.dumps(value, allow_nan=False)
        except (TypeError, ValueError):
            errors.append("The value must be JSON serializable.")
            return errors
        schema = settings.get("schema") if isinstance(settings.get("schema"), dict) else {}
        expected = schema.get("type")
        if expected == "number":
            if not _is_number(value):
                errors.append("The value must be a JSON number.")
        elif expected in _JSON_TYPES and (not isinstance(value, _JSON_TYPES[expected]) or (expected != "boolean" and isinstance(value, bool))):
            errors.append(f"The value must be a JSON {expected}.")
        if isinstance(value, dict):
            for key in schema.get("required") or []:
                if key not in value:
                    errors.append(f'The key "{key}" is required.')
        return errors

    def process_value(self, value: Any, settings: dict) -> Any:
        return copy.deepcopy(value)

    def format_value(self, value: Any, settings: dict, format_mode: str = "default") -> str:
        if value is None:
            return ""
        return json.dumps(value, sort_keys=True, ensure_ascii=False)


class UuidFieldType(FieldTypePlugin):
    field_type = "uuid"
    label = "UUID"
    description = "A field for storing a universally unique identifier."
    formatter_type = "string"
    supports_multiple = False
    needs_index = True

    def get_storage_schema(self) -> dict:
        return {"db_type": "uuid", "nullable": True}

    def get_default_settings(self) -> dict:
        return {"auto_generate": False, "required": False}

    def get_settings_form(self, settings: dict, context: dict | None = None) -> List[dict]:
        return [
            _setting("auto_generate", "Generate automatically", "checkbox", settings.get("auto_generate", False), "Fill in a random UUID when no value is given."),
            _setting("required", "Required", "checkbox", settings.get("required", False), "Whether this field is required."),
        ]

    @staticmethod
    def _parse(value: Any) -> uuid.UUID | None:
        if isinstance(value, uuid.UUID):
            return value
        if not isinstance(value, str):
            return None
        try:
            return uuid.UUID(value.strip())
        except ValueError:
            return None

    def validate_value(self, value: Any, settings: dict, context: dict | None = None) -> List[str]:
        if _is_empty(value) and settings.get("auto_generate"):
            return []
        errors = super().validate_value(value, settings, context)
        if not _is_empty(value) and self._parse(value) is None:
            errors.append(f'The value "{value}" is not a valid UUID.')
        return errors

    def process_value(self, value: Any, settings: dict) -> Any:
        if _is_empty(value):
            return str(uuid.uuid4()) if settings.get("auto_generate") else None
        parsed = self._parse(value)
        return str(parsed) if parsed else None


_SCRYPT_N = 2**14
_SCRYPT_R = 8
_SCRYPT_P = 1
_HASH_PREFIX = "scrypt$"


def _b64(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("ascii").rstrip("=")


def _unb64(text: str) -> bytes:
    return base64.urlsafe_b64decode(text + "=" * (-len(text) % 4))


def hash_password(password: str) -> str:
    salt = os.urandom(16)
    kdf = Scrypt(salt=salt, length=32, n=_SCRYPT_N, r=_SCRYPT_R, p=_SCRYPT_P)
    digest = kdf.derive(password.encode("utf-8"))
    return f"{_HASH_PREFIX}{_SCRYPT_N}${_SCRYPT_R}${_SCRYPT_P}${_b64(salt)}${_b64(digest)}"


def is_password_hash(value: Any) -> bool:
    return isinstance(value, str) and value.startswith(_HASH_PREFIX) and value.count("$") == 5


def verify_password(password: str, stored: str) -> bool:
    if not is_password_hash(stored) or not isinstance(password, str):
        return False
    _, n, r, p, salt, digest = stored.split("$")
    try:
        kdf = Scrypt(salt=_unb64(salt), length=32, n=int(n), r=int(r), p=int(p))
        kdf.verify(password.encode("utf-8"), _unb64(digest))
    except (InvalidKey, ValueError):
        return False
    return True


class PasswordFieldType(FieldTypePlugin):
    field_type = "password"
    label = "Password"
    description = "A field for securely storing hashed passwords."
    widget_type = "password"
    formatter_type = "password_hidden"
    supports_multiple = False
    weight = 5

    def get_storage_schema(self) -> dict:
        return {"db_type": "varchar", "length": 255, "nullable": True}

    def get_default_settings(self) -> dict:
        return {"min_length": 6, "max_length": 128, "require_complexity": False, "hash_algorithm": "scrypt", "required": False}

    def get_settings_form(self, settings: dict, context: dict | None = None) -> List[dict]:
        return [
            _setting("min_length", "Minimum length", "number", settings.get("min_length", 6), "The minimum length of the password."),
            _setting("max_length", "Maximum length", "number", settings.get("max_length", 128), "The maximum length of the password before hashing."),
            _setting("require_complexity", "Require complexity", "checkbox", settings.get("require_complexity", False), "Require upper case, lower case and digits."),
            _setting("hash_algorithm", "Hash algorithm", "select", settings.get("hash_algorithm", "scrypt"), "The algorithm used to hash passwords.", options={"scrypt": "scrypt"}),
        ]

    def validate_settings(self, settings: dict) -> Dict[str, str]:
        errors = super().validate_settings(settings)
        if not errors and settings.get("min_length", 6) > settings.get("max_length", 128):
            errors["min_length"] = "min_length cannot exceed max_length"
        if settings.get("hash_algorithm", "scrypt") != "scrypt":
            errors["hash_algorithm"] = "hash_algorithm must be scrypt"
        return errors

    def validate_value(self, value: Any, settings: dict, context: dict | None = None) -> List[str]:
        errors = super().validate_value(value, settings, context)
        if _is_empty(value) or is_password_hash(value):
            return errors
        if not isinstance(value, str):
            errors.append("The password must be a string.")
            return errors
        min_length = settings.get("min_length", 6)
        max_length = settings.get("max_length", 128)
        if len(value) < min_length:
            errors.append(f"The password must be at least {min_length} characters.")
        if len(value) > max_length:
            errors.append(f"The password cannot be longer than {max_length} characters.")
        if settings.get("require_complexity"):
            if not (re.search(r"[a-z]", value) and re.search(r"[A-Z]", value) and re.search(r"\d", value)):
                errors.append("The password must contain upper case, lower case and digits.")
        return errors

    def process_value(self, value: Any, settings: dict) -> Any:
        if _is_empty(value):
            return None
        if is_password_hash(value):
            return value
        return hash_password(str(value))

    def format_value(self, value: Any, settings: dict, format_mode: str = "default") -> str:
        if _is_empty(value):
            return ""
        if format_mode == "length" and not is_password_hash(value):
            return f"{len(str(value))} characters"
        return "********"

    def hidden_in_api(self, settings: dict) -> bool:
        return True


DEFAULT_PLUGINS = (
    StringFieldType,
    TextFieldType,
    IntegerFieldType,
    FloatFieldType,
    BooleanFieldType,
    DatetimeFieldType,
    EmailFieldType,
    UrlFieldType,
    ListStringFieldType,
    ListIntegerFieldType,
    ReferenceFieldType,
    JsonFieldType,
    UuidFieldType,
    PasswordFieldType,
)


class FieldTypeRegistry:
    def __init__(self) -> None:
        self._plugins: Dict[str, FieldTypePlugin] = {}
        self._type_cache: Dict[str, dict] = {}
        self._lock = threading.Lock()

    @classmethod
    def with_defaults(cls) -> "FieldTypeRegistry":
        registry = cls()
        for plugin_cls in DEFAULT_PLUGINS:
            registry.register(plugin_cls())
        return registry

    def register(self, plugin: FieldTypePlugin, replace: bool = True) -> None:
        key = plugin.field_type
        with self._lock:
            if key in self._plugins:
                if not replace:
                    raise FieldTypeConflict(f"field type already registered: {key}")
                logger.warning("field_type_replaced type=%s plugin=%s", key, type(plugin).__name__)
            self._plugins[key] = plugin
            self._type_cache.pop(key, None)

    def load_plugins(self, specs: Iterable[str]) -> list[str]:
        """Load host plugins given as ``module:Class``; failures are logged and skipped."""
        loaded: list[str] = []
        for spec in specs:
            spec = spec.strip()
            if not spec:
                continue
            try:
                module_name, _, attr = spec.partition(":")
                plugin_cls = getattr(importlib.import_module(module_name), attr)
                plugin = plugin_cls()
                if not isinstance(plugin, FieldTypePlugin):
                    raise TypeError(f"{spec} is not a FieldTypePlugin")
                self.register(plugin, replace=False)
            except Exception as exc:
                logger.error("field_type_plugin_load_failed spec=%s error=%s", spec, exc)
                continue
            loaded.append(plugin.field_type)
        return loaded

    def has_type(self, key: str) -> bool:
        return key in self._plugins

    def get_plugin(self, key: str) -> FieldTypePlugin | None:
        return self._plugins.get(key)

    def get_available_types(self) -> Dict[str, str]:
        return {key: plugin.label for key, plugin in self._plugins.items()}

    def get_type_info(self, key: str) -> dict | None:
        cached = self._type_cache.get(key)
        if cached is None:
            plugin = self.get_plugin(key)
            if plugin is None:
                return None
            info = {
                "type": plugin.field_type,
                "label": plugin.label,
                "description": plugin.description,
                "storage": plugin.get_storage_schema(),
                "widget_type": plugin.widget_type,
                "formatter_type": plugin.formatter_type,
                "supports_multiple": plugin.supports_multiple,
                "needs_index": plugin.needs_index,
                "weight": plugin.weight,
                "default_settings": plugin.get_default_settings(),
            }
            with self._lock:
                cached = self._type_cache.setdefault(key, info)
        return copy.deepcopy(cached)

    def clear_cache(self, key: str | None = None) -> None:
        with self._lock:
            if key is None:
                self._type_cache = {}
            else:
                self._type_cache.pop(key, None)

    def get_storage_schema(self, key: str) -> dict | None:
        plugin = self.get_plugin(key)
        return plugin.get_storage_schema() if plugin else None

    def get_column_schema(self, key: str, settings: dict | None = None) -> dict | None:
        plugin = self.get_plugin(key)
        return plugin.column_schema(settings or {}) if plugin else None

    def validate_settings(self, key: str, settings: dict | None) -> Dict[str, str]:
        plugin = self.get_plugin(key)
        if plugin is None:
            return {"field_type": f"Unknown field type: {key}"}
        return plugin.validate_settings({**plugin.get_default_settings(), **(settings or {})})

    def validate_value(self, key: str, value: Any, settings: dict | None, context: dict | None = None) -> List[str]:
        plugin = self.get_plugin(key)
        if plugin is None:
            return [f"Unknown field type: {key}"]
        return plugin.validate_value(value, settings or {}, context)

    def process_value(self, key: str, value: Any, settings: dict | None) -> Any:
        plugin = self.get_plugin(key)
        if plugin is None:
            return value
        return plugin.process_value(value, settings or {})

    def format_value(self, key: str, value: Any, settings: dict | None, format_mode: str = "default") -> str:
        plugin = self.get_plugin(key)
        if plugin is None:
            return str(value)
        return plugin.format_value(value, settings or {}, format_mode)

    def get_settings_form(self, key: str, settings: dict | None, context: dict | None = None) -> List[dict]:
        plugin = self.get_plugin(key)
        if plugin is None:
            return []
        return plugin.get_settings_form(settings or {}, context)

    def hidden_in_api(self, key: str, settings: dict | None) -> bool:
        plugin = self.get_plugin(key)
        return bool(plugin and plugin.hidden_in_api(settings or {}))
