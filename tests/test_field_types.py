import os
import sys
import unittest


ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
SRC = os.path.join(ROOT, "src")
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)
if SRC not in sys.path:
    sys.path.insert(0, SRC)

from field_types import (
    FieldTypePlugin,
    FieldTypeRegistry,
    StringFieldType,
    hash_password,
    is_password_hash,
    verify_password,
)
from stratum.errors import FieldTypeConflict


class ColorFieldType(FieldTypePlugin):
    field_type = "color"
    label = "Color"
    description = "Hex color."


class LoudStringFieldType(StringFieldType):
    label = "Loud String"

    def process_value(self, value, settings):
        return super().process_value(value, settings).upper()


class NotAPlugin:
    field_type = "nope"


class TestFieldTypeRegistry(unittest.TestCase):
    def setUp(self) -> None:
        self.registry = FieldTypeRegistry.with_defaults()

    def test_builtin_types(self) -> None:
        types = self.registry.get_available_types()
        self.assertEqual(
            sorted(types),
            sorted([
                "string", "text", "integer", "float", "boolean", "datetime", "email",
                "url", "list_string", "list_integer", "reference", "json", "uuid", "password",
            ]),
        )
        self.assertEqual(types["string"], "String")

    def test_type_info_shape(self) -> None:
        info = self.registry.get_type_info("string")
        self.assertEqual(info["type"], "string")
        self.assertEqual(info["storage"], {"db_type": "varchar", "length": 255, "nullable": True})
        self.assertEqual(info["default_settings"]["max_length"], 255)
        for key in ("label", "description", "widget_type", "formatter_type", "supports_multiple", "needs_index", "weight"):
            self.assertIn(key, info)
        self.assertIsNone(self.registry.get_type_info("missing"))

    def test_type_info_is_memoized_and_copied(self) -> None:
        first = self.registry.get_type_info("string")
        first["label"] = "mutated"
        second = self.registry.get_type_info("string")
        self.assertEqual(second["label"], "String")

    def test_cache_round_trip(self) -> None:
        before = self.registry.get_type_info("list_string")
        self.registry.clear_cache()
        self.assertEqual(self.registry.get_type_info("list_string"), before)
        self.registry.clear_cache("list_string")
        self.assertEqual(self.registry.get_type_info("list_string"), before)

    def test_register_overwrites_and_clears_cache(self) -> None:
        self.registry.get_type_info("string")
        with self.assertLogs("stratum.field_types", level="WARNING"):
            self.registry.register(LoudStringFieldType())
        self.assertEqual(self.registry.get_type_info("string")["label"], "Loud String")
        self.assertEqual(self.registry.process_value("string", " hi ", {}), "HI")

    def test_register_without_replace_conflicts(self) -> None:
        with self.assertRaises(FieldTypeConflict):
            self.registry.register(LoudStringFieldType(), replace=False)
        self.assertEqual(self.registry.get_type_info("string")["label"], "String")

    def test_unknown_type_dispatch(self) -> None:
        errors = self.registry.validate_value("nope", "x", {})
        self.assertEqual(len(errors), 1)
        self.assertIn("Unknown field type", errors[0])
        self.assertEqual(self.registry.process_value("nope", [1], {}), [1])
        self.assertEqual(self.registry.format_value("nope", 5, {}), "5")
        self.assertEqual(self.registry.get_settings_form("nope", {}), [])
        self.assertIsNone(self.registry.get_storage_schema("nope"))

    def test_load_plugins(self) -> None:
        module = __name__
        with self.assertLogs("stratum.field_types", level="ERROR") as logs:
            loaded = self.registry.load_plugins(
                [f"{module}:ColorFieldType", f"{module}:NotAPlugin", "missing_module_xyz:Thing", f"{module}:LoudStringFieldType", " "]
            )
        self.assertEqual(loaded, ["color"])
        self.assertTrue(self.registry.has_type("color"))
        self.assertEqual(self.registry.get_type_info("string")["label"], "String")
        self.assertEqual(len(logs.records), 3)

    def test_settings_form_items(self) -> None:
        form = self.registry.get_settings_form("string", {"max_length": 40})
        names = [item["name"] for item in form]
        self.assertIn("max_length", names)
        item = form[names.index("max_length")]
        self.assertEqual(item["default_value"], 40)
        for key in ("title", "type", "description"):
            self.assertIn(key, item)
        ref_form = self.registry.get_settings_form("reference", {}, {"target_types": {"user": "User"}})
        self.assertEqual(ref_form[0]["options"], {"user": "User"})

    def test_column_schema_uses_max_length(self) -> None:
        self.assertEqual(self.registry.get_column_schema("string", {"max_length": 80})["length"], 80)
        self.assertEqual(self.registry.get_column_schema("list_string", {"multiple": True})["db_type"], "jsonb")
        self.assertEqual(self.registry.get_column_schema("list_integer", {})["db_type"], "int")
        self.assertEqual(self.registry.get_column_schema("datetime", {"datetime_type": "date"})["db_type"], "date")
        self.assertEqual(self.registry.get_column_schema("uuid", {})["db_type"], "uuid")

    def test_validate_settings(self) -> None:
        self.assertEqual(self.registry.validate_settings("password", {}), {})
        self.assertEqual(self.registry.validate_settings("password", {"min_length": "8"}), {"min_length": "min_length must be a non-negative integer"})
        self.assertEqual(self.registry.validate_settings("password", {"min_length": 8.0}), {"min_length": "min_length must be a non-negative integer"})
        self.assertEqual(self.registry.validate_settings("password", {"max_length": True}), {"max_length": "max_length must be a non-negative integer"})
        self.assertEqual(self.registry.validate_settings("string", {"max_length": 0}), {"max_length": "max_length must be a positive integer"})
        self.assertIn("display_length", self.registry.validate_settings("text", {"display_length": "50"}))
        self.assertIn("target_type", self.registry.validate_settings("reference", {}))
        self.assertEqual(self.registry.validate_settings("reference", {"target_type": "contact"}), {})
        self.assertEqual(self.registry.validate_settings("integer", {"min": 5, "max": 1}), {"min": "min cannot exceed max"})
        self.assertEqual(self.registry.validate_settings("json", {"schema": {"type": "tuple"}}), {"schema": "unsupported schema type: tuple"})
        self.assertEqual(self.registry.validate_settings("url", {"allowed_schemes": []}), {"allowed_schemes": "allowed_schemes must be a non-empty list"})
        self.assertEqual(self.registry.validate_settings("nope", {}), {"field_type": "Unknown field type: nope"})


class TestStringFieldType(unittest.TestCase):
    def setUp(self) -> None:
        self.registry = FieldTypeRegistry.with_defaults()

    def test_required(self) -> None:
        self.assertEqual(self.registry.validate_value("string", "", {"required": True}), ["This field is required."])
        self.assertEqual(self.registry.validate_value("string", None, {}, {"required": True}), ["This field is required."])
        self.assertEqual(self.registry.validate_value("string", "", {}), [])

    def test_max_length(self) -> None:
        errors = self.registry.validate_value("string", "abcdef", {"max_length": 5})
        self.assertEqual(errors, ["The value cannot be longer than 5 characters."])
        self.assertEqual(self.registry.validate_value("string", "abcde", {"max_length": 5}), [])
        self.assertEqual(self.registry.validate_value("string", ["a"], {}), ["The value must be a string."])

    def test_process(self) -> None:
        self.assertEqual(self.registry.process_value("string", "  padded  ", {}), "padded")
        self.assertEqual(self.registry.process_value("string", "", {"default_value": "n/a"}), "n/a")
        self.assertEqual(self.registry.process_value("string", "abcdef", {"max_length": 3}), "abc")

    def test_format(self) -> None:
        self.assertEqual(self.registry.format_value("string", "<b>bold</b>", {}, "plain"), "bold")
        self.assertEqual(self.registry.format_value("string", "x" * 60, {}, "truncated"), "x" * 50 + "...")
        self.assertEqual(self.registry.format_value("string", "abcdef", {"display_length": 3}, "truncated"), "abc...")
        self.assertEqual(self.registry.format_value("string", "<i>raw</i>", {}), "<i>raw</i>")


class TestListFieldTypes(unittest.TestCase):
    def setUp(self) -> None:
        self.registry = FieldTypeRegistry.with_defaults()
        self.colors = {"allowed_values": {"red": "Red", "blue": "Blue"}}
        self.sizes = {"allowed_values": {1: "Small", 2: "Large"}}

    def test_list_string_validation(self) -> None:
        self.assertEqual(self.registry.validate_value("list_string", "red", self.colors), [])
        self.assertEqual(self.registry.validate_value("list_string", "green", self.colors), ['The value "green" is not allowed.'])
        errors = self.registry.validate_value("list_string", ["red", "pink", "teal"], self.colors)
        self.assertEqual(len(errors), 2)

    def test_plain_list_allowed_values(self) -> None:
        settings = {"allowed_values": ["a", "b"]}
        self.assertEqual(self.registry.validate_value("list_string", "b", settings), [])
        self.assertEqual(self.registry.format_value("list_string", "b", settings), "b")

    def test_list_integer_coerces_numeric_strings(self) -> None:
        self.assertEqual(self.registry.validate_value("list_integer", "2", self.sizes), [])
        self.assertEqual(self.registry.validate_value("list_integer", "x", self.sizes), ['The value "x" is not allowed.'])
        self.assertEqual(self.registry.validate_value("list_integer", True, self.sizes), ['The value "True" is not allowed.'])
        self.assertEqual(self.registry.process_value("list_integer", "1", self.sizes), 1)

    def test_process_invalid(self) -> None:
        self.assertEqual(self.registry.process_value("list_string", "green", self.colors), "")
        self.assertEqual(self.registry.process_value("list_integer", 9, self.sizes), 0)
        self.assertEqual(self.registry.process_value("list_string", ["red", "green", "blue"], self.colors), ["red", "blue"])
        self.assertEqual(self.registry.process_value("list_integer", ["2", 5], self.sizes), [2])

    def test_format_labels(self) -> None:
        self.assertEqual(self.registry.format_value("list_string", ["red", "blue"], self.colors), "Red, Blue")
        self.assertEqual(self.registry.format_value("list_integer", 2, self.sizes), "Large")
        self.assertEqual(self.registry.format_value("list_string", None, self.colors), "")

    def test_required_list(self) -> None:
        settings = dict(self.colors, required=True)
        self.assertEqual(self.registry.validate_value("list_string", [], settings), ["This field is required."])


class TestReferenceFieldType(unittest.TestCase):
    def setUp(self) -> None:
        self.registry = FieldTypeRegistry.with_defaults()

    def test_validate(self) -> None:
        self.assertEqual(self.registry.validate_value("reference", 3, {"target_type": "contact"}), [])
        self.assertEqual(self.registry.validate_value("reference", "4", {}), [])
        self.assertEqual(
            self.registry.validate_value("reference", [1, 2], {"multiple": False}),
            ["This field does not accept multiple references."],
        )
        self.assertEqual(self.registry.validate_value("reference", [1, 2], {"multiple": True}), [])
        self.assertEqual(self.registry.validate_value("reference", -1, {}), ['The reference "-1" is not a valid entity id.'])

    def test_process(self) -> None:
        self.assertEqual(self.registry.process_value("reference", "7", {}), 7)
        self.assertEqual(self.registry.process_value("reference", ["1", "x", {"id": 3}], {"multiple": True}), [1, 3])
        self.assertIsNone(self.registry.process_value("reference", None, {}))
        self.assertEqual(self.registry.process_value("reference", None, {"multiple": True}), [])

    def test_format(self) -> None:
        self.assertEqual(self.registry.format_value("reference", [1, 2], {"multiple": True}), "1, 2")


class TestTextFieldType(unittest.TestCase):
    def setUp(self) -> None:
        self.registry = FieldTypeRegistry.with_defaults()

    def test_validate_and_process(self) -> None:
        self.assertEqual(self.registry.validate_value("text", "x" * 5000, {}), [])
        self.assertEqual(self.registry.validate_value("text", {"a": 1}, {}), ["The value must be a string."])
        self.assertEqual(self.registry.process_value("text", "  keep spacing  ", {}), "  keep spacing  ")
        self.assertEqual(self.registry.process_value("text", " ", {"default_value": "none"}), "none")

    def test_format(self) -> None:
        body = "<p>" + "word " * 20 + "</p>"
        self.assertEqual(self.registry.format_value("text", body, {}, "plain"), "word " * 20)
        self.assertEqual(self.registry.format_value("text", body, {"display_length": 9}, "truncated"), "word word...")
        self.assertEqual(self.registry.format_value("text", None, {}), "")


class TestNumberFieldTypes(unittest.TestCase):
    def setUp(self) -> None:
        self.registry = FieldTypeRegistry.with_defaults()

    def test_integer(self) -> None:
        self.assertEqual(self.registry.validate_value("integer", "42", {}), [])
        self.assertEqual(self.registry.validate_value("integer", 4.0, {}), [])
        self.assertEqual(self.registry.validate_value("integer", 4.5, {}), ["The value must be an integer."])
        self.assertEqual(self.registry.validate_value("integer", True, {}), ["The value must be an integer."])
        self.assertEqual(self.registry.validate_value("integer", 2**31, {}), ["The value must be an integer."])
        self.assertEqual(self.registry.validate_value("integer", 0, {"min": 1}), ["The value must be at least 1."])
        self.assertEqual(self.registry.validate_value("integer", 11, {"max": 10}), ["The value cannot be greater than 10."])
        self.assertEqual(self.registry.process_value("integer", " -7 ", {}), -7)
        self.assertIsNone(self.registry.process_value("integer", "", {}))
        self.assertEqual(self.registry.format_value("integer", 3, {}), "3")

    def test_float(self) -> None:
        self.assertEqual(self.registry.validate_value("float", "2.5", {}), [])
        self.assertEqual(self.registry.validate_value("float", "nan", {}), ["The value must be a number."])
        self.assertEqual(self.registry.validate_value("float", "abc", {}), ["The value must be a number."])
        self.assertEqual(self.registry.validate_value("float", -0.5, {"min": 0}), ["The value must be at least 0."])
        self.assertEqual(self.registry.process_value("float", "2.5", {}), 2.5)
        self.assertEqual(self.registry.process_value("float", 3, {}), 3.0)
        self.assertEqual(self.registry.format_value("float", 3.14159, {}), "3.14")
        self.assertEqual(self.registry.format_value("float", 3.14159, {"scale": 4}), "3.1416")


class TestBooleanFieldType(unittest.TestCase):
    def setUp(self) -> None:
        self.registry = FieldTypeRegistry.with_defaults()

    def test_validate_and_process(self) -> None:
        for value in (True, False, 0, 1, "yes", "Off", " TRUE "):
            self.assertEqual(self.registry.validate_value("boolean", value, {}), [], value)
        self.assertEqual(self.registry.validate_value("boolean", "maybe", {}), ["The value must be true or false."])
        self.assertEqual(self.registry.validate_value("boolean", 2, {}), ["The value must be true or false."])
        self.assertIs(self.registry.process_value("boolean", "on", {}), True)
        self.assertIs(self.registry.process_value("boolean", 0, {}), False)
        self.assertIsNone(self.registry.process_value("boolean", None, {}))

    def test_format_labels(self) -> None:
        self.assertEqual(self.registry.format_value("boolean", True, {}), "On")
        self.assertEqual(self.registry.format_value("boolean", "no", {"off_label": "Hidden"}), "Hidden")
        self.assertEqual(self.registry.format_value("boolean", None, {}), "")


class TestDatetimeFieldType(unittest.TestCase):
    def setUp(self) -> None:
        self.registry = FieldTypeRegistry.with_defaults()

    def test_validate(self) -> None:
        self.assertEqual(self.registry.validate_value("datetime", "2024-02-29T12:00:00Z", {}), [])
        self.assertEqual(self.registry.validate_value("datetime", "2024-02-29", {}), [])
        self.assertEqual(self.registry.validate_value("datetime", "2023-02-29", {}), ['The value "2023-02-29" is not a valid ISO 8601 date.'])
        self.assertEqual(self.registry.validate_value("datetime", 1700000000, {}), ['The value "1700000000" is not a valid ISO 8601 date.'])

    def test_process_normalizes_to_utc(self) -> None:
        self.assertEqual(self.registry.process_value("datetime", "2024-05-01T10:30:00+02:00", {}), "2024-05-01T08:30:00Z")
        self.assertEqual(self.registry.process_value("datetime", "2024-05-01T10:30:00", {}), "2024-05-01T10:30:00Z")
        self.assertEqual(self.registry.process_value("datetime", "2024-05-01T23:30:00-02:00", {"datetime_type": "date"}), "2024-05-01")
        self.assertIsNone(self.registry.process_value("datetime", "", {}))

    def test_format(self) -> None:
        self.assertEqual(self.registry.format_value("datetime", "2024-05-01T10:30:00Z", {}, "date"), "2024-05-01")
        self.assertEqual(self.registry.format_value("datetime", "later", {}), "later")


class TestEmailAndUrlFieldTypes(unittest.TestCase):
    def setUp(self) -> None:
        self.registry = FieldTypeRegistry.with_defaults()

    def test_email(self) -> None:
        self.assertEqual(self.registry.validate_value("email", "ada@example.com", {}), [])
        self.assertEqual(self.registry.validate_value("email", "ada@example", {}), ['The email address "ada@example" is not valid.'])
        self.assertEqual(self.registry.validate_value("email", "a b@example.com", {}), ['The email address "a b@example.com" is not valid.'])
        self.assertEqual(self.registry.validate_value("email", 5, {}), ["The email address must be a string."])
        self.assertEqual(self.registry.process_value("email", " Ada@Example.COM ", {}), "Ada@example.com")

    def test_url(self) -> None:
        self.assertEqual(self.registry.validate_value("url", "https://example.com/a?b=1", {}), [])
        self.assertEqual(self.registry.validate_value("url", "ftp://example.com", {}), ['The URL "ftp://example.com" is not valid.'])
        self.assertEqual(self.registry.validate_value("url", "ftp://example.com", {"allowed_schemes": ["ftp"]}), [])
        self.assertEqual(self.registry.validate_value("url", "https://", {}), ['The URL "https://" is not valid.'])
        self.assertEqual(self.registry.process_value("url", " http://example.com ", {}), "http://example.com")


class TestJsonAndUuidFieldTypes(unittest.TestCase):
    def setUp(self) -> None:
        self.registry = FieldTypeRegistry.with_defaults()

    def test_json(self) -> None:
        schema = {"schema": {"type": "object", "required": ["name"]}}
        self.assertEqual(self.registry.validate_value("json", {"name": "x", "tags": [1, 2]}, schema), [])
        self.assertEqual(self.registry.validate_value("json", {"tags": []}, schema), ['The key "name" is required.'])
        self.assertEqual(self.registry.validate_value("json", [1], schema), ["The value must be a JSON object."])
        self.assertEqual(self.registry.validate_value("json", {1, 2}, {}), ["The value must be JSON serializable."])
        self.assertEqual(self.registry.validate_value("json", True, {"schema": {"type": "number"}}), ["The value must be a JSON number."])
        value = {"b": [1], "a": None}
        processed = self.registry.process_value("json", value, {})
        self.assertEqual(processed, value)
        self.assertIsNot(processed["b"], value["b"])
        self.assertEqual(self.registry.format_value("json", value, {}), '{"a": null, "b": [1]}')

    def test_uuid(self) -> None:
        text = "12345678-1234-5678-1234-567812345678"
        self.assertEqual(self.registry.validate_value("uuid", text.upper(), {}), [])
        self.assertEqual(self.registry.validate_value("uuid", "nope", {}), ['The value "nope" is not a valid UUID.'])
        self.assertEqual(self.registry.process_value("uuid", text.upper(), {}), text)
        self.assertIsNone(self.registry.process_value("uuid", None, {}))
        self.assertEqual(self.registry.validate_value("uuid", None, {"auto_generate": True, "required": True}), [])
        generated = self.registry.process_value("uuid", None, {"auto_generate": True})
        self.assertEqual(len(generated), 36)
        self.assertNotEqual(generated, self.registry.process_value("uuid", None, {"auto_generate": True}))


class TestPasswordFieldType(unittest.TestCase):
    def setUp(self) -> None:
        self.registry = FieldTypeRegistry.with_defaults()

    def test_hash_and_verify(self) -> None:
        stored = hash_password("s3cret-pass")
        self.assertTrue(is_password_hash(stored))
        self.assertTrue(verify_password("s3cret-pass", stored))
        self.assertFalse(verify_password("wrong", stored))
        self.assertFalse(verify_password("s3cret-pass", "plain"))

    def test_validate(self) -> None:
        self.assertEqual(self.registry.validate_value("password", "abc", {"min_length": 6}), ["The password must be at least 6 characters."])
        errors = self.registry.validate_value("password", "alllowercase1", {"require_complexity": True})
        self.assertEqual(errors, ["The password must contain upper case, lower case and digits."])
        self.assertEqual(self.registry.validate_value("password", "Str0ngPass", {"require_complexity": True}), [])

    def test_process_hashes_once(self) -> None:
        stored = self.registry.process_value("password", "hunter22", {})
        self.assertTrue(is_password_hash(stored))
        self.assertEqual(self.registry.process_value("password", stored, {}), stored)
        self.assertIsNone(self.registry.process_value("password", "", {}))

    def test_format_and_visibility(self) -> None:
        self.assertEqual(self.registry.format_value("password", "hunter22", {}), "********")
        self.assertEqual(self.registry.format_value("password", "hunter22", {}, "length"), "8 characters")
        self.assertTrue(self.registry.hidden_in_api("password", {}))
        self.assertFalse(self.registry.hidden_in_api("string", {}))


if __name__ == "__main__":
    unittest.main()
