import os
import sys
import unittest


ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)

from validator import (
    VALIDATION_ERROR,
    VALIDATION_FATAL_ERROR,
    VALIDATION_OK,
    parse_rule,
    validate,
)


MODULE_RULES = {
    "moduleids": "required|array_db module.moduleid",
    "status": "in 1",
    "form_refresh": "int32",
}


class TestParseRule(unittest.TestCase):
    def test_parses_flags_and_arguments(self) -> None:
        rule = parse_rule("required|array_db module.moduleid")
        self.assertEqual(rule, {"required": True, "array_db": ("module", "moduleid")})
        self.assertEqual(parse_rule("in host,template"), {"in": ["host", "template"]})
        self.assertEqual(parse_rule("int32|ge 1"), {"int32": True, "ge": 1})

    def test_malformed_rules_raise(self) -> None:
        for expression in ("bogus", "in", "ge x", "db nosuch.field", "array_db module", "required 1", "array|array_id"):
            with self.subTest(expression=expression):
                with self.assertRaises(ValueError):
                    parse_rule(expression)

    def test_validate_rejects_malformed_rules_before_input(self) -> None:
        with self.assertRaises(ValueError):
            validate({}, {"x": "in"})


class TestValidate(unittest.TestCase):
    def test_valid_input_is_kept(self) -> None:
        result = validate({"moduleids": [5, "6"], "status": "1"}, MODULE_RULES)
        self.assertEqual(result.status, VALIDATION_OK)
        self.assertEqual(result.input, {"moduleids": [5, "6"], "status": "1"})
        self.assertEqual(result.errors, [])

    def test_undeclared_params_are_dropped(self) -> None:
        result = validate({"moduleids": [1], "sid": "abc"}, MODULE_RULES)
        self.assertTrue(result.ok)
        self.assertNotIn("sid", result.input)

    def test_missing_required_is_fatal(self) -> None:
        result = validate({"status": "1"}, MODULE_RULES)
        self.assertEqual(result.status, VALIDATION_FATAL_ERROR)
        self.assertEqual(result.input, {})
        self.assertIn('Field "moduleids" is mandatory.', result.errors)

    def test_array_rule_on_scalar_is_fatal(self) -> None:
        result = validate({"moduleids": "5"}, MODULE_RULES)
        self.assertTrue(result.is_fatal)

    def test_non_numeric_ids_are_fatal(self) -> None:
        result = validate({"moduleids": ["abc"]}, MODULE_RULES)
        self.assertTrue(result.is_fatal)

    def test_scalar_failure_is_recoverable(self) -> None:
        result = validate({"moduleids": [5], "status": "2"}, MODULE_RULES)
        self.assertEqual(result.status, VALIDATION_ERROR)
        self.assertEqual(result.input, {"moduleids": [5]})
        self.assertEqual(len(result.errors), 1)
        self.assertIn('"status"', result.errors[0])

    def test_fatal_flag_escalates_scalar_failure(self) -> None:
        result = validate({"page": "x"}, {"page": "int32|fatal"})
        self.assertTrue(result.is_fatal)

    def test_int32_bounds(self) -> None:
        self.assertTrue(validate({"n": "2147483647"}, {"n": "int32"}).ok)
        self.assertFalse(validate({"n": "2147483648"}, {"n": "int32"}).ok)
        self.assertFalse(validate({"n": True}, {"n": "int32"}).ok)

    def test_ge_and_le(self) -> None:
        rules = {"show_lines": "int32|ge 1|le 100"}
        self.assertTrue(validate({"show_lines": "100"}, rules).ok)
        self.assertFalse(validate({"show_lines": "0"}, rules).ok)
        self.assertFalse(validate({"show_lines": 101}, rules).ok)

    def test_not_empty(self) -> None:
        rules = {"g_triggerid": "required|not_empty|array_id"}
        self.assertTrue(validate({"g_triggerid": []}, rules).is_fatal)
        self.assertTrue(validate({"g_triggerid": ["1", 2]}, rules).ok)

    def test_json_rule(self) -> None:
        self.assertTrue(validate({"fields": '{"a": 1}'}, {"fields": "json"}).ok)
        result = validate({"fields": "{broken"}, {"fields": "json"})
        self.assertEqual(result.status, VALIDATION_ERROR)
        self.assertEqual(result.input, {})

    def test_db_string_length(self) -> None:
        self.assertTrue(validate({"name": "x" * 255}, {"name": "db widget.name"}).ok)
        self.assertFalse(validate({"name": "x" * 256}, {"name": "db widget.name"}).ok)

    def test_exists_uses_lookup(self) -> None:
        calls = []

        def lookup(table, column, values):
            calls.append((table, column, list(values)))
            return [v for v in values if str(v) in {"1", "2"}]

        rules = {"hostids": "array_id|exists hosts.hostid"}
        self.assertTrue(validate({"hostids": ["1", "2"]}, rules, lookup=lookup).ok)
        result = validate({"hostids": ["1", "3"]}, rules, lookup=lookup)
        self.assertEqual(result.status, VALIDATION_ERROR)
        self.assertEqual(calls[0], ("hosts", "hostid", ["1", "2"]))

    def test_exists_without_lookup_raises(self) -> None:
        with self.assertRaises(ValueError):
            validate({"hostid": "1"}, {"hostid": "id|exists hosts.hostid"})


if __name__ == "__main__":
    unittest.main()
