import os
import sys
import unittest


ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
SRC = os.path.join(ROOT, "src")
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)
if SRC not in sys.path:
    sys.path.insert(0, SRC)

from module_registry import MODULE_STATUS_DISABLED, MODULE_STATUS_ENABLED, ModuleRegistry


class TestModuleRegistry(unittest.TestCase):
    def setUp(self) -> None:
        self.registry = ModuleRegistry()
        self.registry.create(
            [
                {"moduleid": 5, "id": "geomap", "relative_path": "geomap"},
                {"moduleid": 6, "id": "clock", "relative_path": "clock", "status": MODULE_STATUS_ENABLED},
                {"moduleid": 7, "id": "actionlog", "relative_path": "actionlog"},
            ]
        )

    def test_get_is_keyed_by_moduleid(self) -> None:
        modules = self.registry.get(moduleids=["6", 5, "nope"], output=[])
        self.assertEqual(modules, {5: {}, 6: {}})

    def test_get_sorted_by_field(self) -> None:
        modules = self.registry.get(output=["relative_path", "status"], sortfield="relative_path")
        self.assertEqual(list(modules), [7, 6, 5])
        self.assertEqual(modules[6], {"relative_path": "clock", "status": MODULE_STATUS_ENABLED})

    def test_get_filter(self) -> None:
        modules = self.registry.get(filter={"status": MODULE_STATUS_ENABLED})
        self.assertEqual(list(modules), [6])

    def test_get_rejects_unknown_sortfield(self) -> None:
        with self.assertRaises(ValueError):
            self.registry.get(sortfield="name")

    def test_create_rejects_duplicates(self) -> None:
        with self.assertRaises(ValueError):
            self.registry.create([{"moduleid": 5, "relative_path": "again"}])

    def test_update_records_history(self) -> None:
        ok = self.registry.update(
            [{"moduleid": 5, "status": MODULE_STATUS_ENABLED}],
            actor={"username": "Admin"},
            reason="enable",
        )
        self.assertTrue(ok)
        self.assertEqual(self.registry.get(moduleids=[5])[5]["status"], MODULE_STATUS_ENABLED)
        history = self.registry.history(5)
        self.assertEqual(len(history), 1)
        self.assertEqual(history[0]["action"], "enable")
        self.assertEqual(history[0]["from_status"], MODULE_STATUS_DISABLED)
        self.assertEqual(history[0]["to_status"], MODULE_STATUS_ENABLED)

    def test_update_is_all_or_nothing(self) -> None:
        ok = self.registry.update(
            [
                {"moduleid": 5, "status": MODULE_STATUS_ENABLED},
                {"moduleid": 99, "status": MODULE_STATUS_ENABLED},
            ]
        )
        self.assertFalse(ok)
        self.assertEqual(self.registry.last_errors()[0]["code"], "MODULE_NOT_FOUND")
        self.assertEqual(self.registry.get(moduleids=[5])[5]["status"], MODULE_STATUS_DISABLED)
        self.assertEqual(self.registry.history(5), [])

    def test_update_rejects_invalid_status(self) -> None:
        self.assertFalse(self.registry.update([{"moduleid": 5, "status": 3}]))
        self.assertEqual(self.registry.last_errors()[0]["path"], "records[0].status")


if __name__ == "__main__":
    unittest.main()
