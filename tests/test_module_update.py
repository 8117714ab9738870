import json
import os
import sys
import tempfile
import unittest


ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
SRC = os.path.join(ROOT, "src")
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)
if SRC not in sys.path:
    sys.path.insert(0, SRC)

from fastapi.testclient import TestClient

os.environ["USE_DB"] = "0"
os.environ["BEACON_DISABLE_AUTH"] = "1"
os.environ["BEACON_SECRET_KEY"] = "beacon-test-secret-key-32-bytes!"

import app.main as main
from beacon.session_cookie import encode_cookie
from module_registry import MODULE_STATUS_DISABLED, MODULE_STATUS_ENABLED, ModuleRegistry


def write_manifest(root, relative_path, name, namespace, actions=None):
    path = os.path.join(root, relative_path)
    os.makedirs(path, exist_ok=True)
    manifest = {
        "manifest_version": 2.0,
        "id": relative_path,
        "name": name,
        "namespace": namespace,
        "version": "1.0",
        "actions": actions or {},
    }
    with open(os.path.join(path, "manifest.json"), "w", encoding="utf-8") as fh:
        json.dump(manifest, fh)


class TestModuleUpdate(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        root = self._tmp.name
        write_manifest(root, "alpha", "Alpha", "Alpha", {"alpha.view": {}})
        write_manifest(root, "beta", "Beta", "Beta", {"beta.view": {}})
        # gamma reuses alpha's namespace
        write_manifest(root, "gamma", "Gamma", "Alpha", {"gamma.view": {}})

        self.registry = ModuleRegistry()
        self.registry.create(
            [
                {"moduleid": 5, "relative_path": "alpha"},
                {"moduleid": 6, "relative_path": "beta"},
                {"moduleid": 7, "relative_path": "gamma"},
            ]
        )
        self._saved = dict(main.SERVICES)
        main.SERVICES["modules"] = self.registry
        main.SERVICES["modules_dir"] = root
        main.session_backend.delete("dev")
        self.client = TestClient(main.app)

    def tearDown(self) -> None:
        main.SERVICES.clear()
        main.SERVICES.update(self._saved)
        os.environ["BEACON_DISABLE_AUTH"] = "1"
        self._tmp.cleanup()

    def _statuses(self):
        return {mid: rec["status"] for mid, rec in self.registry.get(output=["status"]).items()}

    def _post(self, body, client=None):
        return (client or self.client).post("/zabbix.php?action=module.update", json=body)

    def test_enable_modules(self) -> None:
        res = self._post({"moduleids": [5, 6], "status": 1})
        self.assertEqual(res.status_code, 200)
        self.assertEqual(res.json(), {"success": {"title": "Module updated: Alpha."}})
        self.assertEqual(
            self._statuses(),
            {5: MODULE_STATUS_ENABLED, 6: MODULE_STATUS_ENABLED, 7: MODULE_STATUS_DISABLED},
        )
        self.assertEqual(self.registry.history(5)[0]["actor"]["username"], "Admin")

    def test_enable_from_form_post(self) -> None:
        res = self.client.post("/zabbix.php?action=module.update", data={"moduleids[]": ["6"], "status": "1"})
        self.assertEqual(res.json(), {"success": {"title": "Module updated: Beta."}})
        self.assertEqual(self._statuses()[6], MODULE_STATUS_ENABLED)

    def test_missing_status_disables(self) -> None:
        self.registry.update([{"moduleid": 6, "status": MODULE_STATUS_ENABLED}])
        res = self._post({"moduleids": [6]})
        self.assertEqual(res.json(), {"success": {"title": "Module updated: Beta."}})
        self.assertEqual(self._statuses()[6], MODULE_STATUS_DISABLED)

    def test_conflict_blocks_update(self) -> None:
        res = self._post({"moduleids": [5, 7], "status": 1})
        self.assertEqual(res.status_code, 200)
        self.assertEqual(
            res.json(),
            {
                "error": {
                    "title": "Cannot update module: Alpha.",
                    "messages": ["Identical namespace (Alpha) is used by modules located at alpha, gamma."],
                }
            },
        )
        self.assertEqual(set(self._statuses().values()), {MODULE_STATUS_DISABLED})

    def test_conflicts_among_disabled_modules_are_ignored(self) -> None:
        # alpha and gamma clash, but both stay disabled
        res = self._post({"moduleids": [6], "status": 1})
        self.assertIn("success", res.json())

    def test_unknown_moduleid_is_denied(self) -> None:
        res = self._post({"moduleids": [5, 99], "status": 1})
        self.assertEqual(res.status_code, 403)
        self.assertIn("No permissions to referred object or it does not exist!", res.text)
        self.assertEqual(set(self._statuses().values()), {MODULE_STATUS_DISABLED})

    def test_unreadable_manifest_leaves_name_empty(self) -> None:
        self.registry.create([{"moduleid": 8, "relative_path": "ghost"}])
        res = self._post({"moduleids": [8], "status": 1})
        self.assertEqual(res.json(), {"success": {"title": "Module updated: ."}})

    def test_invalid_input(self) -> None:
        res = self._post({"status": 1})
        self.assertEqual(res.status_code, 200)
        self.assertEqual(res.json(), {"error": {"messages": ['Field "moduleids" is mandatory.']}})
        res = self._post({"moduleids": ["x"], "status": 1})
        self.assertIn("error", res.json())
        self.assertEqual(set(self._statuses().values()), {MODULE_STATUS_DISABLED})

    def test_empty_selection_is_rejected(self) -> None:
        res = self._post({"moduleids": [], "status": 1})
        self.assertEqual(res.status_code, 200)
        self.assertEqual(
            res.json(),
            {"error": {"messages": ['Incorrect value for field "moduleids": cannot be empty.']}},
        )
        self.assertEqual(set(self._statuses().values()), {MODULE_STATUS_DISABLED})
        self.assertEqual(self.registry.history(5), [])

    def test_regular_user_is_denied(self) -> None:
        os.environ["BEACON_DISABLE_AUTH"] = "0"
        user = main.users.add_user({"username": "operator", "type": 1})
        sessionid = main.users.create_session(user["userid"])
        cookie = encode_cookie({"sessionid": sessionid}, main.SECRET_KEY or "")
        client = TestClient(main.app, cookies={main.COOKIE_NAME: cookie})
        res = self._post({"moduleids": [5], "status": 1}, client=client)
        self.assertEqual(res.status_code, 403)
        self.assertIn("You are logged in as &#34;operator&#34;", res.text)
        self.assertEqual(self._statuses()[5], MODULE_STATUS_DISABLED)

    def test_guest_is_denied(self) -> None:
        os.environ["BEACON_DISABLE_AUTH"] = "0"
        res = self._post({"moduleids": [5], "status": 1})
        self.assertEqual(res.status_code, 403)
        self.assertIn("You are logged in as &#34;guest&#34;", res.text)


if __name__ == "__main__":
    unittest.main()
