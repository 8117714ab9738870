import base64
import hashlib
import json
import os
import sys
import unittest


ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
SRC = os.path.join(ROOT, "src")
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)
if SRC not in sys.path:
    sys.path.insert(0, SRC)

from itsdangerous import Signer

from beacon import decode_cookie, encode_cookie, sign_payload, validate_same_site
from profile_store import PROFILE_TYPE_ID, PROFILE_TYPE_INT, PROFILE_TYPE_STR, ProfileStore
from session_store import SessionStore
from app.stores import InMemoryTx, MemoryProfileBackend, MemorySessionBackend


class TestSessionStore(unittest.TestCase):
    def setUp(self) -> None:
        self.backend = MemorySessionBackend()

    def test_writes_persist_on_write_close(self) -> None:
        session = SessionStore(self.backend, "abc")
        session.set("mfaid", 1)
        self.assertIsNone(self.backend.load("abc"))
        session.write_close()
        self.assertEqual(self.backend.load("abc"), {"mfaid": 1})
        self.assertEqual(SessionStore(self.backend, "abc").mfaid, 1)

    def test_unset_and_typed_accessors(self) -> None:
        session = SessionStore(self.backend, "abc")
        session.set("state", "duo-state")
        session.set("username", "Admin")
        session.unset(["state", "missing"])
        self.assertIsNone(session.state)
        self.assertEqual(session.username, "Admin")
        self.assertFalse(session.has("state"))

    def test_form_data_is_read_once(self) -> None:
        session = SessionStore(self.backend, "abc")
        session.set_form_data({"name": "x"})
        self.assertEqual(session.pop_form_data(), {"name": "x"})
        self.assertIsNone(session.pop_form_data())

    def test_messages_stash(self) -> None:
        session = SessionStore(self.backend, "abc")
        session.push_messages([{"type": "info", "message": "one"}])
        session.push_messages([{"type": "error", "message": "two"}])
        session.write_close()
        reopened = SessionStore(self.backend, "abc")
        self.assertEqual([m["message"] for m in reopened.pop_messages()], ["one", "two"])
        self.assertEqual(reopened.pop_messages(), [])

    def test_rebind_moves_data(self) -> None:
        session = SessionStore(self.backend, "old")
        session.set("request", "zabbix.php?action=trigger.list")
        session.rebind("new")
        session.write_close()
        self.assertIsNone(self.backend.load("old"))
        self.assertEqual(self.backend.load("new"), {"request": "zabbix.php?action=trigger.list"})

    def test_rebind_drops_saved_pre_login_entry(self) -> None:
        self.backend.save("pending", {"mfaid": 1, "state": "duo-state"})
        session = SessionStore(self.backend, "pending")
        session.rebind("fresh")
        session.unset(["mfaid", "state"])
        session.set("sessionid", "fresh")
        self.assertEqual(self.backend.load("pending"), {"mfaid": 1, "state": "duo-state"})
        session.write_close()
        self.assertIsNone(self.backend.load("pending"))
        self.assertEqual(self.backend.load("fresh"), {"sessionid": "fresh"})

    def test_rebind_to_same_id_keeps_entry(self) -> None:
        self.backend.save("abc", {"mfaid": 1})
        session = SessionStore(self.backend, "abc")
        session.rebind("abc")
        session.write_close()
        self.assertEqual(self.backend.load("abc"), {"mfaid": 1})

    def test_returned_values_are_copies(self) -> None:
        session = SessionStore(self.backend, "abc")
        session.set("api_auth", {"auth": "a"})
        session.api_auth["auth"] = "b"
        self.assertEqual(session.api_auth, {"auth": "a"})


class TestProfileStore(unittest.TestCase):
    def setUp(self) -> None:
        self.backend = MemoryProfileBackend()

    def _flush(self, profile):
        tx = InMemoryTx()
        ok = profile.flush(tx)
        tx.commit()
        return ok

    def test_updates_are_buffered_until_flush(self) -> None:
        profile = ProfileStore("1", self.backend)
        profile.update("web.hosts.triggers.filter_name", "cpu", PROFILE_TYPE_STR)
        self.assertEqual(profile.get("web.hosts.triggers.filter_name"), "cpu")
        self.assertEqual(self.backend.load("1"), [])
        self.assertTrue(self._flush(profile))
        self.assertFalse(profile.is_modified())
        self.assertEqual(ProfileStore("1", self.backend).get("web.hosts.triggers.filter_name"), "cpu")

    def test_rollback_discards_writes(self) -> None:
        profile = ProfileStore("1", self.backend)
        profile.update("web.x", 3, PROFILE_TYPE_INT)
        tx = InMemoryTx()
        profile.flush(tx)
        tx.rollback()
        self.assertEqual(self.backend.load("1"), [])

    def test_same_value_is_not_a_change(self) -> None:
        profile = ProfileStore("1", self.backend)
        profile.update("web.x", 3, PROFILE_TYPE_INT)
        self._flush(profile)
        again = ProfileStore("1", self.backend)
        again.update("web.x", "3", PROFILE_TYPE_INT)
        self.assertFalse(again.is_modified())

    def test_arrays(self) -> None:
        profile = ProfileStore("1", self.backend)
        profile.update_array("web.hosts.triggers.filter_hostids", ["10", "11", "12"], PROFILE_TYPE_ID)
        self._flush(profile)
        profile = ProfileStore("1", self.backend)
        self.assertEqual(profile.get_array("web.hosts.triggers.filter_hostids"), [10, 11, 12])
        profile.update_array("web.hosts.triggers.filter_hostids", ["11"], PROFILE_TYPE_ID)
        self.assertEqual(profile.get_array("web.hosts.triggers.filter_hostids"), [11])
        self._flush(profile)
        self.assertEqual(ProfileStore("1", self.backend).get_array("web.hosts.triggers.filter_hostids"), [11])

    def test_delete(self) -> None:
        profile = ProfileStore("1", self.backend)
        profile.update("web.x", "a", PROFILE_TYPE_STR)
        self._flush(profile)
        profile.delete("web.x")
        self.assertEqual(profile.get("web.x", "default"), "default")
        self._flush(profile)
        self.assertEqual(self.backend.load("1"), [])

    def test_users_are_isolated(self) -> None:
        first = ProfileStore("1", self.backend)
        first.update("web.x", "a", PROFILE_TYPE_STR)
        self._flush(first)
        self.assertIsNone(ProfileStore("2", self.backend).get("web.x"))

    def test_unknown_value_type(self) -> None:
        with self.assertRaises(ValueError):
            ProfileStore("1", self.backend).update("web.x", "a", 9)


class TestSessionCookie(unittest.TestCase):
    SECRET = "s" * 32

    def test_signed_cookie_round_trip(self) -> None:
        value = encode_cookie({"sessionid": "abc", "mfaid": "1"}, self.SECRET)
        payload = decode_cookie(value, self.SECRET)
        self.assertEqual(payload["sessionid"], "abc")
        self.assertEqual(payload["mfaid"], "1")

    def test_tampered_cookie_is_empty(self) -> None:
        value = encode_cookie({"sessionid": "abc"}, self.SECRET)
        data = json.loads(base64.b64decode(value))
        data["sessionid"] = "other"
        forged = base64.b64encode(json.dumps(data).encode("utf-8")).decode("ascii")
        self.assertEqual(decode_cookie(forged, self.SECRET), {})
        self.assertEqual(decode_cookie(value, "x" * 32), {})

    def test_sign_field_is_signer_signature(self) -> None:
        value = encode_cookie({"sessionid": "abc"}, self.SECRET)
        data = json.loads(base64.b64decode(value))
        signer = Signer(self.SECRET, salt="beacon.session-cookie", digest_method=hashlib.sha256)
        self.assertTrue(signer.verify_signature(b'{"sessionid":"abc"}', data["sign"]))
        self.assertEqual(data["sign"], sign_payload({"sessionid": "abc"}, self.SECRET))

        data["sign"] = "not-a-signature"
        forged = base64.b64encode(json.dumps(data).encode("utf-8")).decode("ascii")
        self.assertEqual(decode_cookie(forged, self.SECRET), {})

    def test_garbage_is_empty(self) -> None:
        for value in (None, "", "!!!", base64.b64encode(b"[1, 2]").decode("ascii")):
            with self.subTest(value=value):
                self.assertEqual(decode_cookie(value, self.SECRET), {})

    def test_unsigned_decode(self) -> None:
        raw = base64.b64encode(b'{"sessionid": "abc"}').decode("ascii")
        self.assertEqual(decode_cookie(raw), {"sessionid": "abc"})


class TestSameSite(unittest.TestCase):
    def test_relative_urls(self) -> None:
        self.assertTrue(validate_same_site("zabbix.php?action=trigger.list"))
        self.assertTrue(validate_same_site("/zabbix.php"))

    def test_foreign_hosts(self) -> None:
        self.assertFalse(validate_same_site("https://evil.example/", "console.local"))
        self.assertFalse(validate_same_site("//evil.example/x", "console.local"))
        self.assertFalse(validate_same_site("javascript:alert(1)", "console.local"))
        self.assertFalse(validate_same_site("/a\r\nLocation: x"))

    def test_own_host(self) -> None:
        self.assertTrue(validate_same_site("http://console.local/zabbix.php", "console.local"))
        self.assertFalse(validate_same_site("http://console.local/zabbix.php"))


if __name__ == "__main__":
    unittest.main()
