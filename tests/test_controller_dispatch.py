import os
import sys
import unittest


ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
SRC = os.path.join(ROOT, "src")
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)
if SRC not in sys.path:
    sys.path.insert(0, SRC)

from controller import (
    NULL_RESPONSE,
    ControllerContext,
    ResponseData,
    dispatch,
    validate_input,
)
from profile_store import PROFILE_TYPE_STR, ProfileStore
from session_store import SessionStore
from validator import VALIDATION_ERROR
from app.auth import DEV_USER, AccessDeniedError, AccessPolicy
from app.stores import InMemoryTxManager, MemoryProfileBackend, MemorySessionBackend


class RecordingController:
    def __init__(self, valid=True, allowed=True, touch_profile=False, respond=True):
        self.valid = valid
        self.allowed = allowed
        self.touch_profile = touch_profile
        self.respond = respond
        self.calls = []

    def validate_step(self, ctx):
        self.calls.append("validate")
        if not self.valid:
            ctx.set_response(ResponseData(data={"invalid": True}, layout="json"))
        return self.valid

    def authorize_step(self, ctx):
        self.calls.append("authorize")
        return self.allowed

    def execute_step(self, ctx):
        self.calls.append("execute")
        if self.touch_profile:
            ctx.profile.update("web.test.value", "x", PROFILE_TYPE_STR)
        if self.respond:
            ctx.set_response(ResponseData(data={"ok": True}, view="test"))


class FailingProfileBackend(MemoryProfileBackend):
    def write(self, tx, userid, updates, deletes):
        return False


class RaisingProfileBackend(MemoryProfileBackend):
    def write(self, tx, userid, updates, deletes):
        raise RuntimeError("profile table is gone")


class TestDispatch(unittest.TestCase):
    def setUp(self) -> None:
        self.sessions = MemorySessionBackend()
        self.profiles = MemoryProfileBackend()
        self.tx_mgr = InMemoryTxManager()

    def _ctx(self, params=None, profile_backend=None, user=None):
        user = user or dict(DEV_USER)
        return ControllerContext(
            "test.action",
            params or {},
            session=SessionStore(self.sessions, "s1"),
            profile=ProfileStore(user["userid"], profile_backend or self.profiles),
            access=AccessPolicy(user),
            tx_mgr=self.tx_mgr,
            user=user,
        )

    def test_happy_path_runs_all_steps(self) -> None:
        controller = RecordingController()
        response = dispatch(controller, self._ctx())
        self.assertEqual(controller.calls, ["validate", "authorize", "execute"])
        self.assertEqual(response.data, {"ok": True})

    def test_failed_validation_skips_authorize_and_execute(self) -> None:
        controller = RecordingController(valid=False)
        response = dispatch(controller, self._ctx())
        self.assertEqual(controller.calls, ["validate"])
        self.assertEqual(response.data, {"invalid": True})

    def test_denied_request_never_executes(self) -> None:
        controller = RecordingController(allowed=False, touch_profile=True)
        with self.assertRaises(AccessDeniedError):
            dispatch(controller, self._ctx())
        self.assertEqual(controller.calls, ["validate", "authorize"])
        self.assertEqual(self.tx_mgr.started, [])

    def test_only_true_authorizes(self) -> None:
        for result in (1, "yes", None):
            with self.subTest(result=result):
                controller = RecordingController(allowed=result)
                with self.assertRaises(AccessDeniedError):
                    dispatch(controller, self._ctx())
                self.assertNotIn("execute", controller.calls)

    def test_missing_response_is_null(self) -> None:
        response = dispatch(RecordingController(respond=False), self._ctx())
        self.assertIs(response, NULL_RESPONSE)

    def test_profile_changes_commit(self) -> None:
        dispatch(RecordingController(touch_profile=True), self._ctx())
        self.assertEqual(len(self.tx_mgr.started), 1)
        self.assertTrue(self.tx_mgr.started[0].committed)
        rows = self.profiles.load(DEV_USER["userid"])
        self.assertEqual(rows, [{"idx": "web.test.value", "idx2": 0, "value": "x"}])

    def test_unmodified_profile_opens_no_transaction(self) -> None:
        dispatch(RecordingController(), self._ctx())
        self.assertEqual(self.tx_mgr.started, [])

    def test_failed_flush_rolls_back(self) -> None:
        backend = FailingProfileBackend()
        dispatch(RecordingController(touch_profile=True), self._ctx(profile_backend=backend))
        tx = self.tx_mgr.started[0]
        self.assertTrue(tx.rolled_back)
        self.assertFalse(tx.committed)

    def test_flush_error_rolls_back_and_propagates(self) -> None:
        backend = RaisingProfileBackend()
        with self.assertRaises(RuntimeError):
            dispatch(RecordingController(touch_profile=True), self._ctx(profile_backend=backend))
        self.assertTrue(self.tx_mgr.started[0].rolled_back)


class TestValidateInput(unittest.TestCase):
    def setUp(self) -> None:
        self.sessions = MemorySessionBackend()

    def _ctx(self, params):
        return ControllerContext(
            "test.action",
            params,
            session=SessionStore(self.sessions, "s1"),
            profile=None,
            access=AccessPolicy(dict(DEV_USER)),
            tx_mgr=InMemoryTxManager(),
        )

    def test_form_data_is_merged_and_consumed(self) -> None:
        rules = {"name": "string", "page": "int32"}
        ctx = self._ctx({"page": "2"})
        ctx.session.set_form_data({"name": "remembered", "page": "9"})
        self.assertTrue(validate_input(ctx, rules))
        self.assertEqual(ctx.get_input("name"), "remembered")
        self.assertEqual(ctx.get_input("page"), "9")
        self.assertIsNone(ctx.session.pop_form_data())

    def test_errors_go_to_message_bag(self) -> None:
        ctx = self._ctx({"page": "x", "name": "ok"})
        self.assertFalse(validate_input(ctx, {"name": "string", "page": "int32"}))
        self.assertEqual(ctx.validation_result, VALIDATION_ERROR)
        self.assertEqual(ctx.get_input_all(), {"name": "ok"})
        self.assertTrue(ctx.messages.has_errors())

    def test_fatal_errors_leave_input_empty(self) -> None:
        ctx = self._ctx({})
        self.assertFalse(validate_input(ctx, {"moduleids": "required|array_id"}))
        self.assertEqual(ctx.get_input_all(), {})
        self.assertEqual(ctx.messages.peek()[0]["message"], 'Field "moduleids" is mandatory.')


if __name__ == "__main__":
    unittest.main()
