import contextvars
import os
import sys
import threading
import unittest
from unittest.mock import patch


ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
SRC = os.path.join(ROOT, "src")
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)
if SRC not in sys.path:
    sys.path.insert(0, SRC)

from app.db import get_active_conn
from app.stores_db import DbTxManager


class FakeConn:
    def __init__(self, name):
        self.name = name
        self.commits = 0
        self.rollbacks = 0

    def commit(self):
        self.commits += 1

    def rollback(self):
        self.rollbacks += 1


class FakePool:
    def __init__(self):
        self.handed_out = []
        self.returned = []
        self._lock = threading.Lock()

    def getconn(self):
        with self._lock:
            conn = FakeConn(f"conn{len(self.handed_out)}")
            self.handed_out.append(conn)
            return conn

    def putconn(self, conn):
        with self._lock:
            self.returned.append(conn)


class TestDbTxManager(unittest.TestCase):
    def setUp(self) -> None:
        self.pool = FakePool()
        patchers = [
            patch("app.stores_db.init_pool", lambda *args, **kwargs: None),
            patch("app.stores_db.get_pool", lambda: self.pool),
        ]
        for patcher in patchers:
            patcher.start()
            self.addCleanup(patcher.stop)
        self.mgr = DbTxManager()

    def test_nested_begin_shares_connection(self) -> None:
        outer = self.mgr.begin()
        inner = self.mgr.begin()
        self.assertIs(inner.conn, outer.conn)
        inner.commit()
        self.assertEqual(outer.conn.commits, 0)
        outer.commit()
        self.assertEqual(outer.conn.commits, 1)
        self.assertEqual(self.pool.returned, [outer.conn])
        self.assertIsNone(get_active_conn())

    def test_concurrent_threads_get_their_own_transaction(self) -> None:
        outer = self.mgr.begin()
        started = threading.Event()
        release = threading.Event()
        seen = {}

        def worker():
            tx = self.mgr.begin()
            seen["conn"] = tx.conn
            seen["active"] = get_active_conn()
            started.set()
            release.wait(5)
            tx.commit()
            seen["active_after"] = get_active_conn()

        thread = threading.Thread(target=contextvars.Context().run, args=(worker,))
        thread.start()
        self.assertTrue(started.wait(5))
        self.assertIsNot(seen["conn"], outer.conn)
        self.assertIs(seen["active"], seen["conn"])
        release.set()
        thread.join(5)

        self.assertEqual(seen["conn"].commits, 1)
        self.assertIsNone(seen["active_after"])
        # the worker's commit leaves this thread's transaction open
        self.assertEqual(outer.conn.commits, 0)
        self.assertNotIn(outer.conn, self.pool.returned)
        self.assertIs(get_active_conn(), outer.conn)

        outer.commit()
        self.assertEqual(outer.conn.commits, 1)
        self.assertEqual(self.pool.returned, [seen["conn"], outer.conn])

    def test_rollback_releases_connection(self) -> None:
        tx = self.mgr.begin()
        tx.rollback()
        self.assertEqual(tx.conn.rollbacks, 1)
        self.assertEqual(self.pool.returned, [tx.conn])
        self.assertIsNone(get_active_conn())


if __name__ == "__main__":
    unittest.main()
