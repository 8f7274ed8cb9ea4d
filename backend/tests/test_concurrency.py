from __future__ import annotations

import os
import threading
import unittest
from unittest.mock import patch

from marketroute.errors import Conflict, ValidationError
from marketroute.utils.concurrency import KeyedLocks, retry_on_conflict


class KeyedLocksTestCase(unittest.TestCase):
    def test_same_key_serializes_critical_sections(self):
        locks = KeyedLocks()
        inside = []
        overlaps = []

        def worker():
            for _ in range(200):
                with locks.hold("order-1"):
                    inside.append(1)
                    if len(inside) > 1:
                        overlaps.append(True)
                    inside.pop()

        threads = [threading.Thread(target=worker) for _ in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        self.assertEqual(overlaps, [])
        self.assertEqual(locks.active_keys(), 0)

    def test_lock_is_reentrant_and_released(self):
        locks = KeyedLocks()
        with locks.hold("a"):
            with locks.hold("a"):
                self.assertEqual(locks.active_keys(), 1)
            with locks.hold("b"):
                self.assertEqual(locks.active_keys(), 2)
        self.assertEqual(locks.active_keys(), 0)


class RetryOnConflictTestCase(unittest.TestCase):
    def setUp(self):
        self._env = patch.dict(os.environ, {"CONFLICT_RETRY_BASE_MS": "0"}, clear=False)
        self._env.start()

    def tearDown(self):
        self._env.stop()

    def test_retries_until_success(self):
        calls = []

        def flaky():
            calls.append(1)
            if len(calls) < 3:
                raise Conflict("stale version")
            return "done"

        self.assertEqual(retry_on_conflict(flaky, attempts=5, label="test"), "done")
        self.assertEqual(len(calls), 3)

    def test_exhausted_budget_reraises_conflict(self):
        calls = []

        def always():
            calls.append(1)
            raise Conflict("stale version")

        with self.assertRaises(Conflict):
            retry_on_conflict(always, attempts=2)
        self.assertEqual(len(calls), 2)

    def test_other_errors_are_not_retried(self):
        calls = []

        def invalid():
            calls.append(1)
            raise ValidationError("bad input")

        with self.assertRaises(ValidationError):
            retry_on_conflict(invalid, attempts=4)
        self.assertEqual(len(calls), 1)


if __name__ == "__main__":
    unittest.main()
