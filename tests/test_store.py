#!/usr/bin/env python3
"""
Swap store tests: compare-and-set, queries, persistence, cursors.
"""

import sys
import os
import json
import shutil
import tempfile
import unittest

# Add package to path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from xswap.core import SwapStatus, NON_TERMINAL_STATUSES
from xswap.errors import AlreadyExistsError, NotFoundError, ValidationError
from xswap.swap.store import SwapStore, SwapSession


def make_session(swap_id="swap_1", status=SwapStatus.PENDING) -> SwapSession:
    return SwapSession(
        swap_id=swap_id,
        direction="chain_a->chain_b",
        status=status,
        hashlock="ab" * 32,
        src_chain="chain_a",
        dst_chain="chain_b",
        terms={"src_amount": 1000},
    )


class TestSwapStore(unittest.TestCase):

    def setUp(self):
        self.store = SwapStore()
        self.store.create(make_session())

    def test_create_and_get(self):
        session = self.store.get("swap_1")
        self.assertEqual(session.status, SwapStatus.PENDING)
        self.assertEqual(session.terms, {"src_amount": 1000})
        self.assertGreater(session.created_at, 0)
        self.assertFalse(session.is_terminal)

    def test_duplicate_create(self):
        with self.assertRaises(AlreadyExistsError):
            self.store.create(make_session())

    def test_missing(self):
        with self.assertRaises(NotFoundError):
            self.store.get("nope")
        with self.assertRaises(NotFoundError):
            self.store.compare_and_set("nope", SwapStatus.PENDING, SwapStatus.FAILED)

    def test_compare_and_set(self):
        ok = self.store.compare_and_set("swap_1", SwapStatus.PENDING,
                                        SwapStatus.SRC_ESCROW_CREATED,
                                        src_contract_id="cd" * 32)
        self.assertTrue(ok)
        session = self.store.get("swap_1")
        self.assertEqual(session.status, SwapStatus.SRC_ESCROW_CREATED)
        self.assertEqual(session.src_contract_id, "cd" * 32)

        # Stale expectation loses and writes nothing
        ok = self.store.compare_and_set("swap_1", SwapStatus.PENDING, SwapStatus.FAILED,
                                        error="late")
        self.assertFalse(ok)
        session = self.store.get("swap_1")
        self.assertEqual(session.status, SwapStatus.SRC_ESCROW_CREATED)
        self.assertIsNone(session.error)

    def test_compare_and_set_any_of(self):
        ok = self.store.compare_and_set("swap_1", NON_TERMINAL_STATUSES, SwapStatus.FAILED)
        self.assertTrue(ok)
        self.assertTrue(self.store.get("swap_1").is_terminal)

    def test_update_fields_cannot_touch_status(self):
        with self.assertRaises(ValidationError):
            self.store.update_fields("swap_1", status="completed")
        session = self.store.update_fields("swap_1", receipts={"src_create": "0x1"})
        self.assertEqual(session.receipts, {"src_create": "0x1"})
        self.assertEqual(session.status, SwapStatus.PENDING)

    def test_query_by_status(self):
        self.store.create(make_session("swap_2", SwapStatus.REFUNDED))
        self.store.create(make_session("swap_3", SwapStatus.SECRET_REVEALED))
        live = {s.swap_id for s in self.store.query_by_status(NON_TERMINAL_STATUSES)}
        self.assertEqual(live, {"swap_1", "swap_3"})
        self.assertEqual(len(self.store.list()), 3)

    def test_to_dict_hides_preimage(self):
        self.store.update_fields("swap_1", preimage="11" * 32)
        data = self.store.get("swap_1").to_dict(include_preimage=False)
        self.assertNotIn("preimage", data)
        self.assertEqual(data["status"], "pending")

    def test_cursors(self):
        self.assertIsNone(self.store.get_cursor("chain_a"))
        self.store.set_cursor("chain_a", 42)
        self.assertEqual(self.store.get_cursor("chain_a"), 42)


class TestSwapStorePersistence(unittest.TestCase):

    def setUp(self):
        self.tmpdir = tempfile.mkdtemp()
        self.path = os.path.join(self.tmpdir, "nested", "swaps.json")

    def tearDown(self):
        shutil.rmtree(self.tmpdir, ignore_errors=True)

    def test_reload(self):
        store = SwapStore(self.path)
        store.create(make_session())
        store.compare_and_set("swap_1", SwapStatus.PENDING, SwapStatus.SRC_ESCROW_CREATED)
        store.set_cursor("chain_b", 7)

        reopened = SwapStore(self.path)
        self.assertEqual(reopened.get("swap_1").status, SwapStatus.SRC_ESCROW_CREATED)
        self.assertEqual(reopened.get_cursor("chain_b"), 7)
        self.assertFalse(os.path.exists(self.path + ".tmp"))

    def test_file_layout(self):
        store = SwapStore(self.path)
        store.create(make_session())
        with open(self.path) as f:
            data = json.load(f)
        self.assertIn("swap_1", data["swaps"])
        self.assertEqual(data["swaps"]["swap_1"]["status"], "pending")
        self.assertEqual(data["cursors"], {})


if __name__ == "__main__":
    unittest.main()
