#!/usr/bin/env python3
"""
HTTP API tests against an injected relayer over local ledgers.
"""

import sys
import os
import unittest

# Add package to path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from fastapi.testclient import TestClient

from xswap.core import hash_secret
from routes import swaps as swap_routes
from server import app, build_adapter
from xswap.chains.local import LocalChainAdapter
from xswap.errors import ValidationError
from tests.simulation import (
    SimClock, MAKER, RESOLVER, funded_ledgers, local_adapters, build_relayer,
)

CREATE_BODY = {
    "src_chain": "chain_a",
    "dst_chain": "chain_b",
    "maker_src": MAKER,
    "taker_src": RESOLVER,
    "maker_dst": MAKER,
    "taker_dst": RESOLVER,
    "src_token": "TKA",
    "dst_token": "TKB",
    "src_amount": 1000,
    "dst_amount": 2000,
    "src_delays": {"finality": 60, "withdrawal": 120, "public_withdrawal": 600,
                   "cancellation": 7200, "public_cancellation": 7800},
    "dst_delays": {"withdrawal": 60, "public_withdrawal": 600, "cancellation": 3600},
    "src_safety_deposit": 100,
    "dst_safety_deposit": 100,
}


class TestSwapAPI(unittest.TestCase):

    def setUp(self):
        self.clock = SimClock()
        src, dst = funded_ledgers(self.clock)
        self.relayer = build_relayer(local_adapters(src, dst), self.clock)
        swap_routes.configure(self.relayer)
        self.client = TestClient(app)

    def tearDown(self):
        swap_routes.configure(None)

    def create(self, **overrides):
        body = dict(CREATE_BODY, **overrides)
        return self.client.post("/api/swap/create", json=body)

    def test_status(self):
        resp = self.client.get("/api/status")
        self.assertEqual(resp.status_code, 200)
        data = resp.json()
        self.assertEqual(data["chains"], ["chain_a", "chain_b"])
        self.assertEqual(data["accounts"], {"chain_a": RESOLVER, "chain_b": RESOLVER})
        self.assertEqual(data["swaps"]["pending"], 0)

    def test_create_and_get(self):
        resp = self.create()
        self.assertEqual(resp.status_code, 200)
        data = resp.json()
        self.assertEqual(data["status"], "pending")
        self.assertNotIn("preimage", data)
        swap_id = data["swap_id"]

        self.relayer.orchestrator.process_pending()
        resp = self.client.get(f"/api/swap/{swap_id}")
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json()["status"], "dst_escrow_created")

    def test_list_with_filter(self):
        self.create()
        self.assertEqual(self.client.get("/api/swaps").json()["count"], 1)
        self.assertEqual(self.client.get("/api/swaps?status=pending").json()["count"], 1)
        self.assertEqual(self.client.get("/api/swaps?status=completed").json()["count"], 0)
        self.assertEqual(self.client.get("/api/swaps?status=bogus").status_code, 400)

    def test_secret_release(self):
        swap_id = self.create().json()["swap_id"]
        self.assertEqual(self.client.post(f"/api/swap/{swap_id}/secret").status_code, 409)

        self.relayer.orchestrator.process_pending()
        resp = self.client.post(f"/api/swap/{swap_id}/secret")
        self.assertEqual(resp.status_code, 200)
        data = resp.json()
        self.assertEqual(hash_secret(data["secret"]), data["hashlock"])

    def test_unknown_swap(self):
        self.assertEqual(self.client.get("/api/swap/swap_missing").status_code, 404)
        self.assertEqual(self.client.post("/api/swap/swap_missing/secret").status_code, 404)

    def test_bad_terms(self):
        self.assertEqual(self.create(dst_chain="chain_a").status_code, 400)
        self.assertEqual(self.create(src_amount=0).status_code, 422)

    def test_not_configured(self):
        swap_routes.configure(None)
        self.assertEqual(self.client.get("/api/status").status_code, 503)


class TestChainConfig(unittest.TestCase):

    def test_local_entry(self):
        adapter = build_adapter({
            "kind": "local", "name": "devnet", "account": RESOLVER,
            "faucet": [[RESOLVER, "native", 500]],
            "approvals": [[MAKER, RESOLVER, "TKA", 1000]],
        })
        self.assertIsInstance(adapter, LocalChainAdapter)
        self.assertEqual(adapter.name, "devnet")
        self.assertEqual(adapter.ledger.balance_of(RESOLVER), 500)
        self.assertEqual(adapter.ledger.allowance(MAKER, RESOLVER, "TKA"), 1000)

    def test_unknown_kind(self):
        with self.assertRaises(ValidationError):
            build_adapter({"kind": "solana", "name": "x"})


if __name__ == "__main__":
    unittest.main()
