#!/usr/bin/env python3
"""
Swap orchestrator tests over two local ledgers

1. Happy path: both legs withdrawn, balances moved
2. Destination create fails → refund after source cancellation
3. Retries on transient chain errors, idempotent re-create
4. Secret release gating and event handling
5. Timeout refunds from the watchdog
"""

import sys
import os
import unittest
from unittest.mock import patch

# Add package to path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from xswap.core import (
    SwapStatus, EscrowState, NATIVE_TOKEN, Immutables, compute_contract_id,
    generate_secret, hash_secret,
)
from xswap.errors import ChainError, StateError, NotFoundError, ValidationError
from xswap.htlc.escrow import EVENT_WITHDRAWN
from xswap.htlc.timelocks import DelayConfig
from xswap.chains.base import ChainEvent
from xswap.swap.store import SwapStore
from tests.simulation import (
    SimClock, T0, MAKER, RESOLVER, SRC_AMOUNT, DST_AMOUNT, DEPOSIT,
    funded_ledgers, local_adapters, default_terms, relayer_config, build_relayer,
)


class OrchestratorTestCase(unittest.TestCase):

    def setUp(self):
        self.clock = SimClock()
        self.src, self.dst = funded_ledgers(self.clock)
        self.adapters = local_adapters(self.src, self.dst)
        self.store = SwapStore()
        self.relayer = build_relayer(self.adapters, self.clock, store=self.store)
        self.orch = self.relayer.orchestrator

    def start(self, **overrides):
        session = self.orch.start_swap(default_terms(**overrides))
        return session.swap_id

    def status(self, swap_id):
        return self.store.get(swap_id).status

    def contract_ids(self, swap_id):
        session = self.store.get(swap_id)
        return session.src_contract_id, session.dst_contract_id


class TestHappyPath(OrchestratorTestCase):

    def test_swap_completes(self):
        swap_id = self.start()
        self.assertEqual(self.status(swap_id), SwapStatus.PENDING)

        self.orch.process_pending()
        self.assertEqual(self.status(swap_id), SwapStatus.DST_ESCROW_CREATED)
        src_cid, dst_cid = self.contract_ids(swap_id)
        self.assertEqual(self.src.get(src_cid).state, EscrowState.ACTIVE)
        self.assertEqual(self.dst.get(dst_cid).state, EscrowState.ACTIVE)

        # Taker claims the destination leg with the released secret
        secret = self.orch.release_secret(swap_id)
        self.clock.set(T0 + 120)
        self.adapters["chain_b"].withdraw(dst_cid, secret, RESOLVER)

        self.relayer.poll_all()
        session = self.store.get(swap_id)
        self.assertEqual(session.status, SwapStatus.SECRET_REVEALED)
        self.assertEqual(session.preimage, secret)

        self.orch.process_pending()
        session = self.store.get(swap_id)
        self.assertEqual(session.status, SwapStatus.COMPLETED)
        self.assertEqual(session.completed_at, T0 + 120)
        self.assertIsNone(session.error)

        self.assertEqual(self.src.get(src_cid).state, EscrowState.WITHDRAWN)
        self.assertEqual(self.dst.get(dst_cid).state, EscrowState.WITHDRAWN)
        self.assertEqual(self.src.balance_of(MAKER, "TKA"), 0)
        self.assertEqual(self.src.balance_of(RESOLVER, "TKA"), SRC_AMOUNT)
        self.assertEqual(self.dst.balance_of(MAKER, "TKB"), DST_AMOUNT)
        self.assertEqual(self.dst.balance_of(RESOLVER, "TKB"), 0)
        self.assertEqual(self.src.balance_of(RESOLVER, NATIVE_TOKEN), DEPOSIT)
        self.assertEqual(self.dst.balance_of(RESOLVER, NATIVE_TOKEN), DEPOSIT)

        self.assertIn("src_withdraw", session.receipts)
        self.assertIn("dst_withdraw", session.receipts)
        # Monitors drop escrows of finished swaps
        self.assertEqual(self.relayer.monitors["chain_a"].watched(), {})

    def test_both_legs_share_hashlock(self):
        swap_id = self.start()
        self.orch.process_pending()
        src_cid, dst_cid = self.contract_ids(swap_id)
        session = self.store.get(swap_id)
        self.assertEqual(self.src.get(src_cid).immutables.hashlock, session.hashlock)
        self.assertEqual(self.dst.get(dst_cid).immutables.hashlock, session.hashlock)
        self.assertEqual(compute_contract_id(Immutables.from_dict(session.dst_immutables)),
                         dst_cid)

    def test_waits_for_source_finality(self):
        self.orch.config = relayer_config(wait_for_src_finality=True)
        swap_id = self.start()
        self.orch.process_pending()
        self.assertEqual(self.status(swap_id), SwapStatus.SRC_ESCROW_CREATED)
        self.assertIsNone(self.store.get(swap_id).dst_contract_id)

        self.clock.advance(60)
        self.orch.tick(swap_id)
        self.assertEqual(self.status(swap_id), SwapStatus.DST_ESCROW_CREATED)

    def test_duplicate_events_are_harmless(self):
        swap_id = self.start()
        self.orch.process_pending()
        _, dst_cid = self.contract_ids(swap_id)
        secret = self.orch.release_secret(swap_id)
        self.clock.set(T0 + 120)
        self.adapters["chain_b"].withdraw(dst_cid, secret, RESOLVER)

        events, _ = self.adapters["chain_b"].poll_events(0)
        withdrawn = [e for e in events if e.kind == EVENT_WITHDRAWN][0]
        self.orch.handle_event(swap_id, "chain_b", withdrawn)
        self.orch.handle_event(swap_id, "chain_b", withdrawn)
        self.orch.process_pending()
        self.orch.handle_event(swap_id, "chain_b", withdrawn)
        self.orch.process_pending()

        self.assertEqual(self.status(swap_id), SwapStatus.COMPLETED)
        self.assertEqual(self.src.balance_of(RESOLVER, "TKA"), SRC_AMOUNT)
        self.assertEqual(self.dst.balance_of(MAKER, "TKB"), DST_AMOUNT)


class TestStartSwap(OrchestratorTestCase):

    def test_rejects_same_chain(self):
        with self.assertRaises(ValidationError):
            self.start(dst_chain="chain_a")

    def test_rejects_unknown_chain(self):
        with self.assertRaises(ValidationError):
            self.start(dst_chain="chain_z")

    def test_rejects_infeasible_cascade(self):
        with self.assertRaises(ValidationError):
            self.start(dst_delays=DelayConfig(withdrawal=60, public_withdrawal=600,
                                              cancellation=7000))
        self.assertEqual(self.store.list(), [])

    def test_list_swaps(self):
        a = self.start()
        self.start(order_hash="order-2")
        self.orch.process_pending(limit=1)
        self.assertEqual(len(self.orch.list_swaps()), 2)
        created = self.orch.list_swaps(SwapStatus.DST_ESCROW_CREATED)
        self.assertEqual([s.swap_id for s in created], [a])


class TestFailures(OrchestratorTestCase):

    def test_destination_create_fails_then_refund(self):
        swap_id = self.start()
        with patch.object(self.adapters["chain_b"], "create",
                          side_effect=ChainError("rpc down")) as create:
            self.orch.process_pending()

        self.assertEqual(create.call_count, self.orch.config.max_retries + 1)
        self.assertEqual(self.status(swap_id), SwapStatus.REFUND_PENDING)
        # Source leg still locked until its public cancellation opens
        src_cid, _ = self.contract_ids(swap_id)
        self.assertEqual(self.src.get(src_cid).state, EscrowState.ACTIVE)
        self.assertEqual(self.src.balance_of(MAKER, "TKA"), 0)

        self.clock.set(T0 + 7800)
        self.orch.sweep()

        session = self.store.get(swap_id)
        self.assertEqual(session.status, SwapStatus.REFUNDED)
        self.assertEqual(session.cancelled_at, T0 + 7800)
        self.assertEqual(self.src.get(src_cid).state, EscrowState.CANCELLED)
        self.assertEqual(self.src.balance_of(MAKER, "TKA"), SRC_AMOUNT)
        self.assertEqual(self.src.balance_of(RESOLVER, NATIVE_TOKEN), DEPOSIT)
        self.assertEqual(self.dst.balance_of(RESOLVER, "TKB"), DST_AMOUNT)

    def test_source_create_fails(self):
        swap_id = self.start()
        with patch.object(self.adapters["chain_a"], "create",
                          side_effect=ChainError("rpc down")):
            self.orch.process_pending()
        session = self.store.get(swap_id)
        self.assertEqual(session.status, SwapStatus.FAILED)
        self.assertIn("Source escrow creation failed", session.error)
        self.assertEqual(self.src.balance_of(MAKER, "TKA"), SRC_AMOUNT)

    def test_source_unreachable_after_failed_create(self):
        swap_id = self.start()
        adapter = self.adapters["chain_a"]
        with patch.object(adapter, "create", side_effect=ChainError("rpc down")), \
                patch.object(adapter, "get_state", side_effect=ChainError("rpc down")):
            self.orch.advance(swap_id)

        session = self.store.get(swap_id)
        self.assertEqual(session.status, SwapStatus.FAILED)
        self.assertIn("Source escrow creation failed", session.error)
        self.assertEqual(self.src.head(), 0)

    def test_destination_unreachable_after_failed_create(self):
        swap_id = self.start()
        adapter = self.adapters["chain_b"]
        real_get_state = adapter.get_state
        outages = [self.orch.config.max_retries + 1]

        def down_then_up(contract_id):
            if outages[0] > 0:
                outages[0] -= 1
                raise ChainError("rpc down")
            return real_get_state(contract_id)

        with patch.object(adapter, "create", side_effect=ChainError("rpc down")), \
                patch.object(adapter, "get_state", side_effect=down_then_up):
            self.orch.advance(swap_id)
            self.assertEqual(self.status(swap_id), SwapStatus.REFUND_PENDING)

        src_cid, _ = self.contract_ids(swap_id)
        self.clock.set(T0 + 7800)
        self.orch.sweep()
        self.assertEqual(self.status(swap_id), SwapStatus.REFUNDED)
        self.assertEqual(self.src.get(src_cid).state, EscrowState.CANCELLED)
        self.assertEqual(self.src.balance_of(MAKER, "TKA"), SRC_AMOUNT)
        self.assertEqual(self.dst.head(), 0)

    def test_stale_source_timelocks_restamped(self):
        swap_id = self.start()
        # Worker picks the swap up long after it was accepted
        self.clock.advance(900)
        self.orch.process_pending()

        self.assertEqual(self.status(swap_id), SwapStatus.DST_ESCROW_CREATED)
        src_cid, dst_cid = self.contract_ids(swap_id)
        session = self.store.get(swap_id)
        self.assertEqual(self.src.get(src_cid).immutables.timelocks.deployed_at, T0 + 900)
        self.assertEqual(session.timelock_window["src"]["deployed_at"], T0 + 900)
        self.assertEqual(compute_contract_id(Immutables.from_dict(session.src_immutables)),
                         src_cid)
        self.assertEqual(self.dst.get(dst_cid).immutables.timelocks.deployed_at, T0 + 900)

    def test_transient_error_retried(self):
        adapter = self.adapters["chain_b"]
        real_create = adapter.create
        calls = []

        def flaky(immutables, side):
            calls.append(side)
            if len(calls) == 1:
                raise ChainError("timeout")
            return real_create(immutables, side)

        with patch.object(adapter, "create", side_effect=flaky):
            swap_id = self.start()
            self.orch.process_pending()

        self.assertEqual(len(calls), 2)
        self.assertEqual(self.status(swap_id), SwapStatus.DST_ESCROW_CREATED)

    def test_create_landed_but_reported_failure(self):
        adapter = self.adapters["chain_b"]
        real_create = adapter.create

        def landed_then_timeout(immutables, side):
            real_create(immutables, side)
            raise ChainError("receipt timeout")

        with patch.object(adapter, "create", side_effect=landed_then_timeout):
            swap_id = self.start()
            self.orch.process_pending()

        # Retries hit AlreadyExists; exactly one escrow was funded
        self.assertEqual(self.status(swap_id), SwapStatus.DST_ESCROW_CREATED)
        self.assertEqual(self.dst.balance_of(RESOLVER, "TKB"), 0)
        self.assertEqual(self.dst.head(), 1)

    def test_insufficient_funds_on_destination(self):
        swap_id = self.start(dst_amount=DST_AMOUNT * 10)
        self.orch.process_pending()
        self.assertEqual(self.status(swap_id), SwapStatus.REFUND_PENDING)


class TestSecret(OrchestratorTestCase):

    def test_release_gated_on_destination(self):
        swap_id = self.start()
        with self.assertRaises(StateError):
            self.orch.release_secret(swap_id)

        self.orch.process_pending()
        secret = self.orch.release_secret(swap_id)
        self.assertEqual(hash_secret(secret), self.store.get(swap_id).hashlock)

    def test_release_unknown_swap(self):
        with self.assertRaises(NotFoundError):
            self.orch.release_secret("swap_missing")

    def test_secret_never_stored_before_reveal(self):
        swap_id = self.start()
        self.orch.process_pending()
        self.assertIsNone(self.store.get(swap_id).preimage)

    def test_wrong_secret_event_ignored(self):
        swap_id = self.start()
        self.orch.process_pending()
        _, dst_cid = self.contract_ids(swap_id)
        bogus, _ = generate_secret()
        event = ChainEvent(kind=EVENT_WITHDRAWN, contract_id=dst_cid, offset=99, secret=bogus)
        self.orch.handle_event(swap_id, "chain_b", event)
        session = self.store.get(swap_id)
        self.assertEqual(session.status, SwapStatus.DST_ESCROW_CREATED)
        self.assertIsNone(session.preimage)

    def test_event_for_other_escrow_ignored(self):
        swap_id = self.start()
        self.orch.process_pending()
        secret = self.orch.release_secret(swap_id)
        event = ChainEvent(kind=EVENT_WITHDRAWN, contract_id="ee" * 32, offset=5, secret=secret)
        self.orch.handle_event(swap_id, "chain_b", event)
        self.assertEqual(self.status(swap_id), SwapStatus.DST_ESCROW_CREATED)


class TestTimeouts(OrchestratorTestCase):

    def test_refund_after_destination_timeout(self):
        swap_id = self.start()
        self.orch.process_pending()
        src_cid, dst_cid = self.contract_ids(swap_id)

        # Inside the margin: refund starts, nothing cancellable yet
        self.clock.set(T0 + 3600 - 30)
        self.orch.sweep()
        self.assertEqual(self.status(swap_id), SwapStatus.REFUND_PENDING)

        self.clock.set(T0 + 3600)
        self.orch.sweep()
        self.assertEqual(self.dst.get(dst_cid).state, EscrowState.CANCELLED)
        self.assertEqual(self.status(swap_id), SwapStatus.REFUND_PENDING)

        self.clock.set(T0 + 7800)
        self.orch.sweep()
        self.assertEqual(self.status(swap_id), SwapStatus.REFUNDED)
        self.assertEqual(self.src.get(src_cid).state, EscrowState.CANCELLED)
        self.assertEqual(self.src.balance_of(MAKER, "TKA"), SRC_AMOUNT)
        self.assertEqual(self.dst.balance_of(RESOLVER, "TKB"), DST_AMOUNT)
        self.assertEqual(self.dst.balance_of(RESOLVER, NATIVE_TOKEN), DEPOSIT)

    def test_cancelled_event_starts_refund(self):
        swap_id = self.start()
        self.orch.process_pending()
        _, dst_cid = self.contract_ids(swap_id)

        self.clock.set(T0 + 3600)
        self.adapters["chain_b"].cancel(dst_cid, RESOLVER)
        self.relayer.poll_all()
        self.assertEqual(self.status(swap_id), SwapStatus.REFUND_PENDING)

    def test_lost_secret_refunds(self):
        swap_id = self.start()
        # New process over the same store: the unrevealed secret is gone
        restarted = build_relayer(self.adapters, self.clock, store=self.store)
        restarted.orchestrator.tick(swap_id)

        self.assertEqual(self.status(swap_id), SwapStatus.REFUNDED)
        self.assertEqual(self.src.head(), 0)
        self.assertEqual(self.src.balance_of(MAKER, "TKA"), SRC_AMOUNT)

    def test_terminal_swaps_untouched(self):
        swap_id = self.start()
        with patch.object(self.adapters["chain_a"], "create",
                          side_effect=ChainError("rpc down")):
            self.orch.process_pending()
        self.assertEqual(self.status(swap_id), SwapStatus.FAILED)
        self.assertEqual(self.orch.sweep(), 0)


if __name__ == "__main__":
    unittest.main()
