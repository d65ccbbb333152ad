#!/usr/bin/env python3
"""
Example: cross-chain swap between two in-process ledgers

This demonstrates the full swap flow from the relayer's perspective:

1. Maker and taker (resolver) are funded on their chains
2. Relayer creates the source escrow (maker's funds)
3. Relayer creates the destination escrow (taker's funds)
4. Taker receives the secret and withdraws the destination leg
5. Monitor sees the Withdrawn event, relayer withdraws the source leg

Clocks are simulated so the whole run takes no real time.

Usage:
    python local_swap.py
"""

import sys
import time
import logging
from pathlib import Path

# Add package to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from xswap.core import NATIVE_TOKEN
from xswap.htlc.escrow import EscrowLedger
from xswap.htlc.timelocks import DelayConfig
from xswap.chains.local import LocalChainAdapter
from xswap.swap.store import SwapStore
from xswap.swap.executor import SwapTerms, OrchestratorConfig
from xswap.swap.relayer import Relayer

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s [%(levelname)s] %(message)s'
)
log = logging.getLogger(__name__)

MAKER = "maker"
RESOLVER = "resolver"


class SimClock:
    """Shared simulated wall/ledger clock."""

    def __init__(self, start: int):
        self.t = start

    def __call__(self) -> float:
        return self.t

    def advance(self, seconds: int):
        self.t += seconds


def main():
    clock = SimClock(int(time.time()))

    # =================================================================
    # 1. Ledgers and funding
    # =================================================================
    chain_a = EscrowLedger(clock=clock)
    chain_b = EscrowLedger(clock=clock)

    chain_a.deposit(MAKER, "TKA", 1_000)
    chain_a.deposit(RESOLVER, NATIVE_TOKEN, 100)
    chain_a.approve(MAKER, RESOLVER, "TKA", 1_000)
    chain_b.deposit(RESOLVER, "TKB", 2_000)
    chain_b.deposit(RESOLVER, NATIVE_TOKEN, 100)

    adapters = {
        "chain_a": LocalChainAdapter(chain_a, RESOLVER, "chain_a"),
        "chain_b": LocalChainAdapter(chain_b, RESOLVER, "chain_b"),
    }
    relayer = Relayer(adapters, SwapStore(), OrchestratorConfig(), clock=clock)
    orch = relayer.orchestrator

    # =================================================================
    # 2. Terms → source escrow
    # =================================================================
    terms = SwapTerms(
        src_chain="chain_a", dst_chain="chain_b",
        maker_src=MAKER, taker_src=RESOLVER,
        maker_dst=MAKER, taker_dst=RESOLVER,
        src_token="TKA", dst_token="TKB",
        src_amount=1_000, dst_amount=2_000,
        src_delays=DelayConfig(finality=60, withdrawal=120, public_withdrawal=600,
                               cancellation=7200, public_cancellation=7800),
        dst_delays=DelayConfig(withdrawal=60, public_withdrawal=600, cancellation=3600),
        src_safety_deposit=50, dst_safety_deposit=50,
    )
    session = orch.start_swap(terms)
    orch.process_pending()
    log.info(f"Status: {orch.get_swap(session.swap_id).status.value}")

    # =================================================================
    # 3. Source finality → destination escrow
    # =================================================================
    clock.advance(61)
    orch.sweep()
    log.info(f"Status: {orch.get_swap(session.swap_id).status.value}")

    # =================================================================
    # 4. Taker withdraws destination leg with the released secret
    # =================================================================
    clock.advance(120)
    secret = orch.release_secret(session.swap_id)
    dst_id = orch.get_swap(session.swap_id).dst_contract_id
    adapters["chain_b"].withdraw(dst_id, secret, RESOLVER)

    # =================================================================
    # 5. Monitor picks up the secret, relayer claims the source leg
    # =================================================================
    relayer.poll_all()
    orch.process_pending()

    final = orch.get_swap(session.swap_id)
    log.info(f"Final status: {final.status.value}")
    log.info(f"Maker TKB: {chain_b.balance_of(MAKER, 'TKB')}")
    log.info(f"Resolver TKA: {chain_a.balance_of(RESOLVER, 'TKA')}")


if __name__ == "__main__":
    main()
