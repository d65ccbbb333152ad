#!/usr/bin/env python3
"""
xswap Relayer Server
Cross-chain HTLC escrow swaps driven by a relayer.

Endpoints:
  GET  /api/status                 - Health check, swap counts
  POST /api/swap/create            - Start a swap from negotiated terms
  GET  /api/swap/{id}              - Get swap status
  GET  /api/swaps                  - List swaps (?status=)
  POST /api/swap/{id}/secret       - Release secret to taker (after dst escrow)

Environment:
  XSWAP_DB_PATH             Swap session store (JSON)
  XSWAP_CHAINS_FILE         Chain adapter config (JSON)
  XSWAP_WATCHDOG_INTERVAL   Seconds between watchdog sweeps
  XSWAP_POLL_INTERVAL       Seconds between chain polls
  XSWAP_PORT                HTTP port
"""

import os
import json
import logging
from typing import Dict, Any

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from xswap.chains.base import ChainAdapter
from xswap.chains.local import LocalChainAdapter
from xswap.chains.evm import EVMChainAdapter, EVMAdapterConfig
from xswap.htlc.escrow import EscrowLedger
from xswap.swap.store import SwapStore
from xswap.swap.executor import OrchestratorConfig
from xswap.swap.watcher import MonitorConfig
from xswap.swap.relayer import Relayer
from xswap.errors import ValidationError
from routes import swaps as swap_routes

# =============================================================================
# LOGGING
# =============================================================================

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s [%(levelname)s] %(message)s'
)
log = logging.getLogger(__name__)

# =============================================================================
# CONFIGURATION
# =============================================================================

DB_PATH = os.path.expanduser(os.environ.get("XSWAP_DB_PATH", "~/.xswap/swaps.json"))
CHAINS_FILE = os.path.expanduser(os.environ.get("XSWAP_CHAINS_FILE", "~/.xswap/chains.json"))
WATCHDOG_INTERVAL = float(os.environ.get("XSWAP_WATCHDOG_INTERVAL", 30))
POLL_INTERVAL = float(os.environ.get("XSWAP_POLL_INTERVAL", 5))


def _load_private_key(key_file: str) -> str:
    """Load an EVM private key from a JSON key file ({"private_key": "0x..."})."""
    path = os.path.expanduser(key_file)
    with open(path, "r") as f:
        data = json.load(f)
    key = data.get("private_key") or data.get("privkey")
    if not key:
        raise ValidationError(f"No private_key in {path}")
    return key


def build_adapter(entry: Dict[str, Any]) -> ChainAdapter:
    """One chain entry from the chains file → adapter."""
    kind = entry.get("kind", "evm")
    name = entry["name"]

    if kind == "evm":
        config = EVMAdapterConfig(
            name=name,
            rpc_url=entry["rpc_url"],
            chain_id=int(entry["chain_id"]),
            factory_address=entry["factory_address"],
            private_key=_load_private_key(entry["key_file"]),
            request_timeout=int(entry.get("request_timeout", 30)),
            receipt_timeout=int(entry.get("receipt_timeout", 120)),
            max_block_range=int(entry.get("max_block_range", 500)),
        )
        return EVMChainAdapter(config)

    if kind == "local":
        # Dev only: in-memory ledger, lost on restart
        ledger = EscrowLedger(rescue_delay=int(entry.get("rescue_delay", 3600)))
        for account, token, amount in entry.get("faucet", []):
            ledger.deposit(account, token, int(amount))
        for owner, spender, token, amount in entry.get("approvals", []):
            ledger.approve(owner, spender, token, int(amount))
        return LocalChainAdapter(ledger, entry["account"], name)

    raise ValidationError(f"Unknown chain kind: {kind}")


def load_chain_adapters(path: str) -> Dict[str, ChainAdapter]:
    with open(path, "r") as f:
        data = json.load(f)
    adapters = {}
    for entry in data.get("chains", []):
        adapters[entry["name"]] = build_adapter(entry)
        log.info(f"Chain {entry['name']} ({entry.get('kind', 'evm')}) configured")
    return adapters


def build_relayer() -> Relayer:
    adapters = load_chain_adapters(CHAINS_FILE)
    if len(adapters) < 2:
        raise ValidationError(f"Need at least two chains in {CHAINS_FILE}")
    return Relayer(
        adapters,
        SwapStore(DB_PATH),
        OrchestratorConfig(),
        MonitorConfig(poll_interval=POLL_INTERVAL),
        watchdog_interval=WATCHDOG_INTERVAL,
    )


# =============================================================================
# APP
# =============================================================================

app = FastAPI(
    title="xswap relayer",
    description="Cross-chain HTLC escrow swaps",
    version="0.1.0",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(swap_routes.router)


@app.on_event("startup")
async def startup_event():
    """Build the relayer (unless one was injected), recover swaps, start loops."""
    relayer = swap_routes.get_relayer()
    if relayer is None:
        relayer = build_relayer()
        swap_routes.configure(relayer)
    relayer.start()
    log.info("Relayer running - chain monitors + watchdog enabled")


@app.on_event("shutdown")
async def shutdown_event():
    """Cleanup on shutdown."""
    relayer = swap_routes.get_relayer()
    if relayer:
        relayer.stop()
    log.info("Relayer stopped")


# =============================================================================
# MAIN
# =============================================================================

if __name__ == "__main__":
    import uvicorn
    port = int(os.environ.get("XSWAP_PORT", 8080))
    log.info(f"Starting xswap relayer on port {port}")
    log.info(f"Docs: http://0.0.0.0:{port}/docs")
    uvicorn.run(app, host="0.0.0.0", port=port)
