"""
xswap - Cross-Chain HTLC Escrow Relayer

Trustless token exchange between two ledgers using paired hashed-timelock
escrows, one per chain, driven to a consistent outcome by a relayer.

Usage:
    from xswap import EscrowLedger, LocalChainAdapter, SwapStore, Relayer
    from xswap import SwapTerms, DelayConfig

    adapters = {
        "chain_a": LocalChainAdapter(EscrowLedger(), relayer_addr, "chain_a"),
        "chain_b": LocalChainAdapter(EscrowLedger(), relayer_addr, "chain_b"),
    }
    relayer = Relayer(adapters, SwapStore("~/.xswap/swaps.json"))
    relayer.start()

    session = relayer.orchestrator.start_swap(terms)
"""

from .core import (
    SwapStatus,
    EscrowSide,
    EscrowState,
    EscrowAction,
    Timelocks,
    Immutables,
    generate_secret,
    verify_preimage,
    compute_contract_id,
    NATIVE_TOKEN,
)
from .errors import (
    SwapError,
    ValidationError,
    AuthorizationError,
    StateError,
    SecretMismatchError,
    WindowError,
    ChainError,
    AlreadyExistsError,
    NotFoundError,
)

from .htlc.timelocks import DelayConfig, build_timelocks, window_for, validate_cascade
from .htlc.escrow import EscrowLedger, EscrowRecord

from .chains.base import ChainAdapter, ChainEvent, Receipt, EscrowView
from .chains.local import LocalChainAdapter
from .chains.evm import EVMChainAdapter, EVMAdapterConfig

from .swap.store import SwapStore, SwapSession
from .swap.executor import SwapOrchestrator, SwapTerms, OrchestratorConfig
from .swap.watcher import ChainMonitor, MonitorConfig, Watchdog
from .swap.recovery import RecoveryService
from .swap.relayer import Relayer

__version__ = "0.1.0"
__all__ = [
    # Core types
    "SwapStatus",
    "EscrowSide",
    "EscrowState",
    "EscrowAction",
    "Timelocks",
    "Immutables",
    "NATIVE_TOKEN",
    # Utilities
    "generate_secret",
    "verify_preimage",
    "compute_contract_id",
    # Errors
    "SwapError",
    "ValidationError",
    "AuthorizationError",
    "StateError",
    "SecretMismatchError",
    "WindowError",
    "ChainError",
    "AlreadyExistsError",
    "NotFoundError",
    # Escrow
    "DelayConfig",
    "build_timelocks",
    "window_for",
    "validate_cascade",
    "EscrowLedger",
    "EscrowRecord",
    # Chains
    "ChainAdapter",
    "ChainEvent",
    "Receipt",
    "EscrowView",
    "LocalChainAdapter",
    "EVMChainAdapter",
    "EVMAdapterConfig",
    # Swap
    "SwapStore",
    "SwapSession",
    "SwapOrchestrator",
    "SwapTerms",
    "OrchestratorConfig",
    "ChainMonitor",
    "MonitorConfig",
    "Watchdog",
    "RecoveryService",
    "Relayer",
]
