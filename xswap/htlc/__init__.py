"""
Escrow (hashed-timelock) logic.

An escrow releases its funds only to someone presenting the preimage of
its hashlock, or returns them to the depositor after a timeout:
- timelocks: relative delays → ordered absolute checkpoints and windows
- escrow: per-chain escrow table, balances and event log
"""

from .timelocks import DelayConfig, build_timelocks, window_for, validate_cascade
from .escrow import EscrowLedger, EscrowRecord, EscrowEvent

__all__ = [
    "DelayConfig",
    "build_timelocks",
    "window_for",
    "validate_cascade",
    "EscrowLedger",
    "EscrowRecord",
    "EscrowEvent",
]
