"""
Swap coordination for xswap.

Orchestrates cross-chain escrow swaps, watches both chains and resumes
unfinished swaps after a restart.
"""

from .executor import SwapOrchestrator, SwapTerms
from .watcher import ChainMonitor, Watchdog
from .relayer import Relayer

__all__ = ["SwapOrchestrator", "SwapTerms", "ChainMonitor", "Watchdog", "Relayer"]
