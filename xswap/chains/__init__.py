"""
Chain adapters.

- local: in-process ledger (dev, demos, tests)
- evm: EscrowFactory contract via web3
"""

from .base import ChainAdapter, ChainEvent, Receipt, EscrowView
from .local import LocalChainAdapter
from .evm import EVMChainAdapter, EVMAdapterConfig

__all__ = [
    "ChainAdapter",
    "ChainEvent",
    "Receipt",
    "EscrowView",
    "LocalChainAdapter",
    "EVMChainAdapter",
    "EVMAdapterConfig",
]
