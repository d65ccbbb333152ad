"""
Chain adapter interface.

The orchestrator talks to every ledger through this contract. Offsets are
chain-specific (event index for the local ledger, block number for EVM) but
always increase, so a persisted offset is enough to resume a subscription.
"""

import time
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Optional, Dict, Any, List, Iterator, Iterable, Tuple

from ..core import EscrowSide, EscrowState, Immutables, Timelocks

log = logging.getLogger(__name__)


@dataclass
class ChainEvent:
    """Escrow event observed on a chain."""
    kind: str                 # Created | Withdrawn | Cancelled | FundsRescued
    contract_id: str
    offset: int
    secret: Optional[str] = None  # Withdrawn only
    tx_hash: Optional[str] = None
    data: Dict[str, Any] = field(default_factory=dict)


@dataclass
class Receipt:
    """Confirmation of a submitted escrow transaction."""
    success: bool
    contract_id: str
    action: str
    tx_hash: Optional[str] = None
    offset: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "contract_id": self.contract_id,
            "action": self.action,
            "tx_hash": self.tx_hash,
            "offset": self.offset,
        }


@dataclass
class EscrowView:
    """Result of get_state."""
    contract_id: str
    side: EscrowSide
    state: EscrowState
    timelocks: Timelocks


class ChainAdapter(ABC):
    """
    Create/withdraw/cancel/query/subscribe against one ledger.

    Implementations raise the xswap.errors taxonomy and nothing else:
    AlreadyExistsError, StateError, AuthorizationError, SecretMismatchError,
    WindowError, NotFoundError, ValidationError, ChainError.
    """

    name: str = "chain"
    account: str = ""

    @abstractmethod
    def create(self, immutables: Immutables, side: EscrowSide) -> str:
        """Create an escrow, paying the safety deposit. Returns contract_id."""

    @abstractmethod
    def withdraw(self, contract_id: str, secret: str, caller: str,
                 public: bool = False) -> Receipt:
        """Withdraw with the secret (public=True for the public window)."""

    @abstractmethod
    def cancel(self, contract_id: str, caller: str, public: bool = False) -> Receipt:
        """Cancel after the cancellation checkpoint."""

    @abstractmethod
    def get_state(self, contract_id: str) -> EscrowView:
        """Current escrow state. Raises NotFoundError."""

    @abstractmethod
    def head_offset(self) -> int:
        """Offset just past the newest event."""

    @abstractmethod
    def poll_events(self, from_offset: int, limit: int = 100) -> Tuple[List[ChainEvent], int]:
        """Events at or after from_offset, and the offset to resume from."""

    @abstractmethod
    def now(self) -> int:
        """Ledger time in unix seconds."""

    def subscribe(self, contract_ids: Optional[Iterable[str]] = None,
                  from_offset: int = 0, poll_interval: float = 1.0,
                  limit: int = 100) -> Iterator[ChainEvent]:
        """
        Lazy, infinite, restartable event stream.

        Restart by calling again with the offset after the last event seen.
        """
        wanted = set(contract_ids) if contract_ids is not None else None
        offset = from_offset
        while True:
            events, offset = self.poll_events(offset, limit)
            for event in events:
                if wanted is None or event.contract_id in wanted:
                    yield event
            if not events:
                time.sleep(poll_interval)
