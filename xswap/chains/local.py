"""
In-process chain adapter over an EscrowLedger.

Used for development, demos and tests. Every call is signed as `account`.
"""

import logging
from typing import List, Tuple

from ..core import EscrowSide, Immutables
from ..htlc.escrow import EscrowLedger, EscrowEvent
from .base import ChainAdapter, ChainEvent, Receipt, EscrowView

log = logging.getLogger(__name__)


class LocalChainAdapter(ChainAdapter):
    """ChainAdapter backed by an in-memory ledger."""

    def __init__(self, ledger: EscrowLedger, account: str, name: str = "local"):
        self.ledger = ledger
        self.account = account
        self.name = name

    def _receipt(self, event: EscrowEvent, action: str) -> Receipt:
        return Receipt(
            success=True,
            contract_id=event.contract_id,
            action=action,
            tx_hash=f"{self.name}-{event.offset}",
            offset=event.offset,
        )

    def create(self, immutables: Immutables, side: EscrowSide) -> str:
        return self.ledger.create(immutables, side, caller=self.account,
                                  safety_deposit_payment=immutables.safety_deposit)

    def withdraw(self, contract_id: str, secret: str, caller: str,
                 public: bool = False) -> Receipt:
        event = self.ledger.withdraw(contract_id, secret, caller, public=public)
        return self._receipt(event, "public_withdraw" if public else "withdraw")

    def cancel(self, contract_id: str, caller: str, public: bool = False) -> Receipt:
        event = self.ledger.cancel(contract_id, caller, public=public)
        return self._receipt(event, "public_cancel" if public else "cancel")

    def get_state(self, contract_id: str) -> EscrowView:
        record = self.ledger.get(contract_id)
        return EscrowView(
            contract_id=record.contract_id,
            side=record.side,
            state=record.state,
            timelocks=record.immutables.timelocks,
        )

    def head_offset(self) -> int:
        return self.ledger.head()

    def poll_events(self, from_offset: int, limit: int = 100) -> Tuple[List[ChainEvent], int]:
        raw = self.ledger.events_since(from_offset, limit)
        events = [
            ChainEvent(
                kind=e.kind,
                contract_id=e.contract_id,
                offset=e.offset,
                secret=e.secret,
                tx_hash=f"{self.name}-{e.offset}",
                data=dict(e.data, caller=e.caller, side=e.side.value),
            )
            for e in raw
        ]
        next_offset = raw[-1].offset + 1 if raw else from_offset
        return events, next_offset

    def now(self) -> int:
        return self.ledger.now()
