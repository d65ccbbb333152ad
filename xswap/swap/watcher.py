"""
Chain monitors and watchdog for xswap.

One ChainMonitor per chain polls that chain's escrow events from a
persisted cursor and fans them out to the swaps that own the escrows.
The Watchdog periodically asks the orchestrator to re-drive every
non-terminal swap (timeouts, missed events, pending withdrawals).

Runs as background threads to automate swap completion.
"""

import time
import logging
import threading
from dataclasses import dataclass
from typing import Dict, Callable, Optional

from ..chains.base import ChainAdapter, ChainEvent
from .store import SwapStore

log = logging.getLogger(__name__)


@dataclass
class MonitorConfig:
    """Chain monitor configuration."""
    poll_interval: float = 5.0   # seconds
    batch_size: int = 100        # events per poll
    lookback: int = 10           # offsets rescanned on start and on new watches


class ChainMonitor:
    """
    Background poller for one chain.

    Delivery is at-least-once: the cursor only moves past an event after
    its handler returned, and rescans after restarts or new watches may
    deliver the same event again.
    """

    def __init__(self, chain: str, adapter: ChainAdapter, store: SwapStore,
                 handler: Callable[[str, str, ChainEvent], None],
                 config: MonitorConfig = None):
        self.chain = chain
        self.adapter = adapter
        self.store = store
        self.handler = handler
        self.config = config or MonitorConfig()

        self._watched: Dict[str, str] = {}   # contract_id → swap_id
        self._cursor: Optional[int] = None
        self._rewind_to: Optional[int] = None
        self._lock = threading.Lock()

        self._running = False
        self._thread: Optional[threading.Thread] = None

    # =========================================================================
    # Registry
    # =========================================================================

    def watch(self, contract_id: str, swap_id: str):
        """Route events for contract_id to swap_id and rescan recent history."""
        with self._lock:
            if self._watched.get(contract_id) == swap_id:
                return
            self._watched[contract_id] = swap_id
            if self._cursor is not None:
                target = max(0, self._cursor - self.config.lookback)
                self._rewind_to = target if self._rewind_to is None else min(self._rewind_to, target)
        log.debug(f"[{self.chain}] watching {contract_id[:16]}... for {swap_id}")

    def unwatch(self, contract_id: str):
        with self._lock:
            self._watched.pop(contract_id, None)

    def watched(self) -> Dict[str, str]:
        with self._lock:
            return dict(self._watched)

    # =========================================================================
    # Polling
    # =========================================================================

    def _start_offset(self) -> int:
        with self._lock:
            if self._rewind_to is not None:
                offset = self._rewind_to
                self._rewind_to = None
                return offset
            if self._cursor is not None:
                return self._cursor

        stored = self.store.get_cursor(self.chain)
        if stored is not None:
            offset = max(0, stored - self.config.lookback)
        else:
            offset = max(0, self.adapter.head_offset() - self.config.lookback)
        with self._lock:
            self._cursor = offset
        log.info(f"[{self.chain}] monitor starting at offset {offset}")
        return offset

    def poll_once(self) -> int:
        """
        Fetch one batch and dispatch matching events.

        Returns:
            Number of events dispatched to handlers
        """
        offset = self._start_offset()
        events, next_offset = self.adapter.poll_events(offset, self.config.batch_size)

        dispatched = 0
        for event in events:
            with self._lock:
                swap_id = self._watched.get(event.contract_id)
            if swap_id is not None:
                try:
                    self.handler(swap_id, self.chain, event)
                except Exception as e:
                    # Stop here so the event is delivered again next poll
                    log.error(f"[{self.chain}] handler failed for {swap_id} "
                              f"({event.kind} @ {event.offset}): {e}")
                    with self._lock:
                        if self._rewind_to is None or event.offset < self._rewind_to:
                            self._rewind_to = event.offset
                    return dispatched
                dispatched += 1

        self._advance(next_offset)
        return dispatched

    def _advance(self, offset: int):
        with self._lock:
            if self._cursor is None or offset > self._cursor:
                self._cursor = offset
            else:
                # Rescan finished below the high-water mark
                offset = self._cursor
        self.store.set_cursor(self.chain, offset)

    def start(self):
        """Start monitor in background thread."""
        if self._running:
            return
        self._running = True
        self._thread = threading.Thread(target=self._watch_loop, daemon=True,
                                        name=f"monitor-{self.chain}")
        self._thread.start()
        log.info(f"[{self.chain}] chain monitor started")

    def stop(self):
        """Stop monitor."""
        self._running = False
        if self._thread:
            self._thread.join(timeout=5)
        log.info(f"[{self.chain}] chain monitor stopped")

    def _watch_loop(self):
        """Main watch loop."""
        while self._running:
            try:
                if self.poll_once() == 0:
                    time.sleep(self.config.poll_interval)
            except Exception as e:
                log.error(f"[{self.chain}] monitor error: {e}")
                time.sleep(self.config.poll_interval)


class Watchdog:
    """Periodic sweep over every non-terminal swap."""

    def __init__(self, sweep: Callable[[], int], interval: float = 30.0):
        self.sweep = sweep
        self.interval = interval
        self._running = False
        self._thread: Optional[threading.Thread] = None
        self._wake = threading.Event()

    def start(self):
        if self._running:
            return
        self._running = True
        self._wake.clear()
        self._thread = threading.Thread(target=self._loop, daemon=True, name="watchdog")
        self._thread.start()
        log.info(f"Watchdog started (interval {self.interval}s)")

    def stop(self):
        self._running = False
        self._wake.set()
        if self._thread:
            self._thread.join(timeout=5)
        log.info("Watchdog stopped")

    def _loop(self):
        while self._running:
            try:
                count = self.sweep()
                if count:
                    log.debug(f"Watchdog swept {count} swaps")
            except Exception as e:
                log.error(f"Watchdog error: {e}")
            self._wake.wait(self.interval)
