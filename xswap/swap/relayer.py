"""
Relayer: wires the orchestrator, one monitor per chain, the watchdog and
the recovery service around a set of chain adapters.
"""

import time
import logging
from typing import Dict

from ..core import TERMINAL_STATUSES
from ..chains.base import ChainAdapter
from .store import SwapStore, SwapSession
from .executor import SwapOrchestrator, OrchestratorConfig
from .watcher import ChainMonitor, MonitorConfig, Watchdog
from .recovery import RecoveryService, STUCK_SWAP_THRESHOLD

log = logging.getLogger(__name__)


class Relayer:
    """
    Long-running relayer process.

    start(): recover persisted swaps, then start monitors, watchdog and
    the action worker. Every watchdog pass sweeps all live swaps; once per
    STUCK_SWAP_THRESHOLD it also re-drives swaps whose status stopped moving.
    """

    def __init__(self, adapters: Dict[str, ChainAdapter], store: SwapStore,
                 config: OrchestratorConfig = None,
                 monitor_config: MonitorConfig = None,
                 watchdog_interval: float = 30.0,
                 clock=None, sleep_fn=None):
        self.adapters = adapters
        self.store = store
        self.clock = clock or time.time
        self.orchestrator = SwapOrchestrator(adapters, store, config,
                                             clock=clock, sleep_fn=sleep_fn)
        self.monitors: Dict[str, ChainMonitor] = {
            chain: ChainMonitor(chain, adapter, store, self.orchestrator.handle_event,
                                monitor_config)
            for chain, adapter in adapters.items()
        }
        self.watchdog = Watchdog(self._sweep, watchdog_interval)
        # Store timestamps are wall-clock
        self.recovery = RecoveryService(store, self.orchestrator, self.monitors)
        self._last_stuck_check = self.clock()

        self.orchestrator.on_watch_escrow = self._watch
        self.orchestrator.on_status_change = self._status_changed
        self._started = False

    def _watch(self, chain: str, contract_id: str, swap_id: str):
        monitor = self.monitors.get(chain)
        if monitor:
            monitor.watch(contract_id, swap_id)

    def _sweep(self) -> int:
        count = self.orchestrator.sweep()
        now = self.clock()
        if now - self._last_stuck_check >= STUCK_SWAP_THRESHOLD:
            self._last_stuck_check = now
            self.recovery.handle_stuck_swaps()
        return count

    def _status_changed(self, session: SwapSession):
        if session.status not in TERMINAL_STATUSES:
            return
        for chain, contract_id in ((session.src_chain, session.src_contract_id),
                                   (session.dst_chain, session.dst_contract_id)):
            monitor = self.monitors.get(chain)
            if contract_id and monitor:
                monitor.unwatch(contract_id)

    @property
    def started(self) -> bool:
        return self._started

    def start(self, recover: bool = True):
        if self._started:
            return
        if recover:
            self.recovery.recover()
        for monitor in self.monitors.values():
            monitor.start()
        self.watchdog.start()
        self.orchestrator.start()
        self._started = True
        log.info(f"Relayer started on chains: {', '.join(self.adapters)}")

    def stop(self):
        if not self._started:
            return
        self.orchestrator.stop()
        self.watchdog.stop()
        for monitor in self.monitors.values():
            monitor.stop()
        self._started = False
        log.info("Relayer stopped")

    def accounts(self) -> Dict[str, str]:
        return {chain: adapter.account for chain, adapter in self.adapters.items()}

    def poll_all(self) -> int:
        """One poll on every chain monitor (used by tests and scripts)."""
        return sum(monitor.poll_once() for monitor in self.monitors.values())
