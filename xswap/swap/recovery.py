"""
Recovery service for xswap.

On startup every non-terminal swap is reloaded from the store, its escrows
are handed back to the chain monitors and the orchestrator re-drives it
from its persisted status:

  PENDING / SRC_ESCROW_CREATED → resume creation (idempotent by contract_id),
                                 or refund if the secret did not survive
  DST_ESCROW_CREATED           → keep watching; watchdog handles timeout
  SECRET_REVEALED              → resubmit withdrawals
  REFUND_PENDING               → resubmit cancels
"""

import time
import logging
from typing import Dict, List, Callable, Optional

from ..core import NON_TERMINAL_STATUSES, SwapStatus, TERMINAL_STATUSES
from .store import SwapStore, SwapSession
from .executor import SwapOrchestrator
from .watcher import ChainMonitor

log = logging.getLogger(__name__)

STUCK_SWAP_THRESHOLD = 1800  # seconds without a status update


class RecoveryService:
    """Reloads and resumes non-terminal swaps."""

    def __init__(self, store: SwapStore, orchestrator: SwapOrchestrator,
                 monitors: Dict[str, ChainMonitor] = None,
                 clock: Optional[Callable[[], float]] = None):
        self.store = store
        self.orchestrator = orchestrator
        self.monitors = monitors or {}
        self.clock = clock or time.time

    def _rewatch(self, session: SwapSession):
        for chain, contract_id in ((session.src_chain, session.src_contract_id),
                                   (session.dst_chain, session.dst_contract_id)):
            monitor = self.monitors.get(chain)
            if contract_id and monitor:
                monitor.watch(contract_id, session.swap_id)

    def recover(self) -> List[str]:
        """
        Resume every non-terminal swap.

        Returns:
            swap_ids that were resumed
        """
        sessions = self.store.query_by_status(NON_TERMINAL_STATUSES)
        if not sessions:
            log.info("Recovery: no non-terminal swaps")
            return []

        log.info(f"Recovery: {len(sessions)} non-terminal swaps to resume")
        recovered = []

        for session in sessions:
            try:
                self._rewatch(session)
                log.info(f"Recovery: resuming {session.swap_id} ({session.status.value})")
                self.orchestrator.tick(session.swap_id)
                recovered.append(session.swap_id)
            except Exception as e:
                log.exception(f"Recovery: failed to resume {session.swap_id}")
                self._mark_failed(session.swap_id, f"Recovery failed: {e}")

        log.info(f"Recovery: resumed {len(recovered)}/{len(sessions)} swaps")
        return recovered

    def _mark_failed(self, swap_id: str, error: str):
        session = self.store.get(swap_id)
        if session.status in TERMINAL_STATUSES:
            return
        self.store.compare_and_set(swap_id, session.status, SwapStatus.FAILED, error=error)

    def handle_stuck_swaps(self, threshold: int = STUCK_SWAP_THRESHOLD) -> List[str]:
        """Re-drive swaps whose status has not moved for `threshold` seconds."""
        now = int(self.clock())
        stuck = [s for s in self.store.query_by_status(NON_TERMINAL_STATUSES)
                 if s.updated_at and now - s.updated_at >= threshold]

        handled = []
        for session in stuck:
            log.warning(f"Stuck swap {session.swap_id} in {session.status.value} "
                        f"for {now - session.updated_at}s, re-driving")
            try:
                self._rewatch(session)
                self.orchestrator.tick(session.swap_id)
                self.store.touch(session.swap_id)
                handled.append(session.swap_id)
            except Exception as e:
                log.error(f"Stuck swap {session.swap_id}: {e}")
        return handled
