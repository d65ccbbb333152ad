"""
Durable swap session store.

JSON file keyed by swap_id, rewritten atomically on every change. Status
changes go through compare_and_set so two writers never both move the
same swap. The unrevealed secret is never written here; the preimage
field is filled only after the secret has been seen on-chain and verified.
"""

import os
import json
import time
import logging
import threading
from dataclasses import dataclass, field, asdict
from typing import Optional, Dict, Any, List, Iterable

from ..core import SwapStatus
from ..errors import AlreadyExistsError, NotFoundError, ValidationError

log = logging.getLogger(__name__)


@dataclass
class SwapSession:
    """Orchestrator-owned record of one cross-chain swap."""
    swap_id: str
    direction: str              # "<src_chain>-><dst_chain>"
    status: SwapStatus
    hashlock: str
    src_chain: str
    dst_chain: str
    terms: Dict[str, Any] = field(default_factory=dict)

    preimage: Optional[str] = None
    src_contract_id: Optional[str] = None
    dst_contract_id: Optional[str] = None
    src_immutables: Optional[Dict[str, Any]] = None
    dst_immutables: Optional[Dict[str, Any]] = None
    timelock_window: Dict[str, Any] = field(default_factory=dict)  # {"src": {...}, "dst": {...}}
    receipts: Dict[str, str] = field(default_factory=dict)         # action → tx hash

    error: Optional[str] = None
    created_at: int = 0
    updated_at: int = 0
    completed_at: Optional[int] = None
    cancelled_at: Optional[int] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in (SwapStatus.COMPLETED, SwapStatus.REFUNDED, SwapStatus.FAILED)

    def to_dict(self, include_preimage: bool = True) -> Dict[str, Any]:
        data = asdict(self)
        data["status"] = self.status.value
        if not include_preimage:
            data.pop("preimage", None)
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SwapSession":
        data = dict(data)
        data["status"] = SwapStatus(data["status"])
        return cls(**data)


class SwapStore:
    """
    Swap session table.

    Args:
        path: JSON file; None keeps everything in memory
    """

    def __init__(self, path: Optional[str] = None):
        self.path = os.path.expanduser(path) if path else None
        self._sessions: Dict[str, Dict[str, Any]] = {}
        self._cursors: Dict[str, int] = {}
        self._lock = threading.Lock()
        self._load()

    # =========================================================================
    # Disk
    # =========================================================================

    def _load(self):
        if not self.path or not os.path.exists(self.path):
            return
        with open(self.path, "r") as f:
            data = json.load(f)
        self._sessions = data.get("swaps", {})
        self._cursors = data.get("cursors", {})
        log.info(f"Loaded {len(self._sessions)} swap sessions from {self.path}")

    def _save(self):
        """Write the whole table. Caller holds the lock."""
        if not self.path:
            return
        directory = os.path.dirname(self.path)
        if directory:
            os.makedirs(directory, exist_ok=True)
        tmp = f"{self.path}.tmp"
        with open(tmp, "w") as f:
            json.dump({"swaps": self._sessions, "cursors": self._cursors}, f, indent=2)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp, self.path)

    # =========================================================================
    # Sessions
    # =========================================================================

    def create(self, session: SwapSession) -> SwapSession:
        now = int(time.time())
        with self._lock:
            if session.swap_id in self._sessions:
                raise AlreadyExistsError(f"Swap {session.swap_id} already exists")
            session.created_at = session.created_at or now
            session.updated_at = now
            self._sessions[session.swap_id] = session.to_dict()
            self._save()
        return session

    def get(self, swap_id: str) -> SwapSession:
        with self._lock:
            data = self._sessions.get(swap_id)
            if data is None:
                raise NotFoundError(f"Swap {swap_id} not found")
            return SwapSession.from_dict(data)

    def list(self) -> List[SwapSession]:
        with self._lock:
            return [SwapSession.from_dict(d) for d in self._sessions.values()]

    def query_by_status(self, statuses: Iterable[SwapStatus]) -> List[SwapSession]:
        wanted = {s.value for s in statuses}
        with self._lock:
            return [SwapSession.from_dict(d) for d in self._sessions.values()
                    if d["status"] in wanted]

    def update_fields(self, swap_id: str, **fields) -> SwapSession:
        """Update non-status fields."""
        if "status" in fields or "swap_id" in fields:
            raise ValidationError("Use compare_and_set to change status")
        with self._lock:
            data = self._sessions.get(swap_id)
            if data is None:
                raise NotFoundError(f"Swap {swap_id} not found")
            updated = dict(data, **fields)
            updated["updated_at"] = int(time.time())
            self._sessions[swap_id] = updated
            self._save()
            return SwapSession.from_dict(updated)

    def compare_and_set(self, swap_id: str, expected, new: SwapStatus,
                        **fields) -> bool:
        """
        Move status from `expected` to `new` atomically.

        Args:
            expected: a SwapStatus or a collection of them
            new: target status
            fields: other fields to write in the same step

        Returns:
            False if the stored status was not one of `expected`
        """
        if isinstance(expected, SwapStatus):
            expected = (expected,)
        allowed = {s.value for s in expected}

        with self._lock:
            data = self._sessions.get(swap_id)
            if data is None:
                raise NotFoundError(f"Swap {swap_id} not found")
            if data["status"] not in allowed:
                return False
            updated = dict(data, **fields)
            updated["status"] = new.value
            updated["updated_at"] = int(time.time())
            self._sessions[swap_id] = updated
            self._save()
            return True

    def touch(self, swap_id: str):
        self.update_fields(swap_id)

    # =========================================================================
    # Chain cursors
    # =========================================================================

    def get_cursor(self, chain: str) -> Optional[int]:
        with self._lock:
            return self._cursors.get(chain)

    def set_cursor(self, chain: str, offset: int):
        with self._lock:
            if self._cursors.get(chain) == offset:
                return
            self._cursors[chain] = offset
            self._save()
