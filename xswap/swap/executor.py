"""
Swap orchestrator (relayer) for xswap.

Drives one logical swap across two escrows so that either both legs are
withdrawn or every created leg is cancelled.

Swap Flow:
1. Terms arrive, relayer generates secret + hashlock (PENDING)
2. Source escrow created and confirmed Active (SRC_ESCROW_CREATED)
3. Destination escrow created with the same hashlock (DST_ESCROW_CREATED)
4. Taker receives the secret and withdraws the destination leg
5. Withdrawn event seen, secret verified and persisted (SECRET_REVEALED)
6. Relayer withdraws the source leg with the secret (COMPLETED)

Timeout branch: the watchdog moves stalled swaps to REFUND_PENDING and the
relayer cancels whatever is still Active (REFUNDED).

Every action on one swap runs under that swap's lock. Status changes go
through the store's compare-and-set.
"""

import time
import uuid
import queue
import logging
import threading
from dataclasses import dataclass, field, replace
from typing import Optional, Dict, List, Callable, Any

from ..core import (
    SwapStatus, EscrowSide, EscrowState, Immutables, Timelocks,
    ALLOWED_TRANSITIONS, NON_TERMINAL_STATUSES, TERMINAL_STATUSES,
    TIMELOCK_CASCADE_MIN_GAP_SECONDS,
    generate_secret, verify_preimage, compute_contract_id, normalize_hex, short,
)
from ..errors import (
    ValidationError, AuthorizationError, StateError, SecretMismatchError,
    WindowError, ChainError, AlreadyExistsError, NotFoundError,
)
from ..htlc.timelocks import DelayConfig, build_timelocks, validate_cascade, deploy_time_valid
from ..htlc.escrow import EVENT_WITHDRAWN, EVENT_CANCELLED
from ..chains.base import ChainAdapter, ChainEvent
from .store import SwapStore, SwapSession
from .backoff import calculate_backoff

log = logging.getLogger(__name__)


# Queued actions
ACTION_ADVANCE = "advance"
ACTION_COMPLETE = "complete"
ACTION_REFUND = "refund"

# Per-leg outcomes
LEG_ABSENT = "absent"        # Never created
LEG_PENDING = "pending"      # Still Active, try again later
LEG_WITHDRAWN = "withdrawn"
LEG_CANCELLED = "cancelled"


@dataclass
class SwapTerms:
    """Negotiated swap terms, supplied by the order/price collaborator."""
    src_chain: str
    dst_chain: str
    maker_src: str          # Locks the source leg
    taker_src: str          # Claims the source leg
    maker_dst: str          # Receives the destination leg
    taker_dst: str          # Locks the destination leg
    src_token: str
    dst_token: str
    src_amount: int
    dst_amount: int
    src_delays: DelayConfig
    dst_delays: DelayConfig
    src_safety_deposit: int = 0
    dst_safety_deposit: int = 0
    order_hash: str = ""

    def validate(self):
        """Raise ValidationError on malformed terms."""
        if self.src_chain == self.dst_chain:
            raise ValidationError("Source and destination chain must differ")
        for name in ("maker_src", "taker_src", "maker_dst", "taker_dst", "src_token", "dst_token"):
            if not getattr(self, name):
                raise ValidationError(f"Missing {name}")
        if self.src_amount <= 0 or self.dst_amount <= 0:
            raise ValidationError("Amounts must be positive")
        if self.src_safety_deposit < 0 or self.dst_safety_deposit < 0:
            raise ValidationError("Safety deposits cannot be negative")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "src_chain": self.src_chain,
            "dst_chain": self.dst_chain,
            "maker_src": self.maker_src,
            "taker_src": self.taker_src,
            "maker_dst": self.maker_dst,
            "taker_dst": self.taker_dst,
            "src_token": self.src_token,
            "dst_token": self.dst_token,
            "src_amount": self.src_amount,
            "dst_amount": self.dst_amount,
            "src_delays": self.src_delays.to_dict(),
            "dst_delays": self.dst_delays.to_dict(),
            "src_safety_deposit": self.src_safety_deposit,
            "dst_safety_deposit": self.dst_safety_deposit,
            "order_hash": self.order_hash,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SwapTerms":
        data = dict(data)
        data["src_delays"] = DelayConfig.from_dict(data["src_delays"])
        data["dst_delays"] = DelayConfig.from_dict(data["dst_delays"])
        return cls(**data)


@dataclass
class OrchestratorConfig:
    """Orchestrator configuration."""
    max_retries: int = 3              # ChainError retries per call
    backoff_base: float = 1.0         # seconds
    backoff_max: float = 30.0         # seconds
    backoff_jitter: float = 0.25      # seconds
    refund_margin: int = 60           # start refunding this early (seconds)
    cascade_min_gap: int = TIMELOCK_CASCADE_MIN_GAP_SECONDS
    wait_for_src_finality: bool = True


class SwapOrchestrator:
    """
    Executes cross-chain escrow swaps.

    Callbacks:
    - on_watch_escrow(chain, contract_id, swap_id): start monitoring an escrow
    - on_status_change(session): after every committed status change
    """

    def __init__(self, adapters: Dict[str, ChainAdapter], store: SwapStore,
                 config: OrchestratorConfig = None,
                 clock: Callable[[], float] = None,
                 sleep_fn: Callable[[float], None] = None):
        self.adapters = adapters
        self.store = store
        self.config = config or OrchestratorConfig()
        self.clock = clock or time.time
        self.sleep_fn = sleep_fn or time.sleep

        # Unrevealed secrets never leave memory
        self._secrets: Dict[str, str] = {}

        self._locks: Dict[str, threading.RLock] = {}
        self._locks_guard = threading.Lock()
        self._actions: "queue.Queue[tuple]" = queue.Queue()

        # Callbacks
        self.on_watch_escrow: Optional[Callable[[str, str, str], None]] = None
        self.on_status_change: Optional[Callable[[SwapSession], None]] = None

        # Worker
        self._running = False
        self._thread: Optional[threading.Thread] = None

    # =========================================================================
    # Helpers
    # =========================================================================

    def _now(self) -> int:
        return int(self.clock())

    def _lock_for(self, swap_id: str) -> threading.RLock:
        with self._locks_guard:
            lock = self._locks.get(swap_id)
            if lock is None:
                lock = self._locks[swap_id] = threading.RLock()
            return lock

    def _adapter(self, chain: str) -> ChainAdapter:
        adapter = self.adapters.get(chain)
        if adapter is None:
            raise ValidationError(f"No adapter for chain {chain}")
        return adapter

    def _leg(self, session: SwapSession, leg: str):
        """(chain, immutables or None) for 'src' / 'dst'."""
        if leg == "src":
            data = session.src_immutables
            chain = session.src_chain
        else:
            data = session.dst_immutables
            chain = session.dst_chain
        return chain, Immutables.from_dict(data) if data else None

    def _watch(self, chain: str, contract_id: str, swap_id: str):
        if self.on_watch_escrow:
            self.on_watch_escrow(chain, contract_id, swap_id)

    def _retry(self, fn, *args, **kwargs):
        """Call fn, retrying ChainError with exponential backoff."""
        attempt = 0
        while True:
            try:
                return fn(*args, **kwargs)
            except ChainError as e:
                if attempt >= self.config.max_retries:
                    raise
                delay = calculate_backoff(attempt, self.config.backoff_base,
                                          self.config.backoff_max, self.config.backoff_jitter)
                name = getattr(fn, "__name__", "chain call")
                log.warning(f"{name} failed: {e} (retry {attempt + 1}/"
                            f"{self.config.max_retries} in {delay:.1f}s)")
                self.sleep_fn(delay)
                attempt += 1

    def _escrow_state(self, adapter: ChainAdapter, contract_id: str) -> Optional[EscrowState]:
        """On-chain state, None if the escrow does not exist."""
        try:
            return self._retry(adapter.get_state, contract_id).state
        except NotFoundError:
            return None

    def _transition(self, session: SwapSession, new: SwapStatus, **fields) -> bool:
        """Compare-and-set from session.status to new."""
        current = session.status
        if new not in ALLOWED_TRANSITIONS[current]:
            raise StateError(f"Swap {session.swap_id}: {current.value} → {new.value} not allowed")

        if not self.store.compare_and_set(session.swap_id, current, new, **fields):
            log.warning(f"Swap {session.swap_id}: lost race moving {current.value} → {new.value}")
            return False

        log.info(f"Swap {session.swap_id}: {current.value} → {new.value}")
        if new in TERMINAL_STATUSES:
            self._secrets.pop(session.swap_id, None)
        if self.on_status_change:
            self.on_status_change(self.store.get(session.swap_id))
        return True

    def _fail(self, session: SwapSession, error: str) -> bool:
        if session.status in TERMINAL_STATUSES:
            return False
        log.error(f"Swap {session.swap_id} FAILED: {error}")
        return self._transition(session, SwapStatus.FAILED, error=error)

    def _begin_refund(self, session: SwapSession, reason: str) -> bool:
        if session.status == SwapStatus.REFUND_PENDING:
            return True
        log.warning(f"Swap {session.swap_id} → refund: {reason}")
        return self._transition(session, SwapStatus.REFUND_PENDING, error=reason)

    def _record_receipt(self, swap_id: str, action: str, tx_hash: Optional[str]):
        if not tx_hash:
            return
        session = self.store.get(swap_id)
        receipts = dict(session.receipts)
        receipts[action] = tx_hash
        self.store.update_fields(swap_id, receipts=receipts)

    # =========================================================================
    # Queue
    # =========================================================================

    def enqueue(self, action: str, swap_id: str):
        self._actions.put((action, swap_id))

    def _dispatch(self, action: str, swap_id: str):
        handlers = {
            ACTION_ADVANCE: self.advance,
            ACTION_COMPLETE: self.complete,
            ACTION_REFUND: self.refund,
        }
        try:
            handlers[action](swap_id)
        except Exception as e:
            log.exception(f"Action {action} failed for {swap_id}: {e}")

    def process_pending(self, limit: Optional[int] = None) -> int:
        """Drain queued actions in the calling thread. Returns count."""
        done = 0
        while limit is None or done < limit:
            try:
                action, swap_id = self._actions.get_nowait()
            except queue.Empty:
                break
            self._dispatch(action, swap_id)
            done += 1
        return done

    def start(self):
        """Start the action worker in a background thread."""
        if self._running:
            return
        self._running = True
        self._thread = threading.Thread(target=self._worker_loop, daemon=True)
        self._thread.start()
        log.info("Swap orchestrator started")

    def stop(self):
        self._running = False
        if self._thread:
            self._thread.join(timeout=5)
        log.info("Swap orchestrator stopped")

    def _worker_loop(self):
        while self._running:
            try:
                action, swap_id = self._actions.get(timeout=1)
            except queue.Empty:
                continue
            self._dispatch(action, swap_id)

    # =========================================================================
    # Start
    # =========================================================================

    def start_swap(self, terms: SwapTerms, swap_id: Optional[str] = None) -> SwapSession:
        """
        Accept terms and persist a PENDING swap.

        The source immutables (and so the source contract_id) are fixed here,
        which makes every later create call idempotent.
        """
        terms.validate()
        self._adapter(terms.src_chain)
        self._adapter(terms.dst_chain)

        now = self._now()
        src_tl = build_timelocks(now, terms.src_delays, EscrowSide.SOURCE)
        # Must hold even if the destination leg were deployed right now
        validate_cascade(src_tl, build_timelocks(now, terms.dst_delays, EscrowSide.DESTINATION),
                         self.config.cascade_min_gap)

        swap_id = swap_id or f"swap_{uuid.uuid4().hex[:12]}"
        secret, hashlock = generate_secret()

        src_imm = Immutables(
            order_hash=terms.order_hash or swap_id,
            hashlock=hashlock,
            maker=terms.maker_src,
            taker=terms.taker_src,
            token=terms.src_token,
            amount=terms.src_amount,
            safety_deposit=terms.src_safety_deposit,
            timelocks=src_tl,
        )

        session = SwapSession(
            swap_id=swap_id,
            direction=f"{terms.src_chain}->{terms.dst_chain}",
            status=SwapStatus.PENDING,
            hashlock=hashlock,
            src_chain=terms.src_chain,
            dst_chain=terms.dst_chain,
            terms=terms.to_dict(),
            src_immutables=src_imm.to_dict(),
            timelock_window={"src": src_tl.to_dict()},
            created_at=now,
        )

        self._secrets[swap_id] = secret
        self.store.create(session)
        log.info(f"Swap {swap_id} created: {terms.src_amount} {terms.src_token} → "
                 f"{terms.dst_amount} {terms.dst_token} ({session.direction}), "
                 f"hashlock {short(hashlock)}")

        self.enqueue(ACTION_ADVANCE, swap_id)
        return session

    def get_swap(self, swap_id: str) -> SwapSession:
        return self.store.get(swap_id)

    def list_swaps(self, status: Optional[SwapStatus] = None) -> List[SwapSession]:
        if status is None:
            return self.store.list()
        return self.store.query_by_status([status])

    # =========================================================================
    # Escrow creation
    # =========================================================================

    def advance(self, swap_id: str):
        """Drive PENDING → SRC_ESCROW_CREATED → DST_ESCROW_CREATED as far as possible."""
        with self._lock_for(swap_id):
            session = self.store.get(swap_id)
            if session.status == SwapStatus.PENDING:
                self._create_source(session)
                session = self.store.get(swap_id)
            if session.status == SwapStatus.SRC_ESCROW_CREATED:
                self._create_destination(session)
                session = self.store.get(swap_id)
            if session.status == SwapStatus.REFUND_PENDING:
                self.refund(swap_id)

    def _chain_now(self, adapter: ChainAdapter) -> int:
        return int(self._retry(adapter.now))

    def _refresh_source(self, session: SwapSession, adapter: ChainAdapter,
                        imm: Immutables):
        """Re-stamp source timelocks that went stale before the escrow landed."""
        now = self._chain_now(adapter)
        if deploy_time_valid(imm.timelocks.deployed_at, now):
            return session, imm
        if self._escrow_state(adapter, compute_contract_id(imm)) is not None:
            return session, imm

        terms = SwapTerms.from_dict(session.terms)
        src_tl = build_timelocks(now, terms.src_delays, EscrowSide.SOURCE)
        log.info(f"Swap {session.swap_id}: source timelocks re-stamped at chain time {now} "
                 f"(were {imm.timelocks.deployed_at})")
        imm = replace(imm, timelocks=src_tl)
        window = dict(session.timelock_window, src=src_tl.to_dict())
        session = self.store.update_fields(session.swap_id,
                                           src_immutables=imm.to_dict(),
                                           timelock_window=window)
        return session, imm

    def _create_source(self, session: SwapSession):
        chain, imm = self._leg(session, "src")
        adapter = self._adapter(chain)

        if session.swap_id not in self._secrets:
            self._begin_refund(session, "Secret not held (restart before source escrow)")
            return

        try:
            session, imm = self._refresh_source(session, adapter, imm)
        except ChainError as e:
            self._fail(session, f"Source chain unavailable: {e}")
            return
        contract_id = compute_contract_id(imm)

        self._watch(chain, contract_id, session.swap_id)
        create_error = None
        try:
            self._retry(adapter.create, imm, EscrowSide.SOURCE)
        except AlreadyExistsError:
            log.info(f"Swap {session.swap_id}: source escrow {short(contract_id)} already exists")
        except ChainError as e:
            create_error = e
        except (ValidationError, AuthorizationError) as e:
            self._fail(session, f"Source escrow rejected: {e}")
            return

        try:
            state = self._escrow_state(adapter, contract_id)
        except ChainError as e:
            self._fail(session, f"Source escrow creation failed: {create_error or e}")
            return
        if state is None:
            if create_error is not None:
                self._fail(session, f"Source escrow creation failed: {create_error}")
            else:
                self._fail(session, "Source escrow not found after create")
            return

        if state != EscrowState.ACTIVE:
            self._transition(session, SwapStatus.SRC_ESCROW_CREATED, src_contract_id=contract_id)
            self._begin_refund(self.store.get(session.swap_id),
                               f"Source escrow already {state.value}")
            return

        self._transition(session, SwapStatus.SRC_ESCROW_CREATED, src_contract_id=contract_id)

    def _prepare_destination(self, session: SwapSession, adapter: ChainAdapter,
                             src_tl: Timelocks, terms: SwapTerms) -> SwapSession:
        """Build and persist destination immutables stamped with the destination chain's time."""
        now = self._chain_now(adapter)
        if session.dst_immutables is not None:
            stored = Immutables.from_dict(session.dst_immutables)
            if deploy_time_valid(stored.timelocks.deployed_at, now):
                return session
            if self._escrow_state(adapter, compute_contract_id(stored)) is not None:
                return session

        dst_tl = build_timelocks(now, terms.dst_delays, EscrowSide.DESTINATION)
        validate_cascade(src_tl, dst_tl, self.config.cascade_min_gap)

        dst_imm = Immutables(
            order_hash=terms.order_hash or session.swap_id,
            hashlock=session.hashlock,
            maker=terms.maker_dst,
            taker=terms.taker_dst,
            token=terms.dst_token,
            amount=terms.dst_amount,
            safety_deposit=terms.dst_safety_deposit,
            timelocks=dst_tl,
        )
        window = dict(session.timelock_window, dst=dst_tl.to_dict())
        # Persist before submitting so a retry after restart resubmits the same id
        return self.store.update_fields(session.swap_id,
                                        dst_immutables=dst_imm.to_dict(),
                                        timelock_window=window)

    def _create_destination(self, session: SwapSession):
        src_tl = Timelocks.from_dict(session.timelock_window["src"])
        now = self._now()

        if session.swap_id not in self._secrets:
            self._begin_refund(session, "Secret not held (restart before destination escrow)")
            return

        if self.config.wait_for_src_finality and now < src_tl.finality:
            log.debug(f"Swap {session.swap_id}: waiting for source finality at {src_tl.finality}")
            return

        terms = SwapTerms.from_dict(session.terms)
        adapter = self._adapter(session.dst_chain)
        try:
            session = self._prepare_destination(session, adapter, src_tl, terms)
        except ChainError as e:
            self._begin_refund(session, f"Destination chain unavailable: {e}")
            return
        except ValidationError as e:
            self._begin_refund(session, f"Too late for destination escrow: {e}")
            return

        chain, dst_imm = self._leg(session, "dst")
        if dst_imm.hashlock != session.hashlock or dst_imm.amount != terms.dst_amount:
            self._fail(session, "Destination immutables do not match swap terms")
            return

        contract_id = compute_contract_id(dst_imm)
        self._watch(chain, contract_id, session.swap_id)

        create_error = None
        try:
            self._retry(adapter.create, dst_imm, EscrowSide.DESTINATION)
        except AlreadyExistsError:
            log.info(f"Swap {session.swap_id}: destination escrow {short(contract_id)} already exists")
        except ChainError as e:
            create_error = e
        except (ValidationError, AuthorizationError) as e:
            self._begin_refund(session, f"Destination escrow rejected: {e}")
            return

        try:
            state = self._escrow_state(adapter, contract_id)
        except ChainError as e:
            self._begin_refund(session, f"Destination escrow unconfirmed: {create_error or e}")
            return
        if state is None and create_error is not None:
            self._begin_refund(session, f"Destination escrow creation failed: {create_error}")
            return
        if state != EscrowState.ACTIVE:
            self._begin_refund(session, f"Destination escrow not active ({state})")
            return

        self._transition(session, SwapStatus.DST_ESCROW_CREATED, dst_contract_id=contract_id)

    # =========================================================================
    # Secret
    # =========================================================================

    def release_secret(self, swap_id: str) -> str:
        """
        Hand the secret to the taker.

        Only once the destination escrow is confirmed, so the taker can never
        claim the source leg without the maker's leg being funded.
        """
        session = self.store.get(swap_id)
        if session.preimage:
            return session.preimage
        if session.status != SwapStatus.DST_ESCROW_CREATED:
            raise StateError(f"Swap {swap_id} is {session.status.value}, "
                             f"secret is released only after the destination escrow exists")
        secret = self._secrets.get(swap_id)
        if secret is None:
            raise NotFoundError(f"Secret for {swap_id} is not held by this relayer")
        log.info(f"Swap {swap_id}: secret released to taker")
        return secret

    # =========================================================================
    # Events
    # =========================================================================

    def handle_event(self, swap_id: str, chain: str, event: ChainEvent):
        """Per-swap handler for events fanned out by the chain monitors."""
        with self._lock_for(swap_id):
            session = self.store.get(swap_id)

            leg = None
            for name in ("src", "dst"):
                leg_chain, imm = self._leg(session, name)
                if imm is not None and leg_chain == chain and \
                        compute_contract_id(imm) == event.contract_id:
                    leg = name
            if leg is None:
                return

            if event.kind == EVENT_WITHDRAWN:
                self._on_withdrawn(session, leg, event)
            elif event.kind == EVENT_CANCELLED:
                self._on_cancelled(session, leg, event)
            else:
                log.debug(f"Swap {swap_id}: {event.kind} on {leg} leg")

    def _on_withdrawn(self, session: SwapSession, leg: str, event: ChainEvent):
        swap_id = session.swap_id
        if session.status in TERMINAL_STATUSES:
            return

        if not verify_preimage(event.secret or "", session.hashlock):
            log.error(f"Swap {swap_id}: {leg} Withdrawn event carries a secret that does not "
                      f"match hashlock {short(session.hashlock)} (got {short(event.secret)})")
            return

        self._record_receipt(swap_id, f"{leg}_withdraw", event.tx_hash)
        session = self.store.get(swap_id)

        if session.status == SwapStatus.SECRET_REVEALED:
            self.enqueue(ACTION_COMPLETE, swap_id)
            return

        if session.status == SwapStatus.PENDING:
            log.warning(f"Swap {swap_id}: {leg} withdrawn while still pending")
            return

        log.info(f"Swap {swap_id}: secret revealed on {leg} leg ({short(event.secret)})")
        if self._transition(session, SwapStatus.SECRET_REVEALED,
                            preimage=normalize_hex(event.secret)):
            self.enqueue(ACTION_COMPLETE, swap_id)

    def _on_cancelled(self, session: SwapSession, leg: str, event: ChainEvent):
        swap_id = session.swap_id
        self._record_receipt(swap_id, f"{leg}_cancel", event.tx_hash)
        session = self.store.get(swap_id)

        if session.status in (SwapStatus.PENDING, SwapStatus.SRC_ESCROW_CREATED,
                              SwapStatus.DST_ESCROW_CREATED):
            if self._begin_refund(session, f"{leg} escrow cancelled on-chain"):
                self.enqueue(ACTION_REFUND, swap_id)
        elif session.status == SwapStatus.REFUND_PENDING:
            self.enqueue(ACTION_REFUND, swap_id)
        elif session.status == SwapStatus.SECRET_REVEALED:
            self.enqueue(ACTION_COMPLETE, swap_id)

    # =========================================================================
    # Completion
    # =========================================================================

    def _withdraw_leg(self, session: SwapSession, leg: str, secret: str) -> str:
        chain, imm = self._leg(session, leg)
        if imm is None:
            return LEG_ABSENT
        adapter = self._adapter(chain)
        contract_id = compute_contract_id(imm)

        state = self._escrow_state(adapter, contract_id)
        if state is None:
            return LEG_ABSENT
        if state == EscrowState.WITHDRAWN:
            return LEG_WITHDRAWN
        if state == EscrowState.CANCELLED:
            return LEG_CANCELLED

        paths = [False, True] if adapter.account == imm.taker else [True]
        for public in paths:
            try:
                receipt = self._retry(adapter.withdraw, contract_id, secret,
                                      adapter.account, public=public)
                self._record_receipt(session.swap_id, f"{leg}_withdraw", receipt.tx_hash)
                return LEG_WITHDRAWN
            except StateError:
                state = self._escrow_state(adapter, contract_id)
                return LEG_WITHDRAWN if state == EscrowState.WITHDRAWN else LEG_CANCELLED
            except AuthorizationError as e:
                log.warning(f"Swap {session.swap_id}: {leg} withdraw not authorized: {e}")
                continue
            except WindowError as e:
                if adapter.now() >= imm.timelocks.cancellation:
                    log.error(f"Swap {session.swap_id}: {leg} withdraw window closed")
                    return LEG_CANCELLED
                log.info(f"Swap {session.swap_id}: {leg} withdraw not open yet ({e})")
                continue
            except SecretMismatchError as e:
                log.error(f"Swap {session.swap_id}: {leg} rejected the secret: {e}")
                return LEG_PENDING
        return LEG_PENDING

    def complete(self, swap_id: str):
        """Withdraw every still-Active leg with the revealed secret."""
        with self._lock_for(swap_id):
            session = self.store.get(swap_id)
            if session.status != SwapStatus.SECRET_REVEALED:
                return

            results = {}
            try:
                for leg in ("dst", "src"):
                    results[leg] = self._withdraw_leg(session, leg, session.preimage)
            except ChainError as e:
                self._fail(session, f"Withdraw failed after retries: {e}")
                return

            outcomes = set(results.values())
            if LEG_CANCELLED in outcomes:
                lost = [leg for leg, r in results.items() if r == LEG_CANCELLED]
                self._fail(session, f"Leg(s) {', '.join(lost)} cancelled after secret reveal")
            elif LEG_PENDING in outcomes:
                log.info(f"Swap {swap_id}: withdraw pending {results}")
            else:
                self._transition(session, SwapStatus.COMPLETED, completed_at=self._now(),
                                 error=None)

    # =========================================================================
    # Refund
    # =========================================================================

    def _cancel_leg(self, session: SwapSession, leg: str, state: Optional[EscrowState]) -> str:
        chain, imm = self._leg(session, leg)
        if state is None:
            return LEG_ABSENT
        if state == EscrowState.CANCELLED:
            return LEG_CANCELLED
        if state == EscrowState.WITHDRAWN:
            return LEG_WITHDRAWN

        adapter = self._adapter(chain)
        contract_id = compute_contract_id(imm)
        depositor = imm.maker if leg == "src" else imm.taker
        public = adapter.account != depositor
        if public and leg == "dst":
            log.warning(f"Swap {session.swap_id}: destination leg can only be cancelled "
                        f"by its depositor {depositor}")
            return LEG_PENDING

        try:
            receipt = self._retry(adapter.cancel, contract_id, adapter.account, public=public)
            self._record_receipt(session.swap_id, f"{leg}_cancel", receipt.tx_hash)
            return LEG_CANCELLED
        except StateError:
            state = self._escrow_state(adapter, contract_id)
            return LEG_CANCELLED if state == EscrowState.CANCELLED else LEG_WITHDRAWN
        except WindowError as e:
            log.info(f"Swap {session.swap_id}: {leg} cancel not open yet ({e})")
            return LEG_PENDING
        except AuthorizationError as e:
            log.warning(f"Swap {session.swap_id}: {leg} cancel not authorized: {e}")
            return LEG_PENDING

    def refund(self, swap_id: str):
        """Cancel every still-Active leg; REFUNDED once all created legs are Cancelled."""
        with self._lock_for(swap_id):
            session = self.store.get(swap_id)
            if session.status != SwapStatus.REFUND_PENDING:
                return

            try:
                states = {}
                for leg in ("dst", "src"):
                    chain, imm = self._leg(session, leg)
                    states[leg] = (self._escrow_state(self._adapter(chain), compute_contract_id(imm))
                                   if imm is not None else None)

                if EscrowState.WITHDRAWN in states.values():
                    # Secret is public; the Withdrawn event moves us to SECRET_REVEALED
                    log.warning(f"Swap {swap_id}: a leg was withdrawn during refund, "
                                f"holding cancels until the secret is processed")
                    return

                results = {leg: self._cancel_leg(session, leg, states[leg])
                           for leg in ("dst", "src")}
            except ChainError as e:
                self._fail(session, f"Refund failed after retries: {e}")
                return

            if all(r in (LEG_ABSENT, LEG_CANCELLED) for r in results.values()):
                self._transition(session, SwapStatus.REFUNDED, cancelled_at=self._now())
            else:
                log.info(f"Swap {swap_id}: refund pending {results}")

    # =========================================================================
    # Watchdog
    # =========================================================================

    def tick(self, swap_id: str):
        """
        Decide and perform the next action for one swap.

        Wall-clock is only used to decide when to act; the escrow's own clock
        authorizes every transition, so acting early is harmless.
        """
        with self._lock_for(swap_id):
            session = self.store.get(swap_id)
            status = session.status
            now = self._now()
            margin = self.config.refund_margin

            if status in (SwapStatus.PENDING, SwapStatus.SRC_ESCROW_CREATED):
                src_tl = Timelocks.from_dict(session.timelock_window["src"])
                if now + margin >= src_tl.cancellation:
                    self._begin_refund(session, "Source cancellation reached before destination escrow")
                    self.refund(swap_id)
                else:
                    self.advance(swap_id)

            elif status == SwapStatus.DST_ESCROW_CREATED:
                dst_tl = Timelocks.from_dict(session.timelock_window["dst"])
                if now + margin >= dst_tl.cancellation:
                    self._begin_refund(session, "Destination cancellation reached without withdrawal")
                    self.refund(swap_id)

            elif status == SwapStatus.SECRET_REVEALED:
                self.complete(swap_id)

            elif status == SwapStatus.REFUND_PENDING:
                self.refund(swap_id)

    def sweep(self) -> int:
        """Tick every non-terminal swap. Returns the number ticked."""
        count = 0
        for session in self.store.query_by_status(NON_TERMINAL_STATUSES):
            try:
                self.tick(session.swap_id)
            except Exception as e:
                log.exception(f"Watchdog tick failed for {session.swap_id}: {e}")
            count += 1
        return count
