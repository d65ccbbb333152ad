"""
Escrow state machine.

One EscrowLedger models one chain: a table of escrows keyed by their
content-addressed contract_id, account balances, and an append-only event
log the chain monitor reads by offset.

Escrow lifecycle:
1. create: lock amount (from depositor) + safety deposit (from caller)
2. withdraw / public_withdraw with the secret → WITHDRAWN
3. or cancel / public_cancel after the cancellation checkpoint → CANCELLED
4. rescue_funds: after rescue_delay the taker may sweep residual balances

Every time check uses the ledger clock, never the relayer's.
"""

import time
import logging
import threading
from dataclasses import dataclass, field
from typing import Optional, Dict, Any, List, Callable, Tuple

from ..core import (
    EscrowAction, EscrowSide, EscrowState, Immutables,
    NATIVE_TOKEN, DEFAULT_RESCUE_DELAY,
    compute_contract_id, normalize_hex, verify_preimage, short,
)
from ..errors import (
    ValidationError, AuthorizationError, StateError, SecretMismatchError,
    WindowError, AlreadyExistsError, NotFoundError,
)
from .timelocks import (
    validate_timelocks, window_for, in_window, rescue_eligible, deploy_time_valid,
)

log = logging.getLogger(__name__)


# Event kinds
EVENT_CREATED = "Created"
EVENT_WITHDRAWN = "Withdrawn"
EVENT_CANCELLED = "Cancelled"
EVENT_RESCUED = "FundsRescued"


@dataclass
class EscrowRecord:
    """One escrow as stored in the ledger table."""
    contract_id: str
    side: EscrowSide
    immutables: Immutables
    state: EscrowState = EscrowState.ACTIVE
    created_at: int = 0

    @property
    def depositor(self) -> str:
        """Who locked the principal and gets it back on cancel."""
        if self.side == EscrowSide.SOURCE:
            return self.immutables.maker
        return self.immutables.taker

    @property
    def recipient(self) -> str:
        """Who receives the principal on withdraw."""
        if self.side == EscrowSide.SOURCE:
            return self.immutables.taker
        return self.immutables.maker

    def to_dict(self) -> Dict[str, Any]:
        return {
            "contract_id": self.contract_id,
            "side": self.side.value,
            "state": self.state.value,
            "created_at": self.created_at,
            "immutables": self.immutables.to_dict(),
        }


@dataclass
class EscrowEvent:
    """Entry in the ledger's append-only log."""
    offset: int
    kind: str
    contract_id: str
    side: EscrowSide
    timestamp: int
    caller: str
    secret: Optional[str] = None
    data: Dict[str, Any] = field(default_factory=dict)


class EscrowLedger:
    """
    In-memory escrow table for a single chain.

    Thread-safe: every operation runs under one lock, so each call is an
    atomic read-modify-write of the record it touches.
    """

    def __init__(self, clock: Optional[Callable[[], float]] = None,
                 rescue_delay: int = DEFAULT_RESCUE_DELAY):
        self.clock = clock or time.time
        self.rescue_delay = rescue_delay
        self._escrows: Dict[str, EscrowRecord] = {}
        self._balances: Dict[Tuple[str, str], int] = {}
        self._holdings: Dict[str, Dict[str, int]] = {}
        self._allowances: Dict[Tuple[str, str, str], int] = {}  # (owner, spender, token)
        self._events: List[EscrowEvent] = []
        self._lock = threading.Lock()

    def now(self) -> int:
        return int(self.clock())

    # =========================================================================
    # Balances
    # =========================================================================

    def deposit(self, account: str, token: str, amount: int):
        """Credit an account (faucet / test funding)."""
        if amount <= 0:
            raise ValidationError("Deposit amount must be positive")
        with self._lock:
            self._credit(account, token, amount)

    def balance_of(self, account: str, token: str = NATIVE_TOKEN) -> int:
        with self._lock:
            return self._balances.get((account, token), 0)

    def escrow_balance(self, contract_id: str, token: str = NATIVE_TOKEN) -> int:
        with self._lock:
            return self._holdings.get(contract_id, {}).get(token, 0)

    def total_supply(self, token: str = NATIVE_TOKEN) -> int:
        """Sum over accounts and escrows. Constant across escrow operations."""
        with self._lock:
            accounts = sum(v for (_, t), v in self._balances.items() if t == token)
            held = sum(h.get(token, 0) for h in self._holdings.values())
            return accounts + held

    def approve(self, owner: str, spender: str, token: str, amount: int):
        """Let spender lock up to amount of owner's token in escrows it creates."""
        if amount < 0:
            raise ValidationError("Allowance cannot be negative")
        with self._lock:
            self._allowances[(owner, spender, token)] = amount

    def allowance(self, owner: str, spender: str, token: str) -> int:
        with self._lock:
            return self._allowances.get((owner, spender, token), 0)

    def send_to_escrow(self, contract_id: str, sender: str, token: str, amount: int):
        """Plain transfer into an escrow's holdings (e.g. a wrong-token deposit)."""
        if amount <= 0:
            raise ValidationError("Transfer amount must be positive")
        with self._lock:
            self._get(contract_id)
            self._debit(sender, token, amount)
            self._hold(contract_id, token, amount)

    def _credit(self, account: str, token: str, amount: int):
        key = (account, token)
        self._balances[key] = self._balances.get(key, 0) + amount

    def _debit(self, account: str, token: str, amount: int):
        key = (account, token)
        have = self._balances.get(key, 0)
        if have < amount:
            raise ValidationError(f"Insufficient {token} balance for {account}: {have} < {amount}")
        self._balances[key] = have - amount

    def _hold(self, contract_id: str, token: str, amount: int):
        holdings = self._holdings.setdefault(contract_id, {})
        holdings[token] = holdings.get(token, 0) + amount

    def _release(self, contract_id: str, token: str, amount: int, to: str):
        self._holdings[contract_id][token] -= amount
        self._credit(to, token, amount)

    def _owed(self, record: EscrowRecord) -> Dict[str, int]:
        """What the escrow still has to pay out."""
        if record.state != EscrowState.ACTIVE:
            return {}
        imm = record.immutables
        owed = {imm.token: imm.amount}
        owed[NATIVE_TOKEN] = owed.get(NATIVE_TOKEN, 0) + imm.safety_deposit
        return owed

    # =========================================================================
    # Queries
    # =========================================================================

    def _get(self, contract_id: str) -> EscrowRecord:
        record = self._escrows.get(normalize_hex(contract_id, 32))
        if record is None:
            raise NotFoundError(f"Escrow {short(contract_id)} not found")
        return record

    def get(self, contract_id: str) -> EscrowRecord:
        with self._lock:
            return self._get(contract_id)

    def is_rescue_eligible(self, contract_id: str) -> bool:
        with self._lock:
            record = self._get(contract_id)
            return rescue_eligible(record.immutables.timelocks, self.rescue_delay, self.now())

    def events_since(self, offset: int, limit: int = 100) -> List[EscrowEvent]:
        with self._lock:
            return list(self._events[offset:offset + limit])

    def head(self) -> int:
        """Offset the next event will get."""
        with self._lock:
            return len(self._events)

    def _emit(self, kind: str, record: EscrowRecord, caller: str,
              secret: Optional[str] = None, **data) -> EscrowEvent:
        event = EscrowEvent(
            offset=len(self._events),
            kind=kind,
            contract_id=record.contract_id,
            side=record.side,
            timestamp=self.now(),
            caller=caller,
            secret=secret,
            data=data,
        )
        self._events.append(event)
        return event

    # =========================================================================
    # Transitions
    # =========================================================================

    def create(self, immutables: Immutables, side: EscrowSide, caller: str,
               safety_deposit_payment: int) -> str:
        """
        Lock principal and safety deposit in a new escrow.

        Args:
            immutables: Frozen escrow parameters
            side: SOURCE (maker deposits) or DESTINATION (taker deposits)
            caller: Pays the safety deposit in NATIVE_TOKEN. Must be the
                depositor or hold the depositor's allowance for the principal.
            safety_deposit_payment: Must equal immutables.safety_deposit

        Returns:
            contract_id

        Raises:
            AuthorizationError: caller may not spend the depositor's funds
            ValidationError: bad terms, stale deployed_at, insufficient balance
        """
        if immutables.amount <= 0:
            raise ValidationError("Escrow amount must be positive")
        if immutables.safety_deposit < 0:
            raise ValidationError("Safety deposit cannot be negative")
        if safety_deposit_payment != immutables.safety_deposit:
            raise ValidationError(
                f"Safety deposit payment {safety_deposit_payment} != {immutables.safety_deposit}"
            )
        normalize_hex(immutables.hashlock, 32)
        validate_timelocks(immutables.timelocks, side)

        contract_id = compute_contract_id(immutables)

        with self._lock:
            if contract_id in self._escrows:
                raise AlreadyExistsError(f"Escrow {short(contract_id)} already exists")

            record = EscrowRecord(
                contract_id=contract_id,
                side=side,
                immutables=immutables,
                created_at=self.now(),
            )

            spender_key = (record.depositor, caller, immutables.token)
            if caller != record.depositor and \
                    self._allowances.get(spender_key, 0) < immutables.amount:
                raise AuthorizationError(
                    f"{caller} may not lock {immutables.amount} {immutables.token} "
                    f"of {record.depositor}"
                )

            deployed_at = immutables.timelocks.deployed_at
            if not deploy_time_valid(deployed_at, record.created_at):
                raise ValidationError(
                    f"deployed_at {deployed_at} does not match ledger time {record.created_at}"
                )

            # Check both legs of the funding before moving anything
            need: Dict[Tuple[str, str], int] = {}
            need[(record.depositor, immutables.token)] = immutables.amount
            key = (caller, NATIVE_TOKEN)
            need[key] = need.get(key, 0) + immutables.safety_deposit
            for (account, token), amount in need.items():
                have = self._balances.get((account, token), 0)
                if have < amount:
                    raise ValidationError(
                        f"Insufficient {token} balance for {account}: {have} < {amount}"
                    )

            if caller != record.depositor:
                self._allowances[spender_key] -= immutables.amount
            self._debit(record.depositor, immutables.token, immutables.amount)
            self._hold(contract_id, immutables.token, immutables.amount)
            if immutables.safety_deposit:
                self._debit(caller, NATIVE_TOKEN, immutables.safety_deposit)
                self._hold(contract_id, NATIVE_TOKEN, immutables.safety_deposit)

            self._escrows[contract_id] = record
            self._emit(EVENT_CREATED, record, caller)

        log.info(f"Escrow created: {short(contract_id)} side={side.value} "
                 f"amount={immutables.amount} deposit={immutables.safety_deposit}")
        return contract_id

    def _check_window(self, record: EscrowRecord, action: EscrowAction):
        window = window_for(action, record.side, record.immutables.timelocks)
        now = self.now()
        if not in_window(window, now):
            raise WindowError(
                f"{action.value} not allowed at {now}, window [{window[0]}, {window[1]})",
                window=window, now=now,
            )

    def withdraw(self, contract_id: str, secret: str, caller: str,
                 public: bool = False) -> EscrowEvent:
        """
        Release principal to the recipient with the secret.

        Private path: caller must be the taker, withdraw window.
        Public path: any caller, public_withdraw window.
        The safety deposit goes to the caller either way.
        """
        action = EscrowAction.PUBLIC_WITHDRAW if public else EscrowAction.WITHDRAW
        with self._lock:
            record = self._get(contract_id)
            if record.state != EscrowState.ACTIVE:
                raise StateError(f"Escrow {short(contract_id)} is {record.state.value}",
                                 state=record.state)
            if not public and caller != record.immutables.taker:
                raise AuthorizationError(f"{caller} is not the taker of {short(contract_id)}")
            self._check_window(record, action)
            if not verify_preimage(secret, record.immutables.hashlock):
                raise SecretMismatchError(f"Secret does not match hashlock of {short(contract_id)}")

            imm = record.immutables
            self._release(record.contract_id, imm.token, imm.amount, record.recipient)
            if imm.safety_deposit:
                self._release(record.contract_id, NATIVE_TOKEN, imm.safety_deposit, caller)
            record.state = EscrowState.WITHDRAWN
            event = self._emit(EVENT_WITHDRAWN, record, caller,
                               secret=normalize_hex(secret), public=public)

        log.info(f"Escrow withdrawn: {short(contract_id)} by {caller} ({action.value})")
        return event

    def public_withdraw(self, contract_id: str, secret: str, caller: str) -> EscrowEvent:
        return self.withdraw(contract_id, secret, caller, public=True)

    def cancel(self, contract_id: str, caller: str, public: bool = False) -> EscrowEvent:
        """
        Return principal to the depositor after the cancellation checkpoint.

        Private path: caller must be the depositor.
        Public path (source only): any caller after public_cancellation.
        """
        action = EscrowAction.PUBLIC_CANCEL if public else EscrowAction.CANCEL
        with self._lock:
            record = self._get(contract_id)
            if record.state != EscrowState.ACTIVE:
                raise StateError(f"Escrow {short(contract_id)} is {record.state.value}",
                                 state=record.state)
            if not public and caller != record.depositor:
                raise AuthorizationError(f"{caller} is not the depositor of {short(contract_id)}")
            self._check_window(record, action)

            imm = record.immutables
            self._release(record.contract_id, imm.token, imm.amount, record.depositor)
            if imm.safety_deposit:
                self._release(record.contract_id, NATIVE_TOKEN, imm.safety_deposit, caller)
            record.state = EscrowState.CANCELLED
            event = self._emit(EVENT_CANCELLED, record, caller, public=public)

        log.info(f"Escrow cancelled: {short(contract_id)} by {caller} ({action.value})")
        return event

    def public_cancel(self, contract_id: str, caller: str) -> EscrowEvent:
        return self.cancel(contract_id, caller, public=True)

    def rescue_funds(self, contract_id: str, caller: str, token: str,
                     amount: int) -> EscrowEvent:
        """
        Sweep residual funds after rescue_delay. Does not change state.

        Only balances above what the escrow still owes can be rescued.
        """
        if amount <= 0:
            raise ValidationError("Rescue amount must be positive")
        with self._lock:
            record = self._get(contract_id)
            if caller != record.immutables.taker:
                raise AuthorizationError(f"{caller} is not the taker of {short(contract_id)}")
            now = self.now()
            if not rescue_eligible(record.immutables.timelocks, self.rescue_delay, now):
                start = record.immutables.timelocks.deployed_at + self.rescue_delay
                raise WindowError(f"Rescue not allowed before {start}",
                                  window=(start, None), now=now)

            held = self._holdings.get(record.contract_id, {}).get(token, 0)
            residual = held - self._owed(record).get(token, 0)
            if amount > residual:
                raise ValidationError(f"Rescue amount {amount} exceeds residual {residual}")

            self._release(record.contract_id, token, amount, caller)
            event = self._emit(EVENT_RESCUED, record, caller, token=token, amount=amount)

        log.warning(f"Funds rescued from {short(contract_id)}: {amount} {token} to {caller}")
        return event
