"""
EVM chain adapter.

Talks to an EscrowFactory contract that keeps every escrow in one mapping
keyed by the off-chain contract_id (SHA256 of the canonical Immutables
encoding), so ids agree across chains.

Revert reasons are mapped onto the xswap error taxonomy; RPC and timeout
failures become ChainError.
"""

import hashlib
import logging
from dataclasses import dataclass
from typing import Optional, List, Tuple, Dict, Any

from web3 import Web3
from web3.exceptions import ContractLogicError, Web3Exception
from eth_account import Account

from ..core import (
    EscrowSide, EscrowState, Immutables, Timelocks, NATIVE_TOKEN,
    compute_contract_id, normalize_hex, short,
)
from ..errors import (
    SwapError, ValidationError, AuthorizationError, StateError, SecretMismatchError,
    WindowError, ChainError, AlreadyExistsError, NotFoundError,
)
from .base import ChainAdapter, ChainEvent, Receipt, EscrowView

log = logging.getLogger(__name__)

ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"

SIDE_CODES = {EscrowSide.SOURCE: 0, EscrowSide.DESTINATION: 1}
STATE_CODES = {0: EscrowState.ACTIVE, 1: EscrowState.WITHDRAWN, 2: EscrowState.CANCELLED}

_IMMUTABLES_COMPONENTS = [
    {"name": "orderHash", "type": "bytes32"},
    {"name": "hashlock", "type": "bytes32"},
    {"name": "maker", "type": "address"},
    {"name": "taker", "type": "address"},
    {"name": "token", "type": "address"},
    {"name": "amount", "type": "uint256"},
    {"name": "safetyDeposit", "type": "uint256"},
    {"name": "timelocks", "type": "uint256[6]"},
]

# Contract ABI (minimal - only functions we use)
ESCROW_FACTORY_ABI = [
    {
        "name": "createEscrow",
        "type": "function",
        "stateMutability": "payable",
        "inputs": [
            {"name": "escrowId", "type": "bytes32"},
            {"name": "side", "type": "uint8"},
            {"name": "immutables", "type": "tuple", "components": _IMMUTABLES_COMPONENTS},
        ],
        "outputs": [],
    },
    {
        "name": "withdraw",
        "type": "function",
        "stateMutability": "nonpayable",
        "inputs": [
            {"name": "escrowId", "type": "bytes32"},
            {"name": "secret", "type": "bytes32"},
        ],
        "outputs": [],
    },
    {
        "name": "publicWithdraw",
        "type": "function",
        "stateMutability": "nonpayable",
        "inputs": [
            {"name": "escrowId", "type": "bytes32"},
            {"name": "secret", "type": "bytes32"},
        ],
        "outputs": [],
    },
    {
        "name": "cancel",
        "type": "function",
        "stateMutability": "nonpayable",
        "inputs": [{"name": "escrowId", "type": "bytes32"}],
        "outputs": [],
    },
    {
        "name": "publicCancel",
        "type": "function",
        "stateMutability": "nonpayable",
        "inputs": [{"name": "escrowId", "type": "bytes32"}],
        "outputs": [],
    },
    {
        "name": "getEscrow",
        "type": "function",
        "stateMutability": "view",
        "inputs": [{"name": "escrowId", "type": "bytes32"}],
        "outputs": [
            {"name": "exists", "type": "bool"},
            {"name": "side", "type": "uint8"},
            {"name": "state", "type": "uint8"},
            {"name": "timelocks", "type": "uint256[6]"},
        ],
    },
    {
        "name": "EscrowCreated",
        "type": "event",
        "anonymous": False,
        "inputs": [
            {"name": "escrowId", "type": "bytes32", "indexed": True},
            {"name": "side", "type": "uint8", "indexed": False},
        ],
    },
    {
        "name": "EscrowWithdrawn",
        "type": "event",
        "anonymous": False,
        "inputs": [
            {"name": "escrowId", "type": "bytes32", "indexed": True},
            {"name": "secret", "type": "bytes32", "indexed": False},
            {"name": "caller", "type": "address", "indexed": False},
        ],
    },
    {
        "name": "EscrowCancelled",
        "type": "event",
        "anonymous": False,
        "inputs": [
            {"name": "escrowId", "type": "bytes32", "indexed": True},
            {"name": "caller", "type": "address", "indexed": False},
        ],
    },
]

EVENT_KINDS = {
    "EscrowCreated": "Created",
    "EscrowWithdrawn": "Withdrawn",
    "EscrowCancelled": "Cancelled",
}

# Custom error / require string fragments → taxonomy
REVERT_MAP = [
    ("AlreadyExists", AlreadyExistsError),
    ("NotFound", NotFoundError),
    ("InvalidCaller", AuthorizationError),
    ("InvalidSecret", SecretMismatchError),
    ("InvalidTime", WindowError),
    ("InvalidState", StateError),
    ("InvalidImmutables", ValidationError),
    ("InvalidAmount", ValidationError),
]


def map_revert(exc: Exception) -> SwapError:
    """Translate a contract revert into the matching xswap error."""
    message = str(exc)
    for fragment, error_cls in REVERT_MAP:
        if fragment in message:
            return error_cls(f"Revert: {message}")
    return ChainError(f"Revert: {message}")


def _bytes32(value: str) -> bytes:
    """32-byte hex as raw bytes; any other string is hashed down to 32 bytes."""
    try:
        return bytes.fromhex(normalize_hex(value, 32))
    except ValidationError:
        return hashlib.sha256(value.encode("utf-8")).digest()


def _event_signature(entry: Dict[str, Any]) -> str:
    types = ",".join(i["type"] for i in entry["inputs"])
    return f"{entry['name']}({types})"


@dataclass
class EVMAdapterConfig:
    """EVM adapter configuration."""
    rpc_url: str
    chain_id: int
    factory_address: str
    private_key: str
    name: str = "evm"
    request_timeout: int = 30      # seconds per RPC call
    receipt_timeout: int = 120     # seconds to wait for inclusion
    gas_limit: int = 400000
    max_block_range: int = 500     # blocks per get_logs call


class EVMChainAdapter(ChainAdapter):
    """ChainAdapter for an EVM EscrowFactory deployment."""

    def __init__(self, config: EVMAdapterConfig):
        self.config = config
        self.name = config.name
        key = config.private_key
        if not key.startswith("0x"):
            key = "0x" + key
        self._signer = Account.from_key(key)
        self.account = self._signer.address
        self._web3 = None
        self._contract = None
        self._topics = {
            bytes(Web3.keccak(text=_event_signature(e))): e["name"]
            for e in ESCROW_FACTORY_ABI if e["type"] == "event"
        }

    @property
    def web3(self):
        """Lazy-load web3 instance."""
        if self._web3 is None:
            self._web3 = Web3(Web3.HTTPProvider(
                self.config.rpc_url,
                request_kwargs={"timeout": self.config.request_timeout},
            ))
        return self._web3

    @property
    def contract(self):
        if self._contract is None:
            self._contract = self.web3.eth.contract(
                address=Web3.to_checksum_address(self.config.factory_address),
                abi=ESCROW_FACTORY_ABI,
            )
        return self._contract

    # =========================================================================
    # Encoding
    # =========================================================================

    def _token_address(self, token: str) -> str:
        if token == NATIVE_TOKEN:
            return ZERO_ADDRESS
        return Web3.to_checksum_address(token)

    def _immutables_tuple(self, imm: Immutables) -> tuple:
        tl = imm.timelocks
        timelocks = [
            tl.deployed_at,
            tl.finality or 0,
            tl.withdrawal,
            tl.public_withdrawal,
            tl.cancellation,
            tl.public_cancellation or 0,
        ]
        return (
            _bytes32(imm.order_hash),
            bytes.fromhex(normalize_hex(imm.hashlock, 32)),
            Web3.to_checksum_address(imm.maker),
            Web3.to_checksum_address(imm.taker),
            self._token_address(imm.token),
            imm.amount,
            imm.safety_deposit,
            timelocks,
        )

    def _check_caller(self, caller: str):
        if caller.lower() != self.account.lower():
            raise AuthorizationError(f"Adapter signs as {self.account}, not {caller}")

    # =========================================================================
    # Transactions
    # =========================================================================

    def _send(self, fn, action: str, contract_id: str, value: int = 0) -> Receipt:
        """Preflight, sign, submit and wait for one contract call."""
        w3 = self.web3
        try:
            # Preflight surfaces the revert reason before paying gas
            fn.call({"from": self.account, "value": value})

            nonce = w3.eth.get_transaction_count(self.account, 'pending')
            gas_price = int(w3.eth.gas_price * 1.1)
            tx = fn.build_transaction({
                'from': self.account,
                'nonce': nonce,
                'gas': self.config.gas_limit,
                'gasPrice': gas_price,
                'chainId': self.config.chain_id,
                'value': value,
            })
            signed = self._signer.sign_transaction(tx)
            tx_hash = w3.eth.send_raw_transaction(signed.raw_transaction)
            log.info(f"[{self.name}] {action} TX: {tx_hash.hex()}")

            receipt = w3.eth.wait_for_transaction_receipt(
                tx_hash, timeout=self.config.receipt_timeout
            )
        except ContractLogicError as e:
            raise map_revert(e) from e
        except (Web3Exception, OSError, ValueError) as e:
            raise ChainError(f"[{self.name}] {action} failed: {e}") from e

        if receipt['status'] != 1:
            raise ChainError(f"[{self.name}] {action} reverted: {tx_hash.hex()}")

        return Receipt(
            success=True,
            contract_id=contract_id,
            action=action,
            tx_hash=tx_hash.hex(),
            offset=receipt['blockNumber'],
        )

    def create(self, immutables: Immutables, side: EscrowSide) -> str:
        contract_id = compute_contract_id(immutables)
        value = immutables.safety_deposit
        # Destination principal in native coin is paid by the taker (us)
        if (side == EscrowSide.DESTINATION and immutables.token == NATIVE_TOKEN
                and immutables.taker.lower() == self.account.lower()):
            value += immutables.amount

        fn = self.contract.functions.createEscrow(
            bytes.fromhex(contract_id),
            SIDE_CODES[side],
            self._immutables_tuple(immutables),
        )
        self._send(fn, "create", contract_id, value=value)
        log.info(f"[{self.name}] Escrow created: {short(contract_id)} side={side.value}")
        return contract_id

    def withdraw(self, contract_id: str, secret: str, caller: str,
                 public: bool = False) -> Receipt:
        self._check_caller(caller)
        escrow_id = bytes.fromhex(normalize_hex(contract_id, 32))
        secret_b = bytes.fromhex(normalize_hex(secret, 32))
        if public:
            fn = self.contract.functions.publicWithdraw(escrow_id, secret_b)
            return self._send(fn, "public_withdraw", contract_id)
        fn = self.contract.functions.withdraw(escrow_id, secret_b)
        return self._send(fn, "withdraw", contract_id)

    def cancel(self, contract_id: str, caller: str, public: bool = False) -> Receipt:
        self._check_caller(caller)
        escrow_id = bytes.fromhex(normalize_hex(contract_id, 32))
        if public:
            return self._send(self.contract.functions.publicCancel(escrow_id),
                              "public_cancel", contract_id)
        return self._send(self.contract.functions.cancel(escrow_id), "cancel", contract_id)

    # =========================================================================
    # Queries
    # =========================================================================

    def get_state(self, contract_id: str) -> EscrowView:
        escrow_id = bytes.fromhex(normalize_hex(contract_id, 32))
        try:
            exists, side, state, tl = self.contract.functions.getEscrow(escrow_id).call()
        except ContractLogicError as e:
            raise map_revert(e) from e
        except (Web3Exception, OSError, ValueError) as e:
            raise ChainError(f"[{self.name}] getEscrow failed: {e}") from e

        if not exists:
            raise NotFoundError(f"Escrow {short(contract_id)} not found on {self.name}")

        escrow_side = EscrowSide.SOURCE if side == 0 else EscrowSide.DESTINATION
        timelocks = Timelocks(
            deployed_at=tl[0],
            finality=tl[1] if escrow_side == EscrowSide.SOURCE else None,
            withdrawal=tl[2],
            public_withdrawal=tl[3],
            cancellation=tl[4],
            public_cancellation=tl[5] if escrow_side == EscrowSide.SOURCE else None,
        )
        return EscrowView(
            contract_id=normalize_hex(contract_id),
            side=escrow_side,
            state=STATE_CODES[state],
            timelocks=timelocks,
        )

    def head_offset(self) -> int:
        try:
            return self.web3.eth.block_number + 1
        except (Web3Exception, OSError, ValueError) as e:
            raise ChainError(f"[{self.name}] block_number failed: {e}") from e

    def now(self) -> int:
        try:
            return int(self.web3.eth.get_block("latest")["timestamp"])
        except (Web3Exception, OSError, ValueError) as e:
            raise ChainError(f"[{self.name}] get_block failed: {e}") from e

    def _decode(self, entry) -> Optional[ChainEvent]:
        topics = entry.get('topics') or []
        if not topics:
            return None
        event_name = self._topics.get(bytes(topics[0]))
        if event_name is None:
            return None

        decoded = getattr(self.contract.events, event_name)().process_log(entry)
        args = decoded['args']
        secret = None
        if event_name == "EscrowWithdrawn":
            secret = bytes(args['secret']).hex()

        tx_hash = entry.get('transactionHash')
        return ChainEvent(
            kind=EVENT_KINDS[event_name],
            contract_id=bytes(args['escrowId']).hex(),
            offset=entry['blockNumber'],
            secret=secret,
            tx_hash=tx_hash.hex() if tx_hash is not None else None,
            data={k: v for k, v in args.items() if k not in ("escrowId", "secret")},
        )

    def poll_events(self, from_offset: int, limit: int = 100) -> Tuple[List[ChainEvent], int]:
        """Scan at most max_block_range blocks starting at from_offset.

        Offsets are block numbers; the returned offset is the first block
        not yet scanned.
        """
        head = self.head_offset() - 1
        if from_offset > head:
            return [], from_offset
        to_block = min(head, from_offset + self.config.max_block_range - 1)

        try:
            logs = self.web3.eth.get_logs({
                "address": Web3.to_checksum_address(self.config.factory_address),
                "fromBlock": from_offset,
                "toBlock": to_block,
            })
        except (Web3Exception, OSError, ValueError) as e:
            raise ChainError(f"[{self.name}] get_logs failed: {e}") from e

        events = []
        for entry in logs:
            event = self._decode(entry)
            if event is not None:
                events.append(event)
        return events, to_block + 1
