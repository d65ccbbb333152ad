"""
Core types and hash utilities for xswap.

Holds the data model shared by both escrow sides (Timelocks, Immutables),
the protocol enums and the secret/hashlock/contract-id functions. SHA-256
is the only hash function used anywhere in the project.
"""

import hashlib
import secrets
from enum import Enum
from dataclasses import dataclass
from typing import Optional, Dict, Any

from .errors import ValidationError


class EscrowSide(Enum):
    """Which leg of the swap an escrow belongs to."""
    SOURCE = "source"            # Maker locks, taker claims
    DESTINATION = "destination"  # Taker locks, maker receives


class EscrowState(Enum):
    """Per-escrow state. WITHDRAWN and CANCELLED are terminal."""
    ACTIVE = "active"
    WITHDRAWN = "withdrawn"
    CANCELLED = "cancelled"


class EscrowAction(Enum):
    """Time-gated escrow actions."""
    WITHDRAW = "withdraw"
    PUBLIC_WITHDRAW = "public_withdraw"
    CANCEL = "cancel"
    PUBLIC_CANCEL = "public_cancel"


class SwapStatus(Enum):
    """Protocol-level swap status, owned by the orchestrator.

    Happy path:
      PENDING → SRC_ESCROW_CREATED → DST_ESCROW_CREATED → SECRET_REVEALED → COMPLETED
    Timeout branch:
      * → REFUND_PENDING → REFUNDED
    """
    PENDING = "pending"                        # Terms accepted, secret generated
    SRC_ESCROW_CREATED = "src_escrow_created"  # Source escrow confirmed Active
    DST_ESCROW_CREATED = "dst_escrow_created"  # Destination escrow confirmed Active
    SECRET_REVEALED = "secret_revealed"        # Verified secret seen on-chain
    COMPLETED = "completed"                    # Both legs withdrawn
    REFUND_PENDING = "refund_pending"          # Cancelling whatever is still Active
    REFUNDED = "refunded"                      # Every created leg cancelled
    FAILED = "failed"                          # Needs operator intervention


TERMINAL_STATUSES = frozenset({
    SwapStatus.COMPLETED,
    SwapStatus.REFUNDED,
    SwapStatus.FAILED,
})

NON_TERMINAL_STATUSES = frozenset(s for s in SwapStatus if s not in TERMINAL_STATUSES)

ALLOWED_TRANSITIONS = {
    SwapStatus.PENDING: {
        SwapStatus.SRC_ESCROW_CREATED, SwapStatus.REFUND_PENDING, SwapStatus.FAILED,
    },
    SwapStatus.SRC_ESCROW_CREATED: {
        SwapStatus.DST_ESCROW_CREATED, SwapStatus.SECRET_REVEALED,
        SwapStatus.REFUND_PENDING, SwapStatus.FAILED,
    },
    SwapStatus.DST_ESCROW_CREATED: {
        SwapStatus.SECRET_REVEALED, SwapStatus.REFUND_PENDING, SwapStatus.FAILED,
    },
    SwapStatus.SECRET_REVEALED: {SwapStatus.COMPLETED, SwapStatus.FAILED},
    SwapStatus.REFUND_PENDING: {
        SwapStatus.REFUNDED, SwapStatus.SECRET_REVEALED, SwapStatus.FAILED,
    },
    SwapStatus.COMPLETED: set(),
    SwapStatus.REFUNDED: set(),
    SwapStatus.FAILED: set(),
}


# =============================================================================
# Constants
# =============================================================================

SECRET_LENGTH = 32                 # bytes
NATIVE_TOKEN = "native"            # Safety deposits are always paid in this
DEFAULT_RESCUE_DELAY = 3600        # seconds after deployment
DEPLOY_TIME_TOLERANCE = 300       # max age of deployed_at when an escrow is created
TIMELOCK_CASCADE_MIN_GAP_SECONDS = 1800  # dst cancellation must precede src by this

ENCODING_DOMAIN = b"xswap.immutables.v1"

# Type tags for the canonical encoding
TAG_NONE = 0x00
TAG_INT = 0x01
TAG_STR = 0x02
TAG_BYTES32 = 0x03


@dataclass(frozen=True)
class Timelocks:
    """Absolute checkpoints (unix seconds) of one escrow.

    Destination escrows leave finality and public_cancellation unset.
    """
    deployed_at: int
    withdrawal: int
    public_withdrawal: int
    cancellation: int
    finality: Optional[int] = None
    public_cancellation: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "deployed_at": self.deployed_at,
            "finality": self.finality,
            "withdrawal": self.withdrawal,
            "public_withdrawal": self.public_withdrawal,
            "cancellation": self.cancellation,
            "public_cancellation": self.public_cancellation,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Timelocks":
        return cls(
            deployed_at=data["deployed_at"],
            withdrawal=data["withdrawal"],
            public_withdrawal=data["public_withdrawal"],
            cancellation=data["cancellation"],
            finality=data.get("finality"),
            public_cancellation=data.get("public_cancellation"),
        )


@dataclass(frozen=True)
class Immutables:
    """Frozen parameters of one escrow leg. Hashed into its contract_id."""
    order_hash: str
    hashlock: str           # SHA256 hash (hex, 64 chars)
    maker: str
    taker: str
    token: str
    amount: int             # Smallest unit
    safety_deposit: int     # Smallest unit of NATIVE_TOKEN
    timelocks: Timelocks

    def to_dict(self) -> Dict[str, Any]:
        return {
            "order_hash": self.order_hash,
            "hashlock": self.hashlock,
            "maker": self.maker,
            "taker": self.taker,
            "token": self.token,
            "amount": self.amount,
            "safety_deposit": self.safety_deposit,
            "timelocks": self.timelocks.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Immutables":
        return cls(
            order_hash=data["order_hash"],
            hashlock=data["hashlock"],
            maker=data["maker"],
            taker=data["taker"],
            token=data["token"],
            amount=data["amount"],
            safety_deposit=data["safety_deposit"],
            timelocks=Timelocks.from_dict(data["timelocks"]),
        )


# =============================================================================
# Hash / Secret Utilities
# =============================================================================

def normalize_hex(value: str, length: Optional[int] = None) -> str:
    """Lowercase hex without 0x prefix. Raises ValidationError if malformed.

    Args:
        value: Hex string, optionally 0x-prefixed
        length: Expected decoded length in bytes
    """
    if not isinstance(value, str):
        raise ValidationError(f"Expected hex string, got {type(value).__name__}")
    h = value[2:] if value.startswith(("0x", "0X")) else value
    try:
        raw = bytes.fromhex(h)
    except ValueError:
        raise ValidationError(f"Invalid hex: {value[:20]}")
    if length is not None and len(raw) != length:
        raise ValidationError(f"Expected {length} bytes, got {len(raw)}")
    return raw.hex()


def short(value: Optional[str]) -> str:
    """Truncated hex for log lines."""
    if not value:
        return "-"
    return f"{value[:16]}..."


def generate_secret() -> tuple[str, str]:
    """
    Generate a random secret and its SHA256 hashlock.

    Returns:
        (secret_hex, hashlock_hex)
    """
    secret = secrets.token_bytes(SECRET_LENGTH)
    hashlock = hashlib.sha256(secret).digest()
    return secret.hex(), hashlock.hex()


def hash_secret(secret_hex: str) -> str:
    """SHA256 of a hex secret, as hex."""
    return hashlib.sha256(bytes.fromhex(normalize_hex(secret_hex))).hexdigest()


def verify_preimage(preimage_hex: str, hashlock_hex: str) -> bool:
    """
    Verify that SHA256(preimage) == hashlock.

    Malformed input is a mismatch, never an exception.
    """
    try:
        preimage = bytes.fromhex(normalize_hex(preimage_hex, SECRET_LENGTH))
        expected = bytes.fromhex(normalize_hex(hashlock_hex, 32))
        return hashlib.sha256(preimage).digest() == expected
    except (ValueError, TypeError):
        return False


def _field(tag: int, payload: bytes) -> bytes:
    return bytes([tag]) + len(payload).to_bytes(4, "big") + payload


def _int_field(value: Optional[int]) -> bytes:
    if value is None:
        return _field(TAG_NONE, b"")
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationError(f"Expected int, got {type(value).__name__}")
    if value < 0:
        raise ValidationError(f"Negative value in immutables: {value}")
    return _field(TAG_INT, value.to_bytes((value.bit_length() + 7) // 8 or 1, "big"))


def _str_field(value: str) -> bytes:
    return _field(TAG_STR, value.encode("utf-8"))


def encode_immutables(immutables: Immutables) -> bytes:
    """Canonical, order-sensitive, type-tagged encoding of Immutables."""
    tl = immutables.timelocks
    parts = [
        _field(TAG_STR, ENCODING_DOMAIN),
        _str_field(immutables.order_hash),
        _field(TAG_BYTES32, bytes.fromhex(normalize_hex(immutables.hashlock, 32))),
        _str_field(immutables.maker),
        _str_field(immutables.taker),
        _str_field(immutables.token),
        _int_field(immutables.amount),
        _int_field(immutables.safety_deposit),
        _int_field(tl.deployed_at),
        _int_field(tl.finality),
        _int_field(tl.withdrawal),
        _int_field(tl.public_withdrawal),
        _int_field(tl.cancellation),
        _int_field(tl.public_cancellation),
    ]
    return b"".join(parts)


def compute_contract_id(immutables: Immutables) -> str:
    """Content-addressed escrow id: SHA256 of the canonical encoding."""
    return hashlib.sha256(encode_immutables(immutables)).hexdigest()
