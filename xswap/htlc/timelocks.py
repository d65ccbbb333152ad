"""
Timelock policy.

Turns relative delays into absolute checkpoints and answers "when may this
action happen" for each escrow side:

    Source:      deployed_at < finality <= withdrawal <= public_withdrawal
                 <= cancellation <= public_cancellation
    Destination: deployed_at < withdrawal <= public_withdrawal <= cancellation

Windows are half-open [start, end). An end of None means open-ended.
"""

from dataclasses import dataclass
from typing import Optional, Tuple, Dict, Any

from ..core import (
    EscrowAction, EscrowSide, Timelocks,
    TIMELOCK_CASCADE_MIN_GAP_SECONDS, DEPLOY_TIME_TOLERANCE,
)
from ..errors import ValidationError

Window = Tuple[int, Optional[int]]


@dataclass
class DelayConfig:
    """Delays in seconds relative to deployed_at."""
    withdrawal: int
    public_withdrawal: int
    cancellation: int
    finality: Optional[int] = None             # Source only, defaults to withdrawal
    public_cancellation: Optional[int] = None  # Source only, defaults to cancellation

    def to_dict(self) -> Dict[str, Any]:
        return {
            "withdrawal": self.withdrawal,
            "public_withdrawal": self.public_withdrawal,
            "cancellation": self.cancellation,
            "finality": self.finality,
            "public_cancellation": self.public_cancellation,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DelayConfig":
        return cls(
            withdrawal=data["withdrawal"],
            public_withdrawal=data["public_withdrawal"],
            cancellation=data["cancellation"],
            finality=data.get("finality"),
            public_cancellation=data.get("public_cancellation"),
        )


def validate_timelocks(timelocks: Timelocks, side: EscrowSide) -> None:
    """Raise ValidationError unless the checkpoints are ordered for this side."""
    if side == EscrowSide.SOURCE:
        if timelocks.finality is None or timelocks.public_cancellation is None:
            raise ValidationError("Source timelocks need finality and public_cancellation")
        names = ["deployed_at", "finality", "withdrawal", "public_withdrawal",
                 "cancellation", "public_cancellation"]
    else:
        if timelocks.finality is not None or timelocks.public_cancellation is not None:
            raise ValidationError("Destination timelocks carry no finality or public_cancellation")
        names = ["deployed_at", "withdrawal", "public_withdrawal", "cancellation"]

    values = [getattr(timelocks, n) for n in names]
    for name, value in zip(names, values):
        if isinstance(value, bool) or not isinstance(value, int) or value < 0:
            raise ValidationError(f"Timelock {name} must be a non-negative int, got {value!r}")

    # First step is strict, the rest non-decreasing
    if not values[0] < values[1]:
        raise ValidationError(f"{names[1]} ({values[1]}) must be after deployed_at ({values[0]})")
    for i in range(1, len(values) - 1):
        if values[i] > values[i + 1]:
            raise ValidationError(
                f"Timelocks not monotonic: {names[i]}={values[i]} > {names[i + 1]}={values[i + 1]}"
            )


def build_timelocks(deployed_at: int, delays: DelayConfig, side: EscrowSide) -> Timelocks:
    """
    Build absolute checkpoints from relative delays.

    Raises:
        ValidationError: negative delay or non-monotonic result
    """
    raw = [delays.withdrawal, delays.public_withdrawal, delays.cancellation,
           delays.finality, delays.public_cancellation]
    for d in raw:
        if d is not None and (isinstance(d, bool) or not isinstance(d, int) or d < 0):
            raise ValidationError(f"Delay must be a non-negative int, got {d!r}")

    if side == EscrowSide.SOURCE:
        finality = delays.finality if delays.finality is not None else delays.withdrawal
        public_cancellation = (delays.public_cancellation
                               if delays.public_cancellation is not None
                               else delays.cancellation)
        timelocks = Timelocks(
            deployed_at=deployed_at,
            finality=deployed_at + finality,
            withdrawal=deployed_at + delays.withdrawal,
            public_withdrawal=deployed_at + delays.public_withdrawal,
            cancellation=deployed_at + delays.cancellation,
            public_cancellation=deployed_at + public_cancellation,
        )
    else:
        timelocks = Timelocks(
            deployed_at=deployed_at,
            withdrawal=deployed_at + delays.withdrawal,
            public_withdrawal=deployed_at + delays.public_withdrawal,
            cancellation=deployed_at + delays.cancellation,
        )

    validate_timelocks(timelocks, side)
    return timelocks


def window_for(action: EscrowAction, side: EscrowSide, timelocks: Timelocks) -> Window:
    """Permitted [start, end) for an action on one side."""
    if action == EscrowAction.WITHDRAW:
        return timelocks.withdrawal, timelocks.cancellation
    if action == EscrowAction.PUBLIC_WITHDRAW:
        return timelocks.public_withdrawal, timelocks.cancellation
    if action == EscrowAction.CANCEL:
        return timelocks.cancellation, None
    if action == EscrowAction.PUBLIC_CANCEL:
        if side != EscrowSide.SOURCE:
            raise ValidationError("public_cancel exists on the source side only")
        return timelocks.public_cancellation, None
    raise ValidationError(f"Unknown action: {action}")


def in_window(window: Window, now: int) -> bool:
    start, end = window
    return now >= start and (end is None or now < end)


def rescue_eligible(timelocks: Timelocks, rescue_delay: int, now: int) -> bool:
    return now >= timelocks.deployed_at + rescue_delay


def validate_cascade(src: Timelocks, dst: Timelocks,
                     min_gap: int = TIMELOCK_CASCADE_MIN_GAP_SECONDS) -> bool:
    """Check the destination leg resolves before the source leg can be cancelled.

    The taker learns the secret no later than dst cancellation and needs
    at least min_gap seconds to claim the source leg.

    Returns True if valid, raises ValidationError if not.
    """
    if dst.cancellation + min_gap > src.cancellation:
        raise ValidationError(
            f"Cascade violation: dst cancellation {dst.cancellation} + gap {min_gap} "
            f"> src cancellation {src.cancellation}"
        )
    if dst.withdrawal < src.deployed_at:
        raise ValidationError("Destination withdrawal opens before source deployment")
    return True


def deploy_time_valid(deployed_at: int, now: int,
                      tolerance: int = DEPLOY_TIME_TOLERANCE) -> bool:
    """deployed_at must not be in the future nor older than tolerance."""
    return deployed_at <= now and now - deployed_at <= tolerance
