"""
Error taxonomy for xswap.

Escrow operations and chain adapters raise these; the orchestrator decides
per type whether to retry, wait for the next window or give up.
"""

from typing import Optional, Tuple


class SwapError(Exception):
    """Base class for all xswap errors."""


class ValidationError(SwapError, ValueError):
    """Malformed input (bad timelocks, zero amount). Never retried."""


class AuthorizationError(SwapError):
    """Caller is not allowed to perform the action in this window."""


class StateError(SwapError):
    """Transition attempted on a record that is already terminal."""

    def __init__(self, message: str, state=None):
        super().__init__(message)
        self.state = state


class SecretMismatchError(SwapError):
    """Presented secret does not hash to the hashlock."""


class WindowError(SwapError):
    """Action attempted outside its permitted time window."""

    def __init__(self, message: str, window: Optional[Tuple[int, Optional[int]]] = None,
                 now: Optional[int] = None):
        super().__init__(message)
        self.window = window
        self.now = now


class ChainError(SwapError):
    """RPC failure, timeout or infrastructure revert. Retried with backoff."""


class AlreadyExistsError(SwapError):
    """A record with the same id is already stored."""


class NotFoundError(SwapError):
    """No record with the given id."""
