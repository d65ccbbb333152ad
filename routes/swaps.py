"""
Swap endpoints.

Extracted from server.py for modularity. server.py calls configure() with
the running Relayer at startup.
"""

import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, HTTPException, Query
from pydantic import BaseModel, Field

from xswap.core import SwapStatus
from xswap.errors import (
    SwapError, ValidationError, StateError, NotFoundError, AlreadyExistsError,
)
from xswap.htlc.timelocks import DelayConfig
from xswap.swap.executor import SwapTerms
from xswap.swap.relayer import Relayer

log = logging.getLogger(__name__)

router = APIRouter()

# ---------------------------------------------------------------------------
# Relayer handle set by server.py at init
# ---------------------------------------------------------------------------

_relayer: Optional[Relayer] = None


def configure(relayer: Optional[Relayer]):
    """Configure swap routes. Called once at startup by server.py."""
    global _relayer
    _relayer = relayer


def get_relayer() -> Optional[Relayer]:
    return _relayer


def _require_relayer() -> Relayer:
    if _relayer is None:
        raise HTTPException(503, "Relayer not configured")
    return _relayer


def _http_error(e: SwapError) -> HTTPException:
    if isinstance(e, NotFoundError):
        return HTTPException(404, str(e))
    if isinstance(e, (StateError, AlreadyExistsError)):
        return HTTPException(409, str(e))
    if isinstance(e, ValidationError):
        return HTTPException(400, str(e))
    return HTTPException(502, str(e))


# ---------------------------------------------------------------------------
# Models
# ---------------------------------------------------------------------------

class DelayModel(BaseModel):
    withdrawal: int = Field(..., ge=0)
    public_withdrawal: int = Field(..., ge=0)
    cancellation: int = Field(..., ge=0)
    finality: Optional[int] = Field(None, ge=0)
    public_cancellation: Optional[int] = Field(None, ge=0)

    def to_config(self) -> DelayConfig:
        return DelayConfig(
            withdrawal=self.withdrawal,
            public_withdrawal=self.public_withdrawal,
            cancellation=self.cancellation,
            finality=self.finality,
            public_cancellation=self.public_cancellation,
        )


class SwapCreateRequest(BaseModel):
    src_chain: str
    dst_chain: str
    maker_src: str
    taker_src: str
    maker_dst: str
    taker_dst: str
    src_token: str
    dst_token: str
    src_amount: int = Field(..., gt=0)
    dst_amount: int = Field(..., gt=0)
    src_delays: DelayModel
    dst_delays: DelayModel
    src_safety_deposit: int = Field(0, ge=0)
    dst_safety_deposit: int = Field(0, ge=0)
    order_hash: str = ""


class SecretResponse(BaseModel):
    swap_id: str
    secret: str
    hashlock: str


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------

@router.get("/api/status")
async def get_status() -> Dict[str, Any]:
    """Relayer health and swap counts."""
    relayer = _require_relayer()
    counts = {s.value: 0 for s in SwapStatus}
    for session in relayer.store.list():
        counts[session.status.value] += 1
    return {
        "status": "ok",
        "running": relayer.started,
        "accounts": relayer.accounts(),
        "chains": list(relayer.adapters),
        "swaps": counts,
    }


@router.post("/api/swap/create")
async def create_swap(req: SwapCreateRequest) -> Dict[str, Any]:
    """Accept negotiated terms and start a swap."""
    relayer = _require_relayer()
    terms = SwapTerms(
        src_chain=req.src_chain,
        dst_chain=req.dst_chain,
        maker_src=req.maker_src,
        taker_src=req.taker_src,
        maker_dst=req.maker_dst,
        taker_dst=req.taker_dst,
        src_token=req.src_token,
        dst_token=req.dst_token,
        src_amount=req.src_amount,
        dst_amount=req.dst_amount,
        src_delays=req.src_delays.to_config(),
        dst_delays=req.dst_delays.to_config(),
        src_safety_deposit=req.src_safety_deposit,
        dst_safety_deposit=req.dst_safety_deposit,
        order_hash=req.order_hash,
    )
    try:
        session = relayer.orchestrator.start_swap(terms)
    except SwapError as e:
        raise _http_error(e)
    log.info(f"API: swap {session.swap_id} created ({session.direction})")
    return session.to_dict(include_preimage=False)


@router.get("/api/swap/{swap_id}")
async def get_swap(swap_id: str) -> Dict[str, Any]:
    relayer = _require_relayer()
    try:
        session = relayer.orchestrator.get_swap(swap_id)
    except SwapError as e:
        raise _http_error(e)
    return session.to_dict(include_preimage=False)


@router.get("/api/swaps")
async def list_swaps(status: Optional[str] = Query(None)) -> Dict[str, Any]:
    relayer = _require_relayer()
    wanted = None
    if status:
        try:
            wanted = SwapStatus(status)
        except ValueError:
            raise HTTPException(400, f"Unknown status: {status}")
    swaps = [s.to_dict(include_preimage=False)
             for s in relayer.orchestrator.list_swaps(wanted)]
    return {"swaps": swaps, "count": len(swaps)}


@router.post("/api/swap/{swap_id}/secret", response_model=SecretResponse)
async def release_secret(swap_id: str) -> SecretResponse:
    """Release the secret to the taker once the destination escrow exists."""
    relayer = _require_relayer()
    try:
        secret = relayer.orchestrator.release_secret(swap_id)
        session = relayer.orchestrator.get_swap(swap_id)
    except SwapError as e:
        raise _http_error(e)
    return SecretResponse(swap_id=swap_id, secret=secret, hashlock=session.hashlock)
