"""
degentalk.api.routes.wallet — Balance, ledger, transfers, tips & rain
=======================================================================

Every endpoint that moves DGT sits behind :func:`rate_limited_wallet_user`.
Amounts travel as decimal strings so no precision is lost in JSON.
"""

from __future__ import annotations

from decimal import Decimal

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from degentalk.api.deps import get_cache, get_current_user, get_engine
from degentalk.api.rate_limit import rate_limited_wallet_user
from degentalk.engine.cache import ConfigCache
from degentalk.engine.economy import from_micro
from degentalk.services import payment_service, tip_service, wallet_service

router = APIRouter(prefix="/wallet", tags=["wallet"])


class TransferBody(BaseModel):
    to_user_id: int
    amount: Decimal = Field(gt=0, max_digits=20, decimal_places=6)
    note: str | None = Field(default=None, max_length=500)


class TipBody(BaseModel):
    recipient_id: int
    amount: Decimal = Field(gt=0, max_digits=20, decimal_places=6)
    post_id: int | None = None
    message: str | None = Field(default=None, max_length=500)


class RainBody(BaseModel):
    amount: Decimal = Field(gt=0, max_digits=20, decimal_places=6)
    recipient_count: int = Field(ge=1)
    source: str = Field(default="shoutbox", max_length=50)


# ---------------------------------------------------------------------------
# Reads
# ---------------------------------------------------------------------------
@router.get("/balance")
def balance(user: dict = Depends(get_current_user), engine=Depends(get_engine)):
    micro = wallet_service.get_balance(engine, user["id"])
    return {"user_id": user["id"], "balance": str(from_micro(micro))}


@router.get("/transactions")
def transactions(
    type: str | None = None,
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    user: dict = Depends(get_current_user),
    engine=Depends(get_engine),
):
    return {
        "transactions": wallet_service.get_history(
            engine, user["id"], limit=limit, offset=offset, type=type,
        ),
    }


@router.get("/withdrawals")
def withdrawals(
    limit: int = Query(20, ge=1, le=100),
    user: dict = Depends(get_current_user),
    engine=Depends(get_engine),
):
    return {"withdrawals": payment_service.list_withdrawals(engine, user["id"], limit=limit)}


@router.get("/rain")
def recent_rain(
    limit: int = Query(20, ge=1, le=100),
    offset: int = Query(0, ge=0),
    engine=Depends(get_engine),
):
    return {"events": tip_service.get_recent_rain_events(engine, limit=limit, offset=offset)}


# ---------------------------------------------------------------------------
# Movements
# ---------------------------------------------------------------------------
@router.post("/transfer")
def transfer(
    body: TransferBody,
    user: dict = Depends(rate_limited_wallet_user),
    engine=Depends(get_engine),
    cache: ConfigCache = Depends(get_cache),
):
    return wallet_service.transfer(
        engine, cache, user["id"], body.to_user_id, body.amount, body.note,
    )


@router.post("/tip")
def tip(
    body: TipBody,
    user: dict = Depends(rate_limited_wallet_user),
    engine=Depends(get_engine),
    cache: ConfigCache = Depends(get_cache),
):
    return tip_service.send_tip(
        engine, cache, user["id"], body.recipient_id, body.amount,
        post_id=body.post_id, message=body.message,
    )


@router.post("/rain")
def rain(
    body: RainBody,
    user: dict = Depends(rate_limited_wallet_user),
    engine=Depends(get_engine),
    cache: ConfigCache = Depends(get_cache),
):
    return tip_service.make_it_rain(
        engine, cache, user["id"], body.amount, body.recipient_count, source=body.source,
    )
