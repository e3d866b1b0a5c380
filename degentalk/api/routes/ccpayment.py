"""
degentalk.api.routes.ccpayment — Crypto deposits, withdrawals & webhooks
==========================================================================

Deposit and withdrawal endpoints talk to CCPayment asynchronously and push
database work onto threads with :func:`run_db`.  The webhook endpoint
authenticates by signature rather than JWT.
"""

from __future__ import annotations

import json
import logging
from decimal import Decimal

from fastapi import APIRouter, Depends, Header, HTTPException, Request, status
from pydantic import BaseModel, Field

from degentalk.api.deps import get_cache, get_ccpayment_client, get_current_user, get_engine
from degentalk.api.rate_limit import rate_limited_wallet_user
from degentalk.database.engine import run_db
from degentalk.engine.cache import ConfigCache
from degentalk.errors import BadRequestError
from degentalk.services import payment_service
from degentalk.services.ccpayment import CCPaymentClient

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/ccpayment", tags=["ccpayment"])


class DepositBody(BaseModel):
    usd_amount: Decimal = Field(gt=0, max_digits=14, decimal_places=2)
    coin_symbol: str = Field(min_length=1, max_length=20)
    chain: str = Field(min_length=1, max_length=50)


class WithdrawBody(BaseModel):
    dgt_amount: Decimal = Field(gt=0, max_digits=20, decimal_places=6)
    coin_id: int
    chain: str = Field(min_length=1, max_length=50)
    address: str = Field(min_length=1, max_length=255)
    memo: str | None = Field(default=None, max_length=255)


@router.get("/coins")
async def coins(
    user: dict = Depends(get_current_user),
    client: CCPaymentClient = Depends(get_ccpayment_client),
):
    return {"coins": await client.get_coin_list()}


@router.get("/withdraw-fee")
async def withdraw_fee(
    coin_id: int,
    chain: str,
    user: dict = Depends(get_current_user),
    client: CCPaymentClient = Depends(get_ccpayment_client),
):
    """Network fee CCPayment charges for a withdrawal of *coin_id* on *chain*."""
    return {"coin_id": coin_id, "chain": chain, "fee": await client.get_withdraw_fee(coin_id, chain)}


@router.post("/deposit", status_code=201)
async def deposit(
    body: DepositBody,
    user: dict = Depends(rate_limited_wallet_user),
    engine=Depends(get_engine),
    cache: ConfigCache = Depends(get_cache),
    client: CCPaymentClient = Depends(get_ccpayment_client),
):
    return await payment_service.create_purchase_order(
        engine, cache, client, user["id"], body.usd_amount, body.coin_symbol, body.chain,
    )


@router.post("/withdraw", status_code=201)
async def withdraw(
    body: WithdrawBody,
    user: dict = Depends(rate_limited_wallet_user),
    engine=Depends(get_engine),
    cache: ConfigCache = Depends(get_cache),
    client: CCPaymentClient = Depends(get_ccpayment_client),
):
    return await payment_service.request_withdrawal(
        engine, cache, client, user["id"], body.dgt_amount,
        body.coin_id, body.chain, body.address, body.memo,
    )


@router.post("/webhook")
async def webhook(
    request: Request,
    appid: str | None = Header(default=None),
    sign: str | None = Header(default=None),
    timestamp: str | None = Header(default=None),
    engine=Depends(get_engine),
    cache: ConfigCache = Depends(get_cache),
    client: CCPaymentClient = Depends(get_ccpayment_client),
):
    """Signed callback from CCPayment.  Replays are harmless."""
    try:
        raw = (await request.body()).decode("utf-8")
    except UnicodeDecodeError:
        raise HTTPException(status.HTTP_401_UNAUTHORIZED, "Invalid webhook signature") from None
    if not client.verify_webhook(raw, appid or "", sign or "", timestamp or ""):
        raise HTTPException(status.HTTP_401_UNAUTHORIZED, "Invalid webhook signature")
    try:
        event = json.loads(raw)
    except ValueError:
        raise BadRequestError("Webhook body is not valid JSON")
    if not isinstance(event, dict):
        raise BadRequestError("Webhook body must be a JSON object")
    return await run_db(payment_service.process_webhook, engine, cache, event)
