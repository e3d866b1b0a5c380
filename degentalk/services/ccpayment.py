"""
degentalk.services.ccpayment — CCPayment v2 API Client
========================================================

Thin async wrapper over the CCPayment merchant API.  Every request is a
signed JSON ``POST``:

    Sign = hex(HMAC-SHA256(app_secret, app_id + timestamp + body))

sent with ``Appid``, ``Sign`` and ``Timestamp`` headers.  Any response
whose ``code`` is not ``10000`` raises :class:`PaymentProviderError`, as
does any transport failure.  Calls are not retried; a withdrawal that
times out must be reconciled from the webhook, not re-sent.
"""

from __future__ import annotations

import hashlib
import hmac
import json
import logging
import time
from typing import Any

import httpx

from degentalk.config import DEFAULT_CCPAYMENT_API_URL
from degentalk.errors import PaymentProviderError

logger = logging.getLogger(__name__)

SUCCESS_CODE = 10000
REQUEST_TIMEOUT = 30.0
WEBHOOK_MAX_AGE_SECONDS = 300


class CCPaymentClient:
    """Signed client for ``/ccpayment/v2`` endpoints."""

    def __init__(
        self,
        app_id: str,
        app_secret: str,
        api_url: str = DEFAULT_CCPAYMENT_API_URL,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.app_id = app_id
        self._secret = app_secret.encode("utf-8")
        self.api_url = api_url.rstrip("/")
        self._transport = transport

    # ------------------------------------------------------------------
    # Signing
    # ------------------------------------------------------------------
    def sign(self, timestamp: str, body: str) -> str:
        message = f"{self.app_id}{timestamp}{body}".encode()
        return hmac.new(self._secret, message, hashlib.sha256).hexdigest()

    def verify_webhook(self, body: str, app_id: str, sign: str, timestamp: str) -> bool:
        """Check a webhook's headers against its raw *body*."""
        if app_id != self.app_id:
            logger.warning("Webhook rejected: unexpected Appid %r", app_id)
            return False
        try:
            sent_at = int(timestamp)
        except (TypeError, ValueError):
            return False
        if abs(time.time() - sent_at) > WEBHOOK_MAX_AGE_SECONDS:
            logger.warning("Webhook rejected: stale timestamp %s", timestamp)
            return False
        return hmac.compare_digest(self.sign(timestamp, body), sign or "")

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------
    async def _request(self, path: str, params: dict[str, Any] | None = None) -> Any:
        body = json.dumps(params, separators=(",", ":")) if params else ""
        timestamp = str(int(time.time()))
        headers = {
            "Content-Type": "application/json",
            "Appid": self.app_id,
            "Sign": self.sign(timestamp, body),
            "Timestamp": timestamp,
        }
        url = f"{self.api_url}/ccpayment/v2/{path}"

        try:
            async with httpx.AsyncClient(
                timeout=REQUEST_TIMEOUT, transport=self._transport,
            ) as client:
                resp = await client.post(url, content=body, headers=headers)
            resp.raise_for_status()
            payload = resp.json()
        except httpx.HTTPStatusError as exc:
            logger.error("CCPayment %s returned HTTP %d", path, exc.response.status_code)
            raise PaymentProviderError(
                f"Payment provider returned HTTP {exc.response.status_code}",
            ) from exc
        except httpx.HTTPError as exc:
            logger.error("CCPayment %s failed: %s", path, exc)
            raise PaymentProviderError("Payment provider is unreachable") from exc
        except ValueError as exc:
            raise PaymentProviderError("Payment provider sent an invalid response") from exc

        code = payload.get("code")
        if code != SUCCESS_CODE:
            msg = payload.get("msg") or "Payment provider error"
            logger.warning("CCPayment %s rejected: code=%s msg=%s", path, code, msg)
            raise PaymentProviderError(msg, provider_code=code)
        return payload.get("data")

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------
    async def health(self) -> bool:
        """Cheap authenticated call used to confirm credentials."""
        try:
            await self._request("getFiatList")
        except PaymentProviderError:
            return False
        return True

    async def get_coin_list(self) -> list[dict[str, Any]]:
        data = await self._request("getCoinList")
        return (data or {}).get("coins", [])

    async def get_coin(self, coin_id: int) -> dict[str, Any]:
        data = await self._request("getCoin", {"coinId": coin_id})
        return (data or {}).get("coin", {})

    async def get_coin_usdt_price(self, coin_ids: list[int]) -> dict[str, str]:
        data = await self._request("getCoinUSDTPrice", {"coinIds": coin_ids})
        return (data or {}).get("prices", {})

    async def get_or_create_deposit_address(self, user_ref: str, chain: str) -> dict[str, Any]:
        """Return ``{"address": ..., "memo": ...}`` for *user_ref* on *chain*."""
        return await self._request(
            "getOrCreateAppDepositAddress",
            {"referenceId": user_ref, "chain": chain},
        ) or {}

    async def apply_withdrawal(
        self,
        coin_id: int,
        chain: str,
        address: str,
        amount: str,
        order_id: str,
        memo: str | None = None,
    ) -> dict[str, Any]:
        params: dict[str, Any] = {
            "coinId": coin_id,
            "chain": chain,
            "address": address,
            "orderId": order_id,
            "amount": amount,
        }
        if memo:
            params["memo"] = memo
        return await self._request("applyAppWithdrawToNetwork", params) or {}

    async def get_withdraw_fee(self, coin_id: int, chain: str) -> dict[str, Any]:
        data = await self._request("getWithdrawFee", {"coinId": coin_id, "chain": chain})
        return (data or {}).get("fee", {})

    async def check_address(self, chain: str, address: str) -> bool:
        data = await self._request(
            "checkWithdrawalAddressValidity", {"chain": chain, "address": address},
        )
        return bool((data or {}).get("addrIsValid"))
