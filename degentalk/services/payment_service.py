"""
degentalk.services.payment_service — Deposits, Purchases & Withdrawals
========================================================================

Bridges CCPayment and the DGT ledger.

* **Purchases** create a pending ``dgt_purchase_orders`` row and hand the
  user a deposit address.  DGT is credited only when the
  ``deposit_completed`` webhook arrives.
* **Withdrawals** debit DGT *before* calling the provider, so the funds
  are held while the request is in flight.  A provider rejection refunds
  the hold and marks the request failed.
* **Webhooks** are idempotent: a completed order is never credited twice
  and a failed withdrawal is never refunded twice.

The client is async; ledger work is sync and runs through
:func:`~degentalk.database.engine.run_db`.
"""

from __future__ import annotations

import logging
import uuid
from decimal import ROUND_DOWN, Decimal, InvalidOperation
from typing import TYPE_CHECKING, Any

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from degentalk.database.engine import get_session, run_db
from degentalk.database.models import (
    DgtPurchaseOrder,
    OrderStatus,
    Transaction,
    TransactionType,
    User,
    WithdrawalRequest,
    utcnow,
)
from degentalk.engine.economy import EconomyConfig, format_dgt, from_micro, to_micro
from degentalk.engine.xp_actions import XpAction
from degentalk.errors import (
    BusinessRuleViolationError,
    FeatureDisabledError,
    NotFoundError,
    PaymentProviderError,
    ValidationError,
)
from degentalk.services import user_service, wallet_service, xp_service
from degentalk.services.notification_service import NotificationType, notify

if TYPE_CHECKING:
    from sqlalchemy import Engine

    from degentalk.engine.cache import ConfigCache
    from degentalk.services.ccpayment import CCPaymentClient

logger = logging.getLogger(__name__)

WEBHOOK_EVENTS = (
    "deposit_completed",
    "deposit_failed",
    "withdrawal_completed",
    "withdrawal_failed",
)


def _decimal(value: Any, field: str) -> Decimal:
    try:
        result = Decimal(str(value))
    except (InvalidOperation, ValueError) as exc:
        raise ValidationError(f"{field} must be a number") from exc
    if not result.is_finite():
        raise ValidationError(f"{field} must be a number")
    return result


def usd_to_dgt(usd: Decimal, economy: EconomyConfig) -> int:
    """Quote *usd* in micro-DGT at the configured rate."""
    return to_micro((usd / economy.dgt_to_usd).quantize(Decimal("0.000001"), rounding=ROUND_DOWN))


def _user_ref(user: User) -> str:
    return user.ccpayment_account_id or f"dgt_user_{user.id}"


# ---------------------------------------------------------------------------
# Purchases
# ---------------------------------------------------------------------------
def _open_purchase_order(
    engine: Engine, user_id: int, usd: Decimal, dgt_micro: int, coin_symbol: str, chain: str,
) -> tuple[str, str]:
    merchant_order_id = f"dgt_{uuid.uuid4().hex}"
    with get_session(engine) as session:
        user = session.get(User, user_id)
        if user is None:
            raise NotFoundError("User")
        user_service.ensure_not_banned(session, user)
        if user.ccpayment_account_id is None:
            user.ccpayment_account_id = _user_ref(user)
        session.add(DgtPurchaseOrder(
            user_id=user_id,
            merchant_order_id=merchant_order_id,
            coin_symbol=coin_symbol.upper(),
            chain=chain,
            usd_amount=str(usd),
            dgt_amount=dgt_micro,
            status=OrderStatus.PENDING.value,
        ))
        return merchant_order_id, user.ccpayment_account_id


def _attach_deposit_address(engine: Engine, merchant_order_id: str, address: str | None) -> None:
    with get_session(engine) as session:
        order = session.scalar(
            select(DgtPurchaseOrder).where(DgtPurchaseOrder.merchant_order_id == merchant_order_id)
        )
        order.deposit_address = address


def _fail_purchase_order(engine: Engine, merchant_order_id: str) -> None:
    with get_session(engine) as session:
        order = session.scalar(
            select(DgtPurchaseOrder).where(DgtPurchaseOrder.merchant_order_id == merchant_order_id)
        )
        order.status = OrderStatus.FAILED.value


async def create_purchase_order(
    engine: Engine,
    cache: ConfigCache,
    client: CCPaymentClient,
    user_id: int,
    usd_amount: Decimal,
    coin_symbol: str,
    chain: str,
) -> dict[str, Any]:
    """Quote DGT for *usd_amount* and return a deposit address to pay into."""
    economy = cache.economy()
    wallet_service.ensure_economy_open(economy)
    if not economy.deposits.enabled or not cache.is_feature_enabled("deposits"):
        raise FeatureDisabledError("Deposits are disabled")

    usd = _decimal(usd_amount, "USD amount")
    if usd <= 0:
        raise ValidationError("Amount must be positive")
    if usd < economy.deposits.min_usd:
        raise ValidationError(f"Minimum purchase is ${economy.deposits.min_usd}")
    dgt_micro = usd_to_dgt(usd, economy)

    merchant_order_id, user_ref = await run_db(
        _open_purchase_order, engine, user_id, usd, dgt_micro, coin_symbol, chain,
    )
    try:
        deposit = await client.get_or_create_deposit_address(user_ref, chain)
    except PaymentProviderError:
        await run_db(_fail_purchase_order, engine, merchant_order_id)
        raise
    await run_db(_attach_deposit_address, engine, merchant_order_id, deposit.get("address"))

    logger.info(
        "Purchase order %s: user %d, $%s → %s", merchant_order_id, user_id, usd, format_dgt(dgt_micro),
    )
    return {
        "order_id": merchant_order_id,
        "usd_amount": str(usd),
        "dgt_amount": str(from_micro(dgt_micro)),
        "coin_symbol": coin_symbol.upper(),
        "chain": chain,
        "deposit_address": deposit.get("address"),
        "memo": deposit.get("memo"),
        "status": OrderStatus.PENDING.value,
    }


# ---------------------------------------------------------------------------
# Withdrawals
# ---------------------------------------------------------------------------
def _hold_withdrawal(
    engine: Engine,
    cache: ConfigCache,
    user_id: int,
    micro: int,
    coin_id: int,
    chain: str,
    address: str,
    memo: str | None,
) -> str:
    """Debit *micro* and open a processing withdrawal request."""
    economy = cache.economy()
    order_id = f"wd_{uuid.uuid4().hex}"
    with get_session(engine) as session:
        user = session.get(User, user_id)
        if user is None:
            raise NotFoundError("User")
        user_service.ensure_not_banned(session, user)

        day_start = utcnow().replace(hour=0, minute=0, second=0, microsecond=0)
        withdrawn_today = session.scalar(
            select(func.coalesce(func.sum(WithdrawalRequest.dgt_amount), 0)).where(
                WithdrawalRequest.user_id == user_id,
                WithdrawalRequest.status != OrderStatus.FAILED.value,
                WithdrawalRequest.created_at >= day_start,
            )
        ) or 0
        limit = to_micro(economy.wallet.daily_withdrawal_limit)
        if withdrawn_today + micro > limit:
            raise BusinessRuleViolationError(
                f"Daily withdrawal limit of {format_dgt(limit)} reached",
            )

        wallet_service.debit(
            session, user_id, micro, "withdrawal",
            reference=order_id, metadata={"coin_id": coin_id, "chain": chain, "address": address},
        )
        session.add(WithdrawalRequest(
            user_id=user_id,
            order_id=order_id,
            coin_id=coin_id,
            chain=chain,
            address=address,
            memo=memo,
            dgt_amount=micro,
            status=OrderStatus.PROCESSING.value,
        ))
    return order_id


def _refund_withdrawal(session: Session, request: WithdrawalRequest, reason: str) -> None:
    request.status = OrderStatus.FAILED.value
    request.failure_reason = reason
    wallet_service.credit(
        session, request.user_id, request.dgt_amount, "withdrawal_refund",
        reference=request.order_id, metadata={"reason": reason},
    )
    notify(
        session, request.user_id, NotificationType.WITHDRAWAL_FAILED,
        f"Your withdrawal of {format_dgt(request.dgt_amount)} failed and was refunded",
        body=reason,
        data={"order_id": request.order_id},
    )


def _fail_withdrawal(engine: Engine, order_id: str, reason: str) -> None:
    with get_session(engine) as session:
        request = session.scalar(
            select(WithdrawalRequest).where(WithdrawalRequest.order_id == order_id)
        )
        _refund_withdrawal(session, request, reason)


def _submit_withdrawal(engine: Engine, order_id: str, record_id: str | None) -> None:
    with get_session(engine) as session:
        request = session.scalar(
            select(WithdrawalRequest).where(WithdrawalRequest.order_id == order_id)
        )
        request.provider_record_id = record_id


async def request_withdrawal(
    engine: Engine,
    cache: ConfigCache,
    client: CCPaymentClient,
    user_id: int,
    dgt_amount: Decimal,
    coin_id: int,
    chain: str,
    address: str,
    memo: str | None = None,
) -> dict[str, Any]:
    """Convert *dgt_amount* to crypto and send it to *address*.

    The DGT is debited up front.  If CCPayment rejects the withdrawal the
    debit is refunded, the request is marked failed and the provider
    error is re-raised.
    """
    economy = cache.economy()
    wallet_service.ensure_economy_open(economy)
    if economy.emergency.withdrawals_disabled or not cache.is_feature_enabled("withdrawals"):
        raise FeatureDisabledError(
            economy.emergency.message or "Withdrawals are temporarily disabled",
        )

    amount = _decimal(dgt_amount, "Amount")
    if amount < economy.wallet.min_withdrawal:
        raise ValidationError(f"Minimum withdrawal is {economy.wallet.min_withdrawal} DGT")
    micro = to_micro(amount)

    if not await client.check_address(chain, address):
        raise ValidationError("Invalid withdrawal address for this chain")
    prices = await client.get_coin_usdt_price([coin_id])
    price = prices.get(str(coin_id))
    if not price or Decimal(str(price)) <= 0:
        raise PaymentProviderError("No price available for this coin")
    usd = from_micro(micro) * economy.dgt_to_usd
    crypto_amount = (usd / Decimal(str(price))).quantize(Decimal("0.00000001"), rounding=ROUND_DOWN)

    order_id = await run_db(
        _hold_withdrawal, engine, cache, user_id, micro, coin_id, chain, address, memo,
    )
    try:
        result = await client.apply_withdrawal(
            coin_id, chain, address, str(crypto_amount), order_id, memo,
        )
    except PaymentProviderError as exc:
        logger.warning("Withdrawal %s rejected by provider; refunding", order_id)
        await run_db(_fail_withdrawal, engine, order_id, exc.message)
        raise
    await run_db(_submit_withdrawal, engine, order_id, result.get("recordId"))

    logger.info("Withdrawal %s submitted: user %d, %s", order_id, user_id, format_dgt(micro))
    return {
        "order_id": order_id,
        "dgt_amount": str(from_micro(micro)),
        "crypto_amount": str(crypto_amount),
        "coin_id": coin_id,
        "chain": chain,
        "status": OrderStatus.PROCESSING.value,
    }


# ---------------------------------------------------------------------------
# Webhooks
# ---------------------------------------------------------------------------
def _find_order(session: Session, merchant_order_id: str | None) -> DgtPurchaseOrder | None:
    if not merchant_order_id:
        return None
    return session.scalar(
        select(DgtPurchaseOrder)
        .where(DgtPurchaseOrder.merchant_order_id == merchant_order_id)
        .with_for_update()
    )


def _find_withdrawal(session: Session, order_id: str | None) -> WithdrawalRequest | None:
    if not order_id:
        return None
    return session.scalar(
        select(WithdrawalRequest)
        .where(WithdrawalRequest.order_id == order_id)
        .with_for_update()
    )


def _credit_deposit(
    session: Session,
    cache: ConfigCache,
    user_id: int,
    micro: int,
    reference: str,
    metadata: dict[str, Any],
) -> None:
    wallet_service.credit(
        session, user_id, micro, "crypto_deposit",
        economy=cache.economy(), reference=reference, metadata=metadata,
    )
    xp_service.award_xp_in_session(
        session, cache, user_id, XpAction.DGT_PURCHASE, metadata={"reference": reference},
    )
    notify(
        session, user_id, NotificationType.DEPOSIT_COMPLETED,
        f"{format_dgt(micro)} has been added to your wallet",
        data={"reference": reference},
    )


def _paid_usd(event: dict[str, Any]) -> Decimal:
    """What actually arrived: ``actualAmount`` net of fees, else the gross ``amount``."""
    raw = event.get("actualAmount")
    if raw in (None, ""):
        raw = event.get("amount")
    return _decimal(raw, "Deposit amount")


def _deposit_completed(session: Session, cache: ConfigCache, event: dict[str, Any]) -> dict[str, Any]:
    economy = cache.economy()
    order = _find_order(session, event.get("merchantOrderId"))
    if order is not None:
        if order.status == OrderStatus.COMPLETED.value:
            return {"success": True, "message": "Already processed"}
        paid = _paid_usd(event)
        # Never more than the quote; underpayment credits pro rata
        micro = min(usd_to_dgt(paid, economy), order.dgt_amount)
        order.crypto_amount = str(paid)
        order.provider_record_id = event.get("orderId")
        if micro <= 0:
            order.status = OrderStatus.FAILED.value
            order.failure_reason = "Deposit amount too small"
            return {"success": False, "message": "Deposit amount too small"}
        try:
            _credit_deposit(
                session, cache, order.user_id, micro, order.merchant_order_id,
                {
                    "provider_order_id": event.get("orderId"),
                    "tx_hash": event.get("txHash"),
                    "paid_usd": str(paid),
                    "quoted_dgt": str(from_micro(order.dgt_amount)),
                },
            )
        except BusinessRuleViolationError as exc:
            order.status = OrderStatus.FAILED.value
            order.failure_reason = exc.message
            logger.error(
                "Purchase order %s paid but not credited: %s", order.merchant_order_id, exc.message,
            )
            return {"success": False, "message": exc.message}
        order.status = OrderStatus.COMPLETED.value
        order.completed_at = utcnow()
        if micro < order.dgt_amount:
            logger.warning(
                "Purchase order %s underpaid: credited %s of %s",
                order.merchant_order_id, format_dgt(micro), format_dgt(order.dgt_amount),
            )
            return {"success": True, "message": "Deposit credited (underpaid)"}
        logger.info("Purchase order %s completed", order.merchant_order_id)
        return {"success": True, "message": "Deposit credited"}

    # Direct deposit without a purchase order
    if not economy.deposits.auto_convert:
        logger.warning("Deposit for unknown order %s ignored", event.get("merchantOrderId"))
        return {"success": False, "message": "Purchase order not found"}

    user = session.scalar(select(User).where(User.ccpayment_account_id == event.get("uid")))
    if user is None:
        return {"success": False, "message": "No user for this deposit"}
    reference = event.get("orderId")
    if not reference:
        return {"success": False, "message": "Deposit has no provider order id"}
    seen = session.scalar(
        select(Transaction.id).where(
            Transaction.reference == reference,
            Transaction.type == TransactionType.DEPOSIT_CREDIT.value,
        )
    )
    if seen is not None:
        return {"success": True, "message": "Already processed"}

    micro = usd_to_dgt(_paid_usd(event), economy)
    if micro <= 0:
        return {"success": False, "message": "Deposit amount too small"}
    try:
        _credit_deposit(
            session, cache, user.id, micro, reference,
            {"auto_convert": True, "currency": event.get("currency"), "tx_hash": event.get("txHash")},
        )
    except BusinessRuleViolationError as exc:
        logger.error("Direct deposit %s for user %d not credited: %s", reference, user.id, exc.message)
        return {"success": False, "message": exc.message}
    logger.info("Auto-converted direct deposit %s for user %d", reference, user.id)
    return {"success": True, "message": "Deposit auto-converted"}


def _deposit_failed(session: Session, event: dict[str, Any]) -> dict[str, Any]:
    order = _find_order(session, event.get("merchantOrderId"))
    if order is None:
        return {"success": False, "message": "Purchase order not found"}
    if order.status != OrderStatus.COMPLETED.value:
        order.status = OrderStatus.FAILED.value
        order.provider_record_id = event.get("orderId")
    return {"success": True, "message": "Deposit marked failed"}


def _withdrawal_completed(session: Session, event: dict[str, Any]) -> dict[str, Any]:
    request = _find_withdrawal(session, event.get("merchantOrderId"))
    if request is None:
        return {"success": False, "message": "Withdrawal not found"}
    if request.status in (OrderStatus.COMPLETED.value, OrderStatus.FAILED.value):
        return {"success": True, "message": "Already processed"}
    request.status = OrderStatus.COMPLETED.value
    request.provider_record_id = event.get("orderId") or request.provider_record_id
    request.completed_at = utcnow()
    notify(
        session, request.user_id, NotificationType.WITHDRAWAL_COMPLETED,
        f"Your withdrawal of {format_dgt(request.dgt_amount)} was sent",
        data={"order_id": request.order_id, "tx_hash": event.get("txHash")},
    )
    return {"success": True, "message": "Withdrawal completed"}


def _withdrawal_failed(session: Session, event: dict[str, Any]) -> dict[str, Any]:
    request = _find_withdrawal(session, event.get("merchantOrderId"))
    if request is None:
        return {"success": False, "message": "Withdrawal not found"}
    if request.status in (OrderStatus.COMPLETED.value, OrderStatus.FAILED.value):
        return {"success": True, "message": "Already processed"}
    _refund_withdrawal(session, request, event.get("status") or "Rejected by provider")
    return {"success": True, "message": "Withdrawal refunded"}


def process_webhook(engine: Engine, cache: ConfigCache, event: dict[str, Any]) -> dict[str, Any]:
    """Apply a verified CCPayment webhook *event*.

    The event carries ``eventType``, ``merchantOrderId`` (our order id),
    ``orderId`` (CCPayment's id) and, for deposits, ``amount``,
    ``actualAmount``, ``currency``, ``txHash`` and ``uid``.
    """
    event_type = event.get("eventType")
    logger.info(
        "Webhook %s for order %s (provider %s)",
        event_type, event.get("merchantOrderId"), event.get("orderId"),
    )
    if event_type not in WEBHOOK_EVENTS:
        logger.warning("Unknown webhook event type: %s", event_type)
        return {"success": False, "message": "Unknown event type"}

    with get_session(engine) as session:
        if event_type == "deposit_completed":
            return _deposit_completed(session, cache, event)
        if event_type == "deposit_failed":
            return _deposit_failed(session, event)
        if event_type == "withdrawal_completed":
            return _withdrawal_completed(session, event)
        return _withdrawal_failed(session, event)


def list_withdrawals(engine: Engine, user_id: int, *, limit: int = 20) -> list[dict[str, Any]]:
    with get_session(engine) as session:
        rows = session.scalars(
            select(WithdrawalRequest)
            .where(WithdrawalRequest.user_id == user_id)
            .order_by(WithdrawalRequest.created_at.desc(), WithdrawalRequest.id.desc())
            .limit(limit)
        ).all()
        return [
            {
                "order_id": r.order_id,
                "dgt_amount": str(from_micro(r.dgt_amount)),
                "coin_id": r.coin_id,
                "chain": r.chain,
                "address": r.address,
                "status": r.status,
                "failure_reason": r.failure_reason,
                "created_at": r.created_at.isoformat() if r.created_at else None,
            }
            for r in rows
        ]
